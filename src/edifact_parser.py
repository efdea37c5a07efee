"""
Event-driven EDIFACT parser.

``StreamParser`` tokenizes an interchange and dispatches each segment to an
``EdifactHandler``. Service segments get their dedicated callback first and
are then passed to ``on_segment`` like every other segment. Handlers steer the
parse by returning ``Control.CONTINUE`` or ``Control.STOP``.
"""
import logging
from typing import List, Optional, Tuple, Union

from edifact_errors import StoppedByHandler, UnexpectedEof
from edifact_models import (
    Control,
    Delimiters,
    FramingIssue,
    InterchangeChunks,
    MessageChunk,
    OwnedSegment,
)
from edifact_tokenizer import EdifactTokenizer, as_bytes, detect_delimiters

logger = logging.getLogger(__name__)


class EdifactHandler:
    """Base handler; every callback defaults to a no-op that continues."""

    def on_delimiters(self, delimiters: Delimiters, explicit_una: bool) -> None:
        pass

    def on_interchange_start(self, unb: OwnedSegment) -> Control:
        return Control.CONTINUE

    def on_message_start(self, unh: OwnedSegment) -> Control:
        return Control.CONTINUE

    def on_segment(self, segment: OwnedSegment) -> Control:
        return Control.CONTINUE

    def on_message_end(self, unt: OwnedSegment) -> None:
        pass

    def on_interchange_end(self, unz: OwnedSegment) -> None:
        pass


class SegmentCollector(EdifactHandler):
    """Collects every segment of the interchange in source order."""

    def __init__(self):
        self.delimiters = Delimiters.default()
        self.explicit_una = False
        self.segments: List[OwnedSegment] = []

    def on_delimiters(self, delimiters: Delimiters, explicit_una: bool) -> None:
        self.delimiters = delimiters
        self.explicit_una = explicit_una

    def on_segment(self, segment: OwnedSegment) -> Control:
        self.segments.append(segment)
        return Control.CONTINUE


class StreamParser:
    """Drives a handler over an interchange."""

    @staticmethod
    def parse(data: Union[bytes, str], handler: EdifactHandler) -> None:
        data = as_bytes(data)
        delimiters, explicit_una, start = detect_delimiters(data)
        handler.on_delimiters(delimiters, explicit_una)

        tokenizer = EdifactTokenizer(delimiters)
        message_number = 0
        in_message = False

        for number, (chunk, offset) in enumerate(tokenizer.iter_segment_bytes(data, start), start=1):
            segment = tokenizer.split_segment(chunk, offset)
            segment.segment_number = number
            tag = segment.id.upper()
            control = Control.CONTINUE

            if tag == "UNH":
                message_number += 1
                in_message = True
                segment.message_number = message_number
                control = handler.on_message_start(segment)
            elif tag == "UNT":
                segment.message_number = message_number if in_message else 0
                handler.on_message_end(segment)
                in_message = False
            elif tag == "UNB":
                control = handler.on_interchange_start(segment)
            elif tag == "UNZ":
                handler.on_interchange_end(segment)
            else:
                segment.message_number = message_number if in_message else 0

            if control == Control.STOP:
                raise StoppedByHandler(number, offset, segment.message_number)
            if handler.on_segment(segment) == Control.STOP:
                raise StoppedByHandler(number, offset, segment.message_number)


def parse_to_segments(data: Union[bytes, str]) -> Tuple[Delimiters, bool, List[OwnedSegment]]:
    """Parses an interchange and returns ``(delimiters, explicit_una, segments)``."""
    collector = SegmentCollector()
    StreamParser.parse(data, collector)
    return collector.delimiters, collector.explicit_una, collector.segments


def _count(value: str) -> Optional[int]:
    try:
        return int(value)
    except ValueError:
        return None


def split_messages(
    segments: List[OwnedSegment],
    delimiters: Optional[Delimiters] = None,
    explicit_una: bool = False,
) -> InterchangeChunks:
    """
    Splits a flat segment list at UNH/UNT boundaries and checks the framing
    counts. Framing problems are collected, not raised; a message that is
    still open at the end of input is fatal.
    """
    chunks = InterchangeChunks(delimiters=delimiters or Delimiters.default(), explicit_una=explicit_una)
    header: Optional[OwnedSegment] = None
    body: List[OwnedSegment] = []

    for segment in segments:
        tag = segment.id.upper()
        if tag == "UNB":
            chunks.envelope_header = segment
        elif tag == "UNZ":
            chunks.envelope_trailer = segment
        elif tag == "UNH":
            if header is not None:
                raise UnexpectedEof(
                    f"Message '{header.get_element(0)}' has no UNT before the next UNH", segment.byte_offset
                )
            header = segment
            body = []
        elif tag == "UNT":
            if header is None:
                logger.warning(f"UNT at segment {segment.segment_number} without a preceding UNH; ignored")
                continue
            chunks.messages.append(MessageChunk(header=header, body=body, trailer=segment))
            header = None
            body = []
        elif header is not None:
            body.append(segment)
        else:
            logger.warning(f"Segment '{segment.id}' at {segment.segment_number} is outside any message; ignored")

    if header is not None:
        raise UnexpectedEof(f"Message '{header.get_element(0)}' is missing its UNT trailer", header.byte_offset)

    chunks.framing_issues = _check_framing(chunks)
    logger.info(f"Split interchange into {len(chunks.messages)} message(s), {len(chunks.framing_issues)} framing issue(s)")
    return chunks


def _check_framing(chunks: InterchangeChunks) -> List[FramingIssue]:
    issues = []
    for message in chunks.messages:
        unt = message.trailer
        if unt.get_element(1) != message.reference:
            issues.append(FramingIssue(
                kind="unt_reference",
                message=f"UNT reference '{unt.get_element(1)}' does not match UNH reference '{message.reference}'",
                segment_number=unt.segment_number,
                expected=message.reference,
                actual=unt.get_element(1),
            ))
        expected_count = len(message.body) + 2
        if _count(unt.get_element(0)) != expected_count:
            issues.append(FramingIssue(
                kind="unt_count",
                message=f"UNT segment count '{unt.get_element(0)}' does not match actual count {expected_count}",
                segment_number=unt.segment_number,
                expected=str(expected_count),
                actual=unt.get_element(0),
            ))

    unz = chunks.envelope_trailer
    if unz is not None and _count(unz.get_element(0)) != len(chunks.messages):
        issues.append(FramingIssue(
            kind="unz_count",
            message=f"UNZ message count '{unz.get_element(0)}' does not match actual count {len(chunks.messages)}",
            segment_number=unz.segment_number,
            expected=str(len(chunks.messages)),
            actual=unz.get_element(0),
        ))
    return issues
