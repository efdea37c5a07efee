"""
EDIFACT tokenizer.

Turns raw interchange bytes into ``OwnedSegment`` objects. The tokenizer works
on bytes so that offsets in errors are byte offsets into the original input;
components are decoded as UTF-8 after splitting. Delimiters are single ASCII
characters, so splitting never cuts through a multi-byte character.
"""
import logging
from typing import Iterator, List, Tuple, Union

from edifact_errors import EmptySegmentId, InvalidUna, InvalidUtf8, UnexpectedEof, UnterminatedSegment
from edifact_models import UNA_LENGTH, Delimiters, OwnedSegment

logger = logging.getLogger(__name__)

WHITESPACE = b" \t\r\n"


def as_bytes(data: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _skip_whitespace(data: bytes, pos: int) -> int:
    while pos < len(data) and data[pos] in WHITESPACE:
        pos += 1
    return pos


def detect_delimiters(data: Union[bytes, str]) -> Tuple[Delimiters, bool, int]:
    """
    Reads an optional UNA service string advice.

    Returns the delimiters, whether an explicit UNA was present, and the byte
    offset at which segment data starts.
    """
    data = as_bytes(data)
    start = _skip_whitespace(data, 0)
    if not data.startswith(b"UNA", start):
        return Delimiters.default(), False, start

    if len(data) - start < UNA_LENGTH:
        raise UnexpectedEof(f"UNA header truncated: {len(data) - start} of {UNA_LENGTH} bytes", start)

    chars = data[start + 3:start + UNA_LENGTH]
    if any(c > 0x7F for c in chars):
        raise InvalidUna("UNA service characters must be ASCII", start)

    component, element, decimal, release, reserved, segment = (chr(c) for c in chars)
    active = [component, element, release, segment]
    if len(set(active)) != len(active):
        raise InvalidUna(f"UNA service characters are not distinct: {''.join(active)!r}", start)
    if any(c.isalnum() for c in active):
        raise InvalidUna(f"UNA service characters must not be alphanumeric: {''.join(active)!r}", start)

    delimiters = Delimiters(
        component=component,
        element=element,
        decimal=decimal,
        release=release,
        reserved=reserved,
        segment=segment,
    )
    logger.debug(f"Explicit UNA delimiters: {delimiters.to_una()!r}")
    return delimiters, True, start + UNA_LENGTH


class EdifactTokenizer:
    """Scans segments and splits them into elements and components."""

    def __init__(self, delimiters: Delimiters):
        self.delimiters = delimiters
        self._component = ord(delimiters.component)
        self._element = ord(delimiters.element)
        self._release = ord(delimiters.release)
        self._terminator = ord(delimiters.segment)

    def iter_segment_bytes(self, data: bytes, start: int = 0) -> Iterator[Tuple[bytes, int]]:
        """Yields ``(segment_bytes, byte_offset)`` without the terminator."""
        pos = start
        length = len(data)
        while True:
            pos = _skip_whitespace(data, pos)
            if pos >= length:
                return
            segment_start = pos
            while True:
                if pos >= length:
                    raise UnterminatedSegment(
                        f"Input ends inside a segment starting at byte {segment_start}", segment_start
                    )
                byte = data[pos]
                if byte == self._release:
                    if pos + 1 >= length:
                        raise UnexpectedEof("Release character at end of input", pos)
                    pos += 2
                    continue
                if byte == self._terminator:
                    break
                pos += 1
            chunk = data[segment_start:pos]
            pos += 1
            if chunk.strip(WHITESPACE):
                yield chunk, segment_start

    def split_segment(self, chunk: bytes, offset: int) -> OwnedSegment:
        try:
            raw = chunk.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidUtf8(f"Invalid UTF-8 in segment at byte {offset + e.start}", offset + e.start)

        elements: List[List[str]] = []
        components: List[str] = []
        current = bytearray()
        i = 0
        while i < len(chunk):
            byte = chunk[i]
            if byte == self._release and i + 1 < len(chunk):
                current.append(chunk[i + 1])
                i += 2
                continue
            if byte == self._component:
                components.append(current.decode("utf-8"))
                current = bytearray()
            elif byte == self._element:
                components.append(current.decode("utf-8"))
                elements.append(components)
                components = []
                current = bytearray()
            else:
                current.append(byte)
            i += 1
        components.append(current.decode("utf-8"))
        elements.append(components)

        tag = elements[0][0].strip()
        if not tag:
            raise EmptySegmentId(f"Segment at byte {offset} has no tag", offset)
        return OwnedSegment(id=tag, elements=elements[1:], byte_offset=offset, raw=raw)

    def tokenize(self, data: bytes, start: int = 0) -> List[OwnedSegment]:
        segments = []
        for number, (chunk, offset) in enumerate(self.iter_segment_bytes(data, start), start=1):
            segment = self.split_segment(chunk, offset)
            segment.segment_number = number
            segments.append(segment)
        return segments


def tokenize(data: Union[bytes, str]) -> Tuple[Delimiters, bool, List[OwnedSegment]]:
    """
    Tokenizes a complete interchange.

    Empty or whitespace-only input yields no segments and no error.
    """
    data = as_bytes(data)
    delimiters, explicit_una, start = detect_delimiters(data)
    segments = EdifactTokenizer(delimiters).tokenize(data, start)
    logger.debug(f"Tokenized {len(segments)} segments (explicit UNA: {explicit_una})")
    return delimiters, explicit_una, segments
