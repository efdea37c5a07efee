"""
Unit tests for the streaming parser and message splitting.
"""

import pytest

from edifact_errors import StoppedByHandler, UnexpectedEof
from edifact_models import Control
from edifact_parser import EdifactHandler, StreamParser, parse_to_segments, split_messages

pytestmark = pytest.mark.unit


class RecordingHandler(EdifactHandler):
    def __init__(self, stop_at=None):
        self.events = []
        self.stop_at = stop_at

    def on_delimiters(self, delimiters, explicit_una):
        self.events.append(("delimiters", explicit_una))

    def on_interchange_start(self, unb):
        self.events.append(("interchange_start", unb.segment_number))
        return Control.CONTINUE

    def on_message_start(self, unh):
        self.events.append(("message_start", unh.get_element(0)))
        return Control.CONTINUE

    def on_segment(self, segment):
        self.events.append(("segment", segment.id))
        if segment.id == self.stop_at:
            return Control.STOP
        return Control.CONTINUE

    def on_message_end(self, unt):
        self.events.append(("message_end", unt.get_element(1)))

    def on_interchange_end(self, unz):
        self.events.append(("interchange_end", unz.get_element(0)))


class TestStreamParser:

    def test_callback_order(self, minimal_utilmd):
        handler = RecordingHandler()
        StreamParser.parse(minimal_utilmd, handler)
        assert handler.events == [
            ("delimiters", True),
            ("interchange_start", 1),
            ("segment", "UNB"),
            ("message_start", "M1"),
            ("segment", "UNH"),
            ("segment", "BGM"),
            ("segment", "IDE"),
            ("segment", "LOC"),
            ("message_end", "M1"),
            ("segment", "UNT"),
            ("interchange_end", "1"),
            ("segment", "UNZ"),
        ]

    def test_handler_can_stop_the_parse(self, minimal_utilmd):
        handler = RecordingHandler(stop_at="IDE")
        with pytest.raises(StoppedByHandler) as exc_info:
            StreamParser.parse(minimal_utilmd, handler)
        assert exc_info.value.segment_number == 4
        assert exc_info.value.message_number == 1
        assert ("segment", "LOC") not in handler.events

    def test_stop_from_message_start(self):
        class StopAtMessage(EdifactHandler):
            def on_message_start(self, unh):
                return Control.STOP

        with pytest.raises(StoppedByHandler):
            StreamParser.parse("UNB+X'UNH+1+UTILMD'UNT+2+1'", StopAtMessage())

    def test_message_numbers(self, two_message_utilmd):
        _, _, segments = parse_to_segments(two_message_utilmd)
        unh_numbers = [s.message_number for s in segments if s.id == "UNH"]
        assert unh_numbers == [1, 2]
        ide_numbers = [s.message_number for s in segments if s.id == "IDE"]
        assert ide_numbers == [1, 2]
        assert segments[0].message_number == 0

    def test_empty_input(self):
        handler = RecordingHandler()
        StreamParser.parse("", handler)
        assert handler.events == [("delimiters", False)]


class TestSplitMessages:

    def test_single_message(self, minimal_utilmd):
        delimiters, explicit, segments = parse_to_segments(minimal_utilmd)
        chunks = split_messages(segments, delimiters, explicit)
        assert chunks.explicit_una is True
        assert chunks.envelope_header.id == "UNB"
        assert chunks.envelope_trailer.id == "UNZ"
        assert len(chunks.messages) == 1
        message = chunks.messages[0]
        assert message.reference == "M1"
        assert message.message_type == "UTILMD"
        assert [s.id for s in message.body] == ["BGM", "IDE", "LOC"]
        assert chunks.framing_issues == []

    def test_two_messages(self, two_message_utilmd):
        _, _, segments = parse_to_segments(two_message_utilmd)
        chunks = split_messages(segments)
        assert [m.reference for m in chunks.messages] == ["001", "002"]
        assert chunks.framing_issues == []

    def test_unt_count_mismatch(self):
        _, _, segments = parse_to_segments("UNH+M1+UTILMD'BGM+E01'UNT+7+M1'")
        chunks = split_messages(segments)
        assert len(chunks.framing_issues) == 1
        issue = chunks.framing_issues[0]
        assert issue.kind == "unt_count"
        assert issue.expected == "3"
        assert issue.actual == "7"
        assert issue.segment_number == 3

    def test_unt_reference_mismatch(self):
        _, _, segments = parse_to_segments("UNH+M1+UTILMD'UNT+2+M2'")
        chunks = split_messages(segments)
        assert [i.kind for i in chunks.framing_issues] == ["unt_reference"]

    def test_unz_count_mismatch(self):
        _, _, segments = parse_to_segments("UNB+X'UNH+M1+UTILMD'UNT+2+M1'UNZ+3+X'")
        chunks = split_messages(segments)
        assert [i.kind for i in chunks.framing_issues] == ["unz_count"]
        assert chunks.framing_issues[0].expected == "1"

    def test_missing_unt_is_fatal(self):
        _, _, segments = parse_to_segments("UNH+M1+UTILMD'BGM+E01'")
        with pytest.raises(UnexpectedEof):
            split_messages(segments)

    def test_unh_before_previous_unt_is_fatal(self):
        _, _, segments = parse_to_segments("UNH+M1+UTILMD'UNH+M2+UTILMD'UNT+2+M2'")
        with pytest.raises(UnexpectedEof):
            split_messages(segments)

    def test_segments_outside_messages_are_ignored(self):
        _, _, segments = parse_to_segments("UNB+X'BGM+E01'UNH+M1+UTILMD'UNT+2+M1'UNZ+1+X'")
        chunks = split_messages(segments)
        assert len(chunks.messages) == 1
        assert chunks.messages[0].body == []
