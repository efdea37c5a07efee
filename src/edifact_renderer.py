"""
EDIFACT renderer: segment lists back to wire text.

Components are joined with the component separator and elements with the
element separator. Every data character that equals the component, element or
segment separator or the release character is escaped with the release
character. Trailing empty elements are dropped; empty components inside an
element are kept (``CAV+SA:::'`` renders unchanged).
"""
import logging
from typing import Iterable, List, Optional, Union

from edifact_models import Delimiters, InterchangeChunks, OwnedSegment
from edifact_tokenizer import tokenize

logger = logging.getLogger(__name__)


class EdifactRenderer:
    def __init__(self, delimiters: Optional[Delimiters] = None, segment_separator: str = ""):
        self.delimiters = delimiters or Delimiters.default()
        self.segment_separator = segment_separator
        self._escapable = set(self.delimiters.escapable())

    def escape(self, text: str) -> str:
        release = self.delimiters.release
        return "".join(release + ch if ch in self._escapable else ch for ch in text)

    def render_element(self, components: List[str]) -> str:
        return self.delimiters.component.join(self.escape(c) for c in components)

    def render_segment(self, segment: OwnedSegment) -> str:
        elements = list(segment.elements)
        while elements and all(c == "" for c in elements[-1]) and len(elements[-1]) <= 1:
            elements.pop()
        parts = [segment.id] + [self.render_element(e) for e in elements]
        return self.delimiters.element.join(parts) + self.delimiters.segment

    def render(self, segments: Iterable[OwnedSegment], include_una: bool = False) -> str:
        rendered = [self.render_segment(s) for s in segments]
        body = self.segment_separator.join(rendered)
        if include_una:
            return self.delimiters.to_una() + self.segment_separator + body
        return body


def render_segments(
    segments: Iterable[OwnedSegment],
    delimiters: Optional[Delimiters] = None,
    include_una: bool = False,
) -> str:
    return EdifactRenderer(delimiters).render(segments, include_una)


def render_interchange(chunks: InterchangeChunks, segment_separator: str = "") -> str:
    """Renders UNA (if it was explicit), UNB, every message and UNZ."""
    segments: List[OwnedSegment] = []
    if chunks.envelope_header is not None:
        segments.append(chunks.envelope_header)
    for message in chunks.messages:
        segments.extend(message.all_segments())
    if chunks.envelope_trailer is not None:
        segments.append(chunks.envelope_trailer)
    renderer = EdifactRenderer(chunks.delimiters, segment_separator)
    return renderer.render(segments, include_una=chunks.explicit_una)


def rerender(data: Union[bytes, str]) -> str:
    """Tokenizes and renders again with the same delimiters."""
    delimiters, explicit_una, segments = tokenize(data)
    logger.debug(f"Re-rendering {len(segments)} segment(s)")
    return EdifactRenderer(delimiters).render(segments, include_una=explicit_una)
