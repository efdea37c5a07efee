from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Wire-level data model for EDIFACT interchanges.
# Segments are kept flat here; the hierarchical view lives in assembled_tree.

UNA_LENGTH = 9


class Delimiters(BaseModel):
    """The six service characters of an interchange, in UNA order."""
    model_config = ConfigDict(frozen=True)

    component: str = ":"
    element: str = "+"
    decimal: str = "."
    release: str = "?"
    reserved: str = " "
    segment: str = "'"

    @classmethod
    def default(cls) -> "Delimiters":
        return cls()

    def to_una(self) -> str:
        """Renders the service string advice, e.g. ``UNA:+.? '``."""
        return f"UNA{self.component}{self.element}{self.decimal}{self.release}{self.reserved}{self.segment}"

    def escapable(self) -> str:
        """Characters that must be preceded by the release character inside data."""
        return f"{self.component}{self.element}{self.segment}{self.release}"


class Control(str, Enum):
    """Returned by stream handlers to continue or abort the parse."""
    CONTINUE = "continue"
    STOP = "stop"


class SegmentPosition(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_number: int
    byte_offset: int
    message_number: int = 0


class OwnedSegment(BaseModel):
    """
    A tokenized segment. ``elements`` is a list of elements, each a non-empty
    list of component strings with release characters already stripped.
    """
    id: str
    elements: List[List[str]] = Field(default_factory=list)
    segment_number: int = 0
    byte_offset: int = 0
    message_number: int = 0
    raw: str = ""

    def is_(self, tag: str) -> bool:
        return self.id.upper() == tag.upper()

    def get_element(self, index: int) -> str:
        """First component of element ``index`` (0-based), or an empty string."""
        if 0 <= index < len(self.elements) and self.elements[index]:
            return self.elements[index][0]
        return ""

    def get_component(self, element_index: int, component_index: int) -> str:
        if 0 <= element_index < len(self.elements):
            element = self.elements[element_index]
            if 0 <= component_index < len(element):
                return element[component_index]
        return ""

    def position(self) -> SegmentPosition:
        return SegmentPosition(
            segment_number=self.segment_number,
            byte_offset=self.byte_offset,
            message_number=self.message_number,
        )


class FramingIssue(BaseModel):
    """A UNH/UNT/UNZ consistency problem found while splitting an interchange."""
    kind: str  # unt_reference | unt_count | unz_count
    message: str
    segment_number: int
    expected: Optional[str] = None
    actual: Optional[str] = None


class MessageChunk(BaseModel):
    header: OwnedSegment
    body: List[OwnedSegment] = Field(default_factory=list)
    trailer: OwnedSegment

    @property
    def reference(self) -> str:
        return self.header.get_element(0)

    @property
    def message_type(self) -> str:
        return self.header.get_component(1, 0)

    def all_segments(self) -> List[OwnedSegment]:
        """UNH, body and UNT in source order."""
        return [self.header, *self.body, self.trailer]


class InterchangeChunks(BaseModel):
    delimiters: Delimiters = Field(default_factory=Delimiters)
    explicit_una: bool = False
    envelope_header: Optional[OwnedSegment] = None
    messages: List[MessageChunk] = Field(default_factory=list)
    envelope_trailer: Optional[OwnedSegment] = None
    framing_issues: List[FramingIssue] = Field(default_factory=list)
