# Schema models for MIG (message structure), PID schemas and AHB workflows.
from pydantic import BaseModel, Field, AliasChoices, BeforeValidator
from typing import List, Optional, Union, Dict, Literal, Annotated, Iterator, Tuple

from edifact_models import OwnedSegment

MANDATORY_STATUSES = ("M", "R")


def _parse_counter(value):
    if value is None or isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text else None


Counter = Annotated[Optional[int], BeforeValidator(_parse_counter)]


# --- Element definitions ---
class CodeDefinition(BaseModel):
    code: str
    description: str = ""


class MigDataElement(BaseModel):
    type: Literal['data_element']
    id: str
    name: str = ""
    position: int
    status: str = "C"
    format: Optional[str] = Field(None, description="EDIFACT format code, e.g. 'an..35' or 'n8'.")
    codes: List[CodeDefinition] = Field(default_factory=list)

    def is_mandatory(self) -> bool:
        return self.status.upper() in MANDATORY_STATUSES

    def code_values(self) -> List[str]:
        return [c.code for c in self.codes]


class MigComposite(BaseModel):
    type: Literal['composite']
    id: str
    name: str = ""
    position: int
    status: str = "C"
    components: List[MigDataElement] = Field(default_factory=list)

    def is_mandatory(self) -> bool:
        return self.status.upper() in MANDATORY_STATUSES

    def component_count(self) -> int:
        if not self.components:
            return 1
        return max(c.position for c in self.components) + 1


MigElement = Annotated[Union[MigComposite, MigDataElement], Field(discriminator='type')]


class QualifierDiscriminator(BaseModel):
    """Element position and qualifier values that select a variant."""
    element_index: int = 0
    component_index: int = 0
    values: List[str]

    def matches(self, segment: OwnedSegment) -> bool:
        actual = segment.get_component(self.element_index, self.component_index).strip()
        return any(actual == value.strip() for value in self.values)


# --- Segment and group definitions ---
class MigSegment(BaseModel):
    id: str
    name: str = ""
    counter: Counter = None
    number: Optional[str] = Field(None, description="Links the segment to AHB fields.")
    status: str = "C"
    max_rep: int = Field(validation_alias=AliasChoices("max_rep", "maxRep"), default=1)
    elements: List[MigElement] = Field(default_factory=list)
    discriminator: Optional[QualifierDiscriminator] = None

    @property
    def min_rep(self) -> int:
        return 1 if self.status.upper() in MANDATORY_STATUSES else 0

    def matches(self, segment: OwnedSegment) -> bool:
        if not segment.is_(self.id):
            return False
        return self.discriminator is None or self.discriminator.matches(segment)

    def element_count(self) -> int:
        if not self.elements:
            return 0
        return max(e.position for e in self.elements) + 1

    def element_at(self, position: int) -> Optional[Union[MigComposite, MigDataElement]]:
        return next((e for e in self.elements if e.position == position), None)


class MigSegmentGroup(BaseModel):
    id: str
    name: str = ""
    counter: Counter = None
    status: str = "C"
    max_rep: int = Field(validation_alias=AliasChoices("max_rep", "maxRep"), default=1)
    variant: Optional[str] = Field(None, description="Explicit variant key, e.g. 'SG5_Z16'.")
    discriminator: Optional[QualifierDiscriminator] = None
    segments: List[MigSegment] = Field(default_factory=list)
    nested_groups: List['MigSegmentGroup'] = Field(default_factory=list)

    @property
    def key(self) -> str:
        """Group id, or the variant key for qualifier-discriminated groups."""
        if self.variant:
            return self.variant
        if self.discriminator and self.discriminator.values:
            return f"{self.id}_{self.discriminator.values[0]}"
        return self.id

    @property
    def min_rep(self) -> int:
        return 1 if self.status.upper() in MANDATORY_STATUSES else 0

    @property
    def entry_segment(self) -> Optional[MigSegment]:
        return self.segments[0] if self.segments else None

    def entry_tag_matches(self, segment: OwnedSegment) -> bool:
        entry = self.entry_segment
        return entry is not None and segment.is_(entry.id)

    def opens_with(self, segment: OwnedSegment) -> bool:
        """True when the segment can open a repetition of this group."""
        if not self.entry_tag_matches(segment):
            return False
        if self.discriminator is not None and not self.discriminator.matches(segment):
            return False
        entry = self.entry_segment
        return entry.discriminator is None or entry.discriminator.matches(segment)


class MigSchema(BaseModel):
    message_type: str
    format_version: str = ""
    version: str = ""
    description: str = ""
    segments: List[MigSegment] = Field(default_factory=list)
    segment_groups: List[MigSegmentGroup] = Field(default_factory=list)

    def _first_group_counter(self) -> Optional[int]:
        counters = [g.counter for g in self.segment_groups if g.counter is not None]
        return min(counters) if counters else None

    def segments_before_groups(self) -> List[MigSegment]:
        first = self._first_group_counter()
        if first is None:
            return list(self.segments)
        return [s for s in self.segments if s.counter is None or s.counter < first]

    def segments_after_groups(self) -> List[MigSegment]:
        first = self._first_group_counter()
        if first is None:
            return []
        return [s for s in self.segments if s.counter is not None and s.counter >= first]

    def iter_groups(self) -> Iterator[Tuple[List[str], MigSegmentGroup]]:
        """Yields ``(parent_keys, group)`` for every group, depth first."""
        stack = [([], g) for g in reversed(self.segment_groups)]
        while stack:
            parents, group = stack.pop()
            yield parents, group
            for child in reversed(group.nested_groups):
                stack.append((parents + [group.key], child))

    def find_group(self, key: str) -> Optional[MigSegmentGroup]:
        """Finds a group by variant key or plain id (case-insensitive)."""
        wanted = key.upper()
        fallback = None
        for _, group in self.iter_groups():
            if group.key.upper() == wanted:
                return group
            if fallback is None and group.id.upper() == wanted:
                fallback = group
        return fallback

    def group_path(self, key: str) -> Optional[List[str]]:
        """Keys from the top level down to (and including) the group."""
        wanted = key.upper()
        for parents, group in self.iter_groups():
            if group.key.upper() == wanted or group.id.upper() == wanted:
                return parents + [group.key]
        return None

    def iter_segment_defs(self) -> Iterator[MigSegment]:
        yield from self.segments
        for _, group in self.iter_groups():
            yield from group.segments

    def segment_definition(self, tag: str) -> Optional[MigSegment]:
        """First definition for a tag; used for element structure lookups."""
        return next((s for s in self.iter_segment_defs() if s.id.upper() == tag.upper()), None)


# --- PID schema (per-Pruefidentifikator view produced upstream) ---
class PidComponentSchema(BaseModel):
    id: str
    sub_index: int
    name: str = ""
    codes: List[CodeDefinition] = Field(default_factory=list)


class PidElementSchema(BaseModel):
    id: Optional[str] = None
    composite: Optional[str] = None
    index: int
    name: str = ""
    codes: List[CodeDefinition] = Field(default_factory=list)
    components: List[PidComponentSchema] = Field(default_factory=list)


class PidSegmentSchema(BaseModel):
    id: str
    name: str = ""
    elements: List[PidElementSchema] = Field(default_factory=list)


class PidGroupSchema(BaseModel):
    source_group: str
    discriminator: Optional[str] = Field(None, description="Qualifier value of the entry segment.")
    segments: List[PidSegmentSchema] = Field(default_factory=list)
    children: Dict[str, 'PidGroupSchema'] = Field(default_factory=dict)

    def segment_tags(self) -> List[str]:
        return [s.id.upper() for s in self.segments]


class PidSchema(BaseModel):
    pid: str
    description: str = Field("", validation_alias=AliasChoices("description", "beschreibung"))
    message_type: str = ""
    format_version: str = ""
    root_segments: List[str] = Field(default_factory=list)
    fields: Dict[str, PidGroupSchema] = Field(default_factory=dict)

    def iter_groups(self) -> Iterator[Tuple[str, PidGroupSchema]]:
        stack = list(reversed(self.fields.items()))
        while stack:
            key, group = stack.pop()
            yield key, group
            stack.extend(reversed(group.children.items()))

    def segments(self) -> List[str]:
        tags = [t.upper() for t in self.root_segments]
        for _, group in self.iter_groups():
            tags.extend(t for t in group.segment_tags() if t not in tags)
        return tags

    def groups(self) -> List[str]:
        return [key.upper() for key, _ in self.iter_groups()]

    def qualifier_variants(self) -> Dict[str, str]:
        return {key.upper(): g.discriminator for key, g in self.iter_groups() if g.discriminator}

    def field_ids(self) -> List[str]:
        ids = []
        for _, group in self.iter_groups():
            for segment in group.segments:
                for element in segment.elements:
                    if element.id:
                        ids.append(element.id)
                    ids.extend(c.id for c in element.components)
        return ids


# --- AHB workflow ---
class AhbCode(BaseModel):
    value: str
    description: str = ""
    ahb_status: str = "X"


class AhbFieldRule(BaseModel):
    segment_path: str = Field(description="e.g. 'SG4/SG5/LOC/C517/3225'")
    name: str = ""
    ahb_status: str = ""
    qualifier: Optional[str] = Field(None, description="Qualifier of the segment (element 0, component 0).")
    codes: List[AhbCode] = Field(default_factory=list)

    def group_path(self) -> List[str]:
        return [p for p in self.segment_path.split("/") if p.upper().startswith("SG")]

    def segment_id(self) -> str:
        for part in self.segment_path.split("/"):
            if part.upper().startswith("SG"):
                continue
            if len(part) == 3 and part.isalpha() and part.isupper():
                return part
        return self.segment_path.split("/")[-1]

    def element_ids(self) -> List[str]:
        parts = self.segment_path.split("/")
        tag = self.segment_id()
        if tag not in parts:
            return []
        return parts[parts.index(tag) + 1:]

    def allowed_codes(self) -> List[str]:
        return [c.value for c in self.codes if c.ahb_status.strip() == "X" or c.ahb_status.strip().startswith("Muss")]


class AhbWorkflow(BaseModel):
    pid: str = Field(validation_alias=AliasChoices("pid", "pruefidentifikator"))
    description: str = ""
    communication_direction: Optional[str] = None
    message_type: str = ""
    format_version: str = ""
    numbers: List[str] = Field(default_factory=list, description="MIG segment numbers used by this PID.")
    fields: List[AhbFieldRule] = Field(default_factory=list)


# Rebuild models to resolve forward references.
MigSegmentGroup.model_rebuild()
PidGroupSchema.model_rebuild()
