from enum import Enum
from typing import Iterator, List, Optional

from pydantic import BaseModel, Field

from edifact_models import OwnedSegment

# Hierarchical view of one message: top-level segments, segment groups and
# their repetitions. Produced by the assembler, consumed by the PID filter,
# the mapping engine, the navigator and the disassembler.


def group_matches(group_id: str, wanted: str) -> bool:
    """Exact (case-insensitive) match, or a variant of the wanted family (SG5 -> SG5_Z16)."""
    group_id = group_id.upper()
    wanted = wanted.upper()
    return group_id == wanted or group_id.startswith(wanted + "_")


class SegmentZone(str, Enum):
    MESSAGE_HEADER = "message_header"
    TRANSACTION_HEADER = "transaction_header"
    LOCATIONS = "locations"
    REFERENCES = "references"
    SEQUENCES = "sequences"
    PARTIES = "parties"


ZONE_BY_ENTRY_TAG = {
    "IDE": SegmentZone.TRANSACTION_HEADER,
    "LOC": SegmentZone.LOCATIONS,
    "RFF": SegmentZone.REFERENCES,
    "SEQ": SegmentZone.SEQUENCES,
    "NAD": SegmentZone.PARTIES,
}


class PassthroughSegment(BaseModel):
    """
    A segment the MIG did not expect, kept so it can be replayed.

    ``phase`` and ``index`` record where it was captured inside its instance:
    after ``index`` segments (phase ``segments``), after ``index`` child group
    repetitions (phase ``groups``) or after ``index`` trailing segments (phase ``trailing``).
    """
    raw_text: str
    zone: SegmentZone
    segment: OwnedSegment
    phase: str = "segments"
    index: int = 0


class AssembledGroupInstance(BaseModel):
    segments: List[OwnedSegment] = Field(default_factory=list)
    child_groups: List['AssembledGroup'] = Field(default_factory=list)
    passthrough: List[PassthroughSegment] = Field(default_factory=list)

    @property
    def entry_segment(self) -> Optional[OwnedSegment]:
        return self.segments[0] if self.segments else None

    def get_segment(self, tag: str, qualifier: Optional[str] = None) -> Optional[OwnedSegment]:
        return next(iter(self.get_segments(tag, qualifier)), None)

    def get_segments(self, tag: str, qualifier: Optional[str] = None) -> List[OwnedSegment]:
        found = [s for s in self.segments if s.is_(tag)]
        if qualifier is not None:
            found = [s for s in found if s.get_component(0, 0).strip() == qualifier.strip()]
        return found

    def get_child_group(self, group_id: str) -> Optional['AssembledGroup']:
        return next((g for g in self.child_groups if g.group_id.upper() == group_id.upper()), None)

    def find_child_groups(self, group_id: str) -> List['AssembledGroup']:
        return [g for g in self.child_groups if group_matches(g.group_id, group_id)]

    def child_group_for(self, group_id: str) -> 'AssembledGroup':
        """Returns the last child group with this id, appending a new one if it is not the last."""
        if self.child_groups and self.child_groups[-1].group_id.upper() == group_id.upper():
            return self.child_groups[-1]
        group = AssembledGroup(group_id=group_id)
        self.child_groups.append(group)
        return group

    def iter_segments(self) -> Iterator[OwnedSegment]:
        """Own segments, then child groups depth first (passthrough excluded)."""
        yield from self.segments
        for group in self.child_groups:
            for instance in group.repetitions:
                yield from instance.iter_segments()


class AssembledGroup(BaseModel):
    group_id: str
    repetitions: List[AssembledGroupInstance] = Field(default_factory=list)

    @property
    def base_id(self) -> str:
        return self.group_id.split("_", 1)[0]


class AssembledTree(BaseModel):
    segments_before_groups: List[OwnedSegment] = Field(default_factory=list)
    groups: List[AssembledGroup] = Field(default_factory=list)
    segments_after_groups: List[OwnedSegment] = Field(default_factory=list)
    passthrough: List[PassthroughSegment] = Field(default_factory=list)

    def root_instance(self) -> AssembledGroupInstance:
        """A view of the top level as an instance (trailing segments excluded)."""
        return AssembledGroupInstance(
            segments=list(self.segments_before_groups),
            child_groups=list(self.groups),
            passthrough=[p for p in self.passthrough if p.phase != "trailing"],
        )

    def iter_segments(self) -> Iterator[OwnedSegment]:
        yield from self.segments_before_groups
        for group in self.groups:
            for instance in group.repetitions:
                yield from instance.iter_segments()
        yield from self.segments_after_groups

    def all_segments(self) -> List[OwnedSegment]:
        return list(self.iter_segments())

    def find_group(self, group_id: str) -> Optional[AssembledGroup]:
        return next((g for g in self.groups if g.group_id.upper() == group_id.upper()), None)

    def find_groups(self, group_id: str) -> List[AssembledGroup]:
        return [g for g in self.groups if group_matches(g.group_id, group_id)]


class DiagnosticKind(str, Enum):
    UNEXPECTED_SEGMENT = "UnexpectedSegment"
    MISSING_REQUIRED_SEGMENT = "MissingRequiredSegment"
    MISSING_REQUIRED_GROUP = "MissingRequiredGroup"
    MAX_REPETITIONS_EXCEEDED = "MaxRepetitionsExceeded"
    GROUP_MAX_REPETITIONS_EXCEEDED = "GroupMaxRepetitionsExceeded"
    UNRECOGNIZED_QUALIFIER = "UnrecognizedQualifier"
    SEGMENT_OUT_OF_ORDER = "SegmentOutOfOrder"


class StructureDiagnostic(BaseModel):
    kind: DiagnosticKind
    segment_id: str
    segment_number: int = 0
    group_path: str = ""
    message: str


class AssemblyResult(BaseModel):
    tree: AssembledTree
    diagnostics: List[StructureDiagnostic] = Field(default_factory=list)

    def has_diagnostics(self) -> bool:
        return bool(self.diagnostics)


AssembledGroupInstance.model_rebuild()
