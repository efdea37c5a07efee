"""
MIG-guided assembler.

Consumes the flat segment list of one message (UNH..UNT) in a single
left-to-right pass and builds an ``AssembledTree`` whose shape follows the
MIG. Structure problems never abort the pass; they are collected as
``StructureDiagnostic`` values and unexpected segments are kept as
passthrough segments on the innermost open instance.
"""
import logging
from typing import List, Optional, Set, Tuple

from assembled_tree import (
    ZONE_BY_ENTRY_TAG,
    AssembledGroupInstance,
    AssembledTree,
    AssemblyResult,
    DiagnosticKind,
    PassthroughSegment,
    SegmentZone,
    StructureDiagnostic,
)
from edifact_errors import CursorOutOfBounds
from edifact_models import MessageChunk, OwnedSegment
from mig_schema_models import MigSchema, MigSegment, MigSegmentGroup

logger = logging.getLogger(__name__)

SEGMENTS, GROUPS, TRAILING = "segments", "groups", "trailing"
_PHASE_ORDER = {SEGMENTS: 0, GROUPS: 1, TRAILING: 2}


class SegmentCursor:
    """Read position over a segment list."""

    def __init__(self, segments: List[OwnedSegment]):
        self.segments = segments
        self.position = 0

    def is_exhausted(self) -> bool:
        return self.position >= len(self.segments)

    def peek(self) -> OwnedSegment:
        if self.is_exhausted():
            raise CursorOutOfBounds(self.position, len(self.segments))
        return self.segments[self.position]

    def advance(self) -> OwnedSegment:
        segment = self.peek()
        self.position += 1
        return segment

    def remaining(self) -> int:
        return max(0, len(self.segments) - self.position)

    def save(self) -> int:
        return self.position

    def restore(self, position: int) -> None:
        if not 0 <= position <= len(self.segments):
            raise CursorOutOfBounds(position, len(self.segments))
        self.position = position


class _GroupFrame:
    """The group list of one open level, with the index of the group currently open."""

    def __init__(self, groups: List[MigSegmentGroup], trailing: Optional[List[MigSegment]] = None):
        if groups and all(g.counter is not None for g in groups):
            groups = sorted(groups, key=lambda g: g.counter)
        self.groups = groups
        self.trailing = trailing or []
        self.index = 0
        self.used: Set[int] = set()

    def match(self, segment: OwnedSegment) -> Optional[int]:
        # Groups are in counter order, so the first hit has the lowest counter.
        for k in range(self.index, len(self.groups)):
            if self.groups[k].opens_with(segment):
                return k
        return None

    def has_qualifier_family(self, segment: OwnedSegment) -> bool:
        return any(
            g.discriminator is not None and g.entry_tag_matches(segment)
            for g in self.groups[self.index:]
        )

    def accepts(self, segment: OwnedSegment) -> bool:
        if self.match(segment) is not None:
            return True
        return any(t.matches(segment) for t in self.trailing)


def _match_position(
    segment: OwnedSegment,
    defs: List[MigSegment],
    start: int,
    counts: List[int],
) -> Tuple[Optional[int], bool]:
    """First MIG position at or after ``start`` taking the segment; flags a max_rep overflow."""
    exhausted = None
    for j in range(start, len(defs)):
        if not defs[j].matches(segment):
            continue
        if counts[j] < defs[j].max_rep:
            return j, False
        if exhausted is None:
            exhausted = j
    if exhausted is not None:
        return exhausted, True
    return None, False


class Assembler:
    def __init__(self, mig: MigSchema):
        self.mig = mig
        self.diagnostics: List[StructureDiagnostic] = []

    def assemble_message(self, message: MessageChunk) -> AssemblyResult:
        return self.assemble(message.all_segments())

    def assemble(self, segments: List[OwnedSegment]) -> AssemblyResult:
        self.diagnostics = []
        tree = AssembledTree()
        root = AssembledGroupInstance()
        cursor = SegmentCursor(segments)
        root_frame = _GroupFrame(self.mig.segment_groups, self.mig.segments_after_groups())

        logger.debug(f"[ASSEMBLE START] {len(segments)} segments against MIG {self.mig.message_type} {self.mig.format_version}")
        self._consume_body(
            cursor=cursor,
            instance=root,
            segment_defs=self.mig.segments_before_groups(),
            frame=root_frame,
            outer=[],
            group_path=[],
            zone=SegmentZone.MESSAGE_HEADER,
            trailing_out=tree.segments_after_groups,
            depth=0,
        )

        tree.segments_before_groups = root.segments
        tree.groups = root.child_groups
        tree.passthrough = root.passthrough

        logger.info(
            f"--- ASSEMBLY SUMMARY: {len(segments)} segments, {len(tree.groups)} top-level group(s), "
            f"{len(tree.passthrough)} top-level passthrough, {len(self.diagnostics)} diagnostic(s) ---"
        )
        return AssemblyResult(tree=tree, diagnostics=list(self.diagnostics))

    def _diagnose(self, kind: DiagnosticKind, segment_id: str, segment_number: int, group_path: List[str], message: str):
        path = "/".join(group_path) or "root"
        logger.debug(f"[STRUCTURE] {kind.value} at {path}: {message}")
        self.diagnostics.append(StructureDiagnostic(
            kind=kind,
            segment_id=segment_id,
            segment_number=segment_number,
            group_path="/".join(group_path),
            message=message,
        ))

    def _consume_body(
        self,
        cursor: SegmentCursor,
        instance: AssembledGroupInstance,
        segment_defs: List[MigSegment],
        frame: _GroupFrame,
        outer: List[_GroupFrame],
        group_path: List[str],
        zone: SegmentZone,
        trailing_out: Optional[List[OwnedSegment]],
        depth: int,
        start_position: int = 0,
    ) -> None:
        indent = "  " * depth
        where = "/".join(group_path) or "root"
        phase = SEGMENTS
        seg_pos = start_position
        seg_counts = [0] * len(segment_defs)
        if start_position and segment_defs:
            seg_counts[0] = 1
        trailing_defs = frame.trailing
        trail_pos = 0
        trail_counts = [0] * len(trailing_defs)
        last_number = instance.segments[-1].segment_number if instance.segments else 0

        while not cursor.is_exhausted():
            segment = cursor.peek()
            last_number = segment.segment_number or last_number
            elsewhere = frame.match(segment) is not None or any(f.accepts(segment) for f in outer)

            # 1. Own segment positions, in MIG order.
            if phase == SEGMENTS:
                j, exceeded = _match_position(segment, segment_defs, seg_pos, seg_counts)
                if j is not None and not (exceeded and (elsewhere or self._is_trailing(segment, trailing_defs))):
                    if exceeded:
                        self._diagnose(
                            DiagnosticKind.MAX_REPETITIONS_EXCEEDED, segment.id, segment.segment_number, group_path,
                            f"Segment '{segment.id}' exceeds max repetitions {segment_defs[j].max_rep} in {where}",
                        )
                    logger.debug(f"{indent}[MATCH] '{segment.id}' (#{segment.segment_number}) -> {where} position {j}")
                    seg_pos = j
                    seg_counts[j] += 1
                    instance.segments.append(cursor.advance())
                    continue

            # 2. Nested groups.
            if _PHASE_ORDER[phase] <= _PHASE_ORDER[GROUPS]:
                k = frame.match(segment)
                if k is not None:
                    phase = GROUPS
                    self._open_repetition(cursor, instance, frame, k, outer, group_path, zone, depth)
                    continue

            # 3. Trailing segments (top level only).
            if trailing_defs:
                j, exceeded = _match_position(segment, trailing_defs, trail_pos, trail_counts)
                if j is not None:
                    phase = TRAILING
                    if exceeded:
                        self._diagnose(
                            DiagnosticKind.MAX_REPETITIONS_EXCEEDED, segment.id, segment.segment_number, group_path,
                            f"Segment '{segment.id}' exceeds max repetitions {trailing_defs[j].max_rep}",
                        )
                    trail_pos = j
                    trail_counts[j] += 1
                    trailing_out.append(cursor.advance())
                    continue

            # 4. Belongs to an enclosing level: close this instance.
            if any(f.accepts(segment) for f in outer):
                logger.debug(f"{indent}[CLOSE] '{segment.id}' belongs to an enclosing level; closing {where}")
                break

            # 5. Nothing expects it: keep as passthrough.
            self._capture_passthrough(cursor, instance, segment_defs, seg_pos, frame, outer, phase, group_path,
                                      zone, trailing_out)

        self._report_missing(segment_defs, seg_counts, frame, trailing_defs, trail_counts, group_path, last_number)

    @staticmethod
    def _is_trailing(segment: OwnedSegment, trailing_defs: List[MigSegment]) -> bool:
        return any(t.matches(segment) for t in trailing_defs)

    def _open_repetition(
        self,
        cursor: SegmentCursor,
        parent: AssembledGroupInstance,
        frame: _GroupFrame,
        k: int,
        outer: List[_GroupFrame],
        group_path: List[str],
        zone: SegmentZone,
        depth: int,
    ) -> None:
        group_def = frame.groups[k]
        frame.index = k
        frame.used.add(k)
        entry = cursor.advance()
        assembled = parent.child_group_for(group_def.key)
        child_path = group_path + [group_def.key]

        if len(assembled.repetitions) >= group_def.max_rep:
            self._diagnose(
                DiagnosticKind.GROUP_MAX_REPETITIONS_EXCEEDED, entry.id, entry.segment_number, child_path,
                f"Group '{group_def.key}' exceeds max repetitions {group_def.max_rep}",
            )

        logger.debug(f"{'  ' * depth}[OPEN] {group_def.key} repetition {len(assembled.repetitions) + 1} at '{entry.id}' (#{entry.segment_number})")
        child = AssembledGroupInstance(segments=[entry])
        assembled.repetitions.append(child)
        self._consume_body(
            cursor=cursor,
            instance=child,
            segment_defs=group_def.segments,
            frame=_GroupFrame(group_def.nested_groups),
            outer=outer + [frame],
            group_path=child_path,
            zone=ZONE_BY_ENTRY_TAG.get(entry.id.upper(), zone),
            trailing_out=None,
            depth=depth + 1,
            start_position=1,
        )

    def _capture_passthrough(
        self,
        cursor: SegmentCursor,
        instance: AssembledGroupInstance,
        segment_defs: List[MigSegment],
        seg_pos: int,
        frame: _GroupFrame,
        outer: List[_GroupFrame],
        phase: str,
        group_path: List[str],
        zone: SegmentZone,
        trailing_out: Optional[List[OwnedSegment]],
    ) -> None:
        segment = cursor.advance()
        where = "/".join(group_path) or "root"
        if frame.has_qualifier_family(segment) or any(f.has_qualifier_family(segment) for f in outer):
            kind = DiagnosticKind.UNRECOGNIZED_QUALIFIER
            message = f"Qualifier '{segment.get_component(0, 0)}' of '{segment.id}' matches no group variant in {where}"
        elif any(d.matches(segment) for d in segment_defs[:seg_pos]):
            kind = DiagnosticKind.SEGMENT_OUT_OF_ORDER
            message = f"Segment '{segment.id}' appears out of MIG order in {where}"
        else:
            kind = DiagnosticKind.UNEXPECTED_SEGMENT
            message = f"Unexpected segment '{segment.id}' in {where}"
        self._diagnose(kind, segment.id, segment.segment_number, group_path, message)

        if phase == SEGMENTS:
            index = len(instance.segments)
        elif phase == GROUPS:
            index = sum(len(g.repetitions) for g in instance.child_groups)
        else:
            index = len(trailing_out or [])
        instance.passthrough.append(PassthroughSegment(
            raw_text=segment.raw,
            zone=zone,
            segment=segment,
            phase=phase,
            index=index,
        ))

    def _report_missing(
        self,
        segment_defs: List[MigSegment],
        seg_counts: List[int],
        frame: _GroupFrame,
        trailing_defs: List[MigSegment],
        trail_counts: List[int],
        group_path: List[str],
        segment_number: int,
    ) -> None:
        where = "/".join(group_path) or "root"
        for definition, count in list(zip(segment_defs, seg_counts)) + list(zip(trailing_defs, trail_counts)):
            if count == 0 and definition.min_rep > 0:
                self._diagnose(
                    DiagnosticKind.MISSING_REQUIRED_SEGMENT, definition.id, segment_number, group_path,
                    f"Required segment '{definition.id}' ({definition.name}) is missing from '{where}'",
                )
        for k, group in enumerate(frame.groups):
            if k not in frame.used and group.min_rep > 0:
                self._diagnose(
                    DiagnosticKind.MISSING_REQUIRED_GROUP, group.entry_segment.id if group.entry_segment else group.id,
                    segment_number, group_path,
                    f"Required group '{group.key}' ({group.name}) is missing from '{where}'",
                )


def assemble(segments: List[OwnedSegment], mig: MigSchema) -> AssemblyResult:
    return Assembler(mig).assemble(segments)
