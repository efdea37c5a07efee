import logging
from typing import Callable, List, Optional, Sequence, Tuple

from assembled_tree import AssembledGroup, AssembledGroupInstance, AssembledTree, PassthroughSegment, group_matches
from edifact_models import OwnedSegment
from mapping_engine import mig_position
from mig_schema_models import MigSchema, MigSegment, MigSegmentGroup

logger = logging.getLogger(__name__)


def group_def_for(group: AssembledGroup, defs: Sequence[MigSegmentGroup]) -> Optional[MigSegmentGroup]:
    exact = next((d for d in defs if d.key.upper() == group.group_id.upper()), None)
    if exact is not None:
        return exact
    return next((d for d in defs if group_matches(group.group_id, d.id)), None)


def _replay(items: list, passthrough: List[PassthroughSegment], phase: str,
            emit_item: Callable, out: List[OwnedSegment]) -> None:
    """Emits ``items`` with the passthrough segments of one phase at their captured index."""
    pending = [p for p in passthrough if p.phase == phase]
    for i, item in enumerate(items):
        out.extend(p.segment for p in pending if p.index == i)
        emit_item(item)
    out.extend(p.segment for p in pending if p.index >= len(items))


class Disassembler:
    """
    Flattens an assembled tree back into a segment list in MIG order.

    Segments of an instance are ordered by their MIG position (stable for equal
    positions), child groups by MIG counter, and passthrough segments are put
    back where the assembler captured them (counted in segments or in group
    repetitions). Without a MIG the tree order is kept.
    """

    def __init__(self, mig: Optional[MigSchema] = None):
        self.mig = mig

    def disassemble(self, tree: AssembledTree) -> List[OwnedSegment]:
        out: List[OwnedSegment] = []
        before = self.mig.segments_before_groups() if self.mig else []
        groups = self.mig.segment_groups if self.mig else []
        root = AssembledGroupInstance(
            segments=tree.segments_before_groups,
            child_groups=tree.groups,
            passthrough=tree.passthrough,
        )
        self._emit_instance(root, before, groups, out)

        after = self.mig.segments_after_groups() if self.mig else []
        trailing = self.ordered_segments(tree.segments_after_groups, after)
        _replay(trailing, tree.passthrough, "trailing", out.append, out)
        logger.debug(f"Disassembled tree into {len(out)} segment(s)")
        return out

    def disassemble_instance(self, instance: AssembledGroupInstance, group_def: Optional[MigSegmentGroup] = None) -> List[OwnedSegment]:
        out: List[OwnedSegment] = []
        self._emit_instance(
            instance,
            group_def.segments if group_def else [],
            group_def.nested_groups if group_def else [],
            out,
        )
        return out

    def ordered_segments(self, segments: List[OwnedSegment], defs: Sequence[MigSegment]) -> List[OwnedSegment]:
        if not defs:
            return list(segments)
        return sorted(segments, key=lambda s: mig_position(s, defs))

    def ordered_groups(self, groups: List[AssembledGroup], defs: Sequence[MigSegmentGroup]) -> List[AssembledGroup]:
        if not defs:
            return list(groups)

        def counter(group: AssembledGroup) -> int:
            definition = group_def_for(group, defs)
            if definition is None or definition.counter is None:
                return len(defs) * 1000
            return definition.counter

        return sorted(groups, key=counter)

    def ordered_repetitions(
        self, groups: List[AssembledGroup], defs: Sequence[MigSegmentGroup]
    ) -> List[Tuple[Optional[MigSegmentGroup], AssembledGroupInstance]]:
        """Every repetition in emission order, with the definition of its group."""
        items = []
        for group in self.ordered_groups(groups, defs):
            definition = group_def_for(group, defs)
            if definition is None and self.mig is not None:
                logger.warning(f"Group '{group.group_id}' is not declared at this level; emitting in tree order")
            items.extend((definition, repetition) for repetition in group.repetitions)
        return items

    def _emit_instance(
        self,
        instance: AssembledGroupInstance,
        segment_defs: Sequence[MigSegment],
        group_defs: Sequence[MigSegmentGroup],
        out: List[OwnedSegment],
    ) -> None:
        segments = self.ordered_segments(instance.segments, segment_defs)
        _replay(segments, instance.passthrough, "segments", out.append, out)

        def emit_repetition(item: Tuple[Optional[MigSegmentGroup], AssembledGroupInstance]) -> None:
            definition, repetition = item
            self._emit_instance(
                repetition,
                definition.segments if definition else [],
                definition.nested_groups if definition else [],
                out,
            )

        _replay(self.ordered_repetitions(instance.child_groups, group_defs), instance.passthrough, "groups",
                emit_repetition, out)


def disassemble(tree: AssembledTree, mig: Optional[MigSchema] = None) -> List[OwnedSegment]:
    return Disassembler(mig).disassemble(tree)
