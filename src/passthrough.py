"""
Keeps what the mapping definitions do not carry.

Forward conversion rebuilds every scope (the message root and each
transaction) from its own BO4E output and compares the result with the
assembled original, level by level. Whatever the rebuilt scope lacks or
renders differently becomes a ``PassthroughRecord``:

* ``insert``: an original segment the rebuilt scope has no counterpart for
  (unknown to the MIG, or not mapped), or a whole unmapped group repetition;
* ``replace``: an original segment whose rebuilt form differs, for example
  because a component is not mapped; keyed by the rebuilt rendering;
* ``drop``: a rebuilt segment the original did not have.

Records carry the group path of the instance they belong to (``SG5_Z16#0``
steps: group id and ordinal among the repetitions with that id) plus the
phase and index the disassembler replays them at. Reverse conversion applies
them to the rebuilt scope before disassembly.
"""
import logging
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

from assembled_tree import (
    AssembledGroupInstance,
    PassthroughSegment,
    SegmentZone,
    ZONE_BY_ENTRY_TAG,
    group_matches,
)
from bo4e_model import PassthroughRecord
from disassembler import Disassembler
from edifact_models import OwnedSegment
from edifact_renderer import EdifactRenderer
from edifact_tokenizer import EdifactTokenizer
from mig_schema_models import MigSegment, MigSegmentGroup

logger = logging.getLogger(__name__)

INSERT = "insert"
REPLACE = "replace"
DROP = "drop"

SEGMENTS = "segments"
GROUPS = "groups"
TRAILING = "trailing"

_canonical = EdifactRenderer()

Item = Union[OwnedSegment, PassthroughSegment]


def segment_key(segment: OwnedSegment) -> str:
    """Rendering with the default delimiters; equal keys emit equal text."""
    return _canonical.render_segment(segment)


def path_step(group_id: str, ordinal: int) -> str:
    return f"{group_id}#{ordinal}"


def _merged(items: list, passthrough: List[PassthroughSegment], phase: str) -> list:
    """``items`` with the passthrough of one phase at its captured index, in emission order."""
    pending = [p for p in passthrough if p.phase == phase]
    merged = []
    for i, item in enumerate(items):
        merged.extend(p for p in pending if p.index == i)
        merged.append(item)
    merged.extend(p for p in pending if p.index >= len(items))
    return merged


def _repetitions_with_id(instance: AssembledGroupInstance, group_id: str) -> List[AssembledGroupInstance]:
    return [
        repetition
        for group in instance.child_groups if group.group_id.upper() == group_id.upper()
        for repetition in group.repetitions
    ]


def _zone_of(instance: AssembledGroupInstance, parent: SegmentZone) -> SegmentZone:
    entry = instance.entry_segment
    if entry is None:
        return parent
    return ZONE_BY_ENTRY_TAG.get(entry.id.upper(), parent)


class _Records:
    def __init__(self, transaction_index: Optional[int]):
        self.transaction_index = transaction_index
        self.items: List[PassthroughRecord] = []

    def add(self, action: str, raw: str, zone: SegmentZone, path: List[str], phase: str = SEGMENTS,
            index: int = 0, replaces: Optional[str] = None) -> None:
        self.items.append(PassthroughRecord(
            raw=raw,
            zone=zone.value,
            transaction_index=self.transaction_index,
            phase=phase,
            index=index,
            group_path=list(path),
            action=action,
            replaces=replaces,
        ))


class PassthroughRecorder:
    """
    Compares an assembled scope with the scope rebuilt from its BO4E output.

    ``opaque_group`` names a group whose repetitions are matched one to one
    at the top level but not compared (the transactions, recorded per
    transaction instead).
    """

    def __init__(self, disassembler: Disassembler, renderer: EdifactRenderer, opaque_group: Optional[str] = None):
        self.disassembler = disassembler
        self.renderer = renderer
        self.opaque_group = opaque_group

    def record(
        self,
        original: AssembledGroupInstance,
        rebuilt: AssembledGroupInstance,
        segment_defs: Sequence[MigSegment],
        group_defs: Sequence[MigSegmentGroup],
        zone: SegmentZone,
        transaction_index: Optional[int] = None,
    ) -> List[PassthroughRecord]:
        records = _Records(transaction_index)
        self._compare(original, rebuilt, segment_defs, group_defs, [], zone, records)
        return records.items

    @staticmethod
    def record_trailing(passthrough: List[PassthroughSegment]) -> List[PassthroughRecord]:
        """Unexpected segments between the last group and UNT."""
        records = _Records(None)
        for p in passthrough:
            if p.phase == TRAILING:
                records.add(INSERT, p.raw_text, p.zone, [], TRAILING, p.index)
        return records.items

    def _raw(self, item: Item) -> str:
        if isinstance(item, PassthroughSegment):
            return item.raw_text
        if item.raw:
            return item.raw
        return self.renderer.render_segment(item)[:-len(self.renderer.delimiters.segment)]

    def _compare(self, original, rebuilt, segment_defs, group_defs, path, zone, records) -> None:
        self._compare_segments(original, rebuilt, segment_defs, path, zone, records)
        self._compare_groups(original, rebuilt, group_defs, path, zone, records)

    def _compare_segments(
        self,
        original: AssembledGroupInstance,
        rebuilt: AssembledGroupInstance,
        segment_defs: Sequence[MigSegment],
        path: List[str],
        zone: SegmentZone,
        records: _Records,
    ) -> None:
        items = _merged(original.segments, original.passthrough, SEGMENTS)
        targets = self.disassembler.ordered_segments(rebuilt.segments, segment_defs)
        item_keys = [segment_key(i.segment if isinstance(i, PassthroughSegment) else i) for i in items]
        target_keys = [segment_key(s) for s in targets]

        kept = 0
        matcher = SequenceMatcher(None, item_keys, target_keys, autojunk=False)
        for tag, i1, i2, j1, j2 in matcher.get_opcodes():
            if tag == "equal":
                kept += j2 - j1
                continue
            pending = list(range(j1, j2))
            for item in items[i1:i2]:
                match = None
                if not isinstance(item, PassthroughSegment):
                    match = next((j for j in pending if self._same_slot(item, targets[j])), None)
                if match is None:
                    item_zone = item.zone if isinstance(item, PassthroughSegment) else zone
                    records.add(INSERT, self._raw(item), item_zone, path, SEGMENTS, kept)
                    continue
                while pending[0] != match:
                    records.add(DROP, target_keys[pending.pop(0)], zone, path)
                pending.pop(0)
                records.add(REPLACE, self._raw(item), zone, path, replaces=target_keys[match])
                kept += 1
            for j in pending:
                records.add(DROP, target_keys[j], zone, path)

    @staticmethod
    def _same_slot(segment: OwnedSegment, other: OwnedSegment) -> bool:
        return segment.is_(other.id) and segment.get_component(0, 0) == other.get_component(0, 0)

    def _compare_groups(
        self,
        original: AssembledGroupInstance,
        rebuilt: AssembledGroupInstance,
        group_defs: Sequence[MigSegmentGroup],
        path: List[str],
        zone: SegmentZone,
        records: _Records,
    ) -> None:
        ordered = self.disassembler.ordered_repetitions(rebuilt.child_groups, group_defs)
        position = {id(rep): p for p, (_, rep) in enumerate(ordered)}

        steps: Dict[int, str] = {}
        seen: Dict[str, int] = {}
        for group in rebuilt.child_groups:
            for repetition in group.repetitions:
                ordinal = seen.get(group.group_id.upper(), 0)
                seen[group.group_id.upper()] = ordinal + 1
                steps[id(repetition)] = path_step(group.group_id, ordinal)

        originals = [(g.group_id, rep) for g in original.child_groups for rep in g.repetitions]
        matched: Set[int] = set()
        ordinals: Dict[str, int] = {}
        cursor = 0
        for item in _merged(originals, original.passthrough, GROUPS):
            if isinstance(item, PassthroughSegment):
                records.add(INSERT, item.raw_text, item.zone, path, GROUPS, cursor)
                continue
            group_id, repetition = item
            ordinal = ordinals.get(group_id.upper(), 0)
            ordinals[group_id.upper()] = ordinal + 1
            child_zone = _zone_of(repetition, zone)
            candidates = _repetitions_with_id(rebuilt, group_id)
            if ordinal >= len(candidates):
                for raw, raw_zone in self._flatten(repetition, child_zone):
                    records.add(INSERT, raw, raw_zone, path, GROUPS, cursor)
                continue

            counterpart = candidates[ordinal]
            matched.add(id(counterpart))
            cursor = max(cursor, position[id(counterpart)] + 1)
            if not path and self.opaque_group and group_matches(group_id, self.opaque_group):
                continue
            definition = ordered[position[id(counterpart)]][0]
            self._compare(
                repetition,
                counterpart,
                definition.segments if definition else [],
                definition.nested_groups if definition else [],
                path + [path_step(group_id, ordinal)],
                child_zone,
                records,
            )

        for _, repetition in ordered:
            if id(repetition) not in matched:
                self._drop_all(repetition, path + [steps[id(repetition)]], _zone_of(repetition, zone), records)

    def _drop_all(self, instance: AssembledGroupInstance, path: List[str], zone: SegmentZone, records: _Records) -> None:
        for segment in instance.segments:
            records.add(DROP, segment_key(segment), zone, path)
        seen: Dict[str, int] = {}
        for group in instance.child_groups:
            for repetition in group.repetitions:
                ordinal = seen.get(group.group_id.upper(), 0)
                seen[group.group_id.upper()] = ordinal + 1
                self._drop_all(repetition, path + [path_step(group.group_id, ordinal)], _zone_of(repetition, zone), records)

    def _flatten(self, instance: AssembledGroupInstance, zone: SegmentZone) -> List[Tuple[str, SegmentZone]]:
        """The source text of a whole repetition, in source order."""
        emitted = []
        for item in _merged(instance.segments, instance.passthrough, SEGMENTS):
            emitted.append((self._raw(item), item.zone if isinstance(item, PassthroughSegment) else zone))
        repetitions = [rep for g in instance.child_groups for rep in g.repetitions]
        for item in _merged(repetitions, instance.passthrough, GROUPS):
            if isinstance(item, PassthroughSegment):
                emitted.append((item.raw_text, item.zone))
            else:
                emitted.extend(self._flatten(item, _zone_of(item, zone)))
        return emitted


def resolve_path(instance: AssembledGroupInstance, steps: Sequence[str]) -> Optional[AssembledGroupInstance]:
    current = instance
    for step in steps:
        group_id, _, ordinal = step.rpartition("#")
        if not group_id or not ordinal.isdigit():
            return None
        repetitions = _repetitions_with_id(current, group_id)
        if int(ordinal) >= len(repetitions):
            return None
        current = repetitions[int(ordinal)]
    return current


def _find(instance: AssembledGroupInstance, key: str, replaced: Set[int]) -> Optional[int]:
    return next(
        (i for i, s in enumerate(instance.segments) if id(s) not in replaced and segment_key(s) == key),
        None,
    )


def apply_records(instance: AssembledGroupInstance, records: Sequence[PassthroughRecord], tokenizer: EdifactTokenizer) -> int:
    """Applies records to a rebuilt scope in place; returns how many could not be applied."""
    replaced: Set[int] = set()
    skipped = 0
    for record in records:
        target = resolve_path(instance, record.group_path)
        phase, index = record.phase, record.index
        if target is None:
            if record.action != INSERT:
                logger.warning(f"Group path {'/'.join(record.group_path)} not found; '{record.raw}' not applied")
                skipped += 1
                continue
            logger.warning(f"Group path {'/'.join(record.group_path)} not found; '{record.raw}' goes to the end of the scope")
            target = instance
            phase, index = GROUPS, sum(len(g.repetitions) for g in instance.child_groups)

        if record.action == INSERT:
            target.passthrough.append(PassthroughSegment(
                raw_text=record.raw,
                zone=SegmentZone(record.zone),
                segment=tokenizer.split_segment(record.raw.encode("utf-8"), 0),
                phase=phase,
                index=index,
            ))
        elif record.action == REPLACE:
            position = _find(target, record.replaces or "", replaced)
            if position is None:
                logger.warning(f"No segment '{record.replaces}' to replace with '{record.raw}'")
                skipped += 1
                continue
            segment = tokenizer.split_segment(record.raw.encode("utf-8"), 0)
            target.segments[position] = segment
            replaced.add(id(segment))
        elif record.action == DROP:
            position = _find(target, record.raw, replaced)
            if position is None:
                logger.debug(f"Segment '{record.raw}' already absent")
                continue
            del target.segments[position]
        else:
            logger.warning(f"Unknown passthrough action '{record.action}' for '{record.raw}'")
            skipped += 1
    return skipped
