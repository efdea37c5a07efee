"""
Pruefidentifikator (PID) detection and PID-specific filtering.

``detect_pid`` derives the PID of a message from ``RFF+Z13`` or, failing
that, from the BGM document code combined with the STS transaction reason.
``filter_tree_for_pid`` prunes an assembled tree to what a PID schema
declares, and ``filter_mig_for_pid`` narrows a MIG to the segment numbers an
AHB uses. Both filters leave their input untouched.
"""
import logging
from typing import Dict, Iterable, List, Optional, Set, Union

from pydantic import BaseModel

from assembled_tree import AssembledGroup, AssembledGroupInstance, AssembledTree
from edifact_errors import PidDetectionFailed, UnknownPid
from edifact_models import OwnedSegment
from mig_schema_models import MigSchema, MigSegment, MigSegmentGroup, PidGroupSchema, PidSchema

logger = logging.getLogger(__name__)

TRANSPORT_SEGMENTS = ("UNA", "UNB", "UNZ")
MESSAGE_SERVICE_SEGMENTS = ("UNH", "UNT")


class PidRule(BaseModel):
    document_code: str
    reason_code: Optional[str] = None
    pid: str


DEFAULT_PID_RULES: List[PidRule] = [
    PidRule(document_code="E01", reason_code="Z33", pid="55001"),
    PidRule(document_code="E01", reason_code="Z34", pid="55002"),
    PidRule(document_code="E01", reason_code="Z35", pid="55003"),
    PidRule(document_code="E02", reason_code="Z33", pid="55101"),
    PidRule(document_code="E02", reason_code="Z34", pid="55102"),
    PidRule(document_code="E03", reason_code="Z33", pid="55201"),
    PidRule(document_code="E01", pid="55001"),
    PidRule(document_code="E02", pid="55101"),
    PidRule(document_code="E03", pid="55201"),
]


def _segments_of(source: Union[AssembledTree, Iterable[OwnedSegment]]) -> List[OwnedSegment]:
    if isinstance(source, AssembledTree):
        return source.all_segments()
    return list(source)


def detect_pid(
    source: Union[AssembledTree, Iterable[OwnedSegment]],
    rules: Optional[List[PidRule]] = None,
    known_pids: Optional[Set[str]] = None,
) -> str:
    rules = DEFAULT_PID_RULES if rules is None else rules
    segments = _segments_of(source)

    def _checked(pid: str, origin: str) -> str:
        if known_pids is not None and pid not in known_pids:
            raise UnknownPid(pid)
        logger.debug(f"Detected PID {pid} from {origin}")
        return pid

    for segment in segments:
        if segment.is_("RFF") and segment.get_component(0, 0).strip() == "Z13":
            pid = segment.get_component(0, 1).strip()
            if pid:
                return _checked(pid, "RFF+Z13")

    bgm = next((s for s in segments if s.is_("BGM")), None)
    document_code = bgm.get_element(0).strip() if bgm is not None else ""
    if not document_code:
        raise PidDetectionFailed("Neither RFF+Z13 nor a BGM document code is present")

    sts = next((s for s in segments if s.is_("STS")), None)
    reason_code = sts.get_component(1, 0).strip() if sts is not None else ""

    for rule in rules:
        if rule.document_code == document_code and rule.reason_code and rule.reason_code == reason_code:
            return _checked(rule.pid, f"BGM {document_code} / STS {reason_code}")
    for rule in rules:
        if rule.document_code == document_code and rule.reason_code is None:
            return _checked(rule.pid, f"BGM {document_code}")

    raise UnknownPid(f"BGM {document_code}" + (f" / STS {reason_code}" if reason_code else ""))


# --- Tree filter ---

def _schema_for_instance(
    group: AssembledGroup,
    instance: AssembledGroupInstance,
    allowed: Dict[str, PidGroupSchema],
) -> Optional[PidGroupSchema]:
    entry = instance.entry_segment
    qualifier = entry.get_component(0, 0).strip() if entry is not None else ""
    for key, schema in allowed.items():
        if key.upper() == group.group_id.upper():
            if schema.discriminator is None or schema.discriminator == qualifier:
                return schema
    for key, schema in allowed.items():
        if schema.source_group.upper() != group.base_id.upper():
            continue
        if schema.discriminator is None or schema.discriminator == qualifier:
            return schema
    return None


def _filter_instance(instance: AssembledGroupInstance, schema: PidGroupSchema) -> AssembledGroupInstance:
    tags = set(schema.segment_tags())
    if tags:
        kept = instance.segments[:1] + [s for s in instance.segments[1:] if s.id.upper() in tags]
        dropped = len(instance.segments) - len(kept)
        if dropped:
            logger.debug(f"PID filter dropped {dropped} segment(s) from a {schema.source_group} instance")
        instance.segments = kept
    instance.child_groups = _filter_groups(instance.child_groups, schema.children)
    return instance


def _filter_groups(groups: List[AssembledGroup], allowed: Dict[str, PidGroupSchema]) -> List[AssembledGroup]:
    kept_groups = []
    for group in groups:
        repetitions = []
        for instance in group.repetitions:
            schema = _schema_for_instance(group, instance, allowed)
            if schema is None:
                continue
            repetitions.append(_filter_instance(instance, schema))
        if repetitions:
            group.repetitions = repetitions
            kept_groups.append(group)
        else:
            logger.debug(f"PID filter dropped group {group.group_id}")
    return kept_groups


def filter_tree_for_pid(tree: AssembledTree, pid_schema: PidSchema) -> AssembledTree:
    filtered = tree.model_copy(deep=True)
    if pid_schema.root_segments:
        allowed = {t.upper() for t in pid_schema.root_segments} | set(MESSAGE_SERVICE_SEGMENTS)
        filtered.segments_before_groups = [s for s in filtered.segments_before_groups if s.id.upper() in allowed]
        filtered.segments_after_groups = [s for s in filtered.segments_after_groups if s.id.upper() in allowed]
    filtered.groups = _filter_groups(filtered.groups, pid_schema.fields)
    logger.info(f"Filtered tree for PID {pid_schema.pid}: {len(filtered.groups)} top-level group(s) kept")
    return filtered


# --- MIG filter by AHB segment numbers ---

def _keep_segment(segment: MigSegment, numbers: Set[str]) -> bool:
    if segment.id.upper() in TRANSPORT_SEGMENTS:
        return True
    return segment.number is None or segment.number in numbers


def _filter_mig_groups(groups: List[MigSegmentGroup], numbers: Set[str]) -> List[MigSegmentGroup]:
    kept = []
    for group in groups:
        entry = group.entry_segment
        if entry is None or not _keep_segment(entry, numbers):
            continue
        kept.append(group.model_copy(update={
            "segments": [s for s in group.segments if _keep_segment(s, numbers)],
            "nested_groups": _filter_mig_groups(group.nested_groups, numbers),
        }))
    return kept


def filter_mig_for_pid(mig: MigSchema, numbers: Set[str]) -> MigSchema:
    return mig.model_copy(update={
        "segments": [s for s in mig.segments if _keep_segment(s, numbers)],
        "segment_groups": _filter_mig_groups(mig.segment_groups, numbers),
    })
