"""
End-to-end conversion between EDIFACT interchanges and BO4E JSON.

Forward: tokenize, split into messages, assemble each message against its MIG,
detect the Pruefidentifikator, then map message-level definitions on the
message root and transaction-level definitions on every transaction group
repetition. Whatever the mappings do not carry is kept as passthrough
records (see ``passthrough``). Reverse runs the same steps backwards, applies
those records and recomputes the UNT and UNZ counts.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from assembled_tree import AssembledGroup, AssembledGroupInstance, AssembledTree, SegmentZone, StructureDiagnostic
from bo4e_model import Bo4eInterchange, Bo4eMessage, LinkRegistry, MappingIssue, PassthroughRecord, TraceEntry
from disassembler import Disassembler
from edifact_errors import AssemblyError, PidDetectionFailed, UnknownPid
from edifact_models import Delimiters, MessageChunk, OwnedSegment
from edifact_parser import parse_to_segments, split_messages
from edifact_renderer import EdifactRenderer
from edifact_tokenizer import EdifactTokenizer, detect_delimiters
from mapping_definition import MappingSet
from mapping_engine import ForwardResult, MappingEngine
from mig_assembler import Assembler
from mig_schema_models import MigSchema
from passthrough import PassthroughRecorder, apply_records
from pid_detection import detect_pid, filter_tree_for_pid
from schema_manager import SchemaManager

logger = logging.getLogger(__name__)

DEFAULT_TRANSACTION_GROUP = "SG4"


class ConversionResult:
    """Forward conversion output plus everything that was noticed on the way."""

    def __init__(self, interchange: Bo4eInterchange):
        self.interchange = interchange
        self.issues: List[MappingIssue] = []
        self.diagnostics: List[StructureDiagnostic] = []
        self.links = LinkRegistry()

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.interchange.to_json_dict(), indent=indent, ensure_ascii=False)


class ConversionService:
    """
    Coordinates one conversion at a time; not shared between threads.

    MIGs come from ``mig`` or, per message type, from the schema manager.
    Mapping engines are built lazily per MIG and reused.
    """

    def __init__(
        self,
        mapping_set: MappingSet,
        schema_manager: Optional[SchemaManager] = None,
        mig: Optional[MigSchema] = None,
        transaction_group: str = DEFAULT_TRANSACTION_GROUP,
        include_trace: bool = False,
        filter_by_pid: bool = False,
    ):
        self.mapping_set = mapping_set
        self.schema_manager = schema_manager
        self.mig = mig
        self.transaction_group = transaction_group
        self.include_trace = include_trace
        self.filter_by_pid = filter_by_pid
        self._engines: Dict[Tuple[str, str], Tuple[MappingEngine, MappingEngine]] = {}

    @classmethod
    def from_paths(cls, schema_base_path: Union[str, Path], mapping_dir: Union[str, Path], **kwargs) -> "ConversionService":
        return cls(MappingSet.load(mapping_dir), schema_manager=SchemaManager(str(schema_base_path)), **kwargs)

    # --- lookups ---

    def mig_for(self, message_type: str) -> MigSchema:
        mig = self.mig
        if mig is None and self.schema_manager is not None:
            mig = self.schema_manager.find_mig(message_type)
        if mig is None:
            raise AssemblyError(f"No MIG schema available for message type '{message_type}'")
        return mig

    def engines_for(self, mig: MigSchema) -> Tuple[MappingEngine, MappingEngine]:
        key = (mig.message_type, mig.format_version)
        if key not in self._engines:
            self._engines[key] = (
                MappingEngine(self.mapping_set.message, mig=mig),
                MappingEngine(self.mapping_set.transaction, mig=mig),
            )
        return self._engines[key]

    # --- forward ---

    def convert(self, data: Union[bytes, str]) -> Bo4eInterchange:
        return self.convert_detailed(data).interchange

    def convert_detailed(self, data: Union[bytes, str]) -> ConversionResult:
        delimiters, explicit_una, segments = parse_to_segments(data)
        chunks = split_messages(segments, delimiters, explicit_una)
        for finding in chunks.framing_issues:
            logger.warning(f"Framing: {finding.message}")

        result = ConversionResult(Bo4eInterchange(
            una=delimiters.to_una() if explicit_una else None,
            unb=chunks.envelope_header.elements if chunks.envelope_header is not None else None,
            unz=chunks.envelope_trailer.elements if chunks.envelope_trailer is not None else None,
        ))
        for message in chunks.messages:
            result.interchange.messages.append(self._convert_message(message, result, delimiters))

        logger.info(
            f"Converted {len(chunks.messages)} message(s): {len(result.issues)} mapping issue(s), "
            f"{len(result.diagnostics)} structure diagnostic(s)"
        )
        return result

    def _detect_pid(self, tree: AssembledTree) -> Optional[str]:
        known = self.schema_manager.known_pids() if self.schema_manager is not None and self.filter_by_pid else None
        try:
            return detect_pid(tree, known_pids=known or None)
        except PidDetectionFailed as e:
            logger.warning(f"PID detection failed: {e.message}")
            return None
        except UnknownPid as e:
            # Without PID filtering the mapping does not need a PID.
            if self.filter_by_pid:
                raise
            logger.warning(f"No PID rule applies: {e.message}")
            return None

    def _convert_message(self, message: MessageChunk, result: ConversionResult, delimiters: Delimiters) -> Bo4eMessage:
        mig = self.mig_for(message.message_type)
        assembly = Assembler(mig).assemble_message(message)
        result.diagnostics.extend(assembly.diagnostics)
        tree = assembly.tree

        pid = self._detect_pid(tree)
        if pid and self.filter_by_pid and self.schema_manager is not None:
            pid_schema = self.schema_manager.get_pid_schema(pid)
            if pid_schema is not None:
                tree = filter_tree_for_pid(tree, pid_schema)

        message_engine, transaction_engine = self.engines_for(mig)
        recorder = PassthroughRecorder(Disassembler(mig), EdifactRenderer(delimiters), self.transaction_group)
        group_def = mig.find_group(self.transaction_group)
        trace: List[TraceEntry] = []

        root = message_engine.map_forward(tree.root_instance(), "", self.include_trace)
        self._collect(root, result, trace)

        transactions = []
        transaction_records = []
        for index, instance in enumerate(self._transaction_instances(tree)):
            forward = transaction_engine.map_forward(instance, self.transaction_group, self.include_trace)
            self._collect(forward, result, trace)
            transactions.append(forward.data)
            rebuilt = transaction_engine.map_reverse(forward.data, self.transaction_group).instance
            transaction_records.extend(recorder.record(
                instance,
                rebuilt,
                group_def.segments if group_def else [],
                group_def.nested_groups if group_def else [],
                SegmentZone.TRANSACTION_HEADER,
                index,
            ))

        rebuilt_root = self._root_instance(
            mig,
            message.header.elements,
            message_engine.map_reverse(root.data, "").instance,
            [AssembledGroupInstance() for _ in transactions],
        )
        passthrough = recorder.record(
            tree.root_instance(),
            rebuilt_root,
            mig.segments_before_groups(),
            mig.segment_groups,
            SegmentZone.MESSAGE_HEADER,
        )
        passthrough.extend(transaction_records)
        passthrough.extend(recorder.record_trailing(tree.passthrough))

        logger.debug(f"Message {message.reference}: PID {pid}, {len(transactions)} transaction(s), {len(passthrough)} passthrough")
        return Bo4eMessage(
            reference=message.reference,
            message_type=message.message_type,
            pid=pid,
            unh=message.header.elements,
            stammdaten=root.data,
            transactions=transactions,
            passthrough=passthrough,
            trace=trace if self.include_trace else None,
        )

    def _transaction_instances(self, tree: AssembledTree) -> List[AssembledGroupInstance]:
        return [i for g in tree.find_groups(self.transaction_group) for i in g.repetitions]

    def _root_instance(
        self,
        mig: MigSchema,
        unh: List[List[str]],
        root: AssembledGroupInstance,
        transactions: List[AssembledGroupInstance],
    ) -> AssembledGroupInstance:
        """The message top level: UNH, the root segments and groups, then the transactions."""
        group_def = mig.find_group(self.transaction_group)
        group_key = group_def.key if group_def is not None else self.transaction_group
        groups = list(root.child_groups)
        if transactions:
            groups.append(AssembledGroup(group_id=group_key, repetitions=transactions))
        return AssembledGroupInstance(
            segments=[OwnedSegment(id="UNH", elements=unh)] + root.segments,
            child_groups=groups,
        )

    @staticmethod
    def _collect(forward: ForwardResult, result: ConversionResult, trace: List[TraceEntry]) -> None:
        result.issues.extend(forward.issues)
        trace.extend(forward.trace)
        for source, relation, target in forward.links.all_links():
            result.links.add_link(source, target, relation)

    # --- reverse ---

    def reverse(self, data: Union[Bo4eInterchange, Dict[str, Any], str]) -> str:
        if isinstance(data, str):
            data = json.loads(data)
        interchange = data if isinstance(data, Bo4eInterchange) else Bo4eInterchange.model_validate(data)

        delimiters = detect_delimiters(interchange.una)[0] if interchange.una else Delimiters.default()
        segments: List[OwnedSegment] = []
        if interchange.unb is not None:
            segments.append(OwnedSegment(id="UNB", elements=interchange.unb))
        for message in interchange.messages:
            segments.extend(self._reverse_message(message, delimiters))
        if interchange.unb is not None or interchange.unz is not None:
            segments.append(self._unz(interchange))

        renderer = EdifactRenderer(delimiters)
        logger.info(f"Reverse conversion rendered {len(segments)} segment(s) from {len(interchange.messages)} message(s)")
        return renderer.render(segments, include_una=interchange.una is not None)

    @staticmethod
    def _unz(interchange: Bo4eInterchange) -> OwnedSegment:
        count = [[str(len(interchange.messages))]]
        if interchange.unz is not None:
            return OwnedSegment(id="UNZ", elements=count + [list(e) for e in interchange.unz[1:]])
        reference = interchange.unb[4][0] if interchange.unb and len(interchange.unb) > 4 else ""
        return OwnedSegment(id="UNZ", elements=count + [[reference]])

    def _reverse_message(self, message: Bo4eMessage, delimiters: Delimiters) -> List[OwnedSegment]:
        mig = self.mig_for(message.message_type)
        message_engine, transaction_engine = self.engines_for(mig)
        tokenizer = EdifactTokenizer(delimiters)

        root_result = message_engine.map_reverse(message.stammdaten, "")
        for issue in root_result.issues:
            logger.warning(f"[{issue.entity}] {issue.field}: {issue.message}")

        skipped = 0
        transactions = []
        for index, data in enumerate(message.transactions):
            reversed_tx = transaction_engine.map_reverse(data, self.transaction_group)
            for issue in reversed_tx.issues:
                logger.warning(f"[{issue.entity}] {issue.field}: {issue.message}")
            skipped += apply_records(reversed_tx.instance, self._records(message, index), tokenizer)
            transactions.append(reversed_tx.instance)

        unh = message.unh or [[message.reference], [message.message_type]]
        root = self._root_instance(mig, unh, root_result.instance, transactions)
        skipped += apply_records(root, self._records(message, None), tokenizer)
        if skipped:
            logger.warning(f"Message {message.reference}: {skipped} passthrough record(s) could not be applied")

        tree = AssembledTree(
            segments_before_groups=root.segments,
            groups=root.child_groups,
            passthrough=root.passthrough,
        )
        body = Disassembler(mig).disassemble(tree)
        unt = OwnedSegment(id="UNT", elements=[[str(len(body) + 1)], [message.reference]])
        return body + [unt]

    @staticmethod
    def _records(message: Bo4eMessage, transaction_index: Optional[int]) -> List[PassthroughRecord]:
        return [r for r in message.passthrough if r.transaction_index == transaction_index]

    # --- round trip ---

    def roundtrip(self, data: Union[bytes, str]) -> str:
        return self.reverse(self.convert(data))
