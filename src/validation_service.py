"""
EDIFACT validation against MIG structure, AHB conditions and element formats.

Levels build on each other: ``Structure`` reports assembler diagnostics and
framing problems, ``Conditions`` adds the AHB field rules of the detected (or
given) Pruefidentifikator, ``Full`` adds format and code checks on every
element the MIG describes.
"""
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from assembled_tree import AssembledGroupInstance, AssembledTree, DiagnosticKind, StructureDiagnostic, group_matches
from condition_evaluator import (
    ConditionExprEvaluator,
    EvaluationContext,
    EvaluatorRegistry,
    ExternalConditionProvider,
)
from condition_parser import ConditionExpr, ConditionParser
from disassembler import group_def_for
from edifact_errors import (
    AssemblyError,
    ConditionParseError,
    EdifactError,
    EdifactParseError,
    InvalidPath,
    NoEvaluator,
    UnknownPruefidentifikator,
    ValidationConditionParseError,
    ValidationParseError,
)
from edifact_models import FramingIssue, MessageChunk, OwnedSegment
from edifact_parser import parse_to_segments, split_messages
from mig_assembler import Assembler
from mig_schema_models import AhbFieldRule, AhbWorkflow, MigComposite, MigDataElement, MigSchema, MigSegment
from path_resolver import EdifactPath, PathResolver
from pid_detection import detect_pid, filter_mig_for_pid
from schema_manager import SchemaManager
from tree_navigator import AssembledTreeNavigator

logger = logging.getLogger(__name__)


class ValidationLevel(str, Enum):
    STRUCTURE = "Structure"
    CONDITIONS = "Conditions"
    FULL = "Full"

    @classmethod
    def parse(cls, value: str) -> "ValidationLevel":
        for level in cls:
            if level.value.lower() == value.strip().lower():
                return level
        raise ValueError(f"Unknown validation level: {value}")


_SEVERITY_RANK = {"Info": 0, "Warning": 1, "Error": 2, "Critical": 3}


class Severity(str, Enum):
    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    def __lt__(self, other):
        return self.rank < other.rank

    def __le__(self, other):
        return self.rank <= other.rank

    def __gt__(self, other):
        return self.rank > other.rank

    def __ge__(self, other):
        return self.rank >= other.rank


class ValidationCategory(str, Enum):
    STRUCTURE = "Structure"
    FORMAT = "Format"
    CODE = "Code"
    AHB = "Ahb"


class ErrorCodes:
    # Structure
    MISSING_MANDATORY_SEGMENT = "STR001"
    MAX_REPETITIONS_EXCEEDED = "STR002"
    UNEXPECTED_SEGMENT = "STR003"
    WRONG_SEGMENT_ORDER = "STR004"
    MISSING_MANDATORY_GROUP = "STR005"
    MAX_GROUP_REPETITIONS_EXCEEDED = "STR006"
    UNRECOGNIZED_QUALIFIER = "STR007"
    UNT_REFERENCE_MISMATCH = "STR008"
    UNT_COUNT_MISMATCH = "STR009"
    UNZ_COUNT_MISMATCH = "STR010"
    # Format
    VALUE_TOO_LONG = "FMT001"
    INVALID_NUMERIC = "FMT002"
    INVALID_ALPHANUMERIC = "FMT003"
    INVALID_DATE = "FMT004"
    VALUE_TOO_SHORT = "FMT005"
    REQUIRED_ELEMENT_EMPTY = "FMT006"
    # Code
    INVALID_CODE = "COD001"
    CODE_NOT_ALLOWED_FOR_PID = "COD002"
    # AHB
    MISSING_REQUIRED_FIELD = "AHB001"
    FIELD_NOT_ALLOWED_FOR_PID = "AHB002"
    CONDITIONAL_RULE_VIOLATION = "AHB003"
    UNKNOWN_PID = "AHB004"
    CONDITION_UNKNOWN = "AHB005"
    # Fatal, reported as the only issue of the report
    PIPELINE_FAILURE = "STR000"
    CONDITIONS_UNAVAILABLE = "AHB000"


_DIAGNOSTIC_CODES: Dict[DiagnosticKind, Tuple[str, Severity]] = {
    DiagnosticKind.MISSING_REQUIRED_SEGMENT: (ErrorCodes.MISSING_MANDATORY_SEGMENT, Severity.ERROR),
    DiagnosticKind.MAX_REPETITIONS_EXCEEDED: (ErrorCodes.MAX_REPETITIONS_EXCEEDED, Severity.ERROR),
    DiagnosticKind.UNEXPECTED_SEGMENT: (ErrorCodes.UNEXPECTED_SEGMENT, Severity.ERROR),
    DiagnosticKind.SEGMENT_OUT_OF_ORDER: (ErrorCodes.WRONG_SEGMENT_ORDER, Severity.ERROR),
    DiagnosticKind.MISSING_REQUIRED_GROUP: (ErrorCodes.MISSING_MANDATORY_GROUP, Severity.ERROR),
    DiagnosticKind.GROUP_MAX_REPETITIONS_EXCEEDED: (ErrorCodes.MAX_GROUP_REPETITIONS_EXCEEDED, Severity.ERROR),
    DiagnosticKind.UNRECOGNIZED_QUALIFIER: (ErrorCodes.UNRECOGNIZED_QUALIFIER, Severity.WARNING),
}

_FRAMING_CODES = {
    "unt_reference": ErrorCodes.UNT_REFERENCE_MISMATCH,
    "unt_count": ErrorCodes.UNT_COUNT_MISMATCH,
    "unz_count": ErrorCodes.UNZ_COUNT_MISMATCH,
}


def critical_code(error: EdifactError) -> Tuple[str, ValidationCategory]:
    """Code family of a fatal pipeline error; the error's own code goes into ``actual_value``."""
    if isinstance(error, (NoEvaluator, ValidationConditionParseError, ConditionParseError, UnknownPruefidentifikator)):
        return ErrorCodes.CONDITIONS_UNAVAILABLE, ValidationCategory.AHB
    return ErrorCodes.PIPELINE_FAILURE, ValidationCategory.STRUCTURE


class IssueLocation(BaseModel):
    segment_number: int = 0
    element_index: Optional[int] = None
    component_index: Optional[int] = None


class ValidationIssue(BaseModel):
    code: str
    severity: Severity
    category: ValidationCategory
    location: IssueLocation = Field(default_factory=IssueLocation)
    message: str
    condition_id: Optional[int] = None
    field_path: Optional[str] = None
    rule: Optional[str] = None
    actual_value: Optional[str] = None
    expected_value: Optional[str] = None

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class ValidationReport(BaseModel):
    message_type: str = ""
    pruefidentifikator: Optional[str] = None
    format_version: str = ""
    level: ValidationLevel = ValidationLevel.FULL
    message_count: int = 0
    issues: List[ValidationIssue] = Field(default_factory=list)

    def add_issue(self, issue: ValidationIssue) -> None:
        self.issues.append(issue)

    def is_valid(self) -> bool:
        return not any(i.severity >= Severity.ERROR for i in self.issues)

    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity >= Severity.ERROR)

    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == Severity.WARNING)

    def issues_by_code(self) -> Dict[str, List[ValidationIssue]]:
        grouped: Dict[str, List[ValidationIssue]] = {}
        for issue in self.issues:
            grouped.setdefault(issue.code, []).append(issue)
        return grouped

    def by_category(self, category: ValidationCategory) -> List[ValidationIssue]:
        return [i for i in self.issues if i.category == category]

    def codes(self) -> List[str]:
        return [i.code for i in self.issues]

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json", exclude_none=True, exclude={"issues"})
        data["valid"] = self.is_valid()
        data["issues"] = [i.to_dict() for i in self.issues]
        return data


# --- Element formats ---

_FORMAT_RE = re.compile(r"^(an|a|n)(\.\.)?(\d+)$", re.IGNORECASE)
_NUMERIC_RE = re.compile(r"^-?\d*[.,]?\d+$")

DATE_FORMATS = {
    "102": "%Y%m%d",
    "203": "%Y%m%d%H%M",
    "204": "%Y%m%d%H%M%S",
}


class ElementFormat(BaseModel):
    """Parsed EDIFACT format code: ``an..35`` -> (an, variable, 35)."""
    kind: str
    variable: bool
    length: int

    @classmethod
    def parse(cls, code: Optional[str]) -> Optional["ElementFormat"]:
        if not code:
            return None
        match = _FORMAT_RE.match(code.strip())
        if not match:
            return None
        return cls(kind=match.group(1).lower(), variable=bool(match.group(2)), length=int(match.group(3)))


def _numeric_length(value: str) -> int:
    return sum(1 for ch in value if ch.isdigit())


def _valid_date(value: str, format_code: str) -> bool:
    if format_code == "303":
        # CCYYMMDDHHMMZZZ: the offset part is checked for shape only.
        if len(value) < 12 or not value[:12].isdigit():
            return False
        return _valid_date(value[:12], "203") and bool(re.match(r"^[+-]?\d{2}$", value[12:]))
    pattern = DATE_FORMATS.get(format_code)
    if pattern is None:
        return True
    if not value.isdigit():
        return False
    try:
        datetime.strptime(value, pattern)
        return True
    except ValueError:
        return False


# --- AHB field helpers ---

def is_mandatory_status(status: str) -> bool:
    trimmed = status.strip()
    return trimmed.startswith("Muss") or trimmed.startswith("X")


def _element_key(part: str) -> str:
    part = part.lower()
    return part if part[:1] in ("c", "d") else f"d{part}"


def field_path_expression(rule: AhbFieldRule) -> Optional[str]:
    """``SG4/SG5/LOC/C517/3225`` -> ``loc.c517.d3225``; None for segment-level rules."""
    ids = rule.element_ids()
    if not ids:
        return None
    return ".".join([rule.segment_id().lower()] + [_element_key(i) for i in ids[:2]])


class _CompiledRule:
    def __init__(self, rule: AhbFieldRule, expr: Optional[ConditionExpr], path: Optional[EdifactPath]):
        self.rule = rule
        self.expr = expr
        self.path = path

    def segments(self, segments: Sequence[OwnedSegment]) -> List[OwnedSegment]:
        tag = self.rule.segment_id()
        found = [s for s in segments if s.is_(tag)]
        if self.rule.qualifier:
            found = [s for s in found if s.get_component(0, 0).strip() == self.rule.qualifier]
        return found

    def value_of(self, segment: OwnedSegment) -> str:
        if self.path is None:
            return segment.get_component(0, 0)
        return self.path.read(segment)

    def present_in(self, segments: Sequence[OwnedSegment]) -> Optional[OwnedSegment]:
        for segment in self.segments(segments):
            if self.path is None or self.value_of(segment) != "":
                return segment
        return None


class EdifactValidator:
    """
    Validates interchanges message by message and collects typed issues.

    MIGs come from ``mig`` or, per message type, from the schema manager; AHB
    workflows from ``workflows`` or the schema manager. Condition leaves are
    evaluated by the evaluator registered for the MIG's message type and
    format version. Rules whose segment path lies inside the transaction group
    are checked once per transaction, against that transaction and the
    message-level segments.
    """

    def __init__(
        self,
        schema_manager: Optional[SchemaManager] = None,
        mig: Optional[MigSchema] = None,
        workflows: Optional[Dict[str, AhbWorkflow]] = None,
        evaluators: Optional[EvaluatorRegistry] = None,
        external: Optional[ExternalConditionProvider] = None,
        transaction_group: str = "SG4",
    ):
        self.schema_manager = schema_manager
        self.mig = mig
        self.workflows = dict(workflows or {})
        self.evaluators = evaluators or EvaluatorRegistry.with_defaults()
        self.external = external
        self.transaction_group = transaction_group

    # --- lookups ---

    def mig_for(self, message_type: str) -> Optional[MigSchema]:
        if self.mig is not None:
            return self.mig
        if self.schema_manager is not None:
            return self.schema_manager.find_mig(message_type)
        return None

    def workflow_for(self, pid: str) -> AhbWorkflow:
        workflow = self.workflows.get(pid)
        if workflow is None and self.schema_manager is not None:
            workflow = self.schema_manager.get_ahb_workflow(pid)
        if workflow is None:
            raise UnknownPruefidentifikator(pid)
        return workflow

    # --- entry point ---

    def validate(
        self,
        data: Union[bytes, str],
        pid: Optional[str] = None,
        level: ValidationLevel = ValidationLevel.FULL,
    ) -> ValidationReport:
        try:
            delimiters, explicit_una, segments = parse_to_segments(data)
            chunks = split_messages(segments, delimiters, explicit_una)
        except EdifactParseError as e:
            raise ValidationParseError(e) from e

        report = ValidationReport(level=level, message_count=len(chunks.messages))
        self._add_framing_issues(chunks.framing_issues, report)

        for message in chunks.messages:
            self._validate_message(message, pid, level, report)

        logger.info(
            f"Validation finished: {len(chunks.messages)} message(s), {report.error_count()} error(s), "
            f"{report.warning_count()} warning(s), valid={report.is_valid()}"
        )
        return report

    def _validate_message(self, message: MessageChunk, pid: Optional[str], level: ValidationLevel, report: ValidationReport) -> None:
        segments = message.all_segments()
        mig = self.mig_for(message.message_type)
        if not report.message_type:
            report.message_type = message.message_type
        if mig is not None and not report.format_version:
            report.format_version = mig.format_version

        tree: Optional[AssembledTree] = None
        if mig is None:
            logger.warning(f"No MIG for message type '{message.message_type}'; structure checks skipped for {message.reference}")
        else:
            result = Assembler(mig).assemble(segments)
            tree = result.tree
            self._add_structure_issues(result.diagnostics, report)

        if level == ValidationLevel.STRUCTURE:
            return

        message_pid = pid or self._detect_pid(segments)
        if message_pid and report.pruefidentifikator is None:
            report.pruefidentifikator = message_pid
        if message_pid:
            self._validate_conditions(message, segments, message_pid, mig, tree, report)

        if level == ValidationLevel.FULL and mig is not None and tree is not None:
            self._validate_formats(tree, mig, report)

    @staticmethod
    def _detect_pid(segments: List[OwnedSegment]) -> Optional[str]:
        try:
            return detect_pid(segments)
        except AssemblyError as e:
            logger.debug(f"No PID detected: {e.message}")
            return None

    # --- structure ---

    @staticmethod
    def _add_framing_issues(framing: List[FramingIssue], report: ValidationReport) -> None:
        for finding in framing:
            report.add_issue(ValidationIssue(
                code=_FRAMING_CODES[finding.kind],
                severity=Severity.ERROR,
                category=ValidationCategory.STRUCTURE,
                location=IssueLocation(segment_number=finding.segment_number, element_index=0),
                message=finding.message,
                actual_value=finding.actual,
                expected_value=finding.expected,
            ))

    @staticmethod
    def _add_structure_issues(diagnostics: List[StructureDiagnostic], report: ValidationReport) -> None:
        for diagnostic in diagnostics:
            code, severity = _DIAGNOSTIC_CODES[diagnostic.kind]
            report.add_issue(ValidationIssue(
                code=code,
                severity=severity,
                category=ValidationCategory.STRUCTURE,
                location=IssueLocation(segment_number=diagnostic.segment_number),
                message=diagnostic.message,
                field_path=diagnostic.group_path or None,
                actual_value=diagnostic.segment_id,
            ))

    # --- AHB conditions ---

    def compile_workflow(self, workflow: AhbWorkflow, resolver: Optional[PathResolver]) -> List[_CompiledRule]:
        compiled = []
        for rule in workflow.fields:
            try:
                expr = ConditionParser.parse_optional(rule.ahb_status)
            except ConditionParseError as e:
                raise ValidationConditionParseError(rule.ahb_status, e) from e
            path = None
            expression = field_path_expression(rule)
            if expression is not None and resolver is not None:
                try:
                    path = resolver.resolve(expression)
                except InvalidPath:
                    logger.debug(f"AHB field {rule.segment_path} has no MIG element; checking segment presence only")
            compiled.append(_CompiledRule(rule, expr, path))
        return compiled

    def _condition_scopes(
        self,
        pid: str,
        segments: List[OwnedSegment],
        tree: Optional[AssembledTree],
        external: Optional[ExternalConditionProvider],
    ) -> Tuple[EvaluationContext, List[EvaluationContext]]:
        """
        The message context and one context per transaction. A transaction
        context sees the message-level segments plus its own; its navigator is
        rooted at the transaction.
        """
        message_ctx = EvaluationContext(
            pid,
            segments,
            external=external,
            navigator=AssembledTreeNavigator(tree) if tree is not None else None,
        )
        transactions = [i for g in tree.find_groups(self.transaction_group) for i in g.repetitions] if tree else []
        if not transactions:
            return message_ctx, [message_ctx]

        shared = list(tree.segments_before_groups)
        for group in tree.groups:
            if not group_matches(group.group_id, self.transaction_group):
                for repetition in group.repetitions:
                    shared.extend(repetition.iter_segments())
        shared.extend(tree.segments_after_groups)
        return message_ctx, [
            EvaluationContext(
                pid,
                shared + list(instance.iter_segments()),
                external=external,
                navigator=AssembledTreeNavigator.for_instance(instance),
            )
            for instance in transactions
        ]

    def _in_transaction(self, rule: AhbFieldRule) -> bool:
        return rule.segment_path.split("/", 1)[0].upper() == self.transaction_group.upper()

    def _validate_conditions(
        self,
        message: MessageChunk,
        segments: List[OwnedSegment],
        pid: str,
        mig: Optional[MigSchema],
        tree: Optional[AssembledTree],
        report: ValidationReport,
    ) -> None:
        try:
            workflow = self.workflow_for(pid)
        except UnknownPruefidentifikator as e:
            report.add_issue(ValidationIssue(
                code=ErrorCodes.UNKNOWN_PID,
                severity=Severity.ERROR,
                category=ValidationCategory.AHB,
                location=IssueLocation(segment_number=message.header.segment_number),
                message=e.message,
                actual_value=pid,
            ))
            return

        format_version = workflow.format_version or (mig.format_version if mig else "")
        evaluator = self.evaluators.get_or_raise(message.message_type, format_version)
        expr_evaluator = ConditionExprEvaluator(evaluator)
        message_ctx, transaction_ctxs = self._condition_scopes(pid, segments, tree, self.external)
        resolver = PathResolver.from_mig(mig) if mig is not None else None

        for compiled in self.compile_workflow(workflow, resolver):
            scopes = transaction_ctxs if self._in_transaction(compiled.rule) else [message_ctx]
            for ctx in scopes:
                self._check_rule(compiled, expr_evaluator, ctx, report)

        if workflow.numbers and mig is not None:
            self._check_fields_allowed(segments, filter_mig_for_pid(mig, set(workflow.numbers)), pid, report)

    def _check_rule(self, compiled: _CompiledRule, expr_evaluator: ConditionExprEvaluator, ctx: EvaluationContext,
                    report: ValidationReport) -> None:
        rule = compiled.rule
        result = expr_evaluator.evaluate(compiled.expr, ctx) if compiled.expr is not None else None
        present = compiled.present_in(ctx.segments)
        logger.debug(f"AHB {rule.segment_path} [{rule.ahb_status}] -> {result.value if result else 'unconditional'}, present={present is not None}")

        if result is not None and result.is_unknown():
            report.add_issue(ValidationIssue(
                code=ErrorCodes.CONDITION_UNKNOWN,
                severity=Severity.INFO,
                category=ValidationCategory.AHB,
                location=IssueLocation(segment_number=present.segment_number if present else 0),
                message=f"Condition for field '{rule.name or rule.segment_path}' could not be fully evaluated",
                condition_id=self._first_unknown(compiled.expr, expr_evaluator.evaluator, ctx),
                field_path=rule.segment_path,
                rule=rule.ahb_status,
            ))
            return

        if result is not None and result.is_false():
            if present is not None:
                report.add_issue(ValidationIssue(
                    code=ErrorCodes.CONDITIONAL_RULE_VIOLATION,
                    severity=Severity.ERROR,
                    category=ValidationCategory.AHB,
                    location=IssueLocation(segment_number=present.segment_number),
                    message=f"Field '{rule.name or rule.segment_path}' is present although its condition is not met",
                    field_path=rule.segment_path,
                    rule=rule.ahb_status,
                    actual_value=compiled.value_of(present),
                ))
            return

        if is_mandatory_status(rule.ahb_status) and present is None:
            report.add_issue(ValidationIssue(
                code=ErrorCodes.MISSING_REQUIRED_FIELD,
                severity=Severity.ERROR,
                category=ValidationCategory.AHB,
                message=f"Required field '{rule.name or rule.segment_path}' at {rule.segment_path} is missing",
                field_path=rule.segment_path,
                rule=rule.ahb_status,
            ))
        self._check_allowed_codes(compiled, ctx.segments, report)

    @staticmethod
    def _first_unknown(expr: ConditionExpr, evaluator, ctx: EvaluationContext) -> Optional[int]:
        for condition_id in sorted(expr.condition_ids()):
            if evaluator.evaluate(condition_id, ctx).is_unknown():
                return condition_id
        return None

    @staticmethod
    def _check_allowed_codes(compiled: _CompiledRule, segments: List[OwnedSegment], report: ValidationReport) -> None:
        allowed = compiled.rule.allowed_codes()
        if not allowed:
            return
        for segment in compiled.segments(segments):
            value = compiled.value_of(segment)
            if value and value not in allowed:
                report.add_issue(ValidationIssue(
                    code=ErrorCodes.CODE_NOT_ALLOWED_FOR_PID,
                    severity=Severity.ERROR,
                    category=ValidationCategory.CODE,
                    location=IssueLocation(
                        segment_number=segment.segment_number,
                        element_index=compiled.path.element if compiled.path else 0,
                        component_index=compiled.path.component if compiled.path else 0,
                    ),
                    message=f"Code '{value}' is not allowed for this PID. Allowed: [{', '.join(allowed)}]",
                    field_path=compiled.rule.segment_path,
                    actual_value=value,
                    expected_value=", ".join(allowed),
                ))

    @staticmethod
    def _check_fields_allowed(segments: List[OwnedSegment], pid_mig: MigSchema, pid: str, report: ValidationReport) -> None:
        defs = list(pid_mig.iter_segment_defs())
        for segment in segments:
            if any(d.matches(segment) for d in defs):
                continue
            report.add_issue(ValidationIssue(
                code=ErrorCodes.FIELD_NOT_ALLOWED_FOR_PID,
                severity=Severity.WARNING,
                category=ValidationCategory.AHB,
                location=IssueLocation(segment_number=segment.segment_number),
                message=f"Segment '{segment.id}' is not used by PID {pid}",
                actual_value=segment.id,
            ))

    # --- formats and codes ---

    def _validate_formats(self, tree: AssembledTree, mig: MigSchema, report: ValidationReport) -> None:
        self._check_segments(tree.segments_before_groups, mig.segments_before_groups(), report)
        for group in tree.groups:
            definition = group_def_for(group, mig.segment_groups)
            for instance in group.repetitions:
                self._check_instance(instance, definition, report)
        self._check_segments(tree.segments_after_groups, mig.segments_after_groups(), report)

    def _check_instance(self, instance: AssembledGroupInstance, definition, report: ValidationReport) -> None:
        if definition is None:
            return
        self._check_segments(instance.segments, definition.segments, report)
        for group in instance.child_groups:
            child_def = group_def_for(group, definition.nested_groups)
            for child in group.repetitions:
                self._check_instance(child, child_def, report)

    def _check_segments(self, segments: List[OwnedSegment], defs: Sequence[MigSegment], report: ValidationReport) -> None:
        for segment in segments:
            definition = next((d for d in defs if d.matches(segment)), None)
            if definition is None:
                definition = next((d for d in defs if d.id.upper() == segment.id.upper()), None)
            if definition is not None:
                self.check_segment(segment, definition, report)

    def check_segment(self, segment: OwnedSegment, definition: MigSegment, report: ValidationReport) -> None:
        """Format, length and code checks for every element the MIG defines on ``segment``."""
        for element in definition.elements:
            if isinstance(element, MigComposite):
                values = segment.elements[element.position] if element.position < len(segment.elements) else []
                if not element.is_mandatory() and all(v == "" for v in values):
                    continue
                for component in element.components:
                    value = values[component.position] if component.position < len(values) else ""
                    self._check_value(segment, component, value, element.position, component.position, report)
            else:
                value = segment.get_component(element.position, 0)
                self._check_value(segment, element, value, element.position, 0, report)
        self._check_dates(segment, report)

    def _check_value(
        self,
        segment: OwnedSegment,
        element: MigDataElement,
        value: str,
        element_index: int,
        component_index: int,
        report: ValidationReport,
    ) -> None:
        def issue(code: str, category: ValidationCategory, message: str, expected: Optional[str] = None):
            report.add_issue(ValidationIssue(
                code=code,
                severity=Severity.ERROR,
                category=category,
                location=IssueLocation(
                    segment_number=segment.segment_number,
                    element_index=element_index,
                    component_index=component_index,
                ),
                message=f"{segment.id} {element.id}: {message}",
                field_path=f"{segment.id}/{element.id}",
                actual_value=value,
                expected_value=expected,
            ))

        if value == "":
            if element.is_mandatory():
                issue(ErrorCodes.REQUIRED_ELEMENT_EMPTY, ValidationCategory.FORMAT, "required element is empty")
            return

        fmt = ElementFormat.parse(element.format)
        if fmt is not None:
            length = _numeric_length(value) if fmt.kind == "n" else len(value)
            if fmt.kind == "n" and not _NUMERIC_RE.match(value):
                issue(ErrorCodes.INVALID_NUMERIC, ValidationCategory.FORMAT, f"'{value}' is not numeric", element.format)
            elif fmt.kind == "a" and any(ch.isdigit() for ch in value):
                issue(ErrorCodes.INVALID_ALPHANUMERIC, ValidationCategory.FORMAT, f"'{value}' must not contain digits", element.format)
            if length > fmt.length:
                issue(ErrorCodes.VALUE_TOO_LONG, ValidationCategory.FORMAT, f"value longer than {fmt.length}", element.format)
            elif not fmt.variable and length < fmt.length:
                issue(ErrorCodes.VALUE_TOO_SHORT, ValidationCategory.FORMAT, f"value shorter than {fmt.length}", element.format)

        codes = element.code_values()
        if codes and value not in codes:
            issue(ErrorCodes.INVALID_CODE, ValidationCategory.CODE, f"invalid code '{value}'", ", ".join(codes))

    @staticmethod
    def _check_dates(segment: OwnedSegment, report: ValidationReport) -> None:
        # DTM C507: 2005 qualifier, 2380 value, 2379 format code.
        if not segment.is_("DTM"):
            return
        value = segment.get_component(0, 1)
        format_code = segment.get_component(0, 2)
        if not value or not format_code or _valid_date(value, format_code):
            return
        report.add_issue(ValidationIssue(
            code=ErrorCodes.INVALID_DATE,
            severity=Severity.ERROR,
            category=ValidationCategory.FORMAT,
            location=IssueLocation(segment_number=segment.segment_number, element_index=0, component_index=1),
            message=f"DTM value '{value}' does not match date format {format_code}",
            field_path="DTM/C507/2380",
            actual_value=value,
            expected_value=format_code,
        ))


class EdifactValidationService:
    """Service boundary for validation: fatal pipeline errors become one critical issue."""

    def __init__(
        self,
        schema_base_path: Optional[str] = None,
        evaluators: Optional[EvaluatorRegistry] = None,
        external: Optional[ExternalConditionProvider] = None,
    ):
        self.schema_manager = SchemaManager(schema_base_path)
        self.evaluators = evaluators or EvaluatorRegistry.with_defaults()
        self.external = external

    def validate_edifact(
        self,
        edifact_content: Union[bytes, str],
        pid: Optional[str] = None,
        level: ValidationLevel = ValidationLevel.FULL,
        external: Optional[ExternalConditionProvider] = None,
    ) -> ValidationReport:
        """
        Validate EDIFACT content at the given level.

        Args:
            edifact_content: The interchange as bytes or text
            pid: Pruefidentifikator; detected from each message when omitted
            level: Structure, Conditions or Full
            external: Provider for conditions the message cannot answer

        Returns:
            ValidationReport with all issues found
        """
        try:
            logger.info(f"Starting EDIFACT validation, PID: {pid or 'auto'}, level: {level.value}")
            validator = EdifactValidator(
                schema_manager=self.schema_manager,
                evaluators=self.evaluators,
                external=external or self.external,
            )
            return validator.validate(edifact_content, pid, level)

        except EdifactError as e:
            logger.error(f"EDIFACT validation failed: {e}", exc_info=True)
            report = ValidationReport(level=level, pruefidentifikator=pid)
            code, category = critical_code(e)
            report.add_issue(ValidationIssue(
                code=code,
                severity=Severity.CRITICAL,
                category=category,
                location=IssueLocation(segment_number=getattr(e, "segment_number", 0)),
                message=f"Validation failed: {e.message}",
                actual_value=e.code,
            ))
            return report
