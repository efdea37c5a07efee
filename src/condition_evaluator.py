"""
Three-valued evaluation of AHB condition expressions.

Leaves (``[n]``) are dispatched to a ``ConditionEvaluator`` registered for the
message type and format version. A leaf may answer ``UNKNOWN`` when the data
it needs is not in the message, e.g. business state of the receiving system;
such external conditions are delegated to an ``ExternalConditionProvider``.
"""
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from condition_parser import And, ConditionExpr, ConditionParser, Not, Or, Ref, Xor
from edifact_errors import ConditionParseError, NoEvaluator
from edifact_models import OwnedSegment
from tree_navigator import AssembledTreeNavigator

logger = logging.getLogger(__name__)


class ConditionResult(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"

    @classmethod
    def from_bool(cls, value: bool) -> "ConditionResult":
        return cls.TRUE if value else cls.FALSE

    def is_true(self) -> bool:
        return self is ConditionResult.TRUE

    def is_false(self) -> bool:
        return self is ConditionResult.FALSE

    def is_unknown(self) -> bool:
        return self is ConditionResult.UNKNOWN

    def negate(self) -> "ConditionResult":
        if self is ConditionResult.UNKNOWN:
            return self
        return ConditionResult.FALSE if self is ConditionResult.TRUE else ConditionResult.TRUE


# --- External conditions ---

class ExternalConditionProvider:
    def evaluate(self, condition_name: str) -> ConditionResult:
        raise NotImplementedError


class NoOpExternalProvider(ExternalConditionProvider):
    def evaluate(self, condition_name: str) -> ConditionResult:
        return ConditionResult.UNKNOWN


class MapExternalProvider(ExternalConditionProvider):
    def __init__(self, conditions: Dict[str, bool]):
        self.conditions = dict(conditions)

    def evaluate(self, condition_name: str) -> ConditionResult:
        if condition_name not in self.conditions:
            return ConditionResult.UNKNOWN
        return ConditionResult.from_bool(self.conditions[condition_name])


class CompositeExternalProvider(ExternalConditionProvider):
    """Asks each provider in turn; the first definite answer wins."""

    def __init__(self, providers: Sequence[ExternalConditionProvider]):
        self.providers = list(providers)

    def evaluate(self, condition_name: str) -> ConditionResult:
        for provider in self.providers:
            result = provider.evaluate(condition_name)
            if not result.is_unknown():
                return result
        return ConditionResult.UNKNOWN


# --- Context ---

class EvaluationContext:
    def __init__(
        self,
        pruefidentifikator: str,
        segments: Sequence[OwnedSegment],
        external: Optional[ExternalConditionProvider] = None,
        navigator: Optional[AssembledTreeNavigator] = None,
    ):
        self.pruefidentifikator = pruefidentifikator
        self.segments = list(segments)
        self.external = external or NoOpExternalProvider()
        self.navigator = navigator

    def find_segment(self, segment_id: str) -> Optional[OwnedSegment]:
        return next((s for s in self.segments if s.is_(segment_id)), None)

    def find_segments(self, segment_id: str) -> List[OwnedSegment]:
        return [s for s in self.segments if s.is_(segment_id)]

    def find_segments_with_qualifier(self, segment_id: str, element_index: int, qualifier: str) -> List[OwnedSegment]:
        return [s for s in self.find_segments(segment_id) if s.get_element(element_index) == qualifier]

    def has_segment(self, segment_id: str) -> bool:
        return self.find_segment(segment_id) is not None


# --- Leaf evaluators ---

ConditionFn = Callable[[EvaluationContext], ConditionResult]


class ConditionEvaluator:
    """
    Dispatch table from condition number to function for one message type
    and format version. Numbers without an entry evaluate to UNKNOWN.
    """
    message_type = ""
    format_version = ""

    def __init__(self):
        self._conditions: Dict[int, ConditionFn] = {}
        self._external: Dict[int, str] = {}

    def register(self, condition_id: int, fn: ConditionFn) -> None:
        self._conditions[condition_id] = fn

    def register_external(self, condition_id: int, name: str) -> None:
        """Marks a condition as answered by the external provider under ``name``."""
        self._external[condition_id] = name

    def is_external(self, condition_id: int) -> bool:
        return condition_id in self._external

    def condition_ids(self) -> List[int]:
        return sorted(set(self._conditions) | set(self._external))

    def evaluate(self, condition_id: int, ctx: EvaluationContext) -> ConditionResult:
        if condition_id in self._external:
            return ctx.external.evaluate(self._external[condition_id])
        fn = self._conditions.get(condition_id)
        if fn is None:
            logger.debug(f"No evaluator for condition [{condition_id}] ({self.message_type} {self.format_version})")
            return ConditionResult.UNKNOWN
        return fn(ctx)


class StaticConditionEvaluator(ConditionEvaluator):
    """Fixed answers per condition number; used for dry runs and tests."""

    def __init__(self, results: Dict[int, ConditionResult], message_type: str = "", format_version: str = ""):
        super().__init__()
        self.message_type = message_type
        self.format_version = format_version
        for condition_id, result in results.items():
            self.register(condition_id, lambda ctx, result=result: result)


class UtilmdConditionEvaluator(ConditionEvaluator):
    """A small set of UTILMD conditions that can be decided from the message itself."""
    message_type = "UTILMD"
    format_version = "FV2504"

    def __init__(self):
        super().__init__()
        self.register_external(1, "MessageSplitting")
        self.register(2, self._has_dtm_92)
        self.register(3, self._has_messlokation)
        self.register(4, self._has_sender_party)
        self.register(5, self._has_pid_reference)
        self.register(6, self._is_supplier_change)
        self.register_external(7, "DateKnown")

    @staticmethod
    def _has_dtm_92(ctx: EvaluationContext) -> ConditionResult:
        """[2] Wenn ein Beginn zum (DTM+92) angegeben ist."""
        return ConditionResult.from_bool(bool(ctx.find_segments_with_qualifier("DTM", 0, "92")))

    @staticmethod
    def _has_messlokation(ctx: EvaluationContext) -> ConditionResult:
        """[3] Wenn eine Messlokation (LOC+Z17) vorhanden ist."""
        return ConditionResult.from_bool(bool(ctx.find_segments_with_qualifier("LOC", 0, "Z17")))

    @staticmethod
    def _has_sender_party(ctx: EvaluationContext) -> ConditionResult:
        return ConditionResult.from_bool(bool(ctx.find_segments_with_qualifier("NAD", 0, "MS")))

    @staticmethod
    def _has_pid_reference(ctx: EvaluationContext) -> ConditionResult:
        return ConditionResult.from_bool(bool(ctx.find_segments_with_qualifier("RFF", 0, "Z13")))

    @staticmethod
    def _is_supplier_change(ctx: EvaluationContext) -> ConditionResult:
        # Transaction reason lives in STS element 1; without an STS the answer is open.
        sts = ctx.find_segment("STS")
        if sts is None:
            return ConditionResult.UNKNOWN
        return ConditionResult.from_bool(sts.get_component(1, 0) == "E01")


# --- Expression evaluation ---

class ConditionExprEvaluator:
    def __init__(self, evaluator: ConditionEvaluator):
        self.evaluator = evaluator

    def evaluate(self, expr: ConditionExpr, ctx: EvaluationContext) -> ConditionResult:
        if isinstance(expr, Ref):
            return self.evaluator.evaluate(expr.id, ctx)
        if isinstance(expr, Not):
            return self.evaluate(expr.operand, ctx).negate()
        if isinstance(expr, And):
            return self._all(expr.operands, ctx)
        if isinstance(expr, Or):
            return self._any(expr.operands, ctx)
        if isinstance(expr, Xor):
            return self._xor(expr.operands, ctx)
        raise TypeError(f"Unsupported condition node {type(expr).__name__}")

    def _all(self, operands, ctx) -> ConditionResult:
        unknown = False
        for operand in operands:
            result = self.evaluate(operand, ctx)
            if result.is_false():
                return ConditionResult.FALSE
            unknown = unknown or result.is_unknown()
        return ConditionResult.UNKNOWN if unknown else ConditionResult.TRUE

    def _any(self, operands, ctx) -> ConditionResult:
        unknown = False
        for operand in operands:
            result = self.evaluate(operand, ctx)
            if result.is_true():
                return ConditionResult.TRUE
            unknown = unknown or result.is_unknown()
        return ConditionResult.UNKNOWN if unknown else ConditionResult.FALSE

    def _xor(self, operands, ctx) -> ConditionResult:
        results = [self.evaluate(operand, ctx) for operand in operands]
        if any(r.is_unknown() for r in results):
            return ConditionResult.UNKNOWN
        return ConditionResult.from_bool(sum(r.is_true() for r in results) % 2 == 1)

    def evaluate_status(self, ahb_status: str, ctx: EvaluationContext) -> ConditionResult:
        """A status without conditions is TRUE; an unparseable one is UNKNOWN."""
        try:
            expr = ConditionParser.parse_optional(ahb_status)
        except ConditionParseError as e:
            logger.warning(f"Cannot parse AHB status {ahb_status!r}: {e.message}")
            return ConditionResult.UNKNOWN
        if expr is None:
            return ConditionResult.TRUE
        return self.evaluate(expr, ctx)


# --- Registry ---

class EvaluatorRegistry:
    def __init__(self):
        self._evaluators: Dict[Tuple[str, str], ConditionEvaluator] = {}

    @classmethod
    def with_defaults(cls) -> "EvaluatorRegistry":
        registry = cls()
        registry.register(UtilmdConditionEvaluator())
        return registry

    def register(self, evaluator: ConditionEvaluator) -> None:
        self._evaluators[(evaluator.message_type, evaluator.format_version)] = evaluator

    def get(self, message_type: str, format_version: str) -> Optional[ConditionEvaluator]:
        return self._evaluators.get((message_type, format_version))

    def get_or_raise(self, message_type: str, format_version: str) -> ConditionEvaluator:
        evaluator = self.get(message_type, format_version)
        if evaluator is None:
            raise NoEvaluator(message_type, format_version)
        return evaluator

    def registered_keys(self) -> List[Tuple[str, str]]:
        return list(self._evaluators)

    def clear(self) -> None:
        self._evaluators.clear()
