"""
Exception hierarchy for the EDIFACT <-> BO4E pipeline.

Every error carries a stable ``code`` so that callers (CLI, validation
service, batch driver) can report failures without string matching.
"""
from typing import Optional


class EdifactError(Exception):
    """Base class for all pipeline errors."""
    code = "EDIFACT_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# --- Tokenizer / stream parser ---

class EdifactParseError(EdifactError):
    code = "PARSE_ERROR"

    def __init__(self, message: str, offset: Optional[int] = None):
        super().__init__(message)
        self.offset = offset


class InvalidUna(EdifactParseError):
    code = "INVALID_UNA"


class UnterminatedSegment(EdifactParseError):
    code = "UNTERMINATED_SEGMENT"


class UnexpectedEof(EdifactParseError):
    code = "UNEXPECTED_EOF"


class InvalidUtf8(EdifactParseError):
    code = "INVALID_UTF8"


class EmptySegmentId(EdifactParseError):
    code = "EMPTY_SEGMENT_ID"


class StoppedByHandler(EdifactParseError):
    code = "STOPPED_BY_HANDLER"

    def __init__(self, segment_number: int, offset: int, message_number: int):
        super().__init__(
            f"Parsing stopped by handler at segment {segment_number} (offset {offset})",
            offset,
        )
        self.segment_number = segment_number
        self.message_number = message_number


# --- Assembly ---

class AssemblyError(EdifactError):
    code = "ASSEMBLY_ERROR"


class UnexpectedSegment(AssemblyError):
    code = "UNEXPECTED_SEGMENT"

    def __init__(self, tag: str, segment_number: int):
        super().__init__(f"Unexpected segment '{tag}' at segment {segment_number}")
        self.tag = tag
        self.segment_number = segment_number


class MissingMandatory(AssemblyError):
    code = "MISSING_MANDATORY"

    def __init__(self, tag: str, context: str):
        super().__init__(f"Mandatory segment '{tag}' is missing in {context}")
        self.tag = tag
        self.context = context


class UnknownPid(AssemblyError):
    code = "UNKNOWN_PID"

    def __init__(self, pid: str):
        super().__init__(f"Unknown Pruefidentifikator: {pid}")
        self.pid = pid


class PidDetectionFailed(AssemblyError):
    code = "PID_DETECTION_FAILED"


class CursorOutOfBounds(AssemblyError):
    code = "CURSOR_OUT_OF_BOUNDS"

    def __init__(self, position: int, length: int):
        super().__init__(f"Cursor position {position} is out of bounds (segments: {length})")
        self.position = position
        self.length = length


class SegmentNotFound(AssemblyError):
    code = "SEGMENT_NOT_FOUND"

    def __init__(self, tag: str):
        super().__init__(f"Segment '{tag}' not found")
        self.tag = tag


# --- Mapping ---

class MappingError(EdifactError):
    code = "MAPPING_ERROR"


class TomlParse(MappingError):
    code = "TOML_PARSE"

    def __init__(self, path: str, detail: str):
        super().__init__(f"Failed to parse mapping file {path}: {detail}")
        self.path = path


class InvalidPath(MappingError):
    code = "INVALID_PATH"

    def __init__(self, path: str, detail: str = ""):
        message = f"Invalid EDIFACT path '{path}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.path = path


class UnknownHandler(MappingError):
    code = "UNKNOWN_HANDLER"

    def __init__(self, name: str, entity: str = ""):
        where = f" (entity {entity})" if entity else ""
        super().__init__(f"Unknown handler '{name}'{where}")
        self.name = name


class MissingField(MappingError):
    code = "MISSING_FIELD"

    def __init__(self, field: str, entity: str = ""):
        where = f" in {entity}" if entity else ""
        super().__init__(f"Missing field '{field}'{where}")
        self.field = field


class TypeConversion(MappingError):
    code = "TYPE_CONVERSION"


class DuplicateEntity(MappingError):
    code = "DUPLICATE_ENTITY"

    def __init__(self, entity: str, first: str, second: str):
        super().__init__(f"Entity '{entity}' defined twice: {first} and {second}")
        self.entity = entity


# --- Conditions ---

class ConditionParseError(EdifactError):
    code = "CONDITION_PARSE_ERROR"

    def __init__(self, message: str, position: int):
        super().__init__(f"{message} at position {position}")
        self.position = position


class UnexpectedToken(ConditionParseError):
    code = "UNEXPECTED_TOKEN"

    def __init__(self, position: int, expected: str, found: str):
        super().__init__(f"Expected {expected}, found '{found}'", position)
        self.expected = expected
        self.found = found


class UnmatchedCloseParen(ConditionParseError):
    code = "UNMATCHED_CLOSE_PAREN"

    def __init__(self, position: int):
        super().__init__("Unmatched closing parenthesis", position)


class EmptyExpression(ConditionParseError):
    code = "EMPTY_EXPRESSION"

    def __init__(self, position: int = 0):
        super().__init__("Empty condition expression", position)


class InvalidConditionRef(ConditionParseError):
    code = "INVALID_CONDITION_REF"

    def __init__(self, content: str, position: int):
        super().__init__(f"Invalid condition reference '[{content}]'", position)
        self.content = content


class NestingTooDeep(ConditionParseError):
    code = "NESTING_TOO_DEEP"

    def __init__(self, position: int, limit: int):
        super().__init__(f"Expression nests deeper than {limit} levels", position)
        self.limit = limit


# --- Validation ---

class EdifactValidationError(EdifactError):
    code = "VALIDATION_ERROR"


class ValidationParseError(EdifactValidationError):
    code = "PARSE"

    def __init__(self, cause: EdifactParseError):
        super().__init__(f"Parse error: {cause.message}")
        self.cause = cause


class ValidationConditionParseError(EdifactValidationError):
    code = "CONDITION_PARSE"

    def __init__(self, expression: str, cause: ConditionParseError):
        super().__init__(f"Failed to parse condition '{expression}': {cause.message}")
        self.expression = expression
        self.cause = cause


class UnknownPruefidentifikator(EdifactValidationError):
    code = "UNKNOWN_PRUEFIDENTIFIKATOR"

    def __init__(self, pid: str):
        super().__init__(f"No AHB workflow for Pruefidentifikator {pid}")
        self.pid = pid


class NoEvaluator(EdifactValidationError):
    code = "NO_EVALUATOR"

    def __init__(self, message_type: str, format_version: str):
        super().__init__(f"No condition evaluator registered for {message_type} {format_version}")
        self.message_type = message_type
        self.format_version = format_version
