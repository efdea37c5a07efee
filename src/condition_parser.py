"""
Parser for AHB condition expressions such as ``Muss [1] ∧ ([2] ∨ [3])``.

Precedence, tightest first: ``NOT``, ``AND`` (``∧``), ``XOR`` (``⊻``),
``OR`` (``∨``). Adjacent operands without an operator are joined with AND.
``And`` and ``Or`` chains are flattened into one node; ``Xor`` stays binary
and associates to the left. Errors report byte positions in the input.
Condition numbers must fit in 32 bits and NOT, parentheses and XOR chains
may nest at most ``MAX_NESTING_DEPTH`` levels.
"""
import logging
from typing import List, Optional, Set, Union

from pydantic import BaseModel, ConfigDict

from edifact_errors import (
    EmptyExpression,
    InvalidConditionRef,
    NestingTooDeep,
    UnexpectedToken,
    UnmatchedCloseParen,
)

logger = logging.getLogger(__name__)

STATUS_PREFIXES = ("Muss", "Soll", "Kann", "X")

# Condition numbers are unsigned 32-bit values.
MAX_CONDITION_ID = 2 ** 32 - 1
MAX_CONDITION_DIGITS = len(str(MAX_CONDITION_ID))
MAX_NESTING_DEPTH = 100

AND_SYMBOL = "∧"
OR_SYMBOL = "∨"
XOR_SYMBOL = "⊻"

KEYWORDS = {"AND": "AND", "OR": "OR", "XOR": "XOR", "NOT": "NOT"}
SYMBOLS = {AND_SYMBOL: "AND", OR_SYMBOL: "OR", XOR_SYMBOL: "XOR", "(": "LPAREN", ")": "RPAREN"}


# --- AST ---

class _Expr(BaseModel):
    model_config = ConfigDict(frozen=True)

    def condition_ids(self) -> Set[int]:
        ids: Set[int] = set()
        self._collect(ids)
        return ids

    def _collect(self, ids: Set[int]) -> None:
        raise NotImplementedError


class Ref(_Expr):
    id: int

    def _collect(self, ids):
        ids.add(self.id)

    def __str__(self):
        return f"[{self.id}]"


class And(_Expr):
    operands: List['ConditionExpr']

    def _collect(self, ids):
        for operand in self.operands:
            operand._collect(ids)

    def __str__(self):
        return "(" + f" {AND_SYMBOL} ".join(str(o) for o in self.operands) + ")"


class Or(_Expr):
    operands: List['ConditionExpr']

    def _collect(self, ids):
        for operand in self.operands:
            operand._collect(ids)

    def __str__(self):
        return "(" + f" {OR_SYMBOL} ".join(str(o) for o in self.operands) + ")"


class Xor(_Expr):
    operands: List['ConditionExpr']

    def _collect(self, ids):
        for operand in self.operands:
            operand._collect(ids)

    def __str__(self):
        return "(" + f" {XOR_SYMBOL} ".join(str(o) for o in self.operands) + ")"


class Not(_Expr):
    operand: 'ConditionExpr'

    def _collect(self, ids):
        self.operand._collect(ids)

    def __str__(self):
        return f"NOT {self.operand}"


ConditionExpr = Union[Ref, And, Or, Xor, Not]

for _model in (And, Or, Xor, Not):
    _model.model_rebuild()


# --- Tokens ---

class Token(BaseModel):
    kind: str  # REF | AND | OR | XOR | NOT | LPAREN | RPAREN
    position: int
    value: Optional[int] = None
    text: str = ""


def strip_status_prefix(text: str) -> str:
    """Removes a leading Muss/Soll/Kann/X when an expression follows it."""
    trimmed = text.strip()
    for prefix in STATUS_PREFIXES:
        if trimmed.startswith(prefix) and not trimmed[len(prefix):len(prefix) + 1].isalpha():
            rest = trimmed[len(prefix):].lstrip()
            if rest:
                return rest
    return trimmed


def _byte_len(text: str, start: int, end: int) -> int:
    return len(text[start:end].encode("utf-8"))


def _condition_id(content: str, position: int) -> int:
    """``[931]`` -> 931; a numeric prefix is accepted (``[10P1..5]`` -> 10)."""
    digits = ""
    for ch in content:
        if not ch.isascii() or not ch.isdigit():
            break
        digits += ch
    significant = digits.lstrip("0")
    if not digits or len(significant) > MAX_CONDITION_DIGITS:
        raise InvalidConditionRef(content, position)
    value = int(significant or "0")
    if value > MAX_CONDITION_ID:
        raise InvalidConditionRef(content, position)
    return value


def tokenize(text: str, base: int = 0) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    last = 0
    position = base
    while i < len(text):
        position += _byte_len(text, last, i)
        last = i
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch in SYMBOLS:
            tokens.append(Token(kind=SYMBOLS[ch], position=position, text=ch))
            i += 1
        elif ch == "[":
            end = text.find("]", i + 1)
            if end == -1:
                raise InvalidConditionRef(text[i + 1:], position)
            content = text[i + 1:end]
            tokens.append(Token(kind="REF", position=position, value=_condition_id(content, position), text=text[i:end + 1]))
            i = end + 1
        elif ch.isascii() and ch.isalpha():
            start = i
            while i < len(text) and text[i].isascii() and text[i].isalpha():
                i += 1
            word = text[start:i]
            kind = KEYWORDS.get(word.upper())
            if kind is None:
                raise UnexpectedToken(position, "operator or condition", word)
            tokens.append(Token(kind=kind, position=position, text=word))
        elif ch == "]":
            raise UnexpectedToken(position, "condition or '('", ch)
        else:
            raise UnexpectedToken(position, "operator or condition", ch)
    return tokens


# --- Parser ---

class _Parser:
    def __init__(self, tokens: List[Token], end_position: int):
        self.tokens = tokens
        self.pos = 0
        self.end_position = end_position
        self.depth = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def enter(self, token: Token) -> None:
        """Counts one NOT or parenthesis level."""
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise NestingTooDeep(token.position, MAX_NESTING_DEPTH)

    def parse(self) -> ConditionExpr:
        expr = self.parse_or()
        token = self.peek()
        if token is not None:
            if token.kind == "RPAREN":
                raise UnmatchedCloseParen(token.position)
            raise UnexpectedToken(token.position, "operator or end of input", token.text)
        return expr

    def parse_or(self) -> ConditionExpr:
        operands = [self.parse_xor()]
        while self.peek() is not None and self.peek().kind == "OR":
            self.take()
            operands.append(self.parse_xor())
        return operands[0] if len(operands) == 1 else Or(operands=_flatten(operands, Or))

    def parse_xor(self) -> ConditionExpr:
        left = self.parse_and()
        chained = 0
        while self.peek() is not None and self.peek().kind == "XOR":
            token = self.take()
            chained += 1
            if self.depth + chained > MAX_NESTING_DEPTH:
                raise NestingTooDeep(token.position, MAX_NESTING_DEPTH)
            left = Xor(operands=[left, self.parse_and()])
        return left

    def parse_and(self) -> ConditionExpr:
        operands = [self.parse_not()]
        while True:
            token = self.peek()
            if token is None:
                break
            if token.kind == "AND":
                self.take()
            elif token.kind not in ("REF", "LPAREN", "NOT"):
                break
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else And(operands=_flatten(operands, And))

    def parse_not(self) -> ConditionExpr:
        token = self.peek()
        if token is not None and token.kind == "NOT":
            self.enter(self.take())
            operand = self.parse_not()
            self.depth -= 1
            return Not(operand=operand)
        return self.parse_primary()

    def parse_primary(self) -> ConditionExpr:
        token = self.peek()
        if token is None:
            raise UnexpectedToken(self.end_position, "condition or '('", "end of input")
        if token.kind == "REF":
            self.take()
            return Ref(id=token.value)
        if token.kind == "LPAREN":
            self.enter(self.take())
            expr = self.parse_or()
            closing = self.peek()
            if closing is None:
                raise UnexpectedToken(self.end_position, "')'", "end of input")
            if closing.kind != "RPAREN":
                raise UnexpectedToken(closing.position, "')'", closing.text)
            self.take()
            self.depth -= 1
            return expr
        if token.kind == "RPAREN":
            raise UnmatchedCloseParen(token.position)
        raise UnexpectedToken(token.position, "condition or '('", token.text)


def _flatten(operands: List[ConditionExpr], kind: type) -> List[ConditionExpr]:
    flat = []
    for operand in operands:
        if isinstance(operand, kind):
            flat.extend(operand.operands)
        else:
            flat.append(operand)
    return flat


class ConditionParser:
    @staticmethod
    def parse(text: str) -> ConditionExpr:
        """Parses an expression; raises ``EmptyExpression`` when nothing but a status is given."""
        expr = ConditionParser.parse_optional(text)
        if expr is None:
            raise EmptyExpression(0)
        return expr

    @staticmethod
    def parse_optional(text: str) -> Optional[ConditionExpr]:
        """Like ``parse`` but returns None for empty input and bare status values (``Muss``)."""
        stripped = strip_status_prefix(text)
        if not stripped or stripped in STATUS_PREFIXES:
            return None
        start = len(text.rstrip()) - len(stripped)
        base = len(text[:start].encode("utf-8"))
        tokens = tokenize(stripped, base)
        if not tokens:
            return None
        expr = _Parser(tokens, len(text.encode("utf-8"))).parse()
        logger.debug(f"Parsed condition {text!r} -> {expr}")
        return expr


def parse_condition(text: str) -> ConditionExpr:
    return ConditionParser.parse(text)
