"""
Resolution of named EDIFACT paths to element/component indices.

Mapping files address data with paths like ``loc.c517.d3225`` (segment,
composite id, data element id) or ``loc.d3227`` (segment, simple data
element id). The resolver learns the element layout from a MIG schema and/or
PID schemas and turns such paths into an ``EdifactPath`` with 0-based
indices. Numeric paths (``loc.1.0``) need no schema.
"""
import logging
import re
from typing import Dict, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict

from edifact_errors import InvalidPath
from edifact_models import OwnedSegment
from mig_schema_models import MigComposite, MigSchema, PidGroupSchema, PidSchema

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"^([A-Za-z][A-Za-z0-9]{0,2})(?:\[([^\]]*)\])?$")
_GUARD_RE = re.compile(r"""^\s*(\S+)\s*==\s*(?:'([^']*)'|"([^"]*)")\s*$""")

BUILTIN_ALIASES = {"qualifier": 0}


class EdifactPath(BaseModel):
    """A resolved path: segment tag, optional qualifier filter, element and component index."""
    model_config = ConfigDict(frozen=True)

    tag: str
    qualifier: Optional[str] = None
    element: int
    component: int = 0

    def __str__(self) -> str:
        qualifier = f"[{self.qualifier}]" if self.qualifier is not None else ""
        return f"{self.tag}{qualifier}.{self.element}.{self.component}"

    def selects(self, segment: OwnedSegment) -> bool:
        if not segment.is_(self.tag):
            return False
        return self.qualifier is None or segment.get_component(0, 0).strip() == self.qualifier

    def read(self, segment: OwnedSegment) -> str:
        return segment.get_component(self.element, self.component)


class Condition(BaseModel):
    """A ``path == 'value'`` predicate used for discriminators and ``when`` guards."""
    model_config = ConfigDict(frozen=True)

    path: EdifactPath
    value: str

    def holds_for(self, segment: OwnedSegment) -> bool:
        return self.path.selects(segment) and self.path.read(segment).strip() == self.value


def _is_index(part: str) -> bool:
    return part[:1].isdigit()


def _element_key(raw_id: str, composite: bool) -> str:
    raw_id = raw_id.lower()
    if raw_id[:1] in ("c", "d"):
        return raw_id
    return ("c" if composite else "d") + raw_id


class PathResolver:
    def __init__(self):
        self._simple: Dict[Tuple[str, str], int] = {}
        self._composites: Dict[Tuple[str, str], int] = {}
        self._components: Dict[Tuple[str, str, str], Tuple[int, int]] = {}
        self._aliases: Dict[Tuple[str, str], Tuple[int, int]] = {}

    @classmethod
    def from_mig(cls, mig: MigSchema) -> "PathResolver":
        resolver = cls()
        resolver.merge_mig(mig)
        return resolver

    @classmethod
    def from_pid_schema(cls, schema: Union[PidSchema, dict]) -> "PathResolver":
        resolver = cls()
        resolver.merge_pid_schema(schema)
        return resolver

    def merge_mig(self, mig: MigSchema) -> None:
        for segment in mig.iter_segment_defs():
            tag = segment.id.upper()
            seen: Dict[str, int] = {}
            for element in sorted(segment.elements, key=lambda e: e.position):
                key = self._ordinal_key(seen, _element_key(element.id, isinstance(element, MigComposite)))
                if isinstance(element, MigComposite):
                    self._composites.setdefault((tag, key), element.position)
                    sub_seen: Dict[str, int] = {}
                    for component in element.components:
                        sub_key = self._ordinal_key(sub_seen, _element_key(component.id, False))
                        self._components.setdefault((tag, key, sub_key), (element.position, component.position))
                else:
                    self._simple.setdefault((tag, key), element.position)
        logger.debug(f"Path resolver now knows {len(self._simple)} element(s) and {len(self._components)} component(s) from MIG {mig.message_type}")

    def merge_pid_schema(self, schema: Union[PidSchema, dict]) -> None:
        if isinstance(schema, dict):
            schema = PidSchema.model_validate(schema)
        for _, group in schema.iter_groups():
            self._merge_pid_group(group)

    def _merge_pid_group(self, group: PidGroupSchema) -> None:
        for segment in group.segments:
            tag = segment.id.upper()
            seen: Dict[str, int] = {}
            for element in segment.elements:
                if element.composite:
                    key = self._ordinal_key(seen, _element_key(element.composite, True))
                    self._composites.setdefault((tag, key), element.index)
                    sub_seen: Dict[str, int] = {}
                    for component in element.components:
                        sub_key = self._ordinal_key(sub_seen, _element_key(component.id, False))
                        self._components.setdefault((tag, key, sub_key), (element.index, component.sub_index))
                elif element.id:
                    key = self._ordinal_key(seen, _element_key(element.id, False))
                    self._simple.setdefault((tag, key), element.index)

    @staticmethod
    def _ordinal_key(seen: Dict[str, int], key: str) -> str:
        """Second and later occurrences of an id get ``_2``, ``_3``... suffixes."""
        seen[key] = seen.get(key, 0) + 1
        return key if seen[key] == 1 else f"{key}_{seen[key]}"

    def add_alias(self, tag: str, alias: str, element: int, component: int = 0) -> None:
        self._aliases[(tag.upper(), alias.lower())] = (element, component)

    def resolve(self, path: str) -> EdifactPath:
        parts = path.strip().split(".")
        match = _TAG_RE.match(parts[0])
        if not match:
            raise InvalidPath(path, "segment tag expected")
        tag = match.group(1).upper()
        qualifier = match.group(2).strip() if match.group(2) is not None else None
        rest = parts[1:]
        if not rest or len(rest) > 2 or any(not p for p in rest):
            raise InvalidPath(path, "expected <segment>.<element>[.<component>]")

        first = rest[0].lower()
        component: Optional[int] = None
        if _is_index(first):
            element = self._index(path, first)
        elif (tag, first) in self._composites:
            element = self._composites[(tag, first)]
        elif (tag, first) in self._simple:
            element = self._simple[(tag, first)]
        elif (tag, first) in self._aliases and len(rest) == 1:
            element, component = self._aliases[(tag, first)]
        else:
            raise InvalidPath(path, f"unknown element '{rest[0]}' for segment {tag}")

        if len(rest) == 2:
            second = rest[1].lower()
            if _is_index(second):
                component = self._index(path, second)
            elif second in BUILTIN_ALIASES:
                component = BUILTIN_ALIASES[second]
            elif (tag, first, second) in self._components:
                element, component = self._components[(tag, first, second)]
            else:
                raise InvalidPath(path, f"unknown component '{rest[1]}' in {tag}.{rest[0]}")

        return EdifactPath(tag=tag, qualifier=qualifier, element=element, component=component or 0)

    @staticmethod
    def _index(path: str, part: str) -> int:
        if not part.isdigit():
            raise InvalidPath(path, f"'{part}' is not a valid index")
        return int(part)

    def resolve_condition(self, expression: str) -> Condition:
        """
        Parses ``seq.d1245.qualifier == 'Z01'`` or the compact ``SEQ.0.0=Z01``.
        """
        match = _GUARD_RE.match(expression)
        if match:
            value = match.group(2) if match.group(2) is not None else match.group(3)
            return Condition(path=self.resolve(match.group(1)), value=value.strip())
        if "=" in expression and "==" not in expression:
            path_part, value = expression.split("=", 1)
            return Condition(path=self.resolve(path_part.strip()), value=value.strip())
        raise InvalidPath(expression, "expected \"<path> == 'value'\"")

    def is_resolvable(self, path: str) -> bool:
        try:
            self.resolve(path)
        except InvalidPath:
            return False
        return True
