"""
Named functions that mapping definitions refer to.

Two registries live here:

* ``TransformRegistry`` holds value transforms used by structured fields
  (``transform = "edifact_date_to_iso"``). A transform has a forward function
  and, unless it is destructive, an inverse used by the reverse direction.
* ``HandlerRegistry`` holds complex handlers for work the declarative field
  layer cannot express, such as cross-entity links. A handler reads a whole
  group instance and returns JSON; its reverse takes the JSON object and
  returns segments to add to the rebuilt instance.
"""
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from assembled_tree import AssembledGroupInstance
from bo4e_model import Bo4eUri, LinkRegistry
from edifact_errors import TypeConversion, UnknownHandler
from edifact_models import OwnedSegment

logger = logging.getLogger(__name__)

TransformFn = Callable[[str], str]


# --- Transforms ---

LOCATION_TYPES = {
    "Z16": "Marktlokation",
    "Z17": "Messlokation",
    "Z18": "Netzlokation",
    "Z19": "SteuerbareRessource",
    "Z20": "TechnischeRessource",
}

_EDIFACT_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:(\d{2})(\d{2}))?(?:([+-])(\d{2})(\d{2})?)?$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})(?:T(\d{2}):(\d{2})(?:([+-])(\d{2}):(\d{2}))?)?$")


def loc_qualifier_to_type(value: str) -> str:
    try:
        return LOCATION_TYPES[value.strip()]
    except KeyError:
        raise TypeConversion(f"Unknown location qualifier '{value}'") from None


def type_to_loc_qualifier(value: str) -> str:
    for qualifier, type_name in LOCATION_TYPES.items():
        if type_name == value:
            return qualifier
    raise TypeConversion(f"No location qualifier for type '{value}'")


def edifact_date_to_iso(value: str) -> str:
    """CCYYMMDD, CCYYMMDDHHMM and CCYYMMDDHHMM+ZZ to ISO 8601."""
    match = _EDIFACT_DATE_RE.match(value.strip())
    if not match:
        raise TypeConversion(f"'{value}' is not an EDIFACT date")
    year, month, day, hour, minute, sign, off_hours, off_minutes = match.groups()
    result = f"{year}-{month}-{day}"
    if hour is not None:
        result += f"T{hour}:{minute}"
        if sign:
            result += f"{sign}{off_hours}:{off_minutes or '00'}"
    return result


def iso_to_edifact_date(value: str) -> str:
    match = _ISO_DATE_RE.match(value.strip())
    if not match:
        raise TypeConversion(f"'{value}' is not an ISO date")
    year, month, day, hour, minute, sign, off_hours, off_minutes = match.groups()
    result = f"{year}{month}{day}"
    if hour is not None:
        result += f"{hour}{minute}"
        if sign:
            result += f"{sign}{off_hours}" + ("" if off_minutes == "00" else off_minutes)
    return result


def decimal_comma_to_point(value: str) -> str:
    return value.replace(",", ".")


def decimal_point_to_comma(value: str) -> str:
    return value.replace(".", ",")


class Transform:
    def __init__(self, name: str, forward: TransformFn, inverse: Optional[TransformFn] = None):
        self.name = name
        self.forward = forward
        self.inverse = inverse

    @property
    def is_destructive(self) -> bool:
        return self.inverse is None


class TransformRegistry:
    def __init__(self):
        self._transforms: Dict[str, Transform] = {}

    @classmethod
    def with_builtins(cls) -> "TransformRegistry":
        registry = cls()
        registry.register("loc_qualifier_to_type", loc_qualifier_to_type, type_to_loc_qualifier)
        registry.register("edifact_date_to_iso", edifact_date_to_iso, iso_to_edifact_date)
        registry.register("decimal_comma_to_point", decimal_comma_to_point, decimal_point_to_comma)
        registry.register("uppercase", str.upper)
        registry.register("strip", str.strip)
        return registry

    def register(self, name: str, forward: TransformFn, inverse: Optional[TransformFn] = None) -> None:
        if name in self._transforms:
            logger.warning(f"Transform '{name}' re-registered")
        self._transforms[name] = Transform(name, forward, inverse)

    def has(self, name: str) -> bool:
        return name in self._transforms

    def get(self, name: str) -> Transform:
        if name not in self._transforms:
            raise UnknownHandler(name)
        return self._transforms[name]

    def apply(self, name: str, value: str) -> str:
        return self.get(name).forward(value)

    def invert(self, name: str, value: str) -> str:
        transform = self.get(name)
        if transform.inverse is None:
            raise TypeConversion(f"Transform '{name}' has no inverse")
        return transform.inverse(value)

    def names(self) -> List[str]:
        return sorted(self._transforms)


# --- Complex handlers ---

class HandlerContext:
    """What a handler may see besides the instance: the entity and the link registry."""

    def __init__(self, entity: str, bo4e_type: str, links: Optional[LinkRegistry] = None,
                 source: Optional[Bo4eUri] = None):
        self.entity = entity
        self.bo4e_type = bo4e_type
        self.links = links if links is not None else LinkRegistry()
        self.source = source


class ComplexHandler:
    name = ""
    description = ""

    def forward(self, instance: AssembledGroupInstance, context: HandlerContext) -> Dict[str, Any]:
        raise NotImplementedError

    def reverse(self, obj: Dict[str, Any], context: HandlerContext) -> List[OwnedSegment]:
        raise NotImplementedError


class ResolveCrossRefs(ComplexHandler):
    """
    RFF references to other locations become ``bo4e://`` links under
    ``verknuepfungen``; the reverse turns them back into RFF segments.
    """
    name = "resolve_cross_refs"
    description = "RFF Z18/Z19/Z20 references to bo4e:// links"
    target_key = "verknuepfungen"

    QUALIFIER_TYPES = {
        "Z18": "Marktlokation",
        "Z19": "Messlokation",
        "Z20": "Netzlokation",
    }

    def forward(self, instance: AssembledGroupInstance, context: HandlerContext) -> Dict[str, Any]:
        links = []
        for segment in instance.iter_segments():
            if not segment.is_("RFF"):
                continue
            type_name = self.QUALIFIER_TYPES.get(segment.get_component(0, 0).strip())
            reference = segment.get_component(0, 1).strip()
            if type_name is None or not reference:
                continue
            uri = Bo4eUri.new(type_name, reference)
            links.append(str(uri))
            if context.source is not None:
                context.links.add_link(context.source, uri, relation=segment.get_component(0, 0).strip())
        return {self.target_key: links} if links else {}

    def reverse(self, obj: Dict[str, Any], context: HandlerContext) -> List[OwnedSegment]:
        qualifiers = {type_name: qualifier for qualifier, type_name in self.QUALIFIER_TYPES.items()}
        segments = []
        for text in obj.get(self.target_key, []):
            uri = Bo4eUri.parse(str(text))
            if uri is None or uri.type_name not in qualifiers:
                logger.warning(f"Cannot write link '{text}' of {context.entity} as RFF")
                continue
            segments.append(OwnedSegment(id="RFF", elements=[[qualifiers[uri.type_name], uri.id]]))
        return segments


class CollectFreeText(ComplexHandler):
    """
    FTX segments of an instance as entries under ``bemerkungen``: the
    qualifier, the text function and text code when present, and the C108
    text components as a list, so each component is written back as it was.
    """
    name = "collect_free_text"
    description = "FTX qualifier, function, code and text components"
    target_key = "bemerkungen"
    text_element = 3
    max_component_length = 512

    def forward(self, instance: AssembledGroupInstance, context: HandlerContext) -> Dict[str, Any]:
        notes = []
        for segment in instance.get_segments("FTX"):
            note: Dict[str, Any] = {"qualifier": segment.get_element(0)}
            if segment.get_element(1):
                note["funktion"] = segment.get_element(1)
            if segment.get_component(2, 0):
                note["code"] = segment.get_component(2, 0)
            note["texte"] = list(segment.elements[self.text_element]) if len(segment.elements) > self.text_element else []
            notes.append(note)
        return {self.target_key: notes} if notes else {}

    def reverse(self, obj: Dict[str, Any], context: HandlerContext) -> List[OwnedSegment]:
        segments = []
        for note in obj.get(self.target_key, []):
            if "texte" in note:
                components = [str(t) for t in note["texte"]] or [""]
            else:
                # Single string form; split at the component length limit.
                text = str(note.get("text", ""))
                size = self.max_component_length
                components = [text[i:i + size] for i in range(0, len(text), size)] or [""]
            segments.append(OwnedSegment(id="FTX", elements=[
                [str(note.get("qualifier", ""))],
                [str(note.get("funktion", ""))],
                [str(note.get("code", ""))],
                components,
            ]))
        return segments


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, ComplexHandler] = {}

    @classmethod
    def with_builtins(cls) -> "HandlerRegistry":
        registry = cls()
        registry.register(ResolveCrossRefs())
        registry.register(CollectFreeText())
        return registry

    def register(self, handler: ComplexHandler) -> None:
        self._handlers[handler.name] = handler

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def get(self, name: str) -> ComplexHandler:
        if name not in self._handlers:
            raise UnknownHandler(name)
        return self._handlers[name]

    def invoke(self, name: str, instance: AssembledGroupInstance, context: HandlerContext) -> Dict[str, Any]:
        return self.get(name).forward(instance, context)

    def invoke_reverse(self, name: str, obj: Dict[str, Any], context: HandlerContext) -> List[OwnedSegment]:
        return self.get(name).reverse(obj, context)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)
