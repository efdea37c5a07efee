# BO4E side of the conversion: object URIs, cross-entity links, the JSON
# envelope of a converted interchange and forward-mapping trace records.
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

URI_SCHEME = "bo4e://"


class Bo4eUri(BaseModel):
    """``bo4e://<Type>/<Id>``; cross-entity references are carried as these strings."""
    model_config = ConfigDict(frozen=True)

    type_name: str
    id: str

    @classmethod
    def new(cls, type_name: str, id: str) -> "Bo4eUri":
        return cls(type_name=type_name, id=id)

    @classmethod
    def parse(cls, text: str) -> Optional["Bo4eUri"]:
        if not text.startswith(URI_SCHEME):
            return None
        type_name, sep, id = text[len(URI_SCHEME):].partition("/")
        if not sep or not type_name or not id:
            return None
        return cls(type_name=type_name, id=id)

    def __str__(self) -> str:
        return f"{URI_SCHEME}{self.type_name}/{self.id}"


class LinkRegistry:
    """Links between BO4E objects of one transaction, keyed by source URI."""

    def __init__(self):
        self._links: Dict[Bo4eUri, List[Tuple[str, Bo4eUri]]] = {}

    def add_link(self, source: Bo4eUri, target: Bo4eUri, relation: str = "") -> None:
        self._links.setdefault(source, []).append((relation, target))

    def get_links_from(self, source: Bo4eUri) -> List[Bo4eUri]:
        return [target for _, target in self._links.get(source, [])]

    def get_links_to(self, target: Bo4eUri) -> List[Bo4eUri]:
        return [source for source, links in self._links.items() if any(t == target for _, t in links)]

    def all_links(self) -> List[Tuple[Bo4eUri, str, Bo4eUri]]:
        return [(source, relation, target) for source, links in self._links.items() for relation, target in links]

    def clear(self) -> None:
        self._links.clear()

    def __len__(self) -> int:
        return len(self._links)


class TraceEntry(BaseModel):
    """One value written during forward extraction."""
    mapper: str
    source_segment: str
    target_path: str
    value: Any


class MappingIssue(BaseModel):
    """A field-level mapping failure; the field is omitted from the output."""
    entity: str
    field: str
    code: str
    message: str


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PassthroughRecord(_CamelModel):
    """
    A piece of the source message the mappings do not carry, with where it goes.

    ``action`` is ``insert`` (replay ``raw`` at ``phase``/``index`` of the
    instance at ``group_path``), ``replace`` (``raw`` takes the place of the
    rebuilt segment rendered as ``replaces``) or ``drop`` (remove the rebuilt
    segment rendered as ``raw``).
    """
    raw: str
    zone: str
    transaction_index: Optional[int] = None
    phase: str = "segments"
    index: int = 0
    group_path: List[str] = Field(default_factory=list)
    action: str = "insert"
    replaces: Optional[str] = None


class Bo4eMessage(_CamelModel):
    reference: str
    message_type: str = ""
    pid: Optional[str] = None
    unh: List[List[str]] = Field(default_factory=list)
    stammdaten: Dict[str, Any] = Field(default_factory=dict)
    transactions: List[Dict[str, Any]] = Field(default_factory=list)
    passthrough: List[PassthroughRecord] = Field(default_factory=list)
    trace: Optional[List[TraceEntry]] = None


class Bo4eInterchange(_CamelModel):
    una: Optional[str] = None
    unb: Optional[List[List[str]]] = None
    messages: List[Bo4eMessage] = Field(default_factory=list)
    unz: Optional[List[List[str]]] = None

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
