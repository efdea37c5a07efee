# Declarative mapping definitions: one TOML file per BO4E entity.
import logging
import re
import tomllib
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from edifact_errors import DuplicateEntity, TomlParse, UnknownHandler
from mapping_handlers import HandlerRegistry, TransformRegistry

logger = logging.getLogger(__name__)

NESTED_GROUP_KEY = "_group"
NESTED_DISCRIMINATOR_KEY = "_discriminator"


def lower_camel(name: str) -> str:
    """``MarktlokationEdifact`` -> ``marktlokationEdifact``; snake_case is joined as well."""
    parts = [p for p in re.split(r"[_\s]+", name) if p]
    if not parts:
        return name
    head = parts[0][:1].lower() + parts[0][1:]
    return head + "".join(p[:1].upper() + p[1:] for p in parts[1:])


def _normalize_fields(raw: Any) -> Any:
    """Tags every entry of a ``fields`` table as a plain field or a nested group."""
    if not isinstance(raw, dict):
        return raw
    normalized = {}
    for key, value in raw.items():
        if isinstance(value, str):
            normalized[key] = {"kind": "field", "target": value}
        elif isinstance(value, dict) and "kind" in value:
            normalized[key] = value
        elif isinstance(value, dict) and "target" in value:
            normalized[key] = {"kind": "field", **value}
        elif isinstance(value, dict):
            body = dict(value)
            normalized[key] = {
                "kind": "nested",
                "group": body.pop(NESTED_GROUP_KEY, key),
                "discriminator": body.pop(NESTED_DISCRIMINATOR_KEY, None),
                "fields": body,
            }
        else:
            normalized[key] = value
    return normalized


class MappingMeta(BaseModel):
    entity: str
    bo4e_type: str
    companion_type: Optional[str] = None
    source_group: str = ""
    source_path: Optional[str] = None
    discriminator: Optional[str] = None
    collection: Optional[str] = Field(None, description="JSON key of an always-array collection.")


class StructuredFieldMapping(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["field"] = "field"
    target: str
    transform: Optional[str] = None
    when: Optional[str] = None
    default: Optional[str] = None
    enum_map: Optional[Dict[str, str]] = None

    def reverse_enum(self, value: str) -> Optional[str]:
        """Source code for a target value; the smallest key wins when several map to it."""
        if not self.enum_map:
            return value
        keys = sorted(k for k, v in self.enum_map.items() if v == value)
        return keys[0] if keys else None


class NestedFieldMapping(BaseModel):
    kind: Literal["nested"] = "nested"
    group: str
    discriminator: Optional[str] = None
    fields: Dict[str, 'FieldMapping'] = Field(default_factory=dict)

    @field_validator("fields", mode="before")
    @classmethod
    def _tag_fields(cls, value):
        return _normalize_fields(value)


FieldMapping = Annotated[Union[StructuredFieldMapping, NestedFieldMapping], Field(discriminator="kind")]


class ComplexHandlerRef(BaseModel):
    name: str
    description: str = ""


class MappingDefinition(BaseModel):
    meta: MappingMeta
    fields: Dict[str, FieldMapping] = Field(default_factory=dict)
    companion_fields: Dict[str, FieldMapping] = Field(default_factory=dict)
    complex_handlers: List[ComplexHandlerRef] = Field(default_factory=list)
    source_file: Optional[str] = Field(None, exclude=True)

    @field_validator("fields", "companion_fields", mode="before")
    @classmethod
    def _tag_fields(cls, value):
        return _normalize_fields(value)

    @property
    def entity(self) -> str:
        return self.meta.entity

    @property
    def output_key(self) -> str:
        return self.meta.collection or lower_camel(self.meta.entity)

    @property
    def is_collection(self) -> bool:
        return self.meta.collection is not None

    @property
    def companion_key(self) -> Optional[str]:
        return lower_camel(self.meta.companion_type) if self.meta.companion_type else None

    def transform_names(self) -> List[str]:
        names = []
        stack = [self.fields, self.companion_fields]
        while stack:
            for field in stack.pop().values():
                if isinstance(field, NestedFieldMapping):
                    stack.append(field.fields)
                elif field.transform:
                    names.append(field.transform)
        return names


NestedFieldMapping.model_rebuild()


def load_definition(path: Union[str, Path]) -> MappingDefinition:
    path = Path(path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise TomlParse(str(path), str(e)) from e
    try:
        definition = MappingDefinition.model_validate(data)
    except ValidationError as e:
        raise TomlParse(str(path), str(e)) from e
    definition.source_file = str(path)
    return definition


def _check_references(
    definition: MappingDefinition,
    handlers: HandlerRegistry,
    transforms: TransformRegistry,
) -> None:
    for ref in definition.complex_handlers:
        if not handlers.has_handler(ref.name):
            raise UnknownHandler(ref.name, definition.entity)
    for name in definition.transform_names():
        if not transforms.has(name):
            raise UnknownHandler(name, definition.entity)


def load_directory(
    directory: Union[str, Path],
    handlers: Optional[HandlerRegistry] = None,
    transforms: Optional[TransformRegistry] = None,
) -> List[MappingDefinition]:
    """Loads every ``*.toml`` file of a directory (sorted by name); other files are ignored."""
    directory = Path(directory)
    handlers = handlers or HandlerRegistry.with_builtins()
    transforms = transforms or TransformRegistry.with_builtins()
    if not directory.is_dir():
        logger.warning(f"Mapping directory does not exist: {directory}")
        return []

    definitions: List[MappingDefinition] = []
    for toml_file in sorted(directory.glob("*.toml")):
        definition = load_definition(toml_file)
        _check_references(definition, handlers, transforms)
        definitions.append(definition)
        logger.info(f"Loaded mapping definition: {toml_file.name} ({definition.entity})")
    _check_duplicates(definitions)
    return definitions


def _check_duplicates(definitions: List[MappingDefinition]) -> None:
    seen: Dict[str, MappingDefinition] = {}
    for definition in definitions:
        first = seen.get(definition.entity)
        if first is not None:
            raise DuplicateEntity(definition.entity, first.source_file or "?", definition.source_file or "?")
        seen[definition.entity] = definition


class MappingSet(BaseModel):
    """Message-level and transaction-level definitions of one message type."""
    message: List[MappingDefinition] = Field(default_factory=list)
    transaction: List[MappingDefinition] = Field(default_factory=list)

    @classmethod
    def load(
        cls,
        base_dir: Union[str, Path],
        handlers: Optional[HandlerRegistry] = None,
        transforms: Optional[TransformRegistry] = None,
    ) -> "MappingSet":
        base_dir = Path(base_dir)
        return load_split(base_dir / "message", base_dir / "transaction", handlers, transforms)

    def all(self) -> List[MappingDefinition]:
        return self.message + self.transaction

    def get(self, entity: str) -> Optional[MappingDefinition]:
        return next((d for d in self.all() if d.entity == entity), None)

    def __len__(self) -> int:
        return len(self.message) + len(self.transaction)


def load_split(
    message_dir: Union[str, Path],
    transaction_dir: Union[str, Path],
    handlers: Optional[HandlerRegistry] = None,
    transforms: Optional[TransformRegistry] = None,
) -> MappingSet:
    mapping_set = MappingSet(
        message=load_directory(message_dir, handlers, transforms),
        transaction=load_directory(transaction_dir, handlers, transforms),
    )
    _check_duplicates(mapping_set.all())
    logger.info(
        f"Loaded {len(mapping_set.message)} message-level and "
        f"{len(mapping_set.transaction)} transaction-level mapping definition(s)"
    )
    return mapping_set
