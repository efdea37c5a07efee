"""
Bidirectional mapping between assembled group instances and BO4E JSON.

Forward extraction walks the definitions of a scope (the message root or one
transaction instance), locates the source group instances of each entity and
reads the declared fields. Reverse population reads the same fields from the
JSON, synthesizes segments from the MIG element structure and rebuilds the
group instances. Instances of several definitions that target the same group
repetition are merged.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from assembled_tree import AssembledGroup, AssembledGroupInstance, group_matches
from bo4e_model import Bo4eUri, LinkRegistry, MappingIssue, TraceEntry
from edifact_errors import MappingError, UnknownHandler
from edifact_models import OwnedSegment
from mapping_definition import (
    FieldMapping,
    MappingDefinition,
    NestedFieldMapping,
    StructuredFieldMapping,
    load_directory,
)
from mapping_handlers import HandlerContext, HandlerRegistry, TransformRegistry
from mig_schema_models import MigComposite, MigSchema, MigSegment, MigSegmentGroup
from path_resolver import Condition, EdifactPath, PathResolver

logger = logging.getLogger(__name__)


# --- JSON helpers ---

def get_path(obj: Any, dotted: str) -> Any:
    current = obj
    for part in dotted.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def set_path(obj: Dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    current = obj
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _aggregate(objects: List[Any], collection: bool) -> Any:
    if collection or len(objects) > 1:
        return objects
    return objects[0]


def _segment_ref(segment: Optional[OwnedSegment]) -> str:
    if segment is None:
        return ""
    return f"{segment.id}#{segment.segment_number}"


def _object_id(obj: Dict[str, Any]) -> Optional[str]:
    """The first string value whose key ends in ``Id`` identifies the object for links."""
    for key, value in obj.items():
        if key.endswith("Id") and isinstance(value, str) and value:
            return value
    return None


# --- Results ---

class ForwardResult:
    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.issues: List[MappingIssue] = []
        self.trace: List[TraceEntry] = []
        self.links = LinkRegistry()


class ReverseResult:
    def __init__(self, instance: AssembledGroupInstance, issues: List[MappingIssue]):
        self.instance = instance
        self.issues = issues


# --- Segment synthesis ---

def element_widths(segment_def: Optional[MigSegment]) -> Dict[int, int]:
    """Component count per element position as declared by the MIG."""
    if segment_def is None:
        return {}
    return {
        e.position: e.component_count() if isinstance(e, MigComposite) else 1
        for e in segment_def.elements
    }


class _SegmentSlot:
    """Values written into one segment, keyed by (element, component)."""

    def __init__(self, tag: str):
        self.tag = tag
        self.values: Dict[Tuple[int, int], str] = {}

    def write(self, path: EdifactPath, value: str) -> None:
        self.values[(path.element, path.component)] = value

    def build(self, segment_def: Optional[MigSegment]) -> OwnedSegment:
        widths = element_widths(segment_def)
        declared = segment_def.element_count() if segment_def is not None else 0
        written = max((e for e, _ in self.values), default=-1) + 1
        elements = []
        for e in range(max(declared, written)):
            width = max(widths.get(e, 1), max((c + 1 for (ee, c) in self.values if ee == e), default=0))
            components = [self.values.get((e, c), "") for c in range(width)]
            while len(components) > 1 and components[-1] == "" and (e, len(components) - 1) not in self.values:
                components.pop()
            elements.append(components)
        while elements and elements[-1] == [""] and (len(elements) - 1, 0) not in self.values:
            elements.pop()
        return OwnedSegment(id=self.tag, elements=elements)


def mig_position(segment: OwnedSegment, segment_defs: Sequence[MigSegment]) -> int:
    """Index of the MIG position a segment belongs to; unknown tags sort last."""
    fallback = None
    for j, definition in enumerate(segment_defs):
        if definition.matches(segment):
            return j
        if fallback is None and segment.is_(definition.id):
            fallback = j
    return fallback if fallback is not None else len(segment_defs)


class _InstanceBuilder:
    """A group instance under reverse construction; children are keyed by (group key, index)."""

    def __init__(self, group_key: str, segment_defs: List[MigSegment], nested: List[MigSegmentGroup],
                 fallback_mig: Optional[MigSchema]):
        self.group_key = group_key
        self.segment_defs = segment_defs
        self.nested = nested
        self.fallback_mig = fallback_mig
        self.slots: Dict[tuple, _SegmentSlot] = {}
        self.extra: List[OwnedSegment] = []
        self.children: Dict[Tuple[str, int], "_InstanceBuilder"] = {}

    def slot(self, tag: str, qualifier: Optional[str] = None, guard: Optional[Condition] = None) -> _SegmentSlot:
        guard_key = (guard.path.element, guard.path.component, guard.value) if guard is not None else None
        key = (tag.upper(), qualifier, guard_key)
        if key not in self.slots:
            slot = _SegmentSlot(tag.upper())
            if qualifier is not None:
                slot.values[(0, 0)] = qualifier
            self.slots[key] = slot
        return self.slots[key]

    def segment_def(self, tag: str) -> Optional[MigSegment]:
        found = next((s for s in self.segment_defs if s.id.upper() == tag.upper()), None)
        if found is None and self.fallback_mig is not None:
            found = self.fallback_mig.segment_definition(tag)
        return found

    def child_group_def(self, group_id: str, qualifier: Optional[str]) -> Optional[MigSegmentGroup]:
        candidates = [g for g in self.nested if group_matches(g.key, group_id) or g.id.upper() == group_id.upper()]
        if qualifier is not None:
            for group in candidates:
                if group.discriminator is not None and qualifier in group.discriminator.values:
                    return group
        plain = next((g for g in candidates if g.discriminator is None), None)
        return plain or (candidates[0] if candidates else None)

    def child(self, group_id: str, index: int, qualifier: Optional[str] = None) -> "_InstanceBuilder":
        group_def = self.child_group_def(group_id, qualifier)
        if group_def is not None:
            key = group_def.key
        else:
            key = f"{group_id.upper()}_{qualifier}" if qualifier and "_" not in group_id else group_id.upper()
        if (key, index) not in self.children:
            self.children[(key, index)] = _InstanceBuilder(
                key,
                group_def.segments if group_def is not None else [],
                group_def.nested_groups if group_def is not None else [],
                self.fallback_mig,
            )
        return self.children[(key, index)]

    def attach(self, segment: OwnedSegment) -> None:
        """Adds a ready-made segment here, or opens a child group when it is an entry segment."""
        if any(s.matches(segment) for s in self.segment_defs) or not self.nested:
            self.extra.append(segment)
            return
        group_def = next((g for g in self.nested if g.opens_with(segment)), None)
        if group_def is None:
            self.extra.append(segment)
            return
        position = len([k for k in self.children if k[0] == group_def.key])
        child = self.child(group_def.key, position)
        child.extra.append(segment)

    def build(self) -> AssembledGroupInstance:
        segments = [slot.build(self.segment_def(slot.tag)) for slot in self.slots.values()] + self.extra
        order = {id(s): i for i, s in enumerate(segments)}
        segments.sort(key=lambda s: (mig_position(s, self.segment_defs), order[id(s)]))

        counters = {g.key: (g.counter if g.counter is not None else 0, i) for i, g in enumerate(self.nested)}
        groups: Dict[str, AssembledGroup] = {}
        for (key, index), child in sorted(self.children.items(), key=lambda kv: (counters.get(kv[0][0], (0, 0)), kv[0][1])):
            groups.setdefault(key, AssembledGroup(group_id=key)).repetitions.append(child.build())
        return AssembledGroupInstance(segments=segments, child_groups=list(groups.values()))


class MappingEngine:
    """Holds the definitions of one scope and converts in both directions."""

    def __init__(
        self,
        definitions: List[MappingDefinition],
        mig: Optional[MigSchema] = None,
        resolver: Optional[PathResolver] = None,
        transforms: Optional[TransformRegistry] = None,
        handlers: Optional[HandlerRegistry] = None,
    ):
        self.definitions = list(definitions)
        self.mig = mig
        self.resolver = resolver or (PathResolver.from_mig(mig) if mig is not None else PathResolver())
        self.transforms = transforms or TransformRegistry.with_builtins()
        self.handlers = handlers or HandlerRegistry.with_builtins()
        self._paths: Dict[str, EdifactPath] = {}
        self._conditions: Dict[str, Condition] = {}
        for definition in self.definitions:
            self._prepare(definition)

    @classmethod
    def from_directory(cls, directory, mig: Optional[MigSchema] = None, **kwargs) -> "MappingEngine":
        return cls(load_directory(directory, kwargs.get("handlers"), kwargs.get("transforms")), mig=mig, **kwargs)

    def definition_for_entity(self, entity: str) -> Optional[MappingDefinition]:
        return next((d for d in self.definitions if d.entity == entity), None)

    # --- Preparation ---

    def _path(self, path: str) -> EdifactPath:
        if path not in self._paths:
            self._paths[path] = self.resolver.resolve(path)
        return self._paths[path]

    def _condition(self, expression: str) -> Condition:
        if expression not in self._conditions:
            self._conditions[expression] = self.resolver.resolve_condition(expression)
        return self._conditions[expression]

    def _prepare(self, definition: MappingDefinition) -> None:
        """Resolves every path once so that bad paths fail at construction."""
        if definition.meta.discriminator:
            self._condition(definition.meta.discriminator)
        stack = [definition.fields, definition.companion_fields]
        while stack:
            for path, field in stack.pop().items():
                if isinstance(field, NestedFieldMapping):
                    if field.discriminator:
                        self._condition(field.discriminator)
                    stack.append(field.fields)
                    continue
                self._path(path)
                if field.when:
                    self._condition(field.when)
        for ref in definition.complex_handlers:
            if not self.handlers.has_handler(ref.name):
                raise UnknownHandler(ref.name, definition.entity)

    # --- Forward ---

    def extract_field(self, instance: AssembledGroupInstance, path: str) -> Optional[str]:
        """Value at ``path`` in the first matching segment of an instance."""
        resolved = self._path(path)
        segment = next((s for s in instance.segments if resolved.selects(s)), None)
        if segment is None:
            return None
        return resolved.read(segment) or None

    def map_forward(
        self,
        scope: AssembledGroupInstance,
        scope_group: str = "",
        include_trace: bool = False,
        result: Optional[ForwardResult] = None,
    ) -> ForwardResult:
        result = result or ForwardResult()
        for definition in self.definitions:
            value = self.map_entity(definition, scope, scope_group, result, include_trace)
            if value is not None:
                result.data[definition.output_key] = value
        logger.debug(f"Forward mapping produced {len(result.data)} entit(y/ies), {len(result.issues)} issue(s)")
        return result

    def map_entity(
        self,
        definition: MappingDefinition,
        scope: AssembledGroupInstance,
        scope_group: str = "",
        result: Optional[ForwardResult] = None,
        include_trace: bool = False,
    ) -> Any:
        result = result if result is not None else ForwardResult()
        instances = self._locate(definition, scope, scope_group)
        if not instances:
            logger.debug(f"No source instances for {definition.entity}")
            return None

        objects = []
        for instance in instances:
            obj: Dict[str, Any] = {}
            self._extract_fields(definition.fields, instance, obj, definition, result, include_trace)
            if definition.companion_fields and definition.companion_key:
                companion: Dict[str, Any] = {}
                self._extract_fields(definition.companion_fields, instance, companion, definition, result,
                                     include_trace, prefix=definition.companion_key + ".")
                if companion:
                    obj[definition.companion_key] = companion
            self._run_handlers(definition, instance, obj, result, include_trace)
            objects.append(obj)
        return _aggregate(objects, definition.is_collection)

    def _locate(self, definition: MappingDefinition, scope: AssembledGroupInstance, scope_group: str) -> List[AssembledGroupInstance]:
        meta = definition.meta
        parts = self._group_parts(definition, scope_group)
        if not parts:
            instances = [scope]
        elif meta.source_path:
            instances = [scope]
            for part in parts:
                instances = [
                    rep for inst in instances for g in inst.find_child_groups(part) for rep in g.repetitions
                ]
        else:
            instances = _descendant_instances(scope, parts[0])

        if meta.discriminator:
            condition = self._condition(meta.discriminator)
            instances = [i for i in instances if any(condition.holds_for(s) for s in i.segments)]
        return instances

    @staticmethod
    def _group_parts(definition: MappingDefinition, scope_group: str) -> List[str]:
        meta = definition.meta
        if meta.source_path:
            parts = [p for p in meta.source_path.split(".") if p]
            if parts and scope_group and parts[0].upper() == scope_group.upper():
                parts = parts[1:]
            return parts
        if not meta.source_group or (scope_group and meta.source_group.upper() == scope_group.upper()):
            return []
        return [meta.source_group]

    def _extract_fields(
        self,
        fields: Dict[str, FieldMapping],
        instance: AssembledGroupInstance,
        obj: Dict[str, Any],
        definition: MappingDefinition,
        result: ForwardResult,
        include_trace: bool,
        prefix: str = "",
    ) -> None:
        for path, field in fields.items():
            if isinstance(field, NestedFieldMapping):
                self._extract_nested(path, field, instance, obj, definition, result, include_trace, prefix)
                continue
            try:
                extracted = self._extract_value(path, field, instance)
            except MappingError as e:
                logger.warning(f"[{definition.entity}] field '{path}' skipped: {e.message}")
                result.issues.append(MappingIssue(entity=definition.entity, field=path, code=e.code, message=e.message))
                continue
            if extracted is None:
                continue
            value, segment = extracted
            set_path(obj, field.target, value)
            if include_trace:
                result.trace.append(TraceEntry(
                    mapper=definition.entity,
                    source_segment=_segment_ref(segment),
                    target_path=prefix + field.target,
                    value=value,
                ))

    def _extract_value(self, path: str, field: StructuredFieldMapping, instance: AssembledGroupInstance) -> Optional[Tuple[str, Optional[OwnedSegment]]]:
        resolved = self._path(path)
        candidates = [s for s in instance.segments if resolved.selects(s)]
        if field.when:
            guard = self._condition(field.when)
            if guard.path.tag == resolved.tag:
                candidates = [s for s in candidates if guard.holds_for(s)]
            elif not any(guard.holds_for(s) for s in instance.segments):
                return None

        segment = candidates[0] if candidates else None
        value = resolved.read(segment) if segment is not None else ""
        if value == "":
            if field.default is None:
                return None
            value = field.default
        if field.transform:
            value = self.transforms.apply(field.transform, value)
        if field.enum_map is not None:
            if value not in field.enum_map:
                raise MappingError(f"Value '{value}' is not in the enum map of '{field.target}'")
            value = field.enum_map[value]
        return value, segment

    def _extract_nested(self, key, field, instance, obj, definition, result, include_trace, prefix) -> None:
        children = [rep for g in instance.find_child_groups(field.group) for rep in g.repetitions]
        if field.discriminator:
            condition = self._condition(field.discriminator)
            children = [c for c in children if any(condition.holds_for(s) for s in c.segments)]
        objects = []
        for child in children:
            child_obj: Dict[str, Any] = {}
            self._extract_fields(field.fields, child, child_obj, definition, result, include_trace, prefix=f"{prefix}{key}.")
            objects.append(child_obj)
        if objects:
            obj[key] = _aggregate(objects, False)

    def _run_handlers(self, definition, instance, obj, result, include_trace) -> None:
        if not definition.complex_handlers:
            return
        object_id = _object_id(obj)
        source = Bo4eUri.new(definition.meta.bo4e_type, object_id) if object_id else None
        context = HandlerContext(definition.entity, definition.meta.bo4e_type, result.links, source)
        for ref in definition.complex_handlers:
            output = self.handlers.invoke(ref.name, instance, context)
            obj.update(output)
            if include_trace:
                for key, value in output.items():
                    result.trace.append(TraceEntry(
                        mapper=f"{definition.entity}:{ref.name}",
                        source_segment=_segment_ref(instance.entry_segment),
                        target_path=key,
                        value=value,
                    ))

    # --- Reverse ---

    def _root_builder(self, scope_group: str) -> _InstanceBuilder:
        if self.mig is None:
            return _InstanceBuilder(scope_group.upper(), [], [], None)
        if scope_group:
            group_def = self.mig.find_group(scope_group)
            if group_def is not None:
                return _InstanceBuilder(group_def.key, group_def.segments, group_def.nested_groups, self.mig)
        return _InstanceBuilder("", self.mig.segments_before_groups(), self.mig.segment_groups, self.mig)

    def map_reverse(self, data: Dict[str, Any], scope_group: str = "") -> ReverseResult:
        """Builds the group instance of a scope (message root or one transaction) from JSON."""
        root = self._root_builder(scope_group)
        issues: List[MappingIssue] = []
        handlers: List[tuple] = []
        for definition in self.definitions:
            value = data.get(definition.output_key)
            if value is None:
                continue
            self._reverse_entity(definition, _as_list(value), root, scope_group, issues, handlers)
        # Handler segments open new repetitions after the ones the fields built.
        for definition, obj, builder in handlers:
            self._run_reverse_handlers(definition, obj, builder)
        instance = root.build()
        logger.debug(f"Reverse mapping built {len(instance.segments)} segment(s), {len(instance.child_groups)} group(s)")
        return ReverseResult(instance, issues)

    def _reverse_entity(self, definition, objects, root, scope_group, issues, handlers) -> None:
        parts = self._group_parts(definition, scope_group)
        discriminator = self._condition(definition.meta.discriminator) if definition.meta.discriminator else None
        qualifier = discriminator.value if discriminator is not None else None

        for index, obj in enumerate(objects):
            if not isinstance(obj, dict):
                issues.append(MappingIssue(entity=definition.entity, field=definition.output_key,
                                           code="TYPE_CONVERSION", message="expected an object"))
                continue
            builder = root
            for depth, part in enumerate(parts):
                last = depth == len(parts) - 1
                builder = builder.child(part, index if last else 0, qualifier if last else None)

            if discriminator is not None:
                builder.slot(discriminator.path.tag, discriminator.path.qualifier).write(discriminator.path, discriminator.value)
            self._populate_fields(definition.fields, obj, builder, definition, issues)
            if definition.companion_fields and definition.companion_key:
                companion = obj.get(definition.companion_key)
                if isinstance(companion, dict):
                    self._populate_fields(definition.companion_fields, companion, builder, definition, issues)
            if definition.complex_handlers:
                handlers.append((definition, obj, builder))

    def _populate_fields(self, fields, obj, builder: _InstanceBuilder, definition, issues) -> None:
        for path, field in fields.items():
            if isinstance(field, NestedFieldMapping):
                self._populate_nested(path, field, obj, builder, definition, issues)
                continue
            raw = get_path(obj, field.target)
            if raw is None:
                continue
            try:
                value = self._reverse_value(field, raw)
            except MappingError as e:
                logger.warning(f"[{definition.entity}] field '{field.target}' not written: {e.message}")
                issues.append(MappingIssue(entity=definition.entity, field=field.target, code=e.code, message=e.message))
                continue

            resolved = self._path(path)
            guard = self._condition(field.when) if field.when else None
            if guard is not None and guard.path.tag == resolved.tag:
                slot = builder.slot(resolved.tag, resolved.qualifier, guard)
                slot.write(guard.path, guard.value)
            else:
                slot = builder.slot(resolved.tag, resolved.qualifier)
                if guard is not None:
                    builder.slot(guard.path.tag, guard.path.qualifier).write(guard.path, guard.value)
            slot.write(resolved, value)

    def _reverse_value(self, field: StructuredFieldMapping, raw: Any) -> str:
        if isinstance(raw, bool):
            value = "true" if raw else "false"
        elif isinstance(raw, (dict, list)):
            raise MappingError(f"Expected a scalar at '{field.target}'")
        else:
            value = str(raw)
        if field.enum_map is not None:
            source = field.reverse_enum(value)
            if source is None:
                raise MappingError(f"Value '{value}' has no source code in the enum map of '{field.target}'")
            value = source
        if field.transform:
            value = self.transforms.invert(field.transform, value)
        return value

    def _populate_nested(self, key, field: NestedFieldMapping, obj, builder, definition, issues) -> None:
        children = _as_list(obj.get(key))
        qualifier = self._condition(field.discriminator).value if field.discriminator else None
        for index, child_obj in enumerate(children):
            if not isinstance(child_obj, dict):
                continue
            child = builder.child(field.group, index, qualifier)
            if field.discriminator:
                condition = self._condition(field.discriminator)
                child.slot(condition.path.tag, condition.path.qualifier).write(condition.path, condition.value)
            self._populate_fields(field.fields, child_obj, child, definition, issues)

    def _run_reverse_handlers(self, definition, obj, builder: _InstanceBuilder) -> None:
        context = HandlerContext(definition.entity, definition.meta.bo4e_type)
        for ref in definition.complex_handlers:
            for segment in self.handlers.invoke_reverse(ref.name, obj, context):
                builder.attach(segment)


def _descendant_instances(instance: AssembledGroupInstance, group_id: str) -> List[AssembledGroupInstance]:
    """Repetitions of the nearest groups matching ``group_id``, searched depth first."""
    found = []
    for group in instance.child_groups:
        if group_matches(group.group_id, group_id):
            found.extend(group.repetitions)
        else:
            for repetition in group.repetitions:
                found.extend(_descendant_instances(repetition, group_id))
    return found


def map_all_forward(
    engine: MappingEngine,
    scopes: Sequence[Tuple[AssembledGroupInstance, str]],
    include_trace: bool = False,
) -> List[ForwardResult]:
    """Forward-maps several scopes, e.g. every transaction of a message."""
    return [engine.map_forward(scope, scope_group, include_trace) for scope, scope_group in scopes]


def map_all_reverse(engine: MappingEngine, items: Sequence[Dict[str, Any]], scope_group: str = "") -> List[ReverseResult]:
    return [engine.map_reverse(item, scope_group) for item in items]
