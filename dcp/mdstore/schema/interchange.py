"""
Field interchange documents.

A YAML document describing fields to add to a schema:

```yaml
schema: Resources
fields:
  - name: Title
    type: Text
    optional: false
    max_length: 200
  - name: Topic
    type: Tree
    vocabulary_file: topics.txt
    viewing_privileges:
      logic: AND
      conditions:
        - {field: Release Flag, operator: "==", value: 1}
standard_names:
  Title: Title
privileges:
  viewing: {logic: OR, privileges: [3]}
```

Every field key other than name, type and vocabulary_file is passed to
FieldDescriptor.configure(). Conditions may name their field with
"field" instead of "field_id"; names are resolved in the target schema.

Invariants:
    - Import is all or nothing: on any error every field created by the
      document is dropped and schema privileges are restored
    - Vocabulary files are resolved relative to the document's directory
    - export_fields() output can be imported into an empty schema

How to change safely:
    - New top-level keys must be optional
    - Keep validation (collecting every problem) ahead of any writes
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import yaml

from ..errors import InterchangeError, MetadataStoreError
from ..records.privileges import PrivilegeSet
from .field import PRIVILEGE_LEVELS
from .types import FieldType

if TYPE_CHECKING:
    from .field import FieldDescriptor
    from .registry import SchemaRegistry

logger = logging.getLogger(__name__)

_STRUCTURAL_KEYS = frozenset({"name", "type", "vocabulary_file", "optional", "default_value"})


def parse_document(document: str) -> dict[str, Any]:
    """Parse and validate a document, collecting every problem.

    Raises:
        InterchangeError: If the document is not valid YAML or any field
            entry is malformed
    """
    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise InterchangeError(f"Interchange document is not valid YAML: {e}") from None

    if isinstance(data, list):
        data = {"fields": data}
    if not isinstance(data, dict):
        raise InterchangeError("Interchange document must be a mapping with a 'fields' list")

    errors: list[str] = []
    fields = data.get("fields") or []
    if not isinstance(fields, list):
        errors.append("'fields' must be a list")
        fields = []

    seen: set[str] = set()
    for index, entry in enumerate(fields):
        if not isinstance(entry, dict):
            errors.append(f"Field entry {index} must be a mapping")
            continue
        name = entry.get("name")
        if not name or not isinstance(name, str):
            errors.append(f"Field entry {index}: name is required")
        elif name.lower() in seen:
            errors.append(f"Field '{name}': listed more than once")
        else:
            seen.add(name.lower())
        if not entry.get("type"):
            errors.append(f"Field '{name or index}': type is required")
        else:
            try:
                FieldType.from_str(entry["type"])
            except ValueError:
                errors.append(f"Field '{name or index}': unknown type {entry['type']!r}")

        for key, value in entry.items():
            if isinstance(key, str) and (key in PRIVILEGE_LEVELS or key.endswith("_privileges")):
                errors.extend(_privilege_problems(value, f"Field '{name or index}' {key}"))

    for key in ("standard_names", "privileges"):
        if data.get(key) is not None and not isinstance(data[key], dict):
            errors.append(f"'{key}' must be a mapping")
            data[key] = None
    for level, section in (data.get("privileges") or {}).items():
        if level not in PRIVILEGE_LEVELS:
            errors.append(f"Unknown privilege level {level!r}")
        else:
            errors.extend(_privilege_problems(section, f"{level} privileges"))

    if errors:
        raise InterchangeError(f"Interchange document has {len(errors)} error(s)", errors=errors)
    data["fields"] = fields
    return data


def _privilege_problems(section: Any, where: str) -> list[str]:
    """Shape problems of a privilege section, including nested subsets."""
    if section is None or isinstance(section, PrivilegeSet):
        return []
    if not isinstance(section, dict):
        return [f"{where}: must be a mapping"]

    problems = []
    conditions = section.get("conditions") or []
    if not isinstance(conditions, list):
        problems.append(f"{where}: conditions must be a list")
        conditions = []
    for index, condition in enumerate(conditions):
        if not isinstance(condition, dict):
            problems.append(f"{where}: condition {index} must be a mapping")
        elif "field" not in condition and "field_id" not in condition:
            problems.append(f"{where}: condition {index} names no field")

    subsets = section.get("subsets") or []
    if not isinstance(subsets, list):
        problems.append(f"{where}: subsets must be a list")
        subsets = []
    for index, subset in enumerate(subsets):
        problems.extend(_privilege_problems(subset, f"{where} subset {index}"))
    return problems


def import_fields(
    registry: SchemaRegistry,
    document: str,
    schema_id: int,
    base_dir: Optional[Path] = None,
) -> list[FieldDescriptor]:
    """Create the fields described by a document.

    Args:
        registry: Target registry
        document: YAML text
        schema_id: Schema to add to, unless the document names one
        base_dir: Directory vocabulary files are relative to

    Returns:
        The new fields, in document order

    Raises:
        InterchangeError: If the document is malformed or any field could
            not be created; nothing is left behind
    """
    data = parse_document(document)
    base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    try:
        schema = registry.get_schema(data["schema"] if data.get("schema") is not None else schema_id)
    except MetadataStoreError as e:
        raise InterchangeError(f"Interchange target schema not found: {e.message}") from None

    created: list[FieldDescriptor] = []
    mapped: dict[str, Optional[int]] = {}
    previous_privileges = {level: schema.privileges.get(level) or PrivilegeSet() for level in PRIVILEGE_LEVELS}
    try:
        for entry in data["fields"]:
            created.append(_create_field(registry, schema.schema_id, entry, base_dir))

        # Privilege conditions may reference any field of the document
        for descriptor, entry in zip(created, data["fields"]):
            for level in PRIVILEGE_LEVELS:
                section = entry.get(f"{level}_privileges", entry.get(level))
                if section is not None:
                    descriptor.set_privileges(level, _privileges_from(registry, schema.schema_id, section))

        for standard_name, field_name in (data.get("standard_names") or {}).items():
            previous = registry.std_name_to_field_mapping(schema.schema_id, standard_name)
            mapped.setdefault(standard_name, previous)
            registry.std_name_to_field_mapping(schema.schema_id, standard_name, field_name)

        for level, section in (data.get("privileges") or {}).items():
            registry.set_schema_privileges(schema.schema_id, level, _privileges_from(registry, schema.schema_id, section))
    except Exception as e:
        _roll_back(registry, schema.schema_id, created, mapped, previous_privileges)
        message = e.message if isinstance(e, MetadataStoreError) else str(e)
        raise InterchangeError(f"Field import failed: {message}", errors=[message]) from e

    logger.info(
        f"Imported {len(created)} fields into schema {schema.name}",
        extra={"schema_id": schema.schema_id},
    )
    return created


def _create_field(registry: SchemaRegistry, schema_id: int, entry: dict[str, Any], base_dir: Path) -> FieldDescriptor:
    descriptor = registry.create_field(
        schema_id,
        entry["type"],
        entry["name"],
        optional=bool(entry.get("optional", True)),
    )
    try:
        for key, value in entry.items():
            if key in _STRUCTURAL_KEYS or key in PRIVILEGE_LEVELS or key.endswith("_privileges"):
                continue
            descriptor.configure(key, value)
        descriptor.make_permanent()

        vocabulary = entry.get("vocabulary_file")
        if vocabulary:
            path = Path(vocabulary)
            descriptor.load_vocabulary(path if path.is_absolute() else base_dir / path)
        if entry.get("default_value") is not None:
            descriptor.default_value = entry["default_value"]
    except Exception:
        descriptor.drop()
        raise
    return descriptor


def _roll_back(
    registry: SchemaRegistry,
    schema_id: int,
    created: list[FieldDescriptor],
    mapped: dict[str, Optional[int]],
    previous_privileges: dict[str, PrivilegeSet],
) -> None:
    for standard_name, previous in mapped.items():
        registry.std_name_to_field_mapping(schema_id, standard_name, previous)
    for level, privset in previous_privileges.items():
        registry.set_schema_privileges(schema_id, level, privset)
    for descriptor in reversed(created):
        for standard_name in registry.standard_names_for_field(descriptor.id):
            registry.std_name_to_field_mapping(schema_id, standard_name, None)
        descriptor.drop()
    logger.warning(f"Rolled back {len(created)} imported fields", extra={"schema_id": schema_id})


def _privileges_from(registry: SchemaRegistry, schema_id: int, section: Any) -> PrivilegeSet:
    if isinstance(section, PrivilegeSet):
        return section
    return PrivilegeSet.from_dict(_resolve_condition_fields(registry, schema_id, section or {}))


def _resolve_condition_fields(registry: SchemaRegistry, schema_id: int, section: dict[str, Any]) -> dict[str, Any]:
    resolved = dict(section)
    conditions = []
    for condition in section.get("conditions", ()):
        condition = dict(condition)
        if "field_id" not in condition and "field" in condition:
            condition["field_id"] = registry.get_field(condition.pop("field"), schema_id).id
        conditions.append(condition)
    resolved["conditions"] = conditions
    resolved["subsets"] = [_resolve_condition_fields(registry, schema_id, s) for s in section.get("subsets", ())]
    return resolved


def _name_condition_fields(registry: SchemaRegistry, section: dict[str, Any]) -> dict[str, Any]:
    named = dict(section)
    conditions = []
    for condition in section.get("conditions", ()):
        condition = dict(condition)
        field_id = condition.pop("field_id")
        if registry.field_exists(field_id):
            condition["field"] = registry.get_field(field_id).name
        else:
            condition["field_id"] = field_id
        conditions.append(condition)
    named["conditions"] = conditions
    named["subsets"] = [_name_condition_fields(registry, s) for s in section.get("subsets", ())]
    return named


def export_fields(registry: SchemaRegistry, schema_id: int) -> str:
    """Describe the permanent fields of a schema as an interchange document."""
    schema = registry.get_schema(schema_id)
    fields = []
    for descriptor in registry.get_fields(schema.schema_id, include_disabled=True):
        entry = descriptor.to_dict()
        for level in PRIVILEGE_LEVELS:
            key = f"{level}_privileges"
            if key in entry:
                entry[key] = _name_condition_fields(registry, entry[key])
        fields.append(entry)

    document: dict[str, Any] = {"schema": schema.name, "fields": fields}

    standard_names = {}
    for descriptor in registry.get_fields(schema.schema_id, include_disabled=True):
        for standard_name in registry.standard_names_for_field(descriptor.id):
            standard_names[standard_name] = descriptor.name
    if standard_names:
        document["standard_names"] = dict(sorted(standard_names.items()))

    privileges = {
        level: _name_condition_fields(registry, schema.privileges[level].to_dict())
        for level in PRIVILEGE_LEVELS
        if level in schema.privileges and not schema.privileges[level].is_empty
    }
    if privileges:
        document["privileges"] = privileges

    return yaml.dump(document, default_flow_style=False, sort_keys=False)
