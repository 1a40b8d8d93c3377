"""
Field value types for the metadata store.

This module defines the closed set of value types a field can carry and
everything that follows from the type alone:
- FieldType: the value types themselves
- StorageShape: the physical storage strategy used for a type
- AttributeSpec / ATTRIBUTES: type-gated configuration attributes
- Multiplicity rules (which types may, or must, hold several values)

Invariants:
    - Type values are stable bit flags; they are persisted and must never
      be renumbered
    - The legal attributes for a field are fully determined by its type
    - Every FieldType maps to exactly one StorageShape

How to change safely:
    - Adding a type means adding a FieldType member, a StorageShape
      mapping, and a storage strategy in records/storage.py
    - New attributes must declare the types they are legal for and a
      default that matches existing behaviour
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Optional

# Schema ids with special meaning
SCHEMAID_DEFAULT = 0
SCHEMAID_USER = 1

# Normalized field names that cannot be used
RESERVED_FIELD_NAMES = frozenset({"recordid", "resourceid", "schemaid"})


class FieldType(enum.IntEnum):
    """Value type of a metadata field."""

    TEXT = 1
    PARAGRAPH = 2
    NUMBER = 4
    DATE = 8
    TIMESTAMP = 16
    FLAG = 32
    TREE = 64
    CONTROLLED_NAME = 128
    OPTION = 256
    USER = 512
    IMAGE = 1024
    FILE = 2048
    URL = 4096
    POINT = 8192
    REFERENCE = 16384
    EMAIL = 32768
    SEARCH_PARAMETER_SET = 65536

    @classmethod
    def from_str(cls, value: Any) -> FieldType:
        """Parse a field type from a name, constant name or integer.

        Accepts "Text", "ControlledName", "Controlled Name",
        "controlled_name", "MDFTYPE_CONTROLLEDNAME", 128 and "128".

        Raises:
            ValueError: If the value names no known type
        """
        if isinstance(value, FieldType):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value)
        text = str(value).strip()
        if text.isdigit():
            return cls(int(text))
        key = re.sub(r"[^a-z]", "", text.lower())
        if key.startswith("mdftype"):
            key = key[len("mdftype"):]
        if key in _TYPE_ALIASES:
            return _TYPE_ALIASES[key]
        raise ValueError(f"Unknown field type: {value!r}")

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def shape(self) -> StorageShape:
        return _SHAPES[self]

    @property
    def is_vocabulary(self) -> bool:
        """Whether values are shared terms (controlled name, option, tree)."""
        return self in VOCABULARY_TYPES

    @property
    def can_allow_multiple(self) -> bool:
        return self in MULTI_VALUE_TYPES

    @property
    def must_allow_multiple(self) -> bool:
        return self is FieldType.CONTROLLED_NAME

    @property
    def is_text(self) -> bool:
        return self in TEXT_TYPES


_DISPLAY_NAMES = {
    FieldType.TEXT: "Text",
    FieldType.PARAGRAPH: "Paragraph",
    FieldType.NUMBER: "Number",
    FieldType.DATE: "Date",
    FieldType.TIMESTAMP: "Timestamp",
    FieldType.FLAG: "Flag",
    FieldType.TREE: "Tree",
    FieldType.CONTROLLED_NAME: "ControlledName",
    FieldType.OPTION: "Option",
    FieldType.USER: "User",
    FieldType.IMAGE: "Image",
    FieldType.FILE: "File",
    FieldType.URL: "Url",
    FieldType.POINT: "Point",
    FieldType.REFERENCE: "Reference",
    FieldType.EMAIL: "Email",
    FieldType.SEARCH_PARAMETER_SET: "SearchParameterSet",
}

_TYPE_ALIASES = {member.name.replace("_", "").lower(): member for member in FieldType}
_TYPE_ALIASES.update({name.lower(): member for member, name in _DISPLAY_NAMES.items()})
_TYPE_ALIASES["stillimage"] = FieldType.IMAGE


class StorageShape(enum.Enum):
    """Physical storage strategy for a value type."""

    TEXT = "text"
    NUMBER = "number"
    FLAG = "flag"
    TIMESTAMP = "timestamp"
    DATE = "date"
    POINT = "point"
    SEARCH_PARAMETERS = "search_parameters"
    CONTROLLED = "controlled"
    TREE = "tree"
    USER = "user"
    REFERENCE = "reference"
    IMAGE = "image"
    FILE = "file"

    @property
    def has_columns(self) -> bool:
        """Whether the shape keeps values in columns of the records table."""
        return self in _COLUMN_SHAPES


_SHAPES = {
    FieldType.TEXT: StorageShape.TEXT,
    FieldType.PARAGRAPH: StorageShape.TEXT,
    FieldType.URL: StorageShape.TEXT,
    FieldType.EMAIL: StorageShape.TEXT,
    FieldType.NUMBER: StorageShape.NUMBER,
    FieldType.FLAG: StorageShape.FLAG,
    FieldType.TIMESTAMP: StorageShape.TIMESTAMP,
    FieldType.DATE: StorageShape.DATE,
    FieldType.POINT: StorageShape.POINT,
    FieldType.SEARCH_PARAMETER_SET: StorageShape.SEARCH_PARAMETERS,
    FieldType.CONTROLLED_NAME: StorageShape.CONTROLLED,
    FieldType.OPTION: StorageShape.CONTROLLED,
    FieldType.TREE: StorageShape.TREE,
    FieldType.USER: StorageShape.USER,
    FieldType.REFERENCE: StorageShape.REFERENCE,
    FieldType.IMAGE: StorageShape.IMAGE,
    FieldType.FILE: StorageShape.FILE,
}

_COLUMN_SHAPES = frozenset({
    StorageShape.TEXT,
    StorageShape.NUMBER,
    StorageShape.FLAG,
    StorageShape.TIMESTAMP,
    StorageShape.DATE,
    StorageShape.POINT,
    StorageShape.SEARCH_PARAMETERS,
})

TEXT_TYPES = frozenset({FieldType.TEXT, FieldType.PARAGRAPH, FieldType.URL, FieldType.EMAIL})
VOCABULARY_TYPES = frozenset({FieldType.TREE, FieldType.CONTROLLED_NAME, FieldType.OPTION})
MULTI_VALUE_TYPES = frozenset({
    FieldType.TREE,
    FieldType.CONTROLLED_NAME,
    FieldType.OPTION,
    FieldType.USER,
    FieldType.IMAGE,
    FieldType.FILE,
    FieldType.REFERENCE,
})
ALL_TYPES = frozenset(FieldType)


def column_layout(field_type: FieldType, storage_name: str) -> dict[str, str]:
    """Columns (name -> SQLite declared type) a type needs in the records table.

    Example:
        >>> column_layout(FieldType.POINT, "Location")
        {'LocationX': 'REAL', 'LocationY': 'REAL'}
    """
    shape = field_type.shape
    if shape is StorageShape.TEXT:
        return {storage_name: "TEXT"}
    if shape in (StorageShape.NUMBER, StorageShape.FLAG):
        return {storage_name: "INTEGER"}
    if shape is StorageShape.TIMESTAMP:
        return {storage_name: "DATETIME"}
    if shape is StorageShape.DATE:
        return {
            f"{storage_name}Begin": "DATE",
            f"{storage_name}End": "DATE",
            f"{storage_name}Precision": "INTEGER",
        }
    if shape is StorageShape.POINT:
        return {f"{storage_name}X": "REAL", f"{storage_name}Y": "REAL"}
    if shape is StorageShape.SEARCH_PARAMETERS:
        return {storage_name: "BLOB"}
    return {}


def qualifier_column(storage_name: str) -> str:
    return f"{storage_name}Qualifier"


class DatePrecision(enum.IntFlag):
    """Which parts of a date range are known."""

    BEGIN_YEAR = 1
    BEGIN_MONTH = 2
    BEGIN_DAY = 4
    BEGIN_DECADE = 8
    BEGIN_CENTURY = 16
    END_YEAR = 32
    END_MONTH = 64
    END_DAY = 128
    END_DECADE = 256
    END_CENTURY = 512
    INFERRED = 1024
    COPYRIGHT = 2048
    CONTINUOUS = 4096


# Precision given to dates converted from timestamps
TIMESTAMP_DATE_PRECISION = DatePrecision.BEGIN_YEAR | DatePrecision.BEGIN_MONTH | DatePrecision.BEGIN_DAY


class UpdateMethod(enum.Enum):
    """When a Timestamp or User field updates itself."""

    NO_AUTO_UPDATE = "NoAutoUpdate"
    ON_RECORD_CREATE = "OnRecordCreate"
    BUTTON = "Button"
    ON_RECORD_EDIT = "OnRecordEdit"
    ON_RECORD_CHANGE = "OnRecordChange"
    ON_RECORD_RELEASE = "OnRecordRelease"

    @classmethod
    def from_str(cls, value: Any) -> UpdateMethod:
        if isinstance(value, UpdateMethod):
            return value
        key = re.sub(r"[^a-z]", "", str(value).lower())
        for member in cls:
            if key in (member.value.lower(), member.name.replace("_", "").lower()):
                return member
        raise ValueError(f"Unknown update method: {value!r}")


class FieldOrder(enum.IntEnum):
    """Orderings available from SchemaRegistry.get_fields()."""

    CREATION = 0
    DISPLAY = 1
    EDITING = 2
    ALPHABETICAL = 3


# -- attributes ------------------------------------------------------------


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None or value == "" else int(value)


def _int_list(value: Any) -> list[int]:
    if value is None:
        return []
    if isinstance(value, (int, str)):
        value = [value]
    return sorted({int(v) for v in value})


@dataclass(frozen=True)
class AttributeSpec:
    """A configuration attribute and the types it is legal for.

    Attributes:
        name: Attribute name as used by set_attribute()
        default: Value given to new fields (and after type conversion)
        types: Types the attribute is legal for
        coerce: Normalizes values before they are stored
    """

    name: str
    default: Any
    types: FrozenSet[FieldType] = ALL_TYPES
    coerce: Optional[Callable[[Any], Any]] = None

    def is_legal_for(self, field_type: FieldType) -> bool:
        return field_type in self.types

    def default_for(self, field_type: FieldType) -> Any:
        if self.name == "allow_multiple":
            return field_type in _MULTIPLE_BY_DEFAULT
        return self.default

    def normalize(self, value: Any) -> Any:
        return self.coerce(value) if self.coerce is not None else value


_MULTIPLE_BY_DEFAULT = frozenset({
    FieldType.TREE,
    FieldType.CONTROLLED_NAME,
    FieldType.IMAGE,
    FieldType.FILE,
    FieldType.REFERENCE,
})

_DEFAULT_VALUE_TYPES = frozenset({
    FieldType.TEXT,
    FieldType.PARAGRAPH,
    FieldType.URL,
    FieldType.EMAIL,
    FieldType.NUMBER,
    FieldType.FLAG,
    FieldType.POINT,
    FieldType.OPTION,
    FieldType.TREE,
})

_VOCABULARY_SEARCH = VOCABULARY_TYPES

ATTRIBUTES: dict[str, AttributeSpec] = {
    spec.name: spec
    for spec in (
        # Legal for every type
        AttributeSpec("description", ""),
        AttributeSpec("instructions", ""),
        AttributeSpec("copy_on_resource_duplication", True, coerce=_bool),
        AttributeSpec("include_in_keyword_search", False, coerce=_bool),
        AttributeSpec("include_in_advanced_search", False, coerce=_bool),
        AttributeSpec("include_in_faceted_search", False, coerce=_bool),
        AttributeSpec("include_in_sort_options", True, coerce=_bool),
        AttributeSpec("include_in_recommender", False, coerce=_bool),
        AttributeSpec("search_weight", 1, coerce=int),
        AttributeSpec("recommender_weight", 1, coerce=int),
        # Type-gated
        AttributeSpec("allow_multiple", False, MULTI_VALUE_TYPES, coerce=_bool),
        AttributeSpec(
            "update_method",
            UpdateMethod.NO_AUTO_UPDATE,
            frozenset({FieldType.TIMESTAMP, FieldType.USER}),
            coerce=UpdateMethod.from_str,
        ),
        AttributeSpec(
            "max_length",
            100,
            frozenset({FieldType.TEXT, FieldType.URL, FieldType.EMAIL}),
            coerce=int,
        ),
        AttributeSpec(
            "text_field_size",
            50,
            frozenset({FieldType.TEXT, FieldType.URL, FieldType.EMAIL, FieldType.NUMBER}),
            coerce=int,
        ),
        AttributeSpec("paragraph_rows", 4, frozenset({FieldType.PARAGRAPH}), coerce=int),
        AttributeSpec("paragraph_cols", 50, frozenset({FieldType.PARAGRAPH}), coerce=int),
        AttributeSpec("allow_html", False, frozenset({FieldType.PARAGRAPH}), coerce=_bool),
        AttributeSpec("min_value", None, frozenset({FieldType.NUMBER}), coerce=_optional_int),
        AttributeSpec("max_value", None, frozenset({FieldType.NUMBER}), coerce=_optional_int),
        AttributeSpec("flag_on_label", "On", frozenset({FieldType.FLAG}), coerce=str),
        AttributeSpec("flag_off_label", "Off", frozenset({FieldType.FLAG}), coerce=str),
        AttributeSpec("date_format", None, frozenset({FieldType.DATE, FieldType.TIMESTAMP})),
        AttributeSpec("point_precision", 8, frozenset({FieldType.POINT}), coerce=int),
        AttributeSpec("point_decimal_digits", 5, frozenset({FieldType.POINT}), coerce=int),
        AttributeSpec(
            "referenceable_schema_ids",
            (),
            frozenset({FieldType.REFERENCE}),
            coerce=lambda v: tuple(_int_list(v)),
        ),
        AttributeSpec(
            "obfuscate_value_for_anonymous_users",
            False,
            frozenset({FieldType.EMAIL}),
            coerce=_bool,
        ),
        AttributeSpec(
            "display_as_list_for_advanced_search",
            False,
            frozenset({FieldType.OPTION, FieldType.TREE, FieldType.FLAG, FieldType.USER}),
            coerce=_bool,
        ),
        AttributeSpec("max_depth_for_advanced_search", 0, frozenset({FieldType.TREE}), coerce=int),
        AttributeSpec("options_threshold", 25, _VOCABULARY_SEARCH, coerce=int),
        AttributeSpec("ajax_threshold", 50, _VOCABULARY_SEARCH, coerce=int),
        AttributeSpec("number_of_ajax_results", 50, _VOCABULARY_SEARCH, coerce=int),
        AttributeSpec("max_image_width", 1000, frozenset({FieldType.IMAGE}), coerce=int),
        AttributeSpec("max_image_height", 1000, frozenset({FieldType.IMAGE}), coerce=int),
    )
}


def legal_attributes(field_type: FieldType) -> dict[str, AttributeSpec]:
    """Attributes legal for a type, keyed by name."""
    return {name: spec for name, spec in ATTRIBUTES.items() if spec.is_legal_for(field_type)}


def default_attributes(field_type: FieldType) -> dict[str, Any]:
    """Fresh attribute values for a new (or newly converted) field."""
    return {name: spec.default_for(field_type) for name, spec in legal_attributes(field_type).items()}


def accepts_default_value(field_type: FieldType) -> bool:
    return field_type in _DEFAULT_VALUE_TYPES
