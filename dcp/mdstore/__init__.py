"""
dcp.mdstore - Typed-metadata value store for digital collections.

This package stores typed field values for collection records:
- Schemas and their fields (SchemaRegistry, FieldDescriptor)
- Field type conversion with storage migration (TypeConverter)
- Records with per-type value storage (Record, RecordFactory)
- Cascading view/edit/author permissions with shared caches
- Change events and deferred per-record housekeeping

Example:
    >>> from dcp.mdstore import MetadataStore, StoreSettings, User
    >>>
    >>> store = MetadataStore.from_settings(StoreSettings(data_dir="/tmp/md"))
    >>> store.initialize()
    >>> title = store.registry.add_field(0, "Text", "Title", optional=False)
    >>> record = store.records.create(0, User(7, "alice"))
    >>> record.set(title, "Tidal Patterns")
    True
    >>> record.make_permanent()
    >>> store.run_housekeeping()
    1

Invariants:
    - Schema 0 ("Resources") always exists
    - Every value write goes through a Record
    - All errors derive from MetadataStoreError

Version: 0.1.0
"""

__version__ = "0.1.0"

from .cache import CacheService
from .config import StoreSettings, setup_logging
from .contracts import User
from .errors import (
    CrossSchemaError,
    DuplicateNameError,
    IllegalAttributeError,
    IllegalNameError,
    IllegalTransitionError,
    InterchangeError,
    InvalidTypeError,
    InvalidValueError,
    MappedFieldError,
    MetadataStoreError,
    SchemaConflictError,
    UnknownFieldError,
    UnknownRecordError,
    UnknownSchemaError,
    UnsupportedConversionError,
)
from .events import RECORD_SCOPE, Event, EventBus, EventKind, field_scope, schema_scope
from .memory import InMemoryIndexer, InMemoryUserDirectory
from .records.privileges import PrivilegeSet
from .records.record import ChangeOp, FieldChange, Record, RecordState
from .records.values import DateValue, Point, SearchParameterSet
from .schema.field import FieldDescriptor
from .schema.registry import Schema, SchemaRegistry
from .schema.types import FieldOrder, FieldType, UpdateMethod
from .store import MetadataStore

__all__ = [
    # Version
    "__version__",
    # Store
    "MetadataStore",
    "StoreSettings",
    "setup_logging",
    "CacheService",
    "EventBus",
    "Event",
    "EventKind",
    "RECORD_SCOPE",
    "field_scope",
    "schema_scope",
    # Schema
    "Schema",
    "SchemaRegistry",
    "FieldDescriptor",
    "FieldType",
    "FieldOrder",
    "UpdateMethod",
    # Records
    "Record",
    "RecordState",
    "ChangeOp",
    "FieldChange",
    "PrivilegeSet",
    "DateValue",
    "Point",
    "SearchParameterSet",
    # Collaborators
    "User",
    "InMemoryIndexer",
    "InMemoryUserDirectory",
    # Errors
    "MetadataStoreError",
    "UnknownFieldError",
    "UnknownSchemaError",
    "UnknownRecordError",
    "CrossSchemaError",
    "IllegalAttributeError",
    "UnsupportedConversionError",
    "InvalidValueError",
    "IllegalTransitionError",
    "SchemaConflictError",
    "MappedFieldError",
    "DuplicateNameError",
    "IllegalNameError",
    "InvalidTypeError",
    "InterchangeError",
]
