"""
Error types for the metadata store.

Every failure the store reports to its caller is one of the classes below:
- MetadataStoreError: Base exception
- UnknownFieldError / UnknownSchemaError / UnknownRecordError: Lookup misses
- CrossSchemaError: Field and record (or mapping target) disagree on schema
- IllegalAttributeError: Attribute not legal for the field's value type
- UnsupportedConversionError: No migration defined for a type pair
- InvalidValueError: Value cannot be stored in the field
- IllegalTransitionError: Lifecycle transition not allowed
- SchemaConflictError: Physical storage clashes with what the field needs
- MappedFieldError: Field is the target of a standard-name mapping
- DuplicateNameError / IllegalNameError / InvalidTypeError: Field creation

Invariants:
    - All errors inherit from MetadataStoreError
    - Errors carry a stable code and a details dict for programmatic handling
    - Errors are raised synchronously and never retried by the store
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class MetadataStoreError(Exception):
    """Base exception for all metadata store errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "MDSTORE_ERROR"
        self.details = details or {}


class UnknownFieldError(MetadataStoreError):
    """No field matches the given id, name or object."""

    def __init__(self, message: str, field: Any = None) -> None:
        super().__init__(message, code="UNKNOWN_FIELD", details={"field": field})
        self.field = field


class UnknownSchemaError(MetadataStoreError):
    """No schema matches the given id or name."""

    def __init__(self, message: str, schema: Any = None) -> None:
        super().__init__(message, code="UNKNOWN_SCHEMA", details={"schema": schema})
        self.schema = schema


class UnknownRecordError(MetadataStoreError):
    """No record exists with the given identity."""

    def __init__(self, message: str, record_id: Optional[int] = None) -> None:
        super().__init__(message, code="UNKNOWN_RECORD", details={"record_id": record_id})
        self.record_id = record_id


class CrossSchemaError(MetadataStoreError):
    """A field was used with a record or mapping from a different schema."""

    def __init__(
        self,
        message: str,
        expected_schema_id: Optional[int] = None,
        actual_schema_id: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="CROSS_SCHEMA",
            details={
                "expected_schema_id": expected_schema_id,
                "actual_schema_id": actual_schema_id,
            },
        )
        self.expected_schema_id = expected_schema_id
        self.actual_schema_id = actual_schema_id


class IllegalAttributeError(MetadataStoreError):
    """Attribute is not legal for the field's current value type.

    Raised when:
    - Setting or reading an attribute the type does not support
    - Setting an attribute to a value outside its allowed range
    """

    def __init__(
        self,
        message: str,
        attribute: Optional[str] = None,
        field_type: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="ILLEGAL_ATTRIBUTE",
            details={"attribute": attribute, "field_type": field_type},
        )
        self.attribute = attribute
        self.field_type = field_type


class UnsupportedConversionError(MetadataStoreError):
    """No migration is defined between the two value types."""

    def __init__(self, message: str, from_type: Optional[str] = None, to_type: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="UNSUPPORTED_CONVERSION",
            details={"from_type": from_type, "to_type": to_type},
        )
        self.from_type = from_type
        self.to_type = to_type


class InvalidValueError(MetadataStoreError):
    """Value cannot be stored in the field.

    Raised when:
    - A term name or id cannot be resolved
    - A date or timestamp cannot be parsed
    - A value has the wrong shape for the field type
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        value: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_VALUE",
            details={"field_name": field_name, "value": repr(value)},
        )
        self.field_name = field_name
        self.value = value


class IllegalTransitionError(MetadataStoreError):
    """Lifecycle transition is not allowed (e.g. permanent -> temporary)."""

    def __init__(self, message: str, current_state: Optional[str] = None) -> None:
        super().__init__(message, code="ILLEGAL_TRANSITION", details={"current_state": current_state})
        self.current_state = current_state


class SchemaConflictError(MetadataStoreError):
    """Existing physical storage is incompatible with the field's layout."""

    def __init__(
        self,
        message: str,
        column: Optional[str] = None,
        existing_type: Optional[str] = None,
        required_type: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="SCHEMA_CONFLICT",
            details={
                "column": column,
                "existing_type": existing_type,
                "required_type": required_type,
            },
        )
        self.column = column


class MappedFieldError(MetadataStoreError):
    """Field cannot be dropped while a standard name maps to it."""

    def __init__(self, message: str, standard_names: Optional[List[str]] = None) -> None:
        super().__init__(
            message,
            code="MAPPED_FIELD",
            details={"standard_names": standard_names or []},
        )
        self.standard_names = standard_names or []


class DuplicateNameError(MetadataStoreError):
    """Field name (or its storage name) is already in use."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message, code="DUPLICATE_NAME", details={"name": name})
        self.name = name


class IllegalNameError(MetadataStoreError):
    """Field name or label contains illegal characters or is reserved."""

    def __init__(self, message: str, name: Optional[str] = None) -> None:
        super().__init__(message, code="ILLEGAL_NAME", details={"name": name})
        self.name = name


class InvalidTypeError(MetadataStoreError):
    """Value type is not one of the known field types."""

    def __init__(self, message: str, field_type: Any = None) -> None:
        super().__init__(message, code="INVALID_TYPE", details={"field_type": field_type})
        self.field_type = field_type


class InterchangeError(MetadataStoreError):
    """Field interchange document is malformed.

    Raised when:
    - The document is not valid YAML
    - A field entry lacks a name or type
    - A referenced vocabulary file cannot be read
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message, code="INTERCHANGE_ERROR", details={"errors": errors or []})
        self.errors = errors or []
