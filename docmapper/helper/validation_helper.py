"""
Type predicates and schema-type compatibility checks.

All predicates are pure. ``is_valid_type`` never raises for bad data, only for a
malformed schema type (which is a programming error).
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sized
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from docmapper.errors import SchemaError
from docmapper.schema.FieldTypes import (
    ArrayOf,
    DocumentRef,
    EmbeddedRef,
    LazyRef,
    NativeIdType,
    Scalar,
    finalize_type,
    resolve_type,
)

if TYPE_CHECKING:
    from docmapper.clients.storage.StorageClientInterface import StorageClientInterface

_DATETIME_ADAPTER = TypeAdapter(datetime)


def is_string(value: Any) -> bool:
    return isinstance(value, str)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def is_boolean(value: Any) -> bool:
    return isinstance(value, bool)


def is_date(value: Any) -> bool:
    """Dates, epoch numbers and ISO-8601 strings are all accepted as dates."""
    if isinstance(value, (datetime, date)) or is_number(value):
        return True
    if not is_string(value):
        return False
    try:
        _DATETIME_ADAPTER.validate_python(value)
    except PydanticValidationError:
        return False
    return True


def is_buffer(value: Any) -> bool:
    return isinstance(value, (bytes, bytearray, memoryview))


def is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def is_array(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def is_document(value: Any) -> bool:
    return not isinstance(value, type) and getattr(value, "_document_class", None) == "document"


def is_embedded_document(value: Any) -> bool:
    return not isinstance(value, type) and getattr(value, "_document_class", None) == "embedded"


def is_native_id(value: Any, client: StorageClientInterface | None) -> bool:
    """
    Uses the given storage client's id type and shape. Ids are either of the client's
    native id type or strings in its native shape. Without a client nothing counts as a native id.
    """
    if client is None or value is None:
        return False
    if not isinstance(value, (str, client.native_id_type())):
        return False
    return client.is_native_id(value)


def is_referenceable(value: Any, client: StorageClientInterface | None = None) -> bool:
    return is_document(value) or is_native_id(value, client)


def is_supported_type(raw: Any) -> bool:
    """Whether a raw schema type (or a document instance, whose class is then used) can be resolved."""
    if getattr(raw, "_document_class", None) is not None and not isinstance(raw, type):
        raw = type(raw)
    try:
        resolve_type(raw)
    except SchemaError:
        return False
    return True


def is_type(value: Any, field_type: Any, client: StorageClientInterface | None = None) -> bool:
    """
    Checks a single value against a single type.

    Raises:
        SchemaError: If ``field_type`` cannot be resolved.
    """
    field_type = resolve_type(field_type)
    if isinstance(field_type, LazyRef):
        field_type = finalize_type(field_type)

    if isinstance(field_type, Scalar):
        kind = field_type.kind
        if kind == "string":
            return is_string(value)
        if kind == "number":
            return is_number(value)
        if kind == "boolean":
            return is_boolean(value)
        if kind == "date":
            return is_date(value)
        if kind == "buffer":
            return is_buffer(value)
        return is_object(value)
    if isinstance(field_type, ArrayOf):
        return is_array(value)
    if isinstance(field_type, DocumentRef):
        return isinstance(value, field_type.target) or is_native_id(value, client)
    if isinstance(field_type, EmbeddedRef):
        return isinstance(value, field_type.target)
    if isinstance(field_type, NativeIdType):
        return is_native_id(value, client)
    return False


def is_valid_type(value: Any, field_type: Any, client: StorageClientInterface | None = None) -> bool:
    """
    Checks a field value against its declared type.

    None is always valid: absence is permitted, presence is what gets checked.
    An array type ``[T]`` checks every element against ``T``; ``[]`` or ``list`` accept any array.

    Raises:
        SchemaError: If the type is malformed, e.g. an array declaring more than one element type.
    """
    field_type = resolve_type(field_type)
    if value is None:
        return True

    if isinstance(field_type, ArrayOf):
        if not is_array(value):
            return False
        if field_type.item is None:
            return True
        return all(v is None or is_type(v, field_type.item, client) for v in value)

    return is_type(value, field_type, client)


def is_in_choices(choices: list | None, choice: Any) -> bool:
    return True if not choices else choice in choices


def is_empty_value(value: Any) -> bool:
    """None and empty strings, arrays and objects are empty. Numbers, booleans and dates never are."""
    if value is None:
        return True
    if isinstance(value, (bool, int, float, datetime, date)):
        return False
    if isinstance(value, Sized):
        return len(value) == 0
    return False
