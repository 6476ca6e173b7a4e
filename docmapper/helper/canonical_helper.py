"""Coercion of in-memory field values into the encoding every storage client persists."""

from datetime import date, datetime, time, timezone
from typing import Any

from pydantic import TypeAdapter

from docmapper.helper.validation_helper import is_buffer, is_date, is_embedded_document
from docmapper.schema.FieldTypes import ArrayOf, EmbeddedRef, Scalar

_DATETIME_ADAPTER = TypeAdapter(datetime)


def to_datetime(value: Any) -> datetime:
    """Converts dates, epoch seconds and ISO-8601 strings to a datetime. Datetimes are returned unchanged."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    return _DATETIME_ADAPTER.validate_python(value)


def to_utc(moment: datetime) -> datetime:
    """Aware UTC datetime. Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def canonicalize_value(value: Any, field_type: Any) -> Any:
    """
    Returns the canonical encoding of ``value`` for ``field_type``.

    Values that do not look like the declared type are returned untouched so that
    validation can report them. Canonicalizing a canonical value is a no-op.
    """
    if value is None:
        return None
    if isinstance(field_type, Scalar):
        if field_type.kind == "date" and is_date(value):
            return to_utc(to_datetime(value))
        if field_type.kind == "buffer" and is_buffer(value):
            return bytes(value)
        return value
    if isinstance(field_type, ArrayOf) and isinstance(value, (list, tuple)):
        return [canonicalize_value(item, field_type.item) for item in value]
    if isinstance(field_type, EmbeddedRef) and is_embedded_document(value):
        value.canonicalize()
    return value
