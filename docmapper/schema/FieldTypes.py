"""
Closed set of field type descriptors.

Raw schema entries (``str``, ``[Ghost]``, ``"Location"``, ...) are resolved once,
when a document class is defined, into one of:

    Scalar(kind)        string | number | boolean | date | buffer | object
    ArrayOf(item)       homogeneous array; item None means "any element"
    DocumentRef(cls)    reference to another Document, stored as its id
    EmbeddedRef(cls)    embedded document, stored inline
    NativeIdType()      a backend-native id
    LazyRef(name)       forward reference by class name, finalised on first use
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Union

from docmapper.errors import SchemaError

SCALAR_KINDS = ("string", "number", "boolean", "date", "buffer", "object")

_PYTHON_TYPES: dict[type, str] = {
    str: "string",
    int: "number",
    float: "number",
    bool: "boolean",
    datetime: "date",
    date: "date",
    bytes: "buffer",
    bytearray: "buffer",
    dict: "object",
}

# "binary" is accepted as an alias of "buffer"
_KIND_NAMES: dict[str, str] = {kind: kind for kind in SCALAR_KINDS}
_KIND_NAMES["binary"] = "buffer"


class NativeId:
    """Schema marker for a field holding a backend-native id of the connected client."""


@dataclass(frozen=True)
class Scalar:
    kind: str


@dataclass(frozen=True)
class ArrayOf:
    item: Any = None


@dataclass(frozen=True)
class DocumentRef:
    target: type


@dataclass(frozen=True)
class EmbeddedRef:
    target: type


@dataclass(frozen=True)
class NativeIdType:
    pass


@dataclass(frozen=True)
class LazyRef:
    name: str


FieldType = Union[Scalar, ArrayOf, DocumentRef, EmbeddedRef, NativeIdType, LazyRef]
_FIELD_TYPE_CLASSES = (Scalar, ArrayOf, DocumentRef, EmbeddedRef, NativeIdType, LazyRef)

# Every document class defined so far, by class name. Used to finalise forward references.
_DOCUMENT_TYPES: dict[str, type] = {}


def register_document_type(cls: type) -> None:
    _DOCUMENT_TYPES[cls.__name__] = cls


def lookup_document_type(name: str) -> type:
    try:
        return _DOCUMENT_TYPES[name]
    except KeyError:
        raise SchemaError(f"Unknown document type '{name}'. Define the class before using documents that reference it.")


def is_field_type(value: Any) -> bool:
    return isinstance(value, _FIELD_TYPE_CLASSES)


def resolve_type(raw: Any) -> FieldType:
    """
    Resolves a raw schema type into a field type descriptor.

    Args:
        raw (Any): A python type, a one-element list ``[T]``, a document class, a class name or a type name.

    Returns:
        FieldType: The resolved descriptor. Class names that are not scalar type names resolve to a LazyRef.

    Raises:
        SchemaError: If the type is unsupported or an array declares more than one element type.
    """
    if is_field_type(raw):
        return raw
    if isinstance(raw, list):
        if len(raw) > 1:
            raise SchemaError(f"Unsupported type. Only one type can be specified in arrays, but multiple found: {raw!r}")
        return ArrayOf(resolve_type(raw[0]) if raw else None)
    if isinstance(raw, str):
        if raw in _KIND_NAMES:
            return Scalar(_KIND_NAMES[raw])
        if raw == "array":
            return ArrayOf(None)
        return LazyRef(raw)
    if raw is list or raw is tuple:
        return ArrayOf(None)
    if raw is NativeId:
        return NativeIdType()
    if isinstance(raw, type):
        document_class = getattr(raw, "_document_class", None)
        if document_class == "document":
            return DocumentRef(raw)
        if document_class == "embedded":
            return EmbeddedRef(raw)
        if raw in _PYTHON_TYPES:
            return Scalar(_PYTHON_TYPES[raw])
    raise SchemaError(f"Unsupported field type: {raw!r}")


def finalize_type(field_type: FieldType) -> FieldType:
    """Replaces forward references (also inside arrays) by the document class they name."""
    if isinstance(field_type, LazyRef):
        resolved = resolve_type(lookup_document_type(field_type.name))
        if isinstance(resolved, LazyRef):
            raise SchemaError(f"'{field_type.name}' does not name a document class.")
        return resolved
    if isinstance(field_type, ArrayOf) and isinstance(field_type.item, (LazyRef, ArrayOf)):
        return ArrayOf(finalize_type(field_type.item))
    return field_type


def reference_target(field_type: FieldType) -> type | None:
    """Returns the referenced Document class of a reference or reference-array field, else None."""
    if isinstance(field_type, ArrayOf):
        field_type = field_type.item
    if isinstance(field_type, DocumentRef):
        return field_type.target
    return None


def describe_type(field_type: FieldType) -> str:
    if isinstance(field_type, Scalar):
        return field_type.kind
    if isinstance(field_type, ArrayOf):
        return "array" if field_type.item is None else f"[{describe_type(field_type.item)}]"
    if isinstance(field_type, (DocumentRef, EmbeddedRef)):
        return field_type.target.__name__
    if isinstance(field_type, LazyRef):
        return field_type.name
    return "native id"
