"""Per-field declarations of a document schema."""

import copy
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

from docmapper.errors import SchemaError
from docmapper.schema.FieldTypes import ArrayOf, resolve_type
from docmapper.schema.FieldValidator import FieldValidator, as_field_validator

RESERVED_FIELD_NAMES = frozenset({"_id", "id", "schema", "collection"})

_DESCRIPTOR_KEYS = frozenset({"type", "default", "required", "unique", "choices", "min", "max", "match", "validator", "validate"})


class FieldDescriptor(BaseModel):
    """
    Declaration of a single document field.

    Attributes:
        name (str): Field name.
        type (Any): Resolved field type descriptor (see FieldTypes).
        default (Any): Default value, or a zero-argument callable producing it.
        required (bool): Whether an empty value fails validation.
        unique (bool): Whether a unique index is created for the field.
        choices (list | None): Allowed values.
        min (float | None): Lower bound for numbers and dates.
        max (float | None): Upper bound for numbers and dates.
        match (str | None): Regular expression string values must match.
        validator (FieldValidator | None): Custom validator.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    type: Any
    default: Any = None
    required: bool = False
    unique: bool = False
    choices: list[Any] | None = None
    min: Any = None
    max: Any = None
    match: str | None = None
    validator: FieldValidator | None = None

    def make_default(self) -> Any:
        """Produces a fresh default value for a new instance. Arrays and embedded documents are never shared."""
        if callable(self.default):
            return self.default()
        if self.default is None:
            return [] if isinstance(self.type, ArrayOf) else None
        if isinstance(self.default, (list, dict, set)) or getattr(self.default, "_document_class", None) == "embedded":
            return copy.deepcopy(self.default)
        return self.default


def build_field(name: str, entry: Any) -> FieldDescriptor:
    """
    Normalises one raw schema entry into a FieldDescriptor.

    Args:
        name (str): Field name.
        entry (Any): A raw type, a descriptor mapping, a FieldValidator or a FieldDescriptor.

    Raises:
        SchemaError: If the name is reserved, the mapping has unknown keys or the type is unsupported.
    """
    if name in RESERVED_FIELD_NAMES or name.startswith("__"):
        raise SchemaError(f"'{name}' is a reserved name and cannot be declared as a field.")

    if isinstance(entry, FieldDescriptor):
        return entry.model_copy(update={"name": name, "type": resolve_type(entry.type)})

    if isinstance(entry, FieldValidator):
        return FieldDescriptor(name=name, type=resolve_type(entry.type), required=entry.required, validator=entry)

    if isinstance(entry, Mapping):
        unknown = set(entry) - _DESCRIPTOR_KEYS
        if unknown:
            raise SchemaError(f"Unknown descriptor keys for field '{name}': {sorted(unknown)}")
        validator = as_field_validator(entry.get("validator", entry.get("validate")))
        raw_type = entry.get("type")
        if raw_type is None:
            if validator is None:
                raise SchemaError(f"Field '{name}' declares neither a type nor a validator.")
            raw_type = validator.type
        choices = entry.get("choices")
        return FieldDescriptor(
            name=name,
            type=resolve_type(raw_type),
            default=entry.get("default"),
            required=bool(entry.get("required", False) or (validator is not None and validator.required)),
            unique=bool(entry.get("unique", False)),
            choices=list(choices) if choices is not None else None,
            min=entry.get("min"),
            max=entry.get("max"),
            match=entry.get("match"),
            validator=validator,
        )

    return FieldDescriptor(name=name, type=resolve_type(entry))


def build_schema(raw_schema: Mapping[str, Any]) -> dict[str, FieldDescriptor]:
    """Builds the ordered field descriptors of a schema mapping, preserving declaration order."""
    if not isinstance(raw_schema, Mapping):
        raise SchemaError(f"A schema must be a mapping of field name to type, got {type(raw_schema).__name__}.")
    return {name: build_field(name, entry) for name, entry in raw_schema.items()}
