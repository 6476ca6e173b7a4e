"""
Machinery shared by documents and embedded documents.

Field declarations come from the ``schema`` class attribute and are resolved once, when the
class is defined. Schemas of base classes are inherited and may be extended::

    class Ghost(Document):
        schema = {
            "name": {"type": str, "required": True},
            "type": {"type": str, "choices": ["ghost", "poltergeist", "class 5"]},
            "location": Location,                # embedded document, stored inline
            "busted_by": "Ghostbuster",          # reference, stored as id, resolved by populate()
            "sightings": [datetime],
        }
"""

import asyncio
import re
from collections.abc import Mapping
from typing import Any, ClassVar, Self

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.models.QueryOptions import FindOptions
from docmapper.connection import get_active_client, resolve_client
from docmapper.documents.hooks import HOOK_MARKER, PHASES, Hook, check_phase, run_hooks
from docmapper.errors import ValidationError
from docmapper.helper.canonical_helper import canonicalize_value, to_datetime, to_utc
from docmapper.helper.validation_helper import (
    is_document,
    is_embedded_document,
    is_empty_value,
    is_in_choices,
    is_number,
    is_valid_type,
)
from docmapper.schema.FieldDescriptor import FieldDescriptor, build_schema
from docmapper.schema.FieldTypes import (
    ArrayOf,
    EmbeddedRef,
    Scalar,
    describe_type,
    finalize_type,
    reference_target,
    register_document_type,
)


def _serialize(value: Any) -> Any:
    """Embedded documents become nested data and referenced documents their id."""
    if is_embedded_document(value):
        return value._to_data()
    if is_document(value):
        return value._id
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _serialize(item) for key, item in value.items()}
    return value


def _rehydrate(value: Any, field_type: Any) -> Any:
    if value is None:
        return None
    if isinstance(field_type, EmbeddedRef) and isinstance(value, Mapping):
        return field_type.target._from_data(value)
    if isinstance(field_type, ArrayOf) and isinstance(value, list):
        return [_rehydrate(item, field_type.item) for item in value]
    return value


def _is_date_field(field_type: Any) -> bool:
    return isinstance(field_type, Scalar) and field_type.kind == "date"


def _as_comparable(value: Any, field_type: Any) -> Any:
    if _is_date_field(field_type):
        return to_utc(to_datetime(value))
    return value


class BaseDocument:
    """
    Schema-driven object with validation, canonicalization, serialization and hooks.

    Attributes:
        schema (dict): Raw field declarations of the class (see FieldDescriptor.build_field).
    """

    _document_class: ClassVar[str | None] = None
    schema: ClassVar[dict[str, Any]] = {}

    _own_fields: ClassVar[dict[str, FieldDescriptor]] = {}
    _fields: ClassVar[dict[str, FieldDescriptor]] = {}
    _hooks: ClassVar[dict[str, list[Hook]]] = {}

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._own_fields = build_schema(cls.__dict__.get("schema", {}))
        fields: dict[str, FieldDescriptor] = {}
        for base in reversed(cls.__mro__[1:]):
            fields.update(base.__dict__.get("_own_fields", {}))
        fields.update(cls._own_fields)
        cls._fields = fields
        cls._fields_resolved = False

        cls._hooks = {phase: [] for phase in PHASES}
        for name, attr in cls.__dict__.items():
            for phase in getattr(attr, HOOK_MARKER, ()):
                if name != phase:
                    cls._hooks[phase].append(attr)

        register_document_type(cls)

    def __init__(self, **values: Any):
        fields = self.get_fields()
        for name, field in fields.items():
            setattr(self, name, field.make_default())
        self.pre_init()
        for key, value in values.items():
            if key not in fields and not (key == "_id" and self._document_class == "document"):
                raise TypeError(f"{type(self).__name__} has no field '{key}'")
            setattr(self, key, value)

    def __repr__(self) -> str:
        values = ", ".join(f"{name}={getattr(self, name, None)!r}" for name in self.get_fields())
        return f"{type(self).__name__}({values})"

    @classmethod
    def create(cls, data: Mapping[str, Any] | None = None, **values: Any) -> Self:
        """Instantiates the class from a mapping and/or keyword arguments."""
        return cls(**{**dict(data or {}), **values})

    @classmethod
    def get_fields(cls) -> dict[str, FieldDescriptor]:
        """
        Returns the field descriptors in declaration order, base class fields first.

        Forward references are resolved on the first call.

        Raises:
            SchemaError: If a forward reference names no known document class.
        """
        if not cls.__dict__.get("_fields_resolved", False):
            cls._fields = {
                name: field.model_copy(update={"type": finalize_type(field.type)})
                for name, field in cls._fields.items()
            }
            cls._fields_resolved = True
        return cls._fields

    ##########################################
    ################# HOOKS ##################
    ##########################################

    def pre_init(self) -> None:
        """Called after defaults are set and before constructor values are assigned."""
        pass

    def pre_validate(self) -> Any:
        pass

    def post_validate(self) -> Any:
        pass

    def pre_save(self) -> Any:
        pass

    def post_save(self) -> Any:
        pass

    def pre_delete(self) -> Any:
        pass

    def post_delete(self) -> Any:
        pass

    def post_find(self) -> Any:
        pass

    @classmethod
    def register_hook(cls, phase: str, callback: Hook) -> None:
        """Appends a callback to ``phase``. It runs for instances of this class and its subclasses."""
        check_phase(phase)
        if "_hooks" not in cls.__dict__:
            cls._hooks = {p: [] for p in PHASES}
        cls._hooks.setdefault(phase, []).append(callback)

    def _embedded_documents(self) -> list["BaseDocument"]:
        embedded = []
        for name in self.get_fields():
            value = getattr(self, name, None)
            for item in value if isinstance(value, list) else [value]:
                if is_embedded_document(item):
                    embedded.append(item)
        return embedded

    def _hook_callbacks(self, phase: str) -> list:
        callbacks = [getattr(self, phase)]
        for klass in reversed(type(self).__mro__):
            for callback in klass.__dict__.get("_hooks", {}).get(phase, []):
                callbacks.append(lambda callback=callback: callback(self))
        for embedded in self._embedded_documents():
            callbacks.extend(embedded._hook_callbacks(phase))
        return callbacks

    async def _run_hooks(self, phase: str) -> None:
        """Runs every hook of ``phase``, including those of embedded documents, concurrently."""
        await run_hooks(self._hook_callbacks(phase))

    ##########################################
    ############## VALIDATION ################
    ##########################################

    def canonicalize(self) -> Self:
        """Coerces every field value into its persisted encoding. Idempotent."""
        for name, field in self.get_fields().items():
            setattr(self, name, canonicalize_value(getattr(self, name, None), field.type))
        return self

    def validate(self, client: StorageClientInterface | None = None) -> None:
        """
        Checks every field in declaration order and stops at the first failure.

        Checks per field: required, type, choices, min/max, match, custom validator;
        then embedded documents are validated recursively. Nothing is modified.

        Args:
            client (StorageClientInterface | None): Client deciding which values are native ids. Defaults to the active client.

        Raises:
            ValidationError: On the first failing field, with ``field`` and ``constraint`` set.
        """
        if client is None:
            client = get_active_client()
        cls_name = type(self).__name__

        for name, field in self.get_fields().items():
            value = getattr(self, name, None)

            if field.required and is_empty_value(value):
                raise ValidationError(f"Key {cls_name}.{name} is required, but got {value!r}", field=name, constraint="required")

            if not is_valid_type(value, field.type, client):
                raise ValidationError(
                    f"Value assigned to {cls_name}.{name} should be {describe_type(field.type)}, got {type(value).__name__}",
                    field=name,
                    constraint="type",
                )

            if value is None:
                continue

            if field.choices and not is_in_choices(field.choices, value):
                raise ValidationError(
                    f"Value assigned to {cls_name}.{name} should be in choices [{', '.join(map(str, field.choices))}], got {value!r}",
                    field=name,
                    constraint="choices",
                )

            self._validate_bounds(name, field, value)

            if field.match is not None and isinstance(value, str) and re.search(field.match, value) is None:
                raise ValidationError(f"Value assigned to {cls_name}.{name} does not match the regex/string {field.match}. Value was {value}", field=name, constraint="match")

            if field.validator is not None:
                result = field.validator.check(value)
                if not result.ok:
                    detail = f": {result.detail}" if result.detail else ""
                    raise ValidationError(f"Value assigned to {cls_name}.{name} failed custom validator{detail}", field=name, constraint="validator")

            for item in value if isinstance(value, list) else [value]:
                if is_embedded_document(item):
                    item.validate(client)

    def _validate_bounds(self, name: str, field: FieldDescriptor, value: Any) -> None:
        if field.min is None and field.max is None:
            return
        if not (is_number(value) or _is_date_field(field.type)):
            return
        cls_name = type(self).__name__
        current = _as_comparable(value, field.type)
        if field.min is not None and current < _as_comparable(field.min, field.type):
            raise ValidationError(f"Value assigned to {cls_name}.{name} is less than min, {field.min}, got {value!r}", field=name, constraint="min")
        if field.max is not None and current > _as_comparable(field.max, field.type):
            raise ValidationError(f"Value assigned to {cls_name}.{name} is greater than max, {field.max}, got {value!r}", field=name, constraint="max")

    ##########################################
    ############ SERIALIZATION ###############
    ##########################################

    def _to_data(self, include_id: bool = True) -> dict[str, Any]:
        """
        Plain snapshot of the document: embedded documents as nested data, references as ids.

        Args:
            include_id (bool): Include ``_id`` (documents only).
        """
        data: dict[str, Any] = {}
        if include_id and self._document_class == "document":
            data["_id"] = getattr(self, "_id", None)
        for name in self.get_fields():
            data[name] = _serialize(getattr(self, name, None))
        return data

    @classmethod
    def _from_data(cls, data: Mapping[str, Any] | list | None) -> Any:
        """
        Rehydrates an instance from a stored record, or a list of instances from a list of records.

        Stored keys without a declared field are ignored. References stay ids until populated.
        """
        if data is None:
            return None
        if isinstance(data, list):
            return [cls._from_data(item) for item in data]

        instance = cls()
        for name, field in cls.get_fields().items():
            if name in data:
                setattr(instance, name, _rehydrate(data[name], field.type))
        if cls._document_class == "document" and "_id" in data:
            instance._id = data["_id"]
        return instance

    ##########################################
    ############### POPULATION ###############
    ##########################################

    @classmethod
    async def populate(
        cls,
        docs: "BaseDocument | list[BaseDocument | None] | None",
        fields: bool | list[str] = True,
        client: StorageClientInterface | None = None,
    ) -> Any:
        """
        Replaces stored reference ids with the referenced documents, one level deep.

        Every referenced id is fetched once per call, with one ``find`` per referenced class;
        the finds of different classes run concurrently. Fetched documents keep their own
        references as ids, so reference cycles terminate. Ids with no stored document become None.

        Args:
            docs: A document or a list of documents of this class.
            fields (bool | list[str]): True for every reference field, or the names of the fields to populate.
            client (StorageClientInterface | None): Defaults to the active client.

        Returns:
            The given ``docs``, populated in place.
        """
        items = [doc for doc in (docs if isinstance(docs, list) else [docs]) if doc is not None]
        if not items or not fields:
            return docs
        client = resolve_client(client)

        names = list(cls.get_fields()) if fields is True else list(fields)
        references = []
        wanted: dict[type, dict[str, Any]] = {}
        for name in names:
            field = cls.get_fields().get(name)
            target = reference_target(field.type) if field is not None else None
            if target is None:
                continue
            references.append((name, target))
            for doc in items:
                value = getattr(doc, name, None)
                for ref in value if isinstance(value, list) else [value]:
                    if ref is not None and not is_document(ref):
                        wanted.setdefault(target, {})[client.to_canonical_id(ref)] = ref

        targets = list(wanted)
        fetched = await asyncio.gather(*[target._fetch_by_ids(list(wanted[target].values()), client) for target in targets])
        loaded = {
            target: {client.to_canonical_id(found._id): found for found in found_docs}
            for target, found_docs in zip(targets, fetched)
        }

        def resolve(ref: Any, lookup: dict[str, Any]) -> Any:
            if ref is None or is_document(ref):
                return ref
            return lookup.get(client.to_canonical_id(ref))

        for name, target in references:
            lookup = loaded.get(target, {})
            for doc in items:
                value = getattr(doc, name, None)
                if isinstance(value, list):
                    setattr(doc, name, [resolve(ref, lookup) for ref in value])
                else:
                    setattr(doc, name, resolve(value, lookup))
        return docs

    @classmethod
    async def _fetch_by_ids(cls, ids: list[Any], client: StorageClientInterface) -> list[Any]:
        records = await client.find(cls.collection_name(), {"_id": {"$in": ids}}, FindOptions())
        return cls._from_data(records)

    @classmethod
    def collection_name(cls) -> str:
        raise TypeError(f"{cls.__name__} is not stored in a collection.")
