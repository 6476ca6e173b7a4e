"""
Tests for schema resolution: field types, descriptors and validators.
"""

from datetime import datetime
from typing import Annotated

import pytest
from pydantic import BaseModel, Field

from docmapper.documents.Document import Document
from docmapper.documents.EmbeddedDocument import EmbeddedDocument
from docmapper.errors import SchemaError
from docmapper.schema.FieldDescriptor import build_field, build_schema
from docmapper.schema.FieldTypes import (
    ArrayOf,
    DocumentRef,
    EmbeddedRef,
    LazyRef,
    NativeId,
    NativeIdType,
    Scalar,
    describe_type,
    finalize_type,
    reference_target,
    resolve_type,
)
from docmapper.schema.FieldValidator import CallableFieldValidator, PydanticFieldValidator, as_field_validator


class Containment(EmbeddedDocument):
    schema = {"units": int}


class Spook(Document):
    schema = {"name": str}


class Specter(Document):
    schema = {"haunts": "Spook", "companions": ["Specter"]}


class FullName(BaseModel):
    first: str
    last: str


class TestResolveType:
    def test_python_types(self):
        assert resolve_type(str) == Scalar("string")
        assert resolve_type(int) == Scalar("number")
        assert resolve_type(float) == Scalar("number")
        assert resolve_type(bool) == Scalar("boolean")
        assert resolve_type(datetime) == Scalar("date")
        assert resolve_type(bytes) == Scalar("buffer")
        assert resolve_type(dict) == Scalar("object")

    def test_type_names(self):
        assert resolve_type("string") == Scalar("string")
        assert resolve_type("binary") == Scalar("buffer")
        assert resolve_type("array") == ArrayOf(None)

    def test_arrays(self):
        assert resolve_type([int]) == ArrayOf(Scalar("number"))
        assert resolve_type([]) == ArrayOf(None)
        assert resolve_type(list) == ArrayOf(None)
        with pytest.raises(SchemaError):
            resolve_type([int, str])

    def test_documents(self):
        assert resolve_type(Spook) == DocumentRef(Spook)
        assert resolve_type(Containment) == EmbeddedRef(Containment)
        assert resolve_type(NativeId) == NativeIdType()

    def test_forward_references_resolve_lazily(self):
        assert resolve_type("Spook") == LazyRef("Spook")
        assert finalize_type(LazyRef("Spook")) == DocumentRef(Spook)
        assert finalize_type(ArrayOf(LazyRef("Containment"))) == ArrayOf(EmbeddedRef(Containment))

    def test_unknown_forward_reference(self):
        with pytest.raises(SchemaError):
            finalize_type(LazyRef("NoSuchDocument"))

    def test_reference_target(self):
        assert reference_target(DocumentRef(Spook)) is Spook
        assert reference_target(ArrayOf(DocumentRef(Spook))) is Spook
        assert reference_target(EmbeddedRef(Containment)) is None
        assert reference_target(Scalar("string")) is None

    def test_describe(self):
        assert describe_type(ArrayOf(Scalar("number"))) == "[number]"
        assert describe_type(ArrayOf(None)) == "array"
        assert describe_type(DocumentRef(Spook)) == "Spook"

    def test_unsupported(self):
        with pytest.raises(SchemaError):
            resolve_type(set)


class TestFieldDescriptor:
    def test_raw_type_entry(self):
        field = build_field("name", str)
        assert field.type == Scalar("string")
        assert not field.required

    def test_mapping_entry(self):
        field = build_field("type", {"type": str, "required": True, "choices": ("ghost", "demon"), "unique": True})
        assert field.required and field.unique
        assert field.choices == ["ghost", "demon"]

    def test_unknown_descriptor_keys(self):
        with pytest.raises(SchemaError):
            build_field("name", {"type": str, "requred": True})

    def test_reserved_names(self):
        for name in ("_id", "id", "schema", "collection", "__class__"):
            with pytest.raises(SchemaError):
                build_field(name, str)

    def test_array_defaults_are_fresh(self):
        field = build_field("tags", [str])
        first, second = field.make_default(), field.make_default()
        assert first == [] and first is not second

    def test_mutable_literal_defaults_are_copied(self):
        field = build_field("meta", {"type": dict, "default": {"seen": []}})
        first = field.make_default()
        first["seen"].append(1)
        assert field.make_default() == {"seen": []}

    def test_embedded_defaults_are_copied(self):
        field = build_field("trap", {"type": Containment, "default": Containment(units=2)})
        first, second = field.make_default(), field.make_default()
        assert first is not second
        first.units = 5
        assert second.units == 2
        assert field.make_default().units == 2

    def test_callable_defaults(self):
        field = build_field("counter", {"type": int, "default": lambda: 42})
        assert field.make_default() == 42

    def test_validator_only_entry_takes_its_type(self):
        validator = PydanticFieldValidator(FullName, required=True)
        field = build_field("full_name", validator)
        assert field.type == Scalar("object")
        assert field.required

    def test_entry_without_type_or_validator(self):
        with pytest.raises(SchemaError):
            build_field("name", {"required": True})

    def test_schema_keeps_declaration_order(self):
        fields = build_schema({"b": str, "a": int, "c": bool})
        assert list(fields) == ["b", "a", "c"]

    def test_schema_must_be_a_mapping(self):
        with pytest.raises(SchemaError):
            build_schema([("name", str)])


class TestFieldValidator:
    def test_pydantic_annotation(self):
        validator = PydanticFieldValidator(Annotated[int, Field(ge=0, le=10)])
        assert validator.type is int
        assert validator.check(5).ok
        result = validator.check(11)
        assert not result.ok
        assert result.detail

    def test_pydantic_model(self):
        validator = PydanticFieldValidator(FullName)
        assert validator.type is dict
        assert validator.check({"first": "Egon", "last": "Spengler"}).ok
        assert not validator.check({"first": "Egon"}).ok

    def test_callable(self):
        validator = as_field_validator(lambda value: value.startswith("Dr."))
        assert isinstance(validator, CallableFieldValidator)
        assert validator.check("Dr. Venkman").ok
        assert not validator.check("Venkman").ok

    def test_callable_message_rejects(self):
        validator = CallableFieldValidator(lambda value: "too spooky", type=str)
        result = validator.check("boo")
        assert not result.ok
        assert result.detail == "too spooky"

    def test_unsupported_validator(self):
        with pytest.raises(TypeError):
            as_field_validator(42)


class TestDocumentClasses:
    def test_fields_resolve_forward_references(self):
        fields = Specter.get_fields()
        assert fields["haunts"].type == DocumentRef(Spook)
        assert fields["companions"].type == ArrayOf(DocumentRef(Specter))

    def test_inherited_schema_is_extended(self):
        class Poltergeist(Spook):
            schema = {"mass": float}

        assert list(Poltergeist.get_fields()) == ["name", "mass"]
        assert list(Spook.get_fields()) == ["name"]

    def test_collection_names(self):
        class Apparition(Document):
            collection = "sightings"

        assert Spook.collection_name() == "spooks"
        assert Apparition.collection_name() == "sightings"

    def test_embedded_documents_have_no_collection(self):
        with pytest.raises(TypeError):
            Containment.collection_name()

    def test_unknown_constructor_keys(self):
        with pytest.raises(TypeError):
            Spook(name="Slimer", colour="green")
        with pytest.raises(TypeError):
            Containment(_id="abc")

    def test_defaults_and_pre_init(self):
        class Vapor(Document):
            schema = {"tags": [str], "density": {"type": float, "default": 1.0}}

            def pre_init(self):
                self.tags.append("seen")

        first, second = Vapor(), Vapor(density=2.0)
        assert first.tags == ["seen"] and second.tags == ["seen"]
        assert first.tags is not second.tags
        assert first.density == 1.0 and second.density == 2.0

    def test_create(self):
        spook = Spook.create({"name": "Slimer"})
        assert spook.name == "Slimer"
        assert spook.id is None
