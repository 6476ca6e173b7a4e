"""
Tests for the type predicates and schema-type checks.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from bson import ObjectId

from docmapper.documents.Document import Document
from docmapper.documents.EmbeddedDocument import EmbeddedDocument
from docmapper.errors import SchemaError
from docmapper.helper.canonical_helper import canonicalize_value, to_datetime, to_utc
from docmapper.helper.validation_helper import (
    is_array,
    is_boolean,
    is_buffer,
    is_date,
    is_document,
    is_embedded_document,
    is_empty_value,
    is_in_choices,
    is_native_id,
    is_number,
    is_object,
    is_referenceable,
    is_string,
    is_supported_type,
    is_type,
    is_valid_type,
)
from docmapper.schema.FieldTypes import ArrayOf, NativeId, Scalar


class Trap(EmbeddedDocument):
    schema = {"capacity": int}


class Firehouse(Document):
    schema = {"address": str}


class TestPredicates:
    def test_scalars(self):
        assert is_string("slimer")
        assert not is_string(1)
        assert is_number(3) and is_number(2.5)
        assert not is_number(True)
        assert not is_number(float("nan"))
        assert is_boolean(False)
        assert not is_boolean(0)
        assert is_buffer(b"ecto") and is_buffer(bytearray(b"ecto"))
        assert is_object({"a": 1})
        assert not is_object([1])
        assert is_array([1]) and is_array((1,))

    def test_dates(self):
        assert is_date(datetime(1984, 6, 8))
        assert is_date(date(1984, 6, 8))
        assert is_date("1984-06-08T12:00:00Z")
        assert is_date(455500800)
        assert not is_date("the day after tomorrow")

    def test_document_kinds(self):
        trap = Trap(capacity=1)
        firehouse = Firehouse(address="14 N Moore St")
        assert is_embedded_document(trap)
        assert not is_document(trap)
        assert is_document(firehouse)
        assert not is_embedded_document(firehouse)
        # classes are not instances
        assert not is_document(Firehouse)

    @pytest.mark.asyncio
    async def test_embedded_and_referenceable_are_exclusive(self, tinydb_client):
        for value in [Trap(capacity=1), Firehouse(address="14 N Moore St")]:
            assert is_embedded_document(value) != is_referenceable(value, tinydb_client)
        assert is_referenceable("abcdefgh12345678", tinydb_client)
        assert not is_referenceable({"capacity": 1}, tinydb_client)

    @pytest.mark.asyncio
    async def test_native_id_needs_a_client(self, tinydb_client):
        assert not is_native_id("abcdefgh12345678", None)
        assert is_native_id("abcdefgh12345678", tinydb_client)
        assert not is_native_id("too-short", tinydb_client)

    def test_native_id_type_gates_the_shape_check(self):
        client = MagicMock()
        client.native_id_type.return_value = ObjectId
        client.is_native_id.return_value = True
        assert is_native_id(ObjectId(), client)
        assert is_native_id("5f2b6c0e9d1e8a3b4c5d6e7f", client)
        assert not is_native_id(12345, client)
        assert not is_native_id(b"ecto", client)
        assert client.is_native_id.call_count == 2

    def test_empty_values(self):
        assert is_empty_value(None)
        assert is_empty_value("")
        assert is_empty_value([])
        assert is_empty_value({})
        assert not is_empty_value(0)
        assert not is_empty_value(False)
        assert not is_empty_value(datetime(2000, 1, 1))

    def test_choices(self):
        assert is_in_choices(None, "anything")
        assert is_in_choices([], "anything")
        assert is_in_choices(["ghost", "poltergeist"], "ghost")
        assert not is_in_choices(["ghost", "poltergeist"], "demon")


class TestTypeChecks:
    def test_none_is_always_valid(self):
        assert is_valid_type(None, str)
        assert is_valid_type(None, [int])

    def test_scalar_types(self):
        assert is_valid_type("a", str)
        assert not is_valid_type(1, str)
        assert is_valid_type(1.5, float)
        assert is_valid_type({"k": "v"}, dict)
        assert is_valid_type(datetime.now(), datetime)

    def test_typed_arrays_check_every_element(self):
        assert is_valid_type([1, 2, 3], [int])
        assert not is_valid_type([1, "2", 3], [int])
        assert not is_valid_type(1, [int])

    def test_untyped_arrays(self):
        assert is_valid_type([1, "two", None], [])
        assert is_valid_type([1, "two"], list)

    def test_multi_element_array_type_is_a_schema_error(self):
        with pytest.raises(SchemaError):
            is_valid_type([1], [int, str])

    def test_unsupported_type_is_a_schema_error(self):
        with pytest.raises(SchemaError):
            is_type(1, set)
        assert not is_supported_type(set)
        assert is_supported_type(str)
        assert is_supported_type(Firehouse)
        assert is_supported_type(Trap(capacity=1))

    @pytest.mark.asyncio
    async def test_references(self, tinydb_client):
        assert is_valid_type(Firehouse(), Firehouse, tinydb_client)
        assert is_valid_type("abcdefgh12345678", Firehouse, tinydb_client)
        assert not is_valid_type("not an id", Firehouse, tinydb_client)
        assert is_valid_type(["abcdefgh12345678", Firehouse()], [Firehouse], tinydb_client)

    def test_embedded(self):
        assert is_valid_type(Trap(capacity=2), Trap)
        assert not is_valid_type({"capacity": 2}, Trap)

    @pytest.mark.asyncio
    async def test_native_id_marker(self, tinydb_client):
        assert is_valid_type("abcdefgh12345678", NativeId, tinydb_client)
        assert not is_valid_type(12, NativeId, tinydb_client)

    def test_resolved_descriptors_are_accepted(self):
        assert is_valid_type("a", Scalar("string"))
        assert is_valid_type([1], ArrayOf(Scalar("number")))


class TestCanonicalization:
    def test_dates_are_parsed(self):
        value = canonicalize_value("1984-06-08T12:00:00+00:00", Scalar("date"))
        assert isinstance(value, datetime)
        assert value.year == 1984

    def test_date_becomes_datetime(self):
        assert to_datetime(date(1984, 6, 8)) == datetime(1984, 6, 8)

    def test_dates_become_aware_utc(self):
        expected = datetime(1984, 6, 8, tzinfo=timezone.utc)
        eastern = timezone(timedelta(hours=-4))
        for raw in (datetime(1984, 6, 8), "1984-06-08T00:00:00Z", date(1984, 6, 8), datetime(1984, 6, 7, 20, tzinfo=eastern)):
            value = canonicalize_value(raw, Scalar("date"))
            assert value == expected
            assert value.utcoffset() == timedelta(0)
        assert to_utc(datetime(1984, 6, 8)) == expected

    def test_buffers_become_bytes(self):
        assert canonicalize_value(bytearray(b"ecto"), Scalar("buffer")) == b"ecto"

    def test_arrays_are_canonicalized_per_element(self):
        value = canonicalize_value(["1984-06-08T00:00:00"], ArrayOf(Scalar("date")))
        assert value == [datetime(1984, 6, 8, tzinfo=timezone.utc)]

    def test_idempotent(self):
        once = canonicalize_value("1984-06-08T12:00:00", Scalar("date"))
        assert canonicalize_value(once, Scalar("date")) == once

    def test_mismatches_are_left_for_validation(self):
        assert canonicalize_value("not a date", Scalar("date")) == "not a date"
