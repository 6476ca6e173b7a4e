"""
Tests for in-process query evaluation and cursor options.
"""

from datetime import datetime, timezone

import pytest
from bson import ObjectId

from docmapper.clients.storage.models.QueryOptions import FindOptions, as_find_options
from docmapper.errors import QueryTranslationError
from docmapper.query.QueryMatcher import QueryMatcher, apply_find_options, equality_fields

RECORDS = [
    {"_id": "a", "name": "Slimer", "type": "class 5", "age": 3, "tags": ["green", "hungry"], "location": {"city": "NYC"}},
    {"_id": "b", "name": "Stay Puft", "type": "class 7", "age": 10, "tags": ["giant"], "location": {"city": "NYC"}},
    {"_id": "c", "name": "Gozer", "type": "deity", "age": 6000, "location": {"city": "Sumeria"}},
    {"_id": "d", "name": "Vigo", "age": None, "portrait": True},
]


def ids(records):
    return [record["_id"] for record in records]


class TestQueryMatcher:
    def test_empty_query_matches_everything(self):
        assert ids(QueryMatcher({}).filter(RECORDS)) == ["a", "b", "c", "d"]
        assert ids(QueryMatcher(None).filter(RECORDS)) == ["a", "b", "c", "d"]

    def test_equality(self):
        assert ids(QueryMatcher({"name": "Gozer"}).filter(RECORDS)) == ["c"]

    def test_nested_objects_and_dotted_paths(self):
        assert ids(QueryMatcher({"location.city": "NYC"}).filter(RECORDS)) == ["a", "b"]
        assert ids(QueryMatcher({"location": {"city": "Sumeria"}}).filter(RECORDS)) == ["c"]

    def test_array_containment(self):
        assert ids(QueryMatcher({"tags": "green"}).filter(RECORDS)) == ["a"]
        assert ids(QueryMatcher({"tags": ["giant"]}).filter(RECORDS)) == ["b"]

    def test_comparisons(self):
        assert ids(QueryMatcher({"age": {"$gte": 3, "$lt": 100}}).filter(RECORDS)) == ["a", "b"]
        assert ids(QueryMatcher({"age": {"$gt": 100}}).filter(RECORDS)) == ["c"]
        # null never compares
        assert "d" not in ids(QueryMatcher({"age": {"$lt": 1000000}}).filter(RECORDS))

    def test_incomparable_types_do_not_match(self):
        assert QueryMatcher({"name": {"$gt": 3}}).filter(RECORDS) == []

    def test_ne_and_in(self):
        assert ids(QueryMatcher({"type": {"$ne": "deity"}}).filter(RECORDS)) == ["a", "b", "d"]
        assert ids(QueryMatcher({"type": {"$in": ["class 5", "deity"]}}).filter(RECORDS)) == ["a", "c"]
        assert ids(QueryMatcher({"type": {"$nin": ["class 5", "deity"]}}).filter(RECORDS)) == ["b", "d"]

    def test_in_requires_a_list(self):
        with pytest.raises(QueryTranslationError):
            QueryMatcher({"type": {"$in": "class 5"}})

    def test_exists(self):
        assert ids(QueryMatcher({"portrait": {"$exists": True}}).filter(RECORDS)) == ["d"]
        assert ids(QueryMatcher({"tags": {"$exists": False}}).filter(RECORDS)) == ["c", "d"]

    def test_missing_fields_equal_null(self):
        assert ids(QueryMatcher({"type": None}).filter(RECORDS)) == ["d"]

    def test_regex(self):
        assert ids(QueryMatcher({"name": {"$regex": "^s"}}).filter(RECORDS)) == []
        assert ids(QueryMatcher({"name": {"$regex": "^s", "$options": "i"}}).filter(RECORDS)) == ["a", "b"]

    def test_not(self):
        assert ids(QueryMatcher({"age": {"$not": {"$gt": 5}}}).filter(RECORDS)) == ["a", "d"]

    def test_logical_operators(self):
        query = {"$or": [{"name": "Vigo"}, {"age": {"$gt": 1000}}]}
        assert ids(QueryMatcher(query).filter(RECORDS)) == ["c", "d"]
        query = {"$and": [{"location.city": "NYC"}, {"age": {"$gt": 5}}]}
        assert ids(QueryMatcher(query).filter(RECORDS)) == ["b"]
        query = {"$nor": [{"location.city": "NYC"}, {"name": "Vigo"}]}
        assert ids(QueryMatcher(query).filter(RECORDS)) == ["c"]

    def test_booleans_are_not_numbers(self):
        assert QueryMatcher({"portrait": 1}).filter(RECORDS) == []

    def test_string_ids_match_object_ids(self):
        oid = ObjectId()
        assert QueryMatcher({"_id": str(oid)}).matches({"_id": oid})
        assert not QueryMatcher({"_id": str(ObjectId())}).matches({"_id": oid})

    def test_dates(self):
        record = {"busted": datetime(1984, 6, 8)}
        assert QueryMatcher({"busted": {"$gte": datetime(1984, 1, 1)}}).matches(record)
        assert not QueryMatcher({"busted": {"$gte": datetime(1985, 1, 1)}}).matches(record)

    def test_naive_dates_compare_as_utc(self):
        record = {"busted": datetime(1984, 6, 8, tzinfo=timezone.utc)}
        assert QueryMatcher({"busted": {"$gte": datetime(1984, 6, 8)}}).matches(record)
        assert QueryMatcher({"busted": datetime(1984, 6, 8)}).matches(record)
        assert not QueryMatcher({"busted": {"$lt": datetime(1984, 6, 8)}}).matches(record)

    def test_unknown_operators(self):
        with pytest.raises(QueryTranslationError):
            QueryMatcher({"age": {"$mod": [2, 0]}})
        with pytest.raises(QueryTranslationError):
            QueryMatcher({"$where": "this.age > 3"})
        with pytest.raises(QueryTranslationError):
            QueryMatcher({"$or": []})


class TestFindOptions:
    def test_sort_and_window(self):
        records = apply_find_options(RECORDS, [("age", -1)], skip=1, limit=2)
        assert ids(records) == ["b", "a"]

    def test_null_sorts_first(self):
        assert ids(apply_find_options(RECORDS, [("age", 1)])) == ["d", "a", "b", "c"]

    def test_multi_key_sort_is_stable(self):
        records = [{"_id": 1, "a": 1, "b": 2}, {"_id": 2, "a": 0, "b": 2}, {"_id": 3, "a": 1, "b": 1}]
        assert ids(apply_find_options(records, [("b", 1), ("a", -1)])) == [3, 1, 2]

    def test_naive_and_aware_dates_sort_together(self):
        records = [
            {"_id": "ray", "hired": datetime(1984, 6, 9, tzinfo=timezone.utc)},
            {"_id": "egon", "hired": datetime(1984, 6, 8)},
            {"_id": "peter", "hired": datetime(1984, 6, 10)},
        ]
        assert ids(apply_find_options(records, [("hired", 1)])) == ["egon", "ray", "peter"]

    def test_sort_strings(self):
        options = FindOptions(sort="-age, name")
        assert options.get_sort_keys() == [("age", -1), ("name", 1)]

    def test_options_from_dicts(self):
        options = as_find_options({"limit": 5})
        assert options.limit == 5 and options.skip is None

    def test_negative_windows_are_rejected(self):
        with pytest.raises(ValueError):
            FindOptions(skip=-1)


class TestEqualityFields:
    def test_literals_and_eq(self):
        query = {"name": "Slimer", "age": {"$eq": 3}, "type": {"$in": ["a"]}, "location.city": "NYC", "_id": "x", "$or": []}
        assert equality_fields(query) == {"name": "Slimer", "age": 3}
