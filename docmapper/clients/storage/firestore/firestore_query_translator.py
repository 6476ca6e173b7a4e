"""
Decomposition of structured queries into what Firestore can execute.

Firestore filters are ANDs of per-field predicates with no generic ``$in``, so:

    {"_id": "abc"} / {"_id": {"$in": [...]}}    ->  point look-ups by id
    {"location": {"city": "NYC"}}               ->  location.city == "NYC"
    {"age": {"$gte": 3}}                        ->  age >= 3
    {"type": {"$in": [1, 2, 3]}}                ->  three queries: type == 1 | type == 2 | type == 3
    {"a": {"$in": [1, 2]}, "b": {"$in": [3]}}   ->  cartesian product: (a == 1, b == 3) | (a == 2, b == 3)

Operators without a native counterpart ($nin, $exists, $regex, $not and the logical operators)
are left to an in-process post filter.
"""

import itertools
from collections.abc import Mapping
from typing import Any

from docmapper.clients.storage.firestore.models import ConvertedQuery, WhereClause
from docmapper.errors import QueryTranslationError
from docmapper.helper.traversal_helper import flatten_query, is_operator_object
from docmapper.query.QueryMatcher import LOGICAL_OPERATORS

NATIVE_OPERATORS = {
    "$eq": "==",
    "$ne": "!=",
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
}
POST_FILTER_OPERATORS = frozenset({"$nin", "$exists", "$regex", "$options", "$not"})


def _convert_triples(query: list) -> ConvertedQuery:
    """``[field, op, value]`` or a list of such triples, passed through as native clauses."""
    triples = query if query and isinstance(query[0], (list, tuple)) else [query] if query else []
    clauses = []
    for triple in triples:
        if not isinstance(triple, (list, tuple)) or len(triple) != 3:
            raise QueryTranslationError(f"A where clause must be a [field, op, value] triple, got {triple!r}.")
        field, op, value = triple
        clauses.append(WhereClause(field=field, op=op, value=value))
    return ConvertedQuery(ids=None, queries=[clauses], post_filter=None)


def _id_candidates(condition: Any) -> list | None:
    """Ids targeted by an ``_id`` condition, or None when it cannot be served by look-ups."""
    if not is_operator_object(condition):
        return [condition]
    if not set(condition) <= {"$eq", "$in"}:
        return None
    candidates = None
    if "$in" in condition:
        if not isinstance(condition["$in"], (list, tuple, set)):
            raise QueryTranslationError("'$in' on field '_id' expects a list.")
        candidates = list(condition["$in"])
    if "$eq" in condition:
        candidates = [condition["$eq"]] if candidates is None else [c for c in candidates if c == condition["$eq"]]
    return candidates


def convert_query(query: Mapping[str, Any] | list | None) -> ConvertedQuery:
    """
    Decomposes a structured query.

    When ids are targeted, every other clause is checked in-process on the looked-up records,
    since point look-ups cannot carry filters.

    Raises:
        QueryTranslationError: On unknown operators or malformed clauses.
    """
    if isinstance(query, list):
        return _convert_triples(query)
    if not query:
        return ConvertedQuery(ids=None, queries=[[]], post_filter=None)

    ids: list | None = None
    base: list[WhereClause] = []
    expansions: list[list[WhereClause]] = []
    post_filter: dict[str, Any] = {}

    flat = flatten_query(query)
    for path, condition in flat.items():
        if path in LOGICAL_OPERATORS:
            post_filter[path] = condition
            continue
        if path.startswith("$"):
            raise QueryTranslationError(f"Unsupported top-level query operator '{path}'.")

        if path == "_id":
            ids = _id_candidates(condition)
            if ids is None:
                post_filter[path] = condition
            continue

        if not is_operator_object(condition):
            base.append(WhereClause(field=path, op="==", value=condition))
            continue

        for operator, operand in condition.items():
            if operator in NATIVE_OPERATORS:
                base.append(WhereClause(field=path, op=NATIVE_OPERATORS[operator], value=operand))
            elif operator == "$in":
                if not isinstance(operand, (list, tuple, set)):
                    raise QueryTranslationError(f"'$in' on field '{path}' expects a list.")
                expansions.append([WhereClause(field=path, op="==", value=value) for value in operand])
            elif operator in POST_FILTER_OPERATORS:
                post_filter.setdefault(path, {})[operator] = operand
            else:
                raise QueryTranslationError(f"Unsupported query operator '{operator}' on field '{path}'.")

    if ids is not None:
        return ConvertedQuery(ids=ids, queries=[], post_filter=flat)

    queries = [base + list(combination) for combination in itertools.product(*expansions)]
    return ConvertedQuery(ids=None, queries=queries, post_filter=post_filter or None)
