"""
In-process evaluation of the query vocabulary.

The vocabulary follows the networked store's dialect:

    {"name": "Slimer"}                          equality (array fields match if they contain the value)
    {"location.city": "NYC"}                    dotted paths into embedded objects and arrays of objects
    {"age": {"$gte": 3, "$lt": 10}}             $eq $ne $gt $gte $lt $lte $in $nin $exists $regex $not
    {"$or": [{...}, {...}]}                     $and $or $nor
"""

import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from docmapper.errors import QueryTranslationError
from docmapper.helper.traversal_helper import is_operator_object

_MISSING = object()

FIELD_OPERATORS = frozenset({"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$regex", "$options", "$not"})
LOGICAL_OPERATORS = frozenset({"$and", "$or", "$nor"})


class QueryMatcher:
    """
    Compiles a query once and tests records against it.

    Raises:
        QueryTranslationError: On construction, if the query uses an unknown operator.
    """

    def __init__(self, query: Mapping[str, Any] | None):
        self.query = dict(query or {})
        self._test = self._compile(self.query)

    def matches(self, record: Mapping[str, Any]) -> bool:
        return self._test(record)

    def __call__(self, record: Mapping[str, Any]) -> bool:
        return self._test(record)

    def filter(self, records: list[dict]) -> list[dict]:
        return [record for record in records if self._test(record)]

    ##########################################
    ############## COMPILATION ###############
    ##########################################

    def _compile(self, query: Mapping[str, Any]) -> Callable[[Mapping], bool]:
        if not isinstance(query, Mapping):
            raise QueryTranslationError(f"A query must be a mapping, got {type(query).__name__}.")
        tests: list[Callable[[Mapping], bool]] = []
        for key, condition in query.items():
            if key in LOGICAL_OPERATORS:
                tests.append(self._compile_logical(key, condition))
            elif str(key).startswith("$"):
                raise QueryTranslationError(f"Unsupported top-level query operator '{key}'.")
            else:
                tests.append(self._compile_field(str(key), condition))
        return lambda record: all(test(record) for test in tests)

    def _compile_logical(self, operator: str, clauses: Any) -> Callable[[Mapping], bool]:
        if not isinstance(clauses, list) or not clauses:
            raise QueryTranslationError(f"'{operator}' expects a non-empty list of queries.")
        compiled = [self._compile(clause) for clause in clauses]
        if operator == "$and":
            return lambda record: all(test(record) for test in compiled)
        if operator == "$or":
            return lambda record: any(test(record) for test in compiled)
        return lambda record: not any(test(record) for test in compiled)

    def _compile_field(self, path: str, condition: Any) -> Callable[[Mapping], bool]:
        if not is_operator_object(condition):
            return lambda record: _any_candidate(_resolve(record, path), lambda v: _equals(v, condition))

        unknown = set(condition) - FIELD_OPERATORS
        if unknown:
            raise QueryTranslationError(f"Unsupported query operator(s) {sorted(unknown)} on field '{path}'.")

        predicates = [
            self._compile_operator(path, operator, operand, condition)
            for operator, operand in condition.items()
            if operator != "$options"
        ]
        return lambda record: all(predicate(record) for predicate in predicates)

    def _compile_operator(self, path: str, operator: str, operand: Any, condition: Mapping) -> Callable[[Mapping], bool]:
        if operator == "$eq":
            return lambda record: _any_candidate(_resolve(record, path), lambda v: _equals(v, operand))
        if operator == "$ne":
            return lambda record: not _any_candidate(_resolve(record, path), lambda v: _equals(v, operand))
        if operator in ("$gt", "$gte", "$lt", "$lte"):
            compare = _COMPARATORS[operator]
            return lambda record: _any_candidate(_resolve(record, path), lambda v: _compare(v, operand, compare))
        if operator in ("$in", "$nin"):
            if not isinstance(operand, (list, tuple, set)):
                raise QueryTranslationError(f"'{operator}' on field '{path}' expects a list.")
            values = list(operand)
            in_test = lambda record: _any_candidate(  # noqa: E731
                _resolve(record, path), lambda v: any(_equals(v, option) for option in values)
            )
            return in_test if operator == "$in" else (lambda record: not in_test(record))
        if operator == "$exists":
            return lambda record: (_resolve(record, path) is not _MISSING) == bool(operand)
        if operator == "$regex":
            flags = re.IGNORECASE if "i" in str(condition.get("$options", "")) else 0
            pattern = operand if isinstance(operand, re.Pattern) else re.compile(str(operand), flags)
            return lambda record: _any_candidate(
                _resolve(record, path), lambda v: isinstance(v, str) and pattern.search(v) is not None
            )
        # $not
        inner = self._compile_field(path, operand)
        return lambda record: not inner(record)


##########################################
################ HELPERS #################
##########################################


def _resolve(record: Any, path: str) -> Any:
    """Resolves a dotted path. Traversing an array of objects yields the list of per-element values."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part, _MISSING)
        elif isinstance(current, list):
            if part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else _MISSING
            else:
                collected = [item.get(part, _MISSING) for item in current if isinstance(item, Mapping)]
                collected = [item for item in collected if item is not _MISSING]
                current = collected if collected else _MISSING
        else:
            return _MISSING
        if current is _MISSING:
            return _MISSING
    return current


def _any_candidate(value: Any, predicate: Callable[[Any], bool]) -> bool:
    """Array values match when the array itself or any of its elements matches."""
    if value is _MISSING:
        value = None
    if predicate(value):
        return True
    if isinstance(value, list):
        return any(predicate(item) for item in value)
    return False


def _normalize(value: Any) -> Any:
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, datetime) and value.tzinfo is None:
        # naive datetimes are UTC
        return value.replace(tzinfo=timezone.utc)
    if isinstance(value, tuple):
        return list(value)
    return value


def _equals(left: Any, right: Any) -> bool:
    left, right = _normalize(left), _normalize(right)
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if type(left) is not type(right) and not (isinstance(left, (int, float)) and isinstance(right, (int, float))):
        # ids may be stored natively while queried as strings
        if isinstance(left, str) or isinstance(right, str):
            return str(left) == str(right) and not isinstance(left, (int, float, bool)) and not isinstance(right, (int, float, bool))
        return False
    return left == right


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$gt": lambda a, b: a > b,
    "$gte": lambda a, b: a >= b,
    "$lt": lambda a, b: a < b,
    "$lte": lambda a, b: a <= b,
}


def _compare(left: Any, right: Any, compare: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None or isinstance(left, bool) != isinstance(right, bool):
        return False
    left, right = _normalize(left), _normalize(right)
    try:
        return compare(left, right)
    except TypeError:
        # incomparable types (e.g. str vs int) never match
        return False


##########################################
########## SORT / SKIP / LIMIT ###########
##########################################


def _sort_rank(value: Any) -> tuple:
    """Cross-type ordering: missing/null < numbers < strings < objects < arrays < binary < other ids < booleans < dates."""
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (7, value)
    if isinstance(value, (int, float)):
        return (1, value)
    if isinstance(value, str):
        return (2, value)
    if isinstance(value, Mapping):
        return (3, str(sorted(value.items(), key=lambda kv: kv[0])))
    if isinstance(value, list):
        return (4, [_sort_rank(v) for v in value])
    if isinstance(value, (bytes, bytearray)):
        return (5, bytes(value))
    if isinstance(value, datetime):
        return (8, _normalize(value).timestamp())
    return (6, str(value))


def apply_find_options(records: list[dict], sort: list[tuple[str, int]] | None = None, skip: int | None = None, limit: int | None = None) -> list[dict]:
    """
    Applies sort keys, then skip, then limit, the way a native cursor would.

    Args:
        records (list[dict]): Matched records.
        sort (list[tuple[str, int]] | None): (path, 1 | -1) pairs, most significant first.
        skip (int | None): Number of leading records to drop.
        limit (int | None): Maximum number of records to keep; 0 or None means no limit.
    """
    ordered = list(records)
    for path, direction in reversed(sort or []):
        ordered.sort(key=lambda record: _sort_rank(_resolve(record, path)), reverse=direction < 0)
    if skip:
        ordered = ordered[skip:]
    if limit:
        ordered = ordered[:limit]
    return ordered


def equality_fields(query: Mapping[str, Any] | None) -> dict[str, Any]:
    """Top-level literal equality constraints of a query, used to seed upserted records."""
    fields: dict[str, Any] = {}
    for key, condition in (query or {}).items():
        if str(key).startswith("$") or key == "_id":
            continue
        if is_operator_object(condition):
            if "$eq" in condition:
                fields[key] = condition["$eq"]
            continue
        if "." not in str(key):
            fields[key] = condition
    return fields
