import re
from typing import Any

from docmapper.clients.storage.firestore.firestore_value_codec import encode_value
from docmapper.clients.storage.firestore.models import WhereClause
from docmapper.errors import QueryTranslationError

FIELD_OPERATORS = {
    "==": "EQUAL",
    "!=": "NOT_EQUAL",
    "<": "LESS_THAN",
    "<=": "LESS_THAN_OR_EQUAL",
    ">": "GREATER_THAN",
    ">=": "GREATER_THAN_OR_EQUAL",
    "array-contains": "ARRAY_CONTAINS",
    "in": "IN",
    "not-in": "NOT_IN",
    "array-contains-any": "ARRAY_CONTAINS_ANY",
}

_SIMPLE_SEGMENT = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")


def quote_field_path(path: str) -> str:
    """Quotes every segment of a dotted path that is not a plain identifier, e.g. ``a.b-c`` -> ``a.`b-c```."""
    if path == "_id":
        return "__name__"
    segments = []
    for segment in path.split("."):
        if _SIMPLE_SEGMENT.match(segment):
            segments.append(segment)
        else:
            segments.append("`" + segment.replace("\\", "\\\\").replace("`", "\\`") + "`")
    return ".".join(segments)


class FirestoreQueryBuilder:
    """
    Immutable builder of a REST ``StructuredQuery``.

    Every call returns a new builder, so chaining ``where`` expresses a logical AND::

        FirestoreQueryBuilder("ghosts").where("type", "==", "class 5").where("age", ">", 3).limit(10)
    """

    def __init__(
        self,
        collection: str,
        clauses: tuple[WhereClause, ...] = (),
        orders: tuple[tuple[str, int], ...] = (),
        offset: int | None = None,
        limit: int | None = None,
    ):
        self.collection = collection
        self.clauses = clauses
        self.orders = orders
        self._offset = offset
        self._limit = limit

    def _copy(self, **changes: Any) -> "FirestoreQueryBuilder":
        state = {
            "collection": self.collection,
            "clauses": self.clauses,
            "orders": self.orders,
            "offset": self._offset,
            "limit": self._limit,
        }
        state.update(changes)
        return FirestoreQueryBuilder(**state)

    def where(self, field: str, op: str, value: Any) -> "FirestoreQueryBuilder":
        """
        Raises:
            QueryTranslationError: If ``op`` is not a Firestore filter operator.
        """
        if op not in FIELD_OPERATORS:
            raise QueryTranslationError(f"Unsupported Firestore filter operator '{op}' on field '{field}'.")
        return self._copy(clauses=self.clauses + (WhereClause(field=field, op=op, value=value),))

    def where_all(self, clauses: list[WhereClause]) -> "FirestoreQueryBuilder":
        builder = self
        for clause in clauses:
            builder = builder.where(clause.field, clause.op, clause.value)
        return builder

    def order_by(self, field: str, direction: int = 1) -> "FirestoreQueryBuilder":
        return self._copy(orders=self.orders + ((field, direction),))

    def offset(self, offset: int | None) -> "FirestoreQueryBuilder":
        return self._copy(offset=offset)

    def limit(self, limit: int | None) -> "FirestoreQueryBuilder":
        return self._copy(limit=limit)

    ##########################################
    ############### ENCODING #################
    ##########################################

    @staticmethod
    def _encode_clause(clause: WhereClause) -> dict:
        field = {"fieldPath": quote_field_path(clause.field)}
        if clause.value is None and clause.op in ("==", "!="):
            return {"unaryFilter": {"op": "IS_NULL" if clause.op == "==" else "IS_NOT_NULL", "field": field}}
        return {
            "fieldFilter": {
                "field": field,
                "op": FIELD_OPERATORS[clause.op],
                "value": encode_value(clause.value),
            }
        }

    def to_structured_query(self) -> dict:
        query: dict[str, Any] = {"from": [{"collectionId": self.collection}]}

        filters = [self._encode_clause(clause) for clause in self.clauses]
        if len(filters) == 1:
            query["where"] = filters[0]
        elif filters:
            query["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}

        if self.orders:
            query["orderBy"] = [
                {"field": {"fieldPath": quote_field_path(path)}, "direction": "ASCENDING" if direction > 0 else "DESCENDING"}
                for path, direction in self.orders
            ]
        if self._offset:
            query["offset"] = self._offset
        if self._limit:
            query["limit"] = self._limit
        return query
