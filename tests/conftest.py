import json
import re
import secrets
import string
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest
import pytest_asyncio

from docmapper.clients.storage.firestore.StorageClientFirestore import StorageClientFirestore
from docmapper.clients.storage.firestore.firestore_value_codec import decode_fields, decode_value
from docmapper.clients.storage.firestore.models import FirestoreConnectionOptions
from docmapper.clients.storage.tinydb.StorageClientTinydb import StorageClientTinydb
from docmapper.helper.HelperConfig import HelperConfig
from docmapper.logging.logging_setup import get_logger

PROJECT = "ghostbusters"
ROOT = f"projects/{PROJECT}/databases/(default)/documents"
_PATH = re.compile(r"^/v1/projects/[^/]+/databases/[^/]+/documents(?P<rest>.*)$")


def _unquote_path(path: str) -> list[str]:
    return [segment.strip("`") for segment in re.findall(r"`[^`]*`|[^.]+", path)]


def _compare(left: Any, right: Any) -> int | None:
    if isinstance(left, bool) != isinstance(right, bool):
        return None
    try:
        return (left > right) - (left < right)
    except TypeError:
        return None


class FakeFirestore:
    """
    In-memory stand-in for the Firestore REST API, mounted with httpx.MockTransport.

    Supports document get/create/patch/delete, listing, listCollectionIds, runQuery
    (field/unary/composite AND filters, orderBy, offset, limit) and count aggregations.
    Every request is recorded in ``requests``; every structured query in ``run_queries``.
    """

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.requests: list[tuple[str, str]] = []
        self.run_queries: list[dict] = []
        self.fail_with: int | None = None

    ##########################################
    ################ HELPERS #################
    ##########################################

    def _document(self, collection: str, id: str) -> dict:
        return {
            "name": f"{ROOT}/{collection}/{id}",
            "fields": self.collections[collection][id],
            "createTime": "2024-01-01T00:00:00.000000Z",
            "updateTime": "2024-01-01T00:00:00.000000Z",
        }

    def insert(self, collection: str, id: str, fields: dict) -> None:
        """Seeds an already encoded document."""
        self.collections.setdefault(collection, {})[id] = fields

    def stored(self, collection: str) -> dict[str, dict]:
        """Decoded contents of a collection by id."""
        return {id: decode_fields(fields) for id, fields in self.collections.get(collection, {}).items()}

    def _field_value(self, collection: str, id: str, path: str) -> tuple[bool, Any]:
        if path == "__name__":
            return True, id
        current: Any = decode_fields(self.collections[collection][id])
        for segment in _unquote_path(path):
            if not isinstance(current, dict) or segment not in current:
                return False, None
            current = current[segment]
        return True, current

    def _matches(self, collection: str, id: str, where: dict | None) -> bool:
        if not where:
            return True
        if "compositeFilter" in where:
            return all(self._matches(collection, id, f) for f in where["compositeFilter"]["filters"])
        if "unaryFilter" in where:
            found, value = self._field_value(collection, id, where["unaryFilter"]["field"]["fieldPath"])
            is_null = found and value is None
            return is_null if where["unaryFilter"]["op"] == "IS_NULL" else (found and value is not None)

        field_filter = where["fieldFilter"]
        found, value = self._field_value(collection, id, field_filter["field"]["fieldPath"])
        if not found:
            return False
        target = decode_value(field_filter["value"])
        op = field_filter["op"]
        if op == "EQUAL":
            return value == target and isinstance(value, bool) == isinstance(target, bool)
        if op == "NOT_EQUAL":
            return value != target
        if op == "ARRAY_CONTAINS":
            return isinstance(value, list) and target in value
        if op == "IN":
            return value in target
        outcome = _compare(value, target)
        if outcome is None:
            return False
        return {
            "LESS_THAN": outcome < 0,
            "LESS_THAN_OR_EQUAL": outcome <= 0,
            "GREATER_THAN": outcome > 0,
            "GREATER_THAN_OR_EQUAL": outcome >= 0,
        }[op]

    def _query(self, structured: dict) -> list[str]:
        collection = structured["from"][0]["collectionId"]
        ids = [id for id in self.collections.get(collection, {}) if self._matches(collection, id, structured.get("where"))]
        for order in reversed(structured.get("orderBy", [])):
            path = order["field"]["fieldPath"]
            keyed = [(self._field_value(collection, id, path), id) for id in ids]
            keyed = [(value, id) for (found, value), id in keyed if found]
            keyed.sort(key=lambda item: item[0], reverse=order.get("direction") == "DESCENDING")
            ids = [id for _, id in keyed]
        ids = ids[structured.get("offset", 0):]
        if structured.get("limit"):
            ids = ids[: structured["limit"]]
        return ids

    ##########################################
    ################ HANDLER #################
    ##########################################

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"code": self.fail_with}})

        match = _PATH.match(request.url.path)
        if match is None:
            return httpx.Response(404, json={"error": {"code": 404}})
        rest = match.group("rest")
        body = json.loads(request.content) if request.content else {}
        read_time = {"readTime": "2024-01-01T00:00:00.000000Z"}

        if rest == ":runQuery":
            structured = body["structuredQuery"]
            self.run_queries.append(structured)
            collection = structured["from"][0]["collectionId"]
            ids = self._query(structured)
            if not ids:
                return httpx.Response(200, json=[read_time])
            return httpx.Response(200, json=[{"document": self._document(collection, id), **read_time} for id in ids])

        if rest == ":runAggregationQuery":
            structured = body["structuredAggregationQuery"]["structuredQuery"]
            total = len(self._query(structured))
            return httpx.Response(200, json=[{"result": {"aggregateFields": {"total": {"integerValue": str(total)}}}, **read_time}])

        if rest == ":listCollectionIds":
            return httpx.Response(200, json={"collectionIds": sorted(name for name, docs in self.collections.items() if docs)})

        segments = rest.strip("/").split("/")
        collection = segments[0]
        docs = self.collections.setdefault(collection, {})

        if len(segments) == 1:
            if request.method == "POST":
                id = "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(20))
                docs[id] = body.get("fields", {})
                return httpx.Response(200, json=self._document(collection, id))
            # list documents, one page per pageSize, token is the next offset
            page_size = int(request.url.params.get("pageSize", 300))
            start = int(request.url.params.get("pageToken", 0))
            ids = list(docs)[start : start + page_size]
            payload: dict[str, Any] = {"documents": [self._document(collection, id) for id in ids]}
            if start + page_size < len(docs):
                payload["nextPageToken"] = str(start + page_size)
            return httpx.Response(200, json=payload)

        id = segments[1]
        if request.method == "GET":
            if id not in docs:
                return httpx.Response(404, json={"error": {"code": 404}})
            return httpx.Response(200, json=self._document(collection, id))
        if request.method == "PATCH":
            mask = [p.strip("`") for p in request.url.params.get_list("updateMask.fieldPaths")]
            fields = body.get("fields", {})
            if mask:
                current = dict(docs.get(id, {}))
                for path in mask:
                    if path in fields:
                        current[path] = fields[path]
                    else:
                        current.pop(path, None)
                docs[id] = current
            else:
                docs[id] = fields
            return httpx.Response(200, json=self._document(collection, id))
        if request.method == "DELETE":
            if id not in docs:
                if request.url.params.get("currentDocument.exists") == "true":
                    return httpx.Response(404, json={"error": {"code": 404}})
                return httpx.Response(200, json={})
            del docs[id]
            return httpx.Response(200, json={})
        return httpx.Response(405)


##########################################
################ FIXTURES ################
##########################################


@pytest.fixture
def helper_config() -> HelperConfig:
    return HelperConfig(logger=get_logger())


@pytest_asyncio.fixture
async def tinydb_client(helper_config):
    client = await StorageClientTinydb.connect("tinydb://memory", helper_config=helper_config)
    yield client
    await client.close()


@pytest.fixture
def fake_firestore() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def firestore_options(fake_firestore) -> FirestoreConnectionOptions:
    return FirestoreConnectionOptions(
        project_id=PROJECT,
        base_url="http://firestore.test/v1",
        transport=httpx.MockTransport(fake_firestore.handle),
    )


@pytest_asyncio.fixture
async def firestore_client(firestore_options, helper_config):
    client = await StorageClientFirestore.connect(firestore_options, helper_config=helper_config)
    yield client
    await client.close()


@pytest_asyncio.fixture(params=["tinydb", "firestore"])
async def storage(request, helper_config, firestore_options):
    """A connected client of every backend that runs without an external server."""
    if request.param == "tinydb":
        client = await StorageClientTinydb.connect("tinydb://memory", helper_config=helper_config)
    else:
        client = await StorageClientFirestore.connect(firestore_options, helper_config=helper_config)
    yield client
    await client.close()


@pytest.fixture
def utc():
    """Builds timezone-aware datetimes, the form Firestore hands back."""
    return lambda *args: datetime(*args, tzinfo=timezone.utc)
