import asyncio
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import httpx
from httpx._types import QueryParamTypes
from pydantic import ValidationError as PydanticValidationError

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.firestore.FirestoreQueryBuilder import FirestoreQueryBuilder, quote_field_path
from docmapper.clients.storage.firestore.firestore_query_translator import convert_query
from docmapper.clients.storage.firestore.firestore_value_codec import decode_document, document_id, encode_fields
from docmapper.clients.storage.firestore.models import FirestoreConnectionOptions, WhereClause
from docmapper.clients.storage.models.QueryOptions import (
    FindOptions,
    IndexOptions,
    UpdateOptions,
    as_find_options,
    as_index_options,
    as_update_options,
)
from docmapper.errors import StorageConnectionError, StorageOperationError
from docmapper.helper.HelperConfig import HelperConfig
from docmapper.helper.traversal_helper import is_operator_object
from docmapper.models.config import EnvConfig
from docmapper.query.QueryMatcher import QueryMatcher, apply_find_options, equality_fields

DEFAULT_BASE_URL = "https://firestore.googleapis.com/v1"
_NATIVE_ID = re.compile(r"^[a-zA-Z0-9]{20}$")


class StorageClientFirestore(StorageClientInterface):
    """
    Cloud document database client speaking the Firestore REST API.

    Connected with an options object instead of a url::

        await connect({"project_id": "ghostbusters", "emulator_host": "localhost:8080"})

    Queries are translated by ``convert_query``; ``$in`` on a field fans out into one native query
    per value, run concurrently, and the results are unioned without duplicates.
    """

    def __init__(self, helper_config: HelperConfig, url: Any = None, options: dict | None = None):
        super().__init__(helper_config, url=url, options=options)
        try:
            if isinstance(url, FirestoreConnectionOptions):
                self.connection = url
            else:
                self.connection = FirestoreConnectionOptions.model_validate({**dict(url or {}), **self.options})
        except (PydanticValidationError, TypeError, ValueError) as e:
            raise StorageConnectionError(f"Invalid Firestore connection options: {e}") from e

        self.database = self.connection.database or self.get_config_val("DATABASE", default="(default)")
        self.page_size = int(self.get_config_val("PAGE_SIZE", default=300, val_type="number"))
        self._access_token = self.connection.access_token or self.get_config_val("ACCESS_TOKEN", default="")
        self._base_url = self._resolve_base_url()
        self._client: httpx.AsyncClient | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Firestore"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="BASE_URL", val_type="string", default=""),
            EnvConfig(env_key="DATABASE", val_type="string", default="(default)"),
            EnvConfig(env_key="ACCESS_TOKEN", val_type="string", default=""),
            EnvConfig(env_key="PAGE_SIZE", val_type="number", default=300),
        ]

    @classmethod
    def can_handle(cls, url: Any) -> bool:
        if isinstance(url, FirestoreConnectionOptions):
            return True
        return isinstance(url, Mapping) and ("project_id" in url or "projectId" in url)

    def describe_target(self) -> str:
        return f"project '{self.connection.project_id}' database '{self.database}' at {self._base_url}"

    @property
    def driver(self) -> httpx.AsyncClient | None:
        return self._client

    ################ AUTH ##################
    def _get_auth_header(self) -> dict:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    ################ ENDPOINTS ##################
    def _resolve_base_url(self) -> str:
        emulator_host = self.connection.emulator_host or self._helper_config.get_string_val("FIRESTORE_EMULATOR_HOST", default="")
        if emulator_host:
            return f"http://{emulator_host}/v1"
        return self.connection.base_url or self.get_config_val("BASE_URL", default="") or DEFAULT_BASE_URL

    def _get_base_url(self) -> str:
        return f"{self._base_url.rstrip('/')}/projects/{self.connection.project_id}/databases/{self.database}"

    def _get_endpoint_document(self, collection: str, id: Any = None) -> str:
        endpoint = f"documents/{quote(collection, safe='')}"
        if id is not None:
            endpoint += f"/{quote(self.to_canonical_id(id), safe='')}"
        return endpoint

    def _get_endpoint_run_query(self) -> str:
        return "documents:runQuery"

    def _get_endpoint_run_aggregation_query(self) -> str:
        return "documents:runAggregationQuery"

    def _get_endpoint_list_collections(self) -> str:
        return "documents:listCollectionIds"

    ##########################################
    ################## IDS ###################
    ##########################################

    def is_native_id(self, value: Any) -> bool:
        return isinstance(value, str) and _NATIVE_ID.match(value) is not None

    def native_id_type(self) -> type:
        return str

    ##########################################
    ############## LIFECYCLE #################
    ##########################################

    async def boot(self) -> None:
        """Initialise the HTTP client."""
        self._client = httpx.AsyncClient(
            timeout=self.connection.timeout or self.timeout,
            transport=self.connection.transport,
        )

    async def do_healthcheck(self) -> None:
        try:
            await self.do_request(method="POST", endpoint=self._get_endpoint_list_collections(), json={"pageSize": 1}, raise_on_error=True)
        except (httpx.HTTPError, StorageOperationError) as e:
            raise StorageConnectionError(f"Firestore {self.describe_target()} is unreachable: {e}") from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    ##########################################
    ############ CORE REQUESTS ###############
    ##########################################

    async def do_request(
        self,
        method: str = "GET",
        json: dict | None = None,
        params: QueryParamTypes | None = None,
        endpoint: str = "",
        raise_on_error: bool = False,
    ) -> httpx.Response:
        """Send an HTTP request to the Firestore REST API.

        Args:
            method: HTTP method (GET, POST, PATCH, DELETE).
            json: JSON-serialisable body.
            params: URL query parameters.
            endpoint: Path below ``projects/{project}/databases/{database}``.
            raise_on_error: Raise on a non-2xx status instead of returning the response.

        Returns:
            The raw httpx.Response.

        Raises:
            StorageConnectionError: If the client is not initialised.
            StorageOperationError: If the request returns a non-2xx status (when raise_on_error is True).
        """
        if self._client is None:
            raise StorageConnectionError("HTTP client not initialised. Call boot() before making requests.")

        url = f"{self._get_base_url()}/{endpoint.strip().lstrip('/')}"
        kwargs: dict = {"headers": self._get_auth_header(), "params": params}
        if json is not None:
            kwargs["json"] = json

        response = await self._client.request(method, url, **kwargs)

        if raise_on_error and response.status_code >= 300:
            self.logging.error("Request to %s failed with status %d: %s", url, response.status_code, response.text)
            raise StorageOperationError(f"Request to {url} failed with status {response.status_code}")
        return response

    async def _get_document(self, collection: str, id: Any) -> dict | None:
        resp = await self.do_request(method="GET", endpoint=self._get_endpoint_document(collection, id))
        if resp.status_code == 404:
            return None
        if resp.status_code >= 300:
            self.logging.error("Fetching %s/%s failed with status %d: %s", collection, id, resp.status_code, resp.text)
            raise StorageOperationError(f"Fetching document '{collection}/{id}' failed with status {resp.status_code}")
        return decode_document(resp.json())

    async def _run_query(self, builder: FirestoreQueryBuilder) -> list[dict]:
        resp = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_run_query(),
            json={"structuredQuery": builder.to_structured_query()},
            raise_on_error=True,
        )
        # one entry per result; entries without "document" only carry read times
        return [decode_document(entry["document"]) for entry in resp.json() if "document" in entry]

    async def _patch_document(self, collection: str, id: Any, values: dict) -> dict:
        params = [("updateMask.fieldPaths", quote_field_path(key)) for key in values]
        resp = await self.do_request(
            method="PATCH",
            endpoint=self._get_endpoint_document(collection, id),
            json={"fields": encode_fields(values)},
            params=params,
            raise_on_error=True,
        )
        return decode_document(resp.json())

    async def _create_document(self, collection: str, values: dict) -> dict:
        resp = await self.do_request(
            method="POST",
            endpoint=self._get_endpoint_document(collection),
            json={"fields": encode_fields(values)},
            raise_on_error=True,
        )
        return decode_document(resp.json())

    ############# LISTING REQUESTS ##############
    async def do_fetch_collection_ids(self) -> list[str]:
        """Fetches the ids of every top-level collection, following page tokens."""
        collection_ids: list[str] = []
        page_token = None
        while True:
            body: dict[str, Any] = {"pageSize": self.page_size}
            if page_token:
                body["pageToken"] = page_token
            resp = await self.do_request(method="POST", endpoint=self._get_endpoint_list_collections(), json=body, raise_on_error=True)
            payload = resp.json()
            collection_ids.extend(payload.get("collectionIds", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return collection_ids

    async def do_fetch_document_ids(self, collection: str) -> list[str]:
        """Fetches the ids of every document of a collection, following page tokens."""
        ids: list[str] = []
        page_token = None
        while True:
            params: dict[str, Any] = {"pageSize": self.page_size, "mask.fieldPaths": "__name__"}
            if page_token:
                params["pageToken"] = page_token
            resp = await self.do_request(method="GET", endpoint=self._get_endpoint_document(collection), params=params, raise_on_error=True)
            payload = resp.json()
            ids.extend(document_id(doc["name"]) for doc in payload.get("documents", []))
            self.logging.debug("Fetched %d document ids of '%s' so far", len(ids), collection)
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
        return ids

    ##########################################
    ################ WRITES ##################
    ##########################################

    async def save(self, collection: str, id: Any, values: dict) -> Any:
        values = {key: value for key, value in values.items() if key != "_id"}
        if id is None:
            created = await self._create_document(collection, values)
            return created["_id"]
        if not values and await self._get_document(collection, id) is not None:
            return id
        await self._patch_document(collection, id, values)
        return id

    async def delete(self, collection: str, id: Any) -> int:
        if id is None:
            return 0
        resp = await self.do_request(
            method="DELETE",
            endpoint=self._get_endpoint_document(collection, id),
            params={"currentDocument.exists": "true"},
        )
        if resp.status_code == 404:
            return 0
        if resp.status_code >= 300:
            self.logging.error("Deleting %s/%s failed with status %d: %s", collection, id, resp.status_code, resp.text)
            raise StorageOperationError(f"Deleting document '{collection}/{id}' failed with status {resp.status_code}")
        return 1

    async def delete_one(self, collection: str, query: dict) -> int:
        record = await self.find_one(collection, query)
        if record is None:
            return 0
        return await self.delete(collection, record["_id"])

    async def delete_many(self, collection: str, query: dict) -> int:
        records = await self.find(collection, query)
        deleted = await asyncio.gather(*[self.delete(collection, record["_id"]) for record in records])
        return sum(deleted)

    async def find_one_and_update(self, collection: str, query: dict, values: dict, options: UpdateOptions | dict | None = None) -> dict | None:
        update_options = as_update_options(options)
        values = {key: value for key, value in values.items() if key != "_id"}
        record = await self.find_one(collection, query)
        if record is not None:
            if values:
                await self._patch_document(collection, record["_id"], values)
            return await self._get_document(collection, record["_id"])

        if not update_options.upsert:
            return None
        seed = {**equality_fields(query if isinstance(query, Mapping) else {}), **values}
        seed_id = query.get("_id") if isinstance(query, Mapping) else None
        if seed_id is not None and not is_operator_object(seed_id):
            return await self._patch_document(collection, seed_id, seed)
        return await self._create_document(collection, seed)

    async def find_one_and_delete(self, collection: str, query: dict, options: dict | None = None) -> int:
        return await self.delete_one(collection, query)

    ##########################################
    ################ READS ###################
    ##########################################

    def _builder(self, collection: str, clauses: list[WhereClause]) -> FirestoreQueryBuilder:
        return FirestoreQueryBuilder(collection).where_all(clauses)

    async def find_one(self, collection: str, query: dict) -> dict | None:
        results = await self.find(collection, query, FindOptions(limit=1))
        return results[0] if results else None

    async def find(self, collection: str, query: dict, options: FindOptions | dict | None = None) -> list[dict]:
        find_options = as_find_options(options)
        sort_keys = find_options.get_sort_keys()
        converted = convert_query(query)

        if converted.ids is not None:
            unique_ids = list(dict.fromkeys(self.to_canonical_id(id) for id in converted.ids))
            fetched = await asyncio.gather(*[self._get_document(collection, id) for id in unique_ids])
            records = [record for record in fetched if record is not None]
        elif len(converted.queries) == 1 and not converted.post_filter:
            builder = self._builder(collection, converted.queries[0])
            for path, direction in sort_keys:
                builder = builder.order_by(path, direction)
            return await self._run_query(builder.offset(find_options.skip).limit(find_options.limit))
        else:
            if len(converted.queries) > 1:
                self.logging.debug(f"Expanded query on '{collection}' into {len(converted.queries)} Firestore queries")
            results = await asyncio.gather(*[self._run_query(self._builder(collection, clauses)) for clauses in converted.queries])
            records = []
            seen: set[str] = set()
            for result in results:
                for record in result:
                    if record["_id"] not in seen:
                        seen.add(record["_id"])
                        records.append(record)

        if converted.post_filter:
            records = QueryMatcher(converted.post_filter).filter(records)
        return apply_find_options(records, sort_keys, find_options.skip, find_options.limit)

    async def count(self, collection: str, query: dict) -> int:
        converted = convert_query(query)
        if converted.ids is not None or len(converted.queries) != 1 or converted.post_filter:
            return len(await self.find(collection, query))

        body = {
            "structuredAggregationQuery": {
                "structuredQuery": self._builder(collection, converted.queries[0]).to_structured_query(),
                "aggregations": [{"alias": "total", "count": {}}],
            }
        }
        resp = await self.do_request(method="POST", endpoint=self._get_endpoint_run_aggregation_query(), json=body, raise_on_error=True)
        for entry in resp.json():
            if "result" in entry:
                return int(entry["result"]["aggregateFields"]["total"]["integerValue"])
        return 0

    ##########################################
    ############## OPERATIONAL ###############
    ##########################################

    async def create_index(self, collection: str, field: str, options: IndexOptions | dict | None = None) -> None:
        index_options = as_index_options(options)
        # single-field indexes exist implicitly and uniqueness cannot be enforced
        if index_options.unique:
            self.logging.warning(f"Firestore cannot enforce uniqueness of '{collection}.{field}'; index request ignored", color="yellow")
        else:
            self.logging.debug(f"Firestore indexes '{collection}.{field}' automatically; index request ignored")

    async def clear_collection(self, collection: str) -> None:
        ids = await self.do_fetch_document_ids(collection)
        await asyncio.gather(*[self.delete(collection, id) for id in ids])

    async def drop_database(self) -> None:
        collection_ids = await self.do_fetch_collection_ids()
        await asyncio.gather(*[self.clear_collection(collection) for collection in collection_ids])
        self.logging.info("Cleared %d collections of Firestore %s", len(collection_ids), self.describe_target())
