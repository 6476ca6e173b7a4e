import copy
import re
from typing import Any

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient, ReturnDocument
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import PyMongoError

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.models.QueryOptions import (
    FindOptions,
    IndexOptions,
    UpdateOptions,
    as_find_options,
    as_index_options,
    as_update_options,
)
from docmapper.errors import StorageConnectionError
from docmapper.helper.HelperConfig import HelperConfig
from docmapper.helper.traversal_helper import deep_traverse
from docmapper.models.config import EnvConfig

_OBJECT_ID_HEX = re.compile(r"^[a-fA-F0-9]{24}$")


def _cast_id(value: Any) -> Any:
    if isinstance(value, str) and _OBJECT_ID_HEX.match(value):
        return ObjectId(value)
    return value


def cast_query_ids(query: dict | None) -> dict:
    """
    Returns a copy of ``query`` in which every 24-hex string under an ``_id`` key
    (also inside ``$eq``, ``$ne``, ``$in`` and ``$nin``) is replaced by an ObjectId.
    """
    query = copy.deepcopy(dict(query or {}))

    def cast(key: Any, value: Any, parent: Any) -> None:
        if key != "_id":
            return
        if isinstance(value, dict):
            for operator in ("$eq", "$ne"):
                if operator in value:
                    value[operator] = _cast_id(value[operator])
            for operator in ("$in", "$nin"):
                if isinstance(value.get(operator), list):
                    value[operator] = [_cast_id(item) for item in value[operator]]
        else:
            parent[key] = _cast_id(value)

    deep_traverse(query, cast)
    return query


class StorageClientMongo(StorageClientInterface):
    """
    Networked document database client built on PyMongo's asyncio API.

    Connection urls: ``mongodb://`` and ``mongodb+srv://``. The database named in the url is used,
    otherwise ``STORAGE_MONGO_DEFAULT_DATABASE``.
    """

    URL_PREFIXES = ("mongodb://", "mongodb+srv://")

    def __init__(self, helper_config: HelperConfig, url: Any = None, options: dict | None = None):
        super().__init__(helper_config, url=url, options=options)
        self.default_database = self.get_config_val("DEFAULT_DATABASE", default="docmapper")
        self.server_selection_timeout_ms = int(self.get_config_val("SERVER_SELECTION_TIMEOUT_MS", default=5000, val_type="number"))
        self._client: AsyncMongoClient | None = None
        self._db: AsyncDatabase | None = None

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Mongo"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="DEFAULT_DATABASE", val_type="string", default="docmapper"),
            EnvConfig(env_key="SERVER_SELECTION_TIMEOUT_MS", val_type="number", default=5000),
        ]

    @classmethod
    def can_handle(cls, url: Any) -> bool:
        return isinstance(url, str) and url.startswith(cls.URL_PREFIXES)

    def describe_target(self) -> str:
        # strip credentials
        return re.sub(r"//[^@/]*@", "//", str(self.url))

    @property
    def driver(self) -> AsyncDatabase:
        return self._get_db()

    def _get_db(self) -> AsyncDatabase:
        if self._db is None:
            raise StorageConnectionError("Mongo client not initialised. Call boot() before making requests.")
        return self._db

    ##########################################
    ################## IDS ###################
    ##########################################

    def is_native_id(self, value: Any) -> bool:
        return isinstance(value, ObjectId) or (isinstance(value, str) and _OBJECT_ID_HEX.match(value) is not None)

    def native_id_type(self) -> type:
        return ObjectId

    def to_canonical_id(self, id: Any) -> str:
        return str(id)

    ##########################################
    ############## LIFECYCLE #################
    ##########################################

    async def boot(self) -> None:
        try:
            self._client = AsyncMongoClient(
                self.url,
                **{"serverSelectionTimeoutMS": self.server_selection_timeout_ms, "tz_aware": True, **self.options},
            )
            self._db = self._client.get_default_database(default=self.default_database)
        except PyMongoError as e:
            raise StorageConnectionError(f"Invalid MongoDB connection url '{self.describe_target()}': {e}") from e

    async def do_healthcheck(self) -> None:
        try:
            await self._get_db().command("ping")
        except PyMongoError as e:
            raise StorageConnectionError(f"MongoDB at '{self.describe_target()}' is unreachable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._db = None

    ##########################################
    ################ WRITES ##################
    ##########################################

    async def save(self, collection: str, id: Any, values: dict) -> Any:
        coll = self._get_db()[collection]
        values = {key: value for key, value in values.items() if key != "_id"}
        if id is None:
            result = await coll.insert_one(values)
            return result.inserted_id

        update = {"$set": values} if values else {"$setOnInsert": {}}
        await coll.update_one({"_id": _cast_id(id)}, update, upsert=True)
        return id

    async def delete(self, collection: str, id: Any) -> int:
        if id is None:
            return 0
        result = await self._get_db()[collection].delete_one({"_id": _cast_id(id)})
        return result.deleted_count

    async def delete_one(self, collection: str, query: dict) -> int:
        result = await self._get_db()[collection].delete_one(cast_query_ids(query))
        return result.deleted_count

    async def delete_many(self, collection: str, query: dict) -> int:
        result = await self._get_db()[collection].delete_many(cast_query_ids(query))
        return result.deleted_count

    async def find_one_and_update(self, collection: str, query: dict, values: dict, options: UpdateOptions | dict | None = None) -> dict | None:
        update_options = as_update_options(options)
        values = {key: value for key, value in values.items() if key != "_id"}
        return await self._get_db()[collection].find_one_and_update(
            cast_query_ids(query),
            {"$set": values} if values else {"$setOnInsert": {}},
            upsert=update_options.upsert,
            return_document=ReturnDocument.AFTER,
        )

    async def find_one_and_delete(self, collection: str, query: dict, options: dict | None = None) -> int:
        deleted = await self._get_db()[collection].find_one_and_delete(cast_query_ids(query))
        return 0 if deleted is None else 1

    ##########################################
    ################ READS ###################
    ##########################################

    async def find_one(self, collection: str, query: dict) -> dict | None:
        return await self._get_db()[collection].find_one(cast_query_ids(query))

    async def find(self, collection: str, query: dict, options: FindOptions | dict | None = None) -> list[dict]:
        find_options = as_find_options(options)
        cursor = self._get_db()[collection].find(cast_query_ids(query))
        sort_keys = find_options.get_sort_keys()
        if sort_keys:
            cursor = cursor.sort([(path, ASCENDING if direction > 0 else DESCENDING) for path, direction in sort_keys])
        if find_options.skip:
            cursor = cursor.skip(find_options.skip)
        if find_options.limit:
            cursor = cursor.limit(find_options.limit)
        return await cursor.to_list(None)

    async def count(self, collection: str, query: dict) -> int:
        return await self._get_db()[collection].count_documents(cast_query_ids(query))

    ##########################################
    ############## OPERATIONAL ###############
    ##########################################

    async def create_index(self, collection: str, field: str, options: IndexOptions | dict | None = None) -> None:
        index_options = as_index_options(options)
        name = await self._get_db()[collection].create_index(
            [(field, ASCENDING)],
            unique=index_options.unique,
            sparse=index_options.sparse,
        )
        self.logging.debug(f"Created index '{name}' on '{collection}.{field}'")

    async def clear_collection(self, collection: str) -> None:
        await self._get_db().drop_collection(collection)

    async def drop_database(self) -> None:
        db = self._get_db()
        await db.client.drop_database(db.name)
