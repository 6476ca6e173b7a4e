import asyncio
import os
import re
import uuid
from typing import Any, Callable

from tinydb import TinyDB, where
from tinydb.storages import JSONStorage, MemoryStorage
from tinydb.table import Document as TinydbDocument

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.models.QueryOptions import (
    FindOptions,
    IndexOptions,
    UpdateOptions,
    as_find_options,
    as_index_options,
    as_update_options,
)
from docmapper.clients.storage.tinydb.tinydb_value_codec import decode_record, encode_record
from docmapper.errors import StorageConnectionError, StorageOperationError
from docmapper.helper.HelperConfig import HelperConfig
from docmapper.helper.traversal_helper import get_path, is_operator_object
from docmapper.models.config import EnvConfig
from docmapper.query.QueryMatcher import QueryMatcher, apply_find_options, equality_fields

MEMORY_LOCATION = "memory"
_NATIVE_ID = re.compile(r"^[a-zA-Z0-9]{16}$")
_MISSING = object()


class _MatcherCondition:
    """TinyDB query object evaluating a QueryMatcher against decoded records."""

    def __init__(self, matcher: QueryMatcher):
        self._matcher = matcher

    def __call__(self, doc: dict) -> bool:
        return self._matcher(decode_record(dict(doc)))

    def is_cacheable(self) -> bool:
        return False


class StorageClientTinydb(StorageClientInterface):
    """
    Embedded file store backed by TinyDB.

    Connection urls: ``tinydb://<directory>`` (or the legacy ``nedb://<directory>``) stores every
    collection in ``<directory>/<collection>.db``; ``tinydb://memory`` keeps everything in memory.
    TinyDB is synchronous, so every operation runs in a worker thread, one at a time per client.
    """

    URL_PREFIXES = ("tinydb://", "nedb://")

    def __init__(self, helper_config: HelperConfig, url: Any = None, options: dict | None = None):
        super().__init__(helper_config, url=url, options=options)
        self.location = self._url_to_location(url)
        self.encoding = self.get_config_val("ENCODING", default="utf-8")
        self.indent = int(self.get_config_val("INDENT", default=0, val_type="number"))
        self._collections: dict[str, TinyDB] = {}
        # collection -> {field path -> sparse}
        self._unique_fields: dict[str, dict[str, bool]] = {}
        self._lock = asyncio.Lock()

    ##########################################
    ################ GETTER ##################
    ##########################################

    def _get_engine_name(self) -> str:
        return "Tinydb"

    def _get_required_config(self) -> list[EnvConfig]:
        return [
            EnvConfig(env_key="ENCODING", val_type="string", default="utf-8"),
            EnvConfig(env_key="INDENT", val_type="number", default=0),
        ]

    @classmethod
    def can_handle(cls, url: Any) -> bool:
        return isinstance(url, str) and url.startswith(cls.URL_PREFIXES)

    @classmethod
    def _url_to_location(cls, url: Any) -> str:
        if isinstance(url, str):
            for prefix in cls.URL_PREFIXES:
                if url.startswith(prefix):
                    return url[len(prefix):]
        return str(url or "")

    def is_memory(self) -> bool:
        return self.location == MEMORY_LOCATION

    def _get_collection_path(self, collection: str) -> str:
        return os.path.join(self.location, f"{collection}.db")

    def _get_collection(self, collection: str) -> TinyDB:
        """Returns the database of a collection, creating it on first use."""
        if collection not in self._collections:
            if self.is_memory():
                db = TinyDB(storage=MemoryStorage)
            else:
                storage_kwargs: dict[str, Any] = {"create_dirs": True, "encoding": self.encoding}
                if self.indent:
                    storage_kwargs["indent"] = self.indent
                db = TinyDB(self._get_collection_path(collection), storage=JSONStorage, **storage_kwargs)
            self._collections[collection] = db
            self.logging.debug(f"Opened TinyDB collection '{collection}' at {self.location}")
        return self._collections[collection]

    @property
    def driver(self) -> dict[str, TinyDB]:
        return self._collections

    ##########################################
    ################## IDS ###################
    ##########################################

    def is_native_id(self, value: Any) -> bool:
        return isinstance(value, str) and _NATIVE_ID.match(value) is not None

    def native_id_type(self) -> type:
        return str

    def _generate_id(self, db: TinyDB) -> str:
        while True:
            candidate = uuid.uuid4().hex[:16]
            if not db.contains(where("_id") == candidate):
                return candidate

    ##########################################
    ############## LIFECYCLE #################
    ##########################################

    async def boot(self) -> None:
        if not self.location:
            raise StorageConnectionError(f"No database location given in '{self.url}'.")
        if self.is_memory():
            return
        try:
            await asyncio.to_thread(os.makedirs, self.location, exist_ok=True)
        except OSError as e:
            raise StorageConnectionError(f"Cannot create database directory '{self.location}': {e}") from e

    async def do_healthcheck(self) -> None:
        if not self.is_memory() and not os.access(self.location, os.W_OK):
            raise StorageConnectionError(f"Database directory '{self.location}' is not writable.")

    async def close(self) -> None:
        async with self._lock:
            await asyncio.to_thread(self._close_all)

    def _close_all(self) -> None:
        for db in self._collections.values():
            db.close()
        self._collections.clear()

    async def _run(self, func: Callable, *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    ##########################################
    ################ WRITES ##################
    ##########################################

    async def save(self, collection: str, id: Any, values: dict) -> Any:
        return await self._run(self._save_sync, collection, id, values)

    def _save_sync(self, collection: str, id: Any, values: dict) -> Any:
        db = self._get_collection(collection)
        encoded = encode_record(values)
        encoded.pop("_id", None)

        if id is None:
            record = {"_id": self._generate_id(db), **encoded}
            self._check_unique(collection, db, record)
            db.insert(record)
            return record["_id"]

        existing = db.get(where("_id") == id)
        if existing is None:
            record = {"_id": id, **encoded}
            self._check_unique(collection, db, record)
            db.insert(record)
        else:
            self._check_unique(collection, db, {**existing, **encoded}, exclude_doc_id=existing.doc_id)
            db.update(encoded, doc_ids=[existing.doc_id])
        return id

    async def delete(self, collection: str, id: Any) -> int:
        if id is None:
            return 0
        return await self._run(lambda: len(self._get_collection(collection).remove(where("_id") == id)))

    async def delete_one(self, collection: str, query: dict) -> int:
        condition = self._condition(query)
        return await self._run(self._delete_first_sync, collection, condition)

    async def delete_many(self, collection: str, query: dict) -> int:
        condition = self._condition(query)
        return await self._run(lambda: len(self._get_collection(collection).remove(condition)))

    async def find_one_and_delete(self, collection: str, query: dict, options: dict | None = None) -> int:
        condition = self._condition(query)
        return await self._run(self._delete_first_sync, collection, condition)

    def _delete_first_sync(self, collection: str, condition: _MatcherCondition) -> int:
        db = self._get_collection(collection)
        matched = db.search(condition)
        if not matched:
            return 0
        db.remove(doc_ids=[matched[0].doc_id])
        return 1

    async def find_one_and_update(self, collection: str, query: dict, values: dict, options: UpdateOptions | dict | None = None) -> dict | None:
        condition = self._condition(query)
        update_options = as_update_options(options)
        return await self._run(self._find_one_and_update_sync, collection, query, condition, values, update_options)

    def _find_one_and_update_sync(self, collection: str, query: dict, condition: _MatcherCondition, values: dict, options: UpdateOptions) -> dict | None:
        db = self._get_collection(collection)
        encoded = encode_record(values)
        encoded.pop("_id", None)

        matched = db.search(condition)
        if matched:
            doc = matched[0]
            self._check_unique(collection, db, {**doc, **encoded}, exclude_doc_id=doc.doc_id)
            db.update(encoded, doc_ids=[doc.doc_id])
            return decode_record(dict(db.get(doc_id=doc.doc_id)))

        if not options.upsert:
            return None

        seed_id = (query or {}).get("_id")
        if seed_id is None or is_operator_object(seed_id):
            seed_id = self._generate_id(db)
        record = {"_id": seed_id, **encode_record(equality_fields(query)), **encoded}
        self._check_unique(collection, db, record)
        db.insert(record)
        return decode_record(record)

    def _check_unique(self, collection: str, db: TinyDB, record: dict, exclude_doc_id: int | None = None) -> None:
        """
        Raises:
            StorageOperationError: If ``record`` repeats the value of a unique field of another record.
        """
        for field, sparse in self._unique_fields.get(collection, {}).items():
            value = get_path(record, field, _MISSING)
            if value is _MISSING or value is None:
                if sparse:
                    continue
                value = None
            for doc in db.all():
                if doc.doc_id != exclude_doc_id and get_path(doc, field) == value:
                    raise StorageOperationError(f"Duplicate value {value!r} for unique field '{field}' in collection '{collection}'.")

    ##########################################
    ################ READS ###################
    ##########################################

    def _condition(self, query: dict | None) -> _MatcherCondition:
        return _MatcherCondition(QueryMatcher(query))

    async def find_one(self, collection: str, query: dict) -> dict | None:
        results = await self.find(collection, query, FindOptions(limit=1))
        return results[0] if results else None

    async def find(self, collection: str, query: dict, options: FindOptions | dict | None = None) -> list[dict]:
        condition = self._condition(query)
        find_options = as_find_options(options)
        return await self._run(self._find_sync, collection, condition, find_options)

    def _find_sync(self, collection: str, condition: _MatcherCondition, options: FindOptions) -> list[dict]:
        docs: list[TinydbDocument] = self._get_collection(collection).search(condition)
        records = [decode_record(dict(doc)) for doc in docs]
        return apply_find_options(records, options.get_sort_keys(), options.skip, options.limit)

    async def count(self, collection: str, query: dict) -> int:
        condition = self._condition(query)
        return await self._run(lambda: self._get_collection(collection).count(condition))

    ##########################################
    ############## OPERATIONAL ###############
    ##########################################

    async def create_index(self, collection: str, field: str, options: IndexOptions | dict | None = None) -> None:
        index_options = as_index_options(options)
        if not index_options.unique:
            # lookups are full scans; only unique constraints have an effect
            return
        await self._run(self._create_unique_index_sync, collection, field, index_options.sparse)

    def _create_unique_index_sync(self, collection: str, field: str, sparse: bool) -> None:
        db = self._get_collection(collection)
        seen = []
        for doc in db.all():
            value = get_path(doc, field, _MISSING)
            if value is _MISSING or value is None:
                if sparse:
                    continue
                value = None
            if value in seen:
                raise StorageOperationError(f"Cannot create unique index on '{collection}.{field}': duplicate value {value!r}.")
            seen.append(value)
        self._unique_fields.setdefault(collection, {})[field] = sparse
        self.logging.debug(f"Created unique index on '{collection}.{field}'")

    async def clear_collection(self, collection: str) -> None:
        await self._run(lambda: self._get_collection(collection).truncate())

    async def drop_database(self) -> None:
        await self._run(self._drop_database_sync)

    def _drop_database_sync(self) -> None:
        names = list(self._collections)
        self._close_all()
        self._unique_fields.clear()
        if self.is_memory():
            return
        for name in names:
            path = self._get_collection_path(name)
            if os.path.exists(path):
                os.remove(path)
