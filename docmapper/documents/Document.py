from collections.abc import Coroutine, Mapping
from typing import Any, ClassVar

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.models.QueryOptions import FindOptions, IndexOptions, UpdateOptions
from docmapper.connection import resolve_client
from docmapper.documents.BaseDocument import BaseDocument, _serialize


class Document(BaseDocument):
    """
    Identity-bearing document persisted as one record of its collection.

    Every operation uses the active client of the current context unless ``client=`` is given.

    Attributes:
        collection (str | None): Collection name. Defaults to the lower-cased class name plus "s".
        populate_by_default (bool): Whether find/find_one populate references when ``populate`` is not given.
        populate_on_update (bool): Whether find_one_and_update populates references when ``populate`` is not given.
    """

    _document_class: ClassVar[str] = "document"
    collection: ClassVar[str | None] = None
    populate_by_default: ClassVar[bool] = True
    populate_on_update: ClassVar[bool] = True

    def __init__(self, **values: Any):
        self._id: Any = None
        super().__init__(**values)

    @property
    def id(self) -> Any:
        return self._id

    @classmethod
    def collection_name(cls) -> str:
        return cls.__dict__.get("collection") or f"{cls.__name__.lower()}s"

    ##########################################
    ############### INSTANCE #################
    ##########################################

    async def save(self, client: StorageClientInterface | None = None) -> "Document":
        """
        Validates and persists the document. A document without ``_id`` is inserted and gets the new id.

        Stages: pre_validate hooks, validate, canonicalize, post_validate hooks, pre_save hooks,
        write, post_save hooks. A failing stage aborts the remaining ones.

        Raises:
            ValidationError: If a field is invalid. Nothing is written in that case.
        """
        client = resolve_client(client)

        await self._run_hooks("pre_validate")
        self.validate(client)
        self.canonicalize()
        await self._run_hooks("post_validate")
        await self._run_hooks("pre_save")

        id = await client.save(self.collection_name(), self._id, self._to_data(include_id=False))
        if self._id is None:
            self._id = id

        await self._run_hooks("post_save")
        return self

    async def delete(self, client: StorageClientInterface | None = None) -> int:
        """Deletes the stored record. The instance stays usable; saving it again re-creates the record."""
        client = resolve_client(client)
        await self._run_hooks("pre_delete")
        deleted = await client.delete(self.collection_name(), self._id)
        await self._run_hooks("post_delete")
        return deleted

    ##########################################
    ############## COLLECTION ################
    ##########################################

    @classmethod
    async def delete_one(cls, query: dict, client: StorageClientInterface | None = None) -> int:
        return await resolve_client(client).delete_one(cls.collection_name(), query)

    @classmethod
    async def delete_many(cls, query: dict | None = None, client: StorageClientInterface | None = None) -> int:
        return await resolve_client(client).delete_many(cls.collection_name(), query or {})

    @classmethod
    async def count(cls, query: dict | None = None, client: StorageClientInterface | None = None) -> int:
        return await resolve_client(client).count(cls.collection_name(), query or {})

    @classmethod
    async def clear_collection(cls, client: StorageClientInterface | None = None) -> None:
        await resolve_client(client).clear_collection(cls.collection_name())

    @classmethod
    async def create_indexes(cls, client: StorageClientInterface | None = None) -> None:
        """Creates a unique index per field declared ``unique``. Runs once per class."""
        if cls.__dict__.get("_indexes_created", False):
            return
        client = resolve_client(client)
        cls._indexes_created = True
        try:
            for name, field in cls.get_fields().items():
                if field.unique:
                    await client.create_index(cls.collection_name(), name, IndexOptions(unique=True))
        except Exception:
            cls._indexes_created = False
            raise

    ##########################################
    ################# READS ##################
    ##########################################

    @classmethod
    async def _post_process(cls, docs: list["Document"], populate: bool | list[str], select: list[str] | None, client: StorageClientInterface) -> list[Any]:
        """Populates, runs post_find hooks and projects freshly rehydrated documents."""
        if populate:
            await cls.populate(docs, populate, client=client)
        for doc in docs:
            await doc._run_hooks("post_find")
        if select:
            return [cls._select(doc, select) for doc in docs]
        return docs

    @staticmethod
    def _select(doc: "Document", select: list[str]) -> dict[str, Any]:
        fields = doc.get_fields()
        return {"_id": doc._id, **{name: getattr(doc, name) for name in select if name in fields}}

    @classmethod
    async def find_one(
        cls,
        query: dict | None = None,
        *,
        populate: bool | list[str] | None = None,
        select: list[str] | None = None,
        client: StorageClientInterface | None = None,
    ) -> Any:
        """
        Returns the first matching document, or None.

        Args:
            query (dict | None): Structured query.
            populate (bool | list[str] | None): Reference fields to populate. Defaults to ``populate_by_default``.
            select (list[str] | None): Project the result to a dict of these fields plus ``_id``.
        """
        client = resolve_client(client)
        data = await client.find_one(cls.collection_name(), query or {})
        if data is None:
            return None
        populate = cls.populate_by_default if populate is None else populate
        results = await cls._post_process([cls._from_data(data)], populate, select, client)
        return results[0]

    @classmethod
    async def find(
        cls,
        query: dict | None = None,
        *,
        populate: bool | list[str] | None = None,
        select: list[str] | None = None,
        sort: list[str] | str | None = None,
        skip: int | None = None,
        limit: int | None = None,
        client: StorageClientInterface | None = None,
    ) -> list[Any]:
        """
        Returns every matching document, in backend order unless ``sort`` is given.

        Args:
            sort (list[str] | str | None): Field names; a leading "-" sorts descending.
            skip (int | None): Number of leading matches to drop.
            limit (int | None): Maximum number of results.
        """
        client = resolve_client(client)
        options = FindOptions(sort=sort, skip=skip, limit=limit)
        records = await client.find(cls.collection_name(), query or {}, options)
        populate = cls.populate_by_default if populate is None else populate
        return await cls._post_process(cls._from_data(list(records)), populate, select, client)

    ##########################################
    ############# FIND AND MODIFY ############
    ##########################################

    @classmethod
    def find_one_and_update(
        cls,
        query: dict | list,
        values: Mapping[str, Any],
        *,
        upsert: bool = False,
        populate: bool | list[str] | None = None,
        select: list[str] | None = None,
        client: StorageClientInterface | None = None,
    ) -> Coroutine[Any, Any, Any]:
        """
        Updates the first matching record with ``values`` and returns it as a document.

        Arguments are checked before anything is awaited.

        Raises:
            TypeError: Immediately, if ``query`` or ``values`` have the wrong shape.
        """
        if not isinstance(query, (Mapping, list)):
            raise TypeError(f"find_one_and_update expects a query mapping, got {type(query).__name__}.")
        if not isinstance(values, Mapping):
            raise TypeError(f"find_one_and_update expects a mapping of values, got {type(values).__name__}.")
        payload = {key: _serialize(value) for key, value in values.items()}
        return cls._find_one_and_update(query, payload, UpdateOptions(upsert=upsert), populate, select, client)

    @classmethod
    async def _find_one_and_update(cls, query: dict, values: dict, options: UpdateOptions, populate: bool | list[str] | None, select: list[str] | None, client: StorageClientInterface | None) -> Any:
        client = resolve_client(client)
        data = await client.find_one_and_update(cls.collection_name(), query, values, options)
        if data is None:
            return None
        doc = cls._from_data(data)
        populate = cls.populate_on_update if populate is None else populate
        if populate:
            await cls.populate(doc, populate, client=client)
        return cls._select(doc, select) if select else doc

    @classmethod
    def find_one_and_delete(cls, query: dict | list, *, client: StorageClientInterface | None = None) -> Coroutine[Any, Any, int]:
        """
        Deletes the first matching record. The returned awaitable resolves to 1, or 0 if nothing matched.

        Raises:
            TypeError: Immediately, if ``query`` is not a query.
        """
        if not isinstance(query, (Mapping, list)):
            raise TypeError(f"find_one_and_delete expects a query mapping, got {type(query).__name__}.")
        return cls._find_one_and_delete(query, client)

    @classmethod
    async def _find_one_and_delete(cls, query: dict, client: StorageClientInterface | None) -> int:
        return await resolve_client(client).find_one_and_delete(cls.collection_name(), query)
