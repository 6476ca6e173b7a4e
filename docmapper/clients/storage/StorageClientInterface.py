from abc import abstractmethod
from typing import Any, Self

from docmapper.clients.ClientInterface import ClientInterface
from docmapper.clients.storage.models.QueryOptions import FindOptions, IndexOptions, UpdateOptions
from docmapper.helper.HelperConfig import HelperConfig, get_default_helper_config


class StorageClientInterface(ClientInterface):
    """
    CRUD contract every storage backend implements.

    Not-found outcomes are never errors: look-ups return None and deletions return 0.
    Records are plain dicts carrying their id under ``_id``.
    """

    def __init__(self, helper_config: HelperConfig, url: Any = None, options: dict | None = None):
        super().__init__(helper_config)
        self.url = url
        self.options = dict(options or {})

    ##########################################
    ############### DISPATCH #################
    ##########################################

    @classmethod
    @abstractmethod
    def can_handle(cls, url: Any) -> bool:
        """
        Whether this client serves the given connection target. Must never raise.

        Args:
            url (Any): A connection string, or an options object for backends that connect without one.
        """
        pass

    @classmethod
    async def connect(cls, url: Any, options: dict | None = None, helper_config: HelperConfig | None = None) -> Self:
        """
        Creates a client for ``url``, opens it and checks that the backend answers.

        Raises:
            StorageConnectionError: If the backend is unreachable or the target is malformed.
        """
        client = cls(helper_config=helper_config or get_default_helper_config(), url=url, options=options)
        await client.boot()
        await client.do_healthcheck()
        client.logging.info("Connected %s storage client to %s", client.get_engine_name(), client.describe_target(), color="green")
        return client

    def describe_target(self) -> str:
        """Printable form of the connection target, without credentials."""
        return str(self.url)

    def _get_client_type(self) -> str:
        return "storage"

    ##########################################
    ################ WRITES ##################
    ##########################################

    @abstractmethod
    async def save(self, collection: str, id: Any, values: dict) -> Any:
        """
        Inserts or upserts one record.

        Args:
            collection (str): Collection name.
            id (Any): None to insert a new record, otherwise the id of the record to upsert.
            values (dict): Field values without ``_id``.

        Returns:
            Any: The backend-assigned id of an inserted record, or ``id`` unchanged.
        """
        pass

    @abstractmethod
    async def delete(self, collection: str, id: Any) -> int:
        """Deletes the record with the given id. Returns the number of deleted records (0 or 1)."""
        pass

    @abstractmethod
    async def delete_one(self, collection: str, query: dict) -> int:
        pass

    @abstractmethod
    async def delete_many(self, collection: str, query: dict) -> int:
        pass

    @abstractmethod
    async def find_one_and_update(self, collection: str, query: dict, values: dict, options: UpdateOptions | dict | None = None) -> dict | None:
        """
        Sets ``values`` on the first record matching ``query`` and returns it as updated.

        With ``upsert`` a record is inserted when nothing matches; it carries the query's
        literal equality fields plus ``values``.
        """
        pass

    @abstractmethod
    async def find_one_and_delete(self, collection: str, query: dict, options: dict | None = None) -> int:
        """Deletes the first record matching ``query``. Returns 1 if a record was deleted, else 0."""
        pass

    ##########################################
    ################ READS ###################
    ##########################################

    @abstractmethod
    async def find_one(self, collection: str, query: dict) -> dict | None:
        pass

    @abstractmethod
    async def find(self, collection: str, query: dict, options: FindOptions | dict | None = None) -> list[dict]:
        """Returns every record matching ``query``, ordered and windowed by ``options``."""
        pass

    @abstractmethod
    async def count(self, collection: str, query: dict) -> int:
        pass

    ##########################################
    ############## OPERATIONAL ###############
    ##########################################

    @abstractmethod
    async def create_index(self, collection: str, field: str, options: IndexOptions | dict | None = None) -> None:
        pass

    @abstractmethod
    async def clear_collection(self, collection: str) -> None:
        pass

    @abstractmethod
    async def drop_database(self) -> None:
        pass

    ##########################################
    ################## IDS ###################
    ##########################################

    @abstractmethod
    def is_native_id(self, value: Any) -> bool:
        """Whether ``value`` has the shape of an id assigned by this backend."""
        pass

    @abstractmethod
    def native_id_type(self) -> type:
        pass

    def to_canonical_id(self, id: Any) -> str:
        """Stable string form of a native id, used for comparisons and logging."""
        return str(id)

    @property
    @abstractmethod
    def driver(self) -> Any:
        """The underlying native driver object (database handle, HTTP client, ...)."""
        pass
