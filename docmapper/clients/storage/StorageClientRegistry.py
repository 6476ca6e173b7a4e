from typing import Any

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.helper.HelperConfig import HelperConfig, get_default_helper_config


class StorageClientRegistry:
    """
    Ordered list of storage client classes.

    A connection target is served by the first registered class whose ``can_handle`` returns True,
    so classes added later never take over targets an earlier class already claims.
    """

    DEFAULT_ENGINES = ["Tinydb", "Mongo", "Firestore"]

    def __init__(self, helper_config: HelperConfig | None = None, engines: list[str] | None = None):
        self.helper_config = helper_config or get_default_helper_config()
        self.logging = self.helper_config.get_logger()
        self.clients: list[type[StorageClientInterface]] = self._initialize_clients(engines)

    def _get_engines_from_env(self) -> list[str]:
        """
        Reads the list of storage engines from ENV configuration ("STORAGE_ENGINES").

        Returns:
            list[str]: Engine names, capitalized. Defaults to every bundled engine.
        """
        engines = self.helper_config.get_list_val("STORAGE_ENGINES", default=self.DEFAULT_ENGINES)
        return [engine.strip().lower().capitalize() for engine in engines]

    def _initialize_clients(self, engines: list[str] | None) -> list[type[StorageClientInterface]]:
        """
        Imports the storage client class of every engine.

        Raises:
            ValueError: If an engine has no storage client implementation.
        """
        if engines is None:
            engines = self._get_engines_from_env()
        else:
            engines = [engine.strip().lower().capitalize() for engine in engines]

        clients = []
        for engine in engines:
            class_name = f"StorageClient{engine}"
            try:
                module = __import__(
                    f"docmapper.clients.storage.{engine.lower()}.{class_name}",
                    fromlist=[class_name],
                )
                clients.append(getattr(module, class_name))
                self.logging.debug(f"Registered storage client for engine: {engine}")
            except (ImportError, AttributeError) as e:
                raise ValueError(f"Unsupported storage engine specified: '{engine}'. Error: {e}")
        return clients

    def add(self, client_class: type[StorageClientInterface]) -> None:
        """Appends a storage client class. It is tried after every class registered before it."""
        self.clients.append(client_class)

    def get_client(self, url: Any) -> type[StorageClientInterface] | None:
        """
        Returns the first registered class that claims ``url``, or None when none does.
        """
        for client_class in self.clients:
            if client_class.can_handle(url):
                return client_class
        return None

    def get_clients(self) -> list[type[StorageClientInterface]]:
        return list(self.clients)
