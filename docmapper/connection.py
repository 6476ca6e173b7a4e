"""
Connecting to a storage backend and the active client of the current context.

``connect`` makes the new client active for the calling context (and every task started from it).
Document operations use the active client unless one is passed explicitly with ``client=``::

    client = await connect("tinydb://memory")
    await ghost.save()                       # uses client

    with use_client(other_client):
        await Ghost.find({"name": "Slimer"}) # uses other_client
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from docmapper.clients.storage.StorageClientInterface import StorageClientInterface
from docmapper.clients.storage.StorageClientRegistry import StorageClientRegistry
from docmapper.errors import StorageConnectionError
from docmapper.helper.HelperConfig import HelperConfig

_active_client: ContextVar[StorageClientInterface | None] = ContextVar("docmapper_active_client", default=None)


async def connect(
    url: Any,
    options: dict | None = None,
    *,
    registry: StorageClientRegistry | None = None,
    helper_config: HelperConfig | None = None,
    activate: bool = True,
) -> StorageClientInterface:
    """
    Connects the storage client that claims ``url``.

    Args:
        url (Any): Connection string (``tinydb://memory``, ``mongodb://host/db``) or Firestore options object.
        options (dict | None): Backend-specific connection options.
        registry (StorageClientRegistry | None): Registry to resolve the client class with. Defaults to every bundled engine.
        helper_config (HelperConfig | None): Configuration helper handed to the client.
        activate (bool): Make the connected client the active client of the current context, replacing any previous one.

    Returns:
        StorageClientInterface: The connected client.

    Raises:
        StorageConnectionError: If no client claims ``url`` or the backend is unreachable.
    """
    registry = registry or StorageClientRegistry(helper_config=helper_config)
    client_class = registry.get_client(url)
    if client_class is None:
        raise StorageConnectionError("Unrecognized DB connection url.")

    client = await client_class.connect(url, options, helper_config=helper_config or registry.helper_config)
    if activate:
        _active_client.set(client)
    return client


def get_active_client() -> StorageClientInterface | None:
    return _active_client.get()


def set_active_client(client: StorageClientInterface | None) -> None:
    _active_client.set(client)


def resolve_client(client: StorageClientInterface | None = None) -> StorageClientInterface:
    """
    Returns ``client`` or, when None, the active client.

    Raises:
        StorageConnectionError: If neither is available.
    """
    if client is None:
        client = _active_client.get()
    if client is None:
        raise StorageConnectionError("No storage client is connected. Call connect() or pass client=.")
    return client


@contextmanager
def use_client(client: StorageClientInterface) -> Iterator[StorageClientInterface]:
    """Makes ``client`` the active client inside the block and restores the previous one afterwards."""
    token = _active_client.set(client)
    try:
        yield client
    finally:
        _active_client.reset(token)
