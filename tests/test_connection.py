"""
Tests for connecting clients and the active client of a context.
"""

import asyncio
import contextvars
import logging

import pytest

from docmapper.clients.storage.StorageClientRegistry import StorageClientRegistry
from docmapper.clients.storage.tinydb.StorageClientTinydb import StorageClientTinydb
from docmapper.connection import connect, get_active_client, resolve_client, set_active_client, use_client
from docmapper.errors import StorageConnectionError


@pytest.fixture
def registry(helper_config) -> StorageClientRegistry:
    return StorageClientRegistry(helper_config, engines=["Tinydb", "Mongo"])


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_activates(self, registry):
        previous = get_active_client()
        client = await connect("tinydb://memory", registry=registry)
        try:
            assert isinstance(client, StorageClientTinydb)
            assert get_active_client() is client
            assert resolve_client() is client
        finally:
            set_active_client(previous)
            await client.close()

    @pytest.mark.asyncio
    async def test_connect_logs_in_color(self, registry, caplog):
        with caplog.at_level(logging.INFO, logger="docmapper"):
            client = await connect("tinydb://memory", registry=registry, activate=False)
        try:
            (record,) = [r for r in caplog.records if r.getMessage().startswith("Connected")]
            assert record.getMessage() == "Connected tinydb storage client to tinydb://memory"
            assert record.color == "green"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_connect_without_activation(self, registry):
        previous = get_active_client()
        client = await connect("nedb://memory", registry=registry, activate=False)
        try:
            assert get_active_client() is previous
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_unrecognized_url(self, registry):
        with pytest.raises(StorageConnectionError, match="Unrecognized DB connection url."):
            await connect("couchdb://localhost", registry=registry)

    @pytest.mark.asyncio
    async def test_explicit_client_wins(self, registry):
        active = await connect("tinydb://memory", registry=registry, activate=False)
        other = await connect("tinydb://memory", registry=registry, activate=False)
        try:
            with use_client(active):
                assert resolve_client(other) is other
        finally:
            await active.close()
            await other.close()


class TestActiveClientScope:
    def test_fresh_context_has_no_client(self):
        with pytest.raises(StorageConnectionError):
            contextvars.Context().run(resolve_client)

    @pytest.mark.asyncio
    async def test_use_client_restores_previous(self, tinydb_client, registry):
        other = await connect("tinydb://memory", registry=registry, activate=False)
        try:
            with use_client(tinydb_client):
                with use_client(other):
                    assert resolve_client() is other
                assert resolve_client() is tinydb_client
        finally:
            await other.close()

    @pytest.mark.asyncio
    async def test_use_client_restores_on_error(self, tinydb_client):
        previous = get_active_client()
        with pytest.raises(RuntimeError):
            with use_client(tinydb_client):
                raise RuntimeError("crossed the streams")
        assert get_active_client() is previous

    @pytest.mark.asyncio
    async def test_tasks_inherit_and_isolate(self, tinydb_client, registry):
        other = await connect("tinydb://memory", registry=registry, activate=False)

        async def switch():
            set_active_client(other)
            return resolve_client()

        try:
            with use_client(tinydb_client):
                assert await asyncio.create_task(switch()) is other
                # the task changed only its own copy of the context
                assert resolve_client() is tinydb_client
        finally:
            await other.close()
