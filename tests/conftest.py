"""Shared fixtures for the test suite."""

import asyncio

import pytest

from pair_chat.domain.errors import StoreError
from pair_chat.repositories.memory import InMemoryDocumentStore
from pair_chat.services.directory import UserDirectory
from pair_chat.services.messages import MessageStore
from pair_chat.services.resolver import ConversationResolver


class FlakyStore(InMemoryDocumentStore):
    """In-memory store whose reads or writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_queries = False
        self.fail_writes = False

    def _maybe_fail(self, flag: bool) -> None:
        if flag:
            raise StoreError("backend unavailable")

    async def get(self, collection, doc_id):
        self._maybe_fail(self.fail_queries)
        return await super().get(collection, doc_id)

    async def query(self, collection, field_name, value):
        self._maybe_fail(self.fail_queries)
        return await super().query(collection, field_name, value)

    async def query_array_contains(self, collection, field_name, value):
        self._maybe_fail(self.fail_queries)
        return await super().query_array_contains(collection, field_name, value)

    async def add(self, collection, data):
        self._maybe_fail(self.fail_writes)
        return await super().add(collection, data)

    async def set(self, collection, doc_id, data):
        self._maybe_fail(self.fail_writes)
        return await super().set(collection, doc_id, data)

    async def create_if_absent(self, collection, doc_id, data):
        self._maybe_fail(self.fail_writes)
        return await super().create_if_absent(collection, doc_id, data)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def directory(store):
    return UserDirectory(store)


@pytest.fixture
def resolver(store, directory):
    return ConversationResolver(store, directory)


@pytest.fixture
def messages(store):
    return MessageStore(store)


@pytest.fixture
def register(directory):
    """Register the alice/bob/carol test users."""

    async def _register():
        await directory.register("u1", "alice@x.com", "alice")
        await directory.register("u2", "bob@x.com", "bob")
        await directory.register("u3", "carol@x.com", "carol")

    return _register


@pytest.fixture
def eventually():
    """Poll a condition while letting background tasks run."""

    async def _eventually(predicate, timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.01)

    return _eventually
