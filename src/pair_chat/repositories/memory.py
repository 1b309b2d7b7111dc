"""In-memory document store implementation."""

import asyncio
import copy
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

import structlog

from ..domain.errors import StoreError
from .base import ChangeBatch, ChangeStream, Document, DocumentStore

logger = structlog.get_logger()


class InMemoryDocumentStore(DocumentStore):
    """Async-safe in-memory document store with live queries.

    Collections keep insertion order, which is the tie-break for live
    queries ordered by a field and the order of plain query results.
    """

    supports_create_if_absent = True

    def __init__(self) -> None:
        """Initialize empty storage."""
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._streams: Dict[str, List[Tuple[ChangeStream, str]]] = {}
        self._lock = asyncio.Lock()
        self._closed = False
        logger.info("document_store_initialized")

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("document store is closed")

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    @staticmethod
    def _snapshot(doc_id: str, data: Dict[str, Any]) -> Document:
        return Document(id=doc_id, data=copy.deepcopy(data))

    def _notify(self, collection: str, doc_id: str, data: Dict[str, Any], created: bool) -> None:
        for stream, order_by in list(self._streams.get(collection, [])):
            if order_by not in data:
                continue
            doc = self._snapshot(doc_id, data)
            batch = ChangeBatch(added=[doc]) if created else ChangeBatch(modified=[doc])
            stream.push(batch)

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Retrieve a document by ID."""
        async with self._lock:
            self._check_open()
            data = self._docs(collection).get(doc_id)
            if data is None:
                return None
            return self._snapshot(doc_id, data)

    async def query(self, collection: str, field_name: str, value: Any) -> List[Document]:
        """Documents whose field equals value, in insertion order."""
        async with self._lock:
            self._check_open()
            return [
                self._snapshot(doc_id, data)
                for doc_id, data in self._docs(collection).items()
                if field_name in data and data[field_name] == value
            ]

    async def query_array_contains(
        self, collection: str, field_name: str, value: Any
    ) -> List[Document]:
        """Documents whose array field contains value, in insertion order."""
        async with self._lock:
            self._check_open()
            return [
                self._snapshot(doc_id, data)
                for doc_id, data in self._docs(collection).items()
                if isinstance(data.get(field_name), list) and value in data[field_name]
            ]

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Add a document under a generated ID."""
        async with self._lock:
            self._check_open()
            doc_id = uuid4().hex
            stored = copy.deepcopy(data)
            self._docs(collection)[doc_id] = stored
            self._notify(collection, doc_id, stored, created=True)
            logger.debug("document_added", collection=collection, doc_id=doc_id)
            return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite a document."""
        async with self._lock:
            self._check_open()
            docs = self._docs(collection)
            created = doc_id not in docs
            stored = copy.deepcopy(data)
            docs[doc_id] = stored
            self._notify(collection, doc_id, stored, created=created)
            logger.debug("document_set", collection=collection, doc_id=doc_id, created=created)

    async def create_if_absent(
        self, collection: str, doc_id: str, data: Dict[str, Any]
    ) -> Tuple[Document, bool]:
        """Create a document unless one already exists under doc_id."""
        async with self._lock:
            self._check_open()
            docs = self._docs(collection)
            existing = docs.get(doc_id)
            if existing is not None:
                return self._snapshot(doc_id, existing), False
            stored = copy.deepcopy(data)
            docs[doc_id] = stored
            self._notify(collection, doc_id, stored, created=True)
            logger.debug("document_created", collection=collection, doc_id=doc_id)
            return self._snapshot(doc_id, stored), True

    async def subscribe(self, collection: str, order_by: str) -> ChangeStream:
        """Open a live query.

        The first batch holds every current document ordered by ``order_by``
        (insertion order breaks ties); later batches report single writes in
        the order they were applied.
        """
        async with self._lock:
            self._check_open()
            stream = ChangeStream(on_close=lambda s: self._unregister(collection, s))
            current = [
                (doc_id, data)
                for doc_id, data in self._docs(collection).items()
                if order_by in data
            ]
            current.sort(key=lambda item: item[1][order_by])
            stream.push(ChangeBatch(added=[self._snapshot(i, d) for i, d in current]))
            self._streams.setdefault(collection, []).append((stream, order_by))
            logger.debug("live_query_opened", collection=collection, order_by=order_by)
            return stream

    def _unregister(self, collection: str, stream: ChangeStream) -> None:
        streams = self._streams.get(collection, [])
        self._streams[collection] = [(s, o) for s, o in streams if s is not stream]
        if not self._streams[collection]:
            del self._streams[collection]

    async def close(self) -> None:
        """Close the store, failing every open live query."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            streams = [s for entries in self._streams.values() for s, _ in entries]
        for stream in streams:
            stream.fail(StoreError("document store is closed"))
        logger.info("document_store_closed", failed_streams=len(streams))

    def count(self, collection: str) -> int:
        """Number of documents in a collection."""
        return len(self._collections.get(collection, {}))
