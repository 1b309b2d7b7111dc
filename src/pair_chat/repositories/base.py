"""Document store contract consumed by the chat services."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..domain.errors import StoreError


@dataclass
class Document:
    """A stored document: store-assigned id plus its fields."""

    id: str
    data: Dict[str, Any]


@dataclass
class ChangeBatch:
    """One notification from a live query."""

    added: List[Document] = field(default_factory=list)
    modified: List[Document] = field(default_factory=list)
    removed: List[Document] = field(default_factory=list)


_END = object()


class ChangeStream:
    """Push-based stream of change batches for a live query.

    The store pushes batches; the consumer iterates with ``async for``.
    Iteration ends after ``close()`` and raises ``StoreError`` after ``fail()``.
    """

    def __init__(self, on_close: Optional[Callable[["ChangeStream"], None]] = None) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def push(self, batch: ChangeBatch) -> None:
        if not self._finished:
            self._queue.put_nowait(batch)

    def fail(self, error: Exception) -> None:
        """Report a store-side error and end the stream."""
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(error)
        self._detach()

    def close(self) -> None:
        if self._finished:
            return
        self._finished = True
        self._queue.put_nowait(_END)
        self._detach()

    def _detach(self) -> None:
        if self._on_close is not None:
            callback, self._on_close = self._on_close, None
            callback(self)

    async def next_batch(self) -> Optional[ChangeBatch]:
        """Wait for the next batch; None once the stream is closed."""
        item = await self._queue.get()
        if item is _END or isinstance(item, Exception):
            # terminal items stay queued so later reads see them too
            self._queue.put_nowait(item)
        if item is _END:
            return None
        if isinstance(item, StoreError):
            raise item
        if isinstance(item, Exception):
            raise StoreError(str(item)) from item
        return item

    async def __aiter__(self) -> AsyncIterator[ChangeBatch]:
        while True:
            batch = await self.next_batch()
            if batch is None:
                return
            yield batch


class DocumentStore(ABC):
    """Abstract base class for document stores.

    All operations raise ``StoreError`` on failure.
    """

    supports_create_if_absent: bool = False

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Retrieve a document by ID."""
        pass

    @abstractmethod
    async def query(self, collection: str, field_name: str, value: Any) -> List[Document]:
        """Documents whose field equals value, in insertion order."""
        pass

    @abstractmethod
    async def query_array_contains(
        self, collection: str, field_name: str, value: Any
    ) -> List[Document]:
        """Documents whose array field contains value, in insertion order."""
        pass

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Add a document under a store-assigned ID and return the ID."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or overwrite a document under a caller-chosen ID."""
        pass

    @abstractmethod
    async def subscribe(self, collection: str, order_by: str) -> ChangeStream:
        """Open a live query over a collection ordered by a field."""
        pass

    async def create_if_absent(
        self, collection: str, doc_id: str, data: Dict[str, Any]
    ) -> Tuple[Document, bool]:
        """Atomically create a document unless one exists under doc_id.

        Returns the stored document and whether this call created it. Only
        available when ``supports_create_if_absent`` is true.
        """
        raise NotImplementedError(f"{type(self).__name__} has no transactional create")
