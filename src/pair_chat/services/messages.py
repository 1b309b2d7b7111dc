"""Message append and ordered live delivery."""

import asyncio
import inspect
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from ..domain.errors import ChatError, ErrorCode, ServiceResult, StoreError
from ..domain.models import CONVERSATIONS, Conversation, Message, messages_collection
from ..repositories.base import ChangeStream, DocumentStore

logger = structlog.get_logger()

MessageCallback = Callable[[Message], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[ChatError], Union[None, Awaitable[None]]]

_CLOSED = object()


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class MonotonicClock:
    """Millisecond timestamps that never go backwards.

    A stamp is at least the previous stamp of the same sender and of the
    same conversation, so store insertion order within a conversation
    always agrees with timestamp order.
    """

    def __init__(self, source: Optional[Callable[[], int]] = None) -> None:
        self._source = source or _wall_clock_ms
        self._by_sender: Dict[str, int] = {}
        self._by_conversation: Dict[str, int] = {}

    def stamp(self, conversation_id: str, sender_id: str) -> int:
        now = max(
            self._source(),
            self._by_sender.get(sender_id, 0),
            self._by_conversation.get(conversation_id, 0),
        )
        self._by_sender[sender_id] = now
        self._by_conversation[conversation_id] = now
        return now


async def _invoke(callback: Callable, arg) -> None:
    result = callback(arg)
    if inspect.isawaitable(result):
        await result


class MessageSubscription:
    """Cancellable ordered stream of the messages of one conversation.

    Messages go to ``on_message`` when given; otherwise they are buffered
    for ``messages()``. ``close()`` may be called from anywhere, including
    from inside ``on_message``, and no callback runs after it returns.
    """

    def __init__(
        self,
        conversation_id: str,
        stream: ChangeStream,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.error: Optional[ChatError] = None
        self.delivered = 0
        self._stream = stream
        self._on_message = on_message
        self._on_error = on_error
        self._buffer: Optional[asyncio.Queue] = asyncio.Queue() if on_message is None else None
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        try:
            while not self._closed:
                batch = await self._stream.next_batch()
                if batch is None:
                    return
                for doc in batch.added:
                    if self._closed:
                        return
                    message = Message.from_document(self.conversation_id, doc.id, doc.data)
                    await self._deliver(message)
                if batch.modified or batch.removed:
                    logger.debug(
                        "message_changes_ignored",
                        conversation_id=self.conversation_id,
                        modified=len(batch.modified),
                        removed=len(batch.removed),
                    )
        except (StoreError, KeyError, ValueError) as e:
            await self._fail(f"message stream failed: {e}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception("message_callback_failed", conversation_id=self.conversation_id)
            await self._fail(f"message delivery failed: {e}")
        finally:
            self._shutdown()

    async def _deliver(self, message: Message) -> None:
        self.delivered += 1
        if self._buffer is not None:
            self._buffer.put_nowait(message)
        if self._on_message is not None:
            await _invoke(self._on_message, message)

    async def _fail(self, reason: str) -> None:
        if self._closed:
            return
        self.error = ChatError(ErrorCode.SUBSCRIPTION_ERROR, reason)
        logger.error("subscription_failed", conversation_id=self.conversation_id, error=reason)
        self._shutdown()
        if self._on_error is not None:
            await _invoke(self._on_error, self.error)

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.close()
        if self._buffer is not None:
            self._buffer.put_nowait(_CLOSED)

    def close(self) -> None:
        """Tear down the subscription. Idempotent."""
        if self._closed:
            return
        self._shutdown()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        logger.debug("subscription_closed", conversation_id=self.conversation_id)

    async def wait_closed(self) -> None:
        """Wait until the delivery task has finished."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def messages(self) -> AsyncIterator[Message]:
        """Iterate buffered messages until the subscription ends.

        After the loop ends, ``error`` tells a failure apart from a teardown.
        """
        if self._buffer is None:
            raise RuntimeError("messages() is unavailable when on_message is set")
        while True:
            item = await self._buffer.get()
            if item is _CLOSED:
                return
            yield item


class MessageStore:
    """Appends messages and opens live subscriptions over a conversation."""

    def __init__(self, store: DocumentStore, clock: Optional[MonotonicClock] = None) -> None:
        self.store = store
        self.clock = clock or MonotonicClock()
        # stamp-then-write runs under the conversation's lock so writes land
        # in stamp order
        self._write_locks: Dict[str, asyncio.Lock] = {}

    async def conversation(self, conversation_id: str) -> ServiceResult[Conversation]:
        try:
            doc = await self.store.get(CONVERSATIONS, conversation_id)
        except StoreError as e:
            logger.error("conversation_get_failed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))
        if doc is None:
            return ServiceResult.failure(
                ErrorCode.CONVERSATION_NOT_FOUND, f"conversation {conversation_id!r} not found"
            )
        try:
            return ServiceResult.ok(Conversation.from_document(doc.id, doc.data))
        except ValidationError as e:
            logger.error("conversation_malformed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(
                ErrorCode.LOOKUP_FAILED, f"conversation {conversation_id!r} is malformed"
            )

    async def append(
        self, conversation_id: str, sender_id: str, body: str
    ) -> ServiceResult[Message]:
        """Append a message; returns once the store has acknowledged it."""
        body = (body or "").strip()
        if not body:
            return ServiceResult.failure(ErrorCode.EMPTY_MESSAGE, "message cannot be empty")

        conversation = await self.conversation(conversation_id)
        if not conversation.success:
            return ServiceResult.failure(conversation.error.code, conversation.error.message)
        if not conversation.data.includes(sender_id):
            logger.warning(
                "append_by_non_participant",
                conversation_id=conversation_id,
                sender_id=sender_id,
            )
            return ServiceResult.failure(
                ErrorCode.NOT_A_PARTICIPANT,
                f"user {sender_id!r} is not part of conversation {conversation_id!r}",
            )

        lock = self._write_locks.setdefault(conversation_id, asyncio.Lock())
        try:
            async with lock:
                message = Message(
                    conversation_id=conversation_id,
                    sender_id=sender_id,
                    body=body,
                    timestamp=self.clock.stamp(conversation_id, sender_id),
                )
                message.id = await self.store.add(
                    messages_collection(conversation_id), message.to_document()
                )
        except StoreError as e:
            logger.error("message_write_failed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(ErrorCode.STORE_WRITE_FAILED, str(e))

        logger.info(
            "message_added",
            conversation_id=conversation_id,
            message_id=message.id,
            body_length=len(body),
        )
        return ServiceResult.ok(message)

    async def subscribe(
        self,
        conversation_id: str,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> ServiceResult[MessageSubscription]:
        """Open a live subscription ordered by timestamp."""
        try:
            stream = await self.store.subscribe(messages_collection(conversation_id), "timestamp")
        except StoreError as e:
            logger.error("subscribe_failed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(ErrorCode.SUBSCRIPTION_ERROR, str(e))

        subscription = MessageSubscription(conversation_id, stream, on_message, on_error)
        subscription.start()
        logger.info("subscription_started", conversation_id=conversation_id)
        return ServiceResult.ok(subscription)

    async def history(self, conversation_id: str) -> ServiceResult[List[Message]]:
        """Current messages of a conversation in delivery order."""
        try:
            stream = await self.store.subscribe(messages_collection(conversation_id), "timestamp")
        except StoreError as e:
            logger.error("history_failed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))

        try:
            batch = await stream.next_batch()
        except StoreError as e:
            logger.error("history_failed", conversation_id=conversation_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))
        finally:
            stream.close()
        if batch is None:
            return ServiceResult.ok([])
        return ServiceResult.ok(
            [Message.from_document(conversation_id, d.id, d.data) for d in batch.added]
        )
