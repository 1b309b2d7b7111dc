"""Per-session request queue.

Every operation touching a ``ChatSession`` goes through the queue of that
session, so the session sees a single writer even when several HTTP
requests for the same user arrive at once.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

logger = structlog.get_logger()


class QueueFull(Exception):
    """Raised when a session already has too many pending requests."""
    pass


@dataclass
class QueuedRequest:
    """A queued call with the future its caller is waiting on."""

    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future


class SessionRequestQueue:
    """Runs the requests of each session one at a time, in arrival order."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_pending: int = 100,
        idle_timeout: Optional[float] = None,
        on_idle: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self.timeout = timeout
        self.max_pending = max_pending
        # a worker with nothing to do for idle_timeout seconds runs on_idle
        # and exits; None keeps workers for the queue's lifetime
        self.idle_timeout = idle_timeout
        self.on_idle = on_idle
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        logger.info(
            "request_queue_initialized",
            timeout=timeout,
            max_pending=max_pending,
            idle_timeout=idle_timeout,
        )

    def _get_queue(self, session_key: str) -> asyncio.Queue:
        queue = self._queues.get(session_key)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.max_pending)
            self._queues[session_key] = queue
            self._workers[session_key] = asyncio.create_task(self._process_queue(session_key))
        return queue

    async def _process_queue(self, session_key: str) -> None:
        queue = self._queues[session_key]
        try:
            while True:
                try:
                    request = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
                except asyncio.TimeoutError:
                    if self.on_idle is not None:
                        try:
                            await self.on_idle(session_key)
                        except Exception as e:
                            logger.error("idle_hook_failed", session=session_key, error=str(e))
                    if queue.empty():
                        self._retire(session_key, queue)
                        return
                    continue
                try:
                    result = await request.task(*request.args, **request.kwargs)
                    if not request.future.done():
                        request.future.set_result(result)
                except Exception as e:
                    logger.error("request_processing_error", session=session_key, error=str(e))
                    if not request.future.done():
                        request.future.set_exception(e)
                finally:
                    queue.task_done()
        except asyncio.CancelledError:
            logger.info("queue_processor_cancelled", session=session_key)

    def _retire(self, session_key: str, queue: asyncio.Queue) -> None:
        if self._queues.get(session_key) is queue:
            del self._queues[session_key]
            del self._workers[session_key]
        logger.info("queue_processor_retired", session=session_key)

    def is_active(self, session_key: str) -> bool:
        """Whether a worker currently owns this session."""
        return session_key in self._workers

    async def submit(
        self,
        session_key: str,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Queue a call for a session and wait for its result.

        A timeout only stops the wait: the call itself still runs to
        completion, since store writes cannot be cancelled midway.
        """
        queue = self._get_queue(session_key)
        future = asyncio.get_running_loop().create_future()
        try:
            queue.put_nowait(QueuedRequest(task=task, args=args, kwargs=kwargs, future=future))
        except asyncio.QueueFull:
            logger.warning("request_queue_full", session=session_key)
            raise QueueFull(f"too many pending requests for session {session_key}")

        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error("request_timeout", session=session_key)
            raise TimeoutError("Request processing timed out")

    async def cleanup(self) -> None:
        """Cancel every worker and drop the queues."""
        workers = list(self._workers.values())
        for worker in workers:
            if not worker.done():
                worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._queues.clear()
        self._workers.clear()
        logger.info("request_queue_cleaned_up")
