"""
FastAPI Application Module

Hosts chat sessions over HTTP and streams conversations over WebSocket.
The caller's identity comes from the ``X-User-Id`` header, set by whatever
authenticates the request upstream.

Key Features:
- One ChatSession per registered user, driven through a per-session request
  queue and released when idle
- Live, ordered message delivery over WebSocket, per conversation or
  following the caller's session
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, WebSocket
from fastapi import WebSocketDisconnect
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import ChatSettings
from ..domain.errors import ChatError, ErrorCode, ServiceResult
from ..domain.models import Message, User
from ..repositories.base import DocumentStore
from ..repositories.memory import InMemoryDocumentStore
from ..services.directory import UserDirectory
from ..services.messages import MessageStore
from ..services.resolver import ConversationResolver
from ..services.session import ChatSession, SessionState, StaticIdentityProvider
from .request_queue import QueueFull, SessionRequestQueue

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests by path", ["path"], registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests by error code", ["code"], registry=CUSTOM_REGISTRY)
MESSAGES_SENT = Counter("messages_sent_total", "Messages appended", registry=CUSTOM_REGISTRY)
MESSAGES_DELIVERED = Counter(
    "messages_delivered_total", "Messages delivered to live subscribers", registry=CUSTOM_REGISTRY
)
CONVERSATIONS_RESOLVED = Counter(
    "conversations_resolved_total", "Successful partner selections", registry=CUSTOM_REGISTRY
)

logger = get_logger()

_VIEWER_CLOSED = object()

_STATUS_BY_CODE = {
    ErrorCode.INVALID_PARTNER: 422,
    ErrorCode.PARTNER_NOT_FOUND: 404,
    ErrorCode.EMPTY_MESSAGE: 422,
    ErrorCode.NO_ACTIVE_CONVERSATION: 409,
    ErrorCode.LOOKUP_FAILED: 502,
    ErrorCode.SUBSCRIPTION_ERROR: 502,
    ErrorCode.STORE_WRITE_FAILED: 502,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.INVALID_USER: 422,
    ErrorCode.NOT_A_PARTICIPANT: 403,
    ErrorCode.CONVERSATION_NOT_FOUND: 404,
}


class UserCreate(BaseModel):
    """Directory entry for the calling user"""
    email: str
    username: str


class PartnerSelect(BaseModel):
    """Email or username of the chat partner"""
    identifier: str


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    text: str


class SessionView(BaseModel):
    state: SessionState
    conversation_id: Optional[str] = None


class ConversationRef(BaseModel):
    conversation_id: str


def _unwrap(result: ServiceResult):
    """Return the result data or raise the HTTP error matching its code."""
    if result.success:
        return result.data
    ERRORS.labels(code=result.error.code.value).inc()
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(result.error.code, 500),
        detail={"code": result.error.code.value, "message": result.error.message},
    )


def require_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity from the X-User-Id header"""
    if not x_user_id or not x_user_id.strip():
        ERRORS.labels(code=ErrorCode.UNAUTHENTICATED.value).inc()
        raise HTTPException(
            status_code=401,
            detail={"code": ErrorCode.UNAUTHENTICATED.value, "message": "missing X-User-Id"},
        )
    return x_user_id.strip()


class ChatService:
    """Shared services and the live sessions of one application instance.

    Sessions exist only for registered users. A session is forgotten once a
    partner selection leaves it without a conversation, when the user ends
    it, or after ``session_idle_timeout`` seconds without requests while no
    live viewer is attached.
    """

    def __init__(self, store: DocumentStore, settings: ChatSettings) -> None:
        self.store = store
        self.settings = settings
        self.directory = UserDirectory(store)
        self.resolver = ConversationResolver(store, self.directory, use_pair_keys=settings.use_pair_keys)
        self.messages = MessageStore(store)
        self.queue = SessionRequestQueue(
            timeout=settings.request_timeout,
            max_pending=settings.max_pending_requests,
            idle_timeout=settings.session_idle_timeout,
            on_idle=self.release,
        )
        self.sessions: Dict[str, ChatSession] = {}
        self.viewers: Dict[str, Set[asyncio.Queue]] = {}

    async def registered(self, user_id: str) -> ServiceResult:
        found = await self.directory.get(user_id)
        if not found.success:
            return found
        if found.data is None:
            return ServiceResult.failure(
                ErrorCode.UNAUTHENTICATED, f"user {user_id!r} is not registered"
            )
        return found

    def _new_session(self, user_id: str) -> ChatSession:
        session = ChatSession(
            StaticIdentityProvider(user_id),
            self.directory,
            self.resolver,
            self.messages,
            on_message=lambda message: self._fan_out(user_id, message),
            on_error=lambda error: self._fan_out_error(user_id, error),
        )
        self.sessions[user_id] = session
        logger.info("session_created", user_id=user_id)
        return session

    def _forget(self, user_id: str) -> Optional[ChatSession]:
        session = self.sessions.pop(user_id, None)
        if session is not None:
            logger.info("session_released", user_id=user_id)
        return session

    def _fan_out(self, user_id: str, message: Message) -> None:
        for inbox in self.viewers.get(user_id, ()):
            inbox.put_nowait(message)

    def _fan_out_error(self, user_id: str, error: ChatError) -> None:
        ERRORS.labels(code=error.code.value).inc()
        for inbox in self.viewers.get(user_id, ()):
            inbox.put_nowait(error)

    async def _dispatch(self, user_id: str, operation, create: bool) -> ServiceResult:
        session = self.sessions.get(user_id)
        if session is None:
            if not create:
                return ServiceResult.failure(
                    ErrorCode.NO_ACTIVE_CONVERSATION, "no active conversation, select a partner first"
                )
            session = self._new_session(user_id)
        result = await operation(session)
        if session.state == SessionState.NO_CONVERSATION and not self.viewers.get(user_id):
            self._forget(user_id)
        return result

    async def run(self, user_id: str, operation, create: bool = True) -> ServiceResult:
        """Run ``operation(session)`` through the queue of the user's session.

        Unregistered callers are refused before anything is queued.
        """
        if user_id not in self.sessions and not self.queue.is_active(user_id):
            registered = await self.registered(user_id)
            if not registered.success:
                return registered
        try:
            return await self.queue.submit(user_id, self._dispatch, user_id, operation, create)
        except QueueFull:
            raise HTTPException(status_code=429, detail="Too many pending requests")
        except TimeoutError:
            raise HTTPException(status_code=408, detail="Request timeout")

    async def end_session(self, user_id: str) -> None:
        """Close the user's session and forget it."""
        if user_id not in self.sessions and not self.queue.is_active(user_id):
            return

        async def _close(session: ChatSession) -> ServiceResult:
            await session.close()
            self._forget(user_id)
            return ServiceResult.ok(None)

        await self.run(user_id, _close, create=False)

    async def release(self, user_id: str) -> None:
        """Forget the user's session unless a live viewer is attached."""
        if self.viewers.get(user_id):
            return
        session = self._forget(user_id)
        if session is not None:
            await session.close()

    def attach_viewer(self, user_id: str) -> asyncio.Queue:
        inbox: asyncio.Queue = asyncio.Queue()
        self.viewers.setdefault(user_id, set()).add(inbox)
        return inbox

    async def detach_viewer(self, user_id: str, inbox: asyncio.Queue) -> None:
        inboxes = self.viewers.get(user_id)
        if inboxes is not None:
            inboxes.discard(inbox)
            if not inboxes:
                del self.viewers[user_id]
        # an idle worker would have skipped the release while this viewer
        # was attached
        if not self.queue.is_active(user_id):
            await self.release(user_id)

    async def shutdown(self) -> None:
        await self.queue.cleanup()
        for session in list(self.sessions.values()):
            await session.close()
        self.sessions.clear()


async def _stop_watcher(websocket: WebSocket, watcher: asyncio.Task, **context) -> None:
    """Stop a disconnect watcher and collect its outcome."""
    watcher.cancel()
    (outcome,) = await asyncio.gather(watcher, return_exceptions=True)
    if isinstance(outcome, Exception):
        # the client sent something other than a text frame
        logger.warning("stream_receive_failed", error=repr(outcome), **context)
        await websocket.close(code=1003)


def create_app(
    store: Optional[DocumentStore] = None,
    settings: Optional[ChatSettings] = None,
) -> FastAPI:
    """Build the API around a document store (in-memory by default)"""
    service = ChatService(store or InMemoryDocumentStore(), settings or ChatSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        logger.info("application_startup_complete")
        yield
        await service.shutdown()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="PairChat API",
        description="Two-party conversations with live, ordered message delivery",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.chat = service

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests"""
        REQUESTS.labels(path=request.url.path).inc()
        logger.info("request_started", path=request.url.path)
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise

    @app.post("/users", response_model=User)
    async def register_user(payload: UserCreate, user_id: str = Depends(require_user)) -> User:
        """Registers the caller in the user directory"""
        return _unwrap(await service.directory.register(user_id, payload.email, payload.username))

    @app.get("/session", response_model=SessionView)
    async def get_session(user_id: str = Depends(require_user)) -> SessionView:
        """Current state of the caller's session"""
        session = service.sessions.get(user_id)
        if session is None:
            return SessionView(state=SessionState.NO_CONVERSATION)
        return SessionView(state=session.state, conversation_id=session.active_conversation_id)

    @app.delete("/session", status_code=204)
    async def end_session(user_id: str = Depends(require_user)) -> Response:
        """Ends the caller's session and its live subscription"""
        await service.end_session(user_id)
        return Response(status_code=204)

    @app.post("/session/partner", response_model=ConversationRef)
    async def select_partner(
        payload: PartnerSelect, user_id: str = Depends(require_user)
    ) -> ConversationRef:
        """Finds or creates the conversation with a partner and makes it active"""
        result = await service.run(user_id, lambda session: session.select_partner(payload.identifier))
        conversation_id = _unwrap(result)
        CONVERSATIONS_RESOLVED.inc()
        return ConversationRef(conversation_id=conversation_id)

    @app.post("/session/messages", response_model=Message)
    async def send_message(payload: MessageCreate, user_id: str = Depends(require_user)) -> Message:
        """Appends a message to the caller's active conversation"""
        result = await service.run(user_id, lambda session: session.send(payload.text), create=False)
        message = _unwrap(result)
        MESSAGES_SENT.inc()
        return message

    @app.get("/conversations/{conversation_id}/messages", response_model=List[Message])
    async def get_messages(
        conversation_id: str, user_id: str = Depends(require_user)
    ) -> List[Message]:
        """Gets the ordered message history of a conversation"""
        conversation = _unwrap(await service.messages.conversation(conversation_id))
        if not conversation.includes(user_id):
            _unwrap(ServiceResult.failure(ErrorCode.NOT_A_PARTICIPANT, "not a participant"))
        return _unwrap(await service.messages.history(conversation_id))

    @app.websocket("/conversations/{conversation_id}/stream")
    async def stream_messages(websocket: WebSocket, conversation_id: str):
        """Streams existing and new messages of a conversation in order"""
        user_id = (websocket.headers.get("x-user-id") or "").strip()
        conversation = await service.messages.conversation(conversation_id)
        if not user_id or not conversation.success or not conversation.data.includes(user_id):
            logger.warning("stream_rejected", conversation_id=conversation_id, user_id=user_id)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        subscribed = await service.messages.subscribe(conversation_id)
        if not subscribed.success:
            await websocket.send_json({"error": subscribed.error.code.value})
            await websocket.close(code=1011)
            return
        subscription = subscribed.data

        async def watch_disconnect() -> None:
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                subscription.close()

        watcher = asyncio.create_task(watch_disconnect())
        try:
            async for message in subscription.messages():
                await websocket.send_json(message.model_dump(mode="json", by_alias=True))
                MESSAGES_DELIVERED.inc()
            if subscription.error is not None:
                ERRORS.labels(code=subscription.error.code.value).inc()
                await websocket.send_json(
                    {"error": subscription.error.code.value, "message": subscription.error.message}
                )
                await websocket.close(code=1011)
        except WebSocketDisconnect:
            logger.info("stream_disconnected", conversation_id=conversation_id)
        finally:
            subscription.close()
            await _stop_watcher(websocket, watcher, conversation_id=conversation_id)

    @app.websocket("/session/stream")
    async def stream_session(websocket: WebSocket):
        """Streams whatever the caller's session delivers, across partner changes"""
        user_id = (websocket.headers.get("x-user-id") or "").strip()
        registered = await service.registered(user_id) if user_id else None
        if registered is None or not registered.success:
            logger.warning("session_stream_rejected", user_id=user_id)
            await websocket.close(code=1008)
            return

        inbox = service.attach_viewer(user_id)
        await websocket.accept()

        async def watch_disconnect() -> None:
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                inbox.put_nowait(_VIEWER_CLOSED)

        watcher = asyncio.create_task(watch_disconnect())
        try:
            while True:
                item = await inbox.get()
                if item is _VIEWER_CLOSED:
                    break
                if isinstance(item, ChatError):
                    await websocket.send_json({"error": item.code.value, "message": item.message})
                    continue
                await websocket.send_json(item.model_dump(mode="json", by_alias=True))
                MESSAGES_DELIVERED.inc()
        except WebSocketDisconnect:
            logger.info("session_stream_disconnected", user_id=user_id)
        finally:
            await _stop_watcher(websocket, watcher, user_id=user_id)
            await service.detach_viewer(user_id, inbox)

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app
