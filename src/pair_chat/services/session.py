"""Per-user chat session: partner selection, sending and live viewing."""

from enum import Enum
from typing import Optional, Protocol

import structlog

from ..domain.errors import ErrorCode, ServiceResult
from ..domain.models import Message
from .directory import UserDirectory
from .messages import ErrorCallback, MessageCallback, MessageStore, MessageSubscription
from .resolver import ConversationResolver

logger = structlog.get_logger()


class IdentityProvider(Protocol):
    """Source of the signed-in user's stable ID."""

    def current_user_id(self) -> Optional[str]:
        ...


class StaticIdentityProvider:
    """Identity provider for a user whose ID is already known."""

    def __init__(self, user_id: Optional[str]) -> None:
        self.user_id = user_id

    def current_user_id(self) -> Optional[str]:
        return self.user_id


class SessionState(str, Enum):
    NO_CONVERSATION = "no_conversation"
    RESOLVING = "resolving"
    ACTIVE = "active"


class ChatSession:
    """Owns the active conversation pointer and its live subscription.

    A session has a single writer: callers must not run ``select_partner``
    or ``send`` concurrently on the same session.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        directory: UserDirectory,
        resolver: ConversationResolver,
        messages: MessageStore,
        on_message: Optional[MessageCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.identity = identity
        self.directory = directory
        self.resolver = resolver
        self.messages = messages
        self.on_message = on_message
        self.on_error = on_error
        self.state = SessionState.NO_CONVERSATION
        self.active_conversation_id: Optional[str] = None
        self.subscription: Optional[MessageSubscription] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.current_user_id()

    def _teardown(self) -> None:
        if self.subscription is not None:
            self.subscription.close()
            self.subscription = None
        self.active_conversation_id = None

    def _abort(self, result: ServiceResult) -> ServiceResult:
        self.state = SessionState.NO_CONVERSATION
        logger.warning("partner_selection_failed", error_code=result.error.code.value)
        return ServiceResult.failure(result.error.code, result.error.message)

    async def select_partner(self, identifier: str) -> ServiceResult[str]:
        """Make the conversation with the named partner the active one.

        ``identifier`` is an email or a username. The previous subscription
        is torn down before anything else happens; on failure the session
        is left without an active conversation.
        """
        user_id = self.user_id
        if user_id is None:
            return ServiceResult.failure(ErrorCode.UNAUTHENTICATED, "no signed-in user")

        self._teardown()
        self.state = SessionState.RESOLVING

        partner = await self.directory.find_partner(identifier)
        if not partner.success:
            return self._abort(partner)

        resolved = await self.resolver.resolve(user_id, partner.data.id)
        if not resolved.success:
            return self._abort(resolved)
        conversation_id = resolved.data

        subscribed = await self.messages.subscribe(
            conversation_id, on_message=self.on_message, on_error=self.on_error
        )
        if not subscribed.success:
            return self._abort(subscribed)

        self.active_conversation_id = conversation_id
        self.subscription = subscribed.data
        self.state = SessionState.ACTIVE
        logger.info(
            "active_conversation_set",
            user_id=user_id,
            partner_id=partner.data.id,
            conversation_id=conversation_id,
        )
        return ServiceResult.ok(conversation_id)

    async def send(self, text: str) -> ServiceResult[Message]:
        """Append text to the active conversation as the current user."""
        if self.active_conversation_id is None:
            return ServiceResult.failure(
                ErrorCode.NO_ACTIVE_CONVERSATION, "no active conversation, select a partner first"
            )
        user_id = self.user_id
        if user_id is None:
            return ServiceResult.failure(ErrorCode.UNAUTHENTICATED, "no signed-in user")
        return await self.messages.append(self.active_conversation_id, user_id, text)

    async def close(self) -> None:
        """Stop live delivery and forget the active conversation."""
        subscription = self.subscription
        self._teardown()
        self.state = SessionState.NO_CONVERSATION
        if subscription is not None:
            await subscription.wait_closed()
