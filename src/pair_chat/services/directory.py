"""User directory backed by the ``users`` collection."""

from typing import Optional

import structlog

from ..domain.errors import ErrorCode, ServiceResult, StoreError
from ..domain.models import USERS, User
from ..repositories.base import DocumentStore

logger = structlog.get_logger()


class UserDirectory:
    """Registers users and finds chat partners by email or username."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def register(self, user_id: str, email: str, username: str) -> ServiceResult[User]:
        """Create the directory entry for a newly signed-up user.

        Email and username must be non-blank and not taken by another user.
        Uniqueness is checked with plain queries, so two concurrent
        registrations can still collide.
        """
        user_id, email, username = user_id.strip(), email.strip(), username.strip()
        if not user_id or not email or not username:
            return ServiceResult.failure(
                ErrorCode.INVALID_USER, "user id, email and username are required"
            )

        try:
            for field_name, value in (("email", email), ("username", username)):
                taken = await self.store.query(USERS, field_name, value)
                if any(doc.id != user_id for doc in taken):
                    logger.warning("registration_conflict", field=field_name, user_id=user_id)
                    return ServiceResult.failure(
                        ErrorCode.INVALID_USER, f"{field_name} {value!r} is already registered"
                    )
        except StoreError as e:
            logger.error("registration_lookup_failed", user_id=user_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))

        user = User(id=user_id, email=email, username=username)
        try:
            await self.store.set(USERS, user_id, user.to_document())
        except StoreError as e:
            logger.error("registration_write_failed", user_id=user_id, error=str(e))
            return ServiceResult.failure(ErrorCode.STORE_WRITE_FAILED, str(e))

        logger.info("user_registered", user_id=user_id)
        return ServiceResult.ok(user)

    async def get(self, user_id: str) -> ServiceResult[Optional[User]]:
        """Fetch a user by ID; data is None when no such user exists."""
        try:
            doc = await self.store.get(USERS, user_id)
        except StoreError as e:
            logger.error("user_lookup_failed", user_id=user_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))
        return ServiceResult.ok(User.from_document(doc.id, doc.data) if doc else None)

    async def find_partner(self, identifier: str) -> ServiceResult[User]:
        """Match identifier as an exact email first, then as a username.

        When several users match, the first one the store returns wins.
        """
        identifier = identifier.strip()
        if not identifier:
            return ServiceResult.failure(ErrorCode.PARTNER_NOT_FOUND, "identifier is empty")

        try:
            for field_name in ("email", "username"):
                matches = await self.store.query(USERS, field_name, identifier)
                if matches:
                    if len(matches) > 1:
                        logger.warning(
                            "ambiguous_partner_lookup",
                            field=field_name,
                            matches=len(matches),
                        )
                    first = matches[0]
                    logger.debug("partner_found", field=field_name, partner_id=first.id)
                    return ServiceResult.ok(User.from_document(first.id, first.data))
        except StoreError as e:
            logger.error("partner_lookup_failed", error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))

        logger.warning("partner_not_found")
        return ServiceResult.failure(
            ErrorCode.PARTNER_NOT_FOUND, f"no user found with email or username {identifier!r}"
        )
