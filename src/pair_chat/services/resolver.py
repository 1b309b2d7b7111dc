"""Find-or-create the single conversation between two users."""

import structlog

from ..domain.errors import ErrorCode, ServiceResult, StoreError
from ..domain.models import CONVERSATIONS, pair_key
from ..repositories.base import DocumentStore
from .directory import UserDirectory

logger = structlog.get_logger()


class ConversationResolver:
    """Resolves a pair of users to their conversation ID.

    Lookup scans the conversations that include the caller. When nothing
    matches, a new conversation is created: under the canonical pair key
    if the store can create transactionally (so racing resolutions converge
    on one document), otherwise with a plain add, which leaves a narrow
    window where two racing resolutions each create a conversation.
    """

    def __init__(
        self,
        store: DocumentStore,
        directory: UserDirectory,
        use_pair_keys: bool = True,
    ) -> None:
        self.store = store
        self.directory = directory
        self.use_pair_keys = use_pair_keys and store.supports_create_if_absent

    async def resolve(self, self_id: str, partner_id: str) -> ServiceResult[str]:
        """Return the conversation ID for the pair, creating it when absent."""
        if self_id == partner_id:
            return ServiceResult.failure(
                ErrorCode.INVALID_PARTNER, "cannot start a conversation with yourself"
            )

        partner = await self.directory.get(partner_id)
        if not partner.success:
            return ServiceResult.failure(partner.error.code, partner.error.message)
        if partner.data is None:
            logger.warning("resolve_unknown_partner", partner_id=partner_id)
            return ServiceResult.failure(
                ErrorCode.INVALID_PARTNER, f"user {partner_id!r} does not exist"
            )

        try:
            candidates = await self.store.query_array_contains(
                CONVERSATIONS, "participants", self_id
            )
        except StoreError as e:
            logger.error("conversation_lookup_failed", user_id=self_id, error=str(e))
            return ServiceResult.failure(ErrorCode.LOOKUP_FAILED, str(e))

        for doc in candidates:
            if partner_id in (doc.data.get("participants") or []):
                logger.debug("conversation_found", conversation_id=doc.id)
                return ServiceResult.ok(doc.id)

        data = {"participants": [self_id, partner_id]}
        try:
            if self.use_pair_keys:
                doc, created = await self.store.create_if_absent(
                    CONVERSATIONS, pair_key(self_id, partner_id), data
                )
                conversation_id = doc.id
                if sorted(doc.data.get("participants") or []) != sorted((self_id, partner_id)):
                    # ids containing the separator can map two pairs to one key
                    logger.warning("pair_key_collision", conversation_id=doc.id)
                    conversation_id = await self.store.add(CONVERSATIONS, data)
                    created = True
            else:
                conversation_id = await self.store.add(CONVERSATIONS, data)
                created = True
        except StoreError as e:
            logger.error("conversation_create_failed", user_id=self_id, error=str(e))
            return ServiceResult.failure(ErrorCode.STORE_WRITE_FAILED, str(e))

        if created:
            logger.info("conversation_created", conversation_id=conversation_id)
        else:
            logger.info("conversation_create_raced", conversation_id=conversation_id)
        return ServiceResult.ok(conversation_id)
