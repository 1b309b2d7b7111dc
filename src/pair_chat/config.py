"""Runtime settings read from the environment."""

import os

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class ChatSettings(BaseModel):
    """Chat service settings."""

    # Key new conversations by the canonical pair id when the store can
    # create transactionally; otherwise fall back to query-then-add.
    use_pair_keys: bool = True
    # Seconds a queued session request may wait for completion.
    request_timeout: float = 30.0
    # Upper bound of queued-but-unfinished requests per session.
    max_pending_requests: int = 100
    # Seconds a session may go without requests or live viewers before it
    # is closed and forgotten.
    session_idle_timeout: float = 300.0

    @classmethod
    def from_env(cls) -> "ChatSettings":
        settings = cls(
            use_pair_keys=_env_flag("PAIRCHAT_USE_PAIR_KEYS", True),
            request_timeout=float(os.getenv("PAIRCHAT_REQUEST_TIMEOUT", "30")),
            max_pending_requests=int(os.getenv("PAIRCHAT_MAX_PENDING_REQUESTS", "100")),
            session_idle_timeout=float(os.getenv("PAIRCHAT_SESSION_IDLE_TIMEOUT", "300")),
        )
        logger.info("settings_loaded", **settings.model_dump())
        return settings
