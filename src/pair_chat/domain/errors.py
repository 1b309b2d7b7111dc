"""Error taxonomy and the result wrapper returned by services.

Services never let store exceptions escape. Every operation hands back a
``ServiceResult``; a failed result carries a ``ChatError`` whose ``code``
tells the kinds apart.

Usage:
    result = await resolver.resolve(self_id, partner_id)
    if result.success:
        conversation_id = result.data
    else:
        print(result.error.code, result.error.message)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Distinguishable failure kinds."""

    INVALID_PARTNER = "INVALID_PARTNER"
    PARTNER_NOT_FOUND = "PARTNER_NOT_FOUND"
    EMPTY_MESSAGE = "EMPTY_MESSAGE"
    NO_ACTIVE_CONVERSATION = "NO_ACTIVE_CONVERSATION"
    LOOKUP_FAILED = "LOOKUP_FAILED"
    SUBSCRIPTION_ERROR = "SUBSCRIPTION_ERROR"
    STORE_WRITE_FAILED = "STORE_WRITE_FAILED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_USER = "INVALID_USER"
    NOT_A_PARTICIPANT = "NOT_A_PARTICIPANT"
    CONVERSATION_NOT_FOUND = "CONVERSATION_NOT_FOUND"


@dataclass(frozen=True)
class ChatError:
    """Error value produced by a failed operation."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Success/failure wrapper for service operations."""

    success: bool
    data: Optional[T] = None
    error: Optional[ChatError] = None

    @classmethod
    def ok(cls, data: T) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "ServiceResult[T]":
        return cls(success=False, error=ChatError(code=code, message=message))

    @property
    def error_code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None


class StoreError(Exception):
    """Raised by a document store when a query, write or stream fails."""
    pass
