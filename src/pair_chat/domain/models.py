"""Domain models for the chat application."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def pair_key(user_a: str, user_b: str) -> str:
    """Canonical identifier for an unordered pair of users."""
    first, second = sorted((user_a, user_b))
    return f"{first}_{second}"


class User(BaseModel):
    """Directory entry for a registered user."""

    id: str
    email: str
    username: str

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "User":
        return cls(id=doc_id, email=data.get("email", ""), username=data.get("username", ""))

    def to_document(self) -> Dict[str, Any]:
        return {"email": self.email, "username": self.username}


class Conversation(BaseModel):
    """Two-party conversation."""

    id: str
    participants: List[str]

    @field_validator("participants")
    @classmethod
    def _two_distinct_participants(cls, value: List[str]) -> List[str]:
        if len(value) != 2 or value[0] == value[1]:
            raise ValueError("a conversation has exactly two distinct participants")
        return value

    def includes(self, user_id: str) -> bool:
        return user_id in self.participants

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Conversation":
        return cls(id=doc_id, participants=list(data.get("participants") or []))


class Message(BaseModel):
    """Message model.

    Field aliases match the persisted layout (``senderId``, ``message``,
    ``timestamp``) so documents written by other clients stay readable.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    conversation_id: str
    sender_id: str = Field(alias="senderId")
    body: str = Field(alias="message")
    timestamp: int  # milliseconds since the epoch

    @classmethod
    def from_document(
        cls, conversation_id: str, doc_id: str, data: Dict[str, Any]
    ) -> "Message":
        return cls(
            id=doc_id,
            conversation_id=conversation_id,
            senderId=data["senderId"],
            message=data["message"],
            timestamp=int(data["timestamp"]),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "senderId": self.sender_id,
            "message": self.body,
            "timestamp": self.timestamp,
        }


def messages_collection(conversation_id: str) -> str:
    """Collection path holding the messages of a conversation."""
    return f"conversations/{conversation_id}/messages"


USERS = "users"
CONVERSATIONS = "conversations"
