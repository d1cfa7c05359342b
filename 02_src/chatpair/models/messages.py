"""Message-related data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class MessageType(str, Enum):
    """Kinds of content a message can carry."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class Message:
    """A single message within a session. Immutable once created."""

    id: str
    session_id: str
    sender_id: str
    sender_name: str
    content: str
    message_type: MessageType
    created_at: datetime
    media_ref: str | None = None


@dataclass(frozen=True)
class Draft:
    """What the sender typed, kept intact until the send is durable."""

    content: str
    message_type: MessageType = MessageType.TEXT
    media_ref: str | None = None

    def validate(self) -> None:
        """Raise InvalidMessage if the draft cannot be sent."""
        from ..errors import InvalidMessage

        if self.message_type == MessageType.TEXT:
            if not self.content.strip():
                raise InvalidMessage("text message must not be empty")
        elif not self.media_ref:
            raise InvalidMessage(
                f"{self.message_type.value} message requires a media reference"
            )
