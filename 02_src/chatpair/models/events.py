"""Change-feed data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

from .messages import Message
from .participants import Participant
from .sessions import Session


class Topic(str, Enum):
    """Change-feed topics, one per observable store change."""

    PARTICIPANT_INSERTED = "participant_inserted"
    PARTICIPANT_UPDATED = "participant_updated"
    PARTICIPANT_DELETED = "participant_deleted"
    SESSION_CREATED = "session_created"
    MESSAGE_CREATED = "message_created"


Record = Union[Participant, Session, Message]


@dataclass
class ChangeEvent:
    """A notification about a row written to the store."""

    id: str
    topic: Topic
    record: Record
    timestamp: datetime
