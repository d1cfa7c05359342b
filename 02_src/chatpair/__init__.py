"""chatpair: anonymous one-to-one chat pairing."""

from .app import Application, IApplication
from .config import MatchSettings
from .errors import ChatPairError, InvalidMessage, SendFailure, TransientStoreError
from .feed import ChangeFeed, IChangeFeed
from .models import (
    ChangeEvent,
    ControllerPhase,
    Draft,
    LocalState,
    Message,
    MessageType,
    Participant,
    PresenceStatus,
    Session,
    SessionSnapshot,
    Topic,
    TraceEvent,
)
from .session import SessionController
from .storage import IStorage, Storage

__all__ = [
    # Application
    "Application",
    "IApplication",
    "MatchSettings",
    "SessionController",
    # Infrastructure
    "ChangeFeed",
    "IChangeFeed",
    "IStorage",
    "Storage",
    # Errors
    "ChatPairError",
    "InvalidMessage",
    "SendFailure",
    "TransientStoreError",
    # Models
    "ChangeEvent",
    "ControllerPhase",
    "Draft",
    "LocalState",
    "Message",
    "MessageType",
    "Participant",
    "PresenceStatus",
    "Session",
    "SessionSnapshot",
    "Topic",
    "TraceEvent",
]
