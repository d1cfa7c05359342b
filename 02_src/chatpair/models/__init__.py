"""Core data models for chatpair."""

from .events import ChangeEvent, Record, Topic
from .messages import Draft, Message, MessageType
from .participants import Participant, PresenceStatus, is_synthetic_id
from .sessions import Session, SessionSnapshot
from .local_state import ControllerPhase, LocalState
from .tracing import TraceEvent

__all__ = [
    # Participants
    "Participant",
    "PresenceStatus",
    "is_synthetic_id",
    # Sessions
    "Session",
    "SessionSnapshot",
    # Messages
    "Message",
    "MessageType",
    "Draft",
    # Change feed
    "ChangeEvent",
    "Record",
    "Topic",
    # Local state
    "ControllerPhase",
    "LocalState",
    # Tracing
    "TraceEvent",
]
