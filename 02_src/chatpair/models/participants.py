"""Participant-related data models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from ..config import SYNTHETIC_PREFIX


class PresenceStatus(str, Enum):
    """Presence states of a participant row."""

    AVAILABLE = "available"
    MATCHED = "matched"
    OFFLINE = "offline"


@dataclass
class Participant:
    """An identity in the matching pool, human or synthetic."""

    id: str
    display_name: str
    status: PresenceStatus
    last_active: datetime
    avatar_color: str | None = None
    created_at: datetime | None = None

    @property
    def is_synthetic(self) -> bool:
        return is_synthetic_id(self.id)


def is_synthetic_id(participant_id: str) -> bool:
    """True when the id lives in the synthetic namespace."""
    return participant_id.startswith(SYNTHETIC_PREFIX)
