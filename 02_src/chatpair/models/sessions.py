"""Session-related data models."""

from dataclasses import dataclass
from datetime import datetime

from .participants import Participant


@dataclass
class Session:
    """An exclusive pairing of two participants."""

    id: str
    participant_a_id: str
    participant_a_name: str
    participant_b_id: str
    participant_b_name: str
    created_at: datetime
    last_activity_at: datetime

    def involves(self, participant_id: str) -> bool:
        return participant_id in (self.participant_a_id, self.participant_b_id)

    def partner_of(self, participant_id: str) -> str:
        """Return the id of the other side of the pairing."""
        if participant_id == self.participant_a_id:
            return self.participant_b_id
        if participant_id == self.participant_b_id:
            return self.participant_a_id
        raise ValueError(f"{participant_id} is not part of session {self.id}")


@dataclass
class SessionSnapshot:
    """Local state persisted across a reload (not across a real exit)."""

    client_key: str
    participant: Participant
    session: Session | None = None
    partner: Participant | None = None
