"""Local (per participant instance) session state."""

from dataclasses import dataclass
from enum import Enum

from .participants import Participant
from .sessions import Session


class ControllerPhase(str, Enum):
    """Lifecycle phases of one participant's instance."""

    UNJOINED = "unjoined"
    SEARCHING = "searching"
    MATCHED = "matched"


@dataclass
class LocalState:
    """State shared by the components of one instance.

    Mutated only from the event loop that runs the instance.
    """

    participant: Participant | None = None
    session: Session | None = None
    partner: Participant | None = None
    draft: str = ""
    notice: str | None = None
    # Our row may still read matched after a failed release.
    release_pending: bool = False

    @property
    def phase(self) -> ControllerPhase:
        if self.participant is None:
            return ControllerPhase.UNJOINED
        if self.session is None:
            return ControllerPhase.SEARCHING
        return ControllerPhase.MATCHED

    @property
    def is_matched(self) -> bool:
        return self.session is not None

    @property
    def partner_is_synthetic(self) -> bool:
        return self.partner is not None and self.partner.is_synthetic

    def clear_pairing(self) -> None:
        self.session = None
        self.partner = None
