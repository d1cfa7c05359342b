"""SessionEventListener: reacts to changes the participant did not cause."""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol

from ..errors import TransientStoreError
from ..feed import IChangeFeed, Subscription
from ..logging_config import get_logger
from ..models import ChangeEvent, LocalState, Participant, PresenceStatus, Session, Topic
from ..storage import IStorage

logger = get_logger(__name__)


SessionFormed = Callable[[Session, Participant], Awaitable[None]]
PartnerLost = Callable[[Participant], Awaitable[None]]


class ISessionEventListener(Protocol):
    """Subscriptions that drive the remote half of the lifecycle."""

    def start(self) -> None:
        """Subscribe to session and partner-presence events."""
        ...

    def stop(self) -> None:
        """Cancel all subscriptions."""
        ...


class SessionEventListener:
    """Watches for sessions formed by others and for partner departure.

    This is the only place that notices a partner leaving without local
    action.
    """

    def __init__(
        self,
        storage: IStorage,
        feed: IChangeFeed,
        state: LocalState,
        on_session_formed: SessionFormed,
        on_partner_lost: PartnerLost,
    ):
        self._storage = storage
        self._feed = feed
        self._state = state
        self._on_session_formed = on_session_formed
        self._on_partner_lost = on_partner_lost
        self._subscriptions: list[Subscription] = []

    @property
    def active(self) -> bool:
        return bool(self._subscriptions)

    def start(self) -> None:
        """Subscribe to session and partner-presence events."""
        if self._subscriptions:
            return
        self._subscriptions = [
            self._feed.subscribe(
                Topic.SESSION_CREATED,
                self._handle_session_created,
                where=self._is_my_session,
            ),
            self._feed.subscribe(
                Topic.PARTICIPANT_UPDATED,
                self._handle_participant_updated,
                where=self._is_about_partner,
            ),
        ]

    def stop(self) -> None:
        """Cancel all subscriptions."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    def _is_my_session(self, event: ChangeEvent) -> bool:
        me = self._state.participant
        return me is not None and event.record.involves(me.id)

    def _is_about_partner(self, event: ChangeEvent) -> bool:
        partner = self._state.partner
        return partner is not None and event.record.id == partner.id

    def _is_current(self, session: Session) -> bool:
        return self._state.session is not None and self._state.session.id == session.id

    async def _handle_session_created(self, event: ChangeEvent) -> None:
        session: Session = event.record
        me = self._state.participant
        if me is None or self._is_current(session):
            return

        partner = await self._resolve_partner(session, session.partner_of(me.id))

        # Redelivery may have been handled while the profile was loading.
        if self._is_current(session):
            return

        logger.info(
            "Session formed by partner",
            extra={"participant_id": me.id, "session_id": session.id},
        )
        await self._on_session_formed(session, partner)

    async def _resolve_partner(self, session: Session, partner_id: str) -> Participant:
        try:
            partner = await self._storage.get_participant(partner_id)
        except TransientStoreError as e:
            logger.warning("Partner profile unavailable: %s", e)
            partner = None

        if partner is not None:
            return partner

        # Fall back to what the session row knows about the partner.
        name = (
            session.participant_a_name
            if partner_id == session.participant_a_id
            else session.participant_b_name
        )
        return Participant(
            id=partner_id,
            display_name=name,
            status=PresenceStatus.MATCHED,
            last_active=datetime.now(timezone.utc),
        )

    async def _handle_participant_updated(self, event: ChangeEvent) -> None:
        row: Participant = event.record
        partner = self._state.partner
        if partner is None or row.id != partner.id or partner.is_synthetic:
            return

        if row.status == PresenceStatus.MATCHED:
            partner.last_active = row.last_active
            return

        # offline: the partner went away; available: the partner skipped.
        logger.info(
            "Partner %s is now %s",
            row.id,
            row.status.value,
            extra={"partner_id": row.id},
        )
        await self._on_partner_lost(row)
