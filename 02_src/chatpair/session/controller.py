"""SessionController: the user-facing lifecycle of one participant.

UNJOINED -> SEARCHING -> MATCHED -> (SEARCHING | UNJOINED)

The controller owns the LocalState; the engine, listener and channel only
report what happened through the two callbacks below, and every transition
is made here. Each transition advances ``_generation`` before its first
await so that a timer or redelivered event from the previous phase finds
itself stale and does nothing.
"""

import random
import uuid
from typing import Awaitable

from ..config import MatchSettings
from ..errors import InvalidMessage, SendFailure, TransientStoreError
from ..feed import IChangeFeed
from ..llm import ILLMProvider
from ..logging_config import get_logger
from ..matching import MatchmakingEngine
from ..messaging import MessagingChannel
from ..models import (
    ControllerPhase,
    LocalState,
    Message,
    MessageType,
    Participant,
    PresenceStatus,
    Session,
    SessionSnapshot,
)
from ..presence import PresenceTracker
from ..storage import IStorage
from ..storage.storage import Clock, utcnow
from ..synthetic import AIParticipantFactory
from ..synthetic.phrases import AVATAR_COLORS
from ..timers import DeferredAction, Generation
from ..tracing import ITracer, NullTracer
from .listener import SessionEventListener

logger = get_logger(__name__)


class SessionController:
    """Binds presence, matching, events and messaging for one participant."""

    def __init__(
        self,
        storage: IStorage,
        feed: IChangeFeed,
        settings: MatchSettings | None = None,
        tracer: ITracer | None = None,
        llm_provider: ILLMProvider | None = None,
        client_key: str = "default",
        rng: random.Random | None = None,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._feed = feed
        self._settings = settings or MatchSettings()
        self._tracer = tracer or NullTracer()
        self._client_key = client_key
        self._rng = rng or random.Random()
        self._clock = clock

        self._state = LocalState()
        self._generation = Generation()
        self._factory = AIParticipantFactory(
            storage, rng=self._rng, llm_provider=llm_provider
        )
        self._engine = MatchmakingEngine(
            storage,
            self._factory,
            self._state,
            self._settings,
            on_session_formed=self._handle_session_formed,
            tracer=self._tracer,
            clock=clock,
        )
        self._listener = SessionEventListener(
            storage,
            feed,
            self._state,
            on_session_formed=self._handle_session_formed,
            on_partner_lost=self._handle_partner_lost,
        )
        self._presence: PresenceTracker | None = None
        self._channel: MessagingChannel | None = None
        self._rematch: DeferredAction | None = None

    # Presentation surface
    @property
    def client_key(self) -> str:
        return self._client_key

    @property
    def state(self) -> LocalState:
        return self._state

    @property
    def phase(self) -> ControllerPhase:
        return self._state.phase

    @property
    def participant(self) -> Participant | None:
        return self._state.participant

    @property
    def session(self) -> Session | None:
        return self._state.session

    @property
    def partner(self) -> Participant | None:
        return self._state.partner

    @property
    def messages(self) -> list[Message]:
        return self._channel.messages if self._channel else []

    @property
    def draft(self) -> str:
        return self._state.draft

    def set_draft(self, text: str) -> None:
        self._state.draft = text

    @property
    def notice(self) -> str | None:
        return self._state.notice

    @property
    def is_searching(self) -> bool:
        return self._state.participant is not None and not self._state.is_matched

    @property
    def is_matched(self) -> bool:
        return self._state.is_matched

    @property
    def factory(self) -> AIParticipantFactory:
        return self._factory

    @property
    def engine(self) -> MatchmakingEngine:
        return self._engine

    @property
    def presence(self) -> PresenceTracker | None:
        return self._presence

    @property
    def channel(self) -> MessagingChannel | None:
        return self._channel

    # Unjoined -> Searching
    async def join(self, display_name: str) -> Participant:
        """Enter the pool and start searching."""
        if self._state.participant is not None:
            raise RuntimeError("Already joined")
        name = display_name.strip()
        if not name:
            raise ValueError("Display name required")

        participant = Participant(
            id=str(uuid.uuid4()),
            display_name=name,
            avatar_color=self._rng.choice(AVATAR_COLORS),
            status=PresenceStatus.AVAILABLE,
            last_active=self._clock(),
        )
        # Listen first: someone may claim us as soon as the row exists.
        self._state.participant = participant
        self._generation.advance()
        self._listener.start()
        try:
            # The inserted row already reads available, last-active now.
            await self._storage.insert_participant(participant)
        except TransientStoreError:
            self._listener.stop()
            self._state.participant = None
            raise

        self._start_presence()
        await self._persist()

        logger.info("Joined as %s", name, extra={"participant_id": participant.id})
        await self._tracer.track("joined", participant.id, {"display_name": name})
        self._engine.start_searching()
        return participant

    async def resume(self) -> bool:
        """Pick up where a reload left off. False when there is nothing to resume."""
        if self._state.participant is not None:
            return True

        snapshot = await self._storage.get_snapshot(self._client_key)
        if snapshot is None:
            return False

        row = await self._storage.get_participant(snapshot.participant.id)
        if row is None or row.status == PresenceStatus.OFFLINE:
            await self._storage.clear_snapshot(self._client_key)
            return False

        self._state.participant = row
        self._generation.advance()
        self._listener.start()
        self._start_presence()

        if await self._restore_pairing(snapshot, row):
            logger.info("Resumed session", extra={"participant_id": row.id})
            await self._tracer.track(
                "resumed", row.id, {"session_id": self._state.session.id}
            )
            return True

        await self._return_to_pool()
        await self._persist()
        await self._tracer.track("resumed", row.id, {"session_id": None})
        self._engine.start_searching()
        return True

    async def _restore_pairing(self, snapshot: SessionSnapshot, me: Participant) -> bool:
        if snapshot.session is None or snapshot.partner is None:
            return False

        partner = await self._storage.get_participant(snapshot.partner.id)
        if partner is not None and partner.is_synthetic:
            # Synthetic participants do not outlive the process that made them.
            await self._quietly(
                self._storage.delete_participant(partner.id), "drop stale synthetic"
            )
            return False
        if (
            partner is None
            or partner.status != PresenceStatus.MATCHED
            or me.status != PresenceStatus.MATCHED
        ):
            return False

        await self._handle_session_formed(snapshot.session, partner)
        return True

    def _start_presence(self) -> None:
        self._presence = PresenceTracker(
            self._storage,
            self._state.participant.id,
            in_session=lambda: self._state.is_matched,
            settings=self._settings,
            on_expired=self._handle_presence_expired,
        )
        self._presence.start()

    # Searching -> Matched
    async def _handle_session_formed(self, session: Session, partner: Participant) -> None:
        me = self._state.participant
        if me is None or not session.involves(me.id):
            return
        if self._state.session is not None:
            if self._state.session.id != session.id:
                logger.warning(
                    "Ignoring session %s while in %s",
                    session.id,
                    self._state.session.id,
                    extra={"participant_id": me.id},
                )
            return

        self._generation.advance()
        self._engine.stop_searching()
        self._cancel_rematch()
        self._state.release_pending = False
        self._state.session = session
        self._state.partner = partner
        self._state.notice = f"You're now chatting with {partner.display_name}"

        self._channel = MessagingChannel(
            self._storage,
            self._feed,
            session,
            me,
            partner,
            self._settings,
            factory=self._factory,
            clock=self._clock,
        )
        await self._channel.open()
        await self._persist()

        logger.info(
            "Matched with %s",
            partner.display_name,
            extra={"participant_id": me.id, "session_id": session.id},
        )
        await self._tracer.track(
            "matched",
            me.id,
            {
                "session_id": session.id,
                "partner_id": partner.id,
                "synthetic": partner.is_synthetic,
            },
        )

    # Matched -> Searching
    async def _handle_partner_lost(self, row: Participant) -> None:
        partner = self._state.partner
        if partner is None or partner.id != row.id:
            return

        session = self._end_pairing()
        me = self._state.participant
        self._state.notice = "Partner left. Finding a new match..."
        logger.info(
            "Partner %s left",
            partner.id,
            extra={"participant_id": me.id, "session_id": session.id},
        )

        await self._return_to_pool()
        await self._persist()
        await self._tracer.track(
            "partner_lost",
            me.id,
            {"session_id": session.id, "partner_id": partner.id, "status": row.status.value},
        )
        self._schedule_rematch()

    async def skip(self) -> bool:
        """Leave the current partner and look for a new one."""
        partner = self._state.partner
        if partner is None:
            return False

        session = self._end_pairing()
        me = self._state.participant
        self._state.notice = (
            f"Left chat with {partner.display_name}. Looking for someone new..."
        )

        # Our own status change is what tells a human partner we left.
        await self._return_to_pool()
        await self._retire_partner(partner)
        await self._persist()

        logger.info(
            "Skipped %s", partner.id, extra={"participant_id": me.id, "session_id": session.id}
        )
        await self._tracer.track(
            "skipped", me.id, {"session_id": session.id, "partner_id": partner.id}
        )
        self._schedule_rematch()
        return True

    def _end_pairing(self) -> Session:
        """Drop the pairing locally. Synchronous, so duplicates see no partner."""
        session = self._state.session
        self._generation.advance()
        if self._channel:
            self._channel.close()
            self._channel = None
        self._state.clear_pairing()
        return session

    async def _retire_partner(self, partner: Participant) -> None:
        # A human partner returns itself to the pool when it sees us leave;
        # writing its row from here could undo a third party's fresh claim.
        if partner.is_synthetic:
            await self._quietly(self._factory.remove(partner.id), "remove synthetic")

    def _schedule_rematch(self) -> None:
        self._cancel_rematch()
        token = self._generation.token()
        self._rematch = DeferredAction(
            f"rematch:{self._state.participant.id}",
            self._settings.rematch_grace,
            lambda: self._rematch_if_current(token),
        )
        self._rematch.schedule()

    async def _rematch_if_current(self, token: int) -> None:
        if not self._generation.is_current(token):
            return
        if self._state.participant is None or self._state.is_matched:
            return
        self._engine.start_searching()

    def _cancel_rematch(self) -> None:
        if self._rematch:
            self._rematch.cancel()
            self._rematch = None

    # Messaging
    async def send(
        self,
        text: str,
        message_type: MessageType = MessageType.TEXT,
        media_ref: str | None = None,
    ) -> Message:
        """Send a message to the current partner.

        The draft is cleared while the write is in flight and restored
        exactly as typed if it fails.
        """
        channel = self._channel
        if channel is None:
            raise RuntimeError("Not in a session")

        self._state.draft = ""
        try:
            return await channel.send(text, message_type, media_ref)
        except SendFailure as e:
            self._state.draft = e.draft.content
            await self._tracer.track(
                "send_failed",
                self._state.participant.id,
                {"session_id": channel.session.id, "reason": e.reason},
            )
            raise
        except InvalidMessage:
            self._state.draft = text
            raise

    # Matched/Searching -> Unjoined
    async def logout(self) -> None:
        """Leave the pool for good."""
        await self._leave("logged_out", mark_offline=True)

    async def shutdown(self) -> None:
        """The hosting process is ending (a genuine exit)."""
        await self._leave("exited", mark_offline=True)

    async def _handle_presence_expired(self) -> None:
        # The deferred offline write already happened.
        await self._leave("expired", mark_offline=False)

    async def _leave(self, reason: str, mark_offline: bool) -> None:
        me = self._state.participant
        if me is None:
            return

        self._end_pairing()
        self._cancel_rematch()
        self._engine.stop_searching()
        self._listener.stop()
        if self._presence:
            self._presence.stop()

        if mark_offline and self._presence:
            await self._quietly(self._presence.mark_offline(), "mark offline")
        await self._quietly(self._factory.remove_all(), "remove synthetic participants")
        await self._quietly(self._storage.clear_snapshot(self._client_key), "clear snapshot")

        self._state.participant = None
        self._state.draft = ""
        self._state.notice = None
        self._state.release_pending = False
        self._presence = None

        logger.info("Left the pool (%s)", reason, extra={"participant_id": me.id})
        await self._tracer.track(reason, me.id, {})

    # Lifecycle signals from the view
    async def on_visibility_change(self, hidden: bool) -> None:
        if self._presence:
            await self._presence.on_foreground_change(hidden)

    async def on_focus_change(self, focused: bool) -> None:
        if self._presence:
            await self._presence.on_focus_change(focused)

    async def on_unload(self, is_real_exit: bool = False) -> None:
        if self._presence is None:
            return
        if is_real_exit:
            await self.shutdown()
        else:
            await self._presence.on_teardown(is_real_exit=False)

    # Helpers
    async def _persist(self) -> None:
        me = self._state.participant
        if me is None:
            return
        snapshot = SessionSnapshot(
            client_key=self._client_key,
            participant=me,
            session=self._state.session,
            partner=self._state.partner,
        )
        await self._quietly(self._storage.save_snapshot(snapshot), "save snapshot")

    async def _return_to_pool(self) -> None:
        if not await self._quietly(self._presence.mark_available(), "mark available"):
            # Our row still reads matched; the next search attempt releases it.
            self._state.release_pending = True

    async def _quietly(self, operation: Awaitable, what: str) -> bool:
        try:
            await operation
        except TransientStoreError as e:
            logger.warning(
                "Could not %s: %s",
                what,
                e,
                extra={"participant_id": getattr(self._state.participant, "id", None)},
            )
            return False
        return True
