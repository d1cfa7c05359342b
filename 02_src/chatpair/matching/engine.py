"""MatchmakingEngine: turns "I want a partner" into exactly one Session."""

from datetime import timedelta
from enum import Enum
from typing import Awaitable, Callable, Protocol

from ..config import MatchSettings
from ..errors import TransientStoreError
from ..logging_config import get_logger
from ..models import LocalState, Participant, PresenceStatus, Session
from ..storage import IStorage
from ..storage.storage import Clock, utcnow
from ..synthetic import IAIParticipantFactory
from ..timers import PeriodicTask
from ..tracing import ITracer, NullTracer

logger = get_logger(__name__)


SessionFormed = Callable[[Session, Participant], Awaitable[None]]

# Consecutive attempts that find our own row claimed, with no session
# arriving, before the claim is treated as orphaned.
ORPHANED_CLAIM_ATTEMPTS = 3


class ClaimOutcome(str, Enum):
    """Result of trying to claim a candidate together with ourselves."""

    PAIRED = "paired"
    CONFLICT = "conflict"  # the candidate is taken
    CLAIMED = "claimed"  # we are taken


class IMatchmakingEngine(Protocol):
    """Pairs the current participant with exactly one partner."""

    @property
    def is_searching(self) -> bool:
        """True while the periodic search is running."""
        ...

    async def find_match(self) -> Session | None:
        """One matching attempt."""
        ...

    def start_searching(self) -> None:
        """Start the periodic search (first attempt fires immediately)."""
        ...

    def stop_searching(self) -> None:
        """Stop the periodic search."""
        ...


class MatchmakingEngine:
    """Claim-protocol matchmaking for one participant.

    A participant is only ever paired after the conditional write
    ``available -> matched`` succeeded for it, so two searchers can never
    both walk away with the same third party. The two rows of a pair are
    always claimed lower id first, so two searchers racing for each other
    contend on the same row and exactly one of them completes the pair.
    """

    def __init__(
        self,
        storage: IStorage,
        factory: IAIParticipantFactory,
        state: LocalState,
        settings: MatchSettings,
        on_session_formed: SessionFormed,
        tracer: ITracer | None = None,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._factory = factory
        self._state = state
        self._settings = settings
        self._on_session_formed = on_session_formed
        self._tracer = tracer or NullTracer()
        self._clock = clock
        self._search: PeriodicTask | None = None
        self._claimed_attempts = 0

    @property
    def is_searching(self) -> bool:
        return self._search is not None and self._search.running

    def start_searching(self) -> None:
        """Start the periodic search (first attempt fires immediately)."""
        me = self._state.participant
        if me is None or self._state.is_matched or self.is_searching:
            return

        self._claimed_attempts = 0
        self._search = PeriodicTask(
            f"search:{me.id}",
            self._settings.search_interval,
            self._search_tick,
            fire_immediately=True,
        )
        self._search.start()
        logger.info("Searching for a partner", extra={"participant_id": me.id})

    def stop_searching(self) -> None:
        """Stop the periodic search."""
        if self._search is not None:
            self._search.stop()
            self._search = None

    async def _search_tick(self) -> None:
        await self.find_match()
        if self._state.is_matched:
            self.stop_searching()

    async def find_match(self) -> Session | None:
        """One matching attempt.

        Returns the new session, or None when nothing was formed by this
        call (store trouble, a contended pool, or someone else claimed us).
        """
        me = self._state.participant
        if me is None or self._state.is_matched:
            return None

        try:
            if self._state.release_pending:
                await self._release_self(me)
            elif await self._held_elsewhere(me):
                return None

            candidates = await self._storage.find_candidates(
                exclude_id=me.id,
                active_since=self._clock()
                - timedelta(seconds=self._settings.freshness_window),
                limit=self._settings.candidate_batch,
            )

            contended = False
            for candidate in candidates:
                outcome = await self._claim_pair(me, candidate)
                if outcome is ClaimOutcome.PAIRED:
                    return await self._open_session(me, candidate)
                if outcome is ClaimOutcome.CLAIMED:
                    logger.info(
                        "Claimed by another searcher", extra={"participant_id": me.id}
                    )
                    return None

                contended = True
                logger.debug(
                    "Claim conflict on %s, trying next candidate",
                    candidate.id,
                    extra={"participant_id": me.id},
                )
                await self._tracer.track(
                    "claim_conflict", me.id, {"candidate_id": candidate.id}
                )

            # A conflicting candidate may be about to claim us; retry next tick.
            if contended or not self._settings.synthetic_fallback:
                return None
            return await self._pair_with_synthetic(me)

        except TransientStoreError as e:
            logger.warning(
                "Match attempt abandoned: %s", e, extra={"participant_id": me.id}
            )
            return None

    async def _claim_pair(self, me: Participant, candidate: Participant) -> ClaimOutcome:
        """Claim both rows, lower id first."""
        first, second = sorted((me.id, candidate.id))

        if not await self._storage.claim_participant(first):
            return ClaimOutcome.CLAIMED if first == me.id else ClaimOutcome.CONFLICT

        try:
            claimed = await self._storage.claim_participant(second)
        except TransientStoreError:
            await self._release_quietly(first)
            raise
        if claimed:
            return ClaimOutcome.PAIRED

        await self._release_quietly(first)
        return ClaimOutcome.CLAIMED if second == me.id else ClaimOutcome.CONFLICT

    async def _held_elsewhere(self, me: Participant) -> bool:
        """True while our own row reads matched with no session for us.

        A live claimer finishes its session within one attempt, and the
        session event reaches us before our next tick, so a claim seen on
        several consecutive attempts is orphaned and gets released.
        """
        row = await self._storage.get_participant(me.id)
        if row is None or row.status != PresenceStatus.MATCHED:
            self._claimed_attempts = 0
            return False

        self._claimed_attempts += 1
        if self._claimed_attempts < ORPHANED_CLAIM_ATTEMPTS:
            logger.info("Claimed by another searcher", extra={"participant_id": me.id})
            return True

        logger.warning(
            "Own row stuck in matched with no session, releasing",
            extra={"participant_id": me.id},
        )
        await self._release_self(me)
        return False

    async def _release_self(self, me: Participant) -> None:
        """Put our own row back in the pool."""
        await self._storage.release_participant(me.id)
        self._state.release_pending = False
        self._claimed_attempts = 0
        logger.info("Returned to the pool", extra={"participant_id": me.id})

    async def _open_session(self, me: Participant, partner: Participant) -> Session:
        try:
            session = await self._storage.create_session(me, partner)
        except TransientStoreError:
            await self._release_quietly(partner.id)
            await self._release_quietly(me.id)
            raise

        partner.status = PresenceStatus.MATCHED

        logger.info(
            "Paired with %s",
            partner.id,
            extra={"participant_id": me.id, "session_id": session.id},
        )
        await self._on_session_formed(session, partner)
        return session

    async def _pair_with_synthetic(self, me: Participant) -> Session | None:
        bot = await self._factory.create()
        if not await self._storage.claim_participant(me.id):
            # A human claimed us while the stand-in was being created.
            await self._factory.remove(bot.id)
            return None

        try:
            await self._storage.claim_participant(bot.id)
        except TransientStoreError:
            await self._release_quietly(me.id)
            await self._factory.remove(bot.id)
            raise

        await self._tracer.track("synthetic_fallback", me.id, {"synthetic_id": bot.id})
        try:
            return await self._open_session(me, bot.participant)
        except TransientStoreError:
            await self._factory.remove(bot.id)
            raise

    async def _release_quietly(self, participant_id: str) -> None:
        try:
            await self._storage.release_participant(participant_id)
        except TransientStoreError as e:
            logger.warning("Could not release %s: %s", participant_id, e)
            me = self._state.participant
            if me is not None and participant_id == me.id:
                self._state.release_pending = True
