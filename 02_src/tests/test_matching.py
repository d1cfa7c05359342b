"""Tests for MatchmakingEngine."""

import asyncio
import random
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from chatpair.errors import TransientStoreError
from chatpair.feed import ChangeFeed
from chatpair.matching import MatchmakingEngine
from chatpair.models import LocalState, Participant, PresenceStatus, Topic
from chatpair.storage import Storage
from chatpair.synthetic import AIParticipantFactory


def make_participant(
    pid: str,
    status: PresenceStatus = PresenceStatus.AVAILABLE,
    last_active: datetime | None = None,
) -> Participant:
    return Participant(
        id=pid,
        display_name=pid.capitalize(),
        status=status,
        last_active=last_active or datetime.now(timezone.utc),
    )


def build_engine(storage, settings, participant, tracer=None, rng=None):
    state = LocalState(participant=participant)
    formed = []

    async def on_session_formed(session, partner):
        state.session = session
        state.partner = partner
        formed.append((session, partner))

    factory = AIParticipantFactory(storage, rng=rng or random.Random(0))
    engine = MatchmakingEngine(
        storage, factory, state, settings, on_session_formed, tracer=tracer
    )
    return engine, state, factory, formed


def follow_sessions(feed, states):
    """Hand every new session to the local state of both parties.

    Stands in for the SessionEventListener of claimed participants.
    """

    async def _adopt(event):
        session = event.record
        for state in states:
            me = state.participant
            if me is not None and session.involves(me.id) and state.session is None:
                state.session = session

    return feed.subscribe(Topic.SESSION_CREATED, _adopt)


@pytest.fixture
async def me(storage):
    return await storage.insert_participant(make_participant("me"))


class TestFindMatch:
    """Tests for a single matching attempt."""

    async def test_pairs_with_available_human(self, storage, settings, me):
        """Test that a fresh available participant is claimed and paired."""
        await storage.insert_participant(make_participant("bob"))
        engine, state, _, formed = build_engine(storage, settings, me)

        session = await engine.find_match()

        assert session is not None
        assert session.involves("me") and session.involves("bob")
        assert (await storage.get_participant("me")).status == PresenceStatus.MATCHED
        assert (await storage.get_participant("bob")).status == PresenceStatus.MATCHED
        assert len(formed) == 1
        assert formed[0][1].id == "bob"
        assert formed[0][1].status == PresenceStatus.MATCHED
        assert state.is_matched

    async def test_synthetic_fallback_on_empty_pool(self, storage, settings, me, tracer):
        """Test that an empty pool yields a synthetic partner."""
        engine, state, factory, formed = build_engine(storage, settings, me, tracer)

        session = await engine.find_match()

        assert session is not None
        partner = formed[0][1]
        assert partner.is_synthetic
        assert factory.get(partner.id) is not None
        row = await storage.get_participant(partner.id)
        assert row.status == PresenceStatus.MATCHED
        events = await storage.get_trace_events(event_types=["synthetic_fallback"])
        assert len(events) == 1

    async def test_synthetic_fallback_when_pool_busy(self, storage, settings, me):
        """Test that stale, matched and offline participants are not candidates."""
        stale = datetime.now(timezone.utc) - timedelta(minutes=5)
        await storage.insert_participant(make_participant("stale", last_active=stale))
        await storage.insert_participant(
            make_participant("busy", status=PresenceStatus.MATCHED)
        )
        await storage.insert_participant(
            make_participant("gone", status=PresenceStatus.OFFLINE)
        )
        engine, _, _, formed = build_engine(storage, settings, me)

        await engine.find_match()

        assert formed[0][1].is_synthetic
        assert (await storage.get_participant("stale")).status == PresenceStatus.AVAILABLE

    async def test_no_fallback_when_disabled(self, storage, human_only_settings, me):
        engine, state, factory, formed = build_engine(storage, human_only_settings, me)

        assert await engine.find_match() is None
        assert formed == []
        assert factory.count == 0
        assert (await storage.get_participant("me")).status == PresenceStatus.AVAILABLE

    async def test_claim_conflict_moves_on(self, storage, human_only_settings, me, tracer):
        """Test that losing a candidate releases self and tries the next one."""
        taken = await storage.insert_participant(make_participant("taken"))
        free = await storage.insert_participant(make_participant("zed"))
        await storage.claim_participant("taken")
        engine, _, _, formed = build_engine(storage, human_only_settings, me, tracer)

        # The candidate read raced with someone else's claim of "taken".
        with patch.object(
            storage, "find_candidates", AsyncMock(return_value=[taken, free])
        ):
            session = await engine.find_match()

        assert session is not None
        assert formed[0][1].id == "zed"
        conflicts = await storage.get_trace_events(event_types=["claim_conflict"])
        assert [e.data["candidate_id"] for e in conflicts] == ["taken"]

    async def test_claim_conflict_releases_self(self, storage, human_only_settings, me):
        taken = await storage.insert_participant(make_participant("taken"))
        await storage.claim_participant("taken")
        engine, _, _, formed = build_engine(storage, human_only_settings, me)

        with patch.object(storage, "find_candidates", AsyncMock(return_value=[taken])):
            assert await engine.find_match() is None

        assert formed == []
        assert (await storage.get_participant("me")).status == PresenceStatus.AVAILABLE

    async def test_already_claimed_by_someone_else(self, storage, settings, me):
        """Test that a searcher claimed by another participant does not pair again."""
        await storage.insert_participant(make_participant("bob"))
        await storage.claim_participant("me")
        engine, _, factory, formed = build_engine(storage, settings, me)

        assert await engine.find_match() is None
        assert formed == []
        assert factory.count == 0
        assert (await storage.get_participant("bob")).status == PresenceStatus.AVAILABLE

    @pytest.mark.parametrize("fallback", [False, True])
    async def test_two_searchers_pair_with_each_other(
        self, storage, feed, settings, fallback
    ):
        """Test that two searchers racing for each other form one session."""
        alice = await storage.insert_participant(make_participant("alice"))
        bob = await storage.insert_participant(make_participant("bob"))
        race_settings = replace(settings, synthetic_fallback=fallback)
        ea, sa, fa, formed_a = build_engine(storage, race_settings, alice)
        eb, sb, fb, formed_b = build_engine(storage, race_settings, bob)
        follow_sessions(feed, [sa, sb])

        await asyncio.gather(ea.find_match(), eb.find_match())

        sessions = formed_a + formed_b
        assert len(sessions) == 1
        session = sessions[0][0]
        assert session.involves("alice") and session.involves("bob")
        assert sa.session.id == sb.session.id == session.id
        assert fa.count == 0 and fb.count == 0

    async def test_orphaned_own_claim_is_released(
        self, storage, settings, me, eventually
    ):
        """Test that a claim on us that never becomes a session is undone."""
        await storage.claim_participant("me")
        engine, state, _, formed = build_engine(storage, settings, me)

        engine.start_searching()

        assert await eventually(lambda: state.is_matched)
        engine.stop_searching()
        assert formed[0][1].is_synthetic

    async def test_pending_release_retried_before_matching(
        self, storage, human_only_settings, me
    ):
        """Test that a release that failed earlier is redone on the next attempt."""
        await storage.insert_participant(make_participant("bob"))
        await storage.claim_participant("me")
        engine, state, _, formed = build_engine(storage, human_only_settings, me)
        state.release_pending = True

        session = await engine.find_match()

        assert session is not None
        assert formed[0][1].id == "bob"
        assert not state.release_pending

    async def test_failed_self_release_is_remembered(
        self, storage, human_only_settings, me
    ):
        taken = await storage.insert_participant(make_participant("taken"))
        await storage.claim_participant("taken")
        engine, state, _, _ = build_engine(storage, human_only_settings, me)

        with patch.object(
            storage, "find_candidates", AsyncMock(return_value=[taken])
        ), patch.object(
            storage,
            "release_participant",
            AsyncMock(side_effect=TransientStoreError("down")),
        ):
            assert await engine.find_match() is None

        assert state.release_pending
        assert (await storage.get_participant("me")).status == PresenceStatus.MATCHED

        await engine.find_match()

        assert not state.release_pending
        assert (await storage.get_participant("me")).status == PresenceStatus.AVAILABLE

    async def test_store_error_abandons_attempt(self, storage, settings, me):
        engine, _, _, formed = build_engine(storage, settings, me)

        with patch.object(
            storage,
            "find_candidates",
            AsyncMock(side_effect=TransientStoreError("down")),
        ):
            assert await engine.find_match() is None

        assert formed == []

    async def test_session_write_failure_rolls_back_claims(self, storage, settings, me):
        """Test that both claims are released when the session cannot be written."""
        await storage.insert_participant(make_participant("bob"))
        engine, _, _, formed = build_engine(storage, settings, me)

        with patch.object(
            storage,
            "create_session",
            AsyncMock(side_effect=TransientStoreError("down")),
        ):
            assert await engine.find_match() is None

        assert formed == []
        assert (await storage.get_participant("me")).status == PresenceStatus.AVAILABLE
        assert (await storage.get_participant("bob")).status == PresenceStatus.AVAILABLE

    async def test_matched_engine_does_nothing(self, storage, settings, me):
        await storage.insert_participant(make_participant("bob"))
        engine, state, _, _ = build_engine(storage, settings, me)
        await engine.find_match()

        assert await engine.find_match() is None


class TestSearching:
    """Tests for the periodic search."""

    async def test_search_runs_until_matched(self, storage, settings, me, eventually):
        """Test that searching fires immediately and stops once matched."""
        engine, state, _, formed = build_engine(storage, settings, me)

        engine.start_searching()
        assert engine.is_searching

        assert await eventually(lambda: state.is_matched)
        assert await eventually(lambda: not engine.is_searching)
        assert len(formed) == 1

    async def test_search_retries_until_partner_appears(
        self, storage, human_only_settings, me, eventually
    ):
        engine, state, _, _ = build_engine(storage, human_only_settings, me)
        engine.start_searching()
        await asyncio.sleep(0.05)
        assert not state.is_matched

        await storage.insert_participant(make_participant("bob"))

        assert await eventually(lambda: state.is_matched)
        assert state.partner.id == "bob"
        engine.stop_searching()

    async def test_start_searching_requires_participant(self, storage, settings):
        engine, state, _, _ = build_engine(storage, settings, None)
        engine.start_searching()
        assert not engine.is_searching

    async def test_stop_searching(self, storage, human_only_settings, me):
        engine, _, _, _ = build_engine(storage, human_only_settings, me)
        engine.start_searching()
        engine.stop_searching()
        assert not engine.is_searching


class JitteryStorage(Storage):
    """Storage that yields for a random moment before every pool access."""

    def __init__(self, *args, jitter_rng: random.Random, **kwargs):
        super().__init__(*args, **kwargs)
        self._jitter_rng = jitter_rng

    async def _jitter(self):
        await asyncio.sleep(self._jitter_rng.uniform(0, 0.003))

    async def find_candidates(self, *args, **kwargs):
        await self._jitter()
        return await super().find_candidates(*args, **kwargs)

    async def compare_and_set_status(self, *args, **kwargs):
        await self._jitter()
        return await super().compare_and_set_status(*args, **kwargs)

    async def create_session(self, *args, **kwargs):
        await self._jitter()
        return await super().create_session(*args, **kwargs)


class TestMutualExclusivity:
    """Racing searchers never share a partner."""

    @staticmethod
    async def race(engines, rounds=30):
        """Run matching rounds until no two searchers are left unmatched."""
        for _ in range(rounds):
            waiting = [engine for engine, state, *_ in engines if not state.is_matched]
            if len(waiting) < 2:
                return
            await asyncio.gather(*(engine.find_match() for engine in waiting))

    @pytest.mark.parametrize("seed", range(10))
    async def test_concurrent_find_match(self, human_only_settings, seed):
        """Test that racing searchers form floor(n/2) disjoint sessions."""
        jitter = random.Random(seed)
        feed = ChangeFeed()
        storage = JitteryStorage(":memory:", feed=feed, jitter_rng=jitter)
        await storage.init()
        try:
            ids = [f"p{i}" for i in range(8)]
            engines = []
            for pid in ids:
                participant = await storage.insert_participant(make_participant(pid))
                engines.append(build_engine(storage, human_only_settings, participant))
            follow_sessions(feed, [state for _, state, *_ in engines])

            await self.race(engines)

            sessions = [s for _, _, _, formed in engines for s, _ in formed]
            assert len(sessions) == len(ids) // 2
            appearances = Counter(
                pid
                for s in sessions
                for pid in (s.participant_a_id, s.participant_b_id)
            )
            assert all(count == 1 for count in appearances.values())

            for pid in ids:
                row = await storage.get_participant(pid)
                if row.status == PresenceStatus.MATCHED:
                    assert appearances[pid] == 1
                else:
                    assert appearances[pid] == 0
        finally:
            await storage.close()

    async def test_fallback_always_pairs(self, settings):
        """Test that with the fallback on, every racing searcher ends up paired."""
        feed = ChangeFeed()
        storage = JitteryStorage(":memory:", feed=feed, jitter_rng=random.Random(99))
        await storage.init()
        try:
            engines = []
            for i in range(5):
                participant = await storage.insert_participant(make_participant(f"p{i}"))
                engines.append(build_engine(storage, settings, participant))
            follow_sessions(feed, [state for _, state, *_ in engines])

            # Whoever is left over falls back to a synthetic partner.
            await self.race(engines)
            await asyncio.gather(*(engine.find_match() for engine, *_ in engines))

            assert all(state.is_matched for _, state, *_ in engines)
            sessions = [s for _, _, _, formed in engines for s, _ in formed]
            humans = Counter(
                pid
                for s in sessions
                for pid in (s.participant_a_id, s.participant_b_id)
                if not pid.startswith("ai_")
            )
            assert sorted(humans) == [f"p{i}" for i in range(5)]
            assert all(count == 1 for count in humans.values())
        finally:
            await storage.close()
