"""Tests for Storage."""

import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from chatpair.errors import TransientStoreError
from chatpair.models import (
    Message,
    MessageType,
    Participant,
    PresenceStatus,
    SessionSnapshot,
    Topic,
    TraceEvent,
)
from chatpair.storage import Storage


def make_participant(
    pid: str,
    name: str = "Alice",
    status: PresenceStatus = PresenceStatus.AVAILABLE,
    last_active: datetime | None = None,
) -> Participant:
    return Participant(
        id=pid,
        display_name=name,
        status=status,
        last_active=last_active or datetime.now(timezone.utc),
    )


def make_message(mid: str, session_id: str, content: str = "hi") -> Message:
    return Message(
        id=mid,
        session_id=session_id,
        sender_id="a",
        sender_name="Alice",
        content=content,
        message_type=MessageType.TEXT,
        created_at=datetime.now(timezone.utc),
    )


def recent() -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=60)


class TestStorageInit:
    """Tests for Storage initialization."""

    async def test_init_creates_tables(self, storage):
        """Test that init creates all tables."""
        async with storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
            assert "participants" in tables
            assert "sessions" in tables
            assert "messages" in tables
            assert "session_snapshots" in tables
            assert "trace_events" in tables

    async def test_not_initialized(self):
        """Test that using storage before init() raises."""
        st = Storage(":memory:")
        with pytest.raises(RuntimeError, match="not initialized"):
            await st.get_participant("a")

    async def test_sqlite_errors_become_transient(self, storage):
        """Test that driver failures surface as TransientStoreError."""
        with patch.object(
            storage._conn, "execute", side_effect=sqlite3.OperationalError("locked")
        ):
            with pytest.raises(TransientStoreError, match="locked"):
                await storage.get_participant("a")


class TestStorageParticipants:
    """Tests for the participant pool."""

    async def test_insert_and_get(self, storage):
        """Test inserting and reading back a participant."""
        await storage.insert_participant(make_participant("a"))

        retrieved = await storage.get_participant("a")
        assert retrieved is not None
        assert retrieved.display_name == "Alice"
        assert retrieved.status == PresenceStatus.AVAILABLE
        assert retrieved.created_at is not None

    async def test_get_nonexistent(self, storage):
        assert await storage.get_participant("missing") is None

    async def test_claim_is_conditional(self, storage):
        """Test that only the first claim of an available row succeeds."""
        await storage.insert_participant(make_participant("a"))

        assert await storage.claim_participant("a") is True
        assert await storage.claim_participant("a") is False

        row = await storage.get_participant("a")
        assert row.status == PresenceStatus.MATCHED

    async def test_release_only_from_matched(self, storage):
        """Test that release never resurrects an offline row."""
        await storage.insert_participant(
            make_participant("a", status=PresenceStatus.OFFLINE)
        )

        assert await storage.release_participant("a") is False
        assert (await storage.get_participant("a")).status == PresenceStatus.OFFLINE

    async def test_update_unless_status(self, storage):
        """Test that a guarded write leaves a claimed row alone."""
        await storage.insert_participant(make_participant("a"))
        await storage.claim_participant("a")

        changed = await storage.update_participant(
            "a",
            status=PresenceStatus.AVAILABLE,
            unless_status=PresenceStatus.MATCHED,
        )

        assert changed is False
        assert (await storage.get_participant("a")).status == PresenceStatus.MATCHED

    async def test_update_touch_only(self, storage):
        """Test that a touch-only write bumps last_active."""
        old = datetime.now(timezone.utc) - timedelta(minutes=5)
        await storage.insert_participant(make_participant("a", last_active=old))

        assert await storage.update_participant("a") is True

        row = await storage.get_participant("a")
        assert row.last_active > old
        assert row.status == PresenceStatus.AVAILABLE

    async def test_update_missing_row(self, storage):
        assert await storage.update_participant("missing") is False

    async def test_delete(self, storage):
        await storage.insert_participant(make_participant("a"))
        await storage.delete_participant("a")
        assert await storage.get_participant("a") is None

    async def test_find_candidates_filters(self, storage):
        """Test that candidates are available, fresh, human and not me."""
        stale = datetime.now(timezone.utc) - timedelta(minutes=10)
        await storage.insert_participant(make_participant("me"))
        await storage.insert_participant(make_participant("b"))
        await storage.insert_participant(make_participant("c", last_active=stale))
        await storage.insert_participant(
            make_participant("d", status=PresenceStatus.MATCHED)
        )
        await storage.insert_participant(
            make_participant("e", status=PresenceStatus.OFFLINE)
        )
        await storage.insert_participant(make_participant("ai_1_abc"))

        candidates = await storage.find_candidates("me", recent(), limit=5)

        assert [c.id for c in candidates] == ["b"]

    async def test_find_candidates_limit_and_order(self, storage):
        """Test that candidates come in a stable order, capped at limit."""
        for pid in ["p3", "p1", "p5", "p2", "p4", "p6"]:
            await storage.insert_participant(make_participant(pid))

        candidates = await storage.find_candidates("me", recent(), limit=5)

        assert [c.id for c in candidates] == ["p1", "p2", "p3", "p4", "p5"]


class TestStorageAnnouncements:
    """Tests for change feed announcements."""

    async def test_writes_are_announced(self, storage, feed):
        """Test that observable writes reach the feed."""
        seen = []

        async def handler(event):
            seen.append((event.topic, event.record.id))

        for topic in Topic:
            feed.subscribe(topic, handler)

        a = await storage.insert_participant(make_participant("a"))
        b = await storage.insert_participant(make_participant("b", "Bob"))
        await storage.claim_participant("a")
        session = await storage.create_session(a, b)
        await storage.save_message(make_message("m1", session.id))
        await storage.delete_participant("b")

        assert seen == [
            (Topic.PARTICIPANT_INSERTED, "a"),
            (Topic.PARTICIPANT_INSERTED, "b"),
            (Topic.PARTICIPANT_UPDATED, "a"),
            (Topic.SESSION_CREATED, session.id),
            (Topic.MESSAGE_CREATED, "m1"),
            (Topic.PARTICIPANT_DELETED, "b"),
        ]

    async def test_failed_claim_is_not_announced(self, storage, feed):
        seen = []

        async def handler(event):
            seen.append(event)

        await storage.insert_participant(
            make_participant("a", status=PresenceStatus.MATCHED)
        )
        feed.subscribe(Topic.PARTICIPANT_UPDATED, handler)

        assert await storage.claim_participant("a") is False
        assert seen == []


class TestStorageSessions:
    """Tests for sessions and messages."""

    async def test_create_and_get_session(self, storage):
        a = make_participant("a")
        b = make_participant("b", "Bob")

        session = await storage.create_session(a, b)
        retrieved = await storage.get_session(session.id)

        assert retrieved.participant_a_id == "a"
        assert retrieved.participant_b_name == "Bob"
        assert retrieved.involves("b")

    async def test_touch_session(self, storage):
        session = await storage.create_session(
            make_participant("a"), make_participant("b")
        )
        await storage.touch_session(session.id)

        retrieved = await storage.get_session(session.id)
        assert retrieved.last_activity_at >= session.last_activity_at

    async def test_messages_in_insertion_order(self, storage):
        """Test that messages come back in the order they were written."""
        for i in range(5):
            await storage.save_message(make_message(f"m{i}", "s1", f"text {i}"))
        await storage.save_message(make_message("other", "s2"))

        messages = await storage.get_messages("s1")

        assert [m.id for m in messages] == ["m0", "m1", "m2", "m3", "m4"]

    async def test_media_message(self, storage):
        message = Message(
            id="m1",
            session_id="s1",
            sender_id="a",
            sender_name="Alice",
            content="",
            message_type=MessageType.IMAGE,
            media_ref="images/cat.png",
            created_at=datetime.now(timezone.utc),
        )
        await storage.save_message(message)

        [retrieved] = await storage.get_messages("s1")
        assert retrieved.message_type == MessageType.IMAGE
        assert retrieved.media_ref == "images/cat.png"

    async def test_duplicate_message_id_is_transient_error(self, storage):
        await storage.save_message(make_message("m1", "s1"))
        with pytest.raises(TransientStoreError):
            await storage.save_message(make_message("m1", "s1"))


class TestStorageSnapshots:
    """Tests for session snapshots."""

    async def test_snapshot_roundtrip(self, storage):
        a = make_participant("a")
        b = make_participant("b", "Bob", status=PresenceStatus.MATCHED)
        session = await storage.create_session(a, b)

        await storage.save_snapshot(
            SessionSnapshot(client_key="k", participant=a, session=session, partner=b)
        )
        snapshot = await storage.get_snapshot("k")

        assert snapshot.participant.id == "a"
        assert snapshot.session.id == session.id
        assert snapshot.partner.status == PresenceStatus.MATCHED

    async def test_snapshot_without_session(self, storage):
        await storage.save_snapshot(
            SessionSnapshot(client_key="k", participant=make_participant("a"))
        )
        snapshot = await storage.get_snapshot("k")
        assert snapshot.session is None
        assert snapshot.partner is None

    async def test_clear_snapshot(self, storage):
        await storage.save_snapshot(
            SessionSnapshot(client_key="k", participant=make_participant("a"))
        )
        await storage.clear_snapshot("k")
        assert await storage.get_snapshot("k") is None


class TestStorageTraceEvents:
    """Tests for TraceEvent storage."""

    async def test_trace_event_filters(self, storage):
        """Test filtering by type and actor, newest first."""
        base = datetime.now(timezone.utc)
        for i, (event_type, actor) in enumerate(
            [("joined", "a"), ("matched", "a"), ("joined", "b")]
        ):
            await storage.save_trace_event(
                TraceEvent(
                    id=f"t{i}",
                    event_type=event_type,
                    actor=actor,
                    data={"i": i},
                    timestamp=base + timedelta(seconds=i),
                )
            )

        assert [e.id for e in await storage.get_trace_events()] == ["t2", "t1", "t0"]
        assert [e.id for e in await storage.get_trace_events(actor="a")] == ["t1", "t0"]
        joined = await storage.get_trace_events(event_types=["joined"])
        assert {e.id for e in joined} == {"t0", "t2"}
        after = await storage.get_trace_events(after=base)
        assert [e.id for e in after] == ["t2", "t1"]
        assert (await storage.get_trace_events(limit=1))[0].data == {"i": 2}

    async def test_clear(self, storage):
        await storage.insert_participant(make_participant("a"))
        await storage.clear()
        assert await storage.get_participant("a") is None
