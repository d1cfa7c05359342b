"""SQLite storage implementation of the shared participant/session store."""

import functools
import json
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Protocol

import aiosqlite

from ..config import SYNTHETIC_PREFIX, resolve_db_path
from ..errors import TransientStoreError
from ..feed import IChangeFeed
from ..models import (
    ChangeEvent,
    Message,
    MessageType,
    Participant,
    PresenceStatus,
    Record,
    Session,
    SessionSnapshot,
    Topic,
    TraceEvent,
)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: datetime) -> str:
    # Fixed-width UTC strings compare correctly as text in SQL.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _store_op(func):
    """Translate sqlite failures into TransientStoreError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        try:
            return await func(self, *args, **kwargs)
        except aiosqlite.Error as e:
            raise TransientStoreError(f"{func.__name__} failed: {e}") from e

    return wrapper


class IStorage(Protocol):
    """Shared store: participant pool, session log, messages, snapshots."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Participant pool
    async def insert_participant(self, participant: Participant) -> Participant:
        """Insert a participant row."""
        ...

    async def get_participant(self, participant_id: str) -> Participant | None:
        """Get a participant by id."""
        ...

    async def compare_and_set_status(
        self,
        participant_id: str,
        expected: PresenceStatus,
        new: PresenceStatus,
    ) -> bool:
        """Conditional status write. False when zero rows matched."""
        ...

    async def claim_participant(self, participant_id: str) -> bool:
        """available -> matched, conditionally."""
        ...

    async def release_participant(self, participant_id: str) -> bool:
        """matched -> available, conditionally."""
        ...

    async def update_participant(
        self,
        participant_id: str,
        status: PresenceStatus | None = None,
        touch: bool = True,
        unless_status: PresenceStatus | None = None,
    ) -> bool:
        """Self-declared presence write."""
        ...

    async def delete_participant(self, participant_id: str) -> None:
        """Remove a participant from the pool."""
        ...

    async def find_candidates(
        self, exclude_id: str, active_since: datetime, limit: int
    ) -> list[Participant]:
        """Available, fresh, human participants other than exclude_id."""
        ...

    # Session log
    async def create_session(self, a: Participant, b: Participant) -> Session:
        """Insert a session between a and b and return it."""
        ...

    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by id."""
        ...

    async def touch_session(self, session_id: str) -> None:
        """Bump the session's last activity time."""
        ...

    # Messages
    async def save_message(self, message: Message) -> None:
        """Insert a message."""
        ...

    async def get_messages(self, session_id: str) -> list[Message]:
        """All messages of a session in insertion order."""
        ...

    # Snapshots
    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        """Persist the local session snapshot."""
        ...

    async def get_snapshot(self, client_key: str) -> SessionSnapshot | None:
        """Read the local session snapshot."""
        ...

    async def clear_snapshot(self, client_key: str) -> None:
        """Drop the local session snapshot."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation.

    Every write that other participants could observe is announced on the
    change feed after it commits.
    """

    _PARTICIPANT_COLUMNS = (
        "id, display_name, avatar_color, status, last_active, created_at"
    )
    _SESSION_COLUMNS = (
        "id, participant_a_id, participant_a_name, participant_b_id, "
        "participant_b_name, created_at, last_activity_at"
    )
    _MESSAGE_COLUMNS = (
        "id, session_id, sender_id, sender_name, content, message_type, "
        "media_ref, created_at"
    )

    def __init__(
        self,
        db_path: str | Path | None = None,
        feed: IChangeFeed | None = None,
        clock: Clock = utcnow,
    ):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        self._feed = feed
        self._clock = clock

    def attach_feed(self, feed: IChangeFeed) -> None:
        """Announce future writes on feed."""
        self._feed = feed

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _announce(self, topic: Topic, record: Record) -> None:
        if self._feed is None:
            return
        await self._feed.publish(
            ChangeEvent(
                id=str(uuid.uuid4()),
                topic=topic,
                record=record,
                timestamp=self._clock(),
            )
        )

    # Participant pool
    @staticmethod
    def _row_to_participant(row: Any) -> Participant:
        return Participant(
            id=row[0],
            display_name=row[1],
            avatar_color=row[2],
            status=PresenceStatus(row[3]),
            last_active=_from_db(row[4]),
            created_at=_from_db(row[5]),
        )

    @_store_op
    async def insert_participant(self, participant: Participant) -> Participant:
        """Insert a participant row."""
        participant.id = participant.id or str(uuid.uuid4())
        participant.created_at = participant.created_at or self._clock()

        await self._conn.execute(
            f"""
            INSERT INTO participants ({self._PARTICIPANT_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                participant.id,
                participant.display_name,
                participant.avatar_color,
                participant.status.value,
                _to_db(participant.last_active),
                _to_db(participant.created_at),
            ),
        )
        await self._conn.commit()

        await self._announce(Topic.PARTICIPANT_INSERTED, participant)
        return participant

    @_store_op
    async def get_participant(self, participant_id: str) -> Participant | None:
        """Get a participant by id."""
        cursor = await self._conn.execute(
            f"""
            SELECT {self._PARTICIPANT_COLUMNS}
            FROM participants
            WHERE id = ?
            """,
            (participant_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_participant(row) if row else None

    @_store_op
    async def compare_and_set_status(
        self,
        participant_id: str,
        expected: PresenceStatus,
        new: PresenceStatus,
    ) -> bool:
        """Conditional status write. False when zero rows matched."""
        cursor = await self._conn.execute(
            """
            UPDATE participants
            SET status = ?, last_active = ?
            WHERE id = ? AND status = ?
            """,
            (new.value, _to_db(self._clock()), participant_id, expected.value),
        )
        changed = cursor.rowcount
        await self._conn.commit()

        if changed == 0:
            return False

        updated = await self.get_participant(participant_id)
        if updated:
            await self._announce(Topic.PARTICIPANT_UPDATED, updated)
        return True

    async def claim_participant(self, participant_id: str) -> bool:
        """available -> matched, conditionally."""
        return await self.compare_and_set_status(
            participant_id, PresenceStatus.AVAILABLE, PresenceStatus.MATCHED
        )

    async def release_participant(self, participant_id: str) -> bool:
        """matched -> available, conditionally."""
        return await self.compare_and_set_status(
            participant_id, PresenceStatus.MATCHED, PresenceStatus.AVAILABLE
        )

    @_store_op
    async def update_participant(
        self,
        participant_id: str,
        status: PresenceStatus | None = None,
        touch: bool = True,
        unless_status: PresenceStatus | None = None,
    ) -> bool:
        """Self-declared presence write.

        ``unless_status`` leaves a row alone whose current status equals it,
        so a periodic re-assertion never undoes someone else's claim.
        """
        assignments = []
        params: list[Any] = []
        if status is not None:
            assignments.append("status = ?")
            params.append(status.value)
        if touch:
            assignments.append("last_active = ?")
            params.append(_to_db(self._clock()))
        if not assignments:
            return False

        query = f"UPDATE participants SET {', '.join(assignments)} WHERE id = ?"
        params.append(participant_id)
        if unless_status is not None:
            query += " AND status != ?"
            params.append(unless_status.value)

        cursor = await self._conn.execute(query, params)
        changed = cursor.rowcount
        await self._conn.commit()

        if changed == 0:
            return False

        updated = await self.get_participant(participant_id)
        if updated:
            await self._announce(Topic.PARTICIPANT_UPDATED, updated)
        return True

    @_store_op
    async def delete_participant(self, participant_id: str) -> None:
        """Remove a participant from the pool."""
        existing = await self.get_participant(participant_id)
        if existing is None:
            return

        await self._conn.execute(
            "DELETE FROM participants WHERE id = ?", (participant_id,)
        )
        await self._conn.commit()

        await self._announce(Topic.PARTICIPANT_DELETED, existing)

    @_store_op
    async def find_candidates(
        self, exclude_id: str, active_since: datetime, limit: int
    ) -> list[Participant]:
        """Available, fresh, human participants other than exclude_id."""
        cursor = await self._conn.execute(
            f"""
            SELECT {self._PARTICIPANT_COLUMNS}
            FROM participants
            WHERE status = ?
              AND id != ?
              AND substr(id, 1, ?) != ?
              AND last_active >= ?
            ORDER BY id ASC
            LIMIT ?
            """,
            (
                PresenceStatus.AVAILABLE.value,
                exclude_id,
                len(SYNTHETIC_PREFIX),
                SYNTHETIC_PREFIX,
                _to_db(active_since),
                limit,
            ),
        )
        rows = await cursor.fetchall()
        return [self._row_to_participant(row) for row in rows]

    # Session log
    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            id=row[0],
            participant_a_id=row[1],
            participant_a_name=row[2],
            participant_b_id=row[3],
            participant_b_name=row[4],
            created_at=_from_db(row[5]),
            last_activity_at=_from_db(row[6]),
        )

    @_store_op
    async def create_session(self, a: Participant, b: Participant) -> Session:
        """Insert a session between a and b and return it."""
        now = self._clock()
        session = Session(
            id=str(uuid.uuid4()),
            participant_a_id=a.id,
            participant_a_name=a.display_name,
            participant_b_id=b.id,
            participant_b_name=b.display_name,
            created_at=now,
            last_activity_at=now,
        )

        await self._conn.execute(
            f"""
            INSERT INTO sessions ({self._SESSION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.participant_a_id,
                session.participant_a_name,
                session.participant_b_id,
                session.participant_b_name,
                _to_db(session.created_at),
                _to_db(session.last_activity_at),
            ),
        )
        await self._conn.commit()

        await self._announce(Topic.SESSION_CREATED, session)
        return session

    @_store_op
    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by id."""
        cursor = await self._conn.execute(
            f"SELECT {self._SESSION_COLUMNS} FROM sessions WHERE id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_session(row) if row else None

    @_store_op
    async def touch_session(self, session_id: str) -> None:
        """Bump the session's last activity time."""
        await self._conn.execute(
            "UPDATE sessions SET last_activity_at = ? WHERE id = ?",
            (_to_db(self._clock()), session_id),
        )
        await self._conn.commit()

    # Messages
    @_store_op
    async def save_message(self, message: Message) -> None:
        """Insert a message."""
        await self._conn.execute(
            f"""
            INSERT INTO messages ({self._MESSAGE_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message.id,
                message.session_id,
                message.sender_id,
                message.sender_name,
                message.content,
                message.message_type.value,
                message.media_ref,
                _to_db(message.created_at),
            ),
        )
        await self._conn.commit()

        await self._announce(Topic.MESSAGE_CREATED, message)

    @_store_op
    async def get_messages(self, session_id: str) -> list[Message]:
        """All messages of a session in insertion order."""
        cursor = await self._conn.execute(
            f"""
            SELECT {self._MESSAGE_COLUMNS}
            FROM messages
            WHERE session_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (session_id,),
        )
        rows = await cursor.fetchall()

        return [
            Message(
                id=row[0],
                session_id=row[1],
                sender_id=row[2],
                sender_name=row[3],
                content=row[4],
                message_type=MessageType(row[5]),
                media_ref=row[6],
                created_at=_from_db(row[7]),
            )
            for row in rows
        ]

    # Snapshots
    @staticmethod
    def _encode(record: Participant | Session | None) -> str | None:
        if record is None:
            return None
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = _to_db(value)
            elif isinstance(value, PresenceStatus):
                data[key] = value.value
        return json.dumps(data)

    @staticmethod
    def _decode_participant(raw: str | None) -> Participant | None:
        if not raw:
            return None
        data = json.loads(raw)
        return Participant(
            id=data["id"],
            display_name=data["display_name"],
            status=PresenceStatus(data["status"]),
            last_active=_from_db(data["last_active"]),
            avatar_color=data.get("avatar_color"),
            created_at=(
                _from_db(data["created_at"]) if data.get("created_at") else None
            ),
        )

    @staticmethod
    def _decode_session(raw: str | None) -> Session | None:
        if not raw:
            return None
        data = json.loads(raw)
        data["created_at"] = _from_db(data["created_at"])
        data["last_activity_at"] = _from_db(data["last_activity_at"])
        return Session(**data)

    @_store_op
    async def save_snapshot(self, snapshot: SessionSnapshot) -> None:
        """Persist the local session snapshot."""
        await self._conn.execute(
            """
            INSERT OR REPLACE INTO session_snapshots
            (client_key, participant, session, partner, updated_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            """,
            (
                snapshot.client_key,
                self._encode(snapshot.participant),
                self._encode(snapshot.session),
                self._encode(snapshot.partner),
            ),
        )
        await self._conn.commit()

    @_store_op
    async def get_snapshot(self, client_key: str) -> SessionSnapshot | None:
        """Read the local session snapshot."""
        cursor = await self._conn.execute(
            """
            SELECT participant, session, partner
            FROM session_snapshots
            WHERE client_key = ?
            """,
            (client_key,),
        )
        row = await cursor.fetchone()

        if not row:
            return None

        return SessionSnapshot(
            client_key=client_key,
            participant=self._decode_participant(row[0]),
            session=self._decode_session(row[1]),
            partner=self._decode_participant(row[2]),
        )

    @_store_op
    async def clear_snapshot(self, client_key: str) -> None:
        """Drop the local session snapshot."""
        await self._conn.execute(
            "DELETE FROM session_snapshots WHERE client_key = ?", (client_key,)
        )
        await self._conn.commit()

    # TraceEvents
    @_store_op
    async def save_trace_event(self, event: TraceEvent) -> None:
        """Save a trace event."""
        await self._conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data),
                _to_db(event.timestamp),
            ),
        )
        await self._conn.commit()

    @_store_op
    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters (newest first)."""
        conditions = []
        params: list[Any] = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_to_db(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC, rowid DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await self._conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_from_db(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    @_store_op
    async def clear(self) -> None:
        """Clear all data."""
        tables = [
            "messages",
            "sessions",
            "participants",
            "session_snapshots",
            "trace_events",
        ]

        for table in tables:
            await self._conn.execute(f"DELETE FROM {table}")

        await self._conn.commit()
