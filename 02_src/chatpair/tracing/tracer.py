"""Tracer implementation for recording lifecycle TraceEvents."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..errors import TransientStoreError
from ..logging_config import get_logger
from ..models import TraceEvent
from ..storage import IStorage

logger = get_logger(__name__)


class ITracer(Protocol):
    """Records TraceEvents for the observability API."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        ...


class Tracer:
    """Writes TraceEvents straight to Storage.

    Tracing never interrupts the lifecycle: a failed write is logged and
    dropped.
    """

    def __init__(self, storage: IStorage):
        self._storage = storage

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        trace_event = TraceEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self._storage.save_trace_event(trace_event)
        except TransientStoreError as e:
            logger.warning("Dropped trace event %s: %s", event_type, e)


class NullTracer:
    """Tracer that records nothing."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        return
