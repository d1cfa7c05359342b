"""Tracing and observability data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single lifecycle event recorded for observability."""

    id: str
    event_type: str  # e.g. "joined", "matched", "partner_lost"
    actor: str  # participant id or component name
    data: dict
    timestamp: datetime
