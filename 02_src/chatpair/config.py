"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "chatpair.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]

# Ids of synthetic participants start with this prefix.
SYNTHETIC_PREFIX = "ai_"


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass(frozen=True)
class MatchSettings:
    """Timing and sizing knobs of the matchmaking engine (seconds)."""

    heartbeat_interval: float = 15.0
    freshness_window: float = 60.0
    candidate_batch: int = 5
    search_interval: float = 3.0
    rematch_grace: float = 1.0
    unload_grace: float = 2.0
    synthetic_fallback: bool = True
    reply_delay_scale: float = 1.0

    def __post_init__(self) -> None:
        if self.heartbeat_interval >= self.freshness_window:
            raise ValueError(
                "heartbeat_interval must be shorter than freshness_window"
            )
        if self.candidate_batch < 1:
            raise ValueError("candidate_batch must be at least 1")
        if min(self.search_interval, self.rematch_grace, self.unload_grace) < 0:
            raise ValueError("delays must not be negative")
        if self.reply_delay_scale < 0:
            raise ValueError("reply_delay_scale must not be negative")

    @classmethod
    def from_env(cls) -> "MatchSettings":
        """Build settings from CHATPAIR_* environment variables."""
        defaults = cls()

        def _float(name: str, default: float) -> float:
            value = os.getenv(name)
            return float(value) if value else default

        fallback = os.getenv("CHATPAIR_SYNTHETIC_FALLBACK")
        return cls(
            heartbeat_interval=_float(
                "CHATPAIR_HEARTBEAT_INTERVAL", defaults.heartbeat_interval
            ),
            freshness_window=_float(
                "CHATPAIR_FRESHNESS_WINDOW", defaults.freshness_window
            ),
            candidate_batch=int(
                os.getenv("CHATPAIR_CANDIDATE_BATCH", defaults.candidate_batch)
            ),
            search_interval=_float(
                "CHATPAIR_SEARCH_INTERVAL", defaults.search_interval
            ),
            rematch_grace=_float("CHATPAIR_REMATCH_GRACE", defaults.rematch_grace),
            unload_grace=_float("CHATPAIR_UNLOAD_GRACE", defaults.unload_grace),
            synthetic_fallback=(
                fallback.lower() not in ("0", "false", "no")
                if fallback
                else defaults.synthetic_fallback
            ),
            reply_delay_scale=_float(
                "CHATPAIR_REPLY_DELAY_SCALE", defaults.reply_delay_scale
            ),
        )
