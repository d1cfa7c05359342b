"""Matchmaking module."""

from .engine import IMatchmakingEngine, MatchmakingEngine, SessionFormed

__all__ = ["IMatchmakingEngine", "MatchmakingEngine", "SessionFormed"]
