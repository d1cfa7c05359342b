"""Presence module."""

from .tracker import IPresenceTracker, PresenceTracker

__all__ = ["IPresenceTracker", "PresenceTracker"]
