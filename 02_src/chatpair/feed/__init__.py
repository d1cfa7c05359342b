"""Change feed module."""

from .change_feed import ChangeFeed, EventFilter, EventHandler, IChangeFeed, Subscription

__all__ = ["ChangeFeed", "EventFilter", "EventHandler", "IChangeFeed", "Subscription"]
