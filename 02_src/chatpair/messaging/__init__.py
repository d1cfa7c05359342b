"""Messaging module."""

from .channel import IMessagingChannel, MessagingChannel

__all__ = ["IMessagingChannel", "MessagingChannel"]
