"""Session lifecycle module."""

from .controller import SessionController
from .listener import ISessionEventListener, SessionEventListener

__all__ = ["ISessionEventListener", "SessionController", "SessionEventListener"]
