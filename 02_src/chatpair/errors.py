"""Error taxonomy of the matchmaking engine."""

from .models.messages import Draft


class ChatPairError(Exception):
    """Base class for chatpair errors."""


class TransientStoreError(ChatPairError):
    """A read or write against the shared store failed; retry next tick."""


class InvalidMessage(ChatPairError, ValueError):
    """A draft that cannot be sent as-is."""


class SendFailure(ChatPairError):
    """A message could not be written. Carries the draft for resubmission."""

    def __init__(self, draft: Draft, reason: str):
        super().__init__(f"Failed to send message: {reason}")
        self.draft = draft
        self.reason = reason
