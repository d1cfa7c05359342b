"""Synthetic participant module."""

from .factory import (
    AIParticipantFactory,
    BotReply,
    IAIParticipantFactory,
    ReplyKind,
    SyntheticParticipant,
)

__all__ = [
    "AIParticipantFactory",
    "BotReply",
    "IAIParticipantFactory",
    "ReplyKind",
    "SyntheticParticipant",
]
