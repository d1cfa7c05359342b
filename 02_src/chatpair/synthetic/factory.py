"""Creation, reply policy and removal of synthetic participants."""

import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from ..config import SYNTHETIC_PREFIX
from ..llm import ILLMProvider
from ..logging_config import get_logger
from ..models import Participant, PresenceStatus
from ..storage import IStorage
from . import phrases

logger = get_logger(__name__)

LONG_MESSAGE_CHARS = 50


class ReplyKind(str, Enum):
    """Phrase pool a reply is drawn from."""

    GREETING = "greeting"
    ACKNOWLEDGMENT = "acknowledgment"
    CONVERSATIONAL = "conversational"


# kind -> (pool, min delay, max delay) in seconds
REPLY_POLICY: dict[ReplyKind, tuple[tuple[str, ...], float, float]] = {
    ReplyKind.GREETING: (phrases.GREETINGS, 1.0, 3.0),
    ReplyKind.ACKNOWLEDGMENT: (phrases.ACKNOWLEDGMENTS, 2.0, 5.0),
    ReplyKind.CONVERSATIONAL: (phrases.CONVERSATIONAL, 1.5, 4.0),
}

_STYLE_HINTS = {
    ReplyKind.GREETING: "Open the conversation with a short friendly greeting.",
    ReplyKind.ACKNOWLEDGMENT: "Acknowledge what they just said, warmly and briefly.",
    ReplyKind.CONVERSATIONAL: "Keep the chat going with a light remark or question.",
}


@dataclass(frozen=True)
class BotReply:
    """What a synthetic participant says next and how long it waits first."""

    text: str
    delay: float
    kind: ReplyKind


class SyntheticParticipant:
    """Handle on one synthetic participant and its turn state."""

    def __init__(self, participant: Participant, rng: random.Random):
        self.participant = participant
        self._rng = rng
        self.turns = 0
        self.replies: list[BotReply] = []

    @property
    def id(self) -> str:
        return self.participant.id

    @property
    def display_name(self) -> str:
        return self.participant.display_name

    def classify(self, last_inbound: str) -> ReplyKind:
        if self.turns == 0:
            return ReplyKind.GREETING
        if len(last_inbound) > LONG_MESSAGE_CHARS or "?" in last_inbound:
            return ReplyKind.ACKNOWLEDGMENT
        return ReplyKind.CONVERSATIONAL

    def generate_response(self, last_inbound: str) -> BotReply:
        """Pick the next reply and its delay; advances the turn counter."""
        kind = self.classify(last_inbound)
        pool, low, high = REPLY_POLICY[kind]
        reply = BotReply(
            text=self._rng.choice(pool),
            delay=self._rng.uniform(low, high),
            kind=kind,
        )
        self.turns += 1
        self.replies.append(reply)
        return reply


class IAIParticipantFactory(Protocol):
    """Produces and retires synthetic participants."""

    async def create(self) -> SyntheticParticipant:
        """Register a new synthetic participant as available."""
        ...

    async def remove(self, participant_id: str) -> None:
        """Delete one synthetic participant from the pool."""
        ...

    async def remove_all(self) -> None:
        """Delete every synthetic participant this factory created."""
        ...

    def get(self, participant_id: str) -> SyntheticParticipant | None:
        """Look up a live synthetic participant."""
        ...

    async def render(
        self, bot: SyntheticParticipant, reply: BotReply, last_inbound: str
    ) -> str:
        """Final text of a reply."""
        ...


class AIParticipantFactory:
    """Synthetic participants owned by one human participant's engine."""

    def __init__(
        self,
        storage: IStorage,
        rng: random.Random | None = None,
        llm_provider: ILLMProvider | None = None,
    ):
        self._storage = storage
        self._rng = rng or random.Random()
        self._llm = llm_provider
        self._active: dict[str, SyntheticParticipant] = {}

    @property
    def count(self) -> int:
        return len(self._active)

    def _new_id(self) -> str:
        return f"{SYNTHETIC_PREFIX}{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    async def create(self) -> SyntheticParticipant:
        """Register a new synthetic participant as available."""
        participant = Participant(
            id=self._new_id(),
            display_name=self._rng.choice(phrases.NAMES),
            avatar_color=self._rng.choice(phrases.AVATAR_COLORS),
            status=PresenceStatus.AVAILABLE,
            last_active=datetime.now(timezone.utc),
        )
        await self._storage.insert_participant(participant)

        bot = SyntheticParticipant(participant, self._rng)
        self._active[bot.id] = bot
        logger.info("Created synthetic participant %s (%s)", bot.id, bot.display_name)
        return bot

    async def remove(self, participant_id: str) -> None:
        """Delete one synthetic participant from the pool."""
        await self._storage.delete_participant(participant_id)
        self._active.pop(participant_id, None)
        logger.info("Removed synthetic participant %s", participant_id)

    async def remove_all(self) -> None:
        """Delete every synthetic participant this factory created."""
        for participant_id in list(self._active):
            await self.remove(participant_id)

    def get(self, participant_id: str) -> SyntheticParticipant | None:
        return self._active.get(participant_id)

    async def render(
        self, bot: SyntheticParticipant, reply: BotReply, last_inbound: str
    ) -> str:
        """Final text of a reply: LLM-reworded when configured, else canned."""
        if self._llm is None:
            return reply.text

        system = (
            f"You are {bot.display_name}, a friendly stranger in an anonymous "
            f"one-to-one chat. {_STYLE_HINTS[reply.kind]} "
            f"Answer with one casual sentence similar to: \"{reply.text}\""
        )
        inbound = last_inbound or "(the chat has just started)"
        try:
            return await self._llm.complete(
                messages=[{"role": "user", "content": inbound}],
                system=system,
                max_tokens=100,
            )
        except Exception as e:
            logger.warning("LLM reply failed for %s, using canned text: %s", bot.id, e)
            return reply.text
