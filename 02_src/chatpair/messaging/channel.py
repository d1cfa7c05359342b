"""MessagingChannel: message delivery within one established session."""

import asyncio
import uuid
from typing import Protocol

from ..config import MatchSettings
from ..errors import SendFailure, TransientStoreError
from ..feed import IChangeFeed, Subscription
from ..logging_config import get_logger
from ..models import ChangeEvent, Draft, Message, MessageType, Participant, Session, Topic
from ..storage import IStorage
from ..storage.storage import Clock, utcnow
from ..synthetic import BotReply, IAIParticipantFactory, SyntheticParticipant

logger = get_logger(__name__)


class IMessagingChannel(Protocol):
    """Ordered, deduplicated message view of one session."""

    @property
    def messages(self) -> list[Message]:
        """Messages in insertion order."""
        ...

    async def open(self) -> None:
        """Load history and subscribe to new messages."""
        ...

    def close(self) -> None:
        """Unsubscribe and drop pending synthetic replies."""
        ...

    async def send(
        self,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_ref: str | None = None,
    ) -> Message:
        """Write a message authored by the current participant."""
        ...


class MessagingChannel:
    """Message view for one session.

    The feed may redeliver, so every message passes through a dedup-by-id
    gate before it reaches the local list.
    """

    def __init__(
        self,
        storage: IStorage,
        feed: IChangeFeed,
        session: Session,
        me: Participant,
        partner: Participant,
        settings: MatchSettings,
        factory: IAIParticipantFactory | None = None,
        clock: Clock = utcnow,
    ):
        self._storage = storage
        self._feed = feed
        self._session = session
        self._me = me
        self._partner = partner
        self._settings = settings
        self._factory = factory
        self._clock = clock

        self._messages: list[Message] = []
        self._seen: set[str] = set()
        self._subscription: Subscription | None = None
        self._pending_replies: set[asyncio.Task] = set()
        self._closed = False

    @property
    def session(self) -> Session:
        return self._session

    @property
    def messages(self) -> list[Message]:
        return self._messages.copy()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_replies(self) -> int:
        return len(self._pending_replies)

    def _bot(self) -> SyntheticParticipant | None:
        if self._factory is None or not self._partner.is_synthetic:
            return None
        return self._factory.get(self._partner.id)

    async def open(self) -> None:
        """Load history and subscribe to new messages."""
        self._subscription = self._feed.subscribe(
            Topic.MESSAGE_CREATED,
            self._handle_message,
            where=lambda event: event.record.session_id == self._session.id,
        )

        try:
            for message in await self._storage.get_messages(self._session.id):
                self._append(message)
        except TransientStoreError as e:
            logger.warning(
                "History unavailable: %s", e, extra={"session_id": self._session.id}
            )

        bot = self._bot()
        if bot is not None and bot.turns == 0:
            self._schedule_reply(bot, "")

    def close(self) -> None:
        """Unsubscribe and drop pending synthetic replies."""
        self._closed = True
        if self._subscription:
            self._subscription.cancel()
            self._subscription = None
        for task in list(self._pending_replies):
            task.cancel()
        self._pending_replies.clear()

    def _append(self, message: Message) -> bool:
        if message.id in self._seen:
            return False
        self._seen.add(message.id)
        self._messages.append(message)
        return True

    async def _handle_message(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._append(event.record)

    async def send(
        self,
        content: str,
        message_type: MessageType = MessageType.TEXT,
        media_ref: str | None = None,
    ) -> Message:
        """Write a message authored by the current participant.

        Raises SendFailure (carrying the untouched draft) when the write
        does not go through.
        """
        draft = Draft(content=content, message_type=message_type, media_ref=media_ref)
        draft.validate()
        if self._closed:
            raise SendFailure(draft, "session has ended")

        message = await self._write(self._me, draft)
        if message is None:
            raise SendFailure(draft, "store unavailable")

        bot = self._bot()
        if bot is not None:
            self._schedule_reply(bot, content)
        return message

    async def _write(self, author: Participant, draft: Draft) -> Message | None:
        message = Message(
            id=str(uuid.uuid4()),
            session_id=self._session.id,
            sender_id=author.id,
            sender_name=author.display_name,
            content=draft.content,
            message_type=draft.message_type,
            media_ref=draft.media_ref,
            created_at=self._clock(),
        )
        try:
            await self._storage.save_message(message)
        except TransientStoreError as e:
            logger.warning(
                "Message write failed: %s",
                e,
                extra={"session_id": self._session.id, "participant_id": author.id},
            )
            return None

        self._append(message)

        try:
            await self._storage.touch_session(self._session.id)
        except TransientStoreError as e:
            logger.warning("Session activity not bumped: %s", e)
        return message

    def _schedule_reply(self, bot: SyntheticParticipant, inbound: str) -> None:
        reply = bot.generate_response(inbound)
        task = asyncio.create_task(
            self._deliver_reply(bot, reply, inbound),
            name=f"reply:{bot.id}",
        )
        self._pending_replies.add(task)
        task.add_done_callback(self._pending_replies.discard)

    async def _deliver_reply(
        self, bot: SyntheticParticipant, reply: BotReply, inbound: str
    ) -> None:
        await asyncio.sleep(reply.delay * self._settings.reply_delay_scale)
        if self._closed:
            return

        text = await self._factory.render(bot, reply, inbound)
        if self._closed:
            return

        await self._write(bot.participant, Draft(content=text))
