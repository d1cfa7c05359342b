"""PresenceTracker: keeps one participant's status and liveness truthful."""

from typing import Awaitable, Callable, Protocol

from ..config import MatchSettings
from ..errors import TransientStoreError
from ..logging_config import get_logger
from ..models import PresenceStatus
from ..storage import IStorage
from ..timers import DeferredAction, Generation, PeriodicTask

logger = get_logger(__name__)


class IPresenceTracker(Protocol):
    """Liveness of the current participant."""

    def start(self) -> None:
        """Start the heartbeat."""
        ...

    def stop(self) -> None:
        """Stop the heartbeat and any pending offline transition."""
        ...

    async def mark_available(self) -> None:
        """status=available, last-active=now."""
        ...

    async def mark_offline(self) -> None:
        """status=offline."""
        ...

    async def heartbeat(self) -> None:
        """Refresh last-active and re-assert the current status."""
        ...

    async def on_foreground_change(self, hidden: bool) -> None:
        """The view was hidden or brought back."""
        ...

    async def on_focus_change(self, focused: bool) -> None:
        """The view lost or regained focus."""
        ...

    async def on_teardown(self, is_real_exit: bool) -> None:
        """The view is unloading."""
        ...


class PresenceTracker:
    """Presence writes for one participant.

    Writes are unconditional for explicit transitions. Periodic
    re-assertion of ``available`` is guarded so it never undoes a claim
    made by another participant that has not reached us yet.
    """

    def __init__(
        self,
        storage: IStorage,
        participant_id: str,
        in_session: Callable[[], bool],
        settings: MatchSettings,
        on_expired: Callable[[], Awaitable[None]] | None = None,
    ):
        self._storage = storage
        self._participant_id = participant_id
        self._in_session = in_session
        self._settings = settings
        self._on_expired = on_expired

        self._heartbeat = PeriodicTask(
            f"heartbeat:{participant_id}",
            settings.heartbeat_interval,
            self.heartbeat,
        )
        self._unload_generation = Generation()
        self._unloading = False
        self._pending_offline: DeferredAction | None = None

    @property
    def unloading(self) -> bool:
        return self._unloading

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat.running

    def start(self) -> None:
        """Start the heartbeat."""
        self._heartbeat.start()

    def stop(self) -> None:
        """Stop the heartbeat and any pending offline transition."""
        self._heartbeat.stop()
        self._cancel_unload()

    async def mark_available(self) -> None:
        """status=available, last-active=now."""
        await self._storage.update_participant(
            self._participant_id, status=PresenceStatus.AVAILABLE
        )

    async def mark_offline(self) -> None:
        """status=offline."""
        await self._storage.update_participant(
            self._participant_id, status=PresenceStatus.OFFLINE
        )

    async def heartbeat(self) -> None:
        """Refresh last-active and re-assert the current status."""
        try:
            await self._reassert()
        except TransientStoreError as e:
            logger.warning(
                "Heartbeat skipped: %s", e, extra={"participant_id": self._participant_id}
            )

    async def _reassert(self) -> None:
        if self._in_session():
            await self._storage.update_participant(
                self._participant_id, status=PresenceStatus.MATCHED
            )
            return

        changed = await self._storage.update_participant(
            self._participant_id,
            status=PresenceStatus.AVAILABLE,
            unless_status=PresenceStatus.MATCHED,
        )
        if not changed:
            # Claimed by someone else; the session event is on its way.
            await self._storage.update_participant(self._participant_id)

    async def on_foreground_change(self, hidden: bool) -> None:
        """The view was hidden or brought back."""
        self._cancel_unload()
        try:
            if hidden:
                await self._storage.update_participant(self._participant_id)
            else:
                await self._reassert()
        except TransientStoreError as e:
            logger.warning(
                "Presence update skipped: %s",
                e,
                extra={"participant_id": self._participant_id},
            )

    async def on_focus_change(self, focused: bool) -> None:
        """The view lost or regained focus."""
        await self.on_foreground_change(hidden=not focused)

    async def on_teardown(self, is_real_exit: bool) -> None:
        """The view is unloading.

        A reload looks exactly like an exit at this point, so the offline
        write is deferred and any later lifecycle signal cancels it.
        """
        if is_real_exit:
            self._cancel_unload()
            self._heartbeat.stop()
            await self.mark_offline()
            return

        self._unloading = True
        token = self._unload_generation.advance()
        if self._pending_offline:
            self._pending_offline.cancel()
        self._pending_offline = DeferredAction(
            f"unload:{self._participant_id}",
            self._settings.unload_grace,
            lambda: self._expire_unload(token),
        )
        self._pending_offline.schedule()

    async def _expire_unload(self, token: int) -> None:
        if not (self._unloading and self._unload_generation.is_current(token)):
            return

        self._unloading = False
        self._heartbeat.stop()
        logger.info(
            "Unload not cancelled, going offline",
            extra={"participant_id": self._participant_id},
        )
        await self.mark_offline()
        if self._on_expired:
            await self._on_expired()

    def _cancel_unload(self) -> None:
        if not self._unloading:
            return
        self._unloading = False
        self._unload_generation.advance()
        if self._pending_offline:
            self._pending_offline.cancel()
            self._pending_offline = None
