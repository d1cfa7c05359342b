"""Cancellable periodic and deferred asyncio actions."""

import asyncio
from typing import Awaitable, Callable

from .logging_config import get_logger

logger = get_logger(__name__)


Action = Callable[[], Awaitable[None]]


class Generation:
    """Monotonic counter used to invalidate stale callbacks.

    A callback captures ``token()`` when it is scheduled and checks
    ``is_current(token)`` before acting.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def token(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def is_current(self, token: int) -> bool:
        return token == self._value


class PeriodicTask:
    """Runs ``action`` every ``interval`` seconds until stopped.

    stop() is synchronous: a pending sleep is cancelled right away, while an
    action already in flight is allowed to finish and no further tick runs.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        action: Action,
        fire_immediately: bool = False,
    ):
        self._name = name
        self._interval = interval
        self._action = action
        self._fire_immediately = fire_immediately
        self._task: asyncio.Task | None = None
        self._running = False
        self._in_action = False
        self._runs = Generation()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        token = self._runs.advance()
        self._task = asyncio.create_task(self._loop(token), name=self._name)

    def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task is asyncio.current_task() or self._in_action:
            # The loop notices _running on its own after the action returns.
            return
        task.cancel()

    async def _loop(self, token: int) -> None:
        first = True
        while self._running and self._runs.is_current(token):
            try:
                if not (first and self._fire_immediately):
                    await asyncio.sleep(self._interval)
                first = False
                if not (self._running and self._runs.is_current(token)):
                    break

                self._in_action = True
                try:
                    await self._action()
                finally:
                    self._in_action = False

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("%s tick failed: %s", self._name, e, exc_info=True)


class DeferredAction:
    """Runs ``action`` once after ``delay`` unless cancelled first."""

    def __init__(self, name: str, delay: float, action: Action):
        self._name = name
        self._delay = delay
        self._action = action
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(), name=self._name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        try:
            await asyncio.sleep(self._delay)
            await self._action()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("%s failed: %s", self._name, e, exc_info=True)
