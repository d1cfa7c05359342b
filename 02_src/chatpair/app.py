"""Application bootstrap and lifecycle management."""

import os
import random
import uuid
from typing import Protocol

from .config import MatchSettings, resolve_db_path
from .feed import ChangeFeed
from .llm import ILLMProvider, LLMProvider
from .logging_config import get_logger
from .session import SessionController
from .storage import IStorage, Storage
from .tracing import ITracer, Tracer

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap.

    Hosts one SessionController per joined participant, all sharing the
    same Storage and ChangeFeed.
    """

    def __init__(
        self,
        db_path: str | None = None,
        settings: MatchSettings | None = None,
        llm_provider: ILLMProvider | None = None,
        rng: random.Random | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._settings = settings
        self._rng = rng or random.Random()

        # Components (will be initialized in start())
        self._storage: Storage | None = None
        self._feed: ChangeFeed | None = None
        self._tracer: ITracer | None = None
        self._llm: ILLMProvider | None = llm_provider
        self._controllers: dict[str, SessionController] = {}

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")

        if self._settings is None:
            self._settings = MatchSettings.from_env()

        # 1. ChangeFeed (no dependencies)
        self._feed = ChangeFeed()

        # 2. Storage (announces writes on the feed)
        self._storage = Storage(self._db_path, feed=self._feed)
        await self._storage.init()
        logger.info("Storage initialized")

        # 3. Tracer (depends on Storage)
        self._tracer = Tracer(self._storage)

        # 4. LLMProvider (optional)
        if self._llm is None and os.getenv("ANTHROPIC_API_KEY"):
            self._llm = LLMProvider()
            logger.info("LLM provider initialized")
        elif self._llm is None:
            logger.info("ANTHROPIC_API_KEY not set, synthetic replies use canned phrases")

        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        await self._shutdown_controllers()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        await self._shutdown_controllers()
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    async def _shutdown_controllers(self) -> None:
        controllers = list(self._controllers.values())
        self._controllers.clear()
        for controller in controllers:
            await controller.shutdown()
        if controllers:
            logger.info("Shut down %d session controllers", len(controllers))

    def _new_controller(self, client_key: str) -> SessionController:
        return SessionController(
            self.storage,
            self.feed,
            settings=self._settings,
            tracer=self._tracer,
            llm_provider=self._llm,
            client_key=client_key,
            rng=random.Random(self._rng.random()),
        )

    async def join(self, display_name: str, client_key: str | None = None) -> SessionController:
        """Join a new participant and register its controller."""
        controller = self._new_controller(client_key or str(uuid.uuid4()))
        participant = await controller.join(display_name)
        self._controllers[participant.id] = controller
        return controller

    async def resume(self, client_key: str) -> SessionController | None:
        """Rebuild a controller from its snapshot, if one survives."""
        for controller in self._controllers.values():
            if controller.client_key == client_key:
                return controller

        controller = self._new_controller(client_key)
        if not await controller.resume():
            return None
        self._controllers[controller.participant.id] = controller
        return controller

    def get_controller(self, participant_id: str) -> SessionController:
        """Controller of a joined participant. Raises KeyError when unknown."""
        controller = self._controllers.get(participant_id)
        if controller is None or controller.participant is None:
            # Logged out, or its unload grace expired.
            self._controllers.pop(participant_id, None)
            raise KeyError(participant_id)
        return controller

    async def logout(self, participant_id: str) -> None:
        """Log a participant out and forget its controller."""
        controller = self.get_controller(participant_id)
        await controller.logout()
        self._controllers.pop(participant_id, None)

    @property
    def controllers(self) -> list[SessionController]:
        return list(self._controllers.values())

    @property
    def settings(self) -> MatchSettings:
        if self._settings is None:
            raise RuntimeError("Application not started")
        return self._settings

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def feed(self) -> ChangeFeed:
        """Get change feed instance."""
        if not self._feed:
            raise RuntimeError("Application not started")
        return self._feed

    @property
    def tracer(self) -> ITracer:
        if not self._tracer:
            raise RuntimeError("Application not started")
        return self._tracer
