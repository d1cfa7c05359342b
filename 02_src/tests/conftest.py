"""Pytest configuration and fixtures."""

import asyncio
import random
import sys
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture
def settings():
    """MatchSettings with all timers shortened for tests."""
    from chatpair.config import MatchSettings

    return MatchSettings(
        heartbeat_interval=0.05,
        freshness_window=60.0,
        candidate_batch=5,
        search_interval=0.02,
        rematch_grace=0.01,
        unload_grace=0.05,
        synthetic_fallback=True,
        reply_delay_scale=0.001,
    )


@pytest.fixture
def human_only_settings(settings):
    """Fast settings with the synthetic fallback turned off."""
    from dataclasses import replace

    return replace(settings, synthetic_fallback=False)


@pytest.fixture
def feed():
    """Create an empty ChangeFeed."""
    from chatpair.feed import ChangeFeed

    return ChangeFeed()


@pytest_asyncio.fixture
async def storage(feed):
    """Create in-memory storage announcing on the feed."""
    from chatpair.storage import Storage

    st = Storage(":memory:", feed=feed)
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def tracer(storage):
    """Create Tracer writing to storage."""
    from chatpair.tracing import Tracer

    return Tracer(storage)


@pytest.fixture
def rng():
    """Seeded random source."""
    return random.Random(1234)


@pytest.fixture
def mock_llm():
    """Create mock LLM provider."""
    llm = Mock()
    llm.complete = AsyncMock(return_value="Test response")
    return llm


@pytest_asyncio.fixture
async def make_controller(storage, feed, settings, tracer):
    """Factory for SessionControllers sharing one store; shut down afterwards."""
    from chatpair.session import SessionController

    controllers = []

    def _make(settings_override=None, client_key=None, seed=None):
        controller = SessionController(
            storage,
            feed,
            settings=settings_override or settings,
            tracer=tracer,
            client_key=client_key or f"client-{len(controllers)}",
            rng=random.Random(seed if seed is not None else len(controllers)),
        )
        controllers.append(controller)
        return controller

    yield _make

    for controller in controllers:
        if controller.engine.is_searching:
            controller.engine.stop_searching()
        if controller.presence:
            controller.presence.stop()
        if controller.channel:
            controller.channel.close()
        controller._cancel_rematch()


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or the timeout expires."""

    async def _eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _eventually
