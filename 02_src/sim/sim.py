"""SIM implementation - scripted participants driving the HTTP API."""

import asyncio
import random
from typing import Protocol

import httpx

from chatpair.logging_config import get_logger
from chatpair.tracing import ITracer

logger = get_logger(__name__)


class ISim(Protocol):
    """Generate traffic against a running server."""

    async def start(self) -> None:
        """Start scenario."""
        ...

    async def stop(self) -> None:
        """Stop scenario."""
        ...


# name, lines to send once matched
SCRIPT = [
    ("Alice", ["hey there", "what are you up to today?", "nice, talk later"]),
    ("Bob", ["hi!", "just got back from a long walk by the river", "cool"]),
    ("Charlie", ["hello", "any good books lately?", "thanks, bye"]),
]


class Sim:
    """Scripted participants: join, wait for a partner, chat, skip, log out."""

    def __init__(
        self,
        api_url: str = "http://localhost:8000",
        tracer: ITracer | None = None,
        match_timeout: float = 30.0,
        pace: tuple[float, float] = (1.0, 3.0),
        rng: random.Random | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_url = api_url
        self._tracer = tracer
        self._match_timeout = match_timeout
        self._pace = pace
        self._transport = transport
        self._rng = rng or random.Random()
        self._running = False
        self._task: asyncio.Task | None = None
        self._client: httpx.AsyncClient | None = None

    def set_tracer(self, tracer: ITracer) -> None:
        """Inject tracer for SIM trace events."""
        self._tracer = tracer

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start scenario."""
        if self._running:
            return

        self._running = True
        self._client = httpx.AsyncClient(
            base_url=self._api_url, timeout=10.0, transport=self._transport
        )
        self._task = asyncio.create_task(self._run_scenario())

    async def stop(self) -> None:
        """Stop scenario."""
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client:
            await self._client.aclose()
            self._client = None

    async def _track(self, event_type: str, data: dict) -> None:
        if self._tracer:
            await self._tracer.track(event_type, "sim", data)

    async def _run_scenario(self) -> None:
        await self._track("sim_started", {"participant_count": len(SCRIPT)})
        try:
            await asyncio.gather(
                *(self._run_participant(name, lines) for name, lines in SCRIPT)
            )
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("SIM scenario error: %s", e, exc_info=True)
        finally:
            self._running = False
            await self._track("sim_completed", {"participant_count": len(SCRIPT)})

    async def _run_participant(self, name: str, lines: list[str]) -> None:
        response = await self._client.post(
            "/api/participants", json={"display_name": name}
        )
        response.raise_for_status()
        participant_id = response.json()["participant"]["id"]
        logger.info("SIM: %s joined as %s", name, participant_id)

        try:
            partner = await self._wait_for_partner(participant_id)
            if partner is None:
                logger.info("SIM: %s found nobody", name)
                return
            logger.info("SIM: %s matched with %s", name, partner["display_name"])

            for line in lines:
                if not self._running:
                    return
                await asyncio.sleep(self._rng.uniform(*self._pace))
                response = await self._client.post(
                    f"/api/participants/{participant_id}/messages",
                    json={"content": line},
                )
                if response.status_code != 201:
                    logger.warning(
                        "SIM: %s could not send (%s)", name, response.status_code
                    )
                    return
                logger.info("SIM: %s -> %s", name, line)

            await self._client.post(f"/api/participants/{participant_id}/skip")
        finally:
            if self._client:
                await self._client.post(f"/api/participants/{participant_id}/logout")

    async def _wait_for_partner(self, participant_id: str) -> dict | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._match_timeout
        while self._running and loop.time() < deadline:
            response = await self._client.get(f"/api/participants/{participant_id}")
            response.raise_for_status()
            state = response.json()
            if state["is_matched"]:
                return state["partner"]
            await asyncio.sleep(0.1)
        return None
