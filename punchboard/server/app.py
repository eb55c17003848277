"""
Display push server.

Streams punches to the display client as server-sent events: the display
settings and every punch known so far on connect, then each new punch.
"""

import asyncio
from typing import AsyncIterator, Callable, List, Set

from fastapi import FastAPI
from fastapi.responses import StreamingResponse
from loguru import logger

from punchboard.config.settings import DisplaySettings
from punchboard.models.punch import (
    PunchEvent,
    PunchesEvent,
    PunchRecord,
    SettingsEvent,
)
from punchboard.reconciliation.engine import ReconciliationEngine


class PunchBroadcaster:
    """Fans new punches out to every connected display client.

    ``publish`` never blocks, so it can be used directly as the engine's
    new-punch callback. A client whose queue fills up is disconnected; the
    display reconnects and receives the full punch list again.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def publish(self, punch: PunchRecord) -> None:
        logger.info(f"Broadcast {punch.id} to {self.subscriber_count} client(s)")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(punch)
            except asyncio.QueueFull:
                logger.warning(f"Client queue full ({self.queue_size}), disconnecting slow client")
                self._disconnect(queue)

    def _disconnect(self, queue: asyncio.Queue) -> None:
        self.unsubscribe(queue)
        # Make room for the end-of-stream marker
        queue.get_nowait()
        queue.put_nowait(None)

    async def event_stream(
        self, initial_events: Callable[[], list]
    ) -> AsyncIterator[str]:
        """Yields framed events for one client until it disconnects."""
        queue = self.subscribe()
        try:
            # Subscribed before the initial snapshot so no punch falls in between
            for event in initial_events():
                yield event.to_sse()
            while True:
                punch = await queue.get()
                if punch is None:
                    break
                yield PunchEvent(data=punch).to_sse()
        finally:
            self.unsubscribe(queue)
            logger.info("Connection closed")


def create_app(
    engine: ReconciliationEngine,
    broadcaster: PunchBroadcaster,
    display: DisplaySettings,
) -> FastAPI:
    app = FastAPI(
        title="Punchboard",
        description="Pushes radio punches from the timing feed to the announcer display",
    )

    @app.get("/sse")
    async def stream_events():
        def initial_events():
            return [
                SettingsEvent(data=display),
                PunchesEvent(data=engine.all_punches()),
            ]

        return StreamingResponse(
            broadcaster.event_stream(initial_events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/punches", response_model=List[PunchRecord])
    async def list_punches():
        return engine.all_punches()

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "cursor": engine.cursor,
            "teams": len(engine.roster.teams),
            "competitors": len(engine.roster.competitors),
            "punches": len(engine.ledger),
            "clients": broadcaster.subscriber_count,
        }

    return app
