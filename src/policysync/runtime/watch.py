from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import structlog

from policysync.clients.base import WatchEvent

logger = structlog.get_logger()

StreamFactory = Callable[[str], AsyncIterator[WatchEvent]]
EventHandler = Callable[[WatchEvent], Awaitable[None]]


class WatchLoop:
    """
    Long-lived consumer of a watch stream.

    Cancellation stops the loop quietly. Any other end of the stream is
    logged and the watch is started again from an empty resource version,
    i.e. from the latest state, rather than resuming a version that may
    have expired.
    """

    def __init__(
        self,
        name: str,
        stream_factory: StreamFactory,
        handler: EventHandler,
        *,
        restart_delay: float = 1.0,
    ) -> None:
        self.name = name
        self.stream_factory = stream_factory
        self.handler = handler
        self.restart_delay = restart_delay
        self.restarts = 0

    async def run(self) -> None:
        resource_version = ""
        while True:
            try:
                async for event in self.stream_factory(resource_version):
                    await self.handler(event)
                logger.warning("watch_ended_unexpectedly", watch=self.name, restarts=self.restarts)
            except asyncio.CancelledError:
                logger.debug("watch_stopped", watch=self.name)
                raise
            except Exception as exc:
                logger.error(
                    "watch_failed",
                    watch=self.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    restarts=self.restarts,
                )

            self.restarts += 1
            resource_version = ""
            await asyncio.sleep(self.restart_delay)
