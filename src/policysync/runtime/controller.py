from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from policysync.core.errors import error_category, is_retryable
from policysync.logging import bind_request
from policysync.runtime.workqueue import WorkQueue

logger = structlog.get_logger()


@dataclass
class ReconcileResult:
    """What a reconcile asks of the controller: a delayed requeue, a retry, or nothing."""

    requeue_after: float | None = None
    error: BaseException | None = None
    # Overrides the error's own retry classification when set
    retry: bool | None = None

    @property
    def should_retry(self) -> bool:
        if self.error is None:
            return False
        if self.retry is not None:
            return self.retry
        return is_retryable(self.error)


Reconciler = Callable[[str, str], Awaitable[ReconcileResult]]


class Controller:
    """
    Runs a reconciler over (namespace, name) keys with a bounded number of workers.

    Keys come from a WorkQueue, so one identity is never reconciled by two
    workers at once. Retryable failures are requeued with backoff; a
    requested delay is honoured as is.
    """

    def __init__(
        self,
        name: str,
        reconciler: Reconciler,
        *,
        concurrency: int = 1,
        queue: WorkQueue | None = None,
    ) -> None:
        self.name = name
        self.reconciler = reconciler
        self.concurrency = max(1, concurrency)
        self.queue = queue or WorkQueue(name)

    def enqueue(self, namespace: str, name: str) -> None:
        self.queue.add((namespace, name))

    async def run(self) -> None:
        """Run the workers until the queue shuts down or the task is cancelled."""
        logger.info("controller_started", controller=self.name, workers=self.concurrency)
        workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("controller_stopped", controller=self.name)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: tuple[str, str]) -> ReconcileResult:
        namespace, name = key
        log = bind_request(self.name, namespace, name)

        try:
            result = await self.reconciler(namespace, name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            result = ReconcileResult(error=exc)

        if result.error is not None:
            if result.should_retry:
                delay = self.queue.add_rate_limited(key)
                log.warning(
                    "reconcile_failed",
                    error=str(result.error),
                    error_category=str(error_category(result.error)),
                    retry_in=delay,
                )
            else:
                self.queue.forget(key)
                log.error(
                    "reconcile_failed",
                    error=str(result.error),
                    error_category=str(error_category(result.error)),
                    retry=False,
                )
            return result

        self.queue.forget(key)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
            log.debug("reconcile_requeued", requeue_after=result.requeue_after)
        else:
            log.debug("reconcile_succeeded")
        return result
