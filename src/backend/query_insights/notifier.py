from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Set

from .repository import NO_MARKER, EventRepository

logger = logging.getLogger(__name__)


class Subscription:
    """
    One connected consumer of "data changed" signals.

    Holds at most one pending signal: a consumer that is busy re-fetching
    while several changes land sees a single signal afterwards, which is all
    it needs to re-run the reports.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[None] = asyncio.Queue(maxsize=1)

    def _deliver(self) -> bool:
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            return False
        return True

    @property
    def pending(self) -> bool:
        return not self._queue.empty()

    async def wait(self) -> None:
        await self._queue.get()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> None:
        await self.wait()


class ChangeNotifier:
    """Publish/subscribe registry for dashboard refresh signals."""

    def __init__(self) -> None:
        self._subscribers: Set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @asynccontextmanager
    async def subscribe(self) -> AsyncIterator[Subscription]:
        subscription = Subscription()
        self._subscribers.add(subscription)
        logger.debug("Dashboard subscriber added (%s connected)", len(self._subscribers))
        try:
            yield subscription
        finally:
            self._subscribers.discard(subscription)
            logger.debug("Dashboard subscriber removed (%s connected)", len(self._subscribers))

    def publish(self) -> int:
        """Signal every current subscriber; returns how many got a new signal."""

        delivered = 0
        for subscription in list(self._subscribers):
            if subscription._deliver():
                delivered += 1
        return delivered


class ChangeWatcher:
    """
    Background task that turns store changes into notifier signals.

    Runs for the lifetime of the process. Store errors are logged and the
    watch is restarted after ``retry_seconds`` from the last marker seen, so
    a change that landed around the failure is still signalled.
    """

    def __init__(
        self,
        repository: EventRepository,
        notifier: ChangeNotifier,
        interval: float = 2.0,
        retry_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.interval = interval
        self.retry_seconds = retry_seconds
        self._task: Optional[asyncio.Task] = None
        self._marker: Any = NO_MARKER

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Change watcher started (poll every %ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Change watcher stopped")

    async def _run(self) -> None:
        while True:
            try:
                if self._marker is NO_MARKER:
                    self._marker = await asyncio.to_thread(self.repository.change_marker)
                async for marker in self.repository.watch(self.interval, last=self._marker):
                    self._marker = marker
                    delivered = self.notifier.publish()
                    logger.debug("Event store changed; notified %s subscriber(s)", delivered)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Change watch failed, retrying in %ss: %s", self.retry_seconds, exc)
                await asyncio.sleep(self.retry_seconds)
