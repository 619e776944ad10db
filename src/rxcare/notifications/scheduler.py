"""
Notification Retry Scheduler

Deferred one-shot timers for notification retries. There is no polling
loop: each retry is a loop.call_later timer that spawns a task when due.
"""

from typing import Awaitable, Callable, Protocol
import asyncio
import uuid

import structlog

logger = structlog.get_logger(__name__)

RetryFactory = Callable[[], Awaitable[None]]


class NotificationScheduler(Protocol):
    """Injected timer service with an explicit lifecycle."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def call_later(self, delay_seconds: float, factory: RetryFactory) -> str | None:
        """Run factory() after the delay. Returns a handle id, None if refused."""
        ...


class AsyncioNotificationScheduler:
    """
    Timer-based scheduler on the running event loop.

    Usage:
        scheduler = AsyncioNotificationScheduler()
        await scheduler.start()
        scheduler.call_later(120, lambda: dispatcher.retry(notification_id))
        await scheduler.stop()
    """

    def __init__(self):
        self._running = False
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending_count(self) -> int:
        return len(self._timers) + len(self._tasks)

    async def start(self) -> None:
        """Start accepting timers."""
        if self._running:
            logger.warning("Notification scheduler already running")
            return
        self._running = True
        logger.info("Notification scheduler started")

    async def stop(self) -> None:
        """Cancel pending timers and in-flight retries."""
        if not self._running:
            return
        self._running = False

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        logger.info("Notification scheduler stopped")

    def call_later(self, delay_seconds: float, factory: RetryFactory) -> str | None:
        if not self._running:
            logger.warning("Notification scheduler not running, retry dropped")
            return None
        handle_id = str(uuid.uuid4())
        loop = asyncio.get_running_loop()
        self._timers[handle_id] = loop.call_later(
            max(delay_seconds, 0), self._spawn, handle_id, factory
        )
        return handle_id

    def _spawn(self, handle_id: str, factory: RetryFactory) -> None:
        self._timers.pop(handle_id, None)
        if not self._running:
            return
        task = asyncio.create_task(self._run(handle_id, factory))
        self._tasks[handle_id] = task

    async def _run(self, handle_id: str, factory: RetryFactory) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Scheduled retry failed", handle_id=handle_id, error=str(e))
        finally:
            self._tasks.pop(handle_id, None)
