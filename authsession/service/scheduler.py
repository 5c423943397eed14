"""Background timers bound to the session lifetime.

``PeriodicTask`` owns one asyncio loop task that sleeps ``interval`` seconds
and then launches the tick callback as its own task, so a tick stuck on a
network call never delays the next one. Two timers are built on it:

- ``RenewalScheduler`` refreshes the access token while a user is signed in
  and tears the session down when a refresh fails.
- ``KeepAlivePinger`` pings the backend health check so hosted backends that
  sleep when idle stay warm.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Set

from authsession.config import DEFAULT_KEEPALIVE_INTERVAL_SECONDS, DEFAULT_RENEWAL_INTERVAL_SECONDS
from authsession.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    name = "periodic_task"

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self.start_count = 0
        self.cancel_count = 0
        self.tick_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the timer. Returns False when it is already running."""
        if self.running:
            logger.debug(f"{self.name}_already_running")
            return False
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        self.start_count += 1
        logger.info(f"{self.name}_started", interval_seconds=self.interval)
        return True

    def cancel(self) -> bool:
        """Cancel the timer and in-flight ticks without waiting for them.

        The calling task is never cancelled, so a tick may stop its own timer.
        Returns False when the timer was not running.
        """
        if self._task is None:
            return False
        current = asyncio.current_task()
        for task in (self._task, *self._ticks):
            if task is not current and not task.done():
                task.cancel()
        self._task = None
        self.cancel_count += 1
        logger.info(f"{self.name}_stopped")
        return True

    async def stop(self) -> None:
        """Cancel the timer and wait until its tasks have finished."""
        current = asyncio.current_task()
        pending = ([self._task] if self._task else []) + list(self._ticks)
        self.cancel()
        for task in pending:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._spawn_tick()

    def _spawn_tick(self) -> asyncio.Task:
        task = asyncio.create_task(self._tick(), name=f"{self.name}_tick")
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)
        return task

    async def _tick(self) -> None:
        self.tick_count += 1
        try:
            await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                f"{self.name}_tick_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def run_once(self) -> None:
        raise NotImplementedError


class RenewalScheduler(PeriodicTask):
    """Refreshes the access token on a fixed cadence while authenticated.

    A failed scheduled refresh means the refresh token itself is gone, so the
    failure callback (logout) runs immediately instead of a retry.
    """

    name = "token_renewal"

    def __init__(
        self,
        refresh: Callable[[], Awaitable[bool]],
        on_failure: Callable[[], Awaitable[None]],
        *,
        interval: float = DEFAULT_RENEWAL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(interval)
        self._refresh = refresh
        self._on_failure = on_failure

    async def run_once(self) -> None:
        if await self._refresh():
            logger.info("scheduled_refresh_succeeded")
            return
        logger.warning("scheduled_refresh_failed", action="logout")
        await self._on_failure()


class KeepAlivePinger(PeriodicTask):
    name = "keepalive"

    def __init__(
        self,
        ping: Callable[[], Awaitable[object]],
        *,
        interval: float = DEFAULT_KEEPALIVE_INTERVAL_SECONDS,
    ) -> None:
        super().__init__(interval)
        self._ping = ping

    def start(self) -> bool:
        started = super().start()
        if started:
            # Ping right away instead of waiting a full interval
            self._spawn_tick()
        return started

    async def run_once(self) -> None:
        result = await self._ping()
        if getattr(result, "ok", True):
            logger.debug("keepalive_ping_sent")
        else:
            logger.warning("keepalive_ping_failed", error=getattr(result, "error", None))
