"""Periodic cron sync with an explicit retry-with-backoff wrapper."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from beeper_sync.config import settings
from beeper_sync.exceptions import AuthenticationError, ConfigurationError
from beeper_sync.sync import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retrying these cannot help until someone fixes the configuration.
NON_RETRYABLE = (ConfigurationError, AuthenticationError)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Await func() up to attempts times, sleeping base_delay * 2**n between tries."""
    for attempt in range(attempts):
        try:
            return await func()
        except NON_RETRYABLE:
            raise
        except retry_on as e:
            if attempt == attempts - 1:
                raise
            delay = base_delay * 2**attempt
            logger.warning("Attempt %d/%d failed (%s); retrying in %.1fs", attempt + 1, attempts, e, delay)
            await asyncio.sleep(delay)
    raise RuntimeError("retry_with_backoff called with attempts < 1")


class SyncScheduler:
    """Runs the cron sync every interval until stop() is called.

    A transient result (backend unavailable) is not retried; the next tick picks
    up from the same cursor. A failed non-transient result is retried with backoff.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_seconds: float | None = None,
        attempts: int = 3,
        base_delay: float = 5.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else settings.SYNC_INTERVAL_MINUTES * 60
        )
        self.attempts = attempts
        self.base_delay = base_delay
        self._stop = asyncio.Event()
        self.runs = 0

    def stop(self) -> None:
        self._stop.set()

    async def tick(self) -> SyncResult | None:
        async def attempt() -> SyncResult:
            result = await self.orchestrator.run_sync("cron")
            if not result.success and not result.transient:
                raise RuntimeError(result.error or "sync failed")
            return result

        try:
            result = await retry_with_backoff(attempt, attempts=self.attempts, base_delay=self.base_delay)
        except Exception as e:
            logger.error("Scheduled sync gave up after %d attempts: %s", self.attempts, e)
            return None
        finally:
            self.runs += 1
        if result.transient:
            logger.info("Scheduled sync deferred: %s", result.error)
        return result

    async def run_forever(self) -> None:
        logger.info("Scheduler started: every %.0fs", self.interval_seconds)
        while not self._stop.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduler stopped after %d runs", self.runs)

    def status(self) -> dict[str, Any]:
        return {"interval_seconds": self.interval_seconds, "runs": self.runs, "stopped": self._stop.is_set()}
