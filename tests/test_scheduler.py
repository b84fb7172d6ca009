"""Tests for the periodic scheduler and its retry wrapper."""

import asyncio

import pytest

from beeper_sync.exceptions import AuthenticationError
from beeper_sync.scheduler import SyncScheduler, retry_with_backoff
from beeper_sync.sync import SyncResult


class ScriptedOrchestrator:
    def __init__(self, *results: SyncResult) -> None:
        self.results = list(results)
        self.calls = 0

    async def run_sync(self, source="cron", **kwargs) -> SyncResult:
        self.calls += 1
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]


def _ok():
    return SyncResult(source="cron")


def _failed(transient=False):
    return SyncResult(source="cron", success=False, transient=transient, error="boom")


@pytest.mark.asyncio
async def test_retry_with_backoff_eventually_succeeds():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("try again")
        return "done"

    assert await retry_with_backoff(flaky, attempts=3, base_delay=0) == "done"
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_with_backoff_does_not_retry_auth_errors():
    calls = []

    async def denied():
        calls.append(1)
        raise AuthenticationError(401, "token expired")

    with pytest.raises(AuthenticationError):
        await retry_with_backoff(denied, attempts=5, base_delay=0)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_tick_retries_failed_runs():
    orchestrator = ScriptedOrchestrator(_failed(), _ok())
    scheduler = SyncScheduler(orchestrator, interval_seconds=60, attempts=3, base_delay=0)

    result = await scheduler.tick()

    assert result.success is True
    assert orchestrator.calls == 2
    assert scheduler.runs == 1


@pytest.mark.asyncio
async def test_tick_does_not_retry_transient_failures():
    orchestrator = ScriptedOrchestrator(_failed(transient=True))
    scheduler = SyncScheduler(orchestrator, interval_seconds=60, base_delay=0)

    result = await scheduler.tick()

    assert result.transient is True
    assert orchestrator.calls == 1


@pytest.mark.asyncio
async def test_tick_gives_up_after_attempts():
    orchestrator = ScriptedOrchestrator(_failed())
    scheduler = SyncScheduler(orchestrator, interval_seconds=60, attempts=2, base_delay=0)

    assert await scheduler.tick() is None
    assert orchestrator.calls == 2


@pytest.mark.asyncio
async def test_run_forever_stops_on_request():
    orchestrator = ScriptedOrchestrator(_ok())
    scheduler = SyncScheduler(orchestrator, interval_seconds=0.01, base_delay=0)

    task = asyncio.create_task(scheduler.run_forever())
    while scheduler.runs < 2:
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert scheduler.status()["stopped"] is True
    assert orchestrator.calls >= 2
