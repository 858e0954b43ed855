"""Tests for the scheduler runtime: run lock, retries, timer and shutdown."""

from __future__ import annotations

import asyncio
import time
from datetime import timedelta

import pytest

from ecohub.models.ingestion import IngestionQuery
from ecohub.services.ingestion.errors import AlreadyRunningError
from ecohub.services.ingestion.pipeline import ImportResult
from ecohub.services.ingestion.schedule_state import ScheduleConfig
from ecohub.services.ingestion.scheduler import LAST_RESULT_CACHE_KEY, IngestionScheduler

LONG = ScheduleConfig(interval_ms=60_000, max_retries=2, retry_delay_ms=100)


def _failure() -> ImportResult:
    return ImportResult(errors=["perplexity: unavailable: HTTP 503"])


def _success() -> ImportResult:
    return ImportResult(startups=2, opportunities=1)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakePipeline:
    """Pipeline stand-in returning scripted results.

    When ``gate`` is set, every run waits for it before returning.
    """

    def __init__(self, results=None, *, exc: Exception | None = None, gated: bool = False) -> None:
        self.calls = 0
        self.queries: list[IngestionQuery] = []
        self._results = list(results or [_success()])
        self._exc = exc
        self.gate = asyncio.Event() if gated else None
        self.started = asyncio.Event()

    async def run(self, query: IngestionQuery) -> ImportResult:
        self.calls += 1
        self.queries.append(query)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self._exc is not None:
            raise self._exc
        return self._results[min(self.calls, len(self._results)) - 1]


class FakeCache:
    """Minimal in-memory cache matching CacheManager interface."""

    def __init__(self) -> None:
        self._store: dict[str, object] = {}

    async def get(self, key: str, default: object = None) -> object:
        return self._store.get(key, default)

    async def set(self, key: str, value: object, ttl_seconds: int | None = None) -> None:
        self._store[key] = value


@pytest.fixture
async def make_scheduler():
    created: list[IngestionScheduler] = []

    def _make(pipeline, config=LONG, **kwargs) -> IngestionScheduler:
        scheduler = IngestionScheduler(pipeline, config, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        await scheduler.aclose(drain_timeout=1.0)


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------


class TestRunLock:
    async def test_concurrent_triggers_single_success(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)

        tasks = [asyncio.create_task(scheduler.trigger()) for _ in range(5)]
        await pipeline.started.wait()
        pipeline.gate.set()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        successes = [o for o in outcomes if isinstance(o, ImportResult)]
        rejected = [o for o in outcomes if isinstance(o, AlreadyRunningError)]
        assert len(successes) == 1
        assert len(rejected) == 4
        assert pipeline.calls == 1

    async def test_trigger_rejected_during_scheduled_run(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        scheduled = asyncio.create_task(scheduler.run_scheduled_update())
        await pipeline.started.wait()

        with pytest.raises(AlreadyRunningError):
            await scheduler.trigger()

        pipeline.gate.set()
        assert await scheduled is not None
        assert pipeline.calls == 1

    async def test_scheduled_update_skipped_while_running(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        manual = asyncio.create_task(scheduler.trigger())
        await pipeline.started.wait()

        assert await scheduler.run_scheduled_update() is None
        assert scheduler.state.next_run_at is not None

        pipeline.gate.set()
        await manual
        assert pipeline.calls == 1

    async def test_status_does_not_block_on_run(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)

        task = asyncio.create_task(scheduler.trigger())
        await pipeline.started.wait()

        status = scheduler.status()
        assert status["running"] is True
        assert status["last_run"] is not None

        pipeline.gate.set()
        await task
        assert scheduler.status()["running"] is False


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


class TestRetries:
    async def test_permanent_failure_retried_exactly_max_retries(self, make_scheduler):
        pipeline = FakePipeline([_failure()])
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        started = time.monotonic()
        result = await scheduler.run_scheduled_update()
        elapsed = time.monotonic() - started

        assert result is not None and result.is_retryable_failure
        assert pipeline.calls == 3
        assert elapsed >= 0.2  # two fixed 100 ms pauses
        state = scheduler.state
        assert state.last_attempts == 3
        assert state.consecutive_failures == 1
        assert state.next_run_at is not None
        assert state.next_run_at - state.last_run_at >= LONG.interval

    async def test_success_stops_retrying(self, make_scheduler):
        pipeline = FakePipeline([_failure(), _success()])
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        result = await scheduler.run_scheduled_update()

        assert result.total == 3
        assert pipeline.calls == 2
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.state.last_attempts == 2

    async def test_already_stored_run_with_errors_is_not_retried(self, make_scheduler):
        stored = ImportResult(already_present=1, errors=["perplexity: unavailable: API key not configured"])
        pipeline = FakePipeline([stored])
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        result = await scheduler.run_scheduled_update()

        assert result.already_present == 1
        assert pipeline.calls == 1
        assert scheduler.state.last_attempts == 1
        assert scheduler.state.consecutive_failures == 0

    async def test_pipeline_exception_becomes_failed_result(self, make_scheduler):
        pipeline = FakePipeline(exc=RuntimeError("boom"))
        scheduler = make_scheduler(pipeline, ScheduleConfig(interval_ms=60_000, max_retries=0))
        await scheduler.start()

        result = await scheduler.run_scheduled_update()

        assert result.errors == ["Ingestion run failed: boom"]
        assert result.is_retryable_failure
        assert pipeline.calls == 1

    async def test_manual_trigger_never_retries(self, make_scheduler):
        pipeline = FakePipeline([_failure()])
        scheduler = make_scheduler(pipeline)
        await scheduler.start()
        next_run = scheduler.state.next_run_at

        result = await scheduler.trigger()

        assert result.is_retryable_failure
        assert pipeline.calls == 1
        assert scheduler.state.next_run_at == next_run
        assert scheduler.state.consecutive_failures == 0

    async def test_disabled_scheduler_skips(self, make_scheduler):
        pipeline = FakePipeline()
        scheduler = make_scheduler(pipeline)

        assert await scheduler.run_scheduled_update() is None
        assert pipeline.calls == 0


# ---------------------------------------------------------------------------
# Timer
# ---------------------------------------------------------------------------


class TestTimer:
    async def test_timer_runs_and_stop_prevents_new_runs(self, make_scheduler):
        pipeline = FakePipeline()
        interval = ScheduleConfig(interval_ms=50, max_retries=0, retry_delay_ms=0)
        scheduler = make_scheduler(pipeline, interval)

        await scheduler.start()
        await asyncio.sleep(0.25)

        assert pipeline.calls >= 1
        state = scheduler.state
        assert state.last_run_at is not None
        assert state.next_run_at - state.last_run_at >= timedelta(milliseconds=50)
        assert state.next_run_at - state.last_run_at < timedelta(milliseconds=250)

        await scheduler.stop()
        calls_at_stop = pipeline.calls
        await asyncio.sleep(0.2)

        assert pipeline.calls == calls_at_stop
        assert scheduler.state.next_run_at is None

    async def test_start_is_idempotent(self, make_scheduler):
        scheduler = make_scheduler(FakePipeline())
        await scheduler.start()
        first = scheduler.state.next_run_at
        await scheduler.start()
        assert scheduler.state.next_run_at == first

    async def test_configure_rearms_with_new_interval(self, make_scheduler):
        pipeline = FakePipeline()
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        scheduler.configure(ScheduleConfig(interval_ms=30, max_retries=0))
        await asyncio.sleep(0.2)

        assert pipeline.calls >= 1
        assert scheduler.status()["interval"] == 30

    async def test_stop_lets_in_flight_run_complete(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)
        await scheduler.start()

        task = asyncio.create_task(scheduler.run_scheduled_update())
        await pipeline.started.wait()
        await scheduler.stop()

        assert scheduler.is_running
        pipeline.gate.set()
        result = await task

        assert result is not None and result.total == 3
        assert not scheduler.is_running
        assert scheduler.state.next_run_at is None
        assert not scheduler.is_enabled


# ---------------------------------------------------------------------------
# Reporting and shutdown
# ---------------------------------------------------------------------------


class TestReportingAndShutdown:
    async def test_result_cached_and_exposed_in_status(self, make_scheduler):
        cache = FakeCache()
        scheduler = make_scheduler(FakePipeline(), cache=cache)

        await scheduler.trigger()

        assert cache._store[LAST_RESULT_CACHE_KEY]["startups"] == 2
        status = scheduler.status()
        assert status["last_result"]["total"] == 3
        assert status["config"]["max_retries"] == 2
        assert status["last_attempts"] == 1

    async def test_default_query_used_when_none_given(self, make_scheduler):
        pipeline = FakePipeline()
        query = IngestionQuery(sector="fintech", geography="Malaysia")
        scheduler = make_scheduler(pipeline, default_query=query)

        await scheduler.trigger()
        await scheduler.trigger(IngestionQuery(sector="edtech"))

        assert pipeline.queries[0] == query
        assert pipeline.queries[1].sector == "edtech"

    async def test_aclose_waits_for_run(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)
        task = asyncio.create_task(scheduler.trigger())
        await pipeline.started.wait()

        closing = asyncio.create_task(scheduler.aclose(drain_timeout=2.0))
        await asyncio.sleep(0.05)
        assert not closing.done()

        pipeline.gate.set()
        await closing
        assert task.done()
        assert not scheduler.is_running

    async def test_aclose_gives_up_after_timeout(self, make_scheduler):
        pipeline = FakePipeline(gated=True)
        scheduler = make_scheduler(pipeline)
        task = asyncio.create_task(scheduler.trigger())
        await pipeline.started.wait()

        await scheduler.aclose(drain_timeout=0.05)
        assert scheduler.is_running

        pipeline.gate.set()
        await task
