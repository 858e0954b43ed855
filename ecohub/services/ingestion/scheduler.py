"""Periodic and on-demand execution of the ingestion pipeline.

The scheduler owns a single timer task and a single run lock.  All state
changes go through the pure transitions in
:mod:`ecohub.services.ingestion.schedule_state`; this module only carries
out their intents (arm/disarm the timer, start a run).

Runs
----
Timer fire
    Skipped when the schedule is disabled or a run is in flight (the
    timer is re-armed).  Otherwise the pipeline runs with the retry
    policy: while a run yields nothing (no imports and nothing already
    stored) and reports errors, it is retried
    up to ``max_retries`` times with a fixed ``retry_delay_ms`` pause.
    After the last attempt the failure is recorded in
    ``consecutive_failures`` and the next regular run is scheduled.

Manual trigger
    Fails with :class:`AlreadyRunningError` if any run holds the lock.
    Runs the pipeline exactly once and leaves the timer untouched.

Stopping disables the schedule and disarms the timer; a run already in
flight is allowed to complete.

Wall-clock bound
----------------
One scheduled update takes at most::

    (max_retries + 1) * (ceil(sources / max_concurrency) * source_timeout + store_time)
        + max_retries * retry_delay

With the defaults (3 sources, concurrency 3, 20 s timeout, 3 retries,
5 min delay) that is about 4 * 20 s + 15 min, plus store time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt, wait_fixed

from ecohub.models.ingestion import IngestionQuery
from ecohub.services.ingestion import schedule_state
from ecohub.services.ingestion.errors import AlreadyRunningError
from ecohub.services.ingestion.pipeline import ImportResult
from ecohub.services.ingestion.schedule_state import Intent, ScheduleConfig, ScheduleState, Transition

if TYPE_CHECKING:
    from ecohub.services.cache import CacheManager
    from ecohub.services.ingestion.pipeline import IngestionPipeline

logger = structlog.get_logger(__name__)

LAST_RESULT_CACHE_KEY = "ingestion:last_result"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _log_retry(retry_state: RetryCallState) -> None:
    result = retry_state.outcome.result() if retry_state.outcome else None
    logger.warning(
        "scheduler.retry_scheduled",
        attempt=retry_state.attempt_number,
        delay_s=retry_state.next_action.sleep if retry_state.next_action else None,
        errors=result.errors if isinstance(result, ImportResult) else None,
    )


# ---------------------------------------------------------------------------
# IngestionScheduler
# ---------------------------------------------------------------------------


class IngestionScheduler:
    """Runs the ingestion pipeline on a timer and on demand.

    Parameters
    ----------
    pipeline:
        The :class:`IngestionPipeline` to execute.
    config:
        Schedule configuration.  ``config.enabled`` only tells the
        application whether to call :meth:`start` at startup.
    cache:
        Optional cache; every finished run's report is stored under
        ``ingestion:last_result``.
    default_query:
        Query used when a run is started without one.
    clock:
        Returns the current (timezone-aware) time.  Injected by tests.
    result_ttl_seconds:
        Expiry of the cached report.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        config: ScheduleConfig | None = None,
        *,
        cache: CacheManager | None = None,
        default_query: IngestionQuery | None = None,
        clock: Callable[[], datetime] | None = None,
        result_ttl_seconds: int | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._config = config or ScheduleConfig()
        self._cache = cache
        self._default_query = default_query or IngestionQuery()
        self._clock = clock or _utcnow
        self._result_ttl = result_ttl_seconds

        self._state = ScheduleState()
        self._run_lock = asyncio.Lock()
        self._timer: asyncio.Task[None] | None = None
        self._run_task: asyncio.Task[ImportResult | None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ScheduleState:
        return self._state

    @property
    def config(self) -> ScheduleConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        """Whether a run (scheduled or manual) is in flight."""
        return self._state.running

    @property
    def is_enabled(self) -> bool:
        return self._state.enabled

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Enable the schedule.  Idempotent."""
        self._apply(schedule_state.start(self._state, self._config, self._clock()))
        logger.info("scheduler.started", next_run=_iso(self._state.next_run_at))

    async def stop(self) -> None:
        """Disable the schedule.  An in-flight run is left to complete."""
        self._apply(schedule_state.stop(self._state))
        logger.info("scheduler.stopped", running=self._state.running)

    def configure(self, config: ScheduleConfig) -> None:
        """Use *config* for subsequent runs, re-arming an enabled timer."""
        self._config = config
        self._apply(schedule_state.reschedule(self._state, config, self._clock()))
        logger.info("scheduler.configured", **config.to_dict())

    async def aclose(self, drain_timeout: float = 30.0) -> None:
        """Stop the schedule and wait up to *drain_timeout* for a run to finish."""
        await self.stop()
        if not self._run_lock.locked():
            return
        logger.info("scheduler.draining", timeout_s=drain_timeout)
        try:
            await asyncio.wait_for(self._wait_idle(), timeout=drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("scheduler.drain_timeout", timeout_s=drain_timeout)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def trigger(self, query: IngestionQuery | None = None) -> ImportResult:
        """Run the pipeline once, now.

        Raises
        ------
        AlreadyRunningError
            If a scheduled or manual run is in flight.
        """
        if self._run_lock.locked():
            raise AlreadyRunningError()
        async with self._run_lock:
            logger.info("scheduler.manual_trigger")
            return await self._execute(query, scheduled=False)

    async def run_scheduled_update(self, query: IngestionQuery | None = None) -> ImportResult | None:
        """Timer-fire entry point.  Returns ``None`` when the run is skipped."""
        if not self._state.enabled:
            logger.info("scheduler.run_skipped", reason="disabled")
            return None
        if self._run_lock.locked():
            logger.info("scheduler.run_skipped", reason="already_running")
            self._apply(schedule_state.timer_fired(self._state, self._config, self._clock()))
            return None
        async with self._run_lock:
            return await self._execute(query, scheduled=True)

    def status(self) -> dict[str, Any]:
        """Consistent snapshot of the schedule; never waits for a run."""
        state, config = self._state, self._config
        return {
            "running": state.running,
            "enabled": state.enabled,
            "last_run": _iso(state.last_run_at),
            "next_run": _iso(state.next_run_at),
            "interval": config.interval_ms,
            "config": config.to_dict(),
            "consecutive_failures": state.consecutive_failures,
            "last_attempts": state.last_attempts,
            "last_result": state.last_result.to_dict() if state.last_result else None,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _execute(self, query: IngestionQuery | None, *, scheduled: bool) -> ImportResult:
        """Run with the lock held; records the outcome."""
        config = self._config
        self._apply(schedule_state.run_started(self._state, self._clock()))

        try:
            if scheduled:
                result, attempts = await self._run_with_retries(query, config)
            else:
                result, attempts = await self._attempt(query), 1
        except asyncio.CancelledError:
            self._apply(schedule_state.run_aborted(self._state))
            logger.warning("scheduler.run_cancelled", scheduled=scheduled)
            raise

        self._apply(
            schedule_state.run_finished(
                self._state,
                config,
                self._clock(),
                result,
                attempts=attempts,
                scheduled=scheduled,
            )
        )

        logger.info(
            "scheduler.run_complete",
            scheduled=scheduled,
            attempts=attempts,
            total=result.total,
            errors=len(result.errors),
            consecutive_failures=self._state.consecutive_failures,
            next_run=_iso(self._state.next_run_at),
            duration_s=round(result.duration_seconds, 2),
        )

        if self._cache is not None:
            await self._cache.set(LAST_RESULT_CACHE_KEY, result.to_dict(), ttl_seconds=self._result_ttl)
        return result

    async def _run_with_retries(
        self, query: IngestionQuery | None, config: ScheduleConfig
    ) -> tuple[ImportResult, int]:
        attempts = 0

        async def _counted() -> ImportResult:
            nonlocal attempts
            attempts += 1
            return await self._attempt(query)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(config.max_retries + 1),
            wait=wait_fixed(config.retry_delay_ms / 1000),
            retry=retry_if_result(lambda r: r.is_retryable_failure),
            retry_error_callback=lambda rs: rs.outcome.result(),
            before_sleep=_log_retry,
        )
        result = await retrying(_counted)
        return result, attempts

    async def _attempt(self, query: IngestionQuery | None) -> ImportResult:
        """One pipeline run; an unexpected exception becomes a failed result."""
        try:
            return await self._pipeline.run(query or self._default_query)
        except Exception as exc:
            logger.error("scheduler.run_failed", error=str(exc), exc_info=True)
            return ImportResult(errors=[f"Ingestion run failed: {exc}"])

    async def _wait_idle(self) -> None:
        async with self._run_lock:
            pass

    # -- Timer ---------------------------------------------------------

    def _apply(self, transition: Transition) -> None:
        self._state = transition.state
        for intent in transition.intents:
            if intent is Intent.ARM_TIMER:
                self._arm()
            elif intent is Intent.DISARM_TIMER:
                self._disarm()
            elif intent is Intent.RUN_PIPELINE:
                self._spawn_run()

    def _arm(self) -> None:
        self._disarm()
        next_run = self._state.next_run_at
        if next_run is None:
            return
        delay = max(0.0, (next_run - self._clock()).total_seconds())
        self._timer = asyncio.create_task(self._fire_after(delay), name="ingestion-scheduler-timer")

    def _disarm(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        logger.debug("scheduler.timer_fired")
        self._apply(schedule_state.timer_fired(self._state, self._config, self._clock()))

    def _spawn_run(self) -> None:
        task = asyncio.create_task(self.run_scheduled_update(), name="ingestion-scheduled-run")
        task.add_done_callback(self._on_run_done)
        self._run_task = task

    def _on_run_done(self, task: asyncio.Task[ImportResult | None]) -> None:
        if self._run_task is task:
            self._run_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("scheduler.scheduled_run_crashed", exc_info=task.exception())
