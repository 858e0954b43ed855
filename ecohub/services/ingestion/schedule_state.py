"""Pure scheduler state machine.

Every function takes the current :class:`ScheduleState` and returns a
:class:`Transition`: the next state plus the side effects (``intents``)
the runtime must carry out.  Nothing here touches the event loop, the
clock or the pipeline, so each rule can be exercised directly.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any, NamedTuple

from ecohub.services.ingestion.errors import AlreadyRunningError

if TYPE_CHECKING:
    from ecohub.services.ingestion.pipeline import ImportResult


DEFAULT_INTERVAL_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 5 * 60 * 1000


@dataclass(frozen=True)
class ScheduleConfig:
    enabled: bool = False
    interval_ms: int = DEFAULT_INTERVAL_MS
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS

    def __post_init__(self) -> None:
        if self.interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.retry_delay_ms < 0:
            raise ValueError("retry_delay_ms must not be negative")

    @property
    def interval(self) -> timedelta:
        return timedelta(milliseconds=self.interval_ms)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScheduleState:
    running: bool = False
    enabled: bool = False
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    consecutive_failures: int = 0
    last_result: ImportResult | None = None
    last_attempts: int = 0


class Intent(StrEnum):
    __slots__ = ()

    ARM_TIMER = "arm_timer"
    DISARM_TIMER = "disarm_timer"
    RUN_PIPELINE = "run_pipeline"


class Transition(NamedTuple):
    state: ScheduleState
    intents: tuple[Intent, ...] = ()


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def start(state: ScheduleState, config: ScheduleConfig, now: datetime) -> Transition:
    if state.enabled:
        return Transition(state)
    return Transition(
        replace(state, enabled=True, next_run_at=now + config.interval),
        (Intent.ARM_TIMER,),
    )


def stop(state: ScheduleState) -> Transition:
    # An in-flight run keeps ``running`` and is left to finish.
    return Transition(
        replace(state, enabled=False, next_run_at=None),
        (Intent.DISARM_TIMER,),
    )


def timer_fired(state: ScheduleState, config: ScheduleConfig, now: datetime) -> Transition:
    if not state.enabled:
        return Transition(state)
    if state.running:
        return Transition(replace(state, next_run_at=now + config.interval), (Intent.ARM_TIMER,))
    return Transition(state, (Intent.RUN_PIPELINE,))


def run_started(state: ScheduleState, now: datetime) -> Transition:
    if state.running:
        raise AlreadyRunningError()
    return Transition(replace(state, running=True, last_run_at=now))


def run_finished(
    state: ScheduleState,
    config: ScheduleConfig,
    now: datetime,
    result: ImportResult,
    *,
    attempts: int = 1,
    scheduled: bool = True,
) -> Transition:
    """Record a finished run.

    Parameters
    ----------
    attempts:
        Number of pipeline attempts the run took, retries included.
    scheduled:
        ``True`` for timer runs.  Manual runs never count towards
        ``consecutive_failures`` and leave ``next_run_at`` alone.
    """
    failures = state.consecutive_failures
    if not result.is_retryable_failure:
        failures = 0
    elif scheduled:
        failures += 1

    next_state = replace(
        state,
        running=False,
        last_result=result,
        last_attempts=attempts,
        consecutive_failures=failures,
    )

    if scheduled and next_state.enabled:
        return Transition(replace(next_state, next_run_at=now + config.interval), (Intent.ARM_TIMER,))
    return Transition(next_state)


def run_aborted(state: ScheduleState) -> Transition:
    """Release ``running`` after a run was cancelled before it finished."""
    return Transition(replace(state, running=False))


def reschedule(state: ScheduleState, config: ScheduleConfig, now: datetime) -> Transition:
    """Apply a new interval to an enabled schedule."""
    if not state.enabled:
        return Transition(state)
    return Transition(replace(state, next_run_at=now + config.interval), (Intent.ARM_TIMER,))
