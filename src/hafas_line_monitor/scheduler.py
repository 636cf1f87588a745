"""Adaptive per-stop poll scheduler driven by an APScheduler tick."""

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from apscheduler import AsyncScheduler, CoalescePolicy
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError

from hafas_line_monitor.client import QuotaExceededError, TransitError
from hafas_line_monitor.logging import get_logger, stop_context
from hafas_line_monitor.metrics import (
    record_poll_error,
    record_poll_success,
    record_records_stored,
    set_monitored_stops,
)
from hafas_line_monitor.models import DelayStats, PollingConfig

if TYPE_CHECKING:
    from hafas_line_monitor.ingestor import DepartureIngestor
    from hafas_line_monitor.quota import QuotaGovernor
    from hafas_line_monitor.storage import Store

logger = get_logger(__name__)

# APScheduler v4 requires serializable function references, so the tick is a
# module-level function that looks the scheduler instance up by id
_scheduler_registry: dict[str, "AdaptivePollScheduler"] = {}


async def _execute_scheduled_tick(scheduler_id: str) -> None:
    """Module-level function for APScheduler to call.

    Args:
        scheduler_id: Unique ID of the scheduler instance.
    """
    scheduler = _scheduler_registry.get(scheduler_id)
    if scheduler:
        await scheduler.tick()


def compute_poll_interval(stats: DelayStats, hour: int, policy: PollingConfig) -> timedelta:
    """Choose the next poll interval of a stop from its recent delay history.

    A heuristic, not an estimator: stable stops are polled rarely, volatile
    ones often, and peak hours halve the interval. The result always lies
    within [min_interval, max_interval].

    Args:
        stats: Delay mean, standard deviation and sample count over the
            history window.
        hour: Current local clock hour (0-23).
        policy: Interval bounds and thresholds.

    Returns:
        Interval until the next poll.
    """
    if stats.sample_count < policy.min_samples:
        return policy.max_interval

    interval = policy.min_interval
    if stats.mean < policy.stable_mean and stats.stddev < policy.stable_stddev:
        interval = policy.max_interval
    elif stats.mean < policy.moderate_mean and stats.stddev < policy.moderate_stddev:
        interval = (policy.min_interval + policy.max_interval) / 2

    if policy.is_peak_hour(hour):
        interval = max(interval / 2, policy.min_interval)

    return interval


class PollStatus(str, Enum):
    """Lifecycle of one stop within a tick."""

    IDLE = "idle"
    DUE = "due"
    FETCHING = "fetching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PollState:
    """Poll bookkeeping for one monitored stop."""

    stop_id: str
    next_poll_time: datetime
    interval: timedelta
    status: PollStatus = PollStatus.IDLE
    last_polled: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0


@dataclass
class PollOutcome:
    """Result of one stop poll, applied to the registry by the tick."""

    stop_id: str
    records: int = 0
    interval: timedelta | None = None
    error: Exception | None = None

    @property
    def quota_exceeded(self) -> bool:
        return isinstance(self.error, QuotaExceededError)


@dataclass
class TickResult:
    """Summary of one scheduler tick."""

    due: int = 0
    succeeded: int = 0
    failed: int = 0
    records: int = 0
    skipped: bool = False


class AdaptivePollScheduler:
    """Owns the stop registry and polls each stop when its interval elapses.

    The registry is only mutated by :meth:`tick`. Other components announce
    stops through :meth:`notify_discovered`, which the next tick picks up.
    """

    def __init__(
        self,
        ingestor: "DepartureIngestor",
        store: "Store",
        governor: "QuotaGovernor",
        policy: PollingConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        misfire_grace_time: float = 30.0,
    ) -> None:
        """Initialize the scheduler.

        Args:
            ingestor: Fetches and normalizes departures for a stop.
            store: Persistence gateway for records and delay history.
            governor: Quota governor; ticks are skipped while it is exhausted.
            policy: Interval bounds and thresholds. The tick cadence is the
                minimum interval.
            clock: Source of aware local time.
            misfire_grace_time: Seconds after scheduled time to still run a tick.
        """
        self._id = str(uuid.uuid4())
        self._ingestor = ingestor
        self._store = store
        self._governor = governor
        self.policy = policy or PollingConfig()
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._misfire_grace_time = misfire_grace_time
        self._scheduler: AsyncScheduler | None = None
        self._states: dict[str, PollState] = {}
        self._pending: set[str] = set()
        self._tick_lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(self.policy.max_concurrent_polls)

    @property
    def states(self) -> dict[str, PollState]:
        """Snapshot of the registry keyed by stop id."""
        return dict(self._states)

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is running."""
        return self._scheduler is not None and self._scheduler.state.name == "started"

    def get_stop_count(self) -> int:
        return len(self._states)

    def register(self, stop_id: str, next_poll_time: datetime | None = None) -> PollState:
        """Add a stop to the registry with the maximum interval.

        Already registered stops are left untouched.

        Args:
            stop_id: Stop to monitor.
            next_poll_time: First poll time; defaults to now (due immediately).
        """
        state = self._states.get(stop_id)
        if state is None:
            state = PollState(
                stop_id=stop_id,
                next_poll_time=next_poll_time or self._clock(),
                interval=self.policy.max_interval,
            )
            self._states[stop_id] = state
            set_monitored_stops(len(self._states))
            logger.info(
                "stop_registered",
                stop_id=stop_id,
                next_poll=state.next_poll_time.isoformat(),
            )
        return state

    def notify_discovered(self, stop_id: str) -> None:
        """Queue a freshly discovered stop for registration at the next tick.

        Discovery calls this before storing the departures it found, so its
        first poll waits a full maximum interval.
        """
        self._pending.add(stop_id)

    async def load_registry(self) -> int:
        """Register every stop with recorded departures of the monitored line.

        Stops queued through :meth:`notify_discovered` are skipped; the next
        tick registers them with their deferred first poll.

        Returns:
            Number of stops newly registered.
        """
        stop_ids = await self._store.line_stop_ids(self._ingestor.target_line)
        added = 0
        for stop_id in stop_ids:
            if stop_id not in self._states and stop_id not in self._pending:
                self.register(stop_id)
                added += 1
        return added

    async def tick(self) -> TickResult:
        """Run one scheduler pass, unless the previous one is still running."""
        if self._tick_lock.locked():
            logger.warning("tick_overlap_skipped")
            return TickResult(skipped=True)

        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> TickResult:
        now = self._clock()

        while self._pending:
            self.register(self._pending.pop(), now + self.policy.max_interval)

        try:
            await self.load_registry()
        except SQLAlchemyError as e:
            logger.error("registry_sync_failed", error_type=type(e).__name__, error_message=str(e))

        if self._governor.exhausted:
            logger.warning(
                "tick_skipped_quota",
                resume_in_seconds=round(self._governor.seconds_until_reset(), 1),
            )
            return TickResult(skipped=True)

        due = [state for state in self._states.values() if now >= state.next_poll_time]
        result = TickResult(due=len(due))
        if not due:
            return result

        for state in due:
            state.status = PollStatus.FETCHING

        outcomes = await asyncio.gather(*(self._poll(state.stop_id, now) for state in due))

        for outcome in outcomes:
            self._apply(outcome, now, result)

        logger.info(
            "tick_completed",
            due=result.due,
            succeeded=result.succeeded,
            failed=result.failed,
            records=result.records,
        )
        return result

    async def _poll(self, stop_id: str, now: datetime) -> PollOutcome:
        """Fetch, store and re-plan one stop. Never raises."""
        async with self._semaphore:
            with stop_context(stop_id):
                try:
                    records = await self._ingestor.fetch_and_normalize(stop_id)
                    stored = await self._store.insert_departures(records)
                    stats = await self._store.delay_stats(
                        stop_id, now - self.policy.history_window
                    )
                    interval = compute_poll_interval(stats, now.hour, self.policy)
                    return PollOutcome(stop_id=stop_id, records=stored, interval=interval)

                except (TransitError, SQLAlchemyError) as e:
                    return PollOutcome(stop_id=stop_id, error=e)

                except Exception as e:
                    logger.exception(
                        "poll_unknown_error",
                        error_type=type(e).__name__,
                        error_message=str(e),
                    )
                    return PollOutcome(stop_id=stop_id, error=e)

    def _apply(self, outcome: PollOutcome, now: datetime, result: TickResult) -> None:
        state = self._states[outcome.stop_id]
        state.last_polled = now

        if outcome.error is None and outcome.interval is not None:
            state.status = PollStatus.SUCCEEDED
            state.interval = outcome.interval
            state.next_poll_time = now + outcome.interval
            state.last_error = None
            state.consecutive_failures = 0
            result.succeeded += 1
            result.records += outcome.records
            record_records_stored("poll", outcome.records)
            record_poll_success(outcome.stop_id, outcome.interval.total_seconds())
            logger.info(
                "poll_success",
                stop_id=outcome.stop_id,
                records=outcome.records,
                interval_minutes=outcome.interval.total_seconds() / 60,
            )

        elif outcome.quota_exceeded:
            # Stop stays due; ticks resume after the quota reset
            state.status = PollStatus.FAILED
            state.last_error = str(outcome.error)
            result.failed += 1
            resume_at = self._governor.pause_until_next_hour()
            logger.warning(
                "poll_quota_exceeded",
                stop_id=outcome.stop_id,
                resume_at=resume_at.isoformat(),
            )

        else:
            state.status = PollStatus.FAILED
            state.interval = self.policy.max_interval
            state.next_poll_time = now + self.policy.max_interval
            state.last_error = str(outcome.error)
            state.consecutive_failures += 1
            result.failed += 1
            record_poll_error(
                outcome.stop_id,
                type(outcome.error).__name__,
                self.policy.max_interval.total_seconds(),
            )
            logger.error(
                "poll_error",
                stop_id=outcome.stop_id,
                error_type=type(outcome.error).__name__,
                error_message=str(outcome.error),
                consecutive_failures=state.consecutive_failures,
            )

        state.status = PollStatus.IDLE

    async def start(self) -> None:
        """Start the recurring tick at the minimum interval."""
        _scheduler_registry[self._id] = self

        # APScheduler v4 requires the context manager to be entered
        self._scheduler = AsyncScheduler()
        await self._scheduler.__aenter__()

        trigger = IntervalTrigger(seconds=self.policy.min_interval.total_seconds())
        await self._scheduler.add_schedule(
            _execute_scheduled_tick,
            trigger=trigger,
            id=f"poll-tick-{self._id}",
            kwargs={"scheduler_id": self._id},
            misfire_grace_time=self._misfire_grace_time,
            coalesce=CoalescePolicy.latest,
        )

        await self._scheduler.start_in_background()

    async def stop(self, wait: bool = True) -> None:
        """Stop the scheduler.

        Args:
            wait: If True, wait for a running tick to complete.
        """
        if self._scheduler is not None:
            await self._scheduler.stop()
            if wait:
                await self._scheduler.wait_until_stopped()
            await self._scheduler.__aexit__(None, None, None)
            self._scheduler = None

        _scheduler_registry.pop(self._id, None)

    async def run_once(self) -> TickResult:
        """Run a tick immediately (for manual triggers and tests)."""
        return await self.tick()
