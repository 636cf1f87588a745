"""Hourly request quota tracking with credential rotation."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, tzinfo

from hafas_line_monitor.logging import get_logger
from hafas_line_monitor.metrics import (
    record_quota_pause,
    record_quota_rotation,
    set_quota_requests,
)

logger = get_logger(__name__)

Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[None]]


def start_of_hour(moment: datetime) -> datetime:
    """Truncate a timestamp to the start of its clock hour."""
    return moment.replace(minute=0, second=0, microsecond=0)


def start_of_next_hour(moment: datetime) -> datetime:
    """Return the top of the clock hour following ``moment``."""
    return start_of_hour(moment) + timedelta(hours=1)


def make_clock(tz: tzinfo) -> Clock:
    """Build a clock returning timezone-aware local time."""

    def now() -> datetime:
        return datetime.now(tz)

    return now


class QuotaGovernor:
    """Owner of the shared request counter and the two provider credentials.

    Every outbound request passes through :meth:`acquire`, which is serialized
    by a lock so concurrent workers never race on counting or rotating.

    Rotation is load distribution, not quota enforcement: when the active
    credential reaches the cap the backup takes over on the assumption that it
    draws from an independent provider quota. If the provider still answers
    with a quota error, callers report it through :meth:`pause_until_next_hour`.
    """

    def __init__(
        self,
        primary_key: str,
        backup_key: str,
        hourly_cap: int = 800,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the governor.

        Args:
            primary_key: Credential used first.
            backup_key: Credential rotated in when the active one hits the cap.
            hourly_cap: Requests allowed per credential per clock hour.
            clock: Source of aware local time.
            sleep: Coroutine used to wait for the quota reset.
        """
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.hourly_cap = hourly_cap

        self._active = primary_key
        self._backup = backup_key
        # Primary label wins when a single key is configured for both slots
        self._slots = {backup_key: "secondary", primary_key: "primary"}
        self._requests_this_hour = 0
        self._usage: dict[str, int] = {}
        self._window_start = start_of_hour(self._clock())
        self._paused_until: datetime | None = None

    @property
    def requests_this_hour(self) -> int:
        return self._requests_this_hour

    @property
    def active_slot(self) -> str:
        """Label of the active credential ('primary' or 'secondary')."""
        return self._slots[self._active]

    @property
    def paused_until(self) -> datetime | None:
        return self._paused_until

    @property
    def exhausted(self) -> bool:
        """True when no credential should be used before the next hour."""
        now = self._clock()
        if self._paused_until is not None and now < self._paused_until:
            return True
        if start_of_hour(now) != self._window_start:
            return False
        return all(
            self._usage.get(key, 0) >= self.hourly_cap for key in (self._active, self._backup)
        )

    def _roll_window(self, now: datetime) -> None:
        hour = start_of_hour(now)
        if hour == self._window_start:
            return
        self._window_start = hour
        self._requests_this_hour = 0
        self._usage.clear()
        if self._paused_until is not None and now >= self._paused_until:
            self._paused_until = None
        set_quota_requests(0)
        logger.debug("quota_window_reset", window_start=hour.isoformat())

    def _rotate(self) -> None:
        self._active, self._backup = self._backup, self._active
        self._requests_this_hour = 0
        record_quota_rotation()
        logger.info("credential_rotated", active_slot=self.active_slot)

    async def acquire(self) -> str:
        """Count one outbound request and return the credential to use for it.

        Returns:
            The access id for this request.
        """
        async with self._lock:
            self._roll_window(self._clock())
            key = self._active
            self._requests_this_hour += 1
            self._usage[key] = self._usage.get(key, 0) + 1
            set_quota_requests(self._requests_this_hour)
            if self._requests_this_hour >= self.hourly_cap:
                self._rotate()
            return key

    def slot_of(self, key: str) -> str:
        """Label of a credential for metrics without exposing the key."""
        return self._slots.get(key, "unknown")

    def pause_until_next_hour(self) -> datetime:
        """Record a provider-side quota rejection.

        Returns:
            The time at which requests may resume.
        """
        resume_at = start_of_next_hour(self._clock())
        if self._paused_until is None or resume_at > self._paused_until:
            self._paused_until = resume_at
            record_quota_pause()
            logger.warning("quota_paused", resume_at=resume_at.isoformat())
        return self._paused_until

    def seconds_until_reset(self) -> float:
        now = self._clock()
        target = self._paused_until or start_of_next_hour(now)
        if target <= now:
            target = start_of_next_hour(now)
        return (target - now).total_seconds()

    async def wait_for_reset(self) -> None:
        """Sleep until the top of the next clock hour, then start a fresh window."""
        delay = self.seconds_until_reset()
        logger.info("quota_wait", seconds=round(delay, 1))
        await self._sleep(delay)
        async with self._lock:
            now = self._clock()
            self._roll_window(now)
            # Reset even if the clock has not moved past the boundary yet
            self._requests_this_hour = 0
            self._usage.clear()
            self._paused_until = None
            self._window_start = start_of_hour(now)
            set_quota_requests(0)
