"""Tests for quota governor module."""

import asyncio
from collections import Counter
from datetime import datetime

from hafas_line_monitor.quota import QuotaGovernor, start_of_hour, start_of_next_hour


def make_governor(clock, cap: int = 800, sleep=None) -> QuotaGovernor:
    """Create a governor with distinct primary and backup keys."""
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return QuotaGovernor("primary-key", "backup-key", hourly_cap=cap, clock=clock, **kwargs)


class TestHourHelpers:
    """Tests for clock hour helpers."""

    def test_start_of_hour(self, clock) -> None:
        """Minutes and below are truncated."""
        clock.advance(minutes=42, seconds=7)
        assert start_of_hour(clock()) == clock().replace(minute=0, second=0)

    def test_start_of_next_hour(self, clock) -> None:
        """Next hour boundary follows the current one."""
        clock.advance(minutes=59)
        assert start_of_next_hour(clock()).hour == 15
        assert start_of_next_hour(clock()).minute == 0


class TestAcquire:
    """Tests for credential hand-out and rotation."""

    async def test_first_request_uses_primary(self, clock) -> None:
        """The primary credential is active at startup."""
        governor = make_governor(clock)
        assert await governor.acquire() == "primary-key"
        assert governor.requests_this_hour == 1
        assert governor.active_slot == "primary"

    async def test_rotation_after_exactly_cap(self, clock) -> None:
        """Requests 1-800 use the primary, request 801 the backup."""
        governor = make_governor(clock)

        keys = [await governor.acquire() for _ in range(800)]
        assert set(keys) == {"primary-key"}
        assert governor.active_slot == "secondary"
        assert governor.requests_this_hour == 0

        assert await governor.acquire() == "backup-key"
        assert governor.requests_this_hour == 1

    async def test_rotation_with_small_cap(self, clock) -> None:
        """Rotation alternates credentials every cap requests."""
        governor = make_governor(clock, cap=2)
        keys = [await governor.acquire() for _ in range(4)]
        assert keys == ["primary-key", "primary-key", "backup-key", "backup-key"]

    async def test_counter_resets_at_hour_boundary(self, clock) -> None:
        """A new clock hour starts a fresh counter on the same credential."""
        governor = make_governor(clock)
        for _ in range(10):
            await governor.acquire()
        assert governor.requests_this_hour == 10

        clock.advance(hours=1)
        assert await governor.acquire() == "primary-key"
        assert governor.requests_this_hour == 1

    async def test_concurrent_acquires_never_exceed_cap(self, clock) -> None:
        """Concurrent callers are serialized through the lock."""
        governor = make_governor(clock)
        keys = await asyncio.gather(*(governor.acquire() for _ in range(801)))

        counts = Counter(keys)
        assert counts["primary-key"] == 800
        assert counts["backup-key"] == 1

    def test_slot_of(self, clock) -> None:
        """Keys map to slot labels, unknown keys to 'unknown'."""
        governor = make_governor(clock)
        assert governor.slot_of("primary-key") == "primary"
        assert governor.slot_of("backup-key") == "secondary"
        assert governor.slot_of("other") == "unknown"

    def test_single_key_reports_primary(self, clock) -> None:
        """When both slots share a key, it is labelled primary."""
        governor = QuotaGovernor("only-key", "only-key", clock=clock)
        assert governor.slot_of("only-key") == "primary"


class TestExhaustion:
    """Tests for the exhausted flag and provider-side pauses."""

    async def test_not_exhausted_initially(self, clock) -> None:
        """A fresh governor is usable."""
        assert make_governor(clock).exhausted is False

    async def test_exhausted_when_both_credentials_spent(self, clock) -> None:
        """Both credentials at the cap within one hour exhausts the governor."""
        governor = make_governor(clock, cap=2)
        for _ in range(3):
            await governor.acquire()
        assert governor.exhausted is False

        await governor.acquire()
        assert governor.exhausted is True

    async def test_exhaustion_clears_next_hour(self, clock) -> None:
        """Exhaustion lasts only until the next clock hour."""
        governor = make_governor(clock, cap=1)
        await governor.acquire()
        await governor.acquire()
        assert governor.exhausted is True

        clock.advance(hours=1)
        assert governor.exhausted is False

    async def test_single_key_exhausts_after_cap(self, clock) -> None:
        """With one configured key the cap applies once."""
        governor = QuotaGovernor("only-key", "only-key", hourly_cap=2, clock=clock)
        await governor.acquire()
        await governor.acquire()
        assert governor.exhausted is True

    def test_pause_until_next_hour(self, clock) -> None:
        """A provider quota error pauses the governor to the next hour."""
        clock.advance(minutes=20)
        governor = make_governor(clock)

        resume_at = governor.pause_until_next_hour()

        assert resume_at == datetime(2024, 5, 6, 15, 0, tzinfo=clock().tzinfo)
        assert governor.paused_until == resume_at
        assert governor.exhausted is True

        clock.advance(minutes=40)
        assert governor.exhausted is False

    def test_repeated_pause_keeps_resume_time(self, clock) -> None:
        """Pausing twice in the same hour keeps one resume time."""
        governor = make_governor(clock)
        first = governor.pause_until_next_hour()
        clock.advance(minutes=5)
        assert governor.pause_until_next_hour() == first

    def test_seconds_until_reset(self, clock) -> None:
        """Time left is measured to the top of the next hour."""
        clock.advance(minutes=45)
        governor = make_governor(clock)
        assert governor.seconds_until_reset() == 15 * 60

    async def test_wait_for_reset(self, clock, recording_sleep) -> None:
        """Waiting sleeps to the boundary and clears all counters."""
        clock.advance(minutes=30)
        governor = make_governor(clock, cap=1, sleep=recording_sleep)
        await governor.acquire()
        await governor.acquire()
        governor.pause_until_next_hour()
        assert governor.exhausted is True

        await governor.wait_for_reset()

        assert recording_sleep.calls == [30 * 60]
        assert governor.requests_this_hour == 0
        assert governor.paused_until is None
        assert governor.exhausted is False
