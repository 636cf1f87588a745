"""Discovery of the stops served by the monitored line."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from hafas_line_monitor.client import QuotaExceededError, TransitError
from hafas_line_monitor.logging import get_logger, stop_context
from hafas_line_monitor.metrics import (
    record_discovery_run,
    record_records_stored,
    record_stop_check,
)
from hafas_line_monitor.models import DiscoveryConfig, Stop
from hafas_line_monitor.storage import StopValidationError

if TYPE_CHECKING:
    from hafas_line_monitor.client import TransitClient
    from hafas_line_monitor.ingestor import DepartureIngestor
    from hafas_line_monitor.quota import QuotaGovernor
    from hafas_line_monitor.storage import Store

logger = get_logger(__name__)


@dataclass
class DiscoveryResult:
    """Aggregate outcome of a discovery run."""

    discovered: int = 0
    failed: int = 0
    checked: int = 0


def _coordinate(location: dict[str, Any], coord_key: str, flat_key: str) -> float | None:
    coord = location.get("coord")
    value = coord.get(coord_key) if isinstance(coord, dict) else None
    if value is None:
        value = location.get(flat_key)
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def candidate_stops(listing: dict[str, Any]) -> list[Stop]:
    """Stops carrying a usable StopLocation in a nearby-stops listing."""
    entries = listing.get("stopLocationOrCoordLocation")
    if not isinstance(entries, list):
        return []

    stops = []
    for entry in entries:
        location = entry.get("StopLocation") if isinstance(entry, dict) else None
        if not isinstance(location, dict) or not location.get("id"):
            continue
        stops.append(
            Stop(
                id=str(location["id"]),
                name=str(location.get("name") or ""),
                lat=_coordinate(location, "lat", "lat"),
                lon=_coordinate(location, "long", "lon"),
            )
        )
    return stops


def chunked(items: Sequence[Stop], size: int) -> Iterator[Sequence[Stop]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class StopDiscovery:
    """Walks the nearby-stops listing and registers stops served by the line.

    Stops are processed in fixed-size batches. Inside a batch a small pool of
    workers drains a queue of stop checks, pausing between checks, so the
    provider sees a bounded request rate independent of quota accounting.
    """

    def __init__(
        self,
        client: "TransitClient",
        ingestor: "DepartureIngestor",
        store: "Store",
        governor: "QuotaGovernor",
        config: DiscoveryConfig | None = None,
        on_confirmed: Callable[[str], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize discovery.

        Args:
            client: Transit client used for the listing call.
            ingestor: Ingestor used for each stop's departure board.
            store: Persistence gateway.
            governor: Quota governor consulted before each batch.
            config: Batch size, concurrency and throttle delays.
            on_confirmed: Called with the id of every stop served by the line,
                before its departures are stored.
            sleep: Coroutine used for throttle delays.
        """
        self._client = client
        self._ingestor = ingestor
        self._store = store
        self._governor = governor
        self.config = config or DiscoveryConfig()
        self._on_confirmed = on_confirmed
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._quota_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def discover(self) -> DiscoveryResult:
        """Run a full discovery pass.

        Per-stop failures are counted, never raised.

        Returns:
            Aggregate counts.

        Raises:
            TransitError: If the nearby-stops listing cannot be fetched.
        """
        async with self._lock:
            return await self._run()

    async def _run(self) -> DiscoveryResult:
        start = time.monotonic()
        logger.info("discovery_started", line=self._ingestor.target_line)

        listing = await self._client.nearby_stops()
        stops = candidate_stops(listing)
        result = DiscoveryResult()

        logger.info(
            "discovery_listing",
            candidates=len(stops),
            batch_size=self.config.batch_size,
        )

        for batch in chunked(stops, self.config.batch_size):
            await self._process_batch(batch, result)
            await self._sleep(self.config.batch_delay_seconds)

        duration = time.monotonic() - start
        record_discovery_run(duration)
        logger.info(
            "discovery_completed",
            discovered=result.discovered,
            failed=result.failed,
            checked=result.checked,
            duration_seconds=round(duration, 1),
        )
        return result

    async def _wait_for_quota(self) -> None:
        """Block until the governor allows requests again.

        Workers share one wait, so a quota pause is slept through once.
        """
        async with self._quota_lock:
            if self._governor.exhausted:
                logger.warning("discovery_paused_for_quota")
                await self._governor.wait_for_reset()

    async def _process_batch(self, batch: Sequence[Stop], result: DiscoveryResult) -> None:
        queue: asyncio.Queue[Stop] = asyncio.Queue()
        for stop in batch:
            queue.put_nowait(stop)

        worker_count = min(self.config.concurrency, len(batch))
        await asyncio.gather(*(self._worker(queue, result) for _ in range(worker_count)))

    async def _worker(self, queue: "asyncio.Queue[Stop]", result: DiscoveryResult) -> None:
        while True:
            if queue.empty():
                return
            await self._wait_for_quota()

            try:
                stop = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            await self._check_and_count(stop, result)
            queue.task_done()

            if not queue.empty():
                await self._sleep(self.config.window_delay_seconds)

    async def _check_and_count(self, stop: Stop, result: DiscoveryResult) -> None:
        result.checked += 1
        with stop_context(stop.id):
            try:
                confirmed = await self.check_stop(stop)

            except QuotaExceededError as e:
                self._governor.pause_until_next_hour()
                self._count_failure(result, e)
                return

            except (TransitError, StopValidationError, SQLAlchemyError) as e:
                self._count_failure(result, e)
                return

            except Exception as e:
                result.failed += 1
                record_stop_check("failed")
                logger.exception(
                    "discovery_check_unknown_error",
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                return

            if confirmed:
                result.discovered += 1
                record_stop_check("confirmed")
                logger.info("stop_confirmed", stop_name=stop.name)
            else:
                record_stop_check("not_served")

    def _count_failure(self, result: DiscoveryResult, error: Exception) -> None:
        result.failed += 1
        record_stop_check("failed")
        logger.error(
            "discovery_check_failed",
            error_type=type(error).__name__,
            error_message=str(error),
        )

    async def check_stop(self, stop: Stop) -> bool:
        """Check whether the line serves a stop, storing its departures if so.

        Returns:
            True if at least one departure of the line was found and stored.
        """
        if not await self._store.stop_exists(stop.id):
            await self._store.upsert_stop(stop)

        records = await self._ingestor.fetch_and_normalize(stop.id)
        if not records:
            return False

        if self._on_confirmed is not None:
            self._on_confirmed(stop.id)

        stored = await self._store.insert_departures(records)
        record_records_stored("discovery", stored)
        await self._store.upsert_stop(stop)
        return True
