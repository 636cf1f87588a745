"""Departure board fetching and normalization into DepartureRecords."""

import math
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from hafas_line_monitor.logging import get_logger
from hafas_line_monitor.models import DepartureRecord

if TYPE_CHECKING:
    from hafas_line_monitor.client import TransitClient

logger = get_logger(__name__)


def _as_dict(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: object) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def board_entries(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Departure entries of a board response (absent or single entries tolerated)."""
    return [entry for entry in _as_list(payload.get("Departure")) if isinstance(entry, dict)]


def product_of(raw: dict[str, Any]) -> dict[str, Any]:
    """The product serving a departure: ProductAtStop, else the first Product."""
    product = _as_dict(raw.get("ProductAtStop"))
    if product:
        return product
    products = _as_list(raw.get("Product"))
    return _as_dict(products[0]) if products else {}


def matches_line(raw: dict[str, Any], line: str) -> bool:
    """Whether a board entry belongs to ``line``."""
    if _as_dict(raw.get("ProductAtStop")).get("line") == line:
        return True
    products = _as_list(raw.get("Product"))
    return bool(products) and _as_dict(products[0]).get("line") == line


def parse_provider_time(date_str: str, time_str: str) -> datetime:
    """Parse the provider's local date ('YYYY-MM-DD') and time ('HH:MM[:SS]')."""
    fmt = "%Y-%m-%d %H:%M:%S" if time_str.count(":") == 2 else "%Y-%m-%d %H:%M"
    return datetime.strptime(f"{date_str} {time_str}", fmt)


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def delay_minutes(scheduled: datetime, actual: datetime) -> int:
    """Whole-minute delay, halves rounded up."""
    return round_half_up((actual - scheduled).total_seconds() / 60)


def normalize_departure(
    raw: dict[str, Any],
    stop_id: str,
    created_at: datetime,
) -> DepartureRecord:
    """Convert one board entry into a DepartureRecord.

    Real-time data needs both ``rtDate`` and ``rtTime``. Without either the
    departure counts as on schedule: actual time equals scheduled time and the
    delay is 0. This cannot tell "on time" apart from "unknown".

    Raises:
        KeyError: If the scheduled date or time is missing.
        ValueError: If the scheduled date or time cannot be parsed.
    """
    scheduled = parse_provider_time(raw["date"], raw["time"])

    rt_date = raw.get("rtDate")
    rt_time = raw.get("rtTime")
    if rt_date and rt_time:
        actual = parse_provider_time(rt_date, rt_time)
        delay = delay_minutes(scheduled, actual)
    else:
        actual = scheduled
        delay = 0

    product = product_of(raw)
    icon = _as_dict(product.get("icon"))
    operator_info = _as_dict(product.get("operatorInfo"))

    return DepartureRecord(
        stop_id=stop_id,
        line_name=product.get("line"),
        display_number=product.get("displayNumber"),
        internal_name=product.get("internalName"),
        scheduled_time=scheduled,
        actual_time=actual,
        delay_minutes=delay,
        operator=operator_info.get("name") or "Unknown",
        operator_short=operator_info.get("nameS") or "",
        journey_ref=_as_dict(raw.get("JourneyDetailRef")).get("ref"),
        journey_status=raw.get("JourneyStatus") or "Unknown",
        direction=raw.get("direction") or "",
        direction_flag=raw.get("directionFlag") or "",
        category_code=product.get("catCode"),
        category_out=product.get("catOut"),
        category_in=product.get("catIn"),
        icon_fg_color=_as_dict(icon.get("foregroundColor")).get("hex") or "",
        icon_bg_color=_as_dict(icon.get("backgroundColor")).get("hex") or "",
        reachable=bool(raw.get("reachable", False)),
        created_at=created_at,
    )


class DepartureIngestor:
    """Turns a stop's departure board into DepartureRecords of the monitored line."""

    def __init__(
        self,
        client: "TransitClient",
        target_line: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self.target_line = target_line
        self._clock = clock or (lambda: datetime.now(UTC))

    def extract(
        self,
        payload: dict[str, Any],
        stop_id: str,
        line: str | None = None,
    ) -> list[DepartureRecord]:
        """Filter a board response to one line and normalize the entries.

        Entries without a usable scheduled time are skipped.
        """
        line = line or self.target_line
        created_at = self._clock()
        records = []
        for raw in board_entries(payload):
            if not matches_line(raw, line):
                continue
            try:
                records.append(normalize_departure(raw, stop_id, created_at))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "departure_skipped",
                    stop_id=stop_id,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
        return records

    async def fetch_and_normalize(
        self,
        stop_id: str,
        line_filter: str | None = None,
    ) -> list[DepartureRecord]:
        """Fetch a stop's departure board and normalize the monitored line's entries.

        Args:
            stop_id: Provider stop id.
            line_filter: Line to scope the provider query to; the target line
                is used for filtering when omitted.

        Returns:
            Normalized records, possibly empty.

        Raises:
            TransitError: If the board cannot be fetched.
        """
        payload = await self._client.departure_board(stop_id, line_filter)
        return self.extract(payload, stop_id, line_filter)
