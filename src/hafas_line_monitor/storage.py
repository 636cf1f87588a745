"""Persistence gateway for stops and departure records."""

import statistics
from collections import Counter, defaultdict
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    case,
    func,
    select,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from hafas_line_monitor.database import Base
from hafas_line_monitor.logging import get_logger
from hafas_line_monitor.models import DelayStats, DepartureRecord, Stop

logger = get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class StopValidationError(ValueError):
    """Stop is missing its identity or name."""


class StopRow(Base):
    __tablename__ = "stops"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float)
    lon: Mapped[float | None] = mapped_column(Float)


class DepartureRow(Base):
    __tablename__ = "departures"
    __table_args__ = (
        Index("ix_departures_stop_created", "stop_id", "created_at"),
        Index("ix_departures_line_name", "line_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stop_id: Mapped[str] = mapped_column(String(255), ForeignKey("stops.id"), nullable=False)
    line_name: Mapped[str | None] = mapped_column(String(255))
    display_number: Mapped[str | None] = mapped_column(String(255))
    internal_name: Mapped[str | None] = mapped_column(String(255))
    scheduled_time: Mapped[datetime] = mapped_column(DateTime)
    actual_time: Mapped[datetime] = mapped_column(DateTime)
    delay_minutes: Mapped[int] = mapped_column(Integer)
    operator: Mapped[str | None] = mapped_column(String(255))
    operator_short: Mapped[str | None] = mapped_column(String(50))
    journey_ref: Mapped[str | None] = mapped_column(String(255))
    journey_status: Mapped[str | None] = mapped_column(String(50))
    direction: Mapped[str | None] = mapped_column(String(255))
    direction_flag: Mapped[str | None] = mapped_column(String(10))
    category_code: Mapped[str | None] = mapped_column(String(50))
    category_out: Mapped[str | None] = mapped_column(String(50))
    category_in: Mapped[str | None] = mapped_column(String(50))
    icon_fg_color: Mapped[str | None] = mapped_column(String(7))
    icon_bg_color: Mapped[str | None] = mapped_column(String(7))
    reachable: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_utc(moment: datetime) -> datetime:
    """Normalize to UTC; naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _row_dict(row: Base) -> dict[str, Any]:
    return {
        column.key: _jsonable(getattr(row, column.key)) for column in row.__table__.columns
    }


class Store:
    """Durable store for stop metadata and departure records.

    Each operation opens its own short-lived session, which is closed on every
    path including errors.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert_stop(self, stop: Stop) -> None:
        """Insert a stop or refresh its name and coordinates.

        Raises:
            StopValidationError: If the id or name is empty.
        """
        if not stop.id or not stop.name:
            raise StopValidationError("Stop ID and name are required")

        async with self._session_factory() as session, session.begin():
            existing = await session.get(StopRow, stop.id)
            if existing is None:
                session.add(StopRow(id=stop.id, name=stop.name, lat=stop.lat, lon=stop.lon))
            else:
                existing.name = stop.name
                existing.lat = stop.lat
                existing.lon = stop.lon

        logger.debug("stop_upserted", stop_id=stop.id, lat=stop.lat, lon=stop.lon)

    async def stop_exists(self, stop_id: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(StopRow, stop_id) is not None

    async def insert_departures(self, records: Sequence[DepartureRecord]) -> int:
        """Append departure records.

        Returns:
            Number of rows written.
        """
        if not records:
            return 0

        async with self._session_factory() as session, session.begin():
            session.add_all(
                DepartureRow(
                    **record.model_dump(exclude={"created_at"}),
                    created_at=_to_utc(record.created_at),
                )
                for record in records
            )
        return len(records)

    async def count_stops(self) -> int:
        async with self._session_factory() as session:
            return int(await session.scalar(select(func.count()).select_from(StopRow)) or 0)

    async def count_departures(self) -> int:
        async with self._session_factory() as session:
            return int(
                await session.scalar(select(func.count()).select_from(DepartureRow)) or 0
            )

    async def line_stop_ids(self, line: str) -> list[str]:
        """Ids of stops with at least one recorded departure of ``line``."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(DepartureRow.stop_id)
                .where(DepartureRow.line_name == line)
                .distinct()
                .order_by(DepartureRow.stop_id)
            )
            return list(result)

    async def delay_stats(self, stop_id: str, since: datetime) -> DelayStats:
        """Mean and sample standard deviation of delays recorded after ``since``."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(DepartureRow.delay_minutes).where(
                    DepartureRow.stop_id == stop_id,
                    DepartureRow.created_at > _to_utc(since),
                    DepartureRow.delay_minutes.is_not(None),
                )
            )
            delays = list(result)

        if not delays:
            return DelayStats()
        return DelayStats(
            mean=statistics.fmean(delays),
            stddev=statistics.stdev(delays) if len(delays) > 1 else 0.0,
            sample_count=len(delays),
        )

    async def list_stops(self) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            rows = await session.scalars(select(StopRow).order_by(StopRow.name))
            return [_row_dict(row) for row in rows]

    async def list_departures(
        self,
        stop_id: str | None = None,
        line: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Departures ingested within [start, end], newest scheduled time first."""
        query = select(DepartureRow).where(
            DepartureRow.created_at.between(
                _to_utc(start or EPOCH), _to_utc(end or datetime.now(UTC))
            )
        )
        if stop_id:
            query = query.where(DepartureRow.stop_id == stop_id)
        if line:
            query = query.where(DepartureRow.line_name == line)

        async with self._session_factory() as session:
            rows = await session.scalars(query.order_by(DepartureRow.scheduled_time.desc()))
            return [_row_dict(row) for row in rows]

    async def line_statistics(
        self,
        stop_id: str | None = None,
        line: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[dict[str, Any]]:
        """Average delay and delayed share per line."""
        query = select(
            DepartureRow.line_name,
            func.avg(DepartureRow.delay_minutes).label("avg_delay"),
            func.count().label("total_departures"),
            func.sum(case((DepartureRow.delay_minutes > 0, 1), else_=0)).label(
                "delayed_departures"
            ),
        ).where(
            DepartureRow.created_at.between(
                _to_utc(start or EPOCH), _to_utc(end or datetime.now(UTC))
            )
        )
        if stop_id:
            query = query.where(DepartureRow.stop_id == stop_id)
        if line:
            query = query.where(DepartureRow.line_name == line)

        async with self._session_factory() as session:
            result = await session.execute(query.group_by(DepartureRow.line_name))
            return [
                {
                    "line_name": row.line_name,
                    "avg_delay": float(row.avg_delay) if row.avg_delay is not None else None,
                    "total_departures": int(row.total_departures),
                    "delayed_departures": int(row.delayed_departures or 0),
                }
                for row in result
            ]

    async def stop_statistics(self) -> list[dict[str, Any]]:
        """Per-stop delay summary, worst average delay first.

        ``peak_delay_time`` is the most frequent scheduled hour at the stop.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    StopRow.id,
                    StopRow.name,
                    DepartureRow.delay_minutes,
                    DepartureRow.scheduled_time,
                ).join(DepartureRow, DepartureRow.stop_id == StopRow.id)
            )
            rows = result.all()

        grouped: dict[tuple[str, str], list[tuple[int, datetime]]] = defaultdict(list)
        for row in rows:
            grouped[(row.id, row.name)].append((row.delay_minutes or 0, row.scheduled_time))

        summary = []
        for (stop_id, name), observations in grouped.items():
            delays = [delay for delay, _ in observations]
            hours = Counter(
                scheduled.replace(minute=0, second=0, microsecond=0)
                for _, scheduled in observations
            )
            peak = hours.most_common(1)[0][0]
            summary.append(
                {
                    "id": stop_id,
                    "stop_name": name,
                    "avg_delay": round(statistics.fmean(delays), 1),
                    "total_departures": len(delays),
                    "delayed_departures": sum(1 for delay in delays if delay > 1),
                    "peak_delay_time": _jsonable(peak),
                }
            )

        summary.sort(key=lambda item: item["avg_delay"], reverse=True)
        return summary

    async def route_analysis(self, line: str) -> dict[str, list[dict[str, Any]]]:
        """Delay profile along the route, per direction.

        Stops are ordered within a direction by their earliest scheduled
        departure, which approximates the stop sequence.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    DepartureRow.stop_id,
                    StopRow.name,
                    DepartureRow.direction_flag,
                    DepartureRow.scheduled_time,
                    DepartureRow.delay_minutes,
                )
                .join(StopRow, StopRow.id == DepartureRow.stop_id)
                .where(DepartureRow.line_name == line)
            )
            rows = result.all()

        by_direction: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        for row in rows:
            direction = row.direction_flag or "unknown"
            entry = by_direction[direction].setdefault(
                row.stop_id,
                {"stop_name": row.name, "first_time": row.scheduled_time, "delays": []},
            )
            entry["first_time"] = min(entry["first_time"], row.scheduled_time)
            entry["delays"].append(row.delay_minutes or 0)

        analysis: dict[str, list[dict[str, Any]]] = {}
        for direction in sorted(by_direction):
            stops = sorted(
                by_direction[direction].items(),
                key=lambda item: item[1]["first_time"],
            )
            analysis[direction] = []
            for sequence, (stop_id, entry) in enumerate(stops, start=1):
                delays = entry["delays"]
                delayed = sum(1 for delay in delays if delay > 5)
                analysis[direction].append(
                    {
                        "sequence": sequence,
                        "stopId": stop_id,
                        "stopName": entry["stop_name"],
                        "avgDelay": round(statistics.fmean(delays), 1),
                        "totalDepartures": len(delays),
                        "delayedDepartures": delayed,
                        "delayPercentage": round(delayed / len(delays) * 100, 1),
                    }
                )
        return analysis
