"""Shared pytest fixtures for HAFAS Line Monitor tests."""

from collections.abc import AsyncIterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

import pytest

from hafas_line_monitor.database import create_engine, create_session_factory, init_schema
from hafas_line_monitor.storage import Store

LUXEMBOURG = ZoneInfo("Europe/Luxembourg")


class FakeClock:
    """Settable clock returning aware local time."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """Sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at an off-peak afternoon hour."""
    return FakeClock(datetime(2024, 5, 6, 14, 0, tzinfo=LUXEMBOURG))


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def sample_board() -> dict[str, Any]:
    """Return a departureBoard response with two line-15 entries and one line-16 entry."""
    return {
        "Departure": [
            {
                "name": "Bus 15",
                "date": "2024-05-06",
                "time": "14:05:00",
                "rtDate": "2024-05-06",
                "rtTime": "14:08:00",
                "direction": "Kirchberg, Philharmonie",
                "directionFlag": "1",
                "JourneyStatus": "P",
                "reachable": True,
                "JourneyDetailRef": {"ref": "1|2034|0|82|6052024"},
                "ProductAtStop": {
                    "line": "15",
                    "displayNumber": "15",
                    "internalName": "15",
                    "catCode": "5",
                    "catOut": "Bus",
                    "catIn": "BUS",
                    "icon": {
                        "foregroundColor": {"hex": "#FFFFFF"},
                        "backgroundColor": {"hex": "#E30613"},
                    },
                    "operatorInfo": {"name": "Autobus de la Ville", "nameS": "AVL"},
                },
            },
            {
                "name": "Bus 15",
                "date": "2024-05-06",
                "time": "14:20:00",
                "direction": "Gare Centrale",
                "directionFlag": "2",
                "ProductAtStop": {"line": "15", "displayNumber": "15"},
            },
            {
                "name": "Bus 16",
                "date": "2024-05-06",
                "time": "14:10:00",
                "rtDate": "2024-05-06",
                "rtTime": "14:11:00",
                "ProductAtStop": {"line": "16", "displayNumber": "16"},
            },
        ]
    }


@pytest.fixture
def sample_nearby() -> dict[str, Any]:
    """Return a location.nearbystops response with two stops and one address."""
    return {
        "stopLocationOrCoordLocation": [
            {
                "StopLocation": {
                    "id": "A=1@O=Luxembourg, Gare Centrale@L=200405060@",
                    "extId": "200405060",
                    "name": "Luxembourg, Gare Centrale",
                    "lon": 6.13357,
                    "lat": 49.59957,
                }
            },
            {
                "StopLocation": {
                    "id": "A=1@O=Luxembourg, Hamilius@L=200405035@",
                    "extId": "200405035",
                    "name": "Luxembourg, Hamilius",
                    "lon": 6.12717,
                    "lat": 49.61196,
                }
            },
            {"CoordLocation": {"id": "A=2@O=Somewhere@", "name": "Somewhere"}},
        ]
    }


@pytest.fixture
def sample_monitor_yaml() -> str:
    """Return sample monitor.yaml content."""
    return """
provider:
  origin_lat: 49.6
  origin_lon: 6.13
  radius_meters: 1500
  language: de

retry:
  max_attempts: 4
  backoff_base: 0.5

quota:
  hourly_cap: 500

discovery:
  batch_size: 10
  concurrency: 3

polling:
  min_interval_minutes: 10
  max_interval_minutes: 40
  peak_windows:
    - start_hour: 6
      end_hour: 8
"""


@pytest.fixture
def sample_monitor_file(tmp_path: Path, sample_monitor_yaml: str) -> Path:
    """Create a temporary monitor.yaml file."""
    monitor_file = tmp_path / "monitor.yaml"
    monitor_file.write_text(sample_monitor_yaml)
    return monitor_file


@pytest.fixture
async def store(tmp_path: Path) -> AsyncIterator[Store]:
    """Store backed by a fresh SQLite database file."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'monitor.db'}")
    await init_schema(engine)
    yield Store(create_session_factory(engine))
    await engine.dispose()
