"""Tests for raw response archive module."""

import json
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from hafas_line_monitor.archive import ResponseArchive, generate_archive_path

TIMESTAMP = datetime(2024, 5, 6, 8, 15, 42, 123456, tzinfo=ZoneInfo("Europe/Luxembourg"))


class TestGenerateArchivePath:
    """Tests for generate_archive_path function."""

    def test_hive_partitions(self) -> None:
        """Test path carries endpoint, date and hour partitions."""
        path = generate_archive_path("departureBoard", TIMESTAMP)
        assert path == Path("departureBoard/date=2024-05-06/hour=08/08-15-42.123.json")

    def test_endpoint_directory(self) -> None:
        """Test each endpoint gets its own tree."""
        path = generate_archive_path("location.nearbystops", TIMESTAMP)
        assert path.parts[0] == "location.nearbystops"


class TestResponseArchive:
    """Tests for ResponseArchive class."""

    async def test_store_writes_pretty_json(self, tmp_path: Path) -> None:
        """Test the payload is written below the root."""
        archive = ResponseArchive(tmp_path)
        payload = {"Departure": [{"name": "Bus 15", "direction": "Gare Centrale"}]}

        path = await archive.store("departureBoard", payload, TIMESTAMP)

        assert path == tmp_path / generate_archive_path("departureBoard", TIMESTAMP)
        text = path.read_text(encoding="utf-8")
        assert json.loads(text) == payload
        assert "\n  " in text

    async def test_write_failure_is_not_raised(self, tmp_path: Path) -> None:
        """Test an unwritable root yields None instead of an error."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        archive = ResponseArchive(blocker)

        assert await archive.store("departureBoard", {}, TIMESTAMP) is None
