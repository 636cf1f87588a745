"""Tests for departure ingestor module."""

from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock

import pytest

from hafas_line_monitor.client import TransitNetworkError
from hafas_line_monitor.ingestor import (
    DepartureIngestor,
    board_entries,
    delay_minutes,
    matches_line,
    normalize_departure,
    parse_provider_time,
    round_half_up,
)

CREATED_AT = datetime(2024, 5, 6, 12, 0, tzinfo=UTC)


def make_ingestor(payload: dict[str, Any] | None = None) -> DepartureIngestor:
    """Create an ingestor whose client returns a fixed board."""
    client = AsyncMock()
    client.departure_board.return_value = payload or {}
    return DepartureIngestor(client, "15", clock=lambda: CREATED_AT)


class TestParsing:
    """Tests for provider time parsing and rounding."""

    def test_parse_with_seconds(self) -> None:
        """HH:MM:SS times are parsed."""
        assert parse_provider_time("2024-05-06", "14:05:30") == datetime(2024, 5, 6, 14, 5, 30)

    def test_parse_without_seconds(self) -> None:
        """HH:MM times are parsed."""
        assert parse_provider_time("2024-05-06", "14:05") == datetime(2024, 5, 6, 14, 5)

    def test_parse_invalid(self) -> None:
        """Malformed times raise ValueError."""
        with pytest.raises(ValueError):
            parse_provider_time("2024-05-06", "late")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(0.4, 0), (0.5, 1), (1.5, 2), (-0.5, 0), (-0.6, -1), (2.0, 2)],
    )
    def test_round_half_up(self, value: float, expected: int) -> None:
        """Halves round toward positive infinity."""
        assert round_half_up(value) == expected

    def test_delay_minutes(self) -> None:
        """Delay is actual minus scheduled in whole minutes."""
        scheduled = datetime(2024, 5, 6, 14, 5)
        assert delay_minutes(scheduled, datetime(2024, 5, 6, 14, 8)) == 3
        assert delay_minutes(scheduled, datetime(2024, 5, 6, 14, 5, 30)) == 1
        assert delay_minutes(scheduled, datetime(2024, 5, 6, 14, 4)) == -1

    def test_delay_across_midnight(self) -> None:
        """rtDate moves the actual time to the next day."""
        scheduled = datetime(2024, 5, 6, 23, 58)
        assert delay_minutes(scheduled, datetime(2024, 5, 7, 0, 3)) == 5


class TestBoardEntries:
    """Tests for board entry extraction and line matching."""

    def test_list_of_entries(self, sample_board) -> None:
        """A list of departures is returned as-is."""
        assert len(board_entries(sample_board)) == 3

    def test_single_entry_object(self) -> None:
        """A single departure object is wrapped in a list."""
        entry = {"date": "2024-05-06", "time": "14:00:00"}
        assert board_entries({"Departure": entry}) == [entry]

    def test_missing_departures(self) -> None:
        """Boards without departures yield nothing."""
        assert board_entries({}) == []

    def test_matches_product_at_stop(self) -> None:
        """ProductAtStop.line identifies the line."""
        assert matches_line({"ProductAtStop": {"line": "15"}}, "15") is True
        assert matches_line({"ProductAtStop": {"line": "16"}}, "15") is False

    def test_matches_first_product(self) -> None:
        """The first Product entry is used when ProductAtStop is absent."""
        raw = {"Product": [{"line": "15"}, {"line": "16"}]}
        assert matches_line(raw, "15") is True
        assert matches_line(raw, "16") is False

    def test_no_product(self) -> None:
        """Entries without product information never match."""
        assert matches_line({}, "15") is False


class TestNormalizeDeparture:
    """Tests for normalize_departure function."""

    def test_full_entry(self, sample_board) -> None:
        """All fields are mapped from a complete entry."""
        record = normalize_departure(sample_board["Departure"][0], "stop-1", CREATED_AT)

        assert record.stop_id == "stop-1"
        assert record.line_name == "15"
        assert record.display_number == "15"
        assert record.scheduled_time == datetime(2024, 5, 6, 14, 5)
        assert record.actual_time == datetime(2024, 5, 6, 14, 8)
        assert record.delay_minutes == 3
        assert record.operator == "Autobus de la Ville"
        assert record.operator_short == "AVL"
        assert record.journey_ref == "1|2034|0|82|6052024"
        assert record.journey_status == "P"
        assert record.direction == "Kirchberg, Philharmonie"
        assert record.direction_flag == "1"
        assert record.category_out == "Bus"
        assert record.icon_fg_color == "#FFFFFF"
        assert record.icon_bg_color == "#E30613"
        assert record.reachable is True
        assert record.created_at == CREATED_AT

    def test_without_realtime(self, sample_board) -> None:
        """Missing rtDate and rtTime mean no delay and actual equals scheduled."""
        record = normalize_departure(sample_board["Departure"][1], "stop-1", CREATED_AT)

        assert record.delay_minutes == 0
        assert record.actual_time == record.scheduled_time

    def test_rt_time_without_rt_date(self) -> None:
        """rtTime alone is not real-time data, even across midnight."""
        raw = {
            "date": "2024-05-06",
            "time": "23:58:00",
            "rtTime": "00:03:00",
            "ProductAtStop": {"line": "15"},
        }
        record = normalize_departure(raw, "stop-1", CREATED_AT)

        assert record.delay_minutes == 0
        assert record.actual_time == record.scheduled_time == datetime(2024, 5, 6, 23, 58)

    def test_rt_date_without_rt_time(self) -> None:
        """rtDate alone is not real-time data."""
        raw = {
            "date": "2024-05-06",
            "time": "14:10:00",
            "rtDate": "2024-05-06",
            "ProductAtStop": {"line": "15"},
        }
        record = normalize_departure(raw, "stop-1", CREATED_AT)

        assert record.delay_minutes == 0
        assert record.actual_time == record.scheduled_time

    def test_missing_nested_fields_default(self) -> None:
        """Absent operator, icon, direction and journey ref become defaults."""
        raw = {"date": "2024-05-06", "time": "14:10:00", "Product": [{"line": "15"}]}
        record = normalize_departure(raw, "stop-1", CREATED_AT)

        assert record.line_name == "15"
        assert record.operator == "Unknown"
        assert record.operator_short == ""
        assert record.journey_ref is None
        assert record.journey_status == "Unknown"
        assert record.direction == ""
        assert record.direction_flag == ""
        assert record.icon_fg_color == ""
        assert record.icon_bg_color == ""
        assert record.reachable is False

    def test_missing_scheduled_time(self) -> None:
        """Entries without a scheduled time cannot be normalized."""
        with pytest.raises(KeyError):
            normalize_departure({"date": "2024-05-06"}, "stop-1", CREATED_AT)


class TestDepartureIngestor:
    """Tests for DepartureIngestor class."""

    def test_extract_filters_line(self, sample_board) -> None:
        """Only entries of the target line are kept."""
        records = make_ingestor().extract(sample_board, "stop-1")

        assert len(records) == 2
        assert {record.line_name for record in records} == {"15"}

    def test_extract_other_line(self, sample_board) -> None:
        """An explicit line overrides the target line."""
        records = make_ingestor().extract(sample_board, "stop-1", line="16")
        assert [record.delay_minutes for record in records] == [1]

    def test_extract_skips_broken_entries(self) -> None:
        """Entries with unusable times are skipped, not raised."""
        payload = {
            "Departure": [
                {"time": "14:00:00", "ProductAtStop": {"line": "15"}},
                {"date": "2024-05-06", "time": "bad", "ProductAtStop": {"line": "15"}},
                {"date": "2024-05-06", "time": "14:00:00", "ProductAtStop": {"line": "15"}},
            ]
        }
        records = make_ingestor().extract(payload, "stop-1")
        assert len(records) == 1

    def test_extract_stamps_created_at(self, sample_board) -> None:
        """All records of one board share the ingestion time."""
        records = make_ingestor().extract(sample_board, "stop-1")
        assert {record.created_at for record in records} == {CREATED_AT}

    async def test_fetch_and_normalize(self, sample_board) -> None:
        """The board is fetched for the stop and normalized."""
        ingestor = make_ingestor(sample_board)

        records = await ingestor.fetch_and_normalize("stop-1")

        ingestor._client.departure_board.assert_awaited_once_with("stop-1", None)
        assert len(records) == 2

    async def test_fetch_and_normalize_empty_board(self) -> None:
        """A board without departures yields no records."""
        records = await make_ingestor({"Departure": []}).fetch_and_normalize("stop-1")
        assert records == []

    async def test_fetch_errors_propagate(self) -> None:
        """Client errors are not swallowed."""
        ingestor = make_ingestor()
        ingestor._client.departure_board.side_effect = TransitNetworkError("down")

        with pytest.raises(TransitNetworkError):
            await ingestor.fetch_and_normalize("stop-1")
