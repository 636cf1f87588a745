"""Pydantic models for HAFAS Line Monitor configuration and domain records."""

from datetime import datetime, timedelta
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProviderConfig(BaseModel):
    """Parameters sent to the HAFAS endpoints."""

    origin_lat: float = Field(default=49.664757, ge=-90.0, le=90.0)
    origin_lon: float = Field(default=6.241150, ge=-180.0, le=180.0)
    radius_meters: int = Field(default=3000, ge=1, le=50000)
    max_results: int = Field(default=3000, ge=1, le=5000)
    language: str = "fr"
    timeout_seconds: float = Field(default=10.0, gt=0, le=120)


class RetryConfig(BaseModel):
    """Configuration for retry behavior on transient failures."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base: float = Field(default=1.0, ge=0.0, le=10.0)
    backoff_max: float = Field(default=10.0, ge=0.0, le=60.0)


class QuotaConfig(BaseModel):
    """Shared hourly request cap."""

    hourly_cap: int = Field(default=800, ge=1)


class DiscoveryConfig(BaseModel):
    """Throttling for the stop discovery run."""

    batch_size: int = Field(default=5, ge=1, le=100)
    concurrency: int = Field(default=2, ge=1, le=20)
    window_delay_seconds: float = Field(default=2.0, ge=0.0)
    batch_delay_seconds: float = Field(default=3.0, ge=0.0)


class PeakWindow(BaseModel):
    """Range of local clock hours, both ends inclusive."""

    start_hour: int = Field(ge=0, le=23)
    end_hour: int = Field(ge=0, le=23)

    def contains(self, hour: int) -> bool:
        return self.start_hour <= hour <= self.end_hour


def _default_peak_windows() -> list[PeakWindow]:
    return [PeakWindow(start_hour=7, end_hour=9), PeakWindow(start_hour=16, end_hour=18)]


class PollingConfig(BaseModel):
    """Bounds and thresholds of the adaptive poll interval."""

    min_interval_minutes: float = Field(default=5.0, gt=0)
    max_interval_minutes: float = Field(default=30.0, gt=0)
    history_hours: int = Field(default=24, ge=1)
    min_samples: int = Field(default=5, ge=1)
    stable_mean: float = 5.0
    stable_stddev: float = 3.0
    moderate_mean: float = 10.0
    moderate_stddev: float = 5.0
    peak_windows: list[PeakWindow] = Field(default_factory=_default_peak_windows)
    max_concurrent_polls: int = Field(default=4, ge=1, le=50)

    @model_validator(mode="after")
    def validate_bounds(self) -> Self:
        """Ensure the minimum interval does not exceed the maximum."""
        if self.min_interval_minutes > self.max_interval_minutes:
            raise ValueError("min_interval_minutes must not exceed max_interval_minutes")
        return self

    @property
    def min_interval(self) -> timedelta:
        return timedelta(minutes=self.min_interval_minutes)

    @property
    def max_interval(self) -> timedelta:
        return timedelta(minutes=self.max_interval_minutes)

    @property
    def history_window(self) -> timedelta:
        return timedelta(hours=self.history_hours)

    def is_peak_hour(self, hour: int) -> bool:
        return any(window.contains(hour) for window in self.peak_windows)


class MonitorFileConfig(BaseModel):
    """Schema for the optional monitor.yaml tunables file."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)


class Stop(BaseModel):
    """A transit stop as reported by the provider."""

    id: str
    name: str
    lat: float | None = None
    lon: float | None = None


class DepartureRecord(BaseModel):
    """One observed departure event, normalized from a departure board entry."""

    model_config = ConfigDict(frozen=True)

    stop_id: str
    line_name: str | None
    display_number: str | None = None
    internal_name: str | None = None
    scheduled_time: datetime
    actual_time: datetime
    delay_minutes: int
    operator: str = "Unknown"
    operator_short: str = ""
    journey_ref: str | None = None
    journey_status: str = "Unknown"
    direction: str = ""
    direction_flag: str = ""
    category_code: str | None = None
    category_out: str | None = None
    category_in: str | None = None
    icon_fg_color: str = ""
    icon_bg_color: str = ""
    reachable: bool = False
    created_at: datetime


class DelayStats(BaseModel):
    """Delay distribution of one stop over a trailing window."""

    mean: float = 0.0
    stddev: float = 0.0
    sample_count: int = 0
