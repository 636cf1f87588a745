"""Prometheus metrics for HAFAS Line Monitor."""

import time

from prometheus_client import Counter, Gauge, Histogram

# In-memory last-success timestamps per stop (for /health/stops endpoint)
_last_success_timestamps: dict[str, float] = {}

TIMING_BUCKETS = [0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0, 20.0, 30.0]

# Provider API metrics
api_requests = Counter(
    "line_monitor_api_requests_total",
    "Outbound provider requests, counted before they are sent",
    ["endpoint", "credential"],
)

api_errors = Counter(
    "line_monitor_api_errors_total",
    "Failed provider requests after retries",
    ["endpoint", "error_type"],
)

api_duration = Histogram(
    "line_monitor_api_duration_seconds",
    "Time for a successful provider call including retries",
    ["endpoint"],
    buckets=TIMING_BUCKETS,
    unit="seconds",
)

# Quota metrics
quota_rotations = Counter(
    "line_monitor_quota_rotations_total",
    "Credential rotations triggered by the hourly cap",
)

quota_pauses = Counter(
    "line_monitor_quota_pauses_total",
    "Pauses caused by provider-side quota rejections",
)

quota_requests = Gauge(
    "line_monitor_quota_requests_this_hour",
    "Requests counted against the active credential in the current window",
)

# Polling metrics
poll_success = Counter(
    "line_monitor_poll_success_total",
    "Successful stop polls",
    ["stop_id"],
)

poll_errors = Counter(
    "line_monitor_poll_errors_total",
    "Failed stop polls",
    ["stop_id", "error_type"],
)

poll_interval = Gauge(
    "line_monitor_poll_interval_seconds",
    "Current adaptive poll interval per stop",
    ["stop_id"],
    unit="seconds",
)

monitored_stops = Gauge(
    "line_monitor_monitored_stops",
    "Number of stops in the poll registry",
)

records_stored = Counter(
    "line_monitor_departures_stored_total",
    "Departure records written to the store",
    ["source"],
)

# Discovery metrics
stop_checks = Counter(
    "line_monitor_discovery_checks_total",
    "Stops checked during discovery",
    ["outcome"],
)

discovery_runs = Counter(
    "line_monitor_discovery_runs_total",
    "Completed discovery runs",
)

discovery_duration = Histogram(
    "line_monitor_discovery_duration_seconds",
    "Duration of a discovery run",
    buckets=[10.0, 30.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, 7200.0],
    unit="seconds",
)


def record_api_request(endpoint: str, credential: str) -> None:
    """Record an outbound request.

    Args:
        endpoint: Provider endpoint name.
        credential: Credential slot label, never the key itself.
    """
    api_requests.labels(endpoint=endpoint, credential=credential).inc()


def record_api_error(endpoint: str, error_type: str) -> None:
    api_errors.labels(endpoint=endpoint, error_type=error_type).inc()


def record_api_duration(endpoint: str, duration_seconds: float) -> None:
    api_duration.labels(endpoint=endpoint).observe(duration_seconds)


def record_quota_rotation() -> None:
    quota_rotations.inc()


def record_quota_pause() -> None:
    quota_pauses.inc()


def set_quota_requests(count: int) -> None:
    quota_requests.set(count)


def record_poll_success(stop_id: str, interval_seconds: float) -> None:
    """Record a successful poll and the interval chosen after it.

    Args:
        stop_id: Stop identifier.
        interval_seconds: Next poll interval in seconds.
    """
    poll_success.labels(stop_id=stop_id).inc()
    poll_interval.labels(stop_id=stop_id).set(interval_seconds)
    _last_success_timestamps[stop_id] = time.time()


def record_poll_error(stop_id: str, error_type: str, interval_seconds: float) -> None:
    """Record a failed poll and the back-off interval applied.

    Args:
        stop_id: Stop identifier.
        error_type: Error class name.
        interval_seconds: Next poll interval in seconds.
    """
    poll_errors.labels(stop_id=stop_id, error_type=error_type).inc()
    poll_interval.labels(stop_id=stop_id).set(interval_seconds)


def set_monitored_stops(count: int) -> None:
    monitored_stops.set(count)


def record_records_stored(source: str, count: int) -> None:
    """Record departure rows written.

    Args:
        source: Pipeline that produced the rows ('poll' or 'discovery').
        count: Number of rows.
    """
    if count:
        records_stored.labels(source=source).inc(count)


def record_stop_check(outcome: str) -> None:
    """Record one discovery stop check ('confirmed', 'not_served' or 'failed')."""
    stop_checks.labels(outcome=outcome).inc()


def record_discovery_run(duration_seconds: float) -> None:
    discovery_runs.inc()
    discovery_duration.observe(duration_seconds)


def get_last_success_timestamp(stop_id: str) -> float | None:
    """Get the timestamp of the last successful poll for a stop.

    Args:
        stop_id: Stop identifier.

    Returns:
        Unix timestamp of last success, or None if never succeeded.
    """
    return _last_success_timestamps.get(stop_id)
