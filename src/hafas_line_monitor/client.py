"""HTTP client for the HAFAS ReST API with retry logic and quota accounting."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hafas_line_monitor.logging import get_logger
from hafas_line_monitor.metrics import (
    record_api_duration,
    record_api_error,
    record_api_request,
)
from hafas_line_monitor.models import ProviderConfig, RetryConfig

if TYPE_CHECKING:
    from hafas_line_monitor.archive import ResponseArchive
    from hafas_line_monitor.quota import Clock, QuotaGovernor

logger = get_logger(__name__)

NEARBY_STOPS_ENDPOINT = "location.nearbystops"
DEPARTURE_BOARD_ENDPOINT = "departureBoard"

# errorCode values the provider uses to reject a request for quota reasons
QUOTA_ERROR_CODES = {"API_QUOTA"}


class TransitError(Exception):
    """Base class for provider call failures."""


class TransitNetworkError(TransitError):
    """Connection failure or timeout."""


class TransitHttpError(TransitError):
    """Non-2xx response or unusable body."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


class QuotaExceededError(TransitError):
    """Provider rejected the request because the credential's quota is spent."""


# QuotaExceededError is never retried
RETRYABLE_EXCEPTIONS = (TransitNetworkError, TransitHttpError)


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "api_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
        error_type=type(error).__name__ if error else None,
        error_message=str(error) if error else None,
    )


def create_retrying(
    retry: RetryConfig,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """Create a tenacity AsyncRetrying instance from retry settings.

    With the defaults (3 attempts, base 1 s) the waits are 1 s then 2 s.

    Args:
        retry: Retry settings.
        sleep: Coroutine used between attempts.

    Returns:
        An AsyncRetrying instance for use in async for loops.
    """
    return AsyncRetrying(
        stop=stop_after_attempt(retry.max_attempts),
        wait=wait_exponential(
            multiplier=retry.backoff_base,
            max=retry.backoff_max,
        ),
        retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )


def _quota_error_code(payload: object) -> str | None:
    if isinstance(payload, dict):
        code = payload.get("errorCode")
        if code in QUOTA_ERROR_CODES:
            return str(code)
    return None


class TransitClient:
    """Calls the provider endpoints on behalf of discovery and ingestion."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        governor: "QuotaGovernor",
        base_url: str,
        provider: ProviderConfig | None = None,
        retry: RetryConfig | None = None,
        archive: "ResponseArchive | None" = None,
        clock: "Clock | None" = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            http_client: Shared async HTTP client.
            governor: Quota governor handing out credentials.
            base_url: Base URL of the provider API.
            provider: Endpoint parameters and request timeout.
            retry: Retry settings.
            archive: Optional raw response archive.
            clock: Source of local time for archive partitions.
            sleep: Coroutine used between retry attempts.
        """
        self._http = http_client
        self._governor = governor
        self._base_url = base_url.rstrip("/")
        self.provider = provider or ProviderConfig()
        self._retry = retry or RetryConfig()
        self._archive = archive
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._sleep = sleep

    async def _do_fetch(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        """Perform a single attempt.

        The request is counted against quota before it is sent.

        Raises:
            QuotaExceededError: Provider signalled quota exhaustion.
            TransitHttpError: Non-2xx status or non-object body.
            TransitNetworkError: Connection or timeout failure.
        """
        key = await self._governor.acquire()
        record_api_request(endpoint, self._governor.slot_of(key))

        try:
            response = await self._http.get(
                f"{self._base_url}/{endpoint}",
                params={**params, "accessId": key, "format": "json"},
                timeout=self.provider.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransitNetworkError(f"Timeout calling {endpoint}") from e
        except httpx.TransportError as e:
            raise TransitNetworkError(f"{type(e).__name__} calling {endpoint}: {e}") from e

        if response.status_code == 429:
            raise QuotaExceededError(f"{endpoint} answered 429")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        code = _quota_error_code(payload)
        if code is not None:
            raise QuotaExceededError(f"{endpoint} answered {code}")

        if response.is_error:
            raise TransitHttpError(response.status_code, f"{endpoint} failed")

        if not isinstance(payload, dict):
            raise TransitHttpError(response.status_code, f"{endpoint} returned no JSON object")

        return payload

    async def _fetch_with_retry(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        retrying = create_retrying(self._retry, self._sleep)

        async for attempt in retrying:
            with attempt:
                return await self._do_fetch(endpoint, params)

        # This should never be reached due to reraise=True
        raise RuntimeError("Retry loop exited without returning or raising")

    async def fetch(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        """Call an endpoint with retry and return its JSON body.

        Args:
            endpoint: Endpoint path below the base URL.
            params: Query parameters (credential and format are added).

        Returns:
            Parsed JSON object.

        Raises:
            QuotaExceededError: Not retried.
            TransitHttpError: After retry exhaustion.
            TransitNetworkError: After retry exhaustion.
        """
        start = time.monotonic()
        try:
            payload = await self._fetch_with_retry(endpoint, params)
        except TransitError as e:
            record_api_error(endpoint, type(e).__name__)
            logger.error(
                "api_error",
                endpoint=endpoint,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            raise

        duration = time.monotonic() - start
        record_api_duration(endpoint, duration)
        logger.debug("api_success", endpoint=endpoint, duration_ms=round(duration * 1000, 1))

        if self._archive is not None:
            await self._archive.store(endpoint, payload, self._clock())

        return payload

    async def nearby_stops(self) -> dict[str, Any]:
        """Fetch the stop listing around the configured origin."""
        return await self.fetch(
            NEARBY_STOPS_ENDPOINT,
            {
                "originCoordLat": f"{self.provider.origin_lat:.6f}",
                "originCoordLong": f"{self.provider.origin_lon:.6f}",
                "r": str(self.provider.radius_meters),
                "maxNo": str(self.provider.max_results),
            },
        )

    async def departure_board(self, stop_id: str, line: str | None = None) -> dict[str, Any]:
        """Fetch the departure board of a stop, optionally scoped to one line."""
        params = {"id": stop_id, "lang": self.provider.language}
        if line:
            params["lines"] = line
        return await self.fetch(DEPARTURE_BOARD_ENDPOINT, params)


def create_http_client(max_connections: int = 20) -> httpx.AsyncClient:
    """Create an async HTTP client with connection pooling.

    Certificate validation is disabled: the provider has been seen serving
    invalid certificates. This trades transport trust for availability.

    Args:
        max_connections: Maximum number of concurrent connections.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_connections // 2,
    )

    return httpx.AsyncClient(
        limits=limits,
        follow_redirects=True,
        verify=False,
    )
