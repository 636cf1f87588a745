"""Health, metrics and statistics HTTP server."""

import json
import time
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from aiohttp import web
from prometheus_client import REGISTRY
from prometheus_client.openmetrics.exposition import (
    CONTENT_TYPE_LATEST,
    generate_latest,
)

from hafas_line_monitor.logging import get_logger
from hafas_line_monitor.metrics import get_last_success_timestamp

if TYPE_CHECKING:
    from hafas_line_monitor.discovery import StopDiscovery
    from hafas_line_monitor.quota import QuotaGovernor
    from hafas_line_monitor.scheduler import AdaptivePollScheduler
    from hafas_line_monitor.storage import Store

logger = get_logger(__name__)

Handler = Callable[[web.Request], Awaitable[web.Response]]


class BadQuery(ValueError):
    """Query parameter could not be parsed."""


def _json_error(status: int, payload: dict[str, Any]) -> web.Response:
    return web.Response(
        text=json.dumps(payload),
        status=status,
        content_type="application/json",
    )


def parse_date_param(request: web.Request, name: str) -> datetime | None:
    """ISO 8601 date or datetime from the query string, if present.

    Raises:
        BadQuery: If the value is not ISO 8601.
    """
    value = request.query.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as e:
        raise BadQuery(f"Invalid {name}: {value!r}") from e


class ApiServer:
    """HTTP server for health checks, Prometheus metrics and delay statistics."""

    def __init__(
        self,
        store: "Store",
        target_line: str,
        port: int = 8080,
        scheduler: "AdaptivePollScheduler | None" = None,
        discovery: "StopDiscovery | None" = None,
        governor: "QuotaGovernor | None" = None,
    ) -> None:
        """Initialize the API server.

        Args:
            store: Persistence gateway queried by the statistics routes.
            target_line: Monitored line, used by the route analysis.
            port: Port to listen on.
            scheduler: Optional scheduler for health status reporting.
            discovery: Optional discovery, run on ``/api/stops?force_refresh=true``.
            governor: Optional quota governor for health status reporting.
        """
        self.store = store
        self.target_line = target_line
        self.port = port
        self.scheduler = scheduler
        self.discovery = discovery
        self.governor = governor
        self._start_time = time.time()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def _get_health_status(self) -> dict[str, object]:
        """Get current health status.

        Returns:
            Dictionary containing health status information.
        """
        uptime = time.time() - self._start_time

        status: dict[str, object] = {
            "status": "healthy",
            "uptime_seconds": round(uptime, 2),
            "line": self.target_line,
        }

        if self.scheduler is not None:
            status["scheduler"] = {
                "running": self.scheduler.is_running,
                "monitored_stops": self.scheduler.get_stop_count(),
            }

        if self.governor is not None:
            paused_until = self.governor.paused_until
            status["quota"] = {
                "active_credential": self.governor.active_slot,
                "requests_this_hour": self.governor.requests_this_hour,
                "exhausted": self.governor.exhausted,
                "paused_until": paused_until.isoformat() if paused_until else None,
            }

        if self.discovery is not None:
            status["discovery"] = {"running": self.discovery.is_running}

        return status

    async def _handle_health(self, _request: web.Request) -> web.Response:
        """Handle /health endpoint."""
        return web.json_response(self._get_health_status())

    async def _handle_ready(self, _request: web.Request) -> web.Response:
        """Handle /ready endpoint for readiness probes.

        Returns:
            200 OK if ready, 503 if not.
        """
        if self.scheduler is not None and not self.scheduler.is_running:
            return _json_error(503, {"status": "not_ready", "reason": "scheduler_not_running"})

        return web.json_response({"status": "ready"})

    async def _handle_stop_health(self, _request: web.Request) -> web.Response:
        """Handle /health/stops endpoint with per-stop poll state."""
        if self.scheduler is None:
            return _json_error(503, {"error": "no scheduler"})

        now = time.time()
        stops = []
        for state in self.scheduler.states.values():
            last_success = get_last_success_timestamp(state.stop_id)
            stops.append(
                {
                    "stop_id": state.stop_id,
                    "status": state.status.value,
                    "interval_minutes": state.interval.total_seconds() / 60,
                    "next_poll_time": state.next_poll_time.isoformat(),
                    "consecutive_failures": state.consecutive_failures,
                    "last_error": state.last_error,
                    "last_success_seconds_ago": (
                        round(now - last_success, 1) if last_success is not None else None
                    ),
                }
            )

        return web.json_response(stops)

    async def _handle_metrics(self, _request: web.Request) -> web.Response:
        """Handle /metrics endpoint for Prometheus scraping.

        Returns:
            Metrics in OpenMetrics format with explicit unit metadata.
        """
        metrics = generate_latest(REGISTRY)  # type: ignore[no-untyped-call]
        # Split content type and charset for aiohttp
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(
            body=metrics,
            content_type=content_type,
            charset="utf-8",
        )

    async def _handle_stops(self, request: web.Request) -> web.Response:
        """Handle /api/stops, optionally discovering stops when none are known."""
        stops = await self.store.list_stops()

        force_refresh = request.query.get("force_refresh") == "true"
        if (
            not stops
            and force_refresh
            and self.discovery is not None
            and not self.discovery.is_running
        ):
            logger.info("api_discovery_requested")
            await self.discovery.discover()
            stops = await self.store.list_stops()

        return web.json_response(stops)

    async def _handle_departures(self, request: web.Request) -> web.Response:
        departures = await self.store.list_departures(
            stop_id=request.query.get("stopId"),
            line=request.query.get("lineId"),
            start=parse_date_param(request, "startDate"),
            end=parse_date_param(request, "endDate"),
        )
        return web.json_response(departures)

    async def _handle_statistics(self, request: web.Request) -> web.Response:
        statistics = await self.store.line_statistics(
            stop_id=request.query.get("stopId"),
            line=request.query.get("lineId"),
            start=parse_date_param(request, "startDate"),
            end=parse_date_param(request, "endDate"),
        )
        return web.json_response(statistics)

    async def _handle_stop_statistics(self, _request: web.Request) -> web.Response:
        return web.json_response(await self.store.stop_statistics())

    async def _handle_route_analysis(self, _request: web.Request) -> web.Response:
        return web.json_response(await self.store.route_analysis(self.target_line))

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.Response:
        """Turn handler failures into JSON error responses."""
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BadQuery as e:
            return _json_error(400, {"error": "Bad request", "details": str(e)})
        except Exception as e:
            logger.exception(
                "api_error",
                path=request.path,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return _json_error(500, {"error": "Internal server error", "details": str(e)})

    def create_app(self) -> web.Application:
        """Build the aiohttp application with all routes."""
        app = web.Application(middlewares=[self._error_middleware])
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/health/stops", self._handle_stop_health)
        app.router.add_get("/ready", self._handle_ready)
        app.router.add_get("/metrics", self._handle_metrics)
        app.router.add_get("/api/stops", self._handle_stops)
        app.router.add_get("/api/stops/statistics", self._handle_stop_statistics)
        app.router.add_get("/api/departures", self._handle_departures)
        app.router.add_get("/api/statistics", self._handle_statistics)
        app.router.add_get("/api/route/analysis", self._handle_route_analysis)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._app = self.create_app()

        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        self._site = web.TCPSite(self._runner, "0.0.0.0", self.port)
        await self._site.start()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
