"""Main entry point for HAFAS Line Monitor."""

import asyncio
import signal

from hafas_line_monitor.api import ApiServer
from hafas_line_monitor.archive import ResponseArchive
from hafas_line_monitor.client import TransitClient, TransitError, create_http_client
from hafas_line_monitor.config import Settings, load_monitor_file
from hafas_line_monitor.database import create_engine, create_session_factory, init_schema
from hafas_line_monitor.discovery import StopDiscovery
from hafas_line_monitor.ingestor import DepartureIngestor
from hafas_line_monitor.logging import bind_service_context, configure_logging, get_logger
from hafas_line_monitor.quota import QuotaGovernor, make_clock
from hafas_line_monitor.scheduler import AdaptivePollScheduler
from hafas_line_monitor.storage import Store

logger = get_logger(__name__)


async def bootstrap(
    store: Store,
    discovery: StopDiscovery,
    scheduler: AdaptivePollScheduler,
) -> int:
    """Seed the stop registry before polling starts.

    Discovery runs when the store holds no stops or no departures. A failed
    listing is logged and startup continues; stops can still be discovered
    later through ``/api/stops?force_refresh=true``.

    Returns:
        Number of stops registered for polling.
    """
    stop_count = await store.count_stops()
    departure_count = await store.count_departures()

    if stop_count == 0 or departure_count == 0:
        logger.info(
            "bootstrap_discovery",
            stops=stop_count,
            departures=departure_count,
        )
        try:
            await discovery.discover()
        except TransitError as e:
            logger.error(
                "bootstrap_discovery_failed",
                error_type=type(e).__name__,
                error_message=str(e),
            )

    registered = await scheduler.load_registry()
    logger.info("bootstrap_complete", registered_stops=registered)
    return registered


async def run() -> None:
    """Run the HAFAS Line Monitor."""
    # Load settings from environment
    settings = Settings()  # type: ignore[call-arg]

    # Configure logging
    configure_logging(settings.log_level, settings.log_format)
    bind_service_context(settings.bus_line)

    logger.info(
        "starting",
        config_path=str(settings.config_path),
        timezone=settings.timezone,
        backup_dir=str(settings.backup_dir) if settings.backup_dir else None,
        secondary_key_configured=settings.secondary_api_key is not None,
    )

    # Load tunables
    tunables = load_monitor_file(settings.config_path)

    # Create store
    engine = create_engine(settings.database_url, echo=settings.database_echo)
    await init_schema(engine)
    store = Store(create_session_factory(engine))

    clock = make_clock(settings.tz)

    governor = QuotaGovernor(
        primary_key=settings.primary_api_key,
        backup_key=settings.backup_api_key,
        hourly_cap=tunables.quota.hourly_cap,
        clock=clock,
    )

    archive = ResponseArchive(settings.backup_dir) if settings.backup_dir else None

    # Create HTTP client
    http_client = create_http_client(
        tunables.polling.max_concurrent_polls + tunables.discovery.concurrency
    )

    client = TransitClient(
        http_client,
        governor,
        base_url=settings.hafas_base_url,
        provider=tunables.provider,
        retry=tunables.retry,
        archive=archive,
        clock=clock,
    )
    ingestor = DepartureIngestor(client, settings.bus_line)

    scheduler = AdaptivePollScheduler(
        ingestor,
        store,
        governor,
        policy=tunables.polling,
        clock=clock,
    )
    discovery = StopDiscovery(
        client,
        ingestor,
        store,
        governor,
        config=tunables.discovery,
        on_confirmed=scheduler.notify_discovered,
    )

    api_server = ApiServer(
        store,
        settings.bus_line,
        port=settings.health_port,
        scheduler=scheduler,
        discovery=discovery,
        governor=governor,
    )

    # Set up shutdown handling
    shutdown_event = asyncio.Event()

    def handle_shutdown(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)

    try:
        # Start services
        await api_server.start()
        logger.info("api_server_started", port=settings.health_port)

        await bootstrap(store, discovery, scheduler)

        await scheduler.start()
        logger.info(
            "scheduler_started",
            monitored_stops=scheduler.get_stop_count(),
            tick_minutes=tunables.polling.min_interval_minutes,
        )

        # Wait for shutdown signal
        await shutdown_event.wait()

    finally:
        # Graceful shutdown
        logger.info("shutting_down")

        await scheduler.stop(wait=True)
        logger.info("scheduler_stopped")

        await api_server.stop()
        logger.info("api_server_stopped")

        await http_client.aclose()
        await engine.dispose()

        logger.info("shutdown_complete")


def main() -> None:
    """Entry point for the HAFAS Line Monitor."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
