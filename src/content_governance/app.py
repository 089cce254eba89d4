"""Worker entry point: executes convergence requests received over Service Bus."""

from __future__ import annotations

import asyncio
import functools
import logging
import signal

from azure.monitor.opentelemetry import configure_azure_monitor

from content_governance.config import load_settings
from content_governance.errors import VersionControlError
from content_governance.events import ServiceBusPublisher
from content_governance.health import check_dependencies
from content_governance.logging import configure_logging
from content_governance.startup import build_services, init_database
from content_governance.vcs.git import GitVersionControl
from content_governance.worker import ConvergenceCommandConsumer, execute_request

logger = logging.getLogger(__name__)


async def run() -> None:
    """Initialize and run the worker until terminated."""
    settings = load_settings()
    configure_logging(settings.app.log_level, log_file="worker.log")

    logger.info("Worker starting")

    if settings.monitor.connection_string:
        configure_azure_monitor(
            connection_string=settings.monitor.connection_string,
        )
        logger.info("Azure Monitor OpenTelemetry configured")

    if settings.app.is_development and not await check_dependencies(settings):
        return

    try:
        vcs = GitVersionControl(settings.git)
    except VersionControlError as exc:
        logger.error(str(exc))  # noqa: TRY400
        return

    try:
        cosmos = await init_database(settings)
    except ConnectionError as exc:
        logger.error(str(exc))  # noqa: TRY400
        return

    event_publisher = ServiceBusPublisher(
        settings.servicebus,
        topic_name=settings.servicebus.event_topic_name,
    )
    services = build_services(cosmos.database, vcs, event_publisher, settings)

    command_consumer = ConvergenceCommandConsumer(
        settings.servicebus,
        on_request=functools.partial(execute_request, services.coordinator),
        concurrency=settings.convergence.worker_concurrency,
    )
    await command_consumer.start()

    stale = await services.locking.list_stale_locks(
        settings.convergence.stale_lock_after
    )
    if stale:
        logger.warning(
            "%d stale target lock(s); inspect with 'content-governance reconcile'",
            len(stale),
        )

    logger.info("Worker running")

    # Wait until terminated
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()

    logger.info("Worker shutting down")
    await command_consumer.stop()
    await event_publisher.close()
    await cosmos.close()
    logger.info("Worker shutdown complete")


def main() -> None:
    """Entry point for the worker process."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
