"""Tests for worker app initialization and wiring."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from content_governance.app import run
from content_governance.errors import VersionControlError
from content_governance.worker import execute_request


def _settings(monitor_connection_string: str = "") -> MagicMock:
    settings = MagicMock()
    settings.monitor.connection_string = monitor_connection_string
    settings.app.log_level = "INFO"
    settings.app.is_development = True
    settings.servicebus.event_topic_name = "governance-events"
    settings.convergence.worker_concurrency = 2
    return settings


@pytest.mark.unit
async def test_run_configures_azure_monitor_when_connection_string_set() -> None:
    """Azure Monitor is enabled before the dependency checks run."""
    settings = _settings("InstrumentationKey=test-key")

    with (
        patch("content_governance.app.load_settings", return_value=settings),
        patch("content_governance.app.configure_logging"),
        patch("content_governance.app.configure_azure_monitor") as mock_configure_monitor,
        patch(
            "content_governance.app.check_dependencies",
            new=AsyncMock(return_value=False),
        ),
    ):
        await run()

        mock_configure_monitor.assert_called_once_with(
            connection_string="InstrumentationKey=test-key",
        )


@pytest.mark.unit
async def test_run_skips_azure_monitor_when_no_connection_string() -> None:
    """Azure Monitor is not configured when connection string is empty."""
    with (
        patch("content_governance.app.load_settings", return_value=_settings()),
        patch("content_governance.app.configure_logging"),
        patch("content_governance.app.configure_azure_monitor") as mock_configure_monitor,
        patch(
            "content_governance.app.check_dependencies",
            new=AsyncMock(return_value=False),
        ),
    ):
        await run()

        mock_configure_monitor.assert_not_called()


@pytest.mark.unit
async def test_run_stops_without_content_repository() -> None:
    init_database = AsyncMock()

    with (
        patch("content_governance.app.load_settings", return_value=_settings()),
        patch("content_governance.app.configure_logging"),
        patch(
            "content_governance.app.check_dependencies",
            new=AsyncMock(return_value=True),
        ),
        patch(
            "content_governance.app.GitVersionControl",
            side_effect=VersionControlError("GIT_REPOSITORY_PATH is not set"),
        ),
        patch("content_governance.app.init_database", new=init_database),
    ):
        await run()

    init_database.assert_not_awaited()


@pytest.mark.unit
async def test_run_wires_event_and_command_channels() -> None:
    """Worker publishes on the event topic and executes commands via the coordinator."""
    settings = _settings()
    cosmos = MagicMock()
    cosmos.database = MagicMock()
    cosmos.close = AsyncMock()
    services = MagicMock()
    services.locking.list_stale_locks = AsyncMock(return_value=[MagicMock()])
    command_consumer = MagicMock()
    command_consumer.start = AsyncMock()
    command_consumer.stop = AsyncMock()
    event_publisher = MagicMock()
    event_publisher.close = AsyncMock()
    vcs = MagicMock()
    stop_event = MagicMock()
    stop_event.wait = AsyncMock(return_value=None)
    loop = MagicMock()

    with (
        patch("content_governance.app.load_settings", return_value=settings),
        patch("content_governance.app.configure_logging"),
        patch(
            "content_governance.app.check_dependencies",
            new=AsyncMock(return_value=True),
        ),
        patch("content_governance.app.GitVersionControl", return_value=vcs),
        patch("content_governance.app.init_database", new=AsyncMock(return_value=cosmos)),
        patch(
            "content_governance.app.build_services", return_value=services
        ) as build_services,
        patch(
            "content_governance.app.ServiceBusPublisher",
            return_value=event_publisher,
        ) as publisher_cls,
        patch(
            "content_governance.app.ConvergenceCommandConsumer",
            return_value=command_consumer,
        ) as command_consumer_cls,
        patch("content_governance.app.asyncio.Event", return_value=stop_event),
        patch("content_governance.app.asyncio.get_running_loop", return_value=loop),
    ):
        await run()

    publisher_cls.assert_called_once_with(
        settings.servicebus,
        topic_name=settings.servicebus.event_topic_name,
    )
    build_services.assert_called_once_with(
        cosmos.database, vcs, event_publisher, settings
    )
    command_consumer_cls.assert_called_once()
    on_request = command_consumer_cls.call_args.kwargs["on_request"]
    assert on_request.func is execute_request
    assert on_request.args == (services.coordinator,)
    assert command_consumer_cls.call_args.kwargs["concurrency"] == 2  # noqa: PLR2004
    services.locking.list_stale_locks.assert_awaited_once_with(
        settings.convergence.stale_lock_after
    )
    command_consumer.stop.assert_awaited_once()
    event_publisher.close.assert_awaited_once()
    cosmos.close.assert_awaited_once()
