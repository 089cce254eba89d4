"""Tests for the Service Bus audit publisher."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from content_governance.config import ServiceBusConfig
from content_governance.events import ServiceBusPublisher

_CONNECTION_STRING = (
    "Endpoint=sb://test.servicebus.windows.net/;SharedAccessKeyName=key;SharedAccessKey=abc"
)


def _config(connection_string: str = _CONNECTION_STRING) -> ServiceBusConfig:
    return ServiceBusConfig(
        connection_string=connection_string,
        event_topic_name="governance-events",
        command_topic_name="governance-commands",
    )


@pytest.fixture
def sender() -> MagicMock:
    sender = MagicMock()
    sender.send_messages = AsyncMock()
    sender.close = AsyncMock()
    return sender


@pytest.fixture
def client(sender: MagicMock) -> MagicMock:
    client = MagicMock()
    client.get_topic_sender.return_value = sender
    client.close = AsyncMock()
    return client


async def test_publisher_uses_explicit_topic(client: MagicMock) -> None:
    """Publisher sends messages to an explicitly configured topic."""
    config = _config()
    publisher = ServiceBusPublisher(config, topic_name=config.command_topic_name)

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        await publisher.publish("convergence-request", {"operation_id": "op1"})

    client.get_topic_sender.assert_called_once_with(
        topic_name=config.command_topic_name,
    )


async def test_publisher_defaults_to_event_topic(client: MagicMock) -> None:
    publisher = ServiceBusPublisher(_config())

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        await publisher.publish("branch-transition", {"id": "t1"})

    client.get_topic_sender.assert_called_once_with(topic_name="governance-events")


async def test_publisher_sets_session_from_ordering_key(
    client: MagicMock, sender: MagicMock
) -> None:
    """Events about one entity share a session so they arrive in order."""
    publisher = ServiceBusPublisher(_config())

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        await publisher.publish(
            "convergence-status", {"id": "op1"}, ordering_key="main"
        )

    message = sender.send_messages.await_args.args[0]
    assert message.session_id == "main"
    assert message.application_properties["event_type"] == "convergence-status"
    body = json.loads(str(message))
    assert body == {"event": "convergence-status", "data": {"id": "op1"}}


async def test_publisher_swallows_send_failures(
    client: MagicMock, sender: MagicMock
) -> None:
    """Audit delivery failures never fail the state change that emitted them."""
    sender.send_messages.side_effect = RuntimeError("broker down")
    publisher = ServiceBusPublisher(_config())

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        await publisher.publish("branch-transition", {"id": "t1"})


async def test_publisher_disabled_without_connection_string() -> None:
    publisher = ServiceBusPublisher(_config(connection_string=""))

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        await publisher.publish("branch-transition", {"id": "t1"})

    servicebus_cls.from_connection_string.assert_not_called()


async def test_close_releases_sender_and_client(
    client: MagicMock, sender: MagicMock
) -> None:
    publisher = ServiceBusPublisher(_config())

    with patch(
        "content_governance.events.servicebus.ServiceBusClient"
    ) as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        await publisher.publish("branch-transition", {"id": "t1"})
        await publisher.close()

    sender.close.assert_awaited_once()
    client.close.assert_awaited_once()
