"""Service Bus publisher for governance audit events."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from azure.servicebus.aio import ServiceBusClient, ServiceBusSender

from content_governance.events.contracts import EventEnvelope

if TYPE_CHECKING:
    from content_governance.config import ServiceBusConfig

logger = logging.getLogger(__name__)


class ServiceBusPublisher:
    """Publish audit events to an Azure Service Bus topic.

    Events about the same entity share a session id (``ordering_key``), so a
    session-enabled subscription receives them in the order they were sent.
    """

    def __init__(
        self,
        config: ServiceBusConfig,
        *,
        topic_name: str | None = None,
    ) -> None:
        self._config = config
        self._topic_name = topic_name or config.event_topic_name
        self._client: ServiceBusClient | None = None
        self._sender: ServiceBusSender | None = None
        self._disabled = not config.connection_string
        if self._disabled:
            logger.warning(
                "AZURE_SERVICEBUS_CONNECTION_STRING is not set; "
                "audit events will not be published"
            )

    async def _ensure_sender(self) -> ServiceBusSender:
        """Lazily create the Service Bus client and topic sender."""
        if self._sender is None:
            self._client = ServiceBusClient.from_connection_string(
                self._config.connection_string
            )
            self._sender = self._client.get_topic_sender(topic_name=self._topic_name)
        return self._sender

    async def publish(
        self,
        event_type: str,
        data: dict[str, Any] | str,
        *,
        ordering_key: str | None = None,
    ) -> None:
        """Send one event; delivery failures are logged, never raised."""
        if self._disabled:
            return

        from azure.servicebus import ServiceBusMessage  # noqa: PLC0415

        try:
            sender = await self._ensure_sender()
            message = ServiceBusMessage(
                body=EventEnvelope(event=event_type, data=data).model_dump_json(),
                application_properties={"event_type": event_type},
                message_id=str(uuid.uuid4()),
                session_id=ordering_key,
            )
            await sender.send_messages(message)
            logger.debug(
                "Published event=%s ordering_key=%s to %s",
                event_type,
                ordering_key,
                self._topic_name,
            )
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to publish event=%s to Service Bus",
                event_type,
                exc_info=True,
            )

    async def close(self) -> None:
        """Close the sender and client."""
        if self._sender:
            await self._sender.close()
            self._sender = None
        if self._client:
            await self._client.close()
            self._client = None
