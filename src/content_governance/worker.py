"""Service Bus command consumer that executes queued convergence requests."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
from typing import TYPE_CHECKING

from pydantic import ValidationError

from content_governance.errors import (
    ConflictError,
    ContentGovernanceError,
    LockContentionError,
    MergeFailureError,
)
from content_governance.events import CONVERGENCE_REQUEST, ConvergenceRequest, EventEnvelope

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from content_governance.config import ServiceBusConfig
    from content_governance.convergence import ConvergenceCoordinator

logger = logging.getLogger(__name__)
_MAX_DEDUPE_IDS = 10_000
_BASE_RECONNECT_DELAY_SECONDS = 1.0
_MAX_RECONNECT_DELAY_SECONDS = 30.0
_JITTER_SCALE = 1000


def _compute_reconnect_delay_seconds(attempt: int) -> float:
    """Return bounded exponential backoff delay with jitter."""
    base_delay = _BASE_RECONNECT_DELAY_SECONDS * (2 ** min(attempt, 10))
    jitter_ratio = secrets.randbelow(_JITTER_SCALE) / _JITTER_SCALE
    return min(
        _MAX_RECONNECT_DELAY_SECONDS,
        base_delay + (base_delay * jitter_ratio),
    )


async def execute_request(
    coordinator: ConvergenceCoordinator, request: ConvergenceRequest
) -> None:
    """Run one convergence to completion.

    Domain failures are already recorded on the operation record, so they are
    logged and swallowed here; anything else propagates and the message is
    abandoned for redelivery.
    """
    try:
        operation = await coordinator.execute(request.operation_id, request.actor())
    except LockContentionError as exc:
        logger.info(
            "Convergence %s blocked: %s", request.operation_id, exc
        )
    except ConflictError as exc:
        logger.info(
            "Convergence %s has conflicts: %s", request.operation_id, exc
        )
    except MergeFailureError as exc:
        level = logging.WARNING if exc.rolled_back else logging.CRITICAL
        logger.log(
            level,
            "Convergence %s merge failed (rolled_back=%s): %s",
            request.operation_id,
            exc.rolled_back,
            exc,
        )
    except ContentGovernanceError as exc:
        logger.warning("Convergence %s rejected: %s", request.operation_id, exc)
    else:
        logger.info(
            "Convergence %s finished: status=%s merge_commit=%s",
            operation.id,
            operation.status,
            operation.merge_commit,
        )


class ConvergenceCommandConsumer:
    """Consume convergence commands from Service Bus and dispatch them to a handler.

    Up to ``concurrency`` requests run at once; requests for the same target
    ref are serialized by the target lock, not by this consumer.
    """

    def __init__(
        self,
        config: ServiceBusConfig,
        on_request: Callable[[ConvergenceRequest], Awaitable[None]],
        *,
        concurrency: int = 4,
    ) -> None:
        self._config = config
        self._on_request = on_request
        self._semaphore = asyncio.Semaphore(max(concurrency, 1))
        self._task: asyncio.Task | None = None
        self._running = False
        self._disabled = not config.connection_string
        self._processed_request_ids: set[str] = set()
        if self._disabled:
            logger.warning(
                "AZURE_SERVICEBUS_CONNECTION_STRING is not set: "
                "convergence commands will not be consumed"
            )

    async def start(self) -> None:
        """Start the background command consumer task."""
        if self._disabled:
            return
        self._running = True
        self._task = asyncio.create_task(self._consume())
        logger.info(
            "Service Bus command consumer started: topic=%s subscription=%s",
            self._config.command_topic_name,
            self._config.worker_subscription_name,
        )

    async def stop(self) -> None:
        """Stop the background command consumer task."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        logger.info("Service Bus command consumer stopped")

    def _remember_request_id(self, request_id: str) -> None:
        """Remember processed command IDs for at-least-once delivery deduplication."""
        self._processed_request_ids.add(request_id)
        if len(self._processed_request_ids) > _MAX_DEDUPE_IDS:
            self._processed_request_ids.clear()

    async def _handle_event(
        self, envelope: EventEnvelope, *, message_id: str | None
    ) -> bool:
        """Handle a decoded event envelope. Returns True when event is handled."""
        if envelope.event != CONVERGENCE_REQUEST:
            return False
        if not isinstance(envelope.data, dict):
            logger.warning(
                "Ignoring invalid convergence-request payload (non-object data)"
            )
            return True

        try:
            request = ConvergenceRequest.model_validate(envelope.data)
        except ValidationError:
            logger.warning("Ignoring invalid convergence-request payload", exc_info=True)
            return True

        dedupe_id = request.request_id or message_id
        if dedupe_id and dedupe_id in self._processed_request_ids:
            logger.info("Ignoring duplicate convergence request id=%s", dedupe_id)
            return True
        if dedupe_id:
            self._remember_request_id(dedupe_id)

        try:
            async with self._semaphore:
                await self._on_request(request)
        except BaseException:
            if dedupe_id:
                self._processed_request_ids.discard(dedupe_id)
            raise
        logger.info(
            "Handled convergence request: operation=%s", request.operation_id
        )
        return True

    async def _process_message(self, receiver: object, message: object) -> None:
        try:
            envelope = EventEnvelope.from_message_body(str(message))
            message_id = getattr(message, "message_id", None)
            handled = await self._handle_event(
                envelope, message_id=str(message_id) if message_id else None
            )
            await receiver.complete_message(message)
            if not handled:
                logger.debug(
                    "Ignored non-command event from worker subscription: %s",
                    envelope.event,
                )
        except asyncio.CancelledError:
            raise
        except json.JSONDecodeError:
            logger.warning("Invalid Service Bus message payload, abandoning message")
            await receiver.abandon_message(message)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to process Service Bus command message", exc_info=True
            )
            await receiver.abandon_message(message)

    async def _consume(self) -> None:
        """Consume commands from the worker subscription with reconnect backoff."""
        from azure.servicebus.exceptions import (  # noqa: PLC0415
            ServiceBusConnectionError,
        )

        attempt = 0
        while self._running:
            try:
                await self._consume_once()
                attempt = 0
            except asyncio.CancelledError:
                raise
            except ServiceBusConnectionError as exc:
                if not self._running:
                    break
                delay = _compute_reconnect_delay_seconds(attempt)
                attempt += 1
                logger.warning(
                    "Service Bus command consumer connection failed: %s; "
                    "retrying in %.1fs",
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
            except Exception:  # noqa: BLE001
                if not self._running:
                    break
                delay = _compute_reconnect_delay_seconds(attempt)
                attempt += 1
                logger.warning(
                    "Service Bus command consumer error; retrying in %.1fs",
                    delay,
                    exc_info=True,
                )
                await asyncio.sleep(delay)

    async def _consume_once(self) -> None:
        """Run a single Service Bus receive session."""
        from azure.servicebus.aio import ServiceBusClient  # noqa: PLC0415

        client = ServiceBusClient.from_connection_string(self._config.connection_string)
        async with client:
            receiver = client.get_subscription_receiver(
                topic_name=self._config.command_topic_name,
                subscription_name=self._config.worker_subscription_name,
            )
            async with receiver:
                while self._running:
                    messages = await receiver.receive_messages(
                        max_message_count=10, max_wait_time=5
                    )
                    if messages:
                        await asyncio.gather(
                            *(
                                self._process_message(receiver, message)
                                for message in messages
                            )
                        )
