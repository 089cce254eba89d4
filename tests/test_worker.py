"""Tests for worker Service Bus convergence command consumption."""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from content_governance.config import ServiceBusConfig
from content_governance.errors import (
    ConflictError,
    LockContentionError,
    MergeFailureError,
)
from content_governance.events import ConvergenceRequest, EventEnvelope
from content_governance.models.branch import Role
from content_governance.models.convergence import (
    ConflictDetail,
    ConflictType,
    ConvergenceOperation,
    ConvergenceStatus,
)
from content_governance.worker import (
    ConvergenceCommandConsumer,
    _compute_reconnect_delay_seconds,
    execute_request,
)

_EXPECTED_RETRY_ATTEMPTS = 2
_TRANSIENT_ERROR = "transient"


def _servicebus_config(connection_string: str | None = None) -> ServiceBusConfig:
    """Create a minimal Service Bus config for command-consumer tests."""
    return ServiceBusConfig(
        connection_string=(
            "Endpoint=sb://test.servicebus.windows.net/;SharedAccessKeyName=key;SharedAccessKey=abc"
            if connection_string is None
            else connection_string
        ),
        event_topic_name="governance-events",
        command_topic_name="governance-commands",
        worker_subscription_name="convergence-worker",
    )


def _request_envelope(**data: object) -> EventEnvelope:
    payload = {
        "operation_id": "op1",
        "actor_id": "publisher-1",
        "actor_roles": ["publisher"],
        **data,
    }
    return EventEnvelope(event="convergence-request", data=payload)


async def test_handle_event_ignores_non_command_events() -> None:
    """Audit events on the subscription are not dispatched."""
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    handled = await consumer._handle_event(  # noqa: SLF001
        EventEnvelope(event="convergence-status", data={"id": "op1"}),
        message_id="msg-1",
    )
    assert handled is False
    callback.assert_not_awaited()


async def test_handle_event_dispatches_convergence_request() -> None:
    """Convergence commands dispatch a typed request to the handler."""
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    handled = await consumer._handle_event(  # noqa: SLF001
        _request_envelope(request_id="req-1"),
        message_id="msg-1",
    )
    assert handled is True
    request = callback.await_args.args[0]
    assert request.operation_id == "op1"
    assert request.actor().roles == [Role.PUBLISHER]


async def test_handle_event_deduplicates_request_ids() -> None:
    """Duplicate commands with the same request id are ignored."""
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    envelope = _request_envelope(request_id="req-1")
    await consumer._handle_event(envelope, message_id="msg-1")  # noqa: SLF001
    await consumer._handle_event(envelope, message_id="msg-2")  # noqa: SLF001
    callback.assert_awaited_once()


async def test_handle_event_falls_back_to_message_id() -> None:
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    envelope = _request_envelope()
    await consumer._handle_event(envelope, message_id="msg-1")  # noqa: SLF001
    await consumer._handle_event(envelope, message_id="msg-1")  # noqa: SLF001
    callback.assert_awaited_once()


async def test_handle_event_forgets_request_id_when_handler_fails() -> None:
    """A failed request can be redelivered and retried."""
    callback = AsyncMock(side_effect=[RuntimeError(_TRANSIENT_ERROR), None])
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    envelope = _request_envelope(request_id="req-1")

    with pytest.raises(RuntimeError):
        await consumer._handle_event(envelope, message_id="msg-1")  # noqa: SLF001
    await consumer._handle_event(envelope, message_id="msg-2")  # noqa: SLF001

    assert callback.await_count == _EXPECTED_RETRY_ATTEMPTS


async def test_handle_event_ignores_invalid_payload() -> None:
    """Invalid command payloads are ignored without dispatch."""
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    handled = await consumer._handle_event(  # noqa: SLF001
        EventEnvelope(event="convergence-request", data={"request_id": "req-1"}),
        message_id="msg-1",
    )
    assert handled is True
    callback.assert_not_awaited()


async def test_process_message_abandons_unparseable_body() -> None:
    consumer = ConvergenceCommandConsumer(_servicebus_config(), AsyncMock())
    receiver = AsyncMock()
    message = MagicMock()
    message.__str__.return_value = "not json"

    await consumer._process_message(receiver, message)  # noqa: SLF001

    receiver.abandon_message.assert_awaited_once_with(message)
    receiver.complete_message.assert_not_awaited()


async def test_process_message_completes_handled_command() -> None:
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    receiver = AsyncMock()
    message = MagicMock()
    message.message_id = "msg-1"
    message.__str__.return_value = _request_envelope().model_dump_json()

    await consumer._process_message(receiver, message)  # noqa: SLF001

    callback.assert_awaited_once()
    receiver.complete_message.assert_awaited_once_with(message)


async def test_start_is_noop_without_connection_string() -> None:
    consumer = ConvergenceCommandConsumer(_servicebus_config(""), AsyncMock())

    await consumer.start()

    assert consumer._task is None  # noqa: SLF001


async def test_consume_uses_command_topic_subscription() -> None:
    """Command consumer listens on the configured command topic/subscription."""
    callback = AsyncMock()
    config = _servicebus_config()
    consumer = ConvergenceCommandConsumer(config, callback)
    receiver = MagicMock()
    receiver.__aenter__ = AsyncMock(return_value=receiver)
    receiver.__aexit__ = AsyncMock(return_value=False)

    async def _receive_messages(*_: object, **__: object) -> list[object]:
        consumer._running = False  # noqa: SLF001
        return []

    receiver.receive_messages = AsyncMock(side_effect=_receive_messages)
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    client.get_subscription_receiver.return_value = receiver

    with patch("azure.servicebus.aio.ServiceBusClient") as servicebus_cls:
        servicebus_cls.from_connection_string.return_value = client
        consumer._running = True  # noqa: SLF001
        await consumer._consume_once()  # noqa: SLF001

    client.get_subscription_receiver.assert_called_once_with(
        topic_name=config.command_topic_name,
        subscription_name=config.worker_subscription_name,
    )


async def test_consume_retries_after_transient_error() -> None:
    """Transient consumer failures trigger reconnect and continue consuming."""
    callback = AsyncMock()
    consumer = ConvergenceCommandConsumer(_servicebus_config(), callback)
    attempts = 0

    async def _consume_once() -> None:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError(_TRANSIENT_ERROR)
        consumer._running = False  # noqa: SLF001

    with (
        patch.object(
            consumer,
            "_consume_once",
            new=AsyncMock(side_effect=_consume_once),
        ),
        patch("content_governance.worker.asyncio.sleep", new=AsyncMock()) as sleep_mock,
        patch("content_governance.worker.secrets.randbelow", return_value=0),
    ):
        consumer._running = True  # noqa: SLF001
        await consumer._consume()  # noqa: SLF001

    assert attempts == _EXPECTED_RETRY_ATTEMPTS
    sleep_mock.assert_awaited_once_with(1.0)


@pytest.mark.unit
def test_reconnect_delay_is_capped() -> None:
    with patch("content_governance.worker.secrets.randbelow", return_value=999):
        assert _compute_reconnect_delay_seconds(20) == 30.0  # noqa: PLR2004


@pytest.mark.unit
class TestExecuteRequest:
    """Tests for execute_request."""

    @pytest.fixture
    def request_(self) -> ConvergenceRequest:
        return ConvergenceRequest(
            operation_id="op1", actor_id="publisher-1", actor_roles=[Role.PUBLISHER]
        )

    async def test_runs_coordinator(self, request_: ConvergenceRequest) -> None:
        coordinator = AsyncMock()
        coordinator.execute.return_value = ConvergenceOperation(
            id="op1",
            branch_id="branch-1",
            publisher_id="publisher-1",
            target_ref="main",
            status=ConvergenceStatus.SUCCEEDED,
            merge_commit="c-merge-1",
        )

        await execute_request(coordinator, request_)

        operation_id, actor = coordinator.execute.await_args.args
        assert operation_id == "op1"
        assert actor.id == "publisher-1"

    @pytest.mark.parametrize(
        "error",
        [
            LockContentionError("target busy", "op0", operation_id="op1"),
            ConflictError(
                [ConflictDetail(path="a.md", type=ConflictType.CONTENT, description="x")],
                operation_id="op1",
            ),
            MergeFailureError("merge failed", rolled_back=True, operation_id="op1"),
        ],
    )
    async def test_domain_failures_are_logged_not_raised(
        self, request_: ConvergenceRequest, error: Exception
    ) -> None:
        """Failures already recorded on the operation do not abandon the message."""
        coordinator = AsyncMock()
        coordinator.execute.side_effect = error

        await execute_request(coordinator, request_)

    async def test_unrolled_back_merge_logs_critical(
        self, request_: ConvergenceRequest, caplog: pytest.LogCaptureFixture
    ) -> None:
        coordinator = AsyncMock()
        coordinator.execute.side_effect = MergeFailureError(
            "reset failed", rolled_back=False, operation_id="op1"
        )

        with caplog.at_level(logging.INFO, logger="content_governance.worker"):
            await execute_request(coordinator, request_)

        assert caplog.records[-1].levelno == logging.CRITICAL

    async def test_unexpected_errors_propagate(self, request_: ConvergenceRequest) -> None:
        coordinator = AsyncMock()
        coordinator.execute.side_effect = RuntimeError("cosmos unavailable")

        with pytest.raises(RuntimeError):
            await execute_request(coordinator, request_)
