# tests/unit/test_poller.py

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from sqs_offline.exceptions import DeleteError, QueueDoesNotExistError, ReceiveError
from sqs_offline.invocation import HandlerInvoker
from sqs_offline.poller import PollerState, QueuePoller, RetryPolicy

ARN = "arn:aws:sqs:eu-west-1:000000000000:orders-queue"
QUEUE_URL = "http://localhost:9324/000000000000/orders-queue"

FAST_RETRY = RetryPolicy(base_delay=0.01, max_delay=0.05, delete_max_attempts=3)


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def make_poller(mock_sqs_client):
    """Builds a QueuePoller around the mock client and a handler."""
    created = []

    def _make(handler, client=None, **kwargs):
        params = dict(
            function_name="processOrders",
            queue_name="orders-queue",
            event_source_arn=ARN,
            batch_size=5,
            client=client or mock_sqs_client,
            invoker=HandlerInvoker("processOrders", handler),
            region="eu-west-1",
            wait_time_seconds=0,
            idle_delay_seconds=0.01,
            retry_policy=FAST_RETRY,
        )
        params.update(kwargs)
        poller = QueuePoller(**params)
        created.append(poller)
        return poller

    yield _make

    for poller in created:
        poller.stop()
        poller.join(timeout=2)


# --- Single iterations ---


def test_empty_receive_invokes_nothing(make_poller, mock_sqs_client):
    calls = []
    poller = make_poller(lambda event, context: calls.append(event))

    assert poller.run_once() is None

    assert calls == []
    mock_sqs_client.delete_message_batch.assert_not_called()
    mock_sqs_client.receive_messages.assert_called_once_with(QUEUE_URL, 5, 0)
    assert poller.state is PollerState.IDLE


def test_batch_is_invoked_once_then_deleted(make_poller, mock_sqs_client, message_factory):
    """
    Verifies the happy path: one invocation with all records, then one delete
    naming every received message.
    """
    # Arrange
    messages = [message_factory(f"body-{i}", message_id=f"m-{i}") for i in range(3)]
    mock_sqs_client.receive_messages.return_value = messages
    events = []

    def handler(event, context):
        # Nothing may be deleted while the handler runs.
        assert mock_sqs_client.delete_message_batch.call_count == 0
        events.append(event)
        return "ok"

    poller = make_poller(handler)

    # Act
    batch = poller.run_once()

    # Assert
    assert len(events) == 1
    assert [r["messageId"] for r in events[0]["Records"]] == ["m-0", "m-1", "m-2"]
    assert events[0]["Records"][0]["eventSourceARN"] == ARN
    mock_sqs_client.delete_message_batch.assert_called_once_with(QUEUE_URL, messages)
    assert batch.deleted
    assert batch.invocation.result == "ok"
    assert batch.message_ids == ["m-0", "m-1", "m-2"]
    assert poller.stats.batches == 1
    assert poller.stats.messages == 3


def test_failed_invocation_still_deletes(make_poller, mock_sqs_client, message_factory):
    messages = [message_factory(message_id="m-1")]
    mock_sqs_client.receive_messages.return_value = messages

    def handler(event, context):
        raise ValueError("bad message")

    poller = make_poller(handler)
    batch = poller.run_once()

    assert not batch.invocation.succeeded
    assert batch.deleted
    mock_sqs_client.delete_message_batch.assert_called_once_with(QUEUE_URL, messages)
    assert poller.stats.failed_invocations == 1


def test_queue_url_is_looked_up_once(make_poller, mock_sqs_client, message_factory):
    poller = make_poller(lambda event, context: None)

    poller.run_once()
    poller.run_once()

    mock_sqs_client.get_queue_url.assert_called_once_with("orders-queue")
    assert poller.queue_url == QUEUE_URL


def test_partial_delete_failure_retries_only_failed_messages(
    make_poller, mock_sqs_client, message_factory
):
    messages = [message_factory(message_id="m-1"), message_factory(message_id="m-2")]
    mock_sqs_client.receive_messages.return_value = messages
    mock_sqs_client.delete_message_batch.side_effect = [
        DeleteError(QUEUE_URL, ["m-2"]),
        None,
    ]

    batch = make_poller(lambda event, context: None).run_once()

    assert batch.deleted
    assert mock_sqs_client.delete_message_batch.call_count == 2
    retried = mock_sqs_client.delete_message_batch.call_args_list[1].args[1]
    assert [m["MessageId"] for m in retried] == ["m-2"]


def test_delete_is_given_up_after_max_attempts(
    make_poller, mock_sqs_client, message_factory
):
    mock_sqs_client.receive_messages.return_value = [message_factory(message_id="m-1")]
    mock_sqs_client.delete_message_batch.side_effect = ReceiveError(QUEUE_URL, "down")

    poller = make_poller(lambda event, context: None)
    batch = poller.run_once()

    assert not batch.deleted
    assert isinstance(batch.delete_error, DeleteError)
    assert batch.delete_error.context["failed_ids"] == ["m-1"]
    assert mock_sqs_client.delete_message_batch.call_count == FAST_RETRY.delete_max_attempts
    assert poller.stats.delete_failures == 1


def test_receive_error_is_raised_from_run_once(make_poller, mock_sqs_client):
    mock_sqs_client.receive_messages.side_effect = ReceiveError(QUEUE_URL, "down")

    with pytest.raises(ReceiveError):
        make_poller(lambda event, context: None).run_once()


def test_on_batch_callback_errors_are_contained(
    make_poller, mock_sqs_client, message_factory
):
    mock_sqs_client.receive_messages.return_value = [message_factory()]
    on_batch = MagicMock(side_effect=RuntimeError("reporter broke"))

    batch = make_poller(lambda event, context: None, on_batch=on_batch).run_once()

    on_batch.assert_called_once_with(batch)


def test_callback_handler_batch_is_deleted_only_after_completion(
    make_poller, mock_sqs_client, message_factory
):
    messages = [message_factory(message_id="m-1")]
    mock_sqs_client.receive_messages.return_value = messages
    deletes_at_completion = []

    def handler(event, context, callback):
        def complete():
            deletes_at_completion.append(mock_sqs_client.delete_message_batch.call_count)
            callback(None, "done")

        threading.Timer(0.2, complete).start()

    batch = make_poller(handler).run_once()

    assert deletes_at_completion == [0]
    assert batch.invocation.result == "done"
    mock_sqs_client.delete_message_batch.assert_called_once_with(QUEUE_URL, messages)


def test_stop_while_callback_is_pending_leaves_batch_undeleted(
    make_poller, mock_sqs_client, message_factory
):
    mock_sqs_client.receive_messages.return_value = [message_factory()]
    stop = threading.Event()
    poller = make_poller(lambda event, context, callback: None, stop_event=stop)
    timer = threading.Timer(0.2, stop.set)

    timer.start()
    try:
        assert poller.run_once() is None
    finally:
        timer.cancel()

    mock_sqs_client.delete_message_batch.assert_not_called()
    assert poller.stats.batches == 0
    assert poller.state is PollerState.IDLE


# --- Retry policy ---


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(base_delay=0.5, max_delay=4.0)
    assert [policy.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 4.0, 4.0]


# --- Threaded loop ---


def test_loop_backs_off_and_recovers(make_poller, mock_sqs_client, message_factory):
    """
    A queue that does not exist yet must not stop the poller; once the backend
    answers, messages flow again.
    """
    message = message_factory(message_id="m-1")
    mock_sqs_client.receive_messages.side_effect = [
        QueueDoesNotExistError("orders-queue"),
        ReceiveError(QUEUE_URL, "down"),
        [message],
    ] + [[]] * 1000
    invoked = threading.Event()

    poller = make_poller(lambda event, context: invoked.set())
    poller.start()

    assert invoked.wait(5)
    assert _wait_until(lambda: poller.stats.batches == 1)
    assert _wait_until(lambda: poller.stats.consecutive_failures == 0)
    assert poller.stats.receive_failures == 2


def test_missing_queue_is_logged_once_at_error_level(
    make_poller, mock_sqs_client, message_factory
):
    mock_sqs_client.receive_messages.side_effect = (
        [QueueDoesNotExistError("orders-queue")] * 3 + [[message_factory()]] + [[]] * 1000
    )

    with patch("sqs_offline.poller.logger") as mock_logger:
        poller = make_poller(lambda event, context: None)
        poller.start()
        assert _wait_until(lambda: poller.stats.batches == 1)
        poller.stop()
        poller.join(timeout=2)

    assert mock_logger.error.call_count == 1
    extra = mock_logger.error.call_args.kwargs["extra"]
    assert extra["error"]["error_code"] == "QUEUE_DOES_NOT_EXIST"
    assert extra["error"]["retryable"] is False
    mock_logger.warning.assert_not_called()
    assert poller.stats.receive_failures == 3
    # The URL is looked up again after every missing-queue failure.
    assert mock_sqs_client.get_queue_url.call_count == 4


def test_transient_receive_failures_warn_on_every_retry(
    make_poller, mock_sqs_client, message_factory
):
    mock_sqs_client.receive_messages.side_effect = (
        [ReceiveError(QUEUE_URL, "down")] * 2 + [[message_factory()]] + [[]] * 1000
    )

    with patch("sqs_offline.poller.logger") as mock_logger:
        poller = make_poller(lambda event, context: None)
        poller.start()
        assert _wait_until(lambda: poller.stats.batches == 1)
        poller.stop()
        poller.join(timeout=2)

    assert mock_logger.warning.call_count == 2
    mock_logger.error.assert_not_called()
    assert mock_sqs_client.get_queue_url.call_count == 1


def test_stop_ends_the_loop(make_poller):
    poller = make_poller(lambda event, context: None)
    poller.start()
    assert _wait_until(lambda: poller.is_running)

    poller.stop()
    poller.join(timeout=2)

    assert not poller.is_running
    assert poller.state is PollerState.STOPPED


def test_start_twice_raises(make_poller):
    poller = make_poller(lambda event, context: None)
    poller.start()

    with pytest.raises(RuntimeError):
        poller.start()


def test_blocked_poller_does_not_stall_another(message_factory):
    """
    Two pollers on different queues: one handler blocks, the other keeps
    processing batches.
    """
    release = threading.Event()
    stop = threading.Event()

    def _client_for(body):
        client = MagicMock()
        client.get_queue_url.side_effect = lambda name: f"http://q/{name}"
        client.receive_messages.side_effect = lambda *args: [message_factory(body)]
        return client

    blocked_client = _client_for("slow")
    fast_client = _client_for("fast")
    fast_batches = []

    common = dict(
        event_source_arn=ARN,
        batch_size=1,
        region="eu-west-1",
        wait_time_seconds=0,
        idle_delay_seconds=0.01,
        retry_policy=FAST_RETRY,
        stop_event=stop,
    )
    blocked = QueuePoller(
        function_name="slow",
        queue_name="slow-queue",
        client=blocked_client,
        invoker=HandlerInvoker("slow", lambda event, context: release.wait(5)),
        **common,
    )
    fast = QueuePoller(
        function_name="fast",
        queue_name="fast-queue",
        client=fast_client,
        invoker=HandlerInvoker("fast", lambda event, context: "ok"),
        on_batch=fast_batches.append,
        **common,
    )

    try:
        blocked.start()
        fast.start()

        assert _wait_until(lambda: len(fast_batches) >= 3)
        assert _wait_until(lambda: blocked.state is PollerState.INVOKING)
        blocked_client.delete_message_batch.assert_not_called()
    finally:
        stop.set()
        release.set()
        blocked.join(timeout=5)
        fast.join(timeout=5)

    assert not blocked.is_running
    assert not fast.is_running
