# src/sqs_offline/poller.py

"""
The per-trigger polling loop.

Each QueuePoller owns one queue and one handler. An iteration receives up to
`batch_size` messages with a long poll, invokes the handler once with the whole
batch, waits for it to complete (successfully or not) and only then deletes
every message of the batch. Pollers run on their own daemon threads and share
nothing but the SQS client, which is safe for concurrent use.

Steady-state backend failures never end the loop: receives back off
exponentially until the backend recovers, deletes are retried a bounded number
of times and then given up (the messages reappear after their visibility
timeout). Transient receive failures are logged as warnings on every retry;
failures that need operator action (missing queue, denied access) are logged
once at error level.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .clients import SqsClient
from .events import build_event
from .exceptions import (
    DeleteError,
    QueueDoesNotExistError,
    SqsError,
    get_error_context,
    is_retryable_error,
)
from .invocation import HandlerInvoker, InvocationResult
from .schemas import SqsMessage

logger = logging.getLogger(__name__)


class PollerState(Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    INVOKING = "invoking"
    DELETING = "deleting"
    BACKING_OFF = "backing_off"
    STOPPED = "stopped"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * 2^(attempt-1), capped at max_delay."""

    base_delay: float = 0.5
    max_delay: float = 30.0
    delete_max_attempts: int = 3

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** max(0, attempt - 1)), self.max_delay)


@dataclass(frozen=True)
class BatchResult:
    """What happened to one received batch."""

    function_name: str
    queue_name: str
    message_ids: list[str]
    invocation: InvocationResult
    deleted: bool
    delete_error: DeleteError | None = None

    @property
    def message_count(self) -> int:
        return len(self.message_ids)


@dataclass
class PollerStats:
    batches: int = 0
    messages: int = 0
    failed_invocations: int = 0
    receive_failures: int = 0
    delete_failures: int = 0
    consecutive_failures: int = field(default=0, repr=False)


class QueuePoller:
    """Receive -> invoke -> delete loop for one (function, queue trigger) pair."""

    def __init__(
        self,
        *,
        function_name: str,
        queue_name: str,
        event_source_arn: str,
        batch_size: int,
        client: SqsClient,
        invoker: HandlerInvoker,
        region: str,
        wait_time_seconds: int = 5,
        idle_delay_seconds: float = 0.1,
        retry_policy: RetryPolicy | None = None,
        stop_event: threading.Event | None = None,
        on_batch: Callable[[BatchResult], None] | None = None,
    ):
        self.function_name = function_name
        self.queue_name = queue_name
        self.event_source_arn = event_source_arn
        self.batch_size = batch_size
        self._client = client
        self._invoker = invoker
        self._region = region
        self._wait_time_seconds = wait_time_seconds
        self._idle_delay_seconds = idle_delay_seconds
        self._retry = retry_policy or RetryPolicy()
        self._stop_event = stop_event or threading.Event()
        self._on_batch = on_batch
        self._queue_url: str | None = None
        # error_code of the non-retryable failure already logged at error level.
        self._reported_error_code: str | None = None
        self._thread: threading.Thread | None = None
        self.state = PollerState.IDLE
        self.stats = PollerStats()

    @property
    def name(self) -> str:
        return f"{self.function_name}:{self.queue_name}"

    @property
    def queue_url(self) -> str | None:
        return self._queue_url

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # --- Lifecycle ---

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError(f"Poller {self.name} already started")
        self._thread = threading.Thread(
            target=self.run, name=f"sqs-poller-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        """Loops until the stop signal is set."""
        logger.info(
            "Poller started",
            extra={"function_name": self.function_name, "queue_name": self.queue_name},
        )
        while not self.stopping:
            try:
                batch = self.run_once()
            except SqsError as e:
                self._back_off(e)
                continue
            except Exception:
                # Never let one bad iteration kill the poller thread.
                logger.exception(
                    "Unexpected error in poller loop",
                    extra={"poller": self.name},
                )
                self._back_off(None)
                continue

            self.stats.consecutive_failures = 0
            self._reported_error_code = None
            if batch is None and not self.stopping:
                self._stop_event.wait(self._idle_delay_seconds)

        self.state = PollerState.STOPPED
        logger.info("Poller stopped", extra={"poller": self.name})

    # --- One iteration ---

    def run_once(self) -> BatchResult | None:
        """
        Performs one receive/invoke/delete cycle. Returns None when the receive
        came back empty or the batch was interrupted by shutdown. Backend
        failures of the receive step are raised as SqsError.
        """
        if self._queue_url is None:
            self._queue_url = self._client.get_queue_url(self.queue_name)

        self.state = PollerState.RECEIVING
        messages = self._client.receive_messages(
            self._queue_url, self.batch_size, self._wait_time_seconds
        )
        if not messages:
            self.state = PollerState.IDLE
            return None

        logger.debug(
            "Batch received",
            extra={"poller": self.name, "message_count": len(messages)},
        )

        self.state = PollerState.INVOKING
        event = build_event(
            messages, event_source_arn=self.event_source_arn, region=self._region
        )
        invocation = self._invoker.invoke(event, cancel=self._stop_event)
        if invocation.cancelled:
            # Left undeleted; the messages reappear after their visibility timeout.
            self.state = PollerState.IDLE
            return None

        self.state = PollerState.DELETING
        delete_error = self._delete_with_retry(messages)

        self.state = PollerState.IDLE
        result = BatchResult(
            function_name=self.function_name,
            queue_name=self.queue_name,
            message_ids=[message["MessageId"] for message in messages],
            invocation=invocation,
            deleted=delete_error is None,
            delete_error=delete_error,
        )
        self._record(result)
        return result

    # --- Helpers ---

    def _delete_with_retry(self, messages: list[SqsMessage]) -> DeleteError | None:
        pending = list(messages)
        last_error: DeleteError | None = None
        for attempt in range(1, self._retry.delete_max_attempts + 1):
            try:
                self._client.delete_message_batch(self._queue_url, pending)
                return None
            except SqsError as e:
                last_error = self._as_delete_error(e, pending)
                failed_ids = set(last_error.context.get("failed_ids", []))
                if failed_ids:
                    pending = [m for m in pending if m["MessageId"] in failed_ids]
                logger.warning(
                    "Batch delete failed",
                    extra={
                        "poller": self.name,
                        "attempt": attempt,
                        "error": get_error_context(last_error),
                    },
                )
                if attempt < self._retry.delete_max_attempts:
                    if self._stop_event.wait(self._retry.delay_for(attempt)):
                        break
        logger.error(
            "Giving up on deleting messages; they will be redelivered",
            extra={"poller": self.name, "message_ids": [m["MessageId"] for m in pending]},
        )
        return last_error

    def _as_delete_error(
        self, error: SqsError, pending: list[SqsMessage]
    ) -> DeleteError:
        if isinstance(error, DeleteError):
            return error
        delete_error = DeleteError(
            str(self._queue_url),
            [m["MessageId"] for m in pending],
            context={"cause": error.error_code},
        )
        delete_error.__cause__ = error
        return delete_error

    def _back_off(self, error: SqsError | None) -> None:
        self.state = PollerState.BACKING_OFF
        self.stats.receive_failures += 1
        self.stats.consecutive_failures += 1
        delay = self._retry.delay_for(self.stats.consecutive_failures)
        extra = {"poller": self.name, "retry_in_seconds": delay}
        if error is None or is_retryable_error(error):
            if error is not None:
                extra["error"] = get_error_context(error)
            logger.warning("Receive failed; backing off", extra=extra)
        else:
            extra["error"] = get_error_context(error)
            if error.error_code != self._reported_error_code:
                # Needs operator action; report once per distinct failure.
                self._reported_error_code = error.error_code
                logger.error("Receive failed and will not recover by itself", extra=extra)
            else:
                logger.debug("Receive still failing; backing off", extra=extra)
            if isinstance(error, QueueDoesNotExistError):
                # Re-resolve the URL once the queue is recreated.
                self._queue_url = None
        self._stop_event.wait(delay)

    def _record(self, result: BatchResult) -> None:
        self.stats.batches += 1
        self.stats.messages += result.message_count
        if not result.invocation.succeeded:
            self.stats.failed_invocations += 1
        if not result.deleted:
            self.stats.delete_failures += 1
        if self._on_batch is not None:
            try:
                self._on_batch(result)
            except Exception:
                logger.exception("Batch callback failed", extra={"poller": self.name})
