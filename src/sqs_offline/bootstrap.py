"""
Startup orchestration for the offline SQS event source.

`SqsOffline.start` creates every queue declared in the manifest, then starts
one poller per (function, queue trigger) pair. Errors are contained per unit:
a queue that cannot be created, a trigger that names no queue, or a handler
that cannot be imported is recorded in the StartReport and logged, while
everything else keeps starting.
"""

import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Callable, Mapping

import pydantic

from .clients import SqsClient
from .config import AppConfig
from .events import queue_arn
from .exceptions import (
    HandlerLoadError,
    ManifestError,
    QueueNameNotFoundError,
    SqsOfflineError,
    get_error_context,
)
from .invocation import HandlerInvoker, LocalLambdaContext, load_handler
from .poller import BatchResult, QueuePoller, RetryPolicy
from .provisioner import ProvisionResult, provision_queues
from .reporting import ConsoleReporter
from .resolver import resolve_queue_name
from .schemas import FunctionDefinition, Manifest, QueueTrigger, parse_manifest

logger = logging.getLogger(__name__)

HandlerFactory = Callable[[str, FunctionDefinition], Callable[..., Any]]


@dataclass(frozen=True)
class TriggerFailure:
    """A trigger that could not be turned into a running poller."""

    function_name: str
    trigger: Any
    error: SqsOfflineError


@dataclass
class StartReport:
    provisioned: list[ProvisionResult] = field(default_factory=list)
    pollers: list[QueuePoller] = field(default_factory=list)
    failures: list[TriggerFailure] = field(default_factory=list)

    @property
    def failed_queues(self) -> list[ProvisionResult]:
        return [result for result in self.provisioned if not result.succeeded]


class SqsOffline:
    """Provisions queues and runs the pollers of one service."""

    def __init__(
        self,
        config: AppConfig,
        client: SqsClient | None = None,
        handler_factory: HandlerFactory | None = None,
        reporter: ConsoleReporter | None = None,
        service_path: str | Path = ".",
    ):
        self.config = config
        self._client = client or SqsClient.from_config(config)
        self._handler_factory = handler_factory or partial(
            self._load_handler, Path(service_path) / config.location
        )
        self._reporter = reporter
        self._stop_event = threading.Event()
        self._retry_policy = RetryPolicy(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
            delete_max_attempts=config.delete_max_attempts,
        )
        self.pollers: list[QueuePoller] = []

    @staticmethod
    def _load_handler(
        handler_root: Path, function_name: str, definition: FunctionDefinition
    ) -> Callable[..., Any]:
        return load_handler(function_name, definition, handler_root)

    # --- Startup ---

    def start(self, manifest: Manifest | Mapping[str, Any]) -> StartReport:
        """
        Creates the declared queues, waits for all of them to settle, then
        launches the pollers. Returns once every poller thread is started.
        """
        if not isinstance(manifest, Manifest):
            manifest = parse_manifest(manifest)

        report = StartReport()
        report.provisioned = self._provision(manifest)

        if self._reporter:
            self._reporter.polling_started()
        for function_name, definition in manifest.functions.items():
            self._start_function(function_name, definition, manifest, report)

        logger.info(
            "Offline SQS started",
            extra={
                "pollers": len(report.pollers),
                "failed_triggers": len(report.failures),
                "failed_queues": len(report.failed_queues),
            },
        )
        return report

    def _provision(self, manifest: Manifest) -> list[ProvisionResult]:
        if self._reporter:
            self._reporter.provisioning_started()
        results = provision_queues(
            self._client,
            manifest.resource_catalog(),
            region=self.config.region,
            account_id=self.config.account_id,
        )
        for result in results:
            if result.succeeded:
                logger.info(
                    "Queue created",
                    extra={
                        "resource_name": result.resource_name,
                        "queue_name": result.queue_name,
                        "queue_url": result.queue_url,
                    },
                )
            else:
                logger.error(
                    "Queue creation failed",
                    extra={
                        "resource_name": result.resource_name,
                        "error": get_error_context(result.error),
                    },
                )
            if self._reporter:
                self._reporter.queue_provisioned(result)
        return results

    def _start_function(
        self,
        function_name: str,
        definition: FunctionDefinition,
        manifest: Manifest,
        report: StartReport,
    ) -> None:
        try:
            triggers = definition.sqs_triggers()
        except pydantic.ValidationError as e:
            self._fail(
                report,
                function_name,
                None,
                ManifestError(
                    f"Invalid sqs event for function {function_name}",
                    context={"validation_errors": e.errors(include_url=False)},
                ),
            )
            return

        triggers = [trigger for trigger in triggers if trigger.enabled]
        if not triggers:
            return

        try:
            handler = self._handler_factory(function_name, definition)
        except HandlerLoadError as e:
            for trigger in triggers:
                self._fail(report, function_name, trigger, e)
            return

        invoker = HandlerInvoker(
            function_name,
            handler,
            context_factory=partial(
                LocalLambdaContext,
                function_name,
                timeout_seconds=definition.timeout,
                memory_size=definition.memory_size,
                region=self.config.region,
                account_id=self.config.account_id,
            ),
        )
        for trigger in triggers:
            try:
                poller = self._create_poller(function_name, trigger, invoker, manifest)
            except QueueNameNotFoundError as e:
                self._fail(report, function_name, trigger, e)
                continue
            poller.start()
            self.pollers.append(poller)
            report.pollers.append(poller)
            if self._reporter:
                self._reporter.poller_started(poller)

    def _create_poller(
        self,
        function_name: str,
        trigger: QueueTrigger,
        invoker: HandlerInvoker,
        manifest: Manifest,
    ) -> QueuePoller:
        queue_name = resolve_queue_name(trigger, manifest.resource_catalog())
        if isinstance(trigger.arn, str):
            event_source_arn = trigger.arn
        else:
            event_source_arn = queue_arn(
                queue_name, self.config.region, self.config.account_id
            )
        return QueuePoller(
            function_name=function_name,
            queue_name=queue_name,
            event_source_arn=event_source_arn,
            batch_size=trigger.batch_size,
            client=self._client,
            invoker=invoker,
            region=self.config.region,
            wait_time_seconds=self.config.wait_time_seconds,
            idle_delay_seconds=self.config.idle_delay_seconds,
            retry_policy=self._retry_policy,
            stop_event=self._stop_event,
            on_batch=self._on_batch,
        )

    def _fail(
        self,
        report: StartReport,
        function_name: str,
        trigger: QueueTrigger | None,
        error: SqsOfflineError,
    ) -> None:
        logger.error(
            "Poller not started",
            extra={"function_name": function_name, "error": get_error_context(error)},
        )
        report.failures.append(
            TriggerFailure(function_name=function_name, trigger=trigger, error=error)
        )
        if self._reporter:
            self._reporter.poller_failed(function_name, error.message)

    # --- Steady state ---

    def _on_batch(self, batch: BatchResult) -> None:
        if batch.invocation.succeeded:
            logger.info(
                "Invocation succeeded",
                extra={
                    "function_name": batch.function_name,
                    "queue_name": batch.queue_name,
                    "message_count": batch.message_count,
                },
            )
        else:
            logger.warning(
                "Invocation failed",
                extra={
                    "function_name": batch.function_name,
                    "queue_name": batch.queue_name,
                    "message_count": batch.message_count,
                    "error": get_error_context(batch.invocation.error),
                },
            )
        if self._reporter:
            self._reporter.batch_finished(batch)

    # --- Shutdown ---

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self, timeout: float | None = None) -> None:
        """Signals every poller to stop and waits for their threads to exit."""
        self._stop_event.set()
        for poller in self.pollers:
            poller.join(timeout)
        logger.info("Offline SQS stopped", extra={"pollers": len(self.pollers)})

    def wait(self) -> None:
        """Blocks until stop() is called from another thread or a signal handler."""
        while not self._stop_event.wait(0.5):
            pass
