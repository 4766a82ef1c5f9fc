"""Human-facing console lines, printed with rich."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape

from .poller import BatchResult, QueuePoller
from .provisioner import ProvisionResult


def _stringify_result(value: Any) -> str:
    if value is None:
        return ""
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)


class ConsoleReporter:
    """Prints one line per created queue, started poller and finished batch."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def provisioning_started(self) -> None:
        self.console.log("Creating Offline SQS Queues.")

    def queue_provisioned(self, result: ProvisionResult) -> None:
        if result.succeeded:
            self.console.log(
                f"[green]✓[/green] Created queue {escape(str(result.queue_name))} "
                f"({escape(result.resource_name)})"
            )
        else:
            self.console.log(
                f"[red]✗[/red] Could not create queue for {escape(result.resource_name)}: "
                f"{escape(str(result.error))}"
            )

    def polling_started(self) -> None:
        self.console.log("Starting Offline SQS.")

    def poller_started(self, poller: QueuePoller) -> None:
        self.console.log(
            f"SQS for {escape(poller.function_name)}: {escape(poller.queue_name)} "
            f"(batch size {poller.batch_size})"
        )

    def poller_failed(self, function_name: str, reason: str) -> None:
        self.console.log(
            f"[red]✗[/red] SQS for {escape(function_name)} not started: {escape(reason)}"
        )

    def batch_finished(self, batch: BatchResult) -> None:
        self.console.log(
            f"{escape(batch.queue_name)} (λ: {escape(batch.function_name)}) "
            f"{batch.message_count} message(s)"
        )
        invocation = batch.invocation
        if invocation.succeeded:
            self.console.log(
                f"\\[[green]✓[/green]] {escape(_stringify_result(invocation.result))}"
            )
        else:
            self.console.log(f"\\[[red]✗[/red]] {escape(str(invocation.error))}")
        if batch.delete_error is not None:
            self.console.log(
                f"[yellow]![/yellow] {escape(str(batch.delete_error))}"
            )
