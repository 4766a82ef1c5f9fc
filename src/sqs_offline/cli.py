#!/usr/bin/env python

# src/sqs_offline/cli.py

"""
Command line entry point.

    sqs-offline start service.json   # create queues, poll until Ctrl+C
    sqs-offline check service.json   # pre-flight: endpoint + trigger resolution

The manifest is the resolved service description in JSON, for example the
output of `serverless print --format json`.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging.utils import copy_config_to_registered_loggers
import pydantic
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .bootstrap import SqsOffline
from .clients import SqsClient
from .config import AppConfig, config_overrides_from_manifest, get_config
from .exceptions import (
    ConfigurationError,
    ManifestError,
    QueueNameNotFoundError,
    SqsError,
)
from .reporting import ConsoleReporter
from .resolver import resolve_queue_name
from .schemas import Manifest, parse_manifest

EXIT_OK = 0
EXIT_PREFLIGHT_FAILED = 1
EXIT_BAD_INPUT = 2

# Powertools configures a service logger only once per process.
logger = Logger(service="sqs-offline", logger_handler=logging.StreamHandler(sys.stderr))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sqs-offline",
        description="Emulates the SQS event source for Lambda handlers during local development.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("start", "Create the declared queues and poll them until interrupted."),
        ("check", "Verify the endpoint is reachable and every trigger resolves."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("manifest", type=Path, help="Path to the JSON service manifest.")
        sub.add_argument("--region", help="Region used in ARNs and event records.")
        sub.add_argument("--endpoint", dest="endpoint_url", help="SQS endpoint URL.")
        sub.add_argument(
            "--location", help="Handler directory, relative to the service path."
        )
        sub.add_argument(
            "--service-path",
            type=Path,
            default=None,
            help="Service root (defaults to the manifest's directory).",
        )
        sub.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL.")
    return parser


def load_manifest_file(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"Manifest file '{path}' not found.") from e
    except json.JSONDecodeError as e:
        raise ManifestError(
            f"Manifest file '{path}' is not valid JSON: {e}",
            context={"line": e.lineno, "column": e.colno},
        ) from e


def resolve_config(
    raw_manifest: dict[str, Any], args: argparse.Namespace
) -> AppConfig:
    """Environment, then manifest settings, then command line flags."""
    config = get_config().with_overrides(**config_overrides_from_manifest(raw_manifest))
    return config.with_overrides(
        region=args.region,
        endpoint_url=args.endpoint_url,
        location=args.location,
        log_level=args.log_level,
    )


def configure_logging(config: AppConfig) -> Logger:
    """
    Applies the configured level and service name to the service logger (JSON
    lines on stderr) and copies its handler to the package's module loggers.
    Safe to call more than once per process.
    """
    logger.setLevel(config.log_level)
    logger.append_keys(service=config.service_name)
    copy_config_to_registered_loggers(source_logger=logger, include={"sqs_offline"})
    return logger


def run_check(manifest: Manifest, config: AppConfig, console: Console) -> int:
    console.print("\n--- [bold blue]Pre-flight Checks[/bold blue] ---")
    ok = True

    client = SqsClient.from_config(config)
    try:
        queue_urls = client.list_queues()
        console.log(
            f"[green]✓[/green] Endpoint reachable: '{config.endpoint_url}' "
            f"({len(queue_urls)} queue(s))"
        )
    except SqsError as e:
        ok = False
        console.log(f"[red]✗[/red] Endpoint check failed: {e.message}")

    table = Table(title="Queue triggers")
    table.add_column("Function")
    table.add_column("Queue")
    table.add_column("Batch size", justify="right")
    table.add_column("Status")

    catalog = manifest.resource_catalog()
    for function_name, definition in manifest.functions.items():
        try:
            triggers = definition.sqs_triggers()
        except pydantic.ValidationError:
            ok = False
            table.add_row(function_name, "-", "-", "[red]INVALID_MANIFEST[/red]")
            continue
        for trigger in triggers:
            try:
                queue_name = resolve_queue_name(trigger, catalog)
                status = "[green]ok[/green]" if trigger.enabled else "[yellow]disabled[/yellow]"
            except QueueNameNotFoundError as e:
                ok = False
                queue_name = "-"
                status = f"[red]{e.error_code}[/red]"
            table.add_row(function_name, queue_name, str(trigger.batch_size), status)

    console.print(table)
    if ok:
        console.print("[bold green]✅ Pre-flight checks passed.[/bold green]")
        return EXIT_OK
    console.print("\n[bold red]❌ PRE-FLIGHT CHECK FAILED[/bold red]\n")
    return EXIT_PREFLIGHT_FAILED


def run_start(
    manifest: Manifest, config: AppConfig, service_path: Path, console: Console
) -> int:
    offline = SqsOffline(
        config,
        reporter=ConsoleReporter(console),
        service_path=service_path,
    )

    def _handle_signal(signum, frame):
        console.log("Stopping Offline SQS...")
        offline.stop(timeout=0)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    report = offline.start(manifest)
    if not report.pollers:
        console.log("[yellow]No SQS triggers to poll.[/yellow]")
        return EXIT_OK

    offline.wait()
    offline.stop(timeout=config.wait_time_seconds + 1)
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()

    try:
        raw_manifest = load_manifest_file(args.manifest)
        manifest = parse_manifest(raw_manifest)
        config = resolve_config(raw_manifest, args)
    except (ConfigurationError, ManifestError) as e:
        console.print(Panel(e.message, title="Invalid input", border_style="red"))
        return EXIT_BAD_INPUT

    configure_logging(config)
    logger.debug("Configuration resolved", extra={"region": config.region})

    if args.command == "check":
        return run_check(manifest, config, console)

    service_path = args.service_path or args.manifest.resolve().parent
    return run_start(manifest, config, service_path, console)


if __name__ == "__main__":
    sys.exit(main())
