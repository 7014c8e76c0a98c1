"""Command-line entry point for the printer bridge."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from .config_manager import BridgeConfig, ConfigManager, wait_for_config
from .errors import NoGcodeEntry
from .filament_usage import FilamentEstimator, estimate_filament_usage
from .printflow.lifecycle import PrintLifecycleOrchestrator
from .remote_files import RemoteFileLocator, buildRemoteFileCandidates
from .status_reporter import StatusReporter
from .status_subscriber import StatusPushWorker, TelemetrySubscriber

log = logging.getLogger(__name__)
console = Console()


def configureLogging(verbose: bool = False, pretty: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    if pretty:
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, rich_tracebacks=True)],
        )
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(levelname)s - %(message)s",
            stream=sys.stdout,
        )
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parseArguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="printbridge",
        description="Track filament usage of a Bambu printer and report it to the inventory API.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    runParser = subparsers.add_parser("run", help="Run the bridge until interrupted.")
    runParser.add_argument("--config", type=Path, help="Path to config.json.")
    runParser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    runParser.add_argument("--pretty", action="store_true", help="Use rich console logging.")
    runParser.add_argument(
        "--config-poll-seconds",
        type=float,
        default=5.0,
        help="How often to re-read an incomplete config (default: 5).",
    )

    estimateParser = subparsers.add_parser("estimate", help="Estimate filament usage of a local G-code or 3MF file.")
    estimateParser.add_argument("file", type=Path, help="Path to the .gcode or .3mf file.")
    estimateParser.add_argument("--verbose", action="store_true", help="Enable debug logging.")

    candidatesParser = subparsers.add_parser("candidates", help="List the remote paths tried for a file name.")
    candidatesParser.add_argument("hint", help="File name or path as reported by the printer.")

    return parser.parse_args(argv)


def buildBridge(config: BridgeConfig):
    """Wire reporter, orchestrator, subscriber and push worker for *config*."""
    reporter = StatusReporter(config.api_endpoint, api_key=config.api_key)
    locator = RemoteFileLocator(
        config.printer_ip,
        config.access_code,
        port=config.ftps_port,
        timeout=config.ftps_timeout,
    )
    estimator = FilamentEstimator(locator)
    orchestrator = PrintLifecycleOrchestrator(
        estimate=estimator.estimate,
        on_completion=reporter.post_print_completed,
        estimation_timeout=config.ftps_timeout * 4,
    )
    subscriber = TelemetrySubscriber(config, orchestrator.handle_message)
    worker = StatusPushWorker(config, orchestrator, reporter, request_refresh=subscriber.request_full_status)
    return orchestrator, subscriber, worker


def runBridge(args: argparse.Namespace) -> int:
    stopEvent = threading.Event()

    def handleSignal(signum, _frame) -> None:
        log.info("[bridge] Received signal %s, shutting down...", signum)
        stopEvent.set()

    signal.signal(signal.SIGINT, handleSignal)
    signal.signal(signal.SIGTERM, handleSignal)

    manager = ConfigManager(args.config)
    config = wait_for_config(manager, stopEvent, args.config_poll_seconds)
    if config is None:
        return 0

    orchestrator, subscriber, worker = buildBridge(config)
    subscriber.start()
    worker.start()
    try:
        while not stopEvent.wait(1.0):
            pass
    finally:
        worker.stop()
        subscriber.stop()
        if not orchestrator.wait_for_completions(timeout=config.ftps_timeout):
            log.warning("[bridge] Exiting with a print completion still pending")
    return 0


def runEstimate(args: argparse.Namespace) -> int:
    path: Path = args.file
    try:
        data = path.read_bytes()
    except OSError as error:
        console.print(f"[bold red]Cannot read {escape(str(path))}: {escape(str(error))}[/bold red]")
        return 1
    try:
        result = estimate_filament_usage(data, path.name)
    except NoGcodeEntry as error:
        console.print(f"[bold red]{escape(str(error))}[/bold red]")
        return 1

    table = Table(title=str(path.name))
    table.add_column("Filament (g)", justify="right")
    table.add_column("Source")
    table.add_row(f"{result.mass_grams:.2f}", result.provenance.value)
    console.print(table)
    return 0


def runCandidates(args: argparse.Namespace) -> int:
    for candidate in buildRemoteFileCandidates(args.hint):
        console.print(candidate, highlight=False)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parseArguments(argv)
    if args.command == "run":
        configureLogging(args.verbose, args.pretty)
        return runBridge(args)
    if args.command == "estimate":
        configureLogging(args.verbose)
        return runEstimate(args)
    return runCandidates(args)


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
