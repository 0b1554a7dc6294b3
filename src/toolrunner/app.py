"""toolrunner command-line host.

Runs one tool the way a tool screen would: stream its output, show the
outcome line, and turn Ctrl+C into a cancellation of the child.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from typing import Sequence

from . import __version__
from .config import Config, get_config
from .reporting import describe_termination
from .runtime import (
    ProcessRunner,
    SpawnError,
    SpawnFailureKind,
    TerminationEvent,
    send_signal,
    send_signal_elevated,
)
from .signal_manager import SignalManager

__all__ = ["build_parser", "exit_status", "main", "run_tool", "signal_process"]

logger = logging.getLogger(__name__)


def exit_status(event: TerminationEvent) -> int:
    """Shell-style exit status for a termination event."""
    if event.error is not None:
        if event.exit_code is not None:
            return event.exit_code
        return 126 if event.error.kind is SpawnFailureKind.PERMISSION_DENIED else 127
    if event.signal is not None:
        return 128 + event.signal
    return event.exit_code if event.exit_code is not None else 1


async def run_tool(program: str, args: Sequence[str], *, elevated: bool = False) -> int:
    """Run one tool to its end, streaming output to stdout.

    Returns:
        The exit status to hand back to the shell
    """
    config = get_config()
    logger.debug(f"Running {program} with {config}")

    runner = ProcessRunner()
    signal_manager = SignalManager(runner)

    def on_data(text: str) -> None:
        print(text, flush=True)

    def on_termination(event: TerminationEvent) -> None:
        print(describe_termination(event), file=sys.stderr, flush=True)

    async def _watch_shutdown() -> None:
        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown requested, stopping running tools")
        await signal_manager.close_runner()

    shutdown_watcher: asyncio.Task[None] | None = None
    try:
        await signal_manager.start()

        launch = runner.run_streaming_elevated if elevated else runner.run_streaming
        try:
            result = await launch(program, args, on_data, on_termination)
        except SpawnError as e:
            logger.debug(f"Spawn failed: {e}")
            return 126 if e.kind is SpawnFailureKind.PERMISSION_DENIED else 127

        logger.info(f"{program} started pid={result.process_identifier}")
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        termination = await result.handle.wait()
        return exit_status(termination)

    finally:
        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        await signal_manager.close_runner()
        await signal_manager.stop()

        if signal_manager.is_force_exit:
            logger.warning("Force exit requested")


async def signal_process(process_identifier: str, signal_number: int, *, elevated: bool = False) -> int:
    """Send a signal to a pid; 0 if delivered, 1 otherwise."""
    if elevated:
        delivered = await send_signal_elevated(ProcessRunner(), process_identifier, signal_number)
    else:
        delivered = send_signal(process_identifier, signal_number)
    return 0 if delivered else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="toolrunner",
        description="Run command-line security tools with live output and cancellation",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run a tool and stream its output")
    run_parser.add_argument(
        "--elevated",
        action="store_true",
        help="Launch through the privilege-escalation front-end",
    )
    run_parser.add_argument("program", help="Program to run")
    run_parser.add_argument("args", nargs=argparse.REMAINDER, help="Arguments, passed as-is")

    signal_parser = subparsers.add_parser("signal", help="Send a signal to a running tool")
    signal_parser.add_argument("pid", help="Process identifier")
    signal_parser.add_argument(
        "--signal",
        "-s",
        dest="signal_number",
        type=int,
        default=int(signal.SIGTERM),
        help="Signal number (default: 15)",
    )
    signal_parser.add_argument(
        "--elevated",
        action="store_true",
        help="Send the signal through the privilege-escalation front-end",
    )
    return parser


def configure_logging(config: Config) -> None:
    """stderr logging by default; a debug file when TR_LOG_DEBUG is set."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.WARNING

    # Third-party libraries stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=log_handlers)
    logging.getLogger("toolrunner").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    config = get_config()
    configure_logging(config)

    options = build_parser().parse_args(argv)

    if options.command == "run":
        code = asyncio.run(run_tool(options.program, options.args, elevated=options.elevated))
    else:
        code = asyncio.run(
            signal_process(options.pid, options.signal_number, elevated=options.elevated)
        )
    sys.exit(code)


if __name__ == "__main__":
    main()
