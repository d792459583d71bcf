"""Main entry point for formswatch.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the lifetime of a watcher started from the shell.

Commands:
    - ``watch``: Run a watcher on ``<base>/formswatch/<subdir>`` and log every
      inbound message. Ends on SIGINT/SIGTERM or when the sentinel is written.
    - ``send``: Write ``peer|payload`` into a peer's mailbox file.
    - ``stop``: Write the sentinel into a watch directory.

Key Responsibilities:
    - Signal Handling: SIGINT/SIGTERM kill the watcher and exit cleanly.
    - Logging: Console logging plus optional rotating file (10MB, 5 backups).
    - Startup/Shutdown Invariants: the watcher is killed via atexit and finally blocks.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import List, Optional

from formswatch import __version__
from formswatch.bridge import LoggingBridge
from formswatch.codec import DELIMITER, encode, split_target
from formswatch.config import Config, WatchContext, load_config
from formswatch.mailbox import EOSERVICE, MailboxKind, MailboxWriter
from formswatch.service import WatcherStateMachine

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s (%(threadName)s): %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Lifecycle transitions and inbound messages.
            - ``WARNING``: Recoverable issues (overflow, sentinel not written).
            - ``ERROR``: I/O failures that drop a message or a registration.
            - ``DEBUG``: Per-event diagnostics.
        - **Format**: ``[asctime] [levelname] name (thread): message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Returns:
        None

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
            )
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging is not set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser. Defaults are None so lower-priority config sources apply."""
    parser = argparse.ArgumentParser(
        prog="formswatch",
        description="Exchange action/result messages through watched mailbox directories.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--base-dir", type=str, default=None, help="Directory holding the formswatch root (default: system temp)."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging (overrides --log-level).")
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO"
    )
    parser.add_argument(
        "--grace-delay", type=float, default=None, help="Seconds to wait after a wake-up before reading events."
    )

    sub = parser.add_subparsers(dest="command", required=True)

    watch = sub.add_parser("watch", help="Watch a mailbox directory and log inbound messages.")
    watch.add_argument("--subdir", type=str, default=None, help="Watch subdirectory (default: forms).")

    send = sub.add_parser("send", help="Write a message into a peer's mailbox.")
    send.add_argument(
        "kind",
        type=str,
        help="Mailbox kind: Action2Forms, Result2Forms, Action2Others or Result2Others.",
    )
    send.add_argument("value", type=str, help="'peer|payload'; payload becomes the file content.")
    send.add_argument("--peer", type=str, default=None, help="Peer subdirectory (overrides the one in value).")
    send.add_argument(
        "--param",
        dest="params",
        action="append",
        default=None,
        help="Append a parameter to the payload tag (repeatable). Must not contain '|'.",
    )

    stop = sub.add_parser("stop", help="Write the sentinel into a watch directory.")
    stop.add_argument("--subdir", type=str, default=None, help="Watch subdirectory (default: forms).")

    return parser


def _config_args(args: argparse.Namespace) -> dict:
    return {
        "base_dir": args.base_dir,
        "log_file": args.log_file,
        "log_level": args.log_level,
        "grace_delay": args.grace_delay,
        "subdir": getattr(args, "subdir", None),
        "debug": args.debug,
    }


def run_watch(context: WatchContext) -> int:
    """Run a watcher until a signal arrives or the sentinel closes it.

    Args:
        context (WatchContext): The resolved context.

    Returns:
        int: Process exit code.
    """
    stop_event = threading.Event()

    class _CliBridge(LoggingBridge):
        def on_generic_notification(self, text: str) -> None:
            super().on_generic_notification(text)
            if text == EOSERVICE:
                stop_event.set()

    machine = WatcherStateMachine(_CliBridge(context.child_logger("bridge")), context)

    def cleanup() -> None:
        """Kill the watcher; registered via atexit and called from finally."""
        try:
            machine.kill(timeout=5.0)
        except Exception as e:
            logger.error(f"Error stopping watcher in cleanup: {e}")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if not machine.start(context.config.subdir):
            logger.error("Watcher could not be started.")
            return 1
        # Pure event-driven wait: the signal handler or the bridge sets the event.
        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    finally:
        cleanup()
        atexit.unregister(cleanup)
    return 0


def run_send(
    context: WatchContext, kind: str, value: str, peer: Optional[str], params: Optional[List[str]] = None
) -> int:
    try:
        MailboxKind.parse(kind)
        if params:
            target, tag = split_target(value)
            value = f"{target}{DELIMITER}{encode(tag, params)}"
    except ValueError as e:
        logger.error(str(e))
        return 2
    MailboxWriter(context).send(kind, peer, value)
    return 0


def run_stop(context: WatchContext) -> int:
    writer = MailboxWriter(context)
    watch_dir = writer.watch_dir_for(context.config.subdir)
    return 0 if writer.write_sentinel(watch_dir) else 1


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, and run
    the selected command.

    Args:
        argv (Optional[List[str]]): Arguments without the program name. Defaults to ``sys.argv[1:]``.

    Raises:
        SystemExit: Always, with the command's exit code. Configuration errors exit
            with a message.

    Example:
        $ formswatch --log-level DEBUG watch --subdir forms
        $ formswatch send Action2Others "peerA|DO_THIS"
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config: Config = load_config(_config_args(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    context = WatchContext(config)

    if args.command == "watch":
        logger.info(f"Starting formswatch v{__version__} (PID: {os.getpid()})...")
        code = run_watch(context)
    elif args.command == "send":
        code = run_send(context, args.kind, args.value, args.peer, args.params)
    else:
        code = run_stop(context)
    sys.exit(code)


if __name__ == "__main__":
    main()
