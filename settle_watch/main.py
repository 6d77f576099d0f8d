"""Main entry point for settle-watch.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main wait loop. It builds one DirectoryWatcher, owned by
``main``, and prints a line for every file that settles.

Key Responsibilities:
    - CLI Argument Parsing: ``settle-watch DIR *.ext`` plus tuning options.
    - Signal Handling: SIGINT/SIGTERM set a stop event for graceful shutdown.
    - Logging: console logging plus optional rotating file log (10MB, 5 backups).
    - Shutdown: the watcher is stopped exactly once via ``finally``/``atexit``.
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
from pathlib import Path
from types import FrameType
from typing import Callable, List, Optional

from settle_watch import __version__
from settle_watch.config import load_config
from settle_watch.events import EventKind, RawEvent
from settle_watch.watcher import DirectoryWatcher

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
STATS_INTERVAL = 60.0

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.
    The log file's parent directory is created if needed. If the file cannot
    be opened a warning goes to stderr and only console logging is used.

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers: List[logging.Handler] = [console_handler]

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def count_lines(file: str) -> int:
    """Count the lines of a UTF-8 text file.

    Returns 0 when the file does not exist or cannot be read, since it may
    have been removed between settling and reporting.
    """
    if not os.path.isfile(file):
        return 0
    counter = 0
    try:
        with open(file, "r", encoding="utf-8", errors="replace") as reader:
            for _ in reader:
                counter += 1
    except OSError as e:
        logger.debug(f"Could not count lines of {file}: {e}")
        return 0
    return counter


def report_change(path: str, out: Callable[[str], None] = print) -> None:
    """Print the console line for a settled file."""
    out(f"File: {path} changed ({count_lines(path)} lines).")


def report_event(event: RawEvent, out: Callable[[str], None] = print) -> None:
    """Print the console line for a newly created file.

    Runs on the notification thread after the event is ingested, so the line
    count never delays debouncing.
    """
    if event.kind is EventKind.CREATED:
        out(f"File: {event.path} created ({count_lines(event.path)} lines).")


def log_statistics(watcher: Optional[DirectoryWatcher]) -> None:
    """Log watcher counters; INFO when something went wrong, DEBUG otherwise."""
    if watcher is None:
        return
    try:
        stats = watcher.get_statistics()
    except Exception as e:
        logger.debug(f"Failed to get watcher stats: {e}")
        return

    msg = (
        f"Watcher stats: Events={stats.get('events_ingested', 0)}, "
        f"Settled={stats.get('settled', 0)}, "
        f"Cancelled={stats.get('cancelled_by_delete', 0)}, "
        f"Pending={stats.get('pending', 0)}, "
        f"Ticks={stats.get('ticks', 0)}, "
        f"CallbackErrors={stats.get('callback_errors', 0)}, "
        f"SourceErrors={stats.get('source_errors', 0)}"
    )
    if stats.get("callback_errors", 0) or stats.get("source_errors", 0):
        logger.info(msg)
    else:
        logger.debug(msg)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="settle-watch",
        description="Report files in a directory tree once they stop changing.",
    )
    parser.add_argument("root_path", nargs="?", default=None, help="Directory to watch.")
    parser.add_argument(
        "extension_filter", nargs="?", default=None, help='Single extension filter, e.g. "*.txt".'
    )
    parser.add_argument(
        "--tick-interval",
        type=float,
        default=None,
        help="Seconds between flush passes (default: 10).",
    )
    parser.add_argument(
        "--quiescence-window",
        type=float,
        default=None,
        help="Seconds a file must stay unchanged before it is reported (default: 0.05).",
    )
    parser.add_argument(
        "--no-recursive",
        dest="recursive",
        action="store_const",
        const=False,
        default=None,
        help="Do not watch subdirectories.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Run the watcher until SIGINT/SIGTERM.

    Raises:
        SystemExit: If configuration is invalid, or a fatal error occurs
            during startup (code 1).

    Example:
        $ settle-watch ~/projects/notes "*.md" --tick-interval 2
    """
    args = build_parser().parse_args(argv)

    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        handlers=[bootstrap_handler],
        force=True,
    )

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    except Exception as e:
        sys.exit(f"Startup Error: {e}")

    logger.info(f"Starting settle-watch v{__version__} (PID: {os.getpid()})...")

    watcher: Optional[DirectoryWatcher] = None
    stats_timer: Optional[threading.Timer] = None
    stop_event = threading.Event()

    def cleanup() -> None:
        nonlocal stats_timer
        if stats_timer:
            stats_timer.cancel()
            stats_timer = None
        log_statistics(watcher)
        if watcher:
            try:
                watcher.stop()
            except Exception as e:
                logger.error(f"Error stopping watcher in cleanup: {e}")

    atexit.register(cleanup)

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        logger.info(f"Received signal {signal.Signals(sig).name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    def run_stats_log() -> None:
        nonlocal stats_timer
        if stop_event.is_set():
            return
        try:
            log_statistics(watcher)
        finally:
            if not stop_event.is_set():
                stats_timer = threading.Timer(STATS_INTERVAL, run_stats_log)
                stats_timer.daemon = True
                stats_timer.start()

    try:
        watcher = DirectoryWatcher.from_config(config, report_change, on_event=report_event)
        watcher.start()
        print(f"Watching {config.root_path} for {config.extension_filter}. Press Ctrl+C to quit.")

        stats_timer = threading.Timer(STATS_INTERVAL, run_stats_log)
        stats_timer.daemon = True
        stats_timer.start()

        stop_event.wait()
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
