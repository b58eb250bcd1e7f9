"""Main entry point for lib-publish-watcher.

This module handles the command-line interface (CLI), configuration loading
and logging setup, then hands control to :class:`Daemon`.

Key Responsibilities:
    - CLI Argument Parsing: Handles --workspace, --watch-root, --debounce-seconds, etc.
    - Logging: Configures timestamped console logging and optional file logging
      with rotation (10MB).
    - Exit Codes: 0 on a signal-driven shutdown, 1 on configuration or fatal
      startup errors.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from lib_publish_watcher import __version__
from lib_publish_watcher.config import load_config
from lib_publish_watcher.daemon import Daemon

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (changes detected, pipeline phases, startup).
            - ``WARNING``: Recoverable issues (publish failure, unlistable directory).
            - ``ERROR``: Failed builds and unexpected exceptions.
            - ``CRITICAL``: Fatal startup errors right before exit.
            - ``DEBUG``: Command lines, full command output, ignored events.
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO").
        log_file (Optional[str]): Optional path to a log file.

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
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging isn't set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lib-publish-watcher",
        description="Rebuild library packages on change and republish them to a local registry.",
    )
    parser.add_argument(
        "--workspace", type=str, default=None,
        help="Directory the build commands run in (default: git root of the current directory).",
    )
    parser.add_argument(
        "--watch-root", dest="watch_roots", action="append", default=None,
        help="Source root to watch, relative to the workspace (repeatable, default: libs).",
    )
    parser.add_argument(
        "--debounce-seconds", type=float, default=None,
        help="Quiet period in seconds before a rebuild (default: 1.0).",
    )
    parser.add_argument(
        "--native-recursive", action="store_const", const=True, default=None,
        help="Use one recursive watch per root (default).",
    )
    parser.add_argument(
        "--per-directory", dest="native_recursive", action="store_const", const=False,
        help="Walk the tree once and watch each directory separately (small trees only).",
    )
    parser.add_argument(
        "--registry-url", type=str, default=None,
        help="Registry ping URL (default: http://localhost:4873/-/ping).",
    )
    parser.add_argument(
        "--registry-max-attempts", type=int, default=None,
        help="Registry health check attempts, one per second (default: 30).",
    )
    parser.add_argument(
        "--build-configuration", type=str, default=None,
        help="Build configuration passed to the build command (default: production).",
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, and run
    the daemon until it is interrupted.

    Raises:
        SystemExit: Always; with code 0 after a graceful shutdown, or 1 with a
            message if configuration is invalid or startup fails.

    Example:
        $ lib-publish-watcher --watch-root libs --debounce-seconds 2
    """
    args = build_parser().parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    try:
        config = load_config(vars(args))
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting lib-publish-watcher v{__version__} (PID: {os.getpid()}) in {config.workspace}")

    sys.exit(Daemon(config).run())


if __name__ == "__main__":
    main()
