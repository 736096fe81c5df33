#!/usr/bin/env python3
"""CID Tracker — Entry Point.

Exit codes: 0 clean shutdown, 1 startup failure, 2 fatal runtime error.
"""

import argparse
import logging
import os
import signal
import sys
import threading

from cidtracker.config import OUTPUT_FORMATS, load_config, load_config_file
from cidtracker.errors import ConfigError, WatcherError
from cidtracker.formatter import OutputWriter
from cidtracker.pipeline import Pipeline

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP = 1
EXIT_RUNTIME = 2

LOG_FORMAT = "%(asctime)s [CID-TRACKER] %(levelname)s %(name)s %(message)s"


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cidtracker",
        description="Tail a log directory and extract version-5 UUID correlation IDs.",
    )
    parser.add_argument(
        "--log-path", default=None,
        help="Directory to watch (default: /var/log/app)",
    )
    parser.add_argument(
        "--output", choices=OUTPUT_FORMATS, default=None,
        help="Output format: json (NDJSON) or structured (default: json)",
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="Emit debug-level logs on stderr",
    )
    parser.add_argument(
        "--suffix", default=None,
        help="Filename suffix filter (default: .log)",
    )
    parser.add_argument(
        "--poll-interval", default=None,
        help="Tail polling cadence, e.g. 100ms or 0.5 (default: 100ms)",
    )
    parser.add_argument(
        "--buffer-size", type=int, default=None,
        help="Capacity of the line queue (default: 1000)",
    )
    parser.add_argument(
        "--metrics-interval", default=None,
        help="How often to log pipeline metrics (default: 30s)",
    )
    parser.add_argument(
        "--config", default=os.environ.get("CID_CONFIG"),
        help="Path to a JSON/YAML config file",
    )
    return parser


def setup_logging(level_name: str):
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)


def install_signal_handlers(shutdown_event: threading.Event):
    """First SIGINT/SIGTERM requests a graceful stop, a second one exits at once."""

    def _handler(signum, frame):
        if shutdown_event.is_set():
            logger.warning("Second signal received, exiting immediately")
            os._exit(1)
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def run(config, shutdown_event: threading.Event, stream=None) -> int:
    """Run the pipeline until ``shutdown_event`` is set. Returns an exit code."""
    pipeline = Pipeline(config)
    writer = OutputWriter(pipeline.output, config.output_format,
                          stream=stream, flush_interval=config.flush_interval)
    writer.start()

    try:
        pipeline.start()
    except (ConfigError, WatcherError) as e:
        logger.error("Failed to start CID tracker: %s", e)
        pipeline.stop()
        writer.join(timeout=2)
        return EXIT_STARTUP

    exit_code = EXIT_OK
    try:
        while not shutdown_event.is_set():
            shutdown_event.wait(1.0)
            pipeline.check_health()
    except WatcherError as e:
        logger.error("Fatal watcher failure: %s", e)
        exit_code = EXIT_RUNTIME

    pipeline.stop()
    writer.join(timeout=2)
    logger.info("CID Tracker stopped (%d record(s) written)", writer.written)
    return exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_cli_parser().parse_args(argv)
    setup_logging("debug" if args.verbose else "info")

    try:
        config = load_config(args, load_config_file(args.config))
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return EXIT_STARTUP
    except ValueError as e:
        logger.error("Invalid configuration value: %s", e)
        return EXIT_STARTUP

    if not args.verbose:
        setup_logging(config.log_level)

    logger.info("Starting CID Tracker: sources=%s, output=%s, poll=%.3fs, buffer=%d",
                ", ".join(s.path for s in config.active_sources),
                config.output_format, config.poll_interval, config.buffer_size)

    shutdown_event = threading.Event()
    install_signal_handlers(shutdown_event)
    return run(config, shutdown_event)


if __name__ == "__main__":
    sys.exit(main())
