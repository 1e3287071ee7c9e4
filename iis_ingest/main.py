"""Entry point for the IIS log ingest pipeline."""

import argparse
import logging
import os
import signal
import sys
import threading

from iis_ingest.config import ConfigError, load_config
from iis_ingest.pipeline import Pipeline
from iis_ingest.store import PostgresStore


def build_cli_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IIS log ingest pipeline")
    parser.add_argument(
        "--config", default=None,
        help="Path to YAML config file (default: $CONFIG_PATH)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", dest="mode", action="store_const", const="once",
                      help="Read sources to end of file, then exit")
    mode.add_argument("--follow", dest="mode", action="store_const", const="follow",
                      help="Keep tailing sources until interrupted")
    parser.add_argument(
        "--source", dest="sources", action="append", default=None,
        help="Log file to ingest (repeatable; replaces configured sources)",
    )
    parser.add_argument(
        "--log-level", default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Logging level (default: $LOG_LEVEL or INFO)",
    )
    return parser


def main(argv=None) -> int:
    args = build_cli_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger = logging.getLogger(__name__)

    try:
        config = load_config(args.config, overrides={"mode": args.mode, "sources": args.sources})
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    shutdown_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down...", signum)
        shutdown_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    store = PostgresStore(
        config.store.dsn,
        pool_min_size=config.store.pool_min_size,
        pool_max_size=config.store.pool_max_size,
        timeout=config.store.timeout,
    )
    try:
        if config.store.init_schema:
            store.ensure_schema(config.store.tables)
        Pipeline(config, store, shutdown_event).run()
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
