"""Unified launcher for the Kettas log server.

Starts the backup manager in a background thread and serves the upload
API on the main thread. On shutdown the backup manager is stopped after
the server, waiting for any rotation in progress to finish.

Usage:
    python run.py
    python run.py --config config/config.json --port 8080
    python run.py --backup-only
"""

import argparse
import logging
import os
import signal
import sys
import threading

from logserver.config import DEFAULT_CONFIG_PATH, LOG_LEVELS, load_config
from logserver.database.record_store import RecordStore
from logserver.ingress.app import create_app
from logserver.ingress.live_feed import LiveFeed
from logserver.logging_config import setup_logging
from logserver.retention.backup_manager import BackupManager
from logserver.retention.errors import ConfigError

logger = logging.getLogger("logserver")


def main():
    parser = argparse.ArgumentParser(
        description="Kettas Log Server",
    )
    parser.add_argument(
        "-c", "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config.json (default: config/config.json)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Bind host (default: server.host from config)",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=int,
        help="Bind port (default: server.port from config)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=LOG_LEVELS,
        help="Logging level (default: logging.level from config)",
    )
    parser.add_argument(
        "--backup-only",
        action="store_true",
        help="Run only the backup manager (no HTTP server)",
    )
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ConfigError) as exc:
        print(f"Error reading config file: {exc}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logging, level=args.log_level)

    for path in (config.kettas_log.upload_dir, config.kettas_log.logs_dir):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create working directory %s: %s", path, exc)
            sys.exit(1)

    live_feed = LiveFeed()
    backup_manager = BackupManager(config.retention, on_event=live_feed.publish)
    record_store = RecordStore(config.database.path) if config.database.enabled else None

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %s, shutting down...", signum)
        stop_event.set()
        if not args.backup_only:
            # Unwinds app.run() on the main thread
            raise KeyboardInterrupt

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        backup_manager.start()
    except ConfigError as exc:
        logger.error("Invalid backup configuration: %s", exc)
        sys.exit(1)

    try:
        if args.backup_only:
            logger.info("Running backup manager only (no HTTP server)")
            while not stop_event.is_set():
                stop_event.wait(timeout=1.0)
            return

        app = create_app(
            config,
            backup_manager=backup_manager,
            record_store=record_store,
            live_feed=live_feed,
        )
        host = args.host or config.server.host
        port = args.port or config.server.port
        logger.info("Server starting on http://%s:%d", host, port)
        try:
            app.run(host=host, port=port, debug=False, threaded=True)
        except KeyboardInterrupt:
            pass
    finally:
        backup_manager.stop()
        if record_store is not None:
            record_store.close()
        logger.info("System stopped.")


if __name__ == "__main__":
    main()
