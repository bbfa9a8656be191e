"""Logging setup: console plus size-rotated log file, JSON lines by default."""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from logserver.config import LoggingConfig

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra=`` fields."""

    def format(self, record):
        entry = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(cfg: LoggingConfig, level: str | None = None) -> logging.Logger:
    """Configure the root logger from the logging section of the config."""
    formatter = JsonFormatter() if cfg.json else logging.Formatter(PLAIN_FORMAT)
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or cfg.level).upper()))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if cfg.log_file:
        log_dir = os.path.dirname(cfg.log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.log_file,
            maxBytes=cfg.max_size_mb * 1024 * 1024,
            backupCount=cfg.backup_count,
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # werkzeug's own access log duplicates the request log
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    return root
