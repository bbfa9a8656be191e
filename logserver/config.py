"""Application configuration loaded from config/config.json.

Example::

    {
        "server": {"host": "0.0.0.0", "port": 8080},
        "api_key": "change-me",
        "logging": {"level": "INFO", "log_file": "logs/server.log"},
        "kettas_log": {
            "upload_dir": "data/uploads",
            "logs_dir": "data/logs",
            "zip_password": "secret",
            "max_file_size_mb": 50,
            "backup": {
                "enabled": true,
                "check_interval_min": 10,
                "max_folder_size_mb": 500,
                "backup_dir": "data/backups",
                "max_backup_size_mb": 5120,
                "retention_days": 30
            }
        },
        "database": {"enabled": false, "path": "data/records.db"}
    }
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

from logserver.retention.backup_config import (
    DEFAULT_CHECK_INTERVAL_MINUTES,
    DEFAULT_MAX_BACKUP_SIZE_MB,
    DEFAULT_MAX_FOLDER_SIZE_MB,
    DEFAULT_RETENTION_DAYS,
    RetentionConfig,
)
from logserver.retention.errors import ConfigError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = str(PROJECT_ROOT / "config" / "config.json")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
MASK = "********"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass
class LoggingConfig:
    level: str = "INFO"
    log_file: str | None = None
    max_size_mb: int = 10
    backup_count: int = 3
    json: bool = True


@dataclass
class BackupSection:
    enabled: bool = False
    check_interval_min: int = DEFAULT_CHECK_INTERVAL_MINUTES
    max_folder_size_mb: int = DEFAULT_MAX_FOLDER_SIZE_MB
    backup_dir: str = "data/backups"
    max_backup_size_mb: int = DEFAULT_MAX_BACKUP_SIZE_MB
    retention_days: int = DEFAULT_RETENTION_DAYS


@dataclass
class KettasLogConfig:
    upload_dir: str = "data/uploads"
    logs_dir: str = "data/logs"
    zip_password: str = ""
    max_file_size_mb: int = 50
    backup: BackupSection = field(default_factory=BackupSection)


@dataclass
class DatabaseConfig:
    enabled: bool = False
    path: str = "data/records.db"


@dataclass
class AppConfig:
    api_key: str
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    kettas_log: KettasLogConfig = field(default_factory=KettasLogConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @property
    def max_file_size_bytes(self) -> int:
        return self.kettas_log.max_file_size_mb * 1024 * 1024

    @property
    def retention(self) -> RetentionConfig:
        """Backup manager configuration derived from kettas_log.backup.

        The live directory is the extracted logs directory and archives are
        encrypted with the same password the devices use for uploads.
        """
        b = self.kettas_log.backup
        return RetentionConfig.from_megabytes(
            live_dir=self.kettas_log.logs_dir,
            backup_dir=b.backup_dir,
            enabled=b.enabled,
            check_interval_min=b.check_interval_min,
            max_folder_size_mb=b.max_folder_size_mb,
            max_backup_size_mb=b.max_backup_size_mb,
            retention_days=b.retention_days,
            archive_password=self.kettas_log.zip_password,
        )

    def to_dict(self, mask_secrets: bool = True) -> dict:
        data = asdict(self)
        if mask_secrets:
            if data["api_key"]:
                data["api_key"] = MASK
            if data["kettas_log"]["zip_password"]:
                data["kettas_log"]["zip_password"] = MASK
        return data


def load_config(config_path: str = None) -> AppConfig:
    """Read and validate the JSON config file.

    Raises FileNotFoundError if the file is missing and ConfigError if it
    cannot be parsed or holds invalid values.
    """
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    try:
        with open(path) as f:
            raw = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc

    config = config_from_dict(raw)
    env_level = os.environ.get("LOG_LEVEL")
    if env_level:
        config.logging.level = env_level.upper()
    validate_config(config)
    logger.debug("Loaded config from %s", path)
    return config


def config_from_dict(raw: dict) -> AppConfig:
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a JSON object")
    kettas = raw.get("kettas_log") or {}
    if not isinstance(kettas, dict):
        raise ConfigError("kettas_log must be an object")
    kettas = dict(kettas)
    backup = _section(BackupSection, kettas.pop("backup", None), "kettas_log.backup")
    return AppConfig(
        api_key=raw.get("api_key", ""),
        server=_section(ServerConfig, raw.get("server"), "server"),
        logging=_section(LoggingConfig, raw.get("logging"), "logging"),
        kettas_log=_section(KettasLogConfig, kettas, "kettas_log", backup=backup),
        database=_section(DatabaseConfig, raw.get("database"), "database"),
    )


def validate_config(config: AppConfig):
    if not config.api_key:
        raise ConfigError("api_key must be set")
    if config.logging.level not in LOG_LEVELS:
        raise ConfigError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
    _positive_int("server.port", config.server.port)
    _positive_int("kettas_log.max_file_size_mb", config.kettas_log.max_file_size_mb)
    if not config.kettas_log.upload_dir or not config.kettas_log.logs_dir:
        raise ConfigError("kettas_log.upload_dir and kettas_log.logs_dir must be set")
    config.retention.validate()


def _section(cls, values, name: str, **overrides):
    if values is None:
        values = {}
    if not isinstance(values, dict):
        raise ConfigError(f"{name} must be an object")
    known = cls.__dataclass_fields__
    unknown = set(values) - set(known)
    if unknown:
        logger.warning("Ignoring unknown keys in %s: %s", name, ", ".join(sorted(unknown)))
    kwargs = {k: v for k, v in values.items() if k in known}
    kwargs.update(overrides)
    return cls(**kwargs)


def _positive_int(name: str, value):
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{name} must be a positive integer, got {value!r}")
