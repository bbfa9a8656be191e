"""Backup rotation configuration and retention policy defaults."""

from dataclasses import dataclass

from logserver.retention.errors import ConfigError

MB = 1024 * 1024

# Defaults applied when the config file omits a value
DEFAULT_CHECK_INTERVAL_MINUTES = 10
DEFAULT_MAX_FOLDER_SIZE_MB = 500
DEFAULT_MAX_BACKUP_SIZE_MB = 5120
DEFAULT_RETENTION_DAYS = 30

# Archive naming: kettas_logs_DD_MM_YYYY_HH_mm_ss.zip
ARCHIVE_PREFIX = "kettas_logs_"
ARCHIVE_EXTENSION = ".zip"
ARCHIVE_TIMESTAMP_FORMAT = "%d_%m_%Y_%H_%M_%S"

SECONDS_PER_DAY = 24 * 60 * 60


@dataclass
class RetentionConfig:
    """Snapshot of everything the backup manager needs to run."""
    live_dir: str
    backup_dir: str
    enabled: bool = True
    check_interval_minutes: int = DEFAULT_CHECK_INTERVAL_MINUTES
    max_live_folder_size_bytes: int = DEFAULT_MAX_FOLDER_SIZE_MB * MB
    max_backup_size_bytes: int = DEFAULT_MAX_BACKUP_SIZE_MB * MB
    retention_days: int = DEFAULT_RETENTION_DAYS
    archive_password: str | None = None

    @classmethod
    def from_megabytes(
        cls,
        live_dir: str,
        backup_dir: str,
        enabled: bool = True,
        check_interval_min: int = DEFAULT_CHECK_INTERVAL_MINUTES,
        max_folder_size_mb: int = DEFAULT_MAX_FOLDER_SIZE_MB,
        max_backup_size_mb: int = DEFAULT_MAX_BACKUP_SIZE_MB,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        archive_password: str | None = None,
    ) -> "RetentionConfig":
        return cls(
            live_dir=live_dir,
            backup_dir=backup_dir,
            enabled=enabled,
            check_interval_minutes=check_interval_min,
            max_live_folder_size_bytes=_mb_to_bytes("max_folder_size_mb", max_folder_size_mb),
            max_backup_size_bytes=_mb_to_bytes("max_backup_size_mb", max_backup_size_mb),
            retention_days=retention_days,
            archive_password=archive_password or None,
        )

    @property
    def check_interval_seconds(self) -> float:
        return self.check_interval_minutes * 60.0

    def validate(self):
        """Raise ConfigError unless every limit is a positive integer.

        A disabled configuration is never rejected; the manager will not run.
        """
        if not self.enabled:
            return
        for name in (
            "check_interval_minutes",
            "max_live_folder_size_bytes",
            "max_backup_size_bytes",
            "retention_days",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not self.live_dir:
            raise ConfigError("live_dir must be set")
        if not self.backup_dir:
            raise ConfigError("backup_dir must be set")


def _mb_to_bytes(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer number of megabytes, got {value!r}")
    return value * MB
