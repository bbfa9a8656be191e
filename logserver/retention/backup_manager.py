"""Backup orchestration.

Runs the rotation check and the retention pass on a background thread:
once at startup and then every ``check_interval_minutes``. Cycles never
overlap, and ``stop()`` waits for the one in flight to finish.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime

from logserver.retention import events
from logserver.retention.backup_config import RetentionConfig
from logserver.retention.events import EventCallback
from logserver.retention.retention_policy import evaluate
from logserver.retention.rotation import check_and_rotate

logger = logging.getLogger(__name__)


class ManagerState(enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"
    DISABLED = "disabled"


@dataclass
class CycleResult:
    """Outcome of one rotation-check + retention-pass cycle."""
    started_at: str
    finished_at: str | None = None
    archive_path: str | None = None
    deleted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "archive_path": self.archive_path,
            "deleted": list(self.deleted),
            "errors": list(self.errors),
        }


class BackupManager:
    """Background rotation and retention worker.

    Usage::

        mgr = BackupManager(config, on_event=live_feed.publish)
        mgr.start()
        ...
        mgr.stop()   # blocks until the current cycle is done
    """

    def __init__(self, config: RetentionConfig, on_event: EventCallback | None = None):
        self.config = config
        self.on_event = on_event
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = ManagerState.STOPPED
        self._cycle_count = 0
        self._last_result: CycleResult | None = None

    @property
    def state(self) -> ManagerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Spawn the worker thread. Returns immediately.

        A disabled configuration puts the manager into DISABLED for good.
        Raises ConfigError if an enabled configuration is invalid.
        """
        if self._state in (ManagerState.RUNNING, ManagerState.DISABLED):
            return
        if not self.config.enabled:
            self._state = ManagerState.DISABLED
            events.emit(
                logger, logging.INFO, self.on_event, events.MANAGER_DISABLED,
                "Backup manager is disabled",
            )
            return

        self.config.validate()
        self._stop_event.clear()
        self._state = ManagerState.RUNNING
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="backup-manager",
        )
        self._thread.start()

    def stop(self):
        """Signal the worker and wait for it to exit.

        Safe to call before start(), more than once, or on a disabled manager.
        """
        thread = self._thread
        if thread is None:
            return
        self._state = ManagerState.STOPPING
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self._state = ManagerState.STOPPED

    def _run(self):
        events.emit(
            logger, logging.INFO, self.on_event, events.MANAGER_STARTED,
            "Backup manager started (interval_min=%d)", self.config.check_interval_minutes,
            interval_min=self.config.check_interval_minutes,
        )
        try:
            self.run_cycle()
            while not self._stop_event.wait(self.config.check_interval_seconds):
                self.run_cycle()
        finally:
            events.emit(
                logger, logging.INFO, self.on_event, events.MANAGER_STOPPED,
                "Backup manager stopped after %d cycle(s)", self._cycle_count,
                cycles=self._cycle_count,
            )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def run_cycle(self) -> CycleResult:
        """Rotate if needed, then enforce retention. Never raises."""
        cfg = self.config
        result = CycleResult(started_at=datetime.now().isoformat())

        try:
            result.archive_path = check_and_rotate(
                cfg.live_dir,
                cfg.backup_dir,
                cfg.archive_password,
                cfg.max_live_folder_size_bytes,
                on_event=self.on_event,
            )
        except OSError as exc:
            # rotation_failed has already been emitted for archive/clear errors
            logger.error("Rotation check failed for %s: %s", cfg.live_dir, exc)
            result.errors.append(f"rotation: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error in rotation check for %s", cfg.live_dir)
            result.errors.append(f"rotation: {exc}")

        try:
            result.deleted = evaluate(
                cfg.backup_dir,
                cfg.retention_days,
                cfg.max_backup_size_bytes,
                now=time.time(),
                on_event=self.on_event,
            )
        except Exception as exc:
            events.emit(
                logger, logging.ERROR, self.on_event, events.RETENTION_FAILED,
                "Retention pass failed for %s: %s", cfg.backup_dir, exc,
                backup_dir=cfg.backup_dir, error=str(exc),
            )
            result.errors.append(f"retention: {exc}")

        result.finished_at = datetime.now().isoformat()
        self._cycle_count += 1
        self._last_result = result
        if result.deleted:
            logger.info("Retention cleanup: removed %d old backup(s)", len(result.deleted))
        return result

    def status(self) -> dict:
        cfg = self.config
        return {
            "state": self._state.value,
            "enabled": cfg.enabled,
            "check_interval_minutes": cfg.check_interval_minutes,
            "live_dir": cfg.live_dir,
            "backup_dir": cfg.backup_dir,
            "max_live_folder_size_bytes": cfg.max_live_folder_size_bytes,
            "max_backup_size_bytes": cfg.max_backup_size_bytes,
            "retention_days": cfg.retention_days,
            "encrypted": bool(cfg.archive_password),
            "cycles": self._cycle_count,
            "last_cycle": self._last_result.to_dict() if self._last_result else None,
        }
