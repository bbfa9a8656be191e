"""Diagnostic event fan-out for the backup subsystem.

Every notable step is logged with ``extra={"event": name, ...}`` and also
handed to an optional ``on_event(name, data)`` callback (the live feed
publisher in the server). A failing callback never interrupts the caller.
"""

import logging
from typing import Callable

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, dict], None]

MANAGER_STARTED = "manager_started"
MANAGER_STOPPED = "manager_stopped"
MANAGER_DISABLED = "manager_disabled"
LIVE_DIR_SIZE = "live_dir_size"
ROTATION_TRIGGERED = "rotation_triggered"
ROTATION_SUCCEEDED = "rotation_succeeded"
ROTATION_FAILED = "rotation_failed"
LIVE_DIR_CLEARED = "live_dir_cleared"
BACKUP_DELETED = "backup_deleted"
BACKUP_DELETE_FAILED = "backup_delete_failed"
BACKUP_DIR_SIZE = "backup_dir_size"
RETENTION_FAILED = "retention_failed"


def emit(
    log: logging.Logger,
    level: int,
    on_event: EventCallback | None,
    name: str,
    message: str,
    *args,
    **data,
):
    """Log ``message`` with the event fields attached and notify ``on_event``."""
    log.log(level, message, *args, extra={"event": name, **data})
    if on_event is None:
        return
    try:
        on_event(name, data)
    except Exception:
        logger.exception("Event callback failed for %s", name)
