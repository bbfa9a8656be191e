"""Live directory rotation.

When the live log directory grows past its limit it is zipped into the
backup directory and then emptied. The directory itself is kept so the
upload handler can keep writing into it.
"""

import logging
import os
import shutil
from datetime import datetime

from logserver.retention import events
from logserver.retention.archiver import archive_directory
from logserver.retention.backup_config import (
    ARCHIVE_EXTENSION,
    ARCHIVE_PREFIX,
    ARCHIVE_TIMESTAMP_FORMAT,
    MB,
)
from logserver.retention.disk_usage import dir_size
from logserver.retention.errors import PartialFailure
from logserver.retention.events import EventCallback

logger = logging.getLogger(__name__)


def archive_name(ts: datetime) -> str:
    """kettas_logs_DD_MM_YYYY_HH_mm_ss.zip"""
    return f"{ARCHIVE_PREFIX}{ts.strftime(ARCHIVE_TIMESTAMP_FORMAT)}{ARCHIVE_EXTENSION}"


def unique_archive_path(backup_dir: str, ts: datetime) -> str:
    """Return a path in backup_dir for ts that does not exist yet.

    Two rotations within the same second get ``_1``, ``_2``... suffixes.
    """
    name = archive_name(ts)
    dest = os.path.join(backup_dir, name)
    stem, ext = os.path.splitext(name)
    counter = 1
    while os.path.exists(dest):
        dest = os.path.join(backup_dir, f"{stem}_{counter}{ext}")
        counter += 1
    return dest


def clear_directory(path: str):
    """Remove every entry inside path, keeping path itself.

    Every entry is attempted; if any removal fails a PartialFailure listing
    the failed entries is raised afterwards.
    """
    failures: list[tuple[str, OSError]] = []
    with os.scandir(path) as it:
        entries = list(it)
    for entry in entries:
        try:
            if entry.is_dir(follow_symlinks=False):
                shutil.rmtree(entry.path)
            else:
                os.remove(entry.path)
        except FileNotFoundError:
            continue
        except OSError as exc:
            failures.append((entry.path, exc))
    if failures:
        raise PartialFailure(
            f"Failed to remove {len(failures)} of {len(entries)} entries in {path}",
            failures,
        )


def check_and_rotate(
    live_dir: str,
    backup_dir: str,
    password: str | None,
    max_live_bytes: int,
    now: datetime | None = None,
    on_event: EventCallback | None = None,
) -> str | None:
    """Rotate live_dir into a new archive if it is larger than max_live_bytes.

    Returns the new archive path, or None when the directory is within its
    limit. Raises OSError if the size probe, the archiving or the clearing
    fails; a failed archive leaves live_dir untouched.
    """
    size = dir_size(live_dir)
    events.emit(
        logger, logging.DEBUG, on_event, events.LIVE_DIR_SIZE,
        "Checking logs dir size (current_bytes=%d, max_bytes=%d)", size, max_live_bytes,
        current_bytes=size, max_bytes=max_live_bytes,
    )
    if size <= max_live_bytes:
        return None

    events.emit(
        logger, logging.INFO, on_event, events.ROTATION_TRIGGERED,
        "Logs dir size exceeded limit, starting rotation (current_size_mb=%d)", size // MB,
        current_bytes=size, max_bytes=max_live_bytes,
    )

    os.makedirs(backup_dir, exist_ok=True)
    dest = unique_archive_path(backup_dir, now or datetime.now())
    try:
        archive_directory(live_dir, dest, password)
    except OSError as exc:
        events.emit(
            logger, logging.ERROR, on_event, events.ROTATION_FAILED,
            "Failed to rotate logs: %s", exc,
            path=dest, error=str(exc), stage="archive",
        )
        raise
    events.emit(
        logger, logging.INFO, on_event, events.ROTATION_SUCCEEDED,
        "Logs rotated and zipped: %s", dest,
        path=dest, size_bytes=os.path.getsize(dest), source_bytes=size,
    )

    try:
        clear_directory(live_dir)
    except OSError as exc:
        events.emit(
            logger, logging.ERROR, on_event, events.ROTATION_FAILED,
            "Failed to clean logs dir after rotation: %s", exc,
            path=dest, error=str(exc), stage="clear",
        )
        raise
    events.emit(
        logger, logging.INFO, on_event, events.LIVE_DIR_CLEARED,
        "Logs directory cleaned: %s", live_dir,
        live_dir=live_dir,
    )
    return dest
