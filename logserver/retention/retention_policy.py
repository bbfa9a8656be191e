"""Age and size retention for the backup archive directory.

Each evaluation lists the directory afresh; nothing is cached between runs.
Files are processed oldest first, ties broken by name.
"""

import logging
import os
import time
from dataclasses import dataclass

from logserver.retention import events
from logserver.retention.backup_config import ARCHIVE_EXTENSION, MB, SECONDS_PER_DAY
from logserver.retention.events import EventCallback

logger = logging.getLogger(__name__)

REASON_AGE = "age"
REASON_SIZE = "size"


@dataclass(frozen=True)
class ArchiveFile:
    name: str
    path: str
    size_bytes: int
    modified_at: float

    @property
    def sort_key(self) -> tuple[float, str]:
        return (self.modified_at, self.name)


def list_archives(backup_dir: str) -> list[ArchiveFile]:
    """Return the archive files directly inside ``backup_dir``, oldest first.

    A missing directory yields an empty list. Any other listing failure is
    raised as ``OSError``.
    """
    archives = []
    try:
        it = os.scandir(backup_dir)
    except FileNotFoundError:
        return []
    with it:
        for entry in it:
            if not entry.name.endswith(ARCHIVE_EXTENSION):
                continue
            try:
                if not entry.is_file(follow_symlinks=False):
                    continue
                st = entry.stat(follow_symlinks=False)
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            archives.append(ArchiveFile(
                name=entry.name,
                path=entry.path,
                size_bytes=st.st_size,
                modified_at=st.st_mtime,
            ))
    archives.sort(key=lambda a: a.sort_key)
    return archives


def total_size(archives: list[ArchiveFile]) -> int:
    return sum(a.size_bytes for a in archives)


def evaluate(
    backup_dir: str,
    max_age_days: int,
    max_total_bytes: int,
    now: float | None = None,
    on_event: EventCallback | None = None,
) -> list[str]:
    """Enforce the age limit, then the cumulative size limit.

    Returns the names of the deleted archives in deletion order. Failure to
    delete an individual file is logged and skipped so the rest of the pass
    still runs.
    """
    now = time.time() if now is None else now
    max_age_seconds = max_age_days * SECONDS_PER_DAY
    deleted: list[str] = []

    archives = list_archives(backup_dir)
    if not archives:
        return deleted

    # 1. Age pass
    survivors: list[ArchiveFile] = []
    for archive in archives:
        age = now - archive.modified_at
        if age > max_age_seconds:
            if _delete(archive, REASON_AGE, on_event, age_days=int(age // SECONDS_PER_DAY)):
                deleted.append(archive.name)
                continue
        survivors.append(archive)

    # 2. Size pass
    current = total_size(survivors)
    if current <= max_total_bytes:
        return deleted

    events.emit(
        logger, logging.INFO, on_event, events.BACKUP_DIR_SIZE,
        "Backup dir size exceeded limit, cleaning old backups (current_mb=%d, max_mb=%d)",
        current // MB, max_total_bytes // MB,
        current_bytes=current, max_bytes=max_total_bytes,
    )
    for archive in sorted(survivors, key=lambda a: a.sort_key):
        if current <= max_total_bytes:
            break
        if not os.path.exists(archive.path):
            # Already gone, no longer occupies space
            current -= archive.size_bytes
            continue
        if _delete(archive, REASON_SIZE, on_event):
            deleted.append(archive.name)
            current -= archive.size_bytes

    return deleted


def _delete(archive: ArchiveFile, reason: str, on_event: EventCallback | None, **details) -> bool:
    try:
        os.remove(archive.path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        events.emit(
            logger, logging.WARNING, on_event, events.BACKUP_DELETE_FAILED,
            "Failed to delete backup %s: %s", archive.name, exc,
            file=archive.name, reason=reason, error=str(exc),
        )
        return False

    events.emit(
        logger, logging.INFO, on_event, events.BACKUP_DELETED,
        "Deleted backup %s (reason=%s, size=%d)", archive.name, reason, archive.size_bytes,
        file=archive.name, reason=reason, size_bytes=archive.size_bytes, **details,
    )
    return True
