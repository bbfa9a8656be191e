"""Directory-to-zip archiving with optional per-entry AES encryption.

Archive layout::

    kettas_logs_19_10_2026_14_30_00.zip
    +-- logs/
    +-- logs/home_id_42/
    +-- logs/home_id_42/events.json      (AES-256 when a password is set)
    +-- logs/home_id_42/device.log

Directory entries are never encrypted; file entries are deflate-compressed
and, with a password, encrypted using the WinZip AES scheme so that any
AES-capable zip reader can open them with the same password.
"""

import logging
import os

import pyzipper

logger = logging.getLogger(__name__)

AES_KEY_BITS = 256


def archive_directory(source_dir: str, destination: str, password: str | None = None) -> int:
    """Write every entry under ``source_dir`` into a new zip at ``destination``.

    Entry names are ``<basename(source_dir)>/<relative path>``. Returns the
    number of file entries written.

    Raises ``OSError`` if the destination cannot be created (its parent must
    already exist) or if a source file cannot be read. A partially written
    archive is left on disk for the caller to deal with.
    """
    source_dir = os.path.normpath(source_dir)
    if not os.path.isdir(source_dir):
        raise NotADirectoryError(f"Not a directory: {source_dir}")
    base_name = os.path.basename(source_dir)

    kwargs = {"compression": pyzipper.ZIP_DEFLATED}
    if password:
        kwargs["encryption"] = pyzipper.WZ_AES

    file_count = 0
    with pyzipper.AESZipFile(destination, "w", **kwargs) as zf:
        if password:
            zf.setpassword(password.encode("utf-8"))
            zf.setencryption(pyzipper.WZ_AES, nbits=AES_KEY_BITS)

        for dirpath, dirnames, filenames in os.walk(source_dir, onerror=_raise):
            rel_dir = os.path.relpath(dirpath, source_dir)
            arc_dir = base_name if rel_dir == os.curdir else os.path.join(base_name, rel_dir)
            zf.write(dirpath, arcname=arc_dir)

            for name in filenames:
                full_path = os.path.join(dirpath, name)
                zf.write(full_path, arcname=os.path.join(arc_dir, name))
                file_count += 1

    logger.debug(
        "Archived %s -> %s (%d files, encrypted=%s)",
        source_dir, destination, file_count, bool(password),
    )
    return file_count


def _raise(exc: OSError):
    raise exc
