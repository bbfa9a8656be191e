"""Device upload processing.

Accepted filenames::

    <HOMEID>_<TIMESTAMP>.zip
    home_id_<HOMEID>_<TIMESTAMP>.zip

The archive is saved to the upload directory, extracted into
``logs_dir/home_id_<HOMEID>/`` and removed again. JSON files found in the
target directory can then be forwarded to the record store.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass

import pyzipper

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"
HOME_ID_PREFIX = "home_id_"


class UploadError(Exception):
    """Rejected or failed upload, carrying the HTTP status to answer with."""

    def __init__(self, message: str, status: int = 400, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.detail = detail

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


@dataclass
class UploadResult:
    filename: str
    home_id: str
    target_dir: str
    extracted_files: int


def sanitize_filename(raw: str | None) -> str:
    filename = os.path.basename((raw or "").replace("\\", "/"))
    if filename in ("", ".", "..", "/"):
        raise UploadError("Invalid filename")
    return filename


def parse_home_id(filename: str) -> str:
    """Extract the home id from ``[home_id_]HOMEID_TIMESTAMP.zip``."""
    clean = filename[len(HOME_ID_PREFIX):] if filename.startswith(HOME_ID_PREFIX) else filename
    parts = clean.split("_")
    if len(parts) < 2 or not parts[0]:
        raise UploadError(
            "Invalid filename format. Expected HOMEID_TIMESTAMP.zip "
            "or home_id_HOMEID_TIMESTAMP.zip"
        )
    return parts[0]


def validate_upload(filename: str, header: bytes, size: int, max_size_bytes: int) -> str:
    """Run all pre-save checks. Returns the home id."""
    if os.path.splitext(filename)[1] != ".zip":
        raise UploadError("Only zip files are allowed")
    if len(header) < len(ZIP_MAGIC):
        raise UploadError("File too short")
    if header[:len(ZIP_MAGIC)] != ZIP_MAGIC:
        raise UploadError("Invalid file content")
    if size > max_size_bytes:
        raise UploadError(
            f"File size exceeds limit of {max_size_bytes // (1024 * 1024)} MB",
            status=413,
        )
    return parse_home_id(filename)


def extract_archive(archive_path: str, target_dir: str, password: str | None = None) -> int:
    """Extract every member into target_dir, overwriting existing files.

    Handles both legacy ZipCrypto and WinZip AES members. Member names are
    sanitised by the zip reader so nothing lands outside target_dir.
    Returns the number of file members extracted.
    """
    with pyzipper.AESZipFile(archive_path) as zf:
        if password:
            zf.setpassword(password.encode("utf-8"))
        members = zf.infolist()
        zf.extractall(target_dir)
    return sum(1 for m in members if not m.is_dir())


def process_upload(file_storage, upload_dir: str, logs_dir: str, password: str | None,
                   max_size_bytes: int) -> UploadResult:
    """Validate, save and extract one uploaded archive.

    ``file_storage`` is a werkzeug ``FileStorage``.
    """
    filename = sanitize_filename(file_storage.filename)

    stream = file_storage.stream
    header = stream.read(len(ZIP_MAGIC))
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)

    home_id = validate_upload(filename, header, size, max_size_bytes)

    # Unique per request; concurrent uploads may share a client filename
    try:
        fd, temp_path = tempfile.mkstemp(dir=upload_dir, prefix=f"{home_id}_", suffix=".zip")
        os.close(fd)
    except OSError as exc:
        logger.error("Failed to save file %s: %s", filename, exc)
        raise UploadError("Failed to save file", status=500) from exc

    try:
        try:
            file_storage.save(temp_path)
        except OSError as exc:
            logger.error("Failed to save file %s: %s", filename, exc)
            raise UploadError("Failed to save file", status=500) from exc

        target_dir = os.path.join(logs_dir, f"{HOME_ID_PREFIX}{home_id}")
        try:
            os.makedirs(target_dir, exist_ok=True)
        except OSError as exc:
            logger.error("Failed to create target directory %s: %s", target_dir, exc)
            raise UploadError("Failed to create target directory", status=500) from exc

        try:
            count = extract_archive(temp_path, target_dir, password)
        except (OSError, RuntimeError, pyzipper.BadZipFile) as exc:
            logger.error("Unzip error for %s: %s", filename, exc)
            raise UploadError(
                "Failed to unzip file", status=500, detail="Processing failed",
            ) from exc
    finally:
        try:
            os.remove(temp_path)
        except OSError:
            logger.debug("Temporary upload already gone: %s", temp_path)

    logger.info("File processed successfully: %s (home_id=%s, files=%d)",
                filename, home_id, count)
    return UploadResult(
        filename=filename,
        home_id=home_id,
        target_dir=target_dir,
        extracted_files=count,
    )


def read_json_records(target_dir: str) -> list[dict]:
    """Decode every ``*.json`` file directly inside target_dir.

    Files may hold several concatenated JSON objects. A decode error stops
    reading that file; records decoded before it are kept.
    """
    decoder = json.JSONDecoder()
    docs: list[dict] = []
    for name in sorted(os.listdir(target_dir)):
        path = os.path.join(target_dir, name)
        if not name.endswith(".json") or not os.path.isfile(path):
            continue
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not open JSON file %s: %s", name, exc)
            continue

        pos = 0
        while True:
            while pos < len(text) and text[pos].isspace():
                pos += 1
            if pos >= len(text):
                break
            try:
                obj, pos = decoder.raw_decode(text, pos)
            except json.JSONDecodeError as exc:
                logger.warning("JSON decode error in %s: %s", name, exc)
                break
            if isinstance(obj, dict):
                docs.append(obj)
            else:
                logger.warning("Skipping non-object JSON value in %s", name)
    return docs
