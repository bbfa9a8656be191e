"""HTTP route handlers.

    POST /upload          - Receive a device log archive
    GET  /health          - Liveness probe (no auth)
    GET  /api/status      - Backup manager and disk status
    GET  /api/backups     - List backup archives
    GET  /api/records     - Recently forwarded JSON records
"""

import logging
import os
from datetime import datetime

import psutil
from flask import Blueprint, current_app, jsonify, request

from logserver.ingress.upload import UploadError, process_upload, read_json_records
from logserver.retention.disk_usage import dir_size
from logserver.retention.retention_policy import list_archives, total_size

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


# ------------------------------------------------------------------
# POST /upload
# ------------------------------------------------------------------

@api.route("/upload", methods=["POST"])
def upload():
    cfg = current_app.server_config
    file = request.files.get("file")
    if file is None:
        logger.warning("File upload failed: no 'file' field in request")
        return jsonify({"error": "File upload failed"}), 400

    try:
        result = process_upload(
            file,
            upload_dir=cfg.kettas_log.upload_dir,
            logs_dir=cfg.kettas_log.logs_dir,
            password=cfg.kettas_log.zip_password,
            max_size_bytes=cfg.max_file_size_bytes,
        )
    except UploadError as exc:
        logger.warning("Upload rejected (%d): %s", exc.status, exc.message)
        return jsonify(exc.to_dict()), exc.status

    store = current_app.record_store
    if store is None:
        logger.info("Record insert skipped (store disabled), home_id=%s", result.home_id)
        return jsonify({
            "message": "File uploaded, extracted and processed",
            "home_id": result.home_id,
            "inserted_count": 0,
            "db_enabled": False,
        })

    try:
        docs = read_json_records(result.target_dir)
        inserted = store.insert_many(result.home_id, docs) if docs else 0
    except Exception as exc:
        logger.exception("Record insert failed for home_id=%s", result.home_id)
        return jsonify({
            "message": "File uploaded and extracted, but db insert failed",
            "home_id": result.home_id,
            "db_error": str(exc),
        })

    if not docs:
        logger.info("No log records to insert for home_id=%s", result.home_id)
    return jsonify({
        "message": "File uploaded, extracted and processed",
        "home_id": result.home_id,
        "inserted_count": inserted,
        "db_enabled": True,
    })


# ------------------------------------------------------------------
# GET /health
# ------------------------------------------------------------------

@api.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


# ------------------------------------------------------------------
# GET /api/status
# ------------------------------------------------------------------

@api.route("/api/status", methods=["GET"])
def get_status():
    """Backup manager state plus live/backup directory usage."""
    cfg = current_app.server_config
    retention = cfg.retention
    manager = current_app.backup_manager

    try:
        live_bytes = dir_size(retention.live_dir)
    except OSError:
        live_bytes = None

    try:
        archives = list_archives(retention.backup_dir)
    except OSError as exc:
        logger.warning("Could not list backup dir %s: %s", retention.backup_dir, exc)
        archives = []

    disk = None
    if os.path.isdir(retention.live_dir):
        usage = psutil.disk_usage(retention.live_dir)
        disk = {
            "total_bytes": usage.total,
            "used_bytes": usage.used,
            "free_bytes": usage.free,
            "percent": usage.percent,
        }

    live_feed = current_app.live_feed
    return jsonify({
        "status": "running",
        "timestamp": datetime.now().isoformat(),
        "backup_manager": manager.status() if manager else None,
        "live_dir_bytes": live_bytes,
        "backup_count": len(archives),
        "backup_total_bytes": total_size(archives),
        "disk": disk,
        "websocket_clients": live_feed.client_count if live_feed else 0,
    })


# ------------------------------------------------------------------
# GET /api/backups
# ------------------------------------------------------------------

@api.route("/api/backups", methods=["GET"])
def get_backups():
    """Backup archives, newest first."""
    limit = request.args.get("limit", 100, type=int)
    backup_dir = current_app.server_config.retention.backup_dir
    try:
        archives = list_archives(backup_dir)
    except OSError as exc:
        logger.exception("Error listing backups")
        return jsonify({"error": f"Could not list backups: {exc}"}), 500

    newest = list(reversed(archives))[:limit]
    return jsonify({
        "backups": [
            {
                "name": a.name,
                "size_bytes": a.size_bytes,
                "modified_at": datetime.fromtimestamp(a.modified_at).isoformat(),
            }
            for a in newest
        ],
        "total": len(archives),
        "total_bytes": total_size(archives),
    })


# ------------------------------------------------------------------
# GET /api/records
# ------------------------------------------------------------------

@api.route("/api/records", methods=["GET"])
def get_records():
    store = current_app.record_store
    if store is None:
        return jsonify({"records": [], "total": 0, "db_enabled": False})

    home_id = request.args.get("home_id")
    since = request.args.get("since")
    limit = request.args.get("limit", 50, type=int)
    try:
        records = store.get_records(home_id=home_id, since=since, limit=limit)
    except Exception as exc:
        logger.exception("Database error fetching records")
        return jsonify({"error": f"Database error: {exc}"}), 500
    return jsonify({"records": records, "total": len(records), "db_enabled": True})
