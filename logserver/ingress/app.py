"""Flask application for the log ingestion server.

Serves:

    POST /upload
    GET  /health
    GET  /api/status
    GET  /api/backups
    GET  /api/records
    WS   /ws/live

Every request except /health must carry the configured ``X-API-Key``.
"""

import logging
import time

from flask import Flask, g, jsonify, request
from flask_sock import Sock
from werkzeug.exceptions import HTTPException

from logserver.config import AppConfig
from logserver.database.record_store import RecordStore
from logserver.ingress.routes import api
from logserver.ingress.live_feed import LiveFeed
from logserver.retention.backup_manager import BackupManager

logger = logging.getLogger(__name__)

PUBLIC_PATHS = frozenset({"/health"})
# Multipart framing and headers on top of the archive itself
BODY_OVERHEAD_BYTES = 1024 * 1024
LIVE_POLL_SECONDS = 1.0


def create_app(
    config: AppConfig,
    backup_manager: BackupManager = None,
    record_store: RecordStore = None,
    live_feed: LiveFeed = None,
) -> Flask:
    """Application factory.

    Services are built by the caller (run.py or tests) and attached to the
    app; a missing backup manager or record store simply disables the
    corresponding parts of the API.
    """
    live_feed = live_feed or LiveFeed()

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.max_file_size_bytes + BODY_OVERHEAD_BYTES
    sock = Sock(app)

    _install_request_logging(app)
    _install_auth(app, config.api_key)
    _install_error_handlers(app)

    app.register_blueprint(api)

    @sock.route("/ws/live")
    def ws_live(ws):
        # This request thread is the only writer to ws
        sub = live_feed.subscribe()
        try:
            while ws.connected and not sub.closed:
                message = sub.next_message(timeout=LIVE_POLL_SECONDS)
                if message is not None:
                    ws.send(message)
        except Exception as exc:
            logger.debug("WebSocket closed: %s", exc)
        finally:
            live_feed.unsubscribe(sub)

    # Store references for route and test access
    app.server_config = config
    app.backup_manager = backup_manager
    app.record_store = record_store
    app.live_feed = live_feed

    return app


def _install_request_logging(app: Flask):
    @app.before_request
    def start_timer():
        g.request_start_time = time.perf_counter()

    @app.after_request
    def log_request(response):
        start = g.get("request_start_time")
        duration_ms = int((time.perf_counter() - start) * 1000) if start else 0
        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level, "%s %s -> %d (%d ms)", request.method, request.path, status, duration_ms,
            extra={"method": request.method, "path": request.path, "status": status,
                   "duration_ms": duration_ms, "ip": request.remote_addr},
        )
        return response


def _install_auth(app: Flask, api_key: str):
    @app.before_request
    def check_api_key():
        if request.path in PUBLIC_PATHS:
            return None
        if request.headers.get("X-API-Key") != api_key:
            logger.warning("Unauthorized access attempt from %s", request.remote_addr,
                           extra={"ip": request.remote_addr, "path": request.path})
            return jsonify({"error": "Unauthorized"}), 401
        return None


def _install_error_handlers(app: Flask):
    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify({"error": exc.description}), exc.code

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        logger.exception("Unhandled error on %s", request.path)
        return jsonify({"error": "Internal server error"}), 500
