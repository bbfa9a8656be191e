"""SQLite store for JSON log records forwarded from device uploads."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class RecordStore:
    """Thread-safe SQLite store, one connection per thread."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if not hasattr(self._local, "connection") or self._local.connection is None:
            self._local.connection = sqlite3.connect(
                str(self.db_path), timeout=10
            )
            self._local.connection.row_factory = sqlite3.Row
            self._local.connection.execute("PRAGMA journal_mode=WAL")
            self._local.connection.execute("PRAGMA synchronous=NORMAL")
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS log_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                home_id TEXT NOT NULL,
                received_at TEXT NOT NULL,
                received_ts INTEGER NOT NULL,
                payload TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_records_home
                ON log_records(home_id);
            CREATE INDEX IF NOT EXISTS idx_records_received
                ON log_records(received_at);
        """)
        conn.commit()
        logger.info("Record store initialized at %s", self.db_path)

    def insert_many(self, home_id: str, docs: list[dict], received_at: datetime = None) -> int:
        """Insert a batch of records in one transaction. Returns the count.

        Each document is stamped with ``db_server_received_at_utc`` and
        ``db_server_received_at_timestamp`` before it is stored.
        """
        if not docs:
            return 0
        now = received_at or datetime.now(timezone.utc)
        received_iso = now.isoformat()
        received_ts = int(now.timestamp())

        rows = []
        for doc in docs:
            stamped = dict(doc)
            stamped["db_server_received_at_utc"] = received_iso
            stamped["db_server_received_at_timestamp"] = received_ts
            rows.append((home_id, received_iso, received_ts,
                         json.dumps(stamped, default=str)))

        conn = self._get_connection()
        with conn:
            conn.executemany(
                """
                INSERT INTO log_records (home_id, received_at, received_ts, payload)
                VALUES (?, ?, ?, ?)
                """,
                rows,
            )
        logger.info("Inserted %d record(s) for home_id=%s", len(rows), home_id)
        return len(rows)

    def get_records(
        self,
        home_id: str = None,
        since: str = None,
        limit: int = 100,
    ) -> list[dict]:
        """Query records newest first, payload decoded."""
        conn = self._get_connection()
        query = "SELECT * FROM log_records WHERE 1=1"
        params = []

        if home_id:
            query += " AND home_id = ?"
            params.append(home_id)
        if since:
            query += " AND received_at >= ?"
            params.append(since)

        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        rows = conn.execute(query, params).fetchall()
        records = []
        for row in rows:
            record = dict(row)
            record["payload"] = json.loads(record["payload"])
            records.append(record)
        return records

    def count(self, home_id: str = None) -> int:
        conn = self._get_connection()
        if home_id:
            row = conn.execute(
                "SELECT COUNT(*) FROM log_records WHERE home_id = ?", (home_id,)
            ).fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) FROM log_records").fetchone()
        return row[0]

    def close(self):
        if hasattr(self._local, "connection") and self._local.connection:
            self._local.connection.close()
            self._local.connection = None
