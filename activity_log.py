"""Activity log: per-job and per-request event trail shown in the admin UI."""
import logging
import os
import sqlite3
import threading
import time

from db_migrations import apply_migrations

logger = logging.getLogger("readmeabook")


class ActivityLog:
    """SQLite-backed activity log.

    Uses the same DB file as RequestStore and JobQueue (separate tables).
    Thread-safe via locking.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._connect() as conn:
            apply_migrations(conn)

    def log_event(self, event_type, detail="", request_id=None, job_id=""):
        """Append an event to the activity log."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO activity_log
                       (timestamp, event_type, detail, request_id, job_id)
                       VALUES (?, ?, ?, ?, ?)""",
                    (time.time(), event_type, detail, request_id, job_id or ""),
                )

    def get_activity(self, limit=50, offset=0, job_id=None, request_id=None):
        """Recent activity, newest first."""
        query = "SELECT * FROM activity_log"
        clauses, params = [], []
        if job_id:
            clauses.append("job_id = ?")
            params.append(job_id)
        if request_id:
            clauses.append("request_id = ?")
            params.append(request_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def count_activity(self):
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM activity_log").fetchone()[0]

    def cleanup_activity(self, days: int = 90) -> int:
        """Delete activity log entries older than `days` days."""
        cutoff = time.time() - days * 86400
        with self._lock:
            with self._connect() as conn:
                deleted = conn.execute(
                    "DELETE FROM activity_log WHERE timestamp < ?",
                    (cutoff,),
                ).rowcount
        if deleted:
            logger.info("Pruned %s old activity log entries (>%sd)", deleted, days)
        return deleted
