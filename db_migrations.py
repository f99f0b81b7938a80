"""SQLite schema migrations for ReadMeABook.

Lightweight internal migration registry so future schema changes are applied
deterministically without requiring Alembic.
"""
from __future__ import annotations

import json
import logging
import sqlite3

logger = logging.getLogger("readmeabook")


MIGRATIONS = [
    ("0001_core_tables", "Create audiobooks/requests/download_history tables", "core_tables"),
    ("0002_configuration_table", "Create key/value configuration table", "configuration_table"),
    ("0003_jobs_table", "Create persistent job queue table", "jobs_table"),
    ("0004_activity_log", "Create activity log table + indexes", "activity_log"),
    ("0005_ebook_request_fields", "Add request type + parent_request_id", "ebook_request_fields"),
    ("0006_download_candidates", "Move direct-download mirror lists into their own table", "download_candidates"),
]


def _ensure_migrations_table(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at REAL DEFAULT (strftime('%s','now'))
        )
        """
    )


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Apply any pending migrations to the provided SQLite connection."""
    _ensure_migrations_table(conn)
    applied = 0
    for name, description, handler in MIGRATIONS:
        exists = conn.execute(
            "SELECT 1 FROM schema_migrations WHERE name = ?",
            (name,),
        ).fetchone()
        if exists:
            continue
        _HANDLERS[handler](conn)
        conn.execute(
            "INSERT INTO schema_migrations (name, description) VALUES (?, ?)",
            (name, description),
        )
        applied += 1
        logger.info("Applied DB migration %s", name)
    return applied


def get_migration_status(conn: sqlite3.Connection):
    """Return applied migration names and counts for diagnostics/tests."""
    _ensure_migrations_table(conn)
    rows = conn.execute(
        "SELECT name, description, applied_at FROM schema_migrations ORDER BY applied_at, name"
    ).fetchall()
    return [{"name": r[0], "description": r[1], "applied_at": r[2]} for r in rows]


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    if not _table_exists(conn, table):
        return False
    cols = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return any(c[1] == column for c in cols)


def _migrate_core_tables(conn: sqlite3.Connection):
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS audiobooks (
            id          TEXT PRIMARY KEY,
            title       TEXT NOT NULL,
            author      TEXT DEFAULT '',
            asin        TEXT DEFAULT NULL,
            created_at  REAL DEFAULT (strftime('%s','now'))
        );

        CREATE TABLE IF NOT EXISTS requests (
            id              TEXT PRIMARY KEY,
            user_id         TEXT DEFAULT NULL,
            audiobook_id    TEXT NOT NULL REFERENCES audiobooks(id),
            status          TEXT NOT NULL DEFAULT 'pending',
            progress        REAL NOT NULL DEFAULT 0,
            error_message   TEXT DEFAULT NULL,
            created_at      REAL DEFAULT (strftime('%s','now')),
            updated_at      REAL DEFAULT (strftime('%s','now')),
            completed_at    REAL DEFAULT NULL,
            deleted_at      REAL DEFAULT NULL
        );

        CREATE TABLE IF NOT EXISTS download_history (
            id                TEXT PRIMARY KEY,
            request_id        TEXT NOT NULL REFERENCES requests(id) ON DELETE CASCADE,
            indexer_name      TEXT DEFAULT '',
            torrent_name      TEXT DEFAULT NULL,
            torrent_url       TEXT DEFAULT NULL,
            torrent_hash      TEXT DEFAULT NULL,
            nzb_id            TEXT DEFAULT NULL,
            download_status   TEXT NOT NULL DEFAULT 'queued',
            download_client   TEXT DEFAULT NULL,
            selected          INTEGER NOT NULL DEFAULT 0,
            quality_score     REAL DEFAULT NULL,
            size_bytes        INTEGER DEFAULT NULL,
            download_path     TEXT DEFAULT NULL,
            error_message     TEXT DEFAULT NULL,
            started_at        REAL DEFAULT NULL,
            completed_at      REAL DEFAULT NULL,
            created_at        REAL DEFAULT (strftime('%s','now'))
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_status ON requests(status)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_history_request ON download_history(request_id)")


def _migrate_configuration_table(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS configuration (
            key         TEXT PRIMARY KEY,
            value       TEXT NOT NULL DEFAULT '',
            category    TEXT DEFAULT NULL,
            description TEXT DEFAULT NULL,
            updated_at  REAL DEFAULT (strftime('%s','now'))
        )
        """
    )


def _migrate_jobs_table(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id           TEXT PRIMARY KEY,
            type         TEXT NOT NULL,
            payload      TEXT NOT NULL DEFAULT '{}',
            status       TEXT NOT NULL DEFAULT 'queued',
            attempts     INTEGER NOT NULL DEFAULT 0,
            max_retries  INTEGER NOT NULL DEFAULT 0,
            run_at       REAL NOT NULL DEFAULT (strftime('%s','now')),
            last_error   TEXT DEFAULT NULL,
            result       TEXT DEFAULT NULL,
            created_at   REAL DEFAULT (strftime('%s','now')),
            updated_at   REAL DEFAULT (strftime('%s','now'))
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs(status, run_at)")


def _migrate_activity_log(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS activity_log (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp   REAL DEFAULT (strftime('%s','now')),
            event_type  TEXT NOT NULL,
            detail      TEXT DEFAULT '',
            request_id  TEXT DEFAULT NULL,
            job_id      TEXT DEFAULT ''
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_timestamp ON activity_log(timestamp)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_job ON activity_log(job_id)")


def _migrate_ebook_request_fields(conn: sqlite3.Connection):
    if not _column_exists(conn, "requests", "type"):
        conn.execute("ALTER TABLE requests ADD COLUMN type TEXT NOT NULL DEFAULT 'audiobook'")
    if not _column_exists(conn, "requests", "parent_request_id"):
        conn.execute(
            "ALTER TABLE requests ADD COLUMN parent_request_id TEXT DEFAULT NULL "
            "REFERENCES requests(id) ON DELETE SET NULL"
        )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_type ON requests(type)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_requests_parent ON requests(parent_request_id)")


def _migrate_download_candidates(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS download_candidates (
            download_history_id TEXT NOT NULL REFERENCES download_history(id) ON DELETE CASCADE,
            position            INTEGER NOT NULL,
            url                 TEXT NOT NULL,
            PRIMARY KEY (download_history_id, position)
        )
        """
    )
    # Older rows kept the mirror list JSON-encoded in torrent_url.
    rows = conn.execute(
        "SELECT id, torrent_url FROM download_history "
        "WHERE download_client = 'direct' AND torrent_url LIKE '[%'"
    ).fetchall()
    for history_id, raw in rows:
        try:
            urls = json.loads(raw)
        except json.JSONDecodeError:
            continue
        if not isinstance(urls, list):
            continue
        for position, url in enumerate(u for u in urls if isinstance(u, str) and u):
            conn.execute(
                "INSERT OR IGNORE INTO download_candidates (download_history_id, position, url) VALUES (?, ?, ?)",
                (history_id, position, url),
            )


_HANDLERS = {
    "core_tables": _migrate_core_tables,
    "configuration_table": _migrate_configuration_table,
    "jobs_table": _migrate_jobs_table,
    "activity_log": _migrate_activity_log,
    "ebook_request_fields": _migrate_ebook_request_fields,
    "download_candidates": _migrate_download_candidates,
}
