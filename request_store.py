"""Request store for requests, audiobooks, download history and mirror candidates."""
from __future__ import annotations

import os
import sqlite3
import threading
import time
import uuid

HISTORY_FIELDS = (
    "indexer_name",
    "torrent_name",
    "torrent_url",
    "torrent_hash",
    "nzb_id",
    "download_status",
    "download_client",
    "selected",
    "quality_score",
    "size_bytes",
    "download_path",
    "error_message",
    "started_at",
    "completed_at",
)

_UNSET = object()


class RequestNotFound(LookupError):
    pass


class RequestStore:
    """SQLite-backed store for request state shared between jobs.

    Every status write goes through the transition table; rejected writes are
    logged and counted, and leave the row untouched.
    """

    def __init__(
        self,
        db_path,
        *,
        apply_migrations,
        logger,
        telemetry,
        transition_allowed,
        record_transition,
    ):
        self._db_path = db_path
        self._apply_migrations = apply_migrations
        self._logger = logger
        self._telemetry = telemetry
        self._transition_allowed = transition_allowed
        self._record_transition = record_transition
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def _connect(self):
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._connect() as conn:
            self._apply_migrations(conn)

    # --- Audiobooks ---

    def add_audiobook(self, title, author="", asin=None, audiobook_id=None):
        audiobook_id = audiobook_id or str(uuid.uuid4())
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO audiobooks (id, title, author, asin, created_at) VALUES (?, ?, ?, ?, ?)",
                    (audiobook_id, title, author or "", asin, time.time()),
                )
        return audiobook_id

    def get_audiobook(self, audiobook_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM audiobooks WHERE id = ?", (audiobook_id,)).fetchone()
        return dict(row) if row else None

    # --- Requests ---

    def create_request(
        self,
        audiobook_id,
        *,
        request_type="audiobook",
        user_id=None,
        parent_request_id=None,
        status="pending",
        request_id=None,
    ):
        request_id = request_id or str(uuid.uuid4())
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO requests
                       (id, user_id, audiobook_id, type, parent_request_id, status,
                        progress, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?)""",
                    (request_id, user_id, audiobook_id, request_type, parent_request_id, status, now, now),
                )
        row = self.get_request(request_id)
        self._record_transition(request_id, None, status, row)
        return row

    def get_request(self, request_id, include_deleted=False):
        query = """SELECT r.*, a.title AS audiobook_title, a.author AS audiobook_author,
                          a.asin AS audiobook_asin
                   FROM requests r LEFT JOIN audiobooks a ON a.id = r.audiobook_id
                   WHERE r.id = ?"""
        if not include_deleted:
            query += " AND r.deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (request_id,)).fetchone()
        return _request_dict(row) if row else None

    def update_request(self, request_id, *, status=None, progress=None, error_message=_UNSET, completed_at=_UNSET):
        """Apply a partial update and return the resulting row.

        Raises RequestNotFound for an unknown id. A status the transition
        table forbids is dropped (with the other fields still applied).
        """
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, status, type FROM requests WHERE id = ?",
                    (request_id,),
                ).fetchone()
                if row is None:
                    raise RequestNotFound(request_id)
                old_status = row["status"]
                sets, params = [], []
                if status is not None and status != old_status:
                    if self._transition_allowed(old_status, status):
                        sets.append("status = ?")
                        params.append(status)
                    else:
                        self._telemetry.metrics.inc(
                            "rmab_request_invalid_transitions_total",
                            from_status=old_status or "none",
                            to_status=status,
                            type=row["type"] or "audiobook",
                        )
                        self._logger.warning(
                            "Rejected invalid request status transition %s -> %s for %s",
                            old_status,
                            status,
                            request_id,
                        )
                        status = None
                elif status == old_status:
                    status = None
                if progress is not None:
                    sets.append("progress = ?")
                    params.append(max(0.0, min(100.0, float(progress))))
                if error_message is not _UNSET:
                    sets.append("error_message = ?")
                    params.append(error_message)
                if completed_at is not _UNSET:
                    sets.append("completed_at = ?")
                    params.append(completed_at)
                if sets:
                    sets.append("updated_at = ?")
                    params.append(time.time())
                    params.append(request_id)
                    conn.execute(f"UPDATE requests SET {', '.join(sets)} WHERE id = ?", params)
        updated = self.get_request(request_id, include_deleted=True)
        if status is not None:
            self._record_transition(request_id, old_status, status, updated)
        return updated

    def soft_delete_request(self, request_id):
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE requests SET deleted_at = ?, updated_at = ? WHERE id = ?",
                    (time.time(), time.time(), request_id),
                )

    def list_requests(self, status=None, limit=50, offset=0):
        """Non-deleted requests, newest first."""
        query = """SELECT r.*, a.title AS audiobook_title, a.author AS audiobook_author,
                          a.asin AS audiobook_asin
                   FROM requests r LEFT JOIN audiobooks a ON a.id = r.audiobook_id
                   WHERE r.deleted_at IS NULL"""
        params = []
        if status:
            query += " AND r.status = ?"
            params.append(status)
        query += " ORDER BY r.created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._connect() as conn:
            return [_request_dict(row) for row in conn.execute(query, params).fetchall()]

    def count_by_status(self):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM requests WHERE deleted_at IS NULL GROUP BY status"
            ).fetchall()
        return {status: count for status, count in rows}

    def find_child_request(self, parent_request_id, request_type="ebook"):
        with self._connect() as conn:
            row = conn.execute(
                """SELECT id FROM requests
                   WHERE parent_request_id = ? AND type = ? AND deleted_at IS NULL
                   ORDER BY created_at DESC LIMIT 1""",
                (parent_request_id, request_type),
            ).fetchone()
        return self.get_request(row["id"]) if row else None

    def reset_request(self, request_id, status):
        """Force a request back into a fresh state (clears progress and error)."""
        return self.update_request(request_id, status=status, progress=0, error_message=None, completed_at=None)

    def find_awaiting_import(self, limit=50):
        """Requests parked in awaiting_import, each with its latest selected history row."""
        requests_ = self.list_requests(status="awaiting_import", limit=limit)
        for item in requests_:
            item["download_history"] = self.get_selected_download_history(item["id"])
        return requests_

    def list_recent_with_history(self, limit=50):
        requests_ = self.list_requests(limit=limit)
        for item in requests_:
            history = self.get_selected_download_history(item["id"])
            if history is not None:
                history["candidates"] = self.get_download_candidates(history["id"])
            item["download_history"] = history
        return requests_

    # --- Download history ---

    def create_download_history(
        self,
        request_id,
        *,
        download_client,
        indexer_name="",
        torrent_name=None,
        torrent_url=None,
        quality_score=None,
        size_bytes=None,
        selected=True,
        download_status="queued",
        candidate_urls=None,
    ):
        history_id = str(uuid.uuid4())
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                if selected:
                    conn.execute(
                        "UPDATE download_history SET selected = 0 WHERE request_id = ?",
                        (request_id,),
                    )
                conn.execute(
                    """INSERT INTO download_history
                       (id, request_id, indexer_name, torrent_name, torrent_url,
                        download_status, download_client, selected, quality_score,
                        size_bytes, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        history_id,
                        request_id,
                        indexer_name or "",
                        torrent_name,
                        torrent_url,
                        download_status,
                        download_client,
                        1 if selected else 0,
                        quality_score,
                        size_bytes,
                        now,
                    ),
                )
                _write_candidates(conn, history_id, candidate_urls or [])
        return self.get_download_history(history_id)

    def get_download_history(self, history_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM download_history WHERE id = ?", (history_id,)).fetchone()
        return _history_dict(row) if row else None

    def get_selected_download_history(self, request_id):
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM download_history
                   WHERE request_id = ? AND selected = 1
                   ORDER BY created_at DESC LIMIT 1""",
                (request_id,),
            ).fetchone()
        return _history_dict(row) if row else None

    def list_download_history(self, request_id):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM download_history WHERE request_id = ? ORDER BY created_at DESC",
                (request_id,),
            ).fetchall()
        return [_history_dict(r) for r in rows]

    def update_download_history(self, history_id, **fields):
        """Partial update. Setting one client id clears the other."""
        unknown = set(fields) - set(HISTORY_FIELDS)
        if unknown:
            raise ValueError(f"Unknown download history fields: {', '.join(sorted(unknown))}")
        if fields.get("torrent_hash"):
            fields["nzb_id"] = None
        elif fields.get("nzb_id"):
            fields["torrent_hash"] = None
        if "selected" in fields:
            fields["selected"] = 1 if fields["selected"] else 0
        if not fields:
            return self.get_download_history(history_id)
        with self._lock:
            with self._connect() as conn:
                if fields.get("selected"):
                    conn.execute(
                        """UPDATE download_history SET selected = 0
                           WHERE request_id = (SELECT request_id FROM download_history WHERE id = ?)""",
                        (history_id,),
                    )
                cols = ", ".join(f"{name} = ?" for name in fields)
                conn.execute(
                    f"UPDATE download_history SET {cols} WHERE id = ?",
                    list(fields.values()) + [history_id],
                )
        return self.get_download_history(history_id)

    def set_client_download_id(self, history_id, client_type, download_id):
        if client_type == "qbittorrent":
            return self.update_download_history(history_id, torrent_hash=download_id)
        if client_type == "sabnzbd":
            return self.update_download_history(history_id, nzb_id=download_id)
        raise ValueError(f"No download id field for client {client_type!r}")

    def get_download_candidates(self, history_id):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT url FROM download_candidates WHERE download_history_id = ? ORDER BY position",
                (history_id,),
            ).fetchall()
        return [r["url"] for r in rows]

    def set_download_candidates(self, history_id, urls):
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM download_candidates WHERE download_history_id = ?", (history_id,))
                _write_candidates(conn, history_id, urls)

    def list_active_downloads(self, limit=20):
        """Requests in downloading with their selected history row."""
        requests_ = self.list_requests(status="downloading", limit=limit)
        for item in requests_:
            item["download_history"] = self.get_selected_download_history(item["id"])
        return requests_


def _write_candidates(conn, history_id, urls):
    for position, url in enumerate(u for u in urls if u):
        conn.execute(
            "INSERT INTO download_candidates (download_history_id, position, url) VALUES (?, ?, ?)",
            (history_id, position, url),
        )


def _request_dict(row):
    data = dict(row)
    data["audiobook"] = {
        "id": data.get("audiobook_id"),
        "title": data.pop("audiobook_title", None) or "",
        "author": data.pop("audiobook_author", None) or "",
        "asin": data.pop("audiobook_asin", None),
    }
    return data


def _history_dict(row):
    data = dict(row)
    data["selected"] = bool(data.get("selected"))
    return data
