"""SQLite-persisted job queue and the worker that drains it."""
from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

JOB_ORGANIZE = "organize_files"
JOB_START_DIRECT_DOWNLOAD = "start_direct_download"
JOB_MONITOR_DIRECT_DOWNLOAD = "monitor_direct_download"
JOB_DOWNLOAD = "download_torrent"
JOB_MONITOR_DOWNLOAD = "monitor_download"
JOB_SEARCH = "search_indexers"
JOB_RETRY_FAILED_IMPORTS = "retry_failed_imports"

DUE_STATUSES = ("queued", "retry_wait")
JOB_STATUSES = ("queued", "running", "completed", "retry_wait", "dead_letter")


class JobQueue:
    def __init__(
        self,
        db_path,
        *,
        apply_migrations,
        logger,
        telemetry,
        max_retries,
        retry_backoff_sec,
    ):
        self._db_path = db_path
        self._apply_migrations = apply_migrations
        self._logger = logger
        self._telemetry = telemetry
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec
        self._lock = threading.Lock()
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()
        self._requeue_interrupted()

    def _connect(self):
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        with self._connect() as conn:
            self._apply_migrations(conn)

    def _requeue_interrupted(self):
        with self._lock:
            with self._connect() as conn:
                stale = conn.execute(
                    """UPDATE jobs SET status = 'queued', last_error = 'Interrupted by restart',
                              updated_at = ?
                       WHERE status = 'running'""",
                    (time.time(),),
                ).rowcount
        if stale:
            self._logger.info("Re-queued %s jobs interrupted by restart", stale)

    # --- Enqueue ---

    def enqueue(self, job_type, payload=None, delay=0, max_retries=None):
        job_id = str(uuid.uuid4())
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO jobs
                       (id, type, payload, status, attempts, max_retries, run_at, created_at, updated_at)
                       VALUES (?, ?, ?, 'queued', 0, ?, ?, ?, ?)""",
                    (
                        job_id,
                        job_type,
                        json.dumps(payload or {}),
                        self.max_retries if max_retries is None else max_retries,
                        now + max(0, delay),
                        now,
                        now,
                    ),
                )
        self._telemetry.metrics.inc("rmab_jobs_enqueued_total", type=job_type)
        self._logger.debug("Enqueued %s job %s (delay=%ss)", job_type, job_id, delay)
        return job_id

    def add_organize_job(self, request_id, audiobook_id, download_path):
        return self.enqueue(JOB_ORGANIZE, {
            "request_id": request_id,
            "audiobook_id": audiobook_id,
            "download_path": download_path,
        })

    def add_start_direct_download_job(self, request_id, download_history_id, download_url, target_filename):
        return self.enqueue(JOB_START_DIRECT_DOWNLOAD, {
            "request_id": request_id,
            "download_history_id": download_history_id,
            "download_url": download_url,
            "target_filename": target_filename,
        })

    def add_monitor_direct_download_job(self, request_id, download_history_id, download_id,
                                        target_path, expected_size=None, delay=0):
        return self.enqueue(JOB_MONITOR_DIRECT_DOWNLOAD, {
            "request_id": request_id,
            "download_history_id": download_history_id,
            "download_id": download_id,
            "target_path": target_path,
            "expected_size": expected_size,
        }, delay=delay)

    def add_download_job(self, request_id, audiobook, ranked_result):
        return self.enqueue(JOB_DOWNLOAD, {
            "request_id": request_id,
            "audiobook": audiobook,
            "ranked_result": ranked_result,
        })

    def add_monitor_download_job(self, request_id, download_history_id, download_id,
                                 download_client, poll_count=0, delay=0):
        return self.enqueue(JOB_MONITOR_DOWNLOAD, {
            "request_id": request_id,
            "download_history_id": download_history_id,
            "download_id": download_id,
            "download_client": download_client,
            "poll_count": poll_count,
        }, delay=delay)

    def add_search_job(self, request_id, audiobook):
        return self.enqueue(JOB_SEARCH, {"request_id": request_id, "audiobook": audiobook})

    def add_retry_failed_imports_job(self):
        return self.enqueue(JOB_RETRY_FAILED_IMPORTS, {}, max_retries=0)

    # --- Lifecycle ---

    def claim_due(self, limit=1):
        """Mark up to `limit` due jobs running and return them, oldest first."""
        now = time.time()
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """SELECT * FROM jobs
                       WHERE status IN ('queued', 'retry_wait') AND run_at <= ?
                       ORDER BY run_at, created_at LIMIT ?""",
                    (now, limit),
                ).fetchall()
                for row in rows:
                    conn.execute(
                        "UPDATE jobs SET status = 'running', attempts = attempts + 1, updated_at = ? WHERE id = ?",
                        (now, row["id"]),
                    )
        jobs = []
        for row in rows:
            job = _job_dict(row)
            job["status"] = "running"
            job["attempts"] += 1
            jobs.append(job)
        return jobs

    def complete(self, job_id, result=None):
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT type FROM jobs WHERE id = ?", (job_id,)).fetchone()
                conn.execute(
                    "UPDATE jobs SET status = 'completed', result = ?, last_error = NULL, updated_at = ? WHERE id = ?",
                    (json.dumps(result, default=str), time.time(), job_id),
                )
        self._telemetry.metrics.inc("rmab_job_terminal_total", status="completed", type=row["type"] if row else "unknown")

    def fail(self, job_id, error_message):
        """Schedule a retry with linear backoff, or dead-letter the job."""
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT type, attempts, max_retries FROM jobs WHERE id = ?",
                    (job_id,),
                ).fetchone()
                if row is None:
                    return None
                attempts = int(row["attempts"] or 0)
                max_retries = int(row["max_retries"] or 0)
                now = time.time()
                if attempts <= max_retries:
                    delay = self.retry_backoff_sec * attempts
                    status = "retry_wait"
                    conn.execute(
                        "UPDATE jobs SET status = ?, last_error = ?, run_at = ?, updated_at = ? WHERE id = ?",
                        (status, error_message, now + delay, now, job_id),
                    )
                else:
                    status = "dead_letter"
                    conn.execute(
                        "UPDATE jobs SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                        (status, error_message, now, job_id),
                    )
        if status == "retry_wait":
            self._telemetry.metrics.inc("rmab_job_retry_scheduled_total", type=row["type"])
            self._logger.warning(
                "Job %s (%s) failed, retry %s/%s in %ss: %s",
                job_id, row["type"], attempts, max_retries, delay, error_message,
            )
        else:
            self._telemetry.metrics.inc("rmab_job_terminal_total", status="dead_letter", type=row["type"])
            self._telemetry.emit_event("job_dead_letter", {"job_id": job_id, "type": row["type"], "error": error_message})
            self._logger.error(
                "Job %s (%s) moved to dead-letter after %s attempts: %s",
                job_id, row["type"], attempts, error_message,
            )
        return status

    # --- Queries ---

    def get_job(self, job_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_dict(row) if row else None

    def list_jobs(self, status=None, job_type=None, limit=50, offset=0):
        query = "SELECT * FROM jobs"
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if job_type:
            clauses.append("type = ?")
            params.append(job_type)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._connect() as conn:
            return [_job_dict(r) for r in conn.execute(query, params).fetchall()]

    def count_by_status(self):
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status").fetchall()
        return {status: count for status, count in rows}

    def has_pending(self, job_type):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM jobs WHERE type = ? AND status IN ('queued', 'running', 'retry_wait') LIMIT 1",
                (job_type,),
            ).fetchone()
        return row is not None

    def cleanup(self, days=7):
        cutoff = time.time() - days * 86400
        with self._lock:
            with self._connect() as conn:
                return conn.execute(
                    "DELETE FROM jobs WHERE status = 'completed' AND updated_at < ?",
                    (cutoff,),
                ).rowcount


def _job_dict(row):
    data = dict(row)
    try:
        data["payload"] = json.loads(data.get("payload") or "{}")
    except json.JSONDecodeError:
        data["payload"] = {}
    if data.get("result"):
        try:
            data["result"] = json.loads(data["result"])
        except json.JSONDecodeError:
            pass
    return data


class JobWorker:
    """Polls the queue and runs handlers on a thread pool.

    `handlers` maps a job type to ``handler(payload, job_id)``; a handler
    that raises gets the job retried through `JobQueue.fail`.
    """

    def __init__(self, queue, handlers, *, logger, workers=4, poll_interval_sec=1):
        self.queue = queue
        self.handlers = dict(handlers)
        self.logger = logger
        self.workers = workers
        self.poll_interval_sec = poll_interval_sec
        self._executor = None
        self._started = False
        self._start_lock = threading.Lock()
        self._stop = threading.Event()
        self._in_flight = threading.Semaphore(workers)

    def run_job(self, job):
        handler = self.handlers.get(job["type"])
        if handler is None:
            self.logger.warning("No handler for job %s (type=%s)", job["id"], job["type"])
            self.queue.fail(job["id"], f"No handler for job type {job['type']}")
            return None
        try:
            result = handler(job["payload"], job["id"])
        except Exception as e:
            self.logger.error("Job %s (%s) raised: %s", job["id"], job["type"], e)
            self.queue.fail(job["id"], str(e))
            return None
        self.queue.complete(job["id"], result)
        return result

    def run_pending(self, limit=100):
        """Run due jobs inline until none are left (or `limit` ran). Returns the count."""
        ran = 0
        while ran < limit:
            jobs = self.queue.claim_due(limit=1)
            if not jobs:
                break
            self.run_job(jobs[0])
            ran += 1
        return ran

    def _dispatch(self, job):
        try:
            self.run_job(job)
        finally:
            self._in_flight.release()

    def _loop(self):
        while not self._stop.is_set():
            claimed = False
            if self._in_flight.acquire(blocking=False):
                try:
                    jobs = self.queue.claim_due(limit=1)
                except sqlite3.Error as e:
                    self.logger.error("Job queue poll failed: %s", e)
                    jobs = []
                if jobs:
                    claimed = True
                    self._executor.submit(self._dispatch, jobs[0])
                else:
                    self._in_flight.release()
            if not claimed:
                self._stop.wait(self.poll_interval_sec)

    def start(self):
        with self._start_lock:
            if self._started:
                return
            self._started = True
            self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="rmab-job")
            threading.Thread(target=self._loop, daemon=True).start()

    def stop(self):
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    def schedule_recurring(self, job_type, interval_sec, payload=None):
        """Enqueue `job_type` every `interval_sec` unless one is already pending."""
        def _tick():
            while not self._stop.wait(interval_sec):
                try:
                    if not self.queue.has_pending(job_type):
                        self.queue.enqueue(job_type, payload or {}, max_retries=0)
                except sqlite3.Error as e:
                    self.logger.error("Could not schedule %s: %s", job_type, e)

        threading.Thread(target=_tick, daemon=True).start()
