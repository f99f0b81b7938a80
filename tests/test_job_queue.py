import logging
import sqlite3
import time

import telemetry
from db_migrations import apply_migrations
from job_queue import JOB_ORGANIZE, JOB_RETRY_FAILED_IMPORTS, JobQueue, JobWorker

logger = logging.getLogger("readmeabook")


def test_add_organize_job_payload(job_queue):
    job_id = job_queue.add_organize_job("req-1", "book-1", "/downloads/Dune")
    job = job_queue.get_job(job_id)
    assert job["type"] == JOB_ORGANIZE
    assert job["status"] == "queued"
    assert job["payload"] == {
        "request_id": "req-1",
        "audiobook_id": "book-1",
        "download_path": "/downloads/Dune",
    }


def test_claim_due_skips_delayed_jobs(job_queue):
    ready = job_queue.enqueue("noop", {"n": 1})
    job_queue.enqueue("noop", {"n": 2}, delay=3600)
    claimed = job_queue.claim_due(limit=5)
    assert [j["id"] for j in claimed] == [ready]
    assert claimed[0]["attempts"] == 1
    assert job_queue.get_job(ready)["status"] == "running"


def test_fail_retries_with_linear_backoff_then_dead_letters(job_queue, db_path):
    job_id = job_queue.enqueue("noop", {}, max_retries=1)

    job_queue.claim_due()
    before = time.time()
    assert job_queue.fail(job_id, "boom") == "retry_wait"
    job = job_queue.get_job(job_id)
    assert job["last_error"] == "boom"
    assert job["run_at"] >= before + 60

    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE jobs SET run_at = 0")
    job_queue.claim_due()
    assert job_queue.fail(job_id, "boom again") == "dead_letter"
    assert job_queue.get_job(job_id)["status"] == "dead_letter"


def test_running_jobs_are_requeued_on_restart(job_queue, db_path):
    job_id = job_queue.enqueue("noop", {})
    job_queue.claim_due()

    JobQueue(
        db_path,
        apply_migrations=apply_migrations,
        logger=logger,
        telemetry=telemetry,
        max_retries=2,
        retry_backoff_sec=60,
    )
    job = job_queue.get_job(job_id)
    assert job["status"] == "queued"
    assert job["last_error"] == "Interrupted by restart"


def test_worker_runs_handlers_and_records_results(job_queue):
    seen = []

    def handler(payload, job_id):
        seen.append((payload["n"], job_id))
        return {"ok": payload["n"]}

    worker = JobWorker(job_queue, {"noop": handler}, logger=logger)
    first = job_queue.enqueue("noop", {"n": 1})
    job_queue.enqueue("noop", {"n": 2})

    assert worker.run_pending() == 2
    assert sorted(n for n, _ in seen) == [1, 2]
    job = job_queue.get_job(first)
    assert job["status"] == "completed"
    assert job["result"] == {"ok": 1}


def test_worker_retries_raising_handler(job_queue):
    def handler(payload, job_id):
        raise RuntimeError("Database error")

    worker = JobWorker(job_queue, {"noop": handler}, logger=logger)
    job_id = job_queue.enqueue("noop", {})
    worker.run_pending()
    job = job_queue.get_job(job_id)
    assert job["status"] == "retry_wait"
    assert job["last_error"] == "Database error"


def test_worker_dead_letters_unknown_type(job_queue):
    worker = JobWorker(job_queue, {}, logger=logger)
    job_id = job_queue.enqueue("mystery", {}, max_retries=0)
    worker.run_pending()
    assert job_queue.get_job(job_id)["status"] == "dead_letter"


def test_has_pending_and_count_by_status(job_queue):
    assert job_queue.has_pending(JOB_RETRY_FAILED_IMPORTS) is False
    job_queue.add_retry_failed_imports_job()
    assert job_queue.has_pending(JOB_RETRY_FAILED_IMPORTS) is True
    assert job_queue.count_by_status() == {"queued": 1}
