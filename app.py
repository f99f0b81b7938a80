"""
ReadMeABook: audiobook and e-book request automation.

Searches Prowlarr indexers, downloads through qBittorrent, SABnzbd or direct
HTTP mirrors, and organizes finished downloads into the media library.
"""
import logging
import sys

from flask import Flask

import blueprint_registry
import config
import extractor
import telemetry
from activity_log import ActivityLog
from auth_guard import register_auth_guard
from config_service import ConfigService
from db_migrations import apply_migrations, get_migration_status
from direct_download_processor import DirectDownloadProcessor
from download_clients import ClientManager, test_download_client
from download_processor import DownloadProcessor
from job_queue import (
    JOB_DOWNLOAD,
    JOB_MONITOR_DIRECT_DOWNLOAD,
    JOB_MONITOR_DOWNLOAD,
    JOB_ORGANIZE,
    JOB_RETRY_FAILED_IMPORTS,
    JOB_SEARCH,
    JOB_START_DIRECT_DOWNLOAD,
    JobQueue,
    JobWorker,
)
from organize_processor import OrganizeProcessor
from request_events import record_request_status_transition, request_transition_allowed
from request_store import RequestStore
from retry_imports_processor import RetryImportsProcessor
from search_processor import SearchProcessor
from startup_runner import initialize_runtime_services

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("readmeabook")


def build_services(db_path=None, *, session_factory=None, extract_download_url=None):
    """Construct stores, the client manager, processors and the job worker."""
    db_path = db_path or config.DB_PATH
    store = RequestStore(
        db_path,
        apply_migrations=apply_migrations,
        logger=logger,
        telemetry=telemetry,
        transition_allowed=request_transition_allowed,
        record_transition=lambda request_id, old, new, row: record_request_status_transition(
            request_id, old, new, row, telemetry=telemetry,
        ),
    )
    job_queue = JobQueue(
        db_path,
        apply_migrations=apply_migrations,
        logger=logger,
        telemetry=telemetry,
        max_retries=config.JOB_MAX_RETRIES,
        retry_backoff_sec=config.JOB_RETRY_BACKOFF_SEC,
    )
    activity = ActivityLog(db_path)
    config_service = ConfigService(db_path)
    client_manager = ClientManager(config_service, session_factory=session_factory)

    shared = {
        "store": store,
        "config_service": config_service,
        "activity": activity,
    }
    direct = DirectDownloadProcessor(
        job_queue=job_queue,
        client_manager=client_manager,
        extract_download_url=extract_download_url,
        **shared,
    )
    downloads = DownloadProcessor(job_queue=job_queue, client_manager=client_manager, **shared)
    retry_imports = RetryImportsProcessor(job_queue=job_queue, client_manager=client_manager, **shared)
    organize = OrganizeProcessor(**shared)
    search = SearchProcessor(
        job_queue=job_queue,
        client_manager=client_manager,
        session=session_factory() if session_factory else None,
        **shared,
    )

    handlers = {
        JOB_START_DIRECT_DOWNLOAD: lambda payload, job_id: direct.start(job_id=job_id, **payload),
        JOB_MONITOR_DIRECT_DOWNLOAD: lambda payload, job_id: direct.monitor(job_id=job_id, **payload),
        JOB_DOWNLOAD: lambda payload, job_id: downloads.download(job_id=job_id, **payload),
        JOB_MONITOR_DOWNLOAD: lambda payload, job_id: downloads.monitor(job_id=job_id, **payload),
        JOB_RETRY_FAILED_IMPORTS: lambda payload, job_id: retry_imports.run(job_id=job_id),
        JOB_ORGANIZE: lambda payload, job_id: organize.organize(job_id=job_id, **payload),
        JOB_SEARCH: lambda payload, job_id: search.search(job_id=job_id, **payload),
    }
    worker = JobWorker(
        job_queue,
        handlers,
        logger=logger,
        workers=config.JOB_WORKERS,
        poll_interval_sec=config.JOB_POLL_INTERVAL_SEC,
    )
    return {
        "db_path": db_path,
        "store": store,
        "job_queue": job_queue,
        "activity": activity,
        "config_service": config_service,
        "client_manager": client_manager,
        "worker": worker,
        "processors": {
            "direct": direct,
            "download": downloads,
            "retry_imports": retry_imports,
            "organize": organize,
            "search": search,
        },
    }


def create_app(db_path=None, *, start_workers=False, session_factory=None, extract_download_url=None):
    services = build_services(
        db_path,
        session_factory=session_factory,
        extract_download_url=extract_download_url,
    )
    app = Flask(__name__)
    app.secret_key = config.SECRET_KEY
    app.extensions["readmeabook"] = services

    register_auth_guard(app, config)
    blueprint_registry.register_blueprints(app, {
        "config": config,
        "logger": logger,
        "telemetry": telemetry,
        "db_path": services["db_path"],
        "get_migration_status": get_migration_status,
        "store": services["store"],
        "job_queue": services["job_queue"],
        "activity": services["activity"],
        "config_service": services["config_service"],
        "client_manager": services["client_manager"],
        "test_download_client": test_download_client,
        "test_flaresolverr_connection": extractor.test_flaresolverr_connection,
    })

    if start_workers:
        initialize_runtime_services(
            config=config,
            logger=logger,
            activity=services["activity"],
            job_queue=services["job_queue"],
            worker=services["worker"],
            client_manager=services["client_manager"],
            retry_imports_job_type=JOB_RETRY_FAILED_IMPORTS,
        )
    return app


if __name__ == "__main__":
    create_app(start_workers=True).run(host="0.0.0.0", port=5000, debug=False)
