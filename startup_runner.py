from __future__ import annotations


def initialize_runtime_services(
    *,
    config,
    logger,
    activity,
    job_queue,
    worker,
    client_manager,
    retry_imports_job_type,
):
    activity.cleanup_activity(days=90)
    pruned = job_queue.cleanup(days=7)
    if pruned:
        logger.info("Pruned %s completed jobs", pruned)

    client_type = client_manager.client_type()
    logger.info(
        "ReadMeABook starting, download client: %s, %s job workers",
        client_type or "not configured",
        config.JOB_WORKERS,
    )

    worker.start()
    worker.schedule_recurring(retry_imports_job_type, config.RETRY_IMPORTS_INTERVAL_SEC)
    return worker
