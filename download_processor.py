"""Torrent / NZB dispatch and the re-entrant monitor that polls the client."""
from __future__ import annotations

import logging
import posixpath
import time

import config
import path_mapper
from download_clients import CLIENT_PROTOCOLS, DownloadClientError
from job_logger import JobLogger

logger = logging.getLogger("readmeabook")


class DownloadProcessor:
    def __init__(self, *, store, config_service, job_queue, client_manager, activity=None,
                 poll_interval_sec=None, max_polls=None):
        self.store = store
        self.config = config_service
        self.jobs = job_queue
        self.clients = client_manager
        self.activity = activity
        self.poll_interval_sec = poll_interval_sec or config.MONITOR_POLL_INTERVAL_SEC
        self.max_polls = max_polls or config.MONITOR_MAX_POLLS

    def _fail(self, request_id, download_history_id, message):
        self.store.update_request(request_id, status="failed", error_message=message)
        if download_history_id:
            self.store.update_download_history(
                download_history_id,
                download_status="failed",
                error_message=message,
                completed_at=time.time(),
            )
        return {"success": False, "message": message}

    def _record_unexpected(self, request_id, error, log):
        log.error("Unexpected error: %s", error)
        try:
            self.store.update_request(request_id, status="failed", error_message=str(error))
        except Exception as update_error:
            logger.error("Could not record failure for request %s: %s", request_id, update_error)

    # --- Dispatch ---

    def download(self, request_id, audiobook, ranked_result, job_id=None):
        """Hand the selected result to the configured client and schedule the monitor.

        Unexpected errors mark the request failed and are re-raised for the job queue.
        """
        log = JobLogger(job_id, "Download", activity=self.activity, request_id=request_id)
        try:
            return self._download(request_id, audiobook, ranked_result, log)
        except Exception as e:
            self._record_unexpected(request_id, e, log)
            raise

    def _download(self, request_id, audiobook, ranked_result, log):
        title = ranked_result.get("title") or (audiobook or {}).get("title") or ""
        client_type = self.clients.client_type()
        if not client_type:
            log.error("No download client configured")
            return self._fail(request_id, None, "No download client configured")

        expected = CLIENT_PROTOCOLS.get(client_type)
        protocol = (ranked_result.get("protocol") or expected or "").lower()
        if protocol != expected:
            message = f"Result protocol {protocol!r} does not match the {client_type} download client"
            log.error(message)
            return self._fail(request_id, None, message)

        url = ranked_result.get("download_url") or ranked_result.get("magnet_url") or ranked_result.get("url")
        if not url:
            log.error("Selected result %r has no download URL", title)
            return self._fail(request_id, None, "Selected result has no download URL")

        history = self.store.get_selected_download_history(request_id)
        if history is None or history["download_status"] != "queued" or history["download_client"] != client_type:
            history = self.store.create_download_history(
                request_id,
                download_client=client_type,
                indexer_name=ranked_result.get("indexer") or "",
                torrent_name=title,
                torrent_url=url,
                quality_score=ranked_result.get("score"),
                size_bytes=ranked_result.get("size"),
            )
        history_id = history["id"]

        try:
            client = self.clients.get_client()
            download_id = client.add_download(url, name=title)
        except DownloadClientError as e:
            log.error("Failed to add %r to %s: %s", title, client_type, e)
            return self._fail(request_id, history_id, f"Failed to add download: {e}")

        self.store.set_client_download_id(history_id, client_type, download_id)
        self.store.update_download_history(history_id, download_status="downloading", started_at=time.time())
        self.store.update_request(request_id, status="downloading", progress=0, error_message=None)
        self.jobs.add_monitor_download_job(
            request_id, history_id, download_id, client_type,
            poll_count=0, delay=self.poll_interval_sec,
        )
        log.info("Added %r to %s as %s", title, client_type, download_id)
        return {"success": True, "download_id": download_id, "download_history_id": history_id}

    # --- Monitor ---

    def monitor(self, request_id, download_history_id, download_id, download_client, poll_count=0, job_id=None):
        """One poll tick. Re-enqueues itself until the download is terminal."""
        log = JobLogger(job_id, "MonitorDownload", activity=self.activity, request_id=request_id)
        try:
            return self._monitor(request_id, download_history_id, download_id, download_client, poll_count, log)
        except Exception as e:
            self._record_unexpected(request_id, e, log)
            raise

    def _monitor(self, request_id, download_history_id, download_id, download_client, poll_count, log):
        request = self.store.get_request(request_id)
        history = self.store.get_download_history(download_history_id)
        if request is None or request["status"] != "downloading":
            log.info("Request is %s, stopping monitor", request["status"] if request else "gone")
            return {"success": True, "stopped": True}
        if history is None or history["download_status"] in ("completed", "failed"):
            log.info("Download history already terminal, stopping monitor")
            return {"success": True, "stopped": True}

        try:
            if self.clients.client_type() != download_client:
                return self._fail(
                    request_id, download_history_id,
                    f"Download client changed from {download_client} while downloading",
                )
            status = self.clients.get_client().get_status(download_id)
        except DownloadClientError as e:
            log.warning("Could not query %s for %s: %s", download_client, download_id, e)
            return self._reschedule(request_id, download_history_id, download_id, download_client, poll_count, log)

        if status is None:
            message = f"Download {download_id} not found in {download_client}"
            log.error(message)
            return self._fail(request_id, download_history_id, message)

        if status.state == "completed":
            return self._complete(request, history, status, log)

        if status.state == "failed":
            message = status.message or f"Download failed in {download_client}"
            log.error(message)
            return self._fail(request_id, download_history_id, message)

        self.store.update_request(request_id, progress=min(99.0, status.progress))
        return self._reschedule(request_id, download_history_id, download_id, download_client, poll_count, log,
                                state=status.state, progress=status.progress)

    def _reschedule(self, request_id, download_history_id, download_id, download_client, poll_count, log, **extra):
        next_poll = poll_count + 1
        if next_poll >= self.max_polls:
            log.error("Giving up on %s after %s polls", download_id, next_poll)
            return self._fail(request_id, download_history_id, "Download timed out")
        self.jobs.add_monitor_download_job(
            request_id, download_history_id, download_id, download_client,
            poll_count=next_poll, delay=self.poll_interval_sec,
        )
        return {"success": True, "completed": False, "poll_count": next_poll, **extra}

    def _complete(self, request, history, status, log):
        request_id = request["id"]
        settings = self.config.get_many(path_mapper.CONFIG_KEYS + ("download_dir",))
        raw_path = status.download_path
        if not raw_path and settings.get("download_dir") and (status.name or history.get("torrent_name")):
            raw_path = posixpath.join(settings["download_dir"], status.name or history["torrent_name"])
        if not raw_path:
            message = "Download completed but its path could not be determined"
            log.warning(message)
            self.store.update_download_history(history["id"], download_status="completed", completed_at=time.time())
            self.store.update_request(request_id, status="awaiting_import", progress=100, error_message=message)
            return {"success": False, "completed": True, "message": message}

        mapping = path_mapper.from_config(settings)
        local_path = path_mapper.transform(raw_path, mapping)
        if local_path != raw_path:
            log.info("Download complete: %s -> %s (mapped)", raw_path, local_path)
        else:
            log.info("Download complete: %s", local_path)
        self.store.update_download_history(
            history["id"],
            download_status="completed",
            download_path=local_path,
            completed_at=time.time(),
        )
        self.store.update_request(request_id, status="processing", progress=100)
        self.jobs.add_organize_job(request_id, request["audiobook_id"], local_path)
        return {"success": True, "completed": True, "path": local_path}
