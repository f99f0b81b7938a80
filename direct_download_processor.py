"""Direct (HTTP) download jobs: resolve mirror pages, stream the file, hand off to organize."""
from __future__ import annotations

import logging
import os
import time

import config
import extractor
from download_clients import DownloadClientError
from job_logger import JobLogger

logger = logging.getLogger("readmeabook")

SETTING_KEYS = (
    "downloads_dir",
    "ebook_sidecar_base_url",
    "ebook_sidecar_preferred_format",
    "ebook_sidecar_flaresolverr_url",
)


class DirectDownloadProcessor:
    def __init__(self, *, store, config_service, job_queue, client_manager, activity=None,
                 extract_download_url=None):
        self.store = store
        self.config = config_service
        self.jobs = job_queue
        self.clients = client_manager
        self.activity = activity
        self.extract_download_url = extract_download_url or extractor.extract_download_url

    def _still_downloading(self, request_id):
        request = self.store.get_request(request_id)
        return request is not None and request["status"] == "downloading"

    def _fail(self, request_id, download_history_id, message):
        self.store.update_request(request_id, status="failed", error_message=message)
        self.store.update_download_history(
            download_history_id,
            download_status="failed",
            error_message=message,
            completed_at=time.time(),
        )
        return {"success": False, "message": message}

    def start(self, request_id, download_history_id, download_url, target_filename, job_id=None):
        """Try each mirror of the history row in order until one yields a file.

        Returns ``{"success": True, "path": ...}`` after enqueueing exactly one
        organize job, or ``{"success": False, "message": ...}`` when every
        mirror failed. Anything unexpected marks the request failed and is
        re-raised for the job queue to retry.
        """
        log = JobLogger(job_id, "DirectDownload", activity=self.activity, request_id=request_id)
        try:
            self.store.update_request(request_id, status="downloading", progress=0, error_message=None)
            self.store.update_download_history(
                download_history_id,
                download_status="downloading",
                started_at=time.time(),
            )

            candidates = self.store.get_download_candidates(download_history_id) or [download_url]
            settings = self.config.get_many(SETTING_KEYS)
            downloads_dir = settings.get("downloads_dir")
            if not downloads_dir:
                log.error("Downloads directory is not configured")
                return self._fail(request_id, download_history_id, "Downloads directory is not configured")
            base_url = settings.get("ebook_sidecar_base_url") or "https://annas-archive.li"
            preferred_format = settings.get("ebook_sidecar_preferred_format") or "epub"
            flaresolverr_url = settings.get("ebook_sidecar_flaresolverr_url") or None
            fetch_options = {
                "timeout": config.DIRECT_CONNECT_TIMEOUT_SEC,
                "user_agent": config.USER_AGENT,
            }

            target_path = os.path.join(downloads_dir, target_filename)
            client = self.clients.get_direct_client(downloads_dir)
            log.info("Starting direct download of %s (%s candidate(s))", target_filename, len(candidates))

            last_error = None
            for index, candidate in enumerate(candidates, 1):
                if not self._still_downloading(request_id):
                    log.warning("Request left downloading state, abandoning remaining mirrors")
                    return {"success": False, "message": "Request is no longer downloading"}

                args = [candidate, base_url, preferred_format, fetch_options]
                if flaresolverr_url:
                    args.append(flaresolverr_url)
                resolved = self.extract_download_url(*args)
                if not resolved:
                    last_error = "Could not resolve a download link"
                    log.warning("Mirror %s/%s: no download link on %s", index, len(candidates), candidate)
                    continue

                log.info("Mirror %s/%s: downloading %s (%s)", index, len(candidates),
                         resolved["url"], resolved.get("format"))
                headers = {"User-Agent": resolved["user_agent"]} if resolved.get("user_agent") else None
                try:
                    size = client.stream(
                        resolved["url"],
                        target_path,
                        on_progress=lambda done, total: self._report_progress(request_id, done, total),
                        headers=headers,
                        cookies=resolved.get("cookies"),
                    )
                except DownloadClientError as e:
                    last_error = str(e)
                    log.warning("Mirror %s/%s failed: %s", index, len(candidates), e)
                    continue

                if not self._still_downloading(request_id):
                    # cancelled or failed elsewhere while streaming
                    try:
                        os.remove(target_path)
                    except OSError:
                        pass
                    log.warning("Request left downloading state during transfer, discarding %s", target_path)
                    return {"success": False, "message": "Request is no longer downloading"}

                return self._complete(request_id, download_history_id, target_path, size, log)

            message = f"All {len(candidates)} download source(s) failed"
            if last_error:
                message += f": {last_error}"
            log.error(message)
            return self._fail(request_id, download_history_id, message)
        except Exception as e:
            log.error("Direct download failed: %s", e)
            try:
                self.store.update_request(request_id, status="failed", error_message=str(e))
            except Exception as update_error:
                logger.error("Could not record failure for request %s: %s", request_id, update_error)
            raise

    def _report_progress(self, request_id, downloaded, total):
        if total <= 0:
            return
        self.store.update_request(request_id, progress=min(99.0, downloaded * 100.0 / total))

    def _complete(self, request_id, download_history_id, target_path, size, log):
        self.store.update_download_history(
            download_history_id,
            download_status="completed",
            download_path=target_path,
            size_bytes=size,
            completed_at=time.time(),
        )
        request = self.store.update_request(request_id, status="processing", progress=100)
        self.jobs.add_organize_job(request_id, request["audiobook_id"], target_path)
        log.info("Downloaded %s (%s bytes), organize queued", target_path, size)
        return {"success": True, "path": target_path, "size": size}

    def monitor(self, request_id, download_history_id, download_id, target_path, expected_size=None, job_id=None):
        """Coarse completion check: does the target file exist?"""
        log = JobLogger(job_id, "MonitorDirectDownload", activity=self.activity, request_id=request_id)
        try:
            size = os.path.getsize(target_path)
        except OSError:
            log.warning("Download %s not found at %s", download_id, target_path)
            return {"success": False, "message": f"Download {download_id} not found"}
        if expected_size and size != expected_size:
            log.warning("Download %s is %s bytes, expected %s", download_id, size, expected_size)
        return {"success": True, "completed": True, "size": size}
