"""Periodic sweep re-triggering organize for requests stuck in awaiting_import."""
from __future__ import annotations

import logging
import posixpath

import config
import path_mapper
from download_clients import DownloadClientError, QBittorrentClient
from job_logger import JobLogger

logger = logging.getLogger("readmeabook")


class RetryImportsProcessor:
    def __init__(self, *, store, config_service, job_queue, client_manager, activity=None, batch_size=None):
        self.store = store
        self.config = config_service
        self.jobs = job_queue
        self.clients = client_manager
        self.activity = activity
        self.batch_size = batch_size or config.RETRY_IMPORTS_BATCH

    def run(self, job_id=None):
        log = JobLogger(job_id, "RetryFailedImports", activity=self.activity)
        try:
            settings = self.config.get_many(path_mapper.CONFIG_KEYS + ("download_dir",))
            mapping = path_mapper.from_config(settings)
            download_dir = settings.get("download_dir") or ""

            stuck = self.store.find_awaiting_import(limit=self.batch_size)
            if not stuck:
                log.info("No requests awaiting import")
                return {
                    "success": True,
                    "message": "No requests awaiting import",
                    "total_requests": 0,
                    "triggered": 0,
                    "skipped": 0,
                }
            log.info("Found %s requests awaiting import", len(stuck))

            triggered = 0
            skipped = 0
            for request in stuck:
                try:
                    history = request.get("download_history")
                    if not history:
                        log.warning("No download history for request %s, skipping", request["id"])
                        skipped += 1
                        continue
                    raw_path = self._resolve_path(request, history, download_dir, log)
                    if not raw_path:
                        skipped += 1
                        continue
                    local_path = path_mapper.transform(raw_path, mapping)
                    if local_path != raw_path:
                        log.info("Request %s: %s -> %s (mapped)", request["id"], raw_path, local_path)
                    self.jobs.add_organize_job(request["id"], request["audiobook_id"], local_path)
                    triggered += 1
                except Exception as e:
                    log.error("Failed to trigger organize for request %s: %s", request["id"], e)
                    skipped += 1

            message = f"Triggered {triggered}/{len(stuck)} organize jobs ({skipped} skipped)"
            log.info(message)
            return {
                "success": True,
                "message": message,
                "total_requests": len(stuck),
                "triggered": triggered,
                "skipped": skipped,
            }
        except Exception as e:
            log.error("Retry sweep failed: %s", e)
            raise

    @staticmethod
    def _fallback_path(request, history, download_dir, log):
        name = history.get("torrent_name")
        if not name:
            log.warning("Request %s has no stored download name, leaving for manual import", request["id"])
            return None
        if not download_dir:
            log.warning("download_dir not configured, cannot rebuild path for request %s", request["id"])
            return None
        return posixpath.join(download_dir, name)

    def _resolve_path(self, request, history, download_dir, log):
        client_type = self.clients.client_type()

        if history.get("torrent_hash"):
            torrent = None
            if client_type == "qbittorrent":
                try:
                    torrent = self.clients.get_client().get_torrent(history["torrent_hash"])
                except DownloadClientError as e:
                    log.warning("qBittorrent lookup failed for request %s: %s", request["id"], e)
            if torrent:
                path = QBittorrentClient.torrent_path(torrent)
                log.info("Request %s: path from qBittorrent %s", request["id"], path)
                return path
            log.info("Torrent for request %s no longer in client, using fallback path", request["id"])
            return self._fallback_path(request, history, download_dir, log)

        if history.get("nzb_id"):
            if client_type == "sabnzbd":
                try:
                    info = self.clients.get_client().get_nzb(history["nzb_id"])
                except DownloadClientError as e:
                    log.error("SABnzbd lookup failed for request %s: %s", request["id"], e)
                    return None
                if info and info.get("download_path"):
                    log.info("Request %s: path from SABnzbd %s", request["id"], info["download_path"])
                    return info["download_path"]
            log.info("NZB for request %s not in SABnzbd history, using fallback path", request["id"])
            return self._fallback_path(request, history, download_dir, log)

        # direct downloads land in downloads_dir, not the client's download_dir
        if history.get("download_client") == "direct" and history.get("download_path"):
            return history["download_path"]
        return self._fallback_path(request, history, download_dir, log)
