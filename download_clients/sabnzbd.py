"""SABnzbd API client."""
from __future__ import annotations

import logging

import requests

from download_clients.base import DownloadClient, DownloadClientError, DownloadStatus

logger = logging.getLogger("readmeabook")

QUEUE_STATE_MAP = {
    "Downloading": "downloading",
    "Fetching": "downloading",
    "Grabbing": "queued",
    "Queued": "queued",
    "Propagating": "queued",
    "Paused": "paused",
    "Checking": "downloading",
}

HISTORY_STATE_MAP = {
    "Completed": "completed",
    "Failed": "failed",
    "Queued": "extracting",
    "Extracting": "extracting",
    "Verifying": "extracting",
    "Repairing": "extracting",
    "Moving": "extracting",
    "Running": "extracting",
    "Fetching": "extracting",
    "QuickCheck": "extracting",
}


def _parse_timeleft(value):
    """'H:MM:SS' (or 'D:HH:MM:SS') to seconds."""
    if not value:
        return None
    try:
        parts = [int(p) for p in str(value).split(":")]
    except ValueError:
        return None
    days = parts.pop(0) if len(parts) == 4 else 0
    seconds = days * 86400
    for i, part in enumerate(reversed(parts)):
        seconds += part * 60 ** i
    return seconds or None


class SABnzbdClient(DownloadClient):
    name = "sabnzbd"
    protocol = "usenet"

    def __init__(self, url, api_key, *, verify_ssl=True, category="readmeabook", session=None):
        super().__init__()
        self.url = (url or "").rstrip("/")
        self.api_key = api_key or ""
        self.category = category
        self.session = session or requests.Session()
        self.session.verify = verify_ssl

    @staticmethod
    def _classify_exception(exc):
        if isinstance(exc, requests.Timeout):
            return "timeout", "Timed out connecting to SABnzbd"
        if isinstance(exc, requests.ConnectionError):
            return "unreachable", "Connection refused/unreachable, is SABnzbd running?"
        return "request_error", str(exc)

    def _api(self, mode, timeout=15, **params):
        if not self.url:
            raise DownloadClientError("SABnzbd not configured", kind="not_configured")
        query = {"mode": mode, "apikey": self.api_key, "output": "json"}
        query.update(params)
        try:
            resp = self.session.get(f"{self.url}/api", params=query, timeout=timeout)
        except requests.RequestException as e:
            kind, msg = self._classify_exception(e)
            self._set_last_error(kind, msg)
            raise DownloadClientError(msg, kind=kind) from e
        if resp.status_code >= 400:
            self._set_last_error(f"http_{resp.status_code}", f"SABnzbd {mode} returned HTTP {resp.status_code}")
            raise DownloadClientError(f"SABnzbd {mode} returned HTTP {resp.status_code}", kind=f"http_{resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            self._set_last_error("api_error", f"SABnzbd {mode} returned invalid JSON")
            raise DownloadClientError(f"SABnzbd {mode} returned invalid JSON", kind="api_error") from e
        if isinstance(data, dict) and data.get("status") is False:
            error = data.get("error") or "Unknown error"
            kind = "auth_failed" if "api key" in error.lower() else "api_error"
            self._set_last_error(kind, f"SABnzbd error: {error}")
            raise DownloadClientError(f"SABnzbd error: {error}", kind=kind)
        self._clear_last_error()
        return data

    def get_version(self):
        return self._api("version", timeout=5).get("version", "unknown")

    def test_connection(self):
        try:
            version = self.get_version()
            # version does not need a key; queue does, so a bad key fails here.
            self._api("queue", limit=1, timeout=5)
        except DownloadClientError as e:
            return False, str(e)
        return True, f"Connected (v{version})"

    def add_download(self, url, name="", category=None):
        params = {"name": url, "cat": category or self.category}
        if name:
            params["nzbname"] = name
        data = self._api("addurl", **params)
        nzo_ids = data.get("nzo_ids") or []
        if not nzo_ids:
            raise DownloadClientError("SABnzbd did not return an NZB id", kind="add_failed")
        logger.info("Added NZB to SABnzbd: %s", nzo_ids[0])
        return nzo_ids[0]

    def get_queue(self):
        """Active queue slots plus the overall speed in bytes/s."""
        queue = self._api("queue").get("queue") or {}
        try:
            speed = int(float(queue.get("kbpersec") or 0) * 1024)
        except (TypeError, ValueError):
            speed = 0
        return {"slots": queue.get("slots") or [], "speed": speed}

    def get_history(self, limit=100):
        history = self._api("history", limit=limit).get("history") or {}
        return history.get("slots") or []

    def get_nzb(self, nzo_id):
        """Look the id up in the queue, then in history; None when unknown.

        Finished jobs leave the queue, so history is the only place the
        storage path of a completed download shows up.
        """
        queue = self.get_queue()
        for slot in queue["slots"]:
            if slot.get("nzo_id") != nzo_id:
                continue
            try:
                progress = float(slot.get("percentage") or 0)
            except (TypeError, ValueError):
                progress = 0.0
            state = QUEUE_STATE_MAP.get(slot.get("status", ""), "downloading")
            try:
                size = int(float(slot.get("mb") or 0) * 1024 * 1024)
            except (TypeError, ValueError):
                size = 0
            return {
                "nzo_id": nzo_id,
                "name": slot.get("filename") or "",
                "state": state,
                "progress": progress,
                "size": size,
                "speed": queue["speed"] if state == "downloading" else 0,
                "eta": _parse_timeleft(slot.get("timeleft")),
                "download_path": None,
                "message": None,
            }
        for slot in self.get_history():
            if slot.get("nzo_id") != nzo_id:
                continue
            state = HISTORY_STATE_MAP.get(slot.get("status", ""), "extracting")
            return {
                "nzo_id": nzo_id,
                "name": slot.get("name") or "",
                "state": state,
                "progress": 100.0 if state != "failed" else 0.0,
                "size": int(slot.get("bytes") or 0),
                "speed": 0,
                "eta": None,
                "download_path": slot.get("storage") or None,
                "message": slot.get("fail_message") or None,
            }
        return None

    def get_status(self, download_id):
        info = self.get_nzb(download_id)
        if info is None:
            return None
        return DownloadStatus(
            state=info["state"],
            progress=info["progress"],
            download_speed=info["speed"],
            eta=info["eta"],
            name=info["name"],
            download_path=info["download_path"],
            message=info["message"],
        )

    def pause(self, download_id):
        self._api("queue", name="pause", value=download_id)
        return True

    def resume(self, download_id):
        self._api("queue", name="resume", value=download_id)
        return True

    def delete(self, download_id, delete_files=False):
        del_files = "1" if delete_files else "0"
        self._api("queue", name="delete", value=download_id, del_files=del_files)
        self._api("history", name="delete", value=download_id, del_files=del_files)
        return True

    def get_download_path(self, download_id):
        info = self.get_nzb(download_id)
        return info["download_path"] if info else None
