"""qBittorrent Web API (v2) client."""
from __future__ import annotations

import base64
import logging
import os
import posixpath
import re
import time
import uuid

import requests

from download_clients.base import DownloadClient, DownloadClientError, DownloadStatus

logger = logging.getLogger("readmeabook")

QB_LOGIN_BACKOFF_INITIAL_SEC = max(1, int(os.getenv("RMAB_QB_LOGIN_BACKOFF_INITIAL_SEC", "3")))
QB_LOGIN_BACKOFF_MAX_SEC = max(QB_LOGIN_BACKOFF_INITIAL_SEC, int(os.getenv("RMAB_QB_LOGIN_BACKOFF_MAX_SEC", "60")))
QB_HASH_LOOKUP_ATTEMPTS = 5
QB_HASH_LOOKUP_DELAY_SEC = 1

_BTIH_RE = re.compile(r"xt=urn:btih:([A-Za-z0-9]+)", re.IGNORECASE)

# qBittorrent state string -> uniform state
STATE_MAP = {
    "downloading": "downloading",
    "forcedDL": "downloading",
    "metaDL": "downloading",
    "forcedMetaDL": "downloading",
    "stalledDL": "downloading",
    "allocating": "downloading",
    "checkingDL": "downloading",
    "queuedDL": "queued",
    "checkingResumeData": "queued",
    "pausedDL": "paused",
    "stoppedDL": "paused",
    "moving": "extracting",
    "uploading": "completed",
    "forcedUP": "completed",
    "stalledUP": "completed",
    "queuedUP": "completed",
    "checkingUP": "completed",
    "pausedUP": "completed",
    "stoppedUP": "completed",
    "error": "failed",
    "missingFiles": "failed",
}


def info_hash_from_magnet(url):
    """Lower-case hex info hash of a magnet link, or None."""
    match = _BTIH_RE.search(url or "")
    if not match:
        return None
    value = match.group(1)
    if len(value) == 40:
        return value.lower()
    if len(value) == 32:
        try:
            return base64.b32decode(value.upper()).hex()
        except ValueError:
            return None
    return None


class QBittorrentClient(DownloadClient):
    name = "qbittorrent"
    protocol = "torrent"

    def __init__(self, url, username, password, *, verify_ssl=True, save_path=None,
                 category="readmeabook", session=None):
        super().__init__()
        self.url = (url or "").rstrip("/")
        self.username = username or ""
        self.password = password or ""
        self.save_path = save_path
        self.category = category
        self.session = session or requests.Session()
        self.session.verify = verify_ssl
        self.authenticated = False
        self._ban_until = 0
        self._next_login_after = 0
        self._login_backoff_sec = QB_LOGIN_BACKOFF_INITIAL_SEC

    def _schedule_backoff(self, kind, message, *, explicit_sec=None, **extra):
        wait = explicit_sec if explicit_sec is not None else self._login_backoff_sec
        wait = max(1, int(wait))
        self._next_login_after = time.time() + wait
        if explicit_sec is None:
            self._login_backoff_sec = min(QB_LOGIN_BACKOFF_MAX_SEC, max(1, self._login_backoff_sec * 2))
        self._set_last_error(kind, message, retry_in_sec=wait, **extra)

    def _reset_backoff(self):
        self._next_login_after = 0
        self._login_backoff_sec = QB_LOGIN_BACKOFF_INITIAL_SEC

    @staticmethod
    def _classify_exception(exc):
        if isinstance(exc, requests.Timeout):
            return "timeout", "Timed out connecting to qBittorrent"
        if isinstance(exc, requests.ConnectionError):
            return "unreachable", "Connection refused/unreachable, is qBittorrent running?"
        return "request_error", str(exc)

    def login(self):
        if not self.url:
            self._set_last_error("not_configured", "qBittorrent not configured")
            return False
        now = time.time()
        if self._next_login_after and now < self._next_login_after:
            retry_in = int(self._next_login_after - now)
            self._set_last_error("cooldown", "Skipping qBittorrent login during backoff", retry_in_sec=retry_in)
            return False
        try:
            resp = self.session.post(
                f"{self.url}/api/v2/auth/login",
                data={"username": self.username, "password": self.password},
                timeout=10,
            )
            if "banned" in resp.text.lower():
                logger.error("qBittorrent: IP banned, backing off for 60s")
                self._ban_until = time.time() + 60
                self.authenticated = False
                self._schedule_backoff("ip_banned", "IP banned by qBittorrent", explicit_sec=60, cooldown_sec=60)
                return False
            self.authenticated = resp.text == "Ok."
            if not self.authenticated:
                self._ban_until = time.time() + 30
                logger.error("qBittorrent login failed: %r", resp.text)
                self._schedule_backoff(
                    "auth_failed",
                    "Login failed, check username/password",
                    explicit_sec=30,
                    response=resp.text[:120],
                )
            else:
                self._reset_backoff()
                self._clear_last_error()
            return self.authenticated
        except requests.RequestException as e:
            kind, msg = self._classify_exception(e)
            logger.error("qBittorrent login failed: %s", e)
            self.authenticated = False
            self._schedule_backoff(kind, msg)
            return False

    def _ensure_auth(self):
        if self.authenticated:
            return
        if self._ban_until and time.time() < self._ban_until:
            self._set_last_error(
                "cooldown",
                "Skipping login attempt during cooldown",
                retry_in_sec=int(self._ban_until - time.time()),
            )
            raise DownloadClientError("qBittorrent login cooldown active", kind="cooldown")
        if not self.login():
            err = self.last_error or {}
            raise DownloadClientError(err.get("message", "qBittorrent login failed"), kind=err.get("kind", "auth_failed"))

    def _call(self, method, endpoint, **kwargs):
        """Authenticated API call; logs in again once on 403."""
        self._ensure_auth()
        kwargs.setdefault("timeout", 15)
        url = f"{self.url}/api/v2/{endpoint}"
        try:
            resp = self.session.request(method, url, **kwargs)
            if resp.status_code == 403:
                self.authenticated = False
                self._ensure_auth()
                resp = self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            kind, msg = self._classify_exception(e)
            self._set_last_error(kind, msg)
            raise DownloadClientError(msg, kind=kind) from e
        if resp.status_code == 403:
            self.authenticated = False
            self._set_last_error("auth_failed", f"qBittorrent rejected {endpoint} (403)")
            raise DownloadClientError(f"qBittorrent rejected {endpoint} (403)", kind="auth_failed")
        if resp.status_code >= 400:
            self._set_last_error(f"http_{resp.status_code}", f"qBittorrent {endpoint} returned HTTP {resp.status_code}")
            raise DownloadClientError(
                f"qBittorrent {endpoint} returned HTTP {resp.status_code}",
                kind=f"http_{resp.status_code}",
            )
        self._clear_last_error()
        return resp

    def test_connection(self):
        try:
            resp = self._call("GET", "app/version", timeout=5)
        except DownloadClientError as e:
            return False, str(e)
        return True, f"Connected (v{resp.text.strip() or 'unknown'})"

    def get_version(self):
        return self._call("GET", "app/version", timeout=5).text.strip()

    def add_download(self, url, name="", category=None):
        """Add a magnet or .torrent URL and return its info hash.

        `name` is only used for logging; renaming the torrent would break the
        save_path/name layout the import step relies on.
        """
        info_hash = info_hash_from_magnet(url)
        tag = f"rmab-{uuid.uuid4().hex[:12]}"
        data = {"urls": url, "category": category or self.category, "tags": tag}
        if self.save_path:
            data["savepath"] = self.save_path
        resp = self._call("POST", "torrents/add", data=data)
        if resp.text.strip() not in ("Ok.", ""):
            self._set_last_error("add_failed", f"qBittorrent refused torrent: {resp.text[:120]}")
            raise DownloadClientError(f"qBittorrent refused torrent: {resp.text[:120]}", kind="add_failed")
        if info_hash:
            logger.info("Added torrent to qBittorrent: %s (%s)", info_hash, name or url[:60])
            return info_hash

        # .torrent URLs: the hash is only known once qBittorrent has fetched the file.
        for _ in range(QB_HASH_LOOKUP_ATTEMPTS):
            torrents = self._call("GET", "torrents/info", params={"tag": tag}, timeout=10).json()
            if torrents:
                info_hash = (torrents[0].get("hash") or "").lower()
                logger.info("Added torrent to qBittorrent: %s (%s)", info_hash, name or url[:60])
                return info_hash
            time.sleep(QB_HASH_LOOKUP_DELAY_SEC)
        raise DownloadClientError("Torrent was added but its hash could not be resolved", kind="hash_unresolved")

    def get_torrents(self, category=None):
        params = {"category": category} if category else {}
        return self._call("GET", "torrents/info", params=params, timeout=10).json()

    def get_torrent(self, torrent_hash):
        """Raw torrents/info entry for one hash, or None."""
        torrents = self._call("GET", "torrents/info", params={"hashes": torrent_hash}, timeout=10).json()
        for torrent in torrents or []:
            if (torrent.get("hash") or "").lower() == (torrent_hash or "").lower():
                return torrent
        return None

    @staticmethod
    def torrent_path(torrent):
        save_path = torrent.get("save_path") or ""
        name = torrent.get("name") or ""
        if not save_path:
            return torrent.get("content_path") or None
        return posixpath.join(save_path, name) if name else save_path

    def get_status(self, download_id):
        torrent = self.get_torrent(download_id)
        if torrent is None:
            return None
        qb_state = torrent.get("state", "")
        state = STATE_MAP.get(qb_state, "downloading")
        progress = float(torrent.get("progress") or 0) * 100
        if state == "downloading" and progress >= 100:
            state = "completed"
        eta = torrent.get("eta")
        if eta is not None and (eta <= 0 or eta >= 8640000):
            eta = None
        message = None
        if state == "failed":
            message = f"qBittorrent reported state {qb_state}"
        return DownloadStatus(
            state=state,
            progress=min(100.0, progress),
            download_speed=int(torrent.get("dlspeed") or 0),
            eta=eta,
            save_path=torrent.get("save_path"),
            name=torrent.get("name"),
            download_path=self.torrent_path(torrent),
            message=message,
        )

    def _pause_or_stop(self, endpoints, download_id):
        # qBittorrent 5 renamed pause/resume to stop/start.
        try:
            self._call("POST", endpoints[0], data={"hashes": download_id}, timeout=10)
        except DownloadClientError as e:
            if e.kind != "http_404":
                raise
            self._call("POST", endpoints[1], data={"hashes": download_id}, timeout=10)
        return True

    def pause(self, download_id):
        return self._pause_or_stop(("torrents/pause", "torrents/stop"), download_id)

    def resume(self, download_id):
        return self._pause_or_stop(("torrents/resume", "torrents/start"), download_id)

    def delete(self, download_id, delete_files=False):
        self._call(
            "POST",
            "torrents/delete",
            data={"hashes": download_id, "deleteFiles": str(bool(delete_files)).lower()},
            timeout=10,
        )
        return True

    def get_download_path(self, download_id):
        torrent = self.get_torrent(download_id)
        return self.torrent_path(torrent) if torrent else None


def test_qbittorrent_connection(url, username, password, *, verify_ssl=True, requests_module=requests):
    if not url:
        return {"success": False, "error": "URL required", "error_class": "missing_config"}
    try:
        session = requests_module.Session()
        session.verify = verify_ssl
        resp = session.post(
            f"{url.rstrip('/')}/api/v2/auth/login",
            data={"username": username, "password": password},
            timeout=10,
        )
        if "banned" in resp.text.lower():
            return {"success": False, "error": "IP banned by qBittorrent", "error_class": "ip_banned"}
        if resp.text != "Ok.":
            return {"success": False, "error": "Login failed, check username/password", "error_class": "auth_failed"}
        ver_resp = session.get(f"{url.rstrip('/')}/api/v2/app/version", timeout=5)
        if ver_resp.status_code == 200:
            return {"success": True, "message": f"Connected (v{ver_resp.text})", "version": ver_resp.text}
        if ver_resp.status_code == 403:
            return {"success": False, "error": "Session rejected by qBittorrent", "error_class": "auth_failed"}
        return {"success": False, "error": f"HTTP {ver_resp.status_code}", "error_class": f"http_{ver_resp.status_code}"}
    except requests_module.Timeout:
        return {"success": False, "error": "Timed out connecting to qBittorrent", "error_class": "timeout"}
    except requests_module.ConnectionError:
        return {"success": False, "error": "Connection refused, is qBittorrent running?", "error_class": "unreachable"}
    except requests_module.RequestException as e:
        return {"success": False, "error": str(e), "error_class": "request_error"}
