"""Download client adapters and the manager that owns the configured one."""
from __future__ import annotations

import logging
import threading

import config
from download_clients.base import DownloadClient, DownloadClientError, DownloadStatus
from download_clients.direct import DirectHttpClient
from download_clients.qbittorrent import QBittorrentClient, test_qbittorrent_connection
from download_clients.sabnzbd import SABnzbdClient

logger = logging.getLogger("readmeabook")

CLIENT_CONFIG_KEYS = (
    "download_client_type",
    "download_client_url",
    "download_client_username",
    "download_client_password",
    "download_client_disable_ssl_verify",
    "download_dir",
)

# Indexer protocol accepted by each configured backend.
CLIENT_PROTOCOLS = {
    "qbittorrent": "torrent",
    "sabnzbd": "usenet",
}


def build_client(client_type, values, session=None):
    """Construct a client from download_client_* configuration values."""
    url = values.get("download_client_url") or ""
    password = values.get("download_client_password") or ""
    verify_ssl = not config.truthy(values.get("download_client_disable_ssl_verify"))
    if client_type == "qbittorrent":
        return QBittorrentClient(
            url,
            values.get("download_client_username") or "",
            password,
            verify_ssl=verify_ssl,
            save_path=values.get("download_dir") or None,
            session=session,
        )
    if client_type == "sabnzbd":
        return SABnzbdClient(url, password, verify_ssl=verify_ssl, session=session)
    raise DownloadClientError(f"Unsupported download client type: {client_type!r}", kind="not_configured")


class ClientManager:
    """Owns the single configured torrent/usenet client.

    The client is built on first use and cached until `invalidate()`; the
    manager invalidates itself whenever a download_client_* key is written.
    """

    def __init__(self, config_service, *, session_factory=None):
        self._config = config_service
        self._session_factory = session_factory
        self._lock = threading.Lock()
        self._client = None
        self._client_type = None
        config_service.on_change(self._on_config_change)

    def _on_config_change(self, changed_keys):
        if any(key in CLIENT_CONFIG_KEYS for key in changed_keys):
            self.invalidate()

    def client_type(self):
        return (self._config.get("download_client_type") or "").strip().lower() or None

    def protocol(self):
        return CLIENT_PROTOCOLS.get(self.client_type())

    def get_client(self):
        with self._lock:
            if self._client is not None:
                return self._client
            values = self._config.get_many(CLIENT_CONFIG_KEYS)
            client_type = (values.get("download_client_type") or "").strip().lower()
            if not client_type:
                raise DownloadClientError("No download client configured", kind="not_configured")
            session = self._session_factory() if self._session_factory else None
            self._client = build_client(client_type, values, session=session)
            self._client_type = client_type
            logger.info("Download client initialised: %s", client_type)
            return self._client

    def get_direct_client(self, downloads_dir=None):
        downloads_dir = downloads_dir or self._config.get("downloads_dir") or ""
        session = self._session_factory() if self._session_factory else None
        return DirectHttpClient(downloads_dir, session=session)

    def invalidate(self):
        with self._lock:
            if self._client is not None:
                logger.info("Download client invalidated: %s", self._client_type)
            self._client = None
            self._client_type = None


def test_download_client(client_type, url, username="", password="", *, disable_ssl_verify=False):
    """Connectivity check used by the settings API.

    Returns ``{"success": True, "version": ...}`` or
    ``{"success": False, "error": ..., "error_class": ...}``.
    """
    if client_type == "qbittorrent":
        return test_qbittorrent_connection(url, username, password, verify_ssl=not disable_ssl_verify)
    if client_type == "sabnzbd":
        client = SABnzbdClient(url, password, verify_ssl=not disable_ssl_verify)
        try:
            version = client.get_version()
            client._api("queue", limit=1, timeout=5)
        except DownloadClientError as e:
            return {"success": False, "error": str(e), "error_class": e.kind}
        return {"success": True, "message": f"Connected (v{version})", "version": version}
    return {
        "success": False,
        "error": "Invalid client type. Must be qbittorrent or sabnzbd",
        "error_class": "invalid_type",
    }


__all__ = [
    "CLIENT_PROTOCOLS",
    "ClientManager",
    "DirectHttpClient",
    "DownloadClient",
    "DownloadClientError",
    "DownloadStatus",
    "QBittorrentClient",
    "SABnzbdClient",
    "build_client",
    "test_download_client",
]
