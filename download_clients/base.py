"""Download client capability interface."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple


class DownloadClientError(Exception):
    """A download client call that could not be completed.

    `kind` follows the last_error classification (timeout, unreachable,
    auth_failed, http_<code>, api_error, not_found, request_error).
    """

    def __init__(self, message, kind="request_error"):
        super().__init__(message)
        self.kind = kind


@dataclass
class DownloadStatus:
    """Uniform status snapshot of one download, whatever the backend."""

    state: str
    progress: float = 0.0
    download_speed: int = 0
    eta: Optional[int] = None
    save_path: Optional[str] = None
    name: Optional[str] = None
    download_path: Optional[str] = None
    message: Optional[str] = None


class DownloadClient(ABC):
    """Base class for the backends a request can be dispatched to.

    Subclasses set `name` (the configuration value selecting them) and
    `protocol` (the indexer protocol they accept).
    """

    name: str = ""
    protocol: str = ""

    def __init__(self):
        self.last_error = None

    def _set_last_error(self, kind, message, **extra):
        self.last_error = {"kind": kind, "message": message, "ts": time.time(), **extra}

    def _clear_last_error(self):
        self.last_error = None

    @abstractmethod
    def test_connection(self) -> Tuple[bool, str]:
        """Return (ok, message); never raises."""

    @abstractmethod
    def add_download(self, url: str, name: str = "", category: Optional[str] = None) -> str:
        """Queue `url` and return the client-side id of the new download."""

    @abstractmethod
    def get_status(self, download_id: str) -> Optional[DownloadStatus]:
        """Return the current status, or None when the client no longer knows the id."""

    @abstractmethod
    def pause(self, download_id: str) -> bool:
        pass

    @abstractmethod
    def resume(self, download_id: str) -> bool:
        pass

    @abstractmethod
    def delete(self, download_id: str, delete_files: bool = False) -> bool:
        pass

    def get_download_path(self, download_id: str) -> Optional[str]:
        status = self.get_status(download_id)
        if status is None:
            return None
        return status.download_path
