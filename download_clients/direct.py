"""Direct HTTP downloads streamed straight to the downloads directory."""
from __future__ import annotations

import logging
import os
import time

import requests

import config
from download_clients.base import DownloadClient, DownloadClientError, DownloadStatus

logger = logging.getLogger("readmeabook")

CHUNK_SIZE = 65536


class DirectHttpClient(DownloadClient):
    name = "direct"
    protocol = "direct"

    def __init__(self, downloads_dir, *, session=None, user_agent=None,
                 connect_timeout=None, read_timeout=None, progress_interval_sec=2.0):
        super().__init__()
        self.downloads_dir = downloads_dir
        self.session = session or requests.Session()
        self.user_agent = user_agent or config.USER_AGENT
        self.connect_timeout = connect_timeout or config.DIRECT_CONNECT_TIMEOUT_SEC
        self.read_timeout = read_timeout or config.DIRECT_READ_TIMEOUT_SEC
        self.progress_interval_sec = progress_interval_sec

    def _target(self, download_id):
        return os.path.join(self.downloads_dir, download_id)

    def stream(self, url, target_path, *, on_progress=None, headers=None, cookies=None):
        """Stream `url` to `target_path` and return the written size.

        `on_progress(downloaded, total)` is called at most once per
        progress interval; `total` is 0 when the server sends no length.
        A failed or empty transfer removes the partial file and raises
        DownloadClientError.
        """
        request_headers = {"User-Agent": self.user_agent}
        request_headers.update(headers or {})
        os.makedirs(os.path.dirname(target_path) or ".", exist_ok=True)
        try:
            resp = self.session.get(
                url,
                headers=request_headers,
                cookies=cookies,
                timeout=(self.connect_timeout, self.read_timeout),
                stream=True,
                allow_redirects=True,
            )
            if resp.status_code >= 400:
                self._set_last_error(f"http_{resp.status_code}", f"HTTP {resp.status_code} from {url[:80]}")
                raise DownloadClientError(f"HTTP {resp.status_code} from {url[:80]}", kind=f"http_{resp.status_code}")
            try:
                total = int(resp.headers.get("Content-Length") or 0)
            except ValueError:
                total = 0
            downloaded = 0
            last_report = 0.0
            with open(target_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    f.write(chunk)
                    downloaded += len(chunk)
                    now = time.monotonic()
                    if on_progress and now - last_report >= self.progress_interval_sec:
                        last_report = now
                        on_progress(downloaded, total)
        except requests.RequestException as e:
            _remove_quietly(target_path)
            kind = "timeout" if isinstance(e, requests.Timeout) else "request_error"
            self._set_last_error(kind, str(e))
            raise DownloadClientError(f"Download failed: {e}", kind=kind) from e
        except OSError as e:
            _remove_quietly(target_path)
            self._set_last_error("io_error", str(e))
            raise DownloadClientError(f"Could not write {target_path}: {e}", kind="io_error") from e
        except DownloadClientError:
            _remove_quietly(target_path)
            raise

        size = os.path.getsize(target_path)
        if size == 0:
            _remove_quietly(target_path)
            self._set_last_error("empty_file", f"Empty response from {url[:80]}")
            raise DownloadClientError("Downloaded file is empty", kind="empty_file")
        if on_progress:
            on_progress(downloaded, total or downloaded)
        self._clear_last_error()
        return size

    def test_connection(self):
        if not self.downloads_dir:
            return False, "Downloads directory not configured"
        if not os.path.isdir(self.downloads_dir):
            return False, f"Downloads directory {self.downloads_dir} does not exist"
        if not os.access(self.downloads_dir, os.W_OK):
            return False, f"Downloads directory {self.downloads_dir} is not writable"
        return True, "Downloads directory is writable"

    def add_download(self, url, name="", category=None):
        """Download synchronously; the id is the file name under downloads_dir."""
        if not name:
            name = os.path.basename(url.split("?", 1)[0]) or "download"
        self.stream(url, self._target(name))
        return name

    def get_status(self, download_id):
        path = self._target(download_id)
        try:
            size = os.path.getsize(path)
        except OSError:
            return None
        return DownloadStatus(
            state="completed",
            progress=100.0,
            name=download_id,
            save_path=self.downloads_dir,
            download_path=path,
            message=f"{size} bytes",
        )

    def pause(self, download_id):
        return False

    def resume(self, download_id):
        return False

    def delete(self, download_id, delete_files=False):
        if delete_files:
            return _remove_quietly(self._target(download_id))
        return True


def _remove_quietly(path):
    try:
        os.remove(path)
        return True
    except OSError:
        return False
