"""Organize completed downloads into the media library."""
import logging
import os
import re
import shutil
import time

from job_logger import JobLogger

logger = logging.getLogger("readmeabook")


def sanitize_filename(name, max_len=80):
    """Make a string safe for use as a filename."""
    name = re.sub(r'[<>:"/\\|?*]', "", name)
    name = re.sub(r"\s+", " ", name).strip()
    name = name.strip(".")
    if len(name) > max_len:
        name = name[:max_len].rstrip()
    return name or "Unknown"


def organize_path(source_path, media_dir, title, author):
    """Move a downloaded file or folder into <media_dir>/<Author>/<Title>/.

    A folder's contents are moved (not the folder itself). Returns the
    destination directory.
    """
    dest_dir = os.path.join(media_dir, sanitize_filename(author or "Unknown"), sanitize_filename(title or "Unknown"))
    os.makedirs(dest_dir, exist_ok=True)
    if os.path.isdir(source_path):
        for entry in sorted(os.listdir(source_path)):
            shutil.move(os.path.join(source_path, entry), os.path.join(dest_dir, entry))
        try:
            os.rmdir(source_path)
        except OSError:
            pass
    else:
        shutil.move(source_path, os.path.join(dest_dir, os.path.basename(source_path)))
    return dest_dir


class OrganizeProcessor:
    def __init__(self, *, store, config_service, activity=None):
        self.store = store
        self.config = config_service
        self.activity = activity

    def _park(self, request_id, message, log):
        log.warning("%s, parking request for the import sweep", message)
        self.store.update_request(request_id, status="awaiting_import", error_message=message)
        return {"success": False, "message": message}

    def organize(self, request_id, audiobook_id, download_path, job_id=None):
        log = JobLogger(job_id, "Organize", activity=self.activity, request_id=request_id)
        request = self.store.get_request(request_id)
        if request is None:
            log.warning("Request %s not found, nothing to organize", request_id)
            return {"success": False, "message": "Request not found"}
        if request["status"] in ("downloaded", "available"):
            log.info("Request already organized")
            return {"success": True, "skipped": True}
        if request["status"] not in ("processing", "awaiting_import"):
            log.warning("Request is %s, not organizing", request["status"])
            return {"success": False, "message": f"Request is {request['status']}"}

        media_dir = self.config.get("media_dir")
        if not media_dir:
            return self._park(request_id, "Media directory not configured", log)
        if not download_path or not os.path.exists(download_path):
            return self._park(request_id, f"Download path not found: {download_path}", log)

        audiobook = self.store.get_audiobook(audiobook_id) or request["audiobook"]
        try:
            dest_dir = organize_path(download_path, media_dir, audiobook.get("title"), audiobook.get("author"))
        except OSError as e:
            return self._park(request_id, f"Failed to organize files: {e}", log)

        self.store.update_request(
            request_id,
            status="downloaded",
            progress=100,
            error_message=None,
            completed_at=time.time(),
        )
        log.info("Organized into %s", dest_dir)
        return {"success": True, "path": dest_dir}
