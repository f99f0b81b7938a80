"""Logger handed to job processors: prefixes lines and mirrors them to the activity log."""
from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger("readmeabook")


class JobLogger:
    def __init__(self, job_id, context, activity=None, request_id=None):
        self.job_id = job_id or ""
        self.context = context
        self.activity = activity
        self.request_id = request_id

    def _record(self, level, event_type, message, args):
        text = message % args if args else message
        logger.log(level, "[%s] %s", self.context, text)
        if self.activity is None:
            return
        try:
            self.activity.log_event(event_type, detail=f"[{self.context}] {text}",
                                    request_id=self.request_id, job_id=self.job_id)
        except sqlite3.Error as e:
            logger.warning("[%s] could not record activity: %s", self.context, e)

    def info(self, message, *args):
        self._record(logging.INFO, "info", message, args)

    def warning(self, message, *args):
        self._record(logging.WARNING, "warning", message, args)

    warn = warning

    def error(self, message, *args):
        self._record(logging.ERROR, "error", message, args)

    def debug(self, message, *args):
        # not persisted
        logger.debug("[%s] " + message, self.context, *args)
