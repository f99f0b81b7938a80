"""Runtime configuration stored in the `configuration` table.

Priority: environment variables > configuration table > defaults.
"""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time

from db_migrations import apply_migrations

logger = logging.getLogger("readmeabook")

DEFAULTS = {
    "ebook_sidecar_enabled": "false",
    "ebook_sidecar_base_url": "https://annas-archive.li",
    "ebook_sidecar_preferred_format": "epub",
    "ebook_sidecar_flaresolverr_url": "",
    "download_client_disable_ssl_verify": "false",
    "download_client_remote_path_mapping_enabled": "false",
}

SECRET_KEYS = ("download_client_password", "prowlarr_api_key")


class ConfigService:
    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._listeners = []
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        with self._connect() as conn:
            apply_migrations(conn)

    def _connect(self):
        conn = sqlite3.connect(self._db_path, timeout=10)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @staticmethod
    def _env(key):
        return os.getenv(key.upper(), "")

    def get(self, key, default=None):
        """Get a config value: env var wins, then the stored row, then defaults."""
        env_val = self._env(key)
        if env_val:
            return env_val
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM configuration WHERE key = ?", (key,)).fetchone()
        if row is not None:
            return row[0]
        if default is not None:
            return default
        return DEFAULTS.get(key)

    def get_many(self, keys):
        """Values for the keys that have one. Missing keys are omitted."""
        keys = list(keys)
        result = {}
        if keys:
            placeholders = ", ".join("?" for _ in keys)
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT key, value FROM configuration WHERE key IN ({placeholders})",
                    keys,
                ).fetchall()
            result = {k: v for k, v in rows}
        for key in keys:
            env_val = self._env(key)
            if env_val:
                result[key] = env_val
            elif key not in result and key in DEFAULTS:
                result[key] = DEFAULTS[key]
        return result

    def get_category(self, category):
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key, value FROM configuration WHERE category = ? ORDER BY key",
                (category,),
            ).fetchall()
        return {k: v for k, v in rows}

    def set(self, key, value, category=None, description=None):
        self.set_many([{"key": key, "value": value, "category": category, "description": description}])

    def set_many(self, items):
        """Upsert several keys in one transaction.

        `items` is either a plain ``{key: value}`` dict or a list of
        ``{"key", "value", "category", "description"}`` dicts.
        """
        if isinstance(items, dict):
            items = [{"key": k, "value": v} for k, v in items.items()]
        now = time.time()
        changed = set()
        with self._lock:
            with self._connect() as conn:
                for item in items:
                    key = item["key"]
                    value = item.get("value")
                    value = "" if value is None else str(value)
                    conn.execute(
                        """INSERT INTO configuration (key, value, category, description, updated_at)
                           VALUES (?, ?, ?, ?, ?)
                           ON CONFLICT(key) DO UPDATE SET
                               value = excluded.value,
                               category = COALESCE(excluded.category, configuration.category),
                               description = COALESCE(excluded.description, configuration.description),
                               updated_at = excluded.updated_at""",
                        (key, value, item.get("category"), item.get("description"), now),
                    )
                    changed.add(key)
        if changed:
            self._notify(changed)
        return changed

    def on_change(self, callback):
        """Register a listener called with the set of changed keys after each write."""
        self._listeners.append(callback)
        return callback

    def _notify(self, changed):
        for callback in list(self._listeners):
            try:
                callback(frozenset(changed))
            except Exception as e:
                logger.error("Config change listener failed: %s", e)
