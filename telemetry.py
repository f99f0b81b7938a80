"""Lightweight runtime telemetry for ReadMeABook (webhooks + Prometheus counters)."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import socket
import threading
import time
from collections import defaultdict
from typing import Dict, Iterable, Tuple

import requests

logger = logging.getLogger("readmeabook")


HELP_TEXT = {
    "rmab_request_transitions_total": "Count of request status transitions.",
    "rmab_request_terminal_total": "Count of request terminal outcomes.",
    "rmab_request_invalid_transitions_total": "Count of rejected invalid request status transitions.",
    "rmab_jobs_enqueued_total": "Count of jobs enqueued by type.",
    "rmab_job_terminal_total": "Count of job terminal outcomes.",
    "rmab_job_retry_scheduled_total": "Count of scheduled job retries.",
    "rmab_webhooks_total": "Count of webhook delivery attempts/results.",
    "rmab_webhook_events_total": "Count of webhook events emitted.",
}


class Metrics:
    """In-memory counter registry with Prometheus text rendering."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = defaultdict(float)

    def inc(self, name: str, amount: float = 1.0, **labels):
        key = (name, tuple(sorted((k, str(v)) for k, v in labels.items())))
        with self._lock:
            self._counters[key] += amount

    def snapshot(self):
        with self._lock:
            return dict(self._counters)

    def render(self, dynamic_lines: Iterable[str] | None = None) -> str:
        """Prometheus text exposition; each family's HELP/TYPE precedes its samples."""
        families: Dict[str, list] = {}
        for (name, labels), value in sorted(self.snapshot().items()):
            families.setdefault(name, []).append((labels, value))
        lines = []
        for name, samples in families.items():
            lines.append(f"# HELP {name} {HELP_TEXT.get(name, name)}")
            lines.append(f"# TYPE {name} counter")
            for labels, value in samples:
                if labels:
                    label_str = ",".join(f'{k}="{_escape(v)}"' for k, v in labels)
                    lines.append(f"{name}{{{label_str}}} {value}")
                else:
                    lines.append(f"{name} {value}")
        lines.extend(dynamic_lines or [])
        return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


metrics = Metrics()


def _split_env_list(name):
    raw = os.getenv(name, "").strip()
    return [part.strip() for part in raw.replace("\n", ",").split(",") if part.strip()]


def _wants_event(event_type: str) -> bool:
    """RMAB_WEBHOOK_EVENTS limits delivery to the listed event types (all when unset)."""
    wanted = _split_env_list("RMAB_WEBHOOK_EVENTS")
    return not wanted or event_type in wanted


def sign_body(body: bytes, secret: str) -> str:
    if not secret:
        return ""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def emit_event(event_type: str, payload=None):
    """Emit a webhook event asynchronously (best effort)."""
    payload = dict(payload or {})
    payload.setdefault("ts", time.time())
    payload.setdefault("host", socket.gethostname())
    payload["event"] = event_type
    metrics.inc("rmab_webhook_events_total", event=event_type)

    urls = _split_env_list("RMAB_WEBHOOK_URLS")
    if not urls or not _wants_event(event_type):
        metrics.inc("rmab_webhooks_total", result="skipped", event=event_type)
        return

    threading.Thread(target=_post_event, args=(event_type, payload, urls), daemon=True).start()


def _post_event(event_type: str, payload: dict, urls):
    timeout = float(os.getenv("RMAB_WEBHOOK_TIMEOUT_SEC", "5"))
    body = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    headers = {"Content-Type": "application/json", "User-Agent": "ReadMeABook/telemetry"}
    signature = sign_body(body, os.getenv("RMAB_WEBHOOK_SECRET", ""))
    if signature:
        headers["X-ReadMeABook-Signature"] = signature
    for url in urls:
        try:
            resp = requests.post(url, data=body, headers=headers, timeout=timeout)
        except requests.RequestException as exc:  # pragma: no cover - network failure path
            metrics.inc("rmab_webhooks_total", result="error", event=event_type)
            logger.warning("Webhook %s failed: %s", url, exc)
            continue
        metrics.inc("rmab_webhooks_total", result="sent", event=event_type, code=f"{resp.status_code // 100}xx")
        if resp.status_code >= 400:
            logger.warning("Webhook %s returned HTTP %s", url, resp.status_code)
