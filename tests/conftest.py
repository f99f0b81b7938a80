import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import telemetry  # noqa: E402
from activity_log import ActivityLog  # noqa: E402
from config_service import ConfigService  # noqa: E402
from db_migrations import apply_migrations  # noqa: E402
from job_queue import JobQueue  # noqa: E402
from request_events import record_request_status_transition, request_transition_allowed  # noqa: E402
from request_store import RequestStore  # noqa: E402


class FakeResponse:
    def __init__(self, status_code=200, text="", json_data=None, headers=None, chunks=None, url=None):
        self.status_code = status_code
        self.text = text
        self._json = json_data
        self.headers = headers or {}
        self._chunks = chunks or []
        self.url = url

    def json(self):
        if self._json is None:
            raise ValueError("no json")
        return self._json

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    def raise_for_status(self):
        if self.status_code >= 400:
            import requests
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeRequestsSession:
    """Records calls and replays responses keyed by (method, url-suffix)."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.verify = True

    def _reply(self, method, url, kwargs):
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), reply in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if callable(reply):
                    reply = reply(url, kwargs)
                if isinstance(reply, Exception):
                    raise reply
                return reply
        raise AssertionError(f"Unexpected {method} {url}")

    def request(self, method, url, **kwargs):
        return self._reply(method, url, kwargs)

    def get(self, url, **kwargs):
        return self._reply("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._reply("POST", url, kwargs)


@pytest.fixture(autouse=True)
def _no_webhooks(monkeypatch):
    monkeypatch.delenv("RMAB_WEBHOOK_URLS", raising=False)
    for key in (
        "DOWNLOADS_DIR",
        "DOWNLOAD_DIR",
        "MEDIA_DIR",
        "DOWNLOAD_CLIENT_TYPE",
        "DOWNLOAD_CLIENT_URL",
        "DOWNLOAD_CLIENT_PASSWORD",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "rmab.db")


@pytest.fixture
def store(db_path):
    return RequestStore(
        db_path,
        apply_migrations=apply_migrations,
        logger=logging.getLogger("readmeabook"),
        telemetry=telemetry,
        transition_allowed=request_transition_allowed,
        record_transition=lambda request_id, old, new, row: record_request_status_transition(
            request_id, old, new, row, telemetry=telemetry,
        ),
    )


@pytest.fixture
def job_queue(db_path):
    return JobQueue(
        db_path,
        apply_migrations=apply_migrations,
        logger=logging.getLogger("readmeabook"),
        telemetry=telemetry,
        max_retries=2,
        retry_backoff_sec=60,
    )


@pytest.fixture
def config_service(db_path):
    return ConfigService(db_path)


@pytest.fixture
def activity(db_path):
    return ActivityLog(db_path)


@pytest.fixture
def make_request(store):
    """Create an audiobook request and walk it to `status`."""
    paths = {
        "pending": [],
        "searching": ["searching"],
        "awaiting_search": ["awaiting_search"],
        "downloading": ["downloading"],
        "processing": ["downloading", "processing"],
        "awaiting_import": ["downloading", "awaiting_import"],
        "downloaded": ["downloading", "processing", "downloaded"],
        "available": ["downloading", "processing", "downloaded", "available"],
        "failed": ["failed"],
        "cancelled": ["cancelled"],
    }

    def _make(status="pending", title="Dune", author="Frank Herbert", request_type="audiobook", parent=None):
        audiobook_id = store.add_audiobook(title, author)
        row = store.create_request(audiobook_id, request_type=request_type, parent_request_id=parent)
        for step in paths[status]:
            row = store.update_request(row["id"], status=step)
        assert row["status"] == status
        return row

    return _make
