from download_clients import CLIENT_PROTOCOLS, DownloadClientError
from job_queue import JOB_ORGANIZE
from retry_imports_processor import RetryImportsProcessor

HASH = "0123456789abcdef0123456789abcdef01234567"


class FakeQbClient:
    def __init__(self, torrents=None, error=None):
        self.torrents = torrents or {}
        self.error = error

    def get_torrent(self, torrent_hash):
        if self.error:
            raise self.error
        return self.torrents.get(torrent_hash)


class FakeSabClient:
    def __init__(self, nzbs=None, error=None):
        self.nzbs = nzbs or {}
        self.error = error

    def get_nzb(self, nzo_id):
        if self.error:
            raise self.error
        return self.nzbs.get(nzo_id)


class FakeClientManager:
    def __init__(self, client=None, client_type="qbittorrent"):
        self.client = client
        self._type = client_type

    def client_type(self):
        return self._type

    def protocol(self):
        return CLIENT_PROTOCOLS.get(self._type)

    def get_client(self):
        return self.client


def _stuck(store, make_request, client_type="qbittorrent", download_id=None, torrent_name="Dune", **fields):
    request = make_request("awaiting_import")
    history = store.create_download_history(
        request["id"], download_client=client_type, torrent_name=torrent_name, download_status="completed",
    )
    if download_id:
        store.set_client_download_id(history["id"], client_type, download_id)
    if fields:
        store.update_download_history(history["id"], **fields)
    return request


def _run(store, config_service, job_queue, activity, manager):
    proc = RetryImportsProcessor(
        store=store,
        config_service=config_service,
        job_queue=job_queue,
        client_manager=manager,
        activity=activity,
    )
    return proc.run(job_id="sweep-1")


def _organize_paths(job_queue):
    return sorted(j["payload"]["download_path"] for j in job_queue.list_jobs(job_type=JOB_ORGANIZE))


def test_nothing_awaiting_import(store, config_service, job_queue, activity):
    result = _run(store, config_service, job_queue, activity, FakeClientManager())
    assert result == {
        "success": True,
        "message": "No requests awaiting import",
        "total_requests": 0,
        "triggered": 0,
        "skipped": 0,
    }


def test_qbittorrent_path_is_mapped(store, config_service, job_queue, activity, make_request):
    config_service.set_many({
        "download_client_remote_path_mapping_enabled": "true",
        "download_client_remote_path": "/data/torrents",
        "download_client_local_path": "/mnt/torrents",
    })
    _stuck(store, make_request, download_id=HASH)
    client = FakeQbClient({HASH: {"hash": HASH, "name": "Dune", "save_path": "/data/torrents"}})

    result = _run(store, config_service, job_queue, activity, FakeClientManager(client))

    assert result["triggered"] == 1
    assert result["message"] == "Triggered 1/1 organize jobs (0 skipped)"
    assert _organize_paths(job_queue) == ["/mnt/torrents/Dune"]


def test_qbittorrent_missing_torrent_uses_download_dir(store, config_service, job_queue, activity, make_request):
    config_service.set("download_dir", "/downloads")
    _stuck(store, make_request, download_id=HASH)
    manager = FakeClientManager(FakeQbClient(error=DownloadClientError("down", kind="unreachable")))

    result = _run(store, config_service, job_queue, activity, manager)

    assert result["triggered"] == 1
    assert _organize_paths(job_queue) == ["/downloads/Dune"]


def test_sabnzbd_storage_path_and_error_skip(store, config_service, job_queue, activity, make_request):
    _stuck(store, make_request, client_type="sabnzbd", download_id="nzo_1")
    client = FakeSabClient({"nzo_1": {"download_path": "/complete/Dune"}})

    result = _run(store, config_service, job_queue, activity, FakeClientManager(client, "sabnzbd"))
    assert result["triggered"] == 1
    assert _organize_paths(job_queue) == ["/complete/Dune"]


def test_sabnzbd_lookup_error_skips_request(store, config_service, job_queue, activity, make_request):
    _stuck(store, make_request, client_type="sabnzbd", download_id="nzo_1")
    client = FakeSabClient(error=DownloadClientError("SABnzbd error: API Key Incorrect", kind="auth_failed"))

    result = _run(store, config_service, job_queue, activity, FakeClientManager(client, "sabnzbd"))

    assert result["triggered"] == 0
    assert result["skipped"] == 1
    assert _organize_paths(job_queue) == []


def test_direct_download_uses_stored_path(store, config_service, job_queue, activity, make_request):
    _stuck(store, make_request, client_type="direct", download_path="/books/Dune.epub")

    result = _run(store, config_service, job_queue, activity, FakeClientManager(None, None))

    assert result["triggered"] == 1
    assert _organize_paths(job_queue) == ["/books/Dune.epub"]


def test_missing_history_or_name_is_skipped(store, config_service, job_queue, activity, make_request):
    config_service.set("download_dir", "/downloads")
    make_request("awaiting_import")
    _stuck(store, make_request, client_type="qbittorrent", torrent_name=None)
    _stuck(store, make_request, client_type="qbittorrent", torrent_name="Kept")

    result = _run(store, config_service, job_queue, activity, FakeClientManager(FakeQbClient()))

    assert result["total_requests"] == 3
    assert result["triggered"] == 1
    assert result["skipped"] == 2
    assert _organize_paths(job_queue) == ["/downloads/Kept"]


def test_one_bad_item_does_not_stop_the_sweep(store, config_service, job_queue, activity, make_request, monkeypatch):
    config_service.set("download_dir", "/downloads")
    _stuck(store, make_request, torrent_name="First")
    _stuck(store, make_request, torrent_name="Second")

    original = job_queue.add_organize_job
    calls = []

    def flaky(request_id, audiobook_id, path):
        calls.append(path)
        if len(calls) == 1:
            raise RuntimeError("queue is full")
        return original(request_id, audiobook_id, path)

    monkeypatch.setattr(job_queue, "add_organize_job", flaky)

    result = _run(store, config_service, job_queue, activity, FakeClientManager(FakeQbClient()))

    assert result["triggered"] == 1
    assert result["skipped"] == 1
    assert len(calls) == 2


def test_sweep_handles_at_most_one_batch(store, config_service, job_queue, activity, make_request):
    for i in range(55):
        _stuck(store, make_request, client_type="direct", download_path=f"/books/{i}.epub")

    result = _run(store, config_service, job_queue, activity, FakeClientManager(None, None))

    assert result["total_requests"] == 50
    assert result["triggered"] == 50
    assert len(_organize_paths(job_queue)) == 50
