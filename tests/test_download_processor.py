import pytest

from download_clients import CLIENT_PROTOCOLS, DownloadClientError, DownloadStatus
from download_processor import DownloadProcessor
from job_queue import JOB_MONITOR_DOWNLOAD, JOB_ORGANIZE

HASH = "0123456789abcdef0123456789abcdef01234567"


class FakeTorrentClient:
    def __init__(self, statuses=None, add_error=None):
        self.statuses = list(statuses or [])
        self.add_error = add_error
        self.added = []

    def add_download(self, url, name="", category=None):
        if self.add_error:
            raise self.add_error
        self.added.append((url, name))
        return HASH

    def get_status(self, download_id):
        status = self.statuses.pop(0)
        if isinstance(status, Exception):
            raise status
        return status


class FakeClientManager:
    def __init__(self, client, client_type="qbittorrent"):
        self.client = client
        self._type = client_type

    def client_type(self):
        return self._type

    def protocol(self):
        return CLIENT_PROTOCOLS.get(self._type)

    def get_client(self):
        return self.client


def _processor(store, config_service, job_queue, activity, manager, max_polls=100):
    return DownloadProcessor(
        store=store,
        config_service=config_service,
        job_queue=job_queue,
        client_manager=manager,
        activity=activity,
        poll_interval_sec=10,
        max_polls=max_polls,
    )


def _downloading(store, make_request, client_type="qbittorrent", torrent_name="Dune"):
    request = make_request("downloading")
    history = store.create_download_history(
        request["id"], download_client=client_type, torrent_name=torrent_name, download_status="downloading",
    )
    store.set_client_download_id(history["id"], client_type, HASH)
    return request, history


RESULT = {
    "title": "Dune [Unabridged]",
    "indexer": "AudioBookBay",
    "protocol": "torrent",
    "download_url": f"magnet:?xt=urn:btih:{HASH}",
    "size": 1234,
    "score": 88,
}


def test_download_adds_torrent_and_schedules_monitor(store, config_service, job_queue, activity, make_request):
    request = make_request("searching")
    client = FakeTorrentClient()
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(client))

    result = proc.download(request["id"], {"title": "Dune"}, RESULT, job_id="j1")

    assert result["success"] is True
    assert client.added == [(RESULT["download_url"], "Dune [Unabridged]")]
    history = store.get_download_history(result["download_history_id"])
    assert history["torrent_hash"] == HASH
    assert history["download_status"] == "downloading"
    assert history["indexer_name"] == "AudioBookBay"
    assert store.get_request(request["id"])["status"] == "downloading"
    monitor = job_queue.list_jobs(job_type=JOB_MONITOR_DOWNLOAD)[0]
    assert monitor["payload"]["poll_count"] == 0
    assert monitor["payload"]["download_client"] == "qbittorrent"
    assert monitor["run_at"] > monitor["created_at"]


def test_download_reuses_queued_selected_history(store, config_service, job_queue, activity, make_request):
    request = make_request("searching")
    queued = store.create_download_history(request["id"], download_client="qbittorrent", torrent_name="Dune")
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient()))

    result = proc.download(request["id"], {"title": "Dune"}, RESULT)

    assert result["download_history_id"] == queued["id"]
    assert len(store.list_download_history(request["id"])) == 1


def test_download_rejects_protocol_mismatch(store, config_service, job_queue, activity, make_request):
    request = make_request("searching")
    client = FakeTorrentClient()
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(client, "sabnzbd"))

    result = proc.download(request["id"], {"title": "Dune"}, RESULT)

    assert result["success"] is False
    assert client.added == []
    assert store.get_request(request["id"])["status"] == "failed"


def test_download_client_error_fails_request(store, config_service, job_queue, activity, make_request):
    request = make_request("searching")
    client = FakeTorrentClient(add_error=DownloadClientError("qBittorrent refused torrent", kind="add_failed"))
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(client))

    result = proc.download(request["id"], {"title": "Dune"}, RESULT)

    assert result == {"success": False, "message": "Failed to add download: qBittorrent refused torrent"}
    history = store.list_download_history(request["id"])[0]
    assert history["download_status"] == "failed"


def test_monitor_in_progress_caps_progress_and_reschedules(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request)
    status = DownloadStatus(state="downloading", progress=100.0)
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([status])))

    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent", poll_count=3)

    assert result["completed"] is False
    assert result["poll_count"] == 4
    assert store.get_request(request["id"])["progress"] == 99
    jobs = job_queue.list_jobs(job_type=JOB_MONITOR_DOWNLOAD)
    assert [j["payload"]["poll_count"] for j in jobs] == [4]


def test_monitor_completion_maps_path_and_enqueues_organize(
    store, config_service, job_queue, activity, make_request,
):
    config_service.set_many({
        "download_client_remote_path_mapping_enabled": "true",
        "download_client_remote_path": "/downloads",
        "download_client_local_path": "/mnt/downloads",
    })
    request, history = _downloading(store, make_request)
    status = DownloadStatus(state="completed", progress=100.0, name="Dune", download_path="/downloads/Dune")
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([status])))

    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent")

    assert result == {"success": True, "completed": True, "path": "/mnt/downloads/Dune"}
    row = store.get_request(request["id"])
    assert row["status"] == "processing"
    assert row["progress"] == 100
    assert store.get_download_history(history["id"])["download_path"] == "/mnt/downloads/Dune"
    organize = job_queue.list_jobs(job_type=JOB_ORGANIZE)
    assert len(organize) == 1
    assert organize[0]["payload"]["download_path"] == "/mnt/downloads/Dune"


def test_monitor_completion_uses_download_dir_fallback(store, config_service, job_queue, activity, make_request):
    config_service.set("download_dir", "/downloads")
    request, history = _downloading(store, make_request, client_type="sabnzbd", torrent_name="Dune")
    status = DownloadStatus(state="completed", progress=100.0)
    proc = _processor(
        store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([status]), "sabnzbd"),
    )

    result = proc.monitor(request["id"], history["id"], HASH, "sabnzbd")

    assert result["path"] == "/downloads/Dune"


def test_completion_without_path_parks_for_import(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request, torrent_name=None)
    status = DownloadStatus(state="completed", progress=100.0)
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([status])))

    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent")

    assert result["success"] is False
    assert store.get_request(request["id"])["status"] == "awaiting_import"
    assert job_queue.list_jobs(job_type=JOB_ORGANIZE) == []


def test_second_completion_tick_does_not_enqueue_again(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request)
    done = DownloadStatus(state="completed", progress=100.0, download_path="/downloads/Dune")
    proc = _processor(
        store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([done, done])),
    )

    proc.monitor(request["id"], history["id"], HASH, "qbittorrent")
    assert proc.monitor(request["id"], history["id"], HASH, "qbittorrent") == {"success": True, "stopped": True}
    assert len(job_queue.list_jobs(job_type=JOB_ORGANIZE)) == 1


@pytest.mark.parametrize("status, message", [
    (None, f"Download {HASH} not found in qbittorrent"),
    (DownloadStatus(state="failed", message="qBittorrent reported state missingFiles"),
     "qBittorrent reported state missingFiles"),
])
def test_monitor_missing_or_failed_download(store, config_service, job_queue, activity, make_request, status, message):
    request, history = _downloading(store, make_request)
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient([status])))

    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent")

    assert result == {"success": False, "message": message}
    assert store.get_request(request["id"])["error_message"] == message
    assert store.get_download_history(history["id"])["download_status"] == "failed"


def test_monitor_client_error_reschedules_until_max_polls(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request)
    error = DownloadClientError("Timed out connecting to qBittorrent", kind="timeout")
    proc = _processor(
        store, config_service, job_queue, activity,
        FakeClientManager(FakeTorrentClient([error, error])), max_polls=2,
    )

    assert proc.monitor(request["id"], history["id"], HASH, "qbittorrent", poll_count=0)["poll_count"] == 1
    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent", poll_count=1)
    assert result == {"success": False, "message": "Download timed out"}
    assert store.get_request(request["id"])["status"] == "failed"


def test_monitor_fails_when_client_changed(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request)
    proc = _processor(
        store, config_service, job_queue, activity, FakeClientManager(FakeTorrentClient(), "sabnzbd"),
    )

    result = proc.monitor(request["id"], history["id"], HASH, "qbittorrent")

    assert result["success"] is False
    assert "changed" in result["message"]


def test_unexpected_add_error_marks_request_failed(store, config_service, job_queue, activity, make_request):
    request = make_request("searching")
    client = FakeTorrentClient(add_error=RuntimeError("boom"))
    proc = _processor(store, config_service, job_queue, activity, FakeClientManager(client))

    with pytest.raises(RuntimeError, match="boom"):
        proc.download(request["id"], {"title": "Dune"}, RESULT)

    row = store.get_request(request["id"])
    assert row["status"] == "failed"
    assert row["error_message"] == "boom"


def test_unexpected_status_error_marks_request_failed(store, config_service, job_queue, activity, make_request):
    request, history = _downloading(store, make_request)
    manager = FakeClientManager(FakeTorrentClient([RuntimeError("database is locked")]))
    proc = _processor(store, config_service, job_queue, activity, manager)

    with pytest.raises(RuntimeError):
        proc.monitor(request["id"], history["id"], HASH, "qbittorrent")

    row = store.get_request(request["id"])
    assert row["status"] == "failed"
    assert row["error_message"] == "database is locked"
    assert job_queue.list_jobs(job_type=JOB_MONITOR_DOWNLOAD) == []
