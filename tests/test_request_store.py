import pytest

import telemetry
from request_store import RequestNotFound


def _invalid_count():
    return sum(
        value for (name, _labels), value in telemetry.metrics.snapshot().items()
        if name == "rmab_request_invalid_transitions_total"
    )


def test_create_request_joins_audiobook(store):
    audiobook_id = store.add_audiobook("Dune", "Frank Herbert", asin="B002V1OF70")
    row = store.create_request(audiobook_id, user_id="u1")
    assert row["status"] == "pending"
    assert row["type"] == "audiobook"
    assert row["audiobook"] == {
        "id": audiobook_id,
        "title": "Dune",
        "author": "Frank Herbert",
        "asin": "B002V1OF70",
    }


def test_update_request_clamps_progress(make_request, store):
    row = make_request("downloading")
    assert store.update_request(row["id"], progress=140)["progress"] == 100
    assert store.update_request(row["id"], progress=-5)["progress"] == 0


def test_invalid_transition_is_rejected_and_counted(make_request, store):
    row = make_request("pending")
    before = _invalid_count()
    updated = store.update_request(row["id"], status="downloaded", error_message="kept")
    assert updated["status"] == "pending"
    assert updated["error_message"] == "kept"
    assert _invalid_count() == before + 1


def test_update_unknown_request_raises(store):
    with pytest.raises(RequestNotFound):
        store.update_request("missing", status="failed")


def test_soft_deleted_requests_are_hidden(make_request, store):
    row = make_request("pending")
    store.soft_delete_request(row["id"])
    assert store.get_request(row["id"]) is None
    assert store.get_request(row["id"], include_deleted=True) is not None
    assert store.list_requests() == []
    assert store.count_by_status() == {}


def test_only_one_selected_history_row(make_request, store):
    row = make_request("searching")
    first = store.create_download_history(row["id"], download_client="qbittorrent", torrent_name="a")
    second = store.create_download_history(row["id"], download_client="qbittorrent", torrent_name="b")
    assert store.get_selected_download_history(row["id"])["id"] == second["id"]
    assert store.get_download_history(first["id"])["selected"] is False

    store.update_download_history(first["id"], selected=True)
    assert store.get_selected_download_history(row["id"])["id"] == first["id"]
    assert store.get_download_history(second["id"])["selected"] is False


def test_hash_and_nzb_id_are_mutually_exclusive(make_request, store):
    row = make_request("searching")
    history = store.create_download_history(row["id"], download_client="sabnzbd")
    store.set_client_download_id(history["id"], "sabnzbd", "SABnzbd_nzo_1")
    updated = store.set_client_download_id(history["id"], "qbittorrent", "abc123")
    assert updated["torrent_hash"] == "abc123"
    assert updated["nzb_id"] is None


def test_update_download_history_rejects_unknown_fields(make_request, store):
    row = make_request("searching")
    history = store.create_download_history(row["id"], download_client="direct")
    with pytest.raises(ValueError):
        store.update_download_history(history["id"], bogus=1)


def test_candidates_keep_their_order(make_request, store):
    row = make_request("searching")
    urls = ["https://m1/a", "https://m2/b", "https://m3/c"]
    history = store.create_download_history(row["id"], download_client="direct", candidate_urls=urls)
    assert store.get_download_candidates(history["id"]) == urls

    store.set_download_candidates(history["id"], ["https://m9/z"])
    assert store.get_download_candidates(history["id"]) == ["https://m9/z"]


def test_find_awaiting_import_attaches_history(make_request, store):
    stuck = make_request("awaiting_import")
    make_request("downloading")
    store.create_download_history(stuck["id"], download_client="qbittorrent", torrent_name="Dune")

    found = store.find_awaiting_import()
    assert [r["id"] for r in found] == [stuck["id"]]
    assert found[0]["download_history"]["torrent_name"] == "Dune"


def test_find_child_request(make_request, store):
    parent = make_request("downloaded")
    child = store.create_request(
        parent["audiobook_id"], request_type="ebook", parent_request_id=parent["id"], status="searching",
    )
    assert store.find_child_request(parent["id"])["id"] == child["id"]
    assert store.find_child_request(parent["id"], "audiobook") is None


def test_count_by_status(make_request, store):
    make_request("pending")
    make_request("pending")
    make_request("failed")
    assert store.count_by_status() == {"pending": 2, "failed": 1}
