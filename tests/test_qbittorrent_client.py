import pytest
import requests

from conftest import FakeRequestsSession, FakeResponse
from download_clients import DownloadClientError, qbittorrent
from download_clients.qbittorrent import QBittorrentClient, info_hash_from_magnet

HASH = "0123456789abcdef0123456789abcdef01234567"


def _client(routes):
    session = FakeRequestsSession({("POST", "/api/v2/auth/login"): FakeResponse(text="Ok."), **routes})
    return QBittorrentClient("http://qb:8080/", "jam", "1301", session=session), session


def test_unreachable_login_sets_backoff():
    session = FakeRequestsSession({("POST", "/api/v2/auth/login"): requests.ConnectionError("down")})
    client = QBittorrentClient("http://qb:8080", "jam", "1301", session=session)

    assert client.login() is False
    assert client.last_error["kind"] == "unreachable"
    assert client.last_error.get("retry_in_sec", 0) >= 1

    # a second login during backoff makes no HTTP call
    call_count = len(session.calls)
    assert client.login() is False
    assert len(session.calls) == call_count
    assert client.last_error["kind"] == "cooldown"


def test_add_download_short_circuits_during_backoff():
    session = FakeRequestsSession()
    client = QBittorrentClient("http://qb:8080", "jam", "1301", session=session)
    client._next_login_after = qbittorrent.time.time() + 10

    with pytest.raises(DownloadClientError) as exc:
        client.add_download(f"magnet:?xt=urn:btih:{HASH}", name="Dune")
    assert exc.value.kind == "cooldown"
    assert session.calls == []


def test_wrong_password_is_auth_failed():
    session = FakeRequestsSession({("POST", "/api/v2/auth/login"): FakeResponse(text="Fails.")})
    client = QBittorrentClient("http://qb:8080", "jam", "bad", session=session)
    ok, message = client.test_connection()
    assert ok is False
    assert "username/password" in message


def test_add_magnet_returns_hash_without_lookup():
    client, session = _client({("POST", "/api/v2/torrents/add"): FakeResponse(text="Ok.")})
    assert client.add_download(f"magnet:?xt=urn:btih:{HASH.upper()}&dn=Dune", name="Dune") == HASH

    add_call = [c for c in session.calls if c[1].endswith("torrents/add")][0]
    data = add_call[2]["data"]
    assert data["category"] == "readmeabook"
    assert data["tags"].startswith("rmab-")
    assert "rename" not in data


def test_add_torrent_url_resolves_hash_by_tag():
    client, session = _client({
        ("POST", "/api/v2/torrents/add"): FakeResponse(text="Ok."),
        ("GET", "/api/v2/torrents/info"): FakeResponse(json_data=[{"hash": HASH.upper()}]),
    })
    assert client.add_download("http://indexer/download/42.torrent") == HASH
    info_call = [c for c in session.calls if c[1].endswith("torrents/info")][0]
    assert info_call[2]["params"]["tag"].startswith("rmab-")


def test_base32_magnet_hash():
    assert info_hash_from_magnet("magnet:?xt=urn:btih:AERUKZ4JVPG66AJDIVTYTK6N54ASGRLH") == (
        "0123456789abcdef0123456789abcdef01234567"
    )
    assert info_hash_from_magnet("http://not-a-magnet") is None


def test_get_status_maps_completed_torrent():
    torrent = {
        "hash": HASH,
        "name": "Dune",
        "state": "stalledUP",
        "progress": 1.0,
        "dlspeed": 0,
        "eta": 8640000,
        "save_path": "/downloads/",
    }
    client, _ = _client({("GET", "/api/v2/torrents/info"): FakeResponse(json_data=[torrent])})
    status = client.get_status(HASH)
    assert status.state == "completed"
    assert status.progress == 100.0
    assert status.eta is None
    assert status.download_path == "/downloads/Dune"


def test_get_status_unknown_hash_is_none():
    client, _ = _client({("GET", "/api/v2/torrents/info"): FakeResponse(json_data=[])})
    assert client.get_status(HASH) is None


def test_call_relogs_in_once_on_403():
    replies = iter([FakeResponse(status_code=403), FakeResponse(text="v4.6.2")])
    client, session = _client({("GET", "/api/v2/app/version"): lambda url, kw: next(replies)})
    assert client.get_version() == "v4.6.2"
    logins = [c for c in session.calls if c[1].endswith("auth/login")]
    assert len(logins) == 2


def test_pause_falls_back_to_stop_on_qbittorrent_5():
    client, session = _client({
        ("POST", "/api/v2/torrents/pause"): FakeResponse(status_code=404),
        ("POST", "/api/v2/torrents/stop"): FakeResponse(text=""),
    })
    assert client.pause(HASH) is True
    assert session.calls[-1][1].endswith("torrents/stop")
