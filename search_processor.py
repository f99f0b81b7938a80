"""Indexer search through Prowlarr, pre-filtered to the active client's protocol."""
from __future__ import annotations

import logging

import requests

from job_logger import JobLogger

logger = logging.getLogger("readmeabook")

AUDIOBOOK_CATEGORIES = [3030]
EBOOK_CATEGORIES = [7000, 7020]


def search_prowlarr(url, api_key, query, categories, session=None):
    session = session or requests
    resp = session.get(
        f"{url.rstrip('/')}/api/v1/search",
        params={"query": query, "categories": categories, "type": "search", "limit": 50},
        headers={"X-Api-Key": api_key},
        timeout=30,
    )
    resp.raise_for_status()
    results = []
    for item in resp.json() or []:
        results.append({
            "title": item.get("title", ""),
            "size": item.get("size", 0),
            "seeders": item.get("seeders") or 0,
            "grabs": item.get("grabs") or 0,
            "indexer": item.get("indexer", ""),
            "protocol": (item.get("protocol") or "").lower(),
            "download_url": item.get("downloadUrl") or "",
            "magnet_url": item.get("magnetUrl") or "",
            "info_hash": item.get("infoHash") or "",
        })
    return results


def pick_result(results, protocol):
    """Best result for `protocol`: most seeders (torrent) or grabs (usenet)."""
    usable = [
        r for r in results
        if r["protocol"] == protocol and (r["download_url"] or r["magnet_url"])
    ]
    if not usable:
        return None
    return max(usable, key=lambda r: (r["seeders"], r["grabs"], r["size"] or 0))


class SearchProcessor:
    def __init__(self, *, store, config_service, job_queue, client_manager, activity=None, session=None):
        self.store = store
        self.config = config_service
        self.jobs = job_queue
        self.clients = client_manager
        self.activity = activity
        self.session = session

    def _no_result(self, request_id, message, log):
        log.warning(message)
        self.store.update_request(request_id, status="awaiting_search", error_message=message)
        return {"success": False, "message": message}

    def search(self, request_id, audiobook, job_id=None):
        log = JobLogger(job_id, "Search", activity=self.activity, request_id=request_id)
        request = self.store.update_request(request_id, status="searching", error_message=None)
        settings = self.config.get_many(("prowlarr_url", "prowlarr_api_key"))
        if not settings.get("prowlarr_url") or not settings.get("prowlarr_api_key"):
            return self._no_result(request_id, "Prowlarr is not configured", log)
        protocol = self.clients.protocol()
        if not protocol:
            return self._no_result(request_id, "No download client configured", log)

        query = " ".join(p for p in (audiobook.get("title"), audiobook.get("author")) if p).strip()
        categories = EBOOK_CATEGORIES if request.get("type") == "ebook" else AUDIOBOOK_CATEGORIES
        try:
            results = search_prowlarr(
                settings["prowlarr_url"], settings["prowlarr_api_key"], query, categories, session=self.session,
            )
        except (requests.RequestException, ValueError) as e:
            return self._no_result(request_id, f"Prowlarr search failed: {e}", log)

        best = pick_result(results, protocol)
        if best is None:
            return self._no_result(request_id, f"No {protocol} results for {query!r}", log)

        log.info("Selected %r from %s (%s results)", best["title"], best["indexer"], len(results))
        self.store.create_download_history(
            request_id,
            download_client=self.clients.client_type(),
            indexer_name=best["indexer"],
            torrent_name=best["title"],
            torrent_url=best["download_url"] or best["magnet_url"],
            size_bytes=best["size"],
        )
        self.jobs.add_download_job(request_id, audiobook, best)
        return {"success": True, "title": best["title"], "results": len(results)}
