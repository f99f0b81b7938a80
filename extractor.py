"""Resolve mirror landing pages to a direct e-book file link."""
from __future__ import annotations

import logging
import re
import time
from urllib.parse import unquote, urljoin, urlparse

import requests

import config

logger = logging.getLogger("readmeabook")

EBOOK_FORMATS = ("epub", "pdf", "mobi", "azw3")
FLARESOLVERR_TIMEOUT_MS = 60000

_GET_ANCHOR_RES = (
    re.compile(r'href="([^"]+)"[^>]*>\s*GET\s*</a>', re.IGNORECASE),
    re.compile(r"<a\s+[^>]*href='([^']+)'[^>]*>\s*GET\s*</a>", re.IGNORECASE),
)
_FILE_LINK_RE = re.compile(r'href="([^"]+\.(?:epub|pdf|mobi|azw3)(?:\?[^"]*)?)"', re.IGNORECASE)
_LIBGEN_GET_RE = re.compile(r'href="((?:https?://[^"]+/)?get\.php\?md5=[^"]+)"', re.IGNORECASE)
_LIBGEN_FILE_RE = re.compile(r'href="((?:https?://[^"]+/)?file\.php\?id=\d+)"', re.IGNORECASE)
_ERROR_MARKERS = ("File not found", "Error</h1>")


def detect_format(url):
    """E-book format implied by the URL path or a filename query param, or None."""
    parsed = urlparse(url or "")
    candidates = [unquote(parsed.path)]
    candidates.extend(unquote(v) for v in re.findall(r"(?:filename|name)=([^&]+)", parsed.query))
    for value in candidates:
        match = re.search(r"\.([A-Za-z0-9]{3,4})$", value.strip())
        if match and match.group(1).lower() in EBOOK_FORMATS:
            return match.group(1).lower()
    return None


def _is_direct_link(url):
    if detect_format(url):
        return True
    path = urlparse(url).path
    return path.endswith("/get.php") or path.endswith("/file.php")


def _fetch_plain(url, fetch_options):
    session = fetch_options.get("session") or requests
    resp = session.get(
        url,
        headers={"User-Agent": fetch_options.get("user_agent") or config.USER_AGENT},
        timeout=fetch_options.get("timeout", 15),
        allow_redirects=True,
    )
    if resp.status_code >= 400:
        logger.warning("Extractor: HTTP %s from %s", resp.status_code, url[:80])
        return None
    return {"html": resp.text, "url": getattr(resp, "url", None) or url, "cookies": {}, "user_agent": None}


def _fetch_flaresolverr(url, flaresolverr_url, fetch_options):
    session = fetch_options.get("session") or requests
    resp = session.post(
        f"{flaresolverr_url.rstrip('/')}/v1",
        json={"cmd": "request.get", "url": url, "maxTimeout": FLARESOLVERR_TIMEOUT_MS},
        timeout=FLARESOLVERR_TIMEOUT_MS / 1000 + 10,
    )
    if resp.status_code >= 400:
        logger.warning("Extractor: FlareSolverr returned HTTP %s for %s", resp.status_code, url[:80])
        return None
    data = resp.json()
    if not isinstance(data, dict):
        logger.warning("Extractor: unexpected FlareSolverr reply for %s", url[:80])
        return None
    if data.get("status") != "ok":
        logger.warning("Extractor: FlareSolverr failed for %s: %s", url[:80], data.get("message"))
        return None
    solution = data.get("solution")
    if not isinstance(solution, dict):
        solution = {}
    if int(solution.get("status") or 200) >= 400:
        logger.warning("Extractor: HTTP %s from %s (via FlareSolverr)", solution.get("status"), url[:80])
        return None
    cookies = {c.get("name"): c.get("value") for c in solution.get("cookies") or [] if c.get("name")}
    return {
        "html": solution.get("response") or "",
        "url": solution.get("url") or url,
        "cookies": cookies,
        "user_agent": solution.get("userAgent"),
    }


def find_file_links(html, page_url):
    """Absolute candidate file links found on a landing page, in page order."""
    links = []
    for pattern in (*_GET_ANCHOR_RES, _LIBGEN_GET_RE, _FILE_LINK_RE, _LIBGEN_FILE_RE):
        for match in pattern.finditer(html):
            href = match.group(1).replace("&amp;", "&").strip()
            if not href or href.startswith(("#", "javascript:")):
                continue
            absolute = urljoin(page_url, href)
            if absolute not in links:
                links.append(absolute)
    return links


def extract_download_url(page_url, base_url, preferred_format, fetch_options=None, flaresolverr_url=None):
    """Turn a mirror page into ``{"url", "format"}``, or None.

    Links that already point at a file are returned without fetching.
    With `flaresolverr_url` set the page is fetched through FlareSolverr and
    the clearance cookies and user agent are returned alongside the link.
    Any network or parse failure returns None so the caller can move on to
    the next mirror.
    """
    fetch_options = dict(fetch_options or {})
    preferred_format = (preferred_format or "epub").lower()
    if page_url.startswith("/") and base_url:
        page_url = urljoin(base_url.rstrip("/") + "/", page_url.lstrip("/"))

    if _is_direct_link(page_url):
        return {"url": page_url, "format": detect_format(page_url) or _fallback_format(preferred_format)}

    try:
        if flaresolverr_url:
            page = _fetch_flaresolverr(page_url, flaresolverr_url, fetch_options)
        else:
            page = _fetch_plain(page_url, fetch_options)
    except (requests.RequestException, ValueError) as e:
        logger.warning("Extractor: could not fetch %s: %s", page_url[:80], e)
        return None
    if not page:
        return None

    html = page["html"]
    if any(marker in html for marker in _ERROR_MARKERS):
        logger.warning("Extractor: error page from %s", page_url[:80])
        return None

    links = find_file_links(html, page["url"])
    if not links:
        logger.info("Extractor: no download link found on %s", page_url[:80])
        return None

    chosen = links[0]
    if preferred_format != "any":
        for link in links:
            if detect_format(link) == preferred_format:
                chosen = link
                break

    result = {"url": chosen, "format": detect_format(chosen) or _fallback_format(preferred_format)}
    if page["cookies"]:
        result["cookies"] = page["cookies"]
    if page["user_agent"]:
        result["user_agent"] = page["user_agent"]
    return result


def _fallback_format(preferred_format):
    return preferred_format if preferred_format in EBOOK_FORMATS else "epub"


def test_flaresolverr_connection(url, requests_module=requests):
    started = time.time()
    try:
        resp = requests_module.get(url.rstrip("/") + "/", timeout=10)
    except requests_module.Timeout:
        return {"success": False, "message": "Timed out connecting to FlareSolverr"}
    except requests_module.ConnectionError:
        return {"success": False, "message": "Connection refused, is FlareSolverr running?"}
    except requests_module.RequestException as e:
        return {"success": False, "message": str(e)}
    elapsed_ms = int((time.time() - started) * 1000)
    if resp.status_code != 200:
        return {"success": False, "message": f"FlareSolverr returned HTTP {resp.status_code}"}
    try:
        data = resp.json()
    except ValueError:
        return {"success": False, "message": "Unexpected response, is this a FlareSolverr URL?"}
    version = data.get("version") or "unknown"
    return {
        "success": True,
        "message": f"Connected to FlareSolverr v{version}",
        "version": version,
        "response_time_ms": elapsed_ms,
    }
