"""
Broken-link check for saved sites.

HEAD first (cheap), GET when the server rejects HEAD. A 403 is retried once
with no-cache headers since many CDNs block the first bare request. Each
URL gets one more attempt with a longer timeout before it counts as broken.
"""
import logging
from typing import Optional

import requests

from .config.settings import LINK_CHECK_BATCH_SIZE, LINK_CHECK_RETRY_TIMEOUT, LINK_CHECK_TIMEOUT
from .relations import chunked

logger = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}
NO_CACHE_HEADERS = {**HEADERS, "Cache-Control": "no-cache", "Pragma": "no-cache"}


def _request(session: requests.Session, url: str, timeout: float) -> tuple[Optional[int], Optional[str]]:
    """Return (status_code, error)."""
    try:
        resp = session.head(url, headers=HEADERS, timeout=timeout, allow_redirects=True)
        if resp.status_code >= 400:
            resp = session.get(url, headers=HEADERS, timeout=timeout, allow_redirects=True, stream=True)
            resp.close()
        if resp.status_code == 403:
            resp = session.get(url, headers=NO_CACHE_HEADERS, timeout=timeout, allow_redirects=True, stream=True)
            resp.close()
        return resp.status_code, None
    except requests.RequestException as e:
        return None, str(e)


def check_url(url: str, session: Optional[requests.Session] = None) -> dict:
    if session is None:
        with requests.Session() as own:
            return check_url(url, own)
    status, error = None, None
    for timeout in (LINK_CHECK_TIMEOUT, LINK_CHECK_RETRY_TIMEOUT):
        status, error = _request(session, url, timeout)
        if status is not None and status < 400:
            break
    ok = status is not None and status < 400
    return {"url": url, "ok": ok, "status": status, "error": error}


def check_sites(sites: list[dict], session: Optional[requests.Session] = None) -> dict:
    """
    Check every site ({id, name, url}) in batches.
    Return {total, brokenCount, broken, results}.
    """
    if session is None:
        with requests.Session() as own:
            return check_sites(sites, own)
    results = []
    for batch in chunked(list(sites), LINK_CHECK_BATCH_SIZE):
        for site in batch:
            outcome = check_url(site["url"], session=session)
            outcome["id"] = site.get("id")
            outcome["name"] = site.get("name")
            results.append(outcome)
    broken = [r for r in results if not r["ok"]]
    if broken:
        logger.warning(f"Link check: {len(broken)}/{len(results)} broken")
    return {"total": len(results), "brokenCount": len(broken), "broken": broken, "results": results}
