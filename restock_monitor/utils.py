"""Helper utilities.

This module centralises common helper functions such as creating a
configured HTTP session, applying retry policies to network and store
calls, and normalising product URLs.
"""

from __future__ import annotations

import datetime as _dt
import logging
import re
from typing import Any, Callable, Dict
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import requests
from requests import Response
from tenacity import (after_log, retry, retry_if_exception,
                      retry_if_exception_type, stop_after_attempt,
                      wait_exponential)


logger = logging.getLogger(__name__)

BROWSER_USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.4 Safari/605.1.15",
]

# Substrings that identify a Shopify storefront.
SHOPIFY_MARKERS = ("cdn.shopify.com", "Shopify.theme", "myshopify.com")


def get_http_session() -> requests.Session:
    """Return a new HTTP session with sensible defaults.

    The session sends the headers of a regular desktop browser, since many
    shops answer anything else with a challenge page.  Caller is
    responsible for closing the session.
    """
    session = requests.Session()
    session.headers.update(
        {
            "User-Agent": BROWSER_USER_AGENTS[0],
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Cache-Control": "no-cache",
            "Pragma": "no-cache",
            "Upgrade-Insecure-Requests": "1",
        }
    )
    return session


class HTTPError(Exception):
    """Raised when an HTTP request fails after retries."""


def _raise_for_status(resp: Response) -> None:
    try:
        resp.raise_for_status()
    except requests.RequestException as e:
        raise HTTPError(str(e)) from e


def retryable_request(method: Callable[..., Response]) -> Callable[..., Response]:
    """Retry a `(session, url, **kwargs) -> Response` call.

    Network errors and error statuses (raised as HTTPError) are retried
    up to 5 times with exponential back-off between 1 and 10 seconds.
    """

    @retry(
        reraise=True,
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=(
            retry_if_exception_type(requests.RequestException)
            | retry_if_exception_type(HTTPError)
        ),
        after=after_log(logger, logging.WARNING),
    )
    def wrapper(session: requests.Session, url: str, **kwargs: Any) -> Response:
        response = method(session, url, **kwargs)
        if response.status_code >= 500:
            raise HTTPError(f"Server returned status {response.status_code}")
        _raise_for_status(response)
        return response

    return wrapper


def retry_when(
    predicate: Callable[[BaseException], bool],
    attempts: int,
    *,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
) -> Callable:
    """Return a tenacity decorator retrying while `predicate(exc)` holds.

    Used for fetch attempts (timeouts, transport errors) and for per-item
    store transactions (locked database).  `attempts` counts the first try.
    """
    return retry(
        reraise=True,
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception(predicate),
        after=after_log(logger, logging.WARNING),
    )


def utc_now() -> str:
    """Current UTC time as a fixed-width ISO string (sorts lexically)."""
    return format_ts(_dt.datetime.now(_dt.timezone.utc))


def format_ts(moment: _dt.datetime) -> str:
    return moment.astimezone(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def utc_minutes_ago(minutes: float) -> str:
    return format_ts(_dt.datetime.now(_dt.timezone.utc) - _dt.timedelta(minutes=minutes))


# Query parameters that never identify a product page.
_TRACKING_PARAMS = {
    "fbclid", "gclid", "msclkid", "dclid", "yclid", "srsltid",
    "ref", "ref_", "_ga", "_gl", "mc_cid", "mc_eid", "igshid",
    "variant", "_pos", "_sid", "_ss", "_psq", "_v",
}
_DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(url: str) -> str:
    """Normalise a product URL so equivalent spellings share one key.

    Lowercases scheme and host, drops default ports, fragments, trailing
    slashes and tracking parameters, and sorts the remaining query.
    Path case is kept since many shops serve case-sensitive paths.
    """
    parts = urlsplit((url or "").strip())
    scheme = (parts.scheme or "https").lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    netloc = host
    if port is not None and str(port) != _DEFAULT_PORTS.get(scheme):
        netloc = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "").rstrip("/")

    query_pairs = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in _TRACKING_PARAMS
    ]
    query = urlencode(sorted(query_pairs))
    return urlunsplit((scheme, netloc, path, query, ""))


def is_http_url(url: Any) -> bool:
    if not isinstance(url, str):
        return False
    parts = urlsplit(url.strip())
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def browser_headers(alt: bool = False) -> Dict[str, str]:
    """Return realistic navigation headers. `alt=True` switches UA."""
    return {
        "User-Agent": BROWSER_USER_AGENTS[1 if alt else 0],
        "Sec-Fetch-Site": "none",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-User": "?1",
        "Sec-Fetch-Dest": "document",
    }


__all__ = [
    "get_http_session",
    "retryable_request",
    "retry_when",
    "HTTPError",
    "utc_now",
    "format_ts",
    "utc_minutes_ago",
    "normalize_url",
    "is_http_url",
    "browser_headers",
    "BROWSER_USER_AGENTS",
    "SHOPIFY_MARKERS",
]
