"""Page fetcher.

Retrieves a product page with a plain HTTP request first.  When that
response is blocked by a bot challenge, too small, or carries none of the
markers a product page normally has, the page is rendered in headless
Chromium (Playwright) instead.
"""

from __future__ import annotations

import contextlib
import json
import logging
import re
from dataclasses import dataclass
from typing import Iterator, Optional

import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PWTimeoutError
from playwright.sync_api import sync_playwright

from . import config
from .errors import FetchError, FetchErrorKind
from .models import FetchResult
from .utils import (BROWSER_USER_AGENTS, SHOPIFY_MARKERS, browser_headers, get_http_session,
                    retry_when)

logger = logging.getLogger(__name__)

_GONE_STATUSES = {404, 410}
_BLOCKED_STATUSES = {401, 403, 429, 503}

# Seen on interstitial pages from Cloudflare, PerimeterX, Akamai, Imperva.
_CHALLENGE_MARKERS = (
    "<title>just a moment...</title>",
    "attention required! | cloudflare",
    "cf-chl-",
    "cf_chl_opt",
    "px-captcha",
    "pardon our interruption",
    "robot or human?",
    "_incapsula_resource",
)
# Only count as a challenge when the page has no product markup at all.
_WEAK_CHALLENGE_MARKERS = ("captcha", "access denied", "are you a robot")

_STRUCTURED_MARKERS = re.compile(
    r"application/ld\+json|application/json|og:title|og:type"
    r"|itemprop=[\"']?price|product:price:amount",
    re.IGNORECASE,
)
_SHOPIFY_PRODUCT_PATH = re.compile(r"/products/[^/?#]+")


@dataclass
class _HttpAttempt:
    html: str
    final_url: str
    status_code: int


def has_structured_markers(html: str) -> bool:
    return bool(_STRUCTURED_MARKERS.search(html or ""))


def looks_blocked(html: str, status_code: Optional[int] = None) -> bool:
    """Return True when the page looks like an anti-bot interstitial."""
    if status_code in _BLOCKED_STATUSES:
        return True
    head = (html or "")[:20000].lower()
    if any(marker in head for marker in _CHALLENGE_MARKERS):
        return True
    if not has_structured_markers(html) and len(html or "") < config.MIN_HTML_LENGTH:
        return any(marker in head for marker in _WEAK_CHALLENGE_MARKERS)
    return False


def is_incomplete(html: str) -> bool:
    return len(html or "") < config.MIN_HTML_LENGTH or not has_structured_markers(html)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, FetchError) and exc.retryable


def _with_retries(func, *args, **kwargs):
    decorated = retry_when(
        _is_retryable,
        config.FETCH_RETRIES + 1,
        min_wait=config.RETRY_BACKOFF_SECONDS,
    )(func)
    return decorated(*args, **kwargs)


def _decode(resp: requests.Response, body: bytes) -> str:
    encoding = resp.encoding or "utf-8"
    content_type = resp.headers.get("Content-Type", "")
    # requests falls back to latin-1 for text/* without a charset
    if encoding.lower() == "iso-8859-1" and "charset" not in content_type.lower():
        encoding = "utf-8"
    return body.decode(encoding, errors="replace")


def _read_capped(resp: requests.Response) -> bytes:
    chunks = []
    total = 0
    for chunk in resp.iter_content(64 * 1024):
        if not chunk:
            continue
        total += len(chunk)
        if total > config.MAX_HTML_BYTES:
            raise FetchError(
                FetchErrorKind.TRANSPORT,
                f"response larger than {config.MAX_HTML_BYTES} bytes",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _http_get(session: requests.Session, url: str, timeout: float, alt: bool = False) -> _HttpAttempt:
    try:
        resp = session.get(
            url,
            headers=browser_headers(alt=alt),
            timeout=timeout,
            allow_redirects=True,
            stream=True,
        )
    except requests.Timeout as e:
        raise FetchError(FetchErrorKind.TIMEOUT, f"HTTP timeout after {timeout}s") from e
    except requests.RequestException as e:
        raise FetchError(FetchErrorKind.TRANSPORT, str(e)) from e

    with resp:
        status = resp.status_code
        if status in _GONE_STATUSES:
            raise FetchError(FetchErrorKind.NOT_FOUND, f"HTTP {status} for {url}")
        try:
            body = _read_capped(resp)
        except requests.RequestException as e:
            raise FetchError(FetchErrorKind.TRANSPORT, str(e)) from e
        html = _decode(resp, body)

    if status >= 500 and status not in _BLOCKED_STATUSES:
        raise FetchError(FetchErrorKind.TRANSPORT, f"HTTP {status} for {url}")
    return _HttpAttempt(html=html, final_url=resp.url or url, status_code=status)


def _http_fetch(session: requests.Session, url: str) -> _HttpAttempt:
    """GET with the primary user agent, then once more with the alternate one if blocked."""
    attempt = None
    for alt in (False, True):
        attempt = _with_retries(_http_get, session, url, config.FETCH_TIMEOUT_SECONDS, alt=alt)
        if not looks_blocked(attempt.html, attempt.status_code):
            break
        if not alt:
            logger.debug("Blocked (HTTP %s) for %s; retrying with alternate user agent", attempt.status_code, url)
    return attempt


def _attach_shopify_json(session: requests.Session, attempt: _HttpAttempt) -> str:
    """Append the Shopify product JSON to the page when it is not inline.

    Shopify themes often render variant data client-side; the `.js` product
    endpoint returns it directly.  Best-effort: failures keep the page as is.
    """
    html = attempt.html
    if not any(m in html for m in SHOPIFY_MARKERS):
        return html
    if 'id="product-json"' in html or re.search(r'"variants"\s*:\s*\[', html):
        return html
    base = attempt.final_url.split("?", 1)[0].split("#", 1)[0].rstrip("/")
    if not _SHOPIFY_PRODUCT_PATH.search(base):
        return html
    try:
        resp = session.get(
            base + ".js",
            headers={"Accept": "application/json"},
            timeout=config.FETCH_TIMEOUT_SECONDS,
        )
        if resp.status_code != 200:
            return html
        data = resp.json()
    except (requests.RequestException, ValueError):
        logger.debug("Shopify product JSON unavailable for %s", base, exc_info=True)
        return html
    if not isinstance(data, dict) or "variants" not in data:
        return html
    blob = json.dumps(data).replace("</", "<\\/")
    logger.debug("Attached Shopify product JSON for %s", base)
    return html + f'\n<script type="application/json" id="product-json">{blob}</script>'


@contextlib.contextmanager
def browser_page(timeout_ms: int) -> Iterator:
    """Yield a fresh Chromium page; page, context and browser are always closed."""
    with sync_playwright() as pw:
        browser = pw.chromium.launch(headless=True)
        context = None
        page = None
        try:
            context = browser.new_context(user_agent=BROWSER_USER_AGENTS[0], locale="en-US")
            page = context.new_page()
            page.set_default_timeout(timeout_ms)
            yield page
        finally:
            for resource in (page, context, browser):
                if resource is None:
                    continue
                try:
                    resource.close()
                except PlaywrightError:
                    logger.debug("Error closing browser resource", exc_info=True)


def _fetch_browser(url: str) -> FetchResult:
    timeout_ms = config.BROWSER_TIMEOUT_MS
    try:
        with browser_page(timeout_ms) as page:
            response = page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
            status = response.status if response is not None else None
            if status in _GONE_STATUSES:
                raise FetchError(FetchErrorKind.NOT_FOUND, f"HTTP {status} for {url}")
            try:
                page.wait_for_load_state("networkidle", timeout=timeout_ms)
            except PWTimeoutError:
                # Long-polling pages never go idle; use what has rendered.
                logger.debug("Network never went idle for %s", url)
            html = page.content()
            final_url = page.url or url
    except PWTimeoutError as e:
        raise FetchError(FetchErrorKind.TIMEOUT, f"browser timeout after {timeout_ms}ms") from e
    except PlaywrightError as e:
        raise FetchError(FetchErrorKind.TRANSPORT, f"browser error: {e}") from e

    if looks_blocked(html, status):
        raise FetchError(FetchErrorKind.BOT_BLOCKED, f"challenge page served to browser for {url}")
    return FetchResult(html=html, final_url=final_url, strategy_used="browser", status_code=status)


def fetch(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    browser_enabled: Optional[bool] = None,
) -> FetchResult:
    """Fetch a product page, escalating to a headless browser when needed.

    Raises FetchError with kind Timeout, BotBlocked, NotFound or Transport.
    """
    if browser_enabled is None:
        browser_enabled = config.BROWSER_ENABLED

    http_result: Optional[FetchResult] = None
    http_error: Optional[FetchError] = None
    reason = ""

    close_session = False
    if session is None:
        session = get_http_session()
        close_session = True
    try:
        try:
            attempt = _http_fetch(session, url)
        except FetchError as e:
            if e.kind is FetchErrorKind.NOT_FOUND:
                raise
            http_error = e
            reason = str(e)
        else:
            if looks_blocked(attempt.html, attempt.status_code):
                reason = f"bot challenge (HTTP {attempt.status_code})"
            elif attempt.status_code >= 400:
                reason = f"HTTP {attempt.status_code}"
            else:
                html = _attach_shopify_json(session, attempt)
                http_result = FetchResult(
                    html=html,
                    final_url=attempt.final_url,
                    strategy_used="http",
                    status_code=attempt.status_code,
                )
                if not is_incomplete(html):
                    return http_result
                reason = "incomplete page"
    finally:
        if close_session:
            session.close()

    if not browser_enabled:
        if http_result is not None:
            return http_result
        if http_error is not None:
            raise http_error
        raise FetchError(FetchErrorKind.BOT_BLOCKED, f"{reason} for {url}; browser fallback disabled")

    logger.info("Escalating %s to browser: %s", url, reason)
    try:
        return _with_retries(_fetch_browser, url)
    except FetchError as e:
        if http_result is not None and e.kind is not FetchErrorKind.NOT_FOUND:
            logger.info("Browser fetch failed for %s (%s); using HTTP response", url, e)
            return http_result
        raise


__all__ = ["fetch", "browser_page", "looks_blocked", "is_incomplete", "has_structured_markers"]
