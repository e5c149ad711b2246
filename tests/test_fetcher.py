import pytest
import requests
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PWTimeoutError

from restock_monitor import config, fetcher
from restock_monitor.errors import FetchError, FetchErrorKind
from restock_monitor.fetcher import fetch, is_incomplete, looks_blocked
from restock_monitor.models import FetchResult
from restock_monitor.utils import BROWSER_USER_AGENTS

URL = "https://shop.example.com/products/lamp"

PRODUCT_PAGE = (
    '<html><head><meta property="og:title" content="Desk Lamp"></head><body>'
    + "<p>Lorem ipsum dolor sit amet.</p>" * 20
    + "</body></html>"
)
CHALLENGE_PAGE = "<html><head><title>Just a moment...</title></head><body>Checking your browser</body></html>"


def _response(status=200, body=PRODUCT_PAGE, url=URL):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body.encode("utf-8")
    resp._content_consumed = True
    resp.url = url
    resp.encoding = "utf-8"
    resp.headers["Content-Type"] = "text/html; charset=utf-8"
    return resp


class FakeSession:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []
        self.user_agents = []

    def get(self, url, **kwargs):
        self.calls.append(url)
        self.user_agents.append((kwargs.get("headers") or {}).get("User-Agent"))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        pass


@pytest.fixture(autouse=True)
def fast_fetch(monkeypatch):
    monkeypatch.setattr(config, "MIN_HTML_LENGTH", 200)
    monkeypatch.setattr(config, "RETRY_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(config, "FETCH_RETRIES", 2)


@pytest.fixture
def browser_calls(monkeypatch):
    calls = []

    def fake_browser(url):
        calls.append(url)
        return FetchResult(html=PRODUCT_PAGE, final_url=url, strategy_used="browser", status_code=200)

    monkeypatch.setattr(fetcher, "_fetch_browser", fake_browser)
    return calls


def test_blocked_and_incomplete_heuristics():
    assert looks_blocked(CHALLENGE_PAGE, 200)
    assert looks_blocked(PRODUCT_PAGE, 403)
    assert not looks_blocked(PRODUCT_PAGE, 200)
    assert is_incomplete("<html><body>tiny</body></html>")
    assert not is_incomplete(PRODUCT_PAGE)


def test_complete_page_is_served_over_http(browser_calls):
    session = FakeSession(_response())

    result = fetch(URL, session=session)

    assert result.strategy_used == "http"
    assert result.status_code == 200
    assert "Desk Lamp" in result.html
    assert session.calls == [URL]
    assert browser_calls == []


def test_not_found_is_terminal(browser_calls):
    session = FakeSession(_response(status=404, body="<html>gone</html>"))

    with pytest.raises(FetchError) as exc:
        fetch(URL, session=session)

    assert exc.value.kind is FetchErrorKind.NOT_FOUND
    assert len(session.calls) == 1
    assert browser_calls == []


def test_challenge_without_browser_is_bot_blocked():
    session = FakeSession(_response(status=403, body=CHALLENGE_PAGE))

    with pytest.raises(FetchError) as exc:
        fetch(URL, session=session, browser_enabled=False)

    assert exc.value.kind is FetchErrorKind.BOT_BLOCKED


def test_challenge_escalates_to_browser(browser_calls):
    session = FakeSession(_response(status=200, body=CHALLENGE_PAGE))

    result = fetch(URL, session=session, browser_enabled=True)

    assert result.strategy_used == "browser"
    assert browser_calls == [URL]


def test_timeouts_are_retried_then_reported():
    session = FakeSession(requests.Timeout("read timed out"))

    with pytest.raises(FetchError) as exc:
        fetch(URL, session=session, browser_enabled=False)

    assert exc.value.kind is FetchErrorKind.TIMEOUT
    assert len(session.calls) == config.FETCH_RETRIES + 1


def test_transient_error_recovers_on_retry(browser_calls):
    session = FakeSession(requests.ConnectionError("reset"), _response())

    result = fetch(URL, session=session)

    assert result.strategy_used == "http"
    assert len(session.calls) == 2


def test_server_error_is_transport_failure():
    session = FakeSession(_response(status=500, body="<html>oops</html>"))

    with pytest.raises(FetchError) as exc:
        fetch(URL, session=session, browser_enabled=False)

    assert exc.value.kind is FetchErrorKind.TRANSPORT


def test_incomplete_page_without_browser_returns_http_result():
    session = FakeSession(_response(body="<html><body>tiny</body></html>"))

    result = fetch(URL, session=session, browser_enabled=False)

    assert result.strategy_used == "http"
    assert "tiny" in result.html


def test_browser_failure_falls_back_to_http_result(monkeypatch):
    def broken_browser(url):
        raise FetchError(FetchErrorKind.TIMEOUT, "browser timeout")

    monkeypatch.setattr(fetcher, "_fetch_browser", broken_browser)
    session = FakeSession(_response(body="<html><body>tiny</body></html>"))

    result = fetch(URL, session=session, browser_enabled=True)

    assert result.strategy_used == "http"


def test_oversized_response_is_rejected(monkeypatch):
    monkeypatch.setattr(config, "MAX_HTML_BYTES", 100)
    session = FakeSession(_response())

    with pytest.raises(FetchError) as exc:
        fetch(URL, session=session, browser_enabled=False)

    assert exc.value.kind is FetchErrorKind.TRANSPORT


def test_blocked_request_is_retried_with_alternate_user_agent(browser_calls):
    session = FakeSession(_response(status=403, body=CHALLENGE_PAGE), _response())

    result = fetch(URL, session=session)

    assert result.strategy_used == "http"
    assert session.calls == [URL, URL]
    assert session.user_agents == [BROWSER_USER_AGENTS[0], BROWSER_USER_AGENTS[1]]
    assert browser_calls == []


class FakeResponse:
    def __init__(self, status):
        self.status = status


class FakePage:
    def __init__(self, closed, goto_error=None, status=200, html=PRODUCT_PAGE):
        self.closed = closed
        self.goto_error = goto_error
        self.status = status
        self.html = html
        self.url = URL
        self.default_timeout = None

    def set_default_timeout(self, timeout_ms):
        self.default_timeout = timeout_ms

    def goto(self, url, **kwargs):
        if self.goto_error is not None:
            raise self.goto_error
        return FakeResponse(self.status)

    def wait_for_load_state(self, state, **kwargs):
        raise PWTimeoutError("network never idle")

    def content(self):
        return self.html

    def close(self):
        self.closed.append("page")


class FakeContext:
    def __init__(self, page):
        self.page = page

    def new_page(self):
        return self.page

    def close(self):
        self.page.closed.append("context")


class FakeBrowser:
    def __init__(self, page):
        self.page = page

    def new_context(self, **kwargs):
        return FakeContext(self.page)

    def close(self):
        self.page.closed.append("browser")


class FakePlaywright:
    def __init__(self, page):
        self.chromium = self
        self.page = page

    def launch(self, **kwargs):
        return FakeBrowser(self.page)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_browser(monkeypatch):
    closed = []

    def install(**page_kwargs):
        page = FakePage(closed, **page_kwargs)
        monkeypatch.setattr(fetcher, "sync_playwright", lambda: FakePlaywright(page))
        return page

    install.closed = closed
    return install


def test_browser_fetch_renders_page(fake_browser):
    page = fake_browser()

    result = fetcher._fetch_browser(URL)

    assert result.strategy_used == "browser"
    assert result.status_code == 200
    assert "Desk Lamp" in result.html
    assert page.default_timeout == config.BROWSER_TIMEOUT_MS
    assert fake_browser.closed == ["page", "context", "browser"]


@pytest.mark.parametrize("error, kind", [
    (PWTimeoutError("Timeout 30000ms exceeded"), FetchErrorKind.TIMEOUT),
    (PlaywrightError("net::ERR_CONNECTION_RESET"), FetchErrorKind.TRANSPORT),
])
def test_browser_errors_are_mapped_and_resources_closed(fake_browser, error, kind):
    fake_browser(goto_error=error)

    with pytest.raises(FetchError) as exc:
        fetcher._fetch_browser(URL)

    assert exc.value.kind is kind
    assert fake_browser.closed == ["page", "context", "browser"]


def test_browser_not_found_and_challenge(fake_browser):
    fake_browser(status=404)
    with pytest.raises(FetchError) as exc:
        fetcher._fetch_browser(URL)
    assert exc.value.kind is FetchErrorKind.NOT_FOUND

    fake_browser(html=CHALLENGE_PAGE)
    with pytest.raises(FetchError) as exc:
        fetcher._fetch_browser(URL)
    assert exc.value.kind is FetchErrorKind.BOT_BLOCKED
    assert fake_browser.closed == ["page", "context", "browser"] * 2
