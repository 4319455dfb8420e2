import asyncio
from types import SimpleNamespace

import fakeredis
import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from dynamic_render.cache import RenderCache
from dynamic_render.errors import RenderNavigationError
from dynamic_render.metrics import RenderResult
from dynamic_render.settings import ServiceConfig

GOOGLEBOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
FACEBOOK_UA = "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)"
BROWSER_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/91.0 Safari/537.36"

RENDERED_HTML = '<html><head><meta name="dynamic-rendered" content="true"></head><body><div id="root">hi</div></body></html>'


# --- fake Playwright objects for the renderer ---------------------------------

class FakePage:
    def __init__(self, browser: "FakeBrowserHandle"):
        self.browser = browser
        self.marked = False

    async def goto(self, url, timeout=None, wait_until=None):
        self.browser.visited.append(url)
        await asyncio.sleep(self.browser.nav_delay_s)
        if self.browser.goto_error is not None:
            raise self.browser.goto_error

    async def wait_for_selector(self, selector, state=None, timeout=None):
        self.browser.selectors.append((selector, state))
        if self.browser.selector_error is not None:
            raise self.browser.selector_error

    async def evaluate(self, script):
        if self.browser.extract_error is not None:
            raise self.browser.extract_error
        self.marked = True

    async def content(self):
        return RENDERED_HTML if self.marked else "<html></html>"


class FakeContext:
    def __init__(self, browser: "FakeBrowserHandle"):
        self.browser = browser
        self.closed = False

    async def new_page(self):
        return FakePage(self.browser)

    async def close(self):
        self.closed = True
        self.browser.open_sessions -= 1


class FakeBrowserHandle:
    """Stands in for BrowserHandle; counts open sessions and their peak."""

    def __init__(self, nav_delay_s: float = 0.0):
        self.nav_delay_s = nav_delay_s
        self.goto_error: Exception | None = None
        self.selector_error: Exception | None = None
        self.extract_error: Exception | None = None
        self.opened = False
        self.closed = False
        self.open_sessions = 0
        self.peak_sessions = 0
        self.contexts: list[FakeContext] = []
        self.visited: list[str] = []
        self.selectors: list[tuple] = []

    @property
    def is_open(self):
        return self.opened and not self.closed

    async def open(self):
        self.opened = True

    async def close(self):
        self.closed = True

    async def new_session(self):
        await self.open()
        ctx = FakeContext(self)
        self.contexts.append(ctx)
        self.open_sessions += 1
        self.peak_sessions = max(self.peak_sessions, self.open_sessions)
        return ctx


# --- fake Playwright driver for BrowserHandle ---------------------------------

class FakeRoute:
    def __init__(self, resource_type):
        self.request = SimpleNamespace(resource_type=resource_type)
        self.outcome = None

    async def abort(self):
        self.outcome = "abort"

    async def continue_(self):
        self.outcome = "continue"


class FakeDriverContext:
    def __init__(self, driver: "FakeDriver", **kwargs):
        self.driver = driver
        self.kwargs = kwargs
        self.route_handler = None
        self.closed = False

    async def route(self, pattern, handler):
        if self.driver.route_error is not None:
            raise self.driver.route_error
        self.route_handler = handler

    async def new_page(self):
        return FakeDriverPage(self.driver)

    async def close(self):
        self.closed = True


class FakeDriverPage:
    def __init__(self, driver: "FakeDriver"):
        self.driver = driver

    async def goto(self, url, timeout=None, wait_until=None):
        await asyncio.sleep(self.driver.nav_delay_s)

    async def wait_for_selector(self, selector, state=None, timeout=None):
        pass

    async def evaluate(self, script):
        pass

    async def content(self):
        return RENDERED_HTML


class FakeBrowser:
    def __init__(self, driver: "FakeDriver"):
        self.driver = driver

    async def new_context(self, **kwargs):
        ctx = FakeDriverContext(self.driver, **kwargs)
        self.driver.contexts.append(ctx)
        return ctx

    async def close(self):
        self.driver.browsers_closed += 1


class FakeDriver:
    """
    Replaces `async_playwright`: calling it returns itself, `start()` returns
    itself and `chromium.launch()` counts launched browsers.
    """

    def __init__(self, launch_delay_s: float = 0.0, nav_delay_s: float = 0.0):
        self.launch_delay_s = launch_delay_s
        self.nav_delay_s = nav_delay_s
        self.launch_error: Exception | None = None
        self.route_error: Exception | None = None
        self.launched = 0
        self.launch_kwargs: list[dict] = []
        self.browsers_closed = 0
        self.stopped = 0
        self.contexts: list[FakeDriverContext] = []
        self.chromium = self

    def __call__(self):
        return self

    async def start(self):
        return self

    async def stop(self):
        self.stopped += 1

    async def launch(self, **kwargs):
        await asyncio.sleep(self.launch_delay_s)
        if self.launch_error is not None:
            raise self.launch_error
        self.launched += 1
        self.launch_kwargs.append(kwargs)
        return FakeBrowser(self)


# --- fake renderer for dispatcher / server ------------------------------------

class FakeRenderer:
    def __init__(self, html: str = RENDERED_HTML, render_ms: int = 120, delay_s: float = 0.0):
        self.html = html
        self.render_ms = render_ms
        self.delay_s = delay_s
        self.error: Exception | None = None
        self.calls: list[dict] = []
        self.closed = False

    async def render(self, url, wait_selector=None, settle_ms=0, wait_state="visible"):
        self.calls.append(
            {"url": url, "wait_selector": wait_selector, "settle_ms": settle_ms, "wait_state": wait_state}
        )
        await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return RenderResult(html=self.html, render_ms=self.render_ms)

    async def close(self, grace_s=None):
        self.closed = True


@pytest.fixture
def config() -> ServiceConfig:
    return ServiceConfig(target_host="http://origin.test", cache_enabled=True)


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def cache(redis_client) -> RenderCache:
    return RenderCache(client=redis_client, prefix="dynamic-render", default_ttl_s=600)


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def browser() -> FakeBrowserHandle:
    return FakeBrowserHandle()


def navigation_error(message="net::ERR_CONNECTION_REFUSED"):
    return PlaywrightError(message)


def timeout_error(message="Timeout 5000ms exceeded."):
    return PlaywrightTimeoutError(message)


def render_navigation_failure(url="http://origin.test/"):
    return RenderNavigationError(url, "net::ERR_NAME_NOT_RESOLVED")
