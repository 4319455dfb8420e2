import asyncio
import time

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import (
    BrowserClosedError,
    RenderExtractionError,
    RenderNavigationError,
    RenderTimeoutError,
    RenderUnavailableError,
)
from .metrics import RenderResult
from .settings import ServiceConfig

logger = structlog.get_logger(__name__)

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--disable-gpu",
]
HEAVY_RESOURCE_TYPES = {"image", "media", "font"}

# Lets the client app (and us) recognise an already rendered document
MARKER_SCRIPT = """() => {
    const meta = document.createElement('meta');
    meta.name = 'dynamic-rendered';
    meta.content = 'true';
    document.head.appendChild(meta);
}"""


class BrowserHandle:
    """
    Owns the Playwright driver and the single shared Chromium process.

    - opened lazily on first use, exactly once even under concurrent callers
    - every page session is a fresh BrowserContext (no cookies, storage or
      history carried between renders)
    - heavy resources (images, fonts, media) are aborted per session
    """

    def __init__(self, config: ServiceConfig):
        self.config = config

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    async def open(self) -> None:
        async with self._lock:
            if self._closed:
                raise BrowserClosedError("browser handle was closed")
            if self._browser is not None:
                return
            self._playwright = await async_playwright().start()
            try:
                self._browser = await self._playwright.chromium.launch(
                    headless=self.config.browser_headless,
                    args=CHROMIUM_ARGS,
                )
            except Exception:
                await self._playwright.stop()
                self._playwright = None
                raise
            logger.info("browser.opened", headless=self.config.browser_headless)

    async def close(self) -> None:
        async with self._lock:
            self._closed = True
            if self._browser:
                await self._browser.close()
                self._browser = None
                logger.info("browser.closed")
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None

    async def new_session(self) -> BrowserContext:
        await self.open()
        browser = self._browser
        if browser is None:
            raise BrowserClosedError("browser closed while opening a session")

        context = await browser.new_context(
            user_agent=self.config.user_agent,
            viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
        )

        if self.config.browser_block_heavy:
            async def route_handler(route):
                if route.request.resource_type in HEAVY_RESOURCE_TYPES:
                    await route.abort()
                else:
                    await route.continue_()
            try:
                await context.route("**/*", route_handler)
            except BaseException:
                await context.close()
                raise

        return context


class Renderer:
    """
    Bounded-concurrency page renderer.

    At most `max_concurrent` page sessions are open at once; extra callers
    wait on a semaphore. Each render gets its own session which is closed on
    every exit path. Failures raise a RenderFailure subclass, never partial
    HTML.
    """

    def __init__(self, config: ServiceConfig, handle: BrowserHandle | None = None):
        self.config = config
        self.max_concurrent = config.max_concurrent_pages
        self._handle = handle or BrowserHandle(config)
        self._slots = asyncio.Semaphore(self.max_concurrent)
        self._active = 0
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closing = False

    @property
    def active_sessions(self) -> int:
        """Page sessions currently open."""
        return self._active

    @property
    def inflight(self) -> int:
        """Render calls started and not yet finished, including those waiting for a slot."""
        return self._inflight

    async def render(
        self,
        url: str,
        wait_selector: str | None = None,
        settle_ms: int = 0,
        wait_state: str = "visible",
    ) -> RenderResult:
        if self._closing:
            raise RenderUnavailableError(url, "renderer is shutting down")

        t0 = time.perf_counter()
        self._inflight += 1
        self._idle.clear()
        try:
            async with self._slots:
                # close() may have run while we waited for the slot
                if self._closing:
                    raise RenderUnavailableError(url, "renderer is shutting down")
                html = await self._render_in_session(url, wait_selector, settle_ms, wait_state)
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

        render_ms = int((time.perf_counter() - t0) * 1000)
        logger.debug("render.done", url=url, duration_ms=render_ms, bytes_len=len(html))
        return RenderResult(html=html, render_ms=render_ms)

    async def _render_in_session(self, url, wait_selector, settle_ms, wait_state) -> str:
        try:
            context = await self._handle.new_session()
        except BrowserClosedError as e:
            raise RenderUnavailableError(url, str(e)) from e
        except PlaywrightError as e:
            raise RenderNavigationError(url, f"could not open page session: {e}") from e

        self._active += 1
        try:
            page = await self._navigate(context, url)
            if wait_selector:
                await self._wait_for_content(page, url, wait_selector, wait_state)
            if settle_ms > 0:
                await asyncio.sleep(settle_ms / 1000)
            return await self._extract(page, url)
        finally:
            self._active -= 1
            await self._close_session(context, url)

    async def _navigate(self, context: BrowserContext, url: str) -> Page:
        try:
            page = await context.new_page()
            await page.goto(url, timeout=self.config.page_timeout_ms, wait_until=self.config.wait_until)
        except PlaywrightTimeoutError as e:
            raise RenderTimeoutError(url, f"navigation timed out after {self.config.page_timeout_ms}ms") from e
        except PlaywrightError as e:
            raise RenderNavigationError(url, str(e)) from e
        return page

    async def _wait_for_content(self, page: Page, url: str, selector: str, state: str) -> None:
        try:
            await page.wait_for_selector(selector, state=state, timeout=self.config.selector_timeout_ms)
        except PlaywrightTimeoutError as e:
            raise RenderTimeoutError(
                url, f"selector {selector!r} not {state} after {self.config.selector_timeout_ms}ms"
            ) from e
        except PlaywrightError as e:
            raise RenderNavigationError(url, str(e)) from e

    async def _extract(self, page: Page, url: str) -> str:
        try:
            await page.evaluate(MARKER_SCRIPT)
            return await page.content()
        except PlaywrightError as e:
            raise RenderExtractionError(url, str(e)) from e

    async def _close_session(self, context: BrowserContext, url: str) -> None:
        try:
            await context.close()
        except PlaywrightError as e:
            logger.warning("render.session_close_failed", url=url, error=str(e))

    async def close(self, grace_s: float | None = None) -> None:
        """
        Stop admitting renders, give in-flight ones up to `grace_s` to finish,
        then close the browser whatever their state.
        """
        self._closing = True
        grace = self.config.shutdown_grace_s if grace_s is None else grace_s

        if self._inflight and grace > 0:
            logger.info("renderer.draining", inflight=self._inflight, grace_s=grace)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("renderer.drain_timeout", inflight=self._inflight)

        await self._handle.close()
