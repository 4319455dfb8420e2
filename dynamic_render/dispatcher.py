"""
Request dispatcher: classifier -> cache -> renderer -> cache, for one request.

Humans and every failure on the bot path get the same answer, a redirect to
the origin. Crawlers otherwise get a rendered (possibly cached) snapshot.
"""

import asyncio
from dataclasses import dataclass, field

import structlog

from .cache import RenderCache
from .crawlers import CrawlerClass, classify, is_bot
from .errors import RenderFailure
from .metrics import RenderResult
from .renderer import Renderer
from .settings import RenderPolicy, ServiceConfig, build_policies

logger = structlog.get_logger(__name__)

RENDERER_MARKER = "Dynamic-Render-SEO"
HTML_CONTENT_TYPE = "text/html; charset=utf-8"


@dataclass
class DispatchResponse:
    """
    Framework independent answer for one request.

    kind     : "render" (body is HTML) or "redirect" (see location).
    status   : 200 for renders, 302 for redirects.
    """
    kind: str
    status: int
    body: str = ""
    location: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    crawler_class: CrawlerClass = CrawlerClass.HUMAN

    @property
    def is_redirect(self) -> bool:
        return self.kind == "redirect"


class Dispatcher:
    def __init__(
        self,
        config: ServiceConfig,
        renderer: Renderer,
        cache: RenderCache,
        policies: dict[CrawlerClass, RenderPolicy] | None = None,
    ):
        self.config = config
        self.renderer = renderer
        self.cache = cache
        self.policies = policies or build_policies(config)
        self.target_host = config.target_host.rstrip("/")
        self._inflight: dict[str, asyncio.Future] = {}

    def origin_url(self, path_qs: str) -> str:
        return f"{self.target_host}{path_qs}"

    def redirect(self, path_qs: str, crawler_class: CrawlerClass = CrawlerClass.HUMAN) -> DispatchResponse:
        return DispatchResponse(
            kind="redirect",
            status=302,
            location=self.origin_url(path_qs),
            crawler_class=crawler_class,
        )

    async def dispatch(self, path_qs: str, user_agent: str | None) -> DispatchResponse:
        crawler_class = classify(user_agent)
        if not is_bot(crawler_class):
            return self.redirect(path_qs)

        url = self.origin_url(path_qs)
        log = logger.bind(url=url, crawler_class=crawler_class.value)
        try:
            return await self._serve_bot(path_qs, url, crawler_class, log)
        except RenderFailure as e:
            log.warning("dispatch.render_failed", error_kind=e.reason, error=str(e))
        except Exception as e:
            log.exception("dispatch.unexpected_error", error_kind=type(e).__name__)
        return self.redirect(path_qs, crawler_class)

    async def _serve_bot(self, path_qs, url, crawler_class, log) -> DispatchResponse:
        policy = self.policies[crawler_class]
        key = self.cache.key_for(path_qs, crawler_class)

        cached = await self.cache.get(key)
        if cached:
            log.info("dispatch.cache_hit", cache_key=key)
            return DispatchResponse(
                kind="render",
                status=200,
                body=cached,
                headers={
                    "Content-Type": HTML_CONTENT_TYPE,
                    "X-Cache": "HIT",
                    "X-Crawler-Type": crawler_class.value,
                },
                crawler_class=crawler_class,
            )

        log.info("dispatch.render_start", cache_key=key)
        if self.config.coalesce_renders:
            result = await self._render_coalesced(key, url, policy)
        else:
            result = await self._render(url, policy)
        log.info("dispatch.rendered", cache_key=key, duration_ms=result.render_ms)

        await self.cache.set(key, result.html, policy.cache_ttl_s)

        return DispatchResponse(
            kind="render",
            status=200,
            body=result.html,
            headers={
                "Content-Type": HTML_CONTENT_TYPE,
                "Server-Timing": f'Prerender;dur={result.render_ms};desc="Dynamic render time (ms)"',
                "X-Rendered-By": RENDERER_MARKER,
                "Cache-Control": f"public, max-age={policy.cache_ttl_s}",
                "X-Crawler-Type": crawler_class.value,
                "X-Cache": "MISS",
            },
            crawler_class=crawler_class,
        )

    async def _render(self, url: str, policy: RenderPolicy) -> RenderResult:
        return await self.renderer.render(
            url,
            wait_selector=policy.wait_selector or None,
            settle_ms=policy.extra_settle_ms,
            wait_state=policy.wait_state,
        )

    async def _render_coalesced(self, key: str, url: str, policy: RenderPolicy) -> RenderResult:
        """
        Concurrent misses for one key share a single render and its outcome.
        """
        pending = self._inflight.get(key)
        if pending is not None:
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                # the leading request was cancelled, not us
                if pending.cancelled():
                    return await self._render(url, policy)
                raise

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await self._render(url, policy)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # mark retrieved so a render nobody else awaited does not warn
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
