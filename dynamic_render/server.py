import argparse

import structlog
from aiohttp import web

from .cache import RenderCache
from .dispatcher import Dispatcher
from .log import configure_logging
from .renderer import Renderer
from .settings import ServiceConfig, load_service_config

logger = structlog.get_logger(__name__)

CONFIG_KEY = web.AppKey("config", ServiceConfig)
RENDERER_KEY = web.AppKey("renderer", Renderer)
CACHE_KEY = web.AppKey("cache", RenderCache)
DISPATCHER_KEY = web.AppKey("dispatcher", Dispatcher)


def route_for(pattern: str) -> str:
    """
    "/static/*" -> "/static/{tail:.*}"; plain paths are used as is.
    """
    if pattern.endswith("/*"):
        return pattern[:-1] + "{tail:.*}"
    return pattern


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def static_handler(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER_KEY]
    raise web.HTTPFound(dispatcher.origin_url(request.raw_path))


async def render_handler(request: web.Request) -> web.Response:
    dispatcher = request.app[DISPATCHER_KEY]
    result = await dispatcher.dispatch(request.raw_path, request.headers.get("User-Agent", ""))

    if result.is_redirect:
        raise web.HTTPFound(result.location)

    headers = dict(result.headers)
    content_type = headers.pop("Content-Type", "text/html; charset=utf-8")
    return web.Response(
        status=result.status,
        text=result.body,
        headers=headers,
        content_type=content_type.split(";")[0],
        charset="utf-8",
    )


async def _close_services(app: web.Application) -> None:
    logger.info("server.shutting_down")
    try:
        await app[RENDERER_KEY].close(app[CONFIG_KEY].shutdown_grace_s)
    finally:
        await app[CACHE_KEY].close()
    logger.info("server.stopped")


def create_app(
    config: ServiceConfig | None = None,
    renderer: Renderer | None = None,
    cache: RenderCache | None = None,
) -> web.Application:
    config = config or load_service_config()
    renderer = renderer or Renderer(config)
    cache = cache or RenderCache.from_config(config)

    app = web.Application()
    app[CONFIG_KEY] = config
    app[RENDERER_KEY] = renderer
    app[CACHE_KEY] = cache
    app[DISPATCHER_KEY] = Dispatcher(config, renderer, cache)

    app.router.add_get("/health", health_handler)
    for pattern in config.static_paths:
        app.router.add_get(route_for(pattern), static_handler)
    app.router.add_get("/{tail:.*}", render_handler)

    app.on_cleanup.append(_close_services)
    return app


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Serve rendered snapshots to crawlers")
    parser.add_argument("--config", help="path to a YAML config file")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, help="overrides PORT / config")
    parser.add_argument("--log-json", action="store_true", help="emit JSON log lines")
    args = parser.parse_args(argv)

    config = load_service_config(args.config)
    if args.port:
        config.port = args.port
    configure_logging(config.log_level, json_output=args.log_json or config.log_json)

    logger.info(
        "server.starting",
        port=config.port,
        target_host=config.target_host,
        cache_enabled=config.cache_enabled,
        max_concurrent_pages=config.max_concurrent_pages,
    )
    web.run_app(create_app(config), host=args.host, port=config.port, print=None)


if __name__ == "__main__":
    main()
