import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal
from urllib.parse import quote

import structlog
import yaml
from pydantic import BaseModel, Field

from .crawlers import CrawlerClass

PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_ENV_VAR = "DYNAMIC_RENDER_CONFIG"
SOCIAL_PREVIEW_SELECTOR = 'meta[property^="og:"], meta[name^="twitter:"]'

logger = structlog.get_logger(__name__)


class RedisSettings(BaseModel):
    host: str = "localhost"
    port: int = 6379
    password: str | None = None
    db: int = 0

    @property
    def url(self) -> str:
        """
        Connection URL passed to Redis.from_url, with the password if set.
        """
        auth = f":{quote(self.password, safe='')}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class RenderPolicy(BaseModel):
    """
    Per crawler class render policy.

    wait_selector   : CSS selector to wait for before snapshotting
                      ("" disables the wait).
    wait_state      : "visible" for content, "attached" for head tags such
                      as <meta> which never become visible.
    extra_settle_ms : Additional wait after the selector, before extraction.
    cache_ttl_s     : Lifetime of the cached snapshot.
    """
    wait_selector: str = "#root"
    wait_state: Literal["attached", "visible"] = "visible"
    extra_settle_ms: int = Field(default=0, ge=0)
    cache_ttl_s: int = Field(default=600, gt=0)


@dataclass
class ServiceConfig:
    """
    Central configuration for the render service.

    Values come from the dataclass defaults, then render_config.yaml at the
    project root (or DYNAMIC_RENDER_CONFIG), then environment variables.
    """

    # HTTP surface
    port: int = 3000
    target_host: str = "http://localhost:3002"
    static_paths: list[str] = field(
        default_factory=lambda: ["/static/*", "/assets/*", "/favicon.ico", "/manifest.json"]
    )

    # Cache
    cache_enabled: bool = False
    cache_ttl_s: int = 600
    cache_prefix: str = "dynamic-render"
    cache_max_retries: int = 3
    cache_socket_timeout_s: float = 5.0
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0

    # Rendering
    wait_for_selector: str = "#root"
    max_concurrent_pages: int = 10
    page_timeout_ms: int = 30_000
    selector_timeout_ms: int = 5_000
    wait_until: str = "networkidle"
    browser_headless: bool = True
    browser_block_heavy: bool = True
    viewport_width: int = 1920
    viewport_height: int = 1080
    user_agent: str = "Mozilla/5.0 (compatible; DynamicRenderBot/1.0; +http://example.com/bot)"
    shutdown_grace_s: float = 10.0
    coalesce_renders: bool = False

    # Per class overrides, keyed by class tag: {"se": {"cache_ttl_s": 7200}}
    policies: dict[str, dict] = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    @property
    def redis(self) -> RedisSettings:
        return RedisSettings(
            host=self.redis_host,
            port=self.redis_port,
            password=self.redis_password,
            db=self.redis_db,
        )


# env var -> (field, converter)
ENV_OVERRIDES = {
    "PORT": ("port", int),
    "TARGET_HOST": ("target_host", str),
    "CACHE_ENABLED": ("cache_enabled", lambda v: v.strip().lower() == "true"),
    "CACHE_TTL": ("cache_ttl_s", int),
    "WAIT_FOR_SELECTOR": ("wait_for_selector", str),
    "MAX_CONCURRENT_PAGES": ("max_concurrent_pages", int),
    "PAGE_TIMEOUT": ("page_timeout_ms", int),
    "REDIS_HOST": ("redis_host", str),
    "REDIS_PORT": ("redis_port", int),
    "REDIS_PASSWORD": ("redis_password", str),
    "LOG_LEVEL": ("log_level", str),
}


def _env_overrides(environ) -> dict:
    overrides = {}
    for name, (key, convert) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = convert(raw)
        except ValueError:
            logger.warning("config.bad_env_value", env=name, value=raw)
    return overrides


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.info("config.yaml_missing", path=str(path))
        return {}

    raw = path.read_text(encoding="utf-8")
    data = yaml.safe_load(raw) or {}

    if not isinstance(data, dict):
        logger.warning("config.yaml_not_mapping", path=str(path), got=type(data).__name__)
        return {}

    allowed_keys = {f.name for f in fields(ServiceConfig)}
    return {k: v for k, v in data.items() if k in allowed_keys}


def load_service_config(path: str | Path | None = None, environ=None) -> ServiceConfig:
    """
    Build a ServiceConfig from defaults, YAML and environment, in that order.
    """
    environ = os.environ if environ is None else environ

    if path is None:
        path = environ.get(CONFIG_ENV_VAR) or PROJECT_ROOT / "render_config.yaml"

    values = _load_yaml(Path(path))
    values.update(_env_overrides(environ))
    return ServiceConfig(**values)


def build_policies(config: ServiceConfig) -> dict[CrawlerClass, RenderPolicy]:
    """
    Default render policy per bot class, with YAML `policies` overrides applied.

    | class        | wait selector            | settle ms | ttl s           |
    | SearchEngine | content root             | 2000      | 3600            |
    | SocialMedia  | og:/twitter: meta tags   | 0         | 1800            |
    | OtherBot     | content root             | 0         | config default  |
    """
    policies = {
        CrawlerClass.SEARCH_ENGINE: RenderPolicy(
            wait_selector=config.wait_for_selector, extra_settle_ms=2000, cache_ttl_s=3600
        ),
        CrawlerClass.SOCIAL_MEDIA: RenderPolicy(
            wait_selector=SOCIAL_PREVIEW_SELECTOR, wait_state="attached", extra_settle_ms=0, cache_ttl_s=1800
        ),
        CrawlerClass.OTHER_BOT: RenderPolicy(
            wait_selector=config.wait_for_selector, extra_settle_ms=0, cache_ttl_s=config.cache_ttl_s
        ),
    }

    by_tag = {cls.tag: cls for cls in policies}
    for tag, overrides in (config.policies or {}).items():
        cls = by_tag.get(tag)
        if cls is None:
            logger.warning("config.unknown_policy_tag", tag=tag)
            continue
        merged = {**policies[cls].model_dump(), **(overrides or {})}
        policies[cls] = RenderPolicy(**merged)

    return policies
