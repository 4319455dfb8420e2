import structlog
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import AbstractBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .crawlers import CrawlerClass
from .settings import RedisSettings, ServiceConfig

logger = structlog.get_logger(__name__)


def build_key(prefix: str, path_qs: str, crawler_class: CrawlerClass) -> str:
    """
    `<prefix>:<path+query>:<class tag>`, e.g. "dynamic-render:/products/42:se".
    """
    return f"{prefix}:{path_qs}:{crawler_class.tag}"


class CappedLinearBackoff(AbstractBackoff):
    """Reconnect delay of min(attempt * step, cap) seconds."""

    def __init__(self, step_s: float = 0.05, cap_s: float = 2.0):
        self.step_s = step_s
        self.cap_s = cap_s

    def compute(self, failures: int) -> float:
        return min(failures * self.step_s, self.cap_s)


class RenderCache:
    """
    Redis-backed snapshot cache.

    The cache is an optimization only:
    - when disabled every call succeeds trivially (get -> None)
    - any Redis error is logged and turned into a miss / no-op
    - connection errors are retried with capped backoff a bounded number
      of times per call, then given up on
    """

    def __init__(
        self,
        redis: RedisSettings | None = None,
        *,
        enabled: bool = True,
        prefix: str = "dynamic-render",
        default_ttl_s: int = 600,
        max_retries: int = 3,
        socket_timeout_s: float = 5.0,
        client: Redis | None = None,
    ):
        self.enabled = enabled
        self.prefix = prefix
        self.default_ttl_s = default_ttl_s
        self._client = client

        if self._client is None and enabled:
            redis = redis or RedisSettings()
            self._client = Redis.from_url(
                redis.url,
                decode_responses=True,
                socket_timeout=socket_timeout_s,
                socket_connect_timeout=socket_timeout_s,
                retry=Retry(CappedLinearBackoff(), max_retries),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "RenderCache":
        return cls(
            config.redis,
            enabled=config.cache_enabled,
            prefix=config.cache_prefix,
            default_ttl_s=config.cache_ttl_s,
            max_retries=config.cache_max_retries,
            socket_timeout_s=config.cache_socket_timeout_s,
        )

    def key_for(self, path_qs: str, crawler_class: CrawlerClass) -> str:
        return build_key(self.prefix, path_qs, crawler_class)

    async def get(self, key: str) -> str | None:
        if not self.enabled:
            return None
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.warning("cache.get_failed", cache_key=key, error_kind=type(e).__name__, error=str(e))
            return None

    async def set(self, key: str, value: str, ttl_s: int | None = None) -> None:
        if not self.enabled:
            return
        ttl = ttl_s or self.default_ttl_s
        try:
            await self._client.set(key, value, ex=ttl)
            logger.debug("cache.set", cache_key=key, ttl_s=ttl)
        except RedisError as e:
            logger.warning("cache.set_failed", cache_key=key, error_kind=type(e).__name__, error=str(e))

    async def delete(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            await self._client.delete(key)
            logger.debug("cache.delete", cache_key=key)
        except RedisError as e:
            logger.warning("cache.delete_failed", cache_key=key, error_kind=type(e).__name__, error=str(e))

    async def clear_all(self) -> int:
        """
        Delete every key under this cache's prefix. Returns how many were removed.
        """
        if not self.enabled:
            return 0

        removed = 0
        batch: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{self.prefix}:*", count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self._client.delete(*batch)
                    batch = []
            if batch:
                removed += await self._client.delete(*batch)
        except RedisError as e:
            logger.warning("cache.clear_failed", prefix=self.prefix, removed=removed, error_kind=type(e).__name__, error=str(e))
            return removed

        logger.info("cache.cleared", prefix=self.prefix, removed=removed)
        return removed

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
            logger.info("cache.closed")
        except RedisError as e:
            logger.warning("cache.close_failed", error_kind=type(e).__name__, error=str(e))
