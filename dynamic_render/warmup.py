"""
Cache warm-up and smoke check against a running render service.

Sends each path with a set of representative crawler User-Agents (and one
regular browser, which should be redirected), records one WarmupResult per
request and saves the table under results/<name>.csv.
"""

import argparse
import asyncio
import re
import time
from dataclasses import asdict
from pathlib import Path

import aiohttp
import pandas as pd
import structlog

from .log import configure_logging
from .metrics import WarmupResult
from .settings import PROJECT_ROOT

logger = structlog.get_logger(__name__)

RESULTS_DIR = PROJECT_ROOT / "results"

WARMUP_USER_AGENTS = {
    "googlebot": "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)",
    "bingbot": "Mozilla/5.0 (compatible; bingbot/2.0; +http://www.bing.com/bingbot.htm)",
    "facebook": "facebookexternalhit/1.1 (+http://www.facebook.com/externalhit_uatext.php)",
    "twitter": "Twitterbot/1.0",
    "browser": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
}

_SERVER_TIMING_DUR = re.compile(r"dur=(\d+(?:\.\d+)?)")


def load_paths_from_txt(path: str | Path) -> list[str]:
    """
    One request path per line; blank lines and '#' comments are skipped.
    Paths without a leading slash get one.
    """
    p = Path(path)
    if not p.is_absolute():
        p = PROJECT_ROOT / p

    if not p.exists():
        logger.warning("warmup.paths_file_missing", path=str(p))
        return []

    paths = []
    for ln in p.read_text(encoding="utf-8").splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#"):
            continue
        paths.append(ln if ln.startswith("/") else f"/{ln}")
    return paths


def parse_render_ms(server_timing: str | None) -> int | None:
    if not server_timing:
        return None
    m = _SERVER_TIMING_DUR.search(server_timing)
    return int(float(m.group(1))) if m else None


class WarmupClient:
    """
    aiohttp based client for a running render service.

    - Redirects are not followed: a 302 is the expected answer for humans
      and for failed renders, and is recorded as such
    - Measures TTL, TTFB
    """

    def __init__(self, session: aiohttp.ClientSession, base_url: str, timeout_s: float = 60.0):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    async def fetch(self, path: str, agent: str, user_agent: str) -> WarmupResult:
        url = f"{self.base_url}{path}"
        t0 = time.perf_counter()
        ttfb = None

        try:
            async with self.session.get(
                url,
                headers={"User-Agent": user_agent},
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                ttfb = time.perf_counter() - t0
                body = await resp.read()
                ttl = time.perf_counter() - t0

                return WarmupResult(
                    url=url,
                    agent=agent,
                    status=resp.status,
                    bytes_len=len(body),
                    rendered="X-Rendered-By" in resp.headers or resp.headers.get("X-Cache") == "HIT",
                    ttl_s=ttl,
                    ttfb_s=ttfb,
                    error_type=None,
                    cache=resp.headers.get("X-Cache"),
                    crawler_class=resp.headers.get("X-Crawler-Type"),
                    render_ms=parse_render_ms(resp.headers.get("Server-Timing")),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            ttl = time.perf_counter() - t0
            logger.warning("warmup.request_failed", url=url, agent=agent, error_kind=type(e).__name__)
            return WarmupResult(
                url=url, agent=agent, status=None, bytes_len=0, rendered=False,
                ttl_s=ttl, ttfb_s=ttfb, error_type=type(e).__name__,
            )


async def run_warmup(
    base_url: str,
    paths: list[str],
    agents: dict[str, str] | None = None,
    concurrency: int = 4,
    session: aiohttp.ClientSession | None = None,
) -> list[WarmupResult]:
    agents = agents or WARMUP_USER_AGENTS
    sem = asyncio.Semaphore(concurrency)

    async def one(client, path, agent, ua):
        async with sem:
            return await client.fetch(path, agent, ua)

    own_session = session is None
    session = session or aiohttp.ClientSession()
    try:
        client = WarmupClient(session, base_url)
        tasks = [one(client, path, agent, ua) for path in paths for agent, ua in agents.items()]
        return list(await asyncio.gather(*tasks))
    finally:
        if own_session:
            await session.close()


def results_frame(results: list[WarmupResult]) -> pd.DataFrame:
    return pd.DataFrame([asdict(r) for r in results])


def save_df(df: pd.DataFrame, name: str, results_dir: Path = RESULTS_DIR) -> Path | None:
    """
    Persist a DataFrame as CSV under results/<name>.csv.
    """
    if df.empty:
        return None

    results_dir.mkdir(parents=True, exist_ok=True)
    out_path = results_dir / f"{name}.csv"
    df.to_csv(out_path, index=False)
    logger.info("warmup.saved", path=str(out_path), rows=len(df))
    return out_path


def summarize(df: pd.DataFrame) -> pd.DataFrame:
    """Per agent: requests, rendered share, cache hits, median total time."""
    if df.empty:
        return df
    return df.groupby("agent").agg(
        requests=("url", "count"),
        rendered=("rendered", "mean"),
        cache_hits=("cache", lambda s: int((s == "HIT").sum())),
        errors=("error_type", lambda s: int(s.notna().sum())),
        median_ttl_s=("ttl_s", "median"),
    )


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Warm the render cache of a running service")
    parser.add_argument("paths_file", help="text file with one path per line")
    parser.add_argument("--base-url", default="http://localhost:3000")
    parser.add_argument("--concurrency", type=int, default=4)
    parser.add_argument("--name", default="warmup")
    args = parser.parse_args(argv)

    configure_logging()
    paths = load_paths_from_txt(args.paths_file)
    if not paths:
        logger.warning("warmup.no_paths", paths_file=args.paths_file)
        return

    results = asyncio.run(run_warmup(args.base_url, paths, concurrency=args.concurrency))
    df = results_frame(results)
    save_df(df, args.name)
    print(summarize(df).to_string())


if __name__ == "__main__":
    main()
