from pathlib import Path

import pytest
from aiohttp.test_utils import TestServer

from dynamic_render.metrics import WarmupResult
from dynamic_render.server import create_app
from dynamic_render.warmup import (
    WARMUP_USER_AGENTS,
    load_paths_from_txt,
    parse_render_ms,
    results_frame,
    run_warmup,
    save_df,
    summarize,
)


def test_load_paths_skips_comments_and_adds_slash(tmp_path: Path):
    paths_file = tmp_path / "paths.txt"
    paths_file.write_text("# landing pages\n/\n\nabout\n/products/42?ref=x\n", encoding="utf-8")

    assert load_paths_from_txt(paths_file) == ["/", "/about", "/products/42?ref=x"]


def test_missing_paths_file_gives_empty_list(tmp_path: Path):
    assert load_paths_from_txt(tmp_path / "nope.txt") == []


def test_parse_render_ms():
    assert parse_render_ms('Prerender;dur=1234;desc="Dynamic render time (ms)"') == 1234
    assert parse_render_ms(None) is None
    assert parse_render_ms("cache;desc=hit") is None


def test_save_df_and_summary(tmp_path: Path):
    rows = [
        WarmupResult(url="http://svc/", agent="googlebot", status=200, bytes_len=100, rendered=True,
                     ttl_s=1.5, ttfb_s=1.4, error_type=None, cache="MISS"),
        WarmupResult(url="http://svc/", agent="googlebot", status=200, bytes_len=100, rendered=True,
                     ttl_s=0.1, ttfb_s=0.1, error_type=None, cache="HIT"),
        WarmupResult(url="http://svc/", agent="browser", status=302, bytes_len=0, rendered=False,
                     ttl_s=0.01, ttfb_s=0.01, error_type=None),
    ]
    df = results_frame(rows)

    out = save_df(df, "warmup", results_dir=tmp_path)

    assert out == tmp_path / "warmup.csv"
    assert out.exists()
    summary = summarize(df)
    assert summary.loc["googlebot", "requests"] == 2
    assert summary.loc["googlebot", "cache_hits"] == 1
    assert summary.loc["browser", "rendered"] == 0


def test_save_df_skips_empty(tmp_path: Path):
    assert save_df(results_frame([]), "empty", results_dir=tmp_path) is None


@pytest.mark.asyncio
async def test_run_warmup_against_service(config, fake_renderer, cache):
    app = create_app(config, renderer=fake_renderer, cache=cache)
    server = TestServer(app)
    await server.start_server()
    try:
        base_url = str(server.make_url("/")).rstrip("/")
        results = await run_warmup(base_url, ["/", "/about"], concurrency=2)
    finally:
        await server.close()

    assert len(results) == 2 * len(WARMUP_USER_AGENTS)
    by_agent = {}
    for r in results:
        by_agent.setdefault(r.agent, []).append(r)

    assert all(r.status == 302 and not r.rendered for r in by_agent["browser"])
    assert all(r.status == 200 and r.rendered for r in by_agent["googlebot"])
    assert {r.crawler_class for r in by_agent["facebook"]} == {"SocialMedia"}
    assert all(r.error_type is None for r in results)
