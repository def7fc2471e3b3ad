"""Tests for the persistent crawl frontier."""

from datetime import timedelta

import aiosqlite
import pytest

from foiacrawl.claim import claim_pending_url
from foiacrawl.config import CrawlStateConfig
from foiacrawl.frontier import (
    add_url,
    add_urls,
    check_config_changed,
    clear_source,
    clear_source_all,
    count_by_source,
    get_crawl_state,
    get_failed_urls,
    get_last_request,
    get_pending_urls,
    get_request_stats,
    get_retryable_urls,
    get_url,
    get_urls_needing_refresh,
    log_request,
    mark_for_refresh,
    record_fetch_failure,
    requeue_fetching,
    should_retry_status_code,
    store_config_hash,
    update_url,
    url_exists,
)
from foiacrawl.models import CrawlRequest, CrawlUrl, DiscoveryMethod, UrlStatus, to_rfc3339, utcnow


def _url(path, depth=0, source="x", **kw):
    return CrawlUrl(url=f"https://x.gov{path}", source_id=source, depth=depth, **kw)


@pytest.mark.asyncio
async def test_add_url_is_insert_if_absent(db_path):
    entry = _url("/")
    assert await add_url(entry, db_path=db_path) is True
    assert await add_url(entry, db_path=db_path) is False
    assert await count_by_source("x", db_path=db_path) == 1
    assert await url_exists("x", "https://x.gov/", db_path=db_path)

    # same URL under another source is a different row
    assert await add_url(_url("/", source="y"), db_path=db_path) is True


@pytest.mark.asyncio
async def test_add_urls_counts_new_rows(db_path):
    await add_url(_url("/a"), db_path=db_path)
    n = await add_urls([_url("/a"), _url("/b"), _url("/c")], db_path=db_path)
    assert n == 2
    assert await count_by_source("x", db_path=db_path) == 3


@pytest.mark.asyncio
async def test_round_trip_keeps_provenance(db_path):
    entry = _url("/doc.pdf", depth=2, discovery_method=DiscoveryMethod.SITEMAP,
                 parent_url="https://x.gov/sitemap.xml", discovery_context={"sitemap": "main"})
    await add_url(entry, db_path=db_path)
    stored = await get_url("x", entry.url, db_path=db_path)
    assert stored.discovery_method == DiscoveryMethod.SITEMAP
    assert stored.parent_url == "https://x.gov/sitemap.xml"
    assert stored.discovery_context == {"sitemap": "main"}
    assert stored.depth == 2
    assert stored.status == UrlStatus.DISCOVERED


@pytest.mark.asyncio
async def test_pending_urls_shallow_then_oldest(db_path):
    now = utcnow()
    await add_url(_url("/deep", depth=2, discovered_at=now - timedelta(hours=3)), db_path=db_path)
    await add_url(_url("/new", depth=1, discovered_at=now), db_path=db_path)
    await add_url(_url("/old", depth=1, discovered_at=now - timedelta(hours=1)), db_path=db_path)

    pending = await get_pending_urls("x", 10, db_path=db_path)
    assert [p.url for p in pending] == ["https://x.gov/old", "https://x.gov/new", "https://x.gov/deep"]


@pytest.mark.asyncio
async def test_retry_eligibility_follows_next_retry_at(db_path):
    await add_url(_url("/flaky"), db_path=db_path)
    entry = await claim_pending_url("x", db_path=db_path)
    await record_fetch_failure(entry, "HTTP 503", max_retries=3, retry_delay=600, db_path=db_path)

    assert await get_retryable_urls("x", 10, db_path=db_path) == []

    later = utcnow() + timedelta(seconds=601)
    retryable = await get_retryable_urls("x", 10, now=later, db_path=db_path)
    assert [r.url for r in retryable] == ["https://x.gov/flaky"]
    assert retryable[0].status == UrlStatus.FAILED
    assert retryable[0].retry_count == 1


@pytest.mark.asyncio
async def test_exhausted_urls_wait_for_long_cooldown(db_path):
    await add_url(_url("/gone"), db_path=db_path)
    entry = await claim_pending_url("x", db_path=db_path)
    await record_fetch_failure(entry, "HTTP 404", permanent=True, db_path=db_path)

    assert (await get_url("x", entry.url, db_path=db_path)).status == UrlStatus.EXHAUSTED
    assert await get_retryable_urls("x", 10, now=utcnow() + timedelta(days=30), db_path=db_path) == []
    retryable = await get_retryable_urls("x", 10, now=utcnow() + timedelta(days=71), db_path=db_path)
    assert [r.url for r in retryable] == [entry.url]


@pytest.mark.asyncio
async def test_mark_for_refresh_keeps_validators(db_path):
    await add_url(_url("/memo.pdf"), db_path=db_path)
    entry = await claim_pending_url("x", db_path=db_path)
    entry.mark_fetched(content_hash="deadbeef00", etag='"abc"', last_modified="Tue, 02 Jan 2024 00:00:00 GMT")
    await update_url(entry, db_path=db_path)

    await mark_for_refresh("x", entry.url, db_path=db_path)
    refreshed = await get_url("x", entry.url, db_path=db_path)
    assert refreshed.status == UrlStatus.DISCOVERED
    assert refreshed.etag == '"abc"'
    assert refreshed.last_modified == "Tue, 02 Jan 2024 00:00:00 GMT"
    assert refreshed.content_hash == "deadbeef00"


@pytest.mark.asyncio
async def test_urls_needing_refresh(db_path):
    await add_url(_url("/memo.pdf"), db_path=db_path)
    entry = await claim_pending_url("x", db_path=db_path)
    entry.mark_fetched(content_hash="deadbeef00")
    await update_url(entry, db_path=db_path)

    assert await get_urls_needing_refresh("x", utcnow() - timedelta(days=1), 10, db_path=db_path) == []
    stale = await get_urls_needing_refresh("x", utcnow() + timedelta(seconds=1), 10, db_path=db_path)
    assert [s.url for s in stale] == [entry.url]


@pytest.mark.asyncio
async def test_config_drift(db_path):
    assert await check_config_changed("x", "hash-a", db_path=db_path) is False
    await store_config_hash("x", "hash-a", db_path=db_path)
    assert await check_config_changed("x", "hash-a", db_path=db_path) is False
    assert await check_config_changed("x", "hash-b", db_path=db_path) is True


@pytest.mark.asyncio
async def test_clear_source_keeps_fetched_history(db_path):
    await add_urls([_url("/a"), _url("/b")], db_path=db_path)
    entry = await claim_pending_url("x", db_path=db_path)
    entry.mark_fetched(content_hash="deadbeef00")
    await update_url(entry, db_path=db_path)
    await store_config_hash("x", "hash-a", db_path=db_path)

    await clear_source("x", db_path=db_path)
    assert await count_by_source("x", db_path=db_path) == 1
    assert await check_config_changed("x", "hash-b", db_path=db_path) is True

    await clear_source_all("x", db_path=db_path)
    assert await count_by_source("x", db_path=db_path) == 0
    assert await check_config_changed("x", "hash-b", db_path=db_path) is False


@pytest.mark.asyncio
async def test_requeue_fetching(db_path):
    await add_url(_url("/a"), db_path=db_path)
    await claim_pending_url("x", db_path=db_path)
    assert await requeue_fetching("x", db_path=db_path) == 1
    assert (await get_url("x", "https://x.gov/a", db_path=db_path)).status == UrlStatus.DISCOVERED


@pytest.mark.asyncio
async def test_failed_urls_newest_first(db_path):
    await add_urls([_url("/a"), _url("/b")], db_path=db_path)
    first = await claim_pending_url("x", db_path=db_path)
    await record_fetch_failure(first, "HTTP 500", db_path=db_path)
    second = await claim_pending_url("x", db_path=db_path)
    await record_fetch_failure(second, "HTTP 404", permanent=True, db_path=db_path)

    failed = await get_failed_urls("x", 10, db_path=db_path)
    assert [f.url for f in failed] == [second.url, first.url]


@pytest.mark.asyncio
async def test_request_log_and_stats(db_path):
    await log_request(CrawlRequest(source_id="x", url="https://x.gov/a", response_status=200,
                                   response_size=100, duration_ms=10), db_path=db_path)
    await log_request(CrawlRequest(source_id="x", url="https://x.gov/a", response_status=304,
                                   request_headers={"If-None-Match": '"v1"'}, was_conditional=True,
                                   was_not_modified=True, response_size=0, duration_ms=30), db_path=db_path)
    await log_request(CrawlRequest(source_id="x", url="https://x.gov/b", response_status=503,
                                   duration_ms=20, error="HTTP 503"), db_path=db_path)

    stats = await get_request_stats("x", db_path=db_path)
    assert stats.total_requests == 3
    assert stats.success_200 == 1
    assert stats.not_modified_304 == 1
    assert stats.errors == 1
    assert stats.conditional_requests == 1
    assert stats.avg_duration_ms == pytest.approx(20.0)
    assert stats.total_bytes == 100

    last = await get_last_request("x", "https://x.gov/a", db_path=db_path)
    assert last.response_status == 304
    assert last.was_not_modified
    assert last.request_headers == {"If-None-Match": '"v1"'}


def test_should_retry_status_code():
    for code in (0, 500, 502, 503, 408, 420, 423, 429, 451):
        assert should_retry_status_code(code)
    for code in (400, 401, 403, 404, 410):
        assert not should_retry_status_code(code)


@pytest.mark.asyncio
async def test_crawl_state_reports_pending_and_unexplored(db_path):
    await add_url(_url("/", discovery_method=DiscoveryMethod.SEED), db_path=db_path)
    await add_url(_url("/list", depth=1, discovery_method=DiscoveryMethod.HTML_LINK,
                       parent_url="https://x.gov/"), db_path=db_path)

    state = await get_crawl_state("x", db_path=db_path)
    assert state.urls_discovered == 2
    assert state.urls_pending == 2
    assert state.has_pending_urls
    assert state.needs_resume()
    assert not state.has_unexplored_branches

    # fetched html_link page with no children, below the ceiling
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            "UPDATE crawl_urls SET status = 'fetched', fetched_at = ? WHERE url = ?",
            (to_rfc3339(utcnow()), "https://x.gov/list"),
        )
        await db.commit()

    state = await get_crawl_state("x", db_path=db_path)
    assert state.has_unexplored_branches
    strict = await get_crawl_state("x", CrawlStateConfig(unexplored_depth_ceiling=1), db_path=db_path)
    assert not strict.has_unexplored_branches
