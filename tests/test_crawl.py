"""Tests for the channel, breadth-first discovery and whole-source runs."""

import asyncio

import pytest

from foiacrawl.channel import UrlChannel
from foiacrawl.config import CrawlerConfig, config_hash
from foiacrawl.crawl import DiscoveryCrawler, run_source, seed_urls
from foiacrawl.documents import count_documents, get_document
from foiacrawl.errors import CrawlFailedError, DriveRateLimitedError
from foiacrawl.frontier import check_config_changed, get_crawl_state, get_last_request, get_recent_downloads, get_url
from foiacrawl.models import DiscoveryMethod, UrlStatus


def _cfg(**kw):
    defaults = dict(source_id="agency", base_url="https://www.agency.gov", document_patterns=[r"\.pdf$"])
    defaults.update(kw)
    return CrawlerConfig(**defaults)


def _page(*hrefs):
    return "<html><body>" + "".join(f'<a href="{h}">{h}</a>' for h in hrefs) + "</body></html>"


async def _collect(channel):
    return [url async for url in channel]


# ------------------ channel ------------------

@pytest.mark.asyncio
async def test_channel_delivers_then_ends():
    channel = UrlChannel(maxsize=2)
    assert await channel.send("a")
    assert await channel.send("b")
    channel.finish()
    assert await _collect(channel) == ["a", "b"]
    assert await channel.recv() is None


@pytest.mark.asyncio
async def test_send_fails_after_receiver_closes():
    channel = UrlChannel(maxsize=1)
    assert await channel.send("a")
    blocked = asyncio.create_task(channel.send("b"))
    await asyncio.sleep(0)
    assert not blocked.done()

    channel.close()
    assert await blocked is False
    assert await channel.send("c") is False


# ------------------ seeds ------------------

def test_seed_urls_from_paths_and_queries():
    cfg = _cfg(start_paths=["/", "/foia/library"], search_url_template="/search?q={query}",
               search_queries=["budget memo", "a&b"])
    assert seed_urls(cfg) == [
        "https://www.agency.gov/",
        "https://www.agency.gov/foia/library",
        "https://www.agency.gov/search?q=budget%20memo",
        "https://www.agency.gov/search?q=a%26b",
    ]


# ------------------ discovery ------------------

@pytest.mark.asyncio
async def test_bfs_discovers_documents_and_records_provenance(db_path, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page("/reading-room", "/files/a.pdf", "https://elsewhere.org/x.pdf"),
        "https://www.agency.gov/reading-room": _page("/reading-room/2", "/files/a.pdf", "/files/b.pdf"),
        "https://www.agency.gov/reading-room/2": _page("/files/c.pdf", "https://other.org/page"),
    })
    crawler = DiscoveryCrawler(_cfg(), db_path=db_path, fetch_page=fake_web.page)
    channel = UrlChannel()

    stats = await crawler.run(channel)
    channel.finish()
    sent = await _collect(channel)

    assert sent == [
        "https://www.agency.gov/files/a.pdf",
        "https://www.agency.gov/files/b.pdf",
        "https://www.agency.gov/files/c.pdf",
    ]
    assert stats.pages_crawled == 3
    assert stats.documents_found == 3
    assert "https://other.org/page" not in fake_web.calls
    assert await get_url("agency", "https://elsewhere.org/x.pdf", db_path=db_path) is None

    c = await get_url("agency", "https://www.agency.gov/files/c.pdf", db_path=db_path)
    assert c.depth == 3
    assert c.parent_url == "https://www.agency.gov/reading-room/2"
    assert c.discovery_method == DiscoveryMethod.HTML_LINK
    seed = await get_url("agency", "https://www.agency.gov/", db_path=db_path)
    assert seed.discovery_method == DiscoveryMethod.SEED


@pytest.mark.asyncio
async def test_bfs_respects_max_depth(db_path, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page("/one"),
        "https://www.agency.gov/one": _page("/two", "/files/one.pdf"),
        "https://www.agency.gov/two": _page("/files/two.pdf"),
    })
    crawler = DiscoveryCrawler(_cfg(max_depth=1), db_path=db_path, fetch_page=fake_web.page)
    channel = UrlChannel()
    await crawler.run(channel)
    channel.finish()

    assert await _collect(channel) == ["https://www.agency.gov/files/one.pdf"]
    assert "https://www.agency.gov/two" not in fake_web.calls


@pytest.mark.asyncio
async def test_page_failures_are_skipped(db_path, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page("/broken", "/ok"),
        "https://www.agency.gov/broken": 500,
        "https://www.agency.gov/ok": _page("/files/x.pdf"),
    })
    crawler = DiscoveryCrawler(_cfg(), db_path=db_path, fetch_page=fake_web.page)
    channel = UrlChannel()
    stats = await crawler.run(channel)

    assert stats.failures.total == 1
    assert stats.failures.consecutive == 0
    assert stats.documents_found == 1


@pytest.mark.asyncio
async def test_all_seeds_failing_is_fatal(db_path, fake_web):
    fake_web.pages["https://www.agency.gov/"] = 503
    crawler = DiscoveryCrawler(_cfg(start_paths=["/", "/missing"]), db_path=db_path, fetch_page=fake_web.page)

    with pytest.raises(CrawlFailedError) as exc:
        await crawler.run(UrlChannel())
    assert exc.value.failures == 2
    assert exc.value.source_id == "agency"


@pytest.mark.asyncio
async def test_discovery_stops_when_receiver_closes(db_path, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page(*(f"/files/{i}.pdf" for i in range(10)), "/more"),
        "https://www.agency.gov/more": _page("/files/late.pdf"),
    })
    channel = UrlChannel(maxsize=1)
    crawler = DiscoveryCrawler(_cfg(), db_path=db_path, fetch_page=fake_web.page)
    task = asyncio.create_task(crawler.run(channel))

    assert await channel.recv() == "https://www.agency.gov/files/0.pdf"
    channel.close()
    stats = await asyncio.wait_for(task, timeout=5)

    assert stats.cancelled
    assert "https://www.agency.gov/more" not in fake_web.calls


@pytest.mark.asyncio
async def test_drive_folders_are_expanded(db_path, fake_web):
    folder = "https://drive.google.com/drive/folders/1TrGxDGQLDLZu1vvvZDBAh-e7wN3y6Hoz"
    fake_web.pages["https://www.agency.gov/"] = _page(folder)

    async def lister(url):
        assert url == folder
        return ["https://drive.google.com/uc?export=download&id=FILE1&confirm=t"]

    crawler = DiscoveryCrawler(_cfg(), db_path=db_path, fetch_page=fake_web.page, list_drive_folder=lister)
    channel = UrlChannel()
    await crawler.run(channel)
    channel.finish()

    assert await _collect(channel) == ["https://drive.google.com/uc?export=download&id=FILE1&confirm=t"]
    entry = await get_url("agency", "https://drive.google.com/uc?export=download&id=FILE1&confirm=t", db_path=db_path)
    assert entry.discovery_method == DiscoveryMethod.GOOGLE_DRIVE_FOLDER


@pytest.mark.asyncio
async def test_rate_limited_drive_folder_does_not_stop_discovery(db_path, fake_web):
    folder = "https://drive.google.com/drive/folders/1TrGxDGQLDLZu1vvvZDBAh-e7wN3y6Hoz"
    fake_web.pages["https://www.agency.gov/"] = _page(folder, "/files/a.pdf")

    async def lister(url):
        raise DriveRateLimitedError()

    crawler = DiscoveryCrawler(_cfg(), db_path=db_path, fetch_page=fake_web.page, list_drive_folder=lister)
    channel = UrlChannel()
    stats = await crawler.run(channel)
    channel.finish()

    assert await _collect(channel) == ["https://www.agency.gov/files/a.pdf"]
    assert stats.pages_crawled == 1


@pytest.mark.asyncio
async def test_sitemap_seeding(db_path, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page(),
        "https://www.agency.gov/sitemap.xml": (
            '<?xml version="1.0"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">'
            "<url><loc>https://www.agency.gov/files/s.pdf</loc></url>"
            "<url><loc>https://www.agency.gov/listing</loc></url></urlset>"
        ),
        "https://www.agency.gov/listing": _page("/files/l.pdf"),
    })
    cfg = _cfg(sitemap_urls=["https://www.agency.gov/sitemap.xml"])
    crawler = DiscoveryCrawler(cfg, db_path=db_path, fetch_page=fake_web.page)
    channel = UrlChannel()
    await crawler.run(channel)
    channel.finish()

    assert await _collect(channel) == ["https://www.agency.gov/files/s.pdf", "https://www.agency.gov/files/l.pdf"]
    s = await get_url("agency", "https://www.agency.gov/files/s.pdf", db_path=db_path)
    assert s.discovery_method == DiscoveryMethod.SITEMAP
    assert s.depth == 1
    l = await get_url("agency", "https://www.agency.gov/files/l.pdf", db_path=db_path)
    assert l.depth == 2


# ------------------ run_source ------------------

@pytest.mark.asyncio
async def test_run_source_downloads_discovered_documents(db_path, documents_dir, http_cfg, fake_web):
    fake_web.pages.update({
        "https://www.agency.gov/": _page("/files/a.pdf", "/files/b.pdf", "/files/gone.pdf"),
        "https://www.agency.gov/files/a.pdf": b"%PDF-1.4 a",
        "https://www.agency.gov/files/b.pdf": b"%PDF-1.4 b",
    })
    cfg = _cfg()

    report = await run_source(cfg, http_cfg, db_path=db_path, documents_dir=documents_dir,
                              fetcher=fake_web.download, fetch_page=fake_web.page)

    assert report.discovery.documents_found == 3
    # the seed page itself is downloaded too
    assert report.downloads.new_documents == 3
    assert report.downloads.failed == 1
    assert await count_documents("agency", db_path=db_path) == 3

    a = await get_url("agency", "https://www.agency.gov/files/a.pdf", db_path=db_path)
    assert a.status == UrlStatus.FETCHED
    doc = await get_document(a.document_id, db_path=db_path)
    assert doc.current_version().content_hash == a.content_hash
    assert doc.metadata["parent_url"] == "https://www.agency.gov/"

    gone = await get_url("agency", "https://www.agency.gov/files/gone.pdf", db_path=db_path)
    assert gone.status == UrlStatus.EXHAUSTED
    assert gone.last_error == "HTTP 404"

    state = await get_crawl_state("agency", db_path=db_path)
    assert state.urls_pending == 0
    assert state.urls_fetched == 3
    recent = await get_recent_downloads("agency", 10, db_path=db_path)
    assert {e.url for e in recent} == {"https://www.agency.gov/", a.url, "https://www.agency.gov/files/b.pdf"}


@pytest.mark.asyncio
async def test_run_source_limit_stops_discovery(db_path, documents_dir, http_cfg, fake_web):
    fake_web.pages["https://www.agency.gov/"] = _page(*(f"/files/{i}.pdf" for i in range(20)))
    for i in range(20):
        fake_web.pages[f"https://www.agency.gov/files/{i}.pdf"] = f"%PDF {i}".encode()

    report = await run_source(_cfg(), http_cfg, db_path=db_path, documents_dir=documents_dir,
                              limit=2, fetcher=fake_web.download, fetch_page=fake_web.page)

    assert report.downloads.processed == 2
    assert await count_documents("agency", db_path=db_path) == 2


@pytest.mark.asyncio
async def test_second_run_revalidates_with_conditional_get(db_path, documents_dir, http_cfg, fake_web, result_factory):
    url = "https://www.agency.gov/files/a.pdf"
    fake_web.pages.update({
        "https://www.agency.gov/": _page("/files/a.pdf"),
        url: result_factory(url, 200, b"%PDF a", {"Content-Type": "application/pdf", "ETag": '"v1"'}),
    })
    cfg = _cfg(refresh_ttl_days=0)
    await run_source(cfg, http_cfg, db_path=db_path, documents_dir=documents_dir,
                     fetcher=fake_web.download, fetch_page=fake_web.page)

    fake_web.pages[url] = result_factory(url, 304)
    report = await run_source(cfg, http_cfg, db_path=db_path, documents_dir=documents_dir,
                              discover=False, fetcher=fake_web.download, fetch_page=fake_web.page)

    assert report.refreshed == 2
    assert report.downloads.not_modified == 1
    last = await get_last_request("agency", url, db_path=db_path)
    assert last.was_conditional
    assert last.was_not_modified
    assert last.request_headers["If-None-Match"] == '"v1"'
    entry = await get_url("agency", url, db_path=db_path)
    assert entry.status == UrlStatus.FETCHED
    assert entry.etag == '"v1"'


@pytest.mark.asyncio
async def test_config_change_clears_unfinished_rows(db_path, documents_dir, http_cfg, fake_web):
    fake_web.pages["https://www.agency.gov/"] = 503
    with pytest.raises(CrawlFailedError):
        await run_source(_cfg(), http_cfg, db_path=db_path, documents_dir=documents_dir,
                         fetcher=fake_web.download, fetch_page=fake_web.page)
    seed = await get_url("agency", "https://www.agency.gov/", db_path=db_path)
    assert seed.status == UrlStatus.FAILED

    fake_web.pages["https://www.agency.gov/"] = _page()
    await run_source(_cfg(start_paths=["/foia"]), http_cfg, db_path=db_path, documents_dir=documents_dir,
                     discover=False, fetcher=fake_web.download, fetch_page=fake_web.page)
    assert await get_url("agency", "https://www.agency.gov/", db_path=db_path) is None


@pytest.mark.asyncio
async def test_override_with_loaded_hash_keeps_unfinished_rows(db_path, documents_dir, http_cfg, fake_web):
    fake_web.pages["https://www.agency.gov/"] = 503
    loaded = _cfg()
    with pytest.raises(CrawlFailedError):
        await run_source(loaded, http_cfg, db_path=db_path, documents_dir=documents_dir,
                         fetcher=fake_web.download, fetch_page=fake_web.page)

    overridden = _cfg(max_depth=2)
    await run_source(overridden, http_cfg, db_path=db_path, documents_dir=documents_dir,
                     discover=False, fetcher=fake_web.download, fetch_page=fake_web.page,
                     loaded_hash=config_hash(loaded))

    seed = await get_url("agency", "https://www.agency.gov/", db_path=db_path)
    assert seed.status == UrlStatus.FAILED
    assert not await check_config_changed("agency", config_hash(loaded), db_path=db_path)
