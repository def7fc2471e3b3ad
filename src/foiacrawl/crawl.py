from __future__ import annotations
import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Deque, List, Optional, Set, Tuple
from urllib.parse import quote, urljoin

from .channel import UrlChannel
from .config import CrawlerConfig, HttpConfig, config_hash, get_documents_dir
from .db import init_db
from .download import DownloadPool, DownloadStats, Fetcher
from .errors import CrawlFailedError, GoogleDriveError
from .fetch import FetchResult, fetch, fetch_js
from .frontier import (
    add_url,
    check_config_changed,
    clear_source,
    get_pending_urls,
    get_retryable_urls,
    get_urls_needing_refresh,
    mark_for_refresh,
    store_config_hash,
)
from .google_drive import list_folder_documents
from .models import CrawlUrl, DiscoveryMethod, UrlStatus, utcnow
from .parse import (
    allowed_domain,
    classify_links,
    compile_patterns,
    extract_from_sitemap,
    is_allowed,
    is_document_url,
)

logger = logging.getLogger(__name__)

PageFetcher = Callable[[str], Awaitable[FetchResult]]
FolderLister = Callable[[str], Awaitable[List[str]]]

# sitemap indexes nest; stop following them past this
MAX_SITEMAP_DEPTH = 3
RESUME_BATCH = 50

@dataclass
class FailureStats:
    consecutive: int = 0
    total: int = 0

    def record_failure(self):
        self.consecutive += 1
        self.total += 1

    def record_success(self):
        self.consecutive = 0

@dataclass
class DiscoveryStats:
    pages_crawled: int = 0
    documents_found: int = 0
    failures: FailureStats = field(default_factory=FailureStats)
    cancelled: bool = False

def seed_urls(cfg: CrawlerConfig) -> List[str]:
    """Start paths plus one search URL per configured query, in order, without duplicates."""
    seeds: List[str] = []
    for path in cfg.start_paths or ["/"]:
        seeds.append(urljoin(cfg.base_url, path))
    if cfg.search_url_template:
        for query in cfg.search_queries:
            template = cfg.search_url_template.replace("{query}", quote(query, safe=""))
            seeds.append(urljoin(cfg.base_url, template))
    return list(dict.fromkeys(seeds))

class DiscoveryCrawler:
    """
    Breadth-first walk of one source's pages.

    Document URLs are recorded in the frontier and sent on the channel as they
    are found; page URLs only feed this run's in-memory queue. The walk ends
    when the queue is empty or the channel's receiver has gone away.
    """

    def __init__(self, cfg: CrawlerConfig, http_cfg: HttpConfig | None = None,
                 db_path: str | None = None, fetch_page: PageFetcher | None = None,
                 list_drive_folder: FolderLister | None = None):
        self.cfg = cfg
        self.http_cfg = http_cfg or HttpConfig()
        self.db_path = db_path
        self.fetch_page = fetch_page or self._default_fetch
        self.list_drive_folder = list_drive_folder or self._default_list_folder
        self.domain = allowed_domain(cfg.base_url)
        self.patterns = compile_patterns(cfg.document_patterns)
        self.stats = DiscoveryStats()
        self._visited: Set[str] = set()
        self._queue: Deque[Tuple[str, int]] = deque()

    async def _default_fetch(self, url: str) -> FetchResult:
        if self.cfg.use_browser:
            return await fetch_js(url, self.http_cfg)
        return await fetch(url, self.http_cfg)

    async def _default_list_folder(self, url: str) -> List[str]:
        return await list_folder_documents(url, self.http_cfg)

    def _enqueue(self, url: str, depth: int) -> bool:
        if url in self._visited:
            return False
        self._visited.add(url)
        self._queue.append((url, depth))
        return True

    async def _emit(self, channel: UrlChannel, url: str, depth: int, parent: Optional[str],
                    method: DiscoveryMethod, context: Optional[dict] = None) -> bool:
        """Record a document URL and hand it to the downloaders. False once the receiver is gone."""
        if url in self._visited:
            return True
        self._visited.add(url)
        entry = CrawlUrl(
            url=url,
            source_id=self.cfg.source_id,
            discovery_method=method,
            parent_url=parent,
            discovery_context=context or {},
            depth=depth,
        )
        if await add_url(entry, db_path=self.db_path):
            logger.debug(f"New document URL {url} (depth {depth})")
        self.stats.documents_found += 1
        if not await channel.send(url):
            logger.info(f"Receiver dropped, stopping discovery for {self.cfg.source_id}")
            self.stats.cancelled = True
            return False
        return True

    async def _seed(self) -> int:
        for url in seed_urls(self.cfg):
            await add_url(CrawlUrl(url=url, source_id=self.cfg.source_id,
                                   discovery_method=DiscoveryMethod.SEED, depth=0),
                          db_path=self.db_path)
            self._enqueue(url, 0)
        return len(self._queue)

    async def _seed_sitemaps(self, channel: UrlChannel) -> bool:
        pending = [(u, 0) for u in self.cfg.sitemap_urls]
        seen: Set[str] = set()
        while pending:
            sitemap_url, level = pending.pop(0)
            if sitemap_url in seen or level > MAX_SITEMAP_DEPTH:
                continue
            seen.add(sitemap_url)
            res = await self.fetch_page(sitemap_url)
            if not res.ok:
                logger.warning(f"Sitemap {sitemap_url} failed: {res.error or res.status}")
                continue
            kind, locs = extract_from_sitemap(res.text())
            logger.info(f"Sitemap {sitemap_url}: {len(locs)} entries ({kind})")
            if kind == "sitemap_index":
                pending.extend((loc, level + 1) for loc in locs)
                continue
            for loc in locs:
                if not is_allowed(loc, self.domain, sitemap_url):
                    continue
                if is_document_url(loc, self.patterns):
                    if not await self._emit(channel, loc, 1, sitemap_url, DiscoveryMethod.SITEMAP,
                                            {"sitemap": sitemap_url}):
                        return False
                else:
                    self._enqueue(loc, 1)
        return True

    async def _expand_drive_folders(self, folders: List[str]) -> List[str]:
        found: List[str] = []
        for folder in folders:
            if folder in self._visited:
                continue
            self._visited.add(folder)
            try:
                files = await self.list_drive_folder(folder)
            except GoogleDriveError as e:
                logger.warning(f"Could not list Drive folder {folder}: {e}")
                continue
            logger.info(f"Drive folder {folder}: {len(files)} files")
            found.extend(files)
        return found

    async def run(self, channel: UrlChannel) -> DiscoveryStats:
        """Walk the source. Raises CrawlFailedError when no seed could be fetched."""
        initial = await self._seed()
        logger.info(f"Discovery for {self.cfg.source_id}: {initial} seed URL(s), domain {self.domain}")

        if self.cfg.sitemap_urls and not await self._seed_sitemaps(channel):
            return self.stats

        failures = self.stats.failures
        while self._queue:
            url, depth = self._queue.popleft()
            if depth > self.cfg.max_depth:
                continue

            res = await self.fetch_page(url)
            if not res.ok:
                failures.record_failure()
                logger.warning(f"Failed to fetch {url}: {res.error or 'HTTP ' + str(res.status)}")
                if failures.consecutive and failures.consecutive % 5 == 0:
                    logger.warning(f"{failures.consecutive} consecutive failures on {self.cfg.source_id}")
                continue
            failures.record_success()
            self.stats.pages_crawled += 1

            links = classify_links(res.text(), res.final_url or url, self.domain, self.patterns)
            drive_files = await self._expand_drive_folders(links.drive_folders)

            for doc_url in links.documents:
                if not await self._emit(channel, doc_url, depth + 1, url, DiscoveryMethod.HTML_LINK):
                    return self.stats
            for doc_url in drive_files:
                if not await self._emit(channel, doc_url, depth + 1, url,
                                        DiscoveryMethod.GOOGLE_DRIVE_FOLDER):
                    return self.stats
            for page_url in links.pages:
                self._enqueue(page_url, depth + 1)

        if self.stats.pages_crawled == 0 and initial > 0 and failures.total >= initial:
            logger.error(f"Every seed URL failed for {self.cfg.source_id}")
            raise CrawlFailedError(self.cfg.source_id, failures.total)

        logger.info(
            f"Discovery for {self.cfg.source_id} done: {self.stats.pages_crawled} pages, "
            f"{self.stats.documents_found} documents, {failures.total} failures"
        )
        return self.stats

# ------------------ whole-source run ------------------

@dataclass
class CrawlReport:
    source_id: str
    resumed: int = 0
    retried: int = 0
    refreshed: int = 0
    discovery: Optional[DiscoveryStats] = None
    downloads: DownloadStats = field(default_factory=DownloadStats)

async def _send_all(channel: UrlChannel, entries: List[CrawlUrl]) -> Optional[int]:
    """Number sent, or None once the receiver is gone."""
    for entry in entries:
        if not await channel.send(entry.url):
            return None
    return len(entries)

async def _produce(cfg: CrawlerConfig, crawler: Optional[DiscoveryCrawler], channel: UrlChannel,
                   report: CrawlReport, db_path: str | None):
    try:
        # resume: pending from earlier runs
        offset_seen: Set[str] = set()
        while True:
            pending = [e for e in await get_pending_urls(cfg.source_id, RESUME_BATCH, db_path=db_path)
                       if e.status == UrlStatus.DISCOVERED and e.url not in offset_seen]
            if not pending:
                break
            offset_seen.update(e.url for e in pending)
            sent = await _send_all(channel, pending)
            if sent is None:
                return
            report.resumed += sent

        retryable = await get_retryable_urls(cfg.source_id, RESUME_BATCH, db_path=db_path)
        sent = await _send_all(channel, retryable)
        if sent is None:
            return
        report.retried = sent

        cutoff = utcnow() - timedelta(days=cfg.refresh_ttl_days)
        while True:
            stale = await get_urls_needing_refresh(cfg.source_id, cutoff, RESUME_BATCH, db_path=db_path)
            if not stale:
                break
            for entry in stale:
                await mark_for_refresh(cfg.source_id, entry.url, db_path=db_path)
            sent = await _send_all(channel, stale)
            if sent is None:
                return
            report.refreshed += sent

        if crawler is not None:
            report.discovery = await crawler.run(channel)
    finally:
        channel.finish()

async def run_source(cfg: CrawlerConfig, http_cfg: HttpConfig | None = None,
                     db_path: str | None = None, documents_dir: str | None = None,
                     limit: int = 0, discover: bool = True,
                     fetcher: Fetcher = fetch, fetch_page: PageFetcher | None = None,
                     list_drive_folder: FolderLister | None = None,
                     loaded_hash: str | None = None) -> CrawlReport:
    """
    Resume, retry, refresh, then discover one source, downloading as URLs arrive.

    `loaded_hash` is the drift fingerprint to compare and record; it defaults
    to the hash of `cfg`. Callers that apply one-off overrides pass the hash
    of the configuration as loaded so the overrides do not count as drift.

    `limit` caps the number of downloads in this run (0 = unlimited); reaching
    it closes the channel, which stops discovery.
    """
    http_cfg = http_cfg or HttpConfig()
    documents_dir = documents_dir or get_documents_dir()
    await init_db(db_path)

    current_hash = loaded_hash or config_hash(cfg)
    if await check_config_changed(cfg.source_id, current_hash, db_path=db_path):
        logger.warning(f"Configuration for {cfg.source_id} changed; clearing unfinished frontier rows")
        await clear_source(cfg.source_id, db_path=db_path)
    await store_config_hash(cfg.source_id, current_hash, db_path=db_path)

    report = CrawlReport(source_id=cfg.source_id)
    channel: UrlChannel[str] = UrlChannel()
    crawler = DiscoveryCrawler(cfg, http_cfg, db_path, fetch_page, list_drive_folder) if discover else None
    pool = DownloadPool(cfg.source_id, http_cfg, documents_dir, db_path, limit=limit, fetcher=fetcher)

    producer = asyncio.create_task(_produce(cfg, crawler, channel, report, db_path))
    try:
        report.downloads = await pool.run(channel)
    except BaseException:
        producer.cancel()
        raise
    await producer
    return report
