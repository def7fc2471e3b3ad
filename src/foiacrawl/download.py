"""
Download workers: claim frontier entries, fetch them and store the content.

Workers take URLs from a UrlChannel as the discovery side produces them and
claim each one before fetching. Once the channel is finished they keep
claiming whatever Discovered rows remain for the source.
"""

from __future__ import annotations
import asyncio
import logging
import os
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, Optional
from urllib.parse import unquote, urlsplit

import aiohttp

from .channel import UrlChannel
from .claim import claim_pending_url, claim_url
from .config import HttpConfig, get_documents_dir
from .errors import ClaimError, StorageError
from .fetch import FetchResult, fetch, new_session
from .frontier import log_request, record_fetch_failure, should_retry_status_code, update_url
from .models import CrawlRequest, CrawlUrl, UrlStatus, utcnow
from .storage import DocumentInput, save_document

logger = logging.getLogger(__name__)

Fetcher = Callable[..., Awaitable[FetchResult]]

# statuses a URL handed over the channel may be claimed from
CLAIMABLE = (UrlStatus.DISCOVERED, UrlStatus.FAILED, UrlStatus.EXHAUSTED)

_DISPOSITION_RE = re.compile(r"filename\*?=(?:UTF-8'')?\"?([^\";]+)\"?", re.IGNORECASE)

@dataclass
class DownloadStats:
    new_documents: int = 0
    new_versions: int = 0
    unchanged: int = 0
    not_modified: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.new_documents + self.new_versions + self.unchanged + self.not_modified + self.failed

def filename_from_disposition(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    m = _DISPOSITION_RE.search(value)
    return unquote(m.group(1).strip()) if m else None

def title_from_url(url: str) -> str:
    name = os.path.basename(unquote(urlsplit(url).path.rstrip("/")))
    return name or urlsplit(url).netloc

def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None

def mime_from_result(res: FetchResult) -> str:
    return res.content_type.split(";")[0].strip().lower() or "application/octet-stream"

def request_from_result(entry: CrawlUrl, res: FetchResult, started: datetime) -> CrawlRequest:
    return CrawlRequest(
        source_id=entry.source_id,
        url=entry.url,
        request_headers=res.request_headers,
        request_at=started,
        response_status=res.status or None,
        response_headers=res.headers,
        response_at=utcnow(),
        response_size=len(res.body),
        duration_ms=res.duration_ms,
        error=res.error,
        was_conditional=res.was_conditional,
        was_not_modified=res.not_modified,
    )

async def download_url(entry: CrawlUrl, http_cfg: HttpConfig, documents_dir: str,
                       db_path: str | None = None, session: aiohttp.ClientSession | None = None,
                       fetcher: Fetcher = fetch) -> str:
    """
    Fetch a claimed (Fetching) entry and settle it.

    Returns one of "new", "version", "unchanged", "not_modified", "failed".
    """
    started = utcnow()
    res = await fetcher(entry.url, http_cfg, etag=entry.etag,
                        last_modified=entry.last_modified, session=session)
    await log_request(request_from_result(entry, res, started), db_path=db_path)

    if res.not_modified:
        logger.debug(f"Not modified: {entry.url}")
        entry.mark_fetched()
        await update_url(entry, db_path=db_path)
        return "not_modified"

    if not res.ok:
        error = res.error or f"HTTP {res.status}"
        permanent = not should_retry_status_code(res.status)
        await record_fetch_failure(
            entry, error,
            max_retries=http_cfg.max_retries,
            retry_delay=http_cfg.retry_delay,
            backoff_factor=http_cfg.retry_backoff_factor,
            permanent=permanent,
            db_path=db_path,
        )
        return "failed"

    original = filename_from_disposition(res.header("Content-Disposition"))
    doc_input = DocumentInput(
        url=entry.url,
        title=original or title_from_url(entry.url),
        mime_type=mime_from_result(res),
        metadata={"parent_url": entry.parent_url} if entry.parent_url else {},
        original_filename=original,
        server_date=parse_http_date(res.header("Last-Modified")),
        discovery_method=entry.discovery_method.value,
    )
    try:
        doc, created = await save_document(db_path, documents_dir, res.body, doc_input, entry.source_id)
    except (StorageError, OSError, sqlite3.Error) as e:
        logger.error(f"Could not store {entry.url}: {e}")
        await record_fetch_failure(
            entry, f"store failed: {e}",
            max_retries=http_cfg.max_retries,
            retry_delay=http_cfg.retry_delay,
            backoff_factor=http_cfg.retry_backoff_factor,
            db_path=db_path,
        )
        return "failed"
    current = doc.current_version()

    entry.mark_fetched(
        content_hash=current.content_hash,
        document_id=doc.id,
        etag=res.header("ETag"),
        last_modified=res.header("Last-Modified"),
    )
    await update_url(entry, db_path=db_path)

    if created:
        logger.info(f"Saved new document {doc.id} from {entry.url}")
        return "new"
    # an unchanged download leaves an older version current
    if current.acquired_at >= started:
        return "version"
    return "unchanged"

class DownloadPool:
    """A fixed number of workers sharing one channel and one HTTP session."""

    def __init__(self, source_id: str, http_cfg: HttpConfig | None = None,
                 documents_dir: str | None = None, db_path: str | None = None,
                 concurrency: int | None = None, limit: int = 0,
                 fetcher: Fetcher = fetch):
        self.source_id = source_id
        self.http_cfg = http_cfg or HttpConfig()
        self.documents_dir = documents_dir or get_documents_dir()
        self.db_path = db_path
        self.concurrency = max(1, concurrency or self.http_cfg.max_concurrency)
        self.limit = limit  # 0 = unlimited
        self.fetcher = fetcher
        self.stats = DownloadStats()
        self._started = 0

    def _take_slot(self) -> bool:
        if self.limit and self._started >= self.limit:
            return False
        self._started += 1
        return True

    async def run(self, channel: UrlChannel) -> DownloadStats:
        async with new_session(self.http_cfg) as session:
            workers = [asyncio.create_task(self._worker(i, channel, session))
                       for i in range(self.concurrency)]
            try:
                await asyncio.gather(*workers)
            finally:
                # stops the producer if the workers are gone for any reason
                channel.close()
                for w in workers:
                    w.cancel()
        return self.stats

    async def _worker(self, n: int, channel: UrlChannel, session: aiohttp.ClientSession):
        async for url in channel:
            if not self._take_slot():
                logger.info(f"Download limit of {self.limit} reached")
                channel.close()
                return
            try:
                entry = await claim_url(self.source_id, url, CLAIMABLE, db_path=self.db_path)
            except ClaimError as e:
                logger.warning(f"Worker {n}: {e}")
                self._started -= 1
                await asyncio.sleep(1.0)
                continue
            if entry is None:
                self._started -= 1
                continue
            await self._process(entry, session)

        # channel finished: drain what discovery recorded but did not send
        while self._take_slot():
            try:
                entry = await claim_pending_url(self.source_id, db_path=self.db_path)
            except ClaimError as e:
                logger.warning(f"Worker {n}: {e}; leaving remaining rows for the next run")
                self._started -= 1
                return
            if entry is None:
                self._started -= 1
                return
            await self._process(entry, session)

    async def _process(self, entry: CrawlUrl, session: aiohttp.ClientSession):
        outcome = await download_url(entry, self.http_cfg, self.documents_dir,
                                     db_path=self.db_path, session=session, fetcher=self.fetcher)
        if outcome == "new":
            self.stats.new_documents += 1
        elif outcome == "version":
            self.stats.new_versions += 1
        elif outcome == "unchanged":
            self.stats.unchanged += 1
        elif outcome == "not_modified":
            self.stats.not_modified += 1
        else:
            self.stats.failed += 1
        if self.http_cfg.delay_between_requests > 0:
            await asyncio.sleep(self.http_cfg.delay_between_requests)
