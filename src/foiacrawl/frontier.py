"""
Persistent crawl frontier: every discovered URL per source and its fetch lifecycle.
"""

from __future__ import annotations
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .config import CrawlStateConfig
from .db import connect
from .models import (
    CrawlRequest,
    CrawlState,
    CrawlUrl,
    RequestStats,
    UrlStatus,
    parse_rfc3339,
    to_rfc3339,
    utcnow,
)

logger = logging.getLogger(__name__)

# exhausted URLs get another chance after this long
EXHAUSTED_COOLDOWN = timedelta(days=70)

def should_retry_status_code(status_code: int) -> bool:
    """Determine if a status code should be retried."""
    # 0 = connection/timeout errors, 5xx = server errors
    if status_code == 0:
        return True
    elif 500 <= status_code < 600:
        return True
    elif status_code in (408, 420, 423, 429, 451):
        # 408 request timeout, 420/429 rate limited, 423 locked,
        # 451 legal reasons (often temporary geo-blocking)
        return True
    else:
        return False

# ------------------ urls ------------------

async def add_url(entry: CrawlUrl, db_path: str | None = None) -> bool:
    """Insert if (source_id, url) is new. Returns whether a row was inserted."""
    async with connect(db_path) as db:
        cur = await db.execute(
            """
            INSERT OR IGNORE INTO crawl_urls (
                url, source_id, status, discovery_method, parent_url,
                discovery_context, depth, discovered_at, retry_count
            ) VALUES (?,?,?,?,?,?,?,?,?)
            """,
            (
                entry.url,
                entry.source_id,
                entry.status.value,
                entry.discovery_method.value,
                entry.parent_url,
                json.dumps(entry.discovery_context),
                entry.depth,
                to_rfc3339(entry.discovered_at),
                entry.retry_count,
            ),
        )
        await db.commit()
        return cur.rowcount > 0

async def add_urls(entries: List[CrawlUrl], db_path: str | None = None, batch_size: int = 200) -> int:
    """Batch add_url; returns how many rows were new."""
    inserted = 0
    for i in range(0, len(entries), batch_size):
        chunk = entries[i:i + batch_size]
        async with connect(db_path) as db:
            before = db.total_changes
            await db.executemany(
                """
                INSERT OR IGNORE INTO crawl_urls (
                    url, source_id, status, discovery_method, parent_url,
                    discovery_context, depth, discovered_at, retry_count
                ) VALUES (?,?,?,?,?,?,?,?,?)
                """,
                [
                    (e.url, e.source_id, e.status.value, e.discovery_method.value, e.parent_url,
                     json.dumps(e.discovery_context), e.depth, to_rfc3339(e.discovered_at), e.retry_count)
                    for e in chunk
                ],
            )
            await db.commit()
            inserted += db.total_changes - before
    return inserted

async def get_url(source_id: str, url: str, db_path: str | None = None) -> Optional[CrawlUrl]:
    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT * FROM crawl_urls WHERE source_id = ? AND url = ?", (source_id, url)
        )
        row = await cur.fetchone()
        return CrawlUrl.from_row(row) if row else None

async def url_exists(source_id: str, url: str, db_path: str | None = None) -> bool:
    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT COUNT(*) FROM crawl_urls WHERE source_id = ? AND url = ?", (source_id, url)
        )
        return (await cur.fetchone())[0] > 0

async def update_url(entry: CrawlUrl, db_path: str | None = None):
    """Write back status, timestamps, retry, cache validators and document link."""
    async with connect(db_path) as db:
        await db.execute(
            """
            UPDATE crawl_urls SET
                status = ?, fetched_at = ?, retry_count = ?, last_error = ?,
                next_retry_at = ?, etag = ?, last_modified = ?,
                content_hash = ?, document_id = ?
            WHERE source_id = ? AND url = ?
            """,
            (
                entry.status.value,
                to_rfc3339(entry.fetched_at),
                entry.retry_count,
                entry.last_error,
                to_rfc3339(entry.next_retry_at),
                entry.etag,
                entry.last_modified,
                entry.content_hash,
                entry.document_id,
                entry.source_id,
                entry.url,
            ),
        )
        await db.commit()

async def record_fetch_failure(entry: CrawlUrl, error: str, max_retries: int = 3,
                               retry_delay: float = 60.0, backoff_factor: float = 2.0,
                               permanent: bool = False, db_path: str | None = None) -> CrawlUrl:
    """Mark a Fetching entry Failed (or Exhausted past the ceiling) and persist it."""
    entry.mark_failed(error, max_retries, retry_delay, backoff_factor, permanent=permanent)
    await update_url(entry, db_path=db_path)
    if entry.status == UrlStatus.EXHAUSTED:
        logger.warning(f"Giving up on {entry.url} after {entry.retry_count} attempts: {error}")
    else:
        logger.info(f"Fetch of {entry.url} failed ({error}); retry at {to_rfc3339(entry.next_retry_at)}")
    return entry

async def mark_for_refresh(source_id: str, url: str, db_path: str | None = None):
    """Back to Discovered; etag/last_modified stay so the next fetch is conditional."""
    async with connect(db_path) as db:
        await db.execute(
            "UPDATE crawl_urls SET status = 'discovered' WHERE source_id = ? AND url = ?",
            (source_id, url),
        )
        await db.commit()

async def requeue_fetching(source_id: str, db_path: str | None = None) -> int:
    """Return rows stuck in Fetching (worker crashed mid-fetch) to Discovered."""
    async with connect(db_path) as db:
        cur = await db.execute(
            "UPDATE crawl_urls SET status = 'discovered' WHERE source_id = ? AND status = 'fetching'",
            (source_id,),
        )
        await db.commit()
        return cur.rowcount

async def _select_urls(sql: str, params: tuple, db_path: str | None) -> List[CrawlUrl]:
    async with connect(db_path) as db:
        cur = await db.execute(sql, params)
        return [CrawlUrl.from_row(r) for r in await cur.fetchall()]

async def get_pending_urls(source_id: str, limit: int, db_path: str | None = None) -> List[CrawlUrl]:
    """Discovered and Fetching entries, shallowest then oldest first."""
    return await _select_urls(
        """
        SELECT * FROM crawl_urls
        WHERE source_id = ? AND status IN ('discovered', 'fetching')
        ORDER BY depth ASC, discovered_at ASC
        LIMIT ?
        """,
        (source_id, limit),
        db_path,
    )

async def get_retryable_urls(source_id: str, limit: int, now: datetime | None = None,
                             db_path: str | None = None) -> List[CrawlUrl]:
    """Failed entries past next_retry_at, plus Exhausted entries past the long cooldown."""
    now = now or utcnow()
    return await _select_urls(
        """
        SELECT * FROM crawl_urls
        WHERE source_id = ?
        AND (
            (status = 'failed' AND (next_retry_at IS NULL OR next_retry_at <= ?))
            OR
            (status = 'exhausted' AND (next_retry_at IS NULL OR next_retry_at < ?))
        )
        ORDER BY retry_count ASC, discovered_at ASC
        LIMIT ?
        """,
        (source_id, to_rfc3339(now), to_rfc3339(now - EXHAUSTED_COOLDOWN), limit),
        db_path,
    )

async def get_urls_needing_refresh(source_id: str, older_than: datetime, limit: int,
                                   db_path: str | None = None) -> List[CrawlUrl]:
    return await _select_urls(
        """
        SELECT * FROM crawl_urls
        WHERE source_id = ? AND status = 'fetched' AND fetched_at < ?
        ORDER BY fetched_at ASC
        LIMIT ?
        """,
        (source_id, to_rfc3339(older_than), limit),
        db_path,
    )

async def get_recent_downloads(source_id: str | None, limit: int, db_path: str | None = None) -> List[CrawlUrl]:
    return await _select_urls(
        """
        SELECT * FROM crawl_urls
        WHERE (? IS NULL OR source_id = ?) AND status = 'fetched'
        ORDER BY fetched_at DESC
        LIMIT ?
        """,
        (source_id, source_id, limit),
        db_path,
    )

async def get_failed_urls(source_id: str | None, limit: int, db_path: str | None = None) -> List[CrawlUrl]:
    return await _select_urls(
        """
        SELECT * FROM crawl_urls
        WHERE (? IS NULL OR source_id = ?) AND status IN ('failed', 'exhausted')
        ORDER BY fetched_at IS NULL, fetched_at DESC
        LIMIT ?
        """,
        (source_id, source_id, limit),
        db_path,
    )

async def count_by_source(source_id: str, db_path: str | None = None) -> int:
    async with connect(db_path) as db:
        cur = await db.execute("SELECT COUNT(*) FROM crawl_urls WHERE source_id = ?", (source_id,))
        return (await cur.fetchone())[0]

# ------------------ config drift ------------------

async def check_config_changed(source_id: str, current_hash: str, db_path: str | None = None) -> bool:
    """True when a hash is stored for the source and differs from `current_hash`."""
    async with connect(db_path) as db:
        cur = await db.execute("SELECT config_hash FROM crawl_config WHERE source_id = ?", (source_id,))
        row = await cur.fetchone()
        if row is None:
            return False
        return row["config_hash"] != current_hash

async def store_config_hash(source_id: str, config_hash: str, db_path: str | None = None):
    async with connect(db_path) as db:
        await db.execute(
            "INSERT OR REPLACE INTO crawl_config (source_id, config_hash, updated_at) VALUES (?,?,?)",
            (source_id, config_hash, to_rfc3339(utcnow())),
        )
        await db.commit()

# ------------------ cleanup ------------------

async def clear_source(source_id: str, db_path: str | None = None):
    """Drop unfinished frontier rows and the request log; fetched history stays."""
    async with connect(db_path) as db:
        await db.execute(
            "DELETE FROM crawl_urls WHERE source_id = ? AND status IN ('discovered', 'fetching', 'failed')",
            (source_id,),
        )
        await db.execute("DELETE FROM crawl_requests WHERE source_id = ?", (source_id,))
        await db.commit()

async def clear_source_all(source_id: str, db_path: str | None = None):
    async with connect(db_path) as db:
        await db.execute("DELETE FROM crawl_urls WHERE source_id = ?", (source_id,))
        await db.execute("DELETE FROM crawl_requests WHERE source_id = ?", (source_id,))
        await db.execute("DELETE FROM crawl_config WHERE source_id = ?", (source_id,))
        await db.commit()

# ------------------ request log ------------------

async def log_request(request: CrawlRequest, db_path: str | None = None) -> int:
    async with connect(db_path) as db:
        cur = await db.execute(
            """
            INSERT INTO crawl_requests (
                source_id, url, method, request_headers, request_at,
                response_status, response_headers, response_at, response_size,
                duration_ms, error, was_conditional, was_not_modified
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                request.source_id,
                request.url,
                request.method,
                json.dumps(request.request_headers),
                to_rfc3339(request.request_at),
                request.response_status,
                json.dumps(request.response_headers),
                to_rfc3339(request.response_at),
                request.response_size,
                request.duration_ms,
                request.error,
                int(request.was_conditional),
                int(request.was_not_modified),
            ),
        )
        await db.commit()
        request.id = cur.lastrowid
        return cur.lastrowid

async def get_last_request(source_id: str, url: str, db_path: str | None = None) -> Optional[CrawlRequest]:
    async with connect(db_path) as db:
        cur = await db.execute(
            """
            SELECT * FROM crawl_requests
            WHERE source_id = ? AND url = ?
            ORDER BY request_at DESC, id DESC
            LIMIT 1
            """,
            (source_id, url),
        )
        row = await cur.fetchone()
        return CrawlRequest.from_row(row) if row else None

_REQUEST_STATS_COLUMNS = """
    COUNT(*) AS total_requests,
    SUM(CASE WHEN response_status = 200 THEN 1 ELSE 0 END) AS success_200,
    SUM(CASE WHEN response_status = 304 THEN 1 ELSE 0 END) AS not_modified_304,
    SUM(CASE WHEN response_status >= 400 THEN 1 ELSE 0 END) AS errors,
    SUM(was_conditional) AS conditional_requests,
    AVG(duration_ms) AS avg_duration_ms,
    SUM(response_size) AS total_bytes
"""

def _row_to_request_stats(row) -> RequestStats:
    return RequestStats(
        total_requests=row["total_requests"] or 0,
        success_200=row["success_200"] or 0,
        not_modified_304=row["not_modified_304"] or 0,
        errors=row["errors"] or 0,
        conditional_requests=row["conditional_requests"] or 0,
        avg_duration_ms=float(row["avg_duration_ms"] or 0.0),
        total_bytes=row["total_bytes"] or 0,
    )

async def get_request_stats(source_id: str, db_path: str | None = None) -> RequestStats:
    async with connect(db_path) as db:
        cur = await db.execute(
            f"SELECT {_REQUEST_STATS_COLUMNS} FROM crawl_requests WHERE source_id = ?", (source_id,)
        )
        return _row_to_request_stats(await cur.fetchone())

async def get_all_request_stats(db_path: str | None = None) -> Dict[str, RequestStats]:
    async with connect(db_path) as db:
        cur = await db.execute(
            f"SELECT source_id, {_REQUEST_STATS_COLUMNS} FROM crawl_requests GROUP BY source_id"
        )
        return {row["source_id"]: _row_to_request_stats(row) for row in await cur.fetchall()}

# ------------------ aggregate state ------------------

async def get_crawl_state(source_id: str, state_cfg: CrawlStateConfig | None = None,
                          db_path: str | None = None) -> CrawlState:
    """Counts by status plus pending/unexplored flags for operator reporting."""
    state_cfg = state_cfg or CrawlStateConfig()
    methods = list(state_cfg.unexplored_methods)
    placeholders = ",".join("?" for _ in methods)

    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT status, COUNT(*) AS n FROM crawl_urls WHERE source_id = ? GROUP BY status",
            (source_id,),
        )
        counts = {row["status"]: row["n"] for row in await cur.fetchall()}

        cur = await db.execute(
            """
            SELECT
                MIN(discovered_at) AS first_discovered,
                MAX(fetched_at) AS last_fetched,
                MIN(CASE WHEN status IN ('discovered', 'fetching') THEN discovered_at END) AS oldest_pending
            FROM crawl_urls WHERE source_id = ?
            """,
            (source_id,),
        )
        timing = await cur.fetchone()

        unexplored = 0
        if methods:
            cur = await db.execute(
                f"""
                SELECT COUNT(*) FROM crawl_urls u1
                WHERE u1.source_id = ?
                AND u1.status = 'fetched'
                AND u1.discovery_method IN ({placeholders})
                AND NOT EXISTS (
                    SELECT 1 FROM crawl_urls u2
                    WHERE u2.source_id = u1.source_id AND u2.parent_url = u1.url
                )
                AND u1.depth < ?
                """,
                (source_id, *methods, state_cfg.unexplored_depth_ceiling),
            )
            unexplored = (await cur.fetchone())[0]

    urls_fetched = counts.get("fetched", 0)
    urls_failed = counts.get("failed", 0) + counts.get("exhausted", 0)
    urls_pending = counts.get("discovered", 0) + counts.get("fetching", 0)

    return CrawlState(
        source_id=source_id,
        last_crawl_started=parse_rfc3339(timing["first_discovered"]),
        last_crawl_completed=parse_rfc3339(timing["last_fetched"]) if urls_pending == 0 else None,
        urls_discovered=sum(counts.values()),
        urls_fetched=urls_fetched,
        urls_failed=urls_failed,
        urls_pending=urls_pending,
        has_pending_urls=urls_pending > 0,
        has_unexplored_branches=unexplored > 0,
        oldest_pending_url=parse_rfc3339(timing["oldest_pending"]),
    )

async def get_all_crawl_states(state_cfg: CrawlStateConfig | None = None,
                               db_path: str | None = None) -> Dict[str, CrawlState]:
    async with connect(db_path) as db:
        cur = await db.execute("SELECT DISTINCT source_id FROM crawl_urls ORDER BY source_id")
        sources = [row["source_id"] for row in await cur.fetchall()]
    return {s: await get_crawl_state(s, state_cfg, db_path=db_path) for s in sources}
