"""
Atomic claiming of frontier entries.

Selection and the Discovered -> Fetching update happen inside one
``BEGIN IMMEDIATE`` transaction, so a URL is handed to at most one worker
across threads and processes sharing the database. No network I/O happens
while the transaction is open.
"""

from __future__ import annotations
import logging
import sqlite3
from typing import Iterable, List, Optional

from .db import immediate_transaction, is_locked_error
from .errors import ClaimError
from .models import CrawlUrl, UrlStatus

logger = logging.getLogger(__name__)

_CANDIDATES_SQL = """
SELECT * FROM crawl_urls
WHERE (? IS NULL OR source_id = ?) AND status = 'discovered'
ORDER BY depth ASC, discovered_at ASC
LIMIT ?
"""

async def claim_pending_urls(source_id: Optional[str], limit: int,
                             db_path: str | None = None) -> List[CrawlUrl]:
    """Claim up to `limit` Discovered entries; all or none become Fetching."""
    if limit <= 0:
        return []
    try:
        async with immediate_transaction(db_path) as db:
            cur = await db.execute(_CANDIDATES_SQL, (source_id, source_id, limit))
            rows = await cur.fetchall()
            claimed = []
            for row in rows:
                entry = CrawlUrl.from_row(row)
                await db.execute(
                    "UPDATE crawl_urls SET status = 'fetching' WHERE source_id = ? AND url = ? AND status = 'discovered'",
                    (entry.source_id, entry.url),
                )
                entry.status = UrlStatus.FETCHING
                claimed.append(entry)
    except sqlite3.Error as e:
        if is_locked_error(e):
            raise ClaimError(f"claim aborted, database busy: {e}") from e
        raise ClaimError(f"claim aborted: {e}") from e

    if claimed:
        logger.debug(f"Claimed {len(claimed)} URL(s) for {source_id or 'any source'}")
    return claimed

async def claim_pending_url(source_id: Optional[str] = None,
                            db_path: str | None = None) -> Optional[CrawlUrl]:
    claimed = await claim_pending_urls(source_id, 1, db_path=db_path)
    return claimed[0] if claimed else None

async def claim_url(source_id: str, url: str,
                    from_statuses: Iterable[UrlStatus] = (UrlStatus.DISCOVERED,),
                    db_path: str | None = None) -> Optional[CrawlUrl]:
    """
    Claim one known URL if it is still in one of `from_statuses`.

    Returns None when the row is missing or another worker got there first.
    """
    allowed = {UrlStatus(s) for s in from_statuses}
    try:
        async with immediate_transaction(db_path) as db:
            cur = await db.execute(
                "SELECT * FROM crawl_urls WHERE source_id = ? AND url = ?", (source_id, url)
            )
            row = await cur.fetchone()
            if row is None:
                return None
            entry = CrawlUrl.from_row(row)
            if entry.status not in allowed:
                return None
            entry.transition(UrlStatus.FETCHING)
            await db.execute(
                "UPDATE crawl_urls SET status = 'fetching' WHERE source_id = ? AND url = ? AND status = ?",
                (source_id, url, row["status"]),
            )
    except sqlite3.Error as e:
        raise ClaimError(f"claim of {url} aborted: {e}") from e
    return entry
