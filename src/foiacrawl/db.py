from __future__ import annotations
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from .config import get_db_path

# seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT = 30.0

# ------------------ schema ------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS crawl_urls (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  url TEXT NOT NULL,
  source_id TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'discovered'
    CHECK (status IN ('discovered','fetching','fetched','failed','exhausted')),
  discovery_method TEXT NOT NULL DEFAULT 'seed',
  parent_url TEXT,
  discovery_context TEXT NOT NULL DEFAULT '{}',
  depth INTEGER NOT NULL DEFAULT 0,
  discovered_at TEXT NOT NULL,
  fetched_at TEXT,
  retry_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  next_retry_at TEXT,
  etag TEXT,
  last_modified TEXT,
  content_hash TEXT,
  document_id TEXT,
  UNIQUE(source_id, url)
);
CREATE INDEX IF NOT EXISTS idx_crawl_urls_source_status ON crawl_urls(source_id, status);
CREATE INDEX IF NOT EXISTS idx_crawl_urls_parent ON crawl_urls(parent_url);
CREATE INDEX IF NOT EXISTS idx_crawl_urls_discovered ON crawl_urls(discovered_at);
CREATE INDEX IF NOT EXISTS idx_crawl_urls_retry ON crawl_urls(next_retry_at) WHERE status = 'failed';

-- append-only request log
CREATE TABLE IF NOT EXISTS crawl_requests (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  source_id TEXT NOT NULL,
  url TEXT NOT NULL,
  method TEXT NOT NULL DEFAULT 'GET',
  request_headers TEXT NOT NULL DEFAULT '{}',
  request_at TEXT NOT NULL,
  response_status INTEGER,
  response_headers TEXT NOT NULL DEFAULT '{}',
  response_at TEXT,
  response_size INTEGER,
  duration_ms INTEGER,
  error TEXT,
  was_conditional INTEGER NOT NULL DEFAULT 0,
  was_not_modified INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_crawl_requests_source ON crawl_requests(source_id, request_at);
CREATE INDEX IF NOT EXISTS idx_crawl_requests_url ON crawl_requests(source_id, url);

CREATE TABLE IF NOT EXISTS crawl_config (
  source_id TEXT PRIMARY KEY,
  config_hash TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
  id TEXT PRIMARY KEY,
  source_id TEXT NOT NULL,
  title TEXT NOT NULL,
  source_url TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'downloaded',
  metadata TEXT NOT NULL DEFAULT '{}',
  tags TEXT NOT NULL DEFAULT '[]',
  synopsis TEXT,
  extracted_text TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  discovery_method TEXT NOT NULL DEFAULT 'import'
);
CREATE INDEX IF NOT EXISTS idx_documents_source ON documents(source_id);
CREATE INDEX IF NOT EXISTS idx_documents_url ON documents(source_url);

CREATE TABLE IF NOT EXISTS document_versions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
  content_hash TEXT NOT NULL,
  content_hash_secondary TEXT,
  file_path TEXT,
  file_size INTEGER NOT NULL DEFAULT 0,
  mime_type TEXT NOT NULL,
  acquired_at TEXT NOT NULL,
  source_url TEXT,
  original_filename TEXT,
  server_date TEXT,
  page_count INTEGER,
  dedup_index INTEGER
);
CREATE INDEX IF NOT EXISTS idx_versions_document ON document_versions(document_id);
CREATE INDEX IF NOT EXISTS idx_versions_hash ON document_versions(content_hash);

-- analysis results; status='pending' rows are time-bounded claims
CREATE TABLE IF NOT EXISTS document_analysis_results (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  document_id TEXT NOT NULL,
  version_id INTEGER NOT NULL,
  analysis_type TEXT NOT NULL,
  backend TEXT NOT NULL,
  status TEXT NOT NULL CHECK (status IN ('pending','complete','failed')),
  result_text TEXT,
  error TEXT,
  created_at TEXT NOT NULL,
  UNIQUE(document_id, version_id, analysis_type, backend)
);
CREATE INDEX IF NOT EXISTS idx_analysis_lookup ON document_analysis_results(document_id, version_id, analysis_type, status);
"""

async def init_db(db_path: str | None = None):
    db_path = db_path or get_db_path()
    async with connect(db_path) as db:
        for stmt in SCHEMA.split(";\n"):
            if stmt.strip():
                await db.execute(stmt)
        await db.commit()

# ------------------ connections ------------------

async def _configure(conn: aiosqlite.Connection):
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute(f"PRAGMA busy_timeout={int(BUSY_TIMEOUT * 1000)}")
    await conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = aiosqlite.Row

@asynccontextmanager
async def connect(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a configured connection; rows come back as aiosqlite.Row."""
    db_path = db_path or get_db_path()
    async with aiosqlite.connect(db_path, timeout=BUSY_TIMEOUT) as conn:
        await _configure(conn)
        yield conn

@asynccontextmanager
async def immediate_transaction(db_path: str | None = None) -> AsyncIterator[aiosqlite.Connection]:
    """
    BEGIN IMMEDIATE ... COMMIT on a dedicated connection.

    The write lock is taken at BEGIN, so two claimers (threads or processes)
    can never both read the same candidate rows as unclaimed. Any exception
    rolls the transaction back before propagating.
    """
    db_path = db_path or get_db_path()
    async with aiosqlite.connect(db_path, timeout=BUSY_TIMEOUT, isolation_level=None) as conn:
        await _configure(conn)
        await conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        else:
            await conn.execute("COMMIT")

def is_locked_error(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()
