"""
Shared fixtures: an initialised database and a documents directory per test.
"""

import asyncio
from typing import Dict, Optional

import pytest

from foiacrawl.config import HttpConfig
from foiacrawl.db import init_db
from foiacrawl.fetch import FetchResult


@pytest.fixture
def db_path(tmp_path):
    """Path of a freshly initialised SQLite database."""
    path = str(tmp_path / "foiacrawl.db")
    asyncio.run(init_db(path))
    return path


@pytest.fixture
def documents_dir(tmp_path):
    path = tmp_path / "documents"
    path.mkdir()
    return str(path)


@pytest.fixture
def http_cfg():
    """No politeness delay and a single retry step so tests run fast."""
    return HttpConfig(
        user_agent="foiacrawl-tests",
        timeout=5,
        max_concurrency=2,
        delay_between_requests=0,
        max_retries=3,
        retry_delay=60,
        retry_backoff_factor=2.0,
    )


def make_result(url: str, status: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None,
                error: Optional[str] = None, request_headers: Optional[Dict[str, str]] = None) -> FetchResult:
    return FetchResult(
        status=status,
        final_url=url,
        url=url,
        headers=headers or {},
        body=body,
        error=error,
        duration_ms=1,
        request_headers=request_headers or {},
    )


class FakeWeb:
    """
    Canned responses keyed by URL, usable as both a page fetcher and a download fetcher.

    Unknown URLs answer 404. Every call is recorded in `calls`.
    """

    def __init__(self, pages: Optional[Dict[str, object]] = None):
        self.pages = dict(pages or {})
        self.calls = []

    def _respond(self, url: str, request_headers: Dict[str, str]) -> FetchResult:
        self.calls.append(url)
        page = self.pages.get(url)
        if page is None:
            return make_result(url, 404, request_headers=request_headers)
        if isinstance(page, FetchResult):
            page.request_headers = request_headers
            return page
        if isinstance(page, int):
            return make_result(url, page, request_headers=request_headers)
        if isinstance(page, bytes):
            return make_result(url, 200, page, {"Content-Type": "application/pdf"}, request_headers=request_headers)
        return make_result(url, 200, str(page).encode("utf-8"),
                           {"Content-Type": "text/html; charset=utf-8"}, request_headers=request_headers)

    async def page(self, url: str) -> FetchResult:
        return self._respond(url, {})

    async def download(self, url, cfg, etag=None, last_modified=None, session=None) -> FetchResult:
        request_headers = {}
        if etag:
            request_headers["If-None-Match"] = etag
        if last_modified:
            request_headers["If-Modified-Since"] = last_modified
        return self._respond(url, request_headers)


@pytest.fixture
def fake_web():
    return FakeWeb()


@pytest.fixture
def result_factory():
    return make_result
