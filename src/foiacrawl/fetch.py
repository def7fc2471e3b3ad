from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

import aiohttp

from .config import HttpConfig

@dataclass
class FetchResult:
    status: int
    final_url: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    error: Optional[str] = None
    duration_ms: int = 0
    request_headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def not_modified(self) -> bool:
        return self.status == 304

    @property
    def was_conditional(self) -> bool:
        return "If-None-Match" in self.request_headers or "If-Modified-Since" in self.request_headers

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return ""

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for k, v in self.headers.items():
            if k.lower() == name:
                return v
        return None

    def text(self) -> str:
        return self.body.decode("utf-8", errors="ignore")

def conditional_headers(etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
    headers = {}
    if etag:
        headers["If-None-Match"] = etag
    if last_modified:
        headers["If-Modified-Since"] = last_modified
    return headers

async def fetch(url: str, cfg: HttpConfig, etag: Optional[str] = None,
                last_modified: Optional[str] = None,
                session: Optional[aiohttp.ClientSession] = None) -> FetchResult:
    """GET `url`. Network errors come back as status 0 with `error` set."""
    request_headers = conditional_headers(etag, last_modified)
    started = time.monotonic()

    async def _get(s: aiohttp.ClientSession) -> FetchResult:
        async with s.get(url, allow_redirects=True, headers=request_headers) as resp:
            body = await resp.read()
            return FetchResult(
                status=resp.status,
                final_url=str(resp.url),
                url=url,
                headers=dict(resp.headers),
                body=body,
                duration_ms=int((time.monotonic() - started) * 1000),
                request_headers=request_headers,
            )

    try:
        if session is not None:
            return await _get(session)
        timeout = aiohttp.ClientTimeout(total=cfg.timeout)
        async with aiohttp.ClientSession(headers={"User-Agent": cfg.user_agent}, timeout=timeout) as s:
            return await _get(s)
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        return FetchResult(
            status=0,
            final_url=url,
            url=url,
            error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
            duration_ms=int((time.monotonic() - started) * 1000),
            request_headers=request_headers,
        )

def new_session(cfg: HttpConfig) -> aiohttp.ClientSession:
    timeout = aiohttp.ClientTimeout(total=cfg.timeout)
    return aiohttp.ClientSession(headers={"User-Agent": cfg.user_agent}, timeout=timeout)

# ---- JS rendering path via Playwright ----
# Usage: pip install .[browser] && playwright install chromium
async def fetch_js(url: str, cfg: HttpConfig) -> FetchResult:
    from playwright.async_api import async_playwright, Error as PlaywrightError

    started = time.monotonic()
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=True)
            context = await browser.new_context(user_agent=cfg.user_agent)
            page = await context.new_page()
            try:
                resp = await page.goto(url, timeout=cfg.timeout * 1000, wait_until="networkidle")
                html = await page.content()
                return FetchResult(
                    status=resp.status if resp else 0,
                    final_url=page.url,
                    url=url,
                    headers=dict(resp.headers) if resp else {},
                    body=html.encode("utf-8"),
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
            finally:
                await context.close()
                await browser.close()
    except PlaywrightError as e:
        return FetchResult(status=0, final_url=url, url=url, error=str(e),
                           duration_ms=int((time.monotonic() - started) * 1000))
