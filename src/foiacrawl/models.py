"""
Data model for the crawl frontier and the document store.
"""

from __future__ import annotations
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# ------------------ timestamps ------------------

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def to_rfc3339(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC RFC3339 text, so stored timestamps sort lexicographically."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)

def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)

# ------------------ crawl frontier ------------------

class UrlStatus(str, Enum):
    DISCOVERED = "discovered"
    FETCHING = "fetching"
    FETCHED = "fetched"
    FAILED = "failed"
    EXHAUSTED = "exhausted"

class DiscoveryMethod(str, Enum):
    SEED = "seed"
    HTML_LINK = "html_link"
    PAGINATION = "pagination"
    SITEMAP = "sitemap"
    WAYBACK_MACHINE = "wayback_machine"
    GOOGLE_DRIVE_FOLDER = "google_drive_folder"
    API_RESULT = "api_result"

# Fetched -> Discovered is the refresh path (mark_for_refresh).
VALID_TRANSITIONS = {
    UrlStatus.DISCOVERED: {UrlStatus.FETCHING},
    UrlStatus.FETCHING: {UrlStatus.FETCHED, UrlStatus.FAILED},
    UrlStatus.FETCHED: {UrlStatus.DISCOVERED},
    UrlStatus.FAILED: {UrlStatus.FETCHING, UrlStatus.EXHAUSTED},
    UrlStatus.EXHAUSTED: {UrlStatus.FETCHING},
}

class InvalidTransition(ValueError):
    pass

@dataclass
class CrawlUrl:
    url: str
    source_id: str
    status: UrlStatus = UrlStatus.DISCOVERED
    discovery_method: DiscoveryMethod = DiscoveryMethod.SEED
    parent_url: Optional[str] = None
    discovery_context: Dict[str, Any] = field(default_factory=dict)
    depth: int = 0
    discovered_at: datetime = field(default_factory=utcnow)
    fetched_at: Optional[datetime] = None
    retry_count: int = 0
    last_error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_hash: Optional[str] = None
    document_id: Optional[str] = None

    def transition(self, new_status: UrlStatus) -> None:
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.url}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def mark_fetched(self, content_hash: Optional[str] = None, document_id: Optional[str] = None,
                     etag: Optional[str] = None, last_modified: Optional[str] = None) -> None:
        self.transition(UrlStatus.FETCHED)
        self.fetched_at = utcnow()
        self.last_error = None
        self.next_retry_at = None
        if content_hash is not None:
            self.content_hash = content_hash
        if document_id is not None:
            self.document_id = document_id
        if etag is not None:
            self.etag = etag
        if last_modified is not None:
            self.last_modified = last_modified

    def mark_failed(self, error: str, max_retries: int, retry_delay: float,
                    backoff_factor: float, permanent: bool = False) -> None:
        """Record a failed attempt; becomes Exhausted past the retry ceiling."""
        self.transition(UrlStatus.FAILED)
        self.fetched_at = utcnow()
        self.last_error = error
        self.retry_count += 1
        if permanent or self.retry_count >= max_retries:
            self.transition(UrlStatus.EXHAUSTED)
            # the exhausted cooldown is measured from this timestamp
            self.next_retry_at = self.fetched_at
            return
        delay = retry_delay * (backoff_factor ** (self.retry_count - 1))
        self.next_retry_at = self.fetched_at + timedelta(seconds=delay)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "source_id": self.source_id,
            "status": self.status.value,
            "discovery_method": self.discovery_method.value,
            "parent_url": self.parent_url,
            "discovery_context": self.discovery_context,
            "depth": self.depth,
            "discovered_at": to_rfc3339(self.discovered_at),
            "fetched_at": to_rfc3339(self.fetched_at),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "next_retry_at": to_rfc3339(self.next_retry_at),
            "etag": self.etag,
            "last_modified": self.last_modified,
            "content_hash": self.content_hash,
            "document_id": self.document_id,
        }

    @classmethod
    def from_row(cls, row) -> "CrawlUrl":
        """Build from an aiosqlite.Row of crawl_urls."""
        return cls(
            url=row["url"],
            source_id=row["source_id"],
            status=UrlStatus(row["status"]),
            discovery_method=DiscoveryMethod(row["discovery_method"]),
            parent_url=row["parent_url"],
            discovery_context=json.loads(row["discovery_context"] or "{}"),
            depth=row["depth"],
            discovered_at=parse_rfc3339(row["discovered_at"]),
            fetched_at=parse_rfc3339(row["fetched_at"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            next_retry_at=parse_rfc3339(row["next_retry_at"]),
            etag=row["etag"],
            last_modified=row["last_modified"],
            content_hash=row["content_hash"],
            document_id=row["document_id"],
        )

@dataclass
class CrawlRequest:
    """One HTTP attempt. Append-only."""
    source_id: str
    url: str
    method: str = "GET"
    request_headers: Dict[str, str] = field(default_factory=dict)
    request_at: datetime = field(default_factory=utcnow)
    response_status: Optional[int] = None
    response_headers: Dict[str, str] = field(default_factory=dict)
    response_at: Optional[datetime] = None
    response_size: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    was_conditional: bool = False
    was_not_modified: bool = False
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "CrawlRequest":
        return cls(
            id=row["id"],
            source_id=row["source_id"],
            url=row["url"],
            method=row["method"],
            request_headers=json.loads(row["request_headers"] or "{}"),
            request_at=parse_rfc3339(row["request_at"]),
            response_status=row["response_status"],
            response_headers=json.loads(row["response_headers"] or "{}"),
            response_at=parse_rfc3339(row["response_at"]),
            response_size=row["response_size"],
            duration_ms=row["duration_ms"],
            error=row["error"],
            was_conditional=bool(row["was_conditional"]),
            was_not_modified=bool(row["was_not_modified"]),
        )

@dataclass
class CrawlState:
    source_id: str
    last_crawl_started: Optional[datetime] = None
    last_crawl_completed: Optional[datetime] = None
    urls_discovered: int = 0
    urls_fetched: int = 0
    urls_failed: int = 0
    urls_pending: int = 0
    has_pending_urls: bool = False
    has_unexplored_branches: bool = False
    oldest_pending_url: Optional[datetime] = None

    def needs_resume(self) -> bool:
        return self.has_pending_urls

@dataclass
class RequestStats:
    total_requests: int = 0
    success_200: int = 0
    not_modified_304: int = 0
    errors: int = 0
    conditional_requests: int = 0
    avg_duration_ms: float = 0.0
    total_bytes: int = 0

# ------------------ documents ------------------

class DocumentStatus(str, Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    OCR_COMPLETE = "ocr_complete"
    INDEXED = "indexed"
    FAILED = "failed"

@dataclass
class DocumentVersion:
    content_hash: str
    mime_type: str
    file_size: int = 0
    content_hash_secondary: Optional[str] = None
    file_path: Optional[str] = None
    acquired_at: datetime = field(default_factory=utcnow)
    source_url: Optional[str] = None
    original_filename: Optional[str] = None
    server_date: Optional[datetime] = None
    page_count: Optional[int] = None
    dedup_index: Optional[int] = None
    id: Optional[int] = None

    @classmethod
    def from_content(cls, content: bytes, mime_type: str, source_url: Optional[str] = None,
                     original_filename: Optional[str] = None,
                     server_date: Optional[datetime] = None) -> "DocumentVersion":
        from .storage import compute_hash, compute_secondary_hash
        return cls(
            content_hash=compute_hash(content),
            content_hash_secondary=compute_secondary_hash(content),
            mime_type=mime_type,
            file_size=len(content),
            source_url=source_url,
            original_filename=original_filename,
            server_date=server_date,
        )

    def storage_path(self, url: str, title: str) -> str:
        """Deterministic relative path: {hash[:2+dedup_index]}/{basename}-{hash[:8]}.{ext}"""
        from .storage import extract_filename_parts, filename_parts_from_original, build_relative_path
        if self.original_filename:
            basename, extension = filename_parts_from_original(self.original_filename, self.mime_type)
        else:
            basename, extension = extract_filename_parts(url, title, self.mime_type)
        depth = 2 + (self.dedup_index or 0)
        return build_relative_path(self.content_hash, basename, extension, depth)

@dataclass
class Document:
    id: str
    source_id: str
    title: str
    source_url: str
    versions: List[DocumentVersion] = field(default_factory=list)
    extracted_text: Optional[str] = None
    synopsis: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    status: DocumentStatus = DocumentStatus.DOWNLOADED
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    discovery_method: str = "import"

    def current_version(self) -> Optional[DocumentVersion]:
        return self.versions[0] if self.versions else None

    def add_version(self, version: DocumentVersion) -> bool:
        """Prepend `version` unless its content hash matches the current one."""
        current = self.current_version()
        if current is not None and current.content_hash == version.content_hash:
            return False
        self.versions.insert(0, version)
        self.updated_at = utcnow()
        return True
