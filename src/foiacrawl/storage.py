"""
Content-addressable document store.

Files live at ``{documents_dir}/{hash[:depth]}/{basename}-{hash[:8]}.{ext}``.
The prefix depth starts at 2 and only grows when a different file already
occupies the candidate path.
"""

from __future__ import annotations
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, unquote

from .errors import StorageError
from .models import Document, DocumentVersion

logger = logging.getLogger(__name__)

MIN_HASH_LEN = 8
MAX_DEDUP_LEVELS = 6

MIME_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/html": "html",
    "text/plain": "txt",
    "application/json": "json",
    "application/xml": "xml",
    "text/xml": "xml",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/vnd.ms-excel": "xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": "xlsx",
    "application/zip": "zip",
    "application/gzip": "gz",
}

_UNSAFE_CHARS = set('/\\:*?"<>|\0')

# ------------------ hashing ------------------

def compute_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()

def compute_secondary_hash(content: bytes) -> str:
    return hashlib.blake2b(content, digest_size=32).hexdigest()

# ------------------ naming ------------------

def mime_to_extension(mime: str) -> str:
    mime = (mime or "").split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(mime, "bin")

def sanitize_filename(name: str) -> str:
    cleaned = "".join(
        "_" if (c in _UNSAFE_CHARS or not c.isprintable()) else c
        for c in name
    )
    cleaned = cleaned.strip().strip("_")
    if not cleaned:
        return "document"
    return cleaned[:100]

def _looks_like_extension(ext: str) -> bool:
    return 0 < len(ext) <= 5 and ext.isalnum()

def extract_filename_parts(url: str, title: str, mime_type: str) -> Tuple[str, str]:
    """(basename, extension) from the URL path, else the title and mime type."""
    last = unquote(urlsplit(url).path.rsplit("/", 1)[-1])
    if "." in last:
        basename, ext = last.rsplit(".", 1)
        if basename and _looks_like_extension(ext):
            return basename, ext.lower()
    return (title or "document"), mime_to_extension(mime_type)

def filename_parts_from_original(original_filename: str, mime_type: str) -> Tuple[str, str]:
    if "." in original_filename:
        basename, ext = original_filename.rsplit(".", 1)
        if basename and _looks_like_extension(ext):
            return basename, ext.lower()
    return original_filename, mime_to_extension(mime_type)

def _check_hash(content_hash: str) -> None:
    if len(content_hash) < MIN_HASH_LEN:
        raise ValueError(
            f"content hash too short ({len(content_hash)} chars, need at least {MIN_HASH_LEN}): '{content_hash}'"
        )

def build_relative_path(content_hash: str, basename: str, extension: str, depth: int = 2) -> str:
    _check_hash(content_hash)
    filename = f"{sanitize_filename(basename)}-{content_hash[:8]}.{extension}"
    return os.path.join(content_hash[:min(depth, len(content_hash))], filename)

# ------------------ paths ------------------

def content_storage_path(documents_dir: str, content_hash: str, extension: str) -> str:
    """`{dir}/{hash[:2]}/{hash[:8]}.{ext}`, for content with no usable name."""
    _check_hash(content_hash)
    return os.path.join(documents_dir, content_hash[:2], f"{content_hash[:8]}.{extension}")

def storage_path(documents_dir: str, content_hash: str, basename: str, extension: str) -> str:
    return os.path.join(documents_dir, build_relative_path(content_hash, basename, extension))

def _file_hash(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            h.update(chunk)
    return h.hexdigest()

def resolve_path(documents_dir: str, content_hash: str, basename: str, extension: str,
                 content: bytes = b"") -> Tuple[str, Optional[int]]:
    """
    Pick the relative storage path for content with `content_hash`.

    Returns (relative_path, dedup_index). dedup_index is None at the default
    depth. An existing file is reused only when its bytes hash to
    `content_hash`; otherwise the hash prefix is deepened.
    """
    _check_hash(content_hash)
    for dedup_index in range(MAX_DEDUP_LEVELS):
        relative = build_relative_path(content_hash, basename, extension, 2 + dedup_index)
        absolute = os.path.join(documents_dir, relative)
        idx = dedup_index or None
        if not os.path.exists(absolute):
            return relative, idx
        same_size = not content or os.path.getsize(absolute) == len(content)
        if same_size and _file_hash(absolute) == content_hash:
            return relative, idx
        logger.warning(f"Storage path collision at {relative}, deepening hash prefix")

    # all prefix depths taken by other content
    filename = os.path.basename(build_relative_path(content_hash, basename, extension))
    return os.path.join(content_hash, filename), len(content_hash) - 2

def write_content(documents_dir: str, relative_path: str, content: bytes) -> str:
    absolute = os.path.join(documents_dir, relative_path)
    try:
        os.makedirs(os.path.dirname(absolute), exist_ok=True)
        with open(absolute, "wb") as f:
            f.write(content)
    except OSError as e:
        raise StorageError(f"Could not write {absolute}: {e}") from e
    return absolute

# ------------------ save ------------------

@dataclass
class DocumentInput:
    url: str
    title: str
    mime_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    original_filename: Optional[str] = None
    server_date: Optional[datetime] = None
    discovery_method: str = "crawl"

async def save_document(db_path: str, documents_dir: str, content: bytes,
                        doc_input: DocumentInput, source_id: str) -> Tuple[Document, bool]:
    """
    Store `content` on disk and record it as a document version.

    Returns (document, created). An identical re-download adds no version.
    """
    from .documents import get_documents_by_url, save_document as save_document_record

    version = DocumentVersion.from_content(
        content,
        doc_input.mime_type,
        source_url=doc_input.url,
        original_filename=doc_input.original_filename,
        server_date=doc_input.server_date,
    )
    if doc_input.original_filename:
        basename, extension = filename_parts_from_original(doc_input.original_filename, doc_input.mime_type)
    else:
        basename, extension = extract_filename_parts(doc_input.url, doc_input.title, doc_input.mime_type)

    relative, dedup_index = resolve_path(documents_dir, version.content_hash, basename, extension, content)
    write_content(documents_dir, relative, content)
    version.file_path = relative
    version.dedup_index = dedup_index

    existing = await get_documents_by_url(doc_input.url, db_path=db_path)
    if existing:
        doc = existing[0]
        if doc.add_version(version):
            logger.info(f"New version of {doc.id} from {doc_input.url}")
            await save_document_record(doc, db_path=db_path)
        else:
            logger.debug(f"Unchanged content for {doc_input.url}")
        return doc, False

    doc = Document(
        id=str(uuid.uuid4()),
        source_id=source_id,
        title=doc_input.title,
        source_url=doc_input.url,
        versions=[version],
        metadata=dict(doc_input.metadata),
        discovery_method=doc_input.discovery_method,
    )
    await save_document_record(doc, db_path=db_path)
    return doc, True
