"""
Document repository: documents, their versions, and time-bounded work claims.
"""

from __future__ import annotations
import json
import logging
from datetime import timedelta
from typing import List, Optional

import aiosqlite

from .db import connect, immediate_transaction
from .errors import AlreadyClaimedError
from .models import (
    Document,
    DocumentStatus,
    DocumentVersion,
    parse_rfc3339,
    to_rfc3339,
    utcnow,
)

logger = logging.getLogger(__name__)

# pending claims older than this are ignored and may be re-claimed
CLAIM_TTL = timedelta(minutes=90)
PENDING_BACKEND = "pending"

# ------------------ row mapping ------------------

def _row_to_version(row) -> DocumentVersion:
    return DocumentVersion(
        id=row["id"],
        content_hash=row["content_hash"],
        content_hash_secondary=row["content_hash_secondary"],
        file_path=row["file_path"],
        file_size=row["file_size"],
        mime_type=row["mime_type"],
        acquired_at=parse_rfc3339(row["acquired_at"]),
        source_url=row["source_url"],
        original_filename=row["original_filename"],
        server_date=parse_rfc3339(row["server_date"]),
        page_count=row["page_count"],
        dedup_index=row["dedup_index"],
    )

async def _load_documents(db: aiosqlite.Connection, rows) -> List[Document]:
    docs = []
    for row in rows:
        cur = await db.execute(
            "SELECT * FROM document_versions WHERE document_id = ? ORDER BY id DESC", (row["id"],)
        )
        versions = [_row_to_version(v) for v in await cur.fetchall()]
        docs.append(Document(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            source_url=row["source_url"],
            versions=versions,
            extracted_text=row["extracted_text"],
            synopsis=row["synopsis"],
            tags=json.loads(row["tags"]),
            status=DocumentStatus(row["status"]),
            metadata=json.loads(row["metadata"]),
            created_at=parse_rfc3339(row["created_at"]),
            updated_at=parse_rfc3339(row["updated_at"]),
            discovery_method=row["discovery_method"],
        ))
    return docs

# ------------------ documents ------------------

async def save_document(doc: Document, db_path: str | None = None):
    """Upsert the document and insert versions that have no row id yet."""
    async with connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO documents (
                id, source_id, title, source_url, status, metadata, tags,
                synopsis, extracted_text, created_at, updated_at, discovery_method
            ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                source_url = excluded.source_url,
                status = excluded.status,
                metadata = excluded.metadata,
                tags = excluded.tags,
                synopsis = excluded.synopsis,
                extracted_text = excluded.extracted_text,
                updated_at = excluded.updated_at
            """,
            (
                doc.id,
                doc.source_id,
                doc.title,
                doc.source_url,
                doc.status.value,
                json.dumps(doc.metadata),
                json.dumps(doc.tags),
                doc.synopsis,
                doc.extracted_text,
                to_rfc3339(doc.created_at),
                to_rfc3339(doc.updated_at),
                doc.discovery_method,
            ),
        )
        # oldest first, so version ids increase with recency; stored versions keep their row
        for version in reversed(doc.versions):
            if version.id is not None:
                continue
            cur = await db.execute(
                """
                INSERT INTO document_versions (
                    document_id, content_hash, content_hash_secondary, file_path, file_size,
                    mime_type, acquired_at, source_url, original_filename, server_date,
                    page_count, dedup_index
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    doc.id,
                    version.content_hash,
                    version.content_hash_secondary,
                    version.file_path,
                    version.file_size,
                    version.mime_type,
                    to_rfc3339(version.acquired_at),
                    version.source_url,
                    version.original_filename,
                    to_rfc3339(version.server_date),
                    version.page_count,
                    version.dedup_index,
                ),
            )
            version.id = cur.lastrowid
        await db.commit()

async def get_document(document_id: str, db_path: str | None = None) -> Optional[Document]:
    async with connect(db_path) as db:
        cur = await db.execute("SELECT * FROM documents WHERE id = ?", (document_id,))
        docs = await _load_documents(db, await cur.fetchall())
        return docs[0] if docs else None

async def get_documents_by_url(url: str, db_path: str | None = None) -> List[Document]:
    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT * FROM documents WHERE source_url = ? ORDER BY created_at ASC", (url,)
        )
        return await _load_documents(db, await cur.fetchall())

async def count_documents(source_id: str | None = None, db_path: str | None = None) -> int:
    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT COUNT(*) FROM documents WHERE (? IS NULL OR source_id = ?)", (source_id, source_id)
        )
        return (await cur.fetchone())[0]

# ------------------ claims ------------------

async def claim_analysis(document_id: str, version_id: int, analysis_type: str,
                         db_path: str | None = None):
    """
    Take a 90-minute lease on (document, version, analysis_type).

    Raises AlreadyClaimedError if an unexpired pending row exists. An expired
    row is overwritten with a fresh timestamp.
    """
    now = utcnow()
    async with immediate_transaction(db_path) as db:
        cur = await db.execute(
            """
            SELECT created_at FROM document_analysis_results
            WHERE document_id = ? AND version_id = ? AND analysis_type = ?
            AND backend = ? AND status = 'pending' AND created_at > ?
            """,
            (document_id, version_id, analysis_type, PENDING_BACKEND, to_rfc3339(now - CLAIM_TTL)),
        )
        if await cur.fetchone():
            raise AlreadyClaimedError(f"{document_id}@{version_id} ({analysis_type})")
        await db.execute(
            """
            INSERT INTO document_analysis_results
                (document_id, version_id, analysis_type, backend, status, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?)
            ON CONFLICT (document_id, version_id, analysis_type, backend)
            DO UPDATE SET status = 'pending', created_at = excluded.created_at, error = NULL
            """,
            (document_id, version_id, analysis_type, PENDING_BACKEND, to_rfc3339(now)),
        )

async def delete_pending_claim(document_id: str, version_id: int, analysis_type: str,
                               db_path: str | None = None):
    async with connect(db_path) as db:
        await db.execute(
            """
            DELETE FROM document_analysis_results
            WHERE document_id = ? AND version_id = ? AND analysis_type = ?
            AND backend = ? AND status = 'pending'
            """,
            (document_id, version_id, analysis_type, PENDING_BACKEND),
        )
        await db.commit()

async def is_claimed(document_id: str, version_id: int, analysis_type: str,
                     db_path: str | None = None) -> bool:
    """Whether an unexpired pending claim exists."""
    async with connect(db_path) as db:
        cur = await db.execute(
            """
            SELECT COUNT(*) FROM document_analysis_results
            WHERE document_id = ? AND version_id = ? AND analysis_type = ?
            AND backend = ? AND status = 'pending' AND created_at > ?
            """,
            (document_id, version_id, analysis_type, PENDING_BACKEND, to_rfc3339(utcnow() - CLAIM_TTL)),
        )
        return (await cur.fetchone())[0] > 0

async def count_pending_claims(analysis_type: str, db_path: str | None = None) -> int:
    async with connect(db_path) as db:
        cur = await db.execute(
            "SELECT COUNT(*) FROM document_analysis_results WHERE analysis_type = ? AND status = 'pending'",
            (analysis_type,),
        )
        return (await cur.fetchone())[0]

async def store_analysis_result(document_id: str, version_id: int, analysis_type: str, backend: str,
                                result_text: str | None = None, error: str | None = None,
                                db_path: str | None = None):
    """Upsert a complete/failed result and drop the matching pending claim."""
    status = "failed" if error else "complete"
    async with connect(db_path) as db:
        await db.execute(
            """
            INSERT INTO document_analysis_results
                (document_id, version_id, analysis_type, backend, status, result_text, error, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (document_id, version_id, analysis_type, backend)
            DO UPDATE SET status = excluded.status, result_text = excluded.result_text,
                          error = excluded.error, created_at = excluded.created_at
            """,
            (document_id, version_id, analysis_type, backend, status, result_text, error, to_rfc3339(utcnow())),
        )
        await db.execute(
            """
            DELETE FROM document_analysis_results
            WHERE document_id = ? AND version_id = ? AND analysis_type = ?
            AND backend = ? AND status = 'pending'
            """,
            (document_id, version_id, analysis_type, PENDING_BACKEND),
        )
        await db.commit()

# ------------------ work discovery ------------------

_CURRENT_VERSION_JOIN = """
JOIN document_versions dv
  ON dv.id = (SELECT MAX(v2.id) FROM document_versions v2 WHERE v2.document_id = d.id)
"""

def _needing_analysis_where() -> str:
    return """
    WHERE (? IS NULL OR d.source_id = ?)
    AND (? IS NULL OR dv.mime_type = ?)
    AND NOT EXISTS (
        SELECT 1 FROM document_analysis_results r
        WHERE r.document_id = d.id AND r.version_id = dv.id AND r.analysis_type = ?
        AND (
            r.status = 'complete'
            OR (r.status = 'pending' AND r.created_at > ?)
            OR (r.status = 'failed' AND r.created_at > ?)
        )
    )
    """

def _needing_analysis_params(analysis_type, source_id, mime_type, retry_interval_hours):
    now = utcnow()
    return (
        source_id, source_id,
        mime_type, mime_type,
        analysis_type,
        to_rfc3339(now - CLAIM_TTL),
        to_rfc3339(now - timedelta(hours=retry_interval_hours)),
    )

async def count_needing_analysis(analysis_type: str, source_id: str | None = None,
                                 mime_type: str | None = None, retry_interval_hours: int = 12,
                                 db_path: str | None = None) -> int:
    async with connect(db_path) as db:
        cur = await db.execute(
            f"SELECT COUNT(*) FROM documents d {_CURRENT_VERSION_JOIN} {_needing_analysis_where()}",
            _needing_analysis_params(analysis_type, source_id, mime_type, retry_interval_hours),
        )
        return (await cur.fetchone())[0]

async def get_needing_analysis(analysis_type: str, limit: int, source_id: str | None = None,
                               mime_type: str | None = None, cursor: str | None = None,
                               retry_interval_hours: int = 12,
                               db_path: str | None = None) -> List[Document]:
    """Documents whose current version has no complete, live pending, or recent failed result."""
    async with connect(db_path) as db:
        cur = await db.execute(
            f"""
            SELECT d.* FROM documents d {_CURRENT_VERSION_JOIN}
            {_needing_analysis_where()}
            AND (? IS NULL OR d.id > ?)
            ORDER BY d.id ASC
            LIMIT ?
            """,
            _needing_analysis_params(analysis_type, source_id, mime_type, retry_interval_hours)
            + (cursor, cursor, limit),
        )
        return await _load_documents(db, await cur.fetchall())

def _annotation_path(annotation_type: str) -> str:
    return f'$.annotations."{annotation_type}".version'

async def count_needing_annotation(annotation_type: str, version: int, source_id: str | None = None,
                                   db_path: str | None = None) -> int:
    return await _query_needing_annotation(annotation_type, version, source_id, None, db_path, count_only=True)

async def get_needing_annotation(annotation_type: str, version: int, limit: int,
                                 source_id: str | None = None,
                                 db_path: str | None = None) -> List[Document]:
    return await _query_needing_annotation(annotation_type, version, source_id, limit, db_path)

async def _query_needing_annotation(annotation_type, version, source_id, limit, db_path, count_only=False):
    claim_type = f"annotate:{annotation_type}"
    select = "SELECT COUNT(*)" if count_only else "SELECT d.*"
    sql = f"""
        {select} FROM documents d {_CURRENT_VERSION_JOIN}
        WHERE (? IS NULL OR d.source_id = ?)
        AND COALESCE(json_extract(d.metadata, ?), 0) < ?
        AND NOT EXISTS (
            SELECT 1 FROM document_analysis_results r
            WHERE r.document_id = d.id AND r.version_id = dv.id AND r.analysis_type = ?
            AND r.status = 'pending' AND r.created_at > ?
        )
    """
    params = (
        source_id, source_id,
        _annotation_path(annotation_type), version,
        claim_type, to_rfc3339(utcnow() - CLAIM_TTL),
    )
    async with connect(db_path) as db:
        if count_only:
            cur = await db.execute(sql, params)
            return (await cur.fetchone())[0]
        cur = await db.execute(sql + " ORDER BY d.updated_at ASC, d.id ASC LIMIT ?", params + (limit,))
        return await _load_documents(db, await cur.fetchall())

async def record_annotation(document_id: str, annotation_type: str, version: int, output: str,
                            db_path: str | None = None):
    """Store an annotation result in document metadata under annotations.<type>."""
    async with connect(db_path) as db:
        cur = await db.execute("SELECT metadata FROM documents WHERE id = ?", (document_id,))
        row = await cur.fetchone()
        if row is None:
            raise KeyError(document_id)
        metadata = json.loads(row["metadata"])
        metadata.setdefault("annotations", {})[annotation_type] = {
            "version": version,
            "output": output,
            "annotated_at": to_rfc3339(utcnow()),
        }
        await db.execute(
            "UPDATE documents SET metadata = ?, updated_at = ? WHERE id = ?",
            (json.dumps(metadata), to_rfc3339(utcnow()), document_id),
        )
        await db.commit()
