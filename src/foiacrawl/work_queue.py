"""
Claim/complete/fail lifecycle shared by the downstream pipelines.

A queue discovers work with database queries and hands out leases by
inserting a pending row in ``document_analysis_results``. Leases are never
released on failure: the row simply expires after 90 minutes, after which
any worker may claim the item again.
"""

from __future__ import annotations
import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generic, List, Optional, Tuple, TypeVar, Union

from . import documents
from .errors import DatabaseError, NotFoundError
from .models import Document

logger = logging.getLogger(__name__)

DEFAULT_RETRY_HOURS = 12

T = TypeVar("T")

@dataclass
class WorkFilter:
    # analysis/annotation method name, e.g. "ocr" or "llm_summary"
    work_type: str
    source_id: Optional[str] = None
    mime_type: Optional[str] = None
    # annotation schema version (annotation queues only)
    version: Optional[int] = None
    retry_interval_hours: Optional[int] = None

@dataclass(frozen=True)
class DbPendingClaim:
    """A pending-claim row that must be deleted when the work completes."""
    document_id: str
    version_id: int
    work_type: str

ClaimId = Union[DbPendingClaim, None]

class WorkHandle(Generic[T]):
    """
    A claimed work item. Pass it to exactly one of ``complete`` or ``fail``.

    A handle that is garbage-collected unconsumed is only logged; its lease
    expires on its own.
    """

    def __init__(self, item: T, claim_id: ClaimId = None):
        self.item = item
        self.claim_id = claim_id
        self._consumed = False

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> Tuple[T, ClaimId]:
        if self._consumed:
            raise RuntimeError("WorkHandle already completed or failed")
        self._consumed = True
        return self.item, self.claim_id

    def __del__(self):
        if not getattr(self, "_consumed", True):
            logger.warning(
                "WorkHandle dropped without being completed or failed; claim will expire after 90 minutes"
            )

class WorkQueue(ABC, Generic[T]):
    """Discovery plus distributed locking for one pipeline. Results are stored by the pipeline."""

    @abstractmethod
    async def count(self, work_filter: WorkFilter) -> int:
        ...

    @abstractmethod
    async def fetch_batch(self, work_filter: WorkFilter, limit: int,
                          cursor: Optional[str] = None) -> List[T]:
        ...

    @abstractmethod
    async def claim(self, item: T, work_filter: WorkFilter) -> WorkHandle[T]:
        """Raises AlreadyClaimedError when another worker holds a live lease."""

    @abstractmethod
    async def complete(self, handle: WorkHandle[T]) -> None:
        ...

    @abstractmethod
    async def fail(self, handle: WorkHandle[T], error: str, requeue: bool = False) -> None:
        """`requeue` is for broker-backed queues; database queues rely on lease expiry."""

@contextmanager
def _db_errors():
    try:
        yield
    except sqlite3.Error as e:
        raise DatabaseError(str(e)) from e

def _current_version_id(item: Document) -> int:
    version = item.current_version()
    if version is None or version.id is None:
        raise NotFoundError(f"no version for document {item.id}")
    return version.id

class DbAnalysisQueue(WorkQueue[Document]):
    """Analysis work: documents whose current version lacks a result of this type."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path

    async def count(self, work_filter: WorkFilter) -> int:
        with _db_errors():
            return await documents.count_needing_analysis(
                work_filter.work_type,
                source_id=work_filter.source_id,
                mime_type=work_filter.mime_type,
                retry_interval_hours=work_filter.retry_interval_hours or DEFAULT_RETRY_HOURS,
                db_path=self.db_path,
            )

    async def fetch_batch(self, work_filter: WorkFilter, limit: int,
                          cursor: Optional[str] = None) -> List[Document]:
        with _db_errors():
            return await documents.get_needing_analysis(
                work_filter.work_type,
                limit,
                source_id=work_filter.source_id,
                mime_type=work_filter.mime_type,
                cursor=cursor,
                retry_interval_hours=work_filter.retry_interval_hours or DEFAULT_RETRY_HOURS,
                db_path=self.db_path,
            )

    async def claim(self, item: Document, work_filter: WorkFilter) -> WorkHandle[Document]:
        version_id = _current_version_id(item)
        with _db_errors():
            await documents.claim_analysis(item.id, version_id, work_filter.work_type, db_path=self.db_path)
        # the result upsert clears the pending row, so nothing to track
        return WorkHandle(item, None)

    async def complete(self, handle: WorkHandle[Document]) -> None:
        handle.consume()

    async def fail(self, handle: WorkHandle[Document], error: str, requeue: bool = False) -> None:
        item, _ = handle.consume()
        logger.debug(f"Analysis of {item.id} failed: {error}; lease left to expire")

class DbAnnotationQueue(WorkQueue[Document]):
    """Annotation work, tracked by version in document metadata."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path

    @staticmethod
    def claim_type(work_type: str) -> str:
        # keeps annotation claims apart from analysis claims on the same document
        return f"annotate:{work_type}"

    async def count(self, work_filter: WorkFilter) -> int:
        with _db_errors():
            return await documents.count_needing_annotation(
                work_filter.work_type,
                work_filter.version or 1,
                source_id=work_filter.source_id,
                db_path=self.db_path,
            )

    async def fetch_batch(self, work_filter: WorkFilter, limit: int,
                          cursor: Optional[str] = None) -> List[Document]:
        with _db_errors():
            return await documents.get_needing_annotation(
                work_filter.work_type,
                work_filter.version or 1,
                limit,
                source_id=work_filter.source_id,
                db_path=self.db_path,
            )

    async def claim(self, item: Document, work_filter: WorkFilter) -> WorkHandle[Document]:
        version_id = _current_version_id(item)
        claim_type = self.claim_type(work_filter.work_type)
        with _db_errors():
            await documents.claim_analysis(item.id, version_id, claim_type, db_path=self.db_path)
        return WorkHandle(item, DbPendingClaim(item.id, version_id, claim_type))

    async def complete(self, handle: WorkHandle[Document]) -> None:
        # results live in document metadata, so the pending row is removed here
        _, claim_id = handle.consume()
        if isinstance(claim_id, DbPendingClaim):
            with _db_errors():
                await documents.delete_pending_claim(
                    claim_id.document_id, claim_id.version_id, claim_id.work_type, db_path=self.db_path
                )

    async def fail(self, handle: WorkHandle[Document], error: str, requeue: bool = False) -> None:
        item, _ = handle.consume()
        logger.debug(f"Annotation of {item.id} failed: {error}; lease left to expire")
