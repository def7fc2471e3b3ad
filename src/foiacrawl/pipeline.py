"""
Batch pipeline stages and the runner that drives them.

Each stage counts its work and processes it one chunk at a time; the runner
either drains stages one after another (wide) or interleaves two stages per
chunk (deep). Progress is reported as PipelineEvent objects on an
asyncio.Queue.
"""

from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from .documents import record_annotation
from .errors import AlreadyClaimedError
from .models import Document
from .work_queue import DbAnnotationQueue, WorkFilter

logger = logging.getLogger(__name__)

@dataclass
class ChunkResult:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    # whether more work remains after this chunk
    has_more: bool = False

    @property
    def total(self) -> int:
        return self.succeeded + self.failed + self.skipped

class EventKind(str, Enum):
    STAGE_STARTED = "stage_started"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_SKIPPED = "item_skipped"
    ITEM_FAILED = "item_failed"
    STAGE_COMPLETED = "stage_completed"

@dataclass
class PipelineEvent:
    kind: EventKind
    stage: str
    item_id: Optional[str] = None
    label: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[str] = None
    total_items: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    remaining: int = 0

class ExecutionStrategy(str, Enum):
    WIDE = "wide"  # all chunks through stage N, then stage N+1
    DEEP = "deep"  # each chunk through every stage

class PipelineStage(ABC):
    name: str = "stage"

    def is_deferred(self) -> bool:
        """True when the stage hands work to a remote API rather than local CPU."""
        return False

    @abstractmethod
    async def count(self) -> int:
        ...

    @abstractmethod
    async def run_chunk(self, chunk_size: int, remaining_limit: int,
                        events: asyncio.Queue) -> ChunkResult:
        """Process up to `chunk_size` items; `remaining_limit` of 0 means unlimited."""

@dataclass
class _Totals:
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def add(self, r: ChunkResult):
        self.succeeded += r.succeeded
        self.failed += r.failed
        self.skipped += r.skipped

class PipelineRunner:
    def __init__(self, chunk_size: int = 10, limit: int = 0):
        self.stages: List[PipelineStage] = []
        self.chunk_size = chunk_size
        self.limit = limit  # 0 = unlimited

    def add_stage(self, stage: PipelineStage):
        self.stages.append(stage)

    async def run(self, strategy: ExecutionStrategy, events: asyncio.Queue):
        if strategy == ExecutionStrategy.WIDE or len(self.stages) < 2:
            for stage in self.stages:
                await self._drain_stage(stage, events)
        else:
            await self._run_deep(self.stages[0], self.stages[1], events)
            for stage in self.stages[2:]:
                await self._drain_stage(stage, events)

    def _remaining_limit(self, processed: int) -> Optional[int]:
        """None when the limit is reached, 0 for unlimited."""
        if self.limit <= 0:
            return 0
        left = self.limit - processed
        return left if left > 0 else None

    async def _started(self, stage: PipelineStage, events: asyncio.Queue):
        total = await stage.count()
        await events.put(PipelineEvent(EventKind.STAGE_STARTED, stage.name, total_items=total))
        return total

    async def _completed(self, stage: PipelineStage, totals: _Totals, events: asyncio.Queue):
        remaining = await stage.count()
        await events.put(PipelineEvent(
            EventKind.STAGE_COMPLETED, stage.name,
            succeeded=totals.succeeded, failed=totals.failed,
            skipped=totals.skipped, remaining=remaining,
        ))

    async def _drain_stage(self, stage: PipelineStage, events: asyncio.Queue):
        await self._started(stage, events)
        totals = _Totals()
        processed = 0
        while True:
            remaining_limit = self._remaining_limit(processed)
            if remaining_limit is None:
                break
            result = await stage.run_chunk(self.chunk_size, remaining_limit, events)
            processed += result.total
            totals.add(result)
            if not result.has_more or result.total == 0:
                break
        await self._completed(stage, totals, events)

    async def _run_deep(self, first: PipelineStage, second: PipelineStage, events: asyncio.Queue):
        await self._started(first, events)
        first_totals, second_totals = _Totals(), _Totals()
        processed = 0
        while True:
            remaining_limit = self._remaining_limit(processed)
            if remaining_limit is None:
                break
            r1 = await first.run_chunk(self.chunk_size, remaining_limit, events)
            processed += r1.total
            first_totals.add(r1)
            # consume what the first stage just produced
            second_totals.add(await second.run_chunk(self.chunk_size, 0, events))
            if not r1.has_more or r1.total == 0:
                break
        await self._completed(first, first_totals, events)

        if await second.count() > 0:
            await self._started(second, events)
        while await second.count() > 0:
            r = await second.run_chunk(self.chunk_size, 0, events)
            second_totals.add(r)
            if r.total == 0:
                break
        await self._completed(second, second_totals, events)

# ------------------ annotation ------------------

class Annotator(ABC):
    """An annotation backend (LLM summary, tagging, ...)."""

    name: str = "annotator"
    version: int = 1

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def annotate(self, document: Document) -> str:
        """Return the annotation output; raise on failure."""

class AnnotationStage(PipelineStage):
    """Claims documents from a DbAnnotationQueue and runs one annotator over them."""

    def __init__(self, queue: DbAnnotationQueue, annotator: Annotator, source_id: Optional[str] = None):
        self.queue = queue
        self.annotator = annotator
        self.name = f"annotate:{annotator.name}"
        self.filter = WorkFilter(work_type=annotator.name, source_id=source_id, version=annotator.version)

    def is_deferred(self) -> bool:
        return True

    async def count(self) -> int:
        return await self.queue.count(self.filter)

    async def run_chunk(self, chunk_size: int, remaining_limit: int,
                        events: asyncio.Queue) -> ChunkResult:
        result = ChunkResult()
        if not await self.annotator.is_available():
            logger.warning(f"Annotator {self.annotator.name} unavailable, skipping chunk")
            return result

        size = min(chunk_size, remaining_limit) if remaining_limit else chunk_size
        batch = await self.queue.fetch_batch(self.filter, size)
        for doc in batch:
            try:
                handle = await self.queue.claim(doc, self.filter)
            except AlreadyClaimedError:
                result.skipped += 1
                await events.put(PipelineEvent(EventKind.ITEM_SKIPPED, self.name, item_id=doc.id))
                continue

            await events.put(PipelineEvent(EventKind.ITEM_STARTED, self.name, item_id=doc.id, label=doc.title))
            try:
                output = await self.annotator.annotate(doc)
                await record_annotation(doc.id, self.annotator.name, self.annotator.version, output,
                                        db_path=self.queue.db_path)
            except Exception as e:
                logger.warning(f"Annotation of {doc.id} failed: {e}")
                await self.queue.fail(handle, str(e))
                result.failed += 1
                await events.put(PipelineEvent(EventKind.ITEM_FAILED, self.name, item_id=doc.id, error=str(e)))
                continue

            await self.queue.complete(handle)
            result.succeeded += 1
            await events.put(PipelineEvent(EventKind.ITEM_COMPLETED, self.name, item_id=doc.id))

        result.has_more = len(batch) == size and size > 0
        return result
