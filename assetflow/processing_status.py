# assetflow/processing_status.py
"""
Per-asset processing status.

One record per (asset_type, asset_id) holds a declared set of stages, each
pending -> processing -> completed | failed. The overall status is derived
from the stages and never set directly:

  completed  every declared stage is completed
  failed     at least one stage failed (until a retry resets the stages)
  processing otherwise

Every (re)queue bumps `generation`. Workers pass the generation they were
started with, and writes from an older generation raise StaleJobError, so a
forced retry cannot be overwritten by the run it replaced.
"""
import asyncio
import enum
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from assetflow.db import dialect_insert
from assetflow.errors import InvalidStageTransition, NotFoundError, StaleJobError
from assetflow.metrics import jobs_enqueued_total, retries_total
from assetflow.models import (
    ASSET_MODELS,
    AssetProcessingJob,
    AssetType,
    BookmarkJobPayload,
    DocumentJobPayload,
    utcnow,
)
from assetflow.queues import ASSET_QUEUES, EnqueueResult, QueueRegistry

logger = logging.getLogger(__name__)


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


DOCUMENT_STAGES = ["processing"]
BOOKMARK_STAGES = ["content", "pdf", "screenshot", "tagging"]

ASSET_STAGES = {
    AssetType.DOCUMENTS: DOCUMENT_STAGES,
    AssetType.BOOKMARKS: BOOKMARK_STAGES,
}

_ALLOWED = {
    StageStatus.PENDING: {StageStatus.PROCESSING, StageStatus.COMPLETED, StageStatus.FAILED},
    StageStatus.PROCESSING: {StageStatus.PROCESSING, StageStatus.COMPLETED, StageStatus.FAILED},
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
}


def derive_status(stages: Mapping[str, str]) -> JobStatus:
    values = [StageStatus(v) for v in stages.values()]
    if any(v == StageStatus.FAILED for v in values):
        return JobStatus.FAILED
    if values and all(v == StageStatus.COMPLETED for v in values):
        return JobStatus.COMPLETED
    return JobStatus.PROCESSING


def declare_stages(stage_names: Iterable[str], status: StageStatus = StageStatus.PENDING) -> Dict[str, str]:
    names = list(dict.fromkeys(stage_names))
    if not names:
        raise ValueError("a processing job needs at least one stage")
    return {name: StageStatus(status).value for name in names}


def transition(stages: Mapping[str, str], stage_name: str, outcome: StageStatus) -> Dict[str, str]:
    """Return a new stage map with `stage_name` moved to `outcome`."""
    if stage_name not in stages:
        raise InvalidStageTransition(f"unknown stage {stage_name!r}; declared: {sorted(stages)}")
    current = StageStatus(stages[stage_name])
    outcome = StageStatus(outcome)
    if outcome not in _ALLOWED[current]:
        raise InvalidStageTransition(f"stage {stage_name!r} cannot move from {current.value} to {outcome.value}")
    new_stages = dict(stages)
    new_stages[stage_name] = outcome.value
    return new_stages


@dataclass
class JobSnapshot:
    asset_type: str
    asset_id: str
    user_id: str
    status: str
    stages: Dict[str, str]
    error_message: Optional[str]
    retry_count: int
    generation: int
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: AssetProcessingJob) -> "JobSnapshot":
        return cls(
            asset_type=row.asset_type,
            asset_id=row.asset_id,
            user_id=row.user_id,
            status=row.status,
            stages=dict(row.stages or {}),
            error_message=row.error_message,
            retry_count=row.retry_count or 0,
            generation=row.generation,
            updated_at=row.updated_at,
        )


@dataclass
class RetryResult:
    success: bool
    queued: bool = False
    already_in_flight: bool = False
    generation: Optional[int] = None
    error: Optional[str] = None


class ProcessingStatusStore:
    def __init__(self, session_factory: async_sessionmaker, queues: Optional[QueueRegistry] = None):
        self.session_factory = session_factory
        self.queues = queues

    @asynccontextmanager
    async def _transaction(self, session: Optional[AsyncSession] = None):
        if session is not None:
            # caller owns the transaction
            yield session
            return
        async with self.session_factory() as s:
            async with s.begin():
                yield s

    async def _get_row(self, session: AsyncSession, asset_type: str, asset_id: str,
                       for_update: bool = False) -> Optional[AssetProcessingJob]:
        stmt = (
            select(AssetProcessingJob)
            .where(AssetProcessingJob.asset_type == asset_type, AssetProcessingJob.asset_id == asset_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    # ---- writes ----

    async def create_or_update_processing_job(
        self,
        asset_type: str,
        asset_id: str,
        user_id: str,
        stage_names: Iterable[str],
        stage_status: StageStatus = StageStatus.PENDING,
        session: Optional[AsyncSession] = None,
        is_retry: bool = False,
    ) -> JobSnapshot:
        asset_type = AssetType(asset_type).value
        stages = declare_stages(stage_names, stage_status)
        status = derive_status(stages).value
        now = utcnow()
        async with self._transaction(session) as s:
            table = AssetProcessingJob.__table__
            stmt = dialect_insert(s, table).values(
                asset_type=asset_type,
                asset_id=asset_id,
                user_id=user_id,
                status=status,
                stages=stages,
                error_message=None,
                retry_count=0,
                generation=1,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.asset_type, table.c.asset_id],
                set_={
                    "user_id": user_id,
                    "status": status,
                    "stages": stages,
                    "error_message": None,
                    "retry_count": table.c.retry_count + (1 if is_retry else 0),
                    "generation": table.c.generation + 1,
                    "updated_at": now,
                },
            )
            await s.execute(stmt)
            row = await self._get_row(s, asset_type, asset_id)
            snapshot = JobSnapshot.from_row(row)
        logger.info("Processing job for %s/%s declared stages=%s generation=%s",
                    asset_type, asset_id, list(stages), snapshot.generation)
        return snapshot

    async def ensure_current(self, session: AsyncSession, asset_type: str, asset_id: str,
                             generation: Optional[int]) -> AssetProcessingJob:
        row = await self._get_row(session, AssetType(asset_type).value, asset_id, for_update=True)
        if row is None:
            raise NotFoundError(f"no processing job for {asset_type}/{asset_id}")
        if generation is not None and row.generation != generation:
            raise StaleJobError(asset_type, asset_id, generation, row.generation)
        return row

    async def advance_stage(
        self,
        asset_type: str,
        asset_id: str,
        stage_name: str,
        outcome: StageStatus,
        detail: Optional[str] = None,
        generation: Optional[int] = None,
    ) -> JobSnapshot:
        outcome = StageStatus(outcome)
        async with self._transaction() as s:
            row = await self.ensure_current(s, asset_type, asset_id, generation)
            stages = transition(row.stages or {}, stage_name, outcome)
            row.stages = stages
            row.status = derive_status(stages).value
            if outcome == StageStatus.FAILED:
                row.error_message = row.error_message or detail or f"stage {stage_name} failed"
            row.updated_at = utcnow()
            await s.flush()
            snapshot = JobSnapshot.from_row(row)
        logger.debug("%s/%s stage %s -> %s (status %s)", asset_type, asset_id, stage_name,
                     outcome.value, snapshot.status)
        return snapshot

    async def fail_remaining(self, asset_type: str, asset_id: str, detail: str,
                             generation: Optional[int] = None) -> JobSnapshot:
        """Mark every stage that has not finished as failed."""
        async with self._transaction() as s:
            row = await self.ensure_current(s, asset_type, asset_id, generation)
            stages = dict(row.stages or {})
            for name, value in stages.items():
                if StageStatus(value) in (StageStatus.PENDING, StageStatus.PROCESSING):
                    stages = transition(stages, name, StageStatus.FAILED)
            row.stages = stages
            row.status = derive_status(stages).value
            if row.status == JobStatus.FAILED.value:
                row.error_message = row.error_message or detail
            row.updated_at = utcnow()
            await s.flush()
            return JobSnapshot.from_row(row)

    # ---- reads ----

    async def get_job(self, asset_type: str, asset_id: str) -> Optional[JobSnapshot]:
        async with self.session_factory() as s:
            row = await self._get_row(s, AssetType(asset_type).value, asset_id)
            return JobSnapshot.from_row(row) if row is not None else None

    async def get_status(self, asset_type: str, asset_id: str) -> Optional[str]:
        job = await self.get_job(asset_type, asset_id)
        return job.status if job is not None else None

    # ---- queueing ----

    def _queue_for(self, asset_type: AssetType):
        if self.queues is None:
            raise RuntimeError("ProcessingStatusStore was built without a queue registry")
        queue_name, job_name = ASSET_QUEUES[asset_type]
        return self.queues.get_queue(queue_name), job_name

    @staticmethod
    def build_payload(asset_type: AssetType, asset, generation: int) -> dict:
        if asset_type == AssetType.DOCUMENTS:
            return DocumentJobPayload(
                document_id=asset.id,
                storage_id=asset.storage_id,
                mime_type=asset.mime_type or "application/octet-stream",
                user_id=asset.user_id,
                original_filename=asset.original_filename,
                generation=generation,
            ).model_dump()
        return BookmarkJobPayload(
            bookmark_id=asset.id,
            url=asset.url,
            user_id=asset.user_id,
            generation=generation,
        ).model_dump()

    async def _load_asset(self, session: AsyncSession, asset_type: AssetType, asset_id: str, user_id: str):
        asset = await session.get(ASSET_MODELS[asset_type], asset_id)
        if asset is None or asset.user_id != user_id:
            raise NotFoundError(f"{asset_type.value} {asset_id} not found")
        return asset

    async def _dispatch(self, queue, job_name: str, asset_type: AssetType, asset_id: str,
                        payload: dict, force: bool, generation: int) -> EnqueueResult:
        try:
            result = await asyncio.to_thread(queue.add, job_name, payload, asset_id, force)
        except Exception:
            logger.error("Failed to enqueue %s/%s; marking job failed", asset_type.value, asset_id)
            await self.fail_remaining(asset_type.value, asset_id, "Failed to enqueue processing job", generation)
            raise
        if result.enqueued:
            jobs_enqueued_total.labels(asset_type.value).inc()
        return result

    async def start_processing(self, asset_type: str, asset_id: str, user_id: str) -> EnqueueResult:
        """Declare the stage set for a newly created asset and enqueue its first job."""
        asset_type = AssetType(asset_type)
        queue, job_name = self._queue_for(asset_type)
        async with self._transaction() as s:
            asset = await self._load_asset(s, asset_type, asset_id, user_id)
            snapshot = await self.create_or_update_processing_job(
                asset_type.value, asset_id, user_id, ASSET_STAGES[asset_type], session=s,
            )
            payload = self.build_payload(asset_type, asset, snapshot.generation)
        return await self._dispatch(queue, job_name, asset_type, asset_id, payload, False, snapshot.generation)

    async def retry_asset_processing(self, asset_type: str, asset_id: str, user_id: str,
                                     force: bool = False) -> RetryResult:
        asset_type = AssetType(asset_type)
        queue, job_name = self._queue_for(asset_type)
        async with self._transaction() as s:
            asset = await self._load_asset(s, asset_type, asset_id, user_id)
            row = await self._get_row(s, asset_type.value, asset_id, for_update=True)
            in_flight = row is not None and row.status == JobStatus.PROCESSING.value
            if in_flight and not force and not await asyncio.to_thread(queue.is_in_flight, asset_id):
                # no queue entry: the worker died without recording an outcome
                logger.warning("%s/%s is marked processing but has no queued job; treating it as dead",
                               asset_type.value, asset_id)
                in_flight = False
            if in_flight and not force:
                logger.info("Retry for %s/%s skipped: a job is already in flight", asset_type.value, asset_id)
                retries_total.labels(asset_type.value, "in_flight").inc()
                return RetryResult(
                    success=False,
                    already_in_flight=True,
                    generation=row.generation,
                    error="A processing job is already in progress for this asset",
                )
            stage_names = list((row.stages or {}).keys()) if row is not None else ASSET_STAGES[asset_type]
            snapshot = await self.create_or_update_processing_job(
                asset_type.value, asset_id, user_id, stage_names or ASSET_STAGES[asset_type],
                stage_status=StageStatus.PROCESSING, session=s, is_retry=row is not None,
            )
            payload = self.build_payload(asset_type, asset, snapshot.generation)

        # the previous run is terminal or explicitly overridden, so replace whatever sits at the key
        result = await self._dispatch(queue, job_name, asset_type, asset_id, payload, True, snapshot.generation)
        logger.info("Re-queued %s/%s generation=%s force=%s", asset_type.value, asset_id, snapshot.generation, force)
        retries_total.labels(asset_type.value, "forced" if force else "queued").inc()
        return RetryResult(success=True, queued=result.enqueued, generation=snapshot.generation)
