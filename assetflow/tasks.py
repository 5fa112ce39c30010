# assetflow/tasks.py
import asyncio
import logging

import redis

from assetflow.celery_app import celery_app
from assetflow.config import settings
from assetflow.db import close_engine, create_engine, create_session_factory
from assetflow.errors import NotFoundError, StaleJobError
from assetflow.models import AssetType
from assetflow.pipeline import process_bookmark, process_document, worker_context
from assetflow.processing_status import ProcessingStatusStore
from assetflow.queues import QueueNames, QueueRegistry, build_queue_registry

logger = logging.getLogger(__name__)

_redis_sync = None
_queues = None


def get_redis_sync():
    global _redis_sync
    if _redis_sync is None:
        _redis_sync = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_sync


def get_queues() -> QueueRegistry:
    global _queues
    if _queues is None:
        _queues = build_queue_registry(settings, celery_app, get_redis_sync())
    return _queues


async def _run_pipeline(pipeline, payload):
    async with worker_context(settings) as ctx:
        return await pipeline(ctx, payload)


async def _record_failure(asset_type: AssetType, asset_id: str, generation: int, detail: str) -> None:
    """Fail the unfinished stages of a job that died before or outside its pipeline."""
    engine = create_engine(settings.database_url, null_pool=True)
    try:
        status = ProcessingStatusStore(create_session_factory(engine))
        await status.fail_remaining(asset_type, asset_id, detail, generation)
    except (StaleJobError, NotFoundError) as e:
        logger.warning("Not recording failure for %s %s: %s", asset_type.value, asset_id, e)
    finally:
        await close_engine(engine)


def run_job(task, asset_type: AssetType, queue_name: str, job_id: str, pipeline, payload: dict) -> dict:
    """
    Run one pipeline for `job_id` if this task still owns the job's queue entry.
    Failures are recorded on the job's stages and the entry is released when the
    task finishes, whatever the outcome.
    """
    queue = get_queues().get_queue(queue_name)
    task_id = task.request.id
    if not queue.mark_active(job_id, task_id):
        logger.info("Task %s for %s was superseded before it started; skipping", task_id, job_id)
        return {"status": "superseded", "asset_id": job_id}
    try:
        snapshot = asyncio.run(_run_pipeline(pipeline, payload))
        status = snapshot.status if snapshot is not None else "superseded"
        return {"status": status, "asset_id": job_id}
    except Exception as e:
        logger.exception("Task %s failed for %s", task_id, job_id)
        try:
            asyncio.run(_record_failure(asset_type, job_id, payload.get("generation", 1),
                                        str(e)[:500] or type(e).__name__))
        except Exception:
            logger.exception("Failed to record failure status for %s %s", asset_type.value, job_id)
        raise
    finally:
        queue.release(job_id, task_id)


@celery_app.task(bind=True, name="assetflow.tasks.process_document_task")
def process_document_task(self, payload: dict):
    return run_job(self, AssetType.DOCUMENTS, QueueNames.DOCUMENT_PROCESSING, payload["document_id"],
                   process_document, payload)


@celery_app.task(bind=True, name="assetflow.tasks.process_bookmark_task")
def process_bookmark_task(self, payload: dict):
    return run_job(self, AssetType.BOOKMARKS, QueueNames.BOOKMARK_PROCESSING, payload["bookmark_id"],
                   process_bookmark, payload)
