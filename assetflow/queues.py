# assetflow/queues.py
"""
Named work queues on top of Celery, with at most one live job per job id.

Celery has no notion of job identity, so each queue keeps one redis key per
job id ({prefix}:{queue}:job:{job_id}) holding the Celery task id currently
entitled to run. The key is claimed with SET NX (duplicate enqueue is a no-op)
or overwritten when the caller forces a replacement. Keys carry a TTL so a
worker that died without releasing never blocks future retries.
"""
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from assetflow.errors import InfrastructureError
from assetflow.models import AssetType

logger = logging.getLogger(__name__)

KEY_PREFIX = "assetflow:queue"


class QueueNames:
    DOCUMENT_PROCESSING = "document-processing"
    BOOKMARK_PROCESSING = "bookmark-processing"


# asset type -> (queue name, job name)
ASSET_QUEUES = {
    AssetType.DOCUMENTS: (QueueNames.DOCUMENT_PROCESSING, "processDocument"),
    AssetType.BOOKMARKS: (QueueNames.BOOKMARK_PROCESSING, "processBookmark"),
}

# job name -> celery task name
JOB_TASKS = {
    "processDocument": "assetflow.tasks.process_document_task",
    "processBookmark": "assetflow.tasks.process_bookmark_task",
}


@dataclass
class EnqueueResult:
    job_id: str
    task_id: Optional[str]
    enqueued: bool
    replaced: bool = False


class JobQueue:
    def __init__(self, name: str, celery_app, redis_client, lock_ttl_seconds: int,
                 celery_queue: Optional[str] = None, tasks: Optional[Dict[str, str]] = None):
        self.name = name
        self.celery_app = celery_app
        self.redis = redis_client
        self.lock_ttl_seconds = lock_ttl_seconds
        self.celery_queue = celery_queue or name
        self.tasks = tasks or JOB_TASKS

    def _key(self, job_id: str) -> str:
        return f"{KEY_PREFIX}:{self.name}:job:{job_id}"

    def _entry(self, job_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.get(self._key(job_id))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Corrupt queue entry for job %s on %s; ignoring", job_id, self.name)
            return None

    def is_in_flight(self, job_id: str) -> bool:
        return self._entry(job_id) is not None

    def add(self, job_name: str, payload: Dict[str, Any], job_id: str, force: bool = False) -> EnqueueResult:
        task_name = self.tasks.get(job_name)
        if task_name is None:
            raise InfrastructureError(f'Unknown job "{job_name}" for queue "{self.name}"')

        task_id = f"{job_id}:{uuid.uuid4().hex[:12]}"
        entry = json.dumps({"task_id": task_id, "job_name": job_name, "state": "waiting"})
        key = self._key(job_id)
        replaced = False

        if force:
            previous = self._entry(job_id)
            self.redis.set(key, entry, ex=self.lock_ttl_seconds)
            if previous is not None:
                replaced = True
                if previous.get("state") == "waiting":
                    # not started yet: drop it. A started run is left to finish and gets fenced out.
                    self.celery_app.control.revoke(previous["task_id"])
                logger.info("Replacing job %s on %s (previous task %s, %s)",
                            job_id, self.name, previous.get("task_id"), previous.get("state"))
        elif not self.redis.set(key, entry, nx=True, ex=self.lock_ttl_seconds):
            existing = self._entry(job_id) or {}
            logger.info("Job %s already queued on %s; skipping duplicate enqueue", job_id, self.name)
            return EnqueueResult(job_id=job_id, task_id=existing.get("task_id"), enqueued=False)

        try:
            self.celery_app.send_task(task_name, args=[payload], task_id=task_id, queue=self.celery_queue)
        except Exception as e:
            self.release(job_id, task_id)
            logger.exception("Failed to publish job %s to %s", job_id, self.name)
            raise InfrastructureError(f'Failed to enqueue job {job_id} on "{self.name}": {e}') from e

        logger.info("Enqueued %s job %s on %s (task %s)", job_name, job_id, self.name, task_id)
        return EnqueueResult(job_id=job_id, task_id=task_id, enqueued=True, replaced=replaced)

    def mark_active(self, job_id: str, task_id: str) -> bool:
        """
        Called by the worker before running. Returns False if the job was superseded
        by a newer enqueue for the same job id.
        """
        entry = self._entry(job_id)
        if entry is not None and entry.get("task_id") != task_id:
            return False
        active = dict(entry or {}, task_id=task_id, state="active")
        self.redis.set(self._key(job_id), json.dumps(active), ex=self.lock_ttl_seconds)
        return True

    def release(self, job_id: str, task_id: str) -> None:
        entry = self._entry(job_id)
        if entry is not None and entry.get("task_id") == task_id:
            self.redis.delete(self._key(job_id))


class QueueRegistry:
    def __init__(self):
        self._queues: Dict[str, JobQueue] = {}

    def register(self, queue: JobQueue) -> JobQueue:
        self._queues[queue.name] = queue
        return queue

    def get_queue(self, name: str) -> JobQueue:
        queue = self._queues.get(name)
        if queue is None:
            logger.error('Failed to get queue "%s"', name)
            raise InfrastructureError(f'Queue "{name}" is not registered')
        return queue


def build_queue_registry(settings, celery_app, redis_client) -> QueueRegistry:
    registry = QueueRegistry()
    registry.register(JobQueue(QueueNames.DOCUMENT_PROCESSING, celery_app, redis_client,
                               settings.job_lock_ttl_seconds, celery_queue=settings.document_queue))
    registry.register(JobQueue(QueueNames.BOOKMARK_PROCESSING, celery_app, redis_client,
                               settings.job_lock_ttl_seconds, celery_queue=settings.bookmark_queue))
    return registry
