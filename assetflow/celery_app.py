# assetflow/celery_app.py
from celery import Celery

from assetflow.config import settings

celery_app = Celery(
    "assetflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["assetflow.tasks"],
)

celery_app.conf.task_routes = {
    "assetflow.tasks.process_document_task": {"queue": settings.document_queue},
    "assetflow.tasks.process_bookmark_task": {"queue": settings.bookmark_queue},
}

# Tuning
celery_app.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_soft_time_limit=settings.task_soft_time_limit,
)
