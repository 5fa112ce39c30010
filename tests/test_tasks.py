import asyncio
from types import SimpleNamespace

import pytest

from assetflow import tasks
from assetflow.db import close_engine, create_engine, create_session_factory, init_models
from assetflow.errors import InfrastructureError
from assetflow.models import AssetType, Bookmark
from assetflow.processing_status import BOOKMARK_STAGES, ProcessingStatusStore
from assetflow.queues import QueueNames

USER = "user-1"


def _task(task_id):
    return SimpleNamespace(request=SimpleNamespace(id=task_id))


def _with_store(database_url, queues, fn):
    """Run `fn(store)` in its own event loop, the way a Celery task does."""
    async def run():
        engine = create_engine(database_url, null_pool=True)
        try:
            await init_models(engine)
            return await fn(ProcessingStatusStore(create_session_factory(engine), queues))
        finally:
            await close_engine(engine)

    return asyncio.run(run())


@pytest.fixture
def wired(monkeypatch, queues, app_settings):
    ran = []

    async def fake_run(pipeline, payload):
        ran.append(payload)
        if payload.get("explode"):
            raise RuntimeError("pipeline crashed")
        return SimpleNamespace(status="completed")

    monkeypatch.setattr(tasks, "settings", app_settings)
    monkeypatch.setattr(tasks, "get_queues", lambda: queues)
    monkeypatch.setattr(tasks, "_run_pipeline", fake_run)
    return queues.get_queue(QueueNames.DOCUMENT_PROCESSING), ran


class TestRunJob:

    def test_runs_and_releases_key(self, wired):
        queue, ran = wired
        queued = queue.add("processDocument", {"document_id": "doc-1"}, "doc-1")

        result = tasks.run_job(_task(queued.task_id), AssetType.DOCUMENTS, QueueNames.DOCUMENT_PROCESSING,
                               "doc-1", None, {"document_id": "doc-1"})

        assert result == {"status": "completed", "asset_id": "doc-1"}
        assert ran == [{"document_id": "doc-1"}]
        assert queue.is_in_flight("doc-1") is False

    def test_superseded_delivery_does_nothing(self, wired):
        queue, ran = wired
        first = queue.add("processDocument", {"document_id": "doc-1"}, "doc-1")
        queue.add("processDocument", {"document_id": "doc-1"}, "doc-1", force=True)

        result = tasks.run_job(_task(first.task_id), AssetType.DOCUMENTS, QueueNames.DOCUMENT_PROCESSING,
                               "doc-1", None, {"document_id": "doc-1"})

        assert result["status"] == "superseded"
        assert ran == []
        assert queue.is_in_flight("doc-1") is True

    def test_crash_still_releases_key(self, wired):
        queue, _ = wired
        queued = queue.add("processDocument", {"document_id": "doc-1"}, "doc-1")

        with pytest.raises(RuntimeError):
            tasks.run_job(_task(queued.task_id), AssetType.DOCUMENTS, QueueNames.DOCUMENT_PROCESSING,
                          "doc-1", None, {"document_id": "doc-1", "explode": True})

        assert queue.is_in_flight("doc-1") is False


class TestDeadWorker:

    def test_context_setup_failure_marks_stages_failed_and_allows_retry(self, monkeypatch, queues, app_settings,
                                                                         fake_celery):
        def broken_context(settings):
            raise InfrastructureError("minio unreachable")

        monkeypatch.setattr(tasks, "settings", app_settings)
        monkeypatch.setattr(tasks, "get_queues", lambda: queues)
        monkeypatch.setattr(tasks, "worker_context", broken_context)

        async def enqueue(store):
            async with store.session_factory() as s:
                async with s.begin():
                    s.add(Bookmark(id="bm-1", user_id=USER, url="https://example.org/page"))
            return await store.start_processing(AssetType.BOOKMARKS, "bm-1", USER)

        enqueued = _with_store(app_settings.database_url, queues, enqueue)
        payload = fake_celery.sent[0]["args"][0]

        with pytest.raises(InfrastructureError):
            tasks.run_job(_task(enqueued.task_id), AssetType.BOOKMARKS, QueueNames.BOOKMARK_PROCESSING,
                          "bm-1", tasks.process_bookmark, payload)

        job = _with_store(app_settings.database_url, queues, lambda store: store.get_job("bookmarks", "bm-1"))
        assert job.status == "failed"
        assert job.stages == {name: "failed" for name in BOOKMARK_STAGES}
        assert job.error_message == "minio unreachable"
        assert queues.get_queue(QueueNames.BOOKMARK_PROCESSING).is_in_flight("bm-1") is False

        result = _with_store(app_settings.database_url, queues,
                             lambda store: store.retry_asset_processing("bookmarks", "bm-1", USER))
        assert result.success is True
        assert len(fake_celery.sent) == 2
