"""
Tests for the job queue: dedup by job id, forced replacement and the
ownership handshake workers perform before and after running.
"""
import json

import pytest

from assetflow.errors import InfrastructureError
from assetflow.queues import JOB_TASKS, JobQueue, QueueNames, QueueRegistry


@pytest.fixture
def queue(fake_celery, fake_redis):
    return JobQueue(QueueNames.DOCUMENT_PROCESSING, fake_celery, fake_redis, lock_ttl_seconds=120)


PAYLOAD = {"document_id": "doc-1", "storage_id": "u/documents/doc-1/original.pdf",
           "mime_type": "application/pdf", "user_id": "u", "generation": 1}


class TestEnqueue:

    def test_first_enqueue_sends_task(self, queue, fake_celery, fake_redis):
        result = queue.add("processDocument", PAYLOAD, "doc-1")

        assert result.enqueued is True
        assert len(fake_celery.sent) == 1
        sent = fake_celery.sent[0]
        assert sent["name"] == JOB_TASKS["processDocument"]
        assert sent["queue"] == QueueNames.DOCUMENT_PROCESSING
        assert sent["args"] == [PAYLOAD]
        assert sent["task_id"] == result.task_id
        assert result.task_id.startswith("doc-1:")
        assert queue.is_in_flight("doc-1")
        assert list(fake_redis.ttls.values()) == [120]

    def test_duplicate_enqueue_without_force_is_noop(self, queue, fake_celery):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        second = queue.add("processDocument", PAYLOAD, "doc-1")

        assert second.enqueued is False
        assert second.task_id == first.task_id
        assert len(fake_celery.sent) == 1

    def test_force_replaces_waiting_job(self, queue, fake_celery):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        second = queue.add("processDocument", PAYLOAD, "doc-1", force=True)

        assert second.enqueued is True
        assert second.replaced is True
        assert second.task_id != first.task_id
        assert fake_celery.revoked == [first.task_id]
        assert len(fake_celery.sent) == 2
        # the old task no longer owns the job
        assert queue.mark_active("doc-1", first.task_id) is False
        assert queue.mark_active("doc-1", second.task_id) is True

    def test_force_does_not_revoke_running_job(self, queue, fake_celery):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        assert queue.mark_active("doc-1", first.task_id)

        queue.add("processDocument", PAYLOAD, "doc-1", force=True)

        assert fake_celery.revoked == []

    def test_distinct_job_ids_do_not_collide(self, queue, fake_celery):
        queue.add("processDocument", PAYLOAD, "doc-1")
        queue.add("processDocument", dict(PAYLOAD, document_id="doc-2"), "doc-2")
        assert len(fake_celery.sent) == 2

    def test_unknown_job_name(self, queue):
        with pytest.raises(InfrastructureError):
            queue.add("processSomethingElse", PAYLOAD, "doc-1")

    def test_publish_failure_releases_key(self, queue, fake_celery):
        fake_celery.fail_next_send = True
        with pytest.raises(InfrastructureError):
            queue.add("processDocument", PAYLOAD, "doc-1")

        assert not queue.is_in_flight("doc-1")
        assert queue.add("processDocument", PAYLOAD, "doc-1").enqueued is True


class TestWorkerHandshake:

    def test_release_only_by_owner(self, queue):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        queue.release("doc-1", "doc-1:someoneelse")
        assert queue.is_in_flight("doc-1")

        queue.release("doc-1", first.task_id)
        assert not queue.is_in_flight("doc-1")

    def test_mark_active_records_state(self, queue, fake_redis):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        assert queue.mark_active("doc-1", first.task_id)

        entry = json.loads(next(iter(fake_redis.data.values())))
        assert entry["state"] == "active"
        assert entry["task_id"] == first.task_id

    def test_mark_active_after_expiry_reclaims(self, queue, fake_redis):
        first = queue.add("processDocument", PAYLOAD, "doc-1")
        fake_redis.data.clear()
        assert queue.mark_active("doc-1", first.task_id) is True

    def test_corrupt_entry_is_ignored(self, queue, fake_redis):
        fake_redis.data["assetflow:queue:document-processing:job:doc-1"] = "{not json"
        assert not queue.is_in_flight("doc-1")


class TestRegistry:

    def test_missing_queue_is_an_error(self):
        registry = QueueRegistry()
        with pytest.raises(InfrastructureError):
            registry.get_queue("nope")

    def test_build_registers_both_queues(self, queues):
        assert queues.get_queue(QueueNames.DOCUMENT_PROCESSING).name == QueueNames.DOCUMENT_PROCESSING
        assert queues.get_queue(QueueNames.BOOKMARK_PROCESSING).celery_queue == "bookmark-processing"
