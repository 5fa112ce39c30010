"""
Shared fixtures: a throwaway sqlite database per test, a blob store under
tmp_path, and in-memory stand-ins for the redis commands and the Celery
calls the job queue makes.
"""
import os
from contextlib import asynccontextmanager
from types import SimpleNamespace

import httpx
import pytest
from hypothesis import settings as hypothesis_settings

from assetflow.ai_client import AIClient
from assetflow.assets import AssetService
from assetflow.db import close_engine, create_engine, create_session_factory, init_models
from assetflow.errors import InfrastructureError
from assetflow.persistence import AssetPersistence
from assetflow.pipeline import WorkerContext
from assetflow.processing_status import ProcessingStatusStore
from assetflow.queues import build_queue_registry
from assetflow.storage import LocalBlobStore

hypothesis_settings.register_profile("ci", max_examples=100, deadline=None)
hypothesis_settings.register_profile("dev", max_examples=50, deadline=None)
hypothesis_settings.load_profile(os.environ.get("HYPOTHESIS_PROFILE", "dev"))


class FakeRedis:
    """The subset of redis commands JobQueue uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed


class FakeCelery:
    def __init__(self):
        self.sent = []
        self.revoked = []
        self.fail_next_send = False
        self.control = SimpleNamespace(revoke=self.revoked.append)

    def send_task(self, name, args=None, task_id=None, queue=None):
        if self.fail_next_send:
            self.fail_next_send = False
            raise ConnectionError("broker unavailable")
        self.sent.append({"name": name, "args": args, "task_id": task_id, "queue": queue})
        return SimpleNamespace(id=task_id)


class FakePage:
    def __init__(self, html, url, fail_pdf=False, fail_screenshot=False):
        self.html = html
        self.final_url = url
        self.fail_pdf = fail_pdf
        self.fail_screenshot = fail_screenshot
        self.calls = []

    async def content(self):
        return self.html

    async def wait_for_images(self):
        self.calls.append("wait_for_images")

    async def wait(self, ms):
        self.calls.append(("wait", ms))

    async def emulate_screen_media(self):
        self.calls.append("emulate_screen_media")

    async def render_pdf(self, options=None):
        self.calls.append(("render_pdf", options))
        if self.fail_pdf:
            raise InfrastructureError("PDF render timed out")
        return b"%PDF-1.4 rendered"

    async def screenshot(self, full_page=False, quality=80):
        self.calls.append(("screenshot", full_page))
        if self.fail_screenshot:
            raise InfrastructureError("Screenshot timed out")
        return b"\xff\xd8full" if full_page else b"\xff\xd8thumb"


class FakeRenderer:
    def __init__(self, html="", fail=False, **page_kwargs):
        self.html = html
        self.fail = fail
        self.page_kwargs = page_kwargs
        self.opened = []

    @asynccontextmanager
    async def open_page(self, url):
        self.opened.append(url)
        if self.fail:
            raise InfrastructureError(f"Page load timeout: {url}")
        yield FakePage(self.html, url, **self.page_kwargs)

    async def close(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_celery():
    return FakeCelery()


@pytest.fixture
def app_settings(tmp_path):
    return SimpleNamespace(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'assetflow.db'}",
        document_queue="document-processing",
        bookmark_queue="bookmark-processing",
        job_lock_ttl_seconds=300,
        tag_temperature=0.1,
        tag_max_tokens=200,
        ai_timeout_seconds=5.0,
        render_timeout_ms=5000,
        render_settle_ms=0,
        page_fetch_timeout_seconds=5.0,
    )


@pytest.fixture
async def engine(app_settings):
    engine = create_engine(app_settings.database_url)
    await init_models(engine)
    yield engine
    await close_engine(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "blobs"))


@pytest.fixture
def queues(app_settings, fake_celery, fake_redis):
    return build_queue_registry(app_settings, fake_celery, fake_redis)


@pytest.fixture
def status_store(session_factory, queues):
    return ProcessingStatusStore(session_factory, queues)


@pytest.fixture
def asset_service(session_factory, blob_store, status_store):
    return AssetService(session_factory, blob_store, status_store)


def ai_response(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


@pytest.fixture
async def make_worker_context(app_settings, session_factory, blob_store, status_store, asset_service):
    """Build a WorkerContext whose network calls go to `handler` and whose browser is a FakeRenderer."""
    clients = []

    def build(handler, renderer=None):
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(http_client)
        return WorkerContext(
            settings=app_settings,
            session_factory=session_factory,
            blob_store=blob_store,
            persistence=AssetPersistence(blob_store),
            status=status_store,
            assets=asset_service,
            renderer=renderer or FakeRenderer(),
            ai=AIClient("https://ai.test/v1", "token", "test-model", http_client, retries=1, backoff=0),
            http_client=http_client,
        )

    yield build
    for client in clients:
        await client.aclose()
