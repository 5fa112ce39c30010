"""
End-to-end worker pipeline tests against sqlite, a local blob store, a fake
browser and mocked HTTP.
"""
import httpx
import pytest

from assetflow.errors import FatalExtractionError, InfrastructureError
from assetflow.models import AssetType, Bookmark, BookmarkMetadata, DocumentMetadata
from assetflow.pipeline import process_bookmark, process_document, source_kind_for_url
from assetflow.processing_status import BOOKMARK_STAGES
from assetflow.rendering import PDF_OPTIONS, render_pdf
from conftest import FakePage, FakeRenderer, ai_response

USER = "user-1"
URL = "https://example.org/articles/guide"

PAGE_HTML = """<html lang="fr"><head><title>Le Petit Guide</title>
<meta name="description" content="Une description courte">
<script>document.write('tracker')</script></head>
<body><article><p>Hello world</p>
<p>Ce guide explique comment preparer un jardin potager au printemps, en choisissant les bonnes graines,
en preparant la terre et en arrosant regulierement les jeunes plants pendant toute la saison.</p>
</article></body></html>"""


def network(tags='["jardin", "potager"]', page_html=PAGE_HTML, ai_fails=False):
    def handler(request):
        if request.url.host == "ai.test":
            if ai_fails:
                return ai_response("no idea")
            return ai_response(tags)
        if request.url.path == "/favicon.ico":
            raise httpx.ConnectError("no favicon", request=request)
        return httpx.Response(200, text=page_html, headers={"content-type": "text/html"})

    return handler


async def _payload_for_new_bookmark(asset_service, fake_celery, metadata=None):
    details = await asset_service.create_bookmark(USER, metadata or BookmarkMetadata(url=URL))
    return details, fake_celery.sent[-1]["args"][0]


class TestRenderPdf:

    async def test_waits_then_prints_a4_with_screen_media(self):
        page = FakePage("<html></html>", URL)

        data = await render_pdf(page, settle_ms=3000)

        assert data == b"%PDF-1.4 rendered"
        assert page.calls == ["wait_for_images", ("wait", 3000), "emulate_screen_media", ("render_pdf", PDF_OPTIONS)]
        assert PDF_OPTIONS["format"] == "A4"
        assert PDF_OPTIONS["print_background"] is True
        assert set(PDF_OPTIONS["margin"].values()) == {"0.5in"}


class TestSourceKind:

    @pytest.mark.parametrize("url,kind", [
        ("https://twitter.com/someone/status/1", "twitter"),
        ("https://x.com/someone/status/1", "twitter"),
        ("https://mobile.twitter.com/a", "twitter"),
        ("https://example.org/x.com", "webpage"),
    ])
    def test_source_kind(self, url, kind):
        assert source_kind_for_url(url) == kind


class TestProcessBookmark:

    async def test_happy_path_completes_every_stage(self, make_worker_context, asset_service, blob_store, fake_celery):
        details, payload = await _payload_for_new_bookmark(asset_service, fake_celery)
        ctx = make_worker_context(network(), FakeRenderer(PAGE_HTML))

        snapshot = await process_bookmark(ctx, payload)

        assert snapshot.status == "completed"
        assert snapshot.stages == {name: "completed" for name in BOOKMARK_STAGES}
        bookmark = await asset_service.get_asset("bookmarks", details["id"], USER)
        assert bookmark["title"] == "Le Petit Guide"
        assert bookmark["lang"] == "fr"
        assert bookmark["processing_status"] == "completed"
        assert bookmark["tags"] == ["jardin", "potager"]
        assert bookmark["favicon_storage_id"] is None
        assert bookmark["pdf_storage_id"].endswith("/page.pdf")
        assert blob_store.read(bookmark["pdf_storage_id"]) == b"%PDF-1.4 rendered"
        assert blob_store.read(bookmark["screenshot_storage_id"]) == b"\xff\xd8full"
        assert blob_store.read(bookmark["thumbnail_storage_id"]) == b"\xff\xd8thumb"
        markdown = blob_store.read(bookmark["extracted_md_storage_id"]).decode()
        assert "Hello world" in markdown
        assert "tracker" not in blob_store.read(bookmark["readable_html_storage_id"]).decode()

    async def test_render_failure_falls_back_to_fetch(self, make_worker_context, asset_service, fake_celery):
        details, payload = await _payload_for_new_bookmark(asset_service, fake_celery)
        ctx = make_worker_context(network(), FakeRenderer(fail=True))

        snapshot = await process_bookmark(ctx, payload)

        assert snapshot.stages == {
            "content": "completed", "pdf": "failed", "screenshot": "failed", "tagging": "completed",
        }
        assert snapshot.status == "failed"
        assert "PDF generation failed" in snapshot.error_message
        bookmark = await asset_service.get_asset("bookmarks", details["id"], USER)
        assert bookmark["extracted_md_storage_id"] is not None
        assert bookmark["pdf_storage_id"] is None
        assert bookmark["tags"] == ["jardin", "potager"]

    async def test_pdf_timeout_fails_only_pdf_stage(self, make_worker_context, asset_service, fake_celery):
        _, payload = await _payload_for_new_bookmark(asset_service, fake_celery)
        ctx = make_worker_context(network(), FakeRenderer(PAGE_HTML, fail_pdf=True))

        snapshot = await process_bookmark(ctx, payload)

        assert snapshot.stages["content"] == "completed"
        assert snapshot.stages["pdf"] == "failed"
        assert snapshot.stages["screenshot"] == "completed"
        assert snapshot.stages["tagging"] == "completed"

    async def test_tagging_failure_never_fails_job(self, make_worker_context, asset_service, fake_celery):
        details, payload = await _payload_for_new_bookmark(
            asset_service, fake_celery, BookmarkMetadata(url=URL, tags=["Mine"]))
        ctx = make_worker_context(network(ai_fails=True), FakeRenderer(PAGE_HTML))

        snapshot = await process_bookmark(ctx, payload)

        assert snapshot.status == "completed"
        bookmark = await asset_service.get_asset("bookmarks", details["id"], USER)
        assert bookmark["tags"] == ["mine"]

    async def test_unfetchable_page_fails_all_stages(self, make_worker_context, asset_service, fake_celery):
        _, payload = await _payload_for_new_bookmark(asset_service, fake_celery)

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        ctx = make_worker_context(handler, FakeRenderer(fail=True))

        with pytest.raises(InfrastructureError):
            await process_bookmark(ctx, payload)

        job = await ctx.status.get_job("bookmarks", payload["bookmark_id"])
        assert job.status == "failed"
        assert set(job.stages.values()) == {"failed"}

    async def test_superseded_run_stops_without_writing(self, make_worker_context, asset_service, status_store,
                                                        fake_celery):
        details, payload = await _payload_for_new_bookmark(asset_service, fake_celery)
        await status_store.retry_asset_processing("bookmarks", details["id"], USER, force=True)
        ctx = make_worker_context(network(), FakeRenderer(PAGE_HTML))

        assert await process_bookmark(ctx, payload) is None

        job = await status_store.get_job("bookmarks", details["id"])
        assert job.generation == 2
        assert job.stages == {name: "processing" for name in BOOKMARK_STAGES}
        async with ctx.session_factory() as s:
            bookmark = await s.get(Bookmark, details["id"])
        assert bookmark.extracted_md_storage_id is None


class TestProcessDocument:

    async def test_text_document(self, make_worker_context, asset_service, blob_store, fake_celery):
        details = await asset_service.create_document(
            USER, b"Quarterly numbers went up.\nCosts went down.",
            DocumentMetadata(original_filename="notes.txt"), mime_type="text/plain")
        payload = fake_celery.sent[-1]["args"][0]
        ctx = make_worker_context(network(tags='{"tags": ["finance"]}'))

        snapshot = await process_document(ctx, payload)

        assert snapshot.status == "completed"
        assert snapshot.stages == {"processing": "completed"}
        document = await asset_service.get_asset("documents", details["id"], USER)
        assert document["tags"] == ["finance"]
        assert document["extracted_text"].startswith("Quarterly numbers")
        assert blob_store.read(document["extracted_txt_storage_id"]).decode().endswith("Costs went down.")

    async def test_unsupported_document_is_marked_failed(self, make_worker_context, asset_service, fake_celery):
        details = await asset_service.create_document(
            USER, b"MZ\x90\x00", DocumentMetadata(original_filename="setup.exe"),
            mime_type="application/x-msdownload")
        payload = fake_celery.sent[-1]["args"][0]
        ctx = make_worker_context(network())

        with pytest.raises(FatalExtractionError):
            await process_document(ctx, payload)

        job = await ctx.status.get_job(AssetType.DOCUMENTS, details["id"])
        assert job.status == "failed"
        assert "unsupported document type" in job.error_message
