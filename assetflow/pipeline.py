# assetflow/pipeline.py
"""
Worker-side pipelines.

Documents run one stage ("processing"): read the upload, extract text,
persist markdown/text, tag. Bookmarks run "content", "pdf", "screenshot"
and "tagging" in that order. Every stage write carries the job's generation;
a run that has been superseded by a forced retry stops at its next write.

Artifacts land in the asset row through one merged write at the end, just
before the last stage completes, so a completed status always comes with
its storage keys.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlparse

import httpx

from assetflow.ai_client import AIClient
from assetflow.assets import AssetService
from assetflow.db import close_engine, create_engine, create_session_factory
from assetflow.errors import InfrastructureError, NotFoundError, StaleJobError, StepOutcome, best_effort
from assetflow.extraction import extract, extract_document_text
from assetflow.metrics import degraded_steps_total, pipeline_runs_total
from assetflow.models import AssetType, BookmarkJobPayload, DocumentJobPayload
from assetflow.persistence import (
    PDF_FILE,
    SCREENSHOT_FILE,
    THUMBNAIL_FILE,
    AssetNamespace,
    AssetPersistence,
)
from assetflow.processing_status import JobSnapshot, ProcessingStatusStore, StageStatus
from assetflow.rendering import BrowserRenderer, Screenshots, capture_screenshots, render_pdf
from assetflow.storage import BlobStore, build_blob_store
from assetflow.tagging import generate_tags

logger = logging.getLogger(__name__)

TWITTER_HOSTS = ("twitter.com", "x.com")


@dataclass
class WorkerContext:
    settings: Any
    session_factory: Any
    blob_store: BlobStore
    persistence: AssetPersistence
    status: ProcessingStatusStore
    assets: AssetService
    renderer: BrowserRenderer
    ai: AIClient
    http_client: httpx.AsyncClient


@asynccontextmanager
async def worker_context(settings):
    engine = create_engine(settings.database_url, null_pool=True)
    session_factory = create_session_factory(engine)
    blob_store = build_blob_store(settings)
    status = ProcessingStatusStore(session_factory)
    http_client = httpx.AsyncClient(
        timeout=settings.favicon_timeout_seconds,
        headers={"User-Agent": settings.user_agent},
    )
    renderer = BrowserRenderer(
        headless=settings.browser_headless,
        user_agent=settings.user_agent,
        timeout_ms=settings.render_timeout_ms,
    )
    ctx = WorkerContext(
        settings=settings,
        session_factory=session_factory,
        blob_store=blob_store,
        persistence=AssetPersistence(blob_store),
        status=status,
        assets=AssetService(session_factory, blob_store, status),
        renderer=renderer,
        ai=AIClient(settings.ai_base_url, settings.ai_token, settings.ai_model, http_client),
        http_client=http_client,
    )
    try:
        yield ctx
    finally:
        await renderer.close()
        await http_client.aclose()
        await close_engine(engine)


def source_kind_for_url(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    if any(host == h or host.endswith("." + h) for h in TWITTER_HOSTS):
        return "twitter"
    return "webpage"


async def _tags(ctx: WorkerContext, text: str, title: str, source_kind: str):
    s = ctx.settings
    return await generate_tags(
        ctx.ai, text, title, source_kind,
        temperature=s.tag_temperature, max_tokens=s.tag_max_tokens, timeout_seconds=s.ai_timeout_seconds,
    )


async def run_guarded(ctx: WorkerContext, asset_type: AssetType, asset_id: str, generation: int,
                      run: Callable[[], Awaitable[JobSnapshot]]) -> Optional[JobSnapshot]:
    """
    Run a pipeline so that it never ends with stages left in processing.
    Uncaught errors fail the unfinished stages and are re-raised. A run that was
    superseded, or whose asset was deleted meanwhile, stops without writing.
    """
    try:
        snapshot = await run()
    except StaleJobError as e:
        logger.warning("Stopping superseded %s job %s: %s", asset_type.value, asset_id, e)
        pipeline_runs_total.labels(asset_type.value, "superseded").inc()
        return None
    except Exception as e:
        logger.exception("%s pipeline failed for %s", asset_type.value, asset_id)
        try:
            await ctx.status.fail_remaining(asset_type, asset_id, str(e)[:500] or type(e).__name__, generation)
        except (StaleJobError, NotFoundError) as inner:
            logger.warning("Not recording failure for %s %s: %s", asset_type.value, asset_id, inner)
            return None
        except Exception:
            logger.exception("Failed to record failure status for %s %s", asset_type.value, asset_id)
        pipeline_runs_total.labels(asset_type.value, "failed").inc()
        raise
    pipeline_runs_total.labels(asset_type.value, snapshot.status).inc()
    return snapshot


# ---- documents ----

async def process_document(ctx: WorkerContext,
                           payload: Union[DocumentJobPayload, Dict[str, Any]]) -> Optional[JobSnapshot]:
    p = DocumentJobPayload.model_validate(payload)
    asset_type = AssetType.DOCUMENTS

    async def run() -> JobSnapshot:
        ns = AssetNamespace(p.user_id, asset_type.value, p.document_id)
        logger.info("Processing document %s for user %s (%s)", p.document_id, p.user_id, p.mime_type)
        await ctx.status.advance_stage(asset_type, p.document_id, "processing", StageStatus.PROCESSING,
                                       generation=p.generation)
        data = await asyncio.to_thread(ctx.blob_store.read, p.storage_id)
        doc = await asyncio.to_thread(extract_document_text, data, p.mime_type)
        keys = await ctx.persistence.persist_document_text(ns, doc)
        tags = await _tags(ctx, doc.text, doc.title or p.original_filename or "", "document")
        await ctx.assets.update_asset_artifacts(
            asset_type, p.document_id,
            dict(keys.as_dict(), extracted_text=doc.text),
            tags=tags,
            generation=p.generation,
        )
        snapshot = await ctx.status.advance_stage(asset_type, p.document_id, "processing",
                                                  StageStatus.COMPLETED, generation=p.generation)
        logger.info("Document %s processed: %d pages, %d tags", p.document_id, doc.pages, len(tags))
        return snapshot

    return await run_guarded(ctx, asset_type, p.document_id, p.generation, run)


# ---- bookmarks ----

@dataclass
class PageCapture:
    url: str
    final_url: str
    html: Optional[str] = None
    pdf: StepOutcome = field(default_factory=lambda: StepOutcome(None))
    screenshots: StepOutcome = field(default_factory=lambda: StepOutcome(None))


async def fetch_html(http_client: httpx.AsyncClient, url: str, timeout: float) -> str:
    try:
        resp = await http_client.get(url, timeout=timeout, follow_redirects=True)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        raise InfrastructureError(f"could not fetch {url}: {e}") from e
    return resp.text


async def capture_page(ctx: WorkerContext, url: str, log_context: Dict[str, Any]) -> PageCapture:
    """
    Render `url` and take the HTML, a PDF and screenshots from the same page.
    If the browser cannot render the page the HTML comes from a plain fetch and
    the PDF and screenshots are recorded as failed.
    """
    capture = PageCapture(url=url, final_url=url)
    budget = ctx.settings.render_timeout_ms / 1000
    try:
        async with ctx.renderer.open_page(url) as page:
            capture.html = await page.content()
            capture.final_url = page.final_url or url
            capture.pdf = await best_effort(
                "pdf",
                lambda: asyncio.wait_for(render_pdf(page, ctx.settings.render_settle_ms), timeout=budget),
                None,
                log_context,
            )
            capture.screenshots = await best_effort(
                "screenshot",
                lambda: asyncio.wait_for(capture_screenshots(page), timeout=budget),
                None,
                log_context,
            )
    except Exception as e:
        logger.warning("Render failed for %s, falling back to a plain fetch: %s", url, e)
        failure = InfrastructureError(f"render failed: {e}")
        if capture.pdf.value is None:
            capture.pdf = StepOutcome(None, failure)
        if capture.screenshots.value is None:
            capture.screenshots = StepOutcome(None, failure)
    if capture.html is None:
        capture.html = await fetch_html(ctx.http_client, url, ctx.settings.page_fetch_timeout_seconds)
    return capture


async def process_bookmark(ctx: WorkerContext,
                           payload: Union[BookmarkJobPayload, Dict[str, Any]]) -> Optional[JobSnapshot]:
    p = BookmarkJobPayload.model_validate(payload)
    asset_type = AssetType.BOOKMARKS
    log_context = {"bookmark_id": p.bookmark_id, "user_id": p.user_id}

    async def advance(stage: str, outcome: StageStatus, detail: Optional[str] = None) -> JobSnapshot:
        return await ctx.status.advance_stage(asset_type, p.bookmark_id, stage, outcome, detail,
                                              generation=p.generation)

    async def run() -> JobSnapshot:
        ns = AssetNamespace(p.user_id, asset_type.value, p.bookmark_id)
        logger.info("Processing bookmark %s for user %s: %s", p.bookmark_id, p.user_id, p.url)

        await advance("content", StageStatus.PROCESSING)
        capture = await capture_page(ctx, p.url, log_context)
        result = await extract(capture.html, capture.final_url, http_client=ctx.http_client, log_context=log_context)
        if result.favicon_error is not None:
            degraded_steps_total.labels("favicon").inc()
        keys = await ctx.persistence.persist_extraction(ns, capture.html, result)
        artifacts = dict(
            keys.as_dict(),
            title=result.title,
            description=result.description,
            author=result.author,
            lang=result.lang,
            extracted_text=result.text,
        )
        await advance("content", StageStatus.COMPLETED)

        await advance("pdf", StageStatus.PROCESSING)
        if capture.pdf.ok and capture.pdf.value:
            artifacts["pdf_storage_id"] = await ctx.persistence.save_binary(
                ns, PDF_FILE, capture.pdf.value, "application/pdf")
            await advance("pdf", StageStatus.COMPLETED)
        else:
            degraded_steps_total.labels("pdf").inc()
            await advance("pdf", StageStatus.FAILED, f"PDF generation failed: {capture.pdf.error}")

        await advance("screenshot", StageStatus.PROCESSING)
        shots: Optional[Screenshots] = capture.screenshots.value
        if capture.screenshots.ok and shots is not None:
            artifacts["screenshot_storage_id"] = await ctx.persistence.save_binary(
                ns, SCREENSHOT_FILE, shots.screenshot, "image/jpeg")
            artifacts["thumbnail_storage_id"] = await ctx.persistence.save_binary(
                ns, THUMBNAIL_FILE, shots.thumbnail, "image/jpeg")
            await advance("screenshot", StageStatus.COMPLETED)
        else:
            degraded_steps_total.labels("screenshot").inc()
            await advance("screenshot", StageStatus.FAILED, f"Screenshot failed: {capture.screenshots.error}")

        await advance("tagging", StageStatus.PROCESSING)
        tags = await _tags(ctx, result.text, result.title, source_kind_for_url(p.url))
        await ctx.assets.update_asset_artifacts(asset_type, p.bookmark_id, artifacts, tags=tags,
                                                generation=p.generation)
        snapshot = await advance("tagging", StageStatus.COMPLETED)
        logger.info("Bookmark %s processed with status %s (%d tags)", p.bookmark_id, snapshot.status, len(tags))
        return snapshot

    return await run_guarded(ctx, asset_type, p.bookmark_id, p.generation, run)
