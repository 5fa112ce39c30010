# assetflow/assets.py
"""
Document and bookmark services.

Creation stores the raw blob first and the row second; if the row cannot be
written the blob is deleted again. Service calls log failures with the asset
and user id and re-raise a caller-safe ServiceError. NotFoundError passes
through unchanged so callers can map it to a 404.
"""
import asyncio
import logging
import mimetypes
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional

from sqlalchemy import delete

from assetflow.errors import NotFoundError, ServiceError
from assetflow.models import (
    ASSET_MODELS,
    ASSET_TAG_JOINS,
    AssetProcessingJob,
    AssetType,
    Bookmark,
    BookmarkMetadata,
    Document,
    DocumentMetadata,
    generate_asset_id,
    utcnow,
)
from assetflow.processing_status import ProcessingStatusStore, RetryResult
from assetflow.storage import BlobStore
from assetflow.tags import get_asset_tags, replace_asset_tags

logger = logging.getLogger(__name__)

# fields a worker may set in the final merged write
ARTIFACT_FIELDS = {
    AssetType.DOCUMENTS: (
        "title", "description", "extracted_text", "extracted_md_storage_id", "extracted_txt_storage_id",
        "pdf_storage_id", "thumbnail_storage_id", "screenshot_storage_id",
    ),
    AssetType.BOOKMARKS: (
        "title", "description", "author", "lang", "extracted_text",
        "raw_html_storage_id", "readable_html_storage_id", "extracted_md_storage_id",
        "extracted_txt_storage_id", "favicon_storage_id", "thumbnail_storage_id",
        "screenshot_storage_id", "pdf_storage_id",
    ),
}

# file kind -> (column, mime type, download name suffix)
ASSET_FILES = {
    "original": ("storage_id", None, None),
    "raw-html": ("raw_html_storage_id", "text/html", "-raw.html"),
    "readable-html": ("readable_html_storage_id", "text/html", "-readable.html"),
    "extracted-md": ("extracted_md_storage_id", "text/markdown", "-extracted.md"),
    "extracted-txt": ("extracted_txt_storage_id", "text/plain", "-extracted.txt"),
    "favicon": ("favicon_storage_id", None, None),
    "thumbnail": ("thumbnail_storage_id", "image/jpeg", "-thumbnail.jpg"),
    "screenshot": ("screenshot_storage_id", "image/jpeg", "-screenshot.jpg"),
    "pdf": ("pdf_storage_id", "application/pdf", ".pdf"),
}


@dataclass
class AssetFile:
    stream: BinaryIO
    content_length: int
    mime_type: str
    filename: str


@contextmanager
def service_errors(message: str, **context):
    try:
        yield
    except (NotFoundError, ServiceError):
        raise
    except Exception as e:
        logger.exception("%s %s", message, context)
        raise ServiceError(message) from e


def _file_extension(filename: str) -> str:
    if "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    return "bin"


class AssetService:
    def __init__(self, session_factory, blob_store: BlobStore, status: ProcessingStatusStore):
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.status = status

    async def _owned(self, session, asset_type: AssetType, asset_id: str, user_id: str):
        asset = await session.get(ASSET_MODELS[asset_type], asset_id)
        if asset is None or asset.user_id != user_id:
            raise NotFoundError(f"{asset_type.value[:-1].capitalize()} not found or access denied")
        return asset

    async def _enqueue(self, asset_type: AssetType, asset_id: str, user_id: str) -> None:
        with service_errors(f"Failed to queue {asset_type.value} processing", asset_id=asset_id, user_id=user_id):
            await self.status.start_processing(asset_type, asset_id, user_id)

    # ---- creation ----

    async def create_document(self, user_id: str, content: bytes, metadata: DocumentMetadata,
                              mime_type: Optional[str] = None) -> Dict[str, Any]:
        document_id = generate_asset_id("doc")
        original_filename = metadata.original_filename or "untitled"
        mime_type = mime_type or mimetypes.guess_type(original_filename)[0] or "application/octet-stream"
        storage_id = None
        try:
            stored = await asyncio.to_thread(
                self.blob_store.save_asset, user_id, AssetType.DOCUMENTS.value, document_id,
                f"original.{_file_extension(original_filename)}", content, mime_type,
            )
            storage_id = stored.storage_id
            async with self.session_factory() as s:
                async with s.begin():
                    s.add(Document(
                        id=document_id,
                        user_id=user_id,
                        title=metadata.title or original_filename,
                        description=metadata.description,
                        original_filename=original_filename,
                        mime_type=mime_type,
                        original_mime_type=mime_type,
                        file_size=len(content),
                        storage_id=storage_id,
                        review_status=metadata.review_status,
                        flag_color=metadata.flag_color,
                        is_pinned=metadata.is_pinned,
                        enabled=metadata.enabled,
                        raw_metadata=metadata.model_dump(mode="json"),
                    ))
                    await s.flush()
                    if metadata.tags:
                        await replace_asset_tags(s, AssetType.DOCUMENTS, document_id, user_id, metadata.tags)
        except Exception as e:
            logger.exception("Error creating document for user %s", user_id)
            if storage_id:
                logger.warning("Cleaning up stored file %s after database error", storage_id)
                try:
                    await asyncio.to_thread(self.blob_store.delete, storage_id)
                except Exception:
                    logger.exception("Document file cleanup failed for %s", storage_id)
            raise ServiceError("Failed to create document") from e

        if metadata.enabled:
            await self._enqueue(AssetType.DOCUMENTS, document_id, user_id)
        else:
            logger.info("Skipped queuing processing for document %s (enabled: false)", document_id)
        return await self.get_asset(AssetType.DOCUMENTS, document_id, user_id)

    async def create_bookmark(self, user_id: str, metadata: BookmarkMetadata) -> Dict[str, Any]:
        bookmark_id = generate_asset_id("bm")
        with service_errors("Failed to create bookmark", user_id=user_id):
            async with self.session_factory() as s:
                async with s.begin():
                    s.add(Bookmark(
                        id=bookmark_id,
                        user_id=user_id,
                        url=metadata.url,
                        title=metadata.title,
                        description=metadata.description,
                        review_status=metadata.review_status,
                        flag_color=metadata.flag_color,
                        is_pinned=metadata.is_pinned,
                        enabled=metadata.enabled,
                        raw_metadata=metadata.model_dump(mode="json"),
                    ))
                    await s.flush()
                    if metadata.tags:
                        await replace_asset_tags(s, AssetType.BOOKMARKS, bookmark_id, user_id, metadata.tags)

        if metadata.enabled:
            await self._enqueue(AssetType.BOOKMARKS, bookmark_id, user_id)
        return await self.get_asset(AssetType.BOOKMARKS, bookmark_id, user_id)

    # ---- reads ----

    async def get_asset(self, asset_type: str, asset_id: str, user_id: str) -> Dict[str, Any]:
        asset_type = AssetType(asset_type)
        with service_errors(f"Failed to fetch {asset_type.value[:-1]}", asset_id=asset_id, user_id=user_id):
            async with self.session_factory() as s:
                asset = await self._owned(s, asset_type, asset_id, user_id)
                tags = await get_asset_tags(s, asset_type, asset_id)
                details = {c.name: getattr(asset, c.name) for c in asset.__table__.columns}
            details["tags"] = tags
            details["processing_status"] = await self.status.get_status(asset_type, asset_id)
            return details

    async def get_asset_file(self, asset_type: str, asset_id: str, user_id: str, kind: str) -> AssetFile:
        asset_type = AssetType(asset_type)
        if kind not in ASSET_FILES:
            raise NotFoundError(f"Unknown asset file kind '{kind}'")
        column, mime_type, suffix = ASSET_FILES[kind]
        async with self.session_factory() as s:
            asset = await self._owned(s, asset_type, asset_id, user_id)
        storage_id = getattr(asset, column, None)
        if not storage_id:
            raise NotFoundError(f"Asset of type '{kind}' not found for this {asset_type.value[:-1]}")

        if kind == "original":
            mime_type = asset.mime_type or "application/octet-stream"
            filename = asset.original_filename or asset.id
        elif kind == "favicon":
            mime_type = mimetypes.guess_type(storage_id)[0] or "image/x-icon"
            filename = f"{asset.id}-{storage_id.rsplit('/', 1)[-1]}"
        else:
            filename = f"{asset.id}{suffix}"

        try:
            blob = await asyncio.to_thread(self.blob_store.get_stream, storage_id)
        except NotFoundError:
            logger.warning("Storage file not found for %s %s, kind %s, storage id %s",
                           asset_type.value, asset_id, kind, storage_id)
            raise NotFoundError("Asset file not found in storage")
        return AssetFile(stream=blob.stream, content_length=blob.content_length, mime_type=mime_type, filename=filename)

    # ---- worker writes ----

    async def update_asset_artifacts(self, asset_type: str, asset_id: str, artifacts: Dict[str, Any],
                                     tags: Optional[List[str]] = None, generation: Optional[int] = None) -> None:
        """
        Single merged write of everything a pipeline run produced.
        Empty values never overwrite existing ones. With `generation`, the write is
        rejected with StaleJobError when a newer run owns the asset.
        `tags` replaces the asset's tag set, keeping the tags given at creation.
        """
        asset_type = AssetType(asset_type)
        allowed = ARTIFACT_FIELDS[asset_type]
        logger.info("Saving final artifacts for %s %s", asset_type.value, asset_id)
        try:
            async with self.session_factory() as s:
                async with s.begin():
                    if generation is not None:
                        await self.status.ensure_current(s, asset_type, asset_id, generation)
                    asset = await s.get(ASSET_MODELS[asset_type], asset_id)
                    if asset is None:
                        raise NotFoundError(f"{asset_type.value} {asset_id} not found")
                    for name, value in artifacts.items():
                        if name in allowed and value:
                            setattr(asset, name, value)
                    asset.updated_at = utcnow()
                    if tags is not None:
                        user_tags = (asset.raw_metadata or {}).get("tags") or []
                        await replace_asset_tags(s, asset_type, asset_id, asset.user_id, list(user_tags) + list(tags))
        except Exception as e:
            logger.error("Database error saving artifacts for %s %s: %s", asset_type.value, asset_id, e)
            raise
        logger.info("Saved all artifacts for %s %s", asset_type.value, asset_id)

    # ---- lifecycle ----

    async def delete_asset(self, asset_type: str, asset_id: str, user_id: str, delete_storage: bool = True) -> None:
        asset_type = AssetType(asset_type)
        with service_errors(f"Failed to delete {asset_type.value[:-1]}", asset_id=asset_id, user_id=user_id):
            model = ASSET_MODELS[asset_type]
            join_model, fk_col = ASSET_TAG_JOINS[asset_type]
            async with self.session_factory() as s:
                async with s.begin():
                    asset = await s.get(model, asset_id)
                    if asset is None or asset.user_id != user_id:
                        logger.warning("%s %s not found for user %s during deletion",
                                       asset_type.value, asset_id, user_id)
                        return
                    await s.execute(delete(join_model).where(fk_col == asset_id))
                    await s.execute(delete(AssetProcessingJob).where(
                        AssetProcessingJob.asset_type == asset_type.value,
                        AssetProcessingJob.asset_id == asset_id,
                    ))
                    await s.execute(delete(model).where(model.id == asset_id, model.user_id == user_id))

        if delete_storage:
            try:
                await asyncio.to_thread(self.blob_store.delete_asset, user_id, asset_type.value, asset_id)
            except Exception as e:
                logger.warning("Row %s deleted, but failed to delete asset folder: %s", asset_id, e)

    async def reprocess_asset(self, asset_type: str, asset_id: str, user_id: str, force: bool = False) -> RetryResult:
        asset_type = AssetType(asset_type)
        with service_errors(f"Failed to reprocess {asset_type.value[:-1]}", asset_id=asset_id, user_id=user_id):
            result = await self.status.retry_asset_processing(asset_type, asset_id, user_id, force=force)
        if result.success:
            logger.info("Queued %s %s for reprocessing (user %s)", asset_type.value, asset_id, user_id)
        else:
            logger.info("Reprocess of %s %s not queued: %s", asset_type.value, asset_id, result.error)
        return result
