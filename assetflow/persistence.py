# assetflow/persistence.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from assetflow.errors import InfrastructureError
from assetflow.extraction import DocumentText, ExtractionResult
from assetflow.storage import BlobStore

logger = logging.getLogger(__name__)

RAW_HTML_FILE = "content-raw.html"
READABLE_HTML_FILE = "content-readable.html"
MARKDOWN_FILE = "extracted.md"
TEXT_FILE = "extracted.txt"
PDF_FILE = "page.pdf"
SCREENSHOT_FILE = "screenshot.jpg"
THUMBNAIL_FILE = "thumbnail.jpg"


@dataclass(frozen=True)
class AssetNamespace:
    user_id: str
    asset_type: str
    asset_id: str


@dataclass
class ArtifactKeys:
    raw_html_storage_id: Optional[str] = None
    readable_html_storage_id: Optional[str] = None
    extracted_md_storage_id: Optional[str] = None
    extracted_txt_storage_id: Optional[str] = None
    favicon_storage_id: Optional[str] = None

    def as_dict(self) -> Dict[str, str]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


class AssetPersistence:
    """
    Writes extraction outputs and binary derivatives under a per-asset namespace.
    Writes are independent: a failed write does not roll back the others,
    and a retry overwrites because keys are deterministic per file name.
    """

    def __init__(self, blob_store: BlobStore):
        self.blob_store = blob_store

    async def save_binary(self, ns: AssetNamespace, file_name: str, data: bytes, content_type: str) -> str:
        try:
            stored = await asyncio.to_thread(
                self.blob_store.save_asset,
                ns.user_id, ns.asset_type, ns.asset_id, file_name, data, content_type,
            )
        except InfrastructureError:
            raise
        except Exception as e:
            logger.exception("Failed to store %s for %s/%s", file_name, ns.asset_type, ns.asset_id)
            raise InfrastructureError(f"failed to store {file_name}: {e}") from e
        return stored.storage_id

    async def _save_all(self, ns: AssetNamespace, writes: List[Tuple[str, str, bytes, str]]) -> Dict[str, str]:
        results = await asyncio.gather(
            *(self.save_binary(ns, file_name, data, ct) for _, file_name, data, ct in writes),
            return_exceptions=True,
        )
        keys: Dict[str, str] = {}
        failures = []
        for (field_name, file_name, _, _), result in zip(writes, results):
            if isinstance(result, BaseException):
                failures.append((file_name, result))
            else:
                keys[field_name] = result
        if failures:
            names = ", ".join(name for name, _ in failures)
            raise InfrastructureError(f"failed to persist artifacts: {names}") from failures[0][1]
        return keys

    async def persist_extraction(self, ns: AssetNamespace, raw_html: str, result: ExtractionResult) -> ArtifactKeys:
        writes = [
            ("raw_html_storage_id", RAW_HTML_FILE, raw_html.encode("utf-8"), "text/html"),
            ("readable_html_storage_id", READABLE_HTML_FILE, result.readable_html.encode("utf-8"), "text/html"),
            ("extracted_md_storage_id", MARKDOWN_FILE, result.markdown.encode("utf-8"), "text/markdown"),
            ("extracted_txt_storage_id", TEXT_FILE, result.text.encode("utf-8"), "text/plain"),
        ]
        if result.favicon is not None:
            writes.append((
                "favicon_storage_id", result.favicon.file_name, result.favicon.data, result.favicon.content_type,
            ))
        keys = await self._save_all(ns, writes)
        logger.debug("Persisted %d artifacts for %s/%s", len(keys), ns.asset_type, ns.asset_id)
        return ArtifactKeys(**keys)

    async def persist_document_text(self, ns: AssetNamespace, doc: DocumentText) -> ArtifactKeys:
        keys = await self._save_all(ns, [
            ("extracted_md_storage_id", MARKDOWN_FILE, doc.markdown.encode("utf-8"), "text/markdown"),
            ("extracted_txt_storage_id", TEXT_FILE, doc.text.encode("utf-8"), "text/plain"),
        ])
        return ArtifactKeys(**keys)
