# assetflow/models.py
import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import (
    JSON,
    TIMESTAMP,
    Boolean,
    Column,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetType(str, enum.Enum):
    DOCUMENTS = "documents"
    BOOKMARKS = "bookmarks"


def generate_asset_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


class Document(Base):
    __tablename__ = "documents"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    due_date = Column(TIMESTAMP(timezone=True), nullable=True)
    original_filename = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    original_mime_type = Column(String, nullable=True)
    file_size = Column(Integer, default=0)
    # storage keys, null until the artifact exists
    storage_id = Column(String, nullable=True)
    extracted_md_storage_id = Column(String, nullable=True)
    extracted_txt_storage_id = Column(String, nullable=True)
    pdf_storage_id = Column(String, nullable=True)
    thumbnail_storage_id = Column(String, nullable=True)
    screenshot_storage_id = Column(String, nullable=True)
    extracted_text = Column(Text, nullable=True)
    review_status = Column(String, nullable=False, default="pending")
    flag_color = Column(String, nullable=True)
    is_pinned = Column(Boolean, default=False)
    enabled = Column(Boolean, default=True)
    raw_metadata = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)


class Bookmark(Base):
    __tablename__ = "bookmarks"
    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    url = Column(Text, nullable=False)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    author = Column(String, nullable=True)
    lang = Column(String, nullable=True)
    due_date = Column(TIMESTAMP(timezone=True), nullable=True)
    raw_html_storage_id = Column(String, nullable=True)
    readable_html_storage_id = Column(String, nullable=True)
    extracted_md_storage_id = Column(String, nullable=True)
    extracted_txt_storage_id = Column(String, nullable=True)
    favicon_storage_id = Column(String, nullable=True)
    thumbnail_storage_id = Column(String, nullable=True)
    screenshot_storage_id = Column(String, nullable=True)
    pdf_storage_id = Column(String, nullable=True)
    extracted_text = Column(Text, nullable=True)
    review_status = Column(String, nullable=False, default="pending")
    flag_color = Column(String, nullable=True)
    is_pinned = Column(Boolean, default=False)
    enabled = Column(Boolean, default=True)
    raw_metadata = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)


class AssetProcessingJob(Base):
    __tablename__ = "asset_processing_jobs"
    __table_args__ = (UniqueConstraint("asset_type", "asset_id", name="uq_processing_job_asset"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_type = Column(String, nullable=False)
    asset_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False)
    status = Column(String, nullable=False, default="processing")
    stages = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    # fencing token: bumped on every (re)queue, stale workers are rejected
    generation = Column(Integer, nullable=False, default=1)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tags_user_name"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    name = Column(String, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)


class DocumentTag(Base):
    __tablename__ = "documents_tags"
    document_id = Column(String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


class BookmarkTag(Base):
    __tablename__ = "bookmarks_tags"
    bookmark_id = Column(String, ForeignKey("bookmarks.id", ondelete="CASCADE"), primary_key=True)
    tag_id = Column(Integer, ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True)


ASSET_MODELS = {
    AssetType.DOCUMENTS: Document,
    AssetType.BOOKMARKS: Bookmark,
}

ASSET_TAG_JOINS = {
    AssetType.DOCUMENTS: (DocumentTag, DocumentTag.document_id),
    AssetType.BOOKMARKS: (BookmarkTag, BookmarkTag.bookmark_id),
}


# ---- typed metadata envelopes and job payloads ----

class AssetMetadata(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    enabled: bool = True
    review_status: str = "pending"
    flag_color: Optional[str] = None
    is_pinned: bool = False
    # forward-compatible fields the closed set does not know about yet
    extra: Dict[str, Any] = Field(default_factory=dict)


class DocumentMetadata(AssetMetadata):
    original_filename: Optional[str] = None


class BookmarkMetadata(AssetMetadata):
    url: str


class DocumentJobPayload(BaseModel):
    document_id: str
    storage_id: str
    mime_type: str
    user_id: str
    original_filename: Optional[str] = None
    generation: int = 1


class BookmarkJobPayload(BaseModel):
    bookmark_id: str
    url: str
    user_id: str
    generation: int = 1
