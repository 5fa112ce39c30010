"""initial asset tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""
import sqlalchemy as sa
from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _common_asset_columns():
    return [
        sa.Column("extracted_md_storage_id", sa.String(), nullable=True),
        sa.Column("extracted_txt_storage_id", sa.String(), nullable=True),
        sa.Column("pdf_storage_id", sa.String(), nullable=True),
        sa.Column("thumbnail_storage_id", sa.String(), nullable=True),
        sa.Column("screenshot_storage_id", sa.String(), nullable=True),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("review_status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("flag_color", sa.String(), nullable=True),
        sa.Column("is_pinned", sa.Boolean(), server_default=sa.false()),
        sa.Column("enabled", sa.Boolean(), server_default=sa.true()),
        sa.Column("raw_metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
    ]


def upgrade():
    op.create_table(
        "documents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("due_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("original_filename", sa.String(), nullable=True),
        sa.Column("mime_type", sa.String(), nullable=True),
        sa.Column("original_mime_type", sa.String(), nullable=True),
        sa.Column("file_size", sa.Integer(), server_default="0"),
        sa.Column("storage_id", sa.String(), nullable=True),
        *_common_asset_columns(),
    )
    op.create_index("ix_documents_user_id", "documents", ["user_id"])

    op.create_table(
        "bookmarks",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("author", sa.String(), nullable=True),
        sa.Column("lang", sa.String(), nullable=True),
        sa.Column("due_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("raw_html_storage_id", sa.String(), nullable=True),
        sa.Column("readable_html_storage_id", sa.String(), nullable=True),
        sa.Column("favicon_storage_id", sa.String(), nullable=True),
        *_common_asset_columns(),
    )
    op.create_index("ix_bookmarks_user_id", "bookmarks", ["user_id"])

    op.create_table(
        "asset_processing_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("asset_type", sa.String(), nullable=False),
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="processing"),
        sa.Column("stages", sa.JSON(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generation", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("updated_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("asset_type", "asset_id", name="uq_processing_job_asset"),
    )

    op.create_table(
        "tags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )

    op.create_table(
        "documents_tags",
        sa.Column("document_id", sa.String(), sa.ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "bookmarks_tags",
        sa.Column("bookmark_id", sa.String(), sa.ForeignKey("bookmarks.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    )


def downgrade():
    op.drop_table("bookmarks_tags")
    op.drop_table("documents_tags")
    op.drop_table("tags")
    op.drop_table("asset_processing_jobs")
    op.drop_index("ix_bookmarks_user_id", table_name="bookmarks")
    op.drop_table("bookmarks")
    op.drop_index("ix_documents_user_id", table_name="documents")
    op.drop_table("documents")
