"""Create asset, variant metadata and transcoding job ledger tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


asset_status = postgresql.ENUM("START", "COMPLETED", "FAILED", name="assetstatus", create_type=False)
job_status = postgresql.ENUM("PENDING", "ACTIVE", "COMPLETED", "FAILED", name="jobstatus", create_type=False)


def upgrade() -> None:
    bind = op.get_bind()

    asset_status.create(bind, checkfirst=True)
    job_status.create(bind, checkfirst=True)

    op.create_table(
        "assets",
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("mime_type", sa.String(length=120), nullable=False),
        sa.Column("storage_path", sa.String(length=512), nullable=False),
        sa.Column("owner_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("status", asset_status, nullable=False, server_default="START"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("storage_path"),
    )
    op.create_index(op.f("ix_assets_owner_id"), "assets", ["owner_id"], unique=False)
    op.create_index(op.f("ix_assets_status"), "assets", ["status"], unique=False)
    op.create_index(
        "uq_assets_owner_filename_start",
        "assets",
        ["owner_id", "filename"],
        unique=True,
        postgresql_where=sa.text("status = 'START'"),
    )

    op.create_table(
        "asset_metadata",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("schema_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.asset_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("asset_id", "key", name="uq_asset_metadata_asset_key"),
    )
    op.create_index(op.f("ix_asset_metadata_asset_id"), "asset_metadata", ["asset_id"], unique=False)

    op.create_table(
        "transcoding_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("asset_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("worker_name", sa.String(length=64), nullable=False),
        sa.Column("status", job_status, nullable=False, server_default="PENDING"),
        sa.Column("event_name", sa.String(length=64), nullable=False, server_default="enqueued"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.asset_id"], ondelete="CASCADE"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index(op.f("ix_transcoding_jobs_asset_id"), "transcoding_jobs", ["asset_id"], unique=False)
    op.create_index(op.f("ix_transcoding_jobs_worker_name"), "transcoding_jobs", ["worker_name"], unique=False)
    op.create_index(op.f("ix_transcoding_jobs_status"), "transcoding_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_transcoding_jobs_status"), table_name="transcoding_jobs")
    op.drop_index(op.f("ix_transcoding_jobs_worker_name"), table_name="transcoding_jobs")
    op.drop_index(op.f("ix_transcoding_jobs_asset_id"), table_name="transcoding_jobs")
    op.drop_table("transcoding_jobs")

    op.drop_index(op.f("ix_asset_metadata_asset_id"), table_name="asset_metadata")
    op.drop_table("asset_metadata")

    op.drop_index("uq_assets_owner_filename_start", table_name="assets")
    op.drop_index(op.f("ix_assets_status"), table_name="assets")
    op.drop_index(op.f("ix_assets_owner_id"), table_name="assets")
    op.drop_table("assets")

    bind = op.get_bind()
    job_status.drop(bind, checkfirst=True)
    asset_status.drop(bind, checkfirst=True)
