"""add_gallery_archive_tables

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "202610190900"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE_WHERE = sa.text("status IN ('pending', 'processing')")


def upgrade() -> None:
    op.create_table(
        "galleries",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("owner_email", sa.String(length=255), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("download_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_galleries_owner_id", "galleries", ["owner_id"], unique=False)

    op.create_table(
        "gallery_images",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("gallery_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False),
        sa.Column("original_filename", sa.String(length=512), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["gallery_id"], ["galleries.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_gallery_images_gallery_position",
        "gallery_images",
        ["gallery_id", "position"],
        unique=False,
    )

    op.create_table(
        "gallery_clients",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("gallery_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("notify_on_archive", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
        sa.ForeignKeyConstraint(["gallery_id"], ["galleries.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gallery_id", "email", name="uq_gallery_clients_gallery_email"),
    )
    op.create_index("ix_gallery_clients_gallery_id", "gallery_clients", ["gallery_id"], unique=False)

    op.create_table(
        "gallery_archives",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("gallery_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("storage_path", sa.String(length=1024), nullable=False),
        sa.Column("fingerprint", sa.String(length=128), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("skipped_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("file_size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("checksum", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["gallery_id"], ["galleries.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("gallery_id", "version", name="uq_gallery_archives_gallery_version"),
        sa.CheckConstraint(
            "status in ('pending','processing','completed','failed')",
            name="ck_gallery_archives_status",
        ),
    )
    op.create_index(
        "idx_gallery_archives_gallery_status",
        "gallery_archives",
        ["gallery_id", "status"],
        unique=False,
    )
    op.create_index(
        "uq_gallery_archives_active_gallery",
        "gallery_archives",
        ["gallery_id"],
        unique=True,
        postgresql_where=_ACTIVE_WHERE,
    )

    op.create_table(
        "archive_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("archive_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("gallery_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("run_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("claimed_by", sa.String(length=255), nullable=True),
        sa.Column("deadline", sa.DateTime(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["archive_id"], ["gallery_archives.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["gallery_id"], ["galleries.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("archive_id", name="uq_archive_jobs_archive_id"),
        sa.CheckConstraint(
            "status in ('pending','processing','completed','failed','cancelled')",
            name="ck_archive_jobs_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_archive_jobs_attempts_nonnegative"),
        sa.CheckConstraint("max_attempts >= 1", name="ck_archive_jobs_max_attempts_positive"),
    )
    op.create_index(
        "idx_archive_jobs_claim_order",
        "archive_jobs",
        ["status", "priority", "run_at"],
        unique=False,
    )
    op.create_index(
        "idx_archive_jobs_status_deadline",
        "archive_jobs",
        ["status", "deadline"],
        unique=False,
    )
    op.create_index(
        "uq_archive_jobs_active_gallery",
        "archive_jobs",
        ["gallery_id"],
        unique=True,
        postgresql_where=_ACTIVE_WHERE,
    )

    op.create_table(
        "archive_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False, server_default=sa.text("gen_random_uuid()")),
        sa.Column("archive_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'sending'")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["archive_id"], ["gallery_archives.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("archive_id", "recipient_email", name="uq_archive_notifications_archive_email"),
    )
    op.create_index(
        "ix_archive_notifications_archive_id",
        "archive_notifications",
        ["archive_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_archive_notifications_archive_id", table_name="archive_notifications")
    op.drop_table("archive_notifications")

    op.drop_index("uq_archive_jobs_active_gallery", table_name="archive_jobs")
    op.drop_index("idx_archive_jobs_status_deadline", table_name="archive_jobs")
    op.drop_index("idx_archive_jobs_claim_order", table_name="archive_jobs")
    op.drop_table("archive_jobs")

    op.drop_index("uq_gallery_archives_active_gallery", table_name="gallery_archives")
    op.drop_index("idx_gallery_archives_gallery_status", table_name="gallery_archives")
    op.drop_table("gallery_archives")

    op.drop_index("ix_gallery_clients_gallery_id", table_name="gallery_clients")
    op.drop_table("gallery_clients")

    op.drop_index("idx_gallery_images_gallery_position", table_name="gallery_images")
    op.drop_table("gallery_images")

    op.drop_index("ix_galleries_owner_id", table_name="galleries")
    op.drop_table("galleries")
