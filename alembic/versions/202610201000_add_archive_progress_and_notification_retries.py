"""add_archive_progress_and_notification_retries

Revision ID: 202610201000
Revises: 202610190900
Create Date: 2026-10-20 10:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "202610201000"
down_revision: Union[str, None] = "202610190900"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("archive_jobs", sa.Column("progress_phase", sa.String(length=20), nullable=True))
    op.add_column(
        "archive_jobs",
        sa.Column("progress_current", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.add_column(
        "archive_jobs",
        sa.Column("progress_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )
    op.add_column("archive_jobs", sa.Column("progress_updated_at", sa.DateTime(), nullable=True))

    op.add_column(
        "archive_notifications",
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("1")),
    )
    op.add_column("archive_notifications", sa.Column("last_attempt_at", sa.DateTime(), nullable=True))
    op.execute("UPDATE archive_notifications SET last_attempt_at = COALESCE(sent_at, created_at)")
    op.create_index(
        "idx_archive_notifications_status_attempt",
        "archive_notifications",
        ["status", "last_attempt_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_archive_notifications_status_attempt", table_name="archive_notifications")
    op.drop_column("archive_notifications", "last_attempt_at")
    op.drop_column("archive_notifications", "attempts")

    op.drop_column("archive_jobs", "progress_updated_at")
    op.drop_column("archive_jobs", "progress_total")
    op.drop_column("archive_jobs", "progress_current")
    op.drop_column("archive_jobs", "progress_phase")
