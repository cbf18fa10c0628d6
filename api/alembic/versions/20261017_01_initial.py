"""Initial schema: files, idempotency records, quota counters."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "20261017_01_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "files",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("storage_path", sa.String(length=512), nullable=False),
        sa.Column("media_type", sa.String(length=128), nullable=True),
        sa.Column("size", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("original_name", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("reference_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("reference_count >= 0", name="ck_files_reference_count"),
        # Dedup backstop; must exist from the start
        sa.UniqueConstraint("content_hash", name="uq_files_content_hash"),
        sa.UniqueConstraint("storage_path", name="uq_files_storage_path"),
    )
    op.create_index("idx_files_user_id", "files", ["user_id"])

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("scope", sa.String(length=255), nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column(
            "state",
            sa.Enum("in_progress", "completed", name="idempotency_state"),
            nullable=False,
            server_default=sa.text("'in_progress'"),
        ),
        sa.Column("reservation_token", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("fingerprint", sa.String(length=64), nullable=True),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", JSON, nullable=True),
        sa.Column("response_headers", JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )
    op.create_index("idx_idempotency_expires", "idempotency_records", ["expires_at"])

    op.create_table(
        "quota_counters",
        sa.Column("user_id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("dimension", sa.String(length=64), primary_key=True),
        sa.Column("window_key", sa.String(length=64), primary_key=True),
        sa.Column("window_name", sa.String(length=64), nullable=False),
        sa.Column("consumed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("limit", sa.Integer(), nullable=False),
        sa.Column("window_ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("consumed >= 0", name="ck_quota_consumed"),
    )
    op.create_index("idx_quota_window_ends", "quota_counters", ["window_ends_at"])


def downgrade() -> None:
    op.drop_index("idx_quota_window_ends", table_name="quota_counters")
    op.drop_table("quota_counters")
    op.drop_index("idx_idempotency_expires", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    sa.Enum(name="idempotency_state").drop(op.get_bind(), checkfirst=True)
    op.drop_index("idx_files_user_id", table_name="files")
    op.drop_table("files")
