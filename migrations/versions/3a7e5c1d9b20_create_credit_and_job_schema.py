"""create credit and job schema

Revision ID: 3a7e5c1d9b20
Revises:
Create Date: 2026-10-19 10:00:00

Touched tables:
- user_account, channel, video_idea, job, similar_channel, credit_transaction

Notes:
- job.generator_id is unique across every job kind; agent callbacks resolve by it alone
- user_account.credits is guarded by a non-negative check
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3a7e5c1d9b20"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "user_account",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("credits", sa.Integer(), server_default=sa.text("0"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("credits >= 0", name="ck_user_account_credits_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "channel",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("channel_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("thumbnail_url", sa.Text(), nullable=True),
        sa.Column("subscriber_count", sa.BigInteger(), nullable=True),
        sa.Column("video_count", sa.BigInteger(), nullable=True),
        sa.Column("view_count", sa.BigInteger(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "channel_id", name="uq_channel_user_channel"),
    )

    op.create_table(
        "video_idea",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("channel_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("plan", postgresql.JSONB(), nullable=True),
        sa.Column("seo", postgresql.JSONB(), nullable=True),
        sa.Column("source", sa.Text(), server_default=sa.text("'manual'"), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("source in ('manual', 'agent')", name="ck_video_idea_source"),
        sa.ForeignKeyConstraint(["channel_id"], ["channel.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "job",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("generator_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=True),
        sa.Column("channel_id", sa.Uuid(), nullable=False),
        sa.Column("parent_job_id", sa.Uuid(), nullable=True),
        sa.Column("video_idea_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.Text(), server_default=sa.text("'PROCESSING'"), nullable=False),
        sa.Column("url", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("asset_type", sa.Text(), nullable=True),
        sa.Column("credits_charged", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("result", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("kind in ('asset', 'thumbnail', 'reel', 'reel_asset')", name="ck_job_kind"),
        sa.CheckConstraint("status in ('PROCESSING', 'COMPLETED', 'FAILED')", name="ck_job_status"),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["channel_id"], ["channel.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_job_id"], ["job.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["video_idea_id"], ["video_idea.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_generator_id", "job", ["generator_id"], unique=True)
    op.create_index("ix_job_channel_kind", "job", ["channel_id", "kind"])

    op.create_table(
        "similar_channel",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("owner_channel_id", sa.Text(), nullable=False),
        sa.Column("similar_channel_id", sa.Text(), nullable=False),
        sa.Column("rank", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("relevance_score", sa.Text(), server_default=sa.text("'unknown'"), nullable=False),
        sa.Column("reasoning", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("owner_channel_id", "similar_channel_id", name="uq_similar_channel_owner_similar"),
    )

    op.create_table(
        "credit_transaction",
        sa.Column("id", sa.Uuid(), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("operation", sa.Text(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("status", sa.Text(), server_default=sa.text("'settled'"), nullable=False),
        sa.Column("parent_id", sa.Uuid(), nullable=True),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("kind in ('debit', 'refund', 'grant')", name="ck_credit_transaction_kind"),
        sa.CheckConstraint(
            "status in ('pending', 'settled', 'refunded')",
            name="ck_credit_transaction_status",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["credit_transaction.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["job_id"], ["job.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_credit_transaction_user_created",
        "credit_transaction",
        ["user_id", "created_at"],
    )
    op.create_index(
        "ix_credit_transaction_pending_debit",
        "credit_transaction",
        ["created_at"],
        postgresql_where=sa.text("kind = 'debit' and status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("ix_credit_transaction_pending_debit", table_name="credit_transaction")
    op.drop_index("ix_credit_transaction_user_created", table_name="credit_transaction")
    op.drop_table("credit_transaction")
    op.drop_table("similar_channel")
    op.drop_index("ix_job_channel_kind", table_name="job")
    op.drop_index("ix_job_generator_id", table_name="job")
    op.drop_table("job")
    op.drop_table("video_idea")
    op.drop_table("channel")
    op.drop_table("user_account")
