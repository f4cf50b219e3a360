from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base

JOB_KINDS = ("asset", "thumbnail", "reel", "reel_asset")
JOB_STATUSES = ("PROCESSING", "COMPLETED", "FAILED")
TERMINAL_JOB_STATUSES = ("COMPLETED", "FAILED")

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UserAccount(Base):
    __tablename__ = "user_account"

    # Identity id issued by the auth provider.
    id: Mapped[str] = mapped_column(Text, primary_key=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    channels: Mapped[list["Channel"]] = relationship(back_populates="user")

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_user_account_credits_non_negative"),
    )


class Channel(Base):
    __tablename__ = "channel"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    channel_id: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("user_account.id", ondelete="CASCADE"),
    )
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    subscriber_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    video_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    view_count: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    user: Mapped["UserAccount"] = relationship(back_populates="channels")
    jobs: Mapped[list["Job"]] = relationship(back_populates="channel")
    ideas: Mapped[list["VideoIdea"]] = relationship(back_populates="channel")

    __table_args__ = (
        UniqueConstraint("user_id", "channel_id", name="uq_channel_user_channel"),
    )


class VideoIdea(Base):
    __tablename__ = "video_idea"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    channel_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("channel.id", ondelete="CASCADE"),
    )
    title: Mapped[str] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[dict | list | None] = mapped_column(_JSON, nullable=True)
    seo: Mapped[dict | list | None] = mapped_column(_JSON, nullable=True)
    source: Mapped[str] = mapped_column(Text, default="manual")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    channel: Mapped["Channel"] = relationship(back_populates="ideas")

    __table_args__ = (
        CheckConstraint("source in ('manual', 'agent')", name="ck_video_idea_source"),
    )


class Job(Base):
    """One unit of agent work (or a locally completed asset), correlated by generator_id."""

    __tablename__ = "job"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(Text)
    generator_id: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(
        Text,
        ForeignKey("user_account.id", ondelete="SET NULL"),
        nullable=True,
    )
    channel_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("channel.id", ondelete="CASCADE"),
    )
    parent_job_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("job.id", ondelete="CASCADE"),
        nullable=True,
    )
    video_idea_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("video_idea.id", ondelete="SET NULL"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(Text, default="PROCESSING")
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    asset_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    credits_charged: Mapped[int] = mapped_column(Integer, default=0)
    result: Mapped[dict | None] = mapped_column(_JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    channel: Mapped["Channel"] = relationship(back_populates="jobs")
    children: Mapped[list["Job"]] = relationship(
        back_populates="parent",
        order_by="Job.created_at",
    )
    parent: Mapped["Job | None"] = relationship(back_populates="children", remote_side=[id])

    __table_args__ = (
        Index("ix_job_generator_id", "generator_id", unique=True),
        Index("ix_job_channel_kind", "channel_id", "kind"),
        CheckConstraint(
            "kind in ('asset', 'thumbnail', 'reel', 'reel_asset')",
            name="ck_job_kind",
        ),
        CheckConstraint(
            "status in ('PROCESSING', 'COMPLETED', 'FAILED')",
            name="ck_job_status",
        ),
    )


class SimilarChannel(Base):
    __tablename__ = "similar_channel"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    owner_channel_id: Mapped[str] = mapped_column(Text)
    similar_channel_id: Mapped[str] = mapped_column(Text)
    rank: Mapped[int] = mapped_column(Integer, default=0)
    relevance_score: Mapped[str] = mapped_column(Text, default="unknown")
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_channel_id",
            "similar_channel_id",
            name="uq_similar_channel_owner_similar",
        ),
    )


class CreditTransaction(Base):
    __tablename__ = "credit_transaction"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(
        Text,
        ForeignKey("user_account.id", ondelete="CASCADE"),
    )
    kind: Mapped[str] = mapped_column(Text)
    operation: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    balance_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(Text, default="settled")
    parent_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("credit_transaction.id", ondelete="SET NULL"),
        nullable=True,
    )
    job_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("job.id", ondelete="SET NULL"),
        nullable=True,
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_credit_transaction_user_created", "user_id", "created_at"),
        CheckConstraint(
            "kind in ('debit', 'refund', 'grant')",
            name="ck_credit_transaction_kind",
        ),
        CheckConstraint(
            "status in ('pending', 'settled', 'refunded')",
            name="ck_credit_transaction_status",
        ),
    )
