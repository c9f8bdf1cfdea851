"""SQLAlchemy ORM models for the band governance database.

Tables: bands, members, band_finance_settings, buckets, proposals, votes,
proposal_execution_logs, governance_events.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

DEFAULT_VOTING_ROLES = ["FOUNDER", "GOVERNOR", "MODERATOR", "CONDUCTOR", "VOTING_MEMBER"]


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class BandRow(Base):
    __tablename__ = "bands"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    voting_period_days: Mapped[int] = mapped_column(Integer, default=7)
    vote_threshold: Mapped[float] = mapped_column(Float, default=50.0)
    quorum_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    voting_roles: Mapped[list] = mapped_column(JSON, default=lambda: list(DEFAULT_VOTING_ROLES))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    members: Mapped[list[MemberRow]] = relationship(back_populates="band")


class MemberRow(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), default="")
    role: Mapped[str] = mapped_column(String(20), default="VOTING_MEMBER")
    status: Mapped[str] = mapped_column(String(20), default="ACTIVE")
    is_treasurer: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    band: Mapped[BandRow] = relationship(back_populates="members")

    __table_args__ = (
        UniqueConstraint("user_id", "band_id", name="uq_member_user_band"),
        Index("ix_members_band_id", "band_id"),
    )


class BandFinanceSettingsRow(Base):
    """Finance policy for a band. Mutated only by effects or direct admin action."""

    __tablename__ = "band_finance_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False, unique=True)
    bucket_management_policy: Mapped[str] = mapped_column(String(20), default="OFFICER_TIER")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)


class BucketRow(Base):
    """A named financial sub-account within a band."""

    __tablename__ = "buckets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    visibility: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by_proposal_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        UniqueConstraint("band_id", "name", name="uq_bucket_band_name"),
        Index("ix_buckets_band_id", "band_id"),
    )


class ProposalRow(Base):
    __tablename__ = "proposals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    band_id: Mapped[str] = mapped_column(ForeignKey("bands.id"), nullable=False)
    created_by_id: Mapped[str] = mapped_column(String(36), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    type: Mapped[str] = mapped_column(String(20), default="GOVERNANCE")
    execution_type: Mapped[str] = mapped_column(String(20), default="RESOLUTION")
    execution_subtype: Mapped[str | None] = mapped_column(String(64), nullable=True)
    effects: Mapped[list] = mapped_column(JSON, default=list)
    effects_validated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="VOTING")
    voting_ends_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    tally: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    effects_executed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    execution_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (
        Index("ix_proposals_band_id", "band_id"),
        Index("ix_proposals_status_ends", "status", "voting_ends_at"),
    )


class VoteRow(Base):
    __tablename__ = "votes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    vote: Mapped[str] = mapped_column(String(10), nullable=False)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, onupdate=_now)

    __table_args__ = (UniqueConstraint("proposal_id", "user_id", name="uq_vote_proposal_user"),)


class ExecutionLogRow(Base):
    """Append-only record of one attempt to apply a proposal's effects."""

    __tablename__ = "proposal_execution_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    proposal_id: Mapped[str] = mapped_column(ForeignKey("proposals.id"), nullable=False)
    band_id: Mapped[str] = mapped_column(String(36), nullable=False)
    execution_subtype: Mapped[str] = mapped_column(String(64), default="UNKNOWN")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    effects_submitted: Mapped[list] = mapped_column(JSON, default=list)
    effects_executed: Mapped[list] = mapped_column(JSON, default=list)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    executed_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)

    __table_args__ = (
        Index("ix_exec_logs_proposal", "proposal_id"),
        # At most one successful execution per proposal.
        Index(
            "uq_exec_logs_one_success",
            "proposal_id",
            unique=True,
            sqlite_where=text("status = 'SUCCESS'"),
            postgresql_where=text("status = 'SUCCESS'"),
        ),
    )


class GovernanceEventRow(Base):
    """Append-only audit trail of proposal lifecycle transitions."""

    __tablename__ = "governance_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    proposal_id: Mapped[str] = mapped_column(String(36), nullable=False)
    band_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_gov_events_proposal", "proposal_id"),
        Index("ix_gov_events_band", "band_id"),
        Index("ix_gov_events_type", "event_type"),
    )
