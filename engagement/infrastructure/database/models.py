"""SQLAlchemy ORM models for the authoritative engagement database."""

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from engagement.shared.utils.datetime_utils import utcnow


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
        list[dict[str, Any]]: JSON,
    }


# ===========================================
# ENGAGEMENT TABLES
# ===========================================


class AcceptanceRow(Base):
    """A user's commitment to a challenge."""

    __tablename__ = "acceptances"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Accepted")
    committed_date: Mapped[date] = mapped_column(Date, nullable=False)
    accepted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    withdrawn_by: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = (
        CheckConstraint(
            "status IN ('Accepted', 'Submitted', 'Pending Review', 'Under Review', "
            "'Approved', 'Rejected', 'Needs Rework', 'Withdrawn')",
            name="valid_acceptance_status",
        ),
        Index("idx_acceptances_username", "username"),
        Index("idx_acceptances_challenge", "challenge_id"),
        Index("idx_acceptances_user_challenge", "username", "challenge_id"),
    )


class SubmissionRow(Base):
    """Submitted solution, one per acceptance."""

    __tablename__ = "submissions"

    acceptance_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    short_description: Mapped[str] = mapped_column(Text, default="")
    technologies: Mapped[str] = mapped_column(Text, default="")
    source_code_url: Mapped[str] = mapped_column(Text, default="")
    hosted_app_url: Mapped[str] = mapped_column(Text, default="")
    file_url: Mapped[str] = mapped_column(Text, default="")
    file_name: Mapped[str] = mapped_column(String(500), default="")
    file_size: Mapped[int] = mapped_column(Integer, default=0)
    supporting_docs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_submissions_username", "username"),
        Index("idx_submissions_challenge", "challenge_id"),
    )


class ReviewRow(Base):
    """Review of a submission, one per acceptance."""

    __tablename__ = "reviews"

    acceptance_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    submission_id: Mapped[str] = mapped_column(String(511), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="Pending Review")
    review_started_by: Mapped[str | None] = mapped_column(String(255))
    review_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_by: Mapped[str | None] = mapped_column(String(255))
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    review_comment: Mapped[str | None] = mapped_column(Text)
    points_awarded: Mapped[int | None] = mapped_column(Integer)
    penalty_override: Mapped[int | None] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('Pending Review', 'Approved', 'Rejected', 'Needs Rework')",
            name="valid_review_status",
        ),
        CheckConstraint("points_awarded IS NULL OR points_awarded >= 0", name="non_negative_points"),
        Index("idx_reviews_username", "username"),
        Index("idx_reviews_status", "status"),
    )


# ===========================================
# BOOKKEEPING TABLES
# ===========================================


class AppliedOperationRow(Base):
    """Operation ids already applied, for idempotent writes."""

    __tablename__ = "applied_operations"

    operation_id: Mapped[str] = mapped_column(String(1024), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ConsistencyRepairRow(Base):
    """Audit trail of automatic consistency repairs."""

    __tablename__ = "consistency_repairs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    challenge_id: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_repairs_username", "username"),
    )
