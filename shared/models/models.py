"""
shared/models/models.py
All SQLAlchemy ORM models for the Mentorship Tracker.
UUID primary keys throughout; money is Numeric(10, 2).
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    STUDENT = "STUDENT"
    ADMIN = "ADMIN"


class TransactionType(str, PyEnum):
    TOP_UP = "TOP_UP"
    DEBIT = "DEBIT"
    RECORDED_SESSION = "RECORDED_SESSION"
    FACE_TO_FACE_SESSION = "FACE_TO_FACE_SESSION"
    PLATFORM_PURCHASE = "PLATFORM_PURCHASE"
    WELCOME_BONUS = "WELCOME_BONUS"
    ADJUSTMENT = "ADJUSTMENT"


class TransactionStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class SessionType(str, PyEnum):
    RECORDED = "RECORDED"
    FACE_TO_FACE = "FACE_TO_FACE"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class SubmissionStatus(str, PyEnum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TaskDifficulty(str, PyEnum):
    EASY = "EASY"
    MEDIUM = "MEDIUM"
    HARD = "HARD"


ACTIVE_SUBMISSION_STATUSES = (SubmissionStatus.PENDING, SubmissionStatus.APPROVED)


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for students and admins. Owns the wallet balance."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.STUDENT
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Wallet: mutated only through services.wallet.ledger
    balance: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )

    # Mentor profile (admins only)
    is_mentor: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    mentor_bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mentor_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
        Index("ix_users_role", "role"),
    )

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class RefreshToken(Base):
    """Refresh tokens stored for rotation and revocation."""
    __tablename__ = "refresh_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token_hash: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_revoked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)

    __table_args__ = (Index("ix_refresh_tokens_user_id", "user_id"),)


class Transaction(TimestampMixin, Base):
    """
    Ledger entry. Every balance change has exactly one APPROVED row;
    TOP_UP rows start PENDING and touch the balance only when approved.
    Negative amounts mark refunds/reversals.
    """
    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Manual wallet transfers (top-ups)
    sender_wallet_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    admin_wallet_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    resolved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_transactions_user_id", "user_id"),
        Index("ix_transactions_type_status", "type", "status"),
        Index("ix_transactions_booking_id", "booking_id"),
    )


class AvailableDate(TimestampMixin, Base):
    """
    A bookable face-to-face slot. Reserved by flipping is_booked under a
    conditional UPDATE; booking_id links back to the reserving booking.
    """
    __tablename__ = "available_dates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "09:00"
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)    # "10:00"
    time_slot: Mapped[str] = mapped_column(String(13), nullable=False)  # "09:00 - 10:00"
    is_booked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    __table_args__ = (
        UniqueConstraint("date", "time_slot", name="uq_available_dates_date_slot"),
        Index("ix_available_dates_date_booked", "date", "is_booked"),
    )


class RecordedSession(TimestampMixin, Base):
    """Pre-recorded mentorship video sold at a fixed price."""
    __tablename__ = "recorded_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_link: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_recorded_sessions_price_positive"),
    )


class MentorshipBooking(TimestampMixin, Base):
    """
    Purchased recorded session or reserved face-to-face session.
    Status transitions: PENDING → CONFIRMED → COMPLETED, with CANCELLED
    reachable from PENDING and CONFIRMED. RECORDED bookings start CONFIRMED.
    """
    __tablename__ = "mentorship_bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    mentor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    session_type: Mapped[SessionType] = mapped_column(Enum(SessionType), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # minutes
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )

    # Schedule (face-to-face)
    session_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    session_start_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    session_end_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    available_date_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("available_dates.id", ondelete="SET NULL"), nullable=True
    )
    whatsapp_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    date_changed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    original_session_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Recorded
    recorded_session_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("recorded_sessions.id", ondelete="SET NULL"), nullable=True
    )
    video_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    student_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_mentorship_bookings_student_id", "student_id"),
        Index("ix_mentorship_bookings_status", "status"),
    )


class Platform(TimestampMixin, Base):
    """Learning platform students enroll in."""
    __tablename__ = "platforms"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_paid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Task(TimestampMixin, Base):
    __tablename__ = "tasks"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("platforms.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    difficulty: Mapped[TaskDifficulty] = mapped_column(
        Enum(TaskDifficulty), nullable=False, default=TaskDifficulty.EASY
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (Index("ix_tasks_platform_order", "platform_id", "order"),)


class Enrollment(TimestampMixin, Base):
    __tablename__ = "enrollments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    platform_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("platforms.id", ondelete="CASCADE"), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "platform_id", name="uq_enrollment_user_platform"),
    )


class Submission(TimestampMixin, Base):
    """Task summary submitted by a student and graded by an admin."""
    __tablename__ = "submissions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    task_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[SubmissionStatus] = mapped_column(
        Enum(SubmissionStatus), nullable=False, default=SubmissionStatus.PENDING
    )
    score: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("score IS NULL OR (score >= 0 AND score <= 100)", name="ck_submission_score_range"),
        # At most one PENDING/APPROVED submission per (task, user)
        Index(
            "uq_submissions_active_task_user",
            "task_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'APPROVED')"),
            sqlite_where=text("status IN ('PENDING', 'APPROVED')"),
        ),
        Index("ix_submissions_user_id", "user_id"),
    )


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
