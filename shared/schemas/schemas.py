"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the API.
"""

import datetime as dt
import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from shared.models.models import (
    BookingStatus,
    SessionType,
    SubmissionStatus,
    TaskDifficulty,
    UserRole,
)

HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
PHONE_PATTERN = r"^\+?\d{8,15}$"


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Auth ──────────────────────────────────────────────────────

class SignupRequest(BaseSchema):
    email: EmailStr
    name: str = Field(..., min_length=2, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be at least 2 characters")
        return v


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseSchema):
    refresh_token: str = Field(..., min_length=10)


class TokenResponse(BaseSchema):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    name: str
    phone_number: Optional[str]
    role: str
    balance: Decimal
    is_mentor: bool
    created_at: datetime


class AuthResponse(TokenResponse):
    user: UserResponse


# ── Wallet ────────────────────────────────────────────────────

class WalletResponse(BaseSchema):
    balance: Decimal
    currency: str
    admin_wallet_number: Optional[str] = None


class TopUpRequest(BaseSchema):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    sender_wallet_number: str = Field(..., min_length=3, max_length=50)


class TransactionResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    amount: Decimal
    status: str
    description: str
    sender_wallet_number: Optional[str] = None
    admin_wallet_number: Optional[str] = None
    booking_id: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    # Joined
    user_name: Optional[str] = None
    user_email: Optional[str] = None


class TopUpAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class TopUpResolveRequest(BaseSchema):
    transaction_id: uuid.UUID
    action: TopUpAction


# ── Slots ─────────────────────────────────────────────────────

class TimeSlotSchema(BaseSchema):
    start_time: str = Field(..., pattern=HHMM_PATTERN)
    end_time: str = Field(..., pattern=HHMM_PATTERN)

    @model_validator(mode="after")
    def check_order(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailableDateCreate(TimeSlotSchema):
    date: date


class AvailableDateUpdate(BaseSchema):
    date: Optional[dt.date] = None
    start_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    end_time: Optional[str] = Field(None, pattern=HHMM_PATTERN)


class AvailableDateResponse(BaseSchema):
    id: uuid.UUID
    date: date
    start_time: str
    end_time: str
    time_slot: str
    is_booked: bool
    booking_id: Optional[uuid.UUID] = None


class AvailableDayResponse(BaseSchema):
    date: date
    display_date: str
    slots: List[AvailableDateResponse]


class SlotRangeRequest(BaseSchema):
    start_date: date
    end_date: date
    time_slots: Optional[List[TimeSlotSchema]] = None
    exclude_weekends: bool = False

    @model_validator(mode="after")
    def check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if (self.end_date - self.start_date).days > 366:
            raise ValueError("Range cannot exceed one year")
        return self


class WeeklyTemplateRequest(BaseSchema):
    week_start: date
    time_slots: Optional[List[TimeSlotSchema]] = None


class SlotGenerationResponse(BaseSchema):
    created: int
    skipped: int


# ── Recorded Catalog ──────────────────────────────────────────

class RecordedSessionCreate(BaseSchema):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    video_link: str = Field(..., min_length=1)
    price: Decimal = Field(..., gt=0)
    is_active: bool = True


class RecordedSessionUpdate(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    video_link: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, gt=0)
    is_active: Optional[bool] = None


class RecordedSessionPublic(BaseSchema):
    """Catalog entry as students see it; the link is revealed on purchase."""
    id: uuid.UUID
    title: str
    description: Optional[str]
    price: Decimal
    created_at: datetime


class RecordedSessionResponse(RecordedSessionPublic):
    video_link: str
    is_active: bool


# ── Mentorship ────────────────────────────────────────────────

class MentorResponse(BaseSchema):
    id: uuid.UUID
    name: str
    mentor_bio: Optional[str]
    mentor_rate: Optional[Decimal]


class PricingResponse(BaseSchema):
    face_to_face_price: Decimal
    face_to_face_duration_minutes: int
    currency: str


class BookingCreateRequest(BaseSchema):
    session_type: SessionType
    selected_date_id: Optional[uuid.UUID] = None
    recorded_session_id: Optional[uuid.UUID] = None
    whatsapp_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    student_notes: Optional[str] = Field(None, max_length=2000)


class BookingUpdateRequest(BaseSchema):
    booking_id: uuid.UUID
    status: Optional[BookingStatus] = None
    session_date: Optional[datetime] = None
    meeting_link: Optional[str] = Field(None, max_length=2000)
    admin_notes: Optional[str] = Field(None, max_length=2000)


class MentorSettingsRequest(BaseSchema):
    mentor_rate: Optional[Decimal] = Field(None, ge=0)
    mentor_bio: Optional[str] = Field(None, max_length=5000)


class BookingResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    mentor_id: uuid.UUID
    session_type: str
    duration: int
    amount: Decimal
    status: str
    session_date: Optional[datetime]
    session_start_time: Optional[str]
    session_end_time: Optional[str]
    available_date_id: Optional[uuid.UUID]
    whatsapp_number: Optional[str]
    meeting_link: Optional[str]
    date_changed: bool
    original_session_date: Optional[datetime]
    recorded_session_id: Optional[uuid.UUID]
    video_link: Optional[str]
    student_notes: Optional[str]
    admin_notes: Optional[str]
    confirmed_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    created_at: datetime
    # Joined
    student_name: Optional[str] = None
    student_email: Optional[str] = None
    mentor_name: Optional[str] = None


class MentorshipOverviewResponse(BaseSchema):
    mentor: Optional[MentorResponse]
    pricing: PricingResponse
    bookings: List[BookingResponse]
    available_dates: List[AvailableDayResponse]
    recorded_sessions: List[RecordedSessionPublic]


# ── Learning Catalog ──────────────────────────────────────────

class PlatformCreate(BaseSchema):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    url: str = Field(..., min_length=1)
    price: Optional[Decimal] = Field(None, ge=0)
    is_paid: bool = False

    @model_validator(mode="after")
    def paid_needs_price(self):
        if self.is_paid and not self.price:
            raise ValueError("Paid platforms need a price")
        return self


class PlatformUpdate(BaseSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    url: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, ge=0)
    is_paid: Optional[bool] = None


class PlatformResponse(BaseSchema):
    id: uuid.UUID
    name: str
    description: Optional[str]
    url: str
    price: Optional[Decimal]
    is_paid: bool
    created_at: datetime
    task_count: int = 0
    is_enrolled: bool = False


class TaskCreate(BaseSchema):
    platform_id: uuid.UUID
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    link: Optional[str] = None
    difficulty: TaskDifficulty = TaskDifficulty.EASY
    order: int = Field(0, ge=0)


class TaskUpdate(BaseSchema):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    link: Optional[str] = None
    difficulty: Optional[TaskDifficulty] = None
    order: Optional[int] = Field(None, ge=0)


class TaskResponse(BaseSchema):
    id: uuid.UUID
    platform_id: uuid.UUID
    title: str
    description: Optional[str]
    link: Optional[str]
    difficulty: str
    order: int
    created_at: datetime


class EnrollmentCreate(BaseSchema):
    platform_id: uuid.UUID


class EnrollmentResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    platform_id: uuid.UUID
    expires_at: datetime
    created_at: datetime
    platform_name: Optional[str] = None
    is_expired: bool = False


# ── Submissions ───────────────────────────────────────────────

class SubmissionCreate(BaseSchema):
    task_id: uuid.UUID
    summary: str = Field(..., min_length=1, max_length=20000)


class SubmissionGradeRequest(BaseSchema):
    status: Optional[SubmissionStatus] = None
    score: Optional[int] = Field(None, ge=0, le=100)
    feedback: Optional[str] = Field(None, max_length=5000)


class SubmissionResponse(BaseSchema):
    id: uuid.UUID
    task_id: uuid.UUID
    user_id: uuid.UUID
    summary: str
    status: str
    score: Optional[int]
    feedback: Optional[str]
    created_at: datetime
    updated_at: datetime
    # Joined
    task_title: Optional[str] = None
    user_name: Optional[str] = None


# ── Admin ─────────────────────────────────────────────────────

class AdminUserCreateRequest(SignupRequest):
    role: UserRole = UserRole.STUDENT


class AdminUserUpdateRequest(BaseSchema):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone_number: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    role: Optional[UserRole] = None


class ResetBalanceRequest(BaseSchema):
    balance: Decimal = Field(..., ge=0)
    reason: Optional[str] = Field(None, max_length=500)


class AdminStatsResponse(BaseSchema):
    total_students: int
    total_platforms: int
    total_tasks: int
    pending_submissions: int
    pending_topups: int
    pending_bookings: int
    total_balance: Decimal
    mentorship_revenue: Decimal


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str]
    payload: Optional[Dict[str, Any]]
    ip_address: Optional[str]
    created_at: datetime


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class FieldError(BaseSchema):
    field: str
    message: str


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    errors: Optional[List[FieldError]] = None
