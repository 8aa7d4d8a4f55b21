"""
services/mentorship/router.py
Mentorship endpoints: student overview and booking, admin booking management.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.catalog import catalog
from services.mentorship import workflow
from services.slots import registry
from shared.middleware.auth import get_current_user, require_admin, require_student
from shared.models.models import BookingStatus, MentorshipBooking, SessionType, User
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingUpdateRequest,
    MentorResponse,
    MentorSettingsRequest,
    MentorshipOverviewResponse,
    PaginatedResponse,
    PricingResponse,
)
from shared.utils.audit import log_admin_action
from shared.utils.dates import utcnow

router = APIRouter(tags=["Mentorship"])


def _booking_response(
    booking: MentorshipBooking,
    student: Optional[User] = None,
    mentor: Optional[User] = None,
) -> BookingResponse:
    response = BookingResponse.model_validate(booking)
    if student:
        response.student_name = student.name
        response.student_email = student.email
    if mentor:
        response.mentor_name = mentor.name
    return response


# ── Student ───────────────────────────────────────────────────

@router.get("/mentorship", response_model=MentorshipOverviewResponse)
async def get_mentorship_overview(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Mentor, pricing, the caller's bookings, open slots and the recorded catalog."""
    mentor = await workflow.get_mentor(db)
    bookings = await workflow.list_student_bookings(db, current_user.id)
    available = await registry.list_available(db, utcnow().date())
    recorded = await catalog.list_sessions(db)

    return MentorshipOverviewResponse(
        mentor=MentorResponse.model_validate(mentor) if mentor else None,
        pricing=PricingResponse(
            face_to_face_price=settings.FACE_TO_FACE_SESSION_PRICE,
            face_to_face_duration_minutes=settings.FACE_TO_FACE_SESSION_DURATION_MINUTES,
            currency=settings.CURRENCY,
        ),
        bookings=[_booking_response(b, mentor=mentor) for b in bookings],
        available_dates=available,
        recorded_sessions=recorded,
    )


@router.post("/mentorship", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """
    Buy a recorded session (confirmed immediately) or reserve a face-to-face
    slot (pending until an admin confirms). The price is charged up front.
    """
    booking = await workflow.create_booking(db, current_user, data)
    await db.commit()
    return _booking_response(booking, student=current_user)


# ── Admin ─────────────────────────────────────────────────────

@router.get("/admin/mentorship", response_model=PaginatedResponse)
async def admin_list_bookings(
    status: Optional[BookingStatus] = Query(None),
    session_type: Optional[SessionType] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await workflow.list_bookings(db, status, session_type, page, page_size)
    return PaginatedResponse(
        items=[_booking_response(booking, student=student) for booking, student in rows],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.patch("/admin/mentorship", response_model=BookingResponse)
async def admin_update_booking(
    data: BookingUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Status change, reschedule, meeting link or notes.
    Cancelling frees the slot and refunds the student in the same transaction.
    """
    booking = await workflow.update_booking(db, current_user, data)
    log_admin_action(db, current_user, "UPDATE_BOOKING", "MentorshipBooking", str(booking.id),
                     data.model_dump(mode="json", exclude_none=True, exclude={"booking_id"}), request)
    await db.commit()
    return _booking_response(booking)


@router.put("/admin/mentorship/settings", response_model=MentorResponse)
async def admin_update_mentor_settings(
    data: MentorSettingsRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    mentor = await workflow.update_mentor_settings(db, current_user, data.mentor_rate, data.mentor_bio)
    log_admin_action(db, current_user, "UPDATE_MENTOR_SETTINGS", "User", str(current_user.id),
                     data.model_dump(mode="json", exclude_none=True), request)
    await db.commit()
    return mentor
