"""
services/mentorship/workflow.py
Booking Workflow: purchase of recorded sessions, reservation of face-to-face
slots, and the admin-driven lifecycle that follows.

States: PENDING → CONFIRMED → COMPLETED, with CANCELLED reachable from
        PENDING and CONFIRMED. RECORDED bookings start at CONFIRMED.

Each operation runs inside the caller's session. The balance charge, the
booking row and the slot reservation succeed together or the router's
rollback discards all of them.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.catalog import catalog
from services.slots import registry
from services.wallet import ledger
from shared.models.models import (
    BookingStatus,
    MentorshipBooking,
    SessionType,
    TransactionType,
    User,
    UserRole,
)
from shared.schemas.schemas import BookingCreateRequest, BookingUpdateRequest
from shared.utils.dates import ensure_utc, format_date_dmy, slot_start, utcnow
from shared.utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = (BookingStatus.COMPLETED, BookingStatus.CANCELLED)

TRANSACTION_TYPES = {
    SessionType.RECORDED: TransactionType.RECORDED_SESSION,
    SessionType.FACE_TO_FACE: TransactionType.FACE_TO_FACE_SESSION,
}


# ── Mentor ────────────────────────────────────────────────────

async def get_mentor(db: AsyncSession) -> Optional[User]:
    """The admin flagged as mentor; any admin if none is flagged."""
    result = await db.execute(
        select(User)
        .where(User.role == UserRole.ADMIN, User.is_active == True)
        .order_by(User.is_mentor.desc(), User.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_mentor_settings(
    db: AsyncSession,
    admin: User,
    rate=None,
    bio: Optional[str] = None,
) -> User:
    admin.is_mentor = True
    if rate is not None:
        admin.mentor_rate = rate
    if bio is not None:
        admin.mentor_bio = bio
    await db.flush()
    return admin


# ── Queries ───────────────────────────────────────────────────

async def get_booking(db: AsyncSession, booking_id: uuid.UUID, lock: bool = False) -> MentorshipBooking:
    query = select(MentorshipBooking).where(MentorshipBooking.id == booking_id)
    if lock:
        query = query.with_for_update()
    booking = (await db.execute(query)).scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def list_student_bookings(db: AsyncSession, student_id: uuid.UUID) -> list[MentorshipBooking]:
    result = await db.execute(
        select(MentorshipBooking)
        .where(MentorshipBooking.student_id == student_id)
        .order_by(MentorshipBooking.created_at.desc())
    )
    return list(result.scalars().all())


async def list_bookings(
    db: AsyncSession,
    status: Optional[BookingStatus] = None,
    session_type: Optional[SessionType] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[list[tuple[MentorshipBooking, User]], int]:
    """Admin listing with the student joined in, newest first."""
    query = select(MentorshipBooking, User).join(User, User.id == MentorshipBooking.student_id)
    if status:
        query = query.where(MentorshipBooking.status == status)
    if session_type:
        query = query.where(MentorshipBooking.session_type == session_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(MentorshipBooking.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [tuple(row) for row in result.all()], total


# ── Purchase / reserve ────────────────────────────────────────

def _check_required_fields(data: BookingCreateRequest, session_type: SessionType) -> None:
    errors = []
    if session_type == SessionType.RECORDED:
        if not data.recorded_session_id:
            errors.append({"field": "recorded_session_id",
                           "message": "Recorded session is required"})
    else:
        if not data.selected_date_id:
            errors.append({"field": "selected_date_id",
                           "message": "A time slot must be selected"})
        if not data.whatsapp_number:
            errors.append({"field": "whatsapp_number",
                           "message": "WhatsApp number is required for face-to-face sessions"})
    if errors:
        raise ValidationError("Missing required booking fields", errors=errors)


async def create_booking(
    db: AsyncSession,
    student: User,
    data: BookingCreateRequest,
) -> MentorshipBooking:
    """
    1. Validate the fields the session type needs
    2. Resolve price (catalog price, or the configured face-to-face rate)
    3. Re-check availability under lock
    4-5. Charge, insert booking, reserve slot
    """
    session_type = SessionType(data.session_type)
    _check_required_fields(data, session_type)

    mentor = await get_mentor(db)
    if not mentor:
        raise NotFoundError("No mentor available")

    if session_type == SessionType.RECORDED:
        return await _purchase_recorded(db, student, mentor, data)
    return await _reserve_face_to_face(db, student, mentor, data)


async def _purchase_recorded(
    db: AsyncSession,
    student: User,
    mentor: User,
    data: BookingCreateRequest,
) -> MentorshipBooking:
    item = await catalog.get_active_session(db, data.recorded_session_id)

    already_owned = await db.scalar(
        select(MentorshipBooking.id).where(
            MentorshipBooking.student_id == student.id,
            MentorshipBooking.recorded_session_id == item.id,
            MentorshipBooking.status.in_([BookingStatus.CONFIRMED, BookingStatus.COMPLETED]),
        )
    )
    if already_owned:
        raise ConflictError("You have already purchased this recorded session")

    booking_id = uuid.uuid4()
    await ledger.charge(
        db,
        student.id,
        item.price,
        TransactionType.RECORDED_SESSION,
        f"Purchase of recorded session: {item.title}",
        booking_id=booking_id,
    )

    now = utcnow()
    booking = MentorshipBooking(
        id=booking_id,
        student_id=student.id,
        mentor_id=mentor.id,
        session_type=SessionType.RECORDED,
        duration=0,
        amount=item.price,
        status=BookingStatus.CONFIRMED,
        session_date=now,
        recorded_session_id=item.id,
        video_link=item.video_link,
        student_notes=data.student_notes or f"Purchased recorded session: {item.title}",
        confirmed_at=now,
    )
    db.add(booking)
    await db.flush()

    logger.info("Recorded session %s purchased by %s (booking %s)", item.id, student.id, booking_id)
    return booking


async def _reserve_face_to_face(
    db: AsyncSession,
    student: User,
    mentor: User,
    data: BookingCreateRequest,
) -> MentorshipBooking:
    slot = await registry.get_slot(db, data.selected_date_id, lock=True)
    if slot.is_booked:
        raise ConflictError("Slot no longer available")

    starts_at = slot_start(slot.date, slot.start_time)
    if starts_at <= utcnow():
        raise ValidationError("Cannot book a slot in the past", field="selected_date_id")

    price = settings.FACE_TO_FACE_SESSION_PRICE
    booking_id = uuid.uuid4()
    await ledger.charge(
        db,
        student.id,
        price,
        TransactionType.FACE_TO_FACE_SESSION,
        f"Face-to-face session on {format_date_dmy(slot.date)} at {slot.time_slot}",
        booking_id=booking_id,
    )

    booking = MentorshipBooking(
        id=booking_id,
        student_id=student.id,
        mentor_id=mentor.id,
        session_type=SessionType.FACE_TO_FACE,
        duration=settings.FACE_TO_FACE_SESSION_DURATION_MINUTES,
        amount=price,
        status=BookingStatus.PENDING,
        session_date=starts_at,
        session_start_time=slot.start_time,
        session_end_time=slot.end_time,
        available_date_id=slot.id,
        whatsapp_number=data.whatsapp_number,
        student_notes=data.student_notes,
    )
    db.add(booking)
    await db.flush()

    await registry.reserve(db, slot.id, booking.id)

    logger.info("Slot %s reserved by %s (booking %s)", slot.id, student.id, booking_id)
    return booking


# ── Admin transitions ─────────────────────────────────────────

async def _transition(db: AsyncSession, booking: MentorshipBooking, new_status: BookingStatus) -> None:
    """
    Flip status only if nobody else moved it first. A second cancel of the
    same booking finds no PENDING/CONFIRMED row and refunds nothing.
    """
    current = booking.status
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise ConflictError(f"Cannot change booking from {current.value} to {new_status.value}")

    now = utcnow()
    values = {"status": new_status}
    if new_status == BookingStatus.CONFIRMED:
        values["confirmed_at"] = now
    elif new_status == BookingStatus.COMPLETED:
        values["completed_at"] = now
    elif new_status == BookingStatus.CANCELLED:
        values["cancelled_at"] = now

    result = await db.execute(
        update(MentorshipBooking)
        .where(MentorshipBooking.id == booking.id, MentorshipBooking.status == current)
        .values(**values)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount == 0:
        raise ConflictError("Booking was modified concurrently; reload and retry")


async def _cancel(db: AsyncSession, booking: MentorshipBooking) -> None:
    await _transition(db, booking, BookingStatus.CANCELLED)

    if booking.available_date_id:
        await registry.release(db, booking.available_date_id)
        booking.available_date_id = None

    await ledger.refund(
        db,
        booking.student_id,
        booking.amount,
        TRANSACTION_TYPES[booking.session_type],
        f"Refund for cancelled {booking.session_type.value.lower().replace('_', '-')} session",
        booking_id=booking.id,
    )
    logger.info("Booking %s cancelled; refunded %s to %s", booking.id, booking.amount, booking.student_id)


async def _reschedule(db: AsyncSession, booking: MentorshipBooking, new_date) -> None:
    """
    Move to the open slot that starts at new_date. Without such a slot the
    request is rejected and the booking keeps its current slot.
    """
    if booking.session_type != SessionType.FACE_TO_FACE:
        raise ValidationError("Only face-to-face bookings can be rescheduled", field="session_date")
    if booking.status in TERMINAL_STATUSES:
        raise ConflictError(f"Cannot reschedule a {booking.status.value.lower()} booking")

    target = ensure_utc(new_date)
    if booking.session_date and ensure_utc(booking.session_date) == target:
        return

    slot = await registry.find_open_slot(db, target.date(), target.strftime("%H:%M"))
    if not slot:
        raise ConflictError("No available slot matches the new session date")

    await registry.reserve(db, slot.id, booking.id)
    if booking.available_date_id:
        await registry.release(db, booking.available_date_id)

    if booking.original_session_date is None:
        booking.original_session_date = booking.session_date
    booking.session_date = slot_start(slot.date, slot.start_time)
    booking.session_start_time = slot.start_time
    booking.session_end_time = slot.end_time
    booking.available_date_id = slot.id
    booking.date_changed = True
    logger.info("Booking %s rescheduled to slot %s", booking.id, slot.id)


async def update_booking(
    db: AsyncSession,
    admin: User,
    data: BookingUpdateRequest,
) -> MentorshipBooking:
    booking = await get_booking(db, data.booking_id, lock=True)
    new_status = BookingStatus(data.status) if data.status else None

    if data.session_date is not None:
        if new_status == BookingStatus.CANCELLED:
            raise ConflictError("Cannot reschedule and cancel in the same request")
        await _reschedule(db, booking, data.session_date)

    if new_status == BookingStatus.CANCELLED:
        await _cancel(db, booking)
    elif new_status is not None:
        await _transition(db, booking, new_status)

    if data.meeting_link is not None:
        booking.meeting_link = data.meeting_link
    if data.admin_notes is not None:
        booking.admin_notes = data.admin_notes

    await db.flush()
    logger.info("Booking %s updated by admin %s", booking.id, admin.id)
    return booking
