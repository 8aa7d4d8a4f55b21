"""
tests/test_mentorship.py
Tests for the mentorship booking lifecycle:
reserve/purchase → confirm → complete, cancellation refunds, rescheduling,
and the race for a single slot.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AvailableDate,
    BookingStatus,
    MentorshipBooking,
    RecordedSession,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from shared.utils.dates import ensure_utc, slot_start
from tests.conftest import auth_headers, make_slot, make_user, reload

WHATSAPP = "+201012345678"


def _face_to_face(slot: AvailableDate) -> dict:
    return {
        "session_type": "FACE_TO_FACE",
        "selected_date_id": str(slot.id),
        "whatsapp_number": WHATSAPP,
    }


async def _book(client: AsyncClient, student: User, slot: AvailableDate) -> dict:
    response = await client.post("/mentorship", headers=auth_headers(student), json=_face_to_face(slot))
    assert response.status_code == 201, response.text
    return response.json()


async def _admin_update(client: AsyncClient, admin: User, booking_id: str, **changes):
    return await client.patch(
        "/admin/mentorship",
        headers=auth_headers(admin),
        json={"booking_id": booking_id, **changes},
    )


async def _transactions(db: AsyncSession, user: User) -> list[Transaction]:
    result = await db.execute(
        select(Transaction).where(Transaction.user_id == user.id).order_by(Transaction.created_at)
    )
    return list(result.scalars().all())


# ── Face-to-face Reservation ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_face_to_face_booking_charges_and_reserves(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    """Balance 500, price 500: booking PENDING, balance 0, slot linked, one approved charge."""
    booking = await _book(client, user, slot)

    assert booking["status"] == "PENDING"
    assert booking["session_type"] == "FACE_TO_FACE"
    assert Decimal(booking["amount"]) == Decimal("500.00")
    assert booking["mentor_id"] == str(admin_user.id)
    assert booking["available_date_id"] == str(slot.id)

    assert (await reload(db, user)).balance == Decimal("0.00")

    slot = await reload(db, slot)
    assert slot.is_booked
    assert str(slot.booking_id) == booking["id"]

    txns = await _transactions(db, user)
    assert len(txns) == 1
    assert txns[0].status == TransactionStatus.APPROVED
    assert txns[0].type == TransactionType.FACE_TO_FACE_SESSION
    assert txns[0].amount == Decimal("500.00")
    assert str(txns[0].booking_id) == booking["id"]


@pytest.mark.asyncio
async def test_cancel_refunds_and_frees_slot(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    """Admin cancel: balance back to 500, slot free, one -500 row, booking CANCELLED."""
    booking = await _book(client, user, slot)

    response = await _admin_update(client, admin_user, booking["id"], status="CANCELLED")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "CANCELLED"
    assert data["available_date_id"] is None
    assert data["cancelled_at"] is not None

    assert (await reload(db, user)).balance == Decimal("500.00")
    slot = await reload(db, slot)
    assert not slot.is_booked
    assert slot.booking_id is None

    txns = await _transactions(db, user)
    assert [t.amount for t in txns] == [Decimal("500.00"), Decimal("-500.00")]
    assert txns[1].type == TransactionType.FACE_TO_FACE_SESSION


@pytest.mark.asyncio
async def test_cancel_twice_refunds_once(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    assert (await _admin_update(client, admin_user, booking["id"], status="CANCELLED")).status_code == 200

    again = await _admin_update(client, admin_user, booking["id"], status="CANCELLED")
    assert again.status_code == 409

    assert (await reload(db, user)).balance == Decimal("500.00")
    assert len(await _transactions(db, user)) == 2


@pytest.mark.asyncio
async def test_cancel_confirmed_booking_refunds(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    confirmed = await _admin_update(client, admin_user, booking["id"], status="CONFIRMED")
    assert confirmed.json()["status"] == "CONFIRMED"

    cancelled = await _admin_update(client, admin_user, booking["id"], status="CANCELLED")
    assert cancelled.status_code == 200
    assert (await reload(db, user)).balance == Decimal("500.00")
    assert not (await reload(db, slot)).is_booked


@pytest.mark.asyncio
async def test_booking_requires_slot_and_whatsapp(client: AsyncClient, user: User, admin_user: User):
    response = await client.post(
        "/mentorship", headers=auth_headers(user), json={"session_type": "FACE_TO_FACE"}
    )
    assert response.status_code == 400
    fields = {err["field"] for err in response.json()["errors"]}
    assert fields == {"selected_date_id", "whatsapp_number"}


@pytest.mark.asyncio
async def test_booking_past_slot_rejected(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User
):
    past = await make_slot(db, days_ahead=-2)
    response = await client.post("/mentorship", headers=auth_headers(user), json=_face_to_face(past))
    assert response.status_code == 400
    assert (await reload(db, user)).balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_booking_taken_slot_conflicts(
    client: AsyncClient, db: AsyncSession, user: User, admin_user: User, slot: AvailableDate
):
    await _book(client, user, slot)
    other = await make_user(db)

    response = await client.post("/mentorship", headers=auth_headers(other), json=_face_to_face(slot))
    assert response.status_code == 409
    assert (await reload(db, other)).balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_admin_cannot_book(client: AsyncClient, admin_user: User, slot: AvailableDate):
    response = await client.post("/mentorship", headers=auth_headers(admin_user), json=_face_to_face(slot))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_concurrent_reservations_one_wins(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    slot: AvailableDate,
):
    """Two students race for one slot: one 201, one 409, one booking, one charge."""
    first = await make_user(db)
    second = await make_user(db)

    responses = await asyncio.gather(
        client.post("/mentorship", headers=auth_headers(first), json=_face_to_face(slot)),
        client.post("/mentorship", headers=auth_headers(second), json=_face_to_face(slot)),
    )
    codes = sorted(r.status_code for r in responses)
    assert codes == [201, 409]
    loser = next(r for r in responses if r.status_code == 409)
    assert loser.json()["detail"] == "Slot no longer available"

    assert await db.scalar(select(func.count(MentorshipBooking.id))) == 1
    balances = sorted([(await reload(db, first)).balance, (await reload(db, second)).balance])
    assert balances == [Decimal("0.00"), Decimal("500.00")]
    assert (await reload(db, slot)).is_booked


# ── Recorded Sessions ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_recorded_purchase_confirms_and_reveals_link(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    recorded_session: RecordedSession,
):
    payload = {"session_type": "RECORDED", "recorded_session_id": str(recorded_session.id)}
    response = await client.post("/mentorship", headers=auth_headers(user), json=payload)
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "CONFIRMED"
    assert data["video_link"] == recorded_session.video_link
    assert (await reload(db, user)).balance == Decimal("400.00")

    again = await client.post("/mentorship", headers=auth_headers(user), json=payload)
    assert again.status_code == 409
    assert (await reload(db, user)).balance == Decimal("400.00")


@pytest.mark.asyncio
async def test_recorded_purchase_insufficient_balance(
    client: AsyncClient,
    db: AsyncSession,
    admin_user: User,
    recorded_session: RecordedSession,
):
    """Balance 50, price 100: rejected, balance untouched, nothing recorded."""
    poor = await make_user(db, balance=Decimal("50.00"))

    response = await client.post(
        "/mentorship",
        headers=auth_headers(poor),
        json={"session_type": "RECORDED", "recorded_session_id": str(recorded_session.id)},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"

    assert (await reload(db, poor)).balance == Decimal("50.00")
    assert await db.scalar(select(func.count(MentorshipBooking.id))) == 0
    assert await _transactions(db, poor) == []


@pytest.mark.asyncio
async def test_inactive_recorded_session_not_purchasable(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    recorded_session: RecordedSession,
):
    recorded_session.is_active = False
    await db.commit()

    response = await client.post(
        "/mentorship",
        headers=auth_headers(user),
        json={"session_type": "RECORDED", "recorded_session_id": str(recorded_session.id)},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_recorded_purchase_refunds_price(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    recorded_session: RecordedSession,
):
    created = await client.post(
        "/mentorship",
        headers=auth_headers(user),
        json={"session_type": "RECORDED", "recorded_session_id": str(recorded_session.id)},
    )
    response = await _admin_update(client, admin_user, created.json()["id"], status="CANCELLED")
    assert response.status_code == 200

    txns = await _transactions(db, user)
    assert [t.amount for t in txns] == [Decimal("100.00"), Decimal("-100.00")]
    assert {t.type for t in txns} == {TransactionType.RECORDED_SESSION}


# ── Admin Transitions ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_lifecycle_confirm_then_complete(
    client: AsyncClient, user: User, admin_user: User, slot: AvailableDate
):
    booking = await _book(client, user, slot)

    skipped = await _admin_update(client, admin_user, booking["id"], status="COMPLETED")
    assert skipped.status_code == 409

    confirmed = await _admin_update(
        client, admin_user, booking["id"], status="CONFIRMED", meeting_link="https://meet.example.com/abc"
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["meeting_link"] == "https://meet.example.com/abc"
    assert confirmed.json()["confirmed_at"] is not None

    completed = await _admin_update(client, admin_user, booking["id"], status="COMPLETED")
    assert completed.json()["status"] == BookingStatus.COMPLETED.value

    late_cancel = await _admin_update(client, admin_user, booking["id"], status="CANCELLED")
    assert late_cancel.status_code == 409


@pytest.mark.asyncio
async def test_student_cannot_update_bookings(client: AsyncClient, user: User, admin_user: User, slot):
    booking = await _book(client, user, slot)
    response = await _admin_update(client, user, booking["id"], status="CONFIRMED")
    assert response.status_code == 403


# ── Rescheduling ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_moves_to_matching_slot(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    target = await make_slot(db, days_ahead=5, start_time="14:00", end_time="15:00")
    new_start = slot_start(target.date, target.start_time)

    response = await _admin_update(client, admin_user, booking["id"], session_date=new_start.isoformat())
    assert response.status_code == 200
    data = response.json()
    assert data["date_changed"] is True
    assert data["available_date_id"] == str(target.id)
    assert data["session_start_time"] == "14:00"
    assert data["original_session_date"] is not None

    assert not (await reload(db, slot)).is_booked
    assert (await reload(db, target)).is_booked


@pytest.mark.asyncio
async def test_second_reschedule_keeps_first_original_date(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    first_start = slot_start(slot.date, slot.start_time)
    second = await make_slot(db, days_ahead=5, start_time="14:00", end_time="15:00")
    third = await make_slot(db, days_ahead=6, start_time="16:00", end_time="17:00")

    for target in (second, third):
        moved = await _admin_update(
            client, admin_user, booking["id"],
            session_date=slot_start(target.date, target.start_time).isoformat(),
        )
        assert moved.status_code == 200
        original = ensure_utc(datetime.fromisoformat(moved.json()["original_session_date"]))
        assert original == first_start

    assert moved.json()["available_date_id"] == str(third.id)
    assert not (await reload(db, second)).is_booked
    assert (await reload(db, third)).is_booked


@pytest.mark.asyncio
async def test_cancel_after_reschedule_frees_new_slot_and_refunds_once(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    target = await make_slot(db, days_ahead=5, start_time="14:00", end_time="15:00")
    moved = await _admin_update(
        client, admin_user, booking["id"],
        session_date=slot_start(target.date, target.start_time).isoformat(),
    )
    assert moved.status_code == 200

    cancelled = await _admin_update(client, admin_user, booking["id"], status="CANCELLED")
    assert cancelled.status_code == 200

    target = await reload(db, target)
    assert not target.is_booked
    assert target.booking_id is None
    assert not (await reload(db, slot)).is_booked

    txns = await _transactions(db, user)
    assert [t.amount for t in txns] == [Decimal("500.00"), Decimal("-500.00")]
    assert (await reload(db, user)).balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_reschedule_without_matching_slot_changes_nothing(
    client: AsyncClient,
    db: AsyncSession,
    user: User,
    admin_user: User,
    slot: AvailableDate,
):
    booking = await _book(client, user, slot)
    nowhere = slot_start(slot.date, "18:00") + timedelta(days=1)

    response = await _admin_update(client, admin_user, booking["id"], session_date=nowhere.isoformat())
    assert response.status_code == 409

    stored = await db.get(MentorshipBooking, uuid.UUID(booking["id"]))
    assert stored.date_changed is False
    assert stored.available_date_id == slot.id
    assert (await reload(db, slot)).is_booked


# ── Overview ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_overview_hides_unpurchased_video_links(
    client: AsyncClient,
    user: User,
    admin_user: User,
    slot: AvailableDate,
    recorded_session: RecordedSession,
):
    response = await client.get("/mentorship", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert data["mentor"]["id"] == str(admin_user.id)
    assert Decimal(data["pricing"]["face_to_face_price"]) == Decimal("500.00")
    assert data["bookings"] == []
    assert len(data["available_dates"]) == 1
    assert data["recorded_sessions"][0]["title"] == recorded_session.title
    assert "video_link" not in data["recorded_sessions"][0]


@pytest.mark.asyncio
async def test_admin_lists_bookings_by_status(
    client: AsyncClient, user: User, admin_user: User, slot: AvailableDate
):
    await _book(client, user, slot)
    response = await client.get("/admin/mentorship?status=PENDING", headers=auth_headers(admin_user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["student_email"] == user.email
