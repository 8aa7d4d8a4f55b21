"""
tests/test_slots.py
Tests for the slot registry: bulk generation, admin CRUD, reservation and
the grouped listing students see.
"""

import asyncio
import uuid
from datetime import date, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.slots import registry
from shared.models.models import AvailableDate, User
from shared.utils.dates import utcnow
from shared.utils.errors import ConflictError, NotFoundError, ValidationError
from tests.conftest import auth_headers, make_slot, reload


def _monday_after(days: int = 7) -> date:
    start = date.today() + timedelta(days=days)
    return start - timedelta(days=start.weekday())


# ── Generation ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_weekly_template_creates_hourly_matrix(db: AsyncSession):
    """Seven days times 13 hourly slots between 09:00 and 22:00."""
    counts = await registry.generate_weekly_template(db, _monday_after())
    await db.commit()

    assert counts == {"created": 91, "skipped": 0}
    first_day = await db.execute(
        select(AvailableDate.time_slot)
        .where(AvailableDate.date == _monday_after())
        .order_by(AvailableDate.start_time)
    )
    slots = first_day.scalars().all()
    assert slots[0] == "09:00 - 10:00"
    assert slots[-1] == "21:00 - 22:00"


@pytest.mark.asyncio
async def test_weekly_template_skips_existing_pairs(db: AsyncSession):
    week_start = _monday_after()
    await registry.create_slot(db, week_start, "09:00", "10:00")
    await db.commit()

    counts = await registry.generate_weekly_template(db, week_start)
    await db.commit()
    assert counts == {"created": 90, "skipped": 1}

    again = await registry.generate_weekly_template(db, week_start)
    assert again == {"created": 0, "skipped": 91}
    assert await db.scalar(select(func.count(AvailableDate.id))) == 91


@pytest.mark.asyncio
async def test_generate_range_excluding_weekends(db: AsyncSession):
    monday = _monday_after()
    counts = await registry.generate_range(
        db, monday, monday + timedelta(days=6), [("10:00", "11:00")], exclude_weekends=True
    )
    assert counts == {"created": 5, "skipped": 0}


@pytest.mark.asyncio
async def test_generate_range_rejects_inverted_dates(db: AsyncSession):
    today = date.today()
    with pytest.raises(ValidationError):
        await registry.generate_range(db, today, today - timedelta(days=1))


# ── Single-slot CRUD ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_duplicate_slot_conflicts(db: AsyncSession, slot: AvailableDate):
    with pytest.raises(ConflictError):
        await registry.create_slot(db, slot.date, slot.start_time, slot.end_time)


@pytest.mark.asyncio
async def test_booked_slot_cannot_be_updated_or_deleted(db: AsyncSession, slot: AvailableDate):
    await registry.reserve(db, slot.id, uuid.uuid4())
    await db.commit()

    with pytest.raises(ConflictError):
        await registry.update_slot(db, slot.id, start_time="12:00", end_time="13:00")
    with pytest.raises(ConflictError):
        await registry.delete_slot(db, slot.id)


@pytest.mark.asyncio
async def test_delete_missing_slot_is_not_found(db: AsyncSession):
    with pytest.raises(NotFoundError):
        await registry.delete_slot(db, uuid.uuid4())


@pytest.mark.asyncio
async def test_delete_unbooked_keeps_booked(db: AsyncSession):
    booked = await make_slot(db, start_time="09:00", end_time="10:00")
    await make_slot(db, start_time="10:00", end_time="11:00")
    await registry.reserve(db, booked.id, uuid.uuid4())

    removed = await registry.delete_unbooked(db, booked.date, booked.date)
    await db.commit()
    assert removed == 1
    assert await db.scalar(select(func.count(AvailableDate.id))) == 1


# ── Reservation ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reserve_then_release(db: AsyncSession, slot: AvailableDate):
    booking_id = uuid.uuid4()
    await registry.reserve(db, slot.id, booking_id)
    await db.commit()
    assert (await reload(db, slot)).is_booked
    assert slot.booking_id == booking_id

    with pytest.raises(ConflictError, match="Slot no longer available"):
        await registry.reserve(db, slot.id, uuid.uuid4())

    await registry.release(db, slot.id)
    await db.commit()
    slot = await reload(db, slot)
    assert not slot.is_booked
    assert slot.booking_id is None


@pytest.mark.asyncio
async def test_reserve_missing_slot_is_not_found(db: AsyncSession):
    with pytest.raises(NotFoundError):
        await registry.reserve(db, uuid.uuid4(), uuid.uuid4())


@pytest.mark.asyncio
async def test_concurrent_reserve_only_one_wins(session_factory, db: AsyncSession, slot: AvailableDate):
    async def attempt() -> bool:
        async with session_factory() as session:
            try:
                await registry.reserve(session, slot.id, uuid.uuid4())
                await session.commit()
                return True
            except ConflictError:
                await session.rollback()
                return False

    outcomes = await asyncio.gather(*(attempt() for _ in range(5)))
    assert outcomes.count(True) == 1
    assert (await reload(db, slot)).is_booked


# ── Endpoints ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_available_dates_grouped_by_day(client: AsyncClient, user: User, db: AsyncSession):
    await make_slot(db, days_ahead=2, start_time="11:00", end_time="12:00")
    await make_slot(db, days_ahead=2, start_time="09:00", end_time="10:00")
    taken = await make_slot(db, days_ahead=2, start_time="13:00", end_time="14:00")
    await make_slot(db, days_ahead=4)
    await make_slot(db, days_ahead=-1)
    await registry.reserve(db, taken.id, uuid.uuid4())
    await db.commit()

    response = await client.get("/mentorship/available-dates", headers=auth_headers(user))
    assert response.status_code == 200
    days = response.json()
    assert len(days) == 2
    in_two_days = date.today() + timedelta(days=2)
    assert days[0]["date"] == in_two_days.isoformat()
    assert days[0]["display_date"] == in_two_days.strftime("%d/%m/%Y")
    assert [s["start_time"] for s in days[0]["slots"]] == ["09:00", "11:00"]


@pytest.mark.asyncio
async def test_slots_already_started_today_are_not_listed(db: AsyncSession):
    today = utcnow().date()
    await registry.create_slot(db, today, "00:00", "00:30")
    await registry.create_slot(db, today + timedelta(days=1), "00:00", "00:30")
    await db.commit()

    days = await registry.list_available(db, today)
    assert [d["date"] for d in days] == [today + timedelta(days=1)]


@pytest.mark.asyncio
async def test_student_cannot_manage_slots(client: AsyncClient, user: User):
    response = await client.post(
        "/admin/available-dates/weekly-template",
        headers=auth_headers(user),
        json={"week_start": _monday_after().isoformat()},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_admin_slot_crud(client: AsyncClient, admin_user: User):
    headers = auth_headers(admin_user)
    day = (date.today() + timedelta(days=5)).isoformat()

    created = await client.post(
        "/admin/available-dates",
        headers=headers,
        json={"date": day, "start_time": "15:00", "end_time": "16:00"},
    )
    assert created.status_code == 201
    slot_id = created.json()["id"]
    assert created.json()["time_slot"] == "15:00 - 16:00"

    duplicate = await client.post(
        "/admin/available-dates",
        headers=headers,
        json={"date": day, "start_time": "15:00", "end_time": "16:00"},
    )
    assert duplicate.status_code == 409

    updated = await client.put(
        f"/admin/available-dates/{slot_id}",
        headers=headers,
        json={"start_time": "16:00", "end_time": "17:00"},
    )
    assert updated.status_code == 200
    assert updated.json()["time_slot"] == "16:00 - 17:00"

    deleted = await client.delete(f"/admin/available-dates/{slot_id}", headers=headers)
    assert deleted.status_code == 200


@pytest.mark.asyncio
async def test_admin_slot_with_inverted_times_rejected(client: AsyncClient, admin_user: User):
    response = await client.post(
        "/admin/available-dates",
        headers=auth_headers(admin_user),
        json={"date": date.today().isoformat(), "start_time": "12:00", "end_time": "11:00"},
    )
    assert response.status_code == 400
