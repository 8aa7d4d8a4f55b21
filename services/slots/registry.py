"""
services/slots/registry.py
Slot Registry: bookable face-to-face slots and their reservation state.

Reservation is a conditional UPDATE on is_booked, so of any number of
concurrent attempts on one slot at most one matches a row.
"""

import logging
import uuid
from datetime import date, timedelta
from itertools import groupby
from typing import Iterable, Optional
from uuid import UUID

from sqlalchemy import delete, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AvailableDate
from shared.utils.dates import (
    daterange,
    default_time_slots,
    format_date_dmy,
    format_time_slot,
    is_weekend,
    slot_start,
    utcnow,
)
from shared.utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TimeSlots = Iterable[tuple[str, str]]


def _validate_times(start_time: str, end_time: str) -> None:
    if end_time <= start_time:
        raise ValidationError("end_time must be after start_time", field="end_time")


async def _existing_pairs(db: AsyncSession, start: date, end: date) -> set[tuple[date, str]]:
    result = await db.execute(
        select(AvailableDate.date, AvailableDate.time_slot).where(
            AvailableDate.date >= start, AvailableDate.date <= end
        )
    )
    return {(row.date, row.time_slot) for row in result.all()}


def _insert_ignoring_duplicates(dialect: str, values: dict):
    """INSERT that skips rows clashing with uq_available_dates_date_slot."""
    if dialect == "postgresql":
        return pg_insert(AvailableDate).values(**values).on_conflict_do_nothing(
            index_elements=["date", "time_slot"]
        )
    stmt = insert(AvailableDate).values(**values)
    if dialect == "sqlite":
        stmt = stmt.prefix_with("OR IGNORE")
    return stmt


async def _bulk_create(
    db: AsyncSession,
    days: list[date],
    time_slots: Optional[TimeSlots],
) -> dict:
    """
    Insert one row per (day, slot). Pairs that already exist are skipped,
    including ones another transaction inserts after the pre-check.
    """
    slots = list(time_slots) if time_slots else default_time_slots()
    for start_time, end_time in slots:
        _validate_times(start_time, end_time)
    if not days:
        return {"created": 0, "skipped": 0}

    dialect = db.bind.dialect.name
    existing = await _existing_pairs(db, min(days), max(days))
    created = skipped = 0

    for day in days:
        for start_time, end_time in slots:
            time_slot = format_time_slot(start_time, end_time)
            if (day, time_slot) in existing:
                skipped += 1
                continue
            now = utcnow()
            result = await db.execute(_insert_ignoring_duplicates(dialect, {
                "id": uuid.uuid4(),
                "date": day,
                "start_time": start_time,
                "end_time": end_time,
                "time_slot": time_slot,
                "is_booked": False,
                "created_at": now,
                "updated_at": now,
            }))
            if result.rowcount:
                created += 1
            else:
                skipped += 1
            existing.add((day, time_slot))

    logger.info("Generated slots: created=%d skipped=%d", created, skipped)
    return {"created": created, "skipped": skipped}


# ── Generation ────────────────────────────────────────────────

async def generate_weekly_template(
    db: AsyncSession,
    week_start: date,
    time_slots: Optional[TimeSlots] = None,
) -> dict:
    """Seven consecutive days from week_start times the daily slot matrix."""
    days = [week_start + timedelta(days=i) for i in range(7)]
    return await _bulk_create(db, days, time_slots)


async def generate_range(
    db: AsyncSession,
    start: date,
    end: date,
    time_slots: Optional[TimeSlots] = None,
    exclude_weekends: bool = False,
) -> dict:
    if end < start:
        raise ValidationError("end_date must not be before start_date", field="end_date")
    days = [d for d in daterange(start, end) if not (exclude_weekends and is_weekend(d))]
    return await _bulk_create(db, days, time_slots)


# ── Single-slot CRUD ──────────────────────────────────────────

async def create_slot(db: AsyncSession, slot_date: date, start_time: str, end_time: str) -> AvailableDate:
    _validate_times(start_time, end_time)
    time_slot = format_time_slot(start_time, end_time)

    duplicate = await db.scalar(
        select(AvailableDate.id).where(
            AvailableDate.date == slot_date, AvailableDate.time_slot == time_slot
        )
    )
    if duplicate:
        raise ConflictError("A slot already exists for this date and time")

    slot = AvailableDate(
        date=slot_date,
        start_time=start_time,
        end_time=end_time,
        time_slot=time_slot,
    )
    db.add(slot)
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("A slot already exists for this date and time")
    return slot


async def get_slot(db: AsyncSession, slot_id: UUID, lock: bool = False) -> AvailableDate:
    query = select(AvailableDate).where(AvailableDate.id == slot_id)
    if lock:
        query = query.with_for_update()
    slot = (await db.execute(query)).scalar_one_or_none()
    if not slot:
        raise NotFoundError("Slot not found")
    return slot


async def update_slot(
    db: AsyncSession,
    slot_id: UUID,
    slot_date: Optional[date] = None,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
) -> AvailableDate:
    slot = await get_slot(db, slot_id, lock=True)
    if slot.is_booked:
        raise ConflictError("Cannot modify a booked slot")

    new_date = slot_date or slot.date
    new_start = start_time or slot.start_time
    new_end = end_time or slot.end_time
    _validate_times(new_start, new_end)
    new_slot = format_time_slot(new_start, new_end)

    clash = await db.scalar(
        select(AvailableDate.id).where(
            AvailableDate.date == new_date,
            AvailableDate.time_slot == new_slot,
            AvailableDate.id != slot_id,
        )
    )
    if clash:
        raise ConflictError("A slot already exists for this date and time")

    slot.date = new_date
    slot.start_time = new_start
    slot.end_time = new_end
    slot.time_slot = new_slot
    await db.flush()
    return slot


async def delete_slot(db: AsyncSession, slot_id: UUID) -> None:
    """Delete only while unbooked; the predicate is part of the DELETE."""
    result = await db.execute(
        delete(AvailableDate)
        .where(AvailableDate.id == slot_id, AvailableDate.is_booked == False)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await get_slot(db, slot_id)
        raise ConflictError("Cannot delete a booked slot")


async def delete_unbooked(db: AsyncSession, start: date, end: date) -> int:
    """Clear every unbooked slot in [start, end]. Booked ones are left alone."""
    result = await db.execute(
        delete(AvailableDate)
        .where(
            AvailableDate.date >= start,
            AvailableDate.date <= end,
            AvailableDate.is_booked == False,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# ── Reservation ───────────────────────────────────────────────

async def reserve(db: AsyncSession, slot_id: UUID, booking_id: UUID) -> None:
    result = await db.execute(
        update(AvailableDate)
        .where(AvailableDate.id == slot_id, AvailableDate.is_booked == False)
        .values(is_booked=True, booking_id=booking_id)
        .execution_options(synchronize_session="evaluate")
    )
    if result.rowcount == 0:
        await get_slot(db, slot_id)
        raise ConflictError("Slot no longer available")
    logger.info("Slot %s reserved for booking %s", slot_id, booking_id)


async def release(db: AsyncSession, slot_id: UUID) -> None:
    await db.execute(
        update(AvailableDate)
        .where(AvailableDate.id == slot_id)
        .values(is_booked=False, booking_id=None)
        .execution_options(synchronize_session="evaluate")
    )
    logger.info("Slot %s released", slot_id)


async def find_open_slot(db: AsyncSession, slot_date: date, start_time: str) -> Optional[AvailableDate]:
    result = await db.execute(
        select(AvailableDate).where(
            AvailableDate.date == slot_date,
            AvailableDate.start_time == start_time,
            AvailableDate.is_booked == False,
        )
    )
    return result.scalars().first()


# ── Listing ───────────────────────────────────────────────────

async def list_slots(
    db: AsyncSession,
    from_date: Optional[date] = None,
    to_date: Optional[date] = None,
    only_available: bool = False,
) -> list[AvailableDate]:
    query = select(AvailableDate)
    if from_date:
        query = query.where(AvailableDate.date >= from_date)
    if to_date:
        query = query.where(AvailableDate.date <= to_date)
    if only_available:
        query = query.where(AvailableDate.is_booked == False)
    result = await db.execute(query.order_by(AvailableDate.date, AvailableDate.start_time))
    return list(result.scalars().all())


async def list_available(db: AsyncSession, from_date: date) -> list[dict]:
    """Unbooked slots on or after from_date that have not started yet, grouped by calendar day."""
    now = utcnow()
    slots = [
        slot for slot in await list_slots(db, from_date=from_date, only_available=True)
        if slot_start(slot.date, slot.start_time) > now
    ]
    return [
        {"date": day, "display_date": format_date_dmy(day), "slots": list(day_slots)}
        for day, day_slots in groupby(slots, key=lambda s: s.date)
    ]
