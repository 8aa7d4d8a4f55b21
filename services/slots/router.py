"""
services/slots/router.py
Face-to-face slot calendar: student listing and admin management.
"""

from datetime import date
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.slots import registry
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import User
from shared.schemas.schemas import (
    AvailableDateCreate,
    AvailableDateResponse,
    AvailableDateUpdate,
    AvailableDayResponse,
    MessageResponse,
    SlotGenerationResponse,
    SlotRangeRequest,
    WeeklyTemplateRequest,
)
from shared.utils.audit import log_admin_action
from shared.utils.dates import utcnow

router = APIRouter(tags=["Available Dates"])


def _slot_pairs(time_slots):
    if not time_slots:
        return None
    return [(s.start_time, s.end_time) for s in time_slots]


# ── Student ───────────────────────────────────────────────────

@router.get("/mentorship/available-dates", response_model=list[AvailableDayResponse])
async def list_available_dates(
    from_date: Optional[date] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Open slots from today (or from_date, if later), grouped by day."""
    today = utcnow().date()
    start = max(from_date, today) if from_date else today
    return await registry.list_available(db, start)


# ── Admin ─────────────────────────────────────────────────────

@router.get("/admin/available-dates", response_model=list[AvailableDateResponse])
async def admin_list_dates(
    from_date: Optional[date] = Query(None),
    to_date: Optional[date] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """All slots, booked ones included."""
    return await registry.list_slots(db, from_date=from_date, to_date=to_date)


@router.post(
    "/admin/available-dates",
    response_model=AvailableDateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def admin_create_date(
    data: AvailableDateCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    slot = await registry.create_slot(db, data.date, data.start_time, data.end_time)
    log_admin_action(db, current_user, "CREATE_SLOT", "AvailableDate", str(slot.id),
                     {"date": data.date.isoformat(), "time_slot": slot.time_slot}, request)
    await db.commit()
    return slot


@router.post("/admin/available-dates/range", response_model=SlotGenerationResponse)
async def admin_generate_range(
    data: SlotRangeRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Bulk-create the slot matrix for every day in [start_date, end_date]."""
    counts = await registry.generate_range(
        db,
        data.start_date,
        data.end_date,
        _slot_pairs(data.time_slots),
        exclude_weekends=data.exclude_weekends,
    )
    log_admin_action(db, current_user, "GENERATE_SLOTS", "AvailableDate", None,
                     {"start": data.start_date.isoformat(), "end": data.end_date.isoformat(), **counts},
                     request)
    await db.commit()
    return counts


@router.post("/admin/available-dates/weekly-template", response_model=SlotGenerationResponse)
async def admin_generate_weekly_template(
    data: WeeklyTemplateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Seven days of hourly slots. Existing (date, time slot) pairs are skipped."""
    counts = await registry.generate_weekly_template(db, data.week_start, _slot_pairs(data.time_slots))
    log_admin_action(db, current_user, "GENERATE_WEEKLY_TEMPLATE", "AvailableDate", None,
                     {"week_start": data.week_start.isoformat(), **counts}, request)
    await db.commit()
    return counts


@router.put("/admin/available-dates/{slot_id}", response_model=AvailableDateResponse)
async def admin_update_date(
    slot_id: UUID,
    data: AvailableDateUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    slot = await registry.update_slot(db, slot_id, data.date, data.start_time, data.end_time)
    log_admin_action(db, current_user, "UPDATE_SLOT", "AvailableDate", str(slot_id),
                     data.model_dump(mode="json", exclude_none=True), request)
    await db.commit()
    return slot


@router.delete("/admin/available-dates/{slot_id}", response_model=MessageResponse)
async def admin_delete_date(
    slot_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await registry.delete_slot(db, slot_id)
    log_admin_action(db, current_user, "DELETE_SLOT", "AvailableDate", str(slot_id), None, request)
    await db.commit()
    return MessageResponse(message="Slot deleted")


@router.delete("/admin/available-dates", response_model=MessageResponse)
async def admin_clear_dates(
    request: Request,
    from_date: date = Query(...),
    to_date: date = Query(...),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Remove every unbooked slot in the range."""
    removed = await registry.delete_unbooked(db, from_date, to_date)
    log_admin_action(db, current_user, "CLEAR_SLOTS", "AvailableDate", None,
                     {"from": from_date.isoformat(), "to": to_date.isoformat(), "removed": removed},
                     request)
    await db.commit()
    return MessageResponse(message=f"Removed {removed} unbooked slots")
