"""
services/catalog/router.py
Recorded session catalog: student listing and admin CRUD.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.catalog import catalog
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import User
from shared.schemas.schemas import (
    MessageResponse,
    RecordedSessionCreate,
    RecordedSessionPublic,
    RecordedSessionResponse,
    RecordedSessionUpdate,
)
from shared.utils.audit import log_admin_action

router = APIRouter(tags=["Recorded Sessions"])


@router.get("/mentorship/recorded-sessions", response_model=list[RecordedSessionPublic])
async def list_recorded_sessions(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Active catalog, newest first."""
    return await catalog.list_sessions(db)


# ── Admin ─────────────────────────────────────────────────────

@router.get("/admin/recorded-sessions", response_model=list[RecordedSessionResponse])
async def admin_list_recorded_sessions(
    include_inactive: bool = Query(True),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await catalog.list_sessions(db, include_inactive=include_inactive)


@router.post(
    "/admin/recorded-sessions",
    response_model=RecordedSessionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def admin_create_recorded_session(
    data: RecordedSessionCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    session = await catalog.create_session(db, **data.model_dump())
    log_admin_action(db, current_user, "CREATE_RECORDED_SESSION", "RecordedSession",
                     str(session.id), {"title": data.title, "price": str(data.price)}, request)
    await db.commit()
    return session


@router.put("/admin/recorded-sessions/{session_id}", response_model=RecordedSessionResponse)
async def admin_update_recorded_session(
    session_id: UUID,
    data: RecordedSessionUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    session = await catalog.update_session(db, session_id, **data.model_dump(exclude_unset=True))
    log_admin_action(db, current_user, "UPDATE_RECORDED_SESSION", "RecordedSession",
                     str(session_id), data.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    return session


@router.delete("/admin/recorded-sessions/{session_id}", response_model=MessageResponse)
async def admin_delete_recorded_session(
    session_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await catalog.delete_session(db, session_id)
    log_admin_action(db, current_user, "DELETE_RECORDED_SESSION", "RecordedSession",
                     str(session_id), None, request)
    await db.commit()
    return MessageResponse(message="Recorded session deleted")
