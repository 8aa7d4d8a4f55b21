"""
services/catalog/catalog.py
Recorded Catalog: purchasable pre-recorded mentorship sessions.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import MentorshipBooking, RecordedSession
from shared.utils.errors import ConflictError, NotFoundError


async def list_sessions(db: AsyncSession, include_inactive: bool = False) -> list[RecordedSession]:
    query = select(RecordedSession)
    if not include_inactive:
        query = query.where(RecordedSession.is_active == True)
    result = await db.execute(query.order_by(RecordedSession.created_at.desc()))
    return list(result.scalars().all())


async def get_session(db: AsyncSession, session_id: UUID) -> RecordedSession:
    session = await db.get(RecordedSession, session_id)
    if not session:
        raise NotFoundError("Recorded session not found")
    return session


async def get_active_session(db: AsyncSession, session_id: UUID) -> RecordedSession:
    """Re-read at purchase time; a deactivated item is as good as missing."""
    result = await db.execute(
        select(RecordedSession)
        .where(RecordedSession.id == session_id)
        .with_for_update()
    )
    session = result.scalar_one_or_none()
    if not session or not session.is_active:
        raise NotFoundError("Recorded session not found or not available")
    return session


async def create_session(
    db: AsyncSession,
    title: str,
    video_link: str,
    price,
    description: Optional[str] = None,
    is_active: bool = True,
) -> RecordedSession:
    session = RecordedSession(
        title=title,
        description=description,
        video_link=video_link,
        price=price,
        is_active=is_active,
    )
    db.add(session)
    await db.flush()
    return session


async def update_session(db: AsyncSession, session_id: UUID, **fields) -> RecordedSession:
    """Only the fields given are written. Existing bookings keep their amount."""
    session = await get_session(db, session_id)
    for key, value in fields.items():
        if value is not None:
            setattr(session, key, value)
    await db.flush()
    return session


async def delete_session(db: AsyncSession, session_id: UUID) -> None:
    """Hard delete, only while nothing was bought. Sold items are deactivated instead."""
    session = await get_session(db, session_id)
    sold = await db.scalar(
        select(func.count(MentorshipBooking.id)).where(MentorshipBooking.recorded_session_id == session_id)
    )
    if sold:
        raise ConflictError("Recorded session has bookings; deactivate it instead")
    await db.delete(session)
    await db.flush()
