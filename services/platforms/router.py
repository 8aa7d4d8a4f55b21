"""
services/platforms/router.py
Learning catalog: platforms, their tasks, and student enrollments.
Enrolling in a paid platform charges the wallet in the same transaction.
"""

from datetime import timedelta
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import get_current_user, require_admin, require_student
from shared.models.models import (
    Enrollment,
    Platform,
    Submission,
    Task,
    TransactionType,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    EnrollmentCreate,
    EnrollmentResponse,
    MessageResponse,
    PlatformCreate,
    PlatformResponse,
    PlatformUpdate,
    TaskCreate,
    TaskResponse,
    TaskUpdate,
)
from shared.utils.audit import log_admin_action
from shared.utils.dates import ensure_utc, utcnow
from shared.utils.errors import AuthorizationError, ConflictError, NotFoundError

router = APIRouter(tags=["Platforms"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_platform_or_404(platform_id: UUID, db: AsyncSession) -> Platform:
    platform = await db.get(Platform, platform_id)
    if not platform:
        raise NotFoundError("Platform not found")
    return platform


async def _get_task_or_404(task_id: UUID, db: AsyncSession) -> Task:
    task = await db.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")
    return task


async def _active_enrollment(db: AsyncSession, user_id: UUID, platform_id: UUID) -> Optional[Enrollment]:
    result = await db.execute(
        select(Enrollment).where(
            Enrollment.user_id == user_id,
            Enrollment.platform_id == platform_id,
        )
    )
    enrollment = result.scalar_one_or_none()
    if enrollment and ensure_utc(enrollment.expires_at) > utcnow():
        return enrollment
    return None


async def _delete_tasks(db: AsyncSession, task_ids) -> None:
    """Remove tasks and their submissions without loading them."""
    await db.execute(delete(Submission).where(Submission.task_id.in_(task_ids)))
    await db.execute(delete(Task).where(Task.id.in_(task_ids)))


def _enrollment_response(enrollment: Enrollment, platform: Optional[Platform] = None) -> EnrollmentResponse:
    response = EnrollmentResponse.model_validate(enrollment)
    response.is_expired = ensure_utc(enrollment.expires_at) <= utcnow()
    if platform:
        response.platform_name = platform.name
    return response


# ── Platforms ─────────────────────────────────────────────────

@router.get("/platforms", response_model=list[PlatformResponse])
async def list_platforms(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """All platforms with task counts and whether the caller holds a live enrollment."""
    task_counts = (
        select(Task.platform_id, func.count(Task.id).label("task_count"))
        .group_by(Task.platform_id)
        .subquery()
    )
    result = await db.execute(
        select(Platform, func.coalesce(task_counts.c.task_count, 0))
        .outerjoin(task_counts, task_counts.c.platform_id == Platform.id)
        .order_by(Platform.created_at.desc())
    )
    rows = result.all()

    enrolled = await db.execute(
        select(Enrollment.platform_id, Enrollment.expires_at).where(
            Enrollment.user_id == current_user.id
        )
    )
    now = utcnow()
    live = {row.platform_id for row in enrolled.all() if ensure_utc(row.expires_at) > now}

    items = []
    for platform, task_count in rows:
        response = PlatformResponse.model_validate(platform)
        response.task_count = task_count
        response.is_enrolled = platform.id in live
        items.append(response)
    return items


@router.get("/platforms/{platform_id}", response_model=PlatformResponse)
async def get_platform(
    platform_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    platform = await _get_platform_or_404(platform_id, db)
    response = PlatformResponse.model_validate(platform)
    response.task_count = await db.scalar(select(func.count(Task.id)).where(Task.platform_id == platform_id))
    response.is_enrolled = await _active_enrollment(db, current_user.id, platform_id) is not None
    return response


@router.post("/platforms", response_model=PlatformResponse, status_code=status.HTTP_201_CREATED)
async def create_platform(
    data: PlatformCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    platform = Platform(**data.model_dump())
    db.add(platform)
    await db.flush()
    log_admin_action(db, current_user, "CREATE_PLATFORM", "Platform", str(platform.id),
                     {"name": data.name}, request)
    await db.commit()
    return platform


@router.patch("/platforms/{platform_id}", response_model=PlatformResponse)
async def update_platform(
    platform_id: UUID,
    data: PlatformUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    platform = await _get_platform_or_404(platform_id, db)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(platform, key, value)
    log_admin_action(db, current_user, "UPDATE_PLATFORM", "Platform", str(platform_id),
                     data.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    return platform


@router.delete("/platforms/{platform_id}", response_model=MessageResponse)
async def delete_platform(
    platform_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    platform = await _get_platform_or_404(platform_id, db)
    await _delete_tasks(db, select(Task.id).where(Task.platform_id == platform_id))
    await db.execute(delete(Enrollment).where(Enrollment.platform_id == platform_id))
    await db.delete(platform)
    log_admin_action(db, current_user, "DELETE_PLATFORM", "Platform", str(platform_id), None, request)
    await db.commit()
    return MessageResponse(message="Platform deleted")


# ── Tasks ─────────────────────────────────────────────────────

@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(
    platform_id: UUID = Query(...),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Students need a live enrollment in the platform to see its tasks."""
    await _get_platform_or_404(platform_id, db)
    if current_user.role != UserRole.ADMIN:
        if not await _active_enrollment(db, current_user.id, platform_id):
            raise AuthorizationError("Enroll in this platform to view its tasks")

    result = await db.execute(
        select(Task).where(Task.platform_id == platform_id).order_by(Task.order, Task.created_at)
    )
    return result.scalars().all()


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(
    task_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Same enrollment gate as the task list."""
    task = await _get_task_or_404(task_id, db)
    if current_user.role != UserRole.ADMIN:
        if not await _active_enrollment(db, current_user.id, task.platform_id):
            raise AuthorizationError("Enroll in this platform to view its tasks")
    return task


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    data: TaskCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _get_platform_or_404(data.platform_id, db)
    task = Task(**data.model_dump())
    db.add(task)
    await db.flush()
    log_admin_action(db, current_user, "CREATE_TASK", "Task", str(task.id),
                     {"title": data.title, "platform_id": str(data.platform_id)}, request)
    await db.commit()
    return task


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(
    task_id: UUID,
    data: TaskUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    task = await _get_task_or_404(task_id, db)
    for key, value in data.model_dump(exclude_unset=True).items():
        setattr(task, key, value)
    log_admin_action(db, current_user, "UPDATE_TASK", "Task", str(task_id),
                     data.model_dump(mode="json", exclude_unset=True), request)
    await db.commit()
    return task


@router.delete("/tasks/{task_id}", response_model=MessageResponse)
async def delete_task(
    task_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    task = await _get_task_or_404(task_id, db)
    await _delete_tasks(db, select(Task.id).where(Task.id == task_id))
    log_admin_action(db, current_user, "DELETE_TASK", "Task", str(task_id), None, request)
    await db.commit()
    return MessageResponse(message="Task deleted")


# ── Enrollments ───────────────────────────────────────────────

@router.get("/enrollments", response_model=list[EnrollmentResponse])
async def list_enrollments(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Enrollment, Platform)
        .join(Platform, Platform.id == Enrollment.platform_id)
        .where(Enrollment.user_id == current_user.id)
        .order_by(Enrollment.created_at.desc())
    )
    return [_enrollment_response(e, p) for e, p in result.all()]


@router.post("/enrollments", response_model=EnrollmentResponse, status_code=status.HTTP_201_CREATED)
async def enroll(
    data: EnrollmentCreate,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    """
    Enroll for ENROLLMENT_DURATION_DAYS. Paid platforms are charged through the
    ledger; an expired enrollment is renewed (and charged) in place.
    """
    platform = await _get_platform_or_404(data.platform_id, db)

    result = await db.execute(
        select(Enrollment)
        .where(Enrollment.user_id == current_user.id, Enrollment.platform_id == platform.id)
        .with_for_update()
    )
    enrollment = result.scalar_one_or_none()
    now = utcnow()
    if enrollment and ensure_utc(enrollment.expires_at) > now:
        raise ConflictError("Already enrolled in this platform")

    if platform.is_paid and platform.price:
        await ledger.charge(
            db,
            current_user.id,
            platform.price,
            TransactionType.PLATFORM_PURCHASE,
            f"Enrollment in {platform.name}",
        )

    expires_at = now + timedelta(days=settings.ENROLLMENT_DURATION_DAYS)
    if enrollment:
        enrollment.expires_at = expires_at
    else:
        enrollment = Enrollment(
            user_id=current_user.id,
            platform_id=platform.id,
            expires_at=expires_at,
        )
        db.add(enrollment)

    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("Already enrolled in this platform")

    await db.commit()
    return _enrollment_response(enrollment, platform)
