"""
services/submissions/router.py
Task submissions: students submit, admins grade and delete,
owners and admins read.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.submissions import workflow
from shared.middleware.auth import (
    ensure_owner_or_admin,
    get_current_user,
    require_admin,
    require_student,
)
from shared.models.models import Submission, SubmissionStatus, Task, User, UserRole
from shared.schemas.schemas import (
    MessageResponse,
    PaginatedResponse,
    SubmissionCreate,
    SubmissionGradeRequest,
    SubmissionResponse,
)
from shared.utils.audit import log_admin_action

router = APIRouter(prefix="/submissions", tags=["Submissions"])


def _response(submission: Submission, task: Optional[Task] = None, user: Optional[User] = None):
    response = SubmissionResponse.model_validate(submission)
    if task:
        response.task_title = task.title
    if user:
        response.user_name = user.name
    return response


@router.get("", response_model=PaginatedResponse)
async def list_submissions(
    status: Optional[SubmissionStatus] = Query(None),
    task_id: Optional[UUID] = Query(None),
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Students see their own submissions; admins see everyone's."""
    query = (
        select(Submission, Task, User)
        .join(Task, Task.id == Submission.task_id)
        .join(User, User.id == Submission.user_id)
    )
    if current_user.role != UserRole.ADMIN:
        query = query.where(Submission.user_id == current_user.id)
    elif user_id:
        query = query.where(Submission.user_id == user_id)
    if status:
        query = query.where(Submission.status == status)
    if task_id:
        query = query.where(Submission.task_id == task_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Submission.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[_response(s, t, u) for s, t, u in result.all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.get("/stats")
async def my_submission_stats(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Per-status counts and the average score of approved work."""
    result = await db.execute(
        select(Submission.status, func.count())
        .where(Submission.user_id == current_user.id)
        .group_by(Submission.status)
    )
    counts = {row[0]: row[1] for row in result.all()}
    average = await db.scalar(
        select(func.avg(Submission.score)).where(
            Submission.user_id == current_user.id,
            Submission.status == SubmissionStatus.APPROVED,
            Submission.score.is_not(None),
        )
    )
    return {
        "total_submissions": sum(counts.values()),
        "pending_submissions": counts.get(SubmissionStatus.PENDING, 0),
        "approved_submissions": counts.get(SubmissionStatus.APPROVED, 0),
        "rejected_submissions": counts.get(SubmissionStatus.REJECTED, 0),
        "average_score": round(float(average or 0), 2),
    }


@router.post("", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
async def create_submission(
    data: SubmissionCreate,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
):
    submission = await workflow.submit(db, data.task_id, current_user, data.summary)
    await db.commit()
    return _response(submission, user=current_user)


@router.get("/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    submission = await workflow.get_submission(db, submission_id)
    ensure_owner_or_admin(current_user, submission.user_id)
    task = await db.get(Task, submission.task_id)
    return _response(submission, task=task)


@router.patch("/{submission_id}", response_model=SubmissionResponse)
async def grade_submission(
    submission_id: UUID,
    data: SubmissionGradeRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    submission = await workflow.grade(db, submission_id, data.status, data.score, data.feedback)
    log_admin_action(db, current_user, "GRADE_SUBMISSION", "Submission", str(submission_id),
                     data.model_dump(mode="json", exclude_none=True), request)
    await db.commit()
    return _response(submission)


@router.delete("/{submission_id}", response_model=MessageResponse)
async def delete_submission(
    submission_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await workflow.delete(db, submission_id)
    log_admin_action(db, current_user, "DELETE_SUBMISSION", "Submission", str(submission_id),
                     None, request)
    await db.commit()
    return MessageResponse(message="Submission deleted")
