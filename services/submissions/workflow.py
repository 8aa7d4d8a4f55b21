"""
services/submissions/workflow.py
Submission Workflow: students submit task summaries, admins grade them.
At most one PENDING/APPROVED submission exists per (task, user); a
REJECTED one does not block resubmission.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    ACTIVE_SUBMISSION_STATUSES,
    Submission,
    SubmissionStatus,
    Task,
    User,
)
from shared.utils.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


async def _active_submission_id(
    db: AsyncSession,
    task_id: UUID,
    user_id: UUID,
    exclude_id: Optional[UUID] = None,
) -> Optional[UUID]:
    query = select(Submission.id).where(
        Submission.task_id == task_id,
        Submission.user_id == user_id,
        Submission.status.in_(ACTIVE_SUBMISSION_STATUSES),
    )
    if exclude_id:
        query = query.where(Submission.id != exclude_id)
    return await db.scalar(query.limit(1))


async def _flush_or_conflict(db: AsyncSession) -> None:
    # The partial unique index catches a concurrent duplicate the pre-check missed
    try:
        await db.flush()
    except IntegrityError:
        raise ConflictError("An active submission already exists for this task")


async def get_submission(db: AsyncSession, submission_id: UUID) -> Submission:
    submission = await db.get(Submission, submission_id)
    if not submission:
        raise NotFoundError("Submission not found")
    return submission


async def submit(db: AsyncSession, task_id: UUID, user: User, summary: str) -> Submission:
    summary = (summary or "").strip()
    if not summary:
        raise ValidationError("Summary is required", field="summary")

    task = await db.get(Task, task_id)
    if not task:
        raise NotFoundError("Task not found")

    if await _active_submission_id(db, task_id, user.id):
        raise ConflictError("You already have a pending or approved submission for this task")

    submission = Submission(
        task_id=task_id,
        user_id=user.id,
        summary=summary,
        status=SubmissionStatus.PENDING,
    )
    db.add(submission)
    await _flush_or_conflict(db)
    logger.info("Submission %s created for task %s by %s", submission.id, task_id, user.id)
    return submission


async def grade(
    db: AsyncSession,
    submission_id: UUID,
    status: Optional[SubmissionStatus] = None,
    score: Optional[int] = None,
    feedback: Optional[str] = None,
) -> Submission:
    """Write whichever of status, score and feedback are given."""
    if score is not None and not 0 <= score <= 100:
        raise ValidationError("Score must be between 0 and 100", field="score")

    submission = await get_submission(db, submission_id)

    if status is not None:
        status = SubmissionStatus(status)
        becomes_active = (
            status in ACTIVE_SUBMISSION_STATUSES
            and submission.status not in ACTIVE_SUBMISSION_STATUSES
        )
        if becomes_active and await _active_submission_id(
            db, submission.task_id, submission.user_id, exclude_id=submission.id
        ):
            raise ConflictError("Another active submission exists for this task")
        submission.status = status

    if score is not None:
        submission.score = score
    if feedback is not None:
        submission.feedback = feedback

    await _flush_or_conflict(db)
    return submission


async def delete(db: AsyncSession, submission_id: UUID) -> None:
    submission = await get_submission(db, submission_id)
    await db.delete(submission)
    await db.flush()
