"""
services/admin/router.py
Admin-only endpoints: top-up queue, transaction audit, user moderation,
balance resets, dashboard stats, and the immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    BookingStatus,
    Enrollment,
    MentorshipBooking,
    Platform,
    RefreshToken,
    Submission,
    SubmissionStatus,
    Task,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AdminStatsResponse,
    AdminUserCreateRequest,
    AdminUserUpdateRequest,
    AuditLogResponse,
    MessageResponse,
    PaginatedResponse,
    ResetBalanceRequest,
    TopUpAction,
    TopUpResolveRequest,
    TransactionResponse,
    UserResponse,
)
from shared.utils.audit import log_admin_action
from shared.utils.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from shared.utils.security import hash_password

router = APIRouter(prefix="/admin", tags=["Admin"])


# ── Helpers ───────────────────────────────────────────────────

def _transaction_response(txn: Transaction, user: Optional[User] = None) -> TransactionResponse:
    response = TransactionResponse.model_validate(txn)
    if user:
        response.user_name = user.name
        response.user_email = user.email
    return response


async def _get_user_or_404(user_id: UUID, db: AsyncSession) -> User:
    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


# ── Top-up Queue ──────────────────────────────────────────────

@router.get("/topup", response_model=list[TransactionResponse])
async def list_top_ups(
    status: TransactionStatus = Query(TransactionStatus.PENDING),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Top-up requests awaiting review, oldest first (FIFO queue)."""
    result = await db.execute(
        select(Transaction, User)
        .join(User, User.id == Transaction.user_id)
        .where(Transaction.type == TransactionType.TOP_UP, Transaction.status == status)
        .order_by(Transaction.created_at.asc())
    )
    return [_transaction_response(txn, user) for txn, user in result.all()]


@router.post("/topup", response_model=TransactionResponse)
async def resolve_top_up(
    data: TopUpResolveRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Approve (credit the balance) or reject a pending top-up.
    A top-up can be resolved exactly once; a second attempt returns 409.
    """
    approve = TopUpAction(data.action) == TopUpAction.APPROVE
    txn = await ledger.resolve_top_up(db, data.transaction_id, approve, current_user)
    log_admin_action(db, current_user, f"{TopUpAction(data.action).value}_TOPUP", "Transaction",
                     str(txn.id), {"amount": str(txn.amount), "user_id": str(txn.user_id)}, request)
    await db.commit()
    return _transaction_response(txn)


# ── Transactions ──────────────────────────────────────────────

@router.get("/transactions", response_model=PaginatedResponse)
async def list_transactions(
    type: Optional[TransactionType] = Query(None),
    status: Optional[TransactionStatus] = Query(None),
    user_id: Optional[UUID] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Every ledger row across all users, newest first."""
    query = select(Transaction, User).join(User, User.id == Transaction.user_id)
    if type:
        query = query.where(Transaction.type == type)
    if status:
        query = query.where(Transaction.status == status)
    if user_id:
        query = query.where(Transaction.user_id == user_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Transaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[_transaction_response(txn, user) for txn, user in result.all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


# ── User Moderation ───────────────────────────────────────────

@router.get("/users", response_model=PaginatedResponse)
async def list_users(
    role: Optional[UserRole] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.where(func.lower(User.name).like(pattern) | func.lower(User.email).like(pattern))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return PaginatedResponse(
        items=[UserResponse.model_validate(u) for u in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    data: AdminUserCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Create an account with any role. Students get the same starting balance as on signup."""
    email = data.email.lower()
    if await db.scalar(select(User.id).where(func.lower(User.email) == email)):
        raise ConflictError("An account with this email already exists")

    role = UserRole(data.role)
    user = User(
        email=email,
        name=data.name,
        password_hash=hash_password(data.password),
        phone_number=data.phone_number,
        role=role,
    )
    db.add(user)
    await db.flush()
    if role == UserRole.STUDENT and settings.STARTING_BALANCE > 0:
        await ledger.credit(db, user.id, settings.STARTING_BALANCE, TransactionType.WELCOME_BONUS, "Welcome bonus")

    log_admin_action(db, current_user, "CREATE_USER", "User", str(user.id),
                     {"email": email, "role": role.value}, request)
    await db.commit()
    return UserResponse.model_validate(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: UUID,
    data: AdminUserUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user_or_404(user_id, db)
    changes = data.model_dump(exclude_none=True)

    if "role" in changes:
        role = UserRole(changes["role"])
        if user.id == current_user.id and role != user.role:
            raise ValidationError("Cannot change your own role", field="role")
        if role != UserRole.ADMIN:
            user.is_mentor = False
        user.role = role
    if "name" in changes:
        user.name = changes["name"]
    if "phone_number" in changes:
        user.phone_number = changes["phone_number"]

    log_admin_action(db, current_user, "UPDATE_USER", "User", str(user_id), changes, request)
    await db.commit()
    return UserResponse.model_validate(user)


# (label, count query) for every kind of row that keeps a user from being deleted
def _user_history(user_id: UUID):
    return (
        ("transactions", select(func.count(Transaction.id)).where(
            (Transaction.user_id == user_id) | (Transaction.resolved_by_id == user_id))),
        ("submissions", select(func.count(Submission.id)).where(Submission.user_id == user_id)),
        ("enrollments", select(func.count(Enrollment.id)).where(Enrollment.user_id == user_id)),
        ("mentorship bookings", select(func.count(MentorshipBooking.id)).where(
            (MentorshipBooking.student_id == user_id) | (MentorshipBooking.mentor_id == user_id))),
        ("audit log entries", select(func.count(AdminAuditLog.id)).where(AdminAuditLog.admin_id == user_id)),
    )


@router.delete("/users/{user_id}", response_model=MessageResponse)
async def delete_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Permanently remove an account that has no history. Anything with ledger,
    learning or booking rows must be suspended instead.
    """
    user = await _get_user_or_404(user_id, db)
    if user.id == current_user.id:
        raise ValidationError("Cannot delete your own account")

    for label, query in _user_history(user_id):
        if await db.scalar(query):
            raise ConflictError(f"Cannot delete a user with existing {label}")

    await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
    await db.delete(user)
    log_admin_action(db, current_user, "DELETE_USER", "User", str(user_id), {"email": user.email}, request)
    await db.commit()
    return MessageResponse(message="User deleted")


@router.post("/users/{user_id}/reset-balance", response_model=UserResponse)
async def reset_balance(
    user_id: UUID,
    data: ResetBalanceRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Set a balance outright. The difference is recorded as an ADJUSTMENT."""
    user = await _get_user_or_404(user_id, db)
    previous = user.balance
    await ledger.reset_balance(db, user_id, data.balance, current_user, data.reason)
    log_admin_action(db, current_user, "RESET_BALANCE", "User", str(user_id),
                     {"from": str(previous), "to": str(data.balance), "reason": data.reason}, request)
    await db.commit()
    return UserResponse.model_validate(user)


@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivate a user account. Admins cannot be suspended."""
    user = await _get_user_or_404(user_id, db)
    if user.role == UserRole.ADMIN:
        raise AuthorizationError("Cannot suspend admin users")
    if not user.is_active:
        raise ConflictError("User is already suspended")

    user.is_active = False
    log_admin_action(db, current_user, "SUSPEND_USER", "User", str(user_id), None, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    user = await _get_user_or_404(user_id, db)
    user.is_active = True
    log_admin_action(db, current_user, "REACTIVATE_USER", "User", str(user_id), None, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Stats ─────────────────────────────────────────────────────

@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Dashboard counters."""
    total_students = await db.scalar(
        select(func.count(User.id)).where(User.role == UserRole.STUDENT)
    )
    total_platforms = await db.scalar(select(func.count(Platform.id)))
    total_tasks = await db.scalar(select(func.count(Task.id)))
    pending_submissions = await db.scalar(
        select(func.count(Submission.id)).where(Submission.status == SubmissionStatus.PENDING)
    )
    pending_topups = await db.scalar(
        select(func.count(Transaction.id)).where(
            Transaction.type == TransactionType.TOP_UP,
            Transaction.status == TransactionStatus.PENDING,
        )
    )
    pending_bookings = await db.scalar(
        select(func.count(MentorshipBooking.id)).where(
            MentorshipBooking.status == BookingStatus.PENDING
        )
    )
    total_balance = await db.scalar(
        select(func.sum(User.balance)).where(User.role == UserRole.STUDENT)
    )
    # Session charges minus refunds
    mentorship_revenue = await db.scalar(
        select(func.sum(Transaction.amount)).where(
            Transaction.type.in_([
                TransactionType.RECORDED_SESSION,
                TransactionType.FACE_TO_FACE_SESSION,
            ]),
            Transaction.status == TransactionStatus.APPROVED,
        )
    )

    return AdminStatsResponse(
        total_students=total_students or 0,
        total_platforms=total_platforms or 0,
        total_tasks=total_tasks or 0,
        pending_submissions=pending_submissions or 0,
        pending_topups=pending_topups or 0,
        pending_bookings=pending_bookings or 0,
        total_balance=Decimal(str(total_balance or 0)),
        mentorship_revenue=Decimal(str(mentorship_revenue or 0)),
    )


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-log", response_model=PaginatedResponse)
async def get_audit_log(
    action: Optional[str] = Query(None, description="Filter by action e.g. APPROVE_TOPUP"),
    entity_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log. Append-only, never editable."""
    query = select(AdminAuditLog)
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(AdminAuditLog.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[AuditLogResponse.model_validate(log) for log in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )
