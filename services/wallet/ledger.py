"""
services/wallet/ledger.py
Account Ledger: owns the user balance and the append-only transaction history.

Every balance mutation goes through a conditional UPDATE and appends exactly
one APPROVED transaction row in the caller's session. Nothing here commits;
the router that opened the unit of work does.
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import inspect, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from config.settings import settings
from shared.models.models import (
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
)
from shared.utils.dates import utcnow
from shared.utils.errors import (
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _quantize(amount) -> Decimal:
    return Decimal(str(amount)).quantize(CENT)


def _sync_balance(db: AsyncSession, user_id: UUID, balance: Decimal) -> None:
    """Keep an already-loaded User in the session consistent with the row."""
    key = inspect(User).identity_key_from_primary_key((user_id,))
    user = db.identity_map.get(key)
    if user is not None:
        set_committed_value(user, "balance", balance)


def _append(
    db: AsyncSession,
    user_id: UUID,
    type: TransactionType,
    amount: Decimal,
    description: str,
    status: TransactionStatus = TransactionStatus.APPROVED,
    booking_id: Optional[UUID] = None,
) -> Transaction:
    txn = Transaction(
        user_id=user_id,
        type=type,
        amount=amount,
        status=status,
        description=description,
        booking_id=booking_id,
    )
    db.add(txn)
    return txn


async def _increment(db: AsyncSession, user_id: UUID, amount: Decimal) -> Decimal:
    result = await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(balance=User.balance + amount)
        .returning(User.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise NotFoundError("User not found")
    _sync_balance(db, user_id, new_balance)
    return new_balance


# ── Queries ───────────────────────────────────────────────────

async def get_balance(db: AsyncSession, user_id: UUID) -> Decimal:
    balance = await db.scalar(select(User.balance).where(User.id == user_id))
    if balance is None:
        raise NotFoundError("User not found")
    return balance


# ── Top-ups ───────────────────────────────────────────────────

async def request_top_up(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    sender_ref: str,
) -> Transaction:
    """Record a PENDING top-up. The balance is untouched until an admin approves."""
    amount = _quantize(amount)
    if amount < settings.TOPUP_MIN_AMOUNT or amount > settings.TOPUP_MAX_AMOUNT:
        raise ValidationError(
            f"Amount must be between {settings.TOPUP_MIN_AMOUNT} and {settings.TOPUP_MAX_AMOUNT}",
            field="amount",
        )
    if not sender_ref or not sender_ref.strip():
        raise ValidationError("Sender wallet number is required", field="sender_wallet_number")

    txn = _append(
        db,
        user_id,
        TransactionType.TOP_UP,
        amount,
        f"Top-up request from {sender_ref.strip()}",
        status=TransactionStatus.PENDING,
    )
    txn.sender_wallet_number = sender_ref.strip()
    txn.admin_wallet_number = settings.ADMIN_WALLET_NUMBER or None
    await db.flush()
    logger.info("Top-up requested: user=%s amount=%s txn=%s", user_id, amount, txn.id)
    return txn


async def resolve_top_up(
    db: AsyncSession,
    transaction_id: UUID,
    approve: bool,
    admin: User,
) -> Transaction:
    """
    Move a PENDING top-up to APPROVED (crediting the balance) or REJECTED.
    The status flip is conditional on PENDING, so a top-up resolves exactly once.
    """
    new_status = TransactionStatus.APPROVED if approve else TransactionStatus.REJECTED
    result = await db.execute(
        update(Transaction)
        .where(
            Transaction.id == transaction_id,
            Transaction.type == TransactionType.TOP_UP,
            Transaction.status == TransactionStatus.PENDING,
        )
        .values(status=new_status, resolved_by_id=admin.id, resolved_at=utcnow())
        .returning(Transaction.id, Transaction.user_id, Transaction.amount)
        .execution_options(synchronize_session=False)
    )
    row = result.one_or_none()

    if row is None:
        existing = await db.get(Transaction, transaction_id)
        if existing is None:
            raise NotFoundError("Transaction not found")
        if existing.type != TransactionType.TOP_UP:
            raise ConflictError("Only top-up transactions can be resolved")
        raise ConflictError(f"Transaction already {existing.status.value}")

    if approve:
        await _increment(db, row.user_id, row.amount)

    txn = await db.get(Transaction, transaction_id, populate_existing=True)
    logger.info(
        "Top-up %s: txn=%s user=%s amount=%s by=%s",
        new_status.value, transaction_id, row.user_id, row.amount, admin.id,
    )
    return txn


# ── Balance movements ─────────────────────────────────────────

async def charge(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    type: TransactionType,
    description: str,
    booking_id: Optional[UUID] = None,
) -> Transaction:
    """
    Deduct amount and record it. The sufficiency check and the decrement are
    one statement, so two concurrent charges can never both pass on a stale read.
    """
    amount = _quantize(amount)
    if amount <= 0:
        raise ValidationError("Charge amount must be positive", field="amount")

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.balance >= amount)
        .values(balance=User.balance - amount)
        .returning(User.balance)
        .execution_options(synchronize_session=False)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        exists = await db.scalar(select(User.id).where(User.id == user_id))
        if exists is None:
            raise NotFoundError("User not found")
        raise InsufficientBalanceError()

    _sync_balance(db, user_id, new_balance)
    txn = _append(db, user_id, type, amount, description, booking_id=booking_id)
    await db.flush()
    logger.info("Charged user=%s amount=%s type=%s", user_id, amount, type.value)
    return txn


async def refund(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    type: TransactionType,
    description: str,
    booking_id: Optional[UUID] = None,
) -> Transaction:
    """Credit amount back; the audit row carries the negated amount."""
    amount = _quantize(amount)
    if amount <= 0:
        raise ValidationError("Refund amount must be positive", field="amount")

    await _increment(db, user_id, amount)
    txn = _append(db, user_id, type, -amount, description, booking_id=booking_id)
    await db.flush()
    logger.info("Refunded user=%s amount=%s type=%s", user_id, amount, type.value)
    return txn


async def credit(
    db: AsyncSession,
    user_id: UUID,
    amount: Decimal,
    type: TransactionType,
    description: str,
) -> Transaction:
    """Plain positive credit, e.g. the signup bonus."""
    amount = _quantize(amount)
    if amount <= 0:
        raise ValidationError("Credit amount must be positive", field="amount")

    await _increment(db, user_id, amount)
    txn = _append(db, user_id, type, amount, description)
    await db.flush()
    return txn


async def reset_balance(
    db: AsyncSession,
    user_id: UUID,
    new_balance: Decimal,
    admin: User,
    reason: Optional[str] = None,
) -> Optional[Transaction]:
    """
    Administrative reset. Recorded as an ADJUSTMENT row carrying the delta so
    the history still sums to the balance. Returns None when nothing changes.
    """
    new_balance = _quantize(new_balance)
    if new_balance < 0:
        raise ValidationError("Balance cannot be negative", field="balance")

    result = await db.execute(
        select(User.balance).where(User.id == user_id).with_for_update()
    )
    current = result.scalar_one_or_none()
    if current is None:
        raise NotFoundError("User not found")

    delta = new_balance - _quantize(current)
    if delta == 0:
        return None

    await _increment(db, user_id, delta)
    description = f"Balance reset to {new_balance} by admin"
    if reason:
        description = f"{description}: {reason}"
    txn = _append(db, user_id, TransactionType.ADJUSTMENT, delta, description)
    txn.resolved_by_id = admin.id
    txn.resolved_at = utcnow()
    await db.flush()
    logger.warning("Balance reset: user=%s delta=%s by=%s", user_id, delta, admin.id)
    return txn
