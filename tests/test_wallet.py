"""
tests/test_wallet.py
Tests for the account ledger: top-up requests and approval, charges under
contention, refunds, and the transaction history endpoints.
"""

import asyncio
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.wallet import ledger
from shared.models.models import Transaction, TransactionStatus, TransactionType, User
from shared.utils.errors import ConflictError, InsufficientBalanceError, ValidationError
from tests.conftest import auth_headers, make_user, reload


async def _pending_top_up(db: AsyncSession, user: User, amount: str = "250.00") -> Transaction:
    txn = await ledger.request_top_up(db, user.id, Decimal(amount), "01012345678")
    await db.commit()
    return txn


# ── Wallet Endpoints ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_get_wallet_returns_balance(client: AsyncClient, user: User):
    response = await client.get("/wallet", headers=auth_headers(user))
    assert response.status_code == 200
    assert Decimal(response.json()["balance"]) == Decimal("500.00")


@pytest.mark.asyncio
async def test_top_up_request_is_pending_and_leaves_balance(
    client: AsyncClient, user: User, db: AsyncSession
):
    response = await client.post(
        "/wallet/topup",
        headers=auth_headers(user),
        json={"amount": "200.00", "sender_wallet_number": "01012345678"},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["type"] == "TOP_UP"

    assert (await reload(db, user)).balance == Decimal("500.00")

    mine = await client.get("/wallet/topup", headers=auth_headers(user))
    assert [t["id"] for t in mine.json()] == [data["id"]]


@pytest.mark.asyncio
async def test_top_up_above_maximum_rejected(client: AsyncClient, user: User):
    response = await client.post(
        "/wallet/topup",
        headers=auth_headers(user),
        json={"amount": "1000000.00", "sender_wallet_number": "01012345678"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_transaction_history_is_paginated(client: AsyncClient, user: User, db: AsyncSession):
    for _ in range(3):
        await _pending_top_up(db, user, "10.00")

    response = await client.get("/transactions?page_size=2", headers=auth_headers(user))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 2
    assert len(data["items"]) == 2


# ── Top-up Resolution ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_approve_top_up_credits_once(db: AsyncSession, user: User, admin_user: User):
    """Approving a pending top-up credits the balance; a second resolution conflicts."""
    txn = await _pending_top_up(db, user)

    resolved = await ledger.resolve_top_up(db, txn.id, True, admin_user)
    await db.commit()
    assert resolved.status == TransactionStatus.APPROVED
    assert resolved.resolved_by_id == admin_user.id
    assert (await reload(db, user)).balance == Decimal("750.00")

    for approve in (True, False):
        with pytest.raises(ConflictError):
            await ledger.resolve_top_up(db, txn.id, approve, admin_user)

    assert (await reload(db, user)).balance == Decimal("750.00")


@pytest.mark.asyncio
async def test_reject_top_up_leaves_balance(db: AsyncSession, user: User, admin_user: User):
    txn = await _pending_top_up(db, user)
    resolved = await ledger.resolve_top_up(db, txn.id, False, admin_user)
    await db.commit()
    assert resolved.status == TransactionStatus.REJECTED
    assert (await reload(db, user)).balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_resolving_non_top_up_conflicts(db: AsyncSession, user: User, admin_user: User):
    txn = await ledger.charge(db, user.id, Decimal("10"), TransactionType.DEBIT, "Manual debit")
    await db.commit()
    with pytest.raises(ConflictError):
        await ledger.resolve_top_up(db, txn.id, True, admin_user)


# ── Charges & Refunds ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_charge_insufficient_balance_changes_nothing(db: AsyncSession):
    poor = await make_user(db, balance=Decimal("50.00"))
    with pytest.raises(InsufficientBalanceError):
        await ledger.charge(db, poor.id, Decimal("100.00"), TransactionType.DEBIT, "Too much")
    await db.rollback()

    assert (await reload(db, poor)).balance == Decimal("50.00")
    count = await db.scalar(select(func.count(Transaction.id)).where(Transaction.user_id == poor.id))
    assert count == 0


@pytest.mark.asyncio
async def test_charge_rejects_non_positive_amount(db: AsyncSession, user: User):
    with pytest.raises(ValidationError):
        await ledger.charge(db, user.id, Decimal("0"), TransactionType.DEBIT, "Nothing")


@pytest.mark.asyncio
async def test_refund_appends_negative_row(db: AsyncSession, user: User):
    await ledger.charge(db, user.id, Decimal("120.00"), TransactionType.DEBIT, "Charge")
    txn = await ledger.refund(db, user.id, Decimal("120.00"), TransactionType.DEBIT, "Refund")
    await db.commit()

    assert txn.amount == Decimal("-120.00")
    assert txn.status == TransactionStatus.APPROVED
    assert (await reload(db, user)).balance == Decimal("500.00")


@pytest.mark.asyncio
async def test_concurrent_charges_never_overdraw(session_factory, db: AsyncSession, user: User):
    """Of four concurrent 200 charges against 500, exactly two go through."""

    async def attempt() -> bool:
        async with session_factory() as session:
            try:
                await ledger.charge(session, user.id, Decimal("200.00"), TransactionType.DEBIT, "Race")
                await session.commit()
                return True
            except InsufficientBalanceError:
                await session.rollback()
                return False

    outcomes = await asyncio.gather(*(attempt() for _ in range(4)))

    assert outcomes.count(True) == 2
    assert (await reload(db, user)).balance == Decimal("100.00")
    charged = await db.scalar(select(func.count(Transaction.id)).where(Transaction.user_id == user.id))
    assert charged == 2


@pytest.mark.asyncio
async def test_charge_after_stale_read_still_checks_balance(session_factory, user: User, db: AsyncSession):
    """A session that read the balance before another one spent it cannot overdraw."""
    async with session_factory() as first, session_factory() as second:
        assert (await first.get(User, user.id)).balance == Decimal("500.00")

        await ledger.charge(second, user.id, Decimal("400.00"), TransactionType.DEBIT, "Spend")
        await second.commit()

        with pytest.raises(InsufficientBalanceError):
            await ledger.charge(first, user.id, Decimal("400.00"), TransactionType.DEBIT, "Stale")
        await first.rollback()

    assert (await reload(db, user)).balance == Decimal("100.00")


@pytest.mark.asyncio
async def test_reset_balance_records_adjustment(db: AsyncSession, user: User, admin_user: User):
    txn = await ledger.reset_balance(db, user.id, Decimal("80.00"), admin_user, "Correction")
    await db.commit()

    assert txn.type == TransactionType.ADJUSTMENT
    assert txn.amount == Decimal("-420.00")
    assert (await reload(db, user)).balance == Decimal("80.00")
    assert await ledger.reset_balance(db, user.id, Decimal("80.00"), admin_user) is None
