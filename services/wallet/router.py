"""
services/wallet/router.py
Student wallet: balance, top-up requests, and transaction history.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.wallet import ledger
from shared.middleware.auth import get_current_user
from shared.models.models import Transaction, TransactionType, User
from shared.schemas.schemas import (
    PaginatedResponse,
    TopUpRequest,
    TransactionResponse,
    WalletResponse,
)

router = APIRouter(tags=["Wallet"])


@router.get("/wallet", response_model=WalletResponse)
async def get_wallet(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Current balance plus the wallet number students should transfer to."""
    balance = await ledger.get_balance(db, current_user.id)
    return WalletResponse(
        balance=balance,
        currency=settings.CURRENCY,
        admin_wallet_number=settings.ADMIN_WALLET_NUMBER or None,
    )


@router.post("/wallet/topup", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def request_top_up(
    data: TopUpRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Request a manual top-up. The student transfers the money out of band and
    an admin approves the request after checking the sender wallet number.
    """
    txn = await ledger.request_top_up(db, current_user.id, data.amount, data.sender_wallet_number)
    await db.commit()
    return TransactionResponse.model_validate(txn)


@router.get("/wallet/topup", response_model=list[TransactionResponse])
async def list_my_top_ups(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Transaction)
        .where(
            Transaction.user_id == current_user.id,
            Transaction.type == TransactionType.TOP_UP,
        )
        .order_by(Transaction.created_at.desc())
    )
    return [TransactionResponse.model_validate(t) for t in result.scalars().all()]


@router.get("/transactions", response_model=PaginatedResponse)
async def list_my_transactions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    type: Optional[TransactionType] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Paginated history, newest first. Negative amounts are refunds."""
    query = select(Transaction).where(Transaction.user_id == current_user.id)
    if type:
        query = query.where(Transaction.type == type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Transaction.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[TransactionResponse.model_validate(t) for t in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
        pages=-(-total // page_size),
    )
