from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.core.rates import RateProvider, get_rate_provider
from app.modules.users.models import User
from app.modules.transactions.models import TransactionType
from app.modules.transactions.schemas import (
    TransactionResponse, TransactionSummaryResponse, TransactionTypeEnum
)
from app.modules.transactions.services import LedgerService

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


@router.get("", response_model=List[TransactionResponse])
async def read_transactions(
    transaction_type: Optional[TransactionTypeEnum] = Query(None, alias="type"),
    loan_id: Optional[int] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Caller's transaction ledger, newest first"""
    service = LedgerService(db, rates)
    return await service.get_user_transactions(
        current_user.id,
        transaction_type=TransactionType(transaction_type.value) if transaction_type else None,
        loan_id=loan_id,
        skip=skip,
        limit=limit
    )


@router.get("/summary", response_model=TransactionSummaryResponse)
async def read_transaction_summary(
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Monthly totals of the caller's ledger.

    - One bucket per calendar month (YYYY-MM)
    - Deposits, withdrawals, repayments and disbursements summed separately
    """
    service = LedgerService(db, rates)
    return await service.get_monthly_summary(current_user.id)


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def read_transaction(
    transaction_id: int,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    service = LedgerService(db, rates)
    return await service.get_user_transaction(current_user.id, transaction_id)
