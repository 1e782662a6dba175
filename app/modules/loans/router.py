from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from decimal import Decimal
from typing import List, Optional
from app.core.database import get_db
from app.core.dependencies import get_current_active_user
from app.core.rates import RateProvider, get_rate_provider
from app.modules.users.models import User
from app.modules.loans.models import LoanType, LoanStatus
from app.modules.loans import schemas
from app.modules.loans.services import LoanService
from app.modules.transactions.schemas import TransactionResponse

router = APIRouter(prefix="/api/loans", tags=["loans"])


@router.post("/request", response_model=schemas.LoanResponse, status_code=status.HTTP_201_CREATED)
async def create_loan_request(
    data: schemas.LoanCreate,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Post a loan request (caller borrows).

    - Amount 0.01 to 10 BTC, interest 1 to 15% APR, 1 to 36 months
    - Loan starts open and is listed in the marketplace
    """
    service = LoanService(db, rates)
    return await service.create_loan(current_user.id, LoanType.REQUEST, data)


@router.post("/offer", response_model=schemas.LoanResponse, status_code=status.HTTP_201_CREATED)
async def create_loan_offer(
    data: schemas.LoanCreate,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Post a loan offer (caller lends). Same bounds as requests."""
    service = LoanService(db, rates)
    return await service.create_loan(current_user.id, LoanType.OFFER, data)


@router.post("/calculate", response_model=schemas.LoanCalculatorResponse)
async def calculate_loan(data: schemas.LoanCalculatorRequest):
    """Simple-interest repayment figures for the given terms"""
    return LoanService.calculate_loan(data)


@router.get("/marketplace", response_model=List[schemas.LoanResponse])
async def read_marketplace(
    loan_type: Optional[schemas.LoanTypeEnum] = Query(None, alias="type"),
    has_collateral: Optional[bool] = Query(None),
    min_amount: Optional[Decimal] = Query(None, ge=0),
    max_amount: Optional[Decimal] = Query(None, ge=0),
    min_interest: Optional[Decimal] = Query(None, ge=0),
    max_interest: Optional[Decimal] = Query(None, ge=0),
    max_duration: Optional[int] = Query(None, ge=1),
    exclude_own: bool = Query(False, description="Hide loans posted by the caller"),
    sort_by: schemas.MarketplaceSortEnum = Query(schemas.MarketplaceSortEnum.NEWEST),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Open loans available for matching.

    - Filter by type (request/offer), collateral, amount, interest and duration
    - Sort by newest, amount, interest or duration
    """
    service = LoanService(db, rates)
    return await service.get_marketplace(
        loan_type=LoanType(loan_type.value) if loan_type else None,
        has_collateral=has_collateral,
        min_amount=min_amount,
        max_amount=max_amount,
        min_interest=min_interest,
        max_interest=max_interest,
        max_duration=max_duration,
        exclude_user_id=current_user.id if exclude_own else None,
        sort_by=sort_by,
        skip=skip,
        limit=limit
    )


@router.get("/active", response_model=List[schemas.LoanResponse])
async def read_active_loans(
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Caller's active loans, as borrower or lender"""
    service = LoanService(db, rates)
    return await service.get_active_loans(current_user.id)


@router.get("/mine", response_model=List[schemas.LoanResponse])
async def read_my_loans(
    loan_status: Optional[schemas.LoanStatusEnum] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """All loans the caller posted or is a party to"""
    service = LoanService(db, rates)
    return await service.get_user_loans(
        current_user.id, LoanStatus(loan_status.value) if loan_status else None
    )


@router.get("/{loan_id}", response_model=schemas.LoanDetailResponse)
async def read_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Loan details with repayment progress computed from the ledger"""
    service = LoanService(db, rates)
    loan = await service.get_loan(loan_id, current_user.id)
    return await service.get_loan_detail(loan)


@router.get("/{loan_id}/transactions", response_model=List[TransactionResponse])
async def read_loan_transactions(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Ledger entries of a loan (parties only)"""
    service = LoanService(db, rates)
    return await service.get_loan_transactions(loan_id, current_user.id)


@router.post("/{loan_id}/accept", response_model=schemas.LoanDetailResponse)
async def accept_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Accept an open loan from the marketplace.

    - Accepting a request makes the caller the lender, accepting an offer the borrower
    - The principal is disbursed from lender to borrower
    - 409 if the loan was already matched
    """
    service = LoanService(db, rates)
    loan = await service.accept_loan(loan_id, current_user.id)
    return await service.get_loan_detail(loan)


@router.post("/{loan_id}/repay", response_model=schemas.LoanRepaymentResponse)
async def repay_loan(
    loan_id: int,
    data: schemas.LoanRepaymentRequest,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Repay part or all of an active loan (borrower only).

    - Amount cannot exceed the outstanding balance
    - Loan completes when fully repaid
    - Repeating a client_reference returns the original repayment
    """
    service = LoanService(db, rates)
    loan, entry, duplicate = await service.repay_loan(
        loan_id, current_user.id, data.amount, data.client_reference
    )
    return schemas.LoanRepaymentResponse(
        loan=await service.get_loan_detail(loan),
        transaction=TransactionResponse.model_validate(entry),
        duplicate=duplicate
    )


@router.post("/{loan_id}/default", response_model=schemas.LoanResponse)
async def default_loan(
    loan_id: int,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Mark an active loan as defaulted (lender only)"""
    service = LoanService(db, rates)
    return await service.mark_defaulted(loan_id, current_user.id)
