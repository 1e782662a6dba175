from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum

from app.modules.transactions.schemas import TransactionResponse


class LoanTypeEnum(str, Enum):
    REQUEST = "request"
    OFFER = "offer"


class LoanStatusEnum(str, Enum):
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class MarketplaceSortEnum(str, Enum):
    NEWEST = "newest"
    AMOUNT = "amount"
    INTEREST = "interest"
    DURATION = "duration"


# ============ Loan Creation ============

class LoanCreate(BaseModel):
    """Loan request/offer form. Bounds are enforced by the loan service."""
    amount: Decimal = Field(..., gt=0, description="Principal in BTC")
    interest: Decimal = Field(..., gt=0, description="Annual interest rate, percent")
    duration_months: int = Field(..., alias="durationMonths", gt=0)
    has_collateral: bool = Field(False, alias="hasCollateral")

    class Config:
        populate_by_name = True


class LoanResponse(BaseModel):
    id: int
    loan_type: LoanTypeEnum
    status: LoanStatusEnum
    amount: Decimal
    interest: Decimal
    duration_months: int
    has_collateral: bool
    creator_id: int
    borrower_id: Optional[int] = None
    lender_id: Optional[int] = None
    total_repayment: Decimal
    interest_amount: Decimal
    monthly_payment: Decimal
    created_at: datetime
    matched_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    defaulted_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class LoanDetailResponse(LoanResponse):
    amount_repaid: Decimal
    remaining_amount: Decimal
    progress_percent: Decimal


# ============ Repayment ============

class LoanRepaymentRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=8)
    client_reference: Optional[str] = Field(
        None, max_length=64, description="Idempotency key; repeating it does not record a second repayment"
    )


class LoanRepaymentResponse(BaseModel):
    loan: LoanDetailResponse
    transaction: TransactionResponse
    duplicate: bool = False


# ============ Calculator ============

class LoanCalculatorRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    interest: Decimal
    duration_months: int = Field(..., alias="durationMonths")

    class Config:
        populate_by_name = True


class LoanCalculatorResponse(BaseModel):
    principal: Decimal
    annual_rate_percent: Decimal
    duration_months: int
    total_repayment: Decimal
    interest_amount: Decimal
    monthly_payment: Decimal
