from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import Optional, List
from enum import Enum


class TransactionTypeEnum(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REPAYMENT = "repayment"
    DISBURSEMENT = "disbursement"


class TransactionDirectionEnum(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionResponse(BaseModel):
    id: int
    reference: str
    user_id: int
    loan_id: Optional[int] = None
    counterparty_id: Optional[int] = None
    transaction_type: TransactionTypeEnum
    direction: TransactionDirectionEnum
    amount: Decimal
    signed_amount: Decimal
    usd_value: Decimal
    btc_usd_rate: Decimal
    balance_after: Decimal
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MonthlyTransactionSummary(BaseModel):
    period: str  # "2025-01"
    deposits: Decimal
    withdrawals: Decimal
    repayments: Decimal
    disbursements: Decimal
    net: Decimal
    transaction_count: int


class TransactionSummaryResponse(BaseModel):
    months: List[MonthlyTransactionSummary]
    total_credits: Decimal
    total_debits: Decimal
