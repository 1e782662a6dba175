from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum


class AccountStatusEnum(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


# Registration / Login
class UserRegistrationRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72)
    display_name: Optional[str] = Field(None, max_length=100)


class UserLoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class UserProfileResponse(BaseModel):
    id: int
    email: EmailStr
    display_name: Optional[str] = None
    account_status: AccountStatusEnum
    balance: Decimal
    wallet_address: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Wallet
class WalletConnectRequest(BaseModel):
    address: str = Field(..., min_length=26, max_length=128)
    balance: Optional[Decimal] = Field(None, ge=0, description="Balance reported by the wallet provider")


class WalletAmountRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=8)


class WalletResponse(BaseModel):
    balance: Decimal
    balance_usd: Decimal
    wallet_connected: bool
    wallet_address: Optional[str] = None
    wallet_balance: Optional[Decimal] = None
    btc_usd_rate: Decimal


# Stats
class UserStatsResponse(BaseModel):
    total_borrowed: Decimal
    total_lent: Decimal
    active_loans: int
    interest_earned: Decimal
