from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from redis import asyncio as aioredis

from app.core.database import get_db, get_redis
from app.core.dependencies import get_current_active_user, oauth2_scheme
from app.core.exceptions import AuthenticationError
from app.core.rates import RateProvider, get_rate_provider
from app.modules.users.models import User
from app.modules.users import schemas
from app.modules.users.services import UserService, WalletService
from app.modules.loans.services import LoanService
from app.modules.transactions.schemas import TransactionResponse

router = APIRouter(prefix="/api/user", tags=["users"])
wallet_router = APIRouter(prefix="/api/wallet", tags=["wallet"])


@router.post("/register", response_model=schemas.UserProfileResponse, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: schemas.UserRegistrationRequest,
    db: AsyncSession = Depends(get_db)
):
    """Register a new marketplace user"""
    return await UserService.register_user(db, user_data)


@router.post("/login", response_model=schemas.TokenResponse)
async def login(
    login_data: schemas.UserLoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """Login with email and password, returns a bearer access token"""
    user = await UserService.authenticate_user(db, login_data.email, login_data.password)
    if not user:
        raise AuthenticationError("Incorrect email or password")
    return UserService.create_token(user.id)


@router.post("/logout", status_code=status.HTTP_200_OK)
async def logout(
    token: str = Depends(oauth2_scheme),
    redis: aioredis.Redis = Depends(get_redis),
    current_user: User = Depends(get_current_active_user)
):
    """Logout current user by revoking the access token"""
    await UserService.logout_user(redis, token)
    return {"message": "Successfully logged out"}


@router.get("/me", response_model=schemas.UserProfileResponse)
async def read_me(current_user: User = Depends(get_current_active_user)):
    return current_user


@router.get("/stats", response_model=schemas.UserStatsResponse)
async def read_user_stats(
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Dashboard statistics.

    - total_borrowed / total_lent: principal of matched loans
    - active_loans: loans currently accruing
    - interest_earned: interest share of repayments received as lender
    """
    service = LoanService(db, rates)
    return await service.get_user_stats(current_user.id)


# ============ Wallet ============

@wallet_router.get("", response_model=schemas.WalletResponse)
async def read_wallet(
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Platform balance (with USD value) and connected wallet"""
    return await WalletService(db, rates).get_wallet(current_user)


@wallet_router.post("/connect", response_model=schemas.WalletResponse)
async def connect_wallet(
    data: schemas.WalletConnectRequest,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    service = WalletService(db, rates)
    user = await service.connect_wallet(current_user, data)
    return await service.get_wallet(user)


@wallet_router.post("/disconnect", response_model=schemas.WalletResponse)
async def disconnect_wallet(
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    service = WalletService(db, rates)
    user = await service.disconnect_wallet(current_user)
    return await service.get_wallet(user)


@wallet_router.post("/deposit", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def deposit(
    data: schemas.WalletAmountRequest,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """
    Deposit BTC from the connected wallet.

    - 0.001 to 10 BTC
    - Requires a connected wallet holding enough BTC
    """
    return await WalletService(db, rates).deposit(current_user, data.amount)


@wallet_router.post("/withdraw", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
async def withdraw(
    data: schemas.WalletAmountRequest,
    db: AsyncSession = Depends(get_db),
    rates: RateProvider = Depends(get_rate_provider),
    current_user: User = Depends(get_current_active_user)
):
    """Withdraw BTC to the connected wallet; cannot exceed the platform balance"""
    return await WalletService(db, rates).withdraw(current_user, data.amount)
