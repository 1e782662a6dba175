from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import logging

from app.core.security import (
    get_password_hash,
    verify_password,
    create_access_token,
    decode_token,
    token_ttl_seconds
)
from app.core.config import settings
from app.core.exceptions import ConflictError, ValidationError
from app.core.money import quantize_btc, btc_to_usd
from app.core.rates import RateProvider
from app.modules.users.models import User, AccountStatus
from app.modules.users import schemas
from app.modules.transactions.models import Transaction, TransactionType
from app.modules.transactions.services import LedgerService

logger = logging.getLogger(__name__)


class UserService:
    """Service layer for user accounts and authentication"""

    @staticmethod
    async def register_user(db: AsyncSession, user_data: schemas.UserRegistrationRequest) -> User:
        """Register a new user"""
        email = user_data.email.lower()

        result = await db.execute(select(User).where(User.email == email))
        if result.scalar_one_or_none():
            raise ConflictError("Email already registered")

        user = User(
            email=email,
            hashed_password=get_password_hash(user_data.password),
            display_name=user_data.display_name,
            account_status=AccountStatus.ACTIVE,
            balance=Decimal("0")
        )

        try:
            db.add(user)
            await db.commit()
            await db.refresh(user)
        except IntegrityError:
            await db.rollback()
            raise ConflictError("Email already registered")

        logger.info(f"Registered user {user.id}")
        return user

    @staticmethod
    async def authenticate_user(db: AsyncSession, email: str, password: str) -> Optional[User]:
        """Authenticate user with email and password"""
        result = await db.execute(select(User).where(User.email == email.lower()))
        user = result.scalar_one_or_none()

        if not user or not verify_password(password, user.hashed_password):
            logger.info("Failed login attempt")
            return None

        user.last_login_at = datetime.now(timezone.utc)
        await db.commit()
        return user

    @staticmethod
    def create_token(user_id: int) -> dict:
        return {
            "access_token": create_access_token(data={"sub": str(user_id)}),
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
        }

    @staticmethod
    async def logout_user(redis, token: str) -> None:
        """Revoke token until it would have expired anyway"""
        payload = decode_token(token)
        await redis.setex(f"blacklist:{payload.get('jti')}", token_ttl_seconds(payload), "1")


class WalletService:
    """Connected wallet and platform balance movements"""

    def __init__(self, db: AsyncSession, rate_provider: RateProvider):
        self.db = db
        self.rate_provider = rate_provider
        self.ledger = LedgerService(db, rate_provider)

    async def get_wallet(self, user: User) -> schemas.WalletResponse:
        rate = await self.rate_provider.get_btc_usd_rate()
        balance = quantize_btc(user.balance)
        return schemas.WalletResponse(
            balance=balance,
            balance_usd=btc_to_usd(balance, rate),
            wallet_connected=user.wallet_connected,
            wallet_address=user.wallet_address,
            wallet_balance=user.wallet_balance,
            btc_usd_rate=rate
        )

    async def connect_wallet(self, user: User, data: schemas.WalletConnectRequest) -> User:
        user.wallet_address = data.address.strip()
        user.wallet_balance = quantize_btc(data.balance) if data.balance is not None else None
        user.wallet_connected_at = datetime.now(timezone.utc)
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"User {user.id} connected wallet {user.wallet_address[:8]}...")
        return user

    async def disconnect_wallet(self, user: User) -> User:
        user.wallet_address = None
        user.wallet_balance = None
        user.wallet_connected_at = None
        await self.db.commit()
        await self.db.refresh(user)
        logger.info(f"User {user.id} disconnected wallet")
        return user

    @staticmethod
    def _validate_amount(amount: Decimal) -> Decimal:
        amount = quantize_btc(amount)
        if amount < settings.DEPOSIT_MIN_AMOUNT:
            raise ValidationError(f"Amount must be at least {settings.DEPOSIT_MIN_AMOUNT} BTC", field="amount")
        if amount > settings.DEPOSIT_MAX_AMOUNT:
            raise ValidationError(f"Amount cannot exceed {settings.DEPOSIT_MAX_AMOUNT} BTC", field="amount")
        return amount

    async def deposit(self, user: User, amount: Decimal) -> Transaction:
        """Move BTC from the connected wallet onto the platform balance"""
        amount = self._validate_amount(amount)

        try:
            # Wallet checks run against the locked row
            user = await self.ledger.lock_user(user.id)
            if not user.wallet_connected:
                raise ValidationError("Please connect your wallet first", field="wallet")
            if user.wallet_balance is not None and amount > user.wallet_balance:
                raise ValidationError("You don't have enough BTC in your wallet", field="amount")

            entry = await self.ledger.record(
                user.id, TransactionType.DEPOSIT, amount, description="Deposit from connected wallet"
            )
            if user.wallet_balance is not None:
                user.wallet_balance = quantize_btc(user.wallet_balance - amount)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(entry)
        return entry

    async def withdraw(self, user: User, amount: Decimal) -> Transaction:
        """Move BTC from the platform balance back to the connected wallet"""
        amount = self._validate_amount(amount)
        if not user.wallet_connected:
            raise ValidationError("Please connect your wallet first", field="wallet")

        try:
            entry = await self.ledger.record(
                user.id, TransactionType.WITHDRAWAL, amount, description="Withdrawal to connected wallet"
            )
            if user.wallet_balance is not None:
                user.wallet_balance = quantize_btc(user.wallet_balance + amount)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        await self.db.refresh(entry)
        return entry
