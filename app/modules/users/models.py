from sqlalchemy import Column, Integer, String, Numeric, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from app.core.database import Base
from decimal import Decimal
import enum


class AccountStatus(str, enum.Enum):
    """Account status enumeration"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class User(Base):
    """Marketplace participant with a platform BTC balance and optional external wallet"""
    __tablename__ = "users"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True)

    # Authentication
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    display_name = Column(String(100), nullable=True)

    # Account Status
    account_status = Column(SQLEnum(AccountStatus), default=AccountStatus.ACTIVE, nullable=False)

    # Platform balance (BTC), only changed by ledger entries
    balance = Column(Numeric(18, 8), default=Decimal("0"), nullable=False)

    # Connected wallet
    wallet_address = Column(String(128), nullable=True)
    wallet_balance = Column(Numeric(18, 8), nullable=True)  # Balance reported by the wallet provider
    wallet_connected_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def wallet_connected(self) -> bool:
        return self.wallet_address is not None

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email}, status={self.account_status})>"
