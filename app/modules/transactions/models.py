from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, DateTime, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.sql import func
from app.core.database import Base
import enum


class TransactionType(str, enum.Enum):
    """Money movement kinds recorded in the ledger"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    REPAYMENT = "repayment"
    DISBURSEMENT = "disbursement"


class TransactionDirection(str, enum.Enum):
    """Effect of an entry on its owner's balance"""
    CREDIT = "credit"
    DEBIT = "debit"


# Wallet movements have a fixed direction; loan movements are recorded as a
# debit for the paying side and a credit for the receiving side.
WALLET_DIRECTIONS = {
    TransactionType.DEPOSIT: TransactionDirection.CREDIT,
    TransactionType.WITHDRAWAL: TransactionDirection.DEBIT,
}

LOAN_TRANSACTION_TYPES = (TransactionType.REPAYMENT, TransactionType.DISBURSEMENT)


class Transaction(Base):
    """Append-only ledger entry"""
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "loan_id", "client_reference", name="uq_transactions_client_reference"),
    )

    id = Column(Integer, primary_key=True, index=True)
    reference = Column(String(32), unique=True, index=True, nullable=False)
    client_reference = Column(String(64), nullable=True)  # Caller supplied idempotency key

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    loan_id = Column(Integer, ForeignKey("loans.id"), nullable=True, index=True)
    counterparty_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    transaction_type = Column(SQLEnum(TransactionType), nullable=False)
    direction = Column(SQLEnum(TransactionDirection), nullable=False)
    amount = Column(Numeric(18, 8), nullable=False)  # Always positive, sign comes from direction
    btc_usd_rate = Column(Numeric(18, 2), nullable=False)
    usd_value = Column(Numeric(18, 2), nullable=False)
    balance_after = Column(Numeric(18, 8), nullable=False)
    description = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def signed_amount(self):
        if self.direction == TransactionDirection.DEBIT:
            return -self.amount
        return self.amount

    @property
    def is_credit(self) -> bool:
        return self.direction == TransactionDirection.CREDIT

    def __repr__(self):
        return (
            f"<Transaction(id={self.id}, type={self.transaction_type}, "
            f"direction={self.direction}, amount={self.amount})>"
        )
