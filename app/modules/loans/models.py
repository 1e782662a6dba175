from sqlalchemy import Column, Integer, Numeric, Boolean, ForeignKey, DateTime, Enum as SQLEnum
from sqlalchemy.sql import func
from app.core.database import Base
from app.modules.loans.calculator import LoanTerms, calculate_loan_terms
import enum


class LoanType(str, enum.Enum):
    """Who posted the loan"""
    REQUEST = "request"  # Borrower seeking funds
    OFFER = "offer"      # Lender supplying funds


class LoanStatus(str, enum.Enum):
    """Loan lifecycle status"""
    OPEN = "open"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEFAULTED = "defaulted"


class Loan(Base):
    """
    Marketplace loan. Terms (amount, interest, duration) are fixed at
    creation; only status, counterparty and lifecycle timestamps change.
    """
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    loan_type = Column(SQLEnum(LoanType), nullable=False)
    status = Column(SQLEnum(LoanStatus), default=LoanStatus.OPEN, nullable=False, index=True)

    # Terms
    amount = Column(Numeric(18, 8), nullable=False)  # BTC principal
    interest = Column(Numeric(5, 2), nullable=False)  # Annual rate, percent
    duration_months = Column(Integer, nullable=False)
    has_collateral = Column(Boolean, default=False, nullable=False)

    # Parties
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    borrower_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    lender_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    defaulted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def terms(self) -> LoanTerms:
        return calculate_loan_terms(self.amount, self.interest, self.duration_months)

    @property
    def total_repayment(self):
        return self.terms.total_repayment

    @property
    def interest_amount(self):
        return self.terms.interest_amount

    @property
    def monthly_payment(self):
        return self.terms.monthly_payment

    def is_party(self, user_id: int) -> bool:
        return user_id in (self.borrower_id, self.lender_id, self.creator_id)

    def __repr__(self):
        return f"<Loan(id={self.id}, type={self.loan_type}, status={self.status}, amount={self.amount})>"
