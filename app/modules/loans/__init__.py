# Loans module
from app.modules.loans.models import Loan, LoanType, LoanStatus
from app.modules.loans.services import LoanService
from app.modules.loans.router import router

__all__ = [
    "Loan", "LoanType", "LoanStatus",
    "LoanService", "router"
]
