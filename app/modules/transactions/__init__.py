# Transactions module
from app.modules.transactions.models import (
    Transaction, TransactionType, TransactionDirection
)
from app.modules.transactions.services import LedgerService
from app.modules.transactions.router import router

__all__ = [
    "Transaction", "TransactionType", "TransactionDirection",
    "LedgerService", "router"
]
