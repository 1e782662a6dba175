from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from collections import OrderedDict
from decimal import Decimal
from typing import List, Optional, Tuple
import logging
import uuid

from app.core.exceptions import ValidationError, NotFoundError
from app.core.money import ZERO, quantize_btc, btc_to_usd
from app.core.rates import RateProvider, StaticRateProvider
from app.modules.transactions.models import (
    Transaction, TransactionType, TransactionDirection,
    WALLET_DIRECTIONS, LOAN_TRANSACTION_TYPES
)
from app.modules.transactions.schemas import MonthlyTransactionSummary, TransactionSummaryResponse
from app.modules.users.models import User

logger = logging.getLogger(__name__)


class LedgerService:
    """
    Append-only transaction ledger.

    Every entry updates its owner's balance in the same database
    transaction. There is no update or delete path: corrections are
    new entries.
    """

    def __init__(self, db: AsyncSession, rate_provider: Optional[RateProvider] = None):
        self.db = db
        self.rate_provider = rate_provider or StaticRateProvider()

    @staticmethod
    def _generate_reference() -> str:
        return f"TXN-{uuid.uuid4().hex[:12].upper()}"

    async def lock_user(self, user_id: int) -> User:
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def _append(
        self,
        user_id: int,
        transaction_type: TransactionType,
        direction: TransactionDirection,
        amount: Decimal,
        rate: Decimal,
        loan_id: Optional[int] = None,
        counterparty_id: Optional[int] = None,
        description: Optional[str] = None,
        client_reference: Optional[str] = None,
    ) -> Transaction:
        user = await self.lock_user(user_id)
        balance = quantize_btc(user.balance or ZERO)

        if direction == TransactionDirection.DEBIT:
            if balance < amount:
                raise ValidationError(
                    f"Insufficient balance: {balance} BTC available, {amount} BTC required",
                    field="amount"
                )
            balance -= amount
        else:
            balance += amount
        user.balance = balance

        entry = Transaction(
            reference=self._generate_reference(),
            client_reference=client_reference,
            user_id=user_id,
            loan_id=loan_id,
            counterparty_id=counterparty_id,
            transaction_type=transaction_type,
            direction=direction,
            amount=amount,
            btc_usd_rate=rate,
            usd_value=btc_to_usd(amount, rate),
            balance_after=balance,
            description=description,
        )
        self.db.add(entry)
        await self.db.flush()
        await self.db.refresh(entry)
        return entry

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        amount = quantize_btc(amount)
        if amount <= ZERO:
            raise ValidationError("Amount must be greater than zero", field="amount")
        return amount

    async def record(
        self,
        user_id: int,
        transaction_type: TransactionType,
        amount,
        loan_id: Optional[int] = None,
        description: Optional[str] = None,
    ) -> Transaction:
        """Record a single-sided wallet movement (deposit or withdrawal)"""
        transaction_type = TransactionType(transaction_type)
        if transaction_type not in WALLET_DIRECTIONS:
            raise ValidationError(
                f"{transaction_type.value} entries are recorded as transfers between loan parties",
                field="transaction_type"
            )
        amount = self._validate_amount(amount)
        rate = await self.rate_provider.get_btc_usd_rate()

        entry = await self._append(
            user_id, transaction_type, WALLET_DIRECTIONS[transaction_type], amount, rate,
            loan_id=loan_id, description=description
        )
        logger.info(f"Recorded {transaction_type.value} {entry.reference} of {amount} BTC for user {user_id}")
        return entry

    async def record_transfer(
        self,
        transaction_type: TransactionType,
        payer_id: int,
        payee_id: int,
        amount,
        loan_id: int,
        description: Optional[str] = None,
        client_reference: Optional[str] = None,
    ) -> Tuple[Transaction, Transaction]:
        """Record a loan movement as a debit for the payer and a credit for the payee"""
        transaction_type = TransactionType(transaction_type)
        if transaction_type not in LOAN_TRANSACTION_TYPES:
            raise ValidationError(
                f"{transaction_type.value} is not a loan movement", field="transaction_type"
            )
        amount = self._validate_amount(amount)
        rate = await self.rate_provider.get_btc_usd_rate()

        debit = await self._append(
            payer_id, transaction_type, TransactionDirection.DEBIT, amount, rate,
            loan_id=loan_id, counterparty_id=payee_id, description=description,
            client_reference=client_reference
        )
        credit = await self._append(
            payee_id, transaction_type, TransactionDirection.CREDIT, amount, rate,
            loan_id=loan_id, counterparty_id=payer_id, description=description,
            client_reference=client_reference
        )
        logger.info(
            f"Recorded {transaction_type.value} of {amount} BTC on loan {loan_id}: "
            f"user {payer_id} -> user {payee_id}"
        )
        return debit, credit

    # ============ Read projections ============

    async def get_user_transactions(
        self,
        user_id: int,
        transaction_type: Optional[TransactionType] = None,
        loan_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Transaction]:
        """User ledger, newest first"""
        query = select(Transaction).where(Transaction.user_id == user_id)
        if transaction_type is not None:
            query = query.where(Transaction.transaction_type == TransactionType(transaction_type))
        if loan_id is not None:
            query = query.where(Transaction.loan_id == loan_id)
        query = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_user_transaction(self, user_id: int, transaction_id: int) -> Transaction:
        result = await self.db.execute(
            select(Transaction).where(
                and_(Transaction.id == transaction_id, Transaction.user_id == user_id)
            )
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise NotFoundError("Transaction not found")
        return entry

    async def get_loan_transactions(self, loan_id: int) -> List[Transaction]:
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.loan_id == loan_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        )
        return list(result.scalars().all())

    async def find_by_client_reference(
        self, user_id: int, loan_id: int, client_reference: str
    ) -> Optional[Transaction]:
        result = await self.db.execute(
            select(Transaction).where(
                and_(
                    Transaction.user_id == user_id,
                    Transaction.loan_id == loan_id,
                    Transaction.client_reference == client_reference,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_repaid_amount(self, loan_id: int) -> Decimal:
        """Sum of repayments credited to the lender of a loan"""
        result = await self.db.execute(
            select(func.sum(Transaction.amount)).where(
                and_(
                    Transaction.loan_id == loan_id,
                    Transaction.transaction_type == TransactionType.REPAYMENT,
                    Transaction.direction == TransactionDirection.CREDIT,
                )
            )
        )
        total = result.scalar()
        return quantize_btc(total) if total is not None else quantize_btc(ZERO)

    async def get_monthly_summary(self, user_id: int) -> TransactionSummaryResponse:
        """Per-month totals by transaction type, oldest month first"""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        )
        entries = result.scalars().all()

        buckets = OrderedDict()
        total_credits = ZERO
        total_debits = ZERO
        for entry in entries:
            period = entry.created_at.strftime("%Y-%m")
            bucket = buckets.setdefault(period, {
                TransactionType.DEPOSIT: ZERO,
                TransactionType.WITHDRAWAL: ZERO,
                TransactionType.REPAYMENT: ZERO,
                TransactionType.DISBURSEMENT: ZERO,
                "net": ZERO,
                "count": 0,
            })
            bucket[entry.transaction_type] += entry.amount
            bucket["net"] += entry.signed_amount
            bucket["count"] += 1
            if entry.is_credit:
                total_credits += entry.amount
            else:
                total_debits += entry.amount

        months = [
            MonthlyTransactionSummary(
                period=period,
                deposits=quantize_btc(bucket[TransactionType.DEPOSIT]),
                withdrawals=quantize_btc(bucket[TransactionType.WITHDRAWAL]),
                repayments=quantize_btc(bucket[TransactionType.REPAYMENT]),
                disbursements=quantize_btc(bucket[TransactionType.DISBURSEMENT]),
                net=quantize_btc(bucket["net"]),
                transaction_count=bucket["count"],
            )
            for period, bucket in buckets.items()
        ]
        return TransactionSummaryResponse(
            months=months,
            total_credits=quantize_btc(total_credits),
            total_debits=quantize_btc(total_debits),
        )
