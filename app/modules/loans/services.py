from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, and_, or_, case, func
from sqlalchemy.exc import IntegrityError
from decimal import Decimal
from typing import List, Optional, Tuple
import logging

from app.core.exceptions import (
    LendingError, ValidationError, ConflictError, NotFoundError,
    PermissionDeniedError, InternalError
)
from app.core.money import BTC_PLACES, ZERO, ensure_precision, quantize_btc, to_decimal
from app.core.rates import RateProvider, StaticRateProvider
from app.modules.loans.models import Loan, LoanType, LoanStatus
from app.modules.loans.schemas import (
    LoanCreate, LoanResponse, LoanDetailResponse, LoanCalculatorRequest,
    LoanCalculatorResponse, MarketplaceSortEnum
)
from app.modules.loans.calculator import (
    calculate_loan_terms, validate_principal, validate_rate, validate_duration,
    split_repayment, repayment_progress
)
from app.modules.loans.lifecycle import ensure_transition, creator_role, counterparty_role
from app.modules.transactions.models import Transaction, TransactionType
from app.modules.transactions.services import LedgerService
from app.modules.users.schemas import UserStatsResponse

logger = logging.getLogger(__name__)

MATCHED_STATUSES = (LoanStatus.ACTIVE, LoanStatus.COMPLETED, LoanStatus.DEFAULTED)


class LoanService:
    """Loan creation, marketplace matching, repayment and lifecycle transitions"""

    def __init__(self, db: AsyncSession, rate_provider: Optional[RateProvider] = None):
        self.db = db
        self.rate_provider = rate_provider or StaticRateProvider()
        self.ledger = LedgerService(db, self.rate_provider)

    # ============ Calculator ============

    @staticmethod
    def calculate_loan(request: LoanCalculatorRequest) -> LoanCalculatorResponse:
        terms = calculate_loan_terms(request.amount, request.interest, request.duration_months)
        return LoanCalculatorResponse(
            principal=terms.principal,
            annual_rate_percent=terms.annual_rate_percent,
            duration_months=terms.duration_months,
            total_repayment=terms.total_repayment,
            interest_amount=terms.interest_amount,
            monthly_payment=terms.monthly_payment,
        )

    # ============ Creation ============

    async def create_loan(self, creator_id: int, loan_type: LoanType, data: LoanCreate) -> Loan:
        """Validate terms and post a new open loan"""
        loan_type = LoanType(loan_type)
        amount = quantize_btc(validate_principal(data.amount))
        interest = validate_rate(data.interest)
        duration = validate_duration(data.duration_months)
        if loan_type == LoanType.OFFER and not await self._can_fund(creator_id, amount):
            raise ValidationError("Insufficient balance to fund this offer", field="amount")

        loan = Loan(
            loan_type=loan_type,
            status=LoanStatus.OPEN,
            amount=amount,
            interest=interest,
            duration_months=duration,
            has_collateral=data.has_collateral,
            creator_id=creator_id,
        )
        setattr(loan, creator_role(loan_type), creator_id)

        self.db.add(loan)
        await self.db.commit()
        await self.db.refresh(loan)

        logger.info(
            f"User {creator_id} posted loan {loan_type.value} {loan.id}: "
            f"{amount} BTC at {interest}% for {duration} months"
        )
        return loan

    async def _can_fund(self, lender_id: int, amount: Decimal) -> bool:
        lender = await self.ledger.lock_user(lender_id)
        return lender.balance >= amount

    # ============ Queries ============

    async def _load(self, loan_id: int, for_update: bool = False) -> Loan:
        query = select(Loan).where(Loan.id == loan_id).execution_options(populate_existing=True)
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        loan = result.scalar_one_or_none()
        if loan is None:
            raise NotFoundError("Loan not found")
        return loan

    async def get_loan(self, loan_id: int, user_id: Optional[int] = None) -> Loan:
        """
        Fetch a loan. Open loans are public; matched loans are only
        visible to their parties.
        """
        loan = await self._load(loan_id)
        if user_id is not None and loan.status != LoanStatus.OPEN and not loan.is_party(user_id):
            raise NotFoundError("Loan not found")
        return loan

    async def get_marketplace(
        self,
        loan_type: Optional[LoanType] = None,
        has_collateral: Optional[bool] = None,
        min_amount: Optional[Decimal] = None,
        max_amount: Optional[Decimal] = None,
        min_interest: Optional[Decimal] = None,
        max_interest: Optional[Decimal] = None,
        max_duration: Optional[int] = None,
        exclude_user_id: Optional[int] = None,
        sort_by: MarketplaceSortEnum = MarketplaceSortEnum.NEWEST,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Loan]:
        """Open loans available for matching"""
        query = select(Loan).where(Loan.status == LoanStatus.OPEN)
        if loan_type is not None:
            query = query.where(Loan.loan_type == LoanType(loan_type))
        if has_collateral is not None:
            query = query.where(Loan.has_collateral == has_collateral)
        if min_amount is not None:
            query = query.where(Loan.amount >= min_amount)
        if max_amount is not None:
            query = query.where(Loan.amount <= max_amount)
        if min_interest is not None:
            query = query.where(Loan.interest >= min_interest)
        if max_interest is not None:
            query = query.where(Loan.interest <= max_interest)
        if max_duration is not None:
            query = query.where(Loan.duration_months <= max_duration)
        if exclude_user_id is not None:
            query = query.where(Loan.creator_id != exclude_user_id)

        order = {
            MarketplaceSortEnum.NEWEST: (Loan.created_at.desc(), Loan.id.desc()),
            MarketplaceSortEnum.AMOUNT: (Loan.amount.desc(), Loan.id.desc()),
            MarketplaceSortEnum.INTEREST: (Loan.interest.desc(), Loan.id.desc()),
            MarketplaceSortEnum.DURATION: (Loan.duration_months.asc(), Loan.id.desc()),
        }[MarketplaceSortEnum(sort_by)]
        query = query.order_by(*order).offset(skip).limit(limit)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_user_loans(self, user_id: int, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Loans the user posted or is a party to"""
        query = select(Loan).where(
            or_(Loan.creator_id == user_id, Loan.borrower_id == user_id, Loan.lender_id == user_id)
        )
        if status is not None:
            query = query.where(Loan.status == LoanStatus(status))
        query = query.order_by(Loan.created_at.desc(), Loan.id.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_active_loans(self, user_id: int) -> List[Loan]:
        return await self.get_user_loans(user_id, LoanStatus.ACTIVE)

    async def get_loan_transactions(self, loan_id: int, user_id: int) -> List[Transaction]:
        loan = await self._load(loan_id)
        if not loan.is_party(user_id):
            raise NotFoundError("Loan not found")
        return await self.ledger.get_loan_transactions(loan_id)

    async def get_loan_detail(self, loan: Loan) -> LoanDetailResponse:
        """Loan with server-side repayment progress"""
        terms = loan.terms
        repaid = await self.ledger.get_repaid_amount(loan.id)
        remaining = max(terms.total_repayment - repaid, ZERO)
        return LoanDetailResponse(
            **LoanResponse.model_validate(loan).model_dump(),
            amount_repaid=repaid,
            remaining_amount=quantize_btc(remaining),
            progress_percent=repayment_progress(terms, repaid),
        )

    # ============ Lifecycle ============

    async def _guarded_update(self, loan_id: int, expected: LoanStatus, target: LoanStatus,
                              extra_conditions=(), **values) -> bool:
        """
        Move a loan from ``expected`` to ``target`` in a single conditional
        UPDATE. Returns False when the loan was no longer in ``expected``.
        """
        ensure_transition(expected, target)
        result = await self.db.execute(
            update(Loan)
            .where(and_(Loan.id == loan_id, Loan.status == expected, *extra_conditions))
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _rollback_and_raise(self, error: Exception, action: str, loan_id: int):
        await self.db.rollback()
        if isinstance(error, LendingError):
            raise error
        logger.exception(f"Unexpected failure while trying to {action} loan {loan_id}")
        raise InternalError() from error

    async def accept_loan(self, loan_id: int, acceptor_id: int) -> Loan:
        """
        Match an open loan with the accepting user.

        The open -> active check and the counterparty assignment happen in
        one conditional UPDATE, so of two concurrent acceptances only one
        can see the loan open. The disbursement (lender debit, borrower
        credit) is recorded in the same database transaction; any failure
        rolls back the whole match.
        """
        try:
            matched = await self._guarded_update(
                loan_id,
                LoanStatus.OPEN,
                LoanStatus.ACTIVE,
                extra_conditions=(Loan.creator_id != acceptor_id,),
                lender_id=case((Loan.loan_type == LoanType.REQUEST, acceptor_id), else_=Loan.lender_id),
                borrower_id=case((Loan.loan_type == LoanType.OFFER, acceptor_id), else_=Loan.borrower_id),
                matched_at=func.now(),
            )
            if not matched:
                loan = await self._load(loan_id)
                if loan.creator_id == acceptor_id:
                    raise ValidationError("You cannot accept your own loan", field="loan_id")
                raise ConflictError("Loan is no longer available")

            loan = await self._load(loan_id)
            if loan.loan_type == LoanType.OFFER and not await self._can_fund(loan.lender_id, loan.amount):
                raise ConflictError("Offer is not funded")
            await self.ledger.record_transfer(
                TransactionType.DISBURSEMENT,
                payer_id=loan.lender_id,
                payee_id=loan.borrower_id,
                amount=loan.amount,
                loan_id=loan.id,
                description=f"Loan #{loan.id} disbursement",
            )
            await self.db.commit()
        except Exception as e:
            await self._rollback_and_raise(e, "accept", loan_id)

        await self.db.refresh(loan)
        logger.info(
            f"Loan {loan.id} matched: user {acceptor_id} joined as {counterparty_role(loan.loan_type).replace('_id', '')}, "
            f"{loan.amount} BTC disbursed"
        )
        return loan

    async def repay_loan(
        self,
        loan_id: int,
        payer_id: int,
        amount: Decimal,
        client_reference: Optional[str] = None,
    ) -> Tuple[Loan, Transaction, bool]:
        """
        Record a repayment from the borrower to the lender.

        Returns (loan, borrower's ledger entry, duplicate). A repeated
        ``client_reference`` returns the original entry without
        recording again. The loan completes once credited repayments
        reach the total repayment.
        """
        try:
            loan = await self._load(loan_id, for_update=True)
            if loan.borrower_id != payer_id:
                raise PermissionDeniedError("Only the borrower can repay this loan")

            if client_reference:
                existing = await self.ledger.find_by_client_reference(payer_id, loan_id, client_reference)
                if existing is not None:
                    logger.info(f"Duplicate repayment {client_reference} on loan {loan_id} ignored")
                    return loan, existing, True

            if loan.status != LoanStatus.ACTIVE:
                raise ConflictError(f"Loan is {loan.status.value}, repayments are not accepted")

            terms = loan.terms
            repaid = await self.ledger.get_repaid_amount(loan.id)
            outstanding = terms.total_repayment - repaid
            amount = ensure_precision(to_decimal(amount), BTC_PLACES)
            if outstanding < amount <= outstanding + BTC_PLACES * terms.duration_months:
                # Rounded instalments can overshoot the remainder by a few satoshis
                amount = outstanding
            if amount > outstanding:
                raise ValidationError(
                    f"Repayment of {amount} BTC exceeds outstanding balance of {outstanding} BTC",
                    field="amount"
                )

            debit, _ = await self.ledger.record_transfer(
                TransactionType.REPAYMENT,
                payer_id=loan.borrower_id,
                payee_id=loan.lender_id,
                amount=amount,
                loan_id=loan.id,
                description=f"Loan #{loan.id} repayment",
                client_reference=client_reference,
            )

            if repaid + amount >= terms.total_repayment:
                completed = await self._guarded_update(
                    loan.id, LoanStatus.ACTIVE, LoanStatus.COMPLETED, completed_at=func.now()
                )
                if not completed:
                    raise ConflictError("Loan status changed during repayment")
                logger.info(f"Loan {loan.id} fully repaid ({terms.total_repayment} BTC)")

            await self.db.commit()
        except IntegrityError as e:
            # Concurrent request with the same client_reference won the insert
            await self.db.rollback()
            existing = None
            if client_reference:
                existing = await self.ledger.find_by_client_reference(payer_id, loan_id, client_reference)
            if existing is None:
                logger.exception(f"Repayment on loan {loan_id} failed")
                raise InternalError() from e
            return await self._load(loan_id), existing, True
        except Exception as e:
            await self._rollback_and_raise(e, "repay", loan_id)

        loan = await self._load(loan_id)
        await self.db.refresh(debit)
        return loan, debit, False

    async def mark_defaulted(self, loan_id: int, user_id: int) -> Loan:
        """Lender declares an active loan in default"""
        try:
            loan = await self._load(loan_id)
            if loan.lender_id != user_id:
                raise PermissionDeniedError("Only the lender can mark this loan as defaulted")
            ensure_transition(loan.status, LoanStatus.DEFAULTED)

            if not await self._guarded_update(
                loan_id, LoanStatus.ACTIVE, LoanStatus.DEFAULTED, defaulted_at=func.now()
            ):
                raise ConflictError("Loan status changed, please retry")
            await self.db.commit()
        except Exception as e:
            await self._rollback_and_raise(e, "default", loan_id)

        logger.warning(f"Loan {loan_id} marked as defaulted by lender {user_id}")
        return await self._load(loan_id)

    # ============ Statistics ============

    async def get_user_stats(self, user_id: int) -> UserStatsResponse:
        """Borrowed/lent totals, active loan count and realized interest"""
        loans = await self.get_user_loans(user_id)

        total_borrowed = ZERO
        total_lent = ZERO
        active_loans = 0
        interest_earned = ZERO

        for loan in loans:
            if loan.status not in MATCHED_STATUSES:
                continue
            if loan.status == LoanStatus.ACTIVE:
                active_loans += 1
            if loan.borrower_id == user_id:
                total_borrowed += loan.amount
            if loan.lender_id == user_id:
                total_lent += loan.amount
                if loan.status in (LoanStatus.ACTIVE, LoanStatus.COMPLETED):
                    repaid = await self.ledger.get_repaid_amount(loan.id)
                    _, interest = split_repayment(loan.terms, repaid)
                    interest_earned += interest

        return UserStatsResponse(
            total_borrowed=quantize_btc(total_borrowed),
            total_lent=quantize_btc(total_lent),
            active_loans=active_loans,
            interest_earned=quantize_btc(interest_earned),
        )
