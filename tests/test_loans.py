"""
Integration tests for LoanService: creation, matching, repayment and defaults
"""
import asyncio
import pytest
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core.database import Base, use_immediate_transactions
from app.core.exceptions import (
    ValidationError, ConflictError, NotFoundError, PermissionDeniedError, InvalidTransitionError,
    InternalError
)
from app.core.rates import StaticRateProvider
from app.modules.loans.models import Loan, LoanStatus, LoanType
from app.modules.loans.schemas import LoanCreate
from app.modules.loans.services import LoanService
from app.modules.transactions.models import Transaction, TransactionType, TransactionDirection
from app.modules.users.models import User


def loan_form(amount="0.5", interest="5", duration_months=6, has_collateral=False):
    return LoanCreate(
        amount=Decimal(amount),
        interest=Decimal(interest),
        duration_months=duration_months,
        has_collateral=has_collateral,
    )


@pytest.fixture
def service(db_session, rate_provider):
    return LoanService(db_session, rate_provider)


class TestLoanCreation:

    @pytest.mark.integration
    async def test_create_request(self, service, borrower):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())

        assert loan.id is not None
        assert loan.status == LoanStatus.OPEN
        assert loan.loan_type == LoanType.REQUEST
        assert loan.creator_id == borrower.id
        assert loan.borrower_id == borrower.id
        assert loan.lender_id is None
        assert loan.total_repayment == Decimal("0.5125")

    @pytest.mark.integration
    async def test_create_offer(self, service, lender):
        loan = await service.create_loan(lender.id, LoanType.OFFER, loan_form(has_collateral=True))

        assert loan.lender_id == lender.id
        assert loan.borrower_id is None
        assert loan.has_collateral is True

    @pytest.mark.integration
    @pytest.mark.parametrize("form,field", [
        (dict(amount="0.005"), "amount"),
        (dict(amount="10.5"), "amount"),
        (dict(interest="20"), "interest"),
        (dict(interest="0.5"), "interest"),
        (dict(duration_months=37), "duration_months"),
    ])
    async def test_out_of_bounds_loans_are_not_persisted(self, service, db_session, borrower, form, field):
        borrower_id = borrower.id

        with pytest.raises(ValidationError) as exc_info:
            await service.create_loan(borrower_id, LoanType.REQUEST, loan_form(**form))

        assert exc_info.value.field == field
        assert await service.get_marketplace() == []
        stored = (await db_session.execute(select(Loan))).scalars().all()
        assert stored == []

    @pytest.mark.integration
    async def test_bounds_are_inclusive(self, service, borrower):
        low = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("0.01", "1", 1))
        high = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("10", "15", 36))

        assert low.status == LoanStatus.OPEN
        assert high.status == LoanStatus.OPEN

    @pytest.mark.integration
    @pytest.mark.parametrize("form,field", [
        (dict(interest="5.555"), "interest"),
        (dict(amount="0.123456789"), "amount"),
    ])
    async def test_excess_precision_rejected(self, service, db_session, borrower, form, field):
        borrower_id = borrower.id

        with pytest.raises(ValidationError, match="decimal places") as exc_info:
            await service.create_loan(borrower_id, LoanType.REQUEST, loan_form(**form))

        assert exc_info.value.field == field
        stored = (await db_session.execute(select(Loan))).scalars().all()
        assert stored == []

    @pytest.mark.integration
    async def test_terms_stored_as_submitted(self, service, borrower):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("0.12345678", "5.55", 12))

        assert loan.amount == Decimal("0.12345678")
        assert loan.interest == Decimal("5.55")

    @pytest.mark.integration
    async def test_unfunded_offer_rejected(self, service, db_session, make_user):
        poor = await make_user("erin@example.com", balance="0.1")
        poor_id = poor.id

        with pytest.raises(ValidationError, match="fund this offer"):
            await service.create_loan(poor_id, LoanType.OFFER, loan_form("1"))

        stored = (await db_session.execute(select(Loan))).scalars().all()
        assert stored == []


class TestMarketplace:

    @pytest.mark.integration
    async def test_only_open_loans_listed(self, service, borrower, lender):
        open_loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        matched = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("0.05"))
        await service.accept_loan(matched.id, lender.id)

        listed = await service.get_marketplace()

        assert [loan.id for loan in listed] == [open_loan.id]

    @pytest.mark.integration
    async def test_filters(self, service, borrower, lender):
        request = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("1", "8", 12))
        offer = await service.create_loan(lender.id, LoanType.OFFER, loan_form("2", "12", 24, True))

        assert [l.id for l in await service.get_marketplace(loan_type=LoanType.OFFER)] == [offer.id]
        assert [l.id for l in await service.get_marketplace(has_collateral=False)] == [request.id]
        assert [l.id for l in await service.get_marketplace(min_amount=Decimal("1.5"))] == [offer.id]
        assert [l.id for l in await service.get_marketplace(max_interest=Decimal("10"))] == [request.id]
        assert [l.id for l in await service.get_marketplace(max_duration=12)] == [request.id]
        assert [l.id for l in await service.get_marketplace(exclude_user_id=borrower.id)] == [offer.id]

    @pytest.mark.integration
    async def test_sort_by_interest(self, service, borrower):
        low = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form(interest="3"))
        high = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form(interest="9"))

        listed = await service.get_marketplace(sort_by="interest")

        assert [l.id for l in listed] == [high.id, low.id]


class TestAcceptLoan:

    @pytest.mark.integration
    async def test_accept_request_makes_acceptor_lender(self, service, db_session, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())

        matched = await service.accept_loan(loan.id, lender.id)

        assert matched.status == LoanStatus.ACTIVE
        assert matched.borrower_id == borrower.id
        assert matched.lender_id == lender.id
        assert matched.matched_at is not None

        await db_session.refresh(borrower)
        await db_session.refresh(lender)
        assert borrower.balance == Decimal("1.0")
        assert lender.balance == Decimal("4.5")

    @pytest.mark.integration
    async def test_accept_offer_makes_acceptor_borrower(self, service, borrower, lender):
        loan = await service.create_loan(lender.id, LoanType.OFFER, loan_form())

        matched = await service.accept_loan(loan.id, borrower.id)

        assert matched.borrower_id == borrower.id
        assert matched.lender_id == lender.id

    @pytest.mark.integration
    async def test_accept_records_disbursement_pair(self, service, db_session, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        await service.accept_loan(loan.id, lender.id)

        entries = (await db_session.execute(
            select(Transaction).where(Transaction.loan_id == loan.id)
        )).scalars().all()

        assert len(entries) == 2
        by_user = {entry.user_id: entry for entry in entries}
        assert by_user[lender.id].direction == TransactionDirection.DEBIT
        assert by_user[borrower.id].direction == TransactionDirection.CREDIT
        for entry in entries:
            assert entry.transaction_type == TransactionType.DISBURSEMENT
            assert entry.amount == Decimal("0.5")
            assert entry.usd_value == Decimal("20000.00")

    @pytest.mark.integration
    async def test_second_accept_conflicts(self, service, db_session, borrower, lender, other_lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        loan_id, lender_id, other_id = loan.id, lender.id, other_lender.id
        await service.accept_loan(loan_id, lender_id)

        with pytest.raises(ConflictError, match="no longer available"):
            await service.accept_loan(loan_id, other_id)

        reloaded = await service.get_loan(loan_id)
        assert reloaded.lender_id == lender_id
        other = await db_session.get(User, other_id)
        await db_session.refresh(other)
        assert other.balance == Decimal("5")

    @pytest.mark.integration
    async def test_cannot_accept_own_loan(self, service, borrower):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        loan_id, borrower_id = loan.id, borrower.id

        with pytest.raises(ValidationError, match="own loan"):
            await service.accept_loan(loan_id, borrower_id)

        assert (await service.get_loan(loan_id)).status == LoanStatus.OPEN

    @pytest.mark.integration
    async def test_accept_missing_loan(self, service, lender):
        with pytest.raises(NotFoundError):
            await service.accept_loan(9999, lender.id)

    @pytest.mark.integration
    async def test_insufficient_lender_balance_leaves_loan_open(self, service, db_session, borrower, make_user):
        poor = await make_user("dave@example.com", balance="0.1")
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("2", "5", 6))
        loan_id, poor_id = loan.id, poor.id

        with pytest.raises(ValidationError, match="Insufficient balance"):
            await service.accept_loan(loan_id, poor_id)

        reloaded = await service.get_loan(loan_id)
        assert reloaded.status == LoanStatus.OPEN
        assert reloaded.lender_id is None
        entries = (await db_session.execute(select(Transaction))).scalars().all()
        assert entries == []

    @pytest.mark.integration
    async def test_offer_drained_after_posting(self, service, db_session, borrower, lender):
        loan = await service.create_loan(lender.id, LoanType.OFFER, loan_form("2", "5", 6))
        loan_id, borrower_id = loan.id, borrower.id
        await service.ledger.record(lender.id, TransactionType.WITHDRAWAL, Decimal("4"))
        await db_session.commit()

        with pytest.raises(ConflictError, match="Offer is not funded"):
            await service.accept_loan(loan_id, borrower_id)

        reloaded = await service.get_loan(loan_id)
        assert reloaded.status == LoanStatus.OPEN
        assert reloaded.borrower_id is None

    @pytest.mark.integration
    async def test_unexpected_failure_rolls_back_match(self, service, monkeypatch, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        loan_id, lender_id = loan.id, lender.id

        async def broken_transfer(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(service.ledger, "record_transfer", broken_transfer)

        with pytest.raises(InternalError):
            await service.accept_loan(loan_id, lender_id)

        reloaded = await service.get_loan(loan_id)
        assert reloaded.status == LoanStatus.OPEN
        assert reloaded.lender_id is None
        assert reloaded.matched_at is None


class TestConcurrentAccept:
    """Two users accepting the same loan at once on separate connections"""

    @pytest.mark.integration
    async def test_exactly_one_acceptance_wins(self, tmp_path):
        engine = use_immediate_transactions(create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'race.db'}", poolclass=NullPool
        ))
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        rates = StaticRateProvider(Decimal("40000"))

        try:
            async with sessions() as setup:
                users = [
                    User(email=f"user{i}@example.com", hashed_password="x", balance=Decimal("5"))
                    for i in range(3)
                ]
                setup.add_all(users)
                await setup.commit()
                borrower_id, first_id, second_id = [u.id for u in users]
                loan = await LoanService(setup, rates).create_loan(
                    borrower_id, LoanType.REQUEST, loan_form()
                )
                loan_id = loan.id

            async def accept(user_id):
                async with sessions() as session:
                    return await LoanService(session, rates).accept_loan(loan_id, user_id)

            results = await asyncio.gather(accept(first_id), accept(second_id), return_exceptions=True)

            successes = [r for r in results if isinstance(r, Loan)]
            conflicts = [r for r in results if isinstance(r, ConflictError)]
            assert len(successes) == 1
            assert len(conflicts) == 1

            async with sessions() as check:
                final = await check.get(Loan, loan_id)
                assert final.status == LoanStatus.ACTIVE
                assert final.borrower_id == borrower_id
                assert final.lender_id == successes[0].lender_id
                assert final.lender_id in (first_id, second_id)

                disbursements = (await check.execute(
                    select(Transaction).where(Transaction.transaction_type == TransactionType.DISBURSEMENT)
                )).scalars().all()
                assert len(disbursements) == 2
        finally:
            await engine.dispose()


class TestRepayment:

    async def _active_loan(self, service, borrower, lender, amount="1", interest="12", months=12):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form(amount, interest, months))
        return await service.accept_loan(loan.id, lender.id)

    @pytest.mark.integration
    async def test_partial_repayment(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)

        loan, entry, duplicate = await service.repay_loan(loan.id, borrower.id, Decimal("0.28"))

        assert duplicate is False
        assert loan.status == LoanStatus.ACTIVE
        assert entry.transaction_type == TransactionType.REPAYMENT
        assert entry.direction == TransactionDirection.DEBIT
        assert entry.user_id == borrower.id

        detail = await service.get_loan_detail(loan)
        assert detail.amount_repaid == Decimal("0.28")
        assert detail.remaining_amount == Decimal("0.84")
        assert detail.progress_percent == Decimal("25.00")

    @pytest.mark.integration
    async def test_full_repayment_completes_loan(self, service, db_session, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)

        await service.repay_loan(loan.id, borrower.id, Decimal("0.56"))
        loan, _, _ = await service.repay_loan(loan.id, borrower.id, Decimal("0.56"))

        assert loan.status == LoanStatus.COMPLETED
        assert loan.completed_at is not None
        repaid = await service.ledger.get_repaid_amount(loan.id)
        assert repaid >= loan.total_repayment

        await db_session.refresh(lender)
        assert lender.balance == Decimal("5.12")

    @pytest.mark.integration
    async def test_paying_monthly_instalments_completes_loan(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender, amount="0.5", interest="5", months=6)
        instalment = loan.monthly_payment
        assert instalment * 6 > loan.total_repayment

        for _ in range(6):
            loan, entry, _ = await service.repay_loan(loan.id, borrower.id, instalment)

        assert loan.status == LoanStatus.COMPLETED
        assert entry.amount < instalment
        assert await service.ledger.get_repaid_amount(loan.id) == loan.total_repayment

    @pytest.mark.integration
    async def test_sub_satoshi_repayment_rejected(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)
        loan_id, borrower_id = loan.id, borrower.id

        with pytest.raises(ValidationError, match="decimal places"):
            await service.repay_loan(loan_id, borrower_id, Decimal("0.000000001"))

    @pytest.mark.integration
    async def test_overpayment_rejected(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)
        loan_id, borrower_id = loan.id, borrower.id

        with pytest.raises(ValidationError, match="exceeds outstanding"):
            await service.repay_loan(loan_id, borrower_id, Decimal("1.2"))

        assert await service.ledger.get_repaid_amount(loan_id) == Decimal("0")

    @pytest.mark.integration
    async def test_duplicate_reference_not_double_counted(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)

        _, first, dup1 = await service.repay_loan(loan.id, borrower.id, Decimal("0.5"), "pay-1")
        _, second, dup2 = await service.repay_loan(loan.id, borrower.id, Decimal("0.5"), "pay-1")

        assert dup1 is False
        assert dup2 is True
        assert second.id == first.id
        assert await service.ledger.get_repaid_amount(loan.id) == Decimal("0.5")

    @pytest.mark.integration
    async def test_distinct_references_both_count(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)

        await service.repay_loan(loan.id, borrower.id, Decimal("0.5"), "pay-1")
        await service.repay_loan(loan.id, borrower.id, Decimal("0.5"), "pay-2")

        assert await service.ledger.get_repaid_amount(loan.id) == Decimal("1")

    @pytest.mark.integration
    async def test_only_borrower_can_repay(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)
        loan_id, lender_id = loan.id, lender.id

        with pytest.raises(PermissionDeniedError):
            await service.repay_loan(loan_id, lender_id, Decimal("0.1"))

    @pytest.mark.integration
    async def test_cannot_repay_open_loan(self, service, borrower):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        loan_id, borrower_id = loan.id, borrower.id

        with pytest.raises(ConflictError):
            await service.repay_loan(loan_id, borrower_id, Decimal("0.01"))

    @pytest.mark.integration
    async def test_cannot_repay_completed_loan(self, service, borrower, lender):
        loan = await self._active_loan(service, borrower, lender)
        loan_id, borrower_id = loan.id, borrower.id
        await service.repay_loan(loan_id, borrower_id, Decimal("1.12"))

        with pytest.raises(ConflictError):
            await service.repay_loan(loan_id, borrower_id, Decimal("0.01"))

        assert (await service.get_loan(loan_id)).status == LoanStatus.COMPLETED


class TestDefault:

    @pytest.mark.integration
    async def test_lender_marks_default(self, service, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        await service.accept_loan(loan.id, lender.id)

        defaulted = await service.mark_defaulted(loan.id, lender.id)

        assert defaulted.status == LoanStatus.DEFAULTED
        assert defaulted.defaulted_at is not None

    @pytest.mark.integration
    async def test_open_loan_cannot_default(self, service, borrower, lender):
        loan = await service.create_loan(lender.id, LoanType.OFFER, loan_form())
        loan_id, lender_id = loan.id, lender.id

        with pytest.raises(InvalidTransitionError):
            await service.mark_defaulted(loan_id, lender_id)

    @pytest.mark.integration
    async def test_borrower_cannot_default(self, service, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form())
        await service.accept_loan(loan.id, lender.id)
        loan_id, borrower_id = loan.id, borrower.id

        with pytest.raises(PermissionDeniedError):
            await service.mark_defaulted(loan_id, borrower_id)

    @pytest.mark.integration
    async def test_status_never_regresses(self, service, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("1", "12", 12))
        await service.accept_loan(loan.id, lender.id)
        loan_id, borrower_id, lender_id = loan.id, borrower.id, lender.id
        await service.repay_loan(loan_id, borrower_id, Decimal("1.12"))

        with pytest.raises(InvalidTransitionError):
            await service.mark_defaulted(loan_id, lender_id)
        with pytest.raises(ConflictError):
            await service.accept_loan(loan_id, lender_id)

        assert (await service.get_loan(loan_id)).status == LoanStatus.COMPLETED


class TestUserStats:

    @pytest.mark.integration
    async def test_stats_for_both_sides(self, service, borrower, lender):
        loan = await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("1", "12", 12))
        await service.accept_loan(loan.id, lender.id)
        await service.create_loan(borrower.id, LoanType.REQUEST, loan_form("3"))
        await service.repay_loan(loan.id, borrower.id, Decimal("0.56"))

        borrower_stats = await service.get_user_stats(borrower.id)
        lender_stats = await service.get_user_stats(lender.id)

        assert borrower_stats.total_borrowed == Decimal("1")
        assert borrower_stats.total_lent == Decimal("0")
        assert borrower_stats.active_loans == 1
        assert borrower_stats.interest_earned == Decimal("0")

        assert lender_stats.total_lent == Decimal("1")
        assert lender_stats.active_loans == 1
        assert lender_stats.interest_earned == Decimal("0.06")

    @pytest.mark.integration
    async def test_stats_empty(self, service, borrower):
        stats = await service.get_user_stats(borrower.id)

        assert stats.total_borrowed == Decimal("0")
        assert stats.total_lent == Decimal("0")
        assert stats.active_loans == 0
        assert stats.interest_earned == Decimal("0")
