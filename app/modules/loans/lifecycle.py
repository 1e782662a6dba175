"""Loan status state machine: open -> active -> completed | defaulted."""
from app.core.exceptions import InvalidTransitionError
from app.modules.loans.models import LoanStatus, LoanType

ALLOWED_TRANSITIONS = {
    LoanStatus.OPEN: frozenset({LoanStatus.ACTIVE}),
    LoanStatus.ACTIVE: frozenset({LoanStatus.COMPLETED, LoanStatus.DEFAULTED}),
    LoanStatus.COMPLETED: frozenset(),
    LoanStatus.DEFAULTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return LoanStatus(target) in ALLOWED_TRANSITIONS[LoanStatus(current)]


def ensure_transition(current: LoanStatus, target: LoanStatus) -> LoanStatus:
    """Return ``target`` if the lifecycle allows it, else raise InvalidTransitionError"""
    current, target = LoanStatus(current), LoanStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot move loan from {current.value} to {target.value}"
        )
    return target


def is_terminal(status: LoanStatus) -> bool:
    return LoanStatus(status) in TERMINAL_STATUSES


def counterparty_role(loan_type: LoanType) -> str:
    """Role the accepting user takes: accepting a request lends, accepting an offer borrows"""
    if LoanType(loan_type) == LoanType.REQUEST:
        return "lender_id"
    return "borrower_id"


def creator_role(loan_type: LoanType) -> str:
    if LoanType(loan_type) == LoanType.REQUEST:
        return "borrower_id"
    return "lender_id"
