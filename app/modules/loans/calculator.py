"""
Simple-interest loan arithmetic.

Interest accrues on the principal only, pro-rated by the fraction of a
year the loan spans:

    total = principal + principal * (rate / 100) * (months / 12)

All amounts are Decimal and quantised to 8 decimal places (satoshis).
Invalid input raises ValidationError; nothing is clamped.
"""
from dataclasses import dataclass
from decimal import Decimal

from app.core.config import settings
from app.core.exceptions import ValidationError
from app.core.money import (
    BTC_PLACES, RATE_PLACES, ZERO, Number, ensure_precision, quantize_btc, to_decimal
)

HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")


@dataclass(frozen=True)
class LoanTerms:
    principal: Decimal
    annual_rate_percent: Decimal
    duration_months: int
    total_repayment: Decimal
    interest_amount: Decimal
    monthly_payment: Decimal


def validate_principal(principal: Number, bounded: bool = True) -> Decimal:
    principal = to_decimal(principal, "amount")
    ensure_precision(principal, BTC_PLACES, "amount")
    if principal <= ZERO:
        raise ValidationError("Amount must be greater than zero", field="amount")
    if bounded:
        if principal < settings.LOAN_MIN_AMOUNT:
            raise ValidationError(
                f"Amount must be at least {settings.LOAN_MIN_AMOUNT} BTC", field="amount"
            )
        if principal > settings.LOAN_MAX_AMOUNT:
            raise ValidationError(
                f"Amount cannot exceed {settings.LOAN_MAX_AMOUNT} BTC", field="amount"
            )
    return principal


def validate_rate(annual_rate_percent: Number) -> Decimal:
    rate = to_decimal(annual_rate_percent, "interest")
    ensure_precision(rate, RATE_PLACES, "interest")
    if rate < settings.LOAN_MIN_INTEREST:
        raise ValidationError(
            f"Interest rate must be at least {settings.LOAN_MIN_INTEREST}%", field="interest"
        )
    if rate > settings.LOAN_MAX_INTEREST:
        raise ValidationError(
            f"Interest rate cannot exceed {settings.LOAN_MAX_INTEREST}%", field="interest"
        )
    return rate


def validate_duration(duration_months) -> int:
    if isinstance(duration_months, bool) or not isinstance(duration_months, (int, Decimal)):
        raise ValidationError("Duration must be a whole number of months", field="duration_months")
    if isinstance(duration_months, Decimal):
        if duration_months != duration_months.to_integral_value():
            raise ValidationError("Duration must be a whole number of months", field="duration_months")
        duration_months = int(duration_months)
    if duration_months < settings.LOAN_MIN_DURATION_MONTHS:
        raise ValidationError(
            f"Duration must be at least {settings.LOAN_MIN_DURATION_MONTHS} month", field="duration_months"
        )
    if duration_months > settings.LOAN_MAX_DURATION_MONTHS:
        raise ValidationError(
            f"Duration cannot exceed {settings.LOAN_MAX_DURATION_MONTHS} months", field="duration_months"
        )
    return duration_months


def calculate_loan_terms(principal: Number, annual_rate_percent: Number, duration_months: int) -> LoanTerms:
    """Total repayment, interest and monthly instalment for a simple-interest loan"""
    principal = validate_principal(principal, bounded=False)
    rate = validate_rate(annual_rate_percent)
    months = validate_duration(duration_months)

    interest = principal * (rate / HUNDRED) * (Decimal(months) / MONTHS_PER_YEAR)
    total = quantize_btc(principal + interest)

    return LoanTerms(
        principal=quantize_btc(principal),
        annual_rate_percent=rate,
        duration_months=months,
        total_repayment=total,
        interest_amount=quantize_btc(total - principal),
        monthly_payment=quantize_btc(total / Decimal(months)),
    )


def calculate_total_repayment(principal: Number, annual_rate_percent: Number, duration_months: int) -> Decimal:
    return calculate_loan_terms(principal, annual_rate_percent, duration_months).total_repayment


def split_repayment(terms: LoanTerms, repaid: Number) -> tuple:
    """
    Split a repaid amount into (principal, interest) portions.

    Each unit repaid carries interest in the same proportion as the
    loan as a whole.
    """
    repaid = to_decimal(repaid, "repaid")
    if repaid <= ZERO or terms.total_repayment == ZERO:
        return quantize_btc(ZERO), quantize_btc(ZERO)
    repaid = min(repaid, terms.total_repayment)
    interest = quantize_btc(repaid * terms.interest_amount / terms.total_repayment)
    return quantize_btc(repaid - interest), interest


def repayment_progress(terms: LoanTerms, repaid: Number) -> Decimal:
    """Percentage of the total repayment already paid, capped at 100"""
    repaid = to_decimal(repaid, "repaid")
    if repaid <= ZERO:
        return Decimal("0.00")
    progress = min(repaid / terms.total_repayment * HUNDRED, HUNDRED)
    return progress.quantize(Decimal("0.01"))
