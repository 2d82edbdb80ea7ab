"""
Financial Calculator Module

Pure functions deriving a loan's financial state from its terms and payment
history. Uses simple (flat) interest over the whole term:

    interest      = principal * (rate / 100) * (term / 12)
    total_payable = principal + interest
    installment   = total_payable / term

Nothing here reads the clock or mutates its inputs.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional, Union
from enum import Enum
import calendar

from .currency import Money
from .errors import InvalidTermError
from .workflow import WorkflowStage


MIN_INTEREST_RATE = Decimal('1')
MAX_INTEREST_RATE = Decimal('100')


class RepaymentFrequency(Enum):
    """Repayment frequency options"""
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    SEMI_ANNUALLY = "Semi-annually"
    ANNUALLY = "Annually"

    @property
    def months_per_period(self) -> int:
        return {
            RepaymentFrequency.MONTHLY: 1,
            RepaymentFrequency.QUARTERLY: 3,
            RepaymentFrequency.SEMI_ANNUALLY: 6,
            RepaymentFrequency.ANNUALLY: 12,
        }[self]


@dataclass(frozen=True)
class Schedule:
    total_payable: Money
    monthly_installment: Money
    total_interest: Money


@dataclass(frozen=True)
class Progress:
    paid_amount: Money
    remaining_balance: Money
    completion_percentage: int


@dataclass(frozen=True)
class OverdueStatus:
    next_payment_date: Optional[date]
    days_overdue: int


def validate_terms(
    principal: Money,
    annual_rate: Decimal,
    term_months: int,
    min_rate: Decimal = MIN_INTEREST_RATE,
    max_rate: Decimal = MAX_INTEREST_RATE,
    max_term_months: Optional[int] = None
) -> None:
    """
    Check loan terms before any calculation

    Raises:
        InvalidTermError: On non-positive principal or term, or a rate
            outside [min_rate, max_rate]
    """
    if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months <= 0:
        raise InvalidTermError(
            f"Loan term must be a positive number of months, got {term_months!r}",
            {'field': 'term_months'}
        )
    if max_term_months is not None and term_months > max_term_months:
        raise InvalidTermError(
            f"Loan term cannot exceed {max_term_months} months",
            {'field': 'term_months'}
        )
    if not principal.is_positive():
        raise InvalidTermError(
            f"Principal must be positive, got {principal.to_string()}",
            {'field': 'principal'}
        )
    rate = Decimal(str(annual_rate))
    if rate < min_rate or rate > max_rate:
        raise InvalidTermError(
            f"Interest rate must be between {min_rate} and {max_rate} percent, got {rate}",
            {'field': 'interest_rate'}
        )


def compute_schedule(principal: Money, annual_rate: Decimal, term_months: int) -> Schedule:
    """
    Compute total payable and monthly installment using simple interest

    Args:
        principal: Amount borrowed
        annual_rate: Annual interest rate in percent (12.5 means 12.5%)
        term_months: Loan term in months

    Returns:
        Schedule with total payable, monthly installment and total interest
    """
    validate_terms(principal, annual_rate, term_months)

    rate = Decimal(str(annual_rate))
    interest = principal.amount * (rate / Decimal('100')) * (Decimal(term_months) / Decimal('12'))
    total_interest = Money(interest, principal.currency)
    total_payable = principal + total_interest
    monthly_installment = Money(total_payable.amount / Decimal(term_months), principal.currency)

    return Schedule(
        total_payable=total_payable,
        monthly_installment=monthly_installment,
        total_interest=total_interest
    )


def compute_progress(total_payable: Money, approved_payments: Iterable[Money]) -> Progress:
    """
    Compute remaining balance and completion percentage from approved payments.
    Overpayment clamps the balance at zero and the percentage at 100.
    """
    if not total_payable.is_positive():
        raise InvalidTermError("Total payable amount must be positive", {'field': 'total_payable'})

    paid = Money.zero(total_payable.currency)
    for payment in approved_payments:
        paid = paid + payment

    remaining = total_payable - paid
    if remaining.amount < 0:
        remaining = Money.zero(total_payable.currency)

    ratio = (paid.amount * Decimal('100')) / total_payable.amount
    percentage = int(ratio.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    percentage = max(0, min(100, percentage))

    return Progress(
        paid_amount=paid,
        remaining_balance=remaining,
        completion_percentage=percentage
    )


def add_months(start: date, months: int, day: Optional[int] = None) -> date:
    """Shift a date by whole months, clamping the day to the target month's length"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    target_day = day if day is not None else start.day
    return date(year, month, min(target_day, calendar.monthrange(year, month)[1]))


def due_date_in_month(year: int, month: int, due_day: int) -> date:
    return date(year, month, min(due_day, calendar.monthrange(year, month)[1]))


def first_due_date(start: date, due_day: int) -> date:
    """First installment due date strictly after the repayment start date"""
    candidate = due_date_in_month(start.year, start.month, due_day)
    if candidate <= start:
        candidate = add_months(candidate, 1, due_day)
    return candidate


def months_between(start: date, end: date) -> int:
    """Whole months elapsed from start to end, never negative"""
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if end.day < start.day:
        months -= 1
    return max(months, 0)


def installments_covered(paid: Money, monthly_installment: Money) -> int:
    """Number of whole installments the paid amount covers"""
    if not monthly_installment.is_positive():
        return 0
    covered = (paid.amount / monthly_installment.amount).to_integral_value(rounding=ROUND_FLOOR)
    return int(covered)


def compute_overdue(
    due_day: int,
    stage: WorkflowStage,
    now: Union[datetime, date],
    first_due: Optional[date] = None,
    covered_installments: int = 0,
    term_months: Optional[int] = None
) -> OverdueStatus:
    """
    Compute next payment date and days overdue for a loan in repayment

    Only meaningful while the loan is in the active stage; any other stage
    yields no next payment date and zero days overdue.

    Args:
        due_day: Day of month installments fall due (clamped to month length)
        stage: Current workflow stage
        now: Current time
        first_due: Due date of the first installment
        covered_installments: Installments fully covered by approved payments
        term_months: Total installments; a fully covered loan is never overdue
    """
    if stage != WorkflowStage.ACTIVE:
        return OverdueStatus(next_payment_date=None, days_overdue=0)

    today = now.date() if isinstance(now, datetime) else now

    next_payment = due_date_in_month(today.year, today.month, due_day)
    if next_payment < today:
        next_payment = add_months(next_payment, 1, due_day)

    days_overdue = 0
    if first_due is not None:
        fully_paid = term_months is not None and covered_installments >= term_months
        if not fully_paid:
            oldest_unpaid = add_months(first_due, covered_installments, due_day)
            if oldest_unpaid < today:
                days_overdue = (today - oldest_unpaid).days

    return OverdueStatus(next_payment_date=next_payment, days_overdue=days_overdue)


def compute_accrued_interest(
    principal: Money,
    annual_rate: Decimal,
    term_months: int,
    months_elapsed: int
) -> Money:
    """Interest earned so far, accruing evenly across the term"""
    schedule = compute_schedule(principal, annual_rate, term_months)
    elapsed = max(0, min(months_elapsed, term_months))
    return schedule.total_interest * (Decimal(elapsed) / Decimal(term_months))


def required_down_payment(principal: Money, ratio: Decimal) -> Money:
    """Minimum down payment for a principal"""
    return principal * Decimal(str(ratio))


def period_installment(monthly_installment: Money, frequency: RepaymentFrequency) -> Money:
    """Installment due per repayment period for the given frequency"""
    return monthly_installment * Decimal(frequency.months_per_period)
