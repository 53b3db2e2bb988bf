"""
Amortization Module

Pure schedule generation: (principal, annual rate, term, first due date) to a
level-payment schedule whose installments total the financed amount exactly,
with rounding drift absorbed entirely by the final period.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional
import calendar

from .currency import Money
from .exceptions import InvalidTermError

MONTHS_PER_YEAR = Decimal('12')
PERCENT = Decimal('100')


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in an amortization schedule"""
    period_index: int
    due_date: date
    amount: Money


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of short months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Annual percentage rate to a periodic monthly fraction"""
    return Decimal(annual_rate_percent) / PERCENT / MONTHS_PER_YEAR


def _validate_terms(principal: Money, annual_rate_percent: Decimal, term_months: int) -> None:
    if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months <= 0:
        raise InvalidTermError(
            f"Term must be a positive number of months, got {term_months}",
            {"term_months": term_months}
        )
    if not principal.is_positive():
        raise InvalidTermError(
            f"Principal must be positive, got {principal.to_string()}",
            {"principal": principal.amount}
        )
    if Decimal(annual_rate_percent) < 0:
        raise InvalidTermError(
            f"Interest rate cannot be negative, got {annual_rate_percent}",
            {"annual_rate_percent": annual_rate_percent}
        )


def level_payment(principal: Money, annual_rate_percent: Decimal, term_months: int) -> Money:
    """
    Level installment for a fully amortizing loan, rounded to currency precision.

    Standard formula P * r(1+r)^n / ((1+r)^n - 1); P / n when the rate is zero.
    """
    _validate_terms(principal, annual_rate_percent, term_months)

    rate = monthly_rate(annual_rate_percent)
    if rate == 0:
        return principal / Decimal(term_months)

    factor = (Decimal('1') + rate) ** term_months
    return Money(principal.amount * (rate * factor) / (factor - Decimal('1')), principal.currency)


def total_simple_interest(principal: Money, annual_rate_percent: Decimal, term_months: int) -> Money:
    """Interest over the whole term on the full principal: P * rate * term / 1200"""
    return principal * (Decimal(annual_rate_percent) * Decimal(term_months) / Decimal('1200'))


def compute_schedule(
    principal: Money,
    annual_rate_percent: Decimal,
    term_months: int,
    first_due_date: date,
    financed_total: Optional[Money] = None
) -> List[ScheduleEntry]:
    """
    Generate the installment schedule.

    Period k falls due on first_due_date + (k - 1) months, so the first
    installment is due on first_due_date itself. Every period but the last
    pays the rounded level payment; the last pays whatever remains of the
    target total, so the installments sum to it exactly.

    The target is the principal unless financed_total is given. When n - 1
    level payments already exceed the principal (interest-bearing loans over
    roughly a year), the target becomes principal plus simple interest for
    the term, the amount the loan is activated with.

    Args:
        principal: Amount financed; drives the level payment
        annual_rate_percent: Annual rate as a percentage (12 means 12%)
        term_months: Number of monthly installments
        first_due_date: Due date of installment 1
        financed_total: Amount the installments must sum to (defaults to principal)

    Returns:
        Ordered list of ScheduleEntry, one per month

    Raises:
        InvalidTermError: On non-positive term or principal, negative rate,
            or an explicit financed_total below n - 1 level payments
    """
    payment = level_payment(principal, annual_rate_percent, term_months)
    scheduled = payment * Decimal(term_months - 1)

    if financed_total is not None:
        target = financed_total
    else:
        target = principal
        if scheduled > target:
            target = principal + total_simple_interest(principal, annual_rate_percent, term_months)

    final_amount = target - scheduled
    if final_amount.is_negative():
        raise InvalidTermError(
            f"Level payment {payment.to_string()} over {term_months - 1} periods exceeds "
            f"the financed amount {target.to_string()}",
            {
                "level_payment": payment.amount,
                "term_months": term_months,
                "financed_amount": target.amount,
            }
        )

    schedule = []
    for period in range(1, term_months + 1):
        amount = final_amount if period == term_months else payment
        schedule.append(ScheduleEntry(
            period_index=period,
            due_date=add_months(first_due_date, period - 1),
            amount=amount
        ))

    return schedule


def schedule_total(schedule: List[ScheduleEntry]) -> Money:
    """Sum of all installment amounts"""
    if not schedule:
        raise ValueError("Empty schedule has no currency")
    total = Money.zero(schedule[0].amount.currency)
    for entry in schedule:
        total = total + entry.amount
    return total
