"""EMI payment tracking.

A plan's payment state is a set of calendar months marked paid, not a
ledger of transactions. The transitions below are pure: they take a plan
and return an updated copy. :func:`pay` and :func:`unpay` run them against
the store as an optimistic compare-and-swap.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from .errors import (
    AlreadyPaidThisMonth,
    ConcurrentModification,
    InvariantViolation,
    NoPaymentThisMonth,
    PlanClosed,
)
from .models import EMIPlan, new_id

Period = Tuple[int, int]


def period_of(value: date) -> Period:
    return (value.year, value.month)


def add_months(value: date, months: int) -> date:
    """Shift by whole calendar months, clamping the day to the month length."""
    return value + relativedelta(months=months)


def first_due_date(start_date: date) -> date:
    """First installment falls on the 1st of the month after ``start_date``."""
    return add_months(start_date.replace(day=1), 1)


class PaidMonths:
    """Ordered set of payment dates keyed by (year, month).

    Iteration yields dates oldest first. Membership, insertion and removal
    are keyed on the calendar month, so two dates in the same month collide.
    """

    def __init__(self, dates: Iterable[date] = ()):
        self._by_period: Dict[Period, date] = {}
        for value in sorted(dates):
            period = period_of(value)
            if period in self._by_period:
                raise InvariantViolation(f"duplicate payment for {period[0]}-{period[1]:02d}")
            self._by_period[period] = value

    def __contains__(self, value: date) -> bool:
        return period_of(value) in self._by_period

    def __len__(self) -> int:
        return len(self._by_period)

    def __iter__(self) -> Iterator[date]:
        return iter(sorted(self._by_period.values()))

    def add(self, value: date) -> None:
        if value in self:
            raise KeyError(period_of(value))
        self._by_period[period_of(value)] = value

    def remove_month(self, value: date) -> date:
        return self._by_period.pop(period_of(value))

    def latest(self) -> Optional[date]:
        if not self._by_period:
            return None
        return self._by_period[max(self._by_period)]

    def as_tuple(self) -> Tuple[date, ...]:
        return tuple(self)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def create_plan(
    name: str,
    principal_amount: Decimal,
    monthly_installment: Decimal,
    interest_rate: Decimal,
    tenure_months: int,
    start_date: date,
    *,
    down_payment: Decimal = Decimal('0'),
    category: str = 'Other',
    include_down_payment_in_balance: bool = True,
    owner_id: Optional[str] = None,
    plan_id: Optional[str] = None,
) -> EMIPlan:
    """Build a new, unpaid plan with its derived schedule fields."""
    plan = EMIPlan(
        name=name,
        principal_amount=Decimal(str(principal_amount)),
        monthly_installment=Decimal(str(monthly_installment)),
        interest_rate=Decimal(str(interest_rate)),
        tenure_months=tenure_months,
        start_date=start_date,
        end_date=add_months(start_date, tenure_months),
        next_due_date=first_due_date(start_date),
        remaining_months=tenure_months,
        paid_months=0,
        paid_month_dates=(),
        down_payment=Decimal(str(down_payment)),
        is_active=True,
        category=category,
        include_down_payment_in_balance=include_down_payment_in_balance,
        owner_id=owner_id,
        id=plan_id or new_id(),
    )
    plan.validate()
    return plan


def mark_paid(plan: EMIPlan, as_of: Optional[date] = None) -> EMIPlan:
    """Record the installment for the calendar month of ``as_of``."""
    as_of = as_of or date.today()
    if plan.is_closed:
        raise PlanClosed(plan.id, "all installments are already paid")
    paid = PaidMonths(plan.paid_month_dates)
    if as_of in paid:
        raise AlreadyPaidThisMonth(plan.id, as_of.strftime('%B %Y'))
    paid.add(as_of)

    remaining = plan.remaining_months - 1
    if remaining == 0:
        return replace(
            plan,
            paid_month_dates=paid.as_tuple(),
            paid_months=plan.paid_months + 1,
            remaining_months=0,
            is_active=False,
        )
    return replace(
        plan,
        paid_month_dates=paid.as_tuple(),
        paid_months=plan.paid_months + 1,
        remaining_months=remaining,
        next_due_date=add_months(plan.next_due_date, 1),
    )


def unmark_paid(plan: EMIPlan, as_of: Optional[date] = None) -> EMIPlan:
    """Undo the installment recorded for the calendar month of ``as_of``.

    The due date steps back one month, undoing the advance made when the
    month was paid. Once every payment is undone the plan is due on its
    first scheduled date again and is forced active. Closed plans cannot
    be changed.
    """
    as_of = as_of or date.today()
    if plan.is_closed:
        raise PlanClosed(plan.id, "a closed plan cannot be changed")
    paid = PaidMonths(plan.paid_month_dates)
    if as_of not in paid:
        raise NoPaymentThisMonth(plan.id, as_of.strftime('%B %Y'))
    paid.remove_month(as_of)

    remaining = min(plan.remaining_months + 1, plan.tenure_months)
    if len(paid) == 0:
        next_due = first_due_date(plan.start_date)
    else:
        next_due = add_months(plan.next_due_date, -1)
    return replace(
        plan,
        paid_month_dates=paid.as_tuple(),
        paid_months=plan.paid_months - 1,
        remaining_months=remaining,
        next_due_date=next_due,
        is_active=True if remaining == plan.tenure_months else plan.is_active,
    )


# ---------------------------------------------------------------------------
# Store-backed operations
# ---------------------------------------------------------------------------


def _apply(store, plan_id: str, owner_filter: Optional[str], transition) -> EMIPlan:
    # One retry: the second attempt re-reads the plan, so a racing writer
    # that paid the same month surfaces as AlreadyPaidThisMonth.
    for attempt in range(2):
        plan = store.get('emi', plan_id, owner_filter)
        try:
            return store.update_plan(plan.id, plan.version, transition)
        except ConcurrentModification:
            if attempt == 1:
                raise
    raise AssertionError("unreachable")


def pay(store, plan_id: str, owner_filter: Optional[str], as_of: Optional[date] = None) -> EMIPlan:
    """Mark the month of ``as_of`` paid for a stored plan."""
    as_of = as_of or date.today()
    return _apply(store, plan_id, owner_filter, lambda plan: mark_paid(plan, as_of))


def unpay(store, plan_id: str, owner_filter: Optional[str], as_of: Optional[date] = None) -> EMIPlan:
    """Unmark the month of ``as_of`` for a stored plan."""
    as_of = as_of or date.today()
    return _apply(store, plan_id, owner_filter, lambda plan: unmark_paid(plan, as_of))


# ---------------------------------------------------------------------------
# Schedule views
# ---------------------------------------------------------------------------


@dataclass
class UpcomingInstallments:
    due_month: Optional[date]
    plans: List[EMIPlan]
    total: Decimal


def upcoming_installments(plans: Iterable[EMIPlan], today: Optional[date] = None) -> UpcomingInstallments:
    """Plans due in the month of the earliest due date on or after ``today``.

    Plans keep their incoming order, which callers pass oldest first.
    """
    today = today or date.today()
    active = [plan for plan in plans if plan.is_active and not plan.is_closed]
    upcoming = [plan for plan in active if plan.next_due_date >= today]
    if not upcoming:
        return UpcomingInstallments(None, [], Decimal('0.00'))
    earliest = min(plan.next_due_date for plan in upcoming)
    due_period = period_of(earliest)
    due = [plan for plan in active if period_of(plan.next_due_date) == due_period]
    total = sum((plan.monthly_installment for plan in due), Decimal('0.00'))
    return UpcomingInstallments(earliest.replace(day=1), due, total)
