"""Ledger record types, enumerations and money helpers.

Amounts travel as :class:`decimal.Decimal` at the API boundary and as
integer minor units (paise) inside the store and inside every pandas
computation, so that sums never pick up floating-point drift.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, Optional, Tuple

import pandas as pd

from .errors import ValidationError

MINOR_UNITS = 100
_CENT = Decimal("0.01")

EXPENSE_CATEGORIES = (
    'Food', 'Transport', 'Shopping', 'Bills', 'Entertainment', 'Healthcare', 'Education', 'Other',
)
BUDGET_CATEGORIES = EXPENSE_CATEGORIES + ('Overall',)
BUDGET_PERIODS = ('Weekly', 'Monthly', 'Yearly')
INCOME_TYPES = ('Salary', 'Freelance', 'Investment', 'Business', 'Other')
UPI_APPS = ('Google Pay', 'PhonePe', 'Paytm', 'BHIM', 'Amazon Pay', 'Other')
UPI_STATUSES = ('Success', 'Pending', 'Failed')
UPI_SUCCESS = 'Success'
EMI_CATEGORIES = ('Home Loan', 'Car Loan', 'Personal Loan', 'Credit Card', 'Education Loan', 'Other')

# Synthetic breakdown labels added by the aggregation engine
EMI_LABEL = 'EMI'
DOWN_PAYMENT_LABEL = 'Down Payments'
SAVINGS_LABEL = 'Savings'


# ---------------------------------------------------------------------------
# Money and date helpers
# ---------------------------------------------------------------------------


def to_minor(value: Any, field_name: str = 'amount') -> int:
    """Convert a non-negative money amount into integer minor units."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required", field_name)
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}", field_name) from None
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be finite", field_name)
    if amount < 0:
        raise ValidationError(f"{field_name} must be >= 0", field_name)
    if amount != amount.quantize(_CENT):
        raise ValidationError(f"{field_name} has more than two decimal places", field_name)
    return int(amount * MINOR_UNITS)


def from_minor(value: int) -> Decimal:
    """Convert integer minor units back into a two-place Decimal."""
    return (Decimal(int(value)) / MINOR_UNITS).quantize(_CENT)


def to_date(value: Any) -> Optional[date]:
    """Best-effort conversion of dates, timestamps and ISO strings to ``date``."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if hasattr(value, 'to_pydatetime'):
        if pd.isna(value):
            return None
        return value.to_pydatetime().date()
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isna(ts):
        return None
    return ts.date()


def to_datetime(value: Any) -> Optional[datetime]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    ts = pd.to_datetime(value, errors='coerce')
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def new_id() -> str:
    return uuid.uuid4().hex


def _require_choice(value: Any, choices: Tuple[str, ...], field_name: str) -> None:
    if value not in choices:
        raise ValidationError(
            f"{field_name} must be one of {', '.join(choices)}; got {value!r}", field_name
        )


def _require_date(value: Any, field_name: str) -> None:
    if not isinstance(value, date):
        raise ValidationError(f"{field_name} must be a date", field_name)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Expense:
    KIND: ClassVar[str] = 'expense'

    amount: Decimal
    category: str
    date: date
    description: str = ''
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> None:
        to_minor(self.amount)
        _require_choice(self.category, EXPENSE_CATEGORIES, 'category')
        _require_date(self.date, 'date')


@dataclass
class IncomeEntry:
    KIND: ClassVar[str] = 'income'

    amount: Decimal
    source: str
    date: date
    type: str = 'Salary'
    description: str = ''
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> None:
        to_minor(self.amount)
        if not self.source or not str(self.source).strip():
            raise ValidationError("source is required", 'source')
        _require_choice(self.type, INCOME_TYPES, 'type')
        _require_date(self.date, 'date')


@dataclass
class SavingsEntry:
    KIND: ClassVar[str] = 'savings'

    amount: Decimal
    date: date
    description: str = ''
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> None:
        to_minor(self.amount)
        _require_date(self.date, 'date')


@dataclass
class UPIPayment:
    KIND: ClassVar[str] = 'upi'

    amount: Decimal
    app: str
    category: str
    date: date
    recipient: str = ''
    recipient_upi: str = ''
    description: str = ''
    status: str = UPI_SUCCESS
    transaction_id: Optional[str] = None
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> None:
        to_minor(self.amount)
        _require_choice(self.app, UPI_APPS, 'app')
        _require_choice(self.category, EXPENSE_CATEGORIES, 'category')
        _require_choice(self.status, UPI_STATUSES, 'status')
        _require_date(self.date, 'date')


@dataclass
class EMIPlan:
    """An installment loan and its calendar-month payment state.

    ``paid_month_dates`` holds one date per month marked paid, oldest
    first. ``version`` is bumped by the store on every write and drives the
    optimistic-concurrency check used by pay/unpay.
    """

    KIND: ClassVar[str] = 'emi'

    name: str
    principal_amount: Decimal
    monthly_installment: Decimal
    interest_rate: Decimal
    tenure_months: int
    start_date: date
    end_date: date
    next_due_date: date
    remaining_months: int
    paid_months: int = 0
    paid_month_dates: Tuple[date, ...] = ()
    down_payment: Decimal = Decimal('0')
    is_active: bool = True
    category: str = 'Other'
    include_down_payment_in_balance: bool = True
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)
    version: int = 0

    @property
    def is_closed(self) -> bool:
        return self.remaining_months == 0

    def validate(self) -> None:
        if not self.name or not str(self.name).strip():
            raise ValidationError("name is required", 'name')
        to_minor(self.down_payment, 'down_payment')
        to_minor(self.principal_amount, 'principal_amount')
        to_minor(self.monthly_installment, 'monthly_installment')
        try:
            rate = Decimal(str(self.interest_rate))
        except (InvalidOperation, ValueError):
            raise ValidationError("interest_rate must be a number", 'interest_rate') from None
        if not rate.is_finite() or rate < 0:
            raise ValidationError("interest_rate must be >= 0", 'interest_rate')
        if not isinstance(self.tenure_months, int) or self.tenure_months < 1:
            raise ValidationError("tenure_months must be an integer >= 1", 'tenure_months')
        for name in ('start_date', 'end_date', 'next_due_date'):
            _require_date(getattr(self, name), name)
        if self.next_due_date.day != 1:
            # Installments fall due on the 1st; unmarking steps back a whole month.
            raise ValidationError("next_due_date must be the 1st of a month", 'next_due_date')
        if self.paid_months < 0 or self.remaining_months < 0:
            raise ValidationError("paid_months and remaining_months must be >= 0")
        if self.paid_months != len(self.paid_month_dates):
            raise ValidationError("paid_months must equal the number of paid month dates", 'paid_months')
        if self.paid_months + self.remaining_months != self.tenure_months:
            raise ValidationError("paid_months + remaining_months must equal tenure_months", 'remaining_months')
        if self.remaining_months == 0 and self.is_active:
            raise ValidationError("a plan with no remaining months cannot be active", 'is_active')
        periods = {(d.year, d.month) for d in self.paid_month_dates}
        if len(periods) != len(self.paid_month_dates):
            raise ValidationError("at most one payment per calendar month", 'paid_month_dates')
        _require_choice(self.category, EMI_CATEGORIES, 'category')


@dataclass
class Budget:
    KIND: ClassVar[str] = 'budget'

    category: str
    amount: Decimal
    start_date: date
    end_date: date
    period: str = 'Monthly'
    is_active: bool = True
    owner_id: Optional[str] = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=datetime.now)

    def validate(self) -> None:
        _require_choice(self.category, BUDGET_CATEGORIES, 'category')
        to_minor(self.amount)
        _require_choice(self.period, BUDGET_PERIODS, 'period')
        _require_date(self.start_date, 'start_date')
        _require_date(self.end_date, 'end_date')
        if self.end_date < self.start_date:
            raise ValidationError("end_date must not be before start_date", 'end_date')


RECORD_TYPES = {
    cls.KIND: cls for cls in (Expense, IncomeEntry, SavingsEntry, UPIPayment, EMIPlan, Budget)
}
