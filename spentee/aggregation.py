"""Financial aggregation over the five ledgers.

This module derives the available balance, windowed totals and category
breakdowns shown on the dashboard. Everything is recomputed from current
ledger state on each call; nothing is cached.

Frames read from the store follow the column contract of
:class:`spentee.db.LedgerStore`: amounts as integer minor units in
``amount_minor`` (``monthly_installment_minor`` / ``down_payment_minor``
for EMI plans), ISO dates in ``date`` (``start_date`` for plans) and, for
plans, a ``paid_month_dates`` list column.

Rows with a missing or malformed date or amount contribute zero. Each such
row, and every broken EMI invariant, is recorded in the summary's
``issues`` and emitted as a :class:`~spentee.errors.LedgerWarning`.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import InvariantViolation, LedgerWarning
from .models import (
    DOWN_PAYMENT_LABEL,
    EMI_LABEL,
    SAVINGS_LABEL,
    UPI_SUCCESS,
    from_minor,
)

LEDGER_KINDS = ('income', 'expense', 'upi', 'savings')
FALLBACK_GROUP = 'Other'


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Window:
    """Half-open date range ``[start, end)``."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise ValueError("window end must be after its start")

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)

    def contains(self, value: date) -> bool:
        return self.start <= value < self.end


def month_window(year: int, month: int) -> Window:
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return Window(start, end)


def current_month_window(today: Optional[date] = None) -> Window:
    today = today or date.today()
    return month_window(today.year, today.month)


@dataclass
class LedgerTotals:
    income: Decimal
    expenses: Decimal
    emi: Decimal
    down_payments: Decimal
    upi: Decimal
    savings: Decimal

    @property
    def total_outgoing(self) -> Decimal:
        """Expenses, EMIs, down payments, UPI and savings together."""
        return self.expenses + self.emi + self.down_payments + self.upi + self.savings

    @property
    def net(self) -> Decimal:
        return self.income - self.total_outgoing


@dataclass
class FinancialSummary:
    window: Optional[Window]
    balance: LedgerTotals
    period: LedgerTotals
    expenses_by_category: Dict[str, Decimal]
    income_by_type: Dict[str, Decimal]
    counts: Dict[str, int]
    issues: List[str] = field(default_factory=list)
    violations: List[InvariantViolation] = field(default_factory=list)

    @property
    def available_balance(self) -> Decimal:
        """All-time income minus every recorded outflow."""
        return self.balance.net

    @property
    def total_all_expenses(self) -> Decimal:
        return self.period.total_outgoing


# ---------------------------------------------------------------------------
# Frame preparation
# ---------------------------------------------------------------------------


class IssueLog:
    """Collects exclusions and invariant violations for one computation."""

    def __init__(self, silent: bool = False) -> None:
        self.silent = silent
        self.issues: List[str] = []
        self.violations: List[InvariantViolation] = []

    def skip(self, message: str) -> None:
        if self.silent:
            return
        self.issues.append(message)
        warnings.warn(message, LedgerWarning, stacklevel=3)

    def violation(self, message: str) -> None:
        self.violations.append(InvariantViolation(message))
        self.skip(message)


def _series(df: pd.DataFrame, column: str) -> pd.Series:
    if column in df.columns:
        return df[column]
    return pd.Series(np.nan, index=df.index, dtype=object)


def _parse_timestamps(values: pd.Series) -> pd.Series:
    cleaned = values.astype(object).where(values.notna(), None)
    cleaned = cleaned.map(lambda value: value.isoformat() if isinstance(value, date) else value)
    # Aware and naive values may mix; both end up as naive UTC.
    parsed = pd.to_datetime(cleaned, errors='coerce', format='ISO8601', utc=True)
    return parsed.dt.tz_localize(None)


def _parse_dates(values: pd.Series) -> pd.Series:
    return _parse_timestamps(values).dt.normalize()


def text_or(value: Any, default: str) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)) or value == '':
        return default
    return str(value)


def _parse_minor(values: pd.Series) -> pd.Series:
    numbers = pd.to_numeric(values, errors='coerce')
    valid = numbers.notna() & (numbers >= 0) & (numbers % 1 == 0)
    return numbers.where(valid)


def _row_label(df: pd.DataFrame, index: Any) -> str:
    if 'id' in df.columns and pd.notna(df.at[index, 'id']):
        return str(df.at[index, 'id'])
    return f"row {index}"


def prepare_ledger(df: Optional[pd.DataFrame], kind: str, report: IssueLog) -> pd.DataFrame:
    """Return contributing rows with parsed ``_date`` and integer ``_amount``.

    UPI rows that are not successful are dropped silently since they are
    expected data, not malformed data.
    """
    columns = ['_date', '_amount', '_group', '_sort']
    if df is None or df.empty:
        return pd.DataFrame(columns=columns + ['id'])
    working = df.copy()
    if kind == 'upi':
        working = working[_series(working, 'status') == UPI_SUCCESS]
        if working.empty:
            return pd.DataFrame(columns=columns + ['id'])

    dates = _parse_dates(_series(working, 'date'))
    amounts = _parse_minor(_series(working, 'amount_minor'))
    valid = dates.notna() & amounts.notna()
    for index in working.index[~valid]:
        report.skip(
            f"Skipped {kind} '{_row_label(working, index)}': missing or malformed date/amount"
        )
    working = working[valid].copy()
    working['_date'] = dates[valid]
    working['_amount'] = amounts[valid].astype('int64')
    group_col = 'type' if kind == 'income' else 'category'
    working['_group'] = _series(working, group_col).fillna(FALLBACK_GROUP).astype(str)
    created = _parse_timestamps(_series(working, 'created_at'))
    working['_sort'] = created.fillna(working['_date'])
    return working


def _as_bool(value: Any, default: bool = True) -> bool:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return default
    if isinstance(value, str):
        return value.strip().lower() in {'1', 'true', 'yes'}
    return bool(value)


def _as_int(value: Any) -> Optional[int]:
    number = pd.to_numeric(pd.Series([value]), errors='coerce').iloc[0]
    if pd.isna(number) or number % 1 != 0:
        return None
    return int(number)


def emi_events(plans: Optional[pd.DataFrame], report: IssueLog) -> Tuple[pd.DataFrame, pd.DataFrame, int]:
    """Expand plans into payment events and down-payment events.

    Returns ``(payments, down_payments, cumulative_installments)`` where the
    two frames carry ``plan_id``, ``name``, ``category``, ``_date`` and
    ``_amount`` and the integer is the all-time installment total in minor
    units (``paid_months * monthly_installment`` summed over plans).
    """
    event_cols = ['plan_id', 'name', 'category', '_date', '_amount', '_sort']
    payments: List[Dict[str, Any]] = []
    downs: List[Dict[str, Any]] = []
    cumulative = 0
    if plans is None or plans.empty:
        return pd.DataFrame(columns=event_cols), pd.DataFrame(columns=event_cols), 0

    for index, plan in plans.iterrows():
        plan_id = _row_label(plans, index)
        name = text_or(plan.get('name'), EMI_LABEL)
        category = text_or(plan.get('category'), FALLBACK_GROUP)
        created = _parse_timestamps(pd.Series([plan.get('created_at')], dtype=object)).iloc[0]

        raw_dates = plan.get('paid_month_dates')
        if raw_dates is None or (isinstance(raw_dates, float) and np.isnan(raw_dates)):
            raw_dates = []
        parsed = _parse_dates(pd.Series(list(raw_dates), dtype=object))
        if parsed.isna().any():
            report.skip(f"Skipped {int(parsed.isna().sum())} malformed paid month date(s) on EMI '{plan_id}'")
        paid_dates = parsed.dropna().tolist()

        tenure = _as_int(plan.get('tenure_months'))
        paid_months = _as_int(plan.get('paid_months'))
        remaining = _as_int(plan.get('remaining_months'))
        if paid_months is not None and paid_months != len(raw_dates):
            report.violation(
                f"EMI '{plan_id}': paid_months={paid_months} but {len(raw_dates)} paid month date(s) recorded"
            )
        if tenure is not None and len(raw_dates) > tenure:
            report.violation(
                f"EMI '{plan_id}': {len(raw_dates)} paid month date(s) exceed tenure of {tenure} months"
            )
        periods = [(d.year, d.month) for d in paid_dates]
        if len(set(periods)) != len(periods):
            report.violation(f"EMI '{plan_id}': more than one payment recorded in the same month")
        if None not in (tenure, paid_months, remaining) and paid_months + remaining != tenure:
            report.violation(
                f"EMI '{plan_id}': paid_months + remaining_months != tenure_months "
                f"({paid_months} + {remaining} != {tenure})"
            )

        installment = _parse_minor(pd.Series([plan.get('monthly_installment_minor')])).iloc[0]
        if pd.isna(installment):
            report.skip(f"Skipped installments of EMI '{plan_id}': missing or malformed monthly installment")
        else:
            installment = int(installment)
            count = paid_months if paid_months is not None else len(paid_dates)
            cumulative += count * installment
            for paid_on in paid_dates:
                payments.append({
                    'plan_id': plan_id, 'name': name, 'category': category,
                    '_date': paid_on, '_amount': installment, '_sort': paid_on,
                })

        if not _as_bool(plan.get('include_down_payment_in_balance')):
            continue
        raw_down = plan.get('down_payment_minor')
        if raw_down is None or (isinstance(raw_down, float) and np.isnan(raw_down)):
            continue
        down = _parse_minor(pd.Series([raw_down], dtype=object)).iloc[0]
        if pd.isna(down):
            report.skip(f"Skipped down payment of EMI '{plan_id}': malformed amount")
            continue
        if int(down) == 0:
            continue
        start = _parse_dates(pd.Series([plan.get('start_date')], dtype=object)).iloc[0]
        if pd.isna(start):
            report.skip(f"Skipped down payment of EMI '{plan_id}': missing or malformed start date")
            continue
        downs.append({
            'plan_id': plan_id, 'name': name, 'category': category,
            '_date': start, '_amount': int(down),
            '_sort': created if pd.notna(created) else start,
        })

    return (
        pd.DataFrame(payments, columns=event_cols),
        pd.DataFrame(downs, columns=event_cols),
        cumulative,
    )


def _in_window(frame: pd.DataFrame, window: Optional[Window]) -> pd.DataFrame:
    if window is None or frame.empty:
        return frame
    start = pd.Timestamp(window.start)
    end = pd.Timestamp(window.end)
    return frame[(frame['_date'] >= start) & (frame['_date'] < end)]


def _up_to(frame: pd.DataFrame, today: date) -> pd.DataFrame:
    if frame.empty:
        return frame
    return frame[frame['_date'] <= pd.Timestamp(today)]


def _total(frame: pd.DataFrame) -> int:
    if frame.empty:
        return 0
    return int(frame['_amount'].sum())


def group_sums(frame: pd.DataFrame) -> Dict[str, int]:
    """Per-group sums in minor units from a prepared ledger frame."""
    if frame.empty:
        return {}
    grouped = frame.groupby('_group')['_amount'].sum()
    return {str(key): int(value) for key, value in grouped.items()}


def _merge_sums(*parts: Dict[str, int]) -> Dict[str, int]:
    merged: Dict[str, int] = {}
    for part in parts:
        for key, value in part.items():
            merged[key] = merged.get(key, 0) + int(value)
    return merged


def _to_decimal_map(values: Dict[str, int]) -> Dict[str, Decimal]:
    ordered = sorted(values.items(), key=lambda item: (-item[1], item[0]))
    return {key: from_minor(value) for key, value in ordered}


def _totals(income: int, expenses: int, emi: int, down: int, upi: int, savings: int) -> LedgerTotals:
    return LedgerTotals(
        income=from_minor(income),
        expenses=from_minor(expenses),
        emi=from_minor(emi),
        down_payments=from_minor(down),
        upi=from_minor(upi),
        savings=from_minor(savings),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def summarize(
    store,
    owner_filter: Optional[str],
    window: Optional[Window] = None,
    *,
    today: Optional[date] = None,
    push_down: bool = False,
) -> FinancialSummary:
    """Compute the financial summary for an owner.

    ``balance`` is always all-time: it is the money available right now and
    ignores ``window``. ``period`` and the breakdowns are restricted to
    ``window`` when given, otherwise they cover all time under the same
    rules as the balance.

    With ``push_down`` the category and income-type sums come from the
    store's ``sum_by_group`` instead of being grouped here; the results are
    identical.
    """
    today = today or date.today()
    report = IssueLog()

    everything = {kind: prepare_ledger(store.fetch_all(kind, owner_filter), kind, report) for kind in LEDGER_KINDS}
    payments, downs, cumulative_emi = emi_events(store.fetch_all('emi', owner_filter), report)

    balance = _totals(
        income=_total(everything['income']),
        expenses=_total(everything['expense']),
        emi=cumulative_emi,
        down=_total(_up_to(downs, today)),
        upi=_total(everything['upi']),
        savings=_total(everything['savings']),
    )

    if window is None:
        scoped = everything
        period_payments = payments
        period_downs = _up_to(downs, today)
    else:
        # Malformed rows were already reported by the all-time pass.
        quiet = IssueLog(silent=True)
        scoped = {
            kind: prepare_ledger(
                store.fetch_in_range(kind, owner_filter, window.start, window.last_day), kind, quiet
            )
            for kind in LEDGER_KINDS
        }
        period_payments = _in_window(payments, window)
        period_downs = _in_window(downs, window)

    period = _totals(
        income=_total(scoped['income']),
        expenses=_total(scoped['expense']),
        emi=_total(period_payments),
        down=_total(period_downs),
        upi=_total(scoped['upi']),
        savings=_total(scoped['savings']),
    )

    if push_down:
        date_range = None if window is None else (window.start, window.last_day)
        expense_groups = store.sum_by_group('expense', owner_filter, 'category', date_range)
        upi_groups = store.sum_by_group('upi', owner_filter, 'category', date_range)
        income_groups = store.sum_by_group('income', owner_filter, 'type', date_range)
    else:
        expense_groups = group_sums(scoped['expense'])
        upi_groups = group_sums(scoped['upi'])
        income_groups = group_sums(scoped['income'])

    breakdown = _merge_sums(expense_groups, upi_groups)
    for label, amount in (
        (EMI_LABEL, _total(period_payments)),
        (DOWN_PAYMENT_LABEL, _total(period_downs)),
        (SAVINGS_LABEL, _total(scoped['savings'])),
    ):
        if amount > 0:
            breakdown[label] = breakdown.get(label, 0) + amount

    counts = {kind: int(len(frame)) for kind, frame in scoped.items()}
    counts['emi_payments'] = int(len(period_payments))
    counts['down_payments'] = int(len(period_downs))

    return FinancialSummary(
        window=window,
        balance=balance,
        period=period,
        expenses_by_category=_to_decimal_map(breakdown),
        income_by_type=_to_decimal_map(income_groups),
        counts=counts,
        issues=report.issues,
        violations=report.violations,
    )


def summarize_current_month(store, owner_filter: Optional[str], *, today: Optional[date] = None, **kwargs) -> FinancialSummary:
    """Dashboard convenience: windowed figures for the calendar month of ``today``."""
    today = today or date.today()
    return summarize(store, owner_filter, current_month_window(today), today=today, **kwargs)


TREND_COLUMNS = ['income', 'expenses', 'emi', 'upi', 'down_payments', 'savings']


def monthly_trend(
    store,
    owner_filter: Optional[str],
    months: int = 6,
    *,
    today: Optional[date] = None,
) -> pd.DataFrame:
    """Per-month totals for the last ``months`` calendar months, oldest first.

    EMI counts one installment per month marked paid, down payments count
    in the month of the plan's start date.
    """
    if months < 1:
        raise ValueError("months must be >= 1")
    today = today or date.today()
    last = pd.Period(today, freq='M')
    periods = pd.period_range(end=last, periods=months, freq='M')
    window = Window(periods[0].start_time.date(), (last + 1).start_time.date())

    report = IssueLog()
    frames = {
        kind: prepare_ledger(
            store.fetch_in_range(kind, owner_filter, window.start, window.last_day), kind, report
        )
        for kind in LEDGER_KINDS
    }
    payments, downs, _ = emi_events(store.fetch_all('emi', owner_filter), report)
    frames['emi'] = _in_window(payments, window)
    frames['down_payments'] = _in_window(downs, window)

    source = {
        'income': 'income', 'expenses': 'expense', 'emi': 'emi',
        'upi': 'upi', 'down_payments': 'down_payments', 'savings': 'savings',
    }
    trend = pd.DataFrame(index=periods)
    for column, key in source.items():
        frame = frames[key]
        if frame.empty:
            monthly = pd.Series(0, index=periods, dtype='int64')
        else:
            monthly = (
                frame.groupby(frame['_date'].dt.to_period('M'))['_amount'].sum()
                .reindex(periods, fill_value=0)
                .astype('int64')
            )
        trend[column] = monthly
    trend['total_outgoing'] = trend[['expenses', 'emi', 'upi', 'down_payments', 'savings']].sum(axis=1)
    trend['net'] = trend['income'] - trend['total_outgoing']

    result = trend.apply(lambda col: col.map(from_minor))
    result.insert(0, 'label', [period.strftime('%b') for period in periods])
    result.insert(0, 'month', [str(period) for period in periods])
    result = result.reset_index(drop=True)
    result.attrs['issues'] = report.issues
    return result
