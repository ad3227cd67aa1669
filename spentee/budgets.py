"""Budget evaluation against expenses and successful UPI payments."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import pandas as pd

from .aggregation import IssueLog, prepare_ledger
from .models import Budget, from_minor, to_minor

_PERCENT = Decimal('0.01')


@dataclass
class BudgetStatus:
    budget: Budget
    spent: Decimal
    remaining: Decimal
    percentage_used: Decimal
    over_budget: bool
    issues: List[str] = field(default_factory=list)


def _spent_minor(frames: List[pd.DataFrame], budget: Budget) -> int:
    start = pd.Timestamp(budget.start_date)
    end = pd.Timestamp(budget.end_date)
    total = 0
    for frame in frames:
        if frame.empty:
            continue
        mask = (frame['_group'] == budget.category) & (frame['_date'] >= start) & (frame['_date'] <= end)
        total += int(frame.loc[mask, '_amount'].sum())
    return total


def _status(budget: Budget, spent_minor: int, issues: List[str]) -> BudgetStatus:
    amount_minor = to_minor(budget.amount)
    if amount_minor == 0:
        percentage = Decimal('0.00')
    else:
        percentage = (Decimal(spent_minor) * 100 / Decimal(amount_minor)).quantize(_PERCENT)
    return BudgetStatus(
        budget=budget,
        spent=from_minor(spent_minor),
        remaining=from_minor(amount_minor) - from_minor(spent_minor),
        percentage_used=percentage,
        over_budget=percentage > 100,
        issues=list(issues),
    )


def _ledger_frames(store, owner_filter: Optional[str], report: IssueLog) -> List[pd.DataFrame]:
    return [
        prepare_ledger(store.fetch_all('expense', owner_filter), 'expense', report),
        prepare_ledger(store.fetch_all('upi', owner_filter), 'upi', report),
    ]


def evaluate_budget(store, budget: Budget, owner_filter: Optional[str]) -> BudgetStatus:
    """Spending against one budget.

    ``spent`` counts expenses and successful UPI payments whose category
    equals the budget's and whose date lies within the budget's start and
    end dates, both inclusive. ``remaining`` goes negative once the budget
    is exceeded.
    """
    report = IssueLog()
    frames = _ledger_frames(store, owner_filter, report)
    return _status(budget, _spent_minor(frames, budget), report.issues)


def evaluate_all_budgets(store, owner_filter: Optional[str]) -> List[BudgetStatus]:
    """Evaluate every active budget, newest first, reading each ledger once."""
    budgets = store.list_budgets(owner_filter, active_only=True)
    if not budgets:
        return []
    report = IssueLog()
    frames = _ledger_frames(store, owner_filter, report)
    return [_status(budget, _spent_minor(frames, budget), report.issues) for budget in budgets]
