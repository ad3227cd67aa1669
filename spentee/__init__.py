"""Top-level package for Spentee, a personal finance tracker.

The primary modules are:

* ``db`` - the SQLite ledger store
* ``emi`` - EMI payment tracking (mark/unmark a month paid)
* ``aggregation`` - available balance, windowed totals, category breakdowns
* ``budgets`` - spending against budgets
* ``transactions`` - a unified newest-first transaction feed
* ``visualization`` - Plotly figures for the dashboard

To run the dashboard from the command line you can execute:

```bash
streamlit run spentee/dashboard.py
```
"""

from . import aggregation  # noqa: F401  # re-exported for convenience
from . import budgets  # noqa: F401  # re-exported for convenience
from . import emi  # noqa: F401  # re-exported for convenience
from . import transactions  # noqa: F401  # re-exported for convenience
from .aggregation import summarize, monthly_trend
from .budgets import evaluate_budget, evaluate_all_budgets
from .db import LedgerStore
from .transactions import list_transactions

__all__ = [
    "aggregation",
    "budgets",
    "emi",
    "transactions",
    "LedgerStore",
    "summarize",
    "monthly_trend",
    "evaluate_budget",
    "evaluate_all_budgets",
    "list_transactions",
]
