#!/usr/bin/env python3
"""Print the financial summary for an owner."""

from __future__ import annotations

import argparse
import sys
from datetime import date
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spentee import aggregation, config
from spentee.db import LedgerStore


def main(owner_id: str | None, is_admin: bool, month: str | None, db_path: str | None) -> None:
    store = LedgerStore(db_path) if db_path else LedgerStore()
    owner_filter = config.resolve_owner_filter(owner_id, is_admin=is_admin)

    window = None
    if month:
        year, mon = (int(part) for part in month.split('-'))
        window = aggregation.month_window(year, mon)

    summary = aggregation.summarize(store, owner_filter, window, today=date.today())

    print(f"Available balance: {summary.available_balance:,.2f}")
    label = month or 'all time'
    print(f"\nTotals ({label}):")
    for name in ('income', 'expenses', 'emi', 'down_payments', 'upi', 'savings'):
        print(f"  {name:<14} {getattr(summary.period, name):>14,.2f}")
    print(f"  {'outgoing':<14} {summary.period.total_outgoing:>14,.2f}")
    print(f"  {'net':<14} {summary.period.net:>14,.2f}")

    if summary.expenses_by_category:
        print("\nBy category:")
        for category, amount in summary.expenses_by_category.items():
            print(f"  {category:<14} {amount:>14,.2f}")

    if summary.issues:
        print(f"\n{len(summary.issues)} record(s) skipped or flagged:")
        for issue in summary.issues:
            print(f"  - {issue}")


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Show the financial summary for an owner.')
    parser.add_argument('--owner', help='Owner id to scope the summary to')
    parser.add_argument('--admin', action='store_true', help='Summarize every owner')
    parser.add_argument('--month', help='Restrict totals to a calendar month, YYYY-MM')
    parser.add_argument('--db', help='Path to the SQLite database (default: configured path)')
    args = parser.parse_args()
    main(args.owner, args.admin, args.month, args.db)
