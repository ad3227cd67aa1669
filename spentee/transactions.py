"""Unified, newest-first feed over every ledger.

Each ledger is turned into its own sorted stream of
:class:`UnifiedTransaction` and the streams are combined with a lazy k-way
merge, so consumers can stop early without materialising the whole feed.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Iterable, Iterator, List, Optional

import pandas as pd

from .aggregation import IssueLog, emi_events, prepare_ledger, text_or
from .models import SAVINGS_LABEL, from_minor

TRANSACTION_KINDS = ('expense', 'income', 'upi', 'emi-payment', 'emi-downpayment', 'savings')


@dataclass(frozen=True)
class UnifiedTransaction:
    id: str
    kind: str
    signed_amount: Decimal
    category: str
    description: str
    date: date
    sort_key: datetime

    @property
    def is_outflow(self) -> bool:
        return self.signed_amount < 0


def _stream(frame: pd.DataFrame, build: Callable[[pd.Series], UnifiedTransaction]) -> List[UnifiedTransaction]:
    if frame.empty:
        return []
    items = [build(row) for _, row in frame.iterrows()]
    items.sort(key=_order, reverse=True)
    return items


def _order(item: UnifiedTransaction):
    return (item.sort_key, item.id)


def _expense(row: pd.Series) -> UnifiedTransaction:
    return UnifiedTransaction(
        id=str(row['id']),
        kind='expense',
        signed_amount=-from_minor(row['_amount']),
        category=row['_group'],
        description=text_or(row.get('description'), row['_group']),
        date=row['_date'].date(),
        sort_key=row['_sort'].to_pydatetime(),
    )


def _income(row: pd.Series) -> UnifiedTransaction:
    return UnifiedTransaction(
        id=str(row['id']),
        kind='income',
        signed_amount=from_minor(row['_amount']),
        category=row['_group'],
        description=text_or(row.get('description'), row['_group']),
        date=row['_date'].date(),
        sort_key=row['_sort'].to_pydatetime(),
    )


def _upi(row: pd.Series) -> UnifiedTransaction:
    app = text_or(row.get('app'), 'UPI')
    recipient = text_or(row.get('recipient'), 'Payment')
    return UnifiedTransaction(
        id=str(row['id']),
        kind='upi',
        signed_amount=-from_minor(row['_amount']),
        category=row['_group'],
        description=text_or(row.get('description'), f"{app} - {recipient}"),
        date=row['_date'].date(),
        sort_key=row['_sort'].to_pydatetime(),
    )


def _savings(row: pd.Series) -> UnifiedTransaction:
    return UnifiedTransaction(
        id=str(row['id']),
        kind='savings',
        signed_amount=-from_minor(row['_amount']),
        category=SAVINGS_LABEL,
        description=text_or(row.get('description'), SAVINGS_LABEL),
        date=row['_date'].date(),
        sort_key=row['_sort'].to_pydatetime(),
    )


def _emi_payment(row: pd.Series) -> UnifiedTransaction:
    paid_on = row['_date'].date()
    return UnifiedTransaction(
        id=f"{row['plan_id']}_emi_{paid_on.isoformat()}",
        kind='emi-payment',
        signed_amount=-from_minor(row['_amount']),
        category=row['category'],
        description=f"{row['name']} - EMI Payment",
        date=paid_on,
        sort_key=row['_sort'].to_pydatetime(),
    )


def _down_payment(row: pd.Series) -> UnifiedTransaction:
    start = row['_date'].date()
    return UnifiedTransaction(
        id=f"{row['plan_id']}_downpayment_{start.isoformat()}",
        kind='emi-downpayment',
        signed_amount=-from_minor(row['_amount']),
        category=row['category'],
        description=f"{row['name']} - Down Payment",
        date=start,
        sort_key=row['_sort'].to_pydatetime(),
    )


class TransactionFeed:
    """Restartable iterable over an owner's transactions, newest first.

    Every iteration reads the store again, so a feed object always reflects
    current ledger state. Problems found while reading are collected in
    ``issues`` for the most recent pass.
    """

    def __init__(self, store, owner_filter: Optional[str], kinds: Optional[Iterable[str]] = None):
        self.store = store
        self.owner_filter = owner_filter
        self.kinds = tuple(kinds) if kinds is not None else TRANSACTION_KINDS
        unknown = set(self.kinds) - set(TRANSACTION_KINDS)
        if unknown:
            raise ValueError(f"Unknown transaction kind(s): {', '.join(sorted(unknown))}")
        self.issues: List[str] = []

    def _streams(self, log: IssueLog) -> List[List[UnifiedTransaction]]:
        streams = []
        ledgers = (('expense', 'expense', _expense), ('income', 'income', _income),
                   ('upi', 'upi', _upi), ('savings', 'savings', _savings))
        for kind, ledger, build in ledgers:
            if kind in self.kinds:
                frame = prepare_ledger(self.store.fetch_all(ledger, self.owner_filter), ledger, log)
                streams.append(_stream(frame, build))
        if 'emi-payment' in self.kinds or 'emi-downpayment' in self.kinds:
            payments, downs, _ = emi_events(self.store.fetch_all('emi', self.owner_filter), log)
            if 'emi-payment' in self.kinds:
                streams.append(_stream(payments, _emi_payment))
            if 'emi-downpayment' in self.kinds:
                streams.append(_stream(downs, _down_payment))
        return streams

    def __iter__(self) -> Iterator[UnifiedTransaction]:
        log = IssueLog()
        self.issues = log.issues
        yield from heapq.merge(*self._streams(log), key=_order, reverse=True)

    def take(self, count: int) -> List[UnifiedTransaction]:
        """First ``count`` transactions of a fresh pass."""
        items = []
        for item in self:
            if len(items) >= count:
                break
            items.append(item)
        return items


def list_transactions(store, owner_filter: Optional[str], kinds: Optional[Iterable[str]] = None) -> TransactionFeed:
    return TransactionFeed(store, owner_filter, kinds)
