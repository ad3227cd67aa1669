"""SQLite-backed ledger store.

The aggregation engine only depends on the query shapes exposed here:
``fetch_all``, ``fetch_in_range``, ``sum_by_group`` and the optimistic
``update_plan``. Money columns hold integer minor units; dates are ISO
``YYYY-MM-DD`` text so that range filters compare lexically.
"""

from __future__ import annotations

import random
import sqlite3
import string
import time
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

import pandas as pd

from .config import DB_PATH, ensure_data_directories
from .errors import ConcurrentModification, RecordNotFound, ValidationError
from .models import RECORD_TYPES, UPI_SUCCESS, EMIPlan, from_minor, to_date, to_datetime, to_minor

OwnerFilter = Optional[str]
DateLike = Union[date, str]

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS expenses (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    amount_minor INTEGER,
    category TEXT,
    description TEXT,
    date TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS income (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    amount_minor INTEGER,
    source TEXT,
    type TEXT,
    description TEXT,
    date TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS savings (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    amount_minor INTEGER,
    description TEXT,
    date TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS upi_payments (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    transaction_id TEXT NOT NULL UNIQUE,
    amount_minor INTEGER,
    app TEXT,
    recipient TEXT,
    recipient_upi TEXT,
    category TEXT,
    description TEXT,
    date TEXT,
    status TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS emi_plans (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    name TEXT,
    down_payment_minor INTEGER,
    principal_amount_minor INTEGER,
    monthly_installment_minor INTEGER,
    interest_rate TEXT,
    tenure_months INTEGER,
    start_date TEXT,
    end_date TEXT,
    paid_months INTEGER,
    remaining_months INTEGER,
    next_due_date TEXT,
    is_active INTEGER,
    category TEXT,
    include_down_payment_in_balance INTEGER,
    created_at TEXT,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS emi_paid_months (
    plan_id TEXT NOT NULL REFERENCES emi_plans(id) ON DELETE CASCADE,
    period TEXT NOT NULL,
    paid_on TEXT NOT NULL,
    UNIQUE (plan_id, period)
);

CREATE TABLE IF NOT EXISTS budgets (
    id TEXT PRIMARY KEY,
    owner_id TEXT,
    category TEXT,
    amount_minor INTEGER,
    period TEXT,
    start_date TEXT,
    end_date TEXT,
    is_active INTEGER,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_expenses_owner_date ON expenses (owner_id, date);
CREATE INDEX IF NOT EXISTS ix_income_owner_date ON income (owner_id, date);
CREATE INDEX IF NOT EXISTS ix_savings_owner_date ON savings (owner_id, date);
CREATE INDEX IF NOT EXISTS ix_upi_owner_status_date ON upi_payments (owner_id, status, date);
CREATE INDEX IF NOT EXISTS ix_emi_owner_active ON emi_plans (owner_id, is_active);
CREATE INDEX IF NOT EXISTS ix_budgets_owner_active ON budgets (owner_id, is_active);
"""

TABLES = {
    'expense': 'expenses',
    'income': 'income',
    'savings': 'savings',
    'upi': 'upi_payments',
    'emi': 'emi_plans',
    'budget': 'budgets',
}

# Column used by range queries for each kind
DATE_COLUMNS = {
    'expense': 'date',
    'income': 'date',
    'savings': 'date',
    'upi': 'date',
    'emi': 'start_date',
    'budget': 'start_date',
}

MONEY_FIELDS = {'amount', 'down_payment', 'principal_amount', 'monthly_installment'}
BOOL_FIELDS = {'is_active', 'include_down_payment_in_balance'}
DATE_FIELDS = {'date', 'start_date', 'end_date', 'next_due_date'}
GROUP_FIELDS = {'category', 'type', 'app', 'status', 'source'}

# Fields never rewritten by a full-field update
_IMMUTABLE_FIELDS = {'id', 'owner_id', 'created_at', 'version'}


def _column(field_name: str) -> str:
    return f"{field_name}_minor" if field_name in MONEY_FIELDS else field_name


def _record_fields(kind: str) -> List[str]:
    return [f.name for f in fields(RECORD_TYPES[kind]) if f.name != 'paid_month_dates']


def _to_db(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if field_name in MONEY_FIELDS:
        return to_minor(value, field_name)
    if field_name in BOOL_FIELDS:
        return int(bool(value))
    if field_name == 'interest_rate':
        return str(value)
    if field_name in DATE_FIELDS:
        # Calendar dates only, so range filters never see a time part.
        return to_date(value).isoformat()
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _from_db(field_name: str, value: Any) -> Any:
    if value is None:
        return None
    if field_name in MONEY_FIELDS:
        return from_minor(value)
    if field_name in BOOL_FIELDS:
        return bool(value)
    if field_name == 'interest_rate':
        return Decimal(str(value))
    if field_name in DATE_FIELDS:
        return to_date(value)
    if field_name == 'created_at':
        return to_datetime(value)
    return value


def _check_kind(kind: str) -> str:
    if kind not in TABLES:
        raise ValueError(f"Unknown ledger kind '{kind}'")
    return TABLES[kind]


def _iso(value: DateLike) -> str:
    parsed = to_date(value)
    if parsed is None:
        raise ValueError(f"Invalid date {value!r}")
    return parsed.isoformat()


def _owner_clause(owner_filter: OwnerFilter, where: List[str], params: List[Any]) -> None:
    if owner_filter is not None:
        where.append("owner_id = ?")
        params.append(owner_filter)


def generate_transaction_id() -> str:
    """Create a UPI transaction reference like ``TXN1718000000000AB12CD34E``."""
    suffix = ''.join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"TXN{int(time.time() * 1000)}{suffix}"


class LedgerStore:
    """Read/write access to the five ledgers plus budgets."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path is not None else DB_PATH
        if db_path is None:
            ensure_data_directories()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_db()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    def init_db(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    # ------------------------------------------------------------------
    # Query shapes used by the engine
    # ------------------------------------------------------------------

    def fetch_all(self, kind: str, owner_filter: OwnerFilter) -> pd.DataFrame:
        """Return every record of ``kind`` visible under ``owner_filter``."""
        return self._fetch_frame(kind, owner_filter)

    def fetch_in_range(
        self,
        kind: str,
        owner_filter: OwnerFilter,
        start: DateLike,
        end: DateLike,
    ) -> pd.DataFrame:
        """Return records whose date falls in ``[start, end]`` (both inclusive)."""
        return self._fetch_frame(kind, owner_filter, (_iso(start), _iso(end)))

    def sum_by_group(
        self,
        kind: str,
        owner_filter: OwnerFilter,
        group_field: str,
        date_range: Optional[Tuple[DateLike, DateLike]] = None,
    ) -> Dict[str, int]:
        """Pre-aggregated ``{group value: sum of amount in minor units}``.

        Rows with a missing amount or an unparseable date are left out, the
        same rows the engine excludes when it groups frames itself. UPI sums
        only include successful payments.
        """
        table = _check_kind(kind)
        if group_field not in GROUP_FIELDS:
            raise ValueError(f"Cannot group by '{group_field}'")
        date_col = DATE_COLUMNS[kind]
        where = [
            "typeof(amount_minor) = 'integer'",
            "amount_minor >= 0",
            f"date({date_col}) IS NOT NULL",
        ]
        params: List[Any] = []
        _owner_clause(owner_filter, where, params)
        if kind == 'upi':
            where.append("status = ?")
            params.append(UPI_SUCCESS)
        if date_range is not None:
            where.append(f"date({date_col}) >= ? AND date({date_col}) <= ?")
            params.extend([_iso(date_range[0]), _iso(date_range[1])])
        sql = (
            f"SELECT COALESCE({group_field}, 'Other') AS grp, SUM(amount_minor) AS total "
            f"FROM {table} WHERE {' AND '.join(where)} GROUP BY grp"
        )
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {row['grp']: int(row['total']) for row in rows}

    def update_plan(
        self,
        plan_id: str,
        expected_version: int,
        mutator: Callable[[EMIPlan], EMIPlan],
    ) -> EMIPlan:
        """Apply ``mutator`` to a plan as a compare-and-swap on its version.

        Raises :class:`ConcurrentModification` when the stored version no
        longer matches ``expected_version``. Exceptions raised by the
        mutator abort the transaction and propagate unchanged.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                current = self._load_plan(conn, plan_id, None)
                if current.version != expected_version:
                    raise ConcurrentModification(plan_id, expected_version)
                updated = mutator(current)
                cursor = conn.execute(
                    self._update_sql('emi', with_version=True),
                    self._update_params('emi', updated) + [plan_id, expected_version],
                )
                if cursor.rowcount != 1:
                    raise ConcurrentModification(plan_id, expected_version)
                self._write_paid_months(conn, updated)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return replace(updated, version=expected_version + 1)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def add(self, record: Any) -> Any:
        """Validate and insert a record, returning the stored version."""
        kind = record.KIND
        table = _check_kind(kind)
        if kind == 'upi' and not record.transaction_id:
            record = replace(record, transaction_id=generate_transaction_id())
        record.validate()
        names = _record_fields(kind)
        columns = [_column(name) for name in names]
        values = [_to_db(name, getattr(record, name)) for name in names]
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})"
        with self.connect() as conn:
            try:
                conn.execute(sql, values)
                if kind == 'emi':
                    self._write_paid_months(conn, record)
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise ValidationError(f"Could not save {kind}: {exc}") from exc
        return record

    def get(self, kind: str, record_id: str, owner_filter: OwnerFilter) -> Any:
        table = _check_kind(kind)
        if kind == 'emi':
            with self.connect() as conn:
                return self._load_plan(conn, record_id, owner_filter)
        where = ["id = ?"]
        params: List[Any] = [record_id]
        _owner_clause(owner_filter, where, params)
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE {' AND '.join(where)}", params
            ).fetchone()
        if row is None:
            raise RecordNotFound(kind, record_id)
        return self._row_to_record(kind, dict(row))

    def update(self, record: Any, owner_filter: OwnerFilter) -> Any:
        """Full-field update of an existing record visible to ``owner_filter``."""
        kind = record.KIND
        _check_kind(kind)
        record.validate()
        sql = self._update_sql(kind, owner_scoped=owner_filter is not None)
        params = self._update_params(kind, record) + [record.id]
        if owner_filter is not None:
            params.append(owner_filter)
        with self.connect() as conn:
            try:
                cursor = conn.execute(sql, params)
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise RecordNotFound(kind, record.id)
                if kind == 'emi':
                    self._write_paid_months(conn, record)
                conn.commit()
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise ValidationError(f"Could not save {kind}: {exc}") from exc
        return self.get(kind, record.id, owner_filter)

    def delete(self, kind: str, record_id: str, owner_filter: OwnerFilter) -> None:
        table = _check_kind(kind)
        where = ["id = ?"]
        params: List[Any] = [record_id]
        _owner_clause(owner_filter, where, params)
        with self.connect() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE {' AND '.join(where)}", params)
            conn.commit()
        if cursor.rowcount == 0:
            raise RecordNotFound(kind, record_id)

    def load_plans(self, owner_filter: OwnerFilter, active_only: bool = False) -> List[EMIPlan]:
        """Return EMI plans oldest first, optionally only active ones."""
        where: List[str] = []
        params: List[Any] = []
        _owner_clause(owner_filter, where, params)
        if active_only:
            where.append("is_active = 1")
        sql = "SELECT * FROM emi_plans"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC"
        with self.connect() as conn:
            rows = [dict(row) for row in conn.execute(sql, params).fetchall()]
            paid = self._paid_months_by_plan(conn, [row['id'] for row in rows])
        return [self._row_to_record('emi', row, paid.get(row['id'], ())) for row in rows]

    def list_budgets(self, owner_filter: OwnerFilter, active_only: bool = True) -> List[Any]:
        """Return budgets newest first."""
        where: List[str] = []
        params: List[Any] = []
        _owner_clause(owner_filter, where, params)
        if active_only:
            where.append("is_active = 1")
        sql = "SELECT * FROM budgets"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_record('budget', dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fetch_frame(
        self,
        kind: str,
        owner_filter: OwnerFilter,
        date_range: Optional[Tuple[str, str]] = None,
    ) -> pd.DataFrame:
        table = _check_kind(kind)
        date_col = DATE_COLUMNS[kind]
        where: List[str] = []
        params: List[Any] = []
        _owner_clause(owner_filter, where, params)
        if date_range is not None:
            where.append(f"date({date_col}) >= ? AND date({date_col}) <= ?")
            params.extend(date_range)
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY {date_col} ASC, created_at ASC"
        with self.connect() as conn:
            df = pd.read_sql_query(sql, conn, params=params)
            if kind == 'emi':
                paid = self._paid_months_by_plan(conn, df['id'].tolist())
                df['paid_month_dates'] = df['id'].map(lambda plan_id: list(paid.get(plan_id, ())))
        return df

    def _paid_months_by_plan(self, conn: sqlite3.Connection, plan_ids: List[str]) -> Dict[str, Tuple[date, ...]]:
        if not plan_ids:
            return {}
        placeholders = ",".join("?" for _ in plan_ids)
        rows = conn.execute(
            f"SELECT plan_id, paid_on FROM emi_paid_months WHERE plan_id IN ({placeholders}) "
            "ORDER BY paid_on ASC",
            plan_ids,
        ).fetchall()
        grouped: Dict[str, List[date]] = {}
        for row in rows:
            grouped.setdefault(row['plan_id'], []).append(to_date(row['paid_on']))
        return {plan_id: tuple(dates) for plan_id, dates in grouped.items()}

    def _load_plan(self, conn: sqlite3.Connection, plan_id: str, owner_filter: OwnerFilter) -> EMIPlan:
        where = ["id = ?"]
        params: List[Any] = [plan_id]
        _owner_clause(owner_filter, where, params)
        row = conn.execute(
            f"SELECT * FROM emi_plans WHERE {' AND '.join(where)}", params
        ).fetchone()
        if row is None:
            raise RecordNotFound('emi', plan_id)
        paid = self._paid_months_by_plan(conn, [plan_id])
        return self._row_to_record('emi', dict(row), paid.get(plan_id, ()))

    def _write_paid_months(self, conn: sqlite3.Connection, plan: EMIPlan) -> None:
        conn.execute("DELETE FROM emi_paid_months WHERE plan_id = ?", (plan.id,))
        conn.executemany(
            "INSERT INTO emi_paid_months (plan_id, period, paid_on) VALUES (?, ?, ?)",
            [(plan.id, f"{d.year:04d}-{d.month:02d}", to_date(d).isoformat()) for d in plan.paid_month_dates],
        )

    def _update_sql(self, kind: str, owner_scoped: bool = False, with_version: bool = False) -> str:
        names = [name for name in _record_fields(kind) if name not in _IMMUTABLE_FIELDS]
        assignments = [f"{_column(name)} = ?" for name in names]
        if kind == 'emi':
            assignments.append("version = version + 1")
        sql = f"UPDATE {TABLES[kind]} SET {', '.join(assignments)} WHERE id = ?"
        if owner_scoped:
            sql += " AND owner_id = ?"
        if with_version:
            sql += " AND version = ?"
        return sql

    def _update_params(self, kind: str, record: Any) -> List[Any]:
        names = [name for name in _record_fields(kind) if name not in _IMMUTABLE_FIELDS]
        return [_to_db(name, getattr(record, name)) for name in names]

    def _row_to_record(self, kind: str, row: Dict[str, Any], paid: Tuple[date, ...] = ()) -> Any:
        kwargs = {name: _from_db(name, row.get(_column(name))) for name in _record_fields(kind)}
        if kind == 'emi':
            kwargs['paid_month_dates'] = tuple(paid)
            kwargs['version'] = int(row.get('version') or 0)
        return RECORD_TYPES[kind](**kwargs)


_default_store: Optional[LedgerStore] = None


def get_store() -> LedgerStore:
    """Shared store bound to the configured database path."""
    global _default_store
    if _default_store is None:
        _default_store = LedgerStore()
    return _default_store
