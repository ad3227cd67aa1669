import warnings
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from spentee import emi
from spentee.aggregation import (
    Window,
    current_month_window,
    month_window,
    monthly_trend,
    summarize,
    summarize_current_month,
)
from spentee.db import LedgerStore
from spentee.errors import LedgerWarning
from spentee.models import Expense, IncomeEntry, SavingsEntry, UPIPayment

TODAY = date(2024, 2, 1)
JANUARY = month_window(2024, 1)


def _store(tmp_path):
    return LedgerStore(tmp_path / "spentee.db")


def _seed_scenario(store, owner='u1'):
    store.add(IncomeEntry(amount=Decimal('50000'), source='Employer', date=date(2024, 1, 5), owner_id=owner))
    store.add(Expense(amount=Decimal('1200'), category='Food', date=date(2024, 1, 10), owner_id=owner))
    plan = emi.create_plan(
        'Bike', Decimal('24000'), Decimal('2000'), Decimal('0'), 12, date(2024, 1, 1),
        down_payment=Decimal('10000'), include_down_payment_in_balance=True, owner_id=owner,
    )
    store.add(emi.mark_paid(plan, date(2024, 1, 15)))
    return plan


def _upi(amount, day, status='Success', category='Food', owner='u1'):
    return UPIPayment(amount=Decimal(amount), app='Google Pay', category=category, date=day,
                      status=status, owner_id=owner)


def test_concrete_scenario(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)

    summary = summarize(store, 'u1', JANUARY, today=TODAY)

    assert summary.available_balance == Decimal('36800')
    assert summary.expenses_by_category == {
        'Food': Decimal('1200'),
        'EMI': Decimal('2000'),
        'Down Payments': Decimal('10000'),
    }
    assert sum(summary.expenses_by_category.values()) == Decimal('13200')
    assert summary.period.total_outgoing == Decimal('13200')
    assert summary.period.net == Decimal('36800')
    assert summary.issues == []


def test_clean_data_emits_no_warnings(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)
    with warnings.catch_warnings():
        warnings.simplefilter('error', LedgerWarning)
        summarize(store, 'u1', JANUARY, today=TODAY)


def test_balance_ignores_the_window(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)

    february = summarize(store, 'u1', month_window(2024, 2), today=TODAY)

    assert february.available_balance == Decimal('36800')
    assert february.period.total_outgoing == 0
    assert february.expenses_by_category == {}


def test_owner_filter_isolates_summaries(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store, owner='u1')
    store.add(Expense(amount=Decimal('300'), category='Bills', date=date(2024, 1, 3), owner_id='u2'))

    mine = summarize(store, 'u1', today=TODAY)
    everyone = summarize(store, None, today=TODAY)

    assert mine.available_balance == Decimal('36800')
    assert everyone.available_balance == Decimal('36500')


def test_category_sum_matches_total_outgoing(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)
    store.add(_upi('250.50', date(2024, 1, 20), category='Transport'))
    store.add(_upi('99', date(2024, 1, 21), category='Food'))
    store.add(SavingsEntry(amount=Decimal('5000'), date=date(2024, 1, 25), owner_id='u1'))
    store.add(Expense(amount=Decimal('75.25'), category='Bills', date=date(2024, 2, 2), owner_id='u1'))

    for window in (JANUARY, month_window(2024, 2), None):
        summary = summarize(store, 'u1', window, today=TODAY)
        assert sum(summary.expenses_by_category.values()) == summary.period.total_outgoing

    january = summarize(store, 'u1', JANUARY, today=TODAY)
    assert january.expenses_by_category['Food'] == Decimal('1299')
    assert january.expenses_by_category['Savings'] == Decimal('5000')
    assert january.period.upi == Decimal('349.50')


def test_balance_moves_by_exactly_each_new_entry(tmp_path):
    store = _store(tmp_path)
    plan = _seed_scenario(store)

    def balance():
        return summarize(store, 'u1', today=TODAY).available_balance

    start = balance()
    store.add(Expense(amount=Decimal('10.10'), category='Food', date=date(2024, 1, 11), owner_id='u1'))
    assert balance() == start - Decimal('10.10')

    start = balance()
    store.add(_upi('20', date(2024, 1, 12)))
    assert balance() == start - Decimal('20')

    start = balance()
    emi.pay(store, plan.id, 'u1', as_of=date(2024, 2, 1))
    assert balance() == start - Decimal('2000')

    start = balance()
    store.add(emi.create_plan('Laptop', Decimal('60000'), Decimal('5000'), Decimal('0'), 12, date(2024, 1, 20),
                              down_payment=Decimal('7000'), owner_id='u1'))
    assert balance() == start - Decimal('7000')

    start = balance()
    store.add(SavingsEntry(amount=Decimal('300'), date=date(2024, 1, 30), owner_id='u1'))
    assert balance() == start - Decimal('300')

    start = balance()
    store.add(IncomeEntry(amount=Decimal('1500'), source='Gig', type='Freelance', date=date(2024, 1, 31),
                          owner_id='u1'))
    assert balance() == start + Decimal('1500')


def test_unflagged_or_future_down_payments_do_not_reduce_balance(tmp_path):
    store = _store(tmp_path)
    store.add(emi.create_plan('TV', Decimal('30000'), Decimal('2500'), Decimal('0'), 12, date(2024, 1, 1),
                              down_payment=Decimal('4000'), include_down_payment_in_balance=False,
                              owner_id='u1'))
    store.add(emi.create_plan('Car', Decimal('300000'), Decimal('9000'), Decimal('0'), 36, date(2024, 3, 1),
                              down_payment=Decimal('50000'), owner_id='u1'))

    all_time = summarize(store, 'u1', today=TODAY)
    march = summarize(store, 'u1', month_window(2024, 3), today=TODAY)

    assert all_time.available_balance == Decimal('0')
    assert all_time.balance.down_payments == 0
    assert march.period.down_payments == Decimal('50000')
    assert march.expenses_by_category == {'Down Payments': Decimal('50000')}


def test_pending_and_failed_upi_contribute_nothing(tmp_path):
    store = _store(tmp_path)
    store.add(_upi('100', date(2024, 1, 5), status='Pending'))
    store.add(_upi('200', date(2024, 1, 6), status='Failed', category='Bills'))
    store.add(_upi('50', date(2024, 1, 7)))

    for push_down in (False, True):
        summary = summarize(store, 'u1', JANUARY, today=TODAY, push_down=push_down)
        assert summary.period.upi == Decimal('50')
        assert summary.balance.upi == Decimal('50')
        assert summary.expenses_by_category == {'Food': Decimal('50')}
        assert summary.counts['upi'] == 1


def test_emi_window_counts_paid_months_only(tmp_path):
    store = _store(tmp_path)
    plan = emi.create_plan('Loan', Decimal('12000'), Decimal('1000'), Decimal('0'), 12, date(2023, 12, 1),
                           owner_id='u1')
    plan = emi.mark_paid(plan, date(2024, 1, 3))
    plan = emi.mark_paid(plan, date(2024, 3, 3))
    store.add(plan)

    assert summarize(store, 'u1', JANUARY, today=TODAY).period.emi == Decimal('1000')
    assert summarize(store, 'u1', month_window(2024, 2), today=TODAY).period.emi == 0
    assert summarize(store, 'u1', today=TODAY).balance.emi == Decimal('2000')


def _insert_raw_expense(store, row_id, amount_minor, day, category='Food'):
    with store.connect() as conn:
        conn.execute(
            "INSERT INTO expenses (id, owner_id, amount_minor, category, date) VALUES (?, ?, ?, ?, ?)",
            (row_id, 'u1', amount_minor, category, day),
        )
        conn.commit()


def test_malformed_records_contribute_zero_and_are_reported(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)
    _insert_raw_expense(store, 'no-date', 999, None)
    _insert_raw_expense(store, 'bad-date', 999, 'yesterday')
    _insert_raw_expense(store, 'no-amount', None, '2024-01-12')

    with pytest.warns(LedgerWarning):
        summary = summarize(store, 'u1', JANUARY, today=TODAY)

    assert summary.available_balance == Decimal('36800')
    assert summary.expenses_by_category['Food'] == Decimal('1200')
    assert len(summary.issues) == 3
    assert any("no-amount" in issue for issue in summary.issues)


def test_emi_invariant_violations_are_reported_not_raised(tmp_path):
    store = _store(tmp_path)
    plan = _seed_scenario(store)
    with store.connect() as conn:
        conn.execute("UPDATE emi_plans SET paid_months = 3 WHERE id = ?", (plan.id,))
        conn.commit()

    with pytest.warns(LedgerWarning, match="paid_months"):
        summary = summarize(store, 'u1', today=TODAY)

    assert summary.violations
    assert summary.balance.emi == Decimal('6000')
    assert summary.period.emi == Decimal('2000')


@pytest.mark.filterwarnings("ignore::spentee.errors.LedgerWarning")
def test_push_down_grouping_matches_local_grouping(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)
    store.add(_upi('250', date(2024, 1, 20), category='Transport'))
    store.add(_upi('80', date(2024, 1, 21), status='Failed'))
    store.add(Expense(amount=Decimal('40'), category='Bills', date=date(2024, 2, 3), owner_id='u1'))
    store.add(IncomeEntry(amount=Decimal('700'), source='Side', type='Freelance', date=date(2024, 1, 30),
                          owner_id='u1'))
    _insert_raw_expense(store, 'bad-date', 500, 'not-a-date')
    _insert_raw_expense(store, 'negative', -500, '2024-01-13')
    _insert_raw_expense(store, 'no-category', 300, '2024-01-14', category=None)

    for window in (JANUARY, month_window(2024, 2), None):
        local = summarize(store, 'u1', window, today=TODAY)
        pushed = summarize(store, 'u1', window, today=TODAY, push_down=True)
        assert pushed.expenses_by_category == local.expenses_by_category
        assert pushed.income_by_type == local.income_by_type
        assert pushed.period == local.period

    january = summarize(store, 'u1', JANUARY, today=TODAY, push_down=True)
    assert january.expenses_by_category['Other'] == Decimal('3')
    assert january.income_by_type == {'Salary': Decimal('50000'), 'Freelance': Decimal('700')}


def test_expense_dated_with_a_time_stays_in_its_month(tmp_path):
    store = _store(tmp_path)
    store.add(Expense(amount=Decimal('500'), category='Food', date=datetime(2024, 1, 31, 18, 0), owner_id='u1'))

    for push_down in (False, True):
        summary = summarize(store, 'u1', JANUARY, today=TODAY, push_down=push_down)
        assert summary.period.expenses == Decimal('500')
        assert summary.expenses_by_category == {'Food': Decimal('500')}
    trend = monthly_trend(store, 'u1', months=2, today=TODAY)
    assert list(trend['expenses']) == [Decimal('500'), Decimal('0')]


def test_stored_dates_with_a_time_part_are_windowed_by_day(tmp_path):
    store = _store(tmp_path)
    _insert_raw_expense(store, 'late-evening', 500, '2024-01-31T18:00:00')

    local = summarize(store, 'u1', JANUARY, today=TODAY)
    pushed = summarize(store, 'u1', JANUARY, today=TODAY, push_down=True)

    assert local.expenses_by_category == {'Food': Decimal('500')}
    assert pushed.expenses_by_category == local.expenses_by_category
    assert local.issues == []


def test_mixed_timezone_created_at_is_summarized(tmp_path):
    store = _store(tmp_path)
    store.add(Expense(amount=Decimal('100'), category='Food', date=date(2024, 1, 4), owner_id='u1',
                      created_at=datetime(2024, 1, 4, tzinfo=timezone.utc)))
    store.add(Expense(amount=Decimal('50'), category='Food', date=date(2024, 1, 5), owner_id='u1',
                      created_at=datetime(2024, 1, 5, 9, 0)))
    _insert_raw_expense(store, 'aware-text', 25, '2024-01-06')
    with store.connect() as conn:
        conn.execute("UPDATE expenses SET created_at = ? WHERE id = ?", ('2024-01-06T08:00:00+05:30', 'aware-text'))
        conn.commit()

    summary = summarize(store, 'u1', JANUARY, today=TODAY)

    assert summary.balance.expenses == Decimal('175')
    assert summary.expenses_by_category == {'Food': Decimal('175')}
    assert summary.issues == []


def test_windows_are_half_open():
    window = month_window(2024, 12)
    assert window.end == date(2025, 1, 1)
    assert window.contains(date(2024, 12, 31))
    assert not window.contains(date(2025, 1, 1))
    assert window.last_day == date(2024, 12, 31)
    assert current_month_window(date(2024, 2, 29)) == month_window(2024, 2)
    with pytest.raises(ValueError):
        Window(date(2024, 1, 2), date(2024, 1, 1))


def test_summarize_current_month_uses_today(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)

    summary = summarize_current_month(store, 'u1', today=date(2024, 1, 31))

    assert summary.window == JANUARY
    assert summary.period.total_outgoing == Decimal('13200')


def test_monthly_trend_has_one_row_per_month(tmp_path):
    store = _store(tmp_path)
    _seed_scenario(store)
    store.add(_upi('100', date(2024, 2, 14)))
    store.add(Expense(amount=Decimal('5'), category='Food', date=date(2023, 6, 1), owner_id='u1'))

    trend = monthly_trend(store, 'u1', months=3, today=date(2024, 2, 20))

    assert list(trend['month']) == ['2023-12', '2024-01', '2024-02']
    assert list(trend['label']) == ['Dec', 'Jan', 'Feb']
    january = trend.iloc[1]
    assert january['income'] == Decimal('50000')
    assert january['expenses'] == Decimal('1200')
    assert january['emi'] == Decimal('2000')
    assert january['down_payments'] == Decimal('10000')
    assert january['total_outgoing'] == Decimal('13200')
    assert january['net'] == Decimal('36800')
    assert trend.iloc[2]['upi'] == Decimal('100')
    assert trend.iloc[0]['total_outgoing'] == 0


def test_monthly_trend_rejects_empty_range(tmp_path):
    with pytest.raises(ValueError):
        monthly_trend(_store(tmp_path), 'u1', months=0)
