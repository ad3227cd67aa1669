import threading
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from spentee import emi
from spentee.db import LedgerStore
from spentee.errors import (
    AlreadyPaidThisMonth,
    ConcurrentModification,
    EMIStateError,
    InvariantViolation,
    NoPaymentThisMonth,
    PlanClosed,
    RecordNotFound,
    SpenteeError,
)


def _plan(tenure=12, start=date(2024, 1, 15), **kwargs):
    return emi.create_plan(
        'Car', Decimal('24000'), Decimal('2000'), Decimal('10.5'), tenure, start,
        category='Car Loan', owner_id='u1', **kwargs
    )


def _pay_months(plan, months):
    for month in months:
        plan = emi.mark_paid(plan, date(2024, month, 5))
    return plan


def test_create_plan_derives_schedule():
    plan = _plan()
    assert plan.next_due_date == date(2024, 2, 1)
    assert plan.end_date == date(2025, 1, 15)
    assert plan.remaining_months == 12
    assert plan.paid_months == 0
    assert plan.is_active


def test_add_months_clamps_to_month_end():
    assert emi.add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert emi.add_months(date(2024, 3, 1), -1) == date(2024, 2, 1)


def test_mark_paid_advances_schedule():
    plan = emi.mark_paid(_plan(), date(2024, 2, 10))

    assert plan.paid_months == 1
    assert plan.remaining_months == 11
    assert plan.paid_month_dates == (date(2024, 2, 10),)
    assert plan.next_due_date == date(2024, 3, 1)
    plan.validate()


def test_mark_paid_twice_in_one_month_is_rejected():
    plan = emi.mark_paid(_plan(), date(2024, 2, 1))
    with pytest.raises(AlreadyPaidThisMonth) as excinfo:
        emi.mark_paid(plan, date(2024, 2, 28))
    assert excinfo.value.plan_id == plan.id
    assert "already marked as paid" in str(excinfo.value)


def test_final_payment_closes_plan():
    plan = _pay_months(_plan(tenure=3), [2, 3])
    due_before = plan.next_due_date

    closed = emi.mark_paid(plan, date(2024, 4, 5))

    assert closed.remaining_months == 0
    assert closed.paid_months == 3
    assert not closed.is_active
    assert closed.is_closed
    assert closed.next_due_date == due_before
    closed.validate()


def test_closed_plan_rejects_further_payments():
    closed = _pay_months(_plan(tenure=2), [2, 3])
    with pytest.raises(PlanClosed):
        emi.mark_paid(closed, date(2024, 5, 5))


def test_unmark_without_payment_is_rejected():
    plan = emi.mark_paid(_plan(), date(2024, 2, 1))
    with pytest.raises(NoPaymentThisMonth):
        emi.unmark_paid(plan, date(2024, 3, 1))


def test_unmark_inverts_mark_paid():
    for paid in ([], [2], [2, 3, 4]):
        plan = _pay_months(_plan(), paid)
        assert emi.unmark_paid(emi.mark_paid(plan, date(2024, 6, 9)), date(2024, 6, 20)) == plan


def test_closed_plan_cannot_be_unmarked():
    closed = _pay_months(_plan(tenure=3), [2, 3, 4])

    with pytest.raises(PlanClosed):
        emi.unmark_paid(closed, date(2024, 4, 5))


def test_unmark_last_payment_resets_to_first_due_date():
    plan = emi.mark_paid(_plan(), date(2024, 2, 1))
    reset = emi.unmark_paid(plan, date(2024, 2, 1))

    assert reset.paid_months == 0
    assert reset.remaining_months == reset.tenure_months
    assert reset.next_due_date == date(2024, 2, 1)
    assert reset.is_active


def test_paid_months_is_keyed_by_calendar_month():
    paid = emi.PaidMonths([date(2024, 3, 1), date(2024, 1, 31)])

    assert date(2024, 3, 30) in paid
    assert date(2024, 2, 1) not in paid
    assert list(paid) == [date(2024, 1, 31), date(2024, 3, 1)]
    assert paid.latest() == date(2024, 3, 1)
    with pytest.raises(KeyError):
        paid.add(date(2024, 1, 2))
    with pytest.raises(InvariantViolation):
        emi.PaidMonths([date(2024, 1, 1), date(2024, 1, 2)])


def test_duplicate_month_data_is_an_invariant_violation():
    plan = replace(_plan(), paid_months=2, remaining_months=10,
                   paid_month_dates=(date(2024, 2, 1), date(2024, 2, 20)))

    with pytest.raises(InvariantViolation) as excinfo:
        emi.mark_paid(plan, date(2024, 3, 5))
    assert isinstance(excinfo.value, SpenteeError)
    assert "2024-02" in str(excinfo.value)


def test_counters_stay_consistent_over_a_sequence_of_transitions():
    plan = _plan(tenure=6)
    steps = [('pay', 2), ('pay', 3), ('unpay', 2), ('pay', 4), ('pay', 5), ('unpay', 5), ('pay', 6)]
    for action, month in steps:
        when = date(2024, month, 10)
        plan = emi.mark_paid(plan, when) if action == 'pay' else emi.unmark_paid(plan, when)
        assert plan.paid_months == len(plan.paid_month_dates)
        assert plan.paid_months + plan.remaining_months == plan.tenure_months
        assert plan.remaining_months >= 0
    assert [d.month for d in plan.paid_month_dates] == [3, 4, 6]


def _stored_plan(tmp_path, **kwargs):
    store = LedgerStore(tmp_path / "spentee.db")
    plan = store.add(_plan(**kwargs))
    return store, plan


def test_pay_and_unpay_through_the_store(tmp_path):
    store, plan = _stored_plan(tmp_path)

    paid = emi.pay(store, plan.id, 'u1', as_of=date(2024, 2, 3))
    assert paid.version == 1
    assert store.get('emi', plan.id, 'u1').paid_month_dates == (date(2024, 2, 3),)

    with pytest.raises(AlreadyPaidThisMonth):
        emi.pay(store, plan.id, 'u1', as_of=date(2024, 2, 20))

    unpaid = emi.unpay(store, plan.id, 'u1', as_of=date(2024, 2, 3))
    assert unpaid.paid_months == 0
    assert store.get('emi', plan.id, 'u1') == replace(plan, version=2)


def test_pay_respects_owner_filter(tmp_path):
    store, plan = _stored_plan(tmp_path)
    with pytest.raises(RecordNotFound):
        emi.pay(store, plan.id, 'someone-else', as_of=date(2024, 2, 3))


def test_concurrent_pay_for_same_month_records_one_payment(tmp_path):
    store, plan = _stored_plan(tmp_path)
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            emi.pay(store, plan.id, 'u1', as_of=date(2024, 2, 3))
            outcome = 'paid'
        except (EMIStateError, ConcurrentModification) as exc:
            outcome = exc
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count('paid') == 1
    rejected = [r for r in results if r != 'paid']
    assert len(rejected) == 1
    assert isinstance(rejected[0], AlreadyPaidThisMonth)
    stored = store.get('emi', plan.id, 'u1')
    assert stored.paid_months == 1
    assert stored.remaining_months == 11


def test_upcoming_installments_groups_by_next_due_month():
    march_a = _plan(start=date(2024, 2, 10))
    march_b = replace(_plan(start=date(2024, 2, 20)), monthly_installment=Decimal('500'))
    april = _plan(start=date(2024, 3, 5))
    closed = _pay_months(_plan(tenure=1, start=date(2024, 1, 1)), [1])

    upcoming = emi.upcoming_installments([march_a, march_b, april, closed], today=date(2024, 2, 25))

    assert upcoming.due_month == date(2024, 3, 1)
    assert [p.id for p in upcoming.plans] == [march_a.id, march_b.id]
    assert upcoming.total == Decimal('2500')


def test_upcoming_installments_empty_when_nothing_due():
    upcoming = emi.upcoming_installments([], today=date(2024, 2, 25))
    assert upcoming.due_month is None
    assert upcoming.total == 0
