"""Streamlit dashboard for Spentee.

The page is a thin presentation layer: every figure comes from the engine
modules and is recomputed on each rerun. To run it::

    streamlit run spentee/dashboard.py
"""

from __future__ import annotations

from datetime import date
from typing import Optional

import pandas as pd
import streamlit as st

from spentee import aggregation, budgets, config, emi, transactions
from spentee import visualization as viz
from spentee.db import get_store
from spentee.errors import SpenteeError


def _money(value) -> str:
    return f"₹{value:,.2f}"


def _resolve_owner() -> Optional[str]:
    st.sidebar.header("Account")
    owner_id = st.sidebar.text_input("Owner id", value=st.session_state.get('owner_id', ''))
    is_admin = st.sidebar.checkbox("Admin (all owners)", value=False)
    st.session_state.owner_id = owner_id
    try:
        return config.resolve_owner_filter(owner_id or None, is_admin=is_admin)
    except ValueError as exc:
        st.info(str(exc))
        st.stop()


def _render_summary(store, owner_filter: Optional[str], today: date) -> None:
    summary = aggregation.summarize_current_month(store, owner_filter, today=today)

    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Available balance", _money(summary.available_balance))
    col2.metric("Income this month", _money(summary.period.income))
    col3.metric("Spent this month", _money(summary.period.total_outgoing))
    col4.metric("Net this month", _money(summary.period.net))

    left, right = st.columns(2)
    with left:
        st.plotly_chart(viz.create_category_pie_chart(summary.expenses_by_category), use_container_width=True)
    with right:
        trend = aggregation.monthly_trend(store, owner_filter, months=config.TREND_MONTHS, today=today)
        st.plotly_chart(viz.create_monthly_trend_chart(trend), use_container_width=True)

    if summary.issues:
        with st.expander(f"{len(summary.issues)} record(s) skipped or flagged"):
            for issue in summary.issues:
                st.write(f"- {issue}")


def _render_emis(store, owner_filter: Optional[str], today: date) -> None:
    st.subheader("EMIs")
    plans = store.load_plans(owner_filter)
    upcoming = emi.upcoming_installments(plans, today=today)
    if upcoming.due_month is not None:
        st.caption(
            f"Due {upcoming.due_month:%B %Y}: {len(upcoming.plans)} plan(s), {_money(upcoming.total)}"
        )
    if not plans:
        st.info("No EMI plans yet.")
        return
    for plan in plans:
        try:
            paid_now = today in emi.PaidMonths(plan.paid_month_dates)
        except SpenteeError as exc:
            st.error(f"{plan.name}: {exc}")
            continue
        cols = st.columns([3, 2, 2, 2])
        cols[0].write(f"**{plan.name}** ({plan.category})")
        cols[1].write(f"{plan.paid_months}/{plan.tenure_months} paid")
        cols[2].write("Closed" if plan.is_closed else f"Next due {plan.next_due_date:%d %b %Y}")
        label = "Unmark paid" if paid_now else "Mark paid"
        if cols[3].button(label, key=f"emi-{plan.id}", disabled=plan.is_closed):
            action = emi.unpay if paid_now else emi.pay
            try:
                action(store, plan.id, owner_filter, as_of=today)
            except SpenteeError as exc:
                st.error(str(exc))
            else:
                st.rerun()


def _render_budgets(store, owner_filter: Optional[str]) -> None:
    st.subheader("Budgets")
    statuses = budgets.evaluate_all_budgets(store, owner_filter)
    if not statuses:
        st.info("No active budgets.")
        return
    st.plotly_chart(viz.create_budget_progress_chart(statuses), use_container_width=True)
    for status in statuses:
        if status.over_budget:
            st.warning(
                f"{status.budget.category} is over budget by {_money(-status.remaining)}"
            )


def _render_transactions(store, owner_filter: Optional[str]) -> None:
    st.subheader("Recent transactions")
    kinds = st.multiselect("Show", options=list(transactions.TRANSACTION_KINDS), default=list(transactions.TRANSACTION_KINDS))
    feed = transactions.list_transactions(store, owner_filter, kinds)
    recent = feed.take(50)
    if not recent:
        st.info("No transactions yet.")
        return
    st.dataframe(pd.DataFrame([
        {
            "Date": item.date,
            "Type": item.kind,
            "Category": item.category,
            "Description": item.description,
            "Amount": float(item.signed_amount),
        }
        for item in recent
    ]))


def main() -> None:
    """Entry point for the Streamlit app."""
    st.set_page_config(page_title="Spentee", layout="wide", initial_sidebar_state="expanded")
    st.title("Spentee")

    owner_filter = _resolve_owner()
    store = get_store()
    today = date.today()

    _render_summary(store, owner_filter, today)
    _render_emis(store, owner_filter, today)
    _render_budgets(store, owner_filter)
    _render_transactions(store, owner_filter)


if __name__ == "__main__":  # pragma: no cover
    main()
