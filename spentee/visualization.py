"""Plotly figures for the Spentee dashboard.

Each function accepts a result object from the engine modules
(:mod:`spentee.aggregation`, :mod:`spentee.budgets`) and returns a
`plotly.graph_objects.Figure` that Streamlit renders via
``st.plotly_chart``. Money values arrive as ``Decimal`` and are converted
to floats only here, at the drawing boundary.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Sequence

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from .aggregation import TREND_COLUMNS

TREND_LABELS = {
    'income': 'Income',
    'expenses': 'Expenses',
    'emi': 'EMI',
    'upi': 'UPI',
    'down_payments': 'Down Payments',
    'savings': 'Savings',
}


def _empty_figure(title: str = "No data to display") -> go.Figure:
    fig = go.Figure()
    fig.update_layout(title=title)
    return fig


def create_category_pie_chart(breakdown: Dict[str, Decimal], title: str | None = None) -> go.Figure:
    """Pie chart of outgoing money per category.

    Parameters
    ----------
    breakdown : dict
        ``FinancialSummary.expenses_by_category``: category name to amount,
        including the synthetic ``EMI``, ``Down Payments`` and ``Savings``
        entries.
    title : str, optional
        Chart title.

    Returns
    -------
    plotly.graph_objects.Figure
        Pie chart, or an empty figure when nothing was spent.
    """
    values = {name: float(amount) for name, amount in breakdown.items() if amount > 0}
    if not values:
        return _empty_figure()
    df = pd.DataFrame(list(values.items()), columns=["Category", "Amount"])
    fig = px.pie(df, names="Category", values="Amount")
    fig.update_layout(title=title or "Spending by category")
    return fig


def create_monthly_trend_chart(
    trend: pd.DataFrame,
    series: Sequence[str] = ('income', 'expenses', 'emi', 'upi'),
    title: str | None = None,
) -> go.Figure:
    """Grouped bar chart of the monthly trend frame.

    Parameters
    ----------
    trend : pandas.DataFrame
        Output of :func:`spentee.aggregation.monthly_trend`.
    series : sequence of str
        Trend columns to draw, one bar group per column.
    title : str, optional
        Chart title.
    """
    if trend.empty:
        return _empty_figure()
    unknown = [name for name in series if name not in TREND_COLUMNS]
    if unknown:
        raise ValueError(f"Unknown trend column(s): {', '.join(unknown)}")
    df = trend[['label'] + list(series)].copy()
    for name in series:
        df[name] = df[name].astype(float)
    long_df = df.melt(id_vars="label", value_vars=list(series), var_name="Series", value_name="Amount")
    long_df["Series"] = long_df["Series"].map(TREND_LABELS)
    fig = px.bar(long_df, x="label", y="Amount", color="Series", barmode="group")
    fig.update_layout(
        title=title or "Monthly trend",
        xaxis_title="Month",
        yaxis_title="Amount",
    )
    return fig


def create_budget_progress_chart(statuses: List, title: str | None = None) -> go.Figure:
    """Horizontal bars of percentage used per budget, red once over budget."""
    if not statuses:
        return _empty_figure("No active budgets")
    df = pd.DataFrame({
        "Budget": [f"{status.budget.category} ({status.budget.period})" for status in statuses],
        "Used": [float(status.percentage_used) for status in statuses],
        "Over": [status.over_budget for status in statuses],
    })
    fig = go.Figure(
        go.Bar(
            x=df["Used"],
            y=df["Budget"],
            orientation="h",
            marker_color=["#ef4444" if over else "#10b981" for over in df["Over"]],
        )
    )
    fig.add_vline(x=100, line_dash="dash", line_color="gray")
    fig.update_layout(
        title=title or "Budget usage",
        xaxis_title="Percent used",
        yaxis_title="",
    )
    return fig
