"""Reporting queries: period summaries and per-category breakdowns.

These go beyond single-table CRUD and implement aggregations for the
statistics views. Period bounds are half-open: start <= date < end.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

from .repository import to_db_timestamp


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """UTC [start, end) of a calendar month."""
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end


def _summary(income: float, expense: float) -> dict:
    return {
        "total_income": income,
        "total_expense": expense,
        "balance": income - expense,
    }


def get_summary_for_period(
    conn: sqlite3.Connection, user_id: str,
    start: datetime, end: datetime,
) -> dict:
    row = conn.execute(
        "SELECT"
        "  COALESCE(SUM(CASE WHEN type = 'income' THEN amount END), 0) AS income,"
        "  COALESCE(SUM(CASE WHEN type = 'expense' THEN amount END), 0) AS expense"
        " FROM transactions"
        " WHERE user_id = ? AND date >= ? AND date < ?",
        (user_id, to_db_timestamp(start), to_db_timestamp(end)),
    ).fetchone()
    return _summary(row["income"], row["expense"])


def get_overall_summary(conn: sqlite3.Connection, user_id: str) -> dict:
    row = conn.execute(
        "SELECT"
        "  COALESCE(SUM(CASE WHEN type = 'income' THEN amount END), 0) AS income,"
        "  COALESCE(SUM(CASE WHEN type = 'expense' THEN amount END), 0) AS expense"
        " FROM transactions WHERE user_id = ?",
        (user_id,),
    ).fetchone()
    return _summary(row["income"], row["expense"])


def get_breakdown_for_period(
    conn: sqlite3.Connection, user_id: str, txn_type: str,
    start: datetime, end: datetime, total: float,
) -> list[dict]:
    """Per-category totals for one direction, largest first.

    percentage is relative to total and is 0 when total is 0.
    """
    rows = conn.execute(
        "SELECT category_key, SUM(amount) AS amount"
        " FROM transactions"
        " WHERE user_id = ? AND type = ? AND date >= ? AND date < ?"
        " GROUP BY category_key"
        " ORDER BY amount DESC",
        (user_id, txn_type, to_db_timestamp(start), to_db_timestamp(end)),
    ).fetchall()
    return [
        {
            "category_key": r["category_key"],
            "amount": r["amount"],
            "percentage": (r["amount"] / total) * 100 if total > 0 else 0.0,
        }
        for r in rows
    ]


def get_monthly_statistics(
    conn: sqlite3.Connection, user_id: str, year: int, month: int,
) -> dict:
    """Summary plus expense and income breakdowns for one month."""
    start, end = month_bounds(year, month)
    summary = get_summary_for_period(conn, user_id, start, end)
    return {
        "summary": summary,
        "expense_breakdown": get_breakdown_for_period(
            conn, user_id, "expense", start, end, summary["total_expense"],
        ),
        "income_breakdown": get_breakdown_for_period(
            conn, user_id, "income", start, end, summary["total_income"],
        ),
    }


def get_status_counts(conn: sqlite3.Connection, now: datetime) -> dict:
    """Counts for the `minimoney status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions) AS total_txns,"
        "  (SELECT COUNT(*) FROM auto_transactions) AS total_rules,"
        "  (SELECT COUNT(*) FROM auto_transactions WHERE is_active = 1) AS active_rules,"
        "  (SELECT COUNT(*) FROM auto_transactions"
        "     WHERE is_active = 1 AND next_execution_date <= ?) AS due_rules,"
        "  (SELECT MAX(last_execution_date) FROM auto_transactions) AS last_execution",
        (to_db_timestamp(now),),
    ).fetchone()
    return dict(row)
