"""Recurrence policy: when does a rule fire next?

Advancement always starts from the rule's stored next_execution_date,
never from "now", so a late pass does not shift the cadence. The
day_of_month / day_of_week anchors are not consulted here.

Calendar overflow is clamped to the end of the target month:
  monthly  Jan 31 -> Feb 29 (2024) / Feb 28 (2025)
  yearly   Feb 29 -> Feb 28 in non-leap years
The clamped day becomes the new cadence anchor, so a rule that started
on the 31st continues on the 29th/28th after February.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"


def add_months(dt: datetime, n: int) -> datetime:
    """Add n calendar months to dt, clamping the day to the month end."""
    month = dt.month - 1 + n
    year = dt.year + month // 12
    month = month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def next_execution_date(current: datetime, frequency: str) -> datetime:
    """Return the occurrence after current for the given frequency.

    Unknown frequencies advance by one day and are logged as a data
    anomaly rather than raising.
    """
    if frequency == DAILY:
        return current + timedelta(days=1)
    if frequency == WEEKLY:
        return current + timedelta(days=7)
    if frequency == MONTHLY:
        return add_months(current, 1)
    if frequency == YEARLY:
        return add_months(current, 12)

    logger.warning(
        "Unrecognized frequency %r, falling back to daily advancement",
        frequency,
    )
    return current + timedelta(days=1)
