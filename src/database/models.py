"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()).

Execution and transaction timestamps are timezone-aware UTC datetimes;
the repository stores them as ISO-8601 strings so that string comparison
in SQL matches chronological order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

TRANSACTION_TYPES = ("income", "expense")
FREQUENCIES = ("daily", "weekly", "monthly", "yearly")


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Return dt in UTC. Naive datetimes are taken to already be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass
class Transaction:
    user_id: str
    type: str  # "income" | "expense"
    amount: float
    category_key: str
    date: datetime
    description: str = ""
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass
class AutoTransactionRule:
    user_id: str
    type: str  # "income" | "expense"
    amount: float
    category_key: str
    frequency: str  # "daily" | "weekly" | "monthly" | "yearly"
    next_execution_date: datetime
    description: str = ""
    id: str = field(default_factory=_new_id)
    day_of_month: int = 1  # 1-31, monthly/yearly anchor
    day_of_week: int = 1  # 0-6, weekly anchor
    last_execution_date: datetime | None = None
    is_active: bool = True
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_transaction(self, when: datetime) -> Transaction:
        """Materialize one firing of this rule as a ledger entry."""
        return Transaction(
            user_id=self.user_id,
            type=self.type,
            amount=self.amount,
            category_key=self.category_key,
            description=self.description,
            date=when,
        )
