"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled.

The auto-billing scheduler uses get_due_rules(), insert_transaction() and
record_execution(), bracketed by acquire_lease()/release_lease() so that
only one process runs a pass at a time. Everything else backs the
user-facing rule and ledger management.

Every write commits on success and rolls back on failure, so a failed
statement never rides along with a later commit.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path

from .models import (
    FREQUENCIES,
    TRANSACTION_TYPES,
    AutoTransactionRule,
    Transaction,
    _now,
    as_utc,
)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class RuleNotFoundError(LookupError):
    """Raised when a rule id does not exist for the given owner."""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"Auto transaction rule '{rule_id}' not found")


def to_db_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO string, so SQL string comparison is chronological."""
    return as_utc(dt).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    return as_utc(datetime.fromisoformat(value))


def validate_rule(rule: AutoTransactionRule) -> None:
    """Reject rules that would violate the auto_transactions invariants.

    Raises:
        ValueError: On the first invalid field found.
    """
    if rule.type not in TRANSACTION_TYPES:
        raise ValueError(f"Invalid transaction type: {rule.type!r}")
    if rule.frequency not in FREQUENCIES:
        raise ValueError(f"Invalid frequency: {rule.frequency!r}")
    if rule.amount is None or rule.amount <= 0:
        raise ValueError("Amount must be positive")
    if not rule.category_key:
        raise ValueError("Category is required")
    if not 1 <= rule.day_of_month <= 31:
        raise ValueError(f"day_of_month out of range (1-31): {rule.day_of_month}")
    if not 0 <= rule.day_of_week <= 6:
        raise ValueError(f"day_of_week out of range (0-6): {rule.day_of_week}")
    if rule.next_execution_date is None:
        raise ValueError("next_execution_date is required")


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version ("
            "  version INTEGER PRIMARY KEY,"
            "  description TEXT,"
            "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
            ")"
        )
        self.conn.commit()

        row = self.conn.execute(
            "SELECT MAX(version) FROM schema_version"
        ).fetchone()
        current = row[0] or 0

        for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
            version = int(sql_file.name.split("_")[0])
            if version > current:
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                except Exception:
                    self.conn.rollback()
                    raise

    def _write(self, sql: str, params: tuple) -> sqlite3.Cursor:
        """Execute one write and commit it, or roll it back on any error.

        The connection is shared, so a statement left uncommitted after a
        failure would be committed by the next unrelated write.
        """
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur

    # ── Transactions ────────────────────────────────────────

    def insert_transaction(self, txn: Transaction) -> Transaction:
        self._write(
            "INSERT INTO transactions"
            " (id, user_id, description, amount, type, category_key,"
            "  date, created_at)"
            " VALUES (?,?,?,?,?,?,?,?)",
            (txn.id, txn.user_id, txn.description, txn.amount, txn.type,
             txn.category_key, to_db_timestamp(txn.date), txn.created_at),
        )
        return txn

    def get_transaction(self, txn_id: str) -> Transaction | None:
        row = self.conn.execute(
            "SELECT * FROM transactions WHERE id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions(
        self, user_id: str,
        txn_type: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[Transaction]:
        """List a user's transactions, newest first.

        date_from is inclusive, date_to exclusive. search matches a
        substring of the description.
        """
        sql = "SELECT * FROM transactions WHERE user_id = ?"
        params: list = [user_id]
        if txn_type:
            sql += " AND type = ?"
            params.append(txn_type)
        if date_from:
            sql += " AND date >= ?"
            params.append(to_db_timestamp(date_from))
        if date_to:
            sql += " AND date < ?"
            params.append(to_db_timestamp(date_to))
        if search:
            sql += " AND description LIKE ?"
            params.append(f"%{search}%")
        sql += " ORDER BY date DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def delete_transaction(self, txn_id: str, user_id: str) -> int:
        cur = self._write(
            "DELETE FROM transactions WHERE id = ? AND user_id = ?",
            (txn_id, user_id),
        )
        return cur.rowcount

    # ── Auto transaction rules ──────────────────────────────

    def create_rule(self, rule: AutoTransactionRule) -> AutoTransactionRule:
        validate_rule(rule)
        self._write(
            "INSERT INTO auto_transactions"
            " (id, user_id, type, amount, category_key, description,"
            "  frequency, day_of_month, day_of_week, next_execution_date,"
            "  last_execution_date, is_active, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (rule.id, rule.user_id, rule.type, rule.amount,
             rule.category_key, rule.description, rule.frequency,
             rule.day_of_month, rule.day_of_week,
             to_db_timestamp(rule.next_execution_date),
             to_db_timestamp(rule.last_execution_date)
             if rule.last_execution_date else None,
             int(rule.is_active), rule.created_at, rule.updated_at),
        )
        return rule

    def get_rule(self, rule_id: str) -> AutoTransactionRule | None:
        row = self.conn.execute(
            "SELECT * FROM auto_transactions WHERE id = ?", (rule_id,)
        ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_rules(self, user_id: str) -> list[AutoTransactionRule]:
        rows = self.conn.execute(
            "SELECT * FROM auto_transactions WHERE user_id = ?"
            " ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def update_rule(self, rule: AutoTransactionRule) -> AutoTransactionRule:
        """Persist a user edit. Execution history is left untouched.

        Raises:
            ValueError: If the edited rule is invalid.
            RuleNotFoundError: If no rule with this id belongs to the owner.
        """
        validate_rule(rule)
        rule.updated_at = _now()
        cur = self._write(
            "UPDATE auto_transactions SET"
            "  type = ?, amount = ?, category_key = ?, description = ?,"
            "  frequency = ?, day_of_month = ?, day_of_week = ?,"
            "  next_execution_date = ?, is_active = ?, updated_at = ?"
            " WHERE id = ? AND user_id = ?",
            (rule.type, rule.amount, rule.category_key, rule.description,
             rule.frequency, rule.day_of_month, rule.day_of_week,
             to_db_timestamp(rule.next_execution_date), int(rule.is_active),
             rule.updated_at, rule.id, rule.user_id),
        )
        if cur.rowcount == 0:
            raise RuleNotFoundError(rule.id)
        return rule

    def toggle_rule(self, rule_id: str, user_id: str) -> bool:
        """Flip is_active and return the new value."""
        cur = self._write(
            "UPDATE auto_transactions SET"
            "  is_active = CASE WHEN is_active = 1 THEN 0 ELSE 1 END,"
            "  updated_at = ?"
            " WHERE id = ? AND user_id = ?",
            (_now(), rule_id, user_id),
        )
        if cur.rowcount == 0:
            raise RuleNotFoundError(rule_id)
        row = self.conn.execute(
            "SELECT is_active FROM auto_transactions WHERE id = ?", (rule_id,)
        ).fetchone()
        return bool(row["is_active"])

    def delete_rule(self, rule_id: str, user_id: str) -> None:
        cur = self._write(
            "DELETE FROM auto_transactions WHERE id = ? AND user_id = ?",
            (rule_id, user_id),
        )
        if cur.rowcount == 0:
            raise RuleNotFoundError(rule_id)

    # ── Scheduler operations ────────────────────────────────

    def get_due_rules(self, now: datetime) -> list[AutoTransactionRule]:
        """Active rules with next_execution_date <= now, oldest-due first."""
        rows = self.conn.execute(
            "SELECT * FROM auto_transactions"
            " WHERE is_active = 1 AND next_execution_date <= ?"
            " ORDER BY next_execution_date ASC, rowid ASC",
            (to_db_timestamp(now),),
        ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def record_execution(
        self, rule_id: str, next_execution_date: datetime,
        executed_at: datetime,
    ) -> bool:
        """Advance a rule's execution state after it fired.

        Unconditional on the rule's current state. Returns False if the
        rule no longer exists.
        """
        cur = self._write(
            "UPDATE auto_transactions SET"
            "  last_execution_date = ?,"
            "  next_execution_date = ?,"
            "  updated_at = ?"
            " WHERE id = ?",
            (to_db_timestamp(executed_at), to_db_timestamp(next_execution_date),
             _now(), rule_id),
        )
        return cur.rowcount > 0

    def acquire_lease(
        self, name: str, holder: str, now: datetime, ttl: timedelta,
    ) -> bool:
        """Claim a named lease shared by every process using this database.

        Succeeds when the lease is free, expired, or already held by
        holder. BEGIN IMMEDIATE takes the write lock before the check, so
        two processes cannot both see the lease as free.
        """
        try:
            self.conn.execute("BEGIN IMMEDIATE")
            row = self.conn.execute(
                "SELECT holder, expires_at FROM scheduler_leases WHERE name = ?",
                (name,),
            ).fetchone()
            if (row and row["holder"] != holder
                    and row["expires_at"] > to_db_timestamp(now)):
                self.conn.rollback()
                return False
            self.conn.execute(
                "INSERT OR REPLACE INTO scheduler_leases"
                " (name, holder, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
                (name, holder, to_db_timestamp(now), to_db_timestamp(now + ttl)),
            )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return True

    def release_lease(self, name: str, holder: str) -> bool:
        """Drop a lease, but only if holder still owns it."""
        cur = self._write(
            "DELETE FROM scheduler_leases WHERE name = ? AND holder = ?",
            (name, holder),
        )
        return cur.rowcount > 0

    def get_lease(self, name: str) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM scheduler_leases WHERE name = ?", (name,)
        ).fetchone()
        if row is None:
            return None
        return {
            "name": row["name"],
            "holder": row["holder"],
            "acquired_at": from_db_timestamp(row["acquired_at"]),
            "expires_at": from_db_timestamp(row["expires_at"]),
        }

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], user_id=row["user_id"],
            description=row["description"], amount=row["amount"],
            type=row["type"], category_key=row["category_key"],
            date=from_db_timestamp(row["date"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> AutoTransactionRule:
        return AutoTransactionRule(
            id=row["id"], user_id=row["user_id"], type=row["type"],
            amount=row["amount"], category_key=row["category_key"],
            description=row["description"], frequency=row["frequency"],
            day_of_month=row["day_of_month"],
            day_of_week=row["day_of_week"],
            next_execution_date=from_db_timestamp(row["next_execution_date"]),
            last_execution_date=from_db_timestamp(row["last_execution_date"]),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"], updated_at=row["updated_at"],
        )
