"""Shared test fixtures."""

import sqlite3
from pathlib import Path

import pytest

from src.database.repository import Repository

# Test fixture config directory with synthetic data
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"

MIGRATIONS_DIR = Path(__file__).parent.parent / "src" / "database" / "migrations"


class FailingCommitConnection:
    """Wraps a sqlite3 connection so commits after matching statements raise.

    A commit fails when the last executed statement starts with `after`
    (any statement by default), up to `failures` times. The statement has
    already executed, which is how a lock timeout at COMMIT looks to the
    caller.
    """

    def __init__(self, conn: sqlite3.Connection, after: str = "", failures: int = 1):
        self._conn = conn
        self.after = after
        self.failures = failures
        self._last_sql = ""

    def execute(self, sql, *args):
        self._last_sql = sql
        return self._conn.execute(sql, *args)

    def commit(self):
        if self.failures and self._last_sql.startswith(self.after):
            self.failures -= 1
            raise sqlite3.OperationalError("database is locked")
        self._conn.commit()

    def __getattr__(self, name):
        return getattr(self._conn, name)


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def file_db(tmp_path):
    """A migrated on-disk database that several Repository objects can share."""
    path = str(tmp_path / "finance.db")
    r = Repository(path)
    r.apply_migrations(MIGRATIONS_DIR)
    r.close()
    return path
