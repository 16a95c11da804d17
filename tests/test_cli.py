"""Tests for src.cli — CLI argument parsing and command handlers.

Most tests drive main(argv=[...]) against a temporary SQLite file and the
fixture config directory, so commands run end to end. The run command is
tested with a mocked scheduler because it blocks until interrupted.
"""

from __future__ import annotations

import subprocess
import sys
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from src.cli import cmd_process, cmd_run, main
from tests.conftest import FIXTURE_CONFIG_DIR

PROJECT_ROOT = Path(__file__).parent.parent


# ── Helpers ──────────────────────────────────────────────


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point the CLI at a fresh database and the fixture config."""
    db_path = tmp_path / "finance.db"
    monkeypatch.setenv("FINANCE_DB_PATH", str(db_path))
    monkeypatch.setenv("FINANCE_CONFIG_DIR", str(FIXTURE_CONFIG_DIR))
    monkeypatch.delenv("FINANCE_MIGRATIONS_DIR", raising=False)
    monkeypatch.delenv("FINANCE_SCHEDULER_INTERVAL", raising=False)
    return db_path


def _run(argv: list[str]) -> int:
    with patch("src.cli._setup_logging"):
        with pytest.raises(SystemExit) as exc:
            main(argv)
    return exc.value.code


def _make_args(**kwargs):
    import argparse
    return argparse.Namespace(**kwargs)


def _add_rent_rule(start: str = "2024-01-15") -> int:
    return _run([
        "rules", "add", "user-1", "expense", "50", "housing", "monthly",
        "--start", start, "--description", "Rent",
    ])


# ── Argument parsing ─────────────────────────────────────


class TestCliHelp:
    def test_help_lists_subcommands(self):
        result = subprocess.run(
            [sys.executable, "-m", "src.cli", "--help"],
            capture_output=True, text=True, cwd=PROJECT_ROOT,
        )
        assert result.returncode == 0
        assert "MiniMoney personal finance tracker" in result.stdout
        for cmd in ["run", "process", "status", "stats", "transactions", "rules"]:
            assert cmd in result.stdout, f"Subcommand '{cmd}' not in help output"

    def test_no_command_shows_help(self, capsys):
        assert _run([]) == 0
        assert "usage:" in capsys.readouterr().out.lower()

    def test_rules_add_requires_start(self, capsys):
        assert _run([
            "rules", "add", "user-1", "expense", "50", "housing", "monthly",
        ]) == 2

    def test_rejects_unknown_frequency(self):
        assert _run([
            "rules", "add", "user-1", "expense", "50", "housing", "hourly",
            "--start", "2024-01-15",
        ]) == 2

    def test_rejects_bad_date(self):
        assert _run([
            "rules", "add", "user-1", "expense", "50", "housing", "monthly",
            "--start", "next tuesday",
        ]) == 2


class TestMainDispatch:
    def test_main_dispatches_to_handler(self):
        with patch("src.cli._COMMANDS", {"status": MagicMock(return_value=0)}):
            assert _run(["status"]) == 0

    def test_handler_exit_code_propagates(self):
        with patch("src.cli._COMMANDS", {"process": MagicMock(return_value=1)}):
            assert _run(["process"]) == 1


# ── Rules ────────────────────────────────────────────────


class TestRulesCommands:
    def test_add_and_list(self, env, capsys):
        assert _add_rent_rule() == 0
        assert "Added auto transaction rule" in capsys.readouterr().out

        assert _run(["rules", "list", "user-1"]) == 0
        out = capsys.readouterr().out
        assert "monthly" in out
        assert "2024-01-15 00:00" in out
        assert "active" in out
        assert "🏠 housing" in out

    def test_add_unknown_category(self, env, capsys):
        assert _run([
            "rules", "add", "user-1", "expense", "50", "salary", "monthly",
            "--start", "2024-01-15",
        ]) == 1
        assert "unknown expense category" in capsys.readouterr().out

    def test_add_invalid_amount(self, env, capsys):
        assert _run([
            "rules", "add", "user-1", "expense", "0", "housing", "monthly",
            "--start", "2024-01-15",
        ]) == 1
        assert "Amount must be positive" in capsys.readouterr().out

    def test_add_invalid_anchor(self, env, capsys):
        assert _run([
            "rules", "add", "user-1", "expense", "50", "housing", "weekly",
            "--start", "2024-01-15", "--day-of-week", "9",
        ]) == 1
        assert "day_of_week" in capsys.readouterr().out

    def test_anchor_defaults_from_start(self, env):
        from src.database.repository import Repository

        # 2024-01-14 is a Sunday
        assert _add_rent_rule(start="2024-01-14") == 0
        repo = Repository(str(env))
        try:
            rule = repo.get_rules("user-1")[0]
        finally:
            repo.close()
        assert rule.day_of_month == 14
        assert rule.day_of_week == 0

    def test_toggle_and_delete(self, env, capsys):
        from src.database.repository import Repository

        _add_rent_rule()
        repo = Repository(str(env))
        rule_id = repo.get_rules("user-1")[0].id
        repo.close()
        capsys.readouterr()

        assert _run(["rules", "toggle", "user-1", rule_id]) == 0
        assert "paused" in capsys.readouterr().out
        assert _run(["rules", "delete", "user-1", rule_id]) == 0
        assert _run(["rules", "delete", "user-1", rule_id]) == 1
        assert "not found" in capsys.readouterr().out

    def test_toggle_unknown(self, env, capsys):
        assert _run(["rules", "toggle", "user-1", "missing"]) == 1

    def test_list_empty(self, env, capsys):
        assert _run(["rules", "list", "user-1"]) == 0
        assert "No auto transaction rules" in capsys.readouterr().out

    def test_no_subcommand(self, env, capsys):
        assert _run(["rules"]) == 1
        assert "Usage" in capsys.readouterr().out


# ── Transactions ─────────────────────────────────────────


class TestTransactionsCommands:
    def test_add_and_list(self, env, capsys):
        assert _run([
            "transactions", "add", "user-1", "expense", "12.5", "food",
            "--description", "Lunch", "--date", "2024-01-20T12:00:00",
        ]) == 0
        assert _run(["transactions", "list", "user-1"]) == 0
        out = capsys.readouterr().out
        assert "Lunch" in out
        assert "-     12.50" in out
        assert "🍔 food" in out

    def test_add_rejects_wrong_direction_category(self, env, capsys):
        assert _run([
            "transactions", "add", "user-1", "income", "100", "food",
        ]) == 1

    def test_add_rejects_non_positive(self, env, capsys):
        assert _run([
            "transactions", "add", "user-1", "expense", "-3", "food",
        ]) == 1
        assert "positive" in capsys.readouterr().out

    def test_list_filters(self, env, capsys):
        for desc, date in [("Coffee", "2024-01-05"), ("Book", "2024-02-05")]:
            _run([
                "transactions", "add", "user-1", "expense", "5", "food",
                "--description", desc, "--date", date,
            ])
        capsys.readouterr()
        assert _run([
            "transactions", "list", "user-1", "--from", "2024-02-01",
        ]) == 0
        out = capsys.readouterr().out
        assert "Book" in out
        assert "Coffee" not in out

    def test_delete_unknown(self, env, capsys):
        assert _run(["transactions", "delete", "user-1", "missing"]) == 1


# ── Processing, stats, status ────────────────────────────


class TestProcessCommand:
    def test_executes_due_rule_once(self, env, capsys):
        _add_rent_rule(start="2024-01-15")
        capsys.readouterr()

        assert _run(["process"]) == 0
        assert "executed: 1" in capsys.readouterr().out

        # Advanced to 2024-02-15, later months follow on later passes
        _run(["transactions", "list", "user-1"])
        assert capsys.readouterr().out.count("Rent") == 1

    def test_nothing_due(self, env, capsys):
        _add_rent_rule(start="2999-01-01")
        capsys.readouterr()
        assert _run(["process"]) == 0
        assert "Due: 0" in capsys.readouterr().out

    def test_store_unavailable(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("FINANCE_CONFIG_DIR", str(FIXTURE_CONFIG_DIR))
        monkeypatch.setenv("FINANCE_DB_PATH", str(tmp_path / "missing" / "x.db"))
        assert cmd_process(_make_args(command="process")) == 1
        assert "database unavailable" in capsys.readouterr().out

    def test_skips_while_daemon_holds_lease(self, env, capsys):
        from src.database.models import utc_now
        from src.database.repository import Repository
        from src.scheduler.auto_billing import PASS_LEASE

        _add_rent_rule()
        daemon_repo = Repository(str(env))
        try:
            daemon_repo.acquire_lease(
                PASS_LEASE, "daemon", utc_now(), timedelta(minutes=15),
            )
            capsys.readouterr()

            assert _run(["process"]) == 1
            assert "already running" in capsys.readouterr().out
            assert daemon_repo.get_transactions("user-1") == []
        finally:
            daemon_repo.close()


class TestStatsAndStatus:
    def test_stats(self, env, capsys):
        _run([
            "transactions", "add", "user-1", "income", "1000", "salary",
            "--date", "2024-01-01T09:00:00",
        ])
        _run([
            "transactions", "add", "user-1", "expense", "250", "housing",
            "--date", "2024-01-02T09:00:00",
        ])
        capsys.readouterr()
        assert _run(["stats", "user-1", "--year", "2024", "--month", "1"]) == 0
        out = capsys.readouterr().out
        assert "750.00" in out
        assert "housing" in out
        assert "100.0%" in out

    def test_stats_invalid_month(self, env, capsys):
        assert _run(["stats", "user-1", "--year", "2024", "--month", "13"]) == 1

    def test_stats_month_zero_rejected(self, env, capsys):
        assert _run(["stats", "user-1", "--year", "2024", "--month", "0"]) == 1
        assert "Invalid month: 0" in capsys.readouterr().out

    def test_stats_year_zero_rejected(self, env, capsys):
        assert _run(["stats", "user-1", "--year", "0", "--month", "1"]) == 1
        assert "Error:" in capsys.readouterr().out

    def test_status(self, env, capsys):
        _add_rent_rule()
        capsys.readouterr()
        assert _run(["status"]) == 0
        out = capsys.readouterr().out
        assert "Auto rules:          1" in out
        assert "Due now:             1" in out


# ── run (daemon) ─────────────────────────────────────────


class TestRunCommand:
    def test_starts_and_stops_scheduler(self, env, capsys):
        mock_scheduler = MagicMock()
        mock_scheduler.interval = 900
        shutdown = MagicMock()
        shutdown.wait.side_effect = KeyboardInterrupt

        with patch("src.scheduler.auto_billing.AutoBillingScheduler",
                   return_value=mock_scheduler) as sched_cls, \
             patch("src.cli.threading.Event", return_value=shutdown), \
             patch("src.cli.signal.signal"):
            ret = cmd_run(_make_args(command="run"))

        assert ret == 0
        _, kwargs = sched_cls.call_args
        assert kwargs["interval"] == 900
        assert kwargs["run_on_start"] is False
        mock_scheduler.start.assert_called_once()
        mock_scheduler.stop.assert_called_once()
        assert "Stopping scheduler" in capsys.readouterr().out

    def test_interval_env_override(self, env, monkeypatch):
        monkeypatch.setenv("FINANCE_SCHEDULER_INTERVAL", "30")
        mock_scheduler = MagicMock()
        mock_scheduler.interval = 30
        shutdown = MagicMock()
        shutdown.wait.side_effect = KeyboardInterrupt

        with patch("src.scheduler.auto_billing.AutoBillingScheduler",
                   return_value=mock_scheduler) as sched_cls, \
             patch("src.cli.threading.Event", return_value=shutdown), \
             patch("src.cli.signal.signal"):
            cmd_run(_make_args(command="run"))

        assert sched_cls.call_args.kwargs["interval"] == 30.0

    def test_non_numeric_interval_env(self, env, monkeypatch, capsys):
        monkeypatch.setenv("FINANCE_SCHEDULER_INTERVAL", "hourly")
        with patch("src.scheduler.auto_billing.AutoBillingScheduler") as sched_cls:
            assert cmd_run(_make_args(command="run")) == 1
        sched_cls.assert_not_called()
        assert "Error: FINANCE_SCHEDULER_INTERVAL must be a number" in capsys.readouterr().out

    def test_non_positive_interval_env(self, env, monkeypatch, capsys):
        monkeypatch.setenv("FINANCE_SCHEDULER_INTERVAL", "0")
        assert cmd_run(_make_args(command="run")) == 1
        assert "must be positive" in capsys.readouterr().out

    def test_store_unavailable_is_fatal(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FINANCE_CONFIG_DIR", str(FIXTURE_CONFIG_DIR))
        monkeypatch.setenv("FINANCE_DB_PATH", str(tmp_path / "missing" / "x.db"))
        with patch("src.scheduler.auto_billing.AutoBillingScheduler") as sched_cls:
            assert cmd_run(_make_args(command="run")) == 1
        sched_cls.assert_not_called()
