"""CLI entry point for MiniMoney.

Commands:
    minimoney run                         Start the auto billing scheduler daemon
    minimoney process                     Run one auto billing pass now
    minimoney status                      Transaction/rule counts, due rules
    minimoney stats USER [--year --month] Monthly summary and category breakdown
    minimoney transactions list USER      List a user's transactions
    minimoney transactions add USER TYPE AMOUNT CATEGORY
    minimoney transactions delete USER ID
    minimoney rules list USER             List a user's auto transaction rules
    minimoney rules add USER TYPE AMOUNT CATEGORY FREQUENCY --start ISO
    minimoney rules toggle USER ID        Activate/deactivate a rule
    minimoney rules delete USER ID        Delete a rule
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sqlite3
import sys
import threading
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on FINANCE_LOG_LEVEL env var."""
    level = os.environ.get("FINANCE_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from src.config import Config

    config_dir = os.environ.get("FINANCE_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo(config=None):
    """Create a Repository connected to the configured database."""
    from src.config import DEFAULT_DB_PATH
    from src.database.repository import Repository

    default = config.database_path if config is not None else DEFAULT_DB_PATH
    db_path = os.environ.get("FINANCE_DB_PATH", default)
    return Repository(db_path=db_path)


def _get_migrations_dir() -> Path:
    """Get the migrations directory path."""
    from src.database.repository import MIGRATIONS_DIR

    return Path(os.environ.get("FINANCE_MIGRATIONS_DIR", MIGRATIONS_DIR))


def _get_scheduler_interval(config) -> float:
    """Scheduler interval in seconds: env override, then settings.yaml."""
    value = os.environ.get("FINANCE_SCHEDULER_INTERVAL")
    if value:
        try:
            interval = float(value)
        except ValueError:
            raise ValueError(
                f"FINANCE_SCHEDULER_INTERVAL must be a number: {value!r}"
            ) from None
        if interval <= 0:
            raise ValueError(f"FINANCE_SCHEDULER_INTERVAL must be positive: {value}")
        return interval
    return config.scheduler_interval


def _open_repo(config=None):
    """Open the store and bring its schema up to date.

    Returns None if storage is unavailable; callers must not continue.
    """
    repo = _get_repo(config)
    try:
        repo.apply_migrations(_get_migrations_dir())
    except (sqlite3.Error, OSError) as e:
        logger.error("Cannot open database %s: %s", repo.db_path, e)
        print(f"Error: database unavailable: {e}")
        repo.close()
        return None
    return repo


def _parse_datetime(value: str) -> datetime:
    """argparse type: ISO date or datetime, naive values taken as UTC."""
    from src.database.models import as_utc

    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid ISO date/time: {value}")


def _fmt(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "never"


# ── Command handlers ─────────────────────────────────────


def cmd_run(args: argparse.Namespace) -> int:
    """Start the auto billing scheduler and block until interrupted."""
    from src.scheduler.auto_billing import AutoBillingScheduler

    config = _get_config()
    try:
        interval = _get_scheduler_interval(config)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    repo = _open_repo(config)
    if repo is None:
        return 1

    scheduler = AutoBillingScheduler(
        repo,
        interval=interval,
        run_on_start=config.scheduler_run_on_start,
    )

    shutdown = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: shutdown.set())

    print(f"Auto billing every {scheduler.interval:g}s... (Ctrl+C to stop)")
    scheduler.start()

    try:
        while not shutdown.wait(1):
            pass
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
    finally:
        scheduler.stop()
        repo.close()

    return 0


def cmd_process(args: argparse.Namespace) -> int:
    """Run a single auto billing pass in the foreground."""
    from src.scheduler.auto_billing import AutoBillingScheduler

    repo = _open_repo(_get_config())
    if repo is None:
        return 1

    try:
        result = AutoBillingScheduler(repo).process_due_rules()
    finally:
        repo.close()

    if result is None:
        print("Another auto billing pass is already running.")
        return 1
    if result.error:
        print(f"Error: auto billing pass failed: {result.error}")
        return 1

    print(
        f"Due: {result.due_count}, executed: {result.executed_count},"
        f" failed: {result.failed_count}, not advanced: {result.unadvanced_count}"
    )
    return 1 if result.failed_count or result.unadvanced_count else 0


def cmd_status(args: argparse.Namespace) -> int:
    """Display system status counts."""
    from src.database.models import utc_now
    from src.database.queries import get_status_counts

    repo = _open_repo(_get_config())
    if repo is None:
        return 1
    counts = get_status_counts(repo.conn, utc_now())

    print("MiniMoney Status")
    print("=" * 40)
    print(f"  Total transactions:  {counts['total_txns']:,}")
    print(f"  Auto rules:          {counts['total_rules']:,}")
    print(f"  Active rules:        {counts['active_rules']:,}")
    print(f"  Due now:             {counts['due_rules']:,}")
    print(f"  Last auto billing:   {counts['last_execution'] or 'never'}")

    repo.close()
    return 0


def cmd_stats(args: argparse.Namespace) -> int:
    """Monthly income/expense summary with category breakdown."""
    from src.database.models import utc_now
    from src.database.queries import get_monthly_statistics

    now = utc_now()
    year = args.year if args.year is not None else now.year
    month = args.month if args.month is not None else now.month

    repo = _open_repo(_get_config())
    if repo is None:
        return 1
    try:
        stats = get_monthly_statistics(repo.conn, args.user, year, month)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    finally:
        repo.close()

    summary = stats["summary"]
    print(f"Statistics for {args.user}, {year}-{month:02d}")
    print("=" * 40)
    print(f"  Income:   {summary['total_income']:>12.2f}")
    print(f"  Expense:  {summary['total_expense']:>12.2f}")
    print(f"  Balance:  {summary['balance']:>12.2f}")
    for label, key in (("Expense", "expense_breakdown"), ("Income", "income_breakdown")):
        if not stats[key]:
            continue
        print(f"\n{label} by category:")
        for item in stats[key]:
            print(
                f"  {item['category_key']:<16} {item['amount']:>12.2f}"
                f"  {item['percentage']:5.1f}%"
            )
    return 0


def cmd_transactions(args: argparse.Namespace) -> int:
    """Dispatch transactions subcommands."""
    sub = getattr(args, "transactions_command", None)
    if sub is None:
        print("Usage: minimoney transactions {list,add,delete}")
        return 1

    config = _get_config()
    repo = _open_repo(config)
    if repo is None:
        return 1
    try:
        if sub == "list":
            return _cmd_transactions_list(repo, config, args)
        if sub == "add":
            return _cmd_transactions_add(repo, config, args)
        if sub == "delete":
            return _cmd_transactions_delete(repo, args)
        print(f"Unknown transactions command: {sub}")
        return 1
    finally:
        repo.close()


def _category_label(config, txn_type: str, key: str) -> str:
    icon = config.category_icon(txn_type, key)
    return f"{icon} {key}" if icon else key


def _cmd_transactions_list(repo, config, args: argparse.Namespace) -> int:
    txns = repo.get_transactions(
        args.user, txn_type=args.type, date_from=args.date_from,
        date_to=args.date_to, search=args.search, limit=args.limit,
    )
    if not txns:
        print("No transactions found.")
        return 0
    print(f"Transactions for {args.user} ({len(txns)}):")
    print("-" * 80)
    for t in txns:
        sign = "+" if t.type == "income" else "-"
        print(
            f"  {_fmt(t.date)}  {sign}{t.amount:>10.2f}"
            f"  {_category_label(config, t.type, t.category_key):<16}"
            f"  {t.description[:30]:<30}  {t.id[:8]}"
        )
    return 0


def _cmd_transactions_add(repo, config, args: argparse.Namespace) -> int:
    from src.database.models import Transaction, utc_now

    if args.amount <= 0:
        print("Error: amount must be positive")
        return 1
    if not config.is_known_category(args.type, args.category):
        print(f"Error: unknown {args.type} category '{args.category}'")
        return 1

    txn = repo.insert_transaction(Transaction(
        user_id=args.user, type=args.type, amount=args.amount,
        category_key=args.category, description=args.description or "",
        date=args.date or utc_now(),
    ))
    print(f"Added transaction {txn.id}")
    return 0


def _cmd_transactions_delete(repo, args: argparse.Namespace) -> int:
    if repo.delete_transaction(args.id, args.user) == 0:
        print(f"Error: transaction '{args.id}' not found")
        return 1
    print(f"Deleted transaction {args.id}")
    return 0


def cmd_rules(args: argparse.Namespace) -> int:
    """Dispatch auto transaction rule subcommands."""
    sub = getattr(args, "rules_command", None)
    if sub is None:
        print("Usage: minimoney rules {list,add,toggle,delete}")
        return 1

    config = _get_config()
    repo = _open_repo(config)
    if repo is None:
        return 1
    try:
        if sub == "list":
            return _cmd_rules_list(repo, config, args)
        if sub == "add":
            return _cmd_rules_add(repo, config, args)
        if sub == "toggle":
            return _cmd_rules_toggle(repo, args)
        if sub == "delete":
            return _cmd_rules_delete(repo, args)
        print(f"Unknown rules command: {sub}")
        return 1
    finally:
        repo.close()


def _cmd_rules_list(repo, config, args: argparse.Namespace) -> int:
    rules = repo.get_rules(args.user)
    if not rules:
        print("No auto transaction rules.")
        return 0
    print(f"Auto transaction rules for {args.user} ({len(rules)}):")
    print("-" * 80)
    for r in rules:
        state = "active" if r.is_active else "paused"
        print(
            f"  {r.id[:8]}  {r.type:<7} {r.amount:>10.2f}"
            f"  {_category_label(config, r.type, r.category_key):<16}"
            f"  {r.frequency:<8} next {_fmt(r.next_execution_date)}"
            f"  last {_fmt(r.last_execution_date)}  {state}"
        )
    return 0


def _cmd_rules_add(repo, config, args: argparse.Namespace) -> int:
    from src.database.models import AutoTransactionRule

    if not config.is_known_category(args.type, args.category):
        print(f"Error: unknown {args.type} category '{args.category}'")
        return 1

    start = args.start
    rule = AutoTransactionRule(
        user_id=args.user, type=args.type, amount=args.amount,
        category_key=args.category, frequency=args.frequency,
        description=args.description or "",
        day_of_month=args.day_of_month or start.day,
        # 0 = Sunday
        day_of_week=(args.day_of_week if args.day_of_week is not None
                     else start.isoweekday() % 7),
        next_execution_date=start,
    )
    try:
        repo.create_rule(rule)
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    print(f"Added auto transaction rule {rule.id} (first run {_fmt(start)})")
    return 0


def _cmd_rules_toggle(repo, args: argparse.Namespace) -> int:
    from src.database.repository import RuleNotFoundError

    try:
        active = repo.toggle_rule(args.id, args.user)
    except RuleNotFoundError as e:
        print(f"Error: {e}")
        return 1
    print(f"Rule {args.id} is now {'active' if active else 'paused'}")
    return 0


def _cmd_rules_delete(repo, args: argparse.Namespace) -> int:
    from src.database.repository import RuleNotFoundError

    try:
        repo.delete_rule(args.id, args.user)
    except RuleNotFoundError as e:
        print(f"Error: {e}")
        return 1
    print(f"Deleted rule {args.id}")
    return 0


_COMMANDS = {
    "run": cmd_run,
    "process": cmd_process,
    "status": cmd_status,
    "stats": cmd_stats,
    "transactions": cmd_transactions,
    "rules": cmd_rules,
}


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="minimoney",
        description="MiniMoney personal finance tracker",
    )
    subparsers = parser.add_subparsers(dest="command")

    # run
    subparsers.add_parser("run", help="Start the auto billing scheduler daemon")

    # process
    subparsers.add_parser("process", help="Run one auto billing pass now")

    # status
    subparsers.add_parser("status", help="Show transaction and rule counts")

    # stats
    stats_p = subparsers.add_parser("stats", help="Monthly statistics for a user")
    stats_p.add_argument("user", help="User ID")
    stats_p.add_argument("--year", type=int, help="Year (default: current)")
    stats_p.add_argument("--month", type=int, help="Month 1-12 (default: current)")

    # transactions
    txn_p = subparsers.add_parser("transactions", help="List or record transactions")
    txn_sub = txn_p.add_subparsers(dest="transactions_command")
    txn_list_p = txn_sub.add_parser("list", help="List a user's transactions")
    txn_list_p.add_argument("user", help="User ID")
    txn_list_p.add_argument("--type", choices=["income", "expense"])
    txn_list_p.add_argument("--from", dest="date_from", type=_parse_datetime,
                            help="Start date, inclusive (ISO)")
    txn_list_p.add_argument("--to", dest="date_to", type=_parse_datetime,
                            help="End date, exclusive (ISO)")
    txn_list_p.add_argument("--search", help="Description substring")
    txn_list_p.add_argument("--limit", type=int, help="Maximum rows")
    txn_add_p = txn_sub.add_parser("add", help="Record a transaction")
    txn_add_p.add_argument("user", help="User ID")
    txn_add_p.add_argument("type", choices=["income", "expense"])
    txn_add_p.add_argument("amount", type=float)
    txn_add_p.add_argument("category", help="Category key")
    txn_add_p.add_argument("--description", help="Free-text description")
    txn_add_p.add_argument("--date", type=_parse_datetime, help="Timestamp (default: now)")
    txn_del_p = txn_sub.add_parser("delete", help="Delete a transaction")
    txn_del_p.add_argument("user", help="User ID")
    txn_del_p.add_argument("id", help="Transaction ID")

    # rules
    rules_p = subparsers.add_parser("rules", help="Manage auto transaction rules")
    rules_sub = rules_p.add_subparsers(dest="rules_command")
    rules_list_p = rules_sub.add_parser("list", help="List a user's rules")
    rules_list_p.add_argument("user", help="User ID")
    rules_add_p = rules_sub.add_parser("add", help="Add a recurring rule")
    rules_add_p.add_argument("user", help="User ID")
    rules_add_p.add_argument("type", choices=["income", "expense"])
    rules_add_p.add_argument("amount", type=float)
    rules_add_p.add_argument("category", help="Category key")
    rules_add_p.add_argument("frequency", choices=["daily", "weekly", "monthly", "yearly"])
    rules_add_p.add_argument("--start", type=_parse_datetime, required=True,
                             help="First execution date (ISO)")
    rules_add_p.add_argument("--description", help="Free-text description")
    rules_add_p.add_argument("--day-of-month", type=int, help="Anchor day 1-31")
    rules_add_p.add_argument("--day-of-week", type=int, help="Anchor weekday 0-6 (0 = Sunday)")
    rules_toggle_p = rules_sub.add_parser("toggle", help="Activate or pause a rule")
    rules_toggle_p.add_argument("user", help="User ID")
    rules_toggle_p.add_argument("id", help="Rule ID")
    rules_delete_p = rules_sub.add_parser("delete", help="Delete a rule")
    rules_delete_p.add_argument("user", help="User ID")
    rules_delete_p.add_argument("id", help="Rule ID")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
