"""Auto-billing scheduler: materialize due recurring rules into transactions.

A single background thread runs one pass at startup, then one pass per
interval until stopped:
  fetch due rules → insert transaction → advance next_execution_date

Delivery is at-least-once. If a transaction is inserted but the rule's
execution state cannot be advanced, the rule stays due and fires again on
the next pass. Per-rule failures are logged and never abort the pass.

Passes never overlap. Within a process a non-blocking lock skips a pass
requested while another runs; across processes sharing the database
(a `run` daemon and a one-off `process`) a lease row in the store does
the same. A holder that dies mid-pass blocks others until its lease
expires.
"""

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Callable

from src.database.models import Transaction, utc_now
from src.scheduler.recurrence import next_execution_date

if TYPE_CHECKING:
    from src.database.repository import Repository

logger = logging.getLogger(__name__)

# Seconds between passes
DEFAULT_INTERVAL = 3600

PASS_LEASE = "auto_billing_pass"
# Must outlast the longest pass
DEFAULT_LEASE_TTL = timedelta(minutes=15)


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class PassResult:
    """Outcome of one processing pass."""
    started_at: datetime
    due_count: int = 0
    executed_count: int = 0
    failed_count: int = 0  # insert failed, rule left untouched
    unadvanced_count: int = 0  # inserted, but execution state not recorded
    transactions: list[Transaction] = field(default_factory=list)
    error: str | None = None  # due-rule query failed


class AutoBillingScheduler:
    """Poll the store for due auto transaction rules and execute them.

    Args:
        repo: Storage used for due-rule lookup, inserts and state updates.
        interval: Seconds between passes.
        run_on_start: Run a pass immediately when started.
        clock: Returns the current UTC time; injectable for tests.
        lease_ttl: How long a pass lease is honored if never released.
    """

    def __init__(
        self,
        repo: Repository,
        interval: float = DEFAULT_INTERVAL,
        run_on_start: bool = True,
        clock: Callable[[], datetime] = utc_now,
        lease_ttl: timedelta = DEFAULT_LEASE_TTL,
    ):
        if interval <= 0:
            raise ValueError(f"Scheduler interval must be positive: {interval}")
        self.repo = repo
        self.interval = interval
        self.run_on_start = run_on_start
        self.clock = clock
        self.lease_ttl = lease_ttl
        self.holder_id = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._state = SchedulerState.IDLE
        self._state_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is SchedulerState.RUNNING

    # ── Lifecycle ─────────────────────────────────────────

    def start(self) -> None:
        """Spawn the background loop and return immediately.

        Raises:
            RuntimeError: If already running or previously stopped.
        """
        with self._state_lock:
            if self._state is not SchedulerState.IDLE:
                raise RuntimeError(
                    f"Cannot start scheduler in state '{self._state.value}'"
                )
            self._state = SchedulerState.RUNNING
            self._thread = threading.Thread(
                target=self._run, name="auto-billing", daemon=True,
            )
            self._thread.start()
        logger.info(
            "Starting auto billing scheduler (interval=%ss)", self.interval,
        )

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for the in-flight pass."""
        with self._state_lock:
            if self._state is SchedulerState.STOPPED:
                return
            self._state = SchedulerState.STOPPED
            self._stop_event.set()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Auto billing pass still running after stop timeout")
        logger.info("Auto billing scheduler stopped")

    def _run(self) -> None:
        if self.run_on_start:
            self._safe_pass()
        # wait() returns True as soon as stop is signalled, False on timeout
        while not self._stop_event.wait(self.interval):
            self._safe_pass()

    def _safe_pass(self) -> None:
        try:
            self.process_due_rules()
        except Exception:
            logger.exception("Auto billing pass crashed")

    # ── Processing ────────────────────────────────────────

    def process_due_rules(self, now: datetime | None = None) -> PassResult | None:
        """Run one pass over all due rules.

        Returns None without doing anything if another pass is already in
        progress, in this process or in another one using the same store.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.warning("Previous auto billing pass still running, skipping")
            return None
        try:
            now = now or self.clock()
            try:
                # Lease expiry always follows the clock, even when now is overridden
                acquired = self.repo.acquire_lease(
                    PASS_LEASE, self.holder_id, self.clock(), self.lease_ttl,
                )
            except Exception as e:
                logger.exception("Error acquiring auto billing lease")
                return PassResult(started_at=now, error=str(e))
            if not acquired:
                logger.warning(
                    "Auto billing pass already running in another process, skipping"
                )
                return None
            try:
                return self._process(now)
            finally:
                self._release_lease()
        finally:
            self._pass_lock.release()

    def _release_lease(self) -> None:
        try:
            self.repo.release_lease(PASS_LEASE, self.holder_id)
        except Exception:
            logger.exception(
                "Error releasing auto billing lease (expires in %s)", self.lease_ttl,
            )

    def _process(self, now: datetime) -> PassResult:
        result = PassResult(started_at=now)
        logger.debug("Checking for due auto transactions at %s", now.isoformat())

        try:
            due_rules = self.repo.get_due_rules(now)
        except Exception as e:
            logger.exception("Error getting due auto transactions")
            result.error = str(e)
            return result

        result.due_count = len(due_rules)
        for rule in due_rules:
            txn = rule.to_transaction(now)
            try:
                self.repo.insert_transaction(txn)
            except Exception:
                logger.exception(
                    "Error executing auto transaction %s for user %s",
                    rule.id, rule.user_id,
                )
                result.failed_count += 1
                continue

            result.executed_count += 1
            result.transactions.append(txn)

            next_date = next_execution_date(rule.next_execution_date, rule.frequency)
            try:
                advanced = self.repo.record_execution(rule.id, next_date, now)
            except Exception:
                logger.exception(
                    "Error updating auto transaction %s execution date"
                    " (transaction %s already recorded)",
                    rule.id, txn.id,
                )
                result.unadvanced_count += 1
                continue

            if not advanced:
                logger.error(
                    "Auto transaction %s disappeared before its execution"
                    " date could be updated (transaction %s already recorded)",
                    rule.id, txn.id,
                )
                result.unadvanced_count += 1
                continue

            logger.info(
                "Executed auto transaction %s for user %s, next run %s",
                rule.id, rule.user_id, next_date.isoformat(),
            )

        if result.due_count:
            logger.info(
                "Processed %d auto transactions (executed=%d, failed=%d, unadvanced=%d)",
                result.due_count, result.executed_count,
                result.failed_count, result.unadvanced_count,
            )
        return result
