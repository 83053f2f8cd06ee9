from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import SQLAlchemyError

from settlement_engine.config import ReconciliationConfig, settings
from settlement_engine.database import SessionLocal
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.entity_locks import try_pg_advisory_lock, unlock_pg_advisory_lock
from settlement_engine.services.reconciliation_pipeline import (
    ReconciliationReport,
    collect_records,
    execute_reconciliation_run,
    retry_pending_stage_work,
)
from settlement_engine.services.reminders import ReminderReport, send_due_second_payment_reminders

logger = logging.getLogger("settlement.scheduler")

RECONCILIATION_LOCK_KEY = 913101  # stable key for the scheduled reconciliation cycle


@dataclass(frozen=True)
class CycleResult:
    report: ReconciliationReport | None
    retried_deals: list[int]
    reminders: ReminderReport | None
    skipped_locked: bool = False


def run_reconciliation_cycle(
    collaborators: Collaborators,
    config: ReconciliationConfig,
    *,
    session_factory=SessionLocal,
    today=None,
    cancel_event: threading.Event | None = None,
) -> CycleResult:
    """One scheduled pass: pull new bank/gateway records, reconcile them,
    retry stage work left over from earlier failures, then send due reminders.
    """
    lock_db = session_factory()
    try:
        got_lock = try_pg_advisory_lock(lock_db, RECONCILIATION_LOCK_KEY)
    except SQLAlchemyError as exc:
        # If the lock query fails, don't block the job forever; just proceed.
        logger.warning("reconciliation_lock_unavailable", extra={"error": str(exc)})
        got_lock = True
    if not got_lock:
        logger.info("reconciliation_cycle_skipped_locked")
        lock_db.close()
        return CycleResult(report=None, retried_deals=[], reminders=None, skipped_locked=True)

    try:
        report = None
        records = collect_records(collaborators)
        if records:
            report = execute_reconciliation_run(
                session_factory,
                records,
                collaborators,
                config,
                source="scheduler",
                cancel_event=cancel_event,
            )

        retried = retry_pending_stage_work(session_factory, collaborators, config)

        reminders = None
        with session_factory() as db:
            reminders = send_due_second_payment_reminders(
                db,
                collaborators.notifier,
                today or datetime.now(timezone.utc).date(),
                config=config,
            )

        return CycleResult(report=report, retried_deals=retried["retried"], reminders=reminders)
    finally:
        unlock_pg_advisory_lock(lock_db, RECONCILIATION_LOCK_KEY)
        lock_db.close()


class IntervalJobRunner:
    """
    Minimal dependency-free interval scheduler.
    NOTE: In multi-worker setups, each worker will start this thread.
    We mitigate duplicates via a Postgres advisory lock.
    """

    def __init__(self, interval_minutes: int | None = None) -> None:
        self.interval_minutes = int(interval_minutes or settings.reconciliation_interval_minutes)
        self.collaborators = Collaborators()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def configure(self, collaborators: Collaborators) -> None:
        self.collaborators = collaborators

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="reconciliation-runner", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop.is_set():
            now = datetime.now(timezone.utc)
            next_run = now + timedelta(minutes=self.interval_minutes)
            logger.info(
                "scheduler_wait",
                extra={"next_run_utc": next_run.isoformat(), "wait_seconds": self.interval_minutes * 60},
            )
            if self._stop.wait(self.interval_minutes * 60):
                break

            try:
                result = run_reconciliation_cycle(
                    self.collaborators,
                    ReconciliationConfig.from_settings(settings),
                    cancel_event=self._stop,
                )
                logger.info(
                    "reconciliation_cycle_ok",
                    extra={
                        "status": result.report.status if result.report else None,
                        "retried_deals": len(result.retried_deals),
                        "reminders_sent": len(result.reminders.sent) if result.reminders else 0,
                        "skipped_locked": result.skipped_locked,
                    },
                )
            except Exception as exc:
                logger.exception("reconciliation_cycle_failed", extra={"error": str(exc)})


# Singleton runner for FastAPI lifecycle
runner = IntervalJobRunner()
