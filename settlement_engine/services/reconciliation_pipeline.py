from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from settlement_engine import models
from settlement_engine.config import ReconciliationConfig
from settlement_engine.schemas.ingest import (
    BankTransactionRow,
    CashConfirmation,
    GatewayRecord,
    decode_ingest_record,
)
from settlement_engine.services.accounting_sync import sync_for_payment
from settlement_engine.services.cash_payments import confirm_cash_payment, create_cash_expectation
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.dedup_index import register_payment
from settlement_engine.services.deal_stage_automation import process_deal_stage
from settlement_engine.services.diagnostics import run_consistency_checks
from settlement_engine.services.errors import (
    DuplicateError,
    ExternalServiceError,
    MatchAmbiguousError,
    ValidationError,
)
from settlement_engine.services.ingest_normalizer import extract_proforma_number, normalize_record
from settlement_engine.services.matching_engine import match_payment
from settlement_engine.services.reconciliation_run_service import (
    build_reconciliation_run_plan,
    ensure_reconciliation_run,
    transition_reconciliation_run_status,
)

logger = logging.getLogger("settlement.pipeline")

SessionFactory = Callable[[], Session]


@dataclass
class RecordResult:
    index: int
    outcome: str  # linked | unmatched | duplicate | flagged | skipped | failed | cancelled
    payment_id: int | None = None
    deal_id: int | None = None
    proforma_ids: tuple[int, ...] = ()
    message: str | None = None
    warnings: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ReconciliationReport:
    inputs_hash: str
    mode: str
    status: str
    run_id: int | None = None
    processed: int = 0
    linked: int = 0
    skipped: int = 0
    flagged: int = 0
    failed: int = 0
    warnings: list[dict[str, Any]] = field(default_factory=list)
    records: list[RecordResult] = field(default_factory=list)

    def add(self, result: RecordResult) -> None:
        self.records.append(result)
        if result.outcome == "cancelled":
            return
        self.processed += 1
        if result.outcome == "linked":
            self.linked += 1
        elif result.outcome in {"duplicate", "skipped"}:
            self.skipped += 1
        elif result.outcome == "flagged":
            self.flagged += 1
        elif result.outcome == "failed":
            self.failed += 1
        self.warnings.extend(result.warnings)

    @classmethod
    def from_run(cls, run: models.ReconciliationRun) -> "ReconciliationReport":
        return cls(
            inputs_hash=run.inputs_hash,
            mode=run.mode,
            status=run.status,
            run_id=run.id,
            processed=run.processed,
            linked=run.linked,
            skipped=run.skipped,
            flagged=run.flagged,
            failed=run.failed,
            warnings=list(run.warnings or []),
        )


def _deal_key(record) -> int | None:
    if isinstance(record, GatewayRecord):
        obj = record.event.data.object
        return obj.metadata.deal_id
    if isinstance(record, CashConfirmation):
        return record.deal_id
    return None


def _mark_partial_failure(db: Session, payment: models.Payment | None, exc: Exception) -> None:
    if payment is None:
        return
    if payment.review_status == models.ReviewStatus.none:
        payment.review_status = models.ReviewStatus.partial_failure
    payment.last_error = str(exc)
    db.flush()


def _process_cash(db: Session, record: CashConfirmation, payment: models.Payment, *, collaborators, config):
    cash_id = record.cash_payment_id
    if cash_id is None:
        cash = create_cash_expectation(
            db,
            deal_id=record.deal_id,
            proforma_id=record.proforma_id,
            expected_amount=payment.amount,
            currency=payment.currency,
            actor=record.confirmed_by,
            source="ingest",
        )
        cash_id = cash.id
    return confirm_cash_payment(
        db,
        cash_id,
        amount=payment.amount,
        currency=payment.currency,
        confirmed_by=record.confirmed_by,
        confirmed_at=record.confirmed_at,
        confirmation_id=record.confirmation_id,
        payment=payment,
        fx=collaborators.fx,
        config=config,
        source="ingest",
    )


def _default_currency(db: Session, record) -> str | None:
    """Currency of the proforma or deal a record points to, for records that carry none."""
    number = None
    deal_id = None
    proforma = None
    if isinstance(record, BankTransactionRow):
        if record.currency or record.currency_hint:
            return None
        number = extract_proforma_number(record.description)
    elif isinstance(record, GatewayRecord):
        obj = record.event.data.object
        if obj.currency or record.currency_hint:
            return None
        number = extract_proforma_number(obj.metadata.proforma_fullnumber)
        deal_id = obj.metadata.deal_id
    elif isinstance(record, CashConfirmation):
        if record.currency or record.currency_hint:
            return None
        if record.proforma_id is not None:
            proforma = db.get(models.Proforma, int(record.proforma_id))
        deal_id = record.deal_id
    else:
        return None

    if proforma is None and number:
        proforma = db.query(models.Proforma).filter(models.Proforma.fullnumber == number).first()
    if proforma is not None:
        return proforma.currency
    if deal_id is None:
        return None

    deal = db.get(models.Deal, int(deal_id))
    if deal is not None and deal.currency:
        return deal.currency
    currencies = {
        c
        for (c,) in db.query(models.Proforma.currency)
        .filter(models.Proforma.deal_id == int(deal_id))
        .filter(models.Proforma.status == models.ProformaStatus.active)
        .all()
    }
    return currencies.pop() if len(currencies) == 1 else None


def _rematch_merged(db: Session, existing: models.Payment, *, config: ReconciliationConfig) -> tuple[int, ...]:
    # The final version may carry the proforma number the transient one lacked.
    if existing.effective_proforma_id is not None:
        return ()
    try:
        match = match_payment(db, existing, config=config)
    except MatchAmbiguousError as exc:
        logger.info(
            "payment_match_ambiguous",
            extra={"payment_id": existing.id, "candidates": exc.candidate_ids},
        )
        return ()
    return match.affected_proforma_ids


def process_record(
    db: Session,
    index: int,
    record,
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
) -> RecordResult:
    """normalize -> dedup -> match -> aggregate -> schedule -> stage for one record.

    In apply mode the record's local work is committed before the stage step
    calls the CRM (see process_deal_stage); the caller commits the rest.
    """
    hint = _default_currency(db, record)
    if hint is not None:
        record = record.model_copy(update={"currency_hint": hint})
    try:
        payment = normalize_record(record, config=config, fx=collaborators.fx)
    except ValidationError as exc:
        logger.warning("record_skipped_invalid", extra={"index": index, "error": str(exc)})
        return RecordResult(index, "skipped", message=str(exc))
    if payment is None:
        return RecordResult(index, "skipped", message="no_money_movement")

    outcome = "unmatched"
    proforma_ids: tuple[int, ...] = ()
    try:
        dedup = register_payment(db, payment, config=config)
    except DuplicateError as exc:
        existing = db.get(models.Payment, exc.existing_payment_id)
        if exc.merged and existing is not None:
            proforma_ids = _rematch_merged(db, existing, config=config)
        deal_id = existing.linked_deal_id if existing is not None else None
        result = RecordResult(
            index,
            "duplicate",
            payment_id=exc.existing_payment_id,
            deal_id=deal_id,
            proforma_ids=proforma_ids,
            message=str(exc),
        )
        # Re-evaluate the stage so a run resumed after a CRM failure retries it.
        if deal_id is not None:
            try:
                stage = process_deal_stage(db, deal_id, collaborators=collaborators, config=config)
            except ExternalServiceError as stage_exc:
                result.outcome = "failed"
                result.message = str(stage_exc)
            else:
                if stage is not None:
                    result.warnings.extend(w.as_dict() for w in stage.warnings)
        return result

    if dedup.outcome == "review":
        return RecordResult(
            index,
            "flagged",
            payment_id=payment.id,
            deal_id=payment.linked_deal_id,
            message=f"probable duplicate of {dedup.duplicate_of_id}",
        )

    if isinstance(record, CashConfirmation):
        cash = _process_cash(db, record, payment, collaborators=collaborators, config=config)
        outcome = "linked" if cash.proforma_id is not None else "unmatched"
        proforma_ids = (cash.proforma_id,) if cash.proforma_id is not None else ()
    else:
        try:
            sync_for_payment(db, payment, collaborators=collaborators, config=config)
        except (ExternalServiceError, ValidationError) as exc:
            logger.warning(
                "accounting_sync_failed", extra={"payment_id": payment.id, "error": str(exc)}
            )
        try:
            match = match_payment(db, payment, config=config)
        except MatchAmbiguousError as exc:
            logger.info(
                "payment_match_ambiguous",
                extra={"payment_id": payment.id, "candidates": exc.candidate_ids},
            )
            return RecordResult(
                index, "flagged", payment_id=payment.id, deal_id=payment.linked_deal_id, message=str(exc)
            )
        if match.status == "linked":
            outcome = "linked"
        proforma_ids = match.affected_proforma_ids

    result = RecordResult(
        index, outcome, payment_id=payment.id, deal_id=payment.linked_deal_id, proforma_ids=proforma_ids
    )

    if payment.linked_deal_id is not None:
        try:
            stage = process_deal_stage(
                db, payment.linked_deal_id, collaborators=collaborators, config=config
            )
        except ExternalServiceError as exc:
            _mark_partial_failure(db, payment, exc)
            result.outcome = "failed"
            result.message = str(exc)
        else:
            if stage is not None:
                result.warnings.extend(w.as_dict() for w in stage.warnings)

    return result


def _process_group(
    session_factory: SessionFactory,
    items: Sequence[tuple[int, Any]],
    *,
    collaborators: Collaborators,
    config: ReconciliationConfig,
    cancel_event: threading.Event | None,
    db: Session | None = None,
) -> list[RecordResult]:
    own_session = db is None
    db = db or session_factory()
    results: list[RecordResult] = []
    try:
        for index, record in items:
            if cancel_event is not None and cancel_event.is_set():
                results.append(RecordResult(index, "cancelled"))
                continue
            if isinstance(record, RecordResult):
                results.append(record)
                continue
            try:
                result = process_record(db, index, record, collaborators=collaborators, config=config)
                if not config.dry_run:
                    db.commit()
            except Exception as exc:
                # In dry-run this also drops the simulated state of earlier records.
                db.rollback()
                logger.exception("record_failed", extra={"index": index, "error": str(exc)})
                result = RecordResult(index, "failed", message=str(exc))
            results.append(result)
    finally:
        if own_session:
            db.close()
    return results


def execute_reconciliation_run(
    session_factory: SessionFactory,
    records: Sequence[dict[str, Any]],
    collaborators: Collaborators,
    config: ReconciliationConfig,
    *,
    source: str = "api",
    cancel_event: threading.Event | None = None,
) -> ReconciliationReport:
    """Reconcile one batch of raw records.

    Apply mode persists a ReconciliationRun keyed by the batch hash: a finished
    run is returned unchanged, a failed or cancelled one resumes (records already
    stored are recognised as duplicates). Each record commits on its own.

    Dry-run mode computes the same report inside one transaction that is rolled
    back; no CRM update or notification is sent.
    """
    plan = build_reconciliation_run_plan(records=records, source=source, mode=config.mode)
    report = ReconciliationReport(inputs_hash=plan.inputs_hash, mode=config.mode, status="running")

    if not config.dry_run:
        with session_factory() as db:
            run = ensure_reconciliation_run(db, plan)
            if run.status == "done":
                db.commit()
                logger.info("reconciliation_run_already_done", extra={"run_id": run.id})
                return ReconciliationReport.from_run(run)
            transition_reconciliation_run_status(db, run=run, new_status="running", allow_resume=True)
            db.commit()
            report.run_id = run.id

    decoded: list[tuple[int, Any]] = []
    for index, raw in enumerate(records):
        try:
            decoded.append((index, decode_ingest_record(raw)))
        except ValidationError as exc:
            logger.warning("record_skipped_undecodable", extra={"index": index, "error": str(exc)})
            decoded.append((index, RecordResult(index, "skipped", message=str(exc))))

    groups: dict[int | None, list[tuple[int, Any]]] = {}
    for index, record in decoded:
        key = None if isinstance(record, RecordResult) else _deal_key(record)
        groups.setdefault(key, []).append((index, record))

    logger.info(
        "reconciliation_run_started",
        extra={
            "run_id": report.run_id,
            "mode": config.mode,
            "records": len(records),
            "groups": len(groups),
        },
    )

    results: list[RecordResult] = []
    dry_db: Session | None = None
    try:
        if config.dry_run:
            dry_db = session_factory()
            for items in groups.values():
                results.extend(
                    _process_group(
                        session_factory,
                        items,
                        collaborators=collaborators,
                        config=config,
                        cancel_event=cancel_event,
                        db=dry_db,
                    )
                )
        elif config.max_workers > 1 and len(groups) > 1:
            with ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="reconcile") as pool:
                futures = [
                    pool.submit(
                        _process_group,
                        session_factory,
                        items,
                        collaborators=collaborators,
                        config=config,
                        cancel_event=cancel_event,
                    )
                    for items in groups.values()
                ]
                for f in futures:
                    results.extend(f.result())
        else:
            for items in groups.values():
                results.extend(
                    _process_group(
                        session_factory,
                        items,
                        collaborators=collaborators,
                        config=config,
                        cancel_event=cancel_event,
                    )
                )

        for result in sorted(results, key=lambda r: r.index):
            report.add(result)

        touched_deals = {r.deal_id for r in results if r.deal_id is not None}
        touched_proformas = {pid for r in results for pid in r.proforma_ids}
        check_db = dry_db or session_factory()
        try:
            warnings = run_consistency_checks(
                check_db, deal_ids=touched_deals, proforma_ids=touched_proformas, config=config
            )
        finally:
            if dry_db is None:
                check_db.close()
        report.warnings.extend(w.as_dict() for w in warnings)
    finally:
        if dry_db is not None:
            dry_db.rollback()
            dry_db.close()

    cancelled = any(r.outcome == "cancelled" for r in results)
    if cancelled:
        report.status = "cancelled"
    elif report.failed:
        report.status = "failed"
    else:
        report.status = "done"

    if not config.dry_run:
        with session_factory() as db:
            run = db.get(models.ReconciliationRun, report.run_id)
            run.processed = report.processed
            run.linked = report.linked
            run.skipped = report.skipped
            run.flagged = report.flagged
            run.failed = report.failed
            run.warnings = report.warnings
            transition_reconciliation_run_status(
                db,
                run=run,
                new_status=report.status,
                error_code="PARTIAL_FAILURE" if report.status == "failed" else None,
                error_message=(
                    f"{report.failed} record(s) failed; resubmit the batch to retry"
                    if report.status == "failed"
                    else None
                ),
            )
            db.commit()

    logger.info(
        "reconciliation_run_finished",
        extra={
            "run_id": report.run_id,
            "mode": report.mode,
            "status": report.status,
            "processed": report.processed,
            "linked": report.linked,
            "skipped": report.skipped,
            "flagged": report.flagged,
            "failed": report.failed,
            "warnings": len(report.warnings),
        },
    )
    return report


def collect_records(collaborators: Collaborators) -> list[dict[str, Any]]:
    """Pull pending bank rows and gateway events into one batch of raw records."""
    records: list[dict[str, Any]] = []
    if collaborators.bank is not None:
        for row in collaborators.bank.fetch_rows():
            records.append({"kind": "bank", **dict(row)})
    if collaborators.gateway is not None:
        for event in collaborators.gateway.fetch_events():
            records.append({"kind": "gateway", "event": dict(event)})
    return records


def retry_pending_stage_work(
    session_factory: SessionFactory,
    collaborators: Collaborators,
    config: ReconciliationConfig,
    *,
    deal_ids: Iterable[int] | None = None,
) -> dict[str, list[int]]:
    """Retry failed CRM stage updates and notifications that were never sent."""
    out: dict[str, list[int]] = {"retried": [], "failed": []}
    with session_factory() as db:
        query = db.query(models.DealStageTransition.deal_id).filter(
            (models.DealStageTransition.status == models.TransitionStatus.failed)
            | (models.DealStageTransition.status == models.TransitionStatus.pending)
            | (
                (models.DealStageTransition.status == models.TransitionStatus.applied)
                & (models.DealStageTransition.notified_at.is_(None))
            )
        )
        if deal_ids is not None:
            query = query.filter(models.DealStageTransition.deal_id.in_(list(deal_ids)))
        pending = sorted({int(d) for (d,) in query.all()})

        for deal_id in pending:
            try:
                process_deal_stage(db, deal_id, collaborators=collaborators, config=config)
                if config.dry_run:
                    db.rollback()
                else:
                    db.commit()
                out["retried"].append(deal_id)
            except ExternalServiceError as exc:
                if not config.dry_run:
                    db.commit()
                else:
                    db.rollback()
                logger.warning("stage_retry_failed", extra={"deal_id": deal_id, "error": str(exc)})
                out["failed"].append(deal_id)
    return out
