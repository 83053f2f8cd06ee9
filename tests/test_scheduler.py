from __future__ import annotations

from datetime import date, timedelta

from settlement_engine import models
from settlement_engine.database import SessionLocal
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.payment_schedule import ensure_schedule_state
from settlement_engine.services.reconciliation_pipeline import execute_reconciliation_run
from settlement_engine.services.scheduler import run_reconciliation_cycle


def test_cycle_reconciles_collected_bank_and_gateway_records(db_session, config, crm, notifier, factory):
    factory.make_deal(db_session, close_in_days=10)
    factory.make_deal(db_session, 200, close_in_days=10)
    factory.make_proforma(db_session)
    factory.make_proforma(
        db_session, "CO-PROF 13/2025", deal_id=200, buyer_name="Ola Nowak", buyer_normalized_name="ola nowak"
    )
    db_session.commit()
    collaborators = Collaborators(
        crm=crm,
        notifier=notifier,
        bank=factory.FakeBank([factory.bank_row()]),
        gateway=factory.FakeGateway([factory.checkout_completed(deal_id=200)]),
    )

    result = run_reconciliation_cycle(collaborators, config)

    assert result.skipped_locked is False
    assert result.report.status == "done"
    assert result.report.linked == 2
    assert sorted(crm.stage_updates) == [(100, 27), (200, 27)]
    db_session.expire_all()
    assert db_session.query(models.ReconciliationRun).one().source == "scheduler"

    # Sources were drained; the next cycle has nothing to reconcile.
    assert run_reconciliation_cycle(collaborators, config).report is None


def test_cycle_retries_stage_updates_left_failed(db_session, config, notifier, factory):
    factory.make_deal(db_session, close_in_days=10)
    factory.make_proforma(db_session)
    db_session.commit()
    crm = factory.FakeCRM(fail_times=2)
    collaborators = Collaborators(crm=crm, notifier=notifier)
    failed = execute_reconciliation_run(SessionLocal, [factory.bank_row()], collaborators, config)
    assert failed.status == "failed"

    result = run_reconciliation_cycle(collaborators, config)

    assert result.report is None
    assert result.retried_deals == [100]
    assert crm.stage_updates == [(100, 27)]
    db_session.expire_all()
    transition = db_session.query(models.DealStageTransition).one()
    assert transition.status == models.TransitionStatus.applied
    assert transition.notified_at is not None


def test_cycle_sends_due_second_payment_reminders(db_session, config, crm, notifier, factory):
    today = date.today()
    deal = factory.make_deal(db_session, close_in_days=20, stage_id=32)
    ensure_schedule_state(db_session, deal, today - timedelta(days=60))
    db_session.commit()

    result = run_reconciliation_cycle(Collaborators(crm=crm, notifier=notifier), config, today=today)

    assert result.reminders.sent == [100]
    assert [t for _, t, _ in notifier.sent] == ["second_payment_reminder"]
