from __future__ import annotations

from datetime import date, timedelta

import pytest

from settlement_engine import models
from settlement_engine.services.diagnostics import run_consistency_checks
from settlement_engine.services.payment_schedule import (
    check_schedule_drift,
    ensure_schedule_state,
    resolve_schedule,
)


def test_far_close_date_gives_split_due_one_month_earlier():
    decision = resolve_schedule(date(2025, 3, 31), date(2025, 1, 1))

    assert decision.schedule_type == models.ScheduleType.split
    assert decision.second_payment_due_date == date(2025, 2, 28)
    assert decision.days_to_close == 89


@pytest.mark.parametrize(
    "days, expected",
    [
        (30, models.ScheduleType.split),
        (29, models.ScheduleType.single),
        (0, models.ScheduleType.single),
        (-5, models.ScheduleType.single),
    ],
)
def test_thirty_day_boundary(days, expected):
    ref = date(2025, 6, 1)
    assert resolve_schedule(ref + timedelta(days=days), ref).schedule_type == expected


def test_missing_close_date_is_single():
    decision = resolve_schedule(None, date(2025, 6, 1))
    assert decision.schedule_type == models.ScheduleType.single
    assert decision.second_payment_due_date is None


def test_snapshot_is_taken_once_and_survives_close_date_changes(db_session, factory):
    deal = factory.make_deal(db_session, expected_close_date=date(2025, 8, 15))
    state = ensure_schedule_state(db_session, deal, date(2025, 6, 1))
    assert state.schedule_type == models.ScheduleType.split
    assert state.second_payment_due_date == date(2025, 7, 15)

    deal.expected_close_date = date(2025, 6, 10)
    db_session.flush()
    again = ensure_schedule_state(db_session, deal, date(2025, 6, 5))

    assert again.id == state.id
    assert again.schedule_type == models.ScheduleType.split
    assert again.second_payment_due_date == date(2025, 7, 15)

    warning = check_schedule_drift(again, deal)
    assert warning.kind == "schedule_drift"
    assert warning.details["current_close_date"] == "2025-06-10"
    assert warning.details["second_payment_due_date"] == "2025-07-15"


def test_snapshot_rows_cannot_be_updated(db_session, factory):
    deal = factory.make_deal(db_session, expected_close_date=date(2025, 8, 15))
    state = ensure_schedule_state(db_session, deal, date(2025, 6, 1))

    state.second_payment_due_date = date(2025, 8, 1)
    with pytest.raises(RuntimeError):
        db_session.flush()
    db_session.rollback()


def test_consistency_checks_report_drift_without_correcting(db_session, config, factory):
    deal = factory.make_deal(db_session, expected_close_date=date(2025, 8, 15))
    ensure_schedule_state(db_session, deal, date(2025, 6, 1))
    assert run_consistency_checks(db_session, deal_ids=[deal.id], config=config) == []

    deal.expected_close_date = date(2025, 9, 30)
    db_session.flush()
    warnings = run_consistency_checks(db_session, deal_ids=[deal.id], config=config)

    assert [w.kind for w in warnings] == ["schedule_drift"]
    state = db_session.query(models.PaymentScheduleState).one()
    assert state.second_payment_due_date == date(2025, 7, 15)
