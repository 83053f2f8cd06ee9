from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from settlement_engine import models
from settlement_engine.api import deps
from settlement_engine.main import app
from settlement_engine.services.settlement_aggregator import aggregate_writer


@pytest.fixture
def client(collaborators, config):
    app.dependency_overrides[deps.get_collaborators] = lambda: collaborators
    app.dependency_overrides[deps.get_reconciliation_config] = lambda: config
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(deps.get_collaborators, None)
        app.dependency_overrides.pop(deps.get_reconciliation_config, None)


@pytest.fixture
def seeded(db_session, factory):
    factory.make_deal(db_session, close_in_days=10)
    proforma = factory.make_proforma(db_session)
    db_session.commit()
    return proforma


def _run(client, records, **body):
    r = client.post("/reconciliation/runs", json={"records": records, **body})
    assert r.status_code == 200, r.text
    return r.json()


def test_health_endpoints(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"
    assert client.get("/healthz").json()["status"] == "ok"
    assert client.get("/").json()["message"] == "Settlement Engine API"


def test_run_and_lookup_by_id_or_hash(client, seeded, factory, crm):
    body = _run(client, [factory.bank_row()])

    assert body["status"] == "done"
    assert body["linked"] == 1
    assert body["records"][0]["outcome"] == "linked"
    assert crm.stage_updates == [(100, 27)]

    by_id = client.get(f"/reconciliation/runs/{body['run_id']}")
    assert by_id.status_code == 200
    assert by_id.json()["status"] == "done"
    assert by_id.json()["source"] == "api"

    by_hash = client.get(f"/reconciliation/runs/{body['inputs_hash']}")
    assert by_hash.json()["id"] == body["run_id"]


def test_run_lookup_errors(client):
    r = client.get("/reconciliation/runs/not-a-hash")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "reconciliation.run_ref.invalid"

    assert client.get(f"/reconciliation/runs/{'0' * 64}").status_code == 404
    assert client.get("/reconciliation/runs/999").status_code == 404


def test_dry_run_request_persists_nothing(client, seeded, factory, db_session, crm):
    body = _run(client, [factory.bank_row()], mode="dry_run")

    assert body["mode"] == "dry_run"
    assert body["run_id"] is None
    assert body["linked"] == 1
    assert crm.calls == 0
    db_session.expire_all()
    assert db_session.query(models.Payment).count() == 0


def test_gateway_redelivery_is_reported_not_reprocessed(client, seeded, factory, crm):
    event = factory.checkout_completed()

    first = client.post("/gateway/events", json=event)
    again = client.post("/gateway/events", json=event)

    assert first.status_code == 200
    assert first.json()["linked"] == 1
    assert again.json()["run_id"] == first.json()["run_id"]
    assert again.json()["inputs_hash"] == first.json()["inputs_hash"]
    assert again.json()["records"] == []
    assert crm.stage_updates == [(100, 27)]


def test_unsupported_gateway_event_is_rejected(client, db_session):
    r = client.post("/gateway/events", json={"id": "evt_9", "type": "invoice.paid", "data": {}})

    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"
    assert r.json()["request_id"]
    assert db_session.query(models.ReconciliationRun).count() == 0


def test_operator_payment_actions(client, seeded, factory, db_session):
    payment_id = _run(client, [factory.bank_row()])["records"][0]["payment_id"]
    headers = {"X-Actor": "ops"}

    approved = client.post(f"/payments/{payment_id}/approve", headers=headers)
    assert approved.status_code == 200
    assert approved.json()["match_status"] == "approved"

    conflict = client.post(f"/payments/{payment_id}/approve")
    assert conflict.status_code == 409
    assert conflict.json()["code"] == "INVALID_TRANSITION"

    cleared = client.post(f"/payments/{payment_id}/clear", headers=headers)
    assert cleared.json()["match_status"] == "unmatched"
    assert cleared.json()["linked_proforma_id"] is None

    assert client.post(f"/payments/{payment_id}/assign", json={}).status_code == 422
    assigned = client.post(
        f"/payments/{payment_id}/assign", json={"proforma_fullnumber": "CO-PROF 12/2025"}, headers=headers
    )
    assert assigned.status_code == 200
    assert assigned.json()["match_status"] == "approved"
    assert assigned.json()["manual_proforma_id"] == seeded.id

    deleted = client.post(f"/payments/{payment_id}/delete", json={"reason": "test import"}, headers=headers)
    assert deleted.json()["deleted_at"] is not None
    proforma = client.get(f"/proformas/{seeded.id}").json()
    assert Decimal(proforma["payments_total"]) == Decimal("0")

    db_session.expire_all()
    actors = {
        a.actor
        for a in db_session.query(models.AuditLog).filter(models.AuditLog.entity_type == "payment")
        if a.action in {"payment.approved", "payment.cleared", "payment.deleted"}
    }
    assert actors == {"ops"}


def test_missing_payment_is_404(client):
    assert client.get("/payments/999").status_code == 404
    r = client.post("/payments/999/approve")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_resolve_flagged_duplicate(client, seeded, factory):
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    body = _run(client, [factory.bank_row("OP-1"), factory.bank_row("OP-2", operation_date=yesterday)])
    assert [r["outcome"] for r in body["records"]] == ["linked", "flagged"]
    flagged_id = body["records"][1]["payment_id"]

    assert client.get(f"/payments/{flagged_id}").json()["review_status"] == "duplicate_review"
    bad = client.post(f"/payments/{flagged_id}/resolve-duplicate", json={"action": "maybe"})
    assert bad.status_code == 422

    r = client.post(f"/payments/{flagged_id}/resolve-duplicate", json={"action": "discard"})
    assert r.status_code == 200
    assert r.json()["deleted_at"] is not None
    assert client.post(f"/payments/{flagged_id}/resolve-duplicate", json={"action": "keep"}).status_code == 404


def test_cash_payment_flow(client, seeded, crm):
    created = client.post(
        "/cash-payments",
        json={"deal_id": 100, "proforma_id": seeded.id, "expected_amount": "1000.00", "currency": "PLN"},
    )
    assert created.status_code == 201
    cash_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    requested = client.post(f"/cash-payments/{cash_id}/request-confirmation", headers={"X-Actor": "manager"})
    assert requested.json()["status"] == "pending_confirmation"

    confirmed = client.post(
        f"/cash-payments/{cash_id}/confirm", json={"amount": "1000.00"}, headers={"X-Actor": "kasa"}
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "received"
    assert confirmed.json()["confirmed_by"] == "kasa"
    assert crm.stage_updates == [(100, 27)]
    assert client.post(f"/cash-payments/{cash_id}/confirm", json={"amount": "1.00"}).status_code == 409

    refunded = client.post(f"/cash-payments/{cash_id}/refund", json={"amount": "200.00", "reason": "rezygnacja"})
    assert refunded.json()["status"] == "refunded"
    assert len(refunded.json()["refunds"]) == 1

    too_much = client.post(f"/cash-payments/{cash_id}/refund", json={"amount": "900.00"})
    assert too_much.status_code == 422
    assert too_much.json()["field"] == "amount"

    proforma = client.get(f"/proformas/{seeded.id}").json()
    assert Decimal(proforma["cash_total"]) == Decimal("800.00")
    assert client.get("/cash-payments/999").status_code == 404


def test_verify_and_recompute_proforma(client, seeded, factory, db_session):
    _run(client, [factory.bank_row()])
    assert client.get(f"/proformas/{seeded.id}/verify").json()["consistent"] is True

    db_session.expire_all()
    proforma = db_session.get(models.Proforma, seeded.id)
    with aggregate_writer(db_session):
        proforma.payments_total = Decimal("1.00")
    db_session.commit()

    verify = client.get(f"/proformas/{seeded.id}/verify").json()
    assert verify["consistent"] is False
    assert verify["warning"]["kind"] == "aggregate_mismatch"

    fixed = client.post(f"/proformas/{seeded.id}/recompute", headers={"X-Actor": "ops"})
    assert fixed.status_code == 200
    assert Decimal(fixed.json()["payments_total"]) == Decimal("1000.00")
    assert client.get(f"/proformas/{seeded.id}/verify").json()["consistent"] is True
    assert client.get("/proformas/999").status_code == 404


def test_deal_settlement_view(client, seeded, factory):
    _run(client, [factory.bank_row()])

    r = client.get("/deals/100/settlement")

    assert r.status_code == 200
    body = r.json()
    assert body["stage"] == "fully_paid"
    assert Decimal(body["paid_base"]) == Decimal("1000.00")
    assert Decimal(body["paid_ratio"]) == Decimal("1")
    assert body["schedule"]["schedule_type"] == "single"
    assert body["transitions"][0]["status"] == "applied"
    assert body["transitions"][0]["notified"] is True
    assert body["warnings"] == []
    assert client.get("/deals/999/settlement").status_code == 404
