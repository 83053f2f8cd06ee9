import os

# CRITICAL: Set environment variables BEFORE any settlement_engine imports
# These must be set before settlement_engine.config.settings is loaded
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["BASE_CURRENCY"] = "PLN"
os.environ["RECONCILIATION_MODE"] = "apply"
os.environ["EXTERNAL_RETRY_BASE_DELAY_SECONDS"] = "0"
os.environ["EXTERNAL_RETRY_MAX_DELAY_SECONDS"] = "0"

from datetime import date, datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from settlement_engine import models  # noqa: E402
from settlement_engine.config import ReconciliationConfig  # noqa: E402
from settlement_engine.database import Base, SessionLocal, engine as app_engine  # noqa: E402
from settlement_engine.services.collaborators import Collaborators  # noqa: E402

# The app engine is an in-memory SQLite database on a StaticPool, so every
# session (test, pipeline and API) sees the same data.
TEST_ENGINE = app_engine
TestingSessionLocal = SessionLocal


class FakeCRM:
    def __init__(self, deals=None, fail_times: int = 0):
        self.deals = dict(deals or {})
        self.fail_times = int(fail_times)
        self.stage_updates: list[tuple[int, int]] = []
        self.calls = 0

    def get_deal(self, deal_id):
        return self.deals.get(int(deal_id))

    def update_deal_stage(self, deal_id, stage_id):
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("crm unavailable")
        self.stage_updates.append((int(deal_id), int(stage_id)))
        if int(deal_id) in self.deals:
            self.deals[int(deal_id)]["stage_id"] = int(stage_id)


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[int, str, dict]] = []

    def send(self, deal_id, template, payload):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((int(deal_id), template, dict(payload)))


class FakeFX:
    def __init__(self, rates=None):
        self.rates = {tuple(k): Decimal(str(v)) for k, v in (rates or {}).items()}
        self.calls = 0

    def get_rate(self, from_currency, to_currency, as_of):
        self.calls += 1
        return self.rates.get((from_currency, to_currency))


class FakeAccounting:
    def __init__(self, proformas=None):
        self.proformas = {p["fullnumber"]: dict(p) for p in (proformas or [])}

    def get_proforma(self, fullnumber):
        return self.proformas.get(fullnumber)

    def list_proformas(self, deal_id):
        return [p for p in self.proformas.values() if p.get("deal_id") == deal_id]


class FakeBank:
    def __init__(self, rows=None):
        self.rows = list(rows or [])

    def fetch_rows(self):
        rows, self.rows = self.rows, []
        return rows


class FakeGateway:
    def __init__(self, events=None):
        self.events = list(events or [])

    def fetch_events(self):
        events, self.events = self.events, []
        return events


@pytest.fixture(scope="function", autouse=True)
def setup_test_database():
    """
    Create all tables before each test and drop them after,
    so every test starts from an empty database.
    """
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def config():
    return ReconciliationConfig(
        mode="apply",
        base_currency="PLN",
        external_retry_attempts=2,
        external_retry_base_delay_seconds=0.0,
        external_retry_max_delay_seconds=0.0,
        notification_min_interval_minutes=60,
    )


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def collaborators(crm, notifier):
    return Collaborators(crm=crm, notifier=notifier, fx=FakeFX({("EUR", "PLN"): "4.30"}))


def make_deal(db, deal_id=100, *, close_in_days=None, expected_close_date=None, value=None, **kw):
    if expected_close_date is None and close_in_days is not None:
        expected_close_date = date.today() + timedelta(days=close_in_days)
    deal = models.Deal(
        id=deal_id,
        title=kw.pop("title", f"Deal {deal_id}"),
        value=Decimal(str(value)) if value is not None else None,
        currency=kw.pop("currency", "PLN"),
        expected_close_date=expected_close_date,
        stage_id=kw.pop("stage_id", 18),
        pipeline_id=kw.pop("pipeline_id", 0),
        **kw,
    )
    db.add(deal)
    db.flush()
    return deal


def make_proforma(db, fullnumber="CO-PROF 12/2025", *, deal_id=100, total="1000.00", currency="PLN", **kw):
    rate = kw.pop("exchange_rate", None)
    proforma = models.Proforma(
        fullnumber=fullnumber,
        deal_id=deal_id,
        buyer_name=kw.pop("buyer_name", "Jan Kowalski"),
        buyer_normalized_name=kw.pop("buyer_normalized_name", "jan kowalski"),
        currency=currency,
        total=Decimal(str(total)),
        issued_at=kw.pop("issued_at", date.today()),
        exchange_rate=Decimal(str(rate)) if rate is not None else None,
        **kw,
    )
    db.add(proforma)
    db.flush()
    return proforma


def bank_row(operation_id="OP-1", *, amount="1000.00", description="CO-PROF 12/2025 oplata", **kw):
    row = {
        "kind": "bank",
        "operation_id": operation_id,
        "operation_date": kw.pop("operation_date", date.today().isoformat()),
        "amount": amount,
        "currency": kw.pop("currency", "PLN"),
        "counterparty": kw.pop("counterparty", "Jan Kowalski"),
        "description": description,
    }
    row.update(kw)
    return row


def checkout_completed(event_id="evt_1", *, session_id="cs_1", amount_total=100000, deal_id=100, **kw):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(datetime.now(timezone.utc).timestamp()),
        "data": {
            "object": {
                "id": session_id,
                "payment_status": kw.pop("payment_status", "paid"),
                "amount_total": amount_total,
                "currency": kw.pop("currency", "pln"),
                "created": int(datetime.now(timezone.utc).timestamp()),
                "customer_name": kw.pop("customer_name", "Jan Kowalski"),
                "metadata": {
                    "deal_id": deal_id,
                    "proforma_fullnumber": kw.pop("proforma_fullnumber", None),
                    "payment_type": kw.pop("payment_type", "single"),
                },
            }
        },
    }


class _Factory:
    FakeCRM = FakeCRM
    FakeNotifier = FakeNotifier
    FakeFX = FakeFX
    FakeAccounting = FakeAccounting
    FakeBank = FakeBank
    FakeGateway = FakeGateway
    make_deal = staticmethod(make_deal)
    make_proforma = staticmethod(make_proforma)
    bank_row = staticmethod(bank_row)
    checkout_completed = staticmethod(checkout_completed)


@pytest.fixture
def factory():
    """Seed helpers and collaborator doubles (conftest is not importable from test modules)."""
    return _Factory
