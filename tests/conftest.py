import itertools
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from reservation_engine.application.engine import build_engine
from reservation_engine.config import EngineSettings, TenantSettings
from reservation_engine.domain.booking_rules import BookingPolicy
from reservation_engine.domain.models import DiscountType, PaymentProvider
from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.db.models import Base, DiscountCode, Player, TrainingSession
from reservation_engine.infrastructure.db.session import create_db_engine, create_session_factory, transaction
from reservation_engine.infrastructure.notifications import NotificationService
from reservation_engine.infrastructure.payments.gateway import (
    ChargeResult,
    PaymentGateway,
    PaymentGatewayError,
    ProviderEvent,
    WebhookVerificationError,
    hash_payload,
)
from reservation_engine.infrastructure.payments.registry import GatewayRegistry
from reservation_engine.main import create_app


START = datetime(2026, 5, 4, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """In-memory provider. Tests flip the attributes to script outcomes."""

    provider = PaymentProvider.STRIPE

    def __init__(self):
        self.next_status = PaymentStatus.SUCCEEDED
        self.failure_reason = None
        self.charge_error = None
        self.refund_error = None
        self.on_charge = None
        self.charges = []
        self.refunds = []
        self._ids = itertools.count(1)

    def create_payment_method(self, amount_cents, currency, reference):
        return {"provider": "stripe", "client_secret": f"secret_{reference}", "amount": amount_cents}

    def prepare_charge(self, amount_cents, currency, payment_token, reference):
        # Client-confirmed intents carry their provider id up front.
        if isinstance(payment_token, str) and payment_token.startswith("pi_"):
            return payment_token
        return None

    def charge(self, amount_cents, currency, payment_token, reference, transaction_id=None):
        self.charges.append((reference, amount_cents, currency, payment_token))
        if self.on_charge is not None:
            self.on_charge()
        if self.charge_error is not None:
            raise PaymentGatewayError(self.charge_error)
        return ChargeResult(
            transaction_id=transaction_id or f"txn_{next(self._ids)}",
            status=self.next_status,
            failure_reason=self.failure_reason,
        )

    def refund(self, transaction_id, amount_cents, reason):
        if self.refund_error is not None:
            raise PaymentGatewayError(self.refund_error)
        self.refunds.append((transaction_id, amount_cents, reason))
        return f"re_{len(self.refunds)}"

    def parse_event(self, payload, headers):
        if headers.get("x-test-signature") != "valid":
            raise WebhookVerificationError("Bad signature")
        body = json.loads(payload)
        if body["type"] not in ("succeeded", "failed"):
            return None
        return ProviderEvent(
            event_id=body["id"],
            transaction_id=body["transaction_id"],
            status=PaymentStatus(body["type"]),
            payload_hash=hash_payload(payload),
            failure_reason=body.get("reason"),
        )


class RecordingNotifier(NotificationService):
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, event_type, payload):
        if self.fail:
            raise RuntimeError("mail relay unavailable")
        self.sent.append((event_type, payload))

    def event_types(self):
        return [event_type for event_type, _ in self.sent]


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings(tmp_path):
    return EngineSettings(
        database_url=f"sqlite:///{tmp_path / 'reservations.db'}",
        lock_timeout_seconds=10,
        default_tenant=TenantSettings(tenant_id="default", currency="USD", hold_ttl_seconds=3600),
    )


@pytest.fixture
def session_factory(settings):
    db_engine = create_db_engine(settings.database_url)
    Base.metadata.create_all(bind=db_engine)
    yield create_session_factory(db_engine)
    db_engine.dispose()


@pytest.fixture
def engine(settings, session_factory, clock, notifier, gateway):
    gateways = GatewayRegistry(settings)
    gateways.register("default", gateway)
    return build_engine(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        notifier=notifier,
        gateways=gateways,
    )


@pytest.fixture
def make_session(session_factory, clock):
    def _make(**overrides):
        starts_at = overrides.pop("starts_at", clock.now + timedelta(days=1))
        values = {
            "title": "U10 Skills Clinic",
            "location": "Field 2",
            "starts_at": starts_at,
            "ends_at": starts_at + timedelta(minutes=90),
            "capacity": 10,
            "price_cents": 2000,
            "age_groups": ["U10"],
            "genders": ["mixed"],
            "booking_policy": BookingPolicy.IMMEDIATE,
        }
        values.update(overrides)
        with transaction(session_factory) as db:
            session = TrainingSession(**values)
            db.add(session)
            db.flush()
            return session.id

    return _make


@pytest.fixture
def make_player(session_factory, clock):
    names = itertools.count(1)

    def _make(**overrides):
        values = {
            "first_name": f"Player{next(names)}",
            "last_name": "Tester",
            "birth_year": clock.now.year - 9,
            "gender": "boys",
            "parent_id": "parent-1",
        }
        values.update(overrides)
        with transaction(session_factory) as db:
            player = Player(**values)
            db.add(player)
            db.flush()
            return player.id

    return _make


@pytest.fixture
def make_code(session_factory):
    def _make(code="HALFOFF", **overrides):
        values = {
            "tenant_id": "default",
            "code": code,
            "discount_type": DiscountType.PERCENTAGE,
            "value": 50,
            "max_uses": None,
        }
        values.update(overrides)
        with transaction(session_factory) as db:
            discount = DiscountCode(**values)
            db.add(discount)
            db.flush()
            return discount.id

    return _make


@pytest.fixture
def client(engine):
    app = create_app(engine, start_reaper=False)
    with TestClient(app) as test_client:
        yield test_client
