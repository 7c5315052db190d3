import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from reservation_engine.domain.exceptions import (
    AlreadyTerminalError,
    NotAuthorizedError,
    PaymentInProgressError,
    PaymentProviderError,
    ProviderNotConfiguredError,
    RefundNotAllowedError,
    ReservationExpiredDuringPaymentError,
)
from reservation_engine.domain.models import Actor, DiscountType, PaymentProvider, RefundStatus
from reservation_engine.domain.state_machine import HoldState, PaymentStatus
from reservation_engine.infrastructure.db.models import Payment, Refund
from reservation_engine.infrastructure.db.session import transaction


PARENT = Actor(user_id="parent-1")
ADMIN = Actor(user_id="admin-1", is_admin=True)
SIGNED = {"x-test-signature": "valid"}


def _hold(engine, make_session, make_player, **session_overrides):
    session_id = make_session(**session_overrides)
    return engine.reservations.create_reservation(make_player(), session_id)


def _event(event_id, transaction_id, kind="succeeded", reason=None):
    return json.dumps(
        {"id": event_id, "type": kind, "transaction_id": transaction_id, "reason": reason}
    ).encode()


def _payments_for(session_factory, hold_id):
    with transaction(session_factory) as db:
        return db.execute(select(Payment).where(Payment.hold_id == hold_id)).scalars().all()


# ---------------------
# CHARGE
# ---------------------

def test_successful_charge_confirms_hold(engine, make_session, make_player, gateway, notifier):
    hold = _hold(engine, make_session, make_player)

    payment = engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.amount_cents == 2000
    assert payment.transaction_id == "txn_1"
    confirmed = engine.reservations.get_hold(hold.id)
    assert confirmed.state == HoldState.CONFIRMED
    assert confirmed.payment_id == payment.id
    assert gateway.charges == [(hold.id, 2000, "USD", "pm_card_visa")]
    assert notifier.event_types() == ["HOLD_CREATED", "HOLD_CONFIRMED"]


def test_payment_at_last_second_keeps_occupancy(engine, make_session, make_player, clock):
    session_id = make_session(capacity=1)
    hold = engine.reservations.create_reservation(make_player(), session_id)
    clock.advance(seconds=3599)
    before = engine.reservations.get_occupancy(session_id)

    engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    after = engine.reservations.get_occupancy(session_id)
    assert before.occupied == after.occupied == 1
    assert (after.confirmed, after.held) == (1, 0)


def test_provider_outage_leaves_hold_pending(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.charge_error = "connection reset"

    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    assert engine.reservations.get_hold(hold.id).state == HoldState.PENDING
    assert [p.status for p in _payments_for(session_factory, hold.id)] == [PaymentStatus.FAILED]

    gateway.charge_error = None
    payment = engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    assert payment.status == PaymentStatus.SUCCEEDED


def test_declined_card_leaves_hold_pending(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.FAILED
    gateway.failure_reason = "card_declined"

    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_chargeDeclined", PARENT)

    assert engine.reservations.get_hold(hold.id).state == HoldState.PENDING
    payment = _payments_for(session_factory, hold.id)[0]
    assert payment.failure_reason == "card_declined"


def test_cannot_pay_for_expired_hold(engine, make_session, make_player, clock, gateway):
    hold = _hold(engine, make_session, make_player)
    clock.advance(seconds=3600)

    with pytest.raises(AlreadyTerminalError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    assert gateway.charges == []


def test_wrong_provider_for_tenant(engine, make_session, make_player):
    hold = _hold(engine, make_session, make_player)

    with pytest.raises(ProviderNotConfiguredError):
        engine.payments.begin_payment(hold.id, "razorpay", {"razorpay_payment_id": "pay_1"}, PARENT)


def test_create_payment_method(engine, make_session, make_player):
    hold = _hold(engine, make_session, make_player)

    method = engine.payments.create_payment_method(hold.id, PARENT)

    assert method["client_secret"] == f"secret_{hold.id}"
    with pytest.raises(NotAuthorizedError):
        engine.payments.create_payment_method(hold.id, Actor(user_id="stranger"))


def test_fully_discounted_hold_skips_provider(engine, make_session, make_player, make_code, gateway):
    session_id = make_session()
    make_code("FREE", discount_type=DiscountType.FULL, value=0)
    hold = engine.reservations.create_reservation(make_player(), session_id, discount_code="FREE")

    payment = engine.payments.begin_payment(hold.id, "stripe", None, PARENT)

    assert hold.price_cents == 0
    assert payment.provider == PaymentProvider.MANUAL
    assert payment.amount_cents == 0
    assert gateway.charges == []
    assert engine.reservations.get_hold(hold.id).state == HoldState.CONFIRMED


# ---------------------
# LATE SUCCESS
# ---------------------

def test_success_after_expiry_is_refunded(engine, make_session, make_player, clock, gateway, session_factory):
    session_id = make_session(capacity=1)
    hold = engine.reservations.create_reservation(make_player(), session_id)
    gateway.on_charge = lambda: clock.advance(seconds=3605)

    with pytest.raises(ReservationExpiredDuringPaymentError) as exc_info:
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    assert exc_info.value.refunded is True
    assert gateway.refunds == [("txn_1", 2000, "RESERVATION_EXPIRED_DURING_PAYMENT")]
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED
    assert engine.reservations.get_remaining_capacity(session_id) == 1
    assert [p.status for p in _payments_for(session_factory, hold.id)] == [PaymentStatus.REFUNDED]


def test_failed_late_refund_is_reconciled_by_reaper(engine, make_session, make_player, clock, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.on_charge = lambda: clock.advance(seconds=3605)
    gateway.refund_error = "timeout"

    with pytest.raises(ReservationExpiredDuringPaymentError) as exc_info:
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    assert exc_info.value.refunded is False
    with transaction(session_factory) as db:
        assert db.execute(select(Refund.status)).scalar_one() == RefundStatus.REQUESTED

    gateway.refund_error = None
    clock.advance(minutes=2)
    engine.reaper.sweep_once()

    with transaction(session_factory) as db:
        assert db.execute(select(Refund.status)).scalar_one() == RefundStatus.COMPLETED
    assert len(gateway.refunds) == 1
    assert [p.status for p in _payments_for(session_factory, hold.id)] == [PaymentStatus.REFUNDED]


# ---------------------
# ASYNCHRONOUS SETTLEMENT
# ---------------------

def test_processing_charge_settles_by_webhook(engine, make_session, make_player, gateway):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.PROCESSING

    payment = engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    assert payment.status == PaymentStatus.PROCESSING
    assert engine.reservations.get_hold(hold.id).state == HoldState.PENDING

    with pytest.raises(PaymentInProgressError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    settled = engine.payments.handle_webhook("default", "stripe", _event("evt_1", payment.transaction_id), SIGNED)
    assert settled.status == PaymentStatus.SUCCEEDED
    assert engine.reservations.get_hold(hold.id).state == HoldState.CONFIRMED

    replay = engine.payments.handle_webhook("default", "stripe", _event("evt_1", payment.transaction_id), SIGNED)
    assert replay.status == PaymentStatus.SUCCEEDED
    assert gateway.refunds == []


def test_failed_webhook_leaves_hold_pending(engine, make_session, make_player, gateway):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.PROCESSING
    payment = engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    failed = engine.payments.handle_webhook(
        "default",
        "stripe",
        _event("evt_2", payment.transaction_id, kind="failed", reason="insufficient_funds"),
        SIGNED,
    )

    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "insufficient_funds"
    assert engine.reservations.get_hold(hold.id).state == HoldState.PENDING


def test_webhook_success_after_expiry_refunds(engine, make_session, make_player, gateway, clock):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.PROCESSING
    payment = engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    clock.advance(seconds=3605)

    settled = engine.payments.handle_webhook("default", "stripe", _event("evt_3", payment.transaction_id), SIGNED)

    assert settled.status == PaymentStatus.REFUNDED
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED
    assert len(gateway.refunds) == 1


def test_webhook_rejections(engine):
    with pytest.raises(NotAuthorizedError):
        engine.payments.handle_webhook("default", "stripe", _event("evt_4", "txn_9"), {})

    assert engine.payments.handle_webhook("default", "stripe", _event("evt_5", "txn_unknown"), SIGNED) is None
    assert engine.payments.handle_webhook("default", "stripe", _event("evt_6", "txn_9", kind="other"), SIGNED) is None


# ---------------------
# CAPTURE AFTER A FAILURE
# ---------------------

def test_capture_after_decline_confirms_live_hold(engine, make_session, make_player, gateway):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.FAILED
    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    settled = engine.payments.handle_webhook("default", "stripe", _event("evt_10", "txn_1"), SIGNED)

    assert settled.status == PaymentStatus.SUCCEEDED
    assert settled.failure_reason is None
    confirmed = engine.reservations.get_hold(hold.id)
    assert confirmed.state == HoldState.CONFIRMED
    assert confirmed.payment_id == settled.id
    assert gateway.refunds == []


def test_transaction_is_stored_before_charging(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.charge_error = "read timeout"

    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pi_client_confirmed", PARENT)

    [failed] = _payments_for(session_factory, hold.id)
    assert (failed.status, failed.transaction_id) == (PaymentStatus.FAILED, "pi_client_confirmed")

    settled = engine.payments.handle_webhook("default", "stripe", _event("evt_11", "pi_client_confirmed"), SIGNED)

    assert settled.id == failed.id
    assert settled.status == PaymentStatus.SUCCEEDED
    assert engine.reservations.get_hold(hold.id).state == HoldState.CONFIRMED


def test_retry_with_same_intent_takes_over_transaction(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.charge_error = "read timeout"
    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pi_client_confirmed", PARENT)

    gateway.charge_error = None
    payment = engine.payments.begin_payment(hold.id, "stripe", "pi_client_confirmed", PARENT)

    assert payment.status == PaymentStatus.SUCCEEDED
    assert payment.transaction_id == "pi_client_confirmed"
    by_status = {p.status: p.transaction_id for p in _payments_for(session_factory, hold.id)}
    assert by_status == {PaymentStatus.FAILED: None, PaymentStatus.SUCCEEDED: "pi_client_confirmed"}


def test_capture_after_decline_on_expired_hold_is_refunded(engine, make_session, make_player, gateway, clock):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.FAILED
    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    clock.advance(seconds=3605)

    settled = engine.payments.handle_webhook("default", "stripe", _event("evt_12", "txn_1"), SIGNED)

    assert settled.status == PaymentStatus.REFUNDED
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED
    assert gateway.refunds == [("txn_1", 2000, "RESERVATION_EXPIRED_DURING_PAYMENT")]


def test_capture_after_decline_when_retry_already_paid(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    gateway.next_status = PaymentStatus.FAILED
    with pytest.raises(PaymentProviderError):
        engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    gateway.next_status = PaymentStatus.SUCCEEDED
    paid = engine.payments.begin_payment(hold.id, "stripe", "pm_card_mastercard", PARENT)

    engine.payments.handle_webhook("default", "stripe", _event("evt_13", "txn_1"), SIGNED)

    assert gateway.refunds == [("txn_1", 2000, "CAPTURED_AFTER_DECLINE")]
    confirmed = engine.reservations.get_hold(hold.id)
    assert confirmed.state == HoldState.CONFIRMED
    assert confirmed.payment_id == paid.id
    with transaction(session_factory) as db:
        refund = db.execute(select(Refund)).scalar_one()
        assert refund.payment_id != paid.id
        assert refund.status == RefundStatus.COMPLETED


# ---------------------
# REFUNDS
# ---------------------

def test_refund_keeps_seat_consumed(engine, make_session, make_player, gateway, notifier):
    session_id = make_session(capacity=2)
    hold = engine.reservations.create_reservation(make_player(), session_id)
    engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)

    refund = engine.payments.refund(hold.id, "injured", PARENT)

    assert refund.status == RefundStatus.COMPLETED
    assert refund.amount_cents == 2000
    assert refund.provider_refund_id == "re_1"
    assert engine.reservations.get_hold(hold.id).state == HoldState.CONFIRMED
    assert engine.reservations.get_occupancy(session_id).confirmed == 1
    assert "PAYMENT_REFUNDED" in notifier.event_types()

    with pytest.raises(RefundNotAllowedError):
        engine.payments.refund(hold.id, "again", PARENT)


def test_refund_requires_confirmed_hold(engine, make_session, make_player):
    hold = _hold(engine, make_session, make_player)

    with pytest.raises(RefundNotAllowedError):
        engine.payments.refund(hold.id, "changed mind", PARENT)


def test_refund_cutoff_applies_to_parents_only(engine, make_session, make_player, clock):
    hold = _hold(engine, make_session, make_player, starts_at=clock.now + timedelta(hours=3))
    engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    clock.advance(hours=1, minutes=30)

    with pytest.raises(RefundNotAllowedError):
        engine.payments.refund(hold.id, "late", PARENT)

    assert engine.payments.refund(hold.id, "weather", ADMIN).status == RefundStatus.COMPLETED


def test_refund_provider_failure_marks_refund_failed(engine, make_session, make_player, gateway, session_factory):
    hold = _hold(engine, make_session, make_player)
    engine.payments.begin_payment(hold.id, "stripe", "pm_card_visa", PARENT)
    gateway.refund_error = "provider down"

    with pytest.raises(PaymentProviderError):
        engine.payments.refund(hold.id, "injured", PARENT)

    with transaction(session_factory) as db:
        assert db.execute(select(Refund.status)).scalar_one() == RefundStatus.FAILED

    gateway.refund_error = None
    assert engine.payments.refund(hold.id, "injured", PARENT).status == RefundStatus.COMPLETED


# ---------------------
# MANUAL CONFIRMATION
# ---------------------

def test_manual_confirmation_is_admin_only(engine, make_session, make_player, session_factory):
    hold = _hold(engine, make_session, make_player)

    with pytest.raises(NotAuthorizedError):
        engine.payments.manual_confirm(hold.id, PARENT, reference="venmo-123")

    confirmed = engine.payments.manual_confirm(hold.id, ADMIN, reference="venmo-123", amount_cents=1500)

    assert confirmed.state == HoldState.CONFIRMED
    payment = _payments_for(session_factory, hold.id)[0]
    assert payment.provider == PaymentProvider.MANUAL
    assert payment.transaction_id == "venmo-123"
    assert payment.amount_cents == 1500


def test_manual_confirmation_of_expired_hold(engine, make_session, make_player, clock):
    hold = _hold(engine, make_session, make_player)
    clock.advance(hours=2)

    with pytest.raises(AlreadyTerminalError):
        engine.payments.manual_confirm(hold.id, ADMIN, reference="cash")
