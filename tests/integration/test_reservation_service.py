from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import select

from reservation_engine.application.reservation_service import ReservationService, session_lock_key
from reservation_engine.config import EngineSettings
from reservation_engine.domain.booking_rules import BookingPolicy
from reservation_engine.domain.exceptions import (
    AlreadyHeldError,
    AlreadyTerminalError,
    BookingNotOpenError,
    CapacityAdjustmentError,
    ContentionError,
    ExtensionNotAllowedError,
    InvalidAccessCodeError,
    InvalidDiscountCodeError,
    NotAuthorizedError,
    NotEligibleError,
    PaymentInProgressError,
    ReservationEngineError,
    SessionFullError,
)
from reservation_engine.domain.models import Actor, DiscountType, PaymentRecord
from reservation_engine.domain.state_machine import HoldState
from reservation_engine.infrastructure.db.models import DiscountCode, OutboxEvent, Payment
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.locks import KeyedLockRegistry


PARENT = Actor(user_id="parent-1")
ADMIN = Actor(user_id="admin-1", is_admin=True)


def _manual(hold, reference="cash-1"):
    return PaymentRecord.manual(hold.id, hold.price_cents, "USD", reference)


def _code_uses(session_factory, code_id):
    with transaction(session_factory) as db:
        return db.get(DiscountCode, code_id).current_uses


# ---------------------
# CREATE
# ---------------------

def test_create_snapshots_price_and_ttl(engine, make_session, make_player, clock):
    session_id = make_session(price_cents=2500)
    player_id = make_player()

    hold = engine.reservations.create_reservation(player_id, session_id)

    assert hold.state == HoldState.PENDING
    assert hold.price_cents == 2500
    assert hold.created_at == clock.now
    assert hold.expires_at == clock.now + timedelta(seconds=3600)
    assert engine.reservations.get_remaining_capacity(session_id) == 9


def test_capacity_one_second_player_gets_session_full(engine, make_session, make_player):
    session_id = make_session(capacity=1)

    engine.reservations.create_reservation(make_player(), session_id)

    with pytest.raises(SessionFullError):
        engine.reservations.create_reservation(make_player(), session_id)


def test_same_player_cannot_hold_twice(engine, make_session, make_player):
    session_id = make_session()
    player_id = make_player()
    hold = engine.reservations.create_reservation(player_id, session_id)

    with pytest.raises(AlreadyHeldError):
        engine.reservations.create_reservation(player_id, session_id)

    engine.reservations.confirm_reservation(hold.id, _manual(hold))
    with pytest.raises(AlreadyHeldError):
        engine.reservations.create_reservation(player_id, session_id)


def test_expired_hold_of_same_player_is_replaced(engine, make_session, make_player, clock):
    session_id = make_session()
    player_id = make_player()
    first = engine.reservations.create_reservation(player_id, session_id)

    clock.advance(seconds=3601)
    second = engine.reservations.create_reservation(player_id, session_id)

    assert second.id != first.id
    assert engine.reservations.get_hold(first.id).state == HoldState.EXPIRED


def test_validation_errors_write_nothing(engine, make_session, make_player, clock, session_factory):
    too_old = make_player(birth_year=clock.now.year - 14)
    girls_only = make_session(genders=["girls"])
    locked = make_session(access_code="KEEPERS")
    started = make_session(starts_at=clock.now - timedelta(minutes=5))
    later = make_session(
        starts_at=clock.now + timedelta(days=5),
        booking_policy=BookingPolicy.HOURS_BEFORE,
        booking_open_hours_before=48,
    )
    player_id = make_player()

    with pytest.raises(NotEligibleError):
        engine.reservations.create_reservation(too_old, girls_only)
    with pytest.raises(NotEligibleError):
        engine.reservations.create_reservation(player_id, girls_only)
    with pytest.raises(InvalidAccessCodeError):
        engine.reservations.create_reservation(player_id, locked, access_code="wrong")
    with pytest.raises(BookingNotOpenError):
        engine.reservations.create_reservation(player_id, started)
    with pytest.raises(BookingNotOpenError):
        engine.reservations.create_reservation(player_id, later)
    with pytest.raises(InvalidDiscountCodeError):
        engine.reservations.create_reservation(player_id, locked, access_code="KEEPERS", discount_code="NOPE")

    with transaction(session_factory) as db:
        assert db.execute(select(OutboxEvent)).scalars().all() == []

    hold = engine.reservations.create_reservation(player_id, locked, access_code=" keepers ")
    assert hold.state == HoldState.PENDING


def test_only_guardian_or_admin_may_book(engine, make_session, make_player):
    session_id = make_session()
    player_id = make_player(parent_id="parent-1", parent2_id="parent-2")

    with pytest.raises(NotAuthorizedError):
        engine.reservations.create_reservation(player_id, session_id, actor=Actor(user_id="stranger"))

    hold = engine.reservations.create_reservation(player_id, session_id, actor=Actor(user_id="parent-2"))
    assert hold.state == HoldState.PENDING


def test_lock_timeout_raises_contention(engine, settings, session_factory, clock, make_session, make_player):
    session_id = make_session()
    impatient = ReservationService(
        session_factory,
        settings,
        KeyedLockRegistry(timeout_seconds=0.05),
        clock=clock,
    )

    with impatient.locks.hold(session_lock_key(session_id)):
        with pytest.raises(ContentionError):
            impatient.create_reservation(make_player(), session_id)

    assert impatient.get_remaining_capacity(session_id) == 10


# ---------------------
# CAPACITY UNDER CONCURRENCY
# ---------------------

def test_two_parents_race_for_last_seat(engine, make_session, make_player):
    session_id = make_session(capacity=1)
    players = [make_player(), make_player()]

    def attempt(player_id):
        try:
            return engine.reservations.create_reservation(player_id, session_id)
        except SessionFullError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=2) as pool:
        results = list(pool.map(attempt, players))

    holds = [result for result in results if not isinstance(result, Exception)]
    assert len(holds) == 1
    assert holds[0].state == HoldState.PENDING
    assert sum(isinstance(result, SessionFullError) for result in results) == 1


def test_capacity_never_exceeded_under_mixed_load(engine, make_session, make_player):
    session_id = make_session(capacity=5)
    players = [make_player() for _ in range(20)]
    observed = []

    def attempt(index):
        player_id = players[index]
        try:
            hold = engine.reservations.create_reservation(player_id, session_id)
        except SessionFullError:
            return None
        finally:
            observed.append(engine.reservations.get_occupancy(session_id).occupied)
        if index % 3 == 0:
            engine.reservations.cancel_reservation(hold.id, ADMIN)
        elif index % 3 == 1:
            engine.reservations.confirm_reservation(hold.id, _manual(hold, f"cash-{index}"))
        observed.append(engine.reservations.get_occupancy(session_id).occupied)
        return hold

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(attempt, range(len(players))))

    assert max(observed) <= 5
    occupancy = engine.reservations.get_occupancy(session_id)
    assert occupancy.occupied <= occupancy.capacity


# ---------------------
# TTL
# ---------------------

def test_hold_is_live_until_ttl_then_expired(engine, make_session, make_player, clock):
    session_id = make_session(capacity=1)
    hold = engine.reservations.create_reservation(make_player(), session_id)

    clock.advance(seconds=3599)
    assert engine.reservations.get_occupancy(session_id).held == 1
    assert engine.reservations.get_hold(hold.id).state == HoldState.PENDING

    clock.advance(seconds=2)
    assert engine.reservations.get_occupancy(session_id).held == 0
    with pytest.raises(AlreadyTerminalError) as exc_info:
        engine.reservations.confirm_reservation(hold.id, _manual(hold))
    assert exc_info.value.state == "expired"

    # Re-checks never bring it back.
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED
    assert engine.reservations.cancel_reservation(hold.id, PARENT).state == HoldState.EXPIRED
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED


def test_confirm_at_last_second_keeps_seat_count(engine, make_session, make_player, clock):
    session_id = make_session(capacity=1)
    hold = engine.reservations.create_reservation(make_player(), session_id)
    clock.advance(seconds=3599)

    confirmed = engine.reservations.confirm_reservation(hold.id, _manual(hold))

    assert confirmed.state == HoldState.CONFIRMED
    occupancy = engine.reservations.get_occupancy(session_id)
    assert (occupancy.confirmed, occupancy.held, occupancy.occupied) == (1, 0, 1)

    clock.advance(days=1)
    assert engine.reservations.get_occupancy(session_id).confirmed == 1


def test_expired_seat_goes_back_to_inventory(settings, session_factory, make_session, make_player, clock):
    short_ttl = settings.default_tenant.model_copy(update={"hold_ttl_seconds": 1})
    service = ReservationService(
        session_factory,
        EngineSettings(database_url=settings.database_url, default_tenant=short_ttl),
        KeyedLockRegistry(5),
        clock=clock,
    )
    session_id = make_session(capacity=1)
    hold = service.create_reservation(make_player(), session_id)

    clock.advance(seconds=2)
    with pytest.raises(AlreadyTerminalError):
        service.confirm_reservation(hold.id, _manual(hold))

    replacement = service.create_reservation(make_player(), session_id)
    assert replacement.state == HoldState.PENDING


# ---------------------
# CONFIRM
# ---------------------

def test_confirm_records_payment_and_replay_is_idempotent(engine, make_session, make_player, session_factory):
    hold = engine.reservations.create_reservation(make_player(), make_session())

    confirmed = engine.reservations.confirm_reservation(hold.id, _manual(hold))

    with transaction(session_factory) as db:
        payment = db.get(Payment, confirmed.payment_id)
        assert payment.transaction_id == "cash-1"
        assert payment.amount_cents == hold.price_cents

    replay = engine.reservations.confirm_reservation(hold.id, replace(_manual(hold), id=confirmed.payment_id))
    assert replay.state == HoldState.CONFIRMED

    with pytest.raises(AlreadyTerminalError):
        engine.reservations.confirm_reservation(hold.id, _manual(hold, "cash-2"))


def test_confirm_and_cancel_race_has_one_winner(engine, make_session, make_player, session_factory):
    session_id = make_session()
    hold = engine.reservations.create_reservation(make_player(), session_id)

    def confirm(index):
        try:
            return engine.reservations.confirm_reservation(hold.id, _manual(hold, f"cash-{index}"))
        except (AlreadyTerminalError, PaymentInProgressError) as exc:
            return exc

    def cancel(_):
        return engine.reservations.cancel_reservation(hold.id, ADMIN)

    with ThreadPoolExecutor(max_workers=8) as pool:
        confirms = [pool.submit(confirm, i) for i in range(4)]
        cancels = [pool.submit(cancel, i) for i in range(4)]
        confirm_results = [future.result() for future in confirms]
        cancel_results = [future.result() for future in cancels]

    final = engine.reservations.get_hold(hold.id)
    assert final.state in (HoldState.CONFIRMED, HoldState.CANCELLED)
    assert all(result.state == final.state for result in cancel_results)

    wins = [result for result in confirm_results if not isinstance(result, ReservationEngineError)]
    if final.state == HoldState.CONFIRMED:
        assert len(wins) == 1
    else:
        assert wins == []

    with transaction(session_factory) as db:
        payments = db.execute(select(Payment).where(Payment.hold_id == hold.id)).scalars().all()
        assert len(payments) == (1 if final.state == HoldState.CONFIRMED else 0)


def test_reaper_and_confirm_exactly_one_wins(engine, make_session, make_player, clock):
    hold = engine.reservations.create_reservation(make_player(), make_session())
    clock.advance(seconds=3600)

    assert engine.reaper.sweep_once() == 1
    with pytest.raises(AlreadyTerminalError):
        engine.reservations.confirm_reservation(hold.id, _manual(hold))
    assert engine.reaper.sweep_once() == 0
    assert engine.reservations.expire_hold(hold.id) is False


# ---------------------
# CANCEL
# ---------------------

def test_cancel_is_idempotent(engine, make_session, make_player, clock):
    session_id = make_session(capacity=2)
    hold = engine.reservations.create_reservation(make_player(), session_id)

    first = engine.reservations.cancel_reservation(hold.id, PARENT)
    second = engine.reservations.cancel_reservation(hold.id, PARENT)

    assert first.state == second.state == HoldState.CANCELLED
    assert second.resolved_at == first.resolved_at
    assert engine.reservations.get_remaining_capacity(session_id) == 2


def test_cancel_requires_guardian(engine, make_session, make_player):
    hold = engine.reservations.create_reservation(make_player(), make_session())

    with pytest.raises(NotAuthorizedError):
        engine.reservations.cancel_reservation(hold.id, Actor(user_id="stranger"))


# ---------------------
# DISCOUNT CODES
# ---------------------

def test_half_off_code_single_use(engine, make_session, make_player, make_code, session_factory):
    session_id = make_session(price_cents=2000, capacity=5)
    code_id = make_code("HALF", max_uses=1)

    hold = engine.reservations.create_reservation(make_player(), session_id, discount_code="half")
    assert hold.price_cents == 1000
    assert hold.discount_code_id == code_id

    with pytest.raises(InvalidDiscountCodeError):
        engine.reservations.create_reservation(make_player(), session_id, discount_code="HALF")

    engine.reservations.confirm_reservation(hold.id, _manual(hold))
    assert _code_uses(session_factory, code_id) == 1

    with pytest.raises(InvalidDiscountCodeError):
        engine.reservations.create_reservation(make_player(), session_id, discount_code="HALF")


def test_code_use_released_on_expiry(engine, make_session, make_player, make_code, clock, session_factory):
    session_id = make_session(capacity=5)
    code_id = make_code("ONCE", max_uses=1, discount_type=DiscountType.FIXED, value=500)
    engine.reservations.create_reservation(make_player(), session_id, discount_code="ONCE")

    clock.advance(seconds=3601)
    hold = engine.reservations.create_reservation(make_player(), session_id, discount_code="ONCE")

    assert hold.price_cents == 1500
    assert _code_uses(session_factory, code_id) == 0


def test_code_use_released_on_cancel(engine, make_session, make_player, make_code):
    session_id = make_session(capacity=5)
    make_code("ONCE", max_uses=1)
    first = engine.reservations.create_reservation(make_player(), session_id, discount_code="ONCE")

    engine.reservations.cancel_reservation(first.id, PARENT)
    engine.reservations.cancel_reservation(first.id, PARENT)

    second = engine.reservations.create_reservation(make_player(), session_id, discount_code="ONCE")
    assert second.discount_code_id == first.discount_code_id


def test_concurrent_code_attempts(engine, make_session, make_player, make_code):
    session_id = make_session(capacity=10)
    make_code("RACE", max_uses=1)
    players = [make_player() for _ in range(6)]

    def attempt(player_id):
        try:
            return engine.reservations.create_reservation(player_id, session_id, discount_code="RACE")
        except InvalidDiscountCodeError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(attempt, players))

    assert sum(not isinstance(result, Exception) for result in results) == 1


def test_code_window_and_player_lock(engine, make_session, make_player, make_code, clock):
    session_id = make_session()
    owner = make_player()
    make_code("LATER", valid_from=clock.now + timedelta(days=1))
    make_code("OLD", valid_until=clock.now - timedelta(seconds=1))
    make_code("OFF", is_active=False)
    make_code("MINE", locked_to_player_id=owner)

    for code in ("LATER", "OLD", "OFF"):
        with pytest.raises(InvalidDiscountCodeError):
            engine.reservations.create_reservation(make_player(), session_id, discount_code=code)

    with pytest.raises(InvalidDiscountCodeError):
        engine.reservations.create_reservation(make_player(), session_id, discount_code="MINE")
    assert engine.reservations.create_reservation(owner, session_id, discount_code="MINE").price_cents == 1000


# ---------------------
# EXTEND / CAPACITY ADJUSTMENT
# ---------------------

def test_extend_once(engine, make_session, make_player, clock):
    hold = engine.reservations.create_reservation(make_player(), make_session())

    extended = engine.reservations.extend_reservation(hold.id, 10, PARENT)

    assert extended.expires_at == hold.expires_at + timedelta(minutes=10)
    assert extended.extension_count == 1
    with pytest.raises(ExtensionNotAllowedError):
        engine.reservations.extend_reservation(hold.id, 5, PARENT)
    with pytest.raises(ExtensionNotAllowedError):
        engine.reservations.extend_reservation(hold.id, 60, PARENT)


def test_extend_after_expiry(engine, make_session, make_player, clock):
    hold = engine.reservations.create_reservation(make_player(), make_session())
    clock.advance(seconds=3600)

    with pytest.raises(AlreadyTerminalError):
        engine.reservations.extend_reservation(hold.id, 5, PARENT)
    assert engine.reservations.get_hold(hold.id).state == HoldState.EXPIRED


def test_adjust_capacity(engine, make_session, make_player):
    session_id = make_session(capacity=2)
    engine.reservations.create_reservation(make_player(), session_id)
    engine.reservations.create_reservation(make_player(), session_id)

    with pytest.raises(NotAuthorizedError):
        engine.reservations.adjust_capacity(session_id, 3, PARENT)
    with pytest.raises(CapacityAdjustmentError):
        engine.reservations.adjust_capacity(session_id, 1, ADMIN)

    occupancy = engine.reservations.adjust_capacity(session_id, 3, ADMIN)
    assert occupancy.remaining == 1
    assert engine.reservations.create_reservation(make_player(), session_id).state == HoldState.PENDING
