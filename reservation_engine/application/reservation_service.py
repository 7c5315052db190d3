# reservation_engine/application/reservation_service.py

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.application.capacity_ledger import ALREADY_HELD, CapacityLedger
from reservation_engine.application.code_validator import CodeValidator
from reservation_engine.application.hold_events import (
    HOLD_CONFIRMED,
    HOLD_CREATED,
    HOLD_EXTENDED,
    add_hold_event,
    cancel_if_live,
    close_waitlist_offer,
    expire_if_overdue,
)
from reservation_engine.application.notification_dispatcher import NotificationDispatcher
from reservation_engine.config import EngineSettings
from reservation_engine.domain.booking_rules import booking_window_for, ensure_booking_open, ensure_eligible
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import (
    AlreadyHeldError,
    AlreadyTerminalError,
    ExtensionNotAllowedError,
    HoldNotFoundError,
    InvalidAccessCodeError,
    NotAuthorizedError,
    PaymentInProgressError,
    SessionFullError,
)
from reservation_engine.domain.models import Actor, HoldRecord, Occupancy, PaymentRecord
from reservation_engine.domain.state_machine import HoldState, PaymentStatus, WaitlistStatus
from reservation_engine.infrastructure.db.models import Hold, Player, TrainingSession
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.locks import KeyedLockRegistry
from reservation_engine.infrastructure.repositories.catalog_repository import (
    PlayerRepository,
    SessionRepository,
)
from reservation_engine.infrastructure.repositories.code_repository import DiscountCodeRepository
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository
from reservation_engine.infrastructure.repositories.payment_repository import PaymentRepository
from reservation_engine.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)


def session_lock_key(session_id: str) -> str:
    return f"session:{session_id}"


def code_lock_key(code_id: str | None) -> str | None:
    return f"code:{code_id}" if code_id else None


def ensure_can_act_for(actor: Actor, player: Player) -> None:
    if actor.is_admin or player.is_guardian(actor.user_id):
        return
    raise NotAuthorizedError(f"{actor.user_id} may not act for player {player.id}")


class ReservationService:
    """
    Application service coordinating the hold lifecycle:
    create (seat taken), confirm (seat kept), cancel/expire (seat freed).

    Only create and capacity adjustment are serialized per session. The
    other transitions are guarded UPDATEs on the hold row, so two callers
    racing on one hold produce exactly one winner.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: EngineSettings,
        locks: KeyedLockRegistry,
        clock: Clock = utc_now,
        dispatcher: NotificationDispatcher | None = None,
        waitlist=None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.locks = locks
        self.clock = clock
        self.dispatcher = dispatcher
        # WaitlistService; offered freed seats when set.
        self.waitlist = waitlist

    # -----------------------------
    # Create
    # -----------------------------
    def create_reservation(
        self,
        player_id: str,
        session_id: str,
        access_code: str | None = None,
        discount_code: str | None = None,
        actor: Actor | None = None,
    ) -> HoldRecord:
        now = self.clock()

        # Input checks that need no lock; a failure here writes nothing.
        with transaction(self.session_factory) as db:
            session = SessionRepository(db).require(session_id)
            player = PlayerRepository(db).require(player_id)
            if actor is not None:
                ensure_can_act_for(actor, player)
            validator = CodeValidator(db)
            self._ensure_bookable(session, player, access_code, now, validator)

            code_id = None
            if discount_code:
                discount = validator.find_discount(session.tenant_id, discount_code)
                validator.validate_discount(discount, session.price_cents, now, player)
                code_id = discount.id

        try:
            with self.locks.hold_all(session_lock_key(session_id), code_lock_key(code_id)):
                with transaction(self.session_factory) as db:
                    # Clock is re-read under the lock; waiting may have moved it.
                    hold = self._insert_hold(db, session_id, player_id, code_id, self.clock())
                    record = HoldRepository.to_record(hold)
        except IntegrityError as exc:
            # Another process inserted a pending hold for the same player first.
            raise AlreadyHeldError(player_id, session_id) from exc

        logger.info(
            "Hold %s created for player %s in session %s, expires %s",
            record.id,
            player_id,
            session_id,
            record.expires_at.isoformat(),
        )
        self._notify()
        return record

    def _ensure_bookable(
        self,
        session: TrainingSession,
        player: Player,
        access_code: str | None,
        now,
        validator: CodeValidator,
    ) -> None:
        tenant = self.settings.tenant(session.tenant_id)
        window = booking_window_for(
            session.booking_policy,
            open_hour=session.booking_open_hour,
            open_minute=session.booking_open_minute,
            hours_before=session.booking_open_hours_before,
            timezone_name=tenant.timezone,
        )
        ensure_booking_open(window, session.starts_at, now)
        ensure_eligible(
            age_groups=session.age_groups,
            genders=session.genders,
            birth_year=player.birth_year,
            gender=player.gender,
            today=now,
        )
        if not validator.validate_access(session, access_code):
            raise InvalidAccessCodeError()

    def _insert_hold(
        self,
        db: Session,
        session_id: str,
        player_id: str,
        code_id: str | None,
        now,
    ) -> Hold:
        session = SessionRepository(db).lock(session_id)
        player = PlayerRepository(db).require(player_id)

        ok, reason = CapacityLedger(db).try_reserve_seat(session, player_id, now)
        if not ok:
            if reason == ALREADY_HELD:
                raise AlreadyHeldError(player_id, session_id)
            raise SessionFullError(session_id)

        price_cents = session.price_cents
        if code_id:
            discount = DiscountCodeRepository(db).lock(code_id)
            quote = CodeValidator(db).validate_discount(discount, session.price_cents, now, player)
            price_cents = quote.discounted_price_cents

        tenant = self.settings.tenant(session.tenant_id)
        hold = HoldRepository(db).add(
            session_id=session_id,
            player_id=player_id,
            created_at=now,
            expires_at=now + timedelta(seconds=tenant.hold_ttl_seconds),
            original_price_cents=session.price_cents,
            price_cents=price_cents,
            discount_code_id=code_id,
        )
        add_hold_event(db, hold, HOLD_CREATED, now, discount_code_id=code_id)
        return hold

    # -----------------------------
    # Confirm
    # -----------------------------
    def confirm_reservation(self, hold_id: str, payment_record: PaymentRecord) -> HoldRecord:
        """
        pending -> confirmed. The payment is persisted with the hold: a
        record without id (manual or free) is inserted as succeeded, an
        existing processing payment is marked succeeded.

        Raises AlreadyTerminalError when the hold expired or was cancelled
        first. A replay for the payment that already confirmed the hold
        returns the confirmed hold.
        """
        now = self.clock()
        lost_to: str | None = None

        try:
            with transaction(self.session_factory) as db:
                record, lost_to = self._confirm_in_tx(db, hold_id, payment_record, now)
        except IntegrityError as exc:
            # Only the one-active-payment-per-hold index can fire here.
            raise PaymentInProgressError(hold_id) from exc

        self._notify()
        if lost_to is not None:
            if lost_to == HoldState.EXPIRED.value:
                self.offer_freed_seat(record.session_id)
            raise AlreadyTerminalError(hold_id, lost_to)

        logger.info("Hold %s confirmed via %s", hold_id, payment_record.provider.value)
        return record

    def _confirm_in_tx(
        self,
        db: Session,
        hold_id: str,
        payment_record: PaymentRecord,
        now,
    ) -> tuple[HoldRecord, str | None]:
        """
        Returns (hold, None) on success, or (hold, state) when the hold was
        found overdue and expired here. The expiry must commit, so it is
        reported instead of raised.
        """
        holds = HoldRepository(db)
        hold = holds.get_for_update(hold_id)
        if not hold:
            raise HoldNotFoundError(hold_id)

        if (
            hold.state == HoldState.CONFIRMED
            and payment_record.id is not None
            and hold.payment_id == payment_record.id
        ):
            return HoldRepository.to_record(hold), None

        if hold.state != HoldState.PENDING:
            raise AlreadyTerminalError(hold_id, hold.state.value)

        if expire_if_overdue(db, hold, now) or hold.state != HoldState.PENDING:
            return HoldRepository.to_record(hold), hold.state.value

        payment_id = self._persist_payment(db, payment_record, now)

        won = holds.compare_and_set(
            hold_id,
            HoldState.PENDING,
            HoldState.CONFIRMED,
            live_at=now,
            payment_id=payment_id,
            resolved_at=now,
            resolved_by=payment_record.provider.value,
        )
        db.refresh(hold)
        if not won:
            raise AlreadyTerminalError(hold_id, hold.state.value)

        if hold.discount_code_id and not DiscountCodeRepository(db).commit_use(hold.discount_code_id):
            logger.warning(
                "Discount code %s was over its limit when hold %s confirmed",
                hold.discount_code_id,
                hold_id,
            )

        add_hold_event(db, hold, HOLD_CONFIRMED, now, payment_id=payment_id)
        close_waitlist_offer(db, hold, WaitlistStatus.ACCEPTED, now)
        return HoldRepository.to_record(hold), None

    def _persist_payment(self, db: Session, payment_record: PaymentRecord, now) -> str:
        payments = PaymentRepository(db)

        if payment_record.id is None:
            payment = payments.add(
                hold_id=payment_record.hold_id,
                provider=payment_record.provider,
                amount_cents=payment_record.amount_cents,
                currency=payment_record.currency,
                status=PaymentStatus.SUCCEEDED,
                now=now,
                transaction_id=payment_record.transaction_id,
            )
            return payment.id

        payment = payments.get_by_id(payment_record.id)
        if payment and payment.status == PaymentStatus.PROCESSING:
            payments.compare_and_set_status(
                payment.id,
                PaymentStatus.PROCESSING,
                PaymentStatus.SUCCEEDED,
                now,
                transaction_id=payment_record.transaction_id or payment.transaction_id,
            )
        return payment_record.id

    # -----------------------------
    # Cancel / extend / expire
    # -----------------------------
    def cancel_reservation(self, hold_id: str, actor: Actor) -> HoldRecord:
        """
        pending -> cancelled. Idempotent: a hold that is already terminal
        (or turns out to be overdue) is returned unchanged in its final state.
        """
        now = self.clock()
        cancelled = expired = False

        with transaction(self.session_factory) as db:
            hold = HoldRepository(db).get_by_id(hold_id)
            if not hold:
                raise HoldNotFoundError(hold_id)
            ensure_can_act_for(actor, PlayerRepository(db).require(hold.player_id))

            if hold.state == HoldState.PENDING:
                expired = expire_if_overdue(db, hold, now)
                if not expired:
                    cancelled = cancel_if_live(db, hold, now, actor.user_id)

            record = HoldRepository.to_record(hold)

        if cancelled:
            logger.info("Hold %s cancelled by %s", hold_id, actor.user_id)
        self._notify()
        if cancelled or expired:
            self.offer_freed_seat(record.session_id)
        return record

    def extend_reservation(self, hold_id: str, minutes: int, actor: Actor) -> HoldRecord:
        if minutes <= 0 or minutes > self.settings.max_extension_minutes:
            raise ExtensionNotAllowedError(
                f"Extension must be between 1 and {self.settings.max_extension_minutes} minutes"
            )

        now = self.clock()
        lost_to: str | None = None

        with transaction(self.session_factory) as db:
            holds = HoldRepository(db)
            hold = holds.get_by_id(hold_id)
            if not hold:
                raise HoldNotFoundError(hold_id)
            ensure_can_act_for(actor, PlayerRepository(db).require(hold.player_id))

            if hold.state != HoldState.PENDING:
                raise AlreadyTerminalError(hold_id, hold.state.value)

            if expire_if_overdue(db, hold, now) or hold.state != HoldState.PENDING:
                lost_to = hold.state.value
            else:
                if WaitlistRepository(db).get_by_hold(hold_id) is not None:
                    raise ExtensionNotAllowedError("A waitlist offer cannot be extended")
                if hold.extension_count >= self.settings.max_hold_extensions:
                    raise ExtensionNotAllowedError(
                        f"Reservation {hold_id} was already extended {hold.extension_count} time(s)"
                    )
                new_expires_at = hold.expires_at + timedelta(minutes=minutes)
                if not holds.extend(hold_id, hold.extension_count, new_expires_at, now):
                    db.refresh(hold)
                    if hold.state != HoldState.PENDING:
                        raise AlreadyTerminalError(hold_id, hold.state.value)
                    raise ExtensionNotAllowedError(f"Reservation {hold_id} was extended concurrently")
                db.refresh(hold)
                add_hold_event(
                    db,
                    hold,
                    HOLD_EXTENDED,
                    now,
                    dedupe_suffix=f":{hold.extension_count}",
                    extended_by=actor.user_id,
                )
            record = HoldRepository.to_record(hold)

        self._notify()
        if lost_to is not None:
            self.offer_freed_seat(record.session_id)
            raise AlreadyTerminalError(hold_id, lost_to)

        logger.info("Hold %s extended by %s min to %s", hold_id, minutes, record.expires_at.isoformat())
        return record

    def expire_hold(self, hold_id: str) -> bool:
        """Expires one overdue hold; True when this call did the transition."""
        with transaction(self.session_factory) as db:
            hold = HoldRepository(db).get_by_id(hold_id)
            won = hold is not None and expire_if_overdue(db, hold, self.clock())
        if won:
            self._notify()
            self.offer_freed_seat(hold.session_id)
        return won

    # -----------------------------
    # Reads
    # -----------------------------
    def get_hold(self, hold_id: str, actor: Actor | None = None) -> HoldRecord:
        """Reads a hold, expiring it first when it is overdue."""
        with transaction(self.session_factory) as db:
            hold = HoldRepository(db).get_by_id(hold_id)
            if not hold:
                raise HoldNotFoundError(hold_id)
            if actor is not None:
                ensure_can_act_for(actor, PlayerRepository(db).require(hold.player_id))
            expired = expire_if_overdue(db, hold, self.clock())
            record = HoldRepository.to_record(hold)

        if expired:
            self._notify()
            self.offer_freed_seat(record.session_id)
        return record

    def get_occupancy(self, session_id: str) -> Occupancy:
        with transaction(self.session_factory) as db:
            session = SessionRepository(db).require(session_id)
            return CapacityLedger(db).occupancy(session, self.clock())

    def get_remaining_capacity(self, session_id: str) -> int:
        return self.get_occupancy(session_id).remaining

    def adjust_capacity(self, session_id: str, new_capacity: int, actor: Actor) -> Occupancy:
        if not actor.is_admin:
            raise NotAuthorizedError("Only administrators may change session capacity")

        with self.locks.hold(session_lock_key(session_id)):
            with transaction(self.session_factory) as db:
                session = SessionRepository(db).lock(session_id)
                occupancy = CapacityLedger(db).set_capacity(session, new_capacity, self.clock())

        if occupancy.remaining:
            self.offer_freed_seat(session_id)
            return self.get_occupancy(session_id)
        return occupancy

    def _notify(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.kick()

    def offer_freed_seat(self, session_id: str) -> None:
        if self.waitlist is not None:
            self.waitlist.offer_released_seats(session_id)
