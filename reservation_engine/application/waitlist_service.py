# reservation_engine/application/waitlist_service.py

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.application.capacity_ledger import ALREADY_HELD, FULL, CapacityLedger
from reservation_engine.application.code_validator import CodeValidator
from reservation_engine.application.hold_events import (
    HOLD_CREATED,
    SYSTEM_ACTOR,
    WAITLIST_JOINED,
    WAITLIST_LEFT,
    WAITLIST_OFFER_ACCEPTED,
    WAITLIST_OFFERED,
    add_hold_event,
    add_waitlist_event,
    cancel_if_live,
    expire_by_id,
    expire_if_overdue,
)
from reservation_engine.application.notification_dispatcher import NotificationDispatcher
from reservation_engine.application.reservation_service import ensure_can_act_for, session_lock_key
from reservation_engine.config import EngineSettings
from reservation_engine.domain.booking_rules import ensure_eligible
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import (
    AlreadyHeldError,
    AlreadyWaitlistedError,
    ContentionError,
    InvalidAccessCodeError,
    NotAuthorizedError,
    WaitlistEntryNotFoundError,
    WaitlistOfferExpiredError,
    WaitlistOfferNotActiveError,
    WaitlistUnavailableError,
)
from reservation_engine.domain.models import Actor, WaitlistRecord
from reservation_engine.domain.state_machine import WaitlistStatus
from reservation_engine.infrastructure.db.models import TrainingSession, WaitlistEntry
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.locks import KeyedLockRegistry
from reservation_engine.infrastructure.repositories.catalog_repository import (
    PlayerRepository,
    SessionRepository,
)
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository
from reservation_engine.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)

WAITLIST_SETTING_FIELDS = ("waitlist_enabled", "waitlist_limit", "waitlist_offer_minutes", "auto_promote")
_REQUIRED_SETTINGS = ("waitlist_enabled", "auto_promote")


class WaitlistService:
    """
    First-come queue for full sessions.

    A freed seat is offered to the first waiting player as a pending hold
    that lives for the session's offer window. Paying for that hold (or
    accepting and then paying) keeps the seat; when the hold lapses the
    offer lapses with it and, with auto-promotion on, the next player in
    line is offered the seat.

    Offers are made under the session lock, like every other seat grab.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: EngineSettings,
        locks: KeyedLockRegistry,
        clock: Clock = utc_now,
        dispatcher: NotificationDispatcher | None = None,
        batch_size: int = 200,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.locks = locks
        self.clock = clock
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    # -----------------------------
    # Join / leave
    # -----------------------------
    def join_waitlist(
        self,
        session_id: str,
        player_id: str,
        actor: Actor,
        access_code: str | None = None,
    ) -> WaitlistRecord:
        now = self.clock()

        with transaction(self.session_factory) as db:
            session = SessionRepository(db).require(session_id)
            player = PlayerRepository(db).require(player_id)
            ensure_can_act_for(actor, player)
            if not session.waitlist_enabled:
                raise WaitlistUnavailableError(f"Session {session_id} has no waitlist")
            if now >= session.starts_at:
                raise WaitlistUnavailableError(f"Session {session_id} has already started")
            ensure_eligible(
                age_groups=session.age_groups,
                genders=session.genders,
                birth_year=player.birth_year,
                gender=player.gender,
                today=now,
            )
            if not CodeValidator(db).validate_access(session, access_code):
                raise InvalidAccessCodeError()

        try:
            with self.locks.hold(session_lock_key(session_id)):
                with transaction(self.session_factory) as db:
                    entry = self._insert_entry(db, session_id, player_id, self.clock())
                    record = WaitlistRepository(db).to_record(entry)
        except IntegrityError as exc:
            raise AlreadyWaitlistedError(player_id, session_id) from exc

        logger.info(
            "Player %s joined the waitlist of session %s at position %s",
            player_id,
            session_id,
            record.position,
        )
        self._notify()
        return record

    def _insert_entry(self, db: Session, session_id: str, player_id: str, now: datetime) -> WaitlistEntry:
        session = SessionRepository(db).lock(session_id)
        waitlist = WaitlistRepository(db)
        if waitlist.find_live(session_id, player_id) is not None:
            raise AlreadyWaitlistedError(player_id, session_id)

        ok, reason = CapacityLedger(db).try_reserve_seat(session, player_id, now)
        if reason == ALREADY_HELD:
            raise AlreadyHeldError(player_id, session_id)
        if ok:
            raise WaitlistUnavailableError(f"Session {session_id} has open seats; book directly")

        if session.waitlist_limit is not None and waitlist.count_waiting(session_id) >= session.waitlist_limit:
            raise WaitlistUnavailableError(f"The waitlist of session {session_id} is full")

        player = PlayerRepository(db).require(player_id)
        entry = waitlist.add(session_id, player_id, player.parent_id, now)
        add_waitlist_event(db, entry, WAITLIST_JOINED, now, position=waitlist.position(entry))
        return entry

    def leave_waitlist(self, entry_id: str, actor: Actor) -> WaitlistRecord:
        """
        Leaves the queue, or declines an open offer and frees its seat.
        Idempotent for entries that already left or ended.
        """
        now = self.clock()
        released = False

        with transaction(self.session_factory) as db:
            waitlist = WaitlistRepository(db)
            entry = self._require(waitlist, entry_id)
            ensure_can_act_for(actor, PlayerRepository(db).require(entry.player_id))

            if entry.status == WaitlistStatus.WAITING:
                if waitlist.compare_and_set(entry.id, WaitlistStatus.WAITING, WaitlistStatus.LEFT, resolved_at=now):
                    db.refresh(entry)
                    add_waitlist_event(db, entry, WAITLIST_LEFT, now, left_by=actor.user_id)
            elif entry.status == WaitlistStatus.OFFERED:
                hold = HoldRepository(db).get_by_id(entry.hold_id)
                released = expire_if_overdue(db, hold, now) or cancel_if_live(db, hold, now, actor.user_id)
                db.refresh(entry)

            record = waitlist.to_record(entry)

        logger.info("Waitlist entry %s is %s (by %s)", entry_id, record.status.value, actor.user_id)
        self._notify()
        if released:
            self.offer_released_seats(record.session_id)
        return record

    # -----------------------------
    # Offers
    # -----------------------------
    def accept_waitlist_offer(self, entry_id: str, actor: Actor) -> WaitlistRecord:
        """
        Accepts an open offer; the seat stays reserved until the offer window
        closes, and paying for `hold_id` confirms it. Raises
        WaitlistOfferExpiredError once the window has passed.
        """
        now = self.clock()
        lapsed = False

        with transaction(self.session_factory) as db:
            waitlist = WaitlistRepository(db)
            entry = waitlist.get_for_update(entry_id)
            if entry is None:
                raise WaitlistEntryNotFoundError(entry_id)
            ensure_can_act_for(actor, PlayerRepository(db).require(entry.player_id))

            if entry.status == WaitlistStatus.OFFERED:
                hold = HoldRepository(db).get_by_id(entry.hold_id)
                if expire_if_overdue(db, hold, now):
                    lapsed = True
                elif waitlist.compare_and_set(
                    entry.id,
                    WaitlistStatus.OFFERED,
                    WaitlistStatus.ACCEPTED,
                    live_at=now,
                    resolved_at=now,
                ):
                    db.refresh(entry)
                    add_waitlist_event(db, entry, WAITLIST_OFFER_ACCEPTED, now, accepted_by=actor.user_id)
                db.refresh(entry)

            record = waitlist.to_record(entry)

        self._notify()
        if lapsed:
            self.offer_released_seats(record.session_id)

        if record.status == WaitlistStatus.EXPIRED and record.hold_id is not None:
            raise WaitlistOfferExpiredError(entry_id)
        if record.status != WaitlistStatus.ACCEPTED:
            raise WaitlistOfferNotActiveError(entry_id, record.status.value)

        logger.info("Waitlist offer %s accepted; hold %s awaits payment", entry_id, record.hold_id)
        return record

    def promote_from_waitlist(
        self,
        session_id: str,
        actor: Actor,
        player_id: str | None = None,
    ) -> WaitlistRecord:
        """Offers a free seat to `player_id`, or to the first player in line."""
        if not actor.is_admin:
            raise NotAuthorizedError("Only administrators may promote from a waitlist")

        with self.locks.hold(session_lock_key(session_id)):
            with transaction(self.session_factory) as db:
                session = SessionRepository(db).lock(session_id)
                entry = self._offer_next(db, session, self.clock(), player_id=player_id)
                if entry is None:
                    if player_id is not None:
                        raise WaitlistUnavailableError(
                            f"Player {player_id} cannot be offered a seat in session {session_id}"
                        )
                    raise WaitlistUnavailableError(f"Session {session_id} has no seat to offer or nobody waiting")
                record = WaitlistRepository(db).to_record(entry)

        self._notify()
        return record

    def fill_open_seats(self, session_id: str) -> list[WaitlistRecord]:
        """Offers every free seat of an auto-promoting session, in queue order."""
        offered: list[WaitlistRecord] = []

        with self.locks.hold(session_lock_key(session_id)):
            with transaction(self.session_factory) as db:
                session = SessionRepository(db).lock(session_id)
                if not session.auto_promote:
                    return offered
                now = self.clock()
                waitlist = WaitlistRepository(db)
                while True:
                    entry = self._offer_next(db, session, now)
                    if entry is None:
                        break
                    offered.append(waitlist.to_record(entry))

        if offered:
            logger.info("Offered %s seat(s) of session %s to its waitlist", len(offered), session_id)
            self._notify()
        return offered

    def offer_released_seats(self, session_id: str) -> list[WaitlistRecord]:
        """
        Called after a seat was freed. A failure here must not undo the
        release that triggered it; the reaper's sweep offers the seat later.
        """
        try:
            return self.fill_open_seats(session_id)
        except (ContentionError, SQLAlchemyError) as exc:
            logger.warning("Waitlist offers for session %s deferred to the next sweep: %s", session_id, exc)
            return []

    def _offer_next(
        self,
        db: Session,
        session: TrainingSession,
        now: datetime,
        player_id: str | None = None,
    ) -> WaitlistEntry | None:
        if now >= session.starts_at:
            return None

        waitlist = WaitlistRepository(db)
        if player_id is not None:
            entry = waitlist.find_live(session.id, player_id)
            candidates = [entry] if entry is not None and entry.status == WaitlistStatus.WAITING else []
        else:
            candidates = waitlist.list_waiting(session.id)

        ledger = CapacityLedger(db)
        for entry in candidates:
            ok, reason = ledger.try_reserve_seat(session, entry.player_id, now, respect_waitlist=False)
            if reason == FULL:
                return None
            if reason == ALREADY_HELD:
                # The player already has a seat in this session.
                if waitlist.compare_and_set(entry.id, WaitlistStatus.WAITING, WaitlistStatus.LEFT, resolved_at=now):
                    db.refresh(entry)
                    add_waitlist_event(db, entry, WAITLIST_LEFT, now, left_by=SYSTEM_ACTOR)
                continue
            if self._make_offer(db, session, entry, now):
                return entry
        return None

    def _make_offer(self, db: Session, session: TrainingSession, entry: WaitlistEntry, now: datetime) -> bool:
        minutes = session.waitlist_offer_minutes or self.settings.waitlist_offer_minutes
        expires_at = now + timedelta(minutes=minutes)

        waitlist = WaitlistRepository(db)
        if not waitlist.compare_and_set(
            entry.id,
            WaitlistStatus.WAITING,
            WaitlistStatus.OFFERED,
            offer_expires_at=expires_at,
        ):
            # Left the queue while we were looking.
            return False

        hold = HoldRepository(db).add(
            session_id=session.id,
            player_id=entry.player_id,
            created_at=now,
            expires_at=expires_at,
            original_price_cents=session.price_cents,
            price_cents=session.price_cents,
            discount_code_id=None,
        )
        db.refresh(entry)
        entry.hold_id = hold.id
        db.flush()

        add_hold_event(db, hold, HOLD_CREATED, now, waitlist_id=entry.id)
        add_waitlist_event(db, entry, WAITLIST_OFFERED, now)
        logger.info(
            "Seat in session %s offered to player %s until %s (hold %s)",
            session.id,
            entry.player_id,
            expires_at.isoformat(),
            hold.id,
        )
        return True

    # -----------------------------
    # Sweeps
    # -----------------------------
    def process_expired_offers(self) -> int:
        """Expires lapsed offers and passes their seats down the queue."""
        now = self.clock()
        with transaction(self.session_factory) as db:
            hold_ids = WaitlistRepository(db).list_overdue_offer_hold_ids(now, self.batch_size)

        expired = 0
        session_ids: set[str] = set()
        for hold_id in hold_ids:
            try:
                with transaction(self.session_factory) as db:
                    if expire_by_id(db, hold_id, now):
                        expired += 1
                        session_ids.add(HoldRepository(db).get_by_id(hold_id).session_id)
            except SQLAlchemyError:
                logger.exception("Could not expire offer hold %s; will retry next sweep", hold_id)

        if expired:
            logger.info("Expired %s waitlist offer(s)", expired)
            self._notify()
        for session_id in sorted(session_ids):
            self.offer_released_seats(session_id)
        return expired

    def sweep(self) -> int:
        """
        Reaper hook: expires lapsed offers, closes queues of sessions that
        started, and offers any free seat to waiting players. Returns the
        number of offers made.
        """
        self.process_expired_offers()

        now = self.clock()
        with transaction(self.session_factory) as db:
            waitlist = WaitlistRepository(db)
            closed = waitlist.expire_waiting_for_started_sessions(now)
            session_ids = waitlist.list_sessions_with_waiting(now, self.batch_size)
        if closed:
            logger.info("Closed %s waitlist entries of sessions that already started", closed)

        offered = 0
        for session_id in session_ids:
            offered += len(self.offer_released_seats(session_id))
        return offered

    # -----------------------------
    # Reads / settings
    # -----------------------------
    def get_entry(self, entry_id: str, actor: Actor) -> WaitlistRecord:
        """Reads an entry, expiring its offer first when the window has passed."""
        lapsed = False
        with transaction(self.session_factory) as db:
            waitlist = WaitlistRepository(db)
            entry = self._require(waitlist, entry_id)
            ensure_can_act_for(actor, PlayerRepository(db).require(entry.player_id))
            if entry.status == WaitlistStatus.OFFERED:
                lapsed = expire_if_overdue(db, HoldRepository(db).get_by_id(entry.hold_id), self.clock())
                db.refresh(entry)
            record = waitlist.to_record(entry)

        if lapsed:
            self._notify()
            self.offer_released_seats(record.session_id)
        return record

    def list_waitlist(self, session_id: str, actor: Actor) -> list[WaitlistRecord]:
        if not actor.is_admin:
            raise NotAuthorizedError("Only administrators may list a waitlist")
        with transaction(self.session_factory) as db:
            SessionRepository(db).require(session_id)
            waitlist = WaitlistRepository(db)
            return [waitlist.to_record(entry) for entry in waitlist.list_for_session(session_id)]

    def update_waitlist_settings(self, session_id: str, changes: dict, actor: Actor) -> dict:
        if not actor.is_admin:
            raise NotAuthorizedError("Only administrators may change waitlist settings")
        with self.locks.hold(session_lock_key(session_id)):
            with transaction(self.session_factory) as db:
                session = SessionRepository(db).lock(session_id)
                for name, value in changes.items():
                    if value is None and name in _REQUIRED_SETTINGS:
                        continue
                    setattr(session, name, value)
                db.flush()
                settings = {name: getattr(session, name) for name in WAITLIST_SETTING_FIELDS}

        logger.info("Waitlist settings of session %s updated: %s", session_id, changes)
        if settings["auto_promote"]:
            self.offer_released_seats(session_id)
        return settings

    @staticmethod
    def _require(waitlist: WaitlistRepository, entry_id: str) -> WaitlistEntry:
        entry = waitlist.get_by_id(entry_id)
        if entry is None:
            raise WaitlistEntryNotFoundError(entry_id)
        return entry

    def _notify(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.kick()
