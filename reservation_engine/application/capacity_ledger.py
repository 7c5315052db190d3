# reservation_engine/application/capacity_ledger.py

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from reservation_engine.application.hold_events import expire_if_overdue
from reservation_engine.domain.exceptions import CapacityAdjustmentError
from reservation_engine.domain.models import Occupancy
from reservation_engine.domain.state_machine import HoldState
from reservation_engine.infrastructure.db.models import TrainingSession
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository
from reservation_engine.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)

FULL = "full"
ALREADY_HELD = "already_held"


class CapacityLedger:
    """
    Seat accounting for a session, derived from the hold rows themselves:
    occupied = confirmed + pending-and-unexpired. Nothing is cached, so a
    hold that passes its expiry frees its seat at that instant whether or
    not the reaper has visited it.

    Writers must hold the session lock (in-process and row lock) for the
    whole check-and-insert.
    """

    def __init__(self, db: Session):
        self.db = db
        self.hold_repository = HoldRepository(db)

    def occupancy(self, session: TrainingSession, now: datetime) -> Occupancy:
        confirmed, held = self.hold_repository.count_occupancy(session.id, now)
        return Occupancy(
            session_id=session.id,
            capacity=session.capacity,
            confirmed=confirmed,
            held=held,
        )

    def try_reserve_seat(
        self,
        session: TrainingSession,
        player_id: str,
        now: datetime,
        respect_waitlist: bool = True,
    ) -> tuple[bool, str | None]:
        """
        Checks whether `player_id` may take a seat in `session` right now.
        Returns (True, None) or (False, reason) with reason "full" or
        "already_held". An overdue pending hold of the same player is
        expired here so the new hold can take its place.

        While players are waiting, free seats belong to the waitlist and a
        direct booking sees the session as full. Offers pass
        `respect_waitlist=False`.
        """
        for hold in self.hold_repository.find_open_for_player(player_id, session.id):
            if hold.state == HoldState.PENDING and hold.expires_at <= now:
                expire_if_overdue(self.db, hold, now)
                continue
            return False, ALREADY_HELD

        occupancy = self.occupancy(session, now)
        if occupancy.is_full:
            logger.info(
                "Session %s full (%s confirmed, %s held, capacity %s)",
                session.id,
                occupancy.confirmed,
                occupancy.held,
                occupancy.capacity,
            )
            return False, FULL

        if respect_waitlist:
            waiting = WaitlistRepository(self.db).count_waiting(session.id)
            if waiting:
                logger.info(
                    "Session %s has %s free seat(s) kept for %s waiting player(s)",
                    session.id,
                    occupancy.remaining,
                    waiting,
                )
                return False, FULL

        return True, None

    def set_capacity(
        self,
        session: TrainingSession,
        new_capacity: int,
        now: datetime,
    ) -> Occupancy:
        if new_capacity <= 0:
            raise CapacityAdjustmentError("Capacity must be positive")

        occupancy = self.occupancy(session, now)
        if new_capacity < occupancy.occupied:
            raise CapacityAdjustmentError(
                f"Capacity {new_capacity} is below current occupancy {occupancy.occupied}"
            )

        logger.info(
            "Session %s capacity %s -> %s",
            session.id,
            session.capacity,
            new_capacity,
        )
        session.capacity = new_capacity
        self.db.flush()

        return Occupancy(
            session_id=session.id,
            capacity=new_capacity,
            confirmed=occupancy.confirmed,
            held=occupancy.held,
        )
