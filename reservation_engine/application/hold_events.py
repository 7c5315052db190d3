# reservation_engine/application/hold_events.py

"""
Hold transitions shared by the reservation service, payment orchestrator,
waitlist and expiry reaper. Each helper runs inside the caller's
transaction and writes the matching outbox event next to the state change.

A waitlist offer is backed by a pending hold, so whatever ends that hold
also ends the offer (see `close_waitlist_offer`).
"""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from reservation_engine.domain.state_machine import HoldState, WaitlistStatus
from reservation_engine.infrastructure.db.models import Hold, Player, TrainingSession, WaitlistEntry
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from reservation_engine.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)

HOLD_CREATED = "HOLD_CREATED"
HOLD_CONFIRMED = "HOLD_CONFIRMED"
HOLD_EXPIRED = "HOLD_EXPIRED"
HOLD_CANCELLED = "HOLD_CANCELLED"
HOLD_EXTENDED = "HOLD_EXTENDED"
PAYMENT_REFUNDED = "PAYMENT_REFUNDED"

WAITLIST_JOINED = "WAITLIST_JOINED"
WAITLIST_OFFERED = "WAITLIST_OFFERED"
WAITLIST_OFFER_ACCEPTED = "WAITLIST_OFFER_ACCEPTED"
WAITLIST_OFFER_EXPIRED = "WAITLIST_OFFER_EXPIRED"
WAITLIST_LEFT = "WAITLIST_LEFT"

_OFFER_CLOSED_EVENTS = {
    WaitlistStatus.ACCEPTED: WAITLIST_OFFER_ACCEPTED,
    WaitlistStatus.EXPIRED: WAITLIST_OFFER_EXPIRED,
    WaitlistStatus.LEFT: WAITLIST_LEFT,
}

SYSTEM_ACTOR = "system"


def add_hold_event(
    db: Session,
    hold: Hold,
    event_type: str,
    now: datetime,
    dedupe_suffix: str = "",
    **extra,
) -> None:
    player = db.get(Player, hold.player_id)
    session = db.get(TrainingSession, hold.session_id)
    payload = {
        "hold_id": hold.id,
        "session_id": hold.session_id,
        "session_title": session.title if session else None,
        "player_id": hold.player_id,
        "player_name": player.full_name if player else None,
        "expires_at": hold.expires_at.isoformat(),
        "price_cents": hold.price_cents,
        "occurred_at": now.isoformat(),
    }
    payload.update(extra)
    OutboxRepository(db).add(
        aggregate_type="hold",
        aggregate_id=hold.id,
        event_type=event_type,
        payload=payload,
        dedupe_key=f"hold:{hold.id}:{event_type.lower()}{dedupe_suffix}",
        now=now,
    )


def expire_if_overdue(db: Session, hold: Hold, now: datetime) -> bool:
    """
    Moves an overdue pending hold to expired. Returns True only for the
    caller that performed the transition; a hold that is live, already
    terminal, or expired concurrently by someone else yields False.
    """
    if hold.state != HoldState.PENDING or hold.expires_at > now:
        return False

    holds = HoldRepository(db)
    won = holds.compare_and_set(
        hold.id,
        HoldState.PENDING,
        HoldState.EXPIRED,
        overdue_at=now,
        resolved_at=now,
        resolved_by=SYSTEM_ACTOR,
    )
    db.refresh(hold)
    if won:
        logger.info("Hold %s expired (session %s)", hold.id, hold.session_id)
        add_hold_event(db, hold, HOLD_EXPIRED, now)
        close_waitlist_offer(db, hold, WaitlistStatus.EXPIRED, now)
    return won


def cancel_if_live(db: Session, hold: Hold, now: datetime, cancelled_by: str) -> bool:
    """pending -> cancelled for a hold that is still live; True for the winner."""
    won = HoldRepository(db).compare_and_set(
        hold.id,
        HoldState.PENDING,
        HoldState.CANCELLED,
        live_at=now,
        resolved_at=now,
        resolved_by=cancelled_by,
    )
    db.refresh(hold)
    if won:
        add_hold_event(db, hold, HOLD_CANCELLED, now, cancelled_by=cancelled_by)
        close_waitlist_offer(db, hold, WaitlistStatus.LEFT, now)
    return won


def expire_by_id(db: Session, hold_id: str, now: datetime) -> bool:
    hold = HoldRepository(db).get_by_id(hold_id)
    if hold is None:
        return False
    return expire_if_overdue(db, hold, now)


def add_waitlist_event(
    db: Session,
    entry: WaitlistEntry,
    event_type: str,
    now: datetime,
    **extra,
) -> None:
    player = db.get(Player, entry.player_id)
    session = db.get(TrainingSession, entry.session_id)
    payload = {
        "waitlist_id": entry.id,
        "session_id": entry.session_id,
        "session_title": session.title if session else None,
        "player_id": entry.player_id,
        "player_name": player.full_name if player else None,
        "parent_id": entry.parent_id,
        "status": entry.status.value,
        "hold_id": entry.hold_id,
        "offer_expires_at": entry.offer_expires_at.isoformat() if entry.offer_expires_at else None,
        "occurred_at": now.isoformat(),
    }
    payload.update(extra)
    OutboxRepository(db).add(
        aggregate_type="waitlist",
        aggregate_id=entry.id,
        event_type=event_type,
        payload=payload,
        dedupe_key=f"waitlist:{entry.id}:{event_type.lower()}",
        now=now,
    )


def close_waitlist_offer(db: Session, hold: Hold, to_status: WaitlistStatus, now: datetime) -> bool:
    """Ends the offer backed by `hold`, if any. Returns True when an offer was closed."""
    entry = WaitlistRepository(db).close_offer(hold.id, to_status, now)
    if entry is None:
        return False
    logger.info("Waitlist offer %s %s (hold %s)", entry.id, to_status.value, hold.id)
    add_waitlist_event(db, entry, _OFFER_CLOSED_EVENTS[to_status], now)
    return True
