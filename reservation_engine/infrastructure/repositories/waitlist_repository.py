# reservation_engine/infrastructure/repositories/waitlist_repository.py

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from reservation_engine.domain.models import WaitlistRecord
from reservation_engine.domain.state_machine import WaitlistStateMachine, WaitlistStatus
from reservation_engine.infrastructure.db.models import TrainingSession, WaitlistEntry


LIVE_STATUSES = (WaitlistStatus.WAITING, WaitlistStatus.OFFERED)


class WaitlistRepository:
    """
    Waitlist entries per session. Like holds, every status change is an
    UPDATE guarded by the expected source status.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, entry_id: str) -> WaitlistEntry | None:
        stmt = select(WaitlistEntry).where(WaitlistEntry.id == entry_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_update(self, entry_id: str) -> WaitlistEntry | None:
        stmt = select(WaitlistEntry).where(WaitlistEntry.id == entry_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_hold(self, hold_id: str) -> WaitlistEntry | None:
        stmt = select(WaitlistEntry).where(WaitlistEntry.hold_id == hold_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_live(self, session_id: str, player_id: str) -> WaitlistEntry | None:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.session_id == session_id)
            .where(WaitlistEntry.player_id == player_id)
            .where(WaitlistEntry.status.in_(LIVE_STATUSES))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_waiting(self, session_id: str) -> list[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.session_id == session_id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .order_by(WaitlistEntry.queue_number)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_session(self, session_id: str) -> list[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.session_id == session_id)
            .order_by(WaitlistEntry.queue_number)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_waiting(self, session_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(WaitlistEntry)
            .where(WaitlistEntry.session_id == session_id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
        )
        return int(self.db.execute(stmt).scalar_one())

    def position(self, entry: WaitlistEntry) -> int | None:
        """1-based rank among the waiting entries; None once the entry left the queue."""
        if entry.status != WaitlistStatus.WAITING:
            return None
        stmt = (
            select(func.count())
            .select_from(WaitlistEntry)
            .where(WaitlistEntry.session_id == entry.session_id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .where(WaitlistEntry.queue_number < entry.queue_number)
        )
        return int(self.db.execute(stmt).scalar_one()) + 1

    def add(self, session_id: str, player_id: str, parent_id: str, now: datetime) -> WaitlistEntry:
        # Callers hold the session lock, so the next number cannot be taken concurrently.
        stmt = select(func.coalesce(func.max(WaitlistEntry.queue_number), 0)).where(
            WaitlistEntry.session_id == session_id
        )
        queue_number = int(self.db.execute(stmt).scalar_one()) + 1

        entry = WaitlistEntry(
            session_id=session_id,
            player_id=player_id,
            parent_id=parent_id,
            queue_number=queue_number,
            status=WaitlistStatus.WAITING,
            created_at=now,
        )
        self.db.add(entry)
        # Surfaces the one-live-entry-per-player index violation here.
        self.db.flush()
        return entry

    def compare_and_set(
        self,
        entry_id: str,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        *,
        live_at: datetime | None = None,
        **values,
    ) -> bool:
        """
        Moves an entry from `from_status` to `to_status` only if it is still
        there. `live_at` additionally requires an unexpired offer.
        """
        WaitlistStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry_id)
            .where(WaitlistEntry.status == from_status)
        )
        if live_at is not None:
            stmt = stmt.where(WaitlistEntry.offer_expires_at > live_at)

        stmt = stmt.values(status=to_status, **values).execution_options(
            synchronize_session=False
        )
        return self.db.execute(stmt).rowcount == 1

    def close_offer(self, hold_id: str, to_status: WaitlistStatus, now: datetime) -> WaitlistEntry | None:
        """Ends the open offer backed by `hold_id`; returns the entry when this call closed it."""
        entry = self.get_by_hold(hold_id)
        if entry is None or entry.status != WaitlistStatus.OFFERED:
            return None
        if not self.compare_and_set(entry.id, WaitlistStatus.OFFERED, to_status, resolved_at=now):
            return None
        self.db.refresh(entry)
        return entry

    def list_overdue_offer_hold_ids(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(WaitlistEntry.hold_id)
            .where(WaitlistEntry.status == WaitlistStatus.OFFERED)
            .where(WaitlistEntry.offer_expires_at <= now)
            .order_by(WaitlistEntry.offer_expires_at)
            .limit(limit)
        )
        return [hold_id for hold_id in self.db.execute(stmt).scalars().all() if hold_id]

    def list_sessions_with_waiting(self, now: datetime, limit: int) -> list[str]:
        """Upcoming auto-promoting sessions that still have players waiting."""
        stmt = (
            select(WaitlistEntry.session_id)
            .join(TrainingSession, TrainingSession.id == WaitlistEntry.session_id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .where(TrainingSession.auto_promote.is_(True))
            .where(TrainingSession.starts_at > now)
            .distinct()
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def expire_waiting_for_started_sessions(self, now: datetime) -> int:
        """Nobody can be offered a seat once the session has started."""
        started = select(TrainingSession.id).where(TrainingSession.starts_at <= now)
        stmt = (
            update(WaitlistEntry)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .where(WaitlistEntry.session_id.in_(started))
            .values(status=WaitlistStatus.EXPIRED, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def to_record(self, entry: WaitlistEntry) -> WaitlistRecord:
        return WaitlistRecord(
            id=entry.id,
            session_id=entry.session_id,
            player_id=entry.player_id,
            parent_id=entry.parent_id,
            status=entry.status,
            created_at=entry.created_at,
            position=self.position(entry),
            offer_expires_at=entry.offer_expires_at,
            hold_id=entry.hold_id,
            resolved_at=entry.resolved_at,
        )
