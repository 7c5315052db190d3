# reservation_engine/infrastructure/repositories/outbox_repository.py

import json
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reservation_engine.infrastructure.db.models import OutboxEvent


PENDING = "PENDING"
PUBLISHED = "PUBLISHED"
FAILED = "FAILED"


class OutboxRepository:
    """
    Notification events written in the same transaction as the state
    change that caused them; delivered after commit.
    """

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
        now: datetime,
    ) -> OutboxEvent | None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return None

        event = OutboxEvent(
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=json.dumps(payload, sort_keys=True, default=str),
            dedupe_key=dedupe_key,
            status=PENDING,
            attempts=0,
            created_at=now,
        )
        self.db.add(event)
        self.db.flush()
        return event

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        return self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()

    def list_by_status(self, status: str, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_deliverable(self, max_attempts: int, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == PENDING)
            .where(OutboxEvent.attempts < max_attempts)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def mark_published(self, event_id: str, now: datetime) -> bool:
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .where(OutboxEvent.status == PENDING)
            .values(status=PUBLISHED, published_at=now, attempts=OutboxEvent.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def record_failure(self, event_id: str, error: str, max_attempts: int) -> None:
        event = self.get_by_id(event_id)
        if event is None or event.status != PENDING:
            return
        event.attempts += 1
        event.last_error = error[:1000]
        if event.attempts >= max_attempts:
            event.status = FAILED
        self.db.flush()
