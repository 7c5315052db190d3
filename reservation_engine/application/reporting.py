# reservation_engine/application/reporting.py

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.models import PaymentRecord
from reservation_engine.domain.state_machine import HoldState, PaymentStatus
from reservation_engine.infrastructure.db.models import Hold, Payment, Player, TrainingSession
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.repositories.payment_repository import PaymentRepository


@dataclass(frozen=True)
class HoldView:
    """Admin-facing row: a hold with its effective state at read time."""

    hold_id: str
    session_id: str
    session_title: str
    player_id: str
    player_name: str
    state: HoldState
    created_at: datetime
    expires_at: datetime
    price_cents: int
    original_price_cents: int
    discount_code_id: str | None
    payment_id: str | None
    extension_count: int
    resolved_at: datetime | None
    resolved_by: str | None


class ReportingService:
    """
    Read-only queries for admin and reporting screens. Pending holds past
    their expiry are reported as expired even before the reaper runs.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock = utc_now):
        self.session_factory = session_factory
        self.clock = clock

    def list_holds(
        self,
        session_id: str | None = None,
        player_id: str | None = None,
        state: HoldState | None = None,
        limit: int = 100,
    ) -> list[HoldView]:
        now = self.clock()
        stmt = (
            select(Hold, TrainingSession.title, Player.first_name, Player.last_name)
            .join(TrainingSession, TrainingSession.id == Hold.session_id)
            .join(Player, Player.id == Hold.player_id)
            .order_by(Hold.created_at.desc())
        )
        if session_id:
            stmt = stmt.where(Hold.session_id == session_id)
        if player_id:
            stmt = stmt.where(Hold.player_id == player_id)

        if state == HoldState.PENDING:
            stmt = stmt.where(Hold.state == HoldState.PENDING).where(Hold.expires_at > now)
        elif state == HoldState.EXPIRED:
            stmt = stmt.where(
                (Hold.state == HoldState.EXPIRED)
                | ((Hold.state == HoldState.PENDING) & (Hold.expires_at <= now))
            )
        elif state is not None:
            stmt = stmt.where(Hold.state == state)

        stmt = stmt.limit(max(1, min(limit, 500)))

        with transaction(self.session_factory) as db:
            rows = db.execute(stmt).all()
            return [
                HoldView(
                    hold_id=hold.id,
                    session_id=hold.session_id,
                    session_title=title,
                    player_id=hold.player_id,
                    player_name=f"{first_name} {last_name}",
                    state=(
                        HoldState.EXPIRED
                        if hold.state == HoldState.PENDING and hold.expires_at <= now
                        else hold.state
                    ),
                    created_at=hold.created_at,
                    expires_at=hold.expires_at,
                    price_cents=hold.price_cents,
                    original_price_cents=hold.original_price_cents,
                    discount_code_id=hold.discount_code_id,
                    payment_id=hold.payment_id,
                    extension_count=hold.extension_count,
                    resolved_at=hold.resolved_at,
                    resolved_by=hold.resolved_by,
                )
                for hold, title, first_name, last_name in rows
            ]

    def list_payments(
        self,
        hold_id: str | None = None,
        status: PaymentStatus | None = None,
        limit: int = 100,
    ) -> list[PaymentRecord]:
        stmt = select(Payment).order_by(Payment.created_at.desc())
        if hold_id:
            stmt = stmt.where(Payment.hold_id == hold_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.limit(max(1, min(limit, 500)))

        with transaction(self.session_factory) as db:
            return [PaymentRepository.to_record(payment) for payment in db.execute(stmt).scalars().all()]
