# reservation_engine/infrastructure/repositories/hold_repository.py

from datetime import datetime

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.orm import Session

from reservation_engine.domain.models import HoldRecord
from reservation_engine.domain.state_machine import HoldState, HoldStateMachine
from reservation_engine.infrastructure.db.models import Hold


class HoldRepository:
    """
    Durable hold store.

    State changes never read-modify-write: each one is an UPDATE guarded by
    the expected source state (and, where relevant, the expiry instant), so
    concurrent writers resolve to exactly one winner.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, hold_id: str) -> Hold | None:
        stmt = select(Hold).where(Hold.id == hold_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_update(self, hold_id: str) -> Hold | None:
        stmt = select(Hold).where(Hold.id == hold_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def find_open_for_player(self, player_id: str, session_id: str) -> list[Hold]:
        """Pending or confirmed holds the player has on a session."""
        stmt = (
            select(Hold)
            .where(Hold.player_id == player_id)
            .where(Hold.session_id == session_id)
            .where(Hold.state.in_([HoldState.PENDING, HoldState.CONFIRMED]))
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(
        self,
        session_id: str,
        player_id: str,
        created_at: datetime,
        expires_at: datetime,
        original_price_cents: int,
        price_cents: int,
        discount_code_id: str | None,
    ) -> Hold:
        hold = Hold(
            session_id=session_id,
            player_id=player_id,
            state=HoldState.PENDING,
            created_at=created_at,
            expires_at=expires_at,
            original_price_cents=original_price_cents,
            price_cents=price_cents,
            discount_code_id=discount_code_id,
            extension_count=0,
        )
        self.db.add(hold)
        self.db.flush()
        return hold

    def compare_and_set(
        self,
        hold_id: str,
        from_state: HoldState,
        to_state: HoldState,
        *,
        live_at: datetime | None = None,
        overdue_at: datetime | None = None,
        **values,
    ) -> bool:
        """
        Moves a hold from `from_state` to `to_state` only if it is still in
        `from_state`. `live_at` additionally requires the hold to be unexpired
        at that instant; `overdue_at` requires it to be expired.
        Returns True when this call won the transition.
        """
        HoldStateMachine.validate_transition(from_state, to_state)

        stmt = update(Hold).where(Hold.id == hold_id).where(Hold.state == from_state)
        if live_at is not None:
            stmt = stmt.where(Hold.expires_at > live_at)
        if overdue_at is not None:
            stmt = stmt.where(Hold.expires_at <= overdue_at)

        stmt = stmt.values(state=to_state, **values).execution_options(
            synchronize_session=False
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def extend(
        self,
        hold_id: str,
        observed_extension_count: int,
        new_expires_at: datetime,
        now: datetime,
    ) -> bool:
        stmt = (
            update(Hold)
            .where(Hold.id == hold_id)
            .where(Hold.state == HoldState.PENDING)
            .where(Hold.expires_at > now)
            .where(Hold.extension_count == observed_extension_count)
            .values(
                expires_at=new_expires_at,
                extension_count=observed_extension_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def count_occupancy(self, session_id: str, now: datetime) -> tuple[int, int]:
        """
        Returns (confirmed, held). Pending holds past their expiry are not
        counted even if the reaper has not reached them yet.
        """
        stmt = select(
            func.coalesce(
                func.sum(case((Hold.state == HoldState.CONFIRMED, 1), else_=0)),
                0,
            ),
            func.coalesce(
                func.sum(
                    case(
                        (and_(Hold.state == HoldState.PENDING, Hold.expires_at > now), 1),
                        else_=0,
                    )
                ),
                0,
            ),
        ).where(Hold.session_id == session_id)
        confirmed, held = self.db.execute(stmt).one()
        return int(confirmed), int(held)

    def count_live_code_uses(self, discount_code_id: str, now: datetime) -> int:
        """Pending holds that are soft-reserving a use of the code."""
        stmt = (
            select(func.count())
            .select_from(Hold)
            .where(Hold.discount_code_id == discount_code_id)
            .where(Hold.state == HoldState.PENDING)
            .where(Hold.expires_at > now)
        )
        return int(self.db.execute(stmt).scalar_one())

    def list_overdue_ids(self, now: datetime, limit: int) -> list[str]:
        stmt = (
            select(Hold.id)
            .where(Hold.state == HoldState.PENDING)
            .where(Hold.expires_at <= now)
            .order_by(Hold.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    @staticmethod
    def to_record(hold: Hold) -> HoldRecord:
        return HoldRecord(
            id=hold.id,
            session_id=hold.session_id,
            player_id=hold.player_id,
            state=hold.state,
            created_at=hold.created_at,
            expires_at=hold.expires_at,
            price_cents=hold.price_cents,
            discount_code_id=hold.discount_code_id,
            payment_id=hold.payment_id,
            extension_count=hold.extension_count,
            resolved_at=hold.resolved_at,
            resolved_by=hold.resolved_by,
        )
