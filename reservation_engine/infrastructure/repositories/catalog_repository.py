# reservation_engine/infrastructure/repositories/catalog_repository.py

from sqlalchemy import select
from sqlalchemy.orm import Session

from reservation_engine.domain.exceptions import PlayerNotFoundError, SessionNotFoundError
from reservation_engine.infrastructure.db.models import Player, TrainingSession


class SessionRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, session_id: str) -> TrainingSession | None:
        stmt = select(TrainingSession).where(TrainingSession.id == session_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def require(self, session_id: str) -> TrainingSession:
        session = self.get_by_id(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        return session

    def lock(self, session_id: str) -> TrainingSession:
        """
        SELECT ... FOR UPDATE
        Serializes check-and-reserve for one session across processes.
        """

        stmt = (
            select(TrainingSession)
            .where(TrainingSession.id == session_id)
            .with_for_update()
        )

        session = self.db.execute(stmt).scalar_one_or_none()

        if not session:
            raise SessionNotFoundError(session_id)

        return session


class PlayerRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, player_id: str) -> Player | None:
        stmt = select(Player).where(Player.id == player_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def require(self, player_id: str) -> Player:
        player = self.get_by_id(player_id)
        if not player:
            raise PlayerNotFoundError(player_id)
        return player
