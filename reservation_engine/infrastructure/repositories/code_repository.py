# reservation_engine/infrastructure/repositories/code_repository.py

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from reservation_engine.infrastructure.db.models import DiscountCode


def normalize_code(code: str) -> str:
    """Codes are matched case-insensitively, ignoring surrounding blanks."""
    return code.strip().upper()


class DiscountCodeRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, tenant_id: str, code: str) -> DiscountCode | None:
        stmt = (
            select(DiscountCode)
            .where(DiscountCode.tenant_id == tenant_id)
            .where(DiscountCode.code == normalize_code(code))
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(self, code_id: str) -> DiscountCode | None:
        stmt = select(DiscountCode).where(DiscountCode.id == code_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock(self, code_id: str) -> DiscountCode | None:
        stmt = select(DiscountCode).where(DiscountCode.id == code_id).with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def commit_use(self, code_id: str) -> bool:
        """
        Permanently consumes one use. Guarded so the counter can never pass
        max_uses even if the limit was lowered while a hold was pending.
        """
        stmt = (
            update(DiscountCode)
            .where(DiscountCode.id == code_id)
            .where(
                or_(
                    DiscountCode.max_uses.is_(None),
                    DiscountCode.current_uses < DiscountCode.max_uses,
                )
            )
            .values(current_uses=DiscountCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
