# reservation_engine/application/code_validator.py

from datetime import datetime

from sqlalchemy.orm import Session

from reservation_engine.domain.exceptions import InvalidDiscountCodeError
from reservation_engine.domain.models import DiscountQuote
from reservation_engine.domain.pricing import apply_discount
from reservation_engine.infrastructure.db.models import DiscountCode, Player, TrainingSession
from reservation_engine.infrastructure.repositories.code_repository import (
    DiscountCodeRepository,
    normalize_code,
)
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository


def access_code_matches(session: TrainingSession, supplied: str | None) -> bool:
    if not session.requires_access_code:
        return True
    if not supplied:
        return False
    return supplied.strip().casefold() == session.access_code.strip().casefold()


class CodeValidator:
    """
    Access and discount code checks.

    A discount use is soft-reserved by the pending hold that carries the
    code id; it only becomes permanent (current_uses + 1) at confirmation.
    Callers validating a discount for a new hold must hold the code lock.
    """

    def __init__(self, db: Session):
        self.db = db
        self.code_repository = DiscountCodeRepository(db)
        self.hold_repository = HoldRepository(db)

    def validate_access(self, session: TrainingSession, code: str | None) -> bool:
        return access_code_matches(session, code)

    def find_discount(self, tenant_id: str, code: str) -> DiscountCode:
        discount = self.code_repository.get_by_code(tenant_id, code)
        if not discount:
            raise InvalidDiscountCodeError(f"Discount code {normalize_code(code)} does not exist")
        return discount

    def validate_discount(
        self,
        discount: DiscountCode,
        price_cents: int,
        now: datetime,
        player: Player | None = None,
    ) -> DiscountQuote:
        if not discount.is_active:
            raise InvalidDiscountCodeError(f"Discount code {discount.code} is not active")
        if discount.valid_from and now < discount.valid_from:
            raise InvalidDiscountCodeError(f"Discount code {discount.code} is not valid yet")
        if discount.valid_until and now > discount.valid_until:
            raise InvalidDiscountCodeError(f"Discount code {discount.code} has expired")

        if player is not None:
            if discount.locked_to_player_id and discount.locked_to_player_id != player.id:
                raise InvalidDiscountCodeError(
                    f"Discount code {discount.code} is reserved for another player"
                )
            if discount.locked_to_parent_id and not player.is_guardian(discount.locked_to_parent_id):
                raise InvalidDiscountCodeError(
                    f"Discount code {discount.code} is reserved for another family"
                )

        if discount.max_uses is not None:
            pending = self.hold_repository.count_live_code_uses(discount.id, now)
            if discount.current_uses + pending >= discount.max_uses:
                raise InvalidDiscountCodeError(
                    f"Discount code {discount.code} has reached its usage limit"
                )

        return DiscountQuote(
            code=discount.code,
            usage_token=discount.id,
            original_price_cents=price_cents,
            discounted_price_cents=apply_discount(price_cents, discount.discount_type, discount.value),
        )
