"""Discount arithmetic. All amounts are integer minor units (cents)."""

from reservation_engine.domain.models import DiscountType


def apply_discount(price_cents: int, discount_type: DiscountType, value: int) -> int:
    """
    Returns the discounted price.

    full       -> 0
    percentage -> price * (1 - value / 100), floored to the cent
    fixed      -> max(0, price - value)
    """
    if price_cents < 0:
        raise ValueError("Price cannot be negative")

    if discount_type == DiscountType.FULL:
        return 0

    if discount_type == DiscountType.PERCENTAGE:
        if not 0 <= value <= 100:
            raise ValueError("Percentage discount must be between 0 and 100")
        return (price_cents * (100 - value)) // 100

    if discount_type == DiscountType.FIXED:
        if value < 0:
            raise ValueError("Fixed discount cannot be negative")
        return max(0, price_cents - value)

    raise ValueError(f"Unknown discount type: {discount_type}")
