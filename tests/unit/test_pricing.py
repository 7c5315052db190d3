import pytest

from reservation_engine.domain.models import DiscountType
from reservation_engine.domain.pricing import apply_discount


def test_full_discount_is_free():
    assert apply_discount(2500, DiscountType.FULL, 0) == 0


def test_half_off_twenty_dollars():
    assert apply_discount(2000, DiscountType.PERCENTAGE, 50) == 1000


def test_percentage_floors_to_the_cent():
    # 999 * 0.67 = 669.33
    assert apply_discount(999, DiscountType.PERCENTAGE, 33) == 669


def test_fixed_discount_never_goes_negative():
    assert apply_discount(2000, DiscountType.FIXED, 500) == 1500
    assert apply_discount(2000, DiscountType.FIXED, 5000) == 0


@pytest.mark.parametrize("value", [-1, 101])
def test_percentage_out_of_range(value):
    with pytest.raises(ValueError):
        apply_discount(2000, DiscountType.PERCENTAGE, value)


def test_negative_price_rejected():
    with pytest.raises(ValueError):
        apply_discount(-1, DiscountType.FIXED, 0)
