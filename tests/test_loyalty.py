import pytest

from loyalty import loyalty_badge, loyalty_level, loyalty_tier, stacked_discount
from orders import price_order


@pytest.mark.parametrize("points,expected", [
    (0, ("Bronze", 0.0)),
    (499, ("Bronze", 0.0)),
    (500, ("Silver", 0.02)),
    (1499, ("Silver", 0.02)),
    (1500, ("Gold", 0.05)),
    (4999, ("Gold", 0.05)),
    (5000, ("Platinum", 0.10)),
    (10_000_000, ("Platinum", 0.10)),
])
def test_loyalty_tier_bands(points, expected):
    assert loyalty_tier(points) == expected


def test_negative_points_clamp_to_bronze():
    assert loyalty_tier(-250) == ("Bronze", 0.0)
    assert loyalty_level(None).name == "Bronze"


def test_badge():
    assert loyalty_badge("Gold", 1600) == "Gold (1600 points)"


def test_loyalty_discount_applies_after_premium():
    assert stacked_discount(0.10, 0.05) == pytest.approx(0.145)
    assert stacked_discount(0.0, 0.05) == pytest.approx(0.05)
    assert stacked_discount(0.10, 0.0) == pytest.approx(0.10)


def test_price_order_premium_and_gold():
    discount, total = price_order(100.0, premium=True, loyalty_points=1500)
    assert discount == pytest.approx(0.145)
    assert total == pytest.approx(85.50)


def test_price_order_no_discounts():
    discount, total = price_order(42.0, premium=False, loyalty_points=10)
    assert discount == 0
    assert total == pytest.approx(42.0)
