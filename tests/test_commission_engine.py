from decimal import Decimal

import pytest

from commission_engine import commission_rate_percent, commission_splits, compute_commission
from errors import InvalidAmount, InvalidTier
from models import Beneficiaries


def test_scenario_package_1999():
    """
    1999 package: tier 1 = 1299.35 -> 1299, tier 2 = 99.95 -> 100.
    """
    assert compute_commission(Decimal("1999"), 1) == Decimal("1299")
    assert compute_commission(Decimal("1999"), 2) == Decimal("100")


def test_rounding_is_half_up_to_whole_units():
    # exact halves go up
    assert compute_commission(Decimal("30"), 1) == Decimal("20")  # 19.5
    assert compute_commission(Decimal("10"), 2) == Decimal("1")  # 0.5
    # below half goes down
    assert compute_commission(Decimal("9"), 2) == Decimal("0")  # 0.45
    assert compute_commission(Decimal("1"), 1) == Decimal("1")  # 0.65


def test_accepts_ints_strings_and_floats():
    assert compute_commission(1000, 1) == Decimal("650")
    assert compute_commission("1000", 2) == Decimal("50")
    # 19.99 * 0.65 = 12.9935, not a binary-float artefact
    assert compute_commission(19.99, 1) == Decimal("13")


def test_result_is_deterministic():
    results = {compute_commission(Decimal("4321"), 1) for _ in range(20)}
    assert results == {Decimal("2809")}


def test_unknown_tier_rejected():
    with pytest.raises(InvalidTier):
        compute_commission(Decimal("100"), 3)

    with pytest.raises(InvalidTier):
        commission_rate_percent(0)


@pytest.mark.parametrize("price", [None, 0, Decimal("-5")])
def test_missing_or_non_positive_price_rejected(price):
    with pytest.raises(InvalidAmount):
        compute_commission(price, 1)


def test_errors_are_value_errors():
    """
    callers mapping ValueError -> 400 keep working.
    """
    with pytest.raises(ValueError):
        compute_commission(Decimal("100"), 7)


def test_rate_percentages():
    assert commission_rate_percent(1) == 65
    assert commission_rate_percent(2) == 5


def test_splits_with_both_tiers():
    splits = commission_splits(Decimal("1999"), Beneficiaries(tier1=10, tier2=20))
    assert splits == {"tier1": Decimal("1299"), "tier2": Decimal("100")}


def test_splits_without_tier2():
    splits = commission_splits(Decimal("1999"), Beneficiaries(tier1=10, tier2=None))
    assert splits["tier1"] == Decimal("1299")
    assert splits["tier2"] == Decimal("0")


def test_splits_without_any_referrer():
    """
    no tier 1 means nobody is paid, tier 2 included.
    """
    splits = commission_splits(Decimal("1999"), Beneficiaries(tier1=None, tier2=20))
    assert splits == {"tier1": Decimal("0"), "tier2": Decimal("0")}
