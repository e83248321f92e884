from decimal import Decimal, ROUND_HALF_UP

from errors import InvalidAmount, InvalidTier

# tier -> share of the package price
COMMISSION_RATES = {
    1: Decimal("0.65"),
    2: Decimal("0.05"),
}

# commissions are whole currency units. every call site rounds through
# compute_commission, half-up: 1299.35 -> 1299, 99.95 -> 100.
WHOLE_UNIT = Decimal("1")
ROUNDING = ROUND_HALF_UP


def _to_decimal(value) -> Decimal:
    if value is None:
        raise InvalidAmount("package price is missing")
    if isinstance(value, float):
        # go through str so 19.99 stays 19.99 rather than its binary expansion
        value = str(value)
    return Decimal(value)


def commission_rate_percent(tier: int) -> int:
    if tier not in COMMISSION_RATES:
        raise InvalidTier(f"unknown commission tier {tier}")
    return int(COMMISSION_RATES[tier] * 100)


def compute_commission(package_price, tier: int) -> Decimal:
    """
    package_price: price paid for the package (whole currency units)
    tier: 1 (direct referrer) or 2 (referrer's referrer)

    pure: no I/O, same inputs -> same output.
    """
    if tier not in COMMISSION_RATES:
        raise InvalidTier(f"unknown commission tier {tier}")

    price = _to_decimal(package_price)
    if price <= 0:
        raise InvalidAmount(f"package price must be positive, got {price}")

    return (price * COMMISSION_RATES[tier]).quantize(WHOLE_UNIT, rounding=ROUNDING)


def commission_splits(package_price, beneficiaries) -> dict:
    """
    beneficiaries: anything with .tier1 / .tier2 (user ids or None)

    returns {"tier1": Decimal, "tier2": Decimal}; a tier with nobody to pay is 0.
    """
    tier1 = tier2 = Decimal("0")
    if beneficiaries.tier1 is not None:
        tier1 = compute_commission(package_price, 1)
    if beneficiaries.tier1 is not None and beneficiaries.tier2 is not None:
        tier2 = compute_commission(package_price, 2)

    return {
        "tier1": tier1,
        "tier2": tier2,
    }
