from decimal import Decimal, ROUND_HALF_UP


def to_minor_units(value) -> int:
    """Convert a major-unit amount (e.g. 149.99) to integer minor units."""
    return int((Decimal(str(value)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_rate(amount: int, rate: Decimal) -> int:
    """`amount * rate`, rounded half-up to a whole minor unit."""
    return int((Decimal(amount) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
