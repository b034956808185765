"""Amount conversions between ledger values and processor minor units."""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. naira) to minor units (kobo)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Convert processor minor units to a two-decimal major-unit amount."""
    return (Decimal(int(amount)) / 100).quantize(CENT)


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    """Percentage share of an amount, rounded half-up to the cent."""
    return (Decimal(amount) * Decimal(percentage) / 100).quantize(CENT, rounding=ROUND_HALF_UP)
