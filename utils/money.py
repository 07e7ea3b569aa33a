from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_amount(value) -> Decimal:
    return Decimal(str(value if value is not None else 0)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount) -> int:
    # Round half up to the nearest paisa/cent, never truncate
    return int((to_amount(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
