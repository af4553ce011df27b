# busline/domain/pricing.py

from decimal import Decimal, ROUND_HALF_UP

from busline.domain.exceptions import ValidationError

_CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def calculate_discount(price, percentage) -> Decimal:
    """round2(price * pct / 100), half-up."""
    pct = Decimal(str(percentage))
    if pct < 0 or pct > 100:
        raise ValidationError("Discount percentage must be between 0 and 100")
    return (Decimal(str(price)) * pct / Decimal(100)).quantize(
        _CENTS,
        rounding=ROUND_HALF_UP,
    )


def calculate_final_price(price, percentage) -> Decimal:
    return to_money(price) - calculate_discount(price, percentage)
