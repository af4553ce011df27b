# busline/domain/promotions.py

from datetime import date
from enum import Enum


class PromotionType(str, Enum):
    DEFAULT = "DEFAULT"
    RECURRING = "RECURRING"
    SPECIAL = "SPECIAL"


# Lookup order for a calendar day; the first type with a match wins.
RESOLUTION_ORDER = (
    PromotionType.RECURRING,
    PromotionType.SPECIAL,
    PromotionType.DEFAULT,
)


def applies_on(promotion, day: date) -> bool:
    if not promotion.is_active:
        return False
    if promotion.type == PromotionType.RECURRING:
        return (promotion.recurring_month, promotion.recurring_day) == (day.month, day.day)
    if promotion.type == PromotionType.SPECIAL:
        if promotion.start_date is None or promotion.expiry_date is None:
            return False
        return promotion.start_date <= day <= promotion.expiry_date
    return True


def ranges_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    # Closed intervals: promotions are inclusive of both ends.
    return start_a <= end_b and start_b <= end_a
