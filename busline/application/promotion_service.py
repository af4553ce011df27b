# busline/application/promotion_service.py

from datetime import date
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from busline.domain.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from busline.domain.promotions import PromotionType, RESOLUTION_ORDER, applies_on
from busline.infrastructure.db.models import Promotion
from busline.infrastructure.repositories.promotion_repository import PromotionRepository


logger = logging.getLogger(__name__)


class PromotionService:
    """Resolves and maintains discount rules."""

    def __init__(self, db: Session):
        self.db = db
        self.promotion_repository = PromotionRepository(db)

    def resolve(self, day: date) -> Promotion:
        """
        The single promotion that applies on `day`:
        recurring holiday, then date-ranged special, then the default.
        """

        for promotion_type in RESOLUTION_ORDER:
            for promotion in self.promotion_repository.list_active_by_type(promotion_type):
                if applies_on(promotion, day):
                    return promotion

        logger.error("No active DEFAULT promotion configured")
        raise ConfigurationError("Default promotion not found. Seed one before selling tickets.")

    def get(self, promotion_id: str) -> Promotion:
        promotion = self.promotion_repository.get_by_id(promotion_id)
        if promotion is None:
            raise NotFoundError("Promotion", promotion_id)
        return promotion

    def list_promotions(self, include_inactive: bool = True) -> list[Promotion]:
        return self.promotion_repository.list_all(include_inactive=include_inactive)

    def create(
        self,
        name: str,
        promotion_type: PromotionType,
        value: Decimal,
        start_date: date | None = None,
        expiry_date: date | None = None,
        recurring_month: int | None = None,
        recurring_day: int | None = None,
        description: str | None = None,
    ) -> Promotion:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Promotion name is required")

        value = Decimal(value)
        if value < 0 or value > 100:
            raise ValidationError("Promotion value must be between 0 and 100")

        if self.promotion_repository.get_by_name(name):
            raise ConflictError(f'Promotion name "{name}" already exists')

        if promotion_type == PromotionType.DEFAULT:
            if self.promotion_repository.list_active_by_type(PromotionType.DEFAULT):
                raise ConflictError("A DEFAULT promotion already exists")

        elif promotion_type == PromotionType.RECURRING:
            if not recurring_month or not recurring_day:
                raise ValidationError(
                    "recurring_month and recurring_day are required for recurring promotions"
                )
            try:
                # Leap day is allowed; 2000 was a leap year.
                date(2000, recurring_month, recurring_day)
            except ValueError as exc:
                raise ValidationError("Invalid recurring month/day") from exc

            if self.promotion_repository.find_recurring(recurring_month, recurring_day):
                raise ConflictError(
                    f"A recurring promotion already exists for {recurring_month}/{recurring_day}"
                )

        elif promotion_type == PromotionType.SPECIAL:
            if start_date is None or expiry_date is None:
                raise ValidationError("start_date and expiry_date are required for special promotions")
            if start_date > expiry_date:
                raise ValidationError("start_date must be before expiry_date")

            overlapping = self.promotion_repository.find_overlapping_special(start_date, expiry_date)
            if overlapping:
                raise ConflictError(
                    "Special promotion dates overlap an active promotion",
                    conflicts=[
                        {
                            "promotion_id": promotion.id,
                            "name": promotion.name,
                            "start_date": promotion.start_date.isoformat(),
                            "expiry_date": promotion.expiry_date.isoformat(),
                        }
                        for promotion in overlapping
                    ],
                )

        promotion = Promotion(
            name=name,
            type=promotion_type,
            value=value,
            start_date=start_date,
            expiry_date=expiry_date,
            recurring_month=recurring_month if promotion_type == PromotionType.RECURRING else None,
            recurring_day=recurring_day if promotion_type == PromotionType.RECURRING else None,
            description=description,
            is_active=True,
        )
        self.promotion_repository.add(promotion)
        logger.info("Promotion %s created (%s, %s%%)", promotion.id, promotion_type.value, value)
        return promotion

    def update_value(
        self,
        promotion_id: str,
        value: Decimal,
        description: str | None = None,
    ) -> Promotion:
        promotion = self.get(promotion_id)
        value = Decimal(value)
        if value < 0 or value > 100:
            raise ValidationError("Promotion value must be between 0 and 100")

        promotion.value = value
        if description is not None:
            promotion.description = description
        self.db.flush()
        return promotion

    def disable(self, promotion_id: str) -> Promotion:
        promotion = self.get(promotion_id)
        if promotion.type == PromotionType.DEFAULT:
            raise ValidationError("Cannot disable DEFAULT promotion")
        if not promotion.is_active:
            raise ValidationError("Promotion is already disabled")

        promotion.is_active = False
        self.db.flush()
        return promotion

    def enable(self, promotion_id: str) -> Promotion:
        promotion = self.get(promotion_id)
        if promotion.is_active:
            raise ValidationError("Promotion is already enabled")

        if promotion.type == PromotionType.SPECIAL:
            others = [
                other
                for other in self.promotion_repository.find_overlapping_special(
                    promotion.start_date, promotion.expiry_date
                )
                if other.id != promotion.id
            ]
            if others:
                raise ConflictError("Special promotion dates overlap an active promotion")

        promotion.is_active = True
        self.db.flush()
        return promotion
