# busline/infrastructure/repositories/promotion_repository.py

from datetime import date

from sqlalchemy.orm import Session
from sqlalchemy import select

from busline.domain.promotions import PromotionType
from busline.infrastructure.db.models import Promotion


class PromotionRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, promotion_id: str) -> Promotion | None:
        stmt = select(Promotion).where(Promotion.id == promotion_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_name(self, name: str) -> Promotion | None:
        stmt = select(Promotion).where(Promotion.name == name)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_all(self, include_inactive: bool = True) -> list[Promotion]:
        stmt = select(Promotion)
        if not include_inactive:
            stmt = stmt.where(Promotion.is_active.is_(True))
        stmt = stmt.order_by(Promotion.type, Promotion.name)
        return list(self.db.execute(stmt).scalars().all())

    def list_active_by_type(self, promotion_type: PromotionType) -> list[Promotion]:
        stmt = (
            select(Promotion)
            .where(Promotion.type == promotion_type)
            .where(Promotion.is_active.is_(True))
            .order_by(Promotion.created_at, Promotion.id)
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_recurring(self, month: int, day: int) -> list[Promotion]:
        stmt = (
            select(Promotion)
            .where(Promotion.type == PromotionType.RECURRING)
            .where(Promotion.recurring_month == month)
            .where(Promotion.recurring_day == day)
        )
        return list(self.db.execute(stmt).scalars().all())

    def find_overlapping_special(self, start: date, end: date) -> list[Promotion]:
        stmt = (
            select(Promotion)
            .where(Promotion.type == PromotionType.SPECIAL)
            .where(Promotion.is_active.is_(True))
            .where(Promotion.start_date <= end)
            .where(Promotion.expiry_date >= start)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add(self, promotion: Promotion) -> Promotion:
        self.db.add(promotion)
        self.db.flush()
        return promotion
