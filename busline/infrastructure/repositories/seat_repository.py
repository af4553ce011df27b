# busline/infrastructure/repositories/seat_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import func, select, update

from busline.domain.state_machine import SeatStatus
from busline.infrastructure.db.models import Seat


class SeatRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, seat_id: str) -> Seat | None:
        stmt = select(Seat).where(Seat.id == seat_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_vehicle(self, vehicle_id: str) -> list[Seat]:
        stmt = (
            select(Seat)
            .where(Seat.vehicle_id == vehicle_id)
            .order_by(Seat.seat_no)
        )
        return list(self.db.execute(stmt).scalars().all())

    def count_by_vehicle(self, vehicle_ids: list[str]) -> dict[str, int]:
        if not vehicle_ids:
            return {}
        stmt = (
            select(Seat.vehicle_id, func.count(Seat.id))
            .where(Seat.vehicle_id.in_(vehicle_ids))
            .group_by(Seat.vehicle_id)
        )
        return {vehicle_id: count for vehicle_id, count in self.db.execute(stmt).all()}

    def try_set_status(
        self,
        seat_id: str,
        expected: SeatStatus,
        new_status: SeatStatus,
    ) -> bool:
        """
        UPDATE seats SET status = :new WHERE id = :id AND status = :expected
        The only way seat status is changed; False means someone else got there first.
        """

        stmt = (
            update(Seat)
            .where(Seat.id == seat_id)
            .where(Seat.status == expected)
            .values(status=new_status)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def release_many(
        self,
        seat_ids: list[str],
        expected: SeatStatus = SeatStatus.PENDING,
    ) -> int:
        if not seat_ids:
            return 0

        stmt = (
            update(Seat)
            .where(Seat.id.in_(seat_ids))
            .where(Seat.status == expected)
            .values(status=SeatStatus.EMPTY)
        )
        return self.db.execute(stmt).rowcount
