# busline/infrastructure/repositories/registry_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from busline.infrastructure.db.models import Route, Vehicle


class RouteRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, route_id: str) -> Route | None:
        stmt = select(Route).where(Route.id == route_id)
        return self.db.execute(stmt).scalar_one_or_none()


class VehicleRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, vehicle_id: str) -> Vehicle | None:
        stmt = select(Vehicle).where(Vehicle.id == vehicle_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_many(self, vehicle_ids: list[str]) -> dict[str, Vehicle]:
        if not vehicle_ids:
            return {}
        stmt = select(Vehicle).where(Vehicle.id.in_(vehicle_ids))
        return {vehicle.id: vehicle for vehicle in self.db.execute(stmt).scalars().all()}
