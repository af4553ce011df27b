# busline/infrastructure/repositories/deferred_task_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import delete, select

from busline.infrastructure.db.models import DeferredTask


class DeferredTaskRepository:
    """
    Durable "run task T at instant I" store, addressable by key.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, key: str) -> DeferredTask | None:
        stmt = select(DeferredTask).where(DeferredTask.key == key)
        return self.db.execute(stmt).scalar_one_or_none()

    def schedule(
        self,
        key: str,
        task_type: str,
        trip_id: str,
        fire_at: datetime,
    ) -> DeferredTask:
        task = self.get_by_key(key)
        if task is None:
            task = DeferredTask(key=key, task_type=task_type, trip_id=trip_id)
            self.db.add(task)

        task.fire_at = fire_at
        task.attempts = 0
        task.last_error = None
        self.db.flush()
        return task

    def cancel(self, key: str) -> bool:
        stmt = delete(DeferredTask).where(DeferredTask.key == key)
        return self.db.execute(stmt).rowcount > 0

    def cancel_for_trip(self, trip_id: str) -> int:
        stmt = delete(DeferredTask).where(DeferredTask.trip_id == trip_id)
        return self.db.execute(stmt).rowcount

    def list_for_trip(self, trip_id: str) -> list[DeferredTask]:
        stmt = (
            select(DeferredTask)
            .where(DeferredTask.trip_id == trip_id)
            .order_by(DeferredTask.fire_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def due(self, now: datetime, limit: int = 100) -> list[DeferredTask]:
        stmt = (
            select(DeferredTask)
            .where(DeferredTask.fire_at <= now)
            .order_by(DeferredTask.fire_at, DeferredTask.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def complete(self, task: DeferredTask) -> None:
        self.db.delete(task)

    def record_failure(self, task: DeferredTask, error: str) -> None:
        task.attempts += 1
        task.last_error = error
