import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from busline.api.routes.routes import router
from busline.application.trip_lifecycle import TripLifecycleScheduler
from busline.infrastructure.db.models import Base
from busline.infrastructure.db.session import engine, get_db_session

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _wait_for_db() -> None:
    attempts = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    for attempt in range(1, attempts + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database reachable after %s attempt(s)", attempt)
            return
        except OperationalError:
            if attempt == attempts:
                logger.exception("Giving up on database after %s attempts", attempts)
                raise
            logger.warning("Database not ready (%s/%s), retrying in %.1fs", attempt, attempts, delay)
            time.sleep(delay)


def _prepare_storage() -> None:
    _wait_for_db()
    if _env_flag("AUTO_CREATE_TABLES"):
        Base.metadata.create_all(bind=engine)

    # Timers live in the database, but trips edited while the worker was down
    # may be missing theirs.
    if _env_flag("RESYNC_TIMERS_ON_STARTUP"):
        with get_db_session() as db:
            TripLifecycleScheduler(db).resync()


@asynccontextmanager
async def lifespan(_: FastAPI):
    _prepare_storage()
    yield


def create_app() -> FastAPI:
    application = FastAPI(title="Busline Scheduling and Ticketing Engine", lifespan=lifespan)
    application.include_router(router)
    return application


app = create_app()
