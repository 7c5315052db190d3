import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from reservation_engine.api.errors import install_error_handlers
from reservation_engine.api.routes.routes import router
from reservation_engine.application.engine import ReservationEngine, build_engine
from reservation_engine.infrastructure.db.models import Base
from reservation_engine.infrastructure.db.session import get_engine


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _wait_for_db(engine: Engine) -> None:
    # The API container can come up before Postgres accepts connections.
    attempts = int(os.getenv("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.getenv("DB_CONNECT_RETRY_DELAY", "1.5"))

    attempt = 0
    while True:
        attempt += 1
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except OperationalError:
            if attempt >= attempts:
                logger.exception("Reservation database unreachable after %s attempts", attempts)
                raise
            logger.warning("Reservation database not ready (%s/%s), retrying in %.1fs", attempt, attempts, delay)
            time.sleep(delay)
            continue
        logger.info("Reservation database reachable after %s attempt(s)", attempt)
        return


def create_app(
    reservation_engine: ReservationEngine | None = None,
    start_reaper: bool = True,
) -> FastAPI:
    """
    Builds the API. Tests pass a pre-wired engine (own database, clock and
    gateways) and usually drive the reaper by hand.
    """
    app = FastAPI(title="Session Reservation Engine")
    app.include_router(router)
    install_error_handlers(app)
    app.state.reservation_engine = reservation_engine
    app.state.notification_executor = None

    @app.on_event("startup")
    def on_startup() -> None:
        if app.state.reservation_engine is None:
            _configure_logging()
            db_engine = get_engine()
            _wait_for_db(db_engine)
            Base.metadata.create_all(bind=db_engine)
            # Outbox drains run off the request thread.
            executor = ThreadPoolExecutor(
                max_workers=int(os.getenv("NOTIFICATION_WORKERS", "2")),
                thread_name_prefix="notifications",
            )
            app.state.notification_executor = executor
            app.state.reservation_engine = build_engine(executor=executor)
        if start_reaper:
            app.state.reservation_engine.reaper.start()

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if start_reaper and app.state.reservation_engine is not None:
            app.state.reservation_engine.reaper.stop(timeout=5)
        executor = app.state.notification_executor
        if executor is not None:
            executor.shutdown(wait=True)
            app.state.notification_executor = None

    return app


app = create_app()
