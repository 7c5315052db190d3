# reservation_engine/application/expiry_reaper.py

import logging
import threading

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from reservation_engine.application.hold_events import expire_by_id
from reservation_engine.application.notification_dispatcher import NotificationDispatcher
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository


logger = logging.getLogger(__name__)


class ExpiryReaper:
    """
    Background sweep that moves overdue pending holds to `expired`.

    Capacity never waits for it: reads already ignore overdue holds. The
    sweep makes the state durable and emits expiry notifications. On the
    same tick it hands freed seats to the waitlist and runs the outbox
    drain and refund reconciliation.
    Each hold is expired in its own transaction with a guarded UPDATE, so
    a reaper racing a confirmation or another reaper is harmless.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        interval_seconds: float,
        batch_size: int = 200,
        clock: Clock = utc_now,
        dispatcher: NotificationDispatcher | None = None,
        reconcile=None,
        waitlist_sweep=None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.clock = clock
        self.dispatcher = dispatcher
        self.reconcile = reconcile
        self.waitlist_sweep = waitlist_sweep
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep_once(self) -> int:
        now = self.clock()
        with transaction(self.session_factory) as db:
            overdue_ids = HoldRepository(db).list_overdue_ids(now, self.batch_size)

        expired = 0
        for hold_id in overdue_ids:
            try:
                with transaction(self.session_factory) as db:
                    if expire_by_id(db, hold_id, now):
                        expired += 1
            except SQLAlchemyError:
                logger.exception("Could not expire hold %s; will retry next sweep", hold_id)

        if expired:
            logger.info("Reaper expired %s hold(s)", expired)

        if self.waitlist_sweep is not None:
            self.waitlist_sweep()
        if self.dispatcher is not None:
            self.dispatcher.drain()
        if self.reconcile is not None:
            self.reconcile()
        return expired

    # -----------------------------
    # Thread lifecycle
    # -----------------------------
    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="expiry-reaper", daemon=True)
        self._thread.start()
        logger.info("Expiry reaper started (every %.0fs)", self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry reaper stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep_once()
            except Exception:
                # Keep the loop alive; the next tick retries.
                logger.exception("Reaper sweep failed")
