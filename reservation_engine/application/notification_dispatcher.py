# reservation_engine/application/notification_dispatcher.py

import json
import logging
import threading
from concurrent.futures import Executor

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.notifications import NotificationService
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository


logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """
    Drains pending outbox events into the notification service.

    Delivery is best-effort and at-least-once: a failing notifier is
    logged and the event retried on the next drain, up to `max_attempts`.
    Nothing here ever raises into the transition that produced the event.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: NotificationService,
        clock: Clock = utc_now,
        executor: Executor | None = None,
        max_attempts: int = 5,
        batch_size: int = 100,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock
        self.executor = executor
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self._draining = threading.Lock()

    def kick(self) -> None:
        """Schedules a drain after a commit; inline when no executor is set."""
        if self.executor is not None:
            self.executor.submit(self.drain)
        else:
            self.drain()

    def drain(self) -> int:
        # One drain at a time per process; a concurrent kick is covered by
        # the running drain or the next sweep.
        if not self._draining.acquire(blocking=False):
            return 0
        try:
            return self._deliver_pending()
        except SQLAlchemyError:
            logger.exception("Outbox drain aborted")
            return 0
        finally:
            self._draining.release()

    def _deliver_pending(self) -> int:
        with transaction(self.session_factory) as db:
            events = [
                (event.id, event.event_type, event.payload)
                for event in OutboxRepository(db).list_deliverable(self.max_attempts, self.batch_size)
            ]

        delivered = 0
        for event_id, event_type, payload in events:
            try:
                self.notifier.send(event_type, json.loads(payload))
            except Exception as exc:
                logger.warning("Notification %s (%s) failed: %s", event_type, event_id, exc)
                with transaction(self.session_factory) as db:
                    OutboxRepository(db).record_failure(event_id, str(exc), self.max_attempts)
                continue

            with transaction(self.session_factory) as db:
                if OutboxRepository(db).mark_published(event_id, self.clock()):
                    delivered += 1

        if delivered:
            logger.debug("Delivered %s notifications", delivered)
        return delivered
