# reservation_engine/infrastructure/notifications.py

import logging
from abc import ABC, abstractmethod


logger = logging.getLogger(__name__)


class NotificationService(ABC):
    """Delivers parent-facing notifications (email, push...). May raise."""

    @abstractmethod
    def send(self, event_type: str, payload: dict) -> None:
        ...


class LoggingNotificationService(NotificationService):
    """Default sink when no delivery channel is wired in."""

    def send(self, event_type: str, payload: dict) -> None:
        logger.info(
            "Notification %s for hold %s (session %s)",
            event_type,
            payload.get("hold_id"),
            payload.get("session_id"),
        )
