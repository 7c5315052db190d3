# reservation_engine/application/engine.py

from concurrent.futures import Executor
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from reservation_engine.application.expiry_reaper import ExpiryReaper
from reservation_engine.application.notification_dispatcher import NotificationDispatcher
from reservation_engine.application.payment_orchestrator import PaymentOrchestrator
from reservation_engine.application.reporting import ReportingService
from reservation_engine.application.reservation_service import ReservationService
from reservation_engine.application.waitlist_service import WaitlistService
from reservation_engine.config import EngineSettings, get_settings
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.infrastructure.db.session import create_session_factory, get_engine
from reservation_engine.infrastructure.locks import KeyedLockRegistry
from reservation_engine.infrastructure.notifications import LoggingNotificationService, NotificationService
from reservation_engine.infrastructure.payments.registry import GatewayRegistry


@dataclass
class ReservationEngine:
    settings: EngineSettings
    session_factory: sessionmaker
    gateways: GatewayRegistry
    dispatcher: NotificationDispatcher
    reservations: ReservationService
    waitlist: WaitlistService
    payments: PaymentOrchestrator
    reaper: ExpiryReaper
    reporting: ReportingService


def build_engine(
    settings: EngineSettings | None = None,
    session_factory: sessionmaker | None = None,
    clock: Clock = utc_now,
    notifier: NotificationService | None = None,
    executor: Executor | None = None,
    gateways: GatewayRegistry | None = None,
) -> ReservationEngine:
    """Wires the services against one database and one lock registry."""
    settings = settings or get_settings()
    session_factory = session_factory or create_session_factory(get_engine())
    gateways = gateways or GatewayRegistry(settings)

    locks = KeyedLockRegistry(settings.lock_timeout_seconds)
    dispatcher = NotificationDispatcher(
        session_factory,
        notifier or LoggingNotificationService(),
        clock=clock,
        executor=executor,
    )
    waitlist = WaitlistService(
        session_factory,
        settings,
        locks,
        clock=clock,
        dispatcher=dispatcher,
        batch_size=settings.reaper_batch_size,
    )
    reservations = ReservationService(
        session_factory,
        settings,
        locks,
        clock=clock,
        dispatcher=dispatcher,
        waitlist=waitlist,
    )
    payments = PaymentOrchestrator(
        session_factory,
        settings,
        gateways,
        reservations,
        clock=clock,
        dispatcher=dispatcher,
    )
    reaper = ExpiryReaper(
        session_factory,
        interval_seconds=settings.reaper_interval_seconds,
        batch_size=settings.reaper_batch_size,
        clock=clock,
        dispatcher=dispatcher,
        reconcile=payments.reconcile_refunds,
        waitlist_sweep=waitlist.sweep,
    )

    return ReservationEngine(
        settings=settings,
        session_factory=session_factory,
        gateways=gateways,
        dispatcher=dispatcher,
        reservations=reservations,
        waitlist=waitlist,
        payments=payments,
        reaper=reaper,
        reporting=ReportingService(session_factory, clock=clock),
    )
