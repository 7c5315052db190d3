# reservation_engine/application/payment_orchestrator.py

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from reservation_engine.application.hold_events import PAYMENT_REFUNDED, add_hold_event, expire_if_overdue
from reservation_engine.application.notification_dispatcher import NotificationDispatcher
from reservation_engine.application.reservation_service import ReservationService, ensure_can_act_for
from reservation_engine.config import EngineSettings
from reservation_engine.domain.clock import Clock, utc_now
from reservation_engine.domain.exceptions import (
    AlreadyTerminalError,
    HoldNotFoundError,
    NotAuthorizedError,
    PaymentInProgressError,
    PaymentNotFoundError,
    PaymentProviderError,
    RefundNotAllowedError,
    ReservationExpiredDuringPaymentError,
)
from reservation_engine.domain.models import (
    Actor,
    HoldRecord,
    PaymentProvider,
    PaymentRecord,
    RefundRecord,
    RefundStatus,
)
from reservation_engine.domain.state_machine import HoldState, PaymentStatus
from reservation_engine.infrastructure.db.models import Hold
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.payments.gateway import (
    ChargeResult,
    PaymentGateway,
    PaymentGatewayError,
    ProviderEvent,
    WebhookVerificationError,
)
from reservation_engine.infrastructure.payments.registry import GatewayRegistry
from reservation_engine.infrastructure.repositories.catalog_repository import (
    PlayerRepository,
    SessionRepository,
)
from reservation_engine.infrastructure.repositories.hold_repository import HoldRepository
from reservation_engine.infrastructure.repositories.payment_repository import PaymentRepository


logger = logging.getLogger(__name__)

LATE_SUCCESS_REFUND_REASON = "RESERVATION_EXPIRED_DURING_PAYMENT"
DUPLICATE_CAPTURE_REFUND_REASON = "CAPTURED_AFTER_DECLINE"
REFUND_RETRY_AFTER = timedelta(minutes=1)


@dataclass(frozen=True)
class _PaymentContext:
    hold: HoldRecord
    tenant_id: str
    currency: str
    starts_at: Any


class PaymentOrchestrator:
    """
    Drives a hold through payment.

    Provider calls never run inside a database transaction: the payment
    row is written as `processing` first, the provider is called, and the
    outcome is applied in a second transaction. A success that arrives
    after the hold expired or was cancelled is refunded automatically.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        settings: EngineSettings,
        gateways: GatewayRegistry,
        reservations: ReservationService,
        clock: Clock = utc_now,
        dispatcher: NotificationDispatcher | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.gateways = gateways
        self.reservations = reservations
        self.clock = clock
        self.dispatcher = dispatcher

    # -----------------------------
    # Checkout
    # -----------------------------
    def create_payment_method(self, hold_id: str, actor: Actor) -> dict[str, Any]:
        """Provider checkout parameters (order / intent) for a live hold."""
        context = self._live_context(hold_id, actor)
        gateway = self.gateways.get(context.tenant_id)
        try:
            return gateway.create_payment_method(
                amount_cents=context.hold.price_cents,
                currency=context.currency,
                reference=hold_id,
            )
        except PaymentGatewayError as exc:
            raise PaymentProviderError(str(exc)) from exc

    def begin_payment(
        self,
        hold_id: str,
        provider: PaymentProvider | str,
        provider_token: Any,
        actor: Actor | None = None,
    ) -> PaymentRecord:
        context = self._live_context(hold_id, actor)

        if context.hold.price_cents == 0:
            # Fully discounted: nothing to collect.
            free = PaymentRecord.manual(hold_id, 0, context.currency, reference=f"free:{hold_id}")
            self.reservations.confirm_reservation(hold_id, free)
            return self._succeeded_payment(hold_id)

        gateway = self.gateways.get(context.tenant_id, provider)
        payment = self._open_payment(context, gateway.provider)

        try:
            result = self._charge(gateway, payment, provider_token)
        except PaymentGatewayError as exc:
            logger.warning("Charge for hold %s failed upstream: %s", hold_id, exc)
            self._fail_payment(payment.id, str(exc))
            raise PaymentProviderError(str(exc)) from exc
        except PaymentProviderError as exc:
            logger.warning("Charge for hold %s rejected: %s", hold_id, exc)
            self._fail_payment(payment.id, str(exc))
            raise

        payment = self._payment_record(payment.id)

        if result.status == PaymentStatus.FAILED:
            self._fail_payment(payment.id, result.failure_reason or "DECLINED")
            raise PaymentProviderError(
                f"Payment for reservation {hold_id} was declined: {result.failure_reason or 'unknown reason'}"
            )
        if result.status == PaymentStatus.PROCESSING:
            logger.info("Payment %s for hold %s pending provider confirmation", payment.id, hold_id)
            return payment

        return self._settle_success(payment)

    def _live_context(self, hold_id: str, actor: Actor | None) -> _PaymentContext:
        now = self.clock()
        lost_to: str | None = None

        with transaction(self.session_factory) as db:
            hold = HoldRepository(db).get_by_id(hold_id)
            if not hold:
                raise HoldNotFoundError(hold_id)
            if actor is not None:
                ensure_can_act_for(actor, PlayerRepository(db).require(hold.player_id))
            if hold.state != HoldState.PENDING:
                raise AlreadyTerminalError(hold_id, hold.state.value)
            if expire_if_overdue(db, hold, now) or hold.state != HoldState.PENDING:
                lost_to = hold.state.value

            session = SessionRepository(db).require(hold.session_id)
            tenant = self.settings.tenant(session.tenant_id)
            context = _PaymentContext(
                hold=HoldRepository.to_record(hold),
                tenant_id=session.tenant_id,
                currency=tenant.currency,
                starts_at=session.starts_at,
            )

        if lost_to is not None:
            self._notify()
            self.reservations.offer_freed_seat(context.hold.session_id)
            raise AlreadyTerminalError(hold_id, lost_to)
        return context

    def _open_payment(self, context: _PaymentContext, provider: PaymentProvider) -> PaymentRecord:
        try:
            with transaction(self.session_factory) as db:
                payment = PaymentRepository(db).add(
                    hold_id=context.hold.id,
                    provider=provider,
                    amount_cents=context.hold.price_cents,
                    currency=context.currency,
                    status=PaymentStatus.PROCESSING,
                    now=self.clock(),
                )
                return PaymentRepository.to_record(payment)
        except IntegrityError as exc:
            raise PaymentInProgressError(context.hold.id) from exc

    def _charge(self, gateway: PaymentGateway, payment: PaymentRecord, provider_token: Any) -> ChargeResult:
        # The provider id is stored before money moves, so a webhook still
        # finds this payment when the charge call itself errors out.
        transaction_id = gateway.prepare_charge(
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            payment_token=provider_token,
            reference=payment.hold_id,
        )
        if transaction_id:
            self._attach_transaction(payment.id, transaction_id)

        result = gateway.charge(
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            payment_token=provider_token,
            reference=payment.hold_id,
            transaction_id=transaction_id,
        )
        if result.transaction_id != transaction_id:
            self._attach_transaction(payment.id, result.transaction_id)
        return result

    def _attach_transaction(self, payment_id: str, transaction_id: str) -> None:
        now = self.clock()
        with transaction(self.session_factory) as db:
            payments = PaymentRepository(db)
            payment = payments.get_by_id(payment_id)
            earlier = payments.get_by_transaction(payment.provider, transaction_id)
            if earlier is not None and earlier.id != payment_id:
                if earlier.hold_id != payment.hold_id or earlier.status != PaymentStatus.FAILED:
                    raise PaymentProviderError(
                        f"Provider transaction {transaction_id} already belongs to payment {earlier.id}"
                    )
                # Retry of a declined attempt: the newest attempt owns the id.
                payments.set_transaction_id(earlier.id, None, now)
            payments.set_transaction_id(payment_id, transaction_id, now)

    def _fail_payment(self, payment_id: str, reason: str) -> None:
        with transaction(self.session_factory) as db:
            PaymentRepository(db).compare_and_set_status(
                payment_id,
                PaymentStatus.PROCESSING,
                PaymentStatus.FAILED,
                self.clock(),
                failure_reason=reason[:1000],
            )

    def _succeeded_payment(self, hold_id: str) -> PaymentRecord:
        with transaction(self.session_factory) as db:
            payment = PaymentRepository(db).get_succeeded_for_hold(hold_id)
            if not payment:
                raise PaymentNotFoundError(f"No successful payment for reservation {hold_id}")
            return PaymentRepository.to_record(payment)

    # -----------------------------
    # Settlement
    # -----------------------------
    def _settle_success(self, payment: PaymentRecord) -> PaymentRecord:
        """
        Confirms the hold for a captured payment. When the hold is already
        terminal the money is returned and ReservationExpiredDuringPaymentError
        raised; the hold is never revived.
        """
        try:
            self.reservations.confirm_reservation(payment.hold_id, payment)
        except AlreadyTerminalError:
            refunded = self._refund_late_success(payment)
            raise ReservationExpiredDuringPaymentError(payment.hold_id, refunded)

        return self._payment_record(payment.id)

    def _refund_late_success(self, payment: PaymentRecord, reason: str = LATE_SUCCESS_REFUND_REASON) -> bool:
        now = self.clock()
        with transaction(self.session_factory) as db:
            payments = PaymentRepository(db)
            payments.compare_and_set_status(
                payment.id,
                PaymentStatus.PROCESSING,
                PaymentStatus.SUCCEEDED,
                now,
            )
            stored = payments.get_by_id(payment.id)
            refund = payments.get_open_refund(payment.id)
            if refund is None:
                refund = payments.add_refund(stored, reason, now)
            refund_id = refund.id
            already_done = refund.status == RefundStatus.COMPLETED

        if already_done:
            return True

        logger.warning(
            "Refunding payment %s of hold %s (%s)",
            payment.id,
            payment.hold_id,
            reason,
        )
        return self._execute_refund(refund_id, mark_failed=False)

    def on_provider_event(self, provider: PaymentProvider | str, event: ProviderEvent) -> PaymentRecord | None:
        """
        Applies an asynchronous provider outcome. Deliveries are de-duplicated
        by (provider, event id); a replay returns the payment unchanged.
        """
        provider = PaymentProvider(provider)

        try:
            with transaction(self.session_factory) as db:
                payments = PaymentRepository(db)
                payment = payments.get_by_transaction(provider, event.transaction_id)
                replay = payments.get_webhook_event(provider.value, event.event_id) is not None
                if not replay:
                    payments.add_webhook_event(
                        provider=provider.value,
                        event_id=event.event_id,
                        transaction_id=event.transaction_id,
                        payload_hash=event.payload_hash,
                        status="PROCESSED" if payment else "UNMATCHED",
                    )
                record = PaymentRepository.to_record(payment) if payment else None
        except IntegrityError:
            # Concurrent delivery of the same event won the insert.
            replay = True
            record = self._payment_by_transaction(provider, event.transaction_id)

        if record is None:
            logger.warning(
                "%s event %s for unknown transaction %s",
                provider.value,
                event.event_id,
                event.transaction_id,
            )
            return None
        if replay:
            logger.info("Ignoring replayed %s event %s", provider.value, event.event_id)
            return record

        if event.status == PaymentStatus.FAILED:
            if record.status == PaymentStatus.PROCESSING:
                self._fail_payment(record.id, event.failure_reason or "FAILED")
                logger.info("Payment %s failed at provider; hold %s left pending", record.id, record.hold_id)
            return self._payment_record(record.id)

        if record.status == PaymentStatus.REFUNDED:
            logger.info("Provider reported success for already refunded payment %s", record.id)
            return record
        if record.status == PaymentStatus.FAILED:
            return self._settle_captured_after_failure(record)

        try:
            return self._settle_success(record)
        except ReservationExpiredDuringPaymentError as exc:
            # The provider needs an acknowledgement, not an error.
            logger.warning("%s", exc)
            return self._payment_record(record.id)

    def _settle_captured_after_failure(self, record: PaymentRecord) -> PaymentRecord:
        """
        The provider captured money for a payment recorded as failed. A live
        hold is confirmed with it; otherwise the money goes back. When another
        payment already covers the hold the failed record cannot be revived,
        and the capture is refunded against it as it stands.
        """
        logger.warning(
            "Provider captured payment %s of hold %s after it was recorded as failed",
            record.id,
            record.hold_id,
        )
        try:
            with transaction(self.session_factory) as db:
                revived = PaymentRepository(db).compare_and_set_status(
                    record.id,
                    PaymentStatus.FAILED,
                    PaymentStatus.SUCCEEDED,
                    self.clock(),
                    failure_reason=None,
                )
        except IntegrityError:
            # One-active-payment-per-hold: a retry already holds the seat.
            revived = False

        if not revived:
            self._refund_late_success(record, DUPLICATE_CAPTURE_REFUND_REASON)
            return self._payment_record(record.id)

        try:
            return self._settle_success(self._payment_record(record.id))
        except ReservationExpiredDuringPaymentError as exc:
            logger.warning("%s", exc)
            return self._payment_record(record.id)

    def handle_webhook(
        self,
        tenant_id: str,
        provider: PaymentProvider | str,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> PaymentRecord | None:
        gateway = self.gateways.get(tenant_id, provider)
        try:
            event = gateway.parse_event(payload, headers)
        except WebhookVerificationError as exc:
            raise NotAuthorizedError(str(exc)) from exc
        if event is None:
            return None
        return self.on_provider_event(gateway.provider, event)

    def _payment_record(self, payment_id: str) -> PaymentRecord:
        with transaction(self.session_factory) as db:
            payment = PaymentRepository(db).get_by_id(payment_id)
            if not payment:
                raise PaymentNotFoundError(f"Payment {payment_id} not found")
            return PaymentRepository.to_record(payment)

    def _payment_by_transaction(self, provider: PaymentProvider, transaction_id: str) -> PaymentRecord | None:
        with transaction(self.session_factory) as db:
            payment = PaymentRepository(db).get_by_transaction(provider, transaction_id)
            return PaymentRepository.to_record(payment) if payment else None

    # -----------------------------
    # Refunds
    # -----------------------------
    def refund(self, hold_id: str, reason: str, actor: Actor) -> RefundRecord:
        """
        Refunds the payment of a confirmed hold. The hold stays confirmed
        and its seat is not returned to the session.
        """
        now = self.clock()

        try:
            with transaction(self.session_factory) as db:
                hold = HoldRepository(db).get_by_id(hold_id)
                if not hold:
                    raise HoldNotFoundError(hold_id)
                ensure_can_act_for(actor, PlayerRepository(db).require(hold.player_id))
                if hold.state != HoldState.CONFIRMED:
                    raise RefundNotAllowedError(
                        f"Only confirmed reservations can be refunded (reservation {hold_id} is {hold.state.value})"
                    )
                self._ensure_before_cutoff(db, hold, actor, now)

                payments = PaymentRepository(db)
                payment = payments.get_succeeded_for_hold(hold_id)
                if not payment:
                    raise RefundNotAllowedError(f"Reservation {hold_id} has no refundable payment")
                refund = payments.add_refund(payment, reason, now)
                refund_id = refund.id
        except IntegrityError as exc:
            raise RefundNotAllowedError(f"A refund for reservation {hold_id} already exists") from exc

        logger.info("Refund %s requested for hold %s by %s", refund_id, hold_id, actor.user_id)
        self._execute_refund(refund_id, mark_failed=True)

        with transaction(self.session_factory) as db:
            return PaymentRepository.refund_to_record(PaymentRepository(db).get_refund(refund_id))

    def _ensure_before_cutoff(self, db: Session, hold: Hold, actor: Actor, now) -> None:
        if actor.is_admin:
            return
        session = SessionRepository(db).require(hold.session_id)
        cutoff = session.starts_at - timedelta(hours=self.settings.refund_cutoff_hours)
        if now >= cutoff:
            raise RefundNotAllowedError(
                f"Refunds close {self.settings.refund_cutoff_hours} hours before the session starts"
            )

    def _execute_refund(self, refund_id: str, mark_failed: bool) -> bool:
        """
        Calls the provider for a requested refund and records the outcome.
        With mark_failed=False a provider error leaves the refund requested
        for the reconciliation sweep; otherwise it is marked failed and
        PaymentProviderError raised.
        """
        with transaction(self.session_factory) as db:
            payments = PaymentRepository(db)
            refund = payments.get_refund(refund_id)
            payment = payments.get_by_id(refund.payment_id)
            session_id = HoldRepository(db).get_by_id(payment.hold_id).session_id
            tenant_id = SessionRepository(db).require(session_id).tenant_id
            provider = payment.provider
            transaction_id = payment.transaction_id
            amount_cents = refund.amount_cents
            reason = refund.reason

        provider_refund_id = None
        if provider != PaymentProvider.MANUAL and amount_cents > 0:
            try:
                gateway: PaymentGateway = self.gateways.get(tenant_id, provider)
                provider_refund_id = gateway.refund(transaction_id, amount_cents, reason)
            except PaymentGatewayError as exc:
                if not mark_failed:
                    logger.error("Refund %s failed at provider, will retry: %s", refund_id, exc)
                    return False
                with transaction(self.session_factory) as db:
                    PaymentRepository(db).finish_refund(refund_id, RefundStatus.FAILED, self.clock())
                raise PaymentProviderError(f"Refund failed: {exc}") from exc

        now = self.clock()
        with transaction(self.session_factory) as db:
            payments = PaymentRepository(db)
            payments.finish_refund(refund_id, RefundStatus.COMPLETED, now, provider_refund_id)
            payments.compare_and_set_status(
                payment.id,
                PaymentStatus.SUCCEEDED,
                PaymentStatus.REFUNDED,
                now,
                refund_reason=reason,
                refunded_at=now,
            )
            hold = HoldRepository(db).get_by_id(payment.hold_id)
            add_hold_event(db, hold, PAYMENT_REFUNDED, now, payment_id=payment.id, reason=reason)

        logger.info("Refund %s completed for payment %s", refund_id, payment.id)
        self._notify()
        return True

    def reconcile_refunds(self, limit: int = 50) -> int:
        """Retries refunds left requested by an earlier provider failure."""
        cutoff = self.clock() - REFUND_RETRY_AFTER
        with transaction(self.session_factory) as db:
            refund_ids = [refund.id for refund in PaymentRepository(db).list_requested_refunds(cutoff, limit)]

        completed = 0
        for refund_id in refund_ids:
            if self._execute_refund(refund_id, mark_failed=False):
                completed += 1
        return completed

    # -----------------------------
    # Manual confirmation
    # -----------------------------
    def manual_confirm(
        self,
        hold_id: str,
        actor: Actor,
        reference: str,
        amount_cents: int | None = None,
    ) -> HoldRecord:
        """
        Confirms a hold paid outside the app (peer transfer, cash). The
        synthetic payment goes through the normal confirmation, so an
        expired hold is rejected just like a late card payment.
        """
        if not actor.is_admin:
            raise NotAuthorizedError("Only administrators may confirm manual payments")

        context = self._live_context(hold_id, None)
        record = PaymentRecord.manual(
            hold_id,
            context.hold.price_cents if amount_cents is None else amount_cents,
            context.currency,
            reference,
        )
        return self.reservations.confirm_reservation(hold_id, record)

    def _notify(self) -> None:
        if self.dispatcher is not None:
            self.dispatcher.kick()
