# reservation_engine/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from reservation_engine.domain.models import PaymentProvider, PaymentRecord, RefundRecord, RefundStatus
from reservation_engine.domain.state_machine import PaymentStateMachine, PaymentStatus
from reservation_engine.infrastructure.db.models import Payment, PaymentWebhookEvent, Refund


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        stmt = select(Payment).where(Payment.id == payment_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_transaction(self, provider: PaymentProvider, transaction_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.provider == provider)
            .where(Payment.transaction_id == transaction_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_succeeded_for_hold(self, hold_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.hold_id == hold_id)
            .where(Payment.status == PaymentStatus.SUCCEEDED)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add(
        self,
        hold_id: str,
        provider: PaymentProvider,
        amount_cents: int,
        currency: str,
        status: PaymentStatus,
        now: datetime,
        transaction_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            hold_id=hold_id,
            provider=provider,
            transaction_id=transaction_id,
            amount_cents=amount_cents,
            currency=currency,
            status=status,
            created_at=now,
            updated_at=now,
        )
        self.db.add(payment)
        # Surfaces the one-active-payment-per-hold index violation here.
        self.db.flush()
        return payment

    def compare_and_set_status(
        self,
        payment_id: str,
        from_status: PaymentStatus,
        to_status: PaymentStatus,
        now: datetime,
        **values,
    ) -> bool:
        PaymentStateMachine.validate_transition(from_status, to_status)

        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .where(Payment.status == from_status)
            .values(status=to_status, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def set_transaction_id(self, payment_id: str, transaction_id: str | None, now: datetime) -> None:
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id)
            .values(transaction_id=transaction_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    # -----------------------------
    # Refunds
    # -----------------------------
    def add_refund(
        self,
        payment: Payment,
        reason: str,
        now: datetime,
    ) -> Refund:
        refund = Refund(
            payment_id=payment.id,
            hold_id=payment.hold_id,
            amount_cents=payment.amount_cents,
            reason=reason,
            status=RefundStatus.REQUESTED,
            created_at=now,
            updated_at=now,
        )
        self.db.add(refund)
        # Second claim on the same payment fails on the partial unique index.
        self.db.flush()
        return refund

    def get_refund(self, refund_id: str) -> Refund | None:
        stmt = select(Refund).where(Refund.id == refund_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_open_refund(self, payment_id: str) -> Refund | None:
        stmt = (
            select(Refund)
            .where(Refund.payment_id == payment_id)
            .where(Refund.status != RefundStatus.FAILED)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_requested_refunds(self, cutoff: datetime, limit: int) -> list[Refund]:
        stmt = (
            select(Refund)
            .where(Refund.status == RefundStatus.REQUESTED)
            .where(Refund.updated_at <= cutoff)
            .order_by(Refund.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def finish_refund(
        self,
        refund_id: str,
        status: RefundStatus,
        now: datetime,
        provider_refund_id: str | None = None,
    ) -> bool:
        stmt = (
            update(Refund)
            .where(Refund.id == refund_id)
            .where(Refund.status == RefundStatus.REQUESTED)
            .values(status=status, provider_refund_id=provider_refund_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    # -----------------------------
    # Webhook deliveries
    # -----------------------------
    def get_webhook_event(self, provider: str, event_id: str) -> PaymentWebhookEvent | None:
        stmt = (
            select(PaymentWebhookEvent)
            .where(PaymentWebhookEvent.provider == provider)
            .where(PaymentWebhookEvent.event_id == event_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_webhook_event(
        self,
        provider: str,
        event_id: str,
        transaction_id: str,
        payload_hash: str,
        status: str,
    ) -> PaymentWebhookEvent:
        event = PaymentWebhookEvent(
            provider=provider,
            event_id=event_id,
            transaction_id=transaction_id,
            payload_hash=payload_hash,
            status=status,
        )
        self.db.add(event)
        self.db.flush()
        return event

    @staticmethod
    def to_record(payment: Payment) -> PaymentRecord:
        return PaymentRecord(
            id=payment.id,
            hold_id=payment.hold_id,
            provider=payment.provider,
            amount_cents=payment.amount_cents,
            currency=payment.currency,
            status=payment.status,
            transaction_id=payment.transaction_id,
            failure_reason=payment.failure_reason,
            refund_reason=payment.refund_reason,
            created_at=payment.created_at,
            updated_at=payment.updated_at,
            refunded_at=payment.refunded_at,
        )

    @staticmethod
    def refund_to_record(refund: Refund) -> RefundRecord:
        return RefundRecord(
            id=refund.id,
            payment_id=refund.payment_id,
            hold_id=refund.hold_id,
            amount_cents=refund.amount_cents,
            reason=refund.reason,
            status=refund.status,
            provider_refund_id=refund.provider_refund_id,
            created_at=refund.created_at,
        )
