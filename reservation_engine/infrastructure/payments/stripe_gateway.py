# reservation_engine/infrastructure/payments/stripe_gateway.py

import logging
from typing import Any, Mapping

import stripe

from reservation_engine.domain.models import PaymentProvider
from reservation_engine.domain.state_machine import PaymentStatus
from reservation_engine.infrastructure.payments.gateway import (
    ChargeResult,
    PaymentGateway,
    PaymentGatewayError,
    ProviderEvent,
    WebhookVerificationError,
    hash_payload,
)


logger = logging.getLogger(__name__)

_EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
}

_UNCAPTURED = {"requires_payment_method", "requires_confirmation", "requires_action", "requires_capture"}


def _intent_result(intent) -> ChargeResult:
    if intent.status == "succeeded":
        return ChargeResult(transaction_id=intent.id, status=PaymentStatus.SUCCEEDED)
    if intent.status in ("canceled", "requires_payment_method"):
        error = intent.get("last_payment_error") or {}
        return ChargeResult(
            transaction_id=intent.id,
            status=PaymentStatus.FAILED,
            failure_reason=error.get("message") or intent.status.upper(),
        )
    return ChargeResult(transaction_id=intent.id, status=PaymentStatus.PROCESSING)


class StripeGateway(PaymentGateway):
    """
    Stripe PaymentIntents. A token is either a PaymentMethod id ("pm_...")
    charged server-side, or a PaymentIntent id ("pi_...") the client already
    confirmed with the intent from create_payment_method.
    """

    provider = PaymentProvider.STRIPE

    def __init__(self, secret_key: str, webhook_secret: str | None = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def create_payment_method(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
    ) -> dict[str, Any]:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount_cents,
                currency=currency.lower(),
                metadata={"hold_id": reference},
                automatic_payment_methods={"enabled": True},
                idempotency_key=f"intent:{reference}",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe intent creation failed: {exc}") from exc

        return {
            "provider": self.provider.value,
            "payment_intent_id": intent.id,
            "client_secret": intent.client_secret,
            "amount": amount_cents,
            "currency": currency,
        }

    def prepare_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
    ) -> str | None:
        """
        A client-confirmed intent already has its id; for a PaymentMethod the
        intent is created unconfirmed here and confirmed by charge().
        """
        if not isinstance(payment_token, str) or not payment_token:
            return None
        if payment_token.startswith("pi_"):
            return payment_token

        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.secret_key,
                amount=amount_cents,
                currency=currency.lower(),
                payment_method=payment_token,
                metadata={"hold_id": reference},
                automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                idempotency_key=f"charge:{reference}:{payment_token}",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe intent creation failed: {exc}") from exc
        return intent.id

    def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
        transaction_id: str | None = None,
    ) -> ChargeResult:
        if not isinstance(payment_token, str) or not payment_token:
            raise PaymentGatewayError("Stripe token must be a PaymentMethod or PaymentIntent id")

        try:
            if payment_token.startswith("pi_"):
                intent = stripe.PaymentIntent.retrieve(payment_token, api_key=self.secret_key)
                if intent.amount != amount_cents or intent.currency != currency.lower():
                    return ChargeResult(
                        transaction_id=intent.id,
                        status=PaymentStatus.FAILED,
                        failure_reason="AMOUNT_MISMATCH",
                    )
            elif transaction_id:
                intent = stripe.PaymentIntent.confirm(
                    transaction_id,
                    api_key=self.secret_key,
                    payment_method=payment_token,
                )
            else:
                intent = stripe.PaymentIntent.create(
                    api_key=self.secret_key,
                    amount=amount_cents,
                    currency=currency.lower(),
                    payment_method=payment_token,
                    confirm=True,
                    metadata={"hold_id": reference},
                    automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                    idempotency_key=f"charge-now:{reference}:{payment_token}",
                )
        except stripe.CardError as exc:
            logger.info("Stripe declined card for %s: %s", reference, exc.user_message)
            intent_id = (exc.error.payment_intent or {}).get("id") if exc.error else None
            return ChargeResult(
                transaction_id=intent_id or transaction_id or f"declined:{reference}:{payment_token}",
                status=PaymentStatus.FAILED,
                failure_reason=exc.user_message or "CARD_DECLINED",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe charge failed: {exc}") from exc

        return _intent_result(intent)

    def refund(
        self,
        transaction_id: str,
        amount_cents: int,
        reason: str,
    ) -> str:
        try:
            intent = stripe.PaymentIntent.retrieve(transaction_id, api_key=self.secret_key)
            if intent.status in _UNCAPTURED:
                # Nothing captured yet: void instead of refunding.
                cancelled = stripe.PaymentIntent.cancel(transaction_id, api_key=self.secret_key)
                return cancelled.id
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                payment_intent=transaction_id,
                amount=amount_cents,
                reason="requested_by_customer",
                metadata={"reason": reason[:500]},
                idempotency_key=f"refund:{transaction_id}",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Stripe refund failed: {exc}") from exc
        return refund.id

    def parse_event(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> ProviderEvent | None:
        if not self.webhook_secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")

        try:
            event = stripe.Webhook.construct_event(
                payload,
                headers.get("stripe-signature", ""),
                self.webhook_secret,
            )
        except stripe.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            raise WebhookVerificationError("Malformed Stripe webhook payload") from exc

        status = _EVENT_STATUS.get(event["type"])
        if status is None:
            return None

        intent = event["data"]["object"]
        error = intent.get("last_payment_error") or {}
        return ProviderEvent(
            event_id=event["id"],
            transaction_id=intent["id"],
            status=status,
            payload_hash=hash_payload(payload),
            failure_reason=error.get("message"),
        )
