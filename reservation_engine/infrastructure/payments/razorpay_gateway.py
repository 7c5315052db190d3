# reservation_engine/infrastructure/payments/razorpay_gateway.py

import json
import logging
from typing import Any, Mapping

import razorpay

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

# requests' transport errors are OSError subclasses.
_RAZORPAY_ERRORS = (
    razorpay.errors.BadRequestError,
    razorpay.errors.GatewayError,
    razorpay.errors.ServerError,
    OSError,
)

_EVENT_STATUS = {
    "payment.captured": PaymentStatus.SUCCEEDED,
    "payment.failed": PaymentStatus.FAILED,
}


class RazorpayGateway(PaymentGateway):
    """
    Razorpay checkout: the client pays against an order created here, then
    hands back (order id, payment id, signature). The signature is verified
    and the authorized payment captured server-side.
    """

    provider = PaymentProvider.RAZORPAY

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str | None = None,
        client: razorpay.Client | None = None,
    ):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def create_payment_method(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
    ) -> dict[str, Any]:
        try:
            order = self.client.order.create(
                data={
                    "amount": amount_cents,
                    "currency": currency,
                    "receipt": reference[:40],
                    "payment_capture": 0,
                }
            )
        except _RAZORPAY_ERRORS as exc:
            raise PaymentGatewayError(f"Razorpay order creation failed: {exc}") from exc

        return {
            "provider": self.provider.value,
            "order_id": order["id"],
            "amount": amount_cents,
            "currency": currency,
            "key_id": self.key_id,
        }

    def prepare_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
    ) -> str | None:
        if isinstance(payment_token, Mapping):
            return payment_token.get("razorpay_payment_id") or None
        return None

    def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
        transaction_id: str | None = None,
    ) -> ChargeResult:
        if not isinstance(payment_token, Mapping):
            raise PaymentGatewayError(
                "Razorpay token must carry razorpay_order_id, razorpay_payment_id and razorpay_signature"
            )
        try:
            params = {
                "razorpay_order_id": payment_token["razorpay_order_id"],
                "razorpay_payment_id": payment_token["razorpay_payment_id"],
                "razorpay_signature": payment_token["razorpay_signature"],
            }
        except KeyError as exc:
            raise PaymentGatewayError(f"Razorpay token is missing {exc.args[0]}") from exc

        payment_id = params["razorpay_payment_id"]

        try:
            self.client.utility.verify_payment_signature(params)
        except razorpay.errors.SignatureVerificationError:
            logger.warning("Razorpay signature mismatch for payment %s (%s)", payment_id, reference)
            return ChargeResult(
                transaction_id=payment_id,
                status=PaymentStatus.FAILED,
                failure_reason="INVALID_SIGNATURE",
            )

        try:
            payment = self.client.payment.fetch(payment_id)
            if int(payment.get("amount", -1)) != amount_cents:
                return ChargeResult(
                    transaction_id=payment_id,
                    status=PaymentStatus.FAILED,
                    failure_reason="AMOUNT_MISMATCH",
                )
            if payment.get("status") == "authorized":
                payment = self.client.payment.capture(
                    payment_id,
                    amount_cents,
                    {"currency": currency},
                )
        except _RAZORPAY_ERRORS as exc:
            raise PaymentGatewayError(f"Razorpay capture failed: {exc}") from exc

        status = payment.get("status")
        if status == "captured":
            return ChargeResult(transaction_id=payment_id, status=PaymentStatus.SUCCEEDED)
        if status == "failed":
            return ChargeResult(
                transaction_id=payment_id,
                status=PaymentStatus.FAILED,
                failure_reason=payment.get("error_description") or "PAYMENT_FAILED",
            )
        return ChargeResult(transaction_id=payment_id, status=PaymentStatus.PROCESSING)

    def refund(
        self,
        transaction_id: str,
        amount_cents: int,
        reason: str,
    ) -> str:
        try:
            result = self.client.payment.refund(
                transaction_id,
                {"amount": amount_cents, "notes": {"reason": reason[:250]}},
            )
        except _RAZORPAY_ERRORS as exc:
            raise PaymentGatewayError(f"Razorpay refund failed: {exc}") from exc
        return result["id"]

    def parse_event(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> ProviderEvent | None:
        if not self.webhook_secret:
            raise WebhookVerificationError("Razorpay webhook secret is not configured")

        signature = headers.get("x-razorpay-signature", "")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookVerificationError("Razorpay webhook body is not UTF-8") from exc
        try:
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise WebhookVerificationError("Invalid Razorpay webhook signature") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise WebhookVerificationError("Malformed Razorpay webhook payload") from exc
        if not isinstance(event, dict):
            raise WebhookVerificationError("Malformed Razorpay webhook payload")

        status = _EVENT_STATUS.get(event.get("event"))
        if status is None:
            return None

        try:
            entity = event["payload"]["payment"]["entity"]
            transaction_id = entity["id"]
        except (KeyError, TypeError) as exc:
            raise WebhookVerificationError(f"Razorpay {event['event']} event without a payment entity") from exc
        payload_hash = hash_payload(payload)
        return ProviderEvent(
            event_id=headers.get("x-razorpay-event-id") or payload_hash,
            transaction_id=transaction_id,
            status=status,
            payload_hash=payload_hash,
            failure_reason=entity.get("error_description"),
        )
