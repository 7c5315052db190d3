# reservation_engine/infrastructure/payments/gateway.py

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping

from reservation_engine.domain.models import PaymentProvider
from reservation_engine.domain.state_machine import PaymentStatus


class PaymentGatewayError(Exception):
    """Transport or provider-side failure; the outcome of the call is unknown or negative."""


class WebhookVerificationError(PaymentGatewayError):
    pass


@dataclass(frozen=True)
class ChargeResult:
    """
    Provider answer to a charge.

    `status` is SUCCEEDED, FAILED (declined) or PROCESSING when the provider
    settles asynchronously and a webhook will follow.
    """

    transaction_id: str
    status: PaymentStatus
    failure_reason: str | None = None


@dataclass(frozen=True)
class ProviderEvent:
    event_id: str
    transaction_id: str
    status: PaymentStatus
    payload_hash: str
    failure_reason: str | None = None


def hash_payload(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


class PaymentGateway(ABC):
    """
    One payment provider account. Implementations translate provider SDK
    errors into PaymentGatewayError and never touch the database.
    """

    provider: PaymentProvider

    @abstractmethod
    def create_payment_method(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
    ) -> dict[str, Any]:
        """Client-side checkout parameters for a hold (order / intent)."""

    def prepare_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
    ) -> str | None:
        """
        Provider id the upcoming charge will settle under, when it can be
        known before money moves. The caller stores it first so a webhook
        for a charge whose synchronous answer was lost still finds its payment.
        """
        return None

    @abstractmethod
    def charge(
        self,
        amount_cents: int,
        currency: str,
        payment_token: Any,
        reference: str,
        transaction_id: str | None = None,
    ) -> ChargeResult:
        ...

    @abstractmethod
    def refund(
        self,
        transaction_id: str,
        amount_cents: int,
        reason: str,
    ) -> str:
        """Refunds (or voids) a charge; returns the provider refund id."""

    @abstractmethod
    def parse_event(
        self,
        payload: bytes,
        headers: Mapping[str, str],
    ) -> ProviderEvent | None:
        """
        Verifies and decodes a webhook delivery. Returns None for event types
        that do not settle a payment.
        """
