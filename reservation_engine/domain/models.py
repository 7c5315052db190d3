"""Domain records returned by the services.

These are plain immutable values. SQLAlchemy models live in
infrastructure/db/models.py and never leave a transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from reservation_engine.domain.state_machine import HoldState, PaymentStatus, WaitlistStatus


class PaymentProvider(str, Enum):
    RAZORPAY = "razorpay"
    STRIPE = "stripe"
    MANUAL = "manual"


class DiscountType(str, Enum):
    FULL = "full"
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class RefundStatus(str, Enum):
    REQUESTED = "requested"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Actor:
    """Whoever is calling; identity is established outside the engine."""

    user_id: str
    is_admin: bool = False

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id="system", is_admin=True)


@dataclass(frozen=True)
class HoldRecord:
    id: str
    session_id: str
    player_id: str
    state: HoldState
    created_at: datetime
    expires_at: datetime
    price_cents: int
    discount_code_id: str | None = None
    payment_id: str | None = None
    extension_count: int = 0
    resolved_at: datetime | None = None
    resolved_by: str | None = None

    def effective_state(self, now: datetime) -> HoldState:
        if self.state == HoldState.PENDING and now >= self.expires_at:
            return HoldState.EXPIRED
        return self.state


@dataclass(frozen=True)
class WaitlistRecord:
    id: str
    session_id: str
    player_id: str
    parent_id: str
    status: WaitlistStatus
    created_at: datetime
    position: int | None = None
    offer_expires_at: datetime | None = None
    hold_id: str | None = None
    resolved_at: datetime | None = None

    def effective_status(self, now: datetime) -> WaitlistStatus:
        if self.status == WaitlistStatus.OFFERED and self.offer_expires_at and now >= self.offer_expires_at:
            return WaitlistStatus.EXPIRED
        return self.status


@dataclass(frozen=True)
class PaymentRecord:
    hold_id: str
    provider: PaymentProvider
    amount_cents: int
    currency: str
    status: PaymentStatus
    id: str | None = None
    transaction_id: str | None = None
    failure_reason: str | None = None
    refund_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    refunded_at: datetime | None = None

    @classmethod
    def manual(cls, hold_id: str, amount_cents: int, currency: str, reference: str) -> "PaymentRecord":
        """Synthetic record for payments collected outside the app."""
        return cls(
            hold_id=hold_id,
            provider=PaymentProvider.MANUAL,
            amount_cents=amount_cents,
            currency=currency,
            status=PaymentStatus.SUCCEEDED,
            transaction_id=reference,
        )


@dataclass(frozen=True)
class RefundRecord:
    id: str
    payment_id: str
    hold_id: str
    amount_cents: int
    reason: str
    status: RefundStatus
    provider_refund_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class Occupancy:
    session_id: str
    capacity: int
    confirmed: int
    held: int

    @property
    def occupied(self) -> int:
        return self.confirmed + self.held

    @property
    def remaining(self) -> int:
        return max(0, self.capacity - self.occupied)

    @property
    def is_full(self) -> bool:
        return self.occupied >= self.capacity


@dataclass(frozen=True)
class DiscountQuote:
    """Result of a successful discount validation.

    `usage_token` is the code id; it is stored on the hold and counts as a
    pending use of the code until the hold is confirmed or released.
    """

    code: str
    usage_token: str
    original_price_cents: int
    discounted_price_cents: int
