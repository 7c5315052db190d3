from datetime import datetime
from typing import Literal, Union

from pydantic import BaseModel, Field

from reservation_engine.domain.models import HoldRecord, PaymentRecord, RefundRecord, WaitlistRecord


class ReservationCreateRequest(BaseModel):
    player_id: str
    access_code: str | None = None
    discount_code: str | None = None


class HoldResponse(BaseModel):
    hold_id: str
    session_id: str
    player_id: str
    state: str
    created_at: datetime
    expires_at: datetime
    price_cents: int
    discount_code_id: str | None = None
    payment_id: str | None = None
    extension_count: int = 0
    resolved_at: datetime | None = None

    @classmethod
    def from_record(cls, record: HoldRecord) -> "HoldResponse":
        return cls(
            hold_id=record.id,
            session_id=record.session_id,
            player_id=record.player_id,
            state=record.state.value,
            created_at=record.created_at,
            expires_at=record.expires_at,
            price_cents=record.price_cents,
            discount_code_id=record.discount_code_id,
            payment_id=record.payment_id,
            extension_count=record.extension_count,
            resolved_at=record.resolved_at,
        )


class CapacityResponse(BaseModel):
    session_id: str
    capacity: int
    confirmed: int
    held: int
    remaining: int


class CapacityUpdateRequest(BaseModel):
    capacity: int = Field(gt=0)


class WaitlistJoinRequest(BaseModel):
    player_id: str
    access_code: str | None = None


class WaitlistPromoteRequest(BaseModel):
    player_id: str | None = None


class WaitlistSettingsRequest(BaseModel):
    waitlist_enabled: bool | None = None
    waitlist_limit: int | None = Field(default=None, gt=0)
    waitlist_offer_minutes: int | None = Field(default=None, gt=0)
    auto_promote: bool | None = None


class WaitlistSettingsResponse(BaseModel):
    session_id: str
    waitlist_enabled: bool
    waitlist_limit: int | None = None
    waitlist_offer_minutes: int | None = None
    auto_promote: bool


class WaitlistEntryResponse(BaseModel):
    waitlist_id: str
    session_id: str
    player_id: str
    status: str
    position: int | None = None
    hold_id: str | None = None
    offer_expires_at: datetime | None = None
    created_at: datetime
    resolved_at: datetime | None = None

    @classmethod
    def from_record(cls, record: WaitlistRecord, now: datetime | None = None) -> "WaitlistEntryResponse":
        status = record.effective_status(now) if now is not None else record.status
        return cls(
            waitlist_id=record.id,
            session_id=record.session_id,
            player_id=record.player_id,
            status=status.value,
            position=record.position,
            hold_id=record.hold_id,
            offer_expires_at=record.offer_expires_at,
            created_at=record.created_at,
            resolved_at=record.resolved_at,
        )


class ExtendRequest(BaseModel):
    minutes: int = Field(gt=0)


class PaymentStartRequest(BaseModel):
    provider: Literal["razorpay", "stripe"]
    # Razorpay: order id / payment id / signature; Stripe: PaymentMethod or PaymentIntent id.
    token: Union[str, dict[str, str]]


class PaymentResponse(BaseModel):
    payment_id: str | None
    hold_id: str
    provider: str
    status: str
    amount_cents: int
    currency: str
    transaction_id: str | None = None
    failure_reason: str | None = None
    refunded_at: datetime | None = None

    @classmethod
    def from_record(cls, record: PaymentRecord) -> "PaymentResponse":
        return cls(
            payment_id=record.id,
            hold_id=record.hold_id,
            provider=record.provider.value,
            status=record.status.value,
            amount_cents=record.amount_cents,
            currency=record.currency,
            transaction_id=record.transaction_id,
            failure_reason=record.failure_reason,
            refunded_at=record.refunded_at,
        )


class ManualConfirmationRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=128)
    amount_cents: int | None = Field(default=None, ge=0)


class RefundRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    hold_id: str
    amount_cents: int
    reason: str
    status: str
    provider_refund_id: str | None = None

    @classmethod
    def from_record(cls, record: RefundRecord) -> "RefundResponse":
        return cls(
            refund_id=record.id,
            payment_id=record.payment_id,
            hold_id=record.hold_id,
            amount_cents=record.amount_cents,
            reason=record.reason,
            status=record.status.value,
            provider_refund_id=record.provider_refund_id,
        )


class WebhookResponse(BaseModel):
    status: Literal["processed", "ignored"]
    payment: PaymentResponse | None = None


class HoldReportItem(BaseModel):
    hold_id: str
    session_id: str
    session_title: str
    player_id: str
    player_name: str
    state: str
    created_at: datetime
    expires_at: datetime
    price_cents: int
    original_price_cents: int
    discount_code_id: str | None = None
    payment_id: str | None = None
    extension_count: int
    resolved_at: datetime | None = None
    resolved_by: str | None = None


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    last_error: str | None = None
    created_at: str
