# reservation_engine/infrastructure/db/models.py

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from uuid import uuid4

from reservation_engine.infrastructure.db.session import Base
from reservation_engine.infrastructure.db.types import UTCDateTime
from reservation_engine.domain.booking_rules import BookingPolicy
from reservation_engine.domain.models import DiscountType, PaymentProvider, RefundStatus
from reservation_engine.domain.state_machine import HoldState, PaymentStatus, WaitlistStatus


def _new_id() -> str:
    return str(uuid4())


def _value_enum(enum_cls, name: str) -> Enum:
    # Persist the lowercase values so partial-index predicates stay readable.
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


class TrainingSession(Base):
    """
    A bookable session. Edited by tenant admins elsewhere;
    the engine only reads it (capacity adjustment aside).
    """

    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    age_groups: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    genders: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    access_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_policy: Mapped[BookingPolicy] = mapped_column(
        _value_enum(BookingPolicy, "booking_policy"),
        nullable=False,
        default=BookingPolicy.SAME_DAY,
    )
    booking_open_hour: Mapped[int | None] = mapped_column(Integer, nullable=True)
    booking_open_minute: Mapped[int | None] = mapped_column(Integer, nullable=True)
    booking_open_hours_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    waitlist_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    waitlist_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Minutes an offered seat stays reserved; the engine default applies when unset.
    waitlist_offer_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    auto_promote: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_session_capacity_positive"),
        CheckConstraint("price_cents >= 0", name="ck_session_price_nonnegative"),
        CheckConstraint("ends_at > starts_at", name="ck_session_ends_after_start"),
        CheckConstraint(
            "waitlist_limit IS NULL OR waitlist_limit > 0",
            name="ck_session_waitlist_limit_positive",
        ),
        Index("ix_sessions_tenant_starts_at", "tenant_id", "starts_at"),
    )

    @property
    def requires_access_code(self) -> bool:
        return bool(self.access_code)


class Player(Base):
    __tablename__ = "players"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    first_name: Mapped[str] = mapped_column(String(64), nullable=False)
    last_name: Mapped[str] = mapped_column(String(64), nullable=False)
    birth_year: Mapped[int] = mapped_column(Integer, nullable=False)
    gender: Mapped[str] = mapped_column(String(16), nullable=False)
    parent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    parent2_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def is_guardian(self, user_id: str) -> bool:
        return user_id in (self.parent_id, self.parent2_id)


class DiscountCode(Base):
    __tablename__ = "discount_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        _value_enum(DiscountType, "discount_type"),
        nullable=False,
    )
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    valid_from: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locked_to_player_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    locked_to_parent_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_discount_code_per_tenant"),
        CheckConstraint("value >= 0", name="ck_discount_value_nonnegative"),
        CheckConstraint("current_uses >= 0", name="ck_discount_uses_nonnegative"),
        CheckConstraint(
            "max_uses IS NULL OR current_uses <= max_uses",
            name="ck_discount_uses_within_max",
        ),
    )


class Hold(Base):
    """
    Hold table reflecting domain state.
    Domain controls transitions; every state change is a guarded UPDATE.
    """

    __tablename__ = "holds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sessions.id"),
        nullable=False,
    )
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id"),
        nullable=False,
    )
    state: Mapped[HoldState] = mapped_column(
        _value_enum(HoldState, "hold_state"),
        nullable=False,
        default=HoldState.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    original_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_code_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("discount_codes.id"),
        nullable=True,
    )
    payment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    extension_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        CheckConstraint("price_cents >= 0", name="ck_hold_price_nonnegative"),
        CheckConstraint("expires_at > created_at", name="ck_hold_expires_after_created"),
        Index("ix_holds_session_state", "session_id", "state"),
        Index("ix_holds_player_session", "player_id", "session_id"),
        Index("ix_holds_state_expires_at", "state", "expires_at"),
        Index("ix_holds_discount_state", "discount_code_id", "state"),
        Index(
            "uq_holds_pending_player_session",
            "player_id",
            "session_id",
            unique=True,
            postgresql_where=text("state = 'pending'"),
            sqlite_where=text("state = 'pending'"),
        ),
    )


class WaitlistEntry(Base):
    """
    A player queued for a full session. `queue_number` only grows, so the
    queue order survives entries leaving; positions are ranks over it.
    """

    __tablename__ = "waitlist_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    session_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("sessions.id"),
        nullable=False,
    )
    player_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("players.id"),
        nullable=False,
    )
    parent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    queue_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        _value_enum(WaitlistStatus, "waitlist_status"),
        nullable=False,
        default=WaitlistStatus.WAITING,
    )
    hold_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("holds.id"),
        nullable=True,
    )
    offer_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "queue_number", name="uq_waitlist_session_queue_number"),
        Index("ix_waitlist_session_status", "session_id", "status", "queue_number"),
        Index("ix_waitlist_status_offer_expires_at", "status", "offer_expires_at"),
        Index("ix_waitlist_hold", "hold_id"),
        Index(
            "uq_waitlist_live_player_session",
            "player_id",
            "session_id",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'offered')"),
            sqlite_where=text("status IN ('waiting', 'offered')"),
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    hold_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("holds.id"),
        nullable=False,
    )
    provider: Mapped[PaymentProvider] = mapped_column(
        _value_enum(PaymentProvider, "payment_provider"),
        nullable=False,
    )
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="USD")
    status: Mapped[PaymentStatus] = mapped_column(
        _value_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PROCESSING,
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "transaction_id", name="uq_payment_provider_transaction"),
        CheckConstraint("amount_cents >= 0", name="ck_payment_amount_nonnegative"),
        Index("ix_payments_hold", "hold_id"),
        Index(
            "uq_payments_active_per_hold",
            "hold_id",
            unique=True,
            postgresql_where=text("status IN ('processing', 'succeeded')"),
            sqlite_where=text("status IN ('processing', 'succeeded')"),
        ),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("payments.id"),
        nullable=False,
    )
    hold_id: Mapped[str] = mapped_column(String(36), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[RefundStatus] = mapped_column(
        _value_enum(RefundStatus, "refund_status"),
        nullable=False,
        default=RefundStatus.REQUESTED,
    )
    provider_refund_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index(
            "uq_refunds_open_per_payment",
            "payment_id",
            unique=True,
            postgresql_where=text("status != 'failed'"),
            sqlite_where=text("status != 'failed'"),
        ),
    )


class PaymentWebhookEvent(Base):
    __tablename__ = "payment_webhook_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PROCESSED")
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event_id"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        server_default=func.now(),
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
        Index("ix_outbox_status_created_at", "status", "created_at"),
    )
