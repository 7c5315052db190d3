import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from reservation_engine.api.schemas.schemas import (
    CapacityResponse,
    CapacityUpdateRequest,
    ExtendRequest,
    HoldReportItem,
    HoldResponse,
    ManualConfirmationRequest,
    OutboxEventResponse,
    PaymentResponse,
    PaymentStartRequest,
    RefundRequest,
    RefundResponse,
    ReservationCreateRequest,
    WaitlistEntryResponse,
    WaitlistJoinRequest,
    WaitlistPromoteRequest,
    WaitlistSettingsRequest,
    WaitlistSettingsResponse,
    WebhookResponse,
)
from reservation_engine.application.engine import ReservationEngine
from reservation_engine.config import DEFAULT_TENANT_ID
from reservation_engine.domain.models import Actor, Occupancy, PaymentProvider
from reservation_engine.domain.state_machine import HoldState, PaymentStatus
from reservation_engine.infrastructure.db.session import transaction
from reservation_engine.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


def get_reservation_engine(request: Request) -> ReservationEngine:
    return request.app.state.reservation_engine


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header("parent"),
) -> Actor:
    # Identity is established upstream (gateway / session middleware).
    return Actor(user_id=x_actor_id, is_admin=x_actor_role.lower() == ADMIN_ROLE)


def _capacity_response(occupancy: Occupancy) -> CapacityResponse:
    return CapacityResponse(
        session_id=occupancy.session_id,
        capacity=occupancy.capacity,
        confirmed=occupancy.confirmed,
        held=occupancy.held,
        remaining=occupancy.remaining,
    )


@router.get("/health")
def health():
    return {"message": "Reservation engine is running"}


# -----------------------------
# Sessions
# -----------------------------
@router.post(
    "/sessions/{session_id}/reservations",
    response_model=HoldResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_reservation(
    session_id: str,
    request: ReservationCreateRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    hold = engine.reservations.create_reservation(
        player_id=request.player_id,
        session_id=session_id,
        access_code=request.access_code,
        discount_code=request.discount_code,
        actor=actor,
    )
    return HoldResponse.from_record(hold)


@router.get("/sessions/{session_id}/capacity", response_model=CapacityResponse)
def get_capacity(
    session_id: str,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return _capacity_response(engine.reservations.get_occupancy(session_id))


@router.put("/sessions/{session_id}/capacity", response_model=CapacityResponse)
def update_capacity(
    session_id: str,
    request: CapacityUpdateRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    occupancy = engine.reservations.adjust_capacity(session_id, request.capacity, actor)
    return _capacity_response(occupancy)


# -----------------------------
# Reservations
# -----------------------------
@router.get("/reservations/{hold_id}", response_model=HoldResponse)
def get_reservation(
    hold_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return HoldResponse.from_record(engine.reservations.get_hold(hold_id, actor))


@router.post("/reservations/{hold_id}/cancel", response_model=HoldResponse)
def cancel_reservation(
    hold_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return HoldResponse.from_record(engine.reservations.cancel_reservation(hold_id, actor))


@router.post("/reservations/{hold_id}/extend", response_model=HoldResponse)
def extend_reservation(
    hold_id: str,
    request: ExtendRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    hold = engine.reservations.extend_reservation(hold_id, request.minutes, actor)
    return HoldResponse.from_record(hold)


@router.post("/reservations/{hold_id}/payment-method")
def create_payment_method(
    hold_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return engine.payments.create_payment_method(hold_id, actor)


@router.post("/reservations/{hold_id}/payments", response_model=PaymentResponse)
def begin_payment(
    hold_id: str,
    request: PaymentStartRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    payment = engine.payments.begin_payment(
        hold_id,
        provider=request.provider,
        provider_token=request.token,
        actor=actor,
    )
    return PaymentResponse.from_record(payment)


@router.post("/reservations/{hold_id}/manual-confirmation", response_model=HoldResponse)
def manual_confirmation(
    hold_id: str,
    request: ManualConfirmationRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    hold = engine.payments.manual_confirm(
        hold_id,
        actor,
        reference=request.reference,
        amount_cents=request.amount_cents,
    )
    return HoldResponse.from_record(hold)


@router.post("/reservations/{hold_id}/refund", response_model=RefundResponse)
def refund_reservation(
    hold_id: str,
    request: RefundRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    refund = engine.payments.refund(hold_id, request.reason, actor)
    return RefundResponse.from_record(refund)


# -----------------------------
# Waitlist
# -----------------------------
@router.post(
    "/sessions/{session_id}/waitlist",
    response_model=WaitlistEntryResponse,
    status_code=status.HTTP_201_CREATED,
)
def join_waitlist(
    session_id: str,
    request: WaitlistJoinRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    entry = engine.waitlist.join_waitlist(
        session_id,
        request.player_id,
        actor,
        access_code=request.access_code,
    )
    return WaitlistEntryResponse.from_record(entry)


@router.get("/sessions/{session_id}/waitlist", response_model=list[WaitlistEntryResponse])
def list_waitlist(
    session_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    now = engine.waitlist.clock()
    return [
        WaitlistEntryResponse.from_record(entry, now)
        for entry in engine.waitlist.list_waitlist(session_id, actor)
    ]


@router.post("/sessions/{session_id}/waitlist/promote", response_model=WaitlistEntryResponse)
def promote_from_waitlist(
    session_id: str,
    request: WaitlistPromoteRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    entry = engine.waitlist.promote_from_waitlist(session_id, actor, player_id=request.player_id)
    return WaitlistEntryResponse.from_record(entry)


@router.put("/sessions/{session_id}/waitlist/settings", response_model=WaitlistSettingsResponse)
def update_waitlist_settings(
    session_id: str,
    request: WaitlistSettingsRequest,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    changes = request.model_dump(exclude_unset=True)
    settings = engine.waitlist.update_waitlist_settings(session_id, changes, actor)
    return WaitlistSettingsResponse(session_id=session_id, **settings)


@router.get("/waitlist/{waitlist_id}", response_model=WaitlistEntryResponse)
def get_waitlist_entry(
    waitlist_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return WaitlistEntryResponse.from_record(engine.waitlist.get_entry(waitlist_id, actor))


@router.post("/waitlist/{waitlist_id}/accept", response_model=WaitlistEntryResponse)
def accept_waitlist_offer(
    waitlist_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return WaitlistEntryResponse.from_record(engine.waitlist.accept_waitlist_offer(waitlist_id, actor))


@router.post("/waitlist/{waitlist_id}/leave", response_model=WaitlistEntryResponse)
def leave_waitlist(
    waitlist_id: str,
    actor: Actor = Depends(get_actor),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    return WaitlistEntryResponse.from_record(engine.waitlist.leave_waitlist(waitlist_id, actor))


# -----------------------------
# Provider webhooks
# -----------------------------
@router.post("/webhooks/{provider}", response_model=WebhookResponse)
async def provider_webhook(
    provider: PaymentProvider,
    request: Request,
    tenant_id: str = DEFAULT_TENANT_ID,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    if provider == PaymentProvider.MANUAL:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Manual payments have no webhook",
        )

    payload = await request.body()
    headers = {key.lower(): value for key, value in request.headers.items()}
    payment = await run_in_threadpool(
        engine.payments.handle_webhook,
        tenant_id,
        provider,
        payload,
        headers,
    )
    if payment is None:
        return WebhookResponse(status="ignored")
    return WebhookResponse(status="processed", payment=PaymentResponse.from_record(payment))


# -----------------------------
# Reporting
# -----------------------------
@router.get("/reports/holds", response_model=list[HoldReportItem])
def report_holds(
    session_id: str | None = None,
    player_id: str | None = None,
    state: HoldState | None = None,
    limit: int = 100,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    views = engine.reporting.list_holds(
        session_id=session_id,
        player_id=player_id,
        state=state,
        limit=limit,
    )
    return [
        HoldReportItem(
            hold_id=view.hold_id,
            session_id=view.session_id,
            session_title=view.session_title,
            player_id=view.player_id,
            player_name=view.player_name,
            state=view.state.value,
            created_at=view.created_at,
            expires_at=view.expires_at,
            price_cents=view.price_cents,
            original_price_cents=view.original_price_cents,
            discount_code_id=view.discount_code_id,
            payment_id=view.payment_id,
            extension_count=view.extension_count,
            resolved_at=view.resolved_at,
            resolved_by=view.resolved_by,
        )
        for view in views
    ]


@router.get("/reports/payments", response_model=list[PaymentResponse])
def report_payments(
    hold_id: str | None = None,
    status_filter: PaymentStatus | None = None,
    limit: int = 100,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    payments = engine.reporting.list_payments(hold_id=hold_id, status=status_filter, limit=limit)
    return [PaymentResponse.from_record(payment) for payment in payments]


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    safe_limit = max(1, min(limit, 200))
    with transaction(engine.session_factory) as db:
        events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
        return [
            OutboxEventResponse(
                id=item.id,
                aggregate_type=item.aggregate_type,
                aggregate_id=item.aggregate_id,
                event_type=item.event_type,
                status=item.status,
                attempts=item.attempts,
                last_error=item.last_error,
                created_at=item.created_at.isoformat(),
            )
            for item in events
        ]
