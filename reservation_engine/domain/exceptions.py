class ReservationEngineError(Exception):
    """
    Base exception for all domain-level errors
    inside the reservation engine.
    """

    code = "RESERVATION_ENGINE_ERROR"


# ---------------------
# VALIDATION ERRORS
# ---------------------

class SessionNotFoundError(ReservationEngineError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class PlayerNotFoundError(ReservationEngineError):
    code = "PLAYER_NOT_FOUND"

    def __init__(self, player_id: str):
        self.player_id = player_id
        super().__init__(f"Player {player_id} not found")


class HoldNotFoundError(ReservationEngineError):
    code = "HOLD_NOT_FOUND"

    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__(f"Reservation {hold_id} not found")


class NotEligibleError(ReservationEngineError):
    """Raised when a player's age group or gender is not accepted by a session."""

    code = "NOT_ELIGIBLE"


class BookingNotOpenError(ReservationEngineError):
    """Raised when booking has not opened yet or the session already started."""

    code = "BOOKING_NOT_OPEN"

    def __init__(self, message: str, opens_at=None):
        self.opens_at = opens_at
        super().__init__(message)


class InvalidAccessCodeError(ReservationEngineError):
    code = "INVALID_ACCESS_CODE"

    def __init__(self, message: str = "Access code is missing or does not match"):
        super().__init__(message)


class InvalidDiscountCodeError(ReservationEngineError):
    code = "INVALID_DISCOUNT_CODE"


class NotAuthorizedError(ReservationEngineError):
    code = "NOT_AUTHORIZED"


# ---------------------
# CONTENTION ERRORS
# ---------------------

class SessionFullError(ReservationEngineError):
    code = "SESSION_FULL"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is full")


class AlreadyHeldError(ReservationEngineError):
    code = "ALREADY_HELD"

    def __init__(self, player_id: str, session_id: str):
        self.player_id = player_id
        self.session_id = session_id
        super().__init__(
            f"Player {player_id} already holds a seat in session {session_id}"
        )


class ContentionError(ReservationEngineError):
    """Raised when a per-session lock could not be acquired in time."""

    code = "CONTENTION"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Too many concurrent requests for {key}, please retry")


class PaymentInProgressError(ReservationEngineError):
    code = "PAYMENT_IN_PROGRESS"

    def __init__(self, hold_id: str):
        self.hold_id = hold_id
        super().__init__(f"A payment for reservation {hold_id} is already in progress")


# ---------------------
# LATE-TRANSITION ERRORS
# ---------------------

class InvalidStateTransitionError(ReservationEngineError):
    """
    Raised when an illegal state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class AlreadyTerminalError(ReservationEngineError):
    """
    Raised when a transition loses the race against another terminal
    transition (expiry, cancellation or confirmation).
    """

    code = "ALREADY_TERMINAL"

    def __init__(self, hold_id: str, state: str):
        self.hold_id = hold_id
        self.state = state
        super().__init__(f"Reservation {hold_id} is already {state}")


class ReservationExpiredDuringPaymentError(ReservationEngineError):
    code = "RESERVATION_EXPIRED_DURING_PAYMENT"

    def __init__(self, hold_id: str, refunded: bool):
        self.hold_id = hold_id
        self.refunded = refunded
        message = f"Reservation {hold_id} expired before the payment completed"
        if refunded:
            message += "; the payment has been refunded"
        else:
            message += "; the refund is pending reconciliation"
        super().__init__(message)


class ExtensionNotAllowedError(ReservationEngineError):
    code = "EXTENSION_NOT_ALLOWED"


# ---------------------
# PAYMENT ERRORS
# ---------------------

class PaymentNotFoundError(ReservationEngineError):
    code = "PAYMENT_NOT_FOUND"


class PaymentProviderError(ReservationEngineError):
    """Upstream failure reported by (or while talking to) a payment provider."""

    code = "PAYMENT_PROVIDER_ERROR"


class ProviderNotConfiguredError(ReservationEngineError):
    code = "PROVIDER_NOT_CONFIGURED"

    def __init__(self, tenant_id: str, provider: str):
        self.tenant_id = tenant_id
        self.provider = provider
        super().__init__(
            f"Payment provider {provider} is not configured for tenant {tenant_id}"
        )


class RefundNotAllowedError(ReservationEngineError):
    code = "REFUND_NOT_ALLOWED"


# ---------------------
# WAITLIST ERRORS
# ---------------------

class WaitlistEntryNotFoundError(ReservationEngineError):
    code = "WAITLIST_ENTRY_NOT_FOUND"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Waitlist entry {entry_id} not found")


class WaitlistUnavailableError(ReservationEngineError):
    """Raised when a player cannot join (or be promoted from) a session's waitlist."""

    code = "WAITLIST_UNAVAILABLE"


class AlreadyWaitlistedError(ReservationEngineError):
    code = "ALREADY_WAITLISTED"

    def __init__(self, player_id: str, session_id: str):
        self.player_id = player_id
        self.session_id = session_id
        super().__init__(f"Player {player_id} is already on the waitlist of session {session_id}")


class WaitlistOfferNotActiveError(ReservationEngineError):
    code = "WAITLIST_OFFER_NOT_ACTIVE"

    def __init__(self, entry_id: str, status: str):
        self.entry_id = entry_id
        self.status = status
        super().__init__(f"Waitlist entry {entry_id} has no open offer (status {status})")


class WaitlistOfferExpiredError(ReservationEngineError):
    code = "WAITLIST_OFFER_EXPIRED"

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"The seat offered to waitlist entry {entry_id} has expired")


class CapacityAdjustmentError(ReservationEngineError):
    code = "CAPACITY_ADJUSTMENT_REJECTED"


class ConfigurationError(ReservationEngineError):
    code = "CONFIGURATION_ERROR"
