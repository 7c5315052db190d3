# reservation_engine/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from reservation_engine.domain.exceptions import InvalidStateTransitionError


class HoldState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class _StateMachine:
    """
    Shared lifecycle controller.
    Subclasses define the legal state transitions.
    """

    _STATE_TYPE: type = Enum
    _ALLOWED_TRANSITIONS: Dict = {}

    @classmethod
    def can_transition(cls, from_state, to_state) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_state(from_state)
        cls._ensure_valid_state(to_state)

        return to_state in cls._ALLOWED_TRANSITIONS.get(from_state, set())

    @classmethod
    def validate_transition(cls, from_state, to_state) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_state, to_state):
            raise InvalidStateTransitionError(
                from_state=from_state.value,
                to_state=to_state.value,
            )

    @classmethod
    def is_terminal(cls, state) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_state(state)
        return len(cls._ALLOWED_TRANSITIONS.get(state, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, state) -> Set:
        cls._ensure_valid_state(state)
        return cls._ALLOWED_TRANSITIONS.get(state, set())

    @classmethod
    def _ensure_valid_state(cls, state) -> None:
        if not isinstance(state, cls._STATE_TYPE):
            raise TypeError(
                f"Expected {cls._STATE_TYPE.__name__}, got {type(state)}"
            )


class HoldStateMachine(_StateMachine):
    """
    A hold only ever leaves `pending`, and every exit is terminal.
    """

    _STATE_TYPE = HoldState
    _ALLOWED_TRANSITIONS: Dict[HoldState, Set[HoldState]] = {
        HoldState.PENDING: {
            HoldState.CONFIRMED,
            HoldState.EXPIRED,
            HoldState.CANCELLED,
        },
        HoldState.CONFIRMED: set(),
        HoldState.EXPIRED: set(),
        HoldState.CANCELLED: set(),
    }


class PaymentStateMachine(_StateMachine):
    """
    Payment records move from `processing` to an outcome; only a
    succeeded payment may be refunded.
    """

    _STATE_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
        PaymentStatus.PROCESSING: {
            PaymentStatus.SUCCEEDED,
            PaymentStatus.FAILED,
        },
        PaymentStatus.SUCCEEDED: {
            PaymentStatus.REFUNDED,
        },
        # A provider can capture a charge it first reported as declined.
        PaymentStatus.FAILED: {
            PaymentStatus.SUCCEEDED,
        },
        PaymentStatus.REFUNDED: set(),
    }


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    OFFERED = "offered"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    LEFT = "left"


class WaitlistStateMachine(_StateMachine):
    """
    A waiting entry is offered a seat (a pending hold) or leaves the queue.
    An offer ends accepted, expired with its hold, or declined.
    """

    _STATE_TYPE = WaitlistStatus
    _ALLOWED_TRANSITIONS: Dict[WaitlistStatus, Set[WaitlistStatus]] = {
        WaitlistStatus.WAITING: {
            WaitlistStatus.OFFERED,
            WaitlistStatus.EXPIRED,
            WaitlistStatus.LEFT,
        },
        WaitlistStatus.OFFERED: {
            WaitlistStatus.ACCEPTED,
            WaitlistStatus.EXPIRED,
            WaitlistStatus.LEFT,
        },
        WaitlistStatus.ACCEPTED: set(),
        WaitlistStatus.EXPIRED: set(),
        WaitlistStatus.LEFT: set(),
    }
