# busline/domain/state_machine.py

from enum import Enum
from typing import Dict, Set

from busline.domain.exceptions import InvalidTransitionError


class TicketStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TRANSFER = "TRANSFER"


class SeatStatus(str, Enum):
    EMPTY = "EMPTY"
    PENDING = "PENDING"
    SOLD = "SOLD"


class VehicleStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    MAINTENANCE = "MAINTENANCE"


class TripStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DELAYED = "DELAYED"


class _StateMachine:
    """
    Shared lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    _STATUS_TYPE: type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class TicketStateMachine(_StateMachine):
    """
    Ticket lifecycle: PENDING -> SUCCESS -> TRANSFER, PENDING -> FAILED.
    """

    _STATUS_TYPE = TicketStatus
    _ALLOWED_TRANSITIONS: Dict[TicketStatus, Set[TicketStatus]] = {
        TicketStatus.PENDING: {
            TicketStatus.SUCCESS,
            TicketStatus.FAILED,
        },
        TicketStatus.SUCCESS: {
            TicketStatus.TRANSFER,
        },
        TicketStatus.FAILED: set(),
        TicketStatus.TRANSFER: set(),
    }


class TripStateMachine(_StateMachine):
    """
    Trip lifecycle. The automatic scheduler only ever moves
    SCHEDULED -> IN_PROGRESS -> COMPLETED; the rest is operator driven.
    """

    _STATUS_TYPE = TripStatus
    _ALLOWED_TRANSITIONS: Dict[TripStatus, Set[TripStatus]] = {
        TripStatus.SCHEDULED: {
            TripStatus.IN_PROGRESS,
            TripStatus.CANCELLED,
            TripStatus.DELAYED,
        },
        TripStatus.IN_PROGRESS: {
            TripStatus.COMPLETED,
            TripStatus.CANCELLED,
            TripStatus.DELAYED,
        },
        TripStatus.DELAYED: {
            TripStatus.IN_PROGRESS,
            TripStatus.CANCELLED,
        },
        TripStatus.COMPLETED: set(),
        TripStatus.CANCELLED: set(),
    }


BOOKABLE_TRIP_STATUSES = frozenset({TripStatus.SCHEDULED, TripStatus.DELAYED})