# tests/unit/test_state_machine.py

import pytest

from busline.domain.state_machine import (
    TicketStateMachine,
    TicketStatus,
    TripStateMachine,
    TripStatus,
)
from busline.domain.exceptions import InvalidTransitionError


# ---------------------
# TICKET TRANSITIONS
# ---------------------

def test_ticket_happy_path():
    assert TicketStateMachine.can_transition(
        TicketStatus.PENDING,
        TicketStatus.SUCCESS,
    )

    assert TicketStateMachine.can_transition(
        TicketStatus.SUCCESS,
        TicketStatus.TRANSFER,
    )


def test_pending_ticket_can_fail():
    assert TicketStateMachine.can_transition(
        TicketStatus.PENDING,
        TicketStatus.FAILED,
    )


def test_cannot_transfer_unpaid_ticket():
    with pytest.raises(InvalidTransitionError):
        TicketStateMachine.validate_transition(
            TicketStatus.PENDING,
            TicketStatus.TRANSFER,
        )


def test_confirmed_ticket_cannot_fail():
    with pytest.raises(InvalidTransitionError):
        TicketStateMachine.validate_transition(
            TicketStatus.SUCCESS,
            TicketStatus.FAILED,
        )


@pytest.mark.parametrize("status", [TicketStatus.FAILED, TicketStatus.TRANSFER])
def test_ticket_terminal_states(status):
    assert TicketStateMachine.is_terminal(status)

    with pytest.raises(InvalidTransitionError):
        TicketStateMachine.validate_transition(status, TicketStatus.SUCCESS)


def test_invalid_transition_error_carries_states():
    with pytest.raises(InvalidTransitionError) as excinfo:
        TicketStateMachine.validate_transition(TicketStatus.FAILED, TicketStatus.PENDING)

    assert excinfo.value.from_state == "FAILED"
    assert excinfo.value.to_state == "PENDING"


# ---------------------
# TRIP TRANSITIONS
# ---------------------

def test_trip_automatic_path():
    assert TripStateMachine.can_transition(TripStatus.SCHEDULED, TripStatus.IN_PROGRESS)
    assert TripStateMachine.can_transition(TripStatus.IN_PROGRESS, TripStatus.COMPLETED)


def test_trip_cannot_skip_in_progress():
    assert not TripStateMachine.can_transition(TripStatus.SCHEDULED, TripStatus.COMPLETED)


def test_delayed_trip_can_depart_or_cancel():
    assert TripStateMachine.get_allowed_transitions(TripStatus.DELAYED) == {
        TripStatus.IN_PROGRESS,
        TripStatus.CANCELLED,
    }


@pytest.mark.parametrize("status", [TripStatus.COMPLETED, TripStatus.CANCELLED])
def test_trip_terminal_states(status):
    assert TripStateMachine.is_terminal(status)


# ---------------------
# TYPE SAFETY
# ---------------------

def test_state_machines_reject_foreign_enums():
    with pytest.raises(TypeError):
        TicketStateMachine.can_transition(TripStatus.SCHEDULED, TicketStatus.SUCCESS)

    with pytest.raises(TypeError):
        TripStateMachine.is_terminal("SCHEDULED")
