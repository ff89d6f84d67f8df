"""
Tests for the request state machine.

============================================================
TEST COVERAGE
============================================================
1. Transition table and guards
2. Derived settle() transitions
3. Cancellation and terminal states
4. Events and listeners
============================================================
"""

from datetime import datetime, timezone

import pytest

from donor_allocation.errors import InvalidTransitionError
from donor_allocation.state_machine import (
    VALID_TRANSITIONS,
    RequestStateMachine,
    TransitionGuard,
)
from donor_allocation.types import BloodGroup, BloodRequest, RequestStatus


NOW = datetime(2024, 8, 1, tzinfo=timezone.utc)


def _request(quantity=2, status=RequestStatus.PENDING, assigned=None, fulfilled=None):
    return BloodRequest(
        request_id="REQ001",
        hospital_id="HOS001",
        blood_group=BloodGroup.O_POS,
        quantity=quantity,
        request_date=NOW,
        status=status,
        assigned_donors=list(assigned or []),
        fulfilled_by=list(fulfilled or []),
    )


def _machine(request):
    return RequestStateMachine(request, now=lambda: NOW)


# ============================================================
# TRANSITION TABLE
# ============================================================

class TestTransitionGuard:
    """Static transition rules."""

    @pytest.mark.parametrize("terminal", [RequestStatus.FULFILLED, RequestStatus.CANCELLED])
    def test_terminal_states_have_no_exits(self, terminal):
        assert VALID_TRANSITIONS[terminal] == set()
        for target in RequestStatus:
            if target == terminal:
                continue
            allowed, reason = TransitionGuard.can_transition(terminal, target)
            assert allowed is False
            assert "terminal" in reason

    def test_in_progress_can_revert_to_pending(self):
        allowed, _ = TransitionGuard.can_transition(RequestStatus.IN_PROGRESS, RequestStatus.PENDING)
        assert allowed is True

    def test_same_state_is_allowed(self):
        allowed, _ = TransitionGuard.can_transition(RequestStatus.PENDING, RequestStatus.PENDING)
        assert allowed is True

    def test_fulfilled_requires_quantity_reached(self):
        valid, _ = TransitionGuard.validate_request_for_state(
            _request(quantity=2, fulfilled=["DON001"]), RequestStatus.FULFILLED
        )
        assert valid is False

    def test_fulfilled_requires_no_reservations(self):
        valid, _ = TransitionGuard.validate_request_for_state(
            _request(quantity=1, assigned=["DON002"], fulfilled=["DON001"]),
            RequestStatus.FULFILLED,
        )
        assert valid is False

    def test_pending_requires_empty_sets(self):
        valid, _ = TransitionGuard.validate_request_for_state(
            _request(fulfilled=["DON001"]), RequestStatus.PENDING
        )
        assert valid is False


# ============================================================
# SETTLE
# ============================================================

class TestSettle:
    """Status derived from the donor sets."""

    def test_assignment_moves_to_in_progress(self):
        request = _request(assigned=["DON001"])

        event = _machine(request).settle("assigned")

        assert request.status == RequestStatus.IN_PROGRESS
        assert event.from_state == RequestStatus.PENDING
        assert event.to_state == RequestStatus.IN_PROGRESS
        assert event.timestamp == NOW

    def test_release_of_last_donor_reverts_to_pending(self):
        request = _request(status=RequestStatus.IN_PROGRESS)

        _machine(request).settle("released")

        assert request.status == RequestStatus.PENDING

    def test_fulfilled_donor_keeps_in_progress(self):
        request = _request(quantity=2, status=RequestStatus.IN_PROGRESS, fulfilled=["DON001"])

        event = _machine(request).settle()

        assert request.status == RequestStatus.IN_PROGRESS
        assert event.is_noop

    def test_quantity_reached_fulfills(self):
        request = _request(quantity=1, status=RequestStatus.IN_PROGRESS, fulfilled=["DON001"])

        _machine(request).settle()

        assert request.status == RequestStatus.FULFILLED

    def test_settle_on_terminal_request_raises(self):
        request = _request(quantity=1, status=RequestStatus.FULFILLED, assigned=["DON002"])

        with pytest.raises(InvalidTransitionError):
            _machine(request).settle()
        assert request.status == RequestStatus.FULFILLED


# ============================================================
# CANCEL, EVENTS
# ============================================================

class TestCancelAndEvents:
    """Cancellation and transition events."""

    def test_cancel_requires_released_reservations(self):
        request = _request(status=RequestStatus.IN_PROGRESS, assigned=["DON001"])

        with pytest.raises(InvalidTransitionError):
            _machine(request).cancel()

    def test_cancel_keeps_fulfilled_donors(self):
        request = _request(quantity=3, status=RequestStatus.IN_PROGRESS, fulfilled=["DON001"])
        machine = _machine(request)

        machine.cancel("withdrawn")

        assert request.status == RequestStatus.CANCELLED
        assert request.fulfilled_by == ["DON001"]
        assert request.status.is_terminal()

    def test_settle_returns_event(self):
        request = _request(assigned=["DON001"])

        event = _machine(request).settle()

        assert event.to_state == RequestStatus.IN_PROGRESS
        assert not event.is_noop

    def test_noop_leaves_request_untouched(self):
        request = _request()

        event = _machine(request).transition_to(RequestStatus.PENDING)

        assert event.is_noop
        assert event.reason == "No change"
        assert request.status == RequestStatus.PENDING

    def test_event_to_dict(self):
        request = _request(assigned=["DON001"])
        data = _machine(request).settle("assigned").to_dict()

        assert data["request_id"] == "REQ001"
        assert data["from_state"] == "Pending"
        assert data["to_state"] == "In Progress"
