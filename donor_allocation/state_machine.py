"""
Donor Allocation - Request State Machine.

============================================================
PURPOSE
============================================================
Manages blood request lifecycle with strict state transitions.

STATE MACHINE:

       PENDING ◄──────────┐
          │               │ (all reservations released)
          ▼               │
     IN_PROGRESS ─────────┘
          │
          ▼
      FULFILLED

    PENDING / IN_PROGRESS can transition to:
    - CANCELLED (hospital withdraws the request)
    PENDING can reach FULFILLED directly only through a
    walk-in confirmation on a single-unit request.

INVARIANTS:
- Terminal states are final
- Each transition has a guard on the request's donor sets
- All transitions are logged

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .errors import InvalidTransitionError
from .types import BloodRequest, RequestStatus


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

VALID_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = {
    RequestStatus.PENDING: {
        RequestStatus.IN_PROGRESS,
        RequestStatus.FULFILLED,
        RequestStatus.CANCELLED,
    },
    RequestStatus.IN_PROGRESS: {
        RequestStatus.PENDING,
        RequestStatus.FULFILLED,
        RequestStatus.CANCELLED,
    },
    # Terminal states - no transitions out
    RequestStatus.FULFILLED: set(),
    RequestStatus.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a request status transition."""

    request_id: str
    from_state: RequestStatus
    to_state: RequestStatus

    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    reason: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return self.from_state == self.to_state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "details": dict(self.details),
        }


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for request transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: RequestStatus,
        to_state: RequestStatus,
    ) -> Tuple[bool, str]:
        """
        Check if transition is allowed.

        Args:
            from_state: Current state
            to_state: Target state

        Returns:
            Tuple of (allowed, reason)
        """
        # Same state is always valid (idempotent)
        if from_state == to_state:
            return True, "Same state"

        if to_state in VALID_TRANSITIONS.get(from_state, set()):
            return True, "Valid transition"

        if from_state.is_terminal():
            return False, f"Cannot transition from terminal state {from_state.value}"

        return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

    @staticmethod
    def validate_request_for_state(
        request: BloodRequest,
        target_state: RequestStatus,
    ) -> Tuple[bool, str]:
        """
        Validate the request's donor sets against the target state.

        Args:
            request: Request (already mutated for the transaction)
            target_state: Target state

        Returns:
            Tuple of (valid, reason)
        """
        assigned = len(request.assigned_donors)
        fulfilled = len(request.fulfilled_by)

        if target_state == RequestStatus.PENDING:
            if assigned or fulfilled:
                return False, "PENDING requires no assigned or fulfilled donors"

        if target_state == RequestStatus.IN_PROGRESS:
            if not assigned and not fulfilled:
                return False, "IN_PROGRESS requires at least one donor"
            if fulfilled >= request.quantity:
                return False, "IN_PROGRESS requires fulfilled count below quantity"

        if target_state == RequestStatus.FULFILLED:
            if fulfilled < request.quantity:
                return False, "FULFILLED requires fulfilled count to reach quantity"
            if assigned:
                return False, "FULFILLED requires all reservations released"

        if target_state == RequestStatus.CANCELLED:
            if assigned:
                return False, "CANCELLED requires all reservations released"

        return True, "Request valid for state"


# ============================================================
# REQUEST STATE MACHINE
# ============================================================

class RequestStateMachine:
    """
    State machine for one request's lifecycle.

    Operates on the transaction's working copy of the request; the
    events it produces are committed together with that copy.
    """

    def __init__(
        self,
        request: BloodRequest,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize state machine.

        Args:
            request: Request working copy to manage
            now: Time source for event timestamps
        """
        self._request = request
        self._now = now or (lambda: datetime.now(timezone.utc))

    @property
    def current_state(self) -> RequestStatus:
        return self._request.status

    def can_transition_to(self, target_state: RequestStatus) -> Tuple[bool, str]:
        allowed, reason = TransitionGuard.can_transition(self.current_state, target_state)
        if not allowed:
            return False, reason
        return TransitionGuard.validate_request_for_state(self._request, target_state)

    def transition_to(
        self,
        target_state: RequestStatus,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransitionEvent:
        """
        Transition to a new state.

        Args:
            target_state: Target state
            reason: Reason for transition
            details: Additional details

        Returns:
            StateTransitionEvent (a no-op event if already in target_state)

        Raises:
            InvalidTransitionError: If transition is not allowed
        """
        allowed, validation_reason = self.can_transition_to(target_state)
        if not allowed:
            raise InvalidTransitionError(
                f"Cannot transition {self._request.request_id} from "
                f"{self.current_state.value} to {target_state.value}: "
                f"{validation_reason}",
                context={
                    "request_id": self._request.request_id,
                    "from": self.current_state.value,
                    "to": target_state.value,
                },
            )

        event = StateTransitionEvent(
            request_id=self._request.request_id,
            from_state=self.current_state,
            to_state=target_state,
            timestamp=self._now(),
            reason=reason if self.current_state != target_state else "No change",
            details=details or {},
        )
        if event.is_noop:
            return event

        self._request.status = target_state

        logger.debug(
            f"Request {self._request.request_id}: "
            f"{event.from_state.value} -> {event.to_state.value} ({reason})"
        )
        return event

    # --------------------------------------------------------
    # DERIVED TRANSITIONS
    # --------------------------------------------------------

    def settle(self, reason: str = "") -> StateTransitionEvent:
        """
        Move an active request to the state its donor sets imply.

        - fulfilled >= quantity  -> FULFILLED
        - any assigned/fulfilled -> IN_PROGRESS
        - otherwise              -> PENDING
        """
        request = self._request
        if len(request.fulfilled_by) >= request.quantity and not request.assigned_donors:
            target = RequestStatus.FULFILLED
        elif request.assigned_donors or request.fulfilled_by:
            target = RequestStatus.IN_PROGRESS
        else:
            target = RequestStatus.PENDING
        return self.transition_to(target, reason)

    def cancel(self, reason: str = "Cancelled") -> StateTransitionEvent:
        return self.transition_to(RequestStatus.CANCELLED, reason)
