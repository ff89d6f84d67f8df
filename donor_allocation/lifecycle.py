"""
Donor Allocation - Request Lifecycle Engine.

============================================================
PURPOSE
============================================================
Owns request state transitions and the donor availability
changes that go with them.

Every method mutates WORKING COPIES handed in by the allocation
transaction and returns the transition events it produced. The
transaction commits copies and events together, or drops them.

TRANSITIONS:
- create   -> PENDING (verified hospital only)
- reserve  -> IN_PROGRESS once any donor is assigned
- release  -> PENDING when no donor is assigned or fulfilled
- fulfill  -> FULFILLED at quantity; leftovers are released
- cancel   -> CANCELLED; every reservation is released

============================================================
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .errors import (
    InvalidQuantityError,
    InvalidRequestStateError,
    UnverifiedHospitalError,
)
from .state_machine import RequestStateMachine, StateTransitionEvent
from .types import BloodGroup, BloodRequest, Donor, Hospital, RequestStatus


logger = logging.getLogger(__name__)


class RequestLifecycleEngine:
    """Request state transitions over transaction working copies."""

    def __init__(self, now: Callable[[], datetime]):
        """
        Args:
            now: Time source for request dates and event timestamps
        """
        self._now = now

    def _machine(self, request: BloodRequest) -> RequestStateMachine:
        return RequestStateMachine(request, now=self._now)

    # --------------------------------------------------------
    # CREATION
    # --------------------------------------------------------

    def new_request(
        self,
        hospital: Optional[Hospital],
        hospital_id: str,
        blood_group: BloodGroup,
        quantity: int,
        next_id: Callable[[], str],
    ) -> BloodRequest:
        """
        Build a new PENDING request.

        The id is drawn from next_id only after validation passes.

        Raises:
            InvalidQuantityError: quantity is not a positive integer
            UnverifiedHospitalError: hospital missing or unverified
        """
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantityError(
                f"Quantity must be a positive integer, got {quantity!r}",
                context={"quantity": quantity},
            )
        if hospital is None or not hospital.is_verified:
            raise UnverifiedHospitalError(
                "Only verified hospitals can create requests",
                context={
                    "hospital_id": hospital_id,
                    "exists": hospital is not None,
                },
            )

        return BloodRequest(
            request_id=next_id(),
            hospital_id=hospital_id,
            blood_group=blood_group,
            quantity=quantity,
            request_date=self._now(),
            status=RequestStatus.PENDING,
        )

    # --------------------------------------------------------
    # GUARDS
    # --------------------------------------------------------

    @staticmethod
    def require_active(request: BloodRequest, operation: str) -> None:
        if not request.status.is_active():
            raise InvalidRequestStateError(
                f"Cannot {operation} request {request.request_id} "
                f"in status {request.status.value}",
                context={
                    "request_id": request.request_id,
                    "status": request.status.value,
                    "operation": operation,
                },
            )

    # --------------------------------------------------------
    # RESERVATIONS
    # --------------------------------------------------------

    def reserve(
        self,
        request: BloodRequest,
        donors: List[Donor],
    ) -> List[StateTransitionEvent]:
        """
        Add donors to assigned_donors and mark them unavailable.

        Donors already assigned are skipped.
        """
        self.require_active(request, "assign donors to")

        for donor in donors:
            if donor.donor_id in request.assigned_donors:
                continue
            request.assigned_donors.append(donor.donor_id)
            donor.is_available = False

        event = self._machine(request).settle(reason="Donors assigned")
        return [] if event.is_noop else [event]

    def release(
        self,
        request: BloodRequest,
        donor: Donor,
    ) -> List[StateTransitionEvent]:
        """Drop one reservation; reverts to PENDING if nothing is left."""
        self.require_active(request, "release a donor from")

        if donor.donor_id in request.assigned_donors:
            request.assigned_donors.remove(donor.donor_id)
        donor.is_available = True

        event = self._machine(request).settle(reason=f"Donor {donor.donor_id} released")
        return [] if event.is_noop else [event]

    # --------------------------------------------------------
    # FULFILLMENT
    # --------------------------------------------------------

    def fulfill(
        self,
        request: BloodRequest,
        donor: Donor,
        donated_at: datetime,
        others: Dict[str, Donor],
    ) -> List[StateTransitionEvent]:
        """
        Move a donor from assigned_donors to fulfilled_by.

        When the fulfilled count reaches quantity every other
        reservation is released (looked up in `others`).

        Args:
            request: Request working copy
            donor: Donating donor working copy
            donated_at: Donation instant
            others: Working copies of the request's other assigned donors
        """
        self.require_active(request, "confirm a donation for")

        donor.last_donation_date = donated_at
        donor.is_available = True

        if donor.donor_id in request.assigned_donors:
            request.assigned_donors.remove(donor.donor_id)
        if donor.donor_id not in request.fulfilled_by:
            request.fulfilled_by.append(donor.donor_id)

        if len(request.fulfilled_by) >= request.quantity and request.assigned_donors:
            released = list(request.assigned_donors)
            for donor_id in released:
                other = others.get(donor_id)
                if other is not None:
                    other.is_available = True
            request.assigned_donors.clear()
            logger.info(
                f"Request {request.request_id} reached quantity; "
                f"released {len(released)} surplus reservation(s): {released}"
            )

        event = self._machine(request).settle(reason=f"Donation by {donor.donor_id}")
        return [] if event.is_noop else [event]

    # --------------------------------------------------------
    # CANCELLATION
    # --------------------------------------------------------

    def cancel(
        self,
        request: BloodRequest,
        donors: Dict[str, Donor],
        reason: str = "Cancelled by hospital",
    ) -> List[StateTransitionEvent]:
        """
        Release every reservation and mark the request CANCELLED.

        fulfilled_by and the ledger are left as they are.
        """
        self.require_active(request, "cancel")

        for donor_id in request.assigned_donors:
            donor = donors.get(donor_id)
            if donor is not None:
                donor.is_available = True
        request.assigned_donors.clear()

        return [self._machine(request).cancel(reason)]
