"""
Donor Allocation - Type Definitions.

============================================================
PURPOSE
============================================================
Entities owned (or read) by the allocation engine.

ENTITIES:
- Donor: blood group, availability flag, last donation date
- Hospital: verification flag (owned externally, read only)
- BloodRequest: lifecycle status, assigned and fulfilled donor ids
- DonationRecord: append-only ledger entry

AXES OF DONOR STATE:
- is_available=False means "reserved against a request"
- cool-down is derived from last_donation_date
These are independent.

============================================================
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.clock import to_iso8601


# ============================================================
# ENUMS
# ============================================================

class BloodGroup(Enum):
    """ABO/Rh blood group."""

    A_POS = "A+"
    A_NEG = "A-"
    B_POS = "B+"
    B_NEG = "B-"
    AB_POS = "AB+"
    AB_NEG = "AB-"
    O_POS = "O+"
    O_NEG = "O-"

    @classmethod
    def parse(cls, value: Union[str, "BloodGroup"]) -> "BloodGroup":
        """Accept either an enum member or its label ("AB-")."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValueError(f"Unknown blood group: {value!r}") from None


class Gender(Enum):
    """Donor gender as captured at registration."""

    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class RequestStatus(Enum):
    """Blood request lifecycle state."""

    PENDING = "Pending"
    """Created, no donors reserved or fulfilled."""

    IN_PROGRESS = "In Progress"
    """At least one donor reserved or fulfilled."""

    FULFILLED = "Fulfilled"
    """Fulfilled count reached quantity."""

    CANCELLED = "Cancelled"
    """Withdrawn before fulfillment."""

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in TERMINAL_STATUSES

    def is_active(self) -> bool:
        """Active requests may hold donor reservations."""
        return self in ACTIVE_STATUSES


TERMINAL_STATUSES = frozenset({RequestStatus.FULFILLED, RequestStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.IN_PROGRESS})


class EligibilityReason(Enum):
    """Why a donor is or is not eligible right now."""

    ELIGIBLE = "eligible"
    RESERVED = "reserved"
    COOLDOWN = "cooldown"


# ============================================================
# ENTITIES
# ============================================================

@dataclass
class Donor:
    """A registered blood donor."""

    donor_id: str
    """Opaque identity (DON###)."""

    name: str
    """Full name."""

    blood_group: BloodGroup
    """ABO/Rh group."""

    age: Optional[int] = None
    gender: Optional[Gender] = None
    phone: str = ""
    address: str = ""

    last_donation_date: Optional[datetime] = None
    """When the donor last completed a donation (None = never)."""

    is_available: bool = True
    """False while reserved against some request."""

    def copy(self) -> "Donor":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "donor_id": self.donor_id,
            "name": self.name,
            "age": self.age,
            "gender": self.gender.value if self.gender else None,
            "blood_group": self.blood_group.value,
            "phone": self.phone,
            "address": self.address,
            "last_donation_date": (
                to_iso8601(self.last_donation_date) if self.last_donation_date else None
            ),
            "is_available": self.is_available,
        }


@dataclass
class Hospital:
    """A hospital; only verified hospitals may create requests."""

    hospital_id: str
    name: str
    contact: str = ""
    location: str = ""
    is_verified: bool = False

    def copy(self) -> "Hospital":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hospital_id": self.hospital_id,
            "name": self.name,
            "contact": self.contact,
            "location": self.location,
            "is_verified": self.is_verified,
        }


@dataclass
class BloodRequest:
    """
    A hospital's ask for N units of one blood group.

    assigned_donors and fulfilled_by hold donor ids in insertion order
    and never share an id.
    """

    request_id: str
    hospital_id: str
    blood_group: BloodGroup
    quantity: int
    """Units needed."""

    request_date: datetime
    status: RequestStatus = RequestStatus.PENDING

    assigned_donors: List[str] = field(default_factory=list)
    """Reserved, not yet donated."""

    fulfilled_by: List[str] = field(default_factory=list)
    """Completed a donation for this request."""

    @property
    def open_slots(self) -> int:
        """Units still neither reserved nor fulfilled."""
        return max(0, self.quantity - len(self.fulfilled_by) - len(self.assigned_donors))

    def copy(self) -> "BloodRequest":
        return replace(
            self,
            assigned_donors=list(self.assigned_donors),
            fulfilled_by=list(self.fulfilled_by),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "hospital_id": self.hospital_id,
            "blood_group": self.blood_group.value,
            "quantity": self.quantity,
            "request_date": to_iso8601(self.request_date),
            "status": self.status.value,
            "assigned_donors": list(self.assigned_donors),
            "fulfilled_by": list(self.fulfilled_by),
        }


@dataclass
class DonationRecord:
    """Ledger entry for one completed donation."""

    donation_id: str
    donor_id: str
    request_id: str
    donation_date: datetime
    is_verified_by_admin: bool = False

    def copy(self) -> "DonationRecord":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "donation_id": self.donation_id,
            "donor_id": self.donor_id,
            "request_id": self.request_id,
            "donation_date": to_iso8601(self.donation_date),
            "is_verified_by_admin": self.is_verified_by_admin,
        }


# ============================================================
# VIEWS
# ============================================================

@dataclass(frozen=True)
class EligibilityStatus:
    """Donor-facing eligibility answer."""

    donor_id: str
    eligible: bool
    reason: EligibilityReason
    next_eligible_date: Optional[datetime] = None
    """End of the cool-down window (None if never donated)."""


@dataclass(frozen=True)
class AllocationSummary:
    """Counts shown on the administrator overview."""

    pending_requests: int = 0
    in_progress_requests: int = 0
    fulfilled_requests: int = 0
    cancelled_requests: int = 0
    unverified_donations: int = 0
    unverified_hospitals: int = 0
    available_donors: int = 0
    total_donors: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "pending_requests": self.pending_requests,
            "in_progress_requests": self.in_progress_requests,
            "fulfilled_requests": self.fulfilled_requests,
            "cancelled_requests": self.cancelled_requests,
            "unverified_donations": self.unverified_donations,
            "unverified_hospitals": self.unverified_hospitals,
            "available_donors": self.available_donors,
            "total_donors": self.total_donors,
        }
