"""
Reference demo dataset.

Five donors, three hospitals (one unverified), three requests in
different states and two ledger entries. Consistent with every
store invariant: DON002 and DON004 are reserved on REQ001 and
therefore unavailable.
"""

from core.clock import from_iso8601

from .store import InMemoryAllocationStore, StoreSnapshot
from .types import (
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    Gender,
    Hospital,
    RequestStatus,
)


def demo_snapshot() -> StoreSnapshot:
    """Build a fresh copy of the demo dataset."""
    donors = [
        Donor(
            donor_id="DON001", name="John Doe", age=30, gender=Gender.MALE,
            blood_group=BloodGroup.O_POS, phone="123-456-7890",
            address="123 Main St, Cityville",
            last_donation_date=from_iso8601("2024-02-15T10:00:00Z"),
            is_available=True,
        ),
        Donor(
            donor_id="DON002", name="Jane Smith", age=25, gender=Gender.FEMALE,
            blood_group=BloodGroup.A_NEG, phone="234-567-8901",
            address="456 Oak Ave, Townburg",
            last_donation_date=from_iso8601("2024-06-10T14:30:00Z"),
            is_available=False,
        ),
        Donor(
            donor_id="DON003", name="Sam Wilson", age=42, gender=Gender.MALE,
            blood_group=BloodGroup.B_POS, phone="345-678-9012",
            address="789 Pine Ln, Villagetown",
            last_donation_date=None,
            is_available=True,
        ),
        Donor(
            donor_id="DON004", name="Emily Brown", age=28, gender=Gender.FEMALE,
            blood_group=BloodGroup.AB_POS, phone="456-789-0123",
            address="101 Maple Dr, Hamlet",
            last_donation_date=from_iso8601("2024-07-01T09:00:00Z"),
            is_available=False,
        ),
        Donor(
            donor_id="DON005", name="Chris Green", age=35, gender=Gender.MALE,
            blood_group=BloodGroup.A_NEG, phone="567-890-1234",
            address="222 River Rd, Lakeside",
            last_donation_date=from_iso8601("2023-12-01T11:00:00Z"),
            is_available=True,
        ),
    ]

    hospitals = [
        Hospital("HOS001", "City General Hospital", "555-111-2222", "Cityville", True),
        Hospital("HOS002", "Townburg Medical Center", "555-333-4444", "Townburg", False),
        Hospital("HOS003", "Community Clinic", "555-555-6666", "Villagetown", True),
    ]

    requests = [
        BloodRequest(
            request_id="REQ001", hospital_id="HOS001", blood_group=BloodGroup.A_NEG,
            quantity=2, request_date=from_iso8601("2024-07-20T08:00:00Z"),
            status=RequestStatus.IN_PROGRESS,
            assigned_donors=["DON002", "DON004"],
        ),
        BloodRequest(
            request_id="REQ002", hospital_id="HOS003", blood_group=BloodGroup.O_POS,
            quantity=4, request_date=from_iso8601("2024-07-22T11:00:00Z"),
            status=RequestStatus.PENDING,
        ),
        BloodRequest(
            request_id="REQ003", hospital_id="HOS001", blood_group=BloodGroup.B_POS,
            quantity=1, request_date=from_iso8601("2024-06-15T18:00:00Z"),
            status=RequestStatus.FULFILLED,
            fulfilled_by=["DON003"],
        ),
    ]

    donations = [
        DonationRecord("DREC001", "DON002", "REQ001", from_iso8601("2024-06-10T14:30:00Z"), True),
        DonationRecord("DREC002", "DON003", "REQ003", from_iso8601("2024-06-16T10:00:00Z"), False),
    ]

    return StoreSnapshot(
        donors=donors,
        hospitals=hospitals,
        requests=requests,
        donations=donations,
    )


def seed_store(store: InMemoryAllocationStore) -> InMemoryAllocationStore:
    """Replace the store's contents with the demo dataset."""
    store.load(demo_snapshot())
    return store
