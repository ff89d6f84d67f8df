"""
Tests for the in-memory allocation store.
"""

from datetime import datetime, timezone

import pytest

from donor_allocation.errors import DonorAlreadyReservedError
from donor_allocation.seed import demo_snapshot
from donor_allocation.store import (
    IdSequencer,
    InMemoryAllocationStore,
    StoreChange,
    StoreSnapshot,
)
from donor_allocation.types import (
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    RequestStatus,
)


NOW = datetime(2024, 8, 1, tzinfo=timezone.utc)


def _request(request_id, assigned=(), status=RequestStatus.IN_PROGRESS):
    return BloodRequest(
        request_id=request_id,
        hospital_id="HOS001",
        blood_group=BloodGroup.O_POS,
        quantity=3,
        request_date=NOW,
        status=status,
        assigned_donors=list(assigned),
    )


@pytest.fixture
def store():
    store = InMemoryAllocationStore()
    store.load(demo_snapshot())
    return store


class TestIdSequencer:
    """Prefixed sequence ids."""

    def test_sequence_is_zero_padded(self):
        ids = IdSequencer(width=3)
        assert [ids.next_id("DON") for _ in range(2)] == ["DON001", "DON002"]

    def test_observed_ids_are_never_reissued(self):
        ids = IdSequencer(width=3)
        ids.observe("REQ", "REQ041")
        ids.observe("REQ", "REQ007")
        ids.observe("REQ", "legacy-1")

        assert ids.next_id("REQ") == "REQ042"

    def test_prefixes_are_independent(self):
        ids = IdSequencer()
        ids.observe("DON", "DON005")
        assert ids.next_id("HOS") == "HOS001"


class TestReads:
    """Copies and the reservation index."""

    def test_reads_return_copies(self, store):
        request = store.get_request("REQ001")
        request.assigned_donors.clear()
        donor = store.get_donor("DON001")
        donor.is_available = False

        assert store.get_request("REQ001").assigned_donors == ["DON002", "DON004"]
        assert store.get_donor("DON001").is_available is True

    def test_reservation_index_from_load(self, store):
        assert store.active_request_for("DON002") == "REQ001"
        assert store.active_request_for("DON004") == "REQ001"
        assert store.active_request_for("DON003") is None

    def test_load_continues_id_sequences(self, store):
        assert store.next_id("DON") == "DON006"
        assert store.next_id("REQ") == "REQ004"
        assert store.next_id("DREC") == "DREC003"

    def test_missing_entities(self, store):
        assert store.get_donor("DON999") is None
        assert store.get_hospital("HOS999") is None
        assert store.get_request("REQ999") is None


class TestCommit:
    """Atomic change sets."""

    def test_commit_writes_everything(self, store):
        donor = store.get_donor("DON001")
        donor.is_available = False
        request = _request("REQ010", assigned=["DON001"])
        record = DonationRecord("DREC010", "DON003", "REQ003", NOW)

        store.commit(StoreChange(donors=[donor], requests=[request], new_donations=[record]))

        assert store.get_donor("DON001").is_available is False
        assert store.active_request_for("DON001") == "REQ010"
        assert "DREC010" in store.ledger

    def test_double_booking_rejected_without_partial_write(self, store):
        """A change reserving a donor held elsewhere applies nothing."""
        donor = store.get_donor("DON001")
        donor.name = "Changed"
        request = _request("REQ010", assigned=["DON002"])

        with pytest.raises(DonorAlreadyReservedError):
            store.commit(StoreChange(donors=[donor], requests=[request]))

        assert store.get_donor("DON001").name == "John Doe"
        assert store.get_request("REQ010") is None
        assert store.active_request_for("DON002") == "REQ001"

    def test_terminal_request_frees_reservations(self, store):
        request = store.get_request("REQ001")
        request.assigned_donors.clear()
        request.status = RequestStatus.CANCELLED

        store.commit(StoreChange(requests=[request]))

        assert store.active_request_for("DON002") is None

    def test_duplicate_donation_rejected(self, store):
        record = DonationRecord("DREC001", "DON001", "REQ002", NOW)

        with pytest.raises(ValueError):
            store.commit(StoreChange(new_donations=[record]))
        assert len(store.ledger) == 2


class TestLoad:
    """Bulk replacement."""

    def test_load_rejects_double_booked_snapshot_and_keeps_state(self, store):
        bad = StoreSnapshot(
            donors=[Donor("DON001", "A", BloodGroup.O_POS, is_available=False)],
            requests=[
                _request("REQ100", assigned=["DON001"]),
                _request("REQ101", assigned=["DON001"]),
            ],
        )

        with pytest.raises(DonorAlreadyReservedError):
            store.load(bad)

        assert len(store.list_donors()) == 5
        assert store.active_request_for("DON002") == "REQ001"

    def test_snapshot_is_consistent_copy(self, store):
        snap = store.snapshot()

        assert len(snap.donors) == 5
        assert len(snap.hospitals) == 3
        assert len(snap.requests) == 3
        assert [d.donation_id for d in snap.donations] == ["DREC001", "DREC002"]
