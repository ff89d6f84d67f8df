"""
Donor Allocation - Entity Store.

============================================================
PURPOSE
============================================================
Owns donors, hospitals, requests and the donation ledger behind
one abstraction. The engine depends on AllocationStore, never on
a module-level singleton.

The in-memory store maintains:
- Entity tables (copies in, copies out)
- Reservation index: donor_id -> active request_id
- Id sequences per prefix
- Request transition history

============================================================
CRITICAL INVARIANTS
============================================================
1. A donor is reserved on at most one active request
2. commit() applies a whole change set or nothing
3. Reads never observe half of a commit

============================================================
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .errors import DonorAlreadyReservedError
from .ledger import DonationLedger
from .locking import EntityLockManager
from .state_machine import StateTransitionEvent
from .types import (
    BloodRequest,
    DonationRecord,
    Donor,
    Hospital,
)


logger = logging.getLogger(__name__)


# ============================================================
# CHANGE SETS AND SNAPSHOTS
# ============================================================

@dataclass
class StoreChange:
    """
    Everything one transaction writes.

    Built from working copies; nothing reaches the store until
    commit() accepts the whole set.
    """

    donors: List[Donor] = field(default_factory=list)
    hospitals: List[Hospital] = field(default_factory=list)
    requests: List[BloodRequest] = field(default_factory=list)
    new_donations: List[DonationRecord] = field(default_factory=list)
    events: List[StateTransitionEvent] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (
            self.donors or self.hospitals or self.requests
            or self.new_donations or self.events
        )


@dataclass
class StoreSnapshot:
    """Consistent copy of the whole store."""

    donors: List[Donor] = field(default_factory=list)
    hospitals: List[Hospital] = field(default_factory=list)
    requests: List[BloodRequest] = field(default_factory=list)
    donations: List[DonationRecord] = field(default_factory=list)
    transitions: List[StateTransitionEvent] = field(default_factory=list)


# ============================================================
# ID SEQUENCES
# ============================================================

class IdSequencer:
    """
    PREFIX + zero-padded sequence ids (DON001, REQ014, ...).

    Observing an existing id advances the sequence past it, so ids
    loaded from persistence are never reissued.
    """

    def __init__(self, width: int = 3):
        self._width = width
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()

    def observe(self, prefix: str, entity_id: str) -> None:
        match = re.fullmatch(rf"{re.escape(prefix)}(\d+)", entity_id)
        if not match:
            return
        with self._lock:
            value = int(match.group(1))
            if value > self._counters.get(prefix, 0):
                self._counters[prefix] = value

    def next_id(self, prefix: str) -> str:
        with self._lock:
            value = self._counters.get(prefix, 0) + 1
            self._counters[prefix] = value
        return f"{prefix}{value:0{self._width}d}"


# ============================================================
# STORE ABSTRACTION
# ============================================================

class AllocationStore(ABC):
    """
    Interface the allocation engine depends on.

    Implementations must make commit() atomic and reads consistent;
    the lock manager they expose is the serialization discipline
    every transaction follows.
    """

    @property
    @abstractmethod
    def locks(self) -> EntityLockManager:
        pass

    @property
    @abstractmethod
    def ledger(self) -> DonationLedger:
        pass

    @abstractmethod
    def get_donor(self, donor_id: str) -> Optional[Donor]:
        pass

    @abstractmethod
    def list_donors(self) -> List[Donor]:
        pass

    @abstractmethod
    def get_hospital(self, hospital_id: str) -> Optional[Hospital]:
        pass

    @abstractmethod
    def list_hospitals(self) -> List[Hospital]:
        pass

    @abstractmethod
    def get_request(self, request_id: str) -> Optional[BloodRequest]:
        pass

    @abstractmethod
    def list_requests(self) -> List[BloodRequest]:
        pass

    @abstractmethod
    def active_request_for(self, donor_id: str) -> Optional[str]:
        """Id of the active request reserving this donor, if any."""
        pass

    @abstractmethod
    def next_id(self, prefix: str) -> str:
        pass

    @abstractmethod
    def commit(self, change: StoreChange) -> None:
        """Apply a change set atomically or raise without applying."""
        pass

    @abstractmethod
    def snapshot(self) -> StoreSnapshot:
        pass

    @abstractmethod
    def transitions(self, request_id: Optional[str] = None) -> List[StateTransitionEvent]:
        pass


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryAllocationStore(AllocationStore):
    """
    Thread-safe in-memory store.

    ============================================================
    THREAD SAFETY
    ============================================================
    A single store mutex guards table reads and commit(). It is
    held only for copying, never across a transaction; entity
    locks (self.locks) serialize the transactions themselves.

    ============================================================
    """

    def __init__(
        self,
        lock_timeout_seconds: float = 2.0,
        id_width: int = 3,
        prefixes: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize an empty store.

        Args:
            lock_timeout_seconds: Wait bound for entity lock sets
            id_width: Zero padding for generated ids
            prefixes: Entity kind -> id prefix, used to seed sequences on load
        """
        self._mutex = threading.RLock()
        self._locks = EntityLockManager(lock_timeout_seconds)
        self._ledger = DonationLedger()
        self._ids = IdSequencer(id_width)
        self._prefixes = prefixes or {
            "donor": "DON",
            "hospital": "HOS",
            "request": "REQ",
            "donation": "DREC",
        }

        self._donors: Dict[str, Donor] = {}
        self._hospitals: Dict[str, Hospital] = {}
        self._requests: Dict[str, BloodRequest] = {}
        self._reservations: Dict[str, str] = {}
        self._transitions: List[StateTransitionEvent] = []

    @property
    def locks(self) -> EntityLockManager:
        return self._locks

    @property
    def ledger(self) -> DonationLedger:
        return self._ledger

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def get_donor(self, donor_id: str) -> Optional[Donor]:
        with self._mutex:
            donor = self._donors.get(donor_id)
            return donor.copy() if donor else None

    def list_donors(self) -> List[Donor]:
        with self._mutex:
            return [d.copy() for d in self._donors.values()]

    def get_hospital(self, hospital_id: str) -> Optional[Hospital]:
        with self._mutex:
            hospital = self._hospitals.get(hospital_id)
            return hospital.copy() if hospital else None

    def list_hospitals(self) -> List[Hospital]:
        with self._mutex:
            return [h.copy() for h in self._hospitals.values()]

    def get_request(self, request_id: str) -> Optional[BloodRequest]:
        with self._mutex:
            request = self._requests.get(request_id)
            return request.copy() if request else None

    def list_requests(self) -> List[BloodRequest]:
        with self._mutex:
            return [r.copy() for r in self._requests.values()]

    def active_request_for(self, donor_id: str) -> Optional[str]:
        with self._mutex:
            return self._reservations.get(donor_id)

    def next_id(self, prefix: str) -> str:
        return self._ids.next_id(prefix)

    def transitions(self, request_id: Optional[str] = None) -> List[StateTransitionEvent]:
        with self._mutex:
            return [
                e for e in self._transitions
                if request_id is None or e.request_id == request_id
            ]

    def snapshot(self) -> StoreSnapshot:
        with self._mutex:
            return StoreSnapshot(
                donors=[d.copy() for d in self._donors.values()],
                hospitals=[h.copy() for h in self._hospitals.values()],
                requests=[r.copy() for r in self._requests.values()],
                donations=self._ledger.records(),
                transitions=list(self._transitions),
            )

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    def commit(self, change: StoreChange) -> None:
        """
        Apply a change set atomically.

        The reservation index is recomputed for every request in the
        change set and checked before anything is written; a conflict
        raises DonorAlreadyReservedError and leaves the store untouched.
        """
        if change.is_empty():
            return

        with self._mutex:
            reservations = self._plan_reservations(change.requests)

            for record in change.new_donations:
                if record.donation_id in self._ledger:
                    raise ValueError(f"Donation {record.donation_id} already recorded")

            for donor in change.donors:
                self._donors[donor.donor_id] = donor.copy()
            for hospital in change.hospitals:
                self._hospitals[hospital.hospital_id] = hospital.copy()
            for request in change.requests:
                self._requests[request.request_id] = request.copy()
            for record in change.new_donations:
                self._ledger.append(record)
            self._reservations = reservations
            self._transitions.extend(change.events)

            self._observe_ids(change)

    def _plan_reservations(self, requests: Iterable[BloodRequest]) -> Dict[str, str]:
        """Reservation index as it would be after writing these requests."""
        planned = dict(self._reservations)
        touched = {r.request_id for r in requests}
        for donor_id, request_id in list(planned.items()):
            if request_id in touched:
                del planned[donor_id]

        for request in requests:
            if not request.status.is_active():
                continue
            for donor_id in request.assigned_donors:
                holder = planned.get(donor_id)
                if holder is not None and holder != request.request_id:
                    raise DonorAlreadyReservedError(
                        f"Donor {donor_id} is already reserved on request {holder}",
                        context={"donor_id": donor_id, "request_id": holder},
                    )
                planned[donor_id] = request.request_id
        return planned

    def _observe_ids(self, change: StoreChange) -> None:
        for donor in change.donors:
            self._ids.observe(self._prefixes["donor"], donor.donor_id)
        for hospital in change.hospitals:
            self._ids.observe(self._prefixes["hospital"], hospital.hospital_id)
        for request in change.requests:
            self._ids.observe(self._prefixes["request"], request.request_id)
        for record in change.new_donations:
            self._ids.observe(self._prefixes["donation"], record.donation_id)

    # --------------------------------------------------------
    # BULK LOAD
    # --------------------------------------------------------

    def load(self, snapshot: StoreSnapshot) -> None:
        """
        Replace the store's contents with a snapshot.

        Used when rebuilding from persistence or seeding demo data.
        Raises DonorAlreadyReservedError if the snapshot double-books
        a donor across active requests.
        """
        with self._mutex:
            previous = (
                self._donors, self._hospitals, self._requests,
                self._reservations, self._transitions, self._ledger,
            )
            self._donors = {}
            self._hospitals = {}
            self._requests = {}
            self._reservations = {}
            self._transitions = []
            self._ledger = DonationLedger()

            try:
                self.commit(StoreChange(
                    donors=snapshot.donors,
                    hospitals=snapshot.hospitals,
                    requests=snapshot.requests,
                    new_donations=snapshot.donations,
                    events=snapshot.transitions,
                ))
            except Exception:
                (
                    self._donors, self._hospitals, self._requests,
                    self._reservations, self._transitions, self._ledger,
                ) = previous
                raise

        active = sum(1 for r in snapshot.requests if r.status.is_active())
        logger.info(
            f"Store loaded: donors={len(snapshot.donors)} "
            f"hospitals={len(snapshot.hospitals)} "
            f"requests={len(snapshot.requests)} (active={active}) "
            f"donations={len(snapshot.donations)}"
        )

