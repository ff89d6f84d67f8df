"""
Donor Allocation - Allocation Engine.

============================================================
PURPOSE
============================================================
Composition root for every allocation operation. UI layers,
the CLI and persistence call into this class only.

TRANSACTIONS (atomic, all-or-nothing):
- assign_donors(request_id, donor_ids)
- cancel_assignment(donor_id)
- confirm_donation(request_id, donor_id)
- approve_donation(donation_id)
- cancel_request(request_id)
- create_request / register_* / verify_hospital

Each transaction:
1. Resolves the entity keys it will touch
2. Holds their locks (sorted, bounded wait)
3. Re-reads state and checks every precondition
4. Mutates working copies through the lifecycle engine
5. Commits copies, ledger entries and transition events at once

A precondition failure raises before step 5, so nothing is
written. The engine never retries on the caller's behalf.

============================================================
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    Generator,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from core.clock import ClockProtocol, SystemClock

from .config import AllocationConfig, get_default_config
from .eligibility import EligibilityEvaluator
from .errors import (
    AllocationError,
    CapacityExceededError,
    ContentionError,
    DonorAlreadyReservedError,
    DonorNotAssignedError,
    NoActiveAssignmentError,
    NotFoundError,
    ValidationError,
)
from .lifecycle import RequestLifecycleEngine
from .locking import donation_key, donor_key, hospital_key, request_key
from .state_machine import StateTransitionEvent
from .store import AllocationStore, InMemoryAllocationStore, StoreChange
from .types import (
    AllocationSummary,
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    EligibilityStatus,
    Gender,
    Hospital,
    RequestStatus,
)


logger = logging.getLogger(__name__)


# Returned by a transaction body when its lock set went stale.
_RETRY = object()


class AllocationEngine:
    """
    Donor-request allocation engine.

    ============================================================
    RESPONSIBILITIES
    ============================================================
    1. Screen donors for eligibility
    2. Reserve, release and confirm donors against requests
    3. Append donation records to the ledger
    4. Keep donor availability, request counts and the ledger
       mutually consistent under concurrent callers

    ============================================================
    THREAD SAFETY
    ============================================================
    Every write goes through the store's entity locks; reads
    return copies taken under the store mutex.

    ============================================================
    """

    def __init__(
        self,
        store: Optional[AllocationStore] = None,
        config: Optional[AllocationConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Entity store (defaults to a fresh in-memory store)
            config: Engine configuration
            clock: Time source
        """
        self._config = config or get_default_config()
        self._config.validate()
        self._clock = clock or SystemClock()

        identity = self._config.identity
        self._store = store or InMemoryAllocationStore(
            lock_timeout_seconds=self._config.locking.acquire_timeout_seconds,
            id_width=identity.sequence_width,
            prefixes={
                "donor": identity.donor_prefix,
                "hospital": identity.hospital_prefix,
                "request": identity.request_prefix,
                "donation": identity.donation_prefix,
            },
        )
        self._evaluator = EligibilityEvaluator(self._config.eligibility, self._clock)
        self._lifecycle = RequestLifecycleEngine(now=self._clock.now)
        self._listeners: List[Callable[[StateTransitionEvent], None]] = []

    @property
    def store(self) -> AllocationStore:
        return self._store

    @property
    def config(self) -> AllocationConfig:
        return self._config

    @property
    def clock(self) -> ClockProtocol:
        return self._clock

    @property
    def evaluator(self) -> EligibilityEvaluator:
        return self._evaluator

    def add_transition_listener(
        self,
        listener: Callable[[StateTransitionEvent], None],
    ) -> None:
        """Called with every committed request status transition."""
        self._listeners.append(listener)

    # --------------------------------------------------------
    # TRANSACTION PLUMBING
    # --------------------------------------------------------

    @contextmanager
    def _transaction(self, name: str, /, **context: Any) -> Generator[None, None, None]:
        try:
            yield
        except AllocationError as e:
            logger.warning(f"{name} rejected [{e.code}]: {e.message} {context}")
            raise

    def _run_locked(
        self,
        name: str,
        resolve_keys: Callable[[], List[str]],
        body: Callable[[Set[str]], Any],
    ) -> Any:
        """
        Hold the resolved lock set and run body under it.

        body returns _RETRY when it finds an entity it must touch
        that is not covered by the lock set (the set changed between
        resolution and acquisition); the set is then re-resolved.
        """
        attempts = self._config.locking.max_lock_attempts
        for attempt in range(1, attempts + 1):
            keys = resolve_keys()
            with self._store.locks.hold(keys):
                result = body(set(keys))
            if result is not _RETRY:
                return result
            logger.debug(f"{name}: lock set changed, re-resolving (attempt {attempt})")

        raise ContentionError(
            f"{name}: entity set kept changing after {attempts} attempts",
            context={"attempts": attempts},
        )

    def _commit(self, change: StoreChange) -> None:
        self._store.commit(change)
        for event in change.events:
            for listener in self._listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception(f"Transition listener failed for {event.request_id}")

    def _require_donor(self, donor_id: str) -> Donor:
        donor = self._store.get_donor(donor_id)
        if donor is None:
            raise NotFoundError("Donor", donor_id)
        return donor

    def _require_hospital(self, hospital_id: str) -> Hospital:
        hospital = self._store.get_hospital(hospital_id)
        if hospital is None:
            raise NotFoundError("Hospital", hospital_id)
        return hospital

    def _require_request(self, request_id: str) -> BloodRequest:
        request = self._store.get_request(request_id)
        if request is None:
            raise NotFoundError("Request", request_id)
        return request

    def _request_lock_set(self, request_id: str, *donor_ids: str) -> List[str]:
        """Request key, the given donors, and every donor the request holds."""
        keys = [request_key(request_id)] + [donor_key(d) for d in donor_ids]
        request = self._store.get_request(request_id)
        if request is not None:
            keys.extend(donor_key(d) for d in request.assigned_donors)
        return keys

    @staticmethod
    def _covers(keys: Set[str], donor_ids: Iterable[str]) -> bool:
        return all(donor_key(d) in keys for d in donor_ids)

    # --------------------------------------------------------
    # REGISTRY
    # --------------------------------------------------------

    def register_donor(
        self,
        name: str,
        blood_group: Union[BloodGroup, str],
        age: Optional[int] = None,
        gender: Optional[Union[Gender, str]] = None,
        phone: str = "",
        address: str = "",
    ) -> Donor:
        """Register a donor: available, never donated."""
        with self._transaction("register_donor", name=name):
            if not name or not name.strip():
                raise ValidationError("Donor name is required")
            group = self._parse_group(blood_group)
            if gender is not None and not isinstance(gender, Gender):
                try:
                    gender = Gender(str(gender).strip().capitalize())
                except ValueError:
                    raise ValidationError(f"Unknown gender: {gender!r}") from None

            donor_id = self._store.next_id(self._config.identity.donor_prefix)
            donor = Donor(
                donor_id=donor_id,
                name=name.strip(),
                blood_group=group,
                age=age,
                gender=gender,
                phone=phone,
                address=address,
            )
            with self._store.locks.hold([donor_key(donor_id)]):
                self._commit(StoreChange(donors=[donor]))

        logger.info(f"Registered donor {donor_id} ({group.value})")
        return donor.copy()

    def register_hospital(self, name: str, contact: str = "", location: str = "") -> Hospital:
        """Register a hospital; it starts unverified."""
        with self._transaction("register_hospital", name=name):
            if not name or not name.strip():
                raise ValidationError("Hospital name is required")
            hospital_id = self._store.next_id(self._config.identity.hospital_prefix)
            hospital = Hospital(
                hospital_id=hospital_id,
                name=name.strip(),
                contact=contact,
                location=location,
            )
            with self._store.locks.hold([hospital_key(hospital_id)]):
                self._commit(StoreChange(hospitals=[hospital]))

        logger.info(f"Registered hospital {hospital_id} (unverified)")
        return hospital.copy()

    def verify_hospital(self, hospital_id: str) -> Hospital:
        """Mark a hospital verified. Idempotent."""
        with self._transaction("verify_hospital", hospital_id=hospital_id):
            with self._store.locks.hold([hospital_key(hospital_id)]):
                hospital = self._require_hospital(hospital_id)
                if not hospital.is_verified:
                    hospital.is_verified = True
                    self._commit(StoreChange(hospitals=[hospital]))
                    logger.info(f"Hospital {hospital_id} verified")
        return hospital.copy()

    # --------------------------------------------------------
    # REQUEST CREATION
    # --------------------------------------------------------

    def create_request(
        self,
        hospital_id: str,
        blood_group: Union[BloodGroup, str],
        quantity: int,
    ) -> BloodRequest:
        """
        Create a PENDING request for a verified hospital.

        Raises:
            UnverifiedHospitalError: hospital missing or not verified
            InvalidQuantityError: quantity is not a positive integer
        """
        with self._transaction("create_request", hospital_id=hospital_id):
            group = self._parse_group(blood_group)
            with self._store.locks.hold([hospital_key(hospital_id)]):
                request = self._lifecycle.new_request(
                    hospital=self._store.get_hospital(hospital_id),
                    hospital_id=hospital_id,
                    blood_group=group,
                    quantity=quantity,
                    next_id=lambda: self._store.next_id(self._config.identity.request_prefix),
                )
                self._commit(StoreChange(requests=[request]))

        logger.info(
            f"Request {request.request_id} created: hospital={hospital_id} "
            f"group={group.value} quantity={quantity}"
        )
        return request.copy()

    # --------------------------------------------------------
    # ASSIGN
    # --------------------------------------------------------

    def assign_donors(self, request_id: str, donor_ids: Iterable[str]) -> BloodRequest:
        """
        Reserve donors against a request.

        Donors already assigned to this request are skipped, so
        re-submitting them is a no-op rather than an error.

        Raises:
            NotFoundError: request or a donor does not exist
            InvalidRequestStateError: request is Fulfilled or Cancelled
            CapacityExceededError: more new donors than open slots
            DonorAlreadyReservedError: a donor is held by another active request
            ValidationError: a donor already donated for this request, or
                donor_ids is a bare string
        """
        if isinstance(donor_ids, str):
            raise ValidationError(
                f"donor_ids must be a collection of donor ids, got the string {donor_ids!r}",
                context={"request_id": request_id, "donor_ids": donor_ids},
            )
        ids = list(dict.fromkeys(donor_ids))

        def body(keys: Set[str]) -> BloodRequest:
            request = self._require_request(request_id)
            self._lifecycle.require_active(request, "assign donors to")

            already_donated = [d for d in ids if d in request.fulfilled_by]
            if already_donated:
                raise ValidationError(
                    f"Donors already donated for {request_id}: {already_donated}",
                    context={"request_id": request_id, "donor_ids": already_donated},
                )

            new_ids = [d for d in ids if d not in request.assigned_donors]
            if not new_ids:
                return request

            if self._config.policy.enforce_capacity and len(new_ids) > request.open_slots:
                raise CapacityExceededError(
                    f"Request {request_id} has {request.open_slots} open slot(s), "
                    f"{len(new_ids)} donor(s) supplied",
                    context={
                        "request_id": request_id,
                        "open_slots": request.open_slots,
                        "requested": len(new_ids),
                    },
                )

            donors = []
            for donor_id in new_ids:
                donor = self._require_donor(donor_id)
                holder = self._store.active_request_for(donor_id)
                if holder is not None and holder != request_id:
                    raise DonorAlreadyReservedError(
                        f"Donor {donor_id} is already reserved on request {holder}",
                        context={"donor_id": donor_id, "request_id": holder},
                    )
                self._warn_if_unsuitable(donor, request)
                donors.append(donor)

            events = self._lifecycle.reserve(request, donors)
            self._commit(StoreChange(donors=donors, requests=[request], events=events))
            logger.info(
                f"Assigned {new_ids} to {request_id}: "
                f"{len(request.assigned_donors)} assigned, "
                f"{len(request.fulfilled_by)}/{request.quantity} fulfilled"
            )
            return request

        with self._transaction("assign_donors", request_id=request_id, donor_ids=ids):
            request = self._run_locked(
                "assign_donors",
                lambda: [request_key(request_id)] + [donor_key(d) for d in ids],
                body,
            )
        return request.copy()

    def _warn_if_unsuitable(self, donor: Donor, request: BloodRequest) -> None:
        # Operators choose donors; the engine only flags odd choices.
        if donor.blood_group != request.blood_group:
            logger.warning(
                f"Donor {donor.donor_id} ({donor.blood_group.value}) assigned to "
                f"{request.request_id} needing {request.blood_group.value}"
            )
        elif not self._evaluator.is_eligible(donor):
            logger.warning(f"Donor {donor.donor_id} assigned inside cool-down window")

    # --------------------------------------------------------
    # CANCEL ASSIGNMENT
    # --------------------------------------------------------

    def cancel_assignment(self, donor_id: str) -> Tuple[Donor, BloodRequest]:
        """
        Release a donor's reservation on their active request.

        Raises:
            NoActiveAssignmentError: donor is not reserved anywhere
        """
        def resolve() -> List[str]:
            keys = [donor_key(donor_id)]
            holder = self._store.active_request_for(donor_id)
            if holder is not None:
                keys.append(request_key(holder))
            return keys

        def body(keys: Set[str]) -> Any:
            holder = self._store.active_request_for(donor_id)
            if holder is None:
                raise NoActiveAssignmentError(
                    f"Could not find an active assignment for donor {donor_id}",
                    context={"donor_id": donor_id},
                )
            if request_key(holder) not in keys:
                return _RETRY

            donor = self._require_donor(donor_id)
            request = self._require_request(holder)
            events = self._lifecycle.release(request, donor)
            self._commit(StoreChange(donors=[donor], requests=[request], events=events))
            logger.info(
                f"Released {donor_id} from {holder}; request now {request.status.value}"
            )
            return donor, request

        with self._transaction("cancel_assignment", donor_id=donor_id):
            donor, request = self._run_locked("cancel_assignment", resolve, body)
        return donor.copy(), request.copy()

    # --------------------------------------------------------
    # CONFIRM
    # --------------------------------------------------------

    def confirm_donation(self, request_id: str, donor_id: str) -> DonationRecord:
        """
        Record a completed donation and count it against the request.

        Raises:
            NotFoundError: request or donor does not exist
            InvalidRequestStateError: request is Fulfilled or Cancelled
            DonorNotAssignedError: donor was not assigned (walk-ins disabled)
            DonorAlreadyReservedError: walk-in donor held by another request
        """
        def body(keys: Set[str]) -> Any:
            request = self._require_request(request_id)
            donor = self._require_donor(donor_id)
            if not self._covers(keys, request.assigned_donors):
                return _RETRY
            self._lifecycle.require_active(request, "confirm a donation for")

            if donor_id in request.fulfilled_by:
                raise ValidationError(
                    f"Donor {donor_id} already donated for request {request_id}",
                    context={"donor_id": donor_id, "request_id": request_id},
                )

            if donor_id not in request.assigned_donors:
                if not self._config.policy.allow_walk_in_donations:
                    raise DonorNotAssignedError(
                        f"Donor {donor_id} is not assigned to request {request_id}",
                        context={"donor_id": donor_id, "request_id": request_id},
                    )
                holder = self._store.active_request_for(donor_id)
                if holder is not None:
                    raise DonorAlreadyReservedError(
                        f"Walk-in donor {donor_id} is reserved on request {holder}",
                        context={"donor_id": donor_id, "request_id": holder},
                    )
                logger.info(f"Walk-in donation by {donor_id} for {request_id}")

            others: Dict[str, Donor] = {}
            for other_id in request.assigned_donors:
                if other_id == donor_id:
                    continue
                other = self._store.get_donor(other_id)
                if other is not None:
                    others[other_id] = other

            now = self._clock.now()
            events = self._lifecycle.fulfill(request, donor, now, others)
            record = DonationRecord(
                donation_id=self._store.next_id(self._config.identity.donation_prefix),
                donor_id=donor_id,
                request_id=request_id,
                donation_date=now,
                is_verified_by_admin=False,
            )
            self._commit(StoreChange(
                donors=[donor] + list(others.values()),
                requests=[request],
                new_donations=[record],
                events=events,
            ))
            logger.info(
                f"Donation {record.donation_id}: {donor_id} for {request_id} "
                f"({len(request.fulfilled_by)}/{request.quantity}, {request.status.value})"
            )
            return record

        with self._transaction("confirm_donation", request_id=request_id, donor_id=donor_id):
            record = self._run_locked(
                "confirm_donation",
                lambda: self._request_lock_set(request_id, donor_id),
                body,
            )
        return record.copy()

    # --------------------------------------------------------
    # APPROVE
    # --------------------------------------------------------

    def approve_donation(self, donation_id: str) -> DonationRecord:
        """
        Mark a donation verified by an administrator.

        Touches the ledger only; donors and requests are unchanged.
        """
        with self._transaction("approve_donation", donation_id=donation_id):
            with self._store.locks.hold([donation_key(donation_id)]):
                record = self._store.ledger.approve(donation_id)
        logger.info(f"Donation {donation_id} verified by admin")
        return record

    # --------------------------------------------------------
    # CANCEL REQUEST
    # --------------------------------------------------------

    def cancel_request(self, request_id: str) -> BloodRequest:
        """
        Withdraw an active request, releasing every reservation.

        Fulfilled donations stay counted and stay in the ledger.
        """
        def body(keys: Set[str]) -> Any:
            request = self._require_request(request_id)
            if not self._covers(keys, request.assigned_donors):
                return _RETRY
            donors: Dict[str, Donor] = {}
            for donor_id in request.assigned_donors:
                donor = self._store.get_donor(donor_id)
                if donor is not None:
                    donors[donor_id] = donor
            events = self._lifecycle.cancel(request, donors)
            self._commit(StoreChange(
                donors=list(donors.values()),
                requests=[request],
                events=events,
            ))
            logger.info(f"Request {request_id} cancelled; released {sorted(donors)}")
            return request

        with self._transaction("cancel_request", request_id=request_id):
            request = self._run_locked(
                "cancel_request",
                lambda: self._request_lock_set(request_id),
                body,
            )
        return request.copy()

    # --------------------------------------------------------
    # ELIGIBILITY
    # --------------------------------------------------------

    def is_eligible(self, donor: Donor, now: Optional[datetime] = None) -> bool:
        return self._evaluator.is_eligible(donor, now)

    def find_eligible_donors(self, blood_group: Union[BloodGroup, str]) -> List[Donor]:
        """Eligible donors of one blood group, sorted by name."""
        return self._evaluator.eligible_donors(
            self._store.list_donors(), self._parse_group(blood_group)
        )

    def eligibility_status(self, donor_id: str) -> EligibilityStatus:
        return self._evaluator.status(self._require_donor(donor_id))

    # --------------------------------------------------------
    # READ VIEWS
    # --------------------------------------------------------

    def get_donor(self, donor_id: str) -> Donor:
        return self._require_donor(donor_id)

    def get_hospital(self, hospital_id: str) -> Hospital:
        return self._require_hospital(hospital_id)

    def get_request(self, request_id: str) -> BloodRequest:
        return self._require_request(request_id)

    def get_donation(self, donation_id: str) -> DonationRecord:
        record = self._store.ledger.get(donation_id)
        if record is None:
            raise NotFoundError("Donation", donation_id)
        return record

    def list_donors(self) -> List[Donor]:
        return self._store.list_donors()

    def list_hospitals(self) -> List[Hospital]:
        return self._store.list_hospitals()

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        hospital_id: Optional[str] = None,
    ) -> List[BloodRequest]:
        return [
            r for r in self._store.list_requests()
            if (status is None or r.status == status)
            and (hospital_id is None or r.hospital_id == hospital_id)
        ]

    def list_donations(
        self,
        donor_id: Optional[str] = None,
        request_id: Optional[str] = None,
        unverified_only: bool = False,
    ) -> List[DonationRecord]:
        return self._store.ledger.records(
            donor_id=donor_id,
            request_id=request_id,
            unverified_only=unverified_only,
        )

    def donation_history(self, donor_id: str) -> List[DonationRecord]:
        """A donor's donations, newest first."""
        return self._store.ledger.history_for_donor(donor_id)

    def active_assignment_for(self, donor_id: str) -> Optional[BloodRequest]:
        holder = self._store.active_request_for(donor_id)
        return self._store.get_request(holder) if holder else None

    def open_slots(self, request_id: str) -> int:
        return self._require_request(request_id).open_slots

    def transitions(self, request_id: Optional[str] = None) -> List[StateTransitionEvent]:
        return self._store.transitions(request_id)

    def summary(self) -> AllocationSummary:
        """Overview counts from one consistent snapshot."""
        snap = self._store.snapshot()
        by_status = {status: 0 for status in RequestStatus}
        for request in snap.requests:
            by_status[request.status] += 1
        return AllocationSummary(
            pending_requests=by_status[RequestStatus.PENDING],
            in_progress_requests=by_status[RequestStatus.IN_PROGRESS],
            fulfilled_requests=by_status[RequestStatus.FULFILLED],
            cancelled_requests=by_status[RequestStatus.CANCELLED],
            unverified_donations=sum(1 for d in snap.donations if not d.is_verified_by_admin),
            unverified_hospitals=sum(1 for h in snap.hospitals if not h.is_verified),
            available_donors=sum(1 for d in snap.donors if d.is_available),
            total_donors=len(snap.donors),
        )

    # --------------------------------------------------------
    # INVARIANT AUDIT
    # --------------------------------------------------------

    def check_invariants(self) -> List[str]:
        """
        Audit donor/request/ledger consistency.

        Returns:
            Human-readable violations (empty when consistent)
        """
        snap = self._store.snapshot()
        donors = {d.donor_id: d for d in snap.donors}
        requests = {r.request_id: r for r in snap.requests}
        violations: List[str] = []
        reserved_by: Dict[str, str] = {}

        for request in snap.requests:
            rid = request.request_id
            assigned = set(request.assigned_donors)
            fulfilled = set(request.fulfilled_by)

            if len(assigned) != len(request.assigned_donors):
                violations.append(f"{rid}: duplicate assigned donor ids")
            if len(fulfilled) != len(request.fulfilled_by):
                violations.append(f"{rid}: duplicate fulfilled donor ids")
            if assigned & fulfilled:
                violations.append(f"{rid}: donors both assigned and fulfilled {sorted(assigned & fulfilled)}")
            if len(fulfilled) > request.quantity:
                violations.append(f"{rid}: fulfilled {len(fulfilled)} exceeds quantity {request.quantity}")
            if request.status.is_terminal() and assigned:
                violations.append(f"{rid}: terminal request still holds reservations")
            if request.status == RequestStatus.PENDING and (assigned or fulfilled):
                violations.append(f"{rid}: pending request has donors")
            if request.status == RequestStatus.IN_PROGRESS and not (assigned or fulfilled):
                violations.append(f"{rid}: in-progress request has no donors")

            if not request.status.is_active():
                continue
            for donor_id in request.assigned_donors:
                if donor_id in reserved_by:
                    violations.append(
                        f"{donor_id}: reserved on both {reserved_by[donor_id]} and {rid}"
                    )
                reserved_by[donor_id] = rid
                donor = donors.get(donor_id)
                if donor is None:
                    violations.append(f"{rid}: assigned donor {donor_id} does not exist")
                elif donor.is_available:
                    violations.append(f"{donor_id}: reserved on {rid} but marked available")

        for donor in snap.donors:
            if not donor.is_available and donor.donor_id not in reserved_by:
                violations.append(f"{donor.donor_id}: unavailable but holds no active reservation")

        for record in snap.donations:
            if record.donor_id not in donors:
                violations.append(f"{record.donation_id}: unknown donor {record.donor_id}")
            if record.request_id not in requests:
                violations.append(f"{record.donation_id}: unknown request {record.request_id}")

        return violations

    # --------------------------------------------------------
    # HELPERS
    # --------------------------------------------------------

    @staticmethod
    def _parse_group(value: Union[BloodGroup, str]) -> BloodGroup:
        try:
            return BloodGroup.parse(value)
        except ValueError as e:
            raise ValidationError(str(e), context={"blood_group": str(value)}) from None
