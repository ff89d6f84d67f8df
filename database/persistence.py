"""
Database Persistence Functions.

============================================================
ALLOCATION STATE SAVE / LOAD
============================================================

save_store() writes an allocation store (only what changed
since load when given a baseline) and advances the store
revision; load_store() rebuilds a store from the tables.
Every function:
- Logs structured output: "Persist table_name: ..."
- Raises DatabasePersistenceError on database failure
- Never commits; the caller owns the transaction

Request transition history is process-local and not persisted.

============================================================
"""

import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.clock import ensure_utc
from donor_allocation.errors import AllocationError
from donor_allocation.store import InMemoryAllocationStore, StoreSnapshot
from donor_allocation.types import (
    BloodGroup,
    BloodRequest,
    DonationRecord,
    Donor,
    Gender,
    Hospital,
    RequestStatus,
)

from .models import (
    ASSIGNMENT_KIND_ASSIGNED,
    ASSIGNMENT_KIND_FULFILLED,
    BloodRequestRow,
    DonationRecordRow,
    DonorRow,
    HospitalRow,
    STORE_REVISION_ID,
    RequestAssignmentRow,
    StoreRevisionRow,
)
from .engine import DatabasePersistenceError, PersistenceValidationError, StaleStoreError

logger = logging.getLogger(__name__)


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def _log_persistence(table_name: str, count: int, verb: str = "upserted") -> None:
    """Log persistence result in structured format."""
    logger.info(f"Persist {table_name}: {verb}={count}")


def _optional_utc(value):
    return ensure_utc(value) if value is not None else None


# =============================================================
# STORE REVISION
# =============================================================

def read_store_revision(session: Session) -> int:
    """Current store revision (0 when nothing has been saved yet)."""
    return _read_revision(session, for_update=False)


def lock_store_revision(session: Session) -> int:
    """
    Read the store revision and lock its row until the transaction ends.

    FOR UPDATE is not rendered on SQLite, where
    locked_transaction_scope() already holds the write lock.
    """
    return _read_revision(session, for_update=True)


def _read_revision(session: Session, for_update: bool) -> int:
    stmt = select(StoreRevisionRow.revision).where(StoreRevisionRow.id == STORE_REVISION_ID)
    if for_update:
        stmt = stmt.with_for_update()
    try:
        revision = session.execute(stmt).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Failed to read store revision: {e}")
        raise DatabasePersistenceError(f"Failed to read store revision: {e}") from e
    return revision or 0


def _stale(expected: int) -> StaleStoreError:
    logger.warning(f"Persist store_revision: rejected, loaded revision {expected} is stale")
    return StaleStoreError(
        f"Stored allocation state changed since revision {expected} was loaded"
    )


def _advance_revision(session: Session, expected: Optional[int]) -> int:
    """Advance the revision; with expected set, only from that value."""
    if expected is None:
        row = session.get(StoreRevisionRow, STORE_REVISION_ID)
        if row is None:
            session.add(StoreRevisionRow(id=STORE_REVISION_ID, revision=1))
            session.flush()
            return 1
        row.revision += 1
        session.flush()
        return row.revision

    if expected == 0:
        if session.get(StoreRevisionRow, STORE_REVISION_ID) is not None:
            raise _stale(expected)
        session.add(StoreRevisionRow(id=STORE_REVISION_ID, revision=1))
        try:
            session.flush()
        except IntegrityError as e:
            raise _stale(expected) from e
        return 1

    result = session.execute(
        update(StoreRevisionRow)
        .where(
            StoreRevisionRow.id == STORE_REVISION_ID,
            StoreRevisionRow.revision == expected,
        )
        .values(revision=expected + 1)
    )
    if result.rowcount != 1:
        raise _stale(expected)
    return expected + 1


# =============================================================
# SAVE
# =============================================================

def _changed(current: Sequence[Any], previous: Optional[Sequence[Any]], key: str) -> List[Any]:
    """Items of current that are new or differ from previous (all when previous is None)."""
    if previous is None:
        return list(current)
    before = {getattr(item, key): item.to_dict() for item in previous}
    return [item for item in current if before.get(getattr(item, key)) != item.to_dict()]


def _donation_row(record: DonationRecord, sequence: int) -> DonationRecordRow:
    return DonationRecordRow(
        donation_id=record.donation_id,
        donor_id=record.donor_id,
        request_id=record.request_id,
        donation_date=record.donation_date,
        is_verified_by_admin=record.is_verified_by_admin,
        sequence=sequence,
    )


def _update_donation(row: DonationRecordRow, record: DonationRecord) -> bool:
    """
    Apply the only permitted ledger update, admin verification.

    Returns:
        True if the row changed

    Raises:
        DatabasePersistenceError if the record would be rewritten
    """
    same_entry = (
        row.donor_id == record.donor_id
        and row.request_id == record.request_id
        and ensure_utc(row.donation_date) == record.donation_date
    )
    if not same_entry:
        raise DatabasePersistenceError(
            f"Donation record {record.donation_id} is already stored for "
            f"{row.donor_id}/{row.request_id}; ledger entries are never rewritten"
        )
    if row.is_verified_by_admin == record.is_verified_by_admin:
        return False
    if row.is_verified_by_admin:
        raise DatabasePersistenceError(
            f"Donation record {record.donation_id} is verified; verification cannot be revoked"
        )
    row.is_verified_by_admin = True
    return True


def save_store(
    session: Session,
    store: InMemoryAllocationStore,
    baseline: Optional[StoreSnapshot] = None,
    expected_revision: Optional[int] = None,
) -> Dict[str, int]:
    """
    Write the store's current state to the database.

    With a baseline (the store snapshot taken right after load_store)
    only entities that differ from it are written; without one every
    entity is upserted. A written request has its assignment rows
    replaced.

    Donation records are inserted, never merged: an id already in the
    table fails the save rather than replacing a ledger entry. A stored
    record may only change by becoming verified.

    Every save advances the store revision. Passing the revision read
    when the store was loaded makes the save fail with StaleStoreError
    if another writer saved in between.

    Args:
        session: Database session (caller commits)
        store: Store to snapshot
        baseline: State as loaded, to limit writes to what changed
        expected_revision: Revision the store was loaded at

    Returns:
        Dict mapping table name to rows written

    Raises:
        StaleStoreError if expected_revision is no longer current
        DatabasePersistenceError on any other failure
    """
    snapshot = store.snapshot()

    try:
        revision = _advance_revision(session, expected_revision)

        donors = _changed(snapshot.donors, baseline and baseline.donors, "donor_id")
        for donor in donors:
            session.merge(DonorRow(
                donor_id=donor.donor_id,
                name=donor.name,
                age=donor.age,
                gender=donor.gender.value if donor.gender else None,
                blood_group=donor.blood_group.value,
                phone=donor.phone,
                address=donor.address,
                last_donation_date=donor.last_donation_date,
                is_available=donor.is_available,
            ))
        _log_persistence("donors", len(donors))

        hospitals = _changed(snapshot.hospitals, baseline and baseline.hospitals, "hospital_id")
        for hospital in hospitals:
            session.merge(HospitalRow(
                hospital_id=hospital.hospital_id,
                name=hospital.name,
                contact=hospital.contact,
                location=hospital.location,
                is_verified=hospital.is_verified,
            ))
        _log_persistence("hospitals", len(hospitals))
        session.flush()

        requests = _changed(snapshot.requests, baseline and baseline.requests, "request_id")
        for request in requests:
            session.merge(BloodRequestRow(
                request_id=request.request_id,
                hospital_id=request.hospital_id,
                blood_group=request.blood_group.value,
                quantity=request.quantity,
                request_date=request.request_date,
                status=request.status.value,
            ))
        _log_persistence("blood_requests", len(requests))
        session.flush()

        assignment_count = 0
        for request in requests:
            session.execute(
                delete(RequestAssignmentRow).where(
                    RequestAssignmentRow.request_id == request.request_id
                )
            )
            for kind, donor_ids in (
                (ASSIGNMENT_KIND_ASSIGNED, request.assigned_donors),
                (ASSIGNMENT_KIND_FULFILLED, request.fulfilled_by),
            ):
                for position, donor_id in enumerate(donor_ids):
                    session.add(RequestAssignmentRow(
                        request_id=request.request_id,
                        donor_id=donor_id,
                        kind=kind,
                        position=position,
                    ))
                    assignment_count += 1
        _log_persistence("request_assignments", assignment_count, verb="written")
        session.flush()

        known = None
        if baseline is not None:
            known = {r.donation_id: r for r in baseline.donations}
        donation_count = 0
        for sequence, record in enumerate(snapshot.donations):
            if known is not None:
                loaded = known.get(record.donation_id)
                if loaded is None:
                    session.add(_donation_row(record, sequence))
                    donation_count += 1
                    continue
                if loaded.to_dict() == record.to_dict():
                    continue
            row = session.get(DonationRecordRow, record.donation_id)
            if row is None:
                session.add(_donation_row(record, sequence))
                donation_count += 1
            elif _update_donation(row, record):
                donation_count += 1
        _log_persistence("donation_records", donation_count, verb="written")
        session.flush()

    except SQLAlchemyError as e:
        logger.error(f"Failed to persist allocation store: {e}")
        raise DatabasePersistenceError(f"Failed to persist allocation store: {e}") from e

    logger.info(f"Persist store_revision: revision={revision}")
    return {
        "donors": len(donors),
        "hospitals": len(hospitals),
        "blood_requests": len(requests),
        "request_assignments": assignment_count,
        "donation_records": donation_count,
    }


# =============================================================
# LOAD
# =============================================================

def load_snapshot(session: Session) -> StoreSnapshot:
    """
    Read every allocation table into a StoreSnapshot.

    Raises:
        DatabasePersistenceError on database failure
        PersistenceValidationError when a row holds an unknown enum value
    """
    try:
        donor_rows = session.execute(select(DonorRow).order_by(DonorRow.donor_id)).scalars().all()
        hospital_rows = session.execute(
            select(HospitalRow).order_by(HospitalRow.hospital_id)
        ).scalars().all()
        request_rows = session.execute(
            select(BloodRequestRow).order_by(BloodRequestRow.request_id)
        ).scalars().all()
        assignment_rows = session.execute(
            select(RequestAssignmentRow).order_by(
                RequestAssignmentRow.request_id,
                RequestAssignmentRow.kind,
                RequestAssignmentRow.position,
            )
        ).scalars().all()
        donation_rows = session.execute(
            select(DonationRecordRow).order_by(
                DonationRecordRow.sequence, DonationRecordRow.donation_id
            )
        ).scalars().all()
    except SQLAlchemyError as e:
        logger.error(f"Failed to read allocation tables: {e}")
        raise DatabasePersistenceError(f"Failed to read allocation tables: {e}") from e

    lists: Dict[str, Dict[str, List[str]]] = defaultdict(lambda: defaultdict(list))
    for row in assignment_rows:
        lists[row.request_id][row.kind].append(row.donor_id)

    try:
        donors = [
            Donor(
                donor_id=row.donor_id,
                name=row.name,
                blood_group=BloodGroup(row.blood_group),
                age=row.age,
                gender=Gender(row.gender) if row.gender else None,
                phone=row.phone or "",
                address=row.address or "",
                last_donation_date=_optional_utc(row.last_donation_date),
                is_available=row.is_available,
            )
            for row in donor_rows
        ]
        hospitals = [
            Hospital(
                hospital_id=row.hospital_id,
                name=row.name,
                contact=row.contact or "",
                location=row.location or "",
                is_verified=row.is_verified,
            )
            for row in hospital_rows
        ]
        requests = [
            BloodRequest(
                request_id=row.request_id,
                hospital_id=row.hospital_id,
                blood_group=BloodGroup(row.blood_group),
                quantity=row.quantity,
                request_date=ensure_utc(row.request_date),
                status=RequestStatus(row.status),
                assigned_donors=list(lists[row.request_id][ASSIGNMENT_KIND_ASSIGNED]),
                fulfilled_by=list(lists[row.request_id][ASSIGNMENT_KIND_FULFILLED]),
            )
            for row in request_rows
        ]
    except ValueError as e:
        raise PersistenceValidationError(f"Stored row has an invalid value: {e}") from e

    donations = [
        DonationRecord(
            donation_id=row.donation_id,
            donor_id=row.donor_id,
            request_id=row.request_id,
            donation_date=ensure_utc(row.donation_date),
            is_verified_by_admin=row.is_verified_by_admin,
        )
        for row in donation_rows
    ]

    logger.info(
        f"Load allocation tables: donors={len(donors)} hospitals={len(hospitals)} "
        f"blood_requests={len(requests)} request_assignments={len(assignment_rows)} "
        f"donation_records={len(donations)}"
    )
    return StoreSnapshot(
        donors=donors,
        hospitals=hospitals,
        requests=requests,
        donations=donations,
    )


def load_store(session: Session, store: InMemoryAllocationStore) -> InMemoryAllocationStore:
    """
    Replace a store's contents with the persisted state.

    Raises:
        DatabasePersistenceError on database failure
        PersistenceValidationError when persisted state is inconsistent
    """
    snapshot = load_snapshot(session)
    try:
        store.load(snapshot)
    except (AllocationError, ValueError) as e:
        raise PersistenceValidationError(f"Persisted state rejected: {e}") from e
    return store


__all__ = [
    "read_store_revision",
    "lock_store_revision",
    "save_store",
    "load_snapshot",
    "load_store",
]
