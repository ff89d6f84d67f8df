"""
Database ORM Models - Allocation Tables.

============================================================
ALLOCATION SCHEMA
============================================================

Five tables hold the whole allocation state:
- donors
- hospitals
- blood_requests
- request_assignments (assigned and fulfilled donor lists)
- donation_records (the ledger)

store_revision holds one counter row, advanced by every save, that
writers lock and compare against what they loaded.

Entity ids (DON001, REQ014, ...) are the primary keys so a
round trip through the database preserves them exactly.

============================================================
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)

from .engine import Base


# =============================================================
# HELPER FUNCTIONS
# =============================================================

def utc_now():
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


ASSIGNMENT_KIND_ASSIGNED = "assigned"
ASSIGNMENT_KIND_FULFILLED = "fulfilled"


# =============================================================
# 1. DONORS TABLE
# =============================================================

class DonorRow(Base):
    """
    Registered blood donors.

    is_available is False exactly while the donor is reserved on
    an active request.
    """
    __tablename__ = "donors"

    donor_id = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=False)
    age = Column(Integer, nullable=True)
    gender = Column(String(16), nullable=True)
    blood_group = Column(String(3), nullable=False, index=True)
    phone = Column(String(64), nullable=False, default="")
    address = Column(String(512), nullable=False, default="")
    last_donation_date = Column(DateTime(timezone=True), nullable=True)
    is_available = Column(Boolean, nullable=False, default=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_donors_group_available", "blood_group", "is_available"),
    )


# =============================================================
# 2. HOSPITALS TABLE
# =============================================================

class HospitalRow(Base):
    """Hospitals; only verified ones may create requests."""
    __tablename__ = "hospitals"

    hospital_id = Column(String(32), primary_key=True)
    name = Column(String(255), nullable=False)
    contact = Column(String(255), nullable=False, default="")
    location = Column(String(512), nullable=False, default="")
    is_verified = Column(Boolean, nullable=False, default=False, index=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


# =============================================================
# 3. BLOOD REQUESTS TABLE
# =============================================================

class BloodRequestRow(Base):
    """
    Blood requests raised by hospitals.

    Donor lists live in request_assignments.
    """
    __tablename__ = "blood_requests"

    request_id = Column(String(32), primary_key=True)
    hospital_id = Column(String(32), ForeignKey("hospitals.hospital_id"), nullable=False, index=True)
    blood_group = Column(String(3), nullable=False)
    quantity = Column(Integer, nullable=False)
    request_date = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(16), nullable=False, index=True)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("idx_requests_hospital_status", "hospital_id", "status"),
    )


# =============================================================
# 4. REQUEST ASSIGNMENTS TABLE
# =============================================================

class RequestAssignmentRow(Base):
    """
    One donor in a request's assigned or fulfilled list.

    position preserves list order within (request_id, kind).
    """
    __tablename__ = "request_assignments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(String(32), ForeignKey("blood_requests.request_id"), nullable=False, index=True)
    donor_id = Column(String(32), ForeignKey("donors.donor_id"), nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    position = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("request_id", "donor_id", "kind", name="uq_assignment_request_donor_kind"),
    )


# =============================================================
# 5. DONATION RECORDS TABLE
# =============================================================

class DonationRecordRow(Base):
    """
    Donation ledger.

    Rows are only ever inserted; the single permitted update is
    is_verified_by_admin flipping to True.
    """
    __tablename__ = "donation_records"

    donation_id = Column(String(32), primary_key=True)
    donor_id = Column(String(32), ForeignKey("donors.donor_id"), nullable=False, index=True)
    request_id = Column(String(32), ForeignKey("blood_requests.request_id"), nullable=False, index=True)
    donation_date = Column(DateTime(timezone=True), nullable=False)
    is_verified_by_admin = Column(Boolean, nullable=False, default=False, index=True)
    sequence = Column(Integer, nullable=False, default=0)


# =============================================================
# 6. STORE REVISION TABLE
# =============================================================

STORE_REVISION_ID = 1


class StoreRevisionRow(Base):
    """
    Single-row write counter for the whole allocation state.

    A save names the revision it loaded; if another writer has
    advanced it since, the save is rejected instead of overwriting.
    """
    __tablename__ = "store_revision"

    id = Column(Integer, primary_key=True)
    revision = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


__all__ = [
    "ASSIGNMENT_KIND_ASSIGNED",
    "ASSIGNMENT_KIND_FULFILLED",
    "DonorRow",
    "HospitalRow",
    "BloodRequestRow",
    "RequestAssignmentRow",
    "DonationRecordRow",
    "STORE_REVISION_ID",
    "StoreRevisionRow",
]
