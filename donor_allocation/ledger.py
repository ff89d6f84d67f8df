"""
Donor Allocation - Donation Ledger.

============================================================
PURPOSE
============================================================
Append-only store of donation records: the audit truth of who
donated for which request, independent of request state.

RULES:
- Records are never deleted or rewritten
- The only mutation is flipping is_verified_by_admin to True
- Verification never touches donors or requests; fulfillment
  already counted the donation when it was confirmed

============================================================
"""

import logging
import threading
from typing import Dict, Iterable, List, Optional

from .errors import NotFoundError
from .types import DonationRecord


logger = logging.getLogger(__name__)


class DonationLedger:
    """
    Thread-safe, insertion-ordered donation ledger.

    Every read returns copies so callers cannot mutate history.
    """

    def __init__(self, records: Optional[Iterable[DonationRecord]] = None):
        self._records: Dict[str, DonationRecord] = {}
        self._lock = threading.RLock()
        for record in records or ():
            self.append(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, donation_id: str) -> bool:
        with self._lock:
            return donation_id in self._records

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    def append(self, record: DonationRecord) -> DonationRecord:
        """
        Append a new record.

        Raises:
            ValueError: If the donation id already exists
        """
        with self._lock:
            if record.donation_id in self._records:
                raise ValueError(f"Donation {record.donation_id} already recorded")
            self._records[record.donation_id] = record.copy()
        logger.debug(
            f"Ledger append {record.donation_id}: "
            f"donor={record.donor_id} request={record.request_id}"
        )
        return record.copy()

    def approve(self, donation_id: str) -> DonationRecord:
        """
        Mark a record as verified by an administrator.

        Idempotent: approving twice leaves the record verified.

        Raises:
            NotFoundError: If no such record exists
        """
        with self._lock:
            record = self._records.get(donation_id)
            if record is None:
                raise NotFoundError("Donation", donation_id)
            record.is_verified_by_admin = True
            return record.copy()

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def get(self, donation_id: str) -> Optional[DonationRecord]:
        with self._lock:
            record = self._records.get(donation_id)
            return record.copy() if record else None

    def records(
        self,
        donor_id: Optional[str] = None,
        request_id: Optional[str] = None,
        unverified_only: bool = False,
    ) -> List[DonationRecord]:
        """Records in insertion order, optionally filtered."""
        with self._lock:
            return [
                r.copy() for r in self._records.values()
                if (donor_id is None or r.donor_id == donor_id)
                and (request_id is None or r.request_id == request_id)
                and (not unverified_only or not r.is_verified_by_admin)
            ]

    def history_for_donor(self, donor_id: str) -> List[DonationRecord]:
        """A donor's donations, newest first."""
        return sorted(
            self.records(donor_id=donor_id),
            key=lambda r: r.donation_date,
            reverse=True,
        )

    def pending_approval(self) -> List[DonationRecord]:
        return self.records(unverified_only=True)
