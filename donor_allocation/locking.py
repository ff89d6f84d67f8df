"""
Donor Allocation - Entity Locks.

============================================================
PURPOSE
============================================================
Serializes transactions per affected entity set.

RULES:
1. A transaction names every entity it touches up front
2. Locks are acquired in sorted key order (no lock cycles)
3. The whole set shares one deadline; on expiry everything
   acquired so far is released and ContentionError is raised
4. Locks are not re-entrant; a transaction acquires once

============================================================
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Generator, Iterable, List, Optional, Tuple

from .errors import ContentionError


logger = logging.getLogger(__name__)


def donor_key(donor_id: str) -> str:
    return f"donor:{donor_id}"


def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def hospital_key(hospital_id: str) -> str:
    return f"hospital:{hospital_id}"


def donation_key(donation_id: str) -> str:
    return f"donation:{donation_id}"


class _LockEntry:
    """A key's lock plus the number of transactions holding or waiting on it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class EntityLockManager:
    """
    Per-entity locks with bounded, ordered acquisition.

    ============================================================
    THREAD SAFETY
    ============================================================
    The lock table itself is guarded by an internal mutex. An
    entry exists only while some transaction holds or waits on
    its key; the last one out removes it, so rejected calls on
    unknown ids leave nothing behind.

    ============================================================
    """

    def __init__(self, timeout_seconds: float = 2.0):
        """
        Initialize lock manager.

        Args:
            timeout_seconds: Default wait bound for a whole lock set
        """
        self._timeout = timeout_seconds
        self._locks: Dict[str, _LockEntry] = {}
        self._table_lock = threading.Lock()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout

    @property
    def table_size(self) -> int:
        """Number of keys currently held or waited on."""
        with self._table_lock:
            return len(self._locks)

    def _checkout(self, key: str) -> _LockEntry:
        with self._table_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = _LockEntry()
                self._locks[key] = entry
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _LockEntry) -> None:
        with self._table_lock:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    def acquire(
        self,
        keys: Iterable[str],
        timeout_seconds: Optional[float] = None,
    ) -> List[Tuple[str, _LockEntry]]:
        """
        Acquire every key in sorted order within one deadline.

        Args:
            keys: Entity keys (duplicates ignored)
            timeout_seconds: Override of the default wait bound

        Returns:
            Acquired (key, entry) pairs, for release()

        Raises:
            ContentionError: If the deadline passes first
        """
        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        ordered = sorted(set(keys))
        deadline = time.monotonic() + timeout
        held: List[Tuple[str, _LockEntry]] = []

        for key in ordered:
            entry = self._checkout(key)
            remaining = max(0.0, deadline - time.monotonic())
            if not entry.lock.acquire(timeout=remaining):
                self._checkin(key, entry)
                self.release(held)
                logger.warning(f"Lock contention on {key} after {timeout:.2f}s")
                raise ContentionError(
                    f"Timed out waiting for {key}",
                    context={"key": key, "timeout_seconds": timeout},
                )
            held.append((key, entry))

        logger.debug(f"Acquired {len(held)} entity locks: {ordered}")
        return held

    def release(self, held: List[Tuple[str, _LockEntry]]) -> None:
        for key, entry in reversed(held):
            entry.lock.release()
            self._checkin(key, entry)

    @contextmanager
    def hold(
        self,
        keys: Iterable[str],
        timeout_seconds: Optional[float] = None,
    ) -> Generator[List[str], None, None]:
        """
        Context manager holding a lock set.

        Usage:
            with locks.hold([request_key(r), donor_key(d)]):
                ...
        """
        held = self.acquire(keys, timeout_seconds)
        try:
            yield [key for key, _ in held]
        finally:
            self.release(held)

    def is_locked(self, key: str) -> bool:
        """Check whether a key is currently held (diagnostics only)."""
        with self._table_lock:
            entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()
