"""
Tests for per-entity locking.
"""

import threading
import time

import pytest

from donor_allocation.errors import AllocationError, ContentionError
from donor_allocation.locking import EntityLockManager, donor_key, request_key


@pytest.fixture
def locks():
    return EntityLockManager(timeout_seconds=0.2)


class TestEntityLockManager:
    """Ordered, bounded lock sets."""

    def test_hold_acquires_sorted_unique_keys(self, locks):
        keys = [request_key("REQ001"), donor_key("DON002"), donor_key("DON001"), donor_key("DON001")]

        with locks.hold(keys) as held:
            assert held == ["donor:DON001", "donor:DON002", "request:REQ001"]
            assert all(locks.is_locked(k) for k in held)

        assert not any(locks.is_locked(k) for k in keys)

    def test_released_on_exception(self, locks):
        with pytest.raises(RuntimeError):
            with locks.hold([donor_key("DON001")]):
                raise RuntimeError("boom")

        assert not locks.is_locked(donor_key("DON001"))

    def test_contention_times_out_and_releases_partial_set(self, locks):
        """A blocked set fails with ContentionError and holds nothing."""
        held = locks.acquire([request_key("REQ001")])
        try:
            started = time.monotonic()
            with pytest.raises(ContentionError) as exc_info:
                locks.acquire([donor_key("DON001"), request_key("REQ001")])
            elapsed = time.monotonic() - started

            assert exc_info.value.is_retryable
            assert elapsed < 2.0
            assert not locks.is_locked(donor_key("DON001"))
        finally:
            locks.release(held)

    def test_timeout_override(self, locks):
        held = locks.acquire([donor_key("DON001")])
        try:
            with pytest.raises(ContentionError):
                locks.acquire([donor_key("DON001")], timeout_seconds=0.01)
        finally:
            locks.release(held)

    def test_opposite_orders_do_not_deadlock(self):
        """Two threads naming the same keys in opposite order both finish."""
        locks = EntityLockManager(timeout_seconds=5.0)
        a, b = donor_key("DON001"), request_key("REQ001")
        done = []

        def worker(keys):
            for _ in range(200):
                with locks.hold(keys):
                    pass
            done.append(True)

        threads = [
            threading.Thread(target=worker, args=([a, b],)),
            threading.Thread(target=worker, args=([b, a],)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(done) == 2


class TestLockTableSize:
    """Entries exist only while a key is held or awaited."""

    def test_table_empties_after_hold(self, locks):
        with locks.hold([donor_key("DON001"), request_key("REQ001")]):
            assert locks.table_size == 2

        assert locks.table_size == 0

    def test_table_empties_after_contention(self, locks):
        held = locks.acquire([request_key("REQ001")])
        with pytest.raises(ContentionError):
            locks.acquire([donor_key("DON001"), request_key("REQ001")], timeout_seconds=0.01)
        assert locks.table_size == 1

        locks.release(held)
        assert locks.table_size == 0

    def test_table_empties_after_threaded_churn(self):
        locks = EntityLockManager(timeout_seconds=5.0)
        keys = [donor_key(f"DON{i:03d}") for i in range(5)]

        def worker(offset):
            for i in range(100):
                with locks.hold([keys[(i + offset) % 5], keys[(i + offset + 1) % 5]]):
                    pass

        threads = [threading.Thread(target=worker, args=(k,)) for k in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert locks.table_size == 0

    def test_rejected_engine_calls_leave_no_entries(self, engine, make_donor, make_request):
        donor = make_donor()
        request = make_request(quantity=2)
        engine.assign_donors(request.request_id, [donor.donor_id])
        for bogus in ("DON900", "DON901", "NOPE"):
            with pytest.raises(AllocationError):
                engine.assign_donors(request.request_id, [bogus])
        with pytest.raises(AllocationError):
            engine.confirm_donation("REQ999", donor.donor_id)
        with pytest.raises(AllocationError):
            engine.cancel_assignment("DON902")
        engine.confirm_donation(request.request_id, donor.donor_id)

        assert engine.store.locks.table_size == 0
