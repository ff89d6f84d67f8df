"""
Tests for the eligibility evaluator.

============================================================
TEST COVERAGE
============================================================
1. Calendar-month arithmetic
2. is_eligible rules (reservation, never donated, cool-down)
3. Candidate filtering
4. Donor-facing eligibility status
============================================================
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.clock import MockClock
from donor_allocation.config import EligibilityConfig
from donor_allocation.eligibility import (
    EligibilityEvaluator,
    add_months,
    cooldown_cutoff,
    filter_eligible,
    is_eligible,
    next_eligible_date,
)
from donor_allocation.types import BloodGroup, Donor, EligibilityReason


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def _donor(donor_id="DON001", name="Ann", group=BloodGroup.O_POS, last=None, available=True):
    return Donor(
        donor_id=donor_id,
        name=name,
        blood_group=group,
        last_donation_date=last,
        is_available=available,
    )


# ============================================================
# CALENDAR MONTHS
# ============================================================

class TestAddMonths:
    """Calendar-month shifting."""

    def test_simple_shift(self):
        assert add_months(_utc(2024, 2, 15, 10), 3) == _utc(2024, 5, 15, 10)

    def test_year_rollover(self):
        assert add_months(_utc(2024, 11, 15), 3) == _utc(2025, 2, 15)

    def test_negative_shift_crosses_year(self):
        assert add_months(_utc(2024, 2, 10), -3) == _utc(2023, 11, 10)

    def test_day_clamped_to_month_end(self):
        """Nov 30 + 3 months lands on the last day of February."""
        assert add_months(_utc(2023, 11, 30), 3) == _utc(2024, 2, 29)
        assert add_months(_utc(2024, 11, 30), 3) == _utc(2025, 2, 28)

    def test_cutoff_is_now_minus_cooldown(self):
        assert cooldown_cutoff(_utc(2024, 8, 1, 12), 3) == _utc(2024, 5, 1, 12)


# ============================================================
# IS ELIGIBLE
# ============================================================

class TestIsEligible:
    """Eligibility predicate."""

    NOW = _utc(2024, 8, 1, 12)

    @pytest.mark.parametrize("last", [None, _utc(2020, 1, 1), _utc(2024, 7, 31)])
    def test_reserved_donor_never_eligible(self, last):
        """isAvailable=False wins regardless of last donation."""
        donor = _donor(last=last, available=False)
        assert is_eligible(donor, self.NOW) is False

    def test_never_donated_is_eligible(self):
        assert is_eligible(_donor(last=None), self.NOW) is True

    def test_donation_before_cutoff_is_eligible(self):
        donor = _donor(last=_utc(2024, 5, 1, 11, 59))
        assert is_eligible(donor, self.NOW) is True

    def test_donation_exactly_at_cutoff_is_not_eligible(self):
        """The comparison is strict."""
        donor = _donor(last=_utc(2024, 5, 1, 12))
        assert is_eligible(donor, self.NOW) is False

    def test_recent_donation_is_not_eligible(self):
        donor = _donor(last=_utc(2024, 7, 1))
        assert is_eligible(donor, self.NOW) is False

    def test_configurable_cooldown(self):
        donor = _donor(last=_utc(2024, 6, 15))
        assert is_eligible(donor, self.NOW, cooldown_months=1) is True
        assert is_eligible(donor, self.NOW, cooldown_months=2) is False

    def test_naive_last_donation_treated_as_utc(self):
        donor = _donor(last=datetime(2024, 1, 1))
        assert is_eligible(donor, self.NOW) is True


# ============================================================
# FILTERING
# ============================================================

class TestFilterEligible:
    """Candidate search."""

    NOW = _utc(2024, 8, 1, 12)

    def test_filters_by_group_and_eligibility(self):
        donors = [
            _donor("DON001", "Zed", BloodGroup.A_NEG),
            _donor("DON002", "Amy", BloodGroup.A_NEG),
            _donor("DON003", "Bob", BloodGroup.A_NEG, available=False),
            _donor("DON004", "Cat", BloodGroup.A_NEG, last=_utc(2024, 7, 1)),
            _donor("DON005", "Dan", BloodGroup.O_POS),
        ]

        result = filter_eligible(donors, BloodGroup.A_NEG, self.NOW)

        assert [d.donor_id for d in result] == ["DON002", "DON001"]

    def test_no_matches(self):
        assert filter_eligible([_donor()], BloodGroup.AB_NEG, self.NOW) == []


# ============================================================
# EVALUATOR
# ============================================================

class TestEligibilityEvaluator:
    """Clock-bound evaluator and status view."""

    @pytest.fixture
    def clock(self):
        return MockClock(_utc(2024, 8, 1, 12))

    @pytest.fixture
    def evaluator(self, clock):
        return EligibilityEvaluator(EligibilityConfig(cooldown_months=3), clock)

    def test_uses_clock_when_now_omitted(self, evaluator, clock):
        donor = _donor(last=_utc(2024, 6, 1))
        assert evaluator.is_eligible(donor) is False

        clock.advance(days=62)

        assert evaluator.is_eligible(donor) is True

    def test_status_eligible_never_donated(self, evaluator):
        status = evaluator.status(_donor())

        assert status.eligible is True
        assert status.reason == EligibilityReason.ELIGIBLE
        assert status.next_eligible_date is None

    def test_status_cooldown_reports_next_date(self, evaluator):
        status = evaluator.status(_donor(last=_utc(2024, 6, 10, 14, 30)))

        assert status.eligible is False
        assert status.reason == EligibilityReason.COOLDOWN
        assert status.next_eligible_date == _utc(2024, 9, 10, 14, 30)

    def test_status_reserved_takes_precedence(self, evaluator):
        status = evaluator.status(_donor(last=_utc(2024, 7, 1), available=False))

        assert status.eligible is False
        assert status.reason == EligibilityReason.RESERVED

    def test_next_eligible_date_matches_boundary(self, evaluator):
        """Clamped boundary: eligible once the cut-off passes the donation."""
        donor = _donor(last=_utc(2024, 1, 31))
        boundary = next_eligible_date(donor, 3)

        assert boundary == _utc(2024, 4, 30)
        assert evaluator.is_eligible(donor, now=boundary + timedelta(days=1)) is True
