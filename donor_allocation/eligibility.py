"""
Donor Allocation - Eligibility Evaluator.

A donor is eligible when they are not reserved against a request and
their last donation is older than the cool-down window. The cool-down
is counted in calendar months; when the target month is shorter, the
day is clamped to that month's last day (May 31 minus 3 months is
Feb 28/29).

Pure functions: no I/O, deterministic given `now`.
"""

import calendar
import logging
from datetime import datetime
from typing import Iterable, List, Optional

from core.clock import ClockProtocol, SystemClock, ensure_utc

from .config import EligibilityConfig
from .types import BloodGroup, Donor, EligibilityReason, EligibilityStatus


logger = logging.getLogger(__name__)


def add_months(dt: datetime, months: int) -> datetime:
    """Shift a datetime by whole calendar months, clamping the day."""
    index = dt.month - 1 + months
    year = dt.year + index // 12
    month = index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def cooldown_cutoff(now: datetime, cooldown_months: int) -> datetime:
    """Donations strictly before this instant are outside the cool-down."""
    return add_months(ensure_utc(now), -cooldown_months)


def is_eligible(donor: Donor, now: datetime, cooldown_months: int = 3) -> bool:
    """
    Check whether a donor may be reserved right now.

    Args:
        donor: Donor to check
        now: Evaluation instant
        cooldown_months: Required gap since the last donation

    Returns:
        False if reserved or inside the cool-down window, True otherwise
    """
    if not donor.is_available:
        return False
    if donor.last_donation_date is None:
        return True
    return ensure_utc(donor.last_donation_date) < cooldown_cutoff(now, cooldown_months)


def next_eligible_date(donor: Donor, cooldown_months: int = 3) -> Optional[datetime]:
    """End of the donor's cool-down window, or None if they never donated."""
    if donor.last_donation_date is None:
        return None
    return add_months(ensure_utc(donor.last_donation_date), cooldown_months)


def filter_eligible(
    donors: Iterable[Donor],
    blood_group: BloodGroup,
    now: datetime,
    cooldown_months: int = 3,
) -> List[Donor]:
    """Donors of the given group that are eligible at `now`, sorted by name."""
    matches = [
        d for d in donors
        if d.blood_group == blood_group and is_eligible(d, now, cooldown_months)
    ]
    return sorted(matches, key=lambda d: (d.name, d.donor_id))


class EligibilityEvaluator:
    """Eligibility rules bound to a configuration and a clock."""

    def __init__(
        self,
        config: Optional[EligibilityConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._config = config or EligibilityConfig()
        self._clock = clock or SystemClock()

    @property
    def cooldown_months(self) -> int:
        return self._config.cooldown_months

    def is_eligible(self, donor: Donor, now: Optional[datetime] = None) -> bool:
        return is_eligible(donor, now or self._clock.now(), self._config.cooldown_months)

    def eligible_donors(
        self,
        donors: Iterable[Donor],
        blood_group: BloodGroup,
        now: Optional[datetime] = None,
    ) -> List[Donor]:
        matches = filter_eligible(
            donors, blood_group, now or self._clock.now(), self._config.cooldown_months
        )
        logger.debug(f"Eligible donors for {blood_group.value}: {len(matches)}")
        return matches

    def status(self, donor: Donor, now: Optional[datetime] = None) -> EligibilityStatus:
        """
        Explain eligibility for display to the donor.

        Reservation takes precedence over cool-down in the reported reason.
        """
        now = now or self._clock.now()
        next_date = next_eligible_date(donor, self._config.cooldown_months)

        if not donor.is_available:
            reason = EligibilityReason.RESERVED
        elif is_eligible(donor, now, self._config.cooldown_months):
            reason = EligibilityReason.ELIGIBLE
        else:
            reason = EligibilityReason.COOLDOWN

        return EligibilityStatus(
            donor_id=donor.donor_id,
            eligible=reason == EligibilityReason.ELIGIBLE,
            reason=reason,
            next_eligible_date=next_date,
        )
