"""
Donor Allocation - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Donor Allocation engine.

CRITICAL CONSTRAINTS:
- No blind retries
- Bounded lock waits
- Deterministic behavior given the clock

============================================================
ENVIRONMENT
============================================================
load_config_from_env() reads (after load_dotenv()):

  BLOODLINK_COOLDOWN_MONTHS
  BLOODLINK_LOCK_TIMEOUT_SECONDS
  BLOODLINK_MAX_LOCK_ATTEMPTS
  BLOODLINK_ENFORCE_CAPACITY
  BLOODLINK_ALLOW_WALK_IN_DONATIONS
  BLOODLINK_DATABASE_URL

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dotenv import load_dotenv


# ============================================================
# ELIGIBILITY CONFIGURATION
# ============================================================

@dataclass
class EligibilityConfig:
    """Cool-down rules."""

    cooldown_months: int = 3
    """Calendar months required between successive donations."""


# ============================================================
# LOCKING CONFIGURATION
# ============================================================

@dataclass
class LockingConfig:
    """
    Entity lock configuration.

    SAFETY: Every acquisition is bounded; expiry raises ContentionError.
    """

    acquire_timeout_seconds: float = 2.0
    """Maximum wait for the full lock set of one transaction."""

    max_lock_attempts: int = 3
    """Attempts when the lock set changes between read and lock."""


# ============================================================
# ASSIGNMENT POLICY
# ============================================================

@dataclass
class AssignmentPolicyConfig:
    """Rules for reserving and confirming donors."""

    enforce_capacity: bool = True
    """Reject assignments larger than the request's open slots."""

    allow_walk_in_donations: bool = False
    """Allow confirming a donor that was never assigned to the request."""


# ============================================================
# IDENTITY CONFIGURATION
# ============================================================

@dataclass
class IdentityConfig:
    """Human-readable id prefixes."""

    donor_prefix: str = "DON"
    hospital_prefix: str = "HOS"
    request_prefix: str = "REQ"
    donation_prefix: str = "DREC"

    sequence_width: int = 3
    """Zero padding of the numeric suffix."""


# ============================================================
# MAIN CONFIGURATION
# ============================================================

@dataclass
class AllocationConfig:
    """Complete engine configuration."""

    eligibility: EligibilityConfig = field(default_factory=EligibilityConfig)
    locking: LockingConfig = field(default_factory=LockingConfig)
    policy: AssignmentPolicyConfig = field(default_factory=AssignmentPolicyConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)

    database_url: str = "sqlite:///bloodlink.db"
    """SQLAlchemy URL used by the CLI."""

    def validate(self) -> None:
        """Raise ValueError on nonsensical settings."""
        if self.eligibility.cooldown_months < 0:
            raise ValueError("cooldown_months must be >= 0")
        if self.locking.acquire_timeout_seconds <= 0:
            raise ValueError("acquire_timeout_seconds must be positive")
        if self.locking.max_lock_attempts < 1:
            raise ValueError("max_lock_attempts must be at least 1")
        if self.identity.sequence_width < 1:
            raise ValueError("sequence_width must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligibility": {
                "cooldown_months": self.eligibility.cooldown_months,
            },
            "locking": {
                "acquire_timeout_seconds": self.locking.acquire_timeout_seconds,
                "max_lock_attempts": self.locking.max_lock_attempts,
            },
            "policy": {
                "enforce_capacity": self.policy.enforce_capacity,
                "allow_walk_in_donations": self.policy.allow_walk_in_donations,
            },
            "identity": {
                "donor_prefix": self.identity.donor_prefix,
                "hospital_prefix": self.identity.hospital_prefix,
                "request_prefix": self.identity.request_prefix,
                "donation_prefix": self.identity.donation_prefix,
                "sequence_width": self.identity.sequence_width,
            },
            "database_url": self.database_url,
        }


def get_default_config() -> AllocationConfig:
    """Reference deployment: 3-month cool-down, strict assignment."""
    return AllocationConfig()


# ============================================================
# CONFIGURATION LOADING
# ============================================================

def load_config_from_dict(data: Dict[str, Any]) -> AllocationConfig:
    """
    Load configuration from a dictionary.

    Missing sections keep their defaults.

    Args:
        data: Configuration dictionary (same shape as to_dict())

    Returns:
        AllocationConfig instance
    """
    config = get_default_config()

    if "eligibility" in data:
        e = data["eligibility"]
        config.eligibility = EligibilityConfig(
            cooldown_months=int(e.get("cooldown_months", 3)),
        )

    if "locking" in data:
        lk = data["locking"]
        config.locking = LockingConfig(
            acquire_timeout_seconds=float(lk.get("acquire_timeout_seconds", 2.0)),
            max_lock_attempts=int(lk.get("max_lock_attempts", 3)),
        )

    if "policy" in data:
        p = data["policy"]
        config.policy = AssignmentPolicyConfig(
            enforce_capacity=bool(p.get("enforce_capacity", True)),
            allow_walk_in_donations=bool(p.get("allow_walk_in_donations", False)),
        )

    if "identity" in data:
        i = data["identity"]
        config.identity = IdentityConfig(
            donor_prefix=i.get("donor_prefix", "DON"),
            hospital_prefix=i.get("hospital_prefix", "HOS"),
            request_prefix=i.get("request_prefix", "REQ"),
            donation_prefix=i.get("donation_prefix", "DREC"),
            sequence_width=int(i.get("sequence_width", 3)),
        )

    if "database_url" in data:
        config.database_url = data["database_url"]

    config.validate()
    return config


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_config_from_env(dotenv_path: Optional[str] = None) -> AllocationConfig:
    """
    Build configuration from BLOODLINK_* environment variables.

    Args:
        dotenv_path: Optional .env file to load first

    Returns:
        AllocationConfig instance
    """
    load_dotenv(dotenv_path)

    config = get_default_config()
    config.eligibility.cooldown_months = int(
        os.getenv("BLOODLINK_COOLDOWN_MONTHS", config.eligibility.cooldown_months)
    )
    config.locking.acquire_timeout_seconds = float(
        os.getenv("BLOODLINK_LOCK_TIMEOUT_SECONDS", config.locking.acquire_timeout_seconds)
    )
    config.locking.max_lock_attempts = int(
        os.getenv("BLOODLINK_MAX_LOCK_ATTEMPTS", config.locking.max_lock_attempts)
    )
    config.policy.enforce_capacity = _env_bool(
        "BLOODLINK_ENFORCE_CAPACITY", config.policy.enforce_capacity
    )
    config.policy.allow_walk_in_donations = _env_bool(
        "BLOODLINK_ALLOW_WALK_IN_DONATIONS", config.policy.allow_walk_in_donations
    )
    config.database_url = os.getenv("BLOODLINK_DATABASE_URL", config.database_url)

    config.validate()
    return config
