"""
Donor Allocation.

============================================================
DONOR-REQUEST ALLOCATION ENGINE
============================================================

Matches eligible blood donors to hospital blood requests and
keeps donor availability, request fulfillment counts and the
donation ledger mutually consistent under concurrent callers.

============================================================
DATA FLOW
============================================================

create_request → assign_donors → confirm_donation → approve_donation
                      ↓
              cancel_assignment / cancel_request

============================================================
GUARANTEES
============================================================

- A donor is reserved on at most one active request
- A request never counts more donations than its quantity
- Every transaction commits completely or not at all
- Rejections raise AllocationError subclasses with stable codes

============================================================
USAGE
============================================================

```python
from core.clock import MockClock
from donor_allocation import AllocationEngine, seed_store

engine = AllocationEngine(clock=MockClock())
seed_store(engine.store)

donors = engine.find_eligible_donors("O+")
engine.assign_donors("REQ002", [d.donor_id for d in donors[:1]])
record = engine.confirm_donation("REQ002", donors[0].donor_id)
engine.approve_donation(record.donation_id)
```

============================================================
"""

# Types
from .types import (
    BloodGroup,
    Gender,
    RequestStatus,
    EligibilityReason,
    Donor,
    Hospital,
    BloodRequest,
    DonationRecord,
    EligibilityStatus,
    AllocationSummary,
)

# Errors
from .errors import (
    ErrorCategory,
    ERROR_CODES,
    get_error_info,
    AllocationError,
    ValidationError,
    InvalidQuantityError,
    NotFoundError,
    UnverifiedHospitalError,
    InvalidRequestStateError,
    CapacityExceededError,
    DonorAlreadyReservedError,
    NoActiveAssignmentError,
    DonorNotAssignedError,
    ContentionError,
    InvalidTransitionError,
)

# Configuration
from .config import (
    AllocationConfig,
    EligibilityConfig,
    LockingConfig,
    AssignmentPolicyConfig,
    IdentityConfig,
    get_default_config,
    load_config_from_dict,
    load_config_from_env,
)

# Components
from .eligibility import EligibilityEvaluator, add_months, is_eligible
from .ledger import DonationLedger
from .state_machine import RequestStateMachine, StateTransitionEvent
from .store import AllocationStore, InMemoryAllocationStore, StoreChange, StoreSnapshot
from .engine import AllocationEngine
from .seed import demo_snapshot, seed_store


__all__ = [
    # Types
    "BloodGroup",
    "Gender",
    "RequestStatus",
    "EligibilityReason",
    "Donor",
    "Hospital",
    "BloodRequest",
    "DonationRecord",
    "EligibilityStatus",
    "AllocationSummary",
    # Errors
    "ErrorCategory",
    "ERROR_CODES",
    "get_error_info",
    "AllocationError",
    "ValidationError",
    "InvalidQuantityError",
    "NotFoundError",
    "UnverifiedHospitalError",
    "InvalidRequestStateError",
    "CapacityExceededError",
    "DonorAlreadyReservedError",
    "NoActiveAssignmentError",
    "DonorNotAssignedError",
    "ContentionError",
    "InvalidTransitionError",
    # Configuration
    "AllocationConfig",
    "EligibilityConfig",
    "LockingConfig",
    "AssignmentPolicyConfig",
    "IdentityConfig",
    "get_default_config",
    "load_config_from_dict",
    "load_config_from_env",
    # Components
    "EligibilityEvaluator",
    "add_months",
    "is_eligible",
    "DonationLedger",
    "RequestStateMachine",
    "StateTransitionEvent",
    "AllocationStore",
    "InMemoryAllocationStore",
    "StoreChange",
    "StoreSnapshot",
    "AllocationEngine",
    "demo_snapshot",
    "seed_store",
]
