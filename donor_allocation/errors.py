"""
Donor Allocation - Error Taxonomy.

============================================================
PURPOSE
============================================================
Every failure of an allocation transaction is a rejected
precondition, reported by a typed exception carrying a stable
code. Nothing is partially applied when one is raised.

ERROR CATEGORIES:
1. Validation - malformed input
2. Lookup - referenced entity does not exist
3. State - request/donor is in the wrong state
4. Capacity - more donors than open slots
5. Concurrency - bounded lock wait expired

RETRYABLE vs NON-RETRYABLE:
- Only CONTENTION is retryable, and only by the caller.
  The engine itself never retries.

============================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Set


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    LOOKUP = "LOOKUP"
    STATE = "STATE"
    CAPACITY = "CAPACITY"
    CONCURRENCY = "CONCURRENCY"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    is_retryable: bool
    description: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    "INVALID_QUANTITY": ErrorCodeInfo(
        code="INVALID_QUANTITY",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Requested quantity must be a positive integer",
    ),
    "VALIDATION_FAILED": ErrorCodeInfo(
        code="VALIDATION_FAILED",
        category=ErrorCategory.VALIDATION,
        is_retryable=False,
        description="Input failed validation",
    ),
    "NOT_FOUND": ErrorCodeInfo(
        code="NOT_FOUND",
        category=ErrorCategory.LOOKUP,
        is_retryable=False,
        description="Referenced entity does not exist",
    ),
    "UNVERIFIED_HOSPITAL": ErrorCodeInfo(
        code="UNVERIFIED_HOSPITAL",
        category=ErrorCategory.STATE,
        is_retryable=False,
        description="Only verified hospitals can create requests",
    ),
    "INVALID_REQUEST_STATE": ErrorCodeInfo(
        code="INVALID_REQUEST_STATE",
        category=ErrorCategory.STATE,
        is_retryable=False,
        description="Request is not in a state that allows this operation",
    ),
    "DONOR_ALREADY_RESERVED": ErrorCodeInfo(
        code="DONOR_ALREADY_RESERVED",
        category=ErrorCategory.STATE,
        is_retryable=False,
        description="Donor is reserved on another active request",
    ),
    "NO_ACTIVE_ASSIGNMENT": ErrorCodeInfo(
        code="NO_ACTIVE_ASSIGNMENT",
        category=ErrorCategory.STATE,
        is_retryable=False,
        description="Donor is not reserved on any active request",
    ),
    "DONOR_NOT_ASSIGNED": ErrorCodeInfo(
        code="DONOR_NOT_ASSIGNED",
        category=ErrorCategory.STATE,
        is_retryable=False,
        description="Donor is not assigned to this request",
    ),
    "CAPACITY_EXCEEDED": ErrorCodeInfo(
        code="CAPACITY_EXCEEDED",
        category=ErrorCategory.CAPACITY,
        is_retryable=False,
        description="More donors supplied than the request has open slots",
    ),
    "CONTENTION": ErrorCodeInfo(
        code="CONTENTION",
        category=ErrorCategory.CONCURRENCY,
        is_retryable=True,
        description="Could not acquire entity locks within the wait bound",
    ),
    "INVALID_TRANSITION": ErrorCodeInfo(
        code="INVALID_TRANSITION",
        category=ErrorCategory.INTERNAL,
        is_retryable=False,
        description="Request status transition is not allowed",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.INTERNAL,
        is_retryable=False,
        description=f"Unknown error: {code}",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


RETRYABLE_ERROR_CODES: Set[str] = {
    code for code, info in ERROR_CODES.items() if info.is_retryable
}


# ============================================================
# EXCEPTIONS
# ============================================================

class AllocationError(Exception):
    """
    Base exception for the allocation engine.

    Carries a stable code from ERROR_CODES and a context dict
    for logging and for UI/CLI layers to render.
    """

    code: str = "VALIDATION_FAILED"

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def is_retryable(self) -> bool:
        return is_retryable(self.code)

    @property
    def category(self) -> ErrorCategory:
        return get_error_info(self.code).category

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/rendering."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.is_retryable,
            "context": self.context,
        }


class ValidationError(AllocationError):
    """Input failed validation."""
    code = "VALIDATION_FAILED"


class InvalidQuantityError(ValidationError):
    """Quantity is not a positive integer."""
    code = "INVALID_QUANTITY"


class NotFoundError(AllocationError):
    """Referenced entity does not exist."""
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            f"{entity} {entity_id} not found",
            context={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class UnverifiedHospitalError(AllocationError):
    """Hospital missing or not verified."""
    code = "UNVERIFIED_HOSPITAL"


class InvalidRequestStateError(AllocationError):
    """Request is not in a state that allows the operation."""
    code = "INVALID_REQUEST_STATE"


class CapacityExceededError(AllocationError):
    """More donor ids supplied than open slots."""
    code = "CAPACITY_EXCEEDED"


class DonorAlreadyReservedError(AllocationError):
    """Donor is reserved on a different active request."""
    code = "DONOR_ALREADY_RESERVED"


class NoActiveAssignmentError(AllocationError):
    """Donor is not reserved on any active request."""
    code = "NO_ACTIVE_ASSIGNMENT"


class DonorNotAssignedError(AllocationError):
    """Confirmation for a donor that was never assigned to the request."""
    code = "DONOR_NOT_ASSIGNED"


class ContentionError(AllocationError):
    """Entity locks could not be acquired in time; safe to retry."""
    code = "CONTENTION"


class InvalidTransitionError(AllocationError):
    """Status transition rejected by the transition guard."""
    code = "INVALID_TRANSITION"
