"""Error taxonomy for the registration defense core.

Expected rejections are returned as ``Decision`` values by the orchestrator.
The exceptions below cover malformed input, dependency outages and lost
optimistic-concurrency races.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import Decision


class DefenseError(Exception):
    """Base class for all registration defense errors."""

    code = "DEFENSE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(DefenseError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class DependencyUnavailable(DefenseError):
    """A backing store or external feed could not be reached in time."""

    code = "DEPENDENCY_UNAVAILABLE"

    def __init__(self, dependency: str, detail: str = ""):
        super().__init__(f"{dependency} unavailable: {detail}" if detail else f"{dependency} unavailable")
        self.dependency = dependency
        self.detail = detail


class ConcurrencyConflict(DefenseError):
    """The policy record changed between read and write."""

    code = "CONCURRENCY_CONFLICT"

    def __init__(self, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"policy version mismatch: expected {expected_version}, found {actual_version}"
        )
        self.expected_version = expected_version
        self.actual_version = actual_version


class PolicyRejection(DefenseError):
    code = "POLICY_REJECTION"

    def __init__(self, decision: "Decision"):
        reason = decision.reason.value if decision.reason else "UNKNOWN"
        super().__init__(f"registration rejected: {reason}")
        self.decision = decision
        self.reason = decision.reason
        self.retry_after_seconds = decision.retry_after_seconds


__all__ = [
    "DefenseError",
    "ValidationError",
    "DependencyUnavailable",
    "ConcurrencyConflict",
    "PolicyRejection",
]
