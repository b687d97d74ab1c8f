"""Abuse-resistant public registration defense."""

from .admin import AdminControls
from .config import DefenseConfig
from .errors import ConcurrencyConflict, DefenseError, DependencyUnavailable, PolicyRejection, ValidationError
from .models import AttackPattern, Decision, DefenseMode, Outcome, PolicyState, ReasonCode
from .orchestrator import RegistrationOrchestrator
from .sweeper import Sweeper

__all__ = [
    "AdminControls",
    "AttackPattern",
    "ConcurrencyConflict",
    "Decision",
    "DefenseConfig",
    "DefenseError",
    "DefenseMode",
    "DependencyUnavailable",
    "Outcome",
    "PolicyRejection",
    "PolicyState",
    "ReasonCode",
    "RegistrationOrchestrator",
    "Sweeper",
    "ValidationError",
]
