"""
Core Module Package.

Infrastructure shared by the training engine, the model
registry and the audit log.

Components:
- clock: Unified UTC time abstraction
- exceptions: Error taxonomy returned to callers
"""

from .clock import ClockFactory, ClockProtocol, MockClock, SystemClock, now_utc
from .exceptions import (
    ApprovalRequiredError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    OrchestrationError,
    PersistenceError,
    Severity,
    StageExecutionError,
    StateError,
    ValidationError,
)

__all__ = [
    "ClockFactory",
    "ClockProtocol",
    "MockClock",
    "SystemClock",
    "now_utc",
    "ApprovalRequiredError",
    "ConfigurationError",
    "ConflictError",
    "NotFoundError",
    "OrchestrationError",
    "PersistenceError",
    "Severity",
    "StageExecutionError",
    "StateError",
    "ValidationError",
]
