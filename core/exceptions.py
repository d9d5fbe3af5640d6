"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Defines all custom exceptions for the training orchestrator.

- Provides clear exception hierarchy
- Carries field-level detail for rejected submissions
- Includes context for debugging and audit
- Maps each failure to a stable error code

============================================================
EXCEPTION HIERARCHY
============================================================
OrchestrationError (base)
├── ConfigurationError
├── ValidationError
├── ConflictError
├── NotFoundError
├── ApprovalRequiredError
├── StateError
├── StageExecutionError
└── PersistenceError

Everything except StageExecutionError is raised synchronously
to the caller of a mutating operation. StageExecutionError is
raised inside the background progression loop and converted
into a failed job there.

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


# ============================================================
# SEVERITY LEVELS
# ============================================================

class Severity(Enum):
    """Exception severity levels for logging."""

    LOW = "low"
    """Caller error, nothing changed."""

    MEDIUM = "medium"
    """Operation refused because of current state."""

    HIGH = "high"
    """Internal failure, job or store affected."""

    CRITICAL = "critical"
    """Orchestrator cannot operate."""


# ============================================================
# BASE EXCEPTION
# ============================================================

class OrchestrationError(Exception):
    """
    Base exception for all orchestrator errors.

    All exceptions carry:
    - code: stable machine-readable identifier
    - severity: for logging
    - context: for debugging
    - timestamp: when the error occurred
    """

    code: str = "ORCHESTRATION_ERROR"
    default_severity: Severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)

        self.message = message
        self.severity = severity or self.default_severity
        self.context = context or {}
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause:
            self.context["cause_type"] = type(cause).__name__
            self.context["cause_message"] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/responses."""
        return {
            "type": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_log_format(self) -> str:
        """Format exception for structured logging."""
        ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
        base = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        return f"{base} | {ctx_str}" if ctx_str else base


# ============================================================
# CONFIGURATION ERRORS
# ============================================================

class ConfigurationError(OrchestrationError):
    """Error in orchestrator configuration."""

    code = "CONFIGURATION_ERROR"
    default_severity = Severity.CRITICAL

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None, **kwargs):
        context = kwargs.pop("context", {})
        self.errors: List[str] = list(errors or [])
        if self.errors:
            context["errors"] = self.errors
        super().__init__(message, context=context, **kwargs)


# ============================================================
# CALLER ERRORS
# ============================================================

class ValidationError(OrchestrationError):
    """
    Request failed validation.

    field_errors maps every offending field to its messages,
    so callers see all problems at once instead of the first.
    """

    code = "VALIDATION_ERROR"
    default_severity = Severity.LOW

    def __init__(
        self,
        message: str,
        field_errors: Optional[Dict[str, List[str]]] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        self.field_errors: Dict[str, List[str]] = dict(field_errors or {})
        if self.field_errors:
            context["fields"] = sorted(self.field_errors)
        super().__init__(message, context=context, **kwargs)

    @property
    def fields(self) -> List[str]:
        """Names of the offending fields."""
        return sorted(self.field_errors)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field_errors"] = self.field_errors
        return data


class ConflictError(OrchestrationError):
    """Operation conflicts with an invariant-protected resource."""

    code = "CONFLICT"

    def __init__(
        self,
        message: str,
        blocking_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        self.blocking_id = blocking_id
        if blocking_id:
            context["blocking_id"] = blocking_id
        super().__init__(message, context=context, **kwargs)


class NotFoundError(OrchestrationError):
    """Referenced job or model does not exist."""

    code = "NOT_FOUND"
    default_severity = Severity.LOW

    def __init__(self, entity: str, entity_id: str, **kwargs):
        context = kwargs.pop("context", {})
        context["entity"] = entity
        context["entity_id"] = entity_id
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}", context=context, **kwargs)


class ApprovalRequiredError(OrchestrationError):
    """High-impact registry mutation attempted without approval."""

    code = "APPROVAL_REQUIRED"

    def __init__(self, operation: str, subject_id: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        context["operation"] = operation
        if subject_id:
            context["subject_id"] = subject_id
        self.operation = operation
        super().__init__(f"Approval is required for {operation}", context=context, **kwargs)


class StateError(OrchestrationError):
    """Operation not permitted in the subject's current state."""

    code = "INVALID_STATE"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        subject_id: Optional[str] = None,
        **kwargs,
    ):
        context = kwargs.pop("context", {})
        if current_state:
            context["current_state"] = current_state
        if subject_id:
            context["subject_id"] = subject_id
        self.current_state = current_state
        super().__init__(message, context=context, **kwargs)


# ============================================================
# INTERNAL ERRORS
# ============================================================

class StageExecutionError(OrchestrationError):
    """A pipeline stage failed while the job was running."""

    code = "STAGE_EXECUTION_FAILED"
    default_severity = Severity.HIGH

    def __init__(self, message: str, stage: Optional[str] = None, **kwargs):
        context = kwargs.pop("context", {})
        if stage:
            context["stage"] = stage
        self.stage = stage
        super().__init__(message, context=context, **kwargs)


class PersistenceError(OrchestrationError):
    """Entity store operation failed."""

    code = "PERSISTENCE_ERROR"
    default_severity = Severity.HIGH


__all__ = [
    "Severity",
    "OrchestrationError",
    "ConfigurationError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "ApprovalRequiredError",
    "StateError",
    "StageExecutionError",
    "PersistenceError",
]
