"""
Training Engine - Job State Machine.

============================================================
PURPOSE
============================================================
Manages training job lifecycle with strict state transitions.

STATE MACHINE:

    PENDING
       │
       ▼
    DATA_PREP ──────────┐
       │                │  (sentiment skips forecasting)
       ▼                │
    FORECASTING         │
       │                │
       ▼                │
    RL_TRAINING ◄───────┘
       │
       ▼
    BACKTESTING
       │
       ▼
    VALIDATION
       │
       ▼
    COMPLETED

    Any non-terminal state can transition to:
    - CANCELLED (by cancel)
    - FAILED (internal error or stage timeout)

INVARIANTS:
- Terminal states are final
- Each transition has a guard
- All transitions are logged

============================================================
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.clock import now_utc
from core.exceptions import StateError

from .types import JobStatus, ModelType, TrainingJob, pipeline_for


logger = logging.getLogger(__name__)


# ============================================================
# STATE TRANSITION RULES
# ============================================================

_ABORT = {JobStatus.CANCELLED, JobStatus.FAILED}

# Valid transitions from each state
VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.DATA_PREP} | _ABORT,
    JobStatus.DATA_PREP: {JobStatus.FORECASTING, JobStatus.RL_TRAINING} | _ABORT,
    JobStatus.FORECASTING: {JobStatus.RL_TRAINING} | _ABORT,
    JobStatus.RL_TRAINING: {JobStatus.BACKTESTING} | _ABORT,
    JobStatus.BACKTESTING: {JobStatus.VALIDATION} | _ABORT,
    JobStatus.VALIDATION: {JobStatus.COMPLETED} | _ABORT,
    # Terminal states - no transitions out
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


# ============================================================
# STATE TRANSITION EVENT
# ============================================================

@dataclass
class StateTransitionEvent:
    """Event representing a job state transition."""

    job_id: str
    """Job ID."""

    from_state: JobStatus
    """Previous state."""

    to_state: JobStatus
    """New state."""

    timestamp: datetime = field(default_factory=now_utc)
    """When transition occurred."""

    reason: str = ""
    """Reason for transition."""

    details: Dict[str, Any] = field(default_factory=dict)
    """Additional details."""


# ============================================================
# STATE TRANSITION GUARD
# ============================================================

class TransitionGuard:
    """
    Guard for job state transitions.

    Ensures transitions are valid and provides reason for denial.
    """

    @staticmethod
    def can_transition(
        from_state: JobStatus,
        to_state: JobStatus,
        model_type: Optional[ModelType] = None,
    ) -> tuple[bool, str]:
        """
        Check if transition is allowed.

        Args:
            from_state: Current state
            to_state: Target state
            model_type: When given, the pipeline of this model type
                must contain the target stage

        Returns:
            Tuple of (allowed, reason)
        """
        valid_targets = VALID_TRANSITIONS.get(from_state, set())

        if to_state not in valid_targets:
            if from_state.is_terminal():
                return False, f"Cannot transition from terminal state {from_state.value}"
            return False, f"Invalid transition: {from_state.value} -> {to_state.value}"

        if model_type is not None and to_state not in _ABORT and to_state != JobStatus.COMPLETED:
            expected = _next_in_pipeline(from_state, model_type)
            if to_state != expected:
                return False, (
                    f"Invalid transition for {ModelType(model_type).value}: "
                    f"{from_state.value} -> {to_state.value}"
                )

        return True, "Valid transition"


def _next_in_pipeline(from_state: JobStatus, model_type: ModelType) -> Optional[JobStatus]:
    statuses = [JobStatus.PENDING] + [stage.job_status for stage in pipeline_for(model_type)]
    if from_state not in statuses:
        return None
    index = statuses.index(from_state)
    if index + 1 < len(statuses):
        return statuses[index + 1]
    return JobStatus.COMPLETED


# ============================================================
# STATE MACHINE
# ============================================================

class JobStateMachine:
    """
    Applies guarded transitions to training jobs.

    Keeps a bounded history of transition events for debugging.
    """

    def __init__(self, max_history: int = 1000):
        self._history: List[StateTransitionEvent] = []
        self._max_history = max_history

    def transition(
        self,
        job: TrainingJob,
        to_state: JobStatus,
        reason: str = "",
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransitionEvent:
        """
        Move a job to a new state.

        Raises:
            StateError: If the guard rejects the transition
        """
        from_state = job.status
        allowed, why = TransitionGuard.can_transition(from_state, to_state, job.model_type)
        if not allowed:
            logger.warning(f"Rejected transition for {job.job_id}: {why}")
            raise StateError(why, current_state=from_state.value, subject_id=job.job_id)

        job.status = to_state
        event = StateTransitionEvent(
            job_id=job.job_id,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            details=details or {},
        )
        self._record(event)

        logger.debug(
            f"Job {job.job_id}: {from_state.value} -> {to_state.value}"
            + (f" ({reason})" if reason else "")
        )
        return event

    def history(self, job_id: Optional[str] = None) -> List[StateTransitionEvent]:
        """Transition events, optionally for one job."""
        if job_id is None:
            return list(self._history)
        return [e for e in self._history if e.job_id == job_id]

    def _record(self, event: StateTransitionEvent) -> None:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]


__all__ = [
    "VALID_TRANSITIONS",
    "StateTransitionEvent",
    "TransitionGuard",
    "JobStateMachine",
]
