"""
Training Engine - Curriculum Gate.

============================================================
PURPOSE
============================================================
Decides whether an RL training job met the target of its
curriculum level.

- Static, read-only catalog of levels and their criteria
- Pure evaluation: never mutates the job or the catalog
- The orchestrator decides what to do with the result

TARGET MET WHEN:
    win_ratio >= target.win_ratio
    trades    >= target.min_trades
    drawdown  <= target.max_drawdown

The optional sharpe_ratio target is reported but does not
take part in the decision.

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from core.clock import now_utc

from .types import (
    CurriculumCriteria,
    CurriculumCriteriaStatus,
    CurriculumLevel,
    CurriculumScheduler,
    CurriculumState,
    TrainingJob,
)


logger = logging.getLogger(__name__)


# ============================================================
# CATALOG
# ============================================================

@dataclass(frozen=True)
class CurriculumStage:
    """One level of the curriculum and its target criteria."""

    level: CurriculumLevel
    criteria: CurriculumCriteria
    description: str = ""


CURRICULUM_CATALOG: Tuple[CurriculumStage, ...] = (
    CurriculumStage(
        level=CurriculumLevel.SIMPLE,
        criteria=CurriculumCriteria(win_ratio=0.55, min_trades=50, max_drawdown=0.15),
        description="Single asset, trending regime",
    ),
    CurriculumStage(
        level=CurriculumLevel.VOLATILE,
        criteria=CurriculumCriteria(
            win_ratio=0.52, min_trades=100, max_drawdown=0.20, sharpe_ratio=1.0
        ),
        description="Single asset, high-volatility regime",
    ),
    CurriculumStage(
        level=CurriculumLevel.MULTI_ASSET,
        criteria=CurriculumCriteria(
            win_ratio=0.50, min_trades=200, max_drawdown=0.25, sharpe_ratio=1.2
        ),
        description="Portfolio of assets, mixed regimes",
    ),
)


def get_stage(level: CurriculumLevel) -> CurriculumStage:
    """Catalog entry for a level."""
    level = CurriculumLevel(level)
    for stage in CURRICULUM_CATALOG:
        if stage.level == level:
            return stage
    raise KeyError(f"No curriculum stage for level {level.value}")


def initial_curriculum_state(level: CurriculumLevel) -> CurriculumState:
    """Fresh curriculum sub-state for a new job."""
    stage = get_stage(level)
    return CurriculumState(
        level=stage.level,
        criteria=CurriculumCriteriaStatus(target=stage.criteria),
        scheduler=CurriculumScheduler(current_level=stage.level),
    )


# ============================================================
# GATE
# ============================================================

@dataclass(frozen=True)
class GateResult:
    """Outcome of one gate evaluation."""

    target_met: bool
    next_level: Optional[CurriculumLevel]


class CurriculumGate:
    """
    Compares a job's measured curriculum values with its target.

    A job with no measurements yet never meets its target.
    """

    def evaluate(self, job: TrainingJob) -> GateResult:
        stage = get_stage(job.curriculum_level)
        target = stage.criteria

        measured = job.curriculum.criteria if job.curriculum else None
        if measured is None or not measured.measured:
            return GateResult(target_met=False, next_level=None)

        target_met = (
            measured.win_ratio >= target.win_ratio
            and measured.trades >= target.min_trades
            and measured.drawdown <= target.max_drawdown
        )

        next_level = stage.level.next_level() if target_met else None
        return GateResult(target_met=target_met, next_level=next_level)


def apply_gate_result(state: CurriculumState, result: GateResult) -> None:
    """
    Record a gate result on a job's curriculum sub-state.

    The level itself is left alone.
    """
    state.criteria.passed = result.target_met
    state.scheduler.next_level = result.next_level
    state.scheduler.evaluated_at = now_utc()
    state.scheduler.evaluations += 1


__all__ = [
    "CurriculumStage",
    "CURRICULUM_CATALOG",
    "get_stage",
    "initial_curriculum_state",
    "GateResult",
    "CurriculumGate",
    "apply_gate_result",
]
