"""
Training Engine - Stage Runners.

============================================================
RESPONSIBILITY
============================================================
Executes one pipeline stage of a training job.

- A runner streams StageUpdate items while it works
- The orchestrator applies each update as one tick
- Runners never touch the job store or the job's status
- Real training backends plug in by implementing StageRunner

SimulatedStageRunner is the reference backend. It paces
itself with asyncio.sleep and reports randomized metrics.

============================================================
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional

from .config import OrchestratorConfig
from .curriculum import get_stage
from .types import CurriculumMeasurement, PipelineStage, TrainingJob


logger = logging.getLogger(__name__)

FEATURES = ("rsi", "macd", "volume", "sentiment", "funding_rate", "volatility")


# ============================================================
# STAGE UPDATE
# ============================================================

@dataclass
class StageUpdate:
    """One progress report from a running stage."""

    progress: float
    """Stage progress, 0-100."""

    message: Optional[str] = None
    """Appended to the job log when set."""

    metrics: Dict[str, Any] = field(default_factory=dict)
    """Merged into the job's metrics snapshot."""

    curriculum: Optional[CurriculumMeasurement] = None
    """Measured curriculum values, reported during rl_training."""


# ============================================================
# STAGE RUNNER INTERFACE
# ============================================================

class StageRunner(ABC):
    """Executor for a single pipeline stage."""

    def __init__(self, stage: PipelineStage):
        self.stage = stage

    @abstractmethod
    def run(self, job: TrainingJob) -> AsyncIterator[StageUpdate]:
        """
        Run the stage for a job.

        Implemented as an async generator. The job passed in is
        a copy; changes made to it are discarded.
        """


# ============================================================
# SIMULATED RUNNER
# ============================================================

class SimulatedStageRunner(StageRunner):
    """
    Timer-driven stand-in for a training backend.
    """

    def __init__(
        self,
        stage: PipelineStage,
        steps: int = 5,
        step_delay_seconds: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        super().__init__(stage)
        self.steps = max(1, steps)
        self.step_delay_seconds = step_delay_seconds
        self._rng = rng or random.Random()

    async def run(self, job: TrainingJob) -> AsyncIterator[StageUpdate]:
        for step in range(1, self.steps + 1):
            await asyncio.sleep(self.step_delay_seconds)
            fraction = step / self.steps
            yield self._update(job, step, fraction)

    def _update(self, job: TrainingJob, step: int, fraction: float) -> StageUpdate:
        progress = round(fraction * 100.0, 2)
        handler = {
            PipelineStage.DATA_PREP: self._data_prep,
            PipelineStage.FORECASTING: self._forecasting,
            PipelineStage.RL_TRAINING: self._rl_training,
            PipelineStage.BACKTESTING: self._backtesting,
            PipelineStage.VALIDATION: self._validation,
        }[self.stage]
        return handler(job, step, progress, fraction)

    def _data_prep(self, job, step, progress, fraction) -> StageUpdate:
        bars_per_day = _bars_per_day(job.interval)
        samples = int(job.lookback_days * bars_per_day * len(job.coins) * fraction)
        return StageUpdate(
            progress=progress,
            message=f"Prepared {samples} samples for {','.join(job.coins)} "
                    f"(dataset {job.dataset_version})",
            metrics={"samples": samples},
        )

    def _forecasting(self, job, step, progress, fraction) -> StageUpdate:
        loss = round(1.0 / (1.0 + 3.0 * fraction) + self._rng.uniform(0.0, 0.05), 4)
        accuracy = round(min(0.99, 0.5 + 0.35 * fraction + self._rng.uniform(-0.02, 0.02)), 4)
        return StageUpdate(
            progress=progress,
            message=f"Epoch {step}/{self.steps}: loss={loss} accuracy={accuracy}",
            metrics={"loss": loss, "accuracy": accuracy},
        )

    def _rl_training(self, job, step, progress, fraction) -> StageUpdate:
        target = get_stage(job.curriculum_level).criteria
        measurement = CurriculumMeasurement(
            win_ratio=round(self._rng.uniform(0.45, 0.70), 4),
            trades=int(target.min_trades * 1.5 * fraction),
            drawdown=round(self._rng.uniform(0.05, 0.25), 4),
            sharpe_ratio=round(self._rng.uniform(0.5, 2.5), 3),
        )
        reward = round(self._rng.uniform(-50.0, 150.0) * fraction, 2)
        return StageUpdate(
            progress=progress,
            message=f"Episode batch {step}/{self.steps}: reward={reward} "
                    f"win_ratio={measurement.win_ratio} trades={measurement.trades}",
            metrics={
                "episode_reward": reward,
                "win_rate": measurement.win_ratio,
                "total_trades": measurement.trades,
                "max_drawdown": measurement.drawdown,
                "sharpe_ratio": measurement.sharpe_ratio,
            },
            curriculum=measurement,
        )

    def _backtesting(self, job, step, progress, fraction) -> StageUpdate:
        metrics = {
            "sharpe_ratio": round(self._rng.uniform(0.8, 2.5), 3),
            "max_drawdown": round(self._rng.uniform(0.05, 0.20), 4),
            "win_rate": round(self._rng.uniform(0.50, 0.72), 4),
            "total_trades": int(self._rng.randint(80, 400) * fraction) + 1,
        }
        return StageUpdate(
            progress=progress,
            message=f"Backtest window {step}/{self.steps}: sharpe={metrics['sharpe_ratio']}",
            metrics=metrics,
        )

    def _validation(self, job, step, progress, fraction) -> StageUpdate:
        metrics: Dict[str, Any] = {
            "accuracy": round(self._rng.uniform(0.70, 0.92), 4),
        }
        if step == self.steps:
            weights = [self._rng.random() for _ in FEATURES]
            total = sum(weights) or 1.0
            metrics["feature_importance"] = {
                name: round(weight / total, 4) for name, weight in zip(FEATURES, weights)
            }
        return StageUpdate(
            progress=progress,
            message=f"Validation fold {step}/{self.steps}: accuracy={metrics['accuracy']}",
            metrics=metrics,
        )


def _bars_per_day(interval: str) -> float:
    unit = interval[-1]
    amount = int(interval[:-1] or 1)
    minutes = {"m": 1, "h": 60, "d": 1440, "w": 10080}[unit] * amount
    return 1440.0 / minutes


# ============================================================
# FACTORY
# ============================================================

def build_default_runners(config: OrchestratorConfig) -> Dict[PipelineStage, StageRunner]:
    """One simulated runner per pipeline stage, sharing a seeded RNG."""
    rng = random.Random(config.random_seed)
    return {
        stage: SimulatedStageRunner(
            stage,
            steps=config.steps_per_stage,
            step_delay_seconds=config.step_delay_seconds,
            rng=rng,
        )
        for stage in PipelineStage.ordered()
    }


__all__ = [
    "StageUpdate",
    "StageRunner",
    "SimulatedStageRunner",
    "build_default_runners",
]
