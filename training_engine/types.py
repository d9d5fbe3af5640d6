"""
Training Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for training jobs.

- Enumerations for model types, job states, pipeline stages
- TrainingJob record and its nested sub-state
- Stage weights and overall progress computation

Every dataclass round-trips through to_dict()/from_dict()
so the SQL store and the snapshot stream share one format.

============================================================
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.clock import from_iso8601, to_iso8601


# ============================================================
# SUBMISSION ENUMS
# ============================================================

class ModelType(str, Enum):
    """Kind of model a training job produces."""

    FORECAST = "forecast"
    RL_AGENT = "rl_agent"
    SENTIMENT = "sentiment"
    ENSEMBLE = "ensemble"


class CurriculumLevel(str, Enum):
    """Difficulty tier, in progression order."""

    SIMPLE = "simple"
    VOLATILE = "volatile"
    MULTI_ASSET = "multi_asset"

    @classmethod
    def ordered(cls) -> List["CurriculumLevel"]:
        return [cls.SIMPLE, cls.VOLATILE, cls.MULTI_ASSET]

    def next_level(self) -> Optional["CurriculumLevel"]:
        """Level that follows this one, or None at the top."""
        levels = CurriculumLevel.ordered()
        index = levels.index(self)
        if index + 1 < len(levels):
            return levels[index + 1]
        return None


class RiskProfile(str, Enum):
    """Risk appetite the trained model is tuned for."""

    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


# ============================================================
# JOB LIFECYCLE STATES
# ============================================================

class JobStatus(str, Enum):
    """
    Training job lifecycle state.

    State Machine:

        PENDING
           │
           ▼
        DATA_PREP
           │
           ├──► FORECASTING ─┐   (skipped for sentiment)
           │                 ▼
           └──────────► RL_TRAINING
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
    - FAILED (internal error)
    """

    PENDING = "pending"
    DATA_PREP = "data_prep"
    FORECASTING = "forecasting"
    RL_TRAINING = "rl_training"
    BACKTESTING = "backtesting"
    VALIDATION = "validation"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }

    def is_active(self) -> bool:
        """Check if the job still occupies the active-job slot."""
        return not self.is_terminal()


class PipelineStage(Enum):
    """
    Pipeline stages in strict order.

    Value: (order, stage_id, label, weight). Weights sum to 100
    and feed the overall progress computation.
    """

    DATA_PREP = (1, "data_prep", "Data Preparation", 15)
    FORECASTING = (2, "forecasting", "Forecasting", 20)
    RL_TRAINING = (3, "rl_training", "RL Training", 35)
    BACKTESTING = (4, "backtesting", "Backtesting", 20)
    VALIDATION = (5, "validation", "Validation", 10)

    def __init__(self, order: int, stage_id: str, label: str, weight: int):
        self._order = order
        self._stage_id = stage_id
        self._label = label
        self._weight = weight

    @property
    def order(self) -> int:
        return self._order

    @property
    def stage_id(self) -> str:
        return self._stage_id

    @property
    def label(self) -> str:
        return self._label

    @property
    def weight(self) -> int:
        return self._weight

    @property
    def job_status(self) -> JobStatus:
        """Job status while this stage is running."""
        return JobStatus(self._stage_id)

    @classmethod
    def from_id(cls, stage_id: str) -> "PipelineStage":
        for stage in cls:
            if stage.stage_id == stage_id:
                return stage
        raise ValueError(f"Unknown pipeline stage: {stage_id}")

    @classmethod
    def ordered(cls) -> List["PipelineStage"]:
        return sorted(cls, key=lambda s: s.order)


STAGE_WEIGHTS: Dict[str, int] = {stage.stage_id: stage.weight for stage in PipelineStage}


def pipeline_for(model_type: ModelType) -> List[PipelineStage]:
    """Ordered stages a job of this model type runs through."""
    stages = PipelineStage.ordered()
    if ModelType(model_type) == ModelType.SENTIMENT:
        stages = [s for s in stages if s != PipelineStage.FORECASTING]
    return stages


class StageStatus(str, Enum):
    """Status of one stage entry inside a job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ============================================================
# JOB SUB-STATE
# ============================================================

@dataclass
class StageState:
    """Per-stage progress record."""

    status: StageStatus = StageStatus.PENDING
    progress: float = 0.0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageState":
        return cls(
            status=StageStatus(data.get("status", StageStatus.PENDING.value)),
            progress=float(data.get("progress", 0.0)),
            started_at=from_iso8601(data.get("started_at")),
            completed_at=from_iso8601(data.get("completed_at")),
            duration_seconds=data.get("duration_seconds"),
        )


@dataclass
class JobLogEntry:
    """One line of a job's append-only log."""

    timestamp: datetime
    message: str
    level: str = "info"
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": to_iso8601(self.timestamp),
            "level": self.level,
            "stage": self.stage,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobLogEntry":
        return cls(
            timestamp=from_iso8601(data["timestamp"]),
            message=data["message"],
            level=data.get("level", "info"),
            stage=data.get("stage"),
        )


@dataclass
class JobMetrics:
    """Performance snapshot accumulated while the job runs."""

    sharpe_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None
    win_rate: Optional[float] = None
    accuracy: Optional[float] = None
    total_trades: Optional[int] = None
    loss: Optional[float] = None
    feature_importance: Dict[str, float] = field(default_factory=dict)
    extra: Dict[str, float] = field(default_factory=dict)

    _KNOWN = ("sharpe_ratio", "max_drawdown", "win_rate", "accuracy", "total_trades", "loss")

    def merge(self, values: Dict[str, Any]) -> None:
        """Overlay stage-reported values onto the snapshot."""
        for key, value in values.items():
            if key in self._KNOWN:
                setattr(self, key, value)
            elif key == "feature_importance":
                self.feature_importance = dict(value)
            else:
                self.extra[key] = value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "win_rate": self.win_rate,
            "accuracy": self.accuracy,
            "total_trades": self.total_trades,
            "loss": self.loss,
            "feature_importance": dict(self.feature_importance),
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobMetrics":
        return cls(
            sharpe_ratio=data.get("sharpe_ratio"),
            max_drawdown=data.get("max_drawdown"),
            win_rate=data.get("win_rate"),
            accuracy=data.get("accuracy"),
            total_trades=data.get("total_trades"),
            loss=data.get("loss"),
            feature_importance=dict(data.get("feature_importance") or {}),
            extra=dict(data.get("extra") or {}),
        )


@dataclass
class ExperimentInfo:
    """Experiment-tracking identifiers."""

    experiment_id: str
    run_id: str
    tracking_uri: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "run_id": self.run_id,
            "tracking_uri": self.tracking_uri,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentInfo":
        return cls(
            experiment_id=data["experiment_id"],
            run_id=data["run_id"],
            tracking_uri=data.get("tracking_uri"),
        )


# ============================================================
# CURRICULUM SUB-STATE
# ============================================================

@dataclass(frozen=True)
class CurriculumCriteria:
    """Thresholds a curriculum level expects."""

    win_ratio: float
    min_trades: int
    max_drawdown: float
    sharpe_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "win_ratio": self.win_ratio,
            "min_trades": self.min_trades,
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": self.sharpe_ratio,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurriculumCriteria":
        return cls(
            win_ratio=data["win_ratio"],
            min_trades=data["min_trades"],
            max_drawdown=data["max_drawdown"],
            sharpe_ratio=data.get("sharpe_ratio"),
        )


@dataclass
class CurriculumMeasurement:
    """Values measured by the RL training backend."""

    win_ratio: float
    trades: int
    drawdown: float
    sharpe_ratio: Optional[float] = None


@dataclass
class CurriculumCriteriaStatus:
    """Target thresholds next to the latest measured values."""

    target: CurriculumCriteria
    win_ratio: Optional[float] = None
    trades: Optional[int] = None
    drawdown: Optional[float] = None
    sharpe_ratio: Optional[float] = None
    passed: bool = False

    @property
    def measured(self) -> bool:
        return self.win_ratio is not None and self.trades is not None and self.drawdown is not None

    def record(self, measurement: CurriculumMeasurement) -> None:
        self.win_ratio = measurement.win_ratio
        self.trades = measurement.trades
        self.drawdown = measurement.drawdown
        self.sharpe_ratio = measurement.sharpe_ratio

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target.to_dict(),
            "win_ratio": self.win_ratio,
            "trades": self.trades,
            "drawdown": self.drawdown,
            "sharpe_ratio": self.sharpe_ratio,
            "passed": self.passed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurriculumCriteriaStatus":
        return cls(
            target=CurriculumCriteria.from_dict(data["target"]),
            win_ratio=data.get("win_ratio"),
            trades=data.get("trades"),
            drawdown=data.get("drawdown"),
            sharpe_ratio=data.get("sharpe_ratio"),
            passed=bool(data.get("passed", False)),
        )


@dataclass
class CurriculumScheduler:
    """Advisory scheduling state; never changes the job's level itself."""

    current_level: CurriculumLevel
    next_level: Optional[CurriculumLevel] = None
    evaluated_at: Optional[datetime] = None
    evaluations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_level": self.current_level.value,
            "next_level": self.next_level.value if self.next_level else None,
            "evaluated_at": to_iso8601(self.evaluated_at),
            "evaluations": self.evaluations,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurriculumScheduler":
        next_level = data.get("next_level")
        return cls(
            current_level=CurriculumLevel(data["current_level"]),
            next_level=CurriculumLevel(next_level) if next_level else None,
            evaluated_at=from_iso8601(data.get("evaluated_at")),
            evaluations=int(data.get("evaluations", 0)),
        )


@dataclass
class CurriculumState:
    """Curriculum sub-state attached to a job."""

    level: CurriculumLevel
    criteria: CurriculumCriteriaStatus
    scheduler: CurriculumScheduler

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "criteria": self.criteria.to_dict(),
            "scheduler": self.scheduler.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CurriculumState":
        return cls(
            level=CurriculumLevel(data["level"]),
            criteria=CurriculumCriteriaStatus.from_dict(data["criteria"]),
            scheduler=CurriculumScheduler.from_dict(data["scheduler"]),
        )


# ============================================================
# TRAINING JOB
# ============================================================

@dataclass
class TrainingJob:
    """
    A multi-stage training job.

    Mutated only by the orchestrator's progression loop and by
    cancel(); immutable once status is terminal.
    """

    job_id: str
    model_type: ModelType
    coins: List[str]
    lookback_days: int
    algorithm: str
    interval: str = "1h"
    architecture: Dict[str, Any] = field(default_factory=dict)
    environment_config: Dict[str, Any] = field(default_factory=dict)
    tune_flag: bool = False
    risk_profile: RiskProfile = RiskProfile.MODERATE
    dataset_version: str = "latest"
    curriculum_level: CurriculumLevel = CurriculumLevel.SIMPLE
    callback_url: Optional[str] = None

    status: JobStatus = JobStatus.PENDING
    current_stage: str = "Queued"
    progress: float = 0.0
    stages: Dict[str, StageState] = field(default_factory=dict)
    logs: List[JobLogEntry] = field(default_factory=list)
    metrics: Optional[JobMetrics] = None
    experiment: Optional[ExperimentInfo] = None
    curriculum: Optional[CurriculumState] = None
    model_id: Optional[str] = None

    submitted_by: str = "unknown"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def pipeline(self) -> List[PipelineStage]:
        return pipeline_for(self.model_type)

    def add_log(
        self,
        timestamp: datetime,
        message: str,
        level: str = "info",
        stage: Optional[str] = None,
    ) -> JobLogEntry:
        entry = JobLogEntry(timestamp=timestamp, message=message, level=level, stage=stage)
        self.logs.append(entry)
        return entry

    def copy(self) -> "TrainingJob":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "model_type": self.model_type.value,
            "coins": list(self.coins),
            "lookback_days": self.lookback_days,
            "interval": self.interval,
            "algorithm": self.algorithm,
            "architecture": copy.deepcopy(self.architecture),
            "environment_config": copy.deepcopy(self.environment_config),
            "tune_flag": self.tune_flag,
            "risk_profile": self.risk_profile.value,
            "dataset_version": self.dataset_version,
            "curriculum_level": self.curriculum_level.value,
            "callback_url": self.callback_url,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "progress": self.progress,
            "stages": {name: state.to_dict() for name, state in self.stages.items()},
            "logs": [entry.to_dict() for entry in self.logs],
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "experiment": self.experiment.to_dict() if self.experiment else None,
            "curriculum": self.curriculum.to_dict() if self.curriculum else None,
            "model_id": self.model_id,
            "submitted_by": self.submitted_by,
            "start_time": to_iso8601(self.start_time),
            "end_time": to_iso8601(self.end_time),
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrainingJob":
        return cls(
            job_id=data["job_id"],
            model_type=ModelType(data["model_type"]),
            coins=list(data["coins"]),
            lookback_days=int(data["lookback_days"]),
            interval=data.get("interval", "1h"),
            algorithm=data["algorithm"],
            architecture=dict(data.get("architecture") or {}),
            environment_config=dict(data.get("environment_config") or {}),
            tune_flag=bool(data.get("tune_flag", False)),
            risk_profile=RiskProfile(data.get("risk_profile", RiskProfile.MODERATE.value)),
            dataset_version=data.get("dataset_version", "latest"),
            curriculum_level=CurriculumLevel(data.get("curriculum_level", CurriculumLevel.SIMPLE.value)),
            callback_url=data.get("callback_url"),
            status=JobStatus(data["status"]),
            current_stage=data.get("current_stage", ""),
            progress=float(data.get("progress", 0.0)),
            stages={
                name: StageState.from_dict(state)
                for name, state in (data.get("stages") or {}).items()
            },
            logs=[JobLogEntry.from_dict(entry) for entry in data.get("logs") or []],
            metrics=JobMetrics.from_dict(data["metrics"]) if data.get("metrics") else None,
            experiment=ExperimentInfo.from_dict(data["experiment"]) if data.get("experiment") else None,
            curriculum=CurriculumState.from_dict(data["curriculum"]) if data.get("curriculum") else None,
            model_id=data.get("model_id"),
            submitted_by=data.get("submitted_by", "unknown"),
            start_time=from_iso8601(data.get("start_time")),
            end_time=from_iso8601(data.get("end_time")),
            error=data.get("error"),
        )


# ============================================================
# PROGRESS
# ============================================================

def compute_overall_progress(job: TrainingJob) -> float:
    """
    Weighted sum of stage progress over the job's own pipeline.

    Skipped stages are not part of the pipeline, so the result
    is normalised to 0-100 regardless of model type.
    """
    pipeline = job.pipeline
    total_weight = sum(stage.weight for stage in pipeline)
    if total_weight == 0:
        return 0.0

    weighted = 0.0
    for stage in pipeline:
        state = job.stages.get(stage.stage_id)
        if state is None:
            continue
        weighted += stage.weight * (state.progress / 100.0)

    return round(min(100.0, weighted * 100.0 / total_weight), 2)


__all__ = [
    "ModelType",
    "CurriculumLevel",
    "RiskProfile",
    "JobStatus",
    "PipelineStage",
    "STAGE_WEIGHTS",
    "pipeline_for",
    "StageStatus",
    "StageState",
    "JobLogEntry",
    "JobMetrics",
    "ExperimentInfo",
    "CurriculumCriteria",
    "CurriculumMeasurement",
    "CurriculumCriteriaStatus",
    "CurriculumScheduler",
    "CurriculumState",
    "TrainingJob",
    "compute_overall_progress",
]
