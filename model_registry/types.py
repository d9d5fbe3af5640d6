"""
Model Registry - Types.

============================================================
PURPOSE
============================================================
Type definitions for registered models and shadow tests.

MODEL STATE MACHINE:

    TRAINED ◄──────► SHADOW
       │
       ▼  deploy / promote
    DEPLOYED
       │
       ▼  another model deployed, or rollback source
    ARCHIVED
       │
       ▼  rollback target only
    DEPLOYED

INVARIANTS:
- At most one model is DEPLOYED
- Models are never deleted, superseded models are archived

============================================================
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

from core.clock import from_iso8601, to_iso8601
from training_engine.types import ExperimentInfo, ModelType, RiskProfile


# ============================================================
# ENUMS
# ============================================================

class ModelStatus(str, Enum):
    """Lifecycle status of a registered model."""

    TRAINED = "trained"
    DEPLOYED = "deployed"
    SHADOW = "shadow"
    ARCHIVED = "archived"


class ShadowTestStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


# Valid transitions from each status
MODEL_TRANSITIONS: Dict[ModelStatus, Set[ModelStatus]] = {
    ModelStatus.TRAINED: {ModelStatus.DEPLOYED, ModelStatus.SHADOW},
    ModelStatus.SHADOW: {ModelStatus.TRAINED},
    ModelStatus.DEPLOYED: {ModelStatus.ARCHIVED},
    # Only reachable through rollback
    ModelStatus.ARCHIVED: {ModelStatus.DEPLOYED},
}


def can_transition(from_status: ModelStatus, to_status: ModelStatus) -> bool:
    return to_status in MODEL_TRANSITIONS.get(from_status, set())


# ============================================================
# MODEL SUB-RECORDS
# ============================================================

@dataclass
class ModelPerformance:
    """Final performance of the training run that produced the model."""

    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    accuracy: float = 0.0
    total_trades: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "win_rate": self.win_rate,
            "accuracy": self.accuracy,
            "total_trades": self.total_trades,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelPerformance":
        return cls(
            sharpe_ratio=float(data.get("sharpe_ratio", 0.0)),
            max_drawdown=float(data.get("max_drawdown", 0.0)),
            win_rate=float(data.get("win_rate", 0.0)),
            accuracy=float(data.get("accuracy", 0.0)),
            total_trades=int(data.get("total_trades", 0)),
        )


@dataclass
class AlgorithmInfo:
    """How the model was trained."""

    algorithm: str
    architecture: Dict[str, Any] = field(default_factory=dict)
    tune_flag: bool = False
    interval: str = "1h"
    lookback_days: int = 0
    coins: List[str] = field(default_factory=list)
    dataset_version: str = "latest"
    curriculum_level: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "architecture": copy.deepcopy(self.architecture),
            "tune_flag": self.tune_flag,
            "interval": self.interval,
            "lookback_days": self.lookback_days,
            "coins": list(self.coins),
            "dataset_version": self.dataset_version,
            "curriculum_level": self.curriculum_level,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlgorithmInfo":
        return cls(
            algorithm=data["algorithm"],
            architecture=dict(data.get("architecture") or {}),
            tune_flag=bool(data.get("tune_flag", False)),
            interval=data.get("interval", "1h"),
            lookback_days=int(data.get("lookback_days", 0)),
            coins=list(data.get("coins") or []),
            dataset_version=data.get("dataset_version", "latest"),
            curriculum_level=data.get("curriculum_level"),
        )


@dataclass
class Explainability:
    """Ranked feature importances, highest first."""

    method: str = "permutation_importance"
    feature_importance: List[Tuple[str, float]] = field(default_factory=list)

    @classmethod
    def from_importances(cls, importances: Dict[str, float]) -> "Explainability":
        ranked = sorted(importances.items(), key=lambda item: item[1], reverse=True)
        return cls(feature_importance=[(name, float(value)) for name, value in ranked])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "feature_importance": [
                {"feature": name, "importance": value}
                for name, value in self.feature_importance
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Explainability":
        return cls(
            method=data.get("method", "permutation_importance"),
            feature_importance=[
                (item["feature"], float(item["importance"]))
                for item in data.get("feature_importance") or []
            ],
        )


# ============================================================
# MODEL
# ============================================================

@dataclass
class Model:
    """A trained model tracked by the registry."""

    model_id: str
    name: str
    version: str
    model_type: ModelType
    status: ModelStatus
    performance: ModelPerformance
    algorithm_info: AlgorithmInfo
    created_by: str
    created_at: datetime
    risk_profile: RiskProfile = RiskProfile.MODERATE
    experiment: Optional[ExperimentInfo] = None
    explainability: Explainability = field(default_factory=Explainability)
    source_job_id: Optional[str] = None
    deployed_at: Optional[datetime] = None
    shadow_start: Optional[datetime] = None
    shadow_end: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    def copy(self) -> "Model":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_id": self.model_id,
            "name": self.name,
            "version": self.version,
            "model_type": self.model_type.value,
            "status": self.status.value,
            "performance": self.performance.to_dict(),
            "algorithm_info": self.algorithm_info.to_dict(),
            "risk_profile": self.risk_profile.value,
            "experiment": self.experiment.to_dict() if self.experiment else None,
            "explainability": self.explainability.to_dict(),
            "source_job_id": self.source_job_id,
            "created_by": self.created_by,
            "created_at": to_iso8601(self.created_at),
            "deployed_at": to_iso8601(self.deployed_at),
            "shadow_start": to_iso8601(self.shadow_start),
            "shadow_end": to_iso8601(self.shadow_end),
            "archived_at": to_iso8601(self.archived_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Model":
        return cls(
            model_id=data["model_id"],
            name=data["name"],
            version=data["version"],
            model_type=ModelType(data["model_type"]),
            status=ModelStatus(data["status"]),
            performance=ModelPerformance.from_dict(data.get("performance") or {}),
            algorithm_info=AlgorithmInfo.from_dict(data["algorithm_info"]),
            risk_profile=RiskProfile(data.get("risk_profile", RiskProfile.MODERATE.value)),
            experiment=ExperimentInfo.from_dict(data["experiment"]) if data.get("experiment") else None,
            explainability=Explainability.from_dict(data.get("explainability") or {}),
            source_job_id=data.get("source_job_id"),
            created_by=data["created_by"],
            created_at=from_iso8601(data["created_at"]),
            deployed_at=from_iso8601(data.get("deployed_at")),
            shadow_start=from_iso8601(data.get("shadow_start")),
            shadow_end=from_iso8601(data.get("shadow_end")),
            archived_at=from_iso8601(data.get("archived_at")),
        )


# ============================================================
# SHADOW TEST
# ============================================================

@dataclass
class ShadowTestResults:
    """Outcome reported by the shadow evaluation."""

    performance: float
    trades: int
    pnl: float

    def to_dict(self) -> Dict[str, Any]:
        return {"performance": self.performance, "trades": self.trades, "pnl": self.pnl}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShadowTestResults":
        return cls(
            performance=float(data["performance"]),
            trades=int(data["trades"]),
            pnl=float(data["pnl"]),
        )


@dataclass
class ShadowTest:
    """A shadow evaluation run of one model."""

    shadow_id: str
    model_id: str
    start_time: datetime
    status: ShadowTestStatus = ShadowTestStatus.RUNNING
    end_time: Optional[datetime] = None
    results: Optional[ShadowTestResults] = None
    started_by: Optional[str] = None
    stopped_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shadow_id": self.shadow_id,
            "model_id": self.model_id,
            "start_time": to_iso8601(self.start_time),
            "end_time": to_iso8601(self.end_time),
            "status": self.status.value,
            "results": self.results.to_dict() if self.results else None,
            "started_by": self.started_by,
            "stopped_by": self.stopped_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShadowTest":
        return cls(
            shadow_id=data["shadow_id"],
            model_id=data["model_id"],
            start_time=from_iso8601(data["start_time"]),
            end_time=from_iso8601(data.get("end_time")),
            status=ShadowTestStatus(data["status"]),
            results=ShadowTestResults.from_dict(data["results"]) if data.get("results") else None,
            started_by=data.get("started_by"),
            stopped_by=data.get("stopped_by"),
        )


# ============================================================
# FILTER
# ============================================================

@dataclass
class ModelFilter:
    """Query filter for list_models()."""

    statuses: Optional[FrozenSet[ModelStatus]] = None
    model_type: Optional[ModelType] = None
    name: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, model: Model) -> bool:
        if self.statuses is not None and model.status not in self.statuses:
            return False
        if self.model_type is not None and model.model_type != ModelType(self.model_type):
            return False
        if self.name is not None and model.name != self.name:
            return False
        return True


__all__ = [
    "ModelStatus",
    "ShadowTestStatus",
    "MODEL_TRANSITIONS",
    "can_transition",
    "ModelPerformance",
    "AlgorithmInfo",
    "Explainability",
    "Model",
    "ShadowTestResults",
    "ShadowTest",
    "ModelFilter",
]
