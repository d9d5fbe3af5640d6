"""
Training Engine Package.

============================================================
TRAINING JOB ORCHESTRATION
============================================================

Validates training submissions and drives each job through
its pipeline: data_prep, forecasting, rl_training,
backtesting, validation. At most one job is active at any
time. A completed job registers a model with the model
registry.

Components:
- types: TrainingJob and its sub-state, pipeline stages
- schemas: Submission validation
- state_machine: Guarded job status transitions
- store: In-memory and SQL job stores
- stages: Stage runners, simulated backend
- curriculum: Curriculum catalog and gate
- callbacks: Completion callback dispatch
- orchestrator: TrainingOrchestrator

Wiring with a model registry lives in training_engine.bootstrap.

============================================================
"""

from .callbacks import CallbackDispatcher
from .config import CurriculumGateMode, LogFormat, OrchestratorConfig, StoreBackend
from .curriculum import (
    CURRICULUM_CATALOG,
    CurriculumGate,
    CurriculumStage,
    GateResult,
    get_stage,
)
from .orchestrator import JobSnapshot, TrainingOrchestrator
from .schemas import TrainingJobRequest, parse_submission
from .stages import SimulatedStageRunner, StageRunner, StageUpdate, build_default_runners
from .state_machine import JobStateMachine, TransitionGuard
from .store import InMemoryJobStore, JobFilter, JobStore, SqlJobStore
from .types import (
    CurriculumLevel,
    JobMetrics,
    JobStatus,
    ModelType,
    PipelineStage,
    RiskProfile,
    StageStatus,
    TrainingJob,
    compute_overall_progress,
    pipeline_for,
)

__all__ = [
    "CallbackDispatcher",
    "CurriculumGateMode",
    "LogFormat",
    "OrchestratorConfig",
    "StoreBackend",
    "CURRICULUM_CATALOG",
    "CurriculumGate",
    "CurriculumStage",
    "GateResult",
    "get_stage",
    "JobSnapshot",
    "TrainingOrchestrator",
    "TrainingJobRequest",
    "parse_submission",
    "SimulatedStageRunner",
    "StageRunner",
    "StageUpdate",
    "build_default_runners",
    "JobStateMachine",
    "TransitionGuard",
    "InMemoryJobStore",
    "JobFilter",
    "JobStore",
    "SqlJobStore",
    "CurriculumLevel",
    "JobMetrics",
    "JobStatus",
    "ModelType",
    "PipelineStage",
    "RiskProfile",
    "StageStatus",
    "TrainingJob",
    "compute_overall_progress",
    "pipeline_for",
]
