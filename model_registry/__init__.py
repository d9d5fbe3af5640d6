"""
Model Registry Package.

Lifecycle of trained models: deploy, promote, shadow testing
and rollback, under the single-deployed-model invariant.

Components:
- types: Model, ShadowTest and their statuses
- store: In-memory and SQL model stores
- registry: ModelRegistry operations
"""

from .registry import ModelRegistry, RollbackResult, model_name_for
from .store import InMemoryModelStore, ModelStore, SqlModelStore
from .types import (
    AlgorithmInfo,
    Explainability,
    MODEL_TRANSITIONS,
    Model,
    ModelFilter,
    ModelPerformance,
    ModelStatus,
    ShadowTest,
    ShadowTestResults,
    ShadowTestStatus,
)

__all__ = [
    "ModelRegistry",
    "RollbackResult",
    "model_name_for",
    "ModelStore",
    "InMemoryModelStore",
    "SqlModelStore",
    "AlgorithmInfo",
    "Explainability",
    "MODEL_TRANSITIONS",
    "Model",
    "ModelFilter",
    "ModelPerformance",
    "ModelStatus",
    "ShadowTest",
    "ShadowTestResults",
    "ShadowTestStatus",
]
