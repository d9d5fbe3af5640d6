"""
Training Engine - Bootstrap.

============================================================
RESPONSIBILITY
============================================================
Wires one runnable training system from configuration.

- Chooses the in-memory or SQL backend for jobs, models and
  audit entries
- Builds the model registry and injects it into the
  orchestrator

Kept out of the package __init__ because it imports the
model registry, which itself depends on training_engine.types.

============================================================
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from audit.log import AuditLog, InMemoryAuditLog, SqlAuditLog
from database.engine import initialize_database
from model_registry.registry import ModelRegistry
from model_registry.store import InMemoryModelStore, ModelStore, SqlModelStore

from .config import OrchestratorConfig, StoreBackend
from .orchestrator import TrainingOrchestrator
from .stages import StageRunner
from .store import InMemoryJobStore, JobStore, SqlJobStore
from .types import PipelineStage


logger = logging.getLogger(__name__)


@dataclass
class TrainingSystem:
    """Every component of a wired training system."""

    config: OrchestratorConfig
    job_store: JobStore
    model_store: ModelStore
    audit_log: AuditLog
    registry: ModelRegistry
    orchestrator: TrainingOrchestrator


def build_system(
    config: Optional[OrchestratorConfig] = None,
    runners: Optional[Dict[PipelineStage, StageRunner]] = None,
) -> TrainingSystem:
    """
    Build the training system.

    Args:
        config: Configuration, defaults to OrchestratorConfig.from_env()
        runners: Stage runners, defaults to the simulated backend

    Raises:
        ConfigurationError: configuration is invalid
        PersistenceError: the database cannot be initialized
    """
    config = config or OrchestratorConfig.from_env()
    config.ensure_valid()

    if config.store_backend == StoreBackend.SQL:
        session_factory = initialize_database(config.database_url)
        job_store: JobStore = SqlJobStore(session_factory)
        model_store: ModelStore = SqlModelStore(session_factory)
        audit_log: AuditLog = SqlAuditLog(session_factory)
    else:
        job_store = InMemoryJobStore()
        model_store = InMemoryModelStore()
        audit_log = InMemoryAuditLog()

    registry = ModelRegistry(model_store, audit_log)
    orchestrator = TrainingOrchestrator(
        config,
        job_store,
        registry,
        audit_log,
        runners=runners,
    )

    logger.info(f"Training system built with {config.store_backend.value} store backend")
    return TrainingSystem(
        config=config,
        job_store=job_store,
        model_store=model_store,
        audit_log=audit_log,
        registry=registry,
        orchestrator=orchestrator,
    )


__all__ = [
    "TrainingSystem",
    "build_system",
]
