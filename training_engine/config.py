"""
Training Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the training orchestrator.

- Stage pacing and the stage deadline watchdog
- Curriculum gate mode
- Callback dispatch
- Store backend selection
- Logging

Values come from keyword arguments or, via from_env(), from
environment variables (a local .env file is honoured).

============================================================
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv

from core.exceptions import ConfigurationError


# ============================================================
# ENUMS
# ============================================================

class CurriculumGateMode(str, Enum):
    """What the curriculum gate does with an unmet target."""

    ADVISORY = "advisory"
    """Record the outcome only."""

    BLOCKING = "blocking"
    """Fail the job after rl_training so the level is repeated."""


class StoreBackend(str, Enum):
    """Where jobs, models and audit entries live."""

    MEMORY = "memory"
    SQL = "sql"


class LogFormat(str, Enum):
    JSON = "json"
    TEXT = "text"


_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# ORCHESTRATOR CONFIGURATION
# ============================================================

@dataclass
class OrchestratorConfig:
    """Configuration for the training orchestrator."""

    # Stage pacing
    steps_per_stage: int = 5
    """Progress updates emitted by each simulated stage."""

    step_delay_seconds: float = 1.0
    """Delay between simulated stage updates."""

    stage_timeout_seconds: float = 600.0
    """A stage running longer than this fails the job."""

    snapshot_interval_seconds: float = 2.0
    """Default interval of the live status stream."""

    # Curriculum
    curriculum_gate_mode: CurriculumGateMode = CurriculumGateMode.ADVISORY
    """Advisory records the outcome, blocking fails the job on an unmet target."""

    # Callbacks
    callback_enabled: bool = True
    """POST the final job to its callback URL on completion."""

    callback_timeout_seconds: float = 10.0
    """Total timeout of one callback request."""

    # Simulation
    random_seed: Optional[int] = None
    """Seed for simulated metrics; None draws from system entropy."""

    # Experiment tracking
    tracking_uri: Optional[str] = None
    """Experiment tracking server recorded on each job."""

    # Persistence
    store_backend: StoreBackend = StoreBackend.MEMORY
    """memory or sql."""

    database_url: Optional[str] = None
    """SQLAlchemy URL used when store_backend is sql."""

    # Logging
    log_level: str = "INFO"
    """Logging level."""

    log_format: LogFormat = LogFormat.TEXT
    """json or text."""

    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Load configuration from environment variables."""
        load_dotenv(find_dotenv(usecwd=True))
        seed = os.getenv("TRAINING_RANDOM_SEED")
        return cls(
            steps_per_stage=int(os.getenv("TRAINING_STEPS_PER_STAGE", "5")),
            step_delay_seconds=float(os.getenv("TRAINING_STEP_DELAY_SECONDS", "1.0")),
            stage_timeout_seconds=float(os.getenv("TRAINING_STAGE_TIMEOUT_SECONDS", "600")),
            snapshot_interval_seconds=float(os.getenv("TRAINING_SNAPSHOT_INTERVAL_SECONDS", "2.0")),
            curriculum_gate_mode=CurriculumGateMode(
                os.getenv("CURRICULUM_GATE_MODE", "advisory").strip().lower()
            ),
            callback_enabled=_env_bool("CALLBACK_ENABLED", "true"),
            callback_timeout_seconds=float(os.getenv("CALLBACK_TIMEOUT_SECONDS", "10")),
            random_seed=int(seed) if seed else None,
            tracking_uri=os.getenv("TRACKING_URI") or None,
            store_backend=StoreBackend(os.getenv("STORE_BACKEND", "memory").strip().lower()),
            database_url=os.getenv("DATABASE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=LogFormat(os.getenv("LOG_FORMAT", "text").strip().lower()),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.steps_per_stage < 1:
            errors.append("steps_per_stage must be at least 1")

        if self.step_delay_seconds < 0:
            errors.append("step_delay_seconds must not be negative")

        if self.stage_timeout_seconds <= 0:
            errors.append("stage_timeout_seconds must be positive")

        if self.snapshot_interval_seconds <= 0:
            errors.append("snapshot_interval_seconds must be positive")

        if self.callback_timeout_seconds <= 0:
            errors.append("callback_timeout_seconds must be positive")

        if self.log_level.upper() not in _LOG_LEVELS:
            errors.append(f"log_level must be one of {sorted(_LOG_LEVELS)}")

        if self.store_backend == StoreBackend.SQL and not self.database_url:
            errors.append("database_url required for the sql store backend")

        return errors

    def ensure_valid(self) -> None:
        """
        Raise if the configuration is unusable.

        Raises:
            ConfigurationError: listing every problem found
        """
        errors = self.validate()
        if errors:
            raise ConfigurationError(
                f"Invalid orchestrator configuration: {'; '.join(errors)}",
                errors=errors,
            )


__all__ = [
    "CurriculumGateMode",
    "StoreBackend",
    "LogFormat",
    "OrchestratorConfig",
]
