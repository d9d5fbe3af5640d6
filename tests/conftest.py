"""
Shared fixtures for training engine tests.

Stage runners here are deterministic: every stage finishes in
two updates with no delay unless a test holds it on an event.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from audit.log import InMemoryAuditLog
from database.engine import create_all_tables, create_database_engine, get_session_factory
from model_registry.registry import ModelRegistry
from model_registry.store import InMemoryModelStore
from training_engine.config import OrchestratorConfig
from training_engine.orchestrator import TrainingOrchestrator
from training_engine.stages import StageRunner, StageUpdate
from training_engine.store import InMemoryJobStore
from training_engine.types import CurriculumMeasurement, PipelineStage, TrainingJob


# ============================================================
# STAGE RUNNERS
# ============================================================

PASSING_MEASUREMENT = CurriculumMeasurement(win_ratio=0.61, trades=80, drawdown=0.09, sharpe_ratio=1.4)
FAILING_MEASUREMENT = CurriculumMeasurement(win_ratio=0.41, trades=12, drawdown=0.31, sharpe_ratio=0.2)


class ScriptedRunner(StageRunner):
    """Yields a fixed list of updates, optionally waiting on an event before each."""

    def __init__(
        self,
        stage: PipelineStage,
        updates: Optional[List[StageUpdate]] = None,
        hold: Optional[asyncio.Event] = None,
    ):
        super().__init__(stage)
        self.updates = updates or [
            StageUpdate(progress=50.0, message=f"{stage.stage_id} halfway"),
            StageUpdate(progress=100.0, message=f"{stage.stage_id} done"),
        ]
        self.hold = hold
        self.waiting = asyncio.Event()
        self.seen_jobs: List[TrainingJob] = []

    async def run(self, job: TrainingJob):
        self.seen_jobs.append(job)
        for update in self.updates:
            if self.hold is not None:
                self.waiting.set()
                await self.hold.wait()
            await asyncio.sleep(0)
            yield update


class FailingRunner(StageRunner):
    """Reports some progress, then the backend crashes."""

    async def run(self, job: TrainingJob):
        yield StageUpdate(progress=10.0, message="warming up")
        raise RuntimeError("training backend crashed")


class StallingRunner(StageRunner):
    """Never reports anything."""

    async def run(self, job: TrainingJob):
        await asyncio.sleep(3600)
        yield StageUpdate(progress=100.0)


def rl_updates(measurement: CurriculumMeasurement) -> List[StageUpdate]:
    return [
        StageUpdate(
            progress=50.0,
            message="episode batch 1",
            metrics={"win_rate": measurement.win_ratio, "total_trades": measurement.trades // 2},
            curriculum=replace(measurement, trades=measurement.trades // 2),
        ),
        StageUpdate(
            progress=100.0,
            message="episode batch 2",
            metrics={
                "win_rate": measurement.win_ratio,
                "total_trades": measurement.trades,
                "max_drawdown": measurement.drawdown,
                "sharpe_ratio": measurement.sharpe_ratio,
            },
            curriculum=measurement,
        ),
    ]


def scripted_runners(measurement: CurriculumMeasurement = PASSING_MEASUREMENT) -> Dict[PipelineStage, StageRunner]:
    runners: Dict[PipelineStage, StageRunner] = {
        stage: ScriptedRunner(stage) for stage in PipelineStage.ordered()
    }
    runners[PipelineStage.RL_TRAINING] = ScriptedRunner(
        PipelineStage.RL_TRAINING, updates=rl_updates(measurement)
    )
    runners[PipelineStage.VALIDATION] = ScriptedRunner(
        PipelineStage.VALIDATION,
        updates=[
            StageUpdate(progress=50.0, metrics={"accuracy": 0.81}),
            StageUpdate(
                progress=100.0,
                metrics={"accuracy": 0.84, "feature_importance": {"rsi": 0.2, "macd": 0.5, "volume": 0.3}},
            ),
        ],
    )
    return runners


# ============================================================
# PAYLOADS
# ============================================================

@pytest.fixture
def rl_payload() -> dict:
    return {
        "modelType": "rl_agent",
        "coins": ["btc", "eth"],
        "lookbackDays": 90,
        "interval": "1h",
        "algorithm": "PPO",
        "architecture": {"policyLayers": [128, 64], "learningRate": 0.001},
        "environmentConfig": {"initialBalance": 5000, "reward": "pnl"},
        "curriculumLevel": "simple",
        "riskProfile": "moderate",
    }


@pytest.fixture
def sentiment_payload() -> dict:
    return {"modelType": "sentiment", "coins": ["BTC"], "lookbackDays": 14, "algorithm": "FinBERT"}


# ============================================================
# COMPONENTS
# ============================================================

@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(
        steps_per_stage=2,
        step_delay_seconds=0.0,
        stage_timeout_seconds=5.0,
        snapshot_interval_seconds=0.01,
        callback_enabled=True,
        callback_timeout_seconds=1.0,
        random_seed=7,
    )


@pytest.fixture
def job_store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def model_store() -> InMemoryModelStore:
    return InMemoryModelStore()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def registry(model_store, audit_log) -> ModelRegistry:
    return ModelRegistry(model_store, audit_log)


@pytest.fixture
def session_factory():
    engine = create_database_engine("sqlite:///:memory:")
    create_all_tables(engine)
    yield get_session_factory(engine)
    engine.dispose()


@pytest_asyncio.fixture
async def make_orchestrator(config, job_store, registry, audit_log):
    """Factory building orchestrators over the shared stores; stops them all afterwards."""
    created: List[TrainingOrchestrator] = []

    def factory(runners=None, callbacks=None, **config_overrides) -> TrainingOrchestrator:
        stage_runners = scripted_runners()
        stage_runners.update(runners or {})
        orchestrator = TrainingOrchestrator(
            replace(config, **config_overrides),
            job_store,
            registry,
            audit_log,
            runners=stage_runners,
            callbacks=callbacks,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        await orchestrator.stop()


@pytest_asyncio.fixture
async def orchestrator(make_orchestrator) -> TrainingOrchestrator:
    return make_orchestrator()
