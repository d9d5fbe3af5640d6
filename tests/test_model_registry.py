"""
Model Registry Tests.

Tests cover:
- Registration and versioning
- Deploy / promote with approval and archiving
- Shadow testing
- Rollback, the only way out of archived
- Single deployed model under concurrent deploys
- Audit trail of every mutation
"""

import asyncio
from datetime import datetime, timezone

import pytest

from audit.log import AuditEventType
from core.clock import ClockFactory
from core.exceptions import (
    ApprovalRequiredError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from model_registry.registry import model_name_for
from model_registry.types import ModelFilter, ModelStatus, ShadowTestResults, ShadowTestStatus
from training_engine.types import JobMetrics, JobStatus, ModelType, TrainingJob


def make_job(job_id: str, **overrides) -> TrainingJob:
    fields = dict(
        job_id=job_id,
        model_type=ModelType.RL_AGENT,
        coins=["BTC", "ETH"],
        lookback_days=90,
        algorithm="PPO",
        architecture={"kind": "rl_agent", "policy_layers": [64]},
        status=JobStatus.VALIDATION,
        submitted_by="alice",
        metrics=JobMetrics(sharpe_ratio=1.3, win_rate=0.58, total_trades=120, feature_importance={"rsi": 0.7}),
    )
    fields.update(overrides)
    return TrainingJob(**fields)


@pytest.fixture
def clock():
    with ClockFactory.use_mock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)) as mock:
        yield mock


@pytest.fixture
def register(registry, clock):
    """Register a model per call, one minute apart."""
    counter = {"n": 0}

    async def _register(**overrides):
        counter["n"] += 1
        clock.advance(seconds=60)
        job = make_job(f"job_{counter['n']}", **overrides)
        return await registry.register_model(job, actor="alice")

    return _register


def deployed_count(registry) -> int:
    return len(registry.list_models(ModelFilter(statuses=frozenset({ModelStatus.DEPLOYED}))))


# =============================================================
# TEST: Registration
# =============================================================

class TestRegistration:
    """Test register_model()."""

    @pytest.mark.asyncio
    async def test_register_creates_trained_model(self, register, audit_log):
        model = await register()

        assert model.status == ModelStatus.TRAINED
        assert model.model_id.startswith("model_")
        assert model.name == "BTC-ETH rl_agent PPO"
        assert model.version == "1.0.0"
        assert model.source_job_id == "job_1"
        assert model.created_by == "alice"
        assert model.performance.sharpe_ratio == 1.3
        assert model.performance.total_trades == 120
        assert model.explainability.feature_importance == [("rsi", 0.7)]

        entries = audit_log.entries(event_type=AuditEventType.MODEL_REGISTERED)
        assert len(entries) == 1
        assert entries[0].subject_ids == (model.model_id, "job_1")

    @pytest.mark.asyncio
    async def test_versions_count_models_with_same_name(self, register):
        first = await register()
        second = await register()
        other = await register(algorithm="DQN")

        assert (first.version, second.version) == ("1.0.0", "2.0.0")
        assert other.version == "1.0.0"
        assert other.name == model_name_for(make_job("x", algorithm="DQN"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.FAILED, JobStatus.CANCELLED])
    async def test_register_rejects_aborted_jobs(self, registry, status):
        with pytest.raises(StateError):
            await registry.register_model(make_job("job_x", status=status), actor="alice")

        assert registry.list_models() == []


# =============================================================
# TEST: Deploy / Promote
# =============================================================

class TestDeploy:
    """Test deploy() and promote()."""

    @pytest.mark.asyncio
    async def test_deploy_without_approval_changes_nothing(self, registry, register, audit_log):
        model = await register()
        entries_before = len(audit_log)

        with pytest.raises(ApprovalRequiredError):
            await registry.deploy(model.model_id, approval_flag=False, actor="bob")

        assert registry.get_model(model.model_id).status == ModelStatus.TRAINED
        assert len(audit_log) == entries_before

    @pytest.mark.asyncio
    async def test_approval_is_checked_before_existence(self, registry):
        with pytest.raises(ApprovalRequiredError):
            await registry.deploy("model_missing", approval_flag=False, actor="bob")

    @pytest.mark.asyncio
    async def test_deploy_unknown_model(self, registry):
        with pytest.raises(NotFoundError, match="Model not found: model_missing"):
            await registry.deploy("model_missing", approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_second_deploy_archives_first(self, registry, register, audit_log):
        """deploy(m1) then deploy(m2) leaves m1 archived and m2 deployed."""
        m1 = await register()
        m2 = await register()

        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        deployed = await registry.deploy(m2.model_id, approval_flag=True, actor="bob")

        assert deployed.status == ModelStatus.DEPLOYED
        assert deployed.deployed_at is not None
        first = registry.get_model(m1.model_id)
        assert first.status == ModelStatus.ARCHIVED
        assert first.archived_at is not None
        assert registry.deployed_model().model_id == m2.model_id
        assert deployed_count(registry) == 1

        last = audit_log.entries(event_type=AuditEventType.MODEL_DEPLOYED)[-1]
        assert last.subject_ids == (m2.model_id, m1.model_id)
        assert last.actor == "bob"

    @pytest.mark.asyncio
    async def test_deploy_already_deployed_conflicts(self, registry, register):
        model = await register()
        await registry.deploy(model.model_id, approval_flag=True, actor="bob")

        with pytest.raises(ConflictError):
            await registry.deploy(model.model_id, approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_deploy_shadow_model_is_rejected(self, registry, register):
        model = await register()
        await registry.start_shadow(model.model_id, actor="bob")

        with pytest.raises(StateError):
            await registry.deploy(model.model_id, approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_promote_is_deploy(self, registry, register):
        model = await register()

        promoted = await registry.promote(model.model_id, approval_flag=True, actor="bob")

        assert promoted.status == ModelStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_promote_requires_approval(self, registry, register):
        model = await register()

        with pytest.raises(ApprovalRequiredError):
            await registry.promote(model.model_id, approval_flag=False, actor="bob")

    @pytest.mark.asyncio
    async def test_concurrent_deploys_leave_one_deployed(self, registry, register):
        """At most one model is deployed whatever the interleaving."""
        models = [await register() for _ in range(4)]

        await asyncio.gather(
            *(registry.deploy(m.model_id, approval_flag=True, actor="bob") for m in models)
        )

        assert deployed_count(registry) == 1
        archived = registry.list_models(ModelFilter(statuses=frozenset({ModelStatus.ARCHIVED})))
        assert len(archived) == 3


# =============================================================
# TEST: Shadow Testing
# =============================================================

class TestShadow:
    """Test start_shadow() and stop_shadow()."""

    @pytest.mark.asyncio
    async def test_shadow_round_trip(self, registry, register, clock):
        model = await register()

        shadow = await registry.start_shadow(model.model_id, actor="bob")
        assert shadow.status == ModelStatus.SHADOW
        assert shadow.shadow_start == clock.now()

        tests = registry.get_shadow_tests(model.model_id)
        assert len(tests) == 1
        assert tests[0].status == ShadowTestStatus.RUNNING
        assert tests[0].shadow_id.startswith("shadow_")

        clock.advance(seconds=3600)
        results = ShadowTestResults(performance=0.8, trades=42, pnl=1250.5)
        stopped = await registry.stop_shadow(model.model_id, actor="carol", results=results)

        assert stopped.status == ModelStatus.TRAINED
        assert stopped.shadow_end == clock.now()
        closed = registry.get_shadow_tests(model.model_id)[0]
        assert closed.status == ShadowTestStatus.STOPPED
        assert closed.results == results
        assert closed.stopped_by == "carol"

    @pytest.mark.asyncio
    async def test_start_shadow_twice_conflicts(self, registry, register):
        model = await register()
        await registry.start_shadow(model.model_id, actor="bob")

        with pytest.raises(ConflictError):
            await registry.start_shadow(model.model_id, actor="bob")

    @pytest.mark.asyncio
    async def test_start_shadow_on_deployed_is_rejected(self, registry, register):
        model = await register()
        await registry.deploy(model.model_id, approval_flag=True, actor="bob")

        with pytest.raises(StateError):
            await registry.start_shadow(model.model_id, actor="bob")

    @pytest.mark.asyncio
    async def test_stop_shadow_requires_shadow(self, registry, register):
        model = await register()

        with pytest.raises(StateError, match="not in shadow"):
            await registry.stop_shadow(model.model_id, actor="bob")

    @pytest.mark.asyncio
    async def test_shadow_tests_newest_first(self, registry, register, clock):
        model = await register()
        for _ in range(2):
            await registry.start_shadow(model.model_id, actor="bob")
            clock.advance(seconds=60)
            await registry.stop_shadow(model.model_id, actor="bob")

        tests = registry.get_shadow_tests()
        assert len(tests) == 2
        assert tests[0].start_time > tests[1].start_time


# =============================================================
# TEST: Rollback
# =============================================================

class TestRollback:
    """Test rollback()."""

    @pytest.mark.asyncio
    async def test_rollback_swaps_deployed_and_archived(self, registry, register, audit_log):
        m1 = await register()
        m2 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        await registry.deploy(m2.model_id, approval_flag=True, actor="bob")

        result = await registry.rollback(m2.model_id, m1.model_id, approval_flag=True, actor="carol")

        assert result.from_model.status == ModelStatus.ARCHIVED
        assert result.to_model.status == ModelStatus.DEPLOYED
        assert registry.get_model(m1.model_id).status == ModelStatus.DEPLOYED
        assert registry.get_model(m2.model_id).status == ModelStatus.ARCHIVED
        assert deployed_count(registry) == 1

        entry = audit_log.entries(event_type=AuditEventType.MODEL_ROLLED_BACK)[0]
        assert entry.subject_ids == (m2.model_id, m1.model_id)
        assert entry.actor == "carol"

    @pytest.mark.asyncio
    async def test_rollback_to_trained_model(self, registry, register):
        m1 = await register()
        m2 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")

        result = await registry.rollback(m1.model_id, m2.model_id, approval_flag=True, actor="bob")

        assert result.to_model.status == ModelStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_rollback_requires_approval(self, registry, register):
        m1 = await register()
        m2 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")

        with pytest.raises(ApprovalRequiredError):
            await registry.rollback(m1.model_id, m2.model_id, approval_flag=False, actor="bob")

        assert registry.get_model(m1.model_id).status == ModelStatus.DEPLOYED

    @pytest.mark.asyncio
    async def test_rollback_unknown_model(self, registry, register):
        m1 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")

        with pytest.raises(NotFoundError):
            await registry.rollback(m1.model_id, "model_missing", approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_rollback_to_itself_is_invalid(self, registry, register):
        m1 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")

        with pytest.raises(ValidationError):
            await registry.rollback(m1.model_id, m1.model_id, approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_rollback_source_must_be_deployed(self, registry, register):
        m1 = await register()
        m2 = await register()

        with pytest.raises(StateError, match="not deployed"):
            await registry.rollback(m1.model_id, m2.model_id, approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_rollback_target_in_shadow_is_rejected(self, registry, register):
        m1 = await register()
        m2 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        await registry.start_shadow(m2.model_id, actor="bob")

        with pytest.raises(StateError):
            await registry.rollback(m1.model_id, m2.model_id, approval_flag=True, actor="bob")

    @pytest.mark.asyncio
    async def test_archived_leaves_only_through_rollback(self, registry, register):
        """deploy and start_shadow both refuse an archived model."""
        m1 = await register()
        m2 = await register()
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        await registry.deploy(m2.model_id, approval_flag=True, actor="bob")

        with pytest.raises(StateError):
            await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        with pytest.raises(StateError):
            await registry.start_shadow(m1.model_id, actor="bob")

        assert registry.get_model(m1.model_id).status == ModelStatus.ARCHIVED


# =============================================================
# TEST: Reads and Audit
# =============================================================

class TestReadsAndAudit:
    """Test list_models(), copies and the one-entry-per-mutation audit trail."""

    @pytest.mark.asyncio
    async def test_list_models_newest_first(self, registry, register):
        m1 = await register()
        m2 = await register(model_type=ModelType.FORECAST, algorithm="LSTM")

        assert [m.model_id for m in registry.list_models()] == [m2.model_id, m1.model_id]
        forecasts = registry.list_models(ModelFilter(model_type=ModelType.FORECAST))
        assert [m.model_id for m in forecasts] == [m2.model_id]
        assert len(registry.list_models(ModelFilter(limit=1))) == 1

    @pytest.mark.asyncio
    async def test_get_model_returns_copy(self, registry, register):
        model = await register()

        fetched = registry.get_model(model.model_id)
        fetched.status = ModelStatus.DEPLOYED

        assert registry.get_model(model.model_id).status == ModelStatus.TRAINED
        assert deployed_count(registry) == 0

    @pytest.mark.asyncio
    async def test_one_audit_entry_per_mutation(self, registry, register, audit_log):
        m1 = await register()
        m2 = await register()
        await registry.start_shadow(m2.model_id, actor="bob")
        await registry.stop_shadow(m2.model_id, actor="bob")
        await registry.deploy(m1.model_id, approval_flag=True, actor="bob")
        await registry.promote(m2.model_id, approval_flag=True, actor="bob")
        await registry.rollback(m2.model_id, m1.model_id, approval_flag=True, actor="bob")

        assert [e.event_type for e in audit_log.entries()] == [
            AuditEventType.MODEL_REGISTERED,
            AuditEventType.MODEL_REGISTERED,
            AuditEventType.MODEL_SHADOW_STARTED,
            AuditEventType.MODEL_SHADOW_STOPPED,
            AuditEventType.MODEL_DEPLOYED,
            AuditEventType.MODEL_DEPLOYED,
            AuditEventType.MODEL_ROLLED_BACK,
        ]
        assert [e.sequence for e in audit_log.entries()] == list(range(1, 8))
