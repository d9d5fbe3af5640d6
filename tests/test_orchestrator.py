"""
Training Orchestrator Tests.

============================================================
PURPOSE
============================================================
Behaviour of TrainingOrchestrator end to end over in-memory
stores and scripted stage runners.

TEST CATEGORIES:
- Submission and the single-active-job invariant
- Stage progression, completion and model registration
- Curriculum gate, advisory and blocking
- Failures and the stage deadline
- Cancellation
- Reads, snapshots and lifecycle

============================================================
"""

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from audit.log import AuditEventType
from core.exceptions import ConfigurationError, ConflictError, NotFoundError, StateError, ValidationError
from training_engine.callbacks import CallbackDispatcher
from training_engine.config import CurriculumGateMode, OrchestratorConfig
from training_engine.orchestrator import JobSnapshot, TrainingOrchestrator
from training_engine.store import JobFilter
from training_engine.types import (
    CurriculumLevel,
    JobStatus,
    ModelType,
    PipelineStage,
    StageStatus,
    TrainingJob,
)

from conftest import (
    FAILING_MEASUREMENT,
    PASSING_MEASUREMENT,
    FailingRunner,
    ScriptedRunner,
    StallingRunner,
    rl_updates,
    scripted_runners,
)


def held_rl_runner():
    hold = asyncio.Event()
    runner = ScriptedRunner(PipelineStage.RL_TRAINING, updates=rl_updates(PASSING_MEASUREMENT), hold=hold)
    return runner, hold


# ============================================================
# SUBMISSION
# ============================================================

class TestSubmission:
    """Test submit() validation and the active-job invariant."""

    @pytest.mark.asyncio
    async def test_submit_returns_pending_job(self, orchestrator, rl_payload, audit_log):
        """Submit returns immediately with a queued job."""
        job = await orchestrator.submit(rl_payload, actor="alice")

        assert job.status == JobStatus.PENDING
        assert job.current_stage == "Queued"
        assert job.progress == 0.0
        assert job.coins == ["BTC", "ETH"]
        assert job.submitted_by == "alice"
        assert job.logs[0].message == "Job queued for training"
        assert job.architecture["kind"] == "rl_agent"
        assert job.architecture["policy_layers"] == [128, 64]
        assert job.environment_config["reward"] == "pnl"
        assert all(state.status == StageStatus.PENDING for state in job.stages.values())
        assert job.experiment is not None and job.experiment.run_id.startswith("run_")
        assert job.curriculum.level == CurriculumLevel.SIMPLE
        assert job.curriculum.criteria.target.win_ratio == 0.55

        entries = audit_log.entries(subject_id=job.job_id)
        assert [e.event_type for e in entries] == [AuditEventType.JOB_SUBMITTED]
        assert entries[0].actor == "alice"

    @pytest.mark.asyncio
    async def test_sentiment_job_skips_forecasting_stage(self, orchestrator, sentiment_payload):
        """Forecasting is marked skipped for sentiment models."""
        job = await orchestrator.submit(sentiment_payload, actor="alice")

        assert job.stages["forecasting"].status == StageStatus.SKIPPED
        assert job.stages["data_prep"].status == StageStatus.PENDING

    @pytest.mark.asyncio
    async def test_invalid_lookback_is_rejected(self, orchestrator, rl_payload, job_store, audit_log):
        """lookbackDays outside [1, 365] fails validation and creates nothing."""
        rl_payload["lookbackDays"] = 400

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.submit(rl_payload, actor="alice")

        assert "lookbackDays" in exc_info.value.field_errors
        assert "between 1 and 365" in exc_info.value.field_errors["lookbackDays"][0]
        assert job_store.list() == []
        assert len(audit_log) == 0

    @pytest.mark.asyncio
    async def test_submit_while_active_conflicts(self, make_orchestrator, rl_payload, job_store):
        """A second submission while A is in rl_training names A and persists nothing."""
        runner, hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})

        job_a = await orchestrator.submit(rl_payload, actor="alice")
        await asyncio.wait_for(runner.waiting.wait(), timeout=2)
        assert orchestrator.get_status(job_a.job_id).status == JobStatus.RL_TRAINING

        with pytest.raises(ConflictError) as exc_info:
            await orchestrator.submit(rl_payload, actor="bob")

        assert exc_info.value.blocking_id == job_a.job_id
        assert job_a.job_id in str(exc_info.value)
        assert [j.job_id for j in job_store.list()] == [job_a.job_id]

        hold.set()
        finished = await orchestrator.wait_for(job_a.job_id, timeout=5)
        assert finished.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_submissions_admit_one(self, orchestrator, rl_payload, job_store):
        """Of several simultaneous submissions exactly one is accepted."""
        results = await asyncio.gather(
            *(orchestrator.submit(dict(rl_payload), actor=f"user{i}") for i in range(5)),
            return_exceptions=True,
        )

        accepted = [r for r in results if isinstance(r, TrainingJob)]
        rejected = [r for r in results if isinstance(r, ConflictError)]
        assert len(accepted) == 1
        assert len(rejected) == 4
        assert len(job_store.list()) == 1

    @pytest.mark.asyncio
    async def test_submit_after_completion_is_accepted(self, orchestrator, rl_payload):
        """The slot frees up once the active job is terminal."""
        first = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(first.job_id, timeout=5)

        second = await orchestrator.submit(rl_payload, actor="alice")
        assert second.job_id != first.job_id


# ============================================================
# PROGRESSION
# ============================================================

class TestProgression:
    """Test background stage progression and completion."""

    @pytest.mark.asyncio
    async def test_job_completes_with_registered_model(self, orchestrator, rl_payload, registry, audit_log):
        """A completed job has progress 100 and exactly one trained model."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100.0
        assert job.current_stage == "Completed"
        assert job.end_time is not None
        assert job.model_id is not None
        for stage in job.pipeline:
            assert job.stages[stage.stage_id].status == StageStatus.COMPLETED
            assert job.stages[stage.stage_id].progress == 100.0
        assert any("Training completed successfully" in entry.message for entry in job.logs)

        models = [m for m in registry.list_models() if m.model_id == job.model_id]
        assert len(models) == 1
        assert models[0].source_job_id == job.job_id
        assert models[0].status.value == "trained"

        events = [e.event_type for e in audit_log.entries(subject_id=job.job_id)]
        assert events == [
            AuditEventType.JOB_SUBMITTED,
            AuditEventType.MODEL_REGISTERED,
            AuditEventType.JOB_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_sentiment_job_status_path(self, orchestrator, sentiment_payload):
        """Sentiment jobs go pending, data_prep, rl_training, backtesting, validation, completed."""
        submitted = await orchestrator.submit(sentiment_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        path = [event.to_state for event in orchestrator.state_machine.history(job.job_id)]
        assert path == [
            JobStatus.DATA_PREP,
            JobStatus.RL_TRAINING,
            JobStatus.BACKTESTING,
            JobStatus.VALIDATION,
            JobStatus.COMPLETED,
        ]
        assert orchestrator.state_machine.history(job.job_id)[0].from_state == JobStatus.PENDING
        assert job.stages["forecasting"].status == StageStatus.SKIPPED
        assert job.model_id
        assert job.progress == 100.0

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, orchestrator, rl_payload, job_store):
        """Every persisted progress value is at least the previous one."""
        with patch.object(job_store, "update", wraps=job_store.update) as spy:
            submitted = await orchestrator.submit(rl_payload, actor="alice")
            await orchestrator.wait_for(submitted.job_id, timeout=5)

        progress = [call.args[0].progress for call in spy.call_args_list]
        assert progress == sorted(progress)
        assert progress[-1] == 100.0

    @pytest.mark.asyncio
    async def test_final_metrics_reach_the_model(self, orchestrator, rl_payload, registry):
        """Stage metrics accumulate on the job and become model performance."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.metrics.win_rate == PASSING_MEASUREMENT.win_ratio
        assert job.metrics.total_trades == PASSING_MEASUREMENT.trades
        assert job.metrics.accuracy == 0.84
        assert "training_seconds" in job.metrics.extra

        model = registry.get_model(job.model_id)
        assert model.performance.win_rate == PASSING_MEASUREMENT.win_ratio
        assert model.performance.total_trades == PASSING_MEASUREMENT.trades
        assert model.explainability.feature_importance[0] == ("macd", 0.5)
        assert model.algorithm_info.architecture["policy_layers"] == [128, 64]

    @pytest.mark.asyncio
    async def test_model_versions_increment_per_name(self, orchestrator, rl_payload, registry):
        """Retraining the same recipe bumps the version."""
        versions = []
        for _ in range(2):
            submitted = await orchestrator.submit(rl_payload, actor="alice")
            job = await orchestrator.wait_for(submitted.job_id, timeout=5)
            versions.append(registry.get_model(job.model_id).version)

        assert versions == ["1.0.0", "2.0.0"]

    @pytest.mark.asyncio
    async def test_job_log_is_mirrored_to_logger(self, orchestrator, rl_payload, caplog):
        """Job log lines also go to the module logger."""
        caplog.set_level(logging.INFO, logger="training_engine.orchestrator")

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(submitted.job_id, timeout=5)

        messages = [record.getMessage() for record in caplog.records]
        assert any(f"[{submitted.job_id}] Job queued for training" in m for m in messages)
        assert any("Stage started: RL Training" in m for m in messages)

    @pytest.mark.asyncio
    async def test_completion_callback_failure_does_not_fail_job(self, make_orchestrator, rl_payload):
        """An undelivered callback is only logged."""
        callbacks = AsyncMock(spec=CallbackDispatcher)
        callbacks.dispatch.return_value = False
        orchestrator = make_orchestrator(callbacks=callbacks)
        rl_payload["callbackUrl"] = "http://127.0.0.1:9/hook"

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)
        await asyncio.sleep(0.01)

        assert job.status == JobStatus.COMPLETED
        callbacks.dispatch.assert_awaited_once()
        url, payload = callbacks.dispatch.call_args.args
        assert url == "http://127.0.0.1:9/hook"
        assert payload["event"] == "training_completed"
        assert payload["job"]["model_id"] == job.model_id


# ============================================================
# CURRICULUM GATE
# ============================================================

class TestCurriculumGating:
    """Test curriculum evaluation during rl_training."""

    @pytest.mark.asyncio
    async def test_advisory_gate_records_pass(self, orchestrator, rl_payload):
        """Meeting the target sets passed and the next level, the level itself stays."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.curriculum.criteria.passed is True
        assert job.curriculum.scheduler.next_level == CurriculumLevel.VOLATILE
        assert job.curriculum.scheduler.evaluations == 2
        assert job.curriculum_level == CurriculumLevel.SIMPLE
        assert job.curriculum.criteria.win_ratio == PASSING_MEASUREMENT.win_ratio
        assert any("Curriculum target met" in entry.message for entry in job.logs)

    @pytest.mark.asyncio
    async def test_advisory_gate_does_not_block(self, make_orchestrator, rl_payload):
        """An unmet target is recorded but the job still completes."""
        orchestrator = make_orchestrator(runners=scripted_runners(FAILING_MEASUREMENT))

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.COMPLETED
        assert job.curriculum.criteria.passed is False
        assert job.curriculum.scheduler.next_level is None

    @pytest.mark.asyncio
    async def test_blocking_gate_fails_unmet_target(self, make_orchestrator, rl_payload, registry, audit_log):
        """In blocking mode an unmet target fails the job after rl_training."""
        orchestrator = make_orchestrator(
            runners=scripted_runners(FAILING_MEASUREMENT),
            curriculum_gate_mode=CurriculumGateMode.BLOCKING,
        )

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.FAILED
        assert "Curriculum target for level simple not met" in job.error
        assert job.stages["rl_training"].status == StageStatus.COMPLETED
        assert job.stages["backtesting"].status == StageStatus.PENDING
        assert registry.list_models() == []
        assert audit_log.entries(event_type=AuditEventType.JOB_FAILED)[0].subject_ids == (job.job_id,)

    @pytest.mark.asyncio
    async def test_blocking_gate_passes_met_target(self, make_orchestrator, rl_payload):
        orchestrator = make_orchestrator(curriculum_gate_mode=CurriculumGateMode.BLOCKING)

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.COMPLETED


# ============================================================
# FAILURES
# ============================================================

class TestFailures:
    """Test internal errors in the background loop."""

    @pytest.mark.asyncio
    async def test_stage_error_fails_job(self, make_orchestrator, rl_payload, registry, audit_log):
        """A crashing runner fails the job without raising."""
        orchestrator = make_orchestrator(
            runners={PipelineStage.BACKTESTING: FailingRunner(PipelineStage.BACKTESTING)}
        )

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.FAILED
        assert job.error == "training backend crashed"
        assert job.end_time is not None
        assert job.current_stage == "Failed"
        assert job.stages["backtesting"].status == StageStatus.FAILED
        assert job.logs[-1].level == "error"
        assert job.model_id is None
        assert registry.list_models() == []
        assert [e.event_type for e in audit_log.entries(subject_id=job.job_id)][-1] == AuditEventType.JOB_FAILED

    @pytest.mark.asyncio
    async def test_failed_job_frees_the_slot(self, make_orchestrator, rl_payload):
        orchestrator = make_orchestrator(
            runners={PipelineStage.DATA_PREP: FailingRunner(PipelineStage.DATA_PREP)}
        )

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert orchestrator.active_job() is None

    @pytest.mark.asyncio
    async def test_stage_deadline_fails_job(self, make_orchestrator, rl_payload):
        """A stage running past stage_timeout_seconds fails the job."""
        orchestrator = make_orchestrator(
            runners={PipelineStage.DATA_PREP: StallingRunner(PipelineStage.DATA_PREP)},
            stage_timeout_seconds=0.05,
        )

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        assert job.status == JobStatus.FAILED
        assert "deadline" in job.error
        assert job.stages["data_prep"].status == StageStatus.FAILED


# ============================================================
# CANCELLATION
# ============================================================

class TestCancellation:
    """Test cancel() and cooperative cancellation of the background task."""

    @pytest.mark.asyncio
    async def test_cancel_running_job(self, make_orchestrator, rl_payload, registry, audit_log):
        """An in-flight update is discarded once the job is cancelled."""
        runner, hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await asyncio.wait_for(runner.waiting.wait(), timeout=2)

        cancelled = await orchestrator.cancel(submitted.job_id, actor="bob")
        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.end_time is not None
        assert cancelled.logs[-1].message == "Job cancelled by bob"
        assert cancelled.stages["rl_training"].status == StageStatus.CANCELLED

        hold.set()
        await asyncio.sleep(0.05)

        after = orchestrator.get_status(submitted.job_id)
        assert after.status == JobStatus.CANCELLED
        assert len(after.logs) == len(cancelled.logs)
        assert after.progress == cancelled.progress
        assert after.model_id is None
        assert registry.list_models() == []
        assert audit_log.entries(event_type=AuditEventType.JOB_CANCELLED)[0].actor == "bob"

    @pytest.mark.asyncio
    async def test_cancel_terminal_job_is_rejected(self, orchestrator, rl_payload):
        """Cancelling a completed job changes nothing."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        with pytest.raises(StateError, match="Cannot cancel job with status: completed"):
            await orchestrator.cancel(job.job_id, actor="bob")

        after = orchestrator.get_status(job.job_id)
        assert after.status == JobStatus.COMPLETED
        assert len(after.logs) == len(job.logs)

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.cancel("job_missing", actor="bob")

    @pytest.mark.asyncio
    async def test_cancel_frees_the_slot(self, make_orchestrator, rl_payload):
        """A new job can be submitted right after a cancel."""
        runner, hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})

        first = await orchestrator.submit(rl_payload, actor="alice")
        await asyncio.wait_for(runner.waiting.wait(), timeout=2)
        await orchestrator.cancel(first.job_id, actor="alice")

        second = await orchestrator.submit(rl_payload, actor="alice")
        assert second.status == JobStatus.PENDING
        hold.set()


# ============================================================
# READS AND SNAPSHOTS
# ============================================================

class TestReads:
    """Test get_status, list_jobs, wait_for and the snapshot stream."""

    @pytest.mark.asyncio
    async def test_get_status_unknown(self, orchestrator):
        with pytest.raises(NotFoundError, match="Training job not found: job_nope"):
            orchestrator.get_status("job_nope")

    @pytest.mark.asyncio
    async def test_reads_return_copies(self, orchestrator, rl_payload):
        """Mutating a returned job does not touch stored state."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        job = await orchestrator.wait_for(submitted.job_id, timeout=5)

        job.logs.clear()
        job.status = JobStatus.FAILED

        stored = orchestrator.get_status(job.job_id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.logs

    @pytest.mark.asyncio
    async def test_list_jobs_newest_first_and_filtered(self, orchestrator, rl_payload, sentiment_payload):
        first = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(first.job_id, timeout=5)
        second = await orchestrator.submit(sentiment_payload, actor="alice")
        await orchestrator.wait_for(second.job_id, timeout=5)

        assert [j.job_id for j in orchestrator.list_jobs()] == [second.job_id, first.job_id]
        only_rl = orchestrator.list_jobs(JobFilter(model_type=ModelType.RL_AGENT))
        assert [j.job_id for j in only_rl] == [first.job_id]
        assert orchestrator.list_jobs(JobFilter.active()) == []

    @pytest.mark.asyncio
    async def test_wait_for_times_out(self, make_orchestrator, rl_payload):
        runner, hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})

        submitted = await orchestrator.submit(rl_payload, actor="alice")

        with pytest.raises(asyncio.TimeoutError):
            await orchestrator.wait_for(submitted.job_id, timeout=0.05)
        hold.set()

    @pytest.mark.asyncio
    async def test_finished_jobs_release_their_events(self, orchestrator, rl_payload):
        """Nothing is kept per job once its task is done; waits fall back to the store."""
        job_ids = []
        for _ in range(3):
            submitted = await orchestrator.submit(rl_payload, actor="alice")
            await orchestrator.wait_for(submitted.job_id, timeout=5)
            await asyncio.gather(*orchestrator._tasks.values())
            job_ids.append(submitted.job_id)

        assert orchestrator._tasks == {}
        assert orchestrator._terminal_events == {}
        for job_id in job_ids:
            job = await orchestrator.wait_for(job_id, timeout=1)
            assert job.status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stream_snapshots(self, orchestrator, rl_payload):
        """The stream yields the requested number of snapshot lists."""
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(submitted.job_id, timeout=5)

        batches = [
            batch async for batch in orchestrator.stream_snapshots(interval_seconds=0.01, max_snapshots=2)
        ]

        assert len(batches) == 2
        snapshot = batches[0][0]
        assert isinstance(snapshot, JobSnapshot)
        assert snapshot.job_id == submitted.job_id
        assert snapshot.status == JobStatus.COMPLETED
        assert snapshot.progress == 100.0
        assert snapshot.curriculum_passed is True

    @pytest.mark.asyncio
    async def test_stream_snapshots_filtered(self, orchestrator, rl_payload):
        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await orchestrator.wait_for(submitted.job_id, timeout=5)

        batches = [
            batch async for batch in orchestrator.stream_snapshots(
                job_filter=JobFilter.active(), max_snapshots=1
            )
        ]
        assert batches == [[]]


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:
    """Test construction, start() recovery and stop()."""

    def test_invalid_config_is_rejected(self, job_store, registry, audit_log):
        with pytest.raises(ConfigurationError):
            TrainingOrchestrator(OrchestratorConfig(steps_per_stage=0), job_store, registry, audit_log)

    def test_missing_runner_is_rejected(self, config, job_store, registry, audit_log):
        runners = scripted_runners()
        del runners[PipelineStage.VALIDATION]

        with pytest.raises(ConfigurationError, match="validation"):
            TrainingOrchestrator(config, job_store, registry, audit_log, runners=runners)

    @pytest.mark.asyncio
    async def test_start_recovers_orphaned_jobs(self, orchestrator, job_store, audit_log):
        """Jobs left active by a previous process are failed on start."""
        orphan = TrainingJob(
            job_id="job_orphan",
            model_type=ModelType.FORECAST,
            coins=["BTC"],
            lookback_days=30,
            algorithm="LSTM",
            status=JobStatus.RL_TRAINING,
        )
        job_store.create(orphan)

        recovered = await orchestrator.start()

        assert recovered == 1
        assert orchestrator.is_running
        job = orchestrator.get_status("job_orphan")
        assert job.status == JobStatus.FAILED
        assert "restarted" in job.error
        assert audit_log.entries(subject_id="job_orphan")[0].event_type == AuditEventType.JOB_FAILED

        assert await orchestrator.start() == 0

    @pytest.mark.asyncio
    async def test_stop_fails_running_jobs(self, make_orchestrator, rl_payload):
        """Stopping mid-stage fails the job being driven."""
        runner, _hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})
        await orchestrator.start()

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        await asyncio.wait_for(runner.waiting.wait(), timeout=2)

        await orchestrator.stop()

        job = orchestrator.get_status(submitted.job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "Orchestrator stopped while job was running"
        assert job.stages["rl_training"].status == StageStatus.FAILED
        assert not orchestrator.is_running

    @pytest.mark.asyncio
    async def test_stop_wakes_waiters(self, make_orchestrator, rl_payload):
        runner, _hold = held_rl_runner()
        orchestrator = make_orchestrator(runners={PipelineStage.RL_TRAINING: runner})
        await orchestrator.start()

        submitted = await orchestrator.submit(rl_payload, actor="alice")
        waiter = asyncio.create_task(orchestrator.wait_for(submitted.job_id, timeout=5))
        await asyncio.wait_for(runner.waiting.wait(), timeout=2)

        await orchestrator.stop()

        job = await asyncio.wait_for(waiter, timeout=2)
        assert job.status == JobStatus.FAILED
        assert orchestrator._terminal_events == {}
