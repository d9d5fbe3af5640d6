"""
Training Engine - Orchestrator.

============================================================
RESPONSIBILITY
============================================================
Accepts training submissions and drives each job through
its pipeline.

- Enforces the single-active-job invariant
- Runs stage progression as one background task per job
- Applies stage updates as ticks, checking for cancellation
  before each one
- Evaluates the curriculum gate during rl_training
- Registers the resulting model on completion
- Fires the completion callback, best effort

============================================================
CONCURRENCY
============================================================
One asyncio.Lock guards every read-modify-write of a job:
submit, cancel, and each progression tick. A tick re-reads
the job under the lock and does nothing once the job is
terminal, so a cancel always wins over in-flight work.

The model registry has its own lock and never takes this
one, so holding the job lock while registering a model
cannot deadlock.

============================================================
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Dict, List, Optional

from audit.log import AuditEventType, AuditLog
from core.clock import now_utc
from core.exceptions import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    StageExecutionError,
    StateError,
)

from .callbacks import CallbackDispatcher
from .config import CurriculumGateMode, OrchestratorConfig
from .curriculum import CurriculumGate, apply_gate_result, initial_curriculum_state
from .schemas import TrainingJobRequest, parse_submission
from .stages import StageRunner, StageUpdate, build_default_runners
from .state_machine import JobStateMachine
from .store import JobFilter, JobStore
from .types import (
    ExperimentInfo,
    JobMetrics,
    JobStatus,
    PipelineStage,
    StageState,
    StageStatus,
    TrainingJob,
    compute_overall_progress,
)

if TYPE_CHECKING:
    from model_registry.registry import ModelRegistry


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
STOPPED_MESSAGE = "Orchestrator stopped while job was running"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


# ============================================================
# SNAPSHOT
# ============================================================

@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time view of one job for the live status stream."""

    job_id: str
    status: JobStatus
    current_stage: str
    progress: float
    model_id: Optional[str]
    curriculum_passed: Optional[bool]
    at: datetime

    @classmethod
    def from_job(cls, job: TrainingJob, at: datetime) -> "JobSnapshot":
        return cls(
            job_id=job.job_id,
            status=job.status,
            current_stage=job.current_stage,
            progress=job.progress,
            model_id=job.model_id,
            curriculum_passed=job.curriculum.criteria.passed if job.curriculum else None,
            at=at,
        )


# ============================================================
# ORCHESTRATOR
# ============================================================

class TrainingOrchestrator:
    """
    Training job orchestrator.

    Usage:
        orchestrator = TrainingOrchestrator(config, jobs, registry, audit)
        await orchestrator.start()
        job = await orchestrator.submit(payload, actor="alice")
        job = await orchestrator.wait_for(job.job_id)
        await orchestrator.stop()
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        job_store: JobStore,
        registry: "ModelRegistry",
        audit_log: AuditLog,
        runners: Optional[Dict[PipelineStage, StageRunner]] = None,
        gate: Optional[CurriculumGate] = None,
        callbacks: Optional[CallbackDispatcher] = None,
    ):
        config.ensure_valid()

        self._config = config
        self._jobs = job_store
        self._registry = registry
        self._audit = audit_log
        self._runners = runners if runners is not None else build_default_runners(config)
        self._gate = gate or CurriculumGate()
        self._callbacks = callbacks or CallbackDispatcher(
            timeout_seconds=config.callback_timeout_seconds,
            enabled=config.callback_enabled,
        )

        missing = [s.stage_id for s in PipelineStage.ordered() if s not in self._runners]
        if missing:
            raise ConfigurationError(
                f"No stage runner for: {', '.join(missing)}",
                errors=[f"missing runner for {stage_id}" for stage_id in missing],
            )

        self._lock = asyncio.Lock()
        self._state_machine = JobStateMachine()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._terminal_events: Dict[str, asyncio.Event] = {}
        self._running = False

    # =========================================================
    # PROPERTIES
    # =========================================================

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def state_machine(self) -> JobStateMachine:
        return self._state_machine

    # =========================================================
    # LIFECYCLE
    # =========================================================

    async def start(self) -> int:
        """
        Start the orchestrator.

        Jobs left non-terminal by a previous process have nobody
        driving them; they are failed so the active-job slot is
        free again.

        Returns:
            Number of recovered jobs
        """
        if self._running:
            logger.warning("Orchestrator already running")
            return 0

        logger.info("=== TRAINING ORCHESTRATOR STARTUP ===")

        recovered = 0
        async with self._lock:
            for job in self._jobs.list(JobFilter.active()):
                if job.job_id in self._tasks:
                    continue
                self._mark_failed(job, "Interrupted: orchestrator restarted while job was active")
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} orphaned training job(s)")

        self._running = True
        return recovered

    async def stop(self) -> None:
        """
        Stop the orchestrator.

        Background tasks are cancelled; the jobs they were driving
        are failed.
        """
        logger.info("=== TRAINING ORCHESTRATOR SHUTDOWN ===")

        running = dict(self._tasks)
        events = {job_id: self._terminal_events.get(job_id) for job_id in running}
        for task in running.values():
            task.cancel()
        if running:
            await asyncio.gather(*running.values(), return_exceptions=True)

        # A task cancelled before its first step never ran its own handler
        for job_id, event in events.items():
            await self._fail_job(job_id, STOPPED_MESSAGE)
            if event is not None:
                event.set()

        await self._callbacks.close()
        self._running = False

    # =========================================================
    # SUBMISSION
    # =========================================================

    async def submit(self, payload: Dict, actor: str) -> TrainingJob:
        """
        Validate and queue a training job.

        Returns immediately; stage progression runs in the background.

        Raises:
            ValidationError: payload is invalid, nothing is created
            ConflictError: another job is active, nothing is created
        """
        request = parse_submission(payload)

        async with self._lock:
            active = self._jobs.find_active()
            if active is not None:
                raise ConflictError(
                    f"Another training job is active: {active.job_id} ({active.status.value})",
                    blocking_id=active.job_id,
                )

            job = self._new_job(request, actor)
            self._jobs.create(job)
            self._audit.append(
                AuditEventType.JOB_SUBMITTED,
                [job.job_id],
                actor,
                {"model_type": job.model_type.value, "coins": list(job.coins)},
            )

            self._terminal_events[job.job_id] = asyncio.Event()
            task = asyncio.create_task(self._run_job(job.job_id), name=f"training-{job.job_id}")
            self._tasks[job.job_id] = task
            task.add_done_callback(lambda _t, job_id=job.job_id: self._forget(job_id))

        logger.info(f"Training job started: {job.job_id} by {actor}")
        return job.copy()

    def _new_job(self, request: TrainingJobRequest, actor: str) -> TrainingJob:
        now = now_utc()
        job_id = f"job_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:6]}"

        job = TrainingJob(
            job_id=job_id,
            model_type=request.model_type,
            coins=list(request.coins),
            lookback_days=request.lookback_days,
            interval=request.interval,
            algorithm=request.algorithm,
            architecture=dict(request.architecture),
            environment_config=dict(request.environment_config),
            tune_flag=request.tune_flag,
            risk_profile=request.risk_profile,
            dataset_version=request.dataset_version,
            curriculum_level=request.curriculum_level,
            callback_url=request.callback_url,
            submitted_by=actor,
            start_time=now,
        )

        pipeline = set(job.pipeline)
        job.stages = {
            stage.stage_id: StageState(
                status=StageStatus.PENDING if stage in pipeline else StageStatus.SKIPPED
            )
            for stage in PipelineStage.ordered()
        }
        job.experiment = ExperimentInfo(
            experiment_id=f"exp_{job.model_type.value}_{'-'.join(job.coins).lower()}",
            run_id=f"run_{uuid.uuid4().hex[:12]}",
            tracking_uri=self._config.tracking_uri,
        )
        job.curriculum = initial_curriculum_state(job.curriculum_level)
        job.current_stage = "Queued"
        self._log(job, now, "Job queued for training")
        return job

    # =========================================================
    # CANCELLATION
    # =========================================================

    async def cancel(self, job_id: str, actor: str) -> TrainingJob:
        """
        Cancel a non-terminal job.

        Cooperative: an update already in flight is discarded at
        the next tick.

        Raises:
            NotFoundError: unknown job
            StateError: job already terminal; nothing changes
        """
        async with self._lock:
            job = self._require(job_id)

            if job.is_terminal():
                raise StateError(
                    f"Cannot cancel job with status: {job.status.value}",
                    current_state=job.status.value,
                    subject_id=job_id,
                )

            now = now_utc()
            stage_state = job.stages.get(job.status.value)
            self._state_machine.transition(job, JobStatus.CANCELLED, reason=f"cancelled by {actor}")

            if stage_state is not None and stage_state.status == StageStatus.RUNNING:
                stage_state.status = StageStatus.CANCELLED
                stage_state.completed_at = now
            job.current_stage = "Cancelled"
            job.end_time = now
            self._log(job, now, f"Job cancelled by {actor}", level="warning")

            self._jobs.update(job)
            self._audit.append(AuditEventType.JOB_CANCELLED, [job_id], actor)
            self._signal_terminal(job_id)

        logger.info(f"Training job cancelled: {job_id} by {actor}")
        return job.copy()

    # =========================================================
    # READS
    # =========================================================

    def get_status(self, job_id: str) -> TrainingJob:
        return self._require(job_id)

    def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[TrainingJob]:
        return self._jobs.list(job_filter)

    def active_job(self) -> Optional[TrainingJob]:
        return self._jobs.find_active()

    async def wait_for(self, job_id: str, timeout: Optional[float] = None) -> TrainingJob:
        """
        Wait until a job reaches a terminal status.

        Raises:
            NotFoundError: unknown job
            StateError: job is active but not driven by this orchestrator
            asyncio.TimeoutError: timeout elapsed first
        """
        job = self._require(job_id)
        if job.is_terminal():
            return job

        event = self._terminal_events.get(job_id)
        if event is None:
            raise StateError(
                f"Job is not driven by this orchestrator: {job_id}",
                current_state=job.status.value,
                subject_id=job_id,
            )

        await asyncio.wait_for(event.wait(), timeout=timeout)
        return self._require(job_id)

    async def stream_snapshots(
        self,
        interval_seconds: Optional[float] = None,
        job_filter: Optional[JobFilter] = None,
        max_snapshots: Optional[int] = None,
    ) -> AsyncIterator[List[JobSnapshot]]:
        """
        Push periodic snapshots of matching jobs.

        Args:
            interval_seconds: Delay between snapshots
            job_filter: Which jobs to include
            max_snapshots: Stop after this many, None streams forever
        """
        interval = interval_seconds or self._config.snapshot_interval_seconds
        sent = 0
        while max_snapshots is None or sent < max_snapshots:
            at = now_utc()
            yield [JobSnapshot.from_job(job, at) for job in self._jobs.list(job_filter)]
            sent += 1
            if max_snapshots is not None and sent >= max_snapshots:
                break
            await asyncio.sleep(interval)

    # =========================================================
    # BACKGROUND PROGRESSION
    # =========================================================

    async def _run_job(self, job_id: str) -> None:
        """
        Drive one job through its pipeline.

        Never raises except to propagate task cancellation.
        """
        stage: Optional[PipelineStage] = None
        try:
            job = self._require(job_id)
            for stage in job.pipeline:
                if not await self._begin_stage(job_id, stage):
                    return
                if not await self._run_stage(job_id, stage):
                    return
                if not await self._finish_stage(job_id, stage):
                    return
            await self._complete(job_id)

        except asyncio.CancelledError:
            await self._fail_job(job_id, STOPPED_MESSAGE)
            raise

        except Exception as e:
            where = f" during {stage.stage_id}" if stage else ""
            logger.error(f"Training job {job_id} failed{where}: {e}", exc_info=True)
            await self._fail_job(job_id, str(e))

    async def _begin_stage(self, job_id: str, stage: PipelineStage) -> bool:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal():
                return False

            now = now_utc()
            self._state_machine.transition(job, stage.job_status, reason="stage started")
            job.current_stage = stage.label

            state = job.stages[stage.stage_id]
            state.status = StageStatus.RUNNING
            state.started_at = now

            self._log(job, now, f"Stage started: {stage.label}", stage=stage.stage_id)
            self._jobs.update(job)
        return True

    async def _run_stage(self, job_id: str, stage: PipelineStage) -> bool:
        """
        Consume the runner's updates under the stage deadline.

        Raises:
            StageExecutionError: the stage ran past its deadline
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.stage_timeout_seconds
        deadline = loop.time() + timeout

        updates = self._runners[stage].run(self._require(job_id))
        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise StageExecutionError(
                        f"Stage {stage.stage_id} exceeded its {timeout}s deadline",
                        stage=stage.stage_id,
                    )
                try:
                    update = await asyncio.wait_for(updates.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return True
                except asyncio.TimeoutError:
                    raise StageExecutionError(
                        f"Stage {stage.stage_id} exceeded its {timeout}s deadline",
                        stage=stage.stage_id,
                    )

                if not await self._apply_update(job_id, stage, update):
                    return False
        finally:
            aclose = getattr(updates, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _apply_update(self, job_id: str, stage: PipelineStage, update: StageUpdate) -> bool:
        """One tick. Returns False once the job is terminal."""
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal():
                logger.debug(f"Discarding {stage.stage_id} update for {job.status.value} job {job_id}")
                return False

            now = now_utc()
            state = job.stages[stage.stage_id]
            state.progress = max(state.progress, min(100.0, max(0.0, float(update.progress))))

            if update.message:
                self._log(job, now, update.message, stage=stage.stage_id)

            if update.metrics:
                if job.metrics is None:
                    job.metrics = JobMetrics()
                job.metrics.merge(update.metrics)

            if stage == PipelineStage.RL_TRAINING and update.curriculum and job.curriculum:
                self._evaluate_curriculum(job, update, now)

            job.progress = max(job.progress, compute_overall_progress(job))
            self._jobs.update(job)
        return True

    def _evaluate_curriculum(self, job: TrainingJob, update: StageUpdate, now: datetime) -> None:
        was_passed = job.curriculum.criteria.passed
        job.curriculum.criteria.record(update.curriculum)

        result = self._gate.evaluate(job)
        apply_gate_result(job.curriculum, result)

        if result.target_met and not was_passed:
            suffix = f", next level {result.next_level.value}" if result.next_level else ""
            self._log(
                job, now,
                f"Curriculum target met for level {job.curriculum_level.value}{suffix}",
                stage=PipelineStage.RL_TRAINING.stage_id,
            )

    async def _finish_stage(self, job_id: str, stage: PipelineStage) -> bool:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal():
                return False

            now = now_utc()
            state = job.stages[stage.stage_id]
            state.status = StageStatus.COMPLETED
            state.progress = 100.0
            state.completed_at = now
            if state.started_at is not None:
                state.duration_seconds = round((now - state.started_at).total_seconds(), 3)

            duration = state.duration_seconds or 0.0
            self._log(
                job, now,
                f"Stage completed: {stage.label} ({duration:.2f}s)",
                stage=stage.stage_id,
            )
            job.progress = max(job.progress, compute_overall_progress(job))

            if self._blocks_on_curriculum(job, stage):
                self._mark_failed(
                    job,
                    f"Curriculum target for level {job.curriculum_level.value} not met; "
                    f"repeat the level",
                )
                return False

            self._jobs.update(job)
        return True

    def _blocks_on_curriculum(self, job: TrainingJob, stage: PipelineStage) -> bool:
        return (
            stage == PipelineStage.RL_TRAINING
            and self._config.curriculum_gate_mode == CurriculumGateMode.BLOCKING
            and job.curriculum is not None
            and not job.curriculum.criteria.passed
        )

    async def _complete(self, job_id: str) -> None:
        async with self._lock:
            job = self._require(job_id)
            if job.is_terminal():
                return

            now = now_utc()
            if job.metrics is None:
                job.metrics = JobMetrics()
            if job.start_time is not None:
                job.metrics.extra["training_seconds"] = round((now - job.start_time).total_seconds(), 3)

            model = await self._registry.register_model(job, actor=job.submitted_by)

            job.model_id = model.model_id
            self._state_machine.transition(job, JobStatus.COMPLETED, reason="pipeline finished")
            job.current_stage = "Completed"
            job.progress = 100.0
            job.end_time = now
            self._log(job, now, f"Training completed successfully, model {model.model_id} registered")

            self._jobs.update(job)
            self._audit.append(
                AuditEventType.JOB_COMPLETED,
                [job_id, model.model_id],
                SYSTEM_ACTOR,
                {"model_id": model.model_id, "version": model.version},
            )
            self._signal_terminal(job_id)
            finished = job.copy()

        logger.info(f"Training job completed: {job_id} -> {finished.model_id}")

        if finished.callback_url:
            delivered = await self._callbacks.dispatch(
                finished.callback_url,
                {"event": "training_completed", "job": finished.to_dict()},
            )
            if not delivered:
                logger.warning(f"Completion callback for {job_id} was not delivered")

    # =========================================================
    # FAILURE HANDLING
    # =========================================================

    async def _fail_job(self, job_id: str, message: str) -> None:
        try:
            async with self._lock:
                job = self._jobs.get(job_id)
                if job is None or job.is_terminal():
                    return
                self._mark_failed(job, message)
        except Exception as e:
            logger.critical(f"Could not record failure of job {job_id}: {e}", exc_info=True)

    def _mark_failed(self, job: TrainingJob, message: str) -> None:
        """Fail a job. Caller holds the lock."""
        now = now_utc()
        stage_state = job.stages.get(job.status.value)
        stage_id = job.status.value if stage_state is not None else None

        self._state_machine.transition(job, JobStatus.FAILED, reason=message)

        if stage_state is not None and stage_state.status == StageStatus.RUNNING:
            stage_state.status = StageStatus.FAILED
            stage_state.completed_at = now
        job.current_stage = "Failed"
        job.error = message
        job.end_time = now
        self._log(job, now, f"Training failed: {message}", level="error", stage=stage_id)

        self._jobs.update(job)
        self._audit.append(AuditEventType.JOB_FAILED, [job.job_id], SYSTEM_ACTOR, {"error": message})
        self._signal_terminal(job.job_id)

    # =========================================================
    # HELPERS
    # =========================================================

    def _require(self, job_id: str) -> TrainingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError("Training job", job_id)
        return job

    def _signal_terminal(self, job_id: str) -> None:
        event = self._terminal_events.get(job_id)
        if event is not None:
            event.set()

    def _forget(self, job_id: str) -> None:
        # Waiters already hold the event; later waits read the terminal job from the store
        self._tasks.pop(job_id, None)
        self._terminal_events.pop(job_id, None)

    @staticmethod
    def _log(
        job: TrainingJob,
        at: datetime,
        message: str,
        level: str = "info",
        stage: Optional[str] = None,
    ) -> None:
        job.add_log(at, message, level=level, stage=stage)
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"[{job.job_id}] {message}")


__all__ = [
    "SYSTEM_ACTOR",
    "JobSnapshot",
    "TrainingOrchestrator",
]
