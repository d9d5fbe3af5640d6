"""
Model Registry Service.

This service handles:
- Registering the model produced by a completed training job
- Deploy / promote with approval, archiving the previous model
- Shadow test start and stop
- Rollback from the deployed model to an earlier one
- Audit logging of every mutation

All mutations run under one asyncio.Lock, so no caller ever
observes zero or two deployed models mid-operation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from audit.log import AuditEventType, AuditLog
from core.clock import now_utc
from core.exceptions import (
    ApprovalRequiredError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from training_engine.types import JobStatus, TrainingJob

from .store import ModelStore
from .types import (
    AlgorithmInfo,
    Explainability,
    Model,
    ModelFilter,
    ModelPerformance,
    ModelStatus,
    ShadowTest,
    ShadowTestResults,
    ShadowTestStatus,
    can_transition,
)

logger = logging.getLogger(__name__)


@dataclass
class RollbackResult:
    """Both sides of a rollback."""

    from_model: Model
    to_model: Model


def model_name_for(job: TrainingJob) -> str:
    """Human readable name shared by every version trained from the same recipe."""
    return f"{'-'.join(job.coins)} {job.model_type.value} {job.algorithm}"


# =============================================================
# MODEL REGISTRY
# =============================================================

class ModelRegistry:
    """Governs the model lifecycle."""

    def __init__(self, store: ModelStore, audit_log: AuditLog):
        self._store = store
        self._audit = audit_log
        self._lock = asyncio.Lock()

    # =========================================================
    # REGISTRATION
    # =========================================================

    async def register_model(self, job: TrainingJob, actor: str) -> Model:
        """
        Create the trained model for a job that finished its pipeline.

        Version is the number of models sharing the name, plus one.
        """
        if job.status.is_terminal() and job.status != JobStatus.COMPLETED:
            raise StateError(
                f"Cannot register a model for a {job.status.value} job",
                current_state=job.status.value,
                subject_id=job.job_id,
            )

        async with self._lock:
            name = model_name_for(job)
            existing = self._store.list(ModelFilter(name=name))
            metrics = job.metrics

            model = Model(
                model_id=f"model_{uuid.uuid4().hex[:12]}",
                name=name,
                version=f"{len(existing) + 1}.0.0",
                model_type=job.model_type,
                status=ModelStatus.TRAINED,
                performance=ModelPerformance(
                    sharpe_ratio=float(metrics.sharpe_ratio or 0.0) if metrics else 0.0,
                    max_drawdown=float(metrics.max_drawdown or 0.0) if metrics else 0.0,
                    win_rate=float(metrics.win_rate or 0.0) if metrics else 0.0,
                    accuracy=float(metrics.accuracy or 0.0) if metrics else 0.0,
                    total_trades=int(metrics.total_trades or 0) if metrics else 0,
                ),
                algorithm_info=AlgorithmInfo(
                    algorithm=job.algorithm,
                    architecture=dict(job.architecture),
                    tune_flag=job.tune_flag,
                    interval=job.interval,
                    lookback_days=job.lookback_days,
                    coins=list(job.coins),
                    dataset_version=job.dataset_version,
                    curriculum_level=job.curriculum_level.value,
                ),
                risk_profile=job.risk_profile,
                experiment=job.experiment,
                explainability=Explainability.from_importances(
                    metrics.feature_importance if metrics else {}
                ),
                source_job_id=job.job_id,
                created_by=actor,
                created_at=now_utc(),
            )

            self._store.create(model)
            self._audit.append(
                AuditEventType.MODEL_REGISTERED,
                [model.model_id, job.job_id],
                actor,
                {"name": model.name, "version": model.version},
            )

        logger.info(f"Model registered: {model.model_id} ({model.name} v{model.version})")
        return model.copy()

    # =========================================================
    # DEPLOY / PROMOTE
    # =========================================================

    async def deploy(self, model_id: str, approval_flag: bool, actor: str) -> Model:
        """
        Deploy a trained model, archiving the one currently deployed.

        Raises:
            ApprovalRequiredError: approval_flag is falsy
            NotFoundError: unknown model
            ConflictError: model already deployed
            StateError: model is not trained
        """
        if not approval_flag:
            raise ApprovalRequiredError("deploy", subject_id=model_id)

        async with self._lock:
            model = self._require(model_id)

            if model.status == ModelStatus.DEPLOYED:
                raise ConflictError(f"Model is already deployed: {model_id}", blocking_id=model_id)
            # archived -> deployed is reserved for rollback
            if model.status != ModelStatus.TRAINED:
                raise StateError(
                    f"Cannot deploy model with status: {model.status.value}",
                    current_state=model.status.value,
                    subject_id=model_id,
                )

            now = now_utc()
            previous = self._store.list(ModelFilter(statuses=frozenset({ModelStatus.DEPLOYED})))
            for old in previous:
                old.status = ModelStatus.ARCHIVED
                old.archived_at = now

            model.status = ModelStatus.DEPLOYED
            model.deployed_at = now

            self._store.save_all([*previous, model])
            self._audit.append(
                AuditEventType.MODEL_DEPLOYED,
                [model_id, *(old.model_id for old in previous)],
                actor,
                {"archived": [old.model_id for old in previous]},
            )

        logger.info(
            f"Model deployed: {model_id} by {actor}"
            + (f", archived {', '.join(o.model_id for o in previous)}" if previous else "")
        )
        return model.copy()

    async def promote(self, model_id: str, approval_flag: bool, actor: str) -> Model:
        """Alias of deploy()."""
        return await self.deploy(model_id, approval_flag, actor)

    # =========================================================
    # SHADOW TESTING
    # =========================================================

    async def start_shadow(self, model_id: str, actor: str) -> Model:
        """
        Put a trained model into shadow and open a shadow test.

        Raises:
            NotFoundError: unknown model
            ConflictError: model already in shadow
            StateError: model is not trained
        """
        async with self._lock:
            model = self._require(model_id)

            if model.status == ModelStatus.SHADOW:
                raise ConflictError(f"Model is already in shadow: {model_id}", blocking_id=model_id)
            if not can_transition(model.status, ModelStatus.SHADOW):
                raise StateError(
                    f"Cannot start shadow for model with status: {model.status.value}",
                    current_state=model.status.value,
                    subject_id=model_id,
                )

            now = now_utc()
            model.status = ModelStatus.SHADOW
            model.shadow_start = now
            model.shadow_end = None

            test = ShadowTest(
                shadow_id=f"shadow_{uuid.uuid4().hex[:12]}",
                model_id=model_id,
                start_time=now,
                started_by=actor,
            )

            self._store.save_all([model], [test])
            self._audit.append(
                AuditEventType.MODEL_SHADOW_STARTED,
                [model_id, test.shadow_id],
                actor,
            )

        logger.info(f"Shadow test started: {test.shadow_id} for {model_id} by {actor}")
        return model.copy()

    async def stop_shadow(
        self,
        model_id: str,
        actor: str,
        results: Optional[ShadowTestResults] = None,
    ) -> Model:
        """
        Return a shadow model to trained and close its shadow test.

        Raises:
            NotFoundError: unknown model
            StateError: model is not in shadow
        """
        async with self._lock:
            model = self._require(model_id)

            if model.status != ModelStatus.SHADOW:
                raise StateError(
                    f"Model is not in shadow: {model_id}",
                    current_state=model.status.value,
                    subject_id=model_id,
                )

            now = now_utc()
            model.status = ModelStatus.TRAINED
            model.shadow_end = now

            running = self._store.list_shadow_tests(model_id=model_id, status=ShadowTestStatus.RUNNING)
            for test in running:
                test.status = ShadowTestStatus.STOPPED
                test.end_time = now
                test.stopped_by = actor
                if results is not None:
                    test.results = results

            self._store.save_all([model], running)
            self._audit.append(
                AuditEventType.MODEL_SHADOW_STOPPED,
                [model_id, *(t.shadow_id for t in running)],
                actor,
                {"results": results.to_dict() if results else None},
            )

        logger.info(f"Shadow test stopped for {model_id} by {actor}")
        return model.copy()

    # =========================================================
    # ROLLBACK
    # =========================================================

    async def rollback(
        self,
        from_model_id: str,
        to_model_id: str,
        approval_flag: bool,
        actor: str,
    ) -> RollbackResult:
        """
        Replace the deployed model with an earlier one.

        The only way out of archived.

        Raises:
            ApprovalRequiredError: approval_flag is falsy
            NotFoundError: either model unknown
            ValidationError: both ids are the same
            StateError: from is not deployed, or to is not archived/trained
        """
        if not approval_flag:
            raise ApprovalRequiredError("rollback", subject_id=from_model_id)

        async with self._lock:
            from_model = self._require(from_model_id)
            to_model = self._require(to_model_id)

            if from_model_id == to_model_id:
                raise ValidationError(
                    "Rollback source and target must differ",
                    field_errors={"toModelId": ["must differ from fromModelId"]},
                )
            if from_model.status != ModelStatus.DEPLOYED:
                raise StateError(
                    f"Rollback source is not deployed: {from_model_id}",
                    current_state=from_model.status.value,
                    subject_id=from_model_id,
                )
            if to_model.status not in (ModelStatus.ARCHIVED, ModelStatus.TRAINED):
                raise StateError(
                    f"Cannot roll back to model with status: {to_model.status.value}",
                    current_state=to_model.status.value,
                    subject_id=to_model_id,
                )

            now = now_utc()
            from_model.status = ModelStatus.ARCHIVED
            from_model.archived_at = now
            to_model.status = ModelStatus.DEPLOYED
            to_model.deployed_at = now
            to_model.archived_at = None

            self._store.save_all([from_model, to_model])
            self._audit.append(
                AuditEventType.MODEL_ROLLED_BACK,
                [from_model_id, to_model_id],
                actor,
            )

        logger.warning(f"Model rolled back: {from_model_id} -> {to_model_id} by {actor}")
        return RollbackResult(from_model=from_model.copy(), to_model=to_model.copy())

    # =========================================================
    # READS
    # =========================================================

    def get_model(self, model_id: str) -> Model:
        return self._require(model_id)

    def list_models(self, model_filter: Optional[ModelFilter] = None) -> List[Model]:
        return self._store.list(model_filter)

    def deployed_model(self) -> Optional[Model]:
        deployed = self._store.list(ModelFilter(statuses=frozenset({ModelStatus.DEPLOYED})))
        return deployed[0] if deployed else None

    def get_shadow_tests(self, model_id: Optional[str] = None) -> List[ShadowTest]:
        return self._store.list_shadow_tests(model_id=model_id)

    def _require(self, model_id: str) -> Model:
        model = self._store.get(model_id)
        if model is None:
            raise NotFoundError("Model", model_id)
        return model


__all__ = [
    "ModelRegistry",
    "RollbackResult",
    "model_name_for",
]
