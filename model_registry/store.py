"""
Model Registry - Store.

============================================================
PURPOSE
============================================================
Persistence boundary for models and shadow tests.

- save_all() writes several records as one unit, so a deploy
  never leaves zero or two deployed models behind
- Reads return copies, newest first
- In-memory and SQL backed implementations

============================================================
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.exceptions import ConflictError, NotFoundError
from database.engine import get_db_session, transaction_scope
from database.models import ModelRecord, ShadowTestRecord
from training_engine.types import ModelType

from .types import Model, ModelFilter, ShadowTest, ShadowTestStatus


logger = logging.getLogger(__name__)


def _models_newest_first(models: Iterable[Model]) -> List[Model]:
    return sorted(models, key=lambda m: (m.created_at, m.model_id), reverse=True)


def _tests_newest_first(tests: Iterable[ShadowTest]) -> List[ShadowTest]:
    return sorted(tests, key=lambda t: (t.start_time, t.shadow_id), reverse=True)


def _filter_tests(
    tests: Iterable[ShadowTest],
    model_id: Optional[str],
    status: Optional[ShadowTestStatus],
) -> List[ShadowTest]:
    if model_id is not None:
        tests = [t for t in tests if t.model_id == model_id]
    if status is not None:
        tests = [t for t in tests if t.status == status]
    return _tests_newest_first(tests)


# ============================================================
# MODEL STORE INTERFACE
# ============================================================

class ModelStore(ABC):
    """Keyed store of Model and ShadowTest records."""

    @abstractmethod
    def create(self, model: Model) -> None:
        """
        Insert a new model.

        Raises:
            ConflictError: If the model id is already taken
        """

    @abstractmethod
    def get(self, model_id: str) -> Optional[Model]:
        """Copy of the model, or None."""

    @abstractmethod
    def save_all(
        self,
        models: Sequence[Model],
        shadow_tests: Sequence[ShadowTest] = (),
    ) -> None:
        """
        Write existing models and upsert shadow tests atomically.

        Raises:
            NotFoundError: If any model does not exist; nothing is written
        """

    @abstractmethod
    def list(self, model_filter: Optional[ModelFilter] = None) -> List[Model]:
        """Copies of matching models, newest first."""

    @abstractmethod
    def list_shadow_tests(
        self,
        model_id: Optional[str] = None,
        status: Optional[ShadowTestStatus] = None,
    ) -> List[ShadowTest]:
        """Shadow tests, newest first."""


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryModelStore(ModelStore):
    """Dictionary-backed store holding deep copies."""

    def __init__(self):
        self._models: Dict[str, Model] = {}
        self._shadow_tests: Dict[str, ShadowTest] = {}
        self._lock = threading.Lock()

    def create(self, model: Model) -> None:
        with self._lock:
            if model.model_id in self._models:
                raise ConflictError(f"Model already exists: {model.model_id}", blocking_id=model.model_id)
            self._models[model.model_id] = copy.deepcopy(model)

    def get(self, model_id: str) -> Optional[Model]:
        with self._lock:
            model = self._models.get(model_id)
            return copy.deepcopy(model) if model else None

    def save_all(
        self,
        models: Sequence[Model],
        shadow_tests: Sequence[ShadowTest] = (),
    ) -> None:
        with self._lock:
            for model in models:
                if model.model_id not in self._models:
                    raise NotFoundError("Model", model.model_id)
            for model in models:
                self._models[model.model_id] = copy.deepcopy(model)
            for test in shadow_tests:
                self._shadow_tests[test.shadow_id] = copy.deepcopy(test)

    def list(self, model_filter: Optional[ModelFilter] = None) -> List[Model]:
        model_filter = model_filter or ModelFilter()
        with self._lock:
            matched = [copy.deepcopy(m) for m in self._models.values() if model_filter.matches(m)]

        models = _models_newest_first(matched)
        if model_filter.limit is not None:
            models = models[:model_filter.limit]
        return models

    def list_shadow_tests(
        self,
        model_id: Optional[str] = None,
        status: Optional[ShadowTestStatus] = None,
    ) -> List[ShadowTest]:
        with self._lock:
            tests = [copy.deepcopy(t) for t in self._shadow_tests.values()]
        return _filter_tests(tests, model_id, status)


# ============================================================
# SQL STORE
# ============================================================

class SqlModelStore(ModelStore):
    """Store backed by the models and shadow_tests tables."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _apply_model(record: ModelRecord, model: Model) -> None:
        record.name = model.name
        record.model_type = model.model_type.value
        record.status = model.status.value
        record.job_id = model.source_job_id
        record.created_at = model.created_at
        record.payload = model.to_dict()

    @staticmethod
    def _apply_test(record: ShadowTestRecord, test: ShadowTest) -> None:
        record.model_id = test.model_id
        record.status = test.status.value
        record.start_time = test.start_time
        record.payload = test.to_dict()

    def create(self, model: Model) -> None:
        with transaction_scope(self._session_factory) as session:
            if session.get(ModelRecord, model.model_id) is not None:
                raise ConflictError(f"Model already exists: {model.model_id}", blocking_id=model.model_id)
            record = ModelRecord(model_id=model.model_id)
            self._apply_model(record, model)
            session.add(record)
        logger.debug(f"Persisted model {model.model_id}")

    def get(self, model_id: str) -> Optional[Model]:
        with get_db_session(self._session_factory) as session:
            record = session.get(ModelRecord, model_id)
            return Model.from_dict(record.payload) if record else None

    def save_all(
        self,
        models: Sequence[Model],
        shadow_tests: Sequence[ShadowTest] = (),
    ) -> None:
        with transaction_scope(self._session_factory) as session:
            for model in models:
                record = session.get(ModelRecord, model.model_id)
                if record is None:
                    raise NotFoundError("Model", model.model_id)
                self._apply_model(record, model)

            for test in shadow_tests:
                record = session.get(ShadowTestRecord, test.shadow_id)
                if record is None:
                    record = ShadowTestRecord(test_id=test.shadow_id)
                    session.add(record)
                self._apply_test(record, test)

    def list(self, model_filter: Optional[ModelFilter] = None) -> List[Model]:
        model_filter = model_filter or ModelFilter()
        query = select(ModelRecord)

        if model_filter.statuses is not None:
            query = query.where(ModelRecord.status.in_([s.value for s in model_filter.statuses]))
        if model_filter.model_type is not None:
            query = query.where(ModelRecord.model_type == ModelType(model_filter.model_type).value)
        if model_filter.name is not None:
            query = query.where(ModelRecord.name == model_filter.name)

        with get_db_session(self._session_factory) as session:
            models = [Model.from_dict(r.payload) for r in session.scalars(query)]

        models = _models_newest_first(models)
        if model_filter.limit is not None:
            models = models[:model_filter.limit]
        return models

    def list_shadow_tests(
        self,
        model_id: Optional[str] = None,
        status: Optional[ShadowTestStatus] = None,
    ) -> List[ShadowTest]:
        query = select(ShadowTestRecord)
        if model_id is not None:
            query = query.where(ShadowTestRecord.model_id == model_id)
        if status is not None:
            query = query.where(ShadowTestRecord.status == status.value)

        with get_db_session(self._session_factory) as session:
            tests = [ShadowTest.from_dict(r.payload) for r in session.scalars(query)]
        return _tests_newest_first(tests)


__all__ = [
    "ModelStore",
    "InMemoryModelStore",
    "SqlModelStore",
]
