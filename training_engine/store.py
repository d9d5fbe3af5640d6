"""
Training Engine - Job Store.

============================================================
PURPOSE
============================================================
Persistence boundary for training jobs.

- Callers never share objects with the store; every read and
  write goes through a copy
- list() returns newest first (start_time descending)
- In-memory and SQL backed implementations

============================================================
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.exceptions import ConflictError, NotFoundError
from database.engine import get_db_session, transaction_scope
from database.models import TrainingJobRecord

from .types import JobStatus, ModelType, TrainingJob


logger = logging.getLogger(__name__)

ACTIVE_STATUSES: FrozenSet[JobStatus] = frozenset(s for s in JobStatus if s.is_active())

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


# ============================================================
# FILTER
# ============================================================

@dataclass
class JobFilter:
    """Query filter for list()."""

    statuses: Optional[FrozenSet[JobStatus]] = None
    model_type: Optional[ModelType] = None
    limit: Optional[int] = None

    @classmethod
    def active(cls) -> "JobFilter":
        return cls(statuses=ACTIVE_STATUSES)

    def matches(self, job: TrainingJob) -> bool:
        if self.statuses is not None and job.status not in self.statuses:
            return False
        if self.model_type is not None and job.model_type != ModelType(self.model_type):
            return False
        return True


def _sort_newest_first(jobs: Iterable[TrainingJob]) -> List[TrainingJob]:
    return sorted(
        jobs,
        key=lambda j: (j.start_time or _EPOCH, j.job_id),
        reverse=True,
    )


# ============================================================
# JOB STORE INTERFACE
# ============================================================

class JobStore(ABC):
    """Keyed store of TrainingJob records."""

    @abstractmethod
    def create(self, job: TrainingJob) -> None:
        """
        Insert a new job.

        Raises:
            ConflictError: If the job id is already taken
        """

    @abstractmethod
    def get(self, job_id: str) -> Optional[TrainingJob]:
        """Copy of the job, or None."""

    @abstractmethod
    def update(self, job: TrainingJob) -> None:
        """
        Replace an existing job.

        Raises:
            NotFoundError: If the job does not exist
        """

    @abstractmethod
    def list(self, job_filter: Optional[JobFilter] = None) -> List[TrainingJob]:
        """Copies of matching jobs, newest first."""

    def find_active(self) -> Optional[TrainingJob]:
        """The non-terminal job, if any."""
        active = self.list(JobFilter(statuses=ACTIVE_STATUSES, limit=1))
        return active[0] if active else None


# ============================================================
# IN-MEMORY STORE
# ============================================================

class InMemoryJobStore(JobStore):
    """Dictionary-backed store holding deep copies."""

    def __init__(self):
        self._jobs: Dict[str, TrainingJob] = {}
        self._lock = threading.Lock()

    def create(self, job: TrainingJob) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ConflictError(f"Job already exists: {job.job_id}", blocking_id=job.job_id)
            self._jobs[job.job_id] = copy.deepcopy(job)

    def get(self, job_id: str) -> Optional[TrainingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def update(self, job: TrainingJob) -> None:
        with self._lock:
            if job.job_id not in self._jobs:
                raise NotFoundError("Training job", job.job_id)
            self._jobs[job.job_id] = copy.deepcopy(job)

    def list(self, job_filter: Optional[JobFilter] = None) -> List[TrainingJob]:
        job_filter = job_filter or JobFilter()
        with self._lock:
            matched = [copy.deepcopy(j) for j in self._jobs.values() if job_filter.matches(j)]

        jobs = _sort_newest_first(matched)
        if job_filter.limit is not None:
            jobs = jobs[:job_filter.limit]
        return jobs


# ============================================================
# SQL STORE
# ============================================================

class SqlJobStore(JobStore):
    """
    Store backed by the training_jobs table.

    The JSON payload is the full job; the other columns only
    serve filtering and ordering.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    @staticmethod
    def _apply(record: TrainingJobRecord, job: TrainingJob) -> None:
        record.model_type = job.model_type.value
        record.status = job.status.value
        record.start_time = job.start_time
        record.end_time = job.end_time
        record.model_id = job.model_id
        record.payload = job.to_dict()

    def create(self, job: TrainingJob) -> None:
        with transaction_scope(self._session_factory) as session:
            if session.get(TrainingJobRecord, job.job_id) is not None:
                raise ConflictError(f"Job already exists: {job.job_id}", blocking_id=job.job_id)
            record = TrainingJobRecord(job_id=job.job_id)
            self._apply(record, job)
            session.add(record)
        logger.debug(f"Persisted job {job.job_id}")

    def get(self, job_id: str) -> Optional[TrainingJob]:
        with get_db_session(self._session_factory) as session:
            record = session.get(TrainingJobRecord, job_id)
            return TrainingJob.from_dict(record.payload) if record else None

    def update(self, job: TrainingJob) -> None:
        with transaction_scope(self._session_factory) as session:
            record = session.get(TrainingJobRecord, job.job_id)
            if record is None:
                raise NotFoundError("Training job", job.job_id)
            self._apply(record, job)

    def list(self, job_filter: Optional[JobFilter] = None) -> List[TrainingJob]:
        job_filter = job_filter or JobFilter()
        query = select(TrainingJobRecord)

        if job_filter.statuses is not None:
            query = query.where(
                TrainingJobRecord.status.in_([s.value for s in job_filter.statuses])
            )
        if job_filter.model_type is not None:
            query = query.where(
                TrainingJobRecord.model_type == ModelType(job_filter.model_type).value
            )

        with get_db_session(self._session_factory) as session:
            jobs = [TrainingJob.from_dict(r.payload) for r in session.scalars(query)]

        # Ordered in Python so timezone handling matches the in-memory store
        jobs = _sort_newest_first(jobs)
        if job_filter.limit is not None:
            jobs = jobs[:job_filter.limit]
        return jobs


__all__ = [
    "ACTIVE_STATUSES",
    "JobFilter",
    "JobStore",
    "InMemoryJobStore",
    "SqlJobStore",
]
