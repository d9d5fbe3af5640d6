"""
Audit Log.

============================================================
RESPONSIBILITY
============================================================
Append-only record of every job and model mutation.

- Exactly one entry per successful mutating operation
- Entries are immutable once written
- Ordered by insertion sequence
- In-memory and SQL backed implementations

============================================================
"""

import copy
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from core.clock import from_iso8601, now_utc, to_iso8601
from database.engine import get_db_session, transaction_scope
from database.models import AuditEntryRecord

logger = logging.getLogger(__name__)


# ============================================================
# EVENT TYPES
# ============================================================

class AuditEventType(str, Enum):
    """Mutations that leave an audit trail."""

    JOB_SUBMITTED = "job_submitted"
    JOB_CANCELLED = "job_cancelled"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    MODEL_REGISTERED = "model_registered"
    MODEL_DEPLOYED = "model_deployed"
    MODEL_ROLLED_BACK = "model_rolled_back"
    MODEL_SHADOW_STARTED = "model_shadow_started"
    MODEL_SHADOW_STOPPED = "model_shadow_stopped"


# ============================================================
# AUDIT ENTRY
# ============================================================

@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record."""

    entry_id: str
    sequence: int
    event_type: AuditEventType
    subject_ids: Tuple[str, ...]
    actor: str
    at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "sequence": self.sequence,
            "event_type": self.event_type.value,
            "subject_ids": list(self.subject_ids),
            "actor": self.actor,
            "at": to_iso8601(self.at),
            "details": copy.deepcopy(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            entry_id=data["entry_id"],
            sequence=int(data["sequence"]),
            event_type=AuditEventType(data["event_type"]),
            subject_ids=tuple(data.get("subject_ids") or ()),
            actor=data["actor"],
            at=from_iso8601(data["at"]),
            details=dict(data.get("details") or {}),
        )


def _new_entry_id() -> str:
    return f"audit_{uuid.uuid4().hex[:12]}"


# ============================================================
# AUDIT LOG INTERFACE
# ============================================================

class AuditLog(ABC):
    """Append-only audit log."""

    @abstractmethod
    def append(
        self,
        event_type: AuditEventType,
        subject_ids: Iterable[str],
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append one entry and return it."""

    @abstractmethod
    def entries(
        self,
        subject_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        """
        Query entries in insertion order.

        Args:
            subject_id: Only entries naming this job or model
            event_type: Only entries of this type
            limit: Keep only the most recent N matches
        """

    def _emit(self, entry: AuditEntry) -> None:
        logger.info(
            f"Audit: {entry.event_type.value} on {','.join(entry.subject_ids)} "
            f"by {entry.actor}"
        )


# ============================================================
# IN-MEMORY AUDIT LOG
# ============================================================

class InMemoryAuditLog(AuditLog):
    """Thread-safe list-backed audit log."""

    def __init__(self):
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()

    def append(
        self,
        event_type: AuditEventType,
        subject_ids: Iterable[str],
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        with self._lock:
            entry = AuditEntry(
                entry_id=_new_entry_id(),
                sequence=len(self._entries) + 1,
                event_type=AuditEventType(event_type),
                subject_ids=tuple(subject_ids),
                actor=actor,
                at=now_utc(),
                details=copy.deepcopy(details or {}),
            )
            self._entries.append(entry)
        self._emit(entry)
        return entry

    def entries(
        self,
        subject_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        with self._lock:
            entries = list(self._entries)

        if subject_id:
            entries = [e for e in entries if subject_id in e.subject_ids]

        if event_type:
            entries = [e for e in entries if e.event_type == AuditEventType(event_type)]

        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []

        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ============================================================
# SQL AUDIT LOG
# ============================================================

class SqlAuditLog(AuditLog):
    """Audit log persisted to the audit_entries table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(
        self,
        event_type: AuditEventType,
        subject_ids: Iterable[str],
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        event_type = AuditEventType(event_type)
        subjects = tuple(subject_ids)
        entry_id = _new_entry_id()
        at = now_utc()
        details = copy.deepcopy(details or {})

        with transaction_scope(self._session_factory) as session:
            record = AuditEntryRecord(
                entry_id=entry_id,
                event_type=event_type.value,
                actor=actor,
                subject_ids="," + ",".join(subjects) + ",",
                at=at,
                payload={},
            )
            session.add(record)
            session.flush()

            entry = AuditEntry(
                entry_id=entry_id,
                sequence=record.sequence,
                event_type=event_type,
                subject_ids=subjects,
                actor=actor,
                at=at,
                details=details,
            )
            record.payload = entry.to_dict()

        self._emit(entry)
        return entry

    def entries(
        self,
        subject_id: Optional[str] = None,
        event_type: Optional[AuditEventType] = None,
        limit: Optional[int] = None,
    ) -> List[AuditEntry]:
        query = select(AuditEntryRecord)

        if subject_id:
            query = query.where(
                AuditEntryRecord.subject_ids.contains(f",{subject_id},", autoescape=True)
            )

        if event_type:
            query = query.where(AuditEntryRecord.event_type == AuditEventType(event_type).value)

        if limit is not None:
            if limit <= 0:
                return []
            query = query.order_by(AuditEntryRecord.sequence.desc()).limit(limit)
            with get_db_session(self._session_factory) as session:
                records = list(session.scalars(query))
            records.reverse()
        else:
            query = query.order_by(AuditEntryRecord.sequence.asc())
            with get_db_session(self._session_factory) as session:
                records = list(session.scalars(query))

        return [AuditEntry.from_dict(record.payload) for record in records]


__all__ = [
    "AuditEventType",
    "AuditEntry",
    "AuditLog",
    "InMemoryAuditLog",
    "SqlAuditLog",
]
