"""
Database ORM Models - All Tables.

============================================================
ORCHESTRATOR SCHEMA
============================================================

Defines the four persisted tables:
- training_jobs
- models
- shadow_tests
- audit_entries

Each record keeps the columns that are filtered or ordered
on, plus the full entity as a JSON payload. The payload is
the source of truth when an entity is read back.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .engine import Base


# =============================================================
# 1. TRAINING JOBS TABLE
# =============================================================

class TrainingJobRecord(Base):
    """
    Training job snapshot.

    Source: training_engine.store.SqlJobStore
    Update Frequency: Every progression tick
    """
    __tablename__ = "training_jobs"

    job_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    model_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    model_id: Mapped[Optional[str]] = mapped_column(String(64))

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("ix_training_jobs_status_start", "status", "start_time"),
    )


# =============================================================
# 2. MODELS TABLE
# =============================================================

class ModelRecord(Base):
    """
    Registry entry for a trained model.

    Source: model_registry.store.SqlModelStore
    Update Frequency: Per lifecycle change
    """
    __tablename__ = "models"

    model_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    model_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


# =============================================================
# 3. SHADOW TESTS TABLE
# =============================================================

class ShadowTestRecord(Base):
    """
    Shadow evaluation run.

    Source: model_registry.store.SqlModelStore
    Update Frequency: On shadow start and stop
    """
    __tablename__ = "shadow_tests"

    test_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    model_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


# =============================================================
# 4. AUDIT ENTRIES TABLE
# =============================================================

class AuditEntryRecord(Base):
    """
    Append-only audit record.

    Source: audit.log.SqlAuditLog
    Update Frequency: Never updated, only inserted
    """
    __tablename__ = "audit_entries"

    # Insertion order is the audit order
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # Delimited as ",id1,id2," so a single id matches with LIKE
    subject_ids: Mapped[str] = mapped_column(Text, nullable=False)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


__all__ = [
    "TrainingJobRecord",
    "ModelRecord",
    "ShadowTestRecord",
    "AuditEntryRecord",
]
