"""
Audit Package.

Append-only log of job and model lifecycle mutations.

Components:
- AuditEventType: Mutation kinds
- AuditEntry: Immutable record
- InMemoryAuditLog / SqlAuditLog: Backends
"""

from .log import (
    AuditEntry,
    AuditEventType,
    AuditLog,
    InMemoryAuditLog,
    SqlAuditLog,
)

__all__ = [
    "AuditEntry",
    "AuditEventType",
    "AuditLog",
    "InMemoryAuditLog",
    "SqlAuditLog",
]
