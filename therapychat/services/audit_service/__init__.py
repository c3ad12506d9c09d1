"""Audit Service - append-only transaction log.

Every mutating operation in the chat, safety and draft services writes a
hash-chained entry here. Draft and message entries carry full text so the
record of what was (or nearly was) sent to a patient is complete.
"""
from .audit_logger import (
    AuditAction,
    AuditEntity,
    AuditEntry,
    AuditLogger,
    audit_best_effort,
)
from .audit_repository import AuditRepository

__all__ = [
    "AuditAction",
    "AuditEntity",
    "AuditEntry",
    "AuditLogger",
    "AuditRepository",
    "audit_best_effort",
]
