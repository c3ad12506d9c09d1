"""Audit logger: the append-only transaction log every mutating operation
writes to.

Entries are hash-chained so tampering with any stored entry breaks
verification of every entry after it. Entries hold clinical text (draft
and message bodies) for traceability, so the audit store is access
controlled separately from application logs, which only ever see hashes.
"""
import hashlib
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from therapychat.shared.models import Actor

if TYPE_CHECKING:
    from .audit_repository import AuditRepository

logger = logging.getLogger(__name__)


class AuditAction(Enum):
    """Actions that require audit logging."""
    # Conversation control
    CONVERSATION_CREATED = "conversation_created"
    MODE_CHANGED = "mode_changed"
    STATUS_CHANGED = "status_changed"
    RISK_CHANGED = "risk_changed"
    AI_TOGGLED = "ai_toggled"
    CONVERSATION_BLOCKED = "conversation_blocked"

    # Messages
    MESSAGE_SENT = "message_sent"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"

    # Safety and alerts
    SAFETY_ESCALATED = "safety_escalated"
    ALERT_CREATED = "alert_created"
    ALERTS_READ = "alerts_read"

    # Notes
    NOTE_ADDED = "note_added"
    NOTE_EDITED = "note_edited"
    NOTE_DELETED = "note_deleted"
    SUMMARY_GENERATED = "summary_generated"

    # Drafts
    DRAFT_CREATED = "draft_created"
    DRAFT_GENERATION = "draft_generation"
    DRAFT_EDITED = "draft_edited"
    DRAFT_REGENERATED = "draft_regenerated"
    DRAFT_UNDONE = "draft_undone"
    DRAFT_SENT = "draft_sent"
    DRAFT_DISCARDED = "draft_discarded"

    EXPORT_DATA = "export_data"


class AuditEntity(Enum):
    """Entity types for audit logging."""
    CONVERSATION = "conversation"
    MESSAGE = "message"
    ALERT = "alert"
    NOTE = "note"
    DRAFT = "draft"
    EXPORT = "export"


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit log entry."""
    entry_id: str
    timestamp: datetime
    action: AuditAction
    entity_type: AuditEntity
    entity_id: str
    actor_id: str
    actor_role: str
    details: Dict[str, Any] = field(default_factory=dict)
    previous_hash: str = ""  # Chain to previous entry for verification
    entry_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 over every field except ``entry_hash`` itself."""
        content = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
        }
        content_str = json.dumps(content, sort_keys=True, default=str)
        return hashlib.sha256(content_str.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "entity_type": self.entity_type.value,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
        }


class AuditLogger:
    """Appends hash-chained entries to memory and, when configured, to the
    PostgreSQL audit repository.

    ``log`` raises if the durable append fails; callers decide whether
    that failure is fatal for their operation.
    """

    def __init__(self, repository: Optional["AuditRepository"] = None):
        self.repository = repository
        self._entries: List[AuditEntry] = []
        self._last_hash: str = "genesis"
        self._lock = threading.Lock()

        logger.info(
            "AUDIT_LOGGER_INITIALIZED",
            extra={"durable": repository is not None}
        )

    def log(
        self,
        action: AuditAction,
        entity_type: AuditEntity,
        entity_id: str,
        actor: Actor,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        """Append one entry.

        Args:
            action: Action being audited
            entity_type: Type of entity acted upon
            entity_id: Identifier of the entity
            actor: Caller that performed the action
            details: Old/new values and any text worth keeping

        Returns:
            The stored AuditEntry
        """
        with self._lock:
            entry = AuditEntry(
                entry_id=f"audit_{uuid.uuid4().hex[:16]}",
                timestamp=datetime.utcnow(),
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id),
                actor_id=actor.user_id,
                actor_role=actor.role.value,
                details=details or {},
                previous_hash=self._last_hash,
            )
            entry = replace(entry, entry_hash=entry.compute_hash())

            if self.repository is not None:
                self.repository.append(entry)

            self._entries.append(entry)
            self._last_hash = entry.entry_hash

        logger.info(
            "AUDIT_ENTRY_CREATED",
            extra={
                "entry_id": entry.entry_id,
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": entry.entity_id,
                "actor_role": entry.actor_role,
                "entry_hash": entry.entry_hash[:16],  # Truncated for logs
            }
        )

        return entry

    def verify_chain(self) -> bool:
        """Return False if any entry was altered or reordered."""
        expected_prev = "genesis"
        for entry in self._entries:
            if entry.previous_hash != expected_prev:
                logger.critical(
                    "AUDIT_CHAIN_VERIFICATION_FAILED",
                    extra={
                        "entry_id": entry.entry_id,
                        "expected_prev": expected_prev[:16],
                        "actual_prev": entry.previous_hash[:16],
                    }
                )
                return False

            computed = entry.compute_hash()
            if computed != entry.entry_hash:
                logger.critical(
                    "AUDIT_ENTRY_HASH_MISMATCH",
                    extra={
                        "entry_id": entry.entry_id,
                        "computed": computed[:16],
                        "stored": entry.entry_hash[:16],
                    }
                )
                return False

            expected_prev = entry.entry_hash

        return True

    def query(
        self,
        entity_type: Optional[AuditEntity] = None,
        entity_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        actor_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        results = list(self._entries)

        if entity_type:
            results = [e for e in results if e.entity_type == entity_type]
        if entity_id:
            results = [e for e in results if e.entity_id == str(entity_id)]
        if action:
            results = [e for e in results if e.action == action]
        if actor_id:
            results = [e for e in results if e.actor_id == actor_id]
        if start_date:
            results = [e for e in results if e.timestamp >= start_date]
        if end_date:
            results = [e for e in results if e.timestamp <= end_date]

        return results


def audit_best_effort(
    audit: AuditLogger,
    warnings: List[str],
    action: AuditAction,
    entity_type: AuditEntity,
    entity_id: str,
    actor: Actor,
    details: Optional[Dict[str, Any]] = None,
) -> Optional[AuditEntry]:
    """Write an audit entry after the primary action has committed.

    A failure is logged and appended to ``warnings`` so the caller can
    report degraded success instead of undoing the primary action.
    """
    try:
        return audit.log(action, entity_type, entity_id, actor, details)
    except Exception as e:
        logger.error(
            "AUDIT_WRITE_FAILED",
            extra={
                "action": action.value,
                "entity_type": entity_type.value,
                "entity_id": str(entity_id),
                "error": str(e),
            }
        )
        warnings.append(f"audit_write_failed:{action.value}")
        return None
