"""CSV export of conversation history for therapists."""
import csv
import io
import logging
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import AccessDenied, ValidationError
from therapychat.shared.models import Actor, Conversation, Message, User

from .access_guard import AccessGuard

logger = logging.getLogger(__name__)


EXPORT_SCOPES = ("patient", "group", "all")

CSV_COLUMNS = [
    "conversation_id",
    "patient_id",
    "patient_name",
    "message_id",
    "sender_role",
    "sender_id",
    "created_at",
    "body",
    "tagged",
    "edited",
    "deleted",
]

DELETED_PLACEHOLDER = "[message deleted]"

EXPORT_PAGE_SIZE = 500


class ConversationExporter:
    def __init__(self, store: ChatStore, guard: AccessGuard, audit: AuditLogger):
        self.store = store
        self.guard = guard
        self.audit = audit

    def export_csv(
        self,
        actor: Actor,
        scope: str = "all",
        conversation_id: Optional[str] = None,
        group_id: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Tuple[str, str]:
        """Render history as CSV, one row per message.

        Args:
            actor: Requesting therapist or admin
            scope: ``patient`` (needs conversation_id), ``group`` (needs
                group_id) or ``all`` accessible patients
            warnings: Collects degraded-success warnings, e.g. a failed
                audit write

        Returns:
            (filename, csv_text)
        """
        if not actor.is_staff:
            raise AccessDenied("Only therapists can export conversations")
        if scope not in EXPORT_SCOPES:
            raise ValidationError(f"Unknown export scope: {scope}")

        patients, conversations = self._collect(actor, scope, conversation_id, group_id)
        names: Dict[str, str] = {p.user_id: p.name for p in patients}

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(CSV_COLUMNS)
        rows = 0
        for conversation in sorted(conversations, key=lambda c: c.created_at):
            for message in self._all_messages(conversation.conversation_id):
                writer.writerow([
                    conversation.conversation_id,
                    conversation.patient_id,
                    names.get(conversation.patient_id, ""),
                    message.message_id,
                    message.sender_role.value,
                    message.sender_id or "",
                    message.created_at.isoformat(),
                    DELETED_PLACEHOLDER if message.deleted else message.body,
                    int(message.tagged),
                    int(message.edited),
                    int(message.deleted),
                ])
                rows += 1

        filename = f"therapy_chat_{scope}_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.csv"
        audit_best_effort(
            self.audit, warnings if warnings is not None else [],
            AuditAction.EXPORT_DATA, AuditEntity.EXPORT, filename, actor,
            {
                "scope": scope,
                "conversation_id": conversation_id,
                "group_id": group_id,
                "conversations": len(conversations),
                "rows": rows,
            },
        )
        logger.info(
            "CONVERSATIONS_EXPORTED",
            extra={"scope": scope, "conversations": len(conversations), "rows": rows}
        )
        return filename, buffer.getvalue()

    def _all_messages(self, conversation_id: str) -> Iterator[Message]:
        after_id = None
        while True:
            page = self.store.list_messages(conversation_id, after_id=after_id, limit=EXPORT_PAGE_SIZE)
            yield from page
            if len(page) < EXPORT_PAGE_SIZE:
                return
            after_id = page[-1].message_id

    def _collect(
        self,
        actor: Actor,
        scope: str,
        conversation_id: Optional[str],
        group_id: Optional[str],
    ) -> Tuple[List[User], List[Conversation]]:
        if scope == "patient":
            if not conversation_id:
                raise ValidationError("conversation_id is required for patient export")
            conversation = self.guard.require(actor, conversation_id)
            patient = self.store.get_user(conversation.patient_id)
            patients = [patient] if patient else []
            return patients, self.store.list_conversations_for_patients([conversation.patient_id])

        if scope == "group" and not group_id:
            raise ValidationError("group_id is required for group export")

        patients = self.guard.accessible_patients(actor, group_id if scope == "group" else None)
        if not patients:
            return [], []
        return patients, self.store.list_conversations_for_patients([p.user_id for p in patients])
