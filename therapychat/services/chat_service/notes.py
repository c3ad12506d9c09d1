"""Therapist notes and AI conversation summaries.

Notes are private to staff, never appear in the patient stream and are
soft-deleted only. An AI summary may be saved as an ``ai_summary`` note;
the untouched AI text is kept beside any later edits.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.services.llm_service import (
    DEFAULT_SUMMARY_INSTRUCTION,
    AIPurpose,
    AIRequest,
    AIResponder,
    build_history,
)
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import (
    AccessDenied,
    InvalidTransition,
    NotFound,
    UpstreamUnavailable,
    ValidationError,
)
from therapychat.shared.models import Actor, Note, NoteStatus, NoteType

from .access_guard import AccessGuard

logger = logging.getLogger(__name__)

SUMMARY_HISTORY_LIMIT = 200


@dataclass
class NoteResult:
    """A note after one operation, plus degraded-success warnings."""
    note: Note
    changed: bool = True
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"note": self.note.to_dict(), "changed": self.changed}
        if self.warnings:
            payload["warnings"] = self.warnings
        return payload


class NoteService:
    def __init__(
        self,
        store: ChatStore,
        guard: AccessGuard,
        audit: AuditLogger,
        ai_responder: Optional[AIResponder] = None,
        summary_instruction: str = DEFAULT_SUMMARY_INSTRUCTION,
    ):
        self.store = store
        self.guard = guard
        self.audit = audit
        self.ai = ai_responder
        self.summary_instruction = summary_instruction

    def add_note(
        self,
        actor: Actor,
        conversation_id: str,
        content: str,
        note_type: NoteType = NoteType.MANUAL,
        ai_original_content: Optional[str] = None,
    ) -> NoteResult:
        self._require_staff(actor)
        self.guard.require(actor, conversation_id)
        content = _clean(content)

        note = self.store.add_note(Note(
            conversation_id=conversation_id,
            author_id=actor.user_id,
            content=content,
            note_type=note_type,
            ai_original_content=ai_original_content,
        ))
        result = NoteResult(note)
        audit_best_effort(
            self.audit, result.warnings, AuditAction.NOTE_ADDED, AuditEntity.NOTE, note.note_id, actor,
            {"conversation_id": conversation_id, "note_type": note_type.value, "content": content},
        )
        return result

    def edit_note(self, actor: Actor, note_id: str, content: str) -> NoteResult:
        note = self._load(actor, note_id)
        content = _clean(content)

        def mutate(current: Note) -> Note:
            if current.status != NoteStatus.ACTIVE:
                raise InvalidTransition("Deleted notes cannot be edited")
            return replace(current, content=content, last_edited_by=actor.user_id, updated_at=datetime.utcnow())

        previous, updated = self.store.update_note(note.note_id, mutate)
        result = NoteResult(updated)
        audit_best_effort(
            self.audit, result.warnings, AuditAction.NOTE_EDITED, AuditEntity.NOTE, note_id, actor,
            {"conversation_id": note.conversation_id, "old_content": previous.content, "new_content": content},
        )
        return result

    def delete_note(self, actor: Actor, note_id: str) -> NoteResult:
        note = self._load(actor, note_id)
        if note.status == NoteStatus.DELETED:
            return NoteResult(note, changed=False)

        _, updated = self.store.update_note(
            note_id,
            lambda current: replace(current, status=NoteStatus.DELETED, updated_at=datetime.utcnow()),
        )
        result = NoteResult(updated)
        audit_best_effort(
            self.audit, result.warnings, AuditAction.NOTE_DELETED, AuditEntity.NOTE, note_id, actor,
            {"conversation_id": note.conversation_id},
        )
        return result

    def list_notes(self, actor: Actor, conversation_id: str) -> List[Note]:
        self._require_staff(actor)
        self.guard.require(actor, conversation_id)
        return self.store.list_notes(conversation_id)

    def generate_summary(self, actor: Actor, conversation_id: str, save: bool = False) -> Dict[str, Any]:
        """Ask the AI for a clinical summary, optionally keeping it as a note.

        Raises:
            UpstreamUnavailable: No responder configured, or it failed
        """
        self._require_staff(actor)
        self.guard.require(actor, conversation_id)
        if self.ai is None:
            raise UpstreamUnavailable("AI summaries are not configured")

        history = build_history(
            self.store.list_recent_messages(conversation_id, SUMMARY_HISTORY_LIMIT)
        )
        if not history:
            raise ValidationError("Conversation has no messages to summarise")

        reply = self.ai.generate(AIRequest(
            conversation_id, history, AIPurpose.SUMMARY, instruction=self.summary_instruction
        ))
        summary = reply.text.strip()
        if not summary:
            raise UpstreamUnavailable("AI returned an empty summary")

        warnings: List[str] = []
        audit_best_effort(
            self.audit, warnings, AuditAction.SUMMARY_GENERATED, AuditEntity.CONVERSATION,
            conversation_id, actor, {"model": reply.model, "summary": summary, "saved": save},
        )

        result: Dict[str, Any] = {"summary": summary, "note": None}
        if save:
            saved = self.add_note(
                actor, conversation_id, summary,
                note_type=NoteType.AI_SUMMARY, ai_original_content=summary,
            )
            result["note"] = saved.note.to_dict()
            warnings.extend(saved.warnings)
        if warnings:
            result["warnings"] = warnings

        logger.info(
            "SUMMARY_GENERATED",
            extra={"conversation_id": conversation_id, "saved": save, "length": len(summary)}
        )
        return result

    def _load(self, actor: Actor, note_id: str) -> Note:
        self._require_staff(actor)
        note = self.store.get_note(note_id)
        if note is None:
            raise NotFound(f"Note {note_id} not found")
        self.guard.require(actor, note.conversation_id)
        return note

    @staticmethod
    def _require_staff(actor: Actor) -> None:
        if not actor.is_staff:
            raise AccessDenied("Notes are available to therapists only")


def _clean(content: Optional[str]) -> str:
    if content is None or not content.strip():
        raise ValidationError("Note content must not be empty")
    return content.strip()
