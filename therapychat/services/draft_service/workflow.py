"""DraftWorkflow: AI-assisted therapist replies held outside the stream.

States: draft -> sent, draft -> discarded. Both are terminal.

The AI is always called before anything is written, so a failed
generation leaves no draft (create) or the previous text (regenerate).
Every transition is audited with full text so it is known what was, or
nearly was, sent to a patient.
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
from therapychat.services.chat_service.access_guard import AccessGuard
from therapychat.services.chat_service.message_router import MessageRouter
from therapychat.services.llm_service import (
    DEFAULT_DRAFT_INSTRUCTION,
    AIPurpose,
    AIReply,
    AIRequest,
    AIResponder,
    build_history,
)
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import (
    AccessDenied,
    ConversationClosed,
    InvalidTransition,
    NotFound,
    UpstreamUnavailable,
    ValidationError,
)
from therapychat.shared.models import Actor, Draft, DraftStatus

logger = logging.getLogger(__name__)


DRAFT_HISTORY_LIMIT = 50


@dataclass
class DraftResult:
    """A draft after one operation, plus degraded-success warnings."""
    draft: Draft
    changed: bool = True
    message: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"draft": self.draft.to_dict(), "changed": self.changed}
        if self.message is not None:
            payload["message"] = self.message
        if self.warnings:
            payload["warnings"] = self.warnings
        return payload


def build_draft_instruction(base: str, draft_context: Optional[str] = None) -> str:
    if not draft_context:
        return base
    return f"{base}\n\nAdditional context and instructions from the therapist:\n{draft_context}"


class DraftWorkflow:
    def __init__(
        self,
        store: ChatStore,
        guard: AccessGuard,
        router: MessageRouter,
        audit: AuditLogger,
        ai_responder: Optional[AIResponder] = None,
        instruction: str = DEFAULT_DRAFT_INSTRUCTION,
        draft_context: Optional[str] = None,
    ):
        self.store = store
        self.guard = guard
        self.router = router
        self.audit = audit
        self.ai = ai_responder
        self.instruction = build_draft_instruction(instruction, draft_context)

    def create(self, actor: Actor, conversation_id: str) -> DraftResult:
        """Generate a new draft; an older open draft by the same author is discarded."""
        self._require_staff(actor)
        conversation = self.guard.require(actor, conversation_id)
        if conversation.is_closed:
            raise ConversationClosed("Cannot draft replies in a closed conversation")

        reply = self._generate(conversation_id)
        warnings: List[str] = []

        previous = self.store.find_open_draft(conversation_id, actor.user_id)
        if previous is not None:
            self._close(actor, previous, DraftStatus.DISCARDED, AuditAction.DRAFT_DISCARDED, warnings)

        draft = self.store.add_draft(Draft(
            conversation_id=conversation_id,
            therapist_id=actor.user_id,
            ai_content=reply.text,
            current_text=reply.text,
        ))

        # Generation record kept apart from the patient-visible stream
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_GENERATION, AuditEntity.DRAFT, draft.draft_id, actor,
            {
                "conversation_id": conversation_id,
                "instruction": self.instruction,
                "model": reply.model,
                "tokens_used": reply.tokens_used,
                "response": reply.raw if reply.raw is not None else reply.text,
            },
        )
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_CREATED, AuditEntity.DRAFT, draft.draft_id, actor,
            {"conversation_id": conversation_id, "text": draft.current_text},
        )

        logger.info(
            "DRAFT_CREATED",
            extra={"draft_id": draft.draft_id, "conversation_id": conversation_id, "model": reply.model}
        )
        return DraftResult(draft=draft, warnings=warnings)

    def edit(self, actor: Actor, draft_id: str, text: str) -> DraftResult:
        if text is None or not text.strip():
            raise ValidationError("Draft text must not be empty")
        draft = self._load(actor, draft_id)

        def mutate(current: Draft) -> Draft:
            self._require_open(current)
            return replace(current, current_text=text, updated_at=datetime.utcnow())

        previous, updated = self.store.update_draft(draft.draft_id, mutate)
        warnings: List[str] = []
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_EDITED, AuditEntity.DRAFT, draft_id, actor,
            {"old_text": previous.current_text, "new_text": updated.current_text},
        )
        return DraftResult(draft=updated, warnings=warnings)

    def regenerate(self, actor: Actor, draft_id: str) -> DraftResult:
        """Replace the text with a fresh generation; the old text goes on the undo stack."""
        draft = self._load(actor, draft_id)
        self._require_open(draft)

        reply = self._generate(draft.conversation_id)

        def mutate(current: Draft) -> Draft:
            self._require_open(current)
            return replace(
                current,
                current_text=reply.text,
                undo_stack=current.undo_stack + (current.current_text,),
                updated_at=datetime.utcnow(),
            )

        previous, updated = self.store.update_draft(draft.draft_id, mutate)
        warnings: List[str] = []
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_REGENERATED, AuditEntity.DRAFT, draft_id, actor,
            {"old_text": previous.current_text, "new_text": updated.current_text, "model": reply.model},
        )
        return DraftResult(draft=updated, warnings=warnings)

    def undo(self, actor: Actor, draft_id: str) -> DraftResult:
        """Restore the text from before the last regenerate. Empty stack is a no-op."""
        draft = self._load(actor, draft_id)
        self._require_open(draft)
        if not draft.undo_stack:
            return DraftResult(draft=draft, changed=False)

        def mutate(current: Draft) -> Draft:
            self._require_open(current)
            if not current.undo_stack:
                return current
            return replace(
                current,
                current_text=current.undo_stack[-1],
                undo_stack=current.undo_stack[:-1],
                updated_at=datetime.utcnow(),
            )

        previous, updated = self.store.update_draft(draft.draft_id, mutate)
        if len(updated.undo_stack) == len(previous.undo_stack):
            return DraftResult(draft=updated, changed=False)

        warnings: List[str] = []
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_UNDONE, AuditEntity.DRAFT, draft_id, actor,
            {"old_text": previous.current_text, "new_text": updated.current_text},
        )
        return DraftResult(draft=updated, warnings=warnings)

    def send(self, actor: Actor, draft_id: str) -> DraftResult:
        """Emit the current text as a therapist message and close the draft.

        The draft is claimed as ``sent`` first so a concurrent send cannot
        post twice; if emitting the message fails the claim is reverted.
        """
        draft = self._load(actor, draft_id)
        self._require_open(draft)
        if not draft.current_text.strip():
            raise ValidationError("Draft text must not be empty")

        conversation = self.guard.require(actor, draft.conversation_id)
        if conversation.is_closed:
            raise ConversationClosed("Cannot send into a closed conversation")

        def claim(current: Draft) -> Draft:
            self._require_open(current)
            return replace(current, status=DraftStatus.SENT, updated_at=datetime.utcnow())

        _, claimed = self.store.update_draft(draft.draft_id, claim)

        try:
            outcome = self.router.submit_therapist_message(
                actor, claimed.conversation_id, claimed.current_text, draft_id=claimed.draft_id
            )
        except Exception:
            self.store.update_draft(
                draft.draft_id,
                lambda current: replace(current, status=DraftStatus.DRAFT, updated_at=datetime.utcnow()),
            )
            logger.error(
                "DRAFT_SEND_FAILED",
                extra={"draft_id": draft_id, "conversation_id": claimed.conversation_id}
            )
            raise

        _, sent = self.store.update_draft(
            draft.draft_id,
            lambda current: replace(current, sent_message_id=outcome.message.message_id),
        )

        warnings = list(outcome.warnings)
        audit_best_effort(
            self.audit, warnings, AuditAction.DRAFT_SENT, AuditEntity.DRAFT, draft_id, actor,
            {
                "conversation_id": sent.conversation_id,
                "message_id": outcome.message.message_id,
                "text": sent.current_text,
                "ai_content": sent.ai_content,
            },
        )
        logger.info(
            "DRAFT_SENT",
            extra={
                "draft_id": draft_id,
                "conversation_id": sent.conversation_id,
                "message_id": outcome.message.message_id,
                "edited": sent.current_text != sent.ai_content,
            }
        )
        return DraftResult(draft=sent, message=outcome.message.to_dict(), warnings=warnings)

    def discard(self, actor: Actor, draft_id: str) -> DraftResult:
        draft = self._load(actor, draft_id)
        self._require_open(draft)
        warnings: List[str] = []
        discarded = self._close(actor, draft, DraftStatus.DISCARDED, AuditAction.DRAFT_DISCARDED, warnings)
        return DraftResult(draft=discarded, warnings=warnings)

    def get_active(self, actor: Actor, conversation_id: str) -> Optional[Draft]:
        self._require_staff(actor)
        self.guard.require(actor, conversation_id)
        return self.store.find_open_draft(conversation_id, actor.user_id)

    # Internals

    def _generate(self, conversation_id: str) -> AIReply:
        if self.ai is None:
            raise UpstreamUnavailable("AI drafting is not configured")

        messages = self.store.list_recent_messages(conversation_id, DRAFT_HISTORY_LIMIT)
        reply = self.ai.generate(AIRequest(
            conversation_id,
            build_history(messages),
            AIPurpose.DRAFT,
            instruction=self.instruction,
        ))
        if not reply.text or not reply.text.strip():
            raise UpstreamUnavailable("AI did not generate a response. Please try again.")
        return replace(reply, text=reply.text.strip())

    def _close(
        self,
        actor: Actor,
        draft: Draft,
        status: DraftStatus,
        action: AuditAction,
        warnings: List[str],
    ) -> Draft:
        def mutate(current: Draft) -> Draft:
            self._require_open(current)
            return replace(current, status=status, updated_at=datetime.utcnow())

        _, closed = self.store.update_draft(draft.draft_id, mutate)
        audit_best_effort(
            self.audit, warnings, action, AuditEntity.DRAFT, draft.draft_id, actor,
            {"conversation_id": draft.conversation_id, "text": closed.current_text},
        )
        return closed

    def _load(self, actor: Actor, draft_id: str) -> Draft:
        self._require_staff(actor)
        draft = self.store.get_draft(draft_id)
        if draft is None:
            raise NotFound(f"Draft {draft_id} not found")
        self.guard.require(actor, draft.conversation_id)
        if draft.therapist_id != actor.user_id:
            raise AccessDenied("Drafts can only be changed by their author")
        return draft

    @staticmethod
    def _require_open(draft: Draft) -> None:
        if not draft.is_open:
            raise InvalidTransition(f"Draft is already {draft.status.value}")

    @staticmethod
    def _require_staff(actor: Actor) -> None:
        if not actor.is_staff:
            raise AccessDenied("Drafts are available to therapists only")
