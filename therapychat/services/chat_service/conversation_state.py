"""ConversationState: the only writer of a conversation's control attributes.

State machine over (status, ai_enabled, blocked):
- status: active <-> paused, active|paused -> closed (terminal)
- block() forces ai_enabled off and sets blocked; status is untouched
- unblock() is "re-enable AI": clears blocked and turns AI back on
- risk level is free for therapists; escalation only ever raises it

Each transition is one atomic store update followed by one audit entry.
A rejected transition leaves the stored conversation exactly as it was.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.shared.database import ChatStore, NotFoundError
from therapychat.shared.errors import AccessDenied, InvalidTransition, NotFound, ValidationError
from therapychat.shared.models import (
    Actor,
    ChatMode,
    Conversation,
    ConversationStatus,
    Message,
    RiskLevel,
    SenderRole,
    new_id,
)
from therapychat.shared.utils import hash_pii

from .access_guard import AccessGuard
from .config import ChatConfig

logger = logging.getLogger(__name__)


ALLOWED_STATUS_TRANSITIONS: Dict[ConversationStatus, FrozenSet[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.PAUSED, ConversationStatus.CLOSED}),
    ConversationStatus.PAUSED: frozenset({ConversationStatus.ACTIVE, ConversationStatus.CLOSED}),
    ConversationStatus.CLOSED: frozenset(),
}


@dataclass
class Transition:
    """Outcome of one control-attribute change."""
    conversation: Conversation
    changed: bool
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        payload = {"conversation": self.conversation.to_dict(), "changed": self.changed}
        if self.warnings:
            payload["warnings"] = self.warnings
        return payload


def check_invariants(conversation: Conversation) -> None:
    """Raise if a stored conversation violates a control invariant."""
    if conversation.blocked and conversation.ai_enabled:
        raise InvalidTransition("Blocked conversation has AI enabled")


class ConversationState:
    """Applies validated transitions through the store's atomic update."""

    def __init__(
        self,
        store: ChatStore,
        guard: AccessGuard,
        audit: AuditLogger,
        config: Optional[ChatConfig] = None,
    ):
        self.store = store
        self.guard = guard
        self.audit = audit
        self.config = config or ChatConfig()

    # Bootstrap

    def get_or_create(
        self,
        actor: Actor,
        patient_id: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Tuple[Conversation, bool]:
        """Return the patient's open conversation, creating it if needed.

        Patients always get their own conversation; therapists and admins
        may pre-create one for a patient they have access to. Degraded
        secondary writes are appended to ``warnings`` when given.

        Returns:
            (conversation, created)
        """
        if actor.is_patient:
            patient_id = actor.user_id
        if not patient_id:
            raise ValidationError("patient_id is required")

        patient = self.store.get_user(patient_id)
        if patient is None:
            raise NotFound(f"Patient {patient_id} not found")
        if not self.guard.can_access_patient(actor, patient):
            logger.warning(
                "ACCESS_DENIED",
                extra={"actor_id_hash": hash_pii(actor.user_id), "patient_id_hash": hash_pii(patient_id)}
            )
            raise AccessDenied("You do not have access to this patient")

        conversation, created = self.store.find_or_create_open_conversation(Conversation(
            conversation_id=new_id("conv"),
            patient_id=patient_id,
            mode=self.config.default_mode,
            ai_enabled=self.config.ai_enabled_by_default,
        ))
        if not created:
            return conversation, False
        if warnings is None:
            warnings = []

        if self.config.auto_start_context:
            self.store.add_message(Message(
                conversation_id=conversation.conversation_id,
                sender_role=SenderRole.SYSTEM,
                body=self.config.auto_start_context,
                metadata={"auto_start": True},
            ))

        audit_best_effort(
            self.audit, warnings, AuditAction.CONVERSATION_CREATED, AuditEntity.CONVERSATION,
            conversation.conversation_id, actor,
            {"patient_id": patient_id, "mode": conversation.mode.value, "initiated_by": actor.role.value},
        )
        logger.info(
            "CONVERSATION_CREATED",
            extra={
                "conversation_id": conversation.conversation_id,
                "patient_id_hash": hash_pii(patient_id),
                "initiated_by": actor.role.value,
            }
        )
        return conversation, True

    # Transitions

    def set_mode(self, actor: Actor, conversation_id: str, mode: ChatMode) -> Transition:
        def mutate(conversation: Conversation) -> Conversation:
            return replace(conversation, mode=mode)

        return self._transition(actor, conversation_id, AuditAction.MODE_CHANGED, ("mode",), mutate)

    def set_status(self, actor: Actor, conversation_id: str, status: ConversationStatus) -> Transition:
        def mutate(conversation: Conversation) -> Conversation:
            if conversation.status == status:
                return conversation
            if status not in ALLOWED_STATUS_TRANSITIONS[conversation.status]:
                raise InvalidTransition(
                    f"Cannot change status from {conversation.status.value} to {status.value}"
                )
            return replace(conversation, status=status)

        return self._transition(actor, conversation_id, AuditAction.STATUS_CHANGED, ("status",), mutate)

    def set_risk_level(self, actor: Actor, conversation_id: str, risk_level: RiskLevel) -> Transition:
        def mutate(conversation: Conversation) -> Conversation:
            return replace(conversation, risk_level=risk_level)

        return self._transition(actor, conversation_id, AuditAction.RISK_CHANGED, ("risk_level",), mutate)

    def raise_risk_level(self, actor: Actor, conversation_id: str, minimum: RiskLevel) -> Transition:
        """Raise risk to at least ``minimum``; never lowers it."""
        def mutate(conversation: Conversation) -> Conversation:
            if conversation.risk_level.rank >= minimum.rank:
                return conversation
            return replace(conversation, risk_level=minimum)

        return self._transition(actor, conversation_id, AuditAction.RISK_CHANGED, ("risk_level",), mutate)

    def set_ai_enabled(self, actor: Actor, conversation_id: str, enabled: bool) -> Transition:
        """Toggle AI. Enabling always clears a block."""
        def mutate(conversation: Conversation) -> Conversation:
            if enabled:
                return replace(conversation, ai_enabled=True, blocked=False, blocked_reason=None, blocked_at=None)
            return replace(conversation, ai_enabled=False)

        return self._transition(
            actor, conversation_id, AuditAction.AI_TOGGLED, ("ai_enabled", "blocked"), mutate
        )

    def block(self, actor: Actor, conversation_id: str, reason: str) -> Transition:
        """Disable AI and mark blocked. A blocked conversation is not re-blocked."""
        def mutate(conversation: Conversation) -> Conversation:
            if conversation.blocked:
                return conversation
            return replace(
                conversation,
                ai_enabled=False,
                blocked=True,
                blocked_reason=reason,
                blocked_at=datetime.utcnow(),
            )

        return self._transition(
            actor, conversation_id, AuditAction.CONVERSATION_BLOCKED, ("ai_enabled", "blocked"), mutate,
            extra_details={"reason": reason},
        )

    def unblock(self, actor: Actor, conversation_id: str) -> Transition:
        return self.set_ai_enabled(actor, conversation_id, True)

    def record_activity(
        self,
        conversation_id: str,
        seen_by: Optional[SenderRole] = None,
    ) -> Conversation:
        """Bump ``updated_at`` and the matching last-seen timestamp.

        Bookkeeping only: not a control transition, so not audited.
        """
        now = datetime.utcnow()

        def mutate(conversation: Conversation) -> Conversation:
            if seen_by == SenderRole.PATIENT:
                return replace(conversation, updated_at=now, patient_last_seen=now)
            if seen_by == SenderRole.THERAPIST:
                return replace(conversation, updated_at=now, therapist_last_seen=now)
            return replace(conversation, updated_at=now)

        _, current = self.store.update_conversation(conversation_id, mutate)
        return current

    def mark_seen(self, conversation_id: str, actor: Actor) -> None:
        now = datetime.utcnow()

        def mutate(conversation: Conversation) -> Conversation:
            if actor.is_patient:
                return replace(conversation, patient_last_seen=now)
            return replace(conversation, therapist_last_seen=now)

        self.store.update_conversation(conversation_id, mutate)

    def _transition(
        self,
        actor: Actor,
        conversation_id: str,
        action: AuditAction,
        fields: Tuple[str, ...],
        mutate: Callable[[Conversation], Conversation],
        extra_details: Optional[Dict] = None,
    ) -> Transition:
        if not (actor.is_staff or actor.is_system):
            raise AccessDenied("Only therapists can change conversation settings")
        self.guard.require(actor, conversation_id)

        def guarded(conversation: Conversation) -> Conversation:
            updated = mutate(conversation)
            if updated is conversation:
                return conversation
            updated = replace(updated, updated_at=datetime.utcnow())
            check_invariants(updated)
            return updated

        try:
            previous, current = self.store.update_conversation(conversation_id, guarded)
        except NotFoundError as e:
            raise NotFound(f"Conversation {conversation_id} not found") from e
        except InvalidTransition:
            logger.warning(
                "CONVERSATION_TRANSITION_REJECTED",
                extra={"conversation_id": conversation_id, "action": action.value}
            )
            raise

        old = {name: _plain(getattr(previous, name)) for name in fields}
        new = {name: _plain(getattr(current, name)) for name in fields}
        if old == new:
            return Transition(conversation=current, changed=False)

        warnings: List[str] = []
        details = {"old": old, "new": new}
        details.update(extra_details or {})
        audit_best_effort(
            self.audit, warnings, action, AuditEntity.CONVERSATION, conversation_id, actor, details
        )

        logger.info(
            "CONVERSATION_TRANSITION",
            extra={
                "conversation_id": conversation_id,
                "action": action.value,
                "actor_role": actor.role.value,
                "old": old,
                "new": new,
            }
        )
        return Transition(conversation=current, changed=True, warnings=warnings)


def _plain(value):
    return getattr(value, "value", value)
