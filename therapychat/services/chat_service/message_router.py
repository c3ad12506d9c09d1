"""MessageRouter: who sees a message and whether the AI answers it.

Patient message, in order (each step its own failure domain):
1. reject if the conversation is closed or paused
2. persist the message
3. resolve mentions; fan out to the addressed therapists, or to the
   whole roster when the AI is off or blocked
4. tagged or AI off: notify therapists and stop; otherwise ask the AI
5. persist the AI reply and evaluate it for escalation; therapists get
   recipient rows for it only if it escalates

Ordinary AI-serviced traffic creates no therapist recipient rows, which
keeps therapist unread counts about messages that need them.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.services.llm_service import AIPurpose, AIRequest, AIResponder, build_history
from therapychat.services.notification_service import NotificationDispatcher
from therapychat.services.safety_service import AlertService, EscalationResult, SafetyEscalationPipeline
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import (
    AccessDenied,
    ConversationClosed,
    ConversationPaused,
    InvalidTransition,
    NotFound,
    NotificationDeliveryFailure,
    UpstreamUnavailable,
    ValidationError,
)
from therapychat.shared.models import (
    SYSTEM_ACTOR,
    Actor,
    Alert,
    Conversation,
    Message,
    RiskLevel,
    SenderRole,
    TagUrgency,
    User,
)
from therapychat.shared.utils import hash_pii, hash_text_for_audit

from .access_guard import AccessGuard
from .config import ChatConfig
from .conversation_state import ConversationState
from .mention_resolver import MentionResolver, RoutingDecision

logger = logging.getLogger(__name__)


@dataclass
class RoutingOutcome:
    """What happened to one submitted message."""
    message: Message
    decision: RoutingDecision
    recipients: List[str] = field(default_factory=list)
    ai_requested: bool = False
    ai_message: Optional[Message] = None
    escalation: Optional[EscalationResult] = None
    tag_alert: Optional[Alert] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message.to_dict(),
            "routing": self.decision.to_dict(),
            "therapist_recipients": len(
                [r for r in self.recipients if r != self.message.sender_id]
            ),
            "ai_requested": self.ai_requested,
            "ai_message": self.ai_message.to_dict() if self.ai_message else None,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "tag_alert_id": self.tag_alert.alert_id if self.tag_alert else None,
            "warnings": self.warnings,
        }


@dataclass
class MessageChange:
    """An edited or deleted message, plus degraded-success warnings."""
    message: Message
    changed: bool = True
    warnings: List[str] = field(default_factory=list)


class MessageRouter:
    """Persists messages, fans them out and drives the AI turn."""

    def __init__(
        self,
        store: ChatStore,
        guard: AccessGuard,
        state: ConversationState,
        resolver: MentionResolver,
        escalation: SafetyEscalationPipeline,
        alerts: AlertService,
        notifier: NotificationDispatcher,
        audit: AuditLogger,
        ai_responder: Optional[AIResponder] = None,
        config: Optional[ChatConfig] = None,
    ):
        self.store = store
        self.guard = guard
        self.state = state
        self.resolver = resolver
        self.escalation = escalation
        self.alerts = alerts
        self.notifier = notifier
        self.audit = audit
        self.ai = ai_responder
        self.config = config or ChatConfig()

    # Patient side

    def submit_patient_message(self, actor: Actor, conversation_id: str, text: str) -> RoutingOutcome:
        text = self._validate(text)
        conversation = self.guard.require(actor, conversation_id)
        if not actor.is_patient or actor.user_id != conversation.patient_id:
            raise AccessDenied("Only the patient can post in their own conversation")

        if conversation.is_closed:
            raise ConversationClosed(self.config.closed_notice)
        if conversation.is_paused:
            raise ConversationPaused("Conversation is paused", notice=self.config.paused_notice)

        patient, roster = self.store.roster_for(conversation.patient_id)
        decision = self.resolver.resolve(text, roster)

        message = self.store.add_message(Message(
            conversation_id=conversation_id,
            sender_role=SenderRole.PATIENT,
            sender_id=actor.user_id,
            body=text,
            tagged=decision.is_tagged,
            metadata={
                "topics": list(decision.topics),
                "urgency": decision.urgency.value if decision.urgency else None,
            },
        ))
        outcome = RoutingOutcome(message=message, decision=decision)
        self._record_activity(conversation_id, SenderRole.PATIENT, outcome.warnings)
        audit_best_effort(
            self.audit, outcome.warnings, AuditAction.MESSAGE_SENT, AuditEntity.MESSAGE,
            str(message.message_id), actor,
            {
                "conversation_id": conversation_id,
                "sender_role": SenderRole.PATIENT.value,
                "tagged": decision.is_tagged,
                "body_hash": hash_text_for_audit(text),
            },
        )

        ai_available = conversation.ai_active and self.ai is not None
        if decision.is_tagged:
            outcome.recipients = decision.recipients(roster)
        elif not ai_available:
            outcome.recipients = [t.user_id for t in roster]
        self.store.add_recipients(message.message_id, outcome.recipients)

        logger.info(
            "MESSAGE_ROUTED",
            extra={
                "conversation_id": conversation_id,
                "message_id": message.message_id,
                "patient_id_hash": hash_pii(actor.user_id),
                "tagged": decision.is_tagged,
                "broadcast": decision.is_broadcast,
                "therapist_recipients": len(outcome.recipients),
                "ai_active": ai_available,
            }
        )

        if decision.is_tagged:
            self._handle_tag(conversation, message, decision, outcome)

        if decision.is_tagged or not ai_available:
            self._notify_therapists(conversation, patient, roster, outcome, message, decision.is_tagged)
            return outcome

        outcome.ai_requested = True
        self._ai_turn(conversation, patient, roster, message, outcome)
        return outcome

    def tag_therapist(
        self,
        actor: Actor,
        conversation_id: str,
        reason_key: str,
        note: Optional[str] = None,
    ) -> RoutingOutcome:
        """Compose and route an ``@therapist #reason`` message."""
        if not self.config.tagging_enabled:
            raise ValidationError("Tagging is disabled")
        reason = self.config.find_tag_reason(reason_key)
        if reason is None:
            raise ValidationError(f"Unknown tag reason: {reason_key}")

        text = f"@therapist #{reason.key} {reason.label}"
        if note and note.strip():
            text += f"\n\n{note.strip()}"
        return self.submit_patient_message(actor, conversation_id, text)

    # Therapist side

    def submit_therapist_message(
        self,
        actor: Actor,
        conversation_id: str,
        text: str,
        draft_id: Optional[str] = None,
    ) -> RoutingOutcome:
        text = self._validate(text)
        if not actor.is_staff:
            raise AccessDenied("Only therapists can post therapist messages")
        conversation = self.guard.require(actor, conversation_id)
        if conversation.is_closed:
            raise ConversationClosed(self.config.closed_notice)

        metadata = {"draft_id": draft_id} if draft_id else {}
        message = self.store.add_message(Message(
            conversation_id=conversation_id,
            sender_role=SenderRole.THERAPIST,
            sender_id=actor.user_id,
            body=text,
            metadata=metadata,
        ))
        outcome = RoutingOutcome(message=message, decision=RoutingDecision())
        outcome.recipients = [conversation.patient_id]
        self.store.add_recipients(message.message_id, outcome.recipients)
        self._record_activity(conversation_id, SenderRole.THERAPIST, outcome.warnings)

        audit_best_effort(
            self.audit, outcome.warnings, AuditAction.MESSAGE_SENT, AuditEntity.MESSAGE,
            str(message.message_id), actor,
            {
                "conversation_id": conversation_id,
                "sender_role": SenderRole.THERAPIST.value,
                "body": text,
                "draft_id": draft_id,
            },
        )

        try:
            self.notifier.notify_patient(
                conversation,
                self.store.get_user(conversation.patient_id),
                self.store.get_user(actor.user_id),
                message,
            )
        except NotificationDeliveryFailure as e:
            logger.error(
                "PATIENT_NOTIFICATION_FAILED",
                extra={"conversation_id": conversation_id, "message_id": message.message_id, "error": str(e)}
            )
            outcome.warnings.append("notification_failed:patient_message")

        logger.info(
            "THERAPIST_MESSAGE_SENT",
            extra={
                "conversation_id": conversation_id,
                "message_id": message.message_id,
                "from_draft": draft_id is not None,
            }
        )
        return outcome

    def edit_message(self, actor: Actor, message_id: int, text: str) -> MessageChange:
        text = self._validate(text)
        message = self._authored_message(actor, message_id)
        now = datetime.utcnow()

        def mutate(current: Message) -> Message:
            if current.deleted:
                raise InvalidTransition("Deleted messages cannot be edited")
            return replace(current, body=text, edited=True, updated_at=now)

        previous, updated = self.store.update_message(message.message_id, mutate)
        change = MessageChange(updated)
        audit_best_effort(
            self.audit, change.warnings, AuditAction.MESSAGE_EDITED, AuditEntity.MESSAGE,
            str(message_id), actor,
            {"conversation_id": message.conversation_id, "old_body": previous.body, "new_body": text},
        )
        return change

    def delete_message(self, actor: Actor, message_id: int) -> MessageChange:
        """Soft delete. The row stays and renders as a placeholder."""
        message = self._authored_message(actor, message_id)
        if message.deleted:
            return MessageChange(message, changed=False)

        now = datetime.utcnow()
        previous, updated = self.store.update_message(
            message.message_id, lambda current: replace(current, deleted=True, updated_at=now)
        )
        change = MessageChange(updated)
        audit_best_effort(
            self.audit, change.warnings, AuditAction.MESSAGE_DELETED, AuditEntity.MESSAGE,
            str(message_id), actor,
            {"conversation_id": message.conversation_id, "body": previous.body},
        )
        return change

    # Reading

    def list_messages(
        self,
        actor: Actor,
        conversation_id: str,
        after_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Fetch only; marking read is a separate, explicit step."""
        self.guard.require(actor, conversation_id)
        page_size = min(limit or self.config.history_page_size, self.config.history_page_size)
        return self.store.list_messages(conversation_id, after_id=after_id, limit=page_size)

    def render(self, messages: Sequence[Message]) -> List[Dict[str, Any]]:
        names: Dict[str, Optional[User]] = {}
        rendered = []
        for message in messages:
            if message.sender_id and message.sender_id not in names:
                names[message.sender_id] = self.store.get_user(message.sender_id)
            rendered.append(message.to_dict(label=self.label_for(message, names.get(message.sender_id))))
        return rendered

    def label_for(self, message: Message, sender: Optional[User]) -> str:
        if message.sender_role == SenderRole.AI:
            return self.config.ai_label
        if message.sender_role == SenderRole.SYSTEM:
            return self.config.system_label
        if message.sender_role == SenderRole.THERAPIST:
            return f"Therapist ({sender.name})" if sender else "Therapist"
        return sender.name if sender else "Patient"

    # Internals

    def _ai_turn(
        self,
        conversation: Conversation,
        patient: Optional[User],
        roster: List[User],
        message: Message,
        outcome: RoutingOutcome,
    ) -> None:
        conversation_id = conversation.conversation_id
        history = build_history(
            self.store.list_recent_messages(conversation_id, self.config.ai_history_limit)
        )

        try:
            reply = self.ai.generate(AIRequest(conversation_id, history, AIPurpose.REPLY))
            if not reply.text and reply.safety_payload is None:
                raise UpstreamUnavailable("AI returned an empty reply")
        except Exception as e:
            self._queue_for_therapists(conversation, patient, roster, message, outcome)
            logger.error(
                "AI_REPLY_FAILED",
                extra={
                    "conversation_id": conversation_id,
                    "message_id": message.message_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
            raise UpstreamUnavailable(
                "The assistant is unavailable; your therapist has been notified.",
                message_id=message.message_id,
            ) from e

        ai_message = self.store.add_message(Message(
            conversation_id=conversation_id,
            sender_role=SenderRole.AI,
            body=reply.text,
            safety_payload=reply.safety_payload,
            metadata={"model": reply.model, "in_reply_to": message.message_id},
        ))
        outcome.ai_message = ai_message
        self.store.add_recipients(ai_message.message_id, [conversation.patient_id])

        try:
            outcome.escalation = self.escalation.evaluate(ai_message, reply.safety_payload, message.body)
        except Exception as e:
            logger.critical(
                "SAFETY_ESCALATION_FAILED",
                extra={
                    "conversation_id": conversation_id,
                    "message_id": ai_message.message_id,
                    "error_type": type(e).__name__,
                    "error": str(e),
                    "action": "MANUAL_REVIEW_REQUIRED",
                }
            )
            outcome.warnings.append("escalation_failed")
            return

        outcome.warnings.extend(outcome.escalation.warnings)
        if outcome.escalation.escalated:
            therapist_ids = [t.user_id for t in roster]
            self.store.add_recipients(ai_message.message_id, therapist_ids)
            outcome.recipients = therapist_ids
            if not outcome.escalation.already_blocked:
                self._post_blocked_notice(conversation)

    def _handle_tag(
        self,
        conversation: Conversation,
        message: Message,
        decision: RoutingDecision,
        outcome: RoutingOutcome,
    ) -> None:
        target = None
        if not decision.is_broadcast and len(outcome.recipients) == 1:
            target = outcome.recipients[0]

        reason = None
        if decision.topics:
            tag_reason = self.config.find_tag_reason(decision.topics[0])
            reason = tag_reason.label if tag_reason else None

        try:
            outcome.tag_alert = self.alerts.create_tag_alert(
                conversation, message, decision.urgency, target, reason, outcome.warnings
            )
            if decision.urgency == TagUrgency.EMERGENCY:
                raised = self.state.raise_risk_level(SYSTEM_ACTOR, conversation.conversation_id, RiskLevel.CRITICAL)
                outcome.warnings.extend(raised.warnings)
            elif decision.urgency == TagUrgency.URGENT:
                raised = self.state.raise_risk_level(SYSTEM_ACTOR, conversation.conversation_id, RiskLevel.MEDIUM)
                outcome.warnings.extend(raised.warnings)
        except Exception as e:
            logger.error(
                "TAG_ALERT_FAILED",
                extra={
                    "conversation_id": conversation.conversation_id,
                    "message_id": message.message_id,
                    "error": str(e),
                }
            )
            outcome.warnings.append("tag_alert_failed")

    def _queue_for_therapists(
        self,
        conversation: Conversation,
        patient: Optional[User],
        roster: List[User],
        message: Message,
        outcome: RoutingOutcome,
    ) -> None:
        outcome.recipients = [t.user_id for t in roster]
        self.store.add_recipients(message.message_id, outcome.recipients)
        self._notify_therapists(conversation, patient, roster, outcome, message, False)

    def _notify_therapists(
        self,
        conversation: Conversation,
        patient: Optional[User],
        roster: List[User],
        outcome: RoutingOutcome,
        message: Message,
        is_tag: bool,
    ) -> None:
        targets = [t for t in roster if t.user_id in outcome.recipients]
        try:
            self.notifier.notify_therapists(conversation, patient, targets, message, is_tag=is_tag)
        except NotificationDeliveryFailure as e:
            logger.error(
                "THERAPIST_NOTIFICATION_FAILED",
                extra={
                    "conversation_id": conversation.conversation_id,
                    "message_id": message.message_id,
                    "error": str(e),
                }
            )
            outcome.warnings.append("notification_failed:therapist_message")

    def _post_blocked_notice(self, conversation: Conversation) -> None:
        notice = self.store.add_message(Message(
            conversation_id=conversation.conversation_id,
            sender_role=SenderRole.SYSTEM,
            body=self.escalation.config.blocked_message,
            metadata={"blocked_notice": True},
        ))
        self.store.add_recipients(notice.message_id, [conversation.patient_id])

    def _record_activity(self, conversation_id: str, role: SenderRole, warnings: List[str]) -> None:
        try:
            self.state.record_activity(conversation_id, role)
        except Exception as e:
            logger.error(
                "CONVERSATION_ACTIVITY_UPDATE_FAILED",
                extra={"conversation_id": conversation_id, "error": str(e)}
            )
            warnings.append("activity_update_failed")

    def _authored_message(self, actor: Actor, message_id: int) -> Message:
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"Message {message_id} not found")
        self.guard.require(actor, message.conversation_id)
        if message.sender_role != SenderRole.THERAPIST or message.sender_id != actor.user_id:
            raise AccessDenied("Only the authoring therapist can change this message")
        return message

    def _validate(self, text: Optional[str]) -> str:
        if text is None or not str(text).strip():
            raise ValidationError("Message text must not be empty")
        text = str(text).strip()
        if len(text) > self.config.max_message_length:
            raise ValidationError(
                f"Message exceeds {self.config.max_message_length} characters"
            )
        return text
