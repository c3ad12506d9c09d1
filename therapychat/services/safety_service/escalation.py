"""SafetyEscalationPipeline: dangerous content locks the conversation down.

On an escalating assessment, in order:
1. block the conversation (AI off); an already-blocked one is not re-blocked
2. raise risk to critical
3. create one ``danger_detected`` alert for all assigned therapists
4. queue one urgent notification to the roster plus static extra recipients

Steps 1-3 are state changes and propagate their failures. Step 4 is
isolated: a queue failure is logged at CRITICAL and returned as a warning,
and the block stays committed.
"""
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.services.notification_service import NotificationDispatcher
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import NotificationDeliveryFailure
from therapychat.shared.models import SYSTEM_ACTOR, Alert, DangerLevel, Message, RiskLevel
from therapychat.shared.utils import hash_pii

from .alerts import AlertService
from .assessment import KeywordScanner, SafetyAssessment, parse_safety_payload
from .config import SafetyConfig

if TYPE_CHECKING:
    from therapychat.services.chat_service.conversation_state import ConversationState

logger = logging.getLogger(__name__)


@dataclass
class EscalationResult:
    escalated: bool
    assessment: Optional[SafetyAssessment] = None
    already_blocked: bool = False
    alert: Optional[Alert] = None
    notified: bool = False
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "escalated": self.escalated,
            "assessment": self.assessment.to_dict() if self.assessment else None,
            "already_blocked": self.already_blocked,
            "alert_id": self.alert.alert_id if self.alert else None,
            "notified": self.notified,
        }


class SafetyEscalationPipeline:
    """Detection plus the deterministic escalation sequence."""

    def __init__(
        self,
        store: ChatStore,
        state: "ConversationState",
        alerts: AlertService,
        notifier: NotificationDispatcher,
        audit: AuditLogger,
        config: Optional[SafetyConfig] = None,
    ):
        self.store = store
        self.state = state
        self.alerts = alerts
        self.notifier = notifier
        self.audit = audit
        self.config = config or SafetyConfig()
        self.scanner = KeywordScanner(self.config.danger_keywords)

    def assess(
        self,
        message: Message,
        safety_payload: Optional[Dict[str, Any]] = None,
        related_text: Optional[str] = None,
    ) -> Optional[SafetyAssessment]:
        """Structured payload first; keyword scan only when it is absent."""
        if not self.config.danger_detection_enabled:
            return None

        structured = parse_safety_payload(safety_payload)
        if structured is not None:
            return structured
        return self.scanner.assess(message.body, related_text)

    def evaluate(
        self,
        message: Message,
        safety_payload: Optional[Dict[str, Any]] = None,
        related_text: Optional[str] = None,
    ) -> EscalationResult:
        """Assess a message and escalate if the result demands it.

        Args:
            message: Persisted message being evaluated (usually the AI reply)
            safety_payload: Structured assessment attached to it, if any
            related_text: Triggering patient text, included in the
                keyword scan and the alert excerpt
        """
        assessment = self.assess(message, safety_payload, related_text)
        if assessment is None:
            return EscalationResult(escalated=False)

        if not assessment.is_escalating:
            if assessment.danger_level == DangerLevel.WARNING:
                logger.warning(
                    "SAFETY_WARNING_DETECTED",
                    extra={
                        "conversation_id": message.conversation_id,
                        "message_id": message.message_id,
                        "concerns": list(assessment.detected_concerns),
                    }
                )
            return EscalationResult(escalated=False, assessment=assessment)

        return self.escalate(message, assessment, related_text)

    def escalate(
        self,
        message: Message,
        assessment: SafetyAssessment,
        related_text: Optional[str] = None,
    ) -> EscalationResult:
        conversation_id = message.conversation_id
        result = EscalationResult(escalated=True, assessment=assessment)

        logger.critical(
            "SAFETY_ESCALATION_TRIGGERED",
            extra={
                "conversation_id": conversation_id,
                "message_id": message.message_id,
                "danger_level": assessment.danger_level.value,
                "source": assessment.source,
                "matched_keywords": list(assessment.matched_keywords),
            }
        )

        reason = f"danger_detected:{assessment.source}:{assessment.danger_level.value}"
        blocked = self.state.block(SYSTEM_ACTOR, conversation_id, reason)
        result.already_blocked = not blocked.changed
        result.warnings.extend(blocked.warnings)

        raised = self.state.raise_risk_level(SYSTEM_ACTOR, conversation_id, RiskLevel.CRITICAL)
        result.warnings.extend(raised.warnings)
        conversation = raised.conversation

        if result.already_blocked and not self.config.alert_on_repeat:
            logger.info(
                "SAFETY_REPEAT_ALERT_SUPPRESSED",
                extra={"conversation_id": conversation_id, "message_id": message.message_id}
            )
            return result

        result.alert = self.alerts.create_danger_alert(
            conversation, assessment, message, related_text, result.warnings
        )

        patient, therapists = self.store.roster_for(conversation.patient_id)
        try:
            self.notifier.notify_urgent(
                conversation,
                patient,
                therapists,
                self.config.extra_notification_emails,
                result.alert,
            )
            result.notified = True
        except NotificationDeliveryFailure as e:
            logger.critical(
                "URGENT_NOTIFICATION_FAILED",
                extra={
                    "conversation_id": conversation_id,
                    "alert_id": result.alert.alert_id,
                    "patient_id_hash": hash_pii(conversation.patient_id),
                    "error": str(e),
                    "action": "MANUAL_NOTIFICATION_REQUIRED",
                }
            )
            result.warnings.append("notification_failed:urgent_alert")

        audit_best_effort(
            self.audit, result.warnings, AuditAction.SAFETY_ESCALATED, AuditEntity.CONVERSATION,
            conversation_id, SYSTEM_ACTOR,
            {
                "message_id": message.message_id,
                "alert_id": result.alert.alert_id,
                "assessment": assessment.to_dict(),
                "already_blocked": result.already_blocked,
                "notified": result.notified,
            },
        )
        return result
