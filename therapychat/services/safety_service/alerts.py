"""Alert creation for escalations and patient tags.

Alerts are created once per triggering event and never deleted; reading
them is tracked by the UnreadTracker.
"""
import logging
from typing import List, Optional, Sequence

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.shared.database import ChatStore
from therapychat.shared.models import (
    SYSTEM_ACTOR,
    Alert,
    AlertSeverity,
    AlertType,
    Conversation,
    DangerLevel,
    Message,
    TagUrgency,
)
from therapychat.shared.utils import build_preview

from .assessment import SOURCE_KEYWORD, SafetyAssessment

logger = logging.getLogger(__name__)


_DANGER_SEVERITY = {
    DangerLevel.CRITICAL: AlertSeverity.CRITICAL,
    DangerLevel.EMERGENCY: AlertSeverity.EMERGENCY,
}


def order_alerts(alerts: Sequence[Alert]) -> List[Alert]:
    """Most severe first, unread before read, newest first."""
    return sorted(
        alerts,
        key=lambda a: (-a.severity.rank, a.is_read, -a.created_at.timestamp()),
    )


class AlertService:
    """Persists alerts and records them in the audit trail."""

    def __init__(self, store: ChatStore, audit: AuditLogger, excerpt_length: int = 100):
        self.store = store
        self.audit = audit
        self.excerpt_length = excerpt_length

    def create_danger_alert(
        self,
        conversation: Conversation,
        assessment: SafetyAssessment,
        message: Message,
        trigger_text: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Alert:
        """One ``danger_detected`` alert, broadcast to all assigned therapists."""
        if assessment.source == SOURCE_KEYWORD:
            summary = "Danger keywords detected: " + ", ".join(assessment.matched_keywords)
        elif assessment.detected_concerns:
            summary = "Danger detected: " + ", ".join(assessment.detected_concerns)
        else:
            summary = f"Danger detected ({assessment.danger_level.value})"

        alert = Alert(
            conversation_id=conversation.conversation_id,
            alert_type=AlertType.DANGER_DETECTED,
            severity=_DANGER_SEVERITY.get(assessment.danger_level, AlertSeverity.CRITICAL),
            summary=summary,
            target_user_id=None,
            metadata={
                "danger_level": assessment.danger_level.value,
                "source": assessment.source,
                "detected_concerns": list(assessment.detected_concerns),
                "matched_keywords": list(assessment.matched_keywords),
                "message_id": message.message_id,
                "message_excerpt": build_preview(trigger_text or message.body, self.excerpt_length),
            },
        )
        return self._store(alert, warnings)

    def create_tag_alert(
        self,
        conversation: Conversation,
        message: Message,
        urgency: Optional[TagUrgency],
        target_user_id: Optional[str],
        reason: Optional[str] = None,
        warnings: Optional[List[str]] = None,
    ) -> Alert:
        urgency = urgency or TagUrgency.NORMAL
        label = reason or build_preview(message.body, self.excerpt_length)
        alert = Alert(
            conversation_id=conversation.conversation_id,
            alert_type=AlertType.TAG_RECEIVED,
            severity=urgency.alert_severity,
            summary=f'Patient tagged therapist: "{label}"',
            target_user_id=target_user_id,
            metadata={
                "urgency": urgency.value,
                "reason": reason,
                "message_id": message.message_id,
            },
        )
        return self._store(alert, warnings)

    def _store(self, alert: Alert, warnings: Optional[List[str]]) -> Alert:
        stored = self.store.add_alert(alert)
        audit_best_effort(
            self.audit, warnings if warnings is not None else [],
            AuditAction.ALERT_CREATED, AuditEntity.ALERT, stored.alert_id, SYSTEM_ACTOR,
            {
                "conversation_id": stored.conversation_id,
                "alert_type": stored.alert_type.value,
                "severity": stored.severity.value,
                "target_user_id": stored.target_user_id,
            },
        )
        logger.info(
            "ALERT_CREATED",
            extra={
                "alert_id": stored.alert_id,
                "conversation_id": stored.conversation_id,
                "alert_type": stored.alert_type.value,
                "severity": stored.severity.value,
                "broadcast": stored.target_user_id is None,
            }
        )
        return stored
