"""UnreadTracker: polling probes, unread aggregates and alert read state.

``check_updates`` is the cheap half of two-phase polling: counts and the
latest message id only, never message bodies. Clients fetch history only
when it reports a change.

Therapist-facing counts exclude AI-authored messages; ordinary
AI-serviced traffic creates no therapist recipient rows in the first
place, and an escalating AI reply is surfaced through its alert.
"""
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Sequence

from therapychat.services.audit_service import (
    AuditAction,
    AuditEntity,
    AuditLogger,
    audit_best_effort,
)
from therapychat.services.safety_service import order_alerts
from therapychat.shared.database import ChatStore
from therapychat.shared.errors import AccessDenied, NotFound
from therapychat.shared.models import (
    Actor,
    Alert,
    Conversation,
    ConversationStatus,
    RiskLevel,
    SenderRole,
    User,
    sort_by_risk,
)

from .access_guard import AccessGuard
from .conversation_state import ConversationState

logger = logging.getLogger(__name__)


class UnreadTracker:
    """Read-side bookkeeping over recipient rows and alerts."""

    def __init__(
        self,
        store: ChatStore,
        guard: AccessGuard,
        state: ConversationState,
        audit: AuditLogger,
    ):
        self.store = store
        self.guard = guard
        self.state = state
        self.audit = audit

    def check_updates(
        self,
        actor: Actor,
        conversation_id: str,
        since_message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        self.guard.require(actor, conversation_id)
        unread = self.store.count_unread_messages(
            actor.user_id, [conversation_id], self._excluded_roles(actor)
        )
        latest = self.store.latest_message_id(conversation_id)
        new_count = self.store.count_messages_after(conversation_id, since_message_id)

        result = {
            "conversation_id": conversation_id,
            "unread_count": unread.get(conversation_id, 0),
            "latest_message_id": latest,
            "new_count": new_count,
            "has_updates": latest is not None and (since_message_id is None or latest > since_message_id),
        }
        if actor.is_staff:
            alerts = self.store.count_unread_alerts([conversation_id], actor.user_id)
            result["unread_alerts"] = alerts.get(conversation_id, 0)
        return result

    def get_unread_counts(self, actor: Actor) -> Dict[str, Any]:
        """Per-patient, per-group and total unread message and alert counts."""
        patients = self.guard.accessible_patients(actor)
        conversations = self._current_conversations(patients)
        conversation_ids = [c.conversation_id for c in conversations.values()]

        messages = self.store.count_unread_messages(
            actor.user_id, conversation_ids, self._excluded_roles(actor)
        ) if conversation_ids else {}
        alerts = {}
        if actor.is_staff and conversation_ids:
            alerts = self.store.count_unread_alerts(conversation_ids, actor.user_id)

        by_patient: Dict[str, Dict[str, int]] = {}
        by_group: Dict[str, int] = defaultdict(int)
        for patient in patients:
            conversation = conversations.get(patient.user_id)
            if conversation is None:
                continue
            unread_messages = messages.get(conversation.conversation_id, 0)
            unread_alerts = alerts.get(conversation.conversation_id, 0)
            if not (unread_messages or unread_alerts):
                continue
            by_patient[patient.user_id] = {
                "messages": unread_messages,
                "alerts": unread_alerts,
                "total": unread_messages + unread_alerts,
            }
            for group_id in patient.group_ids:
                by_group[group_id] += unread_messages + unread_alerts

        return {
            "total": sum(messages.values()),
            "total_alerts": sum(alerts.values()),
            "by_patient": by_patient,
            "by_group": dict(by_group),
        }

    def mark_read(
        self,
        actor: Actor,
        conversation_id: str,
        up_to_message_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Flip the caller's recipient rows and record last-seen.

        ``up_to_message_id`` bounds the flip to what the caller was shown.
        """
        self.guard.require(actor, conversation_id)
        marked = self.store.mark_recipients_read(conversation_id, actor.user_id, up_to_message_id)
        try:
            self.state.mark_seen(conversation_id, actor)
        except Exception as e:
            logger.error(
                "LAST_SEEN_UPDATE_FAILED",
                extra={"conversation_id": conversation_id, "error": str(e)}
            )

        if marked:
            logger.info(
                "MESSAGES_MARKED_READ",
                extra={"conversation_id": conversation_id, "count": marked, "actor_role": actor.role.value}
            )
        return {"marked": marked, "counts": self.get_unread_counts(actor)}

    # Alerts

    def list_alerts(
        self,
        actor: Actor,
        conversation_id: Optional[str] = None,
        unread_only: bool = False,
    ) -> List[Alert]:
        conversation_ids = self._staff_conversation_ids(actor, conversation_id)
        if not conversation_ids:
            return []
        alerts = self.store.list_alerts(
            conversation_ids,
            user_id=None if actor.is_admin else actor.user_id,
            unread_only=unread_only,
        )
        return order_alerts(alerts)

    def mark_alert_read(self, actor: Actor, alert_id: str) -> bool:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFound(f"Alert {alert_id} not found")
        if not actor.is_staff:
            raise AccessDenied("Only therapists can manage alerts")
        self.guard.require(actor, alert.conversation_id)
        if alert.target_user_id not in (None, actor.user_id) and not actor.is_admin:
            raise AccessDenied("This alert is addressed to another therapist")
        return self.store.mark_alert_read(alert_id)

    def mark_all_alerts_read(self, actor: Actor, conversation_id: Optional[str] = None) -> Dict[str, Any]:
        """Dismiss all visible alerts; a second call is a no-op."""
        conversation_ids = self._staff_conversation_ids(actor, conversation_id)
        marked = self.store.mark_alerts_read(conversation_ids, actor.user_id) if conversation_ids else 0

        warnings: List[str] = []
        if marked:
            audit_best_effort(
                self.audit, warnings, AuditAction.ALERTS_READ, AuditEntity.ALERT,
                conversation_id or "*", actor, {"count": marked},
            )
            logger.info(
                "ALERTS_MARKED_READ",
                extra={"conversation_id": conversation_id, "count": marked}
            )

        remaining = self.store.count_unread_alerts(conversation_ids, actor.user_id) if conversation_ids else {}
        result = {"marked": marked, "unread_alerts": sum(remaining.values())}
        if warnings:
            result["warnings"] = warnings
        return result

    # Therapist dashboard

    def list_patients(self, actor: Actor, group_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Accessible patients with their conversation, most at-risk first."""
        if not actor.is_staff:
            raise AccessDenied("Only therapists can list patients")
        patients = self.guard.accessible_patients(actor, group_id)
        conversations = self._current_conversations(patients)
        conversation_ids = [c.conversation_id for c in conversations.values()]

        messages = self.store.count_unread_messages(
            actor.user_id, conversation_ids, self._excluded_roles(actor)
        ) if conversation_ids else {}
        alerts = self.store.count_unread_alerts(conversation_ids, actor.user_id) if conversation_ids else {}

        by_id = {p.user_id: p for p in patients}
        entries = []
        for conversation in sort_by_risk(list(conversations.values())):
            entries.append(self._patient_entry(
                by_id[conversation.patient_id], conversation, messages, alerts
            ))
        without = sorted(
            (p for p in patients if p.user_id not in conversations),
            key=lambda p: p.name.lower(),
        )
        entries.extend(self._patient_entry(p, None, messages, alerts) for p in without)
        return entries

    def stats(self, actor: Actor, group_id: Optional[str] = None) -> Dict[str, int]:
        if not actor.is_staff:
            raise AccessDenied("Only therapists can view statistics")
        patients = self.guard.accessible_patients(actor, group_id)
        conversations = list(self._current_conversations(patients).values())
        conversation_ids = [c.conversation_id for c in conversations]
        alerts = self.store.count_unread_alerts(conversation_ids, actor.user_id) if conversation_ids else {}

        return {
            "total": len(conversations),
            "active": sum(1 for c in conversations if c.status == ConversationStatus.ACTIVE),
            "paused": sum(1 for c in conversations if c.status == ConversationStatus.PAUSED),
            "critical": sum(1 for c in conversations if c.risk_level == RiskLevel.CRITICAL),
            "high": sum(1 for c in conversations if c.risk_level == RiskLevel.HIGH),
            "unread_alerts": sum(alerts.values()),
        }

    # Internals

    @staticmethod
    def _excluded_roles(actor: Actor) -> Sequence[SenderRole]:
        return (SenderRole.AI,) if actor.is_staff else ()

    def _staff_conversation_ids(self, actor: Actor, conversation_id: Optional[str]) -> List[str]:
        if not actor.is_staff:
            raise AccessDenied("Only therapists can manage alerts")
        if conversation_id:
            self.guard.require(actor, conversation_id)
            return [conversation_id]
        patients = self.guard.accessible_patients(actor)
        if not patients:
            return []
        conversations = self.store.list_conversations_for_patients([p.user_id for p in patients])
        return [c.conversation_id for c in conversations]

    def _current_conversations(self, patients: Sequence[User]) -> Dict[str, Conversation]:
        """The open conversation per patient, else their newest closed one."""
        if not patients:
            return {}
        current: Dict[str, Conversation] = {}
        for conversation in self.store.list_conversations_for_patients([p.user_id for p in patients]):
            existing = current.get(conversation.patient_id)
            if existing is None or _preferred(conversation, existing):
                current[conversation.patient_id] = conversation
        return current

    @staticmethod
    def _patient_entry(
        patient: User,
        conversation: Optional[Conversation],
        messages: Dict[str, int],
        alerts: Dict[str, int],
    ) -> Dict[str, Any]:
        conversation_id = conversation.conversation_id if conversation else None
        return {
            "patient": patient.to_dict(),
            "conversation": conversation.to_dict() if conversation else None,
            "unread_messages": messages.get(conversation_id, 0),
            "unread_alerts": alerts.get(conversation_id, 0),
        }


def _preferred(candidate: Conversation, existing: Conversation) -> bool:
    if candidate.is_closed != existing.is_closed:
        return not candidate.is_closed
    return candidate.created_at > existing.created_at
