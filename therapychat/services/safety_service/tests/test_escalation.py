"""Tests for SafetyEscalationPipeline."""
import pytest

from therapychat.services.audit_service import AuditAction
from therapychat.services.chat_service.conversation_state import ConversationState
from therapychat.services.safety_service import AlertService, SafetyConfig, SafetyEscalationPipeline
from therapychat.shared.models import AlertType, Message, RiskLevel, SenderRole


CRITICAL_PAYLOAD = {"danger_level": "critical", "detected_concerns": ["self-harm"]}


@pytest.fixture
def ai_message(store, conversation):
    return store.add_message(Message(conversation.conversation_id, SenderRole.AI, "I hear you."))


def _danger_alerts(store, conversation):
    return [
        a for a in store.list_alerts([conversation.conversation_id])
        if a.alert_type == AlertType.DANGER_DETECTED
    ]


class TestEvaluate:
    def test_safe_payload_does_nothing(self, engine, store, ai_message, conversation):
        result = engine.escalation.evaluate(ai_message, {"danger_level": "none"}, "I want to end my life")

        assert result.escalated is False
        assert store.get_conversation(conversation.conversation_id).blocked is False

    def test_warning_level_only_logged(self, engine, store, queue, ai_message, conversation):
        result = engine.escalation.evaluate(ai_message, {"danger_level": "warning"})

        assert result.escalated is False
        assert result.assessment.danger_level.value == "warning"
        assert queue.queued == []

    def test_structured_critical_escalates(self, engine, store, queue, ai_message, conversation):
        result = engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD, "I want to end it")

        current = store.get_conversation(conversation.conversation_id)
        assert result.escalated is True
        assert result.notified is True
        assert current.blocked is True
        assert current.ai_enabled is False
        assert current.risk_level == RiskLevel.CRITICAL
        assert len(_danger_alerts(store, conversation)) == 1
        assert len(queue.of_kind("urgent_alert")) == 1

    def test_keyword_fallback_without_payload(self, engine, store, ai_message, conversation):
        result = engine.escalation.evaluate(ai_message, None, "I want to end my life")

        assert result.escalated is True
        assert result.assessment.source == "keyword"
        assert result.alert.metadata["message_excerpt"] == "I want to end my life"

    def test_payload_overrides_keywords(self, engine, ai_message):
        result = engine.escalation.evaluate(ai_message, {"danger_level": "none"}, "overdose")
        assert result.escalated is False

    def test_detection_disabled(self, store, engine, audit, queue, ai_message):
        pipeline = SafetyEscalationPipeline(
            store, engine.state, engine.alerts, queue, audit,
            SafetyConfig(danger_detection_enabled=False),
        )
        assert pipeline.evaluate(ai_message, CRITICAL_PAYLOAD).escalated is False

    def test_urgent_recipients_include_extras(self, engine, queue, ai_message):
        engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD)

        urgent = queue.of_kind("urgent_alert")[0]
        assert urgent.recipient_emails == ("anna@clinic.test", "ben@clinic.test", "oncall@clinic.test")
        assert urgent.recipient_ids == ("ther_1", "ther_2")

    def test_escalation_audited(self, engine, audit, ai_message, conversation):
        engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD)

        assert audit.query(action=AuditAction.CONVERSATION_BLOCKED)[-1].actor_id == "system"
        entry = audit.query(action=AuditAction.SAFETY_ESCALATED)[-1]
        assert entry.entity_id == conversation.conversation_id
        assert entry.details["notified"] is True


class TestRepeatEscalation:
    def test_repeat_creates_new_alert_without_reblocking(self, engine, store, queue, audit, ai_message, conversation):
        first = engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD)
        second = engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD)

        assert first.already_blocked is False
        assert second.already_blocked is True
        assert len(_danger_alerts(store, conversation)) == 2
        assert len(queue.of_kind("urgent_alert")) == 2
        assert len(audit.query(action=AuditAction.CONVERSATION_BLOCKED)) == 1

    def test_repeat_alert_suppressed_when_configured(self, store, audit, queue, ai_message, conversation):
        from therapychat.services.chat_service.access_guard import AccessGuard

        state = ConversationState(store, AccessGuard(store), audit)
        pipeline = SafetyEscalationPipeline(
            store, state, AlertService(store, audit), queue, audit,
            SafetyConfig(alert_on_repeat=False),
        )

        pipeline.evaluate(ai_message, CRITICAL_PAYLOAD)
        repeat = pipeline.evaluate(ai_message, CRITICAL_PAYLOAD)

        assert repeat.escalated is True
        assert repeat.alert is None
        assert len(_danger_alerts(store, conversation)) == 1
        assert len(queue.of_kind("urgent_alert")) == 1


class TestNotificationFailure:
    def test_block_survives_queue_failure(self, engine, store, queue, ai_message, conversation):
        queue.available = False

        result = engine.escalation.evaluate(ai_message, CRITICAL_PAYLOAD)

        current = store.get_conversation(conversation.conversation_id)
        assert result.escalated is True
        assert result.notified is False
        assert "notification_failed:urgent_alert" in result.warnings
        assert current.blocked is True
        assert current.risk_level == RiskLevel.CRITICAL
        assert len(_danger_alerts(store, conversation)) == 1
