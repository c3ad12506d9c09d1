"""Tests for MessageRouter - fan-out, AI turn and escalation hand-off."""
import pytest

from therapychat.shared.errors import (
    AccessDenied,
    ConversationClosed,
    ConversationPaused,
    UpstreamUnavailable,
    ValidationError,
)
from therapychat.shared.models import (
    AlertSeverity,
    AlertType,
    ConversationStatus,
    Message,
    RiskLevel,
    SenderRole,
    SYSTEM_ACTOR,
)


CRITICAL_PAYLOAD = {
    "danger_level": "critical",
    "detected_concerns": ["suicidal ideation"],
    "safety_message": "Please reach out to someone you trust.",
}


def therapist_recipients(store, message_id):
    return sorted(r.user_id for r in store.list_recipients(message_id) if r.user_id.startswith("ther_"))


def failing_audit_log(*args, **kwargs):
    raise RuntimeError("audit store unavailable")


class TestAIServicedMessages:
    def test_untagged_message_gets_ai_reply(self, engine, store, responder, patient, conversation):
        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Rough day at work")

        assert outcome.ai_requested is True
        assert outcome.ai_message is not None
        assert outcome.ai_message.sender_role == SenderRole.AI
        assert outcome.ai_message.body == "Supportive reply #1"
        assert len(responder.requests) == 1
        assert responder.requests[0].history[-1] == {"role": "user", "content": "Rough day at work"}

    def test_no_therapist_recipients_for_ai_traffic(self, engine, store, patient, conversation):
        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Rough day")

        assert therapist_recipients(store, outcome.message.message_id) == []
        assert therapist_recipients(store, outcome.ai_message.message_id) == []
        assert [r.user_id for r in store.list_recipients(outcome.ai_message.message_id)] == ["pat_1"]

    def test_no_therapist_notification_for_ai_traffic(self, engine, queue, patient, conversation):
        engine.router.submit_patient_message(patient, conversation.conversation_id, "Rough day")
        assert queue.of_kind("therapist_message") == []

    def test_ai_reply_keeps_safety_payload(self, engine, patient, conversation):
        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello")
        assert outcome.ai_message.safety_payload["danger_level"] == "none"
        assert outcome.escalation.escalated is False

    def test_history_is_bounded(self, engine, responder, patient, conversation, chat_config):
        for i in range(chat_config.ai_history_limit):
            engine.router.submit_patient_message(patient, conversation.conversation_id, f"message {i}")
        assert len(responder.requests[-1].history) <= chat_config.ai_history_limit

    def test_history_is_the_newest_window(self, engine, store, responder, patient, conversation, chat_config):
        cid = conversation.conversation_id
        for i in range(chat_config.ai_history_limit + 25):
            store.add_message(Message(cid, SenderRole.PATIENT, f"older {i}", sender_id="pat_1"))

        engine.router.submit_patient_message(patient, cid, "NEWEST message")

        history = responder.requests[-1].history
        assert len(history) == chat_config.ai_history_limit
        assert history[-1] == {"role": "user", "content": "NEWEST message"}
        assert {"role": "user", "content": "older 0"} not in history


class TestDirectedMessages:
    def test_at_therapist_broadcasts_and_skips_ai(self, engine, store, responder, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@therapist I need to talk"
        )

        assert outcome.decision.is_tagged is True
        assert outcome.decision.is_broadcast is True
        assert outcome.message.tagged is True
        assert outcome.ai_requested is False
        assert responder.requests == []
        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1", "ther_2"]

    def test_tag_creates_broadcast_alert(self, engine, store, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@therapist I need to talk"
        )

        alerts = store.list_alerts([conversation.conversation_id], alert_type=AlertType.TAG_RECEIVED)
        assert len(alerts) == 1
        assert alerts[0].target_user_id is None
        assert alerts[0].severity == AlertSeverity.WARNING
        assert outcome.tag_alert.alert_id == alerts[0].alert_id

    def test_tag_notifies_therapists(self, engine, queue, patient, conversation):
        engine.router.submit_patient_message(patient, conversation.conversation_id, "@therapist I need to talk")

        notifications = queue.of_kind("therapist_message")
        assert {n.channel for n in notifications} == {"email", "push"}
        assert all(n.metadata["is_tag"] for n in notifications)
        email = [n for n in notifications if n.channel == "email"][0]
        assert set(email.recipient_emails) == {"anna@clinic.test", "ben@clinic.test"}
        assert email.subject == "Pat Morgan tagged you"

    def test_named_mention_targets_one_therapist(self, engine, store, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@Anna Berg can we talk tomorrow?"
        )

        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1"]
        assert outcome.tag_alert.target_user_id == "ther_1"

    def test_full_and_first_name_mentions_reach_both(self, engine, store, queue, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@Anna Berg and @Ben please call me"
        )

        assert sorted(outcome.recipients) == ["ther_1", "ther_2"]
        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1", "ther_2"]
        assert outcome.tag_alert.target_user_id is None

    def test_unknown_name_falls_back_to_all(self, engine, store, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@Zelda are you there?"
        )

        assert outcome.decision.is_broadcast is True
        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1", "ther_2"]

    def test_email_address_is_not_a_mention(self, engine, responder, patient, conversation):
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "My email is pat@example.test"
        )
        assert outcome.decision.is_tagged is False
        assert len(responder.requests) == 1

    def test_emergency_tag_raises_risk_to_critical(self, engine, store, patient, conversation):
        outcome = engine.router.tag_therapist(patient, conversation.conversation_id, "emergency")

        assert outcome.tag_alert.severity == AlertSeverity.EMERGENCY
        assert store.get_conversation(conversation.conversation_id).risk_level == RiskLevel.CRITICAL

    def test_urgent_tag_raises_low_risk_to_medium(self, engine, store, patient, conversation):
        engine.router.tag_therapist(patient, conversation.conversation_id, "need_talk")
        assert store.get_conversation(conversation.conversation_id).risk_level == RiskLevel.MEDIUM

    def test_urgent_tag_never_lowers_risk(self, engine, store, patient, therapist, conversation):
        engine.state.set_risk_level(therapist, conversation.conversation_id, RiskLevel.HIGH)
        engine.router.tag_therapist(patient, conversation.conversation_id, "urgent")
        assert store.get_conversation(conversation.conversation_id).risk_level == RiskLevel.HIGH

    def test_tag_therapist_composes_message(self, engine, patient, conversation):
        outcome = engine.router.tag_therapist(
            patient, conversation.conversation_id, "overwhelmed", note="Work is too much"
        )
        assert outcome.message.body.startswith("@therapist #overwhelmed")
        assert "Work is too much" in outcome.message.body
        assert outcome.decision.topics == ("overwhelmed",)
        assert 'I am feeling overwhelmed' in outcome.tag_alert.summary

    def test_unknown_tag_reason_rejected(self, engine, patient, conversation):
        with pytest.raises(ValidationError):
            engine.router.tag_therapist(patient, conversation.conversation_id, "bored")

    def test_notification_failure_is_a_warning(self, engine, store, queue, patient, conversation):
        queue.available = False
        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "@therapist please call me"
        )

        assert "notification_failed:therapist_message" in outcome.warnings
        assert store.get_message(outcome.message.message_id) is not None


class TestAIDisabled:
    def test_every_message_goes_to_roster(self, engine, store, responder, patient, therapist, conversation):
        engine.state.set_ai_enabled(therapist, conversation.conversation_id, False)

        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello?")

        assert outcome.ai_requested is False
        assert responder.requests == []
        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1", "ther_2"]

    def test_human_only_mode_skips_ai(self, engine, responder, patient, therapist, conversation):
        from therapychat.shared.models import ChatMode
        engine.state.set_mode(therapist, conversation.conversation_id, ChatMode.HUMAN_ONLY)

        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello?")
        assert outcome.ai_requested is False
        assert responder.requests == []


class TestRejectedMessages:
    def test_paused_conversation_rejects_patient(self, engine, store, patient, therapist, conversation, chat_config):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.PAUSED)

        with pytest.raises(ConversationPaused) as exc:
            engine.router.submit_patient_message(patient, conversation.conversation_id, "Anyone there?")

        assert exc.value.notice == chat_config.paused_notice
        assert store.list_messages(conversation.conversation_id) == []

    def test_closed_conversation_rejects_patient(self, engine, store, patient, therapist, conversation):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.CLOSED)

        with pytest.raises(ConversationClosed):
            engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello")
        assert store.list_messages(conversation.conversation_id) == []

    def test_empty_message_rejected(self, engine, patient, conversation):
        with pytest.raises(ValidationError):
            engine.router.submit_patient_message(patient, conversation.conversation_id, "   ")

    def test_overlong_message_rejected(self, engine, patient, conversation, chat_config):
        with pytest.raises(ValidationError):
            engine.router.submit_patient_message(
                patient, conversation.conversation_id, "x" * (chat_config.max_message_length + 1)
            )

    def test_other_patient_denied(self, engine, store, conversation):
        other = store.get_user("pat_2").as_actor()
        with pytest.raises(AccessDenied):
            engine.router.submit_patient_message(other, conversation.conversation_id, "Hi")


class TestUpstreamFailure:
    def test_message_persisted_and_queued_for_therapists(self, engine, store, responder, queue, patient, conversation):
        responder.fail_next()

        with pytest.raises(UpstreamUnavailable) as exc:
            engine.router.submit_patient_message(patient, conversation.conversation_id, "Are you there?")

        messages = store.list_messages(conversation.conversation_id)
        assert [m.body for m in messages] == ["Are you there?"]
        assert exc.value.message_id == messages[0].message_id
        assert exc.value.to_dict()["retryable"] is True
        assert therapist_recipients(store, messages[0].message_id) == ["ther_1", "ther_2"]
        assert queue.of_kind("therapist_message")

    def test_unexpected_error_is_reported_as_upstream(self, engine, store, responder, patient, conversation):
        responder.queue(error=TimeoutError("read timed out"))

        with pytest.raises(UpstreamUnavailable):
            engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello")
        assert len(store.list_messages(conversation.conversation_id)) == 1


class TestEscalation:
    def test_structured_critical_blocks_conversation(self, engine, store, responder, queue, patient, conversation):
        responder.queue("I'm really worried about you.", CRITICAL_PAYLOAD)

        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "I want to end it")

        current = store.get_conversation(conversation.conversation_id)
        assert current.blocked is True
        assert current.ai_enabled is False
        assert current.risk_level == RiskLevel.CRITICAL
        assert outcome.escalation.escalated is True

        alerts = store.list_alerts([conversation.conversation_id], alert_type=AlertType.DANGER_DETECTED)
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].target_user_id is None
        assert len(queue.of_kind("urgent_alert")) == 1

    def test_escalating_reply_reaches_therapists(self, engine, store, responder, patient, conversation):
        responder.queue("I'm really worried about you.", CRITICAL_PAYLOAD)
        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "I want to end it")
        assert therapist_recipients(store, outcome.ai_message.message_id) == ["ther_1", "ther_2"]

    def test_patient_sees_blocked_notice(self, engine, store, responder, patient, conversation, safety_config):
        responder.queue("I'm really worried about you.", CRITICAL_PAYLOAD)
        engine.router.submit_patient_message(patient, conversation.conversation_id, "I want to end it")

        last = store.list_messages(conversation.conversation_id)[-1]
        assert last.sender_role == SenderRole.SYSTEM
        assert last.body == safety_config.blocked_message

    def test_keyword_fallback_on_patient_text(self, engine, store, responder, patient, conversation):
        responder.queue("Thank you for telling me.", None)

        outcome = engine.router.submit_patient_message(
            patient, conversation.conversation_id, "Some days I want to end my life"
        )

        assert outcome.escalation.escalated is True
        assert outcome.escalation.assessment.source == "keyword"
        assert "end my life" in outcome.escalation.assessment.matched_keywords
        assert store.get_conversation(conversation.conversation_id).blocked is True

    def test_warning_level_does_not_escalate(self, engine, store, responder, patient, conversation):
        responder.queue("That sounds hard.", {"danger_level": "warning", "detected_concerns": ["stress"]})

        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "I'm stressed")

        assert outcome.escalation.escalated is False
        assert store.get_conversation(conversation.conversation_id).blocked is False

    def test_messages_after_block_go_to_therapists(self, engine, store, responder, patient, conversation):
        responder.queue("I'm really worried about you.", CRITICAL_PAYLOAD)
        engine.router.submit_patient_message(patient, conversation.conversation_id, "I want to end it")

        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello?")

        assert outcome.ai_requested is False
        assert len(responder.requests) == 1
        assert therapist_recipients(store, outcome.message.message_id) == ["ther_1", "ther_2"]


class TestTherapistMessages:
    def test_reply_reaches_patient(self, engine, store, queue, therapist, conversation):
        outcome = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Hi Pat")

        assert outcome.message.sender_role == SenderRole.THERAPIST
        assert [r.user_id for r in store.list_recipients(outcome.message.message_id)] == ["pat_1"]
        push = queue.of_kind("patient_message")
        assert len(push) == 1
        assert push[0].body == "@Anna Berg: Hi Pat"

    def test_allowed_while_paused(self, engine, therapist, conversation):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.PAUSED)
        outcome = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Checking in")
        assert outcome.message.message_id is not None

    def test_rejected_when_closed(self, engine, therapist, conversation):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.CLOSED)
        with pytest.raises(ConversationClosed):
            engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Hi")

    def test_unassigned_therapist_denied(self, engine, store, outsider, conversation):
        with pytest.raises(AccessDenied):
            engine.router.submit_therapist_message(outsider, conversation.conversation_id, "Hi")
        assert store.list_messages(conversation.conversation_id) == []

    def test_patient_cannot_post_as_therapist(self, engine, patient, conversation):
        with pytest.raises(AccessDenied):
            engine.router.submit_therapist_message(patient, conversation.conversation_id, "Hi")


class TestEditAndDelete:
    def test_author_can_edit(self, engine, audit, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Helo")
        edited = engine.router.edit_message(therapist, sent.message.message_id, "Hello")

        assert edited.changed is True
        assert edited.warnings == []
        assert edited.message.body == "Hello"
        assert edited.message.edited is True
        entries = audit.query(entity_id=str(sent.message.message_id))
        assert entries[-1].details == {
            "conversation_id": conversation.conversation_id,
            "old_body": "Helo",
            "new_body": "Hello",
        }

    def test_other_therapist_cannot_edit(self, engine, therapist, co_therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Hello")
        with pytest.raises(AccessDenied):
            engine.router.edit_message(co_therapist, sent.message.message_id, "Changed")

    def test_patient_messages_cannot_be_edited(self, engine, therapist, patient, conversation):
        outcome = engine.router.submit_patient_message(patient, conversation.conversation_id, "Hello")
        with pytest.raises(AccessDenied):
            engine.router.edit_message(therapist, outcome.message.message_id, "Changed")

    def test_delete_is_soft(self, engine, store, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Oops")
        engine.router.delete_message(therapist, sent.message.message_id)

        stored = store.get_message(sent.message.message_id)
        assert stored.deleted is True
        rendered = engine.router.render([stored])[0]
        assert rendered["deleted"] is True
        assert rendered["body"] is None

    def test_delete_twice_is_noop(self, engine, audit, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Oops")
        engine.router.delete_message(therapist, sent.message.message_id)
        before = len(audit.query())
        again = engine.router.delete_message(therapist, sent.message.message_id)
        assert again.changed is False
        assert len(audit.query()) == before

    def test_edit_reports_audit_failure(self, engine, audit, monkeypatch, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Helo")
        monkeypatch.setattr(audit, "log", failing_audit_log)

        edited = engine.router.edit_message(therapist, sent.message.message_id, "Hello")

        assert edited.message.body == "Hello"
        assert edited.warnings == ["audit_write_failed:message_edited"]

    def test_delete_reports_audit_failure(self, engine, store, audit, monkeypatch, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Oops")
        monkeypatch.setattr(audit, "log", failing_audit_log)

        deleted = engine.router.delete_message(therapist, sent.message.message_id)

        assert store.get_message(sent.message.message_id).deleted is True
        assert deleted.warnings == ["audit_write_failed:message_deleted"]


class TestRendering:
    def test_sender_labels(self, engine, store, patient, therapist, conversation):
        engine.router.submit_patient_message(patient, conversation.conversation_id, "Hi")
        engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Hello")

        rendered = engine.router.render(store.list_messages(conversation.conversation_id))
        assert [m["sender_label"] for m in rendered] == ["Pat Morgan", "AI Assistant", "Therapist (Anna Berg)"]

    def test_list_messages_does_not_mark_read(self, engine, store, therapist, conversation):
        sent = engine.router.submit_therapist_message(therapist, conversation.conversation_id, "Hello")
        engine.router.list_messages(SYSTEM_ACTOR, conversation.conversation_id)
        assert store.list_recipients(sent.message.message_id)[0].is_read is False
