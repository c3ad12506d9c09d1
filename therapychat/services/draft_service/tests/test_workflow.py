"""Tests for DraftWorkflow - AI-assisted therapist replies."""
import pytest

from therapychat.services.audit_service import AuditAction
from therapychat.services.draft_service import DraftWorkflow, build_draft_instruction
from therapychat.services.draft_service.workflow import DRAFT_HISTORY_LIMIT
from therapychat.services.llm_service import DEFAULT_DRAFT_INSTRUCTION, AIPurpose
from therapychat.shared.errors import (
    AccessDenied,
    ConversationClosed,
    InvalidTransition,
    UpstreamUnavailable,
    ValidationError,
)
from therapychat.shared.models import ConversationStatus, DraftStatus, Message, SenderRole


@pytest.fixture
def draft(engine, responder, therapist, conversation):
    responder.queue("Draft v1")
    return engine.drafts.create(therapist, conversation.conversation_id).draft


class TestCreate:
    def test_create_uses_draft_purpose(self, engine, responder, store, patient, therapist, conversation):
        engine.router.submit_patient_message(patient, conversation.conversation_id, "Rough week")
        responder.queue("  That sounds hard.  ")

        result = engine.drafts.create(therapist, conversation.conversation_id)

        assert result.draft.current_text == "That sounds hard."
        assert result.draft.ai_content == "That sounds hard."
        assert result.draft.status == DraftStatus.DRAFT
        request = responder.requests[-1]
        assert request.purpose == AIPurpose.DRAFT
        assert request.instruction == DEFAULT_DRAFT_INSTRUCTION

    def test_history_is_the_newest_window(self, engine, store, responder, therapist, conversation):
        cid = conversation.conversation_id
        for i in range(DRAFT_HISTORY_LIMIT + 5):
            store.add_message(Message(cid, SenderRole.PATIENT, f"entry {i}", sender_id="pat_1"))
        responder.queue("Thanks for sharing.")

        engine.drafts.create(therapist, cid)

        history = responder.requests[-1].history
        assert len(history) == DRAFT_HISTORY_LIMIT
        assert history[-1]["content"] == f"entry {DRAFT_HISTORY_LIMIT + 4}"

    def test_draft_not_visible_to_patient(self, engine, store, draft, conversation):
        assert store.list_messages(conversation.conversation_id) == []

    def test_generation_is_audited(self, engine, audit, draft):
        generation = audit.query(action=AuditAction.DRAFT_GENERATION)[-1]
        created = audit.query(action=AuditAction.DRAFT_CREATED)[-1]

        assert generation.entity_id == draft.draft_id
        assert generation.details["response"] == "Draft v1"
        assert created.details["text"] == "Draft v1"

    def test_ai_failure_creates_nothing(self, engine, store, responder, therapist, conversation):
        responder.fail_next()

        with pytest.raises(UpstreamUnavailable):
            engine.drafts.create(therapist, conversation.conversation_id)
        assert store.find_open_draft(conversation.conversation_id, "ther_1") is None

    def test_empty_generation_rejected(self, engine, responder, therapist, conversation):
        responder.queue("   ")
        with pytest.raises(UpstreamUnavailable):
            engine.drafts.create(therapist, conversation.conversation_id)

    def test_new_draft_discards_previous(self, engine, store, responder, therapist, draft, conversation):
        responder.queue("Draft two")

        second = engine.drafts.create(therapist, conversation.conversation_id).draft

        assert store.get_draft(draft.draft_id).status == DraftStatus.DISCARDED
        assert engine.drafts.get_active(therapist, conversation.conversation_id).draft_id == second.draft_id

    def test_patient_cannot_draft(self, engine, patient, conversation):
        with pytest.raises(AccessDenied):
            engine.drafts.create(patient, conversation.conversation_id)

    def test_closed_conversation(self, engine, therapist, conversation):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.CLOSED)
        with pytest.raises(ConversationClosed):
            engine.drafts.create(therapist, conversation.conversation_id)

    def test_no_responder(self, engine, store, audit, therapist, conversation):
        workflow = DraftWorkflow(store, engine.guard, engine.router, audit, ai_responder=None)
        with pytest.raises(UpstreamUnavailable):
            workflow.create(therapist, conversation.conversation_id)


class TestEditRegenerateUndo:
    def test_edit_keeps_ai_content(self, engine, audit, therapist, draft):
        result = engine.drafts.edit(therapist, draft.draft_id, "My own words")

        assert result.draft.current_text == "My own words"
        assert result.draft.ai_content == "Draft v1"
        entry = audit.query(action=AuditAction.DRAFT_EDITED)[-1]
        assert entry.details == {"old_text": "Draft v1", "new_text": "My own words"}

    def test_edit_rejects_empty(self, engine, therapist, draft):
        with pytest.raises(ValidationError):
            engine.drafts.edit(therapist, draft.draft_id, " ")

    def test_regenerate_then_undo_restores_text(self, engine, responder, therapist, draft):
        engine.drafts.edit(therapist, draft.draft_id, "Edited v1")
        responder.queue("Draft v2")

        regenerated = engine.drafts.regenerate(therapist, draft.draft_id)
        undone = engine.drafts.undo(therapist, draft.draft_id)

        assert regenerated.draft.current_text == "Draft v2"
        assert regenerated.draft.undo_stack == ("Edited v1",)
        assert undone.draft.current_text == "Edited v1"
        assert undone.draft.undo_stack == ()
        assert undone.changed is True

    def test_undo_empty_stack_is_noop(self, engine, audit, therapist, draft):
        result = engine.drafts.undo(therapist, draft.draft_id)

        assert result.changed is False
        assert result.draft.current_text == "Draft v1"
        assert audit.query(action=AuditAction.DRAFT_UNDONE) == []

    def test_regenerate_failure_keeps_text(self, engine, store, responder, therapist, draft):
        responder.fail_next()

        with pytest.raises(UpstreamUnavailable):
            engine.drafts.regenerate(therapist, draft.draft_id)

        current = store.get_draft(draft.draft_id)
        assert current.current_text == "Draft v1"
        assert current.undo_stack == ()

    def test_other_therapist_cannot_touch(self, engine, co_therapist, draft):
        with pytest.raises(AccessDenied):
            engine.drafts.edit(co_therapist, draft.draft_id, "Hijack")


class TestSend:
    def test_send_posts_current_text(self, engine, store, responder, therapist, draft, conversation):
        responder.queue("Draft v2")
        engine.drafts.regenerate(therapist, draft.draft_id)

        result = engine.drafts.send(therapist, draft.draft_id)

        assert result.draft.status == DraftStatus.SENT
        assert result.message["body"] == "Draft v2"
        messages = store.list_messages(conversation.conversation_id)
        assert [(m.sender_role, m.body) for m in messages] == [(SenderRole.THERAPIST, "Draft v2")]
        assert result.draft.sent_message_id == messages[0].message_id

    def test_send_audits_full_text(self, engine, audit, therapist, draft):
        engine.drafts.edit(therapist, draft.draft_id, "Final words")
        engine.drafts.send(therapist, draft.draft_id)

        entry = audit.query(action=AuditAction.DRAFT_SENT)[-1]
        assert entry.details["text"] == "Final words"
        assert entry.details["ai_content"] == "Draft v1"

    def test_sent_draft_is_terminal(self, engine, therapist, draft):
        engine.drafts.send(therapist, draft.draft_id)

        with pytest.raises(InvalidTransition):
            engine.drafts.edit(therapist, draft.draft_id, "Too late")
        with pytest.raises(InvalidTransition):
            engine.drafts.send(therapist, draft.draft_id)

    def test_send_failure_reverts_claim(self, engine, store, therapist, draft, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(engine.router, "submit_therapist_message", broken)

        with pytest.raises(RuntimeError):
            engine.drafts.send(therapist, draft.draft_id)
        assert store.get_draft(draft.draft_id).status == DraftStatus.DRAFT

    def test_send_into_closed_conversation(self, engine, therapist, draft, conversation):
        engine.state.set_status(therapist, conversation.conversation_id, ConversationStatus.CLOSED)
        with pytest.raises(ConversationClosed):
            engine.drafts.send(therapist, draft.draft_id)

    def test_notifies_patient(self, engine, queue, therapist, draft):
        engine.drafts.send(therapist, draft.draft_id)
        assert len(queue.of_kind("patient_message")) == 1


class TestDiscard:
    def test_discard(self, engine, audit, therapist, draft, conversation):
        result = engine.drafts.discard(therapist, draft.draft_id)

        assert result.draft.status == DraftStatus.DISCARDED
        assert engine.drafts.get_active(therapist, conversation.conversation_id) is None
        assert audit.query(action=AuditAction.DRAFT_DISCARDED)[-1].details["text"] == "Draft v1"

    def test_discarded_cannot_be_sent(self, engine, therapist, draft):
        engine.drafts.discard(therapist, draft.draft_id)
        with pytest.raises(InvalidTransition):
            engine.drafts.send(therapist, draft.draft_id)


class TestInstruction:
    def test_context_appended(self):
        instruction = build_draft_instruction("Base.", "Use CBT framing.")
        assert instruction == "Base.\n\nAdditional context and instructions from the therapist:\nUse CBT framing."

    def test_no_context(self):
        assert build_draft_instruction("Base.") == "Base."
