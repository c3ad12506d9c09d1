"""Tests for the in-memory ChatStore."""
import threading
from dataclasses import replace

import pytest

from therapychat.shared.database import InMemoryChatStore, NotFoundError
from therapychat.shared.models import (
    ActorRole,
    Alert,
    AlertSeverity,
    AlertType,
    Conversation,
    ConversationStatus,
    Message,
    SenderRole,
    User,
)


@pytest.fixture
def store():
    store = InMemoryChatStore()
    store.save_user(User("pat_1", "Pat Morgan", ActorRole.PATIENT, group_ids=("group_a",)))
    store.save_user(User("ther_1", "anna Berg", ActorRole.THERAPIST))
    store.save_user(User("ther_2", "Ben Stone", ActorRole.THERAPIST))
    store.set_therapist_assignments("ther_1", ["group_a", "group_a"])
    store.set_therapist_assignments("ther_2", ["group_b"])
    store.create_conversation(Conversation("conv_1", "pat_1"))
    return store


class TestUsersAndAssignments:
    def test_assignments_deduplicated(self, store):
        assert store.list_assigned_group_ids("ther_1") == ["group_a"]

    def test_roster(self, store):
        patient, therapists = store.roster_for("pat_1")
        assert patient.name == "Pat Morgan"
        assert [t.user_id for t in therapists] == ["ther_1"]

    def test_roster_unknown_patient(self, store):
        assert store.roster_for("pat_404") == (None, [])

    def test_list_users_sorted_case_insensitively(self, store):
        names = [u.name for u in store.list_users(ActorRole.THERAPIST)]
        assert names == ["anna Berg", "Ben Stone"]


class TestConversations:
    def test_open_conversation_skips_closed(self, store):
        store.update_conversation("conv_1", lambda c: replace(c, status=ConversationStatus.CLOSED))
        assert store.find_open_conversation("pat_1") is None

    def test_update_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.update_conversation("conv_404", lambda c: c)

    def test_failed_mutation_leaves_row(self, store):
        def boom(conversation):
            raise ValueError("rejected")

        with pytest.raises(ValueError):
            store.update_conversation("conv_1", boom)
        assert store.get_conversation("conv_1").status == ConversationStatus.ACTIVE

    def test_find_or_create_returns_existing(self, store):
        found, created = store.find_or_create_open_conversation(Conversation("conv_2", "pat_1"))

        assert created is False
        assert found.conversation_id == "conv_1"
        assert store.get_conversation("conv_2") is None

    def test_find_or_create_after_close(self, store):
        store.update_conversation("conv_1", lambda c: replace(c, status=ConversationStatus.CLOSED))

        found, created = store.find_or_create_open_conversation(Conversation("conv_2", "pat_1"))

        assert created is True
        assert found.conversation_id == "conv_2"
        assert store.find_open_conversation("pat_1").conversation_id == "conv_2"


class TestMessages:
    def test_ids_increase(self, store):
        first = store.add_message(Message("conv_1", SenderRole.PATIENT, "one"))
        second = store.add_message(Message("conv_1", SenderRole.AI, "two"))

        assert second.message_id > first.message_id
        assert store.latest_message_id("conv_1") == second.message_id
        assert store.count_messages_after("conv_1", first.message_id) == 1

    def test_page_after_id(self, store):
        ids = [store.add_message(Message("conv_1", SenderRole.PATIENT, str(i))).message_id for i in range(5)]

        page = store.list_messages("conv_1", after_id=ids[1], limit=2)

        assert [m.message_id for m in page] == ids[2:4]

    def test_recent_messages_are_the_newest_in_order(self, store):
        store.add_message(Message("conv_other", SenderRole.PATIENT, "elsewhere"))
        ids = [store.add_message(Message("conv_1", SenderRole.PATIENT, str(i))).message_id for i in range(5)]

        assert [m.message_id for m in store.list_recent_messages("conv_1", 3)] == ids[2:]
        assert [m.message_id for m in store.list_recent_messages("conv_1", 10)] == ids
        assert store.list_recent_messages("conv_1", 0) == []

    def test_concurrent_inserts_get_unique_ids(self, store):
        def insert():
            for _ in range(50):
                store.add_message(Message("conv_1", SenderRole.PATIENT, "x"))

        threads = [threading.Thread(target=insert) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        ids = [m.message_id for m in store.list_messages("conv_1", limit=1000)]
        assert len(ids) == len(set(ids)) == 200


class TestRecipients:
    def test_duplicates_ignored(self, store):
        message = store.add_message(Message("conv_1", SenderRole.PATIENT, "hi"))
        assert store.add_recipients(message.message_id, ["ther_1", "ther_1"]) == 1
        assert store.add_recipients(message.message_id, ["ther_1"]) == 0

    def test_unknown_message(self, store):
        with pytest.raises(NotFoundError):
            store.add_recipients(999, ["ther_1"])

    def test_mark_read_bounded_and_counted(self, store):
        first = store.add_message(Message("conv_1", SenderRole.PATIENT, "a"))
        second = store.add_message(Message("conv_1", SenderRole.AI, "b"))
        store.add_recipients(first.message_id, ["ther_1"])
        store.add_recipients(second.message_id, ["ther_1"])

        assert store.count_unread_messages("ther_1", ["conv_1"], exclude_roles=[SenderRole.AI]) == {"conv_1": 1}
        assert store.mark_recipients_read("conv_1", "ther_1", first.message_id) == 1
        assert store.count_unread_messages("ther_1", ["conv_1"]) == {"conv_1": 1}


class TestAlerts:
    def test_targeted_visibility(self, store):
        store.add_alert(Alert("conv_1", AlertType.TAG_RECEIVED, AlertSeverity.WARNING, "a", target_user_id="ther_1"))
        store.add_alert(Alert("conv_1", AlertType.DANGER_DETECTED, AlertSeverity.CRITICAL, "b"))

        assert len(store.list_alerts(["conv_1"], "ther_1")) == 2
        assert len(store.list_alerts(["conv_1"], "ther_2")) == 1
        assert len(store.list_alerts(["conv_1"])) == 2

    def test_mark_all_only_visible(self, store):
        store.add_alert(Alert("conv_1", AlertType.TAG_RECEIVED, AlertSeverity.WARNING, "a", target_user_id="ther_1"))
        store.add_alert(Alert("conv_1", AlertType.DANGER_DETECTED, AlertSeverity.CRITICAL, "b"))

        assert store.mark_alerts_read(["conv_1"], "ther_2") == 1
        assert store.count_unread_alerts(["conv_1"], "ther_1") == {"conv_1": 1}
