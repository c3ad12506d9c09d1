"""In-process ChatStore used in development and tests.

A single re-entrant lock serialises every operation, which gives each
``update_*`` call the same atomic read-modify-write semantics the
PostgreSQL backend gets from row locks.
"""
import itertools
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from therapychat.shared.models import (
    ActorRole,
    Alert,
    AlertType,
    Conversation,
    ConversationStatus,
    Draft,
    DraftStatus,
    Message,
    MessageRecipient,
    Note,
    NoteStatus,
    SenderRole,
    TherapistAssignment,
    User,
)

from .repository import NotFoundError
from .store import ChatStore

logger = logging.getLogger(__name__)


class InMemoryChatStore(ChatStore):
    """Dict-backed tables guarded by one lock."""

    def __init__(self):
        self._lock = threading.RLock()
        self._message_ids = itertools.count(1)
        self._users: Dict[str, User] = {}
        self._assignments: Dict[str, List[TherapistAssignment]] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[int, Message] = {}
        self._recipients: Dict[Tuple[int, str], MessageRecipient] = {}
        self._alerts: Dict[str, Alert] = {}
        self._notes: Dict[str, Note] = {}
        self._drafts: Dict[str, Draft] = {}

    # Users and assignments

    def save_user(self, user: User) -> User:
        with self._lock:
            self._users[user.user_id] = user
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def list_users(self, role=None) -> List[User]:
        with self._lock:
            users = [u for u in self._users.values() if role is None or u.role == role]
        return sorted(users, key=lambda u: u.name.lower())

    def list_users_in_groups(self, group_ids: Sequence[str], role=None) -> List[User]:
        wanted = set(group_ids)
        with self._lock:
            return [
                user for user in self._users.values()
                if wanted.intersection(user.group_ids)
                and (role is None or user.role == role)
            ]

    def set_therapist_assignments(
        self, therapist_id: str, group_ids: Sequence[str]
    ) -> List[TherapistAssignment]:
        assignments = [TherapistAssignment(therapist_id, group_id) for group_id in dict.fromkeys(group_ids)]
        with self._lock:
            self._assignments[therapist_id] = assignments
        return assignments

    def list_assigned_group_ids(self, therapist_id: str) -> List[str]:
        with self._lock:
            return [a.group_id for a in self._assignments.get(therapist_id, [])]

    def list_therapists_for_groups(self, group_ids: Sequence[str]) -> List[User]:
        wanted = set(group_ids)
        with self._lock:
            therapists = []
            for therapist_id, assignments in self._assignments.items():
                if wanted.intersection(a.group_id for a in assignments):
                    user = self._users.get(therapist_id)
                    if user is not None and user.role == ActorRole.THERAPIST:
                        therapists.append(user)
            return sorted(therapists, key=lambda u: u.name.lower())

    # Conversations

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self._conversations[conversation.conversation_id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def find_open_conversation(self, patient_id: str) -> Optional[Conversation]:
        with self._lock:
            candidates = [
                c for c in self._conversations.values()
                if c.patient_id == patient_id and c.status != ConversationStatus.CLOSED
            ]
        if not candidates:
            return None
        return max(candidates, key=lambda c: c.created_at)

    def find_or_create_open_conversation(self, conversation: Conversation) -> Tuple[Conversation, bool]:
        with self._lock:
            existing = self.find_open_conversation(conversation.patient_id)
            if existing is not None:
                return existing, False
            self._conversations[conversation.conversation_id] = conversation
        return conversation, True

    def list_conversations_for_patients(self, patient_ids: Sequence[str]) -> List[Conversation]:
        wanted = set(patient_ids)
        with self._lock:
            return [c for c in self._conversations.values() if c.patient_id in wanted]

    def update_conversation(
        self,
        conversation_id: str,
        mutate: Callable[[Conversation], Conversation],
    ) -> Tuple[Conversation, Conversation]:
        return self._update(self._conversations, conversation_id, mutate, "conversation")

    # Messages

    def add_message(self, message: Message) -> Message:
        with self._lock:
            stored = replace(message, message_id=next(self._message_ids))
            self._messages[stored.message_id] = stored
        return stored

    def get_message(self, message_id: int) -> Optional[Message]:
        with self._lock:
            return self._messages.get(message_id)

    def update_message(
        self,
        message_id: int,
        mutate: Callable[[Message], Message],
    ) -> Tuple[Message, Message]:
        return self._update(self._messages, message_id, mutate, "message")

    def list_messages(
        self,
        conversation_id: str,
        after_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Message]:
        with self._lock:
            messages = [
                m for m in self._messages.values()
                if m.conversation_id == conversation_id
                and (after_id is None or m.message_id > after_id)
            ]
        messages.sort(key=lambda m: m.message_id)
        return messages[:limit]

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        with self._lock:
            messages = [m for m in self._messages.values() if m.conversation_id == conversation_id]
        messages.sort(key=lambda m: m.message_id)
        return messages[-limit:] if limit > 0 else []

    def latest_message_id(self, conversation_id: str) -> Optional[int]:
        with self._lock:
            ids = [m.message_id for m in self._messages.values() if m.conversation_id == conversation_id]
        return max(ids) if ids else None

    def count_messages_after(self, conversation_id: str, after_id: Optional[int]) -> int:
        with self._lock:
            return sum(
                1 for m in self._messages.values()
                if m.conversation_id == conversation_id
                and (after_id is None or m.message_id > after_id)
            )

    # Recipients

    def add_recipients(self, message_id: int, user_ids: Iterable[str]) -> int:
        created = 0
        with self._lock:
            if message_id not in self._messages:
                raise NotFoundError(f"message {message_id} not found")
            for user_id in user_ids:
                key = (message_id, user_id)
                if key not in self._recipients:
                    self._recipients[key] = MessageRecipient(message_id, user_id)
                    created += 1
        return created

    def list_recipients(self, message_id: int) -> List[MessageRecipient]:
        with self._lock:
            return [replace(r) for (mid, _), r in self._recipients.items() if mid == message_id]

    def mark_recipients_read(
        self,
        conversation_id: str,
        user_id: str,
        up_to_message_id: Optional[int] = None,
    ) -> int:
        now = datetime.utcnow()
        flipped = 0
        with self._lock:
            for (message_id, recipient_id), recipient in self._recipients.items():
                if recipient_id != user_id or recipient.is_read:
                    continue
                if up_to_message_id is not None and message_id > up_to_message_id:
                    continue
                if self._messages[message_id].conversation_id != conversation_id:
                    continue
                recipient.is_read = True
                recipient.read_at = now
                flipped += 1
        return flipped

    def count_unread_messages(
        self,
        user_id: str,
        conversation_ids: Sequence[str],
        exclude_roles: Sequence[SenderRole] = (),
    ) -> Dict[str, int]:
        wanted = set(conversation_ids)
        counts: Dict[str, int] = {}
        with self._lock:
            for (message_id, recipient_id), recipient in self._recipients.items():
                if recipient_id != user_id or recipient.is_read:
                    continue
                message = self._messages[message_id]
                if message.conversation_id not in wanted or message.sender_role in exclude_roles:
                    continue
                counts[message.conversation_id] = counts.get(message.conversation_id, 0) + 1
        return counts

    # Alerts

    def add_alert(self, alert: Alert) -> Alert:
        with self._lock:
            self._alerts[alert.alert_id] = alert
        return alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def list_alerts(
        self,
        conversation_ids: Sequence[str],
        user_id: Optional[str] = None,
        unread_only: bool = False,
        alert_type: Optional[AlertType] = None,
    ) -> List[Alert]:
        with self._lock:
            alerts = [
                a for a in self._alerts.values()
                if self._alert_visible(a, conversation_ids, user_id)
                and not (unread_only and a.is_read)
                and (alert_type is None or a.alert_type == alert_type)
            ]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def mark_alert_read(self, alert_id: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.is_read:
                return False
            self._alerts[alert_id] = replace(alert, is_read=True, read_at=datetime.utcnow())
        return True

    def mark_alerts_read(self, conversation_ids: Sequence[str], user_id: str) -> int:
        now = datetime.utcnow()
        flipped = 0
        with self._lock:
            for alert_id, alert in list(self._alerts.items()):
                if alert.is_read or not self._alert_visible(alert, conversation_ids, user_id):
                    continue
                self._alerts[alert_id] = replace(alert, is_read=True, read_at=now)
                flipped += 1
        return flipped

    def count_unread_alerts(
        self, conversation_ids: Sequence[str], user_id: str
    ) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        with self._lock:
            for alert in self._alerts.values():
                if alert.is_read or not self._alert_visible(alert, conversation_ids, user_id):
                    continue
                counts[alert.conversation_id] = counts.get(alert.conversation_id, 0) + 1
        return counts

    @staticmethod
    def _alert_visible(alert: Alert, conversation_ids: Sequence[str], user_id: Optional[str]) -> bool:
        if alert.conversation_id not in conversation_ids:
            return False
        return user_id is None or alert.target_user_id in (None, user_id)

    # Notes

    def add_note(self, note: Note) -> Note:
        with self._lock:
            self._notes[note.note_id] = note
        return note

    def get_note(self, note_id: str) -> Optional[Note]:
        with self._lock:
            return self._notes.get(note_id)

    def update_note(self, note_id: str, mutate: Callable[[Note], Note]) -> Tuple[Note, Note]:
        return self._update(self._notes, note_id, mutate, "note")

    def list_notes(self, conversation_id: str, include_deleted: bool = False) -> List[Note]:
        with self._lock:
            notes = [
                n for n in self._notes.values()
                if n.conversation_id == conversation_id
                and (include_deleted or n.status == NoteStatus.ACTIVE)
            ]
        return sorted(notes, key=lambda n: n.created_at, reverse=True)

    # Drafts

    def add_draft(self, draft: Draft) -> Draft:
        with self._lock:
            self._drafts[draft.draft_id] = draft
        return draft

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        with self._lock:
            return self._drafts.get(draft_id)

    def update_draft(self, draft_id: str, mutate: Callable[[Draft], Draft]) -> Tuple[Draft, Draft]:
        return self._update(self._drafts, draft_id, mutate, "draft")

    def find_open_draft(self, conversation_id: str, therapist_id: str) -> Optional[Draft]:
        with self._lock:
            drafts = [
                d for d in self._drafts.values()
                if d.conversation_id == conversation_id
                and d.therapist_id == therapist_id
                and d.status == DraftStatus.DRAFT
            ]
        if not drafts:
            return None
        return max(drafts, key=lambda d: d.created_at)

    def _update(self, table: dict, key, mutate: Callable, kind: str):
        with self._lock:
            previous = table.get(key)
            if previous is None:
                raise NotFoundError(f"{kind} {key} not found")
            updated = mutate(previous)
            table[key] = updated
        return previous, updated
