"""Persistence interface for conversation orchestration.

The orchestration components depend only on ``ChatStore``. Two backends
implement it: ``InMemoryChatStore`` for development and tests and
``PostgresChatStore`` for production. All ``update_*`` methods are atomic
read-modify-write operations: the mutate callable sees the current row,
and if it raises, nothing is written.
"""
from abc import ABC, abstractmethod
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from therapychat.shared.models import (
    Alert,
    AlertType,
    Conversation,
    Draft,
    Message,
    MessageRecipient,
    Note,
    SenderRole,
    TherapistAssignment,
    User,
)


class ChatStore(ABC):
    """Logical store over users, conversations and their satellites."""

    # Users and assignments

    @abstractmethod
    def save_user(self, user: User) -> User:
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    def list_users(self, role=None) -> List[User]:
        pass

    @abstractmethod
    def list_users_in_groups(self, group_ids: Sequence[str], role=None) -> List[User]:
        pass

    @abstractmethod
    def set_therapist_assignments(
        self, therapist_id: str, group_ids: Sequence[str]
    ) -> List[TherapistAssignment]:
        """Replace the therapist's group assignments."""
        pass

    @abstractmethod
    def list_assigned_group_ids(self, therapist_id: str) -> List[str]:
        pass

    @abstractmethod
    def list_therapists_for_groups(self, group_ids: Sequence[str]) -> List[User]:
        pass

    # Conversations

    @abstractmethod
    def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    def find_open_conversation(self, patient_id: str) -> Optional[Conversation]:
        """Newest conversation for the patient that is not closed."""
        pass

    @abstractmethod
    def find_or_create_open_conversation(self, conversation: Conversation) -> Tuple[Conversation, bool]:
        """Return the patient's open conversation, creating ``conversation``
        when there is none. Atomic: concurrent callers for one patient all
        get the same row, and exactly one of them sees ``created=True``.
        """
        pass

    @abstractmethod
    def list_conversations_for_patients(self, patient_ids: Sequence[str]) -> List[Conversation]:
        pass

    @abstractmethod
    def update_conversation(
        self,
        conversation_id: str,
        mutate: Callable[[Conversation], Conversation],
    ) -> Tuple[Conversation, Conversation]:
        pass

    # Messages

    @abstractmethod
    def add_message(self, message: Message) -> Message:
        """Persist a message and assign its monotonic ``message_id``."""
        pass

    @abstractmethod
    def get_message(self, message_id: int) -> Optional[Message]:
        pass

    @abstractmethod
    def update_message(
        self,
        message_id: int,
        mutate: Callable[[Message], Message],
    ) -> Tuple[Message, Message]:
        pass

    @abstractmethod
    def list_messages(
        self,
        conversation_id: str,
        after_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Message]:
        """Messages in ascending id order, strictly after ``after_id``."""
        pass

    @abstractmethod
    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        """The newest ``limit`` messages, returned in ascending id order."""
        pass

    @abstractmethod
    def latest_message_id(self, conversation_id: str) -> Optional[int]:
        pass

    @abstractmethod
    def count_messages_after(self, conversation_id: str, after_id: Optional[int]) -> int:
        pass

    # Recipients

    @abstractmethod
    def add_recipients(self, message_id: int, user_ids: Iterable[str]) -> int:
        """Create delivery rows; existing (message, user) pairs are skipped.

        Returns:
            Number of rows actually created
        """
        pass

    @abstractmethod
    def list_recipients(self, message_id: int) -> List[MessageRecipient]:
        pass

    @abstractmethod
    def mark_recipients_read(
        self,
        conversation_id: str,
        user_id: str,
        up_to_message_id: Optional[int] = None,
    ) -> int:
        """Flip unread rows for the user, optionally bounded by message id."""
        pass

    @abstractmethod
    def count_unread_messages(
        self,
        user_id: str,
        conversation_ids: Sequence[str],
        exclude_roles: Sequence[SenderRole] = (),
    ) -> Dict[str, int]:
        """Unread recipient rows per conversation (zero counts omitted)."""
        pass

    # Alerts

    @abstractmethod
    def add_alert(self, alert: Alert) -> Alert:
        pass

    @abstractmethod
    def get_alert(self, alert_id: str) -> Optional[Alert]:
        pass

    @abstractmethod
    def list_alerts(
        self,
        conversation_ids: Sequence[str],
        user_id: Optional[str] = None,
        unread_only: bool = False,
        alert_type: Optional[AlertType] = None,
    ) -> List[Alert]:
        """Alerts visible to ``user_id`` (targeted at them or broadcast)."""
        pass

    @abstractmethod
    def mark_alert_read(self, alert_id: str) -> bool:
        pass

    @abstractmethod
    def mark_alerts_read(self, conversation_ids: Sequence[str], user_id: str) -> int:
        pass

    @abstractmethod
    def count_unread_alerts(
        self, conversation_ids: Sequence[str], user_id: str
    ) -> Dict[str, int]:
        pass

    # Notes

    @abstractmethod
    def add_note(self, note: Note) -> Note:
        pass

    @abstractmethod
    def get_note(self, note_id: str) -> Optional[Note]:
        pass

    @abstractmethod
    def update_note(self, note_id: str, mutate: Callable[[Note], Note]) -> Tuple[Note, Note]:
        pass

    @abstractmethod
    def list_notes(self, conversation_id: str, include_deleted: bool = False) -> List[Note]:
        pass

    # Drafts

    @abstractmethod
    def add_draft(self, draft: Draft) -> Draft:
        pass

    @abstractmethod
    def get_draft(self, draft_id: str) -> Optional[Draft]:
        pass

    @abstractmethod
    def update_draft(self, draft_id: str, mutate: Callable[[Draft], Draft]) -> Tuple[Draft, Draft]:
        pass

    @abstractmethod
    def find_open_draft(self, conversation_id: str, therapist_id: str) -> Optional[Draft]:
        pass

    def roster_for(self, patient_id: str) -> Tuple[Optional[User], List[User]]:
        """The patient and every therapist assigned to one of their groups."""
        patient = self.get_user(patient_id)
        if patient is None or not patient.group_ids:
            return patient, []
        return patient, self.list_therapists_for_groups(patient.group_ids)

    def health_check(self) -> Dict[str, object]:
        return {"status": "ok", "healthy": True}
