"""PostgreSQL ChatStore backed by psycopg2.

Table layout lives in ``schema.sql``. Each entity table has a small
repository; the store composes them and adds the join-table queries
(assignments, recipients) that have no entity of their own.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from psycopg2.extras import Json

from therapychat.shared.models import (
    ActorRole,
    Alert,
    AlertSeverity,
    AlertType,
    ChatMode,
    Conversation,
    ConversationStatus,
    Draft,
    DraftStatus,
    Message,
    MessageRecipient,
    Note,
    NoteStatus,
    NoteType,
    RiskLevel,
    SenderRole,
    TherapistAssignment,
    User,
)

from .connection import ConnectionManager
from .repository import BaseRepository, RepositoryError
from .store import ChatStore

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "chat_users")

    def _row_to_entity(self, row: Dict[str, Any]) -> User:
        return User(
            user_id=row["id"],
            name=row["name"],
            role=ActorRole(row["role"]),
            email=row["email"],
            group_ids=tuple(row["group_ids"] or ()),
        )

    def _entity_to_params(self, entity: User) -> Dict[str, Any]:
        return {
            "id": entity.user_id,
            "name": entity.name,
            "role": entity.role.value,
            "email": entity.email,
            "group_ids": list(entity.group_ids),
        }

    def upsert(self, user: User) -> User:
        params = self._entity_to_params(user)
        with self.connection_manager.transaction() as cur:
            cur.execute(
                """
                INSERT INTO chat_users (id, name, role, email, group_ids)
                VALUES (%(id)s, %(name)s, %(role)s, %(email)s, %(group_ids)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name, role = EXCLUDED.role,
                    email = EXCLUDED.email, group_ids = EXCLUDED.group_ids
                RETURNING *
                """,
                params
            )
            return self._row_to_entity(cur.fetchone())


class ConversationRepository(BaseRepository[Conversation]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "conversations")

    def _row_to_entity(self, row: Dict[str, Any]) -> Conversation:
        return Conversation(
            conversation_id=row["id"],
            patient_id=row["patient_id"],
            mode=ChatMode(row["mode"]),
            status=ConversationStatus(row["status"]),
            risk_level=RiskLevel(row["risk_level"]),
            ai_enabled=row["ai_enabled"],
            blocked=row["blocked"],
            blocked_reason=row["blocked_reason"],
            blocked_at=row["blocked_at"],
            patient_last_seen=row["patient_last_seen"],
            therapist_last_seen=row["therapist_last_seen"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_params(self, entity: Conversation) -> Dict[str, Any]:
        return {
            "id": entity.conversation_id,
            "patient_id": entity.patient_id,
            "mode": entity.mode.value,
            "status": entity.status.value,
            "risk_level": entity.risk_level.value,
            "ai_enabled": entity.ai_enabled,
            "blocked": entity.blocked,
            "blocked_reason": entity.blocked_reason,
            "blocked_at": entity.blocked_at,
            "patient_last_seen": entity.patient_last_seen,
            "therapist_last_seen": entity.therapist_last_seen,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }

    def insert_if_no_open(self, entity: Conversation) -> Tuple[Conversation, bool]:
        """Insert unless the patient already has a non-closed conversation.

        Relies on the partial unique index ``uq_conversations_open_patient``;
        a concurrent insert for the same patient waits on it, then loses.
        """
        params = self._entity_to_params(entity)
        columns = list(params.keys())
        placeholders = ", ".join(["%s"] * len(columns))
        query = (
            f"INSERT INTO conversations ({', '.join(columns)}) VALUES ({placeholders}) "
            "ON CONFLICT (patient_id) WHERE status <> 'closed' DO NOTHING RETURNING *"
        )

        with self.connection_manager.transaction() as cur:
            cur.execute(query, list(params.values()))
            row = cur.fetchone()
            if row is not None:
                return self._row_to_entity(row), True
            cur.execute(
                "SELECT * FROM conversations WHERE patient_id = %s AND status <> 'closed' "
                "ORDER BY created_at DESC LIMIT 1",
                (entity.patient_id,)
            )
            row = cur.fetchone()

        if row is None:
            raise RepositoryError("Open conversation vanished during find-or-create")
        return self._row_to_entity(row), False


class MessageRepository(BaseRepository[Message]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "messages")

    def _row_to_entity(self, row: Dict[str, Any]) -> Message:
        return Message(
            message_id=row["id"],
            conversation_id=row["conversation_id"],
            sender_role=SenderRole(row["sender_role"]),
            sender_id=row["sender_id"],
            body=row["body"],
            safety_payload=row["safety_payload"],
            tagged=row["tagged"],
            edited=row["edited"],
            deleted=row["deleted"],
            metadata=row["metadata"] or {},
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_params(self, entity: Message) -> Dict[str, Any]:
        params = {
            "conversation_id": entity.conversation_id,
            "sender_role": entity.sender_role.value,
            "sender_id": entity.sender_id,
            "body": entity.body,
            "safety_payload": Json(entity.safety_payload) if entity.safety_payload is not None else None,
            "tagged": entity.tagged,
            "edited": entity.edited,
            "deleted": entity.deleted,
            "metadata": Json(entity.metadata),
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }
        if entity.message_id is not None:
            params["id"] = entity.message_id
        return params


class AlertRepository(BaseRepository[Alert]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "alerts")

    def _row_to_entity(self, row: Dict[str, Any]) -> Alert:
        return Alert(
            alert_id=row["id"],
            conversation_id=row["conversation_id"],
            alert_type=AlertType(row["alert_type"]),
            severity=AlertSeverity(row["severity"]),
            summary=row["summary"],
            target_user_id=row["target_user_id"],
            metadata=row["metadata"] or {},
            is_read=row["is_read"],
            read_at=row["read_at"],
            created_at=row["created_at"],
        )

    def _entity_to_params(self, entity: Alert) -> Dict[str, Any]:
        return {
            "id": entity.alert_id,
            "conversation_id": entity.conversation_id,
            "alert_type": entity.alert_type.value,
            "severity": entity.severity.value,
            "summary": entity.summary,
            "target_user_id": entity.target_user_id,
            "metadata": Json(entity.metadata),
            "is_read": entity.is_read,
            "read_at": entity.read_at,
            "created_at": entity.created_at,
        }


class NoteRepository(BaseRepository[Note]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "notes")

    def _row_to_entity(self, row: Dict[str, Any]) -> Note:
        return Note(
            note_id=row["id"],
            conversation_id=row["conversation_id"],
            author_id=row["author_id"],
            content=row["content"],
            note_type=NoteType(row["note_type"]),
            status=NoteStatus(row["status"]),
            last_edited_by=row["last_edited_by"],
            ai_original_content=row["ai_original_content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_params(self, entity: Note) -> Dict[str, Any]:
        return {
            "id": entity.note_id,
            "conversation_id": entity.conversation_id,
            "author_id": entity.author_id,
            "content": entity.content,
            "note_type": entity.note_type.value,
            "status": entity.status.value,
            "last_edited_by": entity.last_edited_by,
            "ai_original_content": entity.ai_original_content,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }


class DraftRepository(BaseRepository[Draft]):
    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "drafts")

    def _row_to_entity(self, row: Dict[str, Any]) -> Draft:
        return Draft(
            draft_id=row["id"],
            conversation_id=row["conversation_id"],
            therapist_id=row["therapist_id"],
            ai_content=row["ai_content"],
            current_text=row["current_text"],
            status=DraftStatus(row["status"]),
            undo_stack=tuple(row["undo_stack"] or ()),
            sent_message_id=row["sent_message_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _entity_to_params(self, entity: Draft) -> Dict[str, Any]:
        return {
            "id": entity.draft_id,
            "conversation_id": entity.conversation_id,
            "therapist_id": entity.therapist_id,
            "ai_content": entity.ai_content,
            "current_text": entity.current_text,
            "status": entity.status.value,
            "undo_stack": Json(list(entity.undo_stack)),
            "sent_message_id": entity.sent_message_id,
            "created_at": entity.created_at,
            "updated_at": entity.updated_at,
        }


class PostgresChatStore(ChatStore):
    """ChatStore over the tables in ``schema.sql``."""

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self.users = UserRepository(connection_manager)
        self.conversations = ConversationRepository(connection_manager)
        self.messages = MessageRepository(connection_manager)
        self.alerts = AlertRepository(connection_manager)
        self.notes = NoteRepository(connection_manager)
        self.drafts = DraftRepository(connection_manager)

    def health_check(self) -> Dict[str, object]:
        return self.connection_manager.health_check()

    # Users and assignments

    def save_user(self, user: User) -> User:
        return self.users.upsert(user)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.find_by_id(user_id)

    def list_users(self, role=None) -> List[User]:
        if role is None:
            return self.users.find_where("TRUE", order_by="name")
        return self.users.find_where("role = %s", [role.value], order_by="name")

    def list_users_in_groups(self, group_ids: Sequence[str], role=None) -> List[User]:
        if role is None:
            return self.users.find_where("group_ids && %s::text[]", [list(group_ids)], order_by="name")
        return self.users.find_where(
            "group_ids && %s::text[] AND role = %s",
            [list(group_ids), role.value],
            order_by="name",
        )

    def set_therapist_assignments(
        self, therapist_id: str, group_ids: Sequence[str]
    ) -> List[TherapistAssignment]:
        assignments = [TherapistAssignment(therapist_id, g) for g in dict.fromkeys(group_ids)]
        with self.connection_manager.transaction() as cur:
            cur.execute("DELETE FROM therapist_assignments WHERE therapist_id = %s", (therapist_id,))
            for assignment in assignments:
                cur.execute(
                    "INSERT INTO therapist_assignments (therapist_id, group_id, assigned_at) "
                    "VALUES (%s, %s, %s)",
                    (assignment.therapist_id, assignment.group_id, assignment.assigned_at)
                )
        return assignments

    def list_assigned_group_ids(self, therapist_id: str) -> List[str]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT group_id FROM therapist_assignments WHERE therapist_id = %s ORDER BY group_id",
                    (therapist_id,)
                )
                return [row["group_id"] for row in cur.fetchall()]

    def list_therapists_for_groups(self, group_ids: Sequence[str]) -> List[User]:
        return self.users.find_where(
            "role = 'therapist' AND id IN ("
            "SELECT therapist_id FROM therapist_assignments WHERE group_id = ANY(%s))",
            [list(group_ids)],
            order_by="lower(name)",
        )

    # Conversations

    def create_conversation(self, conversation: Conversation) -> Conversation:
        return self.conversations.insert(conversation)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self.conversations.find_by_id(conversation_id)

    def find_open_conversation(self, patient_id: str) -> Optional[Conversation]:
        rows = self.conversations.find_where(
            "patient_id = %s AND status <> 'closed'",
            [patient_id],
            order_by="created_at DESC",
            limit=1,
        )
        return rows[0] if rows else None

    def find_or_create_open_conversation(self, conversation: Conversation) -> Tuple[Conversation, bool]:
        return self.conversations.insert_if_no_open(conversation)

    def list_conversations_for_patients(self, patient_ids: Sequence[str]) -> List[Conversation]:
        if not patient_ids:
            return []
        return self.conversations.find_where("patient_id = ANY(%s)", [list(patient_ids)])

    def update_conversation(
        self,
        conversation_id: str,
        mutate: Callable[[Conversation], Conversation],
    ) -> Tuple[Conversation, Conversation]:
        return self.conversations.update_locked(conversation_id, mutate)

    # Messages

    def add_message(self, message: Message) -> Message:
        return self.messages.insert(message)

    def get_message(self, message_id: int) -> Optional[Message]:
        return self.messages.find_by_id(message_id)

    def update_message(
        self,
        message_id: int,
        mutate: Callable[[Message], Message],
    ) -> Tuple[Message, Message]:
        return self.messages.update_locked(message_id, mutate)

    def list_messages(
        self,
        conversation_id: str,
        after_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[Message]:
        return self.messages.find_where(
            "conversation_id = %s AND id > %s",
            [conversation_id, after_id or 0],
            order_by="id ASC",
            limit=limit,
        )

    def list_recent_messages(self, conversation_id: str, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        newest_first = self.messages.find_where(
            "conversation_id = %s",
            [conversation_id],
            order_by="id DESC",
            limit=limit,
        )
        return list(reversed(newest_first))

    def latest_message_id(self, conversation_id: str) -> Optional[int]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT MAX(id) AS latest FROM messages WHERE conversation_id = %s",
                    (conversation_id,)
                )
                row = cur.fetchone()
        return row["latest"] if row else None

    def count_messages_after(self, conversation_id: str, after_id: Optional[int]) -> int:
        return self.messages.count_where(
            "conversation_id = %s AND id > %s", [conversation_id, after_id or 0]
        )

    # Recipients

    def add_recipients(self, message_id: int, user_ids: Iterable[str]) -> int:
        created = 0
        with self.connection_manager.transaction() as cur:
            for user_id in dict.fromkeys(user_ids):
                cur.execute(
                    "INSERT INTO message_recipients (message_id, user_id) VALUES (%s, %s) "
                    "ON CONFLICT (message_id, user_id) DO NOTHING",
                    (message_id, user_id)
                )
                created += cur.rowcount
        return created

    def list_recipients(self, message_id: int) -> List[MessageRecipient]:
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM message_recipients WHERE message_id = %s ORDER BY user_id",
                    (message_id,)
                )
                rows = cur.fetchall()
        return [
            MessageRecipient(row["message_id"], row["user_id"], row["is_read"], row["read_at"])
            for row in rows
        ]

    def mark_recipients_read(
        self,
        conversation_id: str,
        user_id: str,
        up_to_message_id: Optional[int] = None,
    ) -> int:
        query = (
            "UPDATE message_recipients r SET is_read = TRUE, read_at = %s "
            "FROM messages m WHERE r.message_id = m.id AND m.conversation_id = %s "
            "AND r.user_id = %s AND NOT r.is_read"
        )
        params: List[Any] = [datetime.utcnow(), conversation_id, user_id]
        if up_to_message_id is not None:
            query += " AND m.id <= %s"
            params.append(up_to_message_id)

        with self.connection_manager.transaction() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def count_unread_messages(
        self,
        user_id: str,
        conversation_ids: Sequence[str],
        exclude_roles: Sequence[SenderRole] = (),
    ) -> Dict[str, int]:
        if not conversation_ids:
            return {}
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT m.conversation_id, COUNT(*) AS unread FROM message_recipients r "
                    "JOIN messages m ON m.id = r.message_id "
                    "WHERE r.user_id = %s AND NOT r.is_read AND m.conversation_id = ANY(%s) "
                    "AND NOT (m.sender_role = ANY(%s)) "
                    "GROUP BY m.conversation_id",
                    (user_id, list(conversation_ids), [r.value for r in exclude_roles])
                )
                rows = cur.fetchall()
        return {row["conversation_id"]: row["unread"] for row in rows}

    # Alerts

    def add_alert(self, alert: Alert) -> Alert:
        return self.alerts.insert(alert)

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self.alerts.find_by_id(alert_id)

    def list_alerts(
        self,
        conversation_ids: Sequence[str],
        user_id: Optional[str] = None,
        unread_only: bool = False,
        alert_type: Optional[AlertType] = None,
    ) -> List[Alert]:
        if not conversation_ids:
            return []
        clause = "conversation_id = ANY(%s)"
        params: List[Any] = [list(conversation_ids)]
        if user_id is not None:
            clause += " AND (target_user_id IS NULL OR target_user_id = %s)"
            params.append(user_id)
        if unread_only:
            clause += " AND NOT is_read"
        if alert_type is not None:
            clause += " AND alert_type = %s"
            params.append(alert_type.value)
        return self.alerts.find_where(clause, params, order_by="created_at DESC")

    def mark_alert_read(self, alert_id: str) -> bool:
        with self.connection_manager.transaction() as cur:
            cur.execute(
                "UPDATE alerts SET is_read = TRUE, read_at = %s WHERE id = %s AND NOT is_read",
                (datetime.utcnow(), alert_id)
            )
            return cur.rowcount > 0

    def mark_alerts_read(self, conversation_ids: Sequence[str], user_id: str) -> int:
        if not conversation_ids:
            return 0
        with self.connection_manager.transaction() as cur:
            cur.execute(
                "UPDATE alerts SET is_read = TRUE, read_at = %s "
                "WHERE conversation_id = ANY(%s) AND NOT is_read "
                "AND (target_user_id IS NULL OR target_user_id = %s)",
                (datetime.utcnow(), list(conversation_ids), user_id)
            )
            return cur.rowcount

    def count_unread_alerts(
        self, conversation_ids: Sequence[str], user_id: str
    ) -> Dict[str, int]:
        if not conversation_ids:
            return {}
        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT conversation_id, COUNT(*) AS unread FROM alerts "
                    "WHERE conversation_id = ANY(%s) AND NOT is_read "
                    "AND (target_user_id IS NULL OR target_user_id = %s) "
                    "GROUP BY conversation_id",
                    (list(conversation_ids), user_id)
                )
                rows = cur.fetchall()
        return {row["conversation_id"]: row["unread"] for row in rows}

    # Notes

    def add_note(self, note: Note) -> Note:
        return self.notes.insert(note)

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.notes.find_by_id(note_id)

    def update_note(self, note_id: str, mutate: Callable[[Note], Note]) -> Tuple[Note, Note]:
        return self.notes.update_locked(note_id, mutate)

    def list_notes(self, conversation_id: str, include_deleted: bool = False) -> List[Note]:
        clause = "conversation_id = %s"
        if not include_deleted:
            clause += " AND status = 'active'"
        return self.notes.find_where(clause, [conversation_id], order_by="created_at DESC")

    # Drafts

    def add_draft(self, draft: Draft) -> Draft:
        return self.drafts.insert(draft)

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        return self.drafts.find_by_id(draft_id)

    def update_draft(self, draft_id: str, mutate: Callable[[Draft], Draft]) -> Tuple[Draft, Draft]:
        return self.drafts.update_locked(draft_id, mutate)

    def find_open_draft(self, conversation_id: str, therapist_id: str) -> Optional[Draft]:
        rows = self.drafts.find_where(
            "conversation_id = %s AND therapist_id = %s AND status = 'draft'",
            [conversation_id, therapist_id],
            order_by="created_at DESC",
            limit=1,
        )
        return rows[0] if rows else None


__all__ = ["PostgresChatStore"]
