"""AccessGuard: may this caller operate on this conversation?

Therapists reach a conversation through group assignment: access is
granted when any group the patient belongs to is assigned to the
therapist. Admins are granted unconditionally, patients only their own
conversation. Every lookup failure denies.
"""
import logging
from typing import List, Optional

from therapychat.shared.database import ChatStore
from therapychat.shared.errors import AccessDenied, NotFound
from therapychat.shared.models import Actor, ActorRole, Conversation, User
from therapychat.shared.utils import hash_pii

logger = logging.getLogger(__name__)


class AccessGuard:
    """Fail-closed access decisions over the assignment mapping."""

    def __init__(self, store: ChatStore):
        self.store = store

    def can_access(self, actor: Actor, conversation_id: str) -> bool:
        """Return True only when access is positively established."""
        try:
            conversation = self.store.get_conversation(conversation_id)
            if conversation is None:
                return False
            return self._decide(actor, conversation)
        except Exception as e:
            logger.error(
                "ACCESS_CHECK_FAILED",
                extra={
                    "actor_id_hash": hash_pii(actor.user_id),
                    "conversation_id": conversation_id,
                    "error": str(e),
                }
            )
            return False

    def require(self, actor: Actor, conversation_id: str) -> Conversation:
        """Load the conversation or raise.

        Raises:
            NotFound: Conversation does not exist (only for callers that
                would otherwise have access, i.e. admins and system)
            AccessDenied: Caller may not operate on it
        """
        conversation = self._load(actor, conversation_id)
        if conversation is not None and self._safe_decide(actor, conversation):
            return conversation

        if conversation is None and (actor.is_admin or actor.is_system):
            raise NotFound(f"Conversation {conversation_id} not found")

        logger.warning(
            "ACCESS_DENIED",
            extra={
                "actor_id_hash": hash_pii(actor.user_id),
                "actor_role": actor.role.value,
                "conversation_id": conversation_id,
            }
        )
        raise AccessDenied("You do not have access to this conversation")

    def can_access_patient(self, actor: Actor, patient: User) -> bool:
        if actor.is_admin or actor.is_system:
            return True
        if actor.is_patient:
            return actor.user_id == patient.user_id
        try:
            assigned = set(self.store.list_assigned_group_ids(actor.user_id))
        except Exception as e:
            logger.error("ACCESS_CHECK_FAILED", extra={"error": str(e)})
            return False
        return bool(assigned.intersection(patient.group_ids))

    def accessible_patients(self, actor: Actor, group_id: Optional[str] = None) -> List[User]:
        """Patients the caller may see, optionally limited to one group."""
        if actor.is_patient:
            user = self.store.get_user(actor.user_id)
            return [user] if user else []

        if actor.is_admin or actor.is_system:
            group_ids = [group_id] if group_id else None
        else:
            group_ids = self.store.list_assigned_group_ids(actor.user_id)
            if group_id:
                group_ids = [g for g in group_ids if g == group_id]

        if group_ids is None:
            return self.store.list_users(role=ActorRole.PATIENT)
        if not group_ids:
            return []
        return self.store.list_users_in_groups(group_ids, role=ActorRole.PATIENT)

    def _load(self, actor: Actor, conversation_id: str) -> Optional[Conversation]:
        try:
            return self.store.get_conversation(conversation_id)
        except Exception as e:
            logger.error(
                "ACCESS_CHECK_FAILED",
                extra={
                    "actor_id_hash": hash_pii(actor.user_id),
                    "conversation_id": conversation_id,
                    "error": str(e),
                }
            )
            return None

    def _safe_decide(self, actor: Actor, conversation: Conversation) -> bool:
        try:
            return self._decide(actor, conversation)
        except Exception as e:
            logger.error(
                "ACCESS_CHECK_FAILED",
                extra={"conversation_id": conversation.conversation_id, "error": str(e)}
            )
            return False

    def _decide(self, actor: Actor, conversation: Conversation) -> bool:
        if actor.is_admin or actor.is_system:
            return True
        if actor.is_patient:
            return actor.user_id == conversation.patient_id
        if actor.role != ActorRole.THERAPIST:
            return False

        patient = self.store.get_user(conversation.patient_id)
        if patient is None:
            return False
        assigned = set(self.store.list_assigned_group_ids(actor.user_id))
        return bool(assigned.intersection(patient.group_ids))
