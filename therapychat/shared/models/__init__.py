"""Shared domain models for the therapy chat platform."""
from .conversation import (
    ChatMode,
    ConversationStatus,
    RiskLevel,
    SenderRole,
    ActorRole,
    DangerLevel,
    AlertType,
    AlertSeverity,
    TagUrgency,
    NoteType,
    NoteStatus,
    DraftStatus,
    Actor,
    SYSTEM_ACTOR,
    User,
    TherapistAssignment,
    Conversation,
    Message,
    MessageRecipient,
    Alert,
    Note,
    Draft,
    new_id,
    sort_by_risk,
)

__all__ = [
    "ChatMode",
    "ConversationStatus",
    "RiskLevel",
    "SenderRole",
    "ActorRole",
    "DangerLevel",
    "AlertType",
    "AlertSeverity",
    "TagUrgency",
    "NoteType",
    "NoteStatus",
    "DraftStatus",
    "Actor",
    "SYSTEM_ACTOR",
    "User",
    "TherapistAssignment",
    "Conversation",
    "Message",
    "MessageRecipient",
    "Alert",
    "Note",
    "Draft",
    "new_id",
    "sort_by_risk",
]
