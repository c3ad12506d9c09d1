"""Conversation, message and control-attribute domain models.

Every status, type, severity and urgency field is a closed enumeration.
Conversations are never hard-deleted: closing and soft flags are the only
terminal states.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ChatMode(Enum):
    """Who answers the patient by default."""
    AI_HYBRID = "ai_hybrid"     # AI replies, therapists step in when tagged
    HUMAN_ONLY = "human_only"   # Every patient message goes to therapists


class ConversationStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSED = "closed"           # Terminal


class RiskLevel(Enum):
    """Clinical risk attached to a conversation.

    Raised automatically by escalation, freely editable by therapists.
    """
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class SenderRole(Enum):
    PATIENT = "patient"
    AI = "ai"
    THERAPIST = "therapist"
    SYSTEM = "system"


class ActorRole(Enum):
    """Role of the caller performing an operation."""
    PATIENT = "patient"
    THERAPIST = "therapist"
    ADMIN = "admin"
    SYSTEM = "system"


class DangerLevel(Enum):
    """Danger level reported by a structured safety assessment."""
    NONE = "none"
    WARNING = "warning"         # Logged, never escalates
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def is_escalating(self) -> bool:
        return self in (DangerLevel.CRITICAL, DangerLevel.EMERGENCY)


class AlertType(Enum):
    DANGER_DETECTED = "danger_detected"
    TAG_RECEIVED = "tag_received"
    HIGH_ACTIVITY = "high_activity"
    INACTIVITY = "inactivity"
    NEW_MESSAGE = "new_message"


class AlertSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.CRITICAL: 2,
    AlertSeverity.EMERGENCY: 3,
}


class TagUrgency(Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    @property
    def alert_severity(self) -> AlertSeverity:
        return _URGENCY_SEVERITY[self]


_URGENCY_RANK = {
    TagUrgency.NORMAL: 0,
    TagUrgency.URGENT: 1,
    TagUrgency.EMERGENCY: 2,
}

_URGENCY_SEVERITY = {
    TagUrgency.NORMAL: AlertSeverity.WARNING,
    TagUrgency.URGENT: AlertSeverity.CRITICAL,
    TagUrgency.EMERGENCY: AlertSeverity.EMERGENCY,
}


class NoteType(Enum):
    MANUAL = "manual"
    AI_SUMMARY = "ai_summary"


class NoteStatus(Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class DraftStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"               # Terminal
    DISCARDED = "discarded"     # Terminal


def new_id(prefix: str) -> str:
    """Generate a short prefixed identifier, e.g. ``conv_1a2b3c4d5e6f``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Actor:
    """Explicit caller identity threaded through every operation."""
    user_id: str
    role: ActorRole

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_system(self) -> bool:
        return self.role == ActorRole.SYSTEM

    @property
    def is_patient(self) -> bool:
        return self.role == ActorRole.PATIENT

    @property
    def is_staff(self) -> bool:
        return self.role in (ActorRole.THERAPIST, ActorRole.ADMIN)


SYSTEM_ACTOR = Actor(user_id="system", role=ActorRole.SYSTEM)


@dataclass(frozen=True)
class User:
    """A patient, therapist or admin known to the store."""
    user_id: str
    name: str
    role: ActorRole
    email: Optional[str] = None
    group_ids: tuple = ()

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id must not be empty")

    def as_actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "role": self.role.value,
            "group_ids": list(self.group_ids),
        }


@dataclass(frozen=True)
class TherapistAssignment:
    therapist_id: str
    group_id: str
    assigned_at: datetime = field(default_factory=datetime.utcnow)


@dataclass(frozen=True)
class Conversation:
    """Control attributes of one patient thread.

    Instances are immutable; transitions produce a new instance via
    ``dataclasses.replace`` inside an atomic store update.
    """
    conversation_id: str
    patient_id: str
    mode: ChatMode = ChatMode.AI_HYBRID
    status: ConversationStatus = ConversationStatus.ACTIVE
    risk_level: RiskLevel = RiskLevel.LOW
    ai_enabled: bool = True
    blocked: bool = False
    blocked_reason: Optional[str] = None
    blocked_at: Optional[datetime] = None
    patient_last_seen: Optional[datetime] = None
    therapist_last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.blocked and self.ai_enabled:
            raise ValueError("A blocked conversation cannot have AI enabled")

    @property
    def ai_active(self) -> bool:
        """True when an AI reply may be requested for untagged messages."""
        return self.ai_enabled and not self.blocked and self.mode == ChatMode.AI_HYBRID

    @property
    def is_closed(self) -> bool:
        return self.status == ConversationStatus.CLOSED

    @property
    def is_paused(self) -> bool:
        return self.status == ConversationStatus.PAUSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "patient_id": self.patient_id,
            "mode": self.mode.value,
            "status": self.status.value,
            "risk_level": self.risk_level.value,
            "ai_enabled": self.ai_enabled,
            "ai_active": self.ai_active,
            "blocked": self.blocked,
            "blocked_reason": self.blocked_reason,
            "blocked_at": _iso(self.blocked_at),
            "patient_last_seen": _iso(self.patient_last_seen),
            "therapist_last_seen": _iso(self.therapist_last_seen),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Message:
    """One entry in the patient-visible stream.

    ``message_id`` is assigned by the store and is the ordering key.
    """
    conversation_id: str
    sender_role: SenderRole
    body: str
    sender_id: Optional[str] = None
    message_id: Optional[int] = None
    safety_payload: Optional[Dict[str, Any]] = None
    tagged: bool = False
    edited: bool = False
    deleted: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    def to_dict(self, label: Optional[str] = None) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "sender_role": self.sender_role.value,
            "sender_id": self.sender_id,
            "sender_label": label,
            "body": None if self.deleted else self.body,
            "tagged": self.tagged,
            "edited": self.edited,
            "deleted": self.deleted,
            "metadata": self.metadata,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class MessageRecipient:
    """Delivery/read record for one (message, user) pair."""
    message_id: int
    user_id: str
    is_read: bool = False
    read_at: Optional[datetime] = None


@dataclass(frozen=True)
class Alert:
    """Therapist-facing banner raised by escalation or tagging."""
    conversation_id: str
    alert_type: AlertType
    severity: AlertSeverity
    summary: str
    target_user_id: Optional[str] = None    # None = all assigned therapists
    metadata: Dict[str, Any] = field(default_factory=dict)
    alert_id: str = field(default_factory=lambda: new_id("alert"))
    is_read: bool = False
    read_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "conversation_id": self.conversation_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "summary": self.summary,
            "target_user_id": self.target_user_id,
            "metadata": self.metadata,
            "is_read": self.is_read,
            "read_at": _iso(self.read_at),
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Note:
    conversation_id: str
    author_id: str
    content: str
    note_type: NoteType = NoteType.MANUAL
    status: NoteStatus = NoteStatus.ACTIVE
    note_id: str = field(default_factory=lambda: new_id("note"))
    last_edited_by: Optional[str] = None
    ai_original_content: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "note_id": self.note_id,
            "conversation_id": self.conversation_id,
            "author_id": self.author_id,
            "content": self.content,
            "note_type": self.note_type.value,
            "status": self.status.value,
            "last_edited_by": self.last_edited_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Draft:
    """AI-assisted therapist reply held outside the patient stream."""
    conversation_id: str
    therapist_id: str
    ai_content: str
    current_text: str
    status: DraftStatus = DraftStatus.DRAFT
    undo_stack: tuple = ()
    draft_id: str = field(default_factory=lambda: new_id("draft"))
    sent_message_id: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_open(self) -> bool:
        return self.status == DraftStatus.DRAFT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "draft_id": self.draft_id,
            "conversation_id": self.conversation_id,
            "therapist_id": self.therapist_id,
            "ai_content": self.ai_content,
            "current_text": self.current_text,
            "status": self.status.value,
            "undo_depth": len(self.undo_stack),
            "sent_message_id": self.sent_message_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def sort_by_risk(conversations: List[Conversation]) -> List[Conversation]:
    """Order conversations most at-risk first, then most recently updated."""
    return sorted(
        conversations,
        key=lambda c: (-c.risk_level.rank, -c.updated_at.timestamp()),
    )
