"""NotificationDispatcher: decides what each outbound notification says and
hands it to a transport.

The orchestration core only decides *that* someone must be notified; the
dispatcher composes the notification from templates and the concrete
subclass queues it (Kinesis in production, a list in tests). Delivery
itself happens in downstream workers.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from therapychat.shared.errors import NotificationDeliveryFailure
from therapychat.shared.models import Alert, Conversation, Message, User
from therapychat.shared.utils import build_preview, dedupe_addresses, hash_pii, replace_tokens

from .config import NotificationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """One queued outbound notification (possibly many recipients)."""
    kind: str                       # therapist_message | patient_message | urgent_alert
    channel: str                    # email | push
    conversation_id: str
    recipient_ids: tuple = ()
    recipient_emails: tuple = ()
    subject: str = ""
    body: str = ""
    urgent: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)
    notification_id: str = field(default_factory=lambda: f"ntf_{uuid.uuid4().hex[:12]}")
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "event_type": f"therapychat.notification.{self.kind}",
            "timestamp": self.created_at.isoformat() + "Z",
            "source": "chat-service",
            "data": {
                "channel": self.channel,
                "conversation_id": self.conversation_id,
                "recipient_ids": list(self.recipient_ids),
                "recipient_emails": list(self.recipient_emails),
                "subject": self.subject,
                "body": self.body,
                "urgent": self.urgent,
                "metadata": self.metadata,
            },
        }


class NotificationDispatcher(ABC):
    """Composes notifications and queues them through ``publish``.

    Every ``notify_*`` method returns the notifications it queued and
    raises NotificationDeliveryFailure if the transport rejects any of
    them. The rest are still attempted before the failure is raised.
    Callers treat that failure as non-fatal.
    """

    def __init__(self, config: Optional[NotificationConfig] = None):
        self.config = config or NotificationConfig()

    @abstractmethod
    def publish(self, notification: Notification) -> bool:
        """Queue one notification. Returns False on failure, never raises."""
        pass

    def notify_therapists(
        self,
        conversation: Conversation,
        patient: Optional[User],
        therapists: Sequence[User],
        message: Message,
        is_tag: bool = False,
    ) -> List[Notification]:
        """Therapist attention needed: tagged message or AI unavailable."""
        if not self.config.enabled or not therapists:
            return []

        patient_name = patient.name if patient else "A patient"
        subject_template = self.config.therapist_tag_subject if is_tag else self.config.therapist_subject
        notifications = []

        if self.config.therapist_email_enabled:
            emails = dedupe_addresses(t.email for t in therapists if t.email)
            if emails:
                tokens = self._tokens(patient_name, message.body, self.config.email_preview_length)
                notifications.append(Notification(
                    kind="therapist_message",
                    channel="email",
                    conversation_id=conversation.conversation_id,
                    recipient_ids=tuple(t.user_id for t in therapists if t.email),
                    recipient_emails=tuple(emails),
                    subject=replace_tokens(subject_template, tokens),
                    body=replace_tokens(self.config.therapist_body, tokens),
                    metadata={"message_id": message.message_id, "is_tag": is_tag},
                ))

        if self.config.therapist_push_enabled:
            tokens = self._tokens(patient_name, message.body, self.config.push_preview_length)
            notifications.append(Notification(
                kind="therapist_message",
                channel="push",
                conversation_id=conversation.conversation_id,
                recipient_ids=tuple(t.user_id for t in therapists),
                subject=replace_tokens(subject_template, tokens),
                body=replace_tokens(self.config.therapist_push_body, tokens),
                metadata={"message_id": message.message_id, "is_tag": is_tag},
            ))

        return self._publish_all(notifications)

    def notify_patient(
        self,
        conversation: Conversation,
        patient: Optional[User],
        therapist: Optional[User],
        message: Message,
    ) -> List[Notification]:
        """A therapist replied (directly or by sending a draft)."""
        if not self.config.enabled or patient is None:
            return []

        therapist_name = therapist.name if therapist else "Your therapist"
        notifications = []

        if self.config.patient_email_enabled and patient.email:
            tokens = self._tokens(patient.name, message.body, self.config.email_preview_length, therapist_name)
            notifications.append(Notification(
                kind="patient_message",
                channel="email",
                conversation_id=conversation.conversation_id,
                recipient_ids=(patient.user_id,),
                recipient_emails=(patient.email,),
                subject=replace_tokens(self.config.patient_subject, tokens),
                body=replace_tokens(self.config.patient_body, tokens),
                metadata={"message_id": message.message_id},
            ))

        if self.config.patient_push_enabled:
            tokens = self._tokens(
                patient.name, message.body, self.config.patient_push_preview_length, therapist_name
            )
            notifications.append(Notification(
                kind="patient_message",
                channel="push",
                conversation_id=conversation.conversation_id,
                recipient_ids=(patient.user_id,),
                subject=replace_tokens(self.config.patient_subject, tokens),
                body=replace_tokens(self.config.patient_push_body, tokens),
                metadata={"message_id": message.message_id},
            ))

        return self._publish_all(notifications)

    def notify_urgent(
        self,
        conversation: Conversation,
        patient: Optional[User],
        therapists: Sequence[User],
        extra_emails: Iterable[str],
        alert: Alert,
    ) -> List[Notification]:
        """Exactly one urgent notification per escalation event.

        Assigned therapists and the static extra addresses are merged and
        de-duplicated so nobody receives the same alert twice.
        """
        if not self.config.enabled:
            return []

        emails = dedupe_addresses(
            [t.email for t in therapists if t.email] + list(extra_emails)
        )
        patient_name = patient.name if patient else "A patient"
        excerpt = alert.metadata.get("message_excerpt", "")
        tokens = self._tokens(patient_name, excerpt, self.config.email_preview_length)

        notification = Notification(
            kind="urgent_alert",
            channel="email",
            conversation_id=conversation.conversation_id,
            recipient_ids=tuple(t.user_id for t in therapists),
            recipient_emails=tuple(emails),
            subject=replace_tokens(self.config.urgent_subject, tokens),
            body=replace_tokens(self.config.urgent_body, tokens),
            urgent=True,
            metadata={
                "alert_id": alert.alert_id,
                "severity": alert.severity.value,
                "risk_level": conversation.risk_level.value,
            },
        )
        return self._publish_all([notification])

    def _publish_all(self, notifications: List[Notification]) -> List[Notification]:
        """Publish every notification, then report all that failed at once."""
        failed = [n for n in notifications if not self.publish(n)]
        if failed:
            raise NotificationDeliveryFailure(
                "Failed to queue "
                + ", ".join(f"{n.kind}/{n.channel}" for n in failed)
                + " notification" + ("s" if len(failed) > 1 else ""),
                notification_ids=[n.notification_id for n in failed],
                failed_channels=[n.channel for n in failed],
            )
        return notifications

    @staticmethod
    def _tokens(
        patient_name: str,
        text: str,
        preview_length: int,
        therapist_name: str = "",
    ) -> Dict[str, str]:
        return {
            "patient_name": patient_name,
            "therapist_name": therapist_name,
            "message_preview": build_preview(text, preview_length),
        }


class InMemoryNotificationQueue(NotificationDispatcher):
    """Keeps queued notifications in a list. Used in development and tests."""

    def __init__(self, config: Optional[NotificationConfig] = None):
        super().__init__(config)
        self.queued: List[Notification] = []
        self.available = True

    def publish(self, notification: Notification) -> bool:
        if not self.available:
            logger.critical(
                "NOTIFICATION_PUBLISH_FAILED",
                extra={
                    "notification_id": notification.notification_id,
                    "kind": notification.kind,
                    "reason": "queue_unavailable",
                }
            )
            return False

        self.queued.append(notification)
        logger.info(
            "NOTIFICATION_QUEUED",
            extra={
                "notification_id": notification.notification_id,
                "kind": notification.kind,
                "channel": notification.channel,
                "recipient_count": len(notification.recipient_ids) + len(notification.recipient_emails),
            }
        )
        return True

    def of_kind(self, kind: str) -> List[Notification]:
        return [n for n in self.queued if n.kind == kind]


def partition_key(conversation_id: str) -> str:
    """Same conversation lands on the same shard, keeping per-thread order."""
    return hash_pii(conversation_id)[:32]
