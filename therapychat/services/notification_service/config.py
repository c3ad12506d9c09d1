"""Notification toggles and templates.

Templates use ``{{patient_name}}``, ``{{therapist_name}}`` and
``{{message_preview}}`` placeholders.
"""
import os
from dataclasses import dataclass


@dataclass(frozen=True)
class NotificationConfig:
    """Which channels fire and what they say."""

    enabled: bool = True

    therapist_email_enabled: bool = True
    therapist_push_enabled: bool = True
    patient_email_enabled: bool = False
    patient_push_enabled: bool = True

    from_address: str = "noreply@therapychat.local"

    therapist_subject: str = "New message from {{patient_name}}"
    therapist_tag_subject: str = "{{patient_name}} tagged you"
    therapist_body: str = "{{patient_name}} wrote:\n\n{{message_preview}}"
    therapist_push_body: str = "{{patient_name}}: {{message_preview}}"

    patient_subject: str = "New message from your therapist"
    patient_body: str = "@{{therapist_name}} replied:\n\n{{message_preview}}"
    patient_push_body: str = "@{{therapist_name}}: {{message_preview}}"

    urgent_subject: str = "[URGENT] Therapy Chat Alert - {{patient_name}}: Danger detected"
    urgent_body: str = (
        "Potentially dangerous content was detected in the conversation with "
        "{{patient_name}}. AI responses have been disabled and the conversation "
        "is marked critical.\n\nExcerpt: {{message_preview}}"
    )

    # Preview lengths per channel
    email_preview_length: int = 200
    push_preview_length: int = 100
    patient_push_preview_length: int = 80

    # Kinesis stream consumed by the mail/push delivery workers
    stream_name: str = "therapychat-notifications"
    region: str = "us-east-1"

    @classmethod
    def from_env(cls) -> "NotificationConfig":
        defaults = cls()

        def flag(name: str, default: bool) -> bool:
            return os.getenv(name, str(default)).lower() == "true"

        return cls(
            enabled=flag("NOTIFICATIONS_ENABLED", defaults.enabled),
            therapist_email_enabled=flag("NOTIFY_THERAPIST_EMAIL", defaults.therapist_email_enabled),
            therapist_push_enabled=flag("NOTIFY_THERAPIST_PUSH", defaults.therapist_push_enabled),
            patient_email_enabled=flag("NOTIFY_PATIENT_EMAIL", defaults.patient_email_enabled),
            patient_push_enabled=flag("NOTIFY_PATIENT_PUSH", defaults.patient_push_enabled),
            from_address=os.getenv("NOTIFY_FROM_ADDRESS", defaults.from_address),
            therapist_subject=os.getenv("NOTIFY_THERAPIST_SUBJECT", defaults.therapist_subject),
            therapist_body=os.getenv("NOTIFY_THERAPIST_BODY", defaults.therapist_body),
            patient_subject=os.getenv("NOTIFY_PATIENT_SUBJECT", defaults.patient_subject),
            patient_body=os.getenv("NOTIFY_PATIENT_BODY", defaults.patient_body),
            urgent_subject=os.getenv("NOTIFY_URGENT_SUBJECT", defaults.urgent_subject),
            urgent_body=os.getenv("NOTIFY_URGENT_BODY", defaults.urgent_body),
            stream_name=os.getenv("NOTIFICATION_STREAM", defaults.stream_name),
            region=os.getenv("AWS_REGION", defaults.region),
        )
