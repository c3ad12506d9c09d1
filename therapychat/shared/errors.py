"""Domain error taxonomy.

Each error carries the HTTP status and stable code the action surface
returns, so callers can distinguish a paused conversation from a denied
request without parsing text.
"""
from typing import Any, Dict, Optional


class TherapyChatError(Exception):
    """Base class for errors surfaced to callers."""
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.message, "code": self.code}
        payload.update(self.details)
        return payload


class AccessDenied(TherapyChatError):
    """Caller may not operate on the conversation. Always fails closed."""
    status_code = 403
    code = "access_denied"


class NotFound(TherapyChatError):
    status_code = 404
    code = "not_found"


class ValidationError(TherapyChatError):
    """Malformed input such as an empty message body."""
    status_code = 400
    code = "validation_error"


class ConversationClosed(TherapyChatError):
    status_code = 409
    code = "conversation_closed"


class ConversationPaused(TherapyChatError):
    """Patient message rejected while paused; ``notice`` is patient-facing."""
    status_code = 409
    code = "conversation_paused"

    def __init__(self, message: str, notice: Optional[str] = None):
        super().__init__(message, notice=notice)
        self.notice = notice


class InvalidTransition(TherapyChatError):
    status_code = 409
    code = "invalid_transition"


class UpstreamUnavailable(TherapyChatError):
    """AI collaborator failed or timed out.

    The inbound patient message is already persisted when this is raised
    from routing; ``message_id`` identifies it so clients can report it.
    """
    status_code = 502
    code = "upstream_unavailable"

    def __init__(self, message: str, message_id: Optional[int] = None):
        super().__init__(message, message_id=message_id, retryable=True)
        self.message_id = message_id


class NotificationDeliveryFailure(TherapyChatError):
    """Outbound notification could not be queued. Never fatal."""
    code = "notification_delivery_failed"
