"""Safety Service - detection and escalation for dangerous content.

Reads the structured safety assessment attached to AI replies, falls back
to a configured danger-term scan when none is present, and on an
escalating result blocks the conversation, raises risk to critical,
alerts every assigned therapist and queues one urgent notification.
"""
from .alerts import AlertService, order_alerts
from .assessment import KeywordScanner, SafetyAssessment, parse_safety_payload
from .config import DEFAULT_DANGER_KEYWORDS, SafetyConfig
from .escalation import EscalationResult, SafetyEscalationPipeline

__all__ = [
    "AlertService",
    "order_alerts",
    "KeywordScanner",
    "SafetyAssessment",
    "parse_safety_payload",
    "DEFAULT_DANGER_KEYWORDS",
    "SafetyConfig",
    "EscalationResult",
    "SafetyEscalationPipeline",
]
