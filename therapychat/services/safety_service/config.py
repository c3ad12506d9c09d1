"""Safety escalation configuration and default danger terms.

The keyword list is the fallback detector used only when an AI reply
carries no structured safety assessment. Matching is a case-insensitive
substring test, so entries should be phrases rather than single letters.
"""
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Tuple

from therapychat.shared.utils import split_list


# Bilingual defaults (the platform serves English and German clinics)
DEFAULT_DANGER_KEYWORDS: Tuple[str, ...] = (
    # Direct self-harm language
    "suicide",
    "selbstmord",
    "kill myself",
    "mich umbringen",
    "self-harm",
    "selbstverletzung",
    "harm myself",
    "mir schaden",
    "end my life",
    "mein leben beenden",
    # Methods
    "overdose",
    "überdosis",
)

DEFAULT_BLOCKED_MESSAGE = (
    "I noticed some concerning content in your message. While I want to help, "
    "please consider reaching out to a trusted person or crisis hotline. "
    "Your well-being is important."
)

# Danger levels a structured assessment may report
ESCALATING_LEVELS: FrozenSet[str] = frozenset({"critical", "emergency"})


@dataclass(frozen=True)
class SafetyConfig:
    """Configuration for safety escalation behavior."""

    # Master switch for both detection layers
    danger_detection_enabled: bool = True

    danger_keywords: Tuple[str, ...] = DEFAULT_DANGER_KEYWORDS

    # Static addresses that receive every urgent notification
    extra_notification_emails: Tuple[str, ...] = ()

    # Repeat escalations on a blocked conversation still raise a new Alert
    alert_on_repeat: bool = True

    blocked_message: str = DEFAULT_BLOCKED_MESSAGE

    excerpt_length: int = 100

    # Version tracking for audit trail
    keyword_version: str = field(default="2026.10.01")

    @classmethod
    def from_env(cls) -> "SafetyConfig":
        keywords = split_list(os.getenv("DANGER_KEYWORDS", ""))
        return cls(
            danger_detection_enabled=os.getenv("DANGER_DETECTION_ENABLED", "true").lower() == "true",
            danger_keywords=tuple(k.lower() for k in keywords) or DEFAULT_DANGER_KEYWORDS,
            extra_notification_emails=tuple(split_list(os.getenv("DANGER_NOTIFICATION_EMAILS", ""))),
            alert_on_repeat=os.getenv("DANGER_ALERT_ON_REPEAT", "true").lower() == "true",
            blocked_message=os.getenv("DANGER_BLOCKED_MESSAGE", DEFAULT_BLOCKED_MESSAGE),
        )
