"""Chat orchestration configuration.

Values come from environment variables at service startup; the dataclass
defaults are the clinic defaults used in development and tests.
"""
import json
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from therapychat.shared.models import ChatMode, TagUrgency

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TagReason:
    """A ``#topic`` a patient can attach when tagging a therapist."""
    key: str
    label: str
    urgency: TagUrgency = TagUrgency.NORMAL

    def to_dict(self) -> Dict[str, str]:
        return {"key": self.key, "label": self.label, "urgency": self.urgency.value}


DEFAULT_TAG_REASONS: Tuple[TagReason, ...] = (
    TagReason("overwhelmed", "I am feeling overwhelmed", TagUrgency.NORMAL),
    TagReason("need_talk", "I need to talk soon", TagUrgency.URGENT),
    TagReason("urgent", "This feels urgent", TagUrgency.URGENT),
    TagReason("emergency", "This is an emergency", TagUrgency.EMERGENCY),
)

DEFAULT_PAUSED_NOTICE = (
    "This conversation is paused by your therapist. "
    "If you are in crisis, please contact your local emergency services."
)
DEFAULT_CLOSED_NOTICE = "This conversation has been closed."


@dataclass(frozen=True)
class ChatConfig:
    """Configuration for conversation routing and presentation."""

    default_mode: ChatMode = ChatMode.AI_HYBRID
    ai_enabled_by_default: bool = True

    # Inserted as a system message when a conversation is created
    auto_start_context: Optional[str] = None

    tagging_enabled: bool = True
    tag_reasons: Tuple[TagReason, ...] = DEFAULT_TAG_REASONS

    max_message_length: int = 4000
    history_page_size: int = 100
    ai_history_limit: int = 40

    # Seconds between client polls of check_updates
    polling_interval: int = 3

    paused_notice: str = DEFAULT_PAUSED_NOTICE
    closed_notice: str = DEFAULT_CLOSED_NOTICE

    ai_label: str = "AI Assistant"
    system_label: str = "System"

    def find_tag_reason(self, key: str) -> Optional[TagReason]:
        key = (key or "").lower()
        for reason in self.tag_reasons:
            if reason.key.lower() == key:
                return reason
        return None

    @classmethod
    def from_env(cls) -> "ChatConfig":
        mode = os.getenv("CHAT_DEFAULT_MODE", ChatMode.AI_HYBRID.value)
        return cls(
            default_mode=ChatMode(mode),
            ai_enabled_by_default=os.getenv("CHAT_AI_ENABLED", "true").lower() == "true",
            auto_start_context=os.getenv("CHAT_AUTO_START_CONTEXT") or None,
            tagging_enabled=os.getenv("CHAT_TAGGING_ENABLED", "true").lower() == "true",
            tag_reasons=parse_tag_reasons(os.getenv("CHAT_TAG_REASONS", "")),
            max_message_length=int(os.getenv("CHAT_MAX_MESSAGE_LENGTH", "4000")),
            history_page_size=int(os.getenv("CHAT_HISTORY_PAGE_SIZE", "100")),
            ai_history_limit=int(os.getenv("CHAT_AI_HISTORY_LIMIT", "40")),
            polling_interval=int(os.getenv("CHAT_POLLING_INTERVAL", "3")),
            paused_notice=os.getenv("CHAT_PAUSED_NOTICE", DEFAULT_PAUSED_NOTICE),
            closed_notice=os.getenv("CHAT_CLOSED_NOTICE", DEFAULT_CLOSED_NOTICE),
            ai_label=os.getenv("CHAT_AI_LABEL", "AI Assistant"),
        )


def parse_tag_reasons(raw: str) -> Tuple[TagReason, ...]:
    """Parse a JSON list of ``{key, label, urgency}`` objects.

    Falls back to the defaults when the setting is empty or malformed.
    """
    if not raw:
        return DEFAULT_TAG_REASONS
    try:
        items = json.loads(raw)
        reasons = tuple(
            TagReason(
                key=item["key"],
                label=item.get("label", item["key"]),
                urgency=TagUrgency(item.get("urgency", "normal")),
            )
            for item in items
        )
    except (ValueError, KeyError, TypeError) as e:
        logger.error("TAG_REASONS_CONFIG_INVALID", extra={"error": str(e)})
        return DEFAULT_TAG_REASONS
    return reasons or DEFAULT_TAG_REASONS
