"""Detection layers for the escalation pipeline.

Layer 1 reads the structured assessment attached to an AI reply. Layer 2,
used only when layer 1 is unavailable, is a case-insensitive substring
scan for configured danger terms.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from therapychat.shared.models import DangerLevel

logger = logging.getLogger(__name__)


SOURCE_STRUCTURED = "structured"
SOURCE_KEYWORD = "keyword"


@dataclass(frozen=True)
class SafetyAssessment:
    """Normalised result of either detection layer."""
    danger_level: DangerLevel
    source: str
    detected_concerns: tuple = ()
    safety_message: Optional[str] = None
    matched_keywords: tuple = ()
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_escalating(self) -> bool:
        return self.danger_level.is_escalating

    def to_dict(self) -> Dict[str, Any]:
        return {
            "danger_level": self.danger_level.value,
            "source": self.source,
            "detected_concerns": list(self.detected_concerns),
            "matched_keywords": list(self.matched_keywords),
            "safety_message": self.safety_message,
        }


def parse_safety_payload(payload: Optional[Dict[str, Any]]) -> Optional[SafetyAssessment]:
    """Read a structured payload; None means the layer is unavailable.

    An unknown danger level is treated as unavailable rather than guessed,
    so the keyword layer still runs.
    """
    if not payload or "danger_level" not in payload:
        return None

    try:
        level = DangerLevel(str(payload["danger_level"]).lower())
    except ValueError:
        logger.warning(
            "SAFETY_PAYLOAD_UNKNOWN_LEVEL",
            extra={"danger_level": str(payload.get("danger_level"))[:32]}
        )
        return None

    concerns = payload.get("detected_concerns") or ()
    if isinstance(concerns, str):
        concerns = (concerns,)

    return SafetyAssessment(
        danger_level=level,
        source=SOURCE_STRUCTURED,
        detected_concerns=tuple(str(c) for c in concerns),
        safety_message=payload.get("safety_message"),
        raw=dict(payload),
    )


class KeywordScanner:
    """Case-insensitive substring match against danger terms."""

    def __init__(self, keywords: Sequence[str]):
        self.keywords = tuple(k.strip().lower() for k in keywords if k and k.strip())

    def scan(self, *texts: Optional[str]) -> List[str]:
        """Return every configured term found in any of the texts."""
        haystack = "\n".join(t.lower() for t in texts if t)
        if not haystack:
            return []
        return [k for k in self.keywords if k in haystack]

    def assess(self, *texts: Optional[str]) -> SafetyAssessment:
        matched = self.scan(*texts)
        if not matched:
            return SafetyAssessment(danger_level=DangerLevel.NONE, source=SOURCE_KEYWORD)
        return SafetyAssessment(
            danger_level=DangerLevel.CRITICAL,
            source=SOURCE_KEYWORD,
            detected_concerns=tuple(matched),
            matched_keywords=tuple(matched),
        )
