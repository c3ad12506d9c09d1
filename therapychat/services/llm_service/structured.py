"""Parsing of the structured JSON reply the assistant is prompted to produce.

Expected shape::

    {
      "type": "response",
      "safety": {"danger_level": "none|warning|critical|emergency",
                 "detected_concerns": [...], "safety_message": "..."},
      "content": {"text_blocks": [{"text": "..."}]} | "plain text",
      "metadata": {...}
    }

Anything that does not parse is treated as a plain-text reply with no
safety payload, which hands detection to the keyword fallback.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

RESPONSE_FORMAT_INSTRUCTION = (
    "Respond ONLY with a JSON object of the form "
    '{"type": "response", '
    '"safety": {"danger_level": "none|warning|critical|emergency", '
    '"detected_concerns": [string], "safety_message": string}, '
    '"content": {"text_blocks": [{"text": string}]}, '
    '"metadata": {}}. '
    "Use danger_level critical or emergency only when the patient expresses "
    "intent or risk of self-harm, suicide or harm to others."
)


def parse_structured_reply(raw: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Split a raw model reply into (display text, safety payload).

    Returns:
        The patient-facing text and the ``safety`` object, or ``None``
        for the payload when the reply is not structured.
    """
    candidate = (raw or "").strip()
    fenced = _CODE_FENCE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    if not candidate.startswith("{"):
        return (raw or "").strip(), None

    try:
        document = json.loads(candidate)
    except ValueError:
        logger.warning("STRUCTURED_REPLY_PARSE_FAILED", extra={"length": len(candidate)})
        return (raw or "").strip(), None

    if not isinstance(document, dict):
        return (raw or "").strip(), None

    text = _extract_text(document.get("content"))
    safety = document.get("safety")
    if not isinstance(safety, dict) or "danger_level" not in safety:
        safety = None

    if not text and safety and safety.get("safety_message"):
        text = str(safety["safety_message"])

    return text, safety


def _extract_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, dict):
        if "text_blocks" in content:
            return _join_blocks(content["text_blocks"])
        return str(content.get("text", "")).strip()
    if isinstance(content, list):
        return _join_blocks(content)
    return ""


def _join_blocks(blocks: Any) -> str:
    parts: List[str] = []
    for block in blocks or []:
        if isinstance(block, str):
            parts.append(block.strip())
        elif isinstance(block, dict) and block.get("text"):
            parts.append(str(block["text"]).strip())
    return "\n\n".join(p for p in parts if p)
