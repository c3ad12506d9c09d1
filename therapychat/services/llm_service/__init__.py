"""LLM Service - the AI collaborator behind replies, drafts and summaries.

Provides the AIResponder interface the chat core depends on, an OpenAI
implementation, history mapping and parsing of the structured safety
assessment attached to patient-facing replies.
"""
from .responder import (
    DEFAULT_DRAFT_INSTRUCTION,
    DEFAULT_SUMMARY_INSTRUCTION,
    DEFAULT_SYSTEM_PROMPT,
    AIPurpose,
    AIReply,
    AIRequest,
    AIResponder,
    LLMConfig,
    LLMProvider,
    OpenAIResponder,
    build_history,
    create_responder,
)
from .structured import parse_structured_reply

__all__ = [
    "DEFAULT_DRAFT_INSTRUCTION",
    "DEFAULT_SUMMARY_INSTRUCTION",
    "DEFAULT_SYSTEM_PROMPT",
    "AIPurpose",
    "AIReply",
    "AIRequest",
    "AIResponder",
    "LLMConfig",
    "LLMProvider",
    "OpenAIResponder",
    "build_history",
    "create_responder",
    "parse_structured_reply",
]
