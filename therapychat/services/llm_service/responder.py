"""AIResponder interface and the OpenAI-backed implementation.

The chat core treats the model as a black box that returns text plus an
optional structured safety assessment. Any provider failure or timeout
surfaces as UpstreamUnavailable so callers can keep the patient's message
and route it to therapists instead.
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import openai

from therapychat.shared.errors import UpstreamUnavailable
from therapychat.shared.models import Message, SenderRole

from .structured import RESPONSE_FORMAT_INSTRUCTION, parse_structured_reply

logger = logging.getLogger(__name__)


DEFAULT_SYSTEM_PROMPT = (
    "You are a supportive assistant in a therapy chat supervised by licensed "
    "therapists. Be warm and concise, never diagnose, and encourage the "
    "patient to reach out to their therapist for clinical questions."
)

DEFAULT_DRAFT_INSTRUCTION = (
    "Generate a thoughtful, empathetic therapeutic response draft for the "
    "therapist to review and edit before sending to the patient. Focus on "
    "being supportive and clinically appropriate."
)

DEFAULT_SUMMARY_INSTRUCTION = (
    "Write a concise clinical summary of this conversation for the treating "
    "therapist: main themes, emotional state, risk indicators and suggested "
    "follow-up. Do not address the patient."
)


class LLMProvider(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"


class AIPurpose(Enum):
    REPLY = "reply"         # Patient-facing, structured with safety payload
    DRAFT = "draft"         # Therapist-facing draft, plain text
    SUMMARY = "summary"     # Clinical summary, plain text


@dataclass
class LLMConfig:
    """Configuration for LLM inference."""
    provider: LLMProvider = LLMProvider.OPENAI
    model_name: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 800
    temperature: float = 0.7
    timeout_seconds: int = 30
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    conversation_context: Optional[str] = None
    draft_instruction: str = DEFAULT_DRAFT_INSTRUCTION
    draft_context: Optional[str] = None
    summary_instruction: str = DEFAULT_SUMMARY_INSTRUCTION

    @classmethod
    def from_env(cls) -> "LLMConfig":
        return cls(
            provider=LLMProvider(os.getenv("LLM_PROVIDER", "openai")),
            model_name=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            api_key=os.getenv("OPENAI_API_KEY"),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "800")),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.7")),
            timeout_seconds=int(os.getenv("LLM_TIMEOUT_SECONDS", "30")),
            system_prompt=os.getenv("LLM_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
            conversation_context=os.getenv("LLM_CONVERSATION_CONTEXT") or None,
            draft_instruction=os.getenv("LLM_DRAFT_INSTRUCTION", DEFAULT_DRAFT_INSTRUCTION),
            draft_context=os.getenv("LLM_DRAFT_CONTEXT") or None,
            summary_instruction=os.getenv("LLM_SUMMARY_INSTRUCTION", DEFAULT_SUMMARY_INSTRUCTION),
        )


@dataclass
class AIRequest:
    """Everything the model sees for one generation."""
    conversation_id: str
    history: List[Dict[str, str]]
    purpose: AIPurpose = AIPurpose.REPLY
    instruction: Optional[str] = None


@dataclass
class AIReply:
    """Model output split into display text and safety payload."""
    text: str
    safety_payload: Optional[Dict[str, Any]] = None
    model: str = ""
    tokens_used: Optional[int] = None
    latency_ms: Optional[float] = None
    raw: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class AIResponder(ABC):
    """The AI collaborator the router, drafts and summaries depend on."""

    @abstractmethod
    def generate(self, request: AIRequest) -> AIReply:
        """Produce a reply.

        Raises:
            UpstreamUnavailable: On provider error or timeout
        """
        pass


def build_history(messages: Sequence[Message], therapist_prefix: str = "[Therapist] ") -> List[Dict[str, str]]:
    """Map stored messages to chat-completion turns, oldest first.

    Deleted messages are left out; therapist turns are marked so the
    model can tell them apart from its own.
    """
    history = []
    for message in messages:
        if message.deleted or not message.body:
            continue
        if message.sender_role == SenderRole.PATIENT:
            history.append({"role": "user", "content": message.body})
        elif message.sender_role == SenderRole.AI:
            history.append({"role": "assistant", "content": message.body})
        elif message.sender_role == SenderRole.THERAPIST:
            history.append({"role": "assistant", "content": therapist_prefix + message.body})
        else:
            history.append({"role": "system", "content": message.body})
    return history


class OpenAIResponder(AIResponder):
    """Chat-completions responder (GPT-4 family)."""

    def __init__(self, config: LLMConfig, client: Optional[Any] = None):
        if client is None and not config.api_key:
            raise ValueError("OpenAI API key required")

        self.config = config
        self.client = client or openai.OpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )

        logger.info(
            "LLM_RESPONDER_INITIALIZED",
            extra={"provider": config.provider.value, "model": config.model_name}
        )

    def generate(self, request: AIRequest) -> AIReply:
        messages = self._build_messages(request)
        start_time = time.time()

        try:
            response = self.client.chat.completions.create(
                model=self.config.model_name,
                messages=messages,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                timeout=self.config.timeout_seconds,
            )
        except openai.OpenAIError as e:
            logger.error(
                "LLM_GENERATION_FAILED",
                extra={
                    "conversation_id": request.conversation_id,
                    "purpose": request.purpose.value,
                    "model": self.config.model_name,
                    "error_type": type(e).__name__,
                    "error": str(e),
                }
            )
            raise UpstreamUnavailable(f"AI provider unavailable: {type(e).__name__}") from e

        latency_ms = (time.time() - start_time) * 1000
        raw = response.choices[0].message.content or ""
        tokens_used = response.usage.total_tokens if response.usage else None

        if request.purpose == AIPurpose.REPLY:
            text, safety = parse_structured_reply(raw)
        else:
            text, safety = raw.strip(), None

        logger.info(
            "LLM_GENERATION_SUCCEEDED",
            extra={
                "conversation_id": request.conversation_id,
                "purpose": request.purpose.value,
                "model": self.config.model_name,
                "latency_ms": latency_ms,
                "tokens_used": tokens_used,
                "structured": safety is not None,
            }
        )

        return AIReply(
            text=text,
            safety_payload=safety,
            model=self.config.model_name,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
            raw=raw,
        )

    def _build_messages(self, request: AIRequest) -> List[Dict[str, str]]:
        system_parts = [self.config.system_prompt]
        if self.config.conversation_context:
            system_parts.append(self.config.conversation_context)
        if request.purpose == AIPurpose.REPLY:
            system_parts.append(RESPONSE_FORMAT_INSTRUCTION)

        messages = [{"role": "system", "content": "\n\n".join(system_parts)}]
        messages.extend(request.history)
        if request.instruction:
            messages.append({"role": "system", "content": request.instruction})
        return messages


def create_responder(config: LLMConfig) -> Optional[AIResponder]:
    """Build the configured responder, or None when no credentials exist.

    Without a responder every patient message is routed to therapists.
    """
    if config.provider == LLMProvider.OPENAI:
        if not config.api_key:
            logger.warning("LLM_RESPONDER_DISABLED", extra={"reason": "missing_api_key"})
            return None
        return OpenAIResponder(config)
    raise ValueError(f"Unsupported provider: {config.provider}")
