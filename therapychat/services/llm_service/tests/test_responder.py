"""Tests for the OpenAI responder, history mapping and structured parsing."""
import json
from unittest.mock import MagicMock

import openai
import pytest

from therapychat.services.llm_service import (
    AIPurpose,
    AIRequest,
    LLMConfig,
    OpenAIResponder,
    build_history,
    create_responder,
    parse_structured_reply,
)
from therapychat.shared.errors import UpstreamUnavailable
from therapychat.shared.models import Message, SenderRole


STRUCTURED = json.dumps({
    "type": "response",
    "safety": {"danger_level": "none", "detected_concerns": []},
    "content": {"text_blocks": [{"text": "That sounds tiring."}, {"text": "Want to talk about it?"}]},
    "metadata": {},
})


def _client(content, total_tokens=42):
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.usage.total_tokens = total_tokens
    client.chat.completions.create.return_value = response
    return client


class TestParseStructuredReply:
    def test_text_blocks_joined(self):
        text, safety = parse_structured_reply(STRUCTURED)
        assert text == "That sounds tiring.\n\nWant to talk about it?"
        assert safety == {"danger_level": "none", "detected_concerns": []}

    def test_code_fence_stripped(self):
        text, safety = parse_structured_reply(f"```json\n{STRUCTURED}\n```")
        assert text.startswith("That sounds tiring.")
        assert safety is not None

    def test_plain_text(self):
        assert parse_structured_reply("  Hello there  ") == ("Hello there", None)

    def test_invalid_json_is_plain_text(self):
        text, safety = parse_structured_reply('{"content": "unterminated')
        assert safety is None
        assert text == '{"content": "unterminated'

    def test_safety_message_used_when_no_content(self):
        raw = json.dumps({"safety": {"danger_level": "critical", "safety_message": "Please call 112."}})
        text, safety = parse_structured_reply(raw)
        assert text == "Please call 112."
        assert safety["danger_level"] == "critical"

    def test_safety_without_level_ignored(self):
        raw = json.dumps({"content": "Hi", "safety": {"detected_concerns": []}})
        assert parse_structured_reply(raw) == ("Hi", None)


class TestBuildHistory:
    def test_roles_mapped(self):
        messages = [
            Message("c", SenderRole.SYSTEM, "Welcome"),
            Message("c", SenderRole.PATIENT, "Hi"),
            Message("c", SenderRole.AI, "Hello!"),
            Message("c", SenderRole.THERAPIST, "Anna here"),
            Message("c", SenderRole.PATIENT, "gone", deleted=True),
        ]

        assert build_history(messages) == [
            {"role": "system", "content": "Welcome"},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "assistant", "content": "[Therapist] Anna here"},
        ]


class TestOpenAIResponder:
    def test_reply_parsed(self):
        client = _client(STRUCTURED)
        responder = OpenAIResponder(LLMConfig(model_name="gpt-test"), client=client)

        reply = responder.generate(AIRequest("conv_1", [{"role": "user", "content": "Tired"}]))

        assert reply.text.startswith("That sounds tiring.")
        assert reply.safety_payload["danger_level"] == "none"
        assert reply.model == "gpt-test"
        assert reply.tokens_used == 42
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["messages"][0]["role"] == "system"
        assert "Respond ONLY with a JSON object" in kwargs["messages"][0]["content"]
        assert kwargs["messages"][1] == {"role": "user", "content": "Tired"}

    def test_draft_is_plain_text_with_instruction(self):
        client = _client("  A draft reply.  ")
        responder = OpenAIResponder(LLMConfig(conversation_context="Clinic context"), client=client)

        reply = responder.generate(AIRequest("conv_1", [], AIPurpose.DRAFT, instruction="Write a draft."))

        assert reply.text == "A draft reply."
        assert reply.safety_payload is None
        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert "Respond ONLY" not in messages[0]["content"]
        assert "Clinic context" in messages[0]["content"]
        assert messages[-1] == {"role": "system", "content": "Write a draft."}

    def test_provider_error_becomes_upstream_unavailable(self):
        client = MagicMock()
        client.chat.completions.create.side_effect = openai.OpenAIError("timeout")
        responder = OpenAIResponder(LLMConfig(), client=client)

        with pytest.raises(UpstreamUnavailable):
            responder.generate(AIRequest("conv_1", []))

    def test_requires_key_without_client(self):
        with pytest.raises(ValueError):
            OpenAIResponder(LLMConfig(api_key=None))


class TestCreateResponder:
    def test_none_without_key(self):
        assert create_responder(LLMConfig(api_key=None)) is None

    def test_openai_with_key(self):
        assert isinstance(create_responder(LLMConfig(api_key="sk-test")), OpenAIResponder)

    def test_config_from_env(self, monkeypatch):
        monkeypatch.setenv("LLM_MODEL", "gpt-4o")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("LLM_DRAFT_CONTEXT", "Prefer short replies")

        config = LLMConfig.from_env()

        assert config.model_name == "gpt-4o"
        assert config.api_key == "sk-env"
        assert config.draft_context == "Prefer short replies"
