"""
Model collaborator contracts and deterministic stub implementations.

Talking to real model backends is the job of provider packages; the engine
only needs `generate`, `moderate` and (for streamed methods) `generate_stream`.
Contracts are synchronous; the engine runs them in worker threads.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .models import USER, ChatMessage, ModelResponse, Moderation, TokenUsage, ToolSpecification
from .output import JSON_FORMAT_MARKER


class ChatLanguageModel:
    """Chat model contract."""

    def generate(
        self,
        messages: List[ChatMessage],
        tool_specifications: Optional[List[ToolSpecification]] = None,
    ) -> ModelResponse:  # pragma: no cover - interface only
        raise NotImplementedError


class ModerationModel:
    """Moderation model contract."""

    def moderate(self, messages: List[ChatMessage]) -> Moderation:  # pragma: no cover - interface only
        raise NotImplementedError


class StreamingChatLanguageModel:
    """Streaming chat model contract: tokens are pushed to `on_token`, the full answer to `on_complete`."""

    def generate_stream(
        self,
        messages: List[ChatMessage],
        on_token: Callable[[str], None],
        on_complete: Callable[[ModelResponse], None],
        on_error: Callable[[Exception], None],
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


def _word_count(messages: Iterable[ChatMessage]) -> int:
    return sum(len((m.text or "").split()) for m in messages)


class StubChatModel(ChatLanguageModel, StreamingChatLanguageModel):
    """
    Deterministic model that never calls tools.

    It echoes the last user message, except when the message carries output
    format instructions, in which case it fabricates a conforming answer.
    """

    def generate(
        self,
        messages: List[ChatMessage],
        tool_specifications: Optional[List[ToolSpecification]] = None,
    ) -> ModelResponse:
        last_user = next((m for m in reversed(messages) if m.role == USER), None)
        text = _stub_answer(last_user.text or "" if last_user else "")
        input_tokens = _word_count(messages)
        output_tokens = len(text.split())
        return ModelResponse(
            content=ChatMessage.assistant(text),
            token_usage=TokenUsage(
                input_token_count=input_tokens,
                output_token_count=output_tokens,
                total_token_count=input_tokens + output_tokens,
            ),
            finish_reason="stop",
        )

    def generate_stream(self, messages, on_token, on_complete, on_error) -> None:
        try:
            response = self.generate(messages)
            for token in (response.content.text or "").split(" "):
                on_token(token)
        except Exception as exc:
            on_error(exc)
            return
        on_complete(response)


def _stub_answer(user_text: str) -> str:
    if "following format: integer number" in user_text:
        return "1"
    if "following format: floating point number" in user_text:
        return "1.0"
    if "following format: one of [true, false]" in user_text:
        return "false"
    marker = user_text.find(JSON_FORMAT_MARKER)
    if marker != -1:
        try:
            schema, _ = json.JSONDecoder().raw_decode(user_text, marker + len(JSON_FORMAT_MARKER))
        except json.JSONDecodeError:
            schema = {"type": "object"}
        return json.dumps(_generate_from_schema(schema))
    return user_text.strip()


def _generate_from_schema(schema: Mapping[str, Any]) -> Any:
    """Very small deterministic JSON generator for Draft-07-style schemas."""
    schema_type = schema.get("type")

    if schema_type == "object":
        props = schema.get("properties", {}) or {}
        result: Dict[str, Any] = {}
        for name, sub in props.items():
            result[name] = _generate_from_schema(sub)
        for name in schema.get("required", []) or []:
            if name not in result:
                result[name] = None
        return result

    if schema_type == "array":
        items_schema = schema.get("items", {}) or {}
        return [_generate_from_schema(items_schema)]

    if schema_type == "string":
        if "enum" in schema and schema["enum"]:
            return schema["enum"][0]
        if schema.get("format") == "date":
            return "2099-01-01"
        return "stub"

    if schema_type == "number":
        minimum = schema.get("minimum")
        maximum = schema.get("maximum")
        if minimum == 0 and maximum == 1:
            return 0.5
        return 1.0

    if schema_type == "integer":
        return 1

    if schema_type == "boolean":
        return False

    if "properties" in schema:
        return _generate_from_schema({"type": "object", **schema})

    return None


class StubModerationModel(ModerationModel):
    """Flags the first message containing one of the blocked terms (case-insensitive)."""

    def __init__(self, blocked_terms: Optional[Iterable[str]] = None):
        self.blocked_terms = [t.lower() for t in (blocked_terms or ["forbidden"])]

    def moderate(self, messages: List[ChatMessage]) -> Moderation:
        for message in messages:
            text = (message.text or "").lower()
            if any(term in text for term in self.blocked_terms):
                return Moderation(flagged=True, flagged_text=message.text)
        return Moderation(flagged=False)
