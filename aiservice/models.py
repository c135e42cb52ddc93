"""
Data models exchanged between the engine and its collaborators.

Defines ChatMessage, ToolExecutionRequest, ToolSpecification, TokenUsage,
TextSegment, Moderation and ModelResponse.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


class ToolExecutionRequest(BaseModel):
    """A tool call emitted by the model. `arguments` is the raw JSON text."""

    id: Optional[str] = None
    name: str
    arguments: str = "{}"


class ToolSpecification(BaseModel):
    """Tool advertised to the model: name, description and a JSON schema for its arguments."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ChatMessage(BaseModel):
    """A single role-tagged message in a conversation."""

    role: str  # "system" | "user" | "assistant" | "tool"
    text: Optional[str] = None
    name: Optional[str] = None  # user display name
    tool_execution_requests: List[ToolExecutionRequest] = Field(default_factory=list)
    tool_request_id: Optional[str] = None
    tool_name: Optional[str] = None

    @classmethod
    def system(cls, text: str) -> "ChatMessage":
        return cls(role=SYSTEM, text=text)

    @classmethod
    def user(cls, text: str, name: Optional[str] = None) -> "ChatMessage":
        return cls(role=USER, text=text, name=name)

    @classmethod
    def assistant(
        cls,
        text: Optional[str] = None,
        tool_execution_requests: Optional[List[ToolExecutionRequest]] = None,
    ) -> "ChatMessage":
        return cls(role=ASSISTANT, text=text, tool_execution_requests=tool_execution_requests or [])

    @classmethod
    def tool_result(cls, request: ToolExecutionRequest, result: str) -> "ChatMessage":
        return cls(role=TOOL, text=result, tool_request_id=request.id, tool_name=request.name)

    def has_tool_execution_requests(self) -> bool:
        return bool(self.tool_execution_requests)


class TokenUsage(BaseModel):
    input_token_count: Optional[int] = None
    output_token_count: Optional[int] = None
    total_token_count: Optional[int] = None

    def add(self, other: Optional["TokenUsage"]) -> "TokenUsage":
        """Return the field-wise sum; a field stays None only when both sides are None."""
        if other is None:
            return self
        return TokenUsage(
            input_token_count=_sum(self.input_token_count, other.input_token_count),
            output_token_count=_sum(self.output_token_count, other.output_token_count),
            total_token_count=_sum(self.total_token_count, other.total_token_count),
        )


def _sum(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


class TextSegment(BaseModel):
    """A retrieved piece of text."""

    text: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Moderation(BaseModel):
    flagged: bool = False
    flagged_text: Optional[str] = None


class ModelResponse(BaseModel):
    """Result of one chat model call, or the cumulative result of an invocation."""

    content: ChatMessage
    token_usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
