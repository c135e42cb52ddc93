"""
Error taxonomy for AI service invocations.

Every error here is local to a single invocation; the engine never retries.
Transport errors raised by collaborators (chat model, tools, retriever,
moderation model) are not wrapped and propagate unchanged.
"""

from __future__ import annotations

from typing import Any


class AiServiceError(RuntimeError):
    """Base class for errors raised by the invocation pipeline."""

    code = "INTERNAL_ERROR"


class ConfigurationError(AiServiceError):
    """Raised while loading service descriptors or resolving collaborators."""

    code = "CONFIGURATION_ERROR"


class ServiceNotFoundError(AiServiceError):
    """Raised when a method id is not present in the metadata table."""

    code = "SERVICE_NOT_FOUND"


class TemplateBindingError(AiServiceError):
    """A template parameter points outside the argument vector, or has no value."""

    code = "TEMPLATE_BINDING_ERROR"


class NullArgumentError(AiServiceError):
    """The argument designated as the user message is None."""

    code = "NULL_ARGUMENT"

    def __init__(self, message: str, position: int):
        self.position = position
        super().__init__(message)


class UnknownToolError(AiServiceError):
    """The model requested a tool name with no registered executor."""

    code = "UNKNOWN_TOOL"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool executor {tool_name} not found")


class ToolArgumentError(AiServiceError):
    """The model sent tool arguments that are not valid JSON or do not match the tool schema."""

    code = "TOOL_ARGUMENT_ERROR"

    def __init__(self, message: str, details: Any = None):
        self.details = details
        super().__init__(message)


class ToolLoopExceededError(AiServiceError):
    """The model kept requesting tools past the sequential execution bound."""

    code = "TOOL_LOOP_EXCEEDED"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Something is wrong, exceeded {limit} sequential tool executions")


class ModerationError(AiServiceError):
    """The moderation model flagged the outgoing conversation."""

    code = "MODERATION_FLAGGED"

    def __init__(self, flagged_text: Any):
        self.flagged_text = flagged_text
        super().__init__(f"Text '{flagged_text}' violates content policy")


class OutputParsingError(AiServiceError):
    """The final answer could not be converted into the declared return shape."""

    code = "OUTPUT_PARSING_ERROR"

    def __init__(self, message: str, details: Any = None):
        self.details = details
        super().__init__(message)
