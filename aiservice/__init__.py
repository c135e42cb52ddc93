"""Declarative AI service runtime."""

from .errors import (
    AiServiceError,
    ConfigurationError,
    ModerationError,
    NullArgumentError,
    OutputParsingError,
    ServiceNotFoundError,
    TemplateBindingError,
    ToolArgumentError,
    ToolLoopExceededError,
    UnknownToolError,
)
from .services import AiServices

__all__ = [
    "AiServiceError",
    "AiServices",
    "ConfigurationError",
    "ModerationError",
    "NullArgumentError",
    "OutputParsingError",
    "ServiceNotFoundError",
    "TemplateBindingError",
    "ToolArgumentError",
    "ToolLoopExceededError",
    "UnknownToolError",
]
