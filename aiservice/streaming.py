from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from .errors import ConfigurationError
from .models import ChatMessage, ModelResponse

logger = logging.getLogger("ai-services")


class TokenStream:
    """
    Returned for methods declared with the `stream` return shape.

    The engine stops after assembling the conversation; moderation and tool
    handling for streamed answers are up to the streaming model. On completion
    the final assistant message is appended to the conversation memory.
    """

    def __init__(self, messages: List[ChatMessage], context: Any, memory_id: Any):
        self.messages = list(messages)
        self.context = context
        self.memory_id = memory_id
        self._on_next: Optional[Callable[[str], None]] = None
        self._on_complete: Optional[Callable[[ModelResponse], None]] = None
        self._on_error: Optional[Callable[[Exception], None]] = None
        self._ignore_errors = False

    def on_next(self, handler: Callable[[str], None]) -> "TokenStream":
        self._on_next = handler
        return self

    def on_complete(self, handler: Callable[[ModelResponse], None]) -> "TokenStream":
        self._on_complete = handler
        return self

    def on_error(self, handler: Callable[[Exception], None]) -> "TokenStream":
        self._on_error = handler
        return self

    def ignore_errors(self) -> "TokenStream":
        self._ignore_errors = True
        return self

    def start(self) -> None:
        if self._on_next is None:
            raise ConfigurationError("on_next must be set before starting a token stream")
        if self._on_error is None and not self._ignore_errors:
            raise ConfigurationError("on_error must be set, or ignore_errors() called, before starting")
        model = self.context.streaming_model
        if model is None:
            raise ConfigurationError(f"Service {self.context.service_id} has no streaming model")
        model.generate_stream(self.messages, self._on_next, self._completed, self._failed)

    def _completed(self, response: ModelResponse) -> None:
        self.context.memory.append(self.memory_id, response.content)
        if self._on_complete is not None:
            self._on_complete(response)

    def _failed(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)
        else:
            logger.warning("Ignored token stream error for %s: %s", self.context.service_id, error)
