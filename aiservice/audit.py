"""
Audit sink contract.

An AuditService creates one Audit per invocation; the engine feeds it the
lifecycle events and hands it back through `complete` exactly once.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, List, Optional, Tuple

from .models import ChatMessage, ModelResponse, TextSegment

logger = logging.getLogger("ai-services")


@dataclass(frozen=True)
class CreateInfo:
    interface_name: str
    method_name: str
    arguments: Tuple[Any, ...]
    memory_id_param_position: Optional[int]


class Audit:
    """Accumulates everything that happened during one invocation."""

    def __init__(self, create_info: CreateInfo):
        self.create_info = create_info
        self.system_message: Optional[ChatMessage] = None
        self.user_message: Optional[ChatMessage] = None
        self.relevant_documents: List[TextSegment] = []
        self.augmented_user_message: Optional[ChatMessage] = None
        # ("model", ModelResponse) or ("tool", ChatMessage), in order
        self.exchanges: List[Tuple[str, Any]] = []
        self.result: Any = None
        self.error: Optional[BaseException] = None

    def on_initial_messages(self, system_message: Optional[ChatMessage], user_message: ChatMessage) -> None:
        self.system_message = system_message
        self.user_message = user_message

    def on_relevant_documents(self, segments: List[TextSegment], user_message: ChatMessage) -> None:
        self.relevant_documents = segments
        self.augmented_user_message = user_message

    def on_model_response(self, response: ModelResponse) -> None:
        self.exchanges.append(("model", response))

    def on_tool_result(self, message: ChatMessage) -> None:
        self.exchanges.append(("tool", message))

    def on_completion(self, result: Any) -> None:
        self.result = result

    def on_failure(self, error: BaseException) -> None:
        self.error = error

    @property
    def succeeded(self) -> bool:
        return self.error is None


class AuditService:
    def create(self, create_info: CreateInfo) -> Audit:
        return Audit(create_info)

    def complete(self, audit: Audit) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class LoggingAuditService(AuditService):
    """Writes one summary line per finished invocation."""

    def complete(self, audit: Audit) -> None:
        info = audit.create_info
        model_calls = sum(1 for kind, _ in audit.exchanges if kind == "model")
        tool_calls = sum(1 for kind, _ in audit.exchanges if kind == "tool")
        if audit.succeeded:
            logger.info(
                "audit %s#%s status=ok model_calls=%d tool_calls=%d documents=%d",
                info.interface_name,
                info.method_name,
                model_calls,
                tool_calls,
                len(audit.relevant_documents),
            )
        else:
            logger.info(
                "audit %s#%s status=failed error=%s model_calls=%d tool_calls=%d",
                info.interface_name,
                info.method_name,
                type(audit.error).__name__,
                model_calls,
                tool_calls,
            )


class InMemoryAuditService(AuditService):
    """Keeps the most recent completed audits in memory, oldest dropped first."""

    def __init__(self, max_audits: int = 1000) -> None:
        self.completed: Deque[Audit] = deque(maxlen=max_audits)
        self._lock = threading.Lock()

    def complete(self, audit: Audit) -> None:
        with self._lock:
            self.completed.append(audit)
