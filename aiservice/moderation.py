from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from .errors import ConfigurationError, ModerationError
from .models import ASSISTANT, TOOL, ChatMessage, Moderation
from .providers import ModerationModel

logger = logging.getLogger("ai-services")


def remove_tool_messages(messages: List[ChatMessage]) -> List[ChatMessage]:
    """Drop tool results and the assistant turns that only requested tools."""
    return [
        m
        for m in messages
        if m.role != TOOL and not (m.role == ASSISTANT and m.has_tool_execution_requests())
    ]


class ModerationGate:
    """
    Runs the moderation check as a task alongside the primary model call.

    `start` spawns the task, `join` awaits it and enforces the verdict,
    `discard` cancels a task that will never be joined.
    """

    def __init__(self, moderation_model: Optional[ModerationModel] = None):
        self.moderation_model = moderation_model

    def start(self, metadata: Any, messages: List[ChatMessage]) -> "Optional[asyncio.Task[Moderation]]":
        if not metadata.requires_moderation:
            return None
        if self.moderation_model is None:
            raise ConfigurationError(
                f"{metadata.method_id} requires moderation but no moderation model is configured"
            )
        snapshot = remove_tool_messages(list(messages))
        logger.debug("Moderation is required and it will be executed in the background")
        return asyncio.create_task(asyncio.to_thread(self._moderate, snapshot))

    def _moderate(self, messages: List[ChatMessage]) -> Moderation:
        logger.debug("Attempting to moderate messages")
        result = self.moderation_model.moderate(messages)
        logger.debug("Moderation completed")
        return result

    async def join(self, task: "Optional[asyncio.Task[Moderation]]") -> None:
        if task is None:
            return
        moderation = await task
        if moderation.flagged:
            raise ModerationError(moderation.flagged_text)

    @staticmethod
    def discard(task: "Optional[asyncio.Task[Moderation]]") -> None:
        if task is None:
            return
        if not task.done():
            task.cancel()
        elif not task.cancelled():
            # mark the outcome as retrieved; the invocation already failed elsewhere
            task.exception()
