"""
Invocation engine.

Turns one declarative method call into a conversation with the chat model:
message assembly, memory, retrieval, moderation, then the tool loop

    CALL_MODEL -> INSPECT -> DONE
                          -> EXECUTE_TOOLS -> CALL_MODEL

bounded by a maximum number of model calls per invocation. The audit
collaborator, when present, hears about the outcome exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, List, Optional, Sequence

from .audit import Audit, AuditService, CreateInfo
from .errors import NullArgumentError, ToolLoopExceededError, UnknownToolError
from .memory import ConversationMemory
from .metadata import MethodInvocationMetadata
from .models import ChatMessage, ModelResponse, TokenUsage, ToolExecutionRequest, ToolSpecification
from .moderation import ModerationGate
from .output import STREAM, parse
from .providers import ChatLanguageModel, ModerationModel, StreamingChatLanguageModel
from .retrieval import RetrievalAugmenter, Retriever
from .streaming import TokenStream
from .templates import prepare_system_message, prepare_user_message
from .tools import ToolRegistry

logger = logging.getLogger("ai-services")

MAX_SEQUENTIAL_TOOL_EXECUTIONS = 10
DEFAULT_MEMORY_ID = "default"


@dataclass
class AiServiceContext:
    """Collaborators resolved once per service and shared by all its invocations."""

    service_id: str
    chat_model: ChatLanguageModel
    memory: ConversationMemory = field(default_factory=ConversationMemory)
    retriever: Optional[Retriever] = None
    moderation_model: Optional[ModerationModel] = None
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    audit_service: Optional[AuditService] = None
    streaming_model: Optional[StreamingChatLanguageModel] = None

    def tool_specifications(self) -> Optional[List[ToolSpecification]]:
        return self.tools.specifications() or None

    def with_chat_model(self, chat_model: ChatLanguageModel) -> "AiServiceContext":
        return replace(self, chat_model=chat_model)


def memory_id_of(metadata: MethodInvocationMetadata, arguments: Sequence[Any]) -> Any:
    """Conversation key of an invocation; a declared key argument must not be None."""
    position = metadata.memory_id_param_position
    if position is None:
        return DEFAULT_MEMORY_ID
    memory_id = arguments[position] if position < len(arguments) else None
    if memory_id is None:
        raise NullArgumentError(
            f"Memory id of '{metadata.method_id}' (parameter with index {position}) cannot be null",
            position=position,
        )
    return memory_id


class _Conversation:
    """Message sequence of one invocation, backed by memory when the service declares it."""

    def __init__(self, memory: ConversationMemory, memory_id: Any):
        self.memory = memory
        self.memory_id = memory_id
        self._local: List[ChatMessage] = []

    def add(self, message: ChatMessage) -> None:
        if self.memory.has_memory():
            self.memory.append(self.memory_id, message)
        else:
            self._local.append(message)

    def messages(self) -> List[ChatMessage]:
        # always re-read; another invocation may have extended the same key
        if self.memory.has_memory():
            return self.memory.load(self.memory_id)
        return list(self._local)


class InvocationEngine:
    def __init__(self, max_model_calls: int = MAX_SEQUENTIAL_TOOL_EXECUTIONS):
        self.max_model_calls = max_model_calls

    async def invoke(
        self,
        metadata: MethodInvocationMetadata,
        context: AiServiceContext,
        arguments: Sequence[Any],
    ) -> Any:
        arguments = tuple(arguments)
        audit_service = context.audit_service
        audit = None
        if audit_service is not None:
            audit = audit_service.create(
                CreateInfo(
                    interface_name=metadata.service_id,
                    method_name=metadata.method_name,
                    arguments=arguments,
                    memory_id_param_position=metadata.memory_id_param_position,
                )
            )

        try:
            result = await self._do_invoke(metadata, context, arguments, audit)
        except BaseException as exc:
            logger.error("Execution of %s failed: %s: %s", metadata.method_id, type(exc).__name__, exc)
            if audit is not None:
                audit.on_failure(exc)
                audit_service.complete(audit)
            raise

        if audit is not None:
            audit.on_completion(result)
            audit_service.complete(audit)
        return result

    async def _do_invoke(
        self,
        metadata: MethodInvocationMetadata,
        context: AiServiceContext,
        arguments: Sequence[Any],
        audit: Optional[Audit],
    ) -> Any:
        memory_id = memory_id_of(metadata, arguments)
        system_message = prepare_system_message(metadata, arguments)
        user_message = prepare_user_message(metadata, arguments)
        if audit is not None:
            audit.on_initial_messages(system_message, user_message)

        user_message = await RetrievalAugmenter(context.retriever).augment(user_message, audit)

        conversation = _Conversation(context.memory, memory_id)
        if system_message is not None:
            conversation.add(system_message)
        conversation.add(user_message)
        messages = conversation.messages()

        if metadata.return_shape == STREAM:
            return TokenStream(messages, context, memory_id)

        gate = ModerationGate(context.moderation_model)
        moderation = gate.start(metadata, messages)
        try:
            response = await self._tool_loop(context, conversation, messages, gate, moderation, audit)
        finally:
            gate.discard(moderation)

        return parse(response, metadata.return_shape, metadata.json_schema)

    async def _tool_loop(
        self,
        context: AiServiceContext,
        conversation: _Conversation,
        messages: List[ChatMessage],
        gate: ModerationGate,
        moderation: "Optional[asyncio.Task[Any]]",
        audit: Optional[Audit],
    ) -> ModelResponse:
        tool_specifications = context.tool_specifications()
        token_usage: Optional[TokenUsage] = None
        calls = 0

        while True:
            response = await self._call_model(context, messages, tool_specifications)
            calls += 1
            if audit is not None:
                audit.on_model_response(response)
            token_usage = response.token_usage if token_usage is None else token_usage.add(response.token_usage)

            if moderation is not None:
                await gate.join(moderation)
                moderation = None

            ai_message = response.content
            # a refused tool request is never stored
            if ai_message.has_tool_execution_requests() and calls >= self.max_model_calls:
                raise ToolLoopExceededError(self.max_model_calls)
            conversation.add(ai_message)
            if not ai_message.has_tool_execution_requests():
                break

            for request in ai_message.tool_execution_requests:
                result_message = await self._execute_tool(context, request, conversation.memory_id)
                if audit is not None:
                    audit.on_tool_result(result_message)
                conversation.add(result_message)

            messages = conversation.messages()

        return ModelResponse(content=response.content, token_usage=token_usage, finish_reason=response.finish_reason)

    async def _call_model(
        self,
        context: AiServiceContext,
        messages: List[ChatMessage],
        tool_specifications: Optional[List[ToolSpecification]],
    ) -> ModelResponse:
        logger.debug("Attempting to obtain AI response")
        if tool_specifications is None:
            response = await asyncio.to_thread(context.chat_model.generate, messages)
        else:
            response = await asyncio.to_thread(context.chat_model.generate, messages, tool_specifications)
        logger.debug("AI response obtained")
        return response

    async def _execute_tool(self, context: AiServiceContext, request: ToolExecutionRequest, memory_id: Any) -> ChatMessage:
        executor = context.tools.get(request.name)
        if executor is None:
            raise UnknownToolError(request.name)
        logger.debug("Attempting to execute tool %s", request)
        result = await asyncio.to_thread(executor.execute, request, memory_id)
        logger.debug("Result of %s is '%s'", request, result)
        return ChatMessage.tool_result(request, result)
