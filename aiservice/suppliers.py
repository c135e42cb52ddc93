"""
Supplier registry.

Collaborators are looked up by (capability, id) in an explicit table of
factories and resolved once when a service context is built. Service
descriptors only ever name ids; nothing is imported by name at runtime.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditService, InMemoryAuditService, LoggingAuditService
from .builtin_tools import BUILTIN_TOOLS
from .config import Settings, get_settings
from .engine import AiServiceContext
from .errors import ConfigurationError
from .memory import ChatMemoryProvider, ConversationMemory, InMemoryChatMemoryStore
from .metadata import ServiceDescriptor
from .providers import StreamingChatLanguageModel, StubChatModel, StubModerationModel
from .retrieval import KeywordRetriever
from .storage.sqlite_memory_store import SqliteChatMemoryStore
from .tools import ToolRegistry

logger = logging.getLogger("ai-services")

Factory = Callable[..., Any]


class Capability(str, Enum):
    CHAT_MODEL = "chat_model"
    MODERATION_MODEL = "moderation_model"
    MEMORY_STORE = "memory_store"
    RETRIEVER = "retriever"
    AUDIT_SERVICE = "audit_service"
    TOOL = "tool"


class SupplierRegistry:
    def __init__(self) -> None:
        self._factories: Dict[Tuple[Capability, str], Factory] = {}

    def register(self, capability: Capability, supplier_id: str, factory: Factory) -> None:
        self._factories[(capability, supplier_id)] = factory

    def resolve(self, capability: Capability, supplier_id: str, **kwargs: Any) -> Any:
        factory = self._factories.get((capability, supplier_id))
        if factory is None:
            raise ConfigurationError(f"No {capability.value} supplier registered under '{supplier_id}'")
        return factory(**kwargs)

    def ids(self, capability: Capability) -> List[str]:
        return sorted(sid for cap, sid in self._factories if cap == capability)


def default_registry(settings: Optional[Settings] = None) -> SupplierRegistry:
    """Registry with the bundled suppliers; memory stores honour MEMORY_STORE / MEMORY_DB_PATH."""
    settings = settings or get_settings()
    registry = SupplierRegistry()

    registry.register(Capability.CHAT_MODEL, "stub", StubChatModel)
    registry.register(Capability.MODERATION_MODEL, "stub", StubModerationModel)

    registry.register(Capability.MEMORY_STORE, "memory", lambda namespace: InMemoryChatMemoryStore())
    registry.register(
        Capability.MEMORY_STORE,
        "sqlite",
        lambda namespace: SqliteChatMemoryStore(settings.memory_db_path, namespace=namespace),
    )

    registry.register(Capability.RETRIEVER, "keyword", lambda documents: KeywordRetriever(documents))

    registry.register(Capability.AUDIT_SERVICE, "logging", LoggingAuditService)
    registry.register(Capability.AUDIT_SERVICE, "memory", InMemoryAuditService)

    for func in BUILTIN_TOOLS:
        registry.register(Capability.TOOL, func.tool_executor.specification.name, lambda func=func: func)
    return registry


def build_context(
    descriptor: ServiceDescriptor,
    registry: SupplierRegistry,
    settings: Optional[Settings] = None,
) -> AiServiceContext:
    """Resolve every collaborator a service descriptor names."""
    settings = settings or get_settings()

    chat_model_id = descriptor.chat_model or settings.chat_model
    chat_model = registry.resolve(Capability.CHAT_MODEL, chat_model_id)

    # services without moderated methods get no moderation model unless they name one
    moderation_model_id = descriptor.moderation_model
    if moderation_model_id is None and any(m.requires_moderation for m in descriptor.methods.values()):
        moderation_model_id = settings.moderation_model
    moderation_model = None
    if moderation_model_id is not None:
        moderation_model = registry.resolve(Capability.MODERATION_MODEL, moderation_model_id)

    memory = ConversationMemory()
    if descriptor.memory == "window":
        store = registry.resolve(Capability.MEMORY_STORE, settings.memory_store, namespace=descriptor.id)
        max_messages = descriptor.memory_max_messages or settings.memory_max_messages
        memory = ConversationMemory(ChatMemoryProvider(store, max_messages=max_messages))

    retriever = None
    if descriptor.retriever is not None:
        retriever = registry.resolve(Capability.RETRIEVER, descriptor.retriever, documents=list(descriptor.retriever_documents))

    audit_service: Optional[AuditService] = None
    audit_id = descriptor.audit if descriptor.audit is not None else settings.audit
    if audit_id != "none":
        audit_service = registry.resolve(Capability.AUDIT_SERVICE, audit_id)

    tools = ToolRegistry()
    for tool_name in descriptor.tools:
        tools.register_function(registry.resolve(Capability.TOOL, tool_name))

    streaming_model = chat_model if isinstance(chat_model, StreamingChatLanguageModel) else None

    logger.debug(
        "Resolved service %s: chat_model=%s memory=%s retriever=%s moderation=%s tools=%s",
        descriptor.id,
        chat_model_id,
        descriptor.memory,
        descriptor.retriever,
        moderation_model_id,
        list(descriptor.tools),
    )
    return AiServiceContext(
        service_id=descriptor.id,
        chat_model=chat_model,
        memory=memory,
        retriever=retriever,
        moderation_model=moderation_model,
        tools=tools,
        audit_service=audit_service,
        streaming_model=streaming_model,
    )
