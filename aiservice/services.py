"""
AiServices runtime: the metadata table, one resolved context per service and
the engine, plus declarative proxies so a service reads like an object:

    services = AiServices.from_settings()
    assistant = services.service("assistant")
    answer = await assistant.chat("u1", "Hello")
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .config import Settings, get_settings
from .engine import AiServiceContext, InvocationEngine
from .errors import ServiceNotFoundError, TemplateBindingError
from .metadata import MetadataTable, MethodInvocationMetadata, load_metadata_table, method_id
from .models import ChatMessage
from .providers import ChatLanguageModel
from .suppliers import SupplierRegistry, build_context, default_registry

Arguments = Union[Sequence[Any], Mapping[str, Any], None]


def bind_arguments(metadata: MethodInvocationMetadata, args: Sequence[Any] = (), kwargs: Optional[Mapping[str, Any]] = None) -> tuple:
    """Build the positional argument vector; parameters not supplied are None."""
    kwargs = dict(kwargs or {})
    if len(args) > len(metadata.param_names):
        raise TemplateBindingError(
            f"{metadata.method_id} takes {len(metadata.param_names)} argument(s) but {len(args)} were given"
        )
    unknown = set(kwargs) - set(metadata.param_names)
    if unknown:
        raise TemplateBindingError(f"{metadata.method_id} got unexpected argument(s): {sorted(unknown)}")
    values: List[Any] = list(args)
    for name in metadata.param_names[len(args):]:
        values.append(kwargs.get(name))
    return tuple(values)


class DeclarativeService:
    """Exposes each method of a service as an async callable attribute."""

    def __init__(self, runtime: "AiServices", service_id: str):
        self._runtime = runtime
        self._service_id = service_id

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        mid = method_id(self._service_id, name)
        if mid not in self._runtime.table:
            raise AttributeError(f"Service {self._service_id} has no method {name}")

        async def call(*args: Any, **kwargs: Any) -> Any:
            return await self._runtime.invoke(mid, args, kwargs)

        call.__name__ = name
        return call


class AiServices:
    def __init__(
        self,
        table: MetadataTable,
        contexts: Mapping[str, AiServiceContext],
        engine: Optional[InvocationEngine] = None,
    ):
        self.table = table
        self.contexts: Dict[str, AiServiceContext] = dict(contexts)
        self.engine = engine or InvocationEngine()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        registry: Optional[SupplierRegistry] = None,
    ) -> "AiServices":
        settings = settings or get_settings()
        registry = registry or default_registry(settings)
        table = load_metadata_table(Path(settings.services_dir) if settings.services_dir else None)
        contexts = {service.id: build_context(service, registry, settings) for service in table.services()}
        return cls(table, contexts, InvocationEngine(max_model_calls=settings.max_tool_executions))

    def context(self, service_id: str) -> AiServiceContext:
        context = self.contexts.get(service_id)
        if context is None:
            raise ServiceNotFoundError(f"Service not found: {service_id}")
        return context

    def service(self, service_id: str) -> DeclarativeService:
        self.table.service(service_id)
        return DeclarativeService(self, service_id)

    async def invoke(
        self,
        method_id: str,
        args: Arguments = None,
        kwargs: Optional[Mapping[str, Any]] = None,
        chat_model: Optional[ChatLanguageModel] = None,
    ) -> Any:
        """
        Invoke a method by id. `args` may be a positional sequence or a mapping
        of parameter names; `chat_model` replaces the service's model for this call.
        """
        metadata = self.table.get(method_id)
        context = self.context(metadata.service_id)
        if chat_model is not None:
            context = context.with_chat_model(chat_model)
        if isinstance(args, Mapping):
            arguments = bind_arguments(metadata, (), {**args, **(kwargs or {})})
        else:
            arguments = bind_arguments(metadata, tuple(args or ()), kwargs)
        return await self.engine.invoke(metadata, context, arguments)

    def memory_messages(self, service_id: str, memory_id: Any) -> List[ChatMessage]:
        return self.context(service_id).memory.load(memory_id)

    def remove_memory(self, service_id: str, memory_id: Any) -> bool:
        """Delete a conversation. Returns False when the service keeps no memory."""
        memory = self.context(service_id).memory
        if not memory.has_memory():
            return False
        memory.remove(memory_id)
        return True
