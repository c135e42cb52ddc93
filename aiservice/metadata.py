"""
Method invocation metadata.

Service descriptors are YAML files (one service per file) loaded once at
startup. Loading validates the document, computes template-variable to
argument-position bindings and appends output format instructions, so that
the resulting metadata is immutable and shared by every invocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml
from jsonschema import Draft7Validator, SchemaError

from .errors import ConfigurationError, ServiceNotFoundError
from .output import JSON, RETURN_SHAPES, STRING, format_instructions
from .templates import template_variables

logger = logging.getLogger("ai-services")

# Bundled descriptors live in aiservice/descriptors/*.yaml.
SERVICES_DIR = Path(__file__).parent / "descriptors"

DESCRIPTOR_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["id", "methods"],
    "properties": {
        "id": {"type": "string", "pattern": "^[A-Za-z0-9_.-]+$"},
        "description": {"type": "string"},
        "chat_model": {"type": "string"},
        "moderation_model": {"type": ["string", "null"]},
        "memory": {"enum": ["none", "window"]},
        "memory_max_messages": {"type": ["integer", "null"], "minimum": 1},
        "retriever": {"type": ["string", "null"]},
        "retriever_documents": {"type": "array", "items": {"type": "string"}},
        "audit": {"type": ["string", "null"]},
        "tools": {"type": "array", "items": {"type": "string"}},
        "methods": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "params": {"type": "array", "items": {"type": "string"}},
                    "system_message": {"type": "string"},
                    "user_message": {"type": "string"},
                    "user_message_param": {"type": "string"},
                    "memory_id": {"type": "string"},
                    "user_name": {"type": "string"},
                    "bindings": {"type": "object", "additionalProperties": {"type": "string"}},
                    "returns": {"enum": list(RETURN_SHAPES)},
                    "moderate": {"type": "boolean"},
                    "json_schema": {"type": "object"},
                },
                "additionalProperties": False,
            },
        },
    },
}


@dataclass(frozen=True)
class TemplateInfo:
    text: str
    name_to_param_position: Mapping[str, int]


@dataclass(frozen=True)
class UserMessageInfo:
    template: Optional[TemplateInfo] = None
    param_position: Optional[int] = None
    user_name_param_position: Optional[int] = None
    instructions: str = ""


@dataclass(frozen=True)
class MethodInvocationMetadata:
    service_id: str
    method_name: str
    param_names: Tuple[str, ...]
    user_message: UserMessageInfo
    system_message: Optional[TemplateInfo] = None
    memory_id_param_position: Optional[int] = None
    return_shape: str = STRING
    requires_moderation: bool = False
    json_schema: Optional[Mapping[str, Any]] = None

    @property
    def method_id(self) -> str:
        return method_id(self.service_id, self.method_name)


@dataclass(frozen=True)
class ServiceDescriptor:
    id: str
    description: str = ""
    chat_model: Optional[str] = None
    moderation_model: Optional[str] = None
    memory: str = "none"
    memory_max_messages: Optional[int] = None
    retriever: Optional[str] = None
    retriever_documents: Tuple[str, ...] = ()
    audit: Optional[str] = None
    tools: Tuple[str, ...] = ()
    methods: Mapping[str, MethodInvocationMetadata] = field(default_factory=dict)


def method_id(service_id: str, method_name: str) -> str:
    return f"{service_id}#{method_name}"


class MetadataTable:
    """Read-only lookup of method metadata by stable method id."""

    def __init__(self, services: Iterable[ServiceDescriptor]):
        self._services: Dict[str, ServiceDescriptor] = {}
        self._methods: Dict[str, MethodInvocationMetadata] = {}
        for service in services:
            if service.id in self._services:
                raise ConfigurationError(f"Duplicate service id '{service.id}'")
            self._services[service.id] = service
            for metadata in service.methods.values():
                self._methods[metadata.method_id] = metadata

    def get(self, method_id: str) -> MethodInvocationMetadata:
        metadata = self._methods.get(method_id)
        if metadata is None:
            raise ServiceNotFoundError(f"Unable to locate method metadata for '{method_id}'")
        return metadata

    def service(self, service_id: str) -> ServiceDescriptor:
        service = self._services.get(service_id)
        if service is None:
            raise ServiceNotFoundError(f"Service not found: {service_id}")
        return service

    def services(self) -> List[ServiceDescriptor]:
        return [self._services[key] for key in sorted(self._services)]

    def __contains__(self, method_id: object) -> bool:
        return method_id in self._methods

    def __len__(self) -> int:
        return len(self._methods)


def _position(params: List[str], name: str, what: str, mid: str) -> int:
    try:
        return params.index(name)
    except ValueError:
        raise ConfigurationError(f"{what} '{name}' of {mid} is not a declared parameter") from None


def _template_info(text: str, params: List[str], bindings: Mapping[str, str], mid: str) -> TemplateInfo:
    positions: Dict[str, int] = {}
    for variable in template_variables(text):
        if variable in bindings:
            positions[variable] = _position(params, bindings[variable], "Binding", mid)
        elif variable in params:
            positions[variable] = params.index(variable)
        elif variable == "it" and len(params) == 1:
            positions[variable] = 0
        else:
            raise ConfigurationError(f"Template variable '{variable}' of {mid} does not match any parameter")
    return TemplateInfo(text=text, name_to_param_position=MappingProxyType(positions))


def _method_metadata(service_id: str, name: str, raw: Dict[str, Any]) -> MethodInvocationMetadata:
    mid = method_id(service_id, name)
    params = [str(p) for p in raw.get("params", [])]
    if len(set(params)) != len(params):
        raise ConfigurationError(f"Duplicate parameter names in {mid}")
    bindings = raw.get("bindings") or {}
    shape = raw.get("returns", STRING)

    json_schema = raw.get("json_schema")
    if json_schema is not None:
        if shape != JSON:
            raise ConfigurationError(f"{mid} declares json_schema but returns '{shape}'")
        try:
            Draft7Validator.check_schema(json_schema)
        except SchemaError as exc:
            raise ConfigurationError(f"Invalid json_schema in {mid}: {exc.message}") from exc
    instructions = format_instructions(shape, json_schema)

    has_template = "user_message" in raw
    has_param = "user_message_param" in raw
    if has_template == has_param:
        raise ConfigurationError(
            f"{mid} must declare exactly one of 'user_message' or 'user_message_param'"
        )

    user_name_position = None
    if raw.get("user_name") is not None:
        user_name_position = _position(params, raw["user_name"], "User name parameter", mid)

    if has_template:
        info = _template_info(str(raw["user_message"]), params, bindings, mid)
        # instructions become part of the template text, after binding computation
        user_message = UserMessageInfo(
            template=TemplateInfo(text=info.text + instructions, name_to_param_position=info.name_to_param_position),
            user_name_param_position=user_name_position,
        )
    else:
        user_message = UserMessageInfo(
            param_position=_position(params, raw["user_message_param"], "User message parameter", mid),
            user_name_param_position=user_name_position,
            instructions=instructions,
        )

    system_message = None
    if raw.get("system_message") is not None:
        system_message = _template_info(str(raw["system_message"]), params, bindings, mid)

    memory_id_position = None
    if raw.get("memory_id") is not None:
        memory_id_position = _position(params, raw["memory_id"], "Memory id parameter", mid)

    return MethodInvocationMetadata(
        service_id=service_id,
        method_name=name,
        param_names=tuple(params),
        user_message=user_message,
        system_message=system_message,
        memory_id_param_position=memory_id_position,
        return_shape=shape,
        requires_moderation=bool(raw.get("moderate", False)),
        json_schema=MappingProxyType(dict(json_schema)) if json_schema is not None else None,
    )


def parse_service_descriptor(raw: Any, source: str = "<memory>") -> ServiceDescriptor:
    """Validate a descriptor mapping and build its immutable metadata."""
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Service descriptor {source} must deserialize to a mapping")

    errors = sorted(Draft7Validator(DESCRIPTOR_SCHEMA).iter_errors(raw), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        location = "/".join(str(part) for part in first.path) or "<root>"
        raise ConfigurationError(f"Invalid service descriptor {source} at {location}: {first.message}")

    service_id = str(raw["id"])
    methods = {
        str(name): _method_metadata(service_id, str(name), body or {})
        for name, body in raw["methods"].items()
    }
    if raw.get("moderation_model") is None and any(m.requires_moderation for m in methods.values()):
        logger.debug("Service %s has moderated methods; the configured MODERATION_MODEL applies", service_id)

    return ServiceDescriptor(
        id=service_id,
        description=str(raw.get("description", "")),
        chat_model=raw.get("chat_model"),
        moderation_model=raw.get("moderation_model"),
        memory=str(raw.get("memory", "none")),
        memory_max_messages=raw.get("memory_max_messages"),
        retriever=raw.get("retriever"),
        retriever_documents=tuple(raw.get("retriever_documents", [])),
        audit=raw.get("audit"),
        tools=tuple(raw.get("tools", [])),
        methods=MappingProxyType(methods),
    )


def load_service_descriptor(path: Path) -> ServiceDescriptor:
    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Service descriptor {path} is not valid YAML: {exc}") from exc
    descriptor = parse_service_descriptor(data, source=str(path))
    if descriptor.id != path.stem:
        raise ConfigurationError(f"Service id '{descriptor.id}' must match file name {path.name}")
    return descriptor


def load_metadata_table(services_dir: Optional[Path] = None) -> MetadataTable:
    """Discover `*.yaml` descriptors (filename stem = service id) and build the table."""
    directory = Path(services_dir) if services_dir is not None else SERVICES_DIR
    if not directory.exists():
        raise ConfigurationError(f"Services directory not found: {directory}")
    paths = sorted(p for p in directory.glob("*.yaml") if p.is_file())
    table = MetadataTable(load_service_descriptor(p) for p in paths)
    logger.info("Loaded %d method(s) from %d service descriptor(s) in %s", len(table), len(paths), directory)
    return table
