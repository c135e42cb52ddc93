"""
Tool executors and the registry the engine resolves tool requests against.
"""

from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Callable, Dict, List, Optional, get_type_hints

from .errors import ConfigurationError, ToolArgumentError
from .models import ToolExecutionRequest, ToolSpecification
from .output import validate_with_schema

logger = logging.getLogger("ai-services")

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}


class ToolExecutor:
    """Executes one tool request for a conversation and returns the textual result."""

    def execute(self, request: ToolExecutionRequest, memory_id: Any) -> str:  # pragma: no cover - interface only
        raise NotImplementedError


class FunctionToolExecutor(ToolExecutor):
    """
    Adapts a plain function into a tool executor.

    Arguments are decoded from the request JSON and validated against the
    specification's parameter schema. A None return becomes "Success", strings
    pass through and everything else is JSON encoded.
    """

    def __init__(self, func: Callable[..., Any], specification: ToolSpecification, memory_id_param: Optional[str] = None):
        self.func = func
        self.specification = specification
        self.memory_id_param = memory_id_param

    def execute(self, request: ToolExecutionRequest, memory_id: Any) -> str:
        try:
            arguments = json.loads(request.arguments or "{}")
        except json.JSONDecodeError as exc:
            raise ToolArgumentError(
                f"Arguments for tool {request.name} are not valid JSON",
                details={"message": str(exc)},
            ) from exc
        if not isinstance(arguments, dict):
            raise ToolArgumentError(f"Arguments for tool {request.name} must be a JSON object")

        errors = validate_with_schema(arguments, self.specification.parameters)
        if errors:
            raise ToolArgumentError(f"Arguments for tool {request.name} failed validation", details=errors)

        if self.memory_id_param:
            arguments[self.memory_id_param] = memory_id
        result = self.func(**arguments)
        if result is None:
            return "Success"
        if isinstance(result, str):
            return result
        return json.dumps(result, default=str)


def _parameters_schema(func: Callable[..., Any], skip: Optional[str]) -> Dict[str, Any]:
    properties: Dict[str, Any] = {}
    required: List[str] = []
    hints = get_type_hints(func)
    for name, param in inspect.signature(func).parameters.items():
        if name == skip or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        json_type = _JSON_TYPES.get(hints.get(name))
        properties[name] = {"type": json_type} if json_type else {}
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def tool(
    name: Optional[str] = None,
    description: Optional[str] = None,
    parameters: Optional[Dict[str, Any]] = None,
    memory_id_param: Optional[str] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Mark a function as a tool.

    The parameter schema is derived from the signature unless given.
    """

    def decorate(func: Callable[..., Any]) -> Callable[..., Any]:
        specification = ToolSpecification(
            name=name or func.__name__,
            description=description if description is not None else (inspect.getdoc(func) or ""),
            parameters=parameters or _parameters_schema(func, memory_id_param),
        )
        func.tool_executor = FunctionToolExecutor(func, specification, memory_id_param)  # type: ignore[attr-defined]
        return func

    return decorate


class ToolRegistry:
    """Name -> executor mapping plus the specifications advertised to the model."""

    def __init__(self) -> None:
        self._executors: Dict[str, ToolExecutor] = {}
        self._specifications: Dict[str, ToolSpecification] = {}

    def register(self, specification: ToolSpecification, executor: ToolExecutor) -> None:
        if specification.name in self._executors:
            raise ConfigurationError(f"Tool '{specification.name}' is already registered")
        self._specifications[specification.name] = specification
        self._executors[specification.name] = executor

    def register_function(self, func: Callable[..., Any]) -> None:
        executor = getattr(func, "tool_executor", None)
        if not isinstance(executor, FunctionToolExecutor):
            raise ConfigurationError(f"{getattr(func, '__name__', func)!r} is not decorated with @tool")
        self.register(executor.specification, executor)

    def get(self, name: str) -> Optional[ToolExecutor]:
        return self._executors.get(name)

    def specifications(self) -> List[ToolSpecification]:
        return list(self._specifications.values())

    def __contains__(self, name: object) -> bool:
        return name in self._executors

    def __len__(self) -> int:
        return len(self._executors)
