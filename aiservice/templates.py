"""
Message assembly: renders the system and user messages of one invocation
from the method metadata and the argument vector.
"""

from __future__ import annotations

import re
from dataclasses import fields, is_dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import ConfigurationError, NullArgumentError, TemplateBindingError
from .models import ChatMessage

# {name} or {{name}}
PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}|\{(\w+)\}")

T = TypeVar("T")


def template_variables(text: str) -> List[str]:
    """Variable names in order of first appearance."""
    seen: List[str] = []
    for match in PLACEHOLDER.finditer(text):
        name = match.group(1) or match.group(2)
        if name not in seen:
            seen.append(name)
    return seen


def render(text: str, values: Dict[str, Any]) -> str:
    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1) or match.group(2)
        if name not in values:
            raise TemplateBindingError(f"Value for the variable '{name}' is missing")
        value = values[name]
        return "null" if value is None else str(value)

    return PLACEHOLDER.sub(_substitute, text)


def structured_prompt(template: str) -> Callable[[T], T]:
    """
    Class decorator: instances render through `template`, filled from their attributes.

        @structured_prompt("Create a recipe using {ingredients}")
        @dataclass
        class RecipePrompt:
            ingredients: list
    """

    def decorate(cls: T) -> T:
        setattr(cls, "__structured_prompt__", template)
        return cls

    return decorate


def _prompt_values(obj: Any) -> Dict[str, Any]:
    if is_dataclass(obj):
        raw = {f.name: getattr(obj, f.name) for f in fields(obj)}
    elif callable(getattr(obj, "model_dump", None)):
        raw = {name: getattr(obj, name) for name in obj.model_dump()}
    else:
        raw = dict(vars(obj))
    return {name: _template_value(value) for name, value in raw.items()}


def to_text(value: Any) -> str:
    """Convert a user-message argument into text."""
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_text(item) for item in value) + "]"
    template = getattr(type(value), "__structured_prompt__", None)
    if template is not None:
        return render(template, _prompt_values(value))
    return str(value)


def _template_value(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return to_text(value)
    return value


def _argument(arguments: Sequence[Any], position: int, method_id: str) -> Any:
    if position < 0 or position >= len(arguments):
        raise TemplateBindingError(
            f"Parameter position {position} of {method_id} is out of range "
            f"for {len(arguments)} argument(s)"
        )
    return arguments[position]


def _template_params(template_info: Any, arguments: Sequence[Any], method_id: str) -> Dict[str, Any]:
    return {
        name: _template_value(_argument(arguments, position, method_id))
        for name, position in template_info.name_to_param_position.items()
    }


def prepare_system_message(metadata: Any, arguments: Sequence[Any]) -> Optional[ChatMessage]:
    info = metadata.system_message
    if info is None:
        return None
    return ChatMessage.system(render(info.text, _template_params(info, arguments, metadata.method_id)))


def prepare_user_message(metadata: Any, arguments: Sequence[Any]) -> ChatMessage:
    info = metadata.user_message

    user_name = None
    if info.user_name_param_position is not None:
        value = _argument(arguments, info.user_name_param_position, metadata.method_id)
        if value is not None:
            user_name = str(value)

    if info.template is not None:
        # format instructions were already appended to the template text at load time
        params = _template_params(info.template, arguments, metadata.method_id)
        return ChatMessage.user(render(info.template.text, params), name=user_name)

    if info.param_position is not None:
        value = _argument(arguments, info.param_position, metadata.method_id)
        if value is None:
            raise NullArgumentError(
                f"Unable to construct user message for '{metadata.method_id}' because "
                f"parameter with index {info.param_position} is null",
                position=info.param_position,
            )
        return ChatMessage.user(to_text(value) + info.instructions, name=user_name)

    raise ConfigurationError(f"Unable to construct user message for '{metadata.method_id}'")
