"""
Response envelopes shared by the HTTP routes.

Success: {"output": ..., "meta": {...}}; error: {"error": {code, message, details}, "meta": {...}}.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel

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

_STATUS_BY_ERROR = (
    (ServiceNotFoundError, 404),
    (NullArgumentError, 422),
    (TemplateBindingError, 422),
    (ModerationError, 422),
    (OutputParsingError, 422),
    (ToolArgumentError, 500),
    (UnknownToolError, 500),
    (ToolLoopExceededError, 500),
    (ConfigurationError, 500),
)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_meta(request_id: str, service_id: Optional[str], method_name: Optional[str] = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"request_id": request_id, "service": service_id or "unknown"}
    if method_name is not None:
        meta["method"] = method_name
    return meta


def build_success_envelope(
    output: Any,
    *,
    request_id: str,
    service_id: str,
    method_name: str,
    latency_ms: float,
) -> Dict[str, Any]:
    meta = build_meta(request_id, service_id, method_name)
    meta["latency_ms"] = latency_ms
    return {"output": to_jsonable(output), "meta": meta}


def build_error_envelope(
    *,
    request_id: str,
    service_id: Optional[str],
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    method_name: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": build_meta(request_id, service_id, method_name),
    }
    return status_code, body


def error_details(exc: BaseException) -> Any:
    if isinstance(exc, ModerationError):
        return {"flagged_text": exc.flagged_text}
    if isinstance(exc, UnknownToolError):
        return {"tool": exc.tool_name}
    if isinstance(exc, ToolLoopExceededError):
        return {"limit": exc.limit}
    return getattr(exc, "details", None)


def status_for(exc: BaseException) -> Tuple[int, str]:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code, exc.code
    if isinstance(exc, AiServiceError):
        return 500, exc.code
    return 500, "INTERNAL_ERROR"


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
