"""
Service API: discovery of declared services and method invocation.

POST /services/{id}/methods/{method}/invoke body: {"args": [..] | {..}}.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from aiservice.dependencies import get_chat_model, get_runtime
from aiservice.envelopes import (
    build_error_envelope,
    build_success_envelope,
    error_details,
    new_request_id,
    status_for,
)
from aiservice.errors import ServiceNotFoundError
from aiservice.metadata import ServiceDescriptor, method_id
from aiservice.output import STREAM
from aiservice.providers import ChatLanguageModel
from aiservice.services import AiServices

logger = logging.getLogger("ai-services")

router = APIRouter(prefix="/services", tags=["services"])


def _error(
    status_code: int,
    code: str,
    message: str,
    *,
    request_id: str,
    service_id: str,
    method_name: Optional[str] = None,
    details: Any = None,
) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=request_id,
        service_id=service_id,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
        method_name=method_name,
    )
    return JSONResponse(status_code=status_code, content=body)


def _describe(service: ServiceDescriptor) -> Dict[str, Any]:
    return {
        "id": service.id,
        "description": service.description,
        "memory": service.memory,
        "retriever": service.retriever,
        "tools": list(service.tools),
        "methods": {
            name: {
                "params": list(m.param_names),
                "returns": m.return_shape,
                "moderate": m.requires_moderation,
                "memory_id": m.param_names[m.memory_id_param_position] if m.memory_id_param_position is not None else None,
                "json_schema": dict(m.json_schema) if m.json_schema is not None else None,
            }
            for name, m in service.methods.items()
        },
    }


@router.get("")
async def list_services(runtime: AiServices = Depends(get_runtime)) -> JSONResponse:
    services = [
        {"id": s.id, "description": s.description, "methods": sorted(s.methods)}
        for s in runtime.table.services()
    ]
    return JSONResponse(status_code=200, content={"services": services})


@router.get("/{service_id}")
async def get_service(service_id: str, runtime: AiServices = Depends(get_runtime)) -> JSONResponse:
    try:
        service = runtime.table.service(service_id)
    except ServiceNotFoundError as exc:
        return _error(404, exc.code, str(exc), request_id=new_request_id(), service_id=service_id)
    return JSONResponse(status_code=200, content=_describe(service))


@router.post("/{service_id}/methods/{method_name}/invoke")
async def invoke_method(
    service_id: str,
    method_name: str,
    request: Request,
    runtime: AiServices = Depends(get_runtime),
    chat_model: Optional[ChatLanguageModel] = Depends(get_chat_model),
) -> JSONResponse:
    """
    Invoke one declared method. `args` is either positional (array) or by
    parameter name (object); omitted parameters are passed as null.
    """
    request_id = new_request_id()
    start = time.monotonic()
    mid = method_id(service_id, method_name)

    if mid not in runtime.table:
        return _error(
            404,
            "SERVICE_NOT_FOUND",
            f"Unable to locate method metadata for '{mid}'",
            request_id=request_id,
            service_id=service_id,
            method_name=method_name,
        )

    body_bytes = await request.body()
    payload: Any = {}
    if body_bytes:
        try:
            payload = json.loads(body_bytes.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            return _error(
                400,
                "MALFORMED_REQUEST",
                "Request body must be valid JSON",
                request_id=request_id,
                service_id=service_id,
                method_name=method_name,
                details={"message": str(exc)},
            )
    args = payload.get("args", []) if isinstance(payload, dict) else None
    if not isinstance(args, (list, dict)):
        return _error(
            400,
            "MALFORMED_REQUEST",
            "Request body must be an object whose 'args' is an array or an object",
            request_id=request_id,
            service_id=service_id,
            method_name=method_name,
        )

    if runtime.table.get(mid).return_shape == STREAM:
        return _error(
            501,
            "NOT_IMPLEMENTED",
            "Streamed methods cannot be invoked over this endpoint",
            request_id=request_id,
            service_id=service_id,
            method_name=method_name,
        )

    try:
        output = await runtime.invoke(mid, args, chat_model=chat_model)
    except Exception as exc:
        status_code, code = status_for(exc)
        if status_code >= 500:
            logger.exception("invoke %s failed", mid)
        _log_invoke(request_id=request_id, method=mid, status_code=status_code, start=start)
        message = str(exc) if code != "INTERNAL_ERROR" else "Invocation failed"
        details = error_details(exc) if code != "INTERNAL_ERROR" else {"message": str(exc)}
        return _error(
            status_code,
            code,
            message,
            request_id=request_id,
            service_id=service_id,
            method_name=method_name,
            details=details,
        )

    latency_ms = _log_invoke(request_id=request_id, method=mid, status_code=200, start=start)
    envelope = build_success_envelope(
        output,
        request_id=request_id,
        service_id=service_id,
        method_name=method_name,
        latency_ms=latency_ms,
    )
    return JSONResponse(status_code=200, content=envelope)


def _log_invoke(*, request_id: str, method: str, status_code: int, start: float) -> float:
    latency_ms = (time.monotonic() - start) * 1000.0
    logger.info(
        "invoke request_id=%s method=%s status=%s latency_ms=%.2f",
        request_id,
        method,
        status_code,
        latency_ms,
    )
    return latency_ms
