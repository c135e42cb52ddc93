"""
Conversation memory API: GET /memory/{service}/{key}, DELETE /memory/{service}/{key}.

Keys arrive as path strings, so only string conversation keys are reachable here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from aiservice.dependencies import AuthError, enforce_auth, get_runtime
from aiservice.envelopes import build_error_envelope, new_request_id
from aiservice.errors import ServiceNotFoundError
from aiservice.services import AiServices

router = APIRouter(prefix="/memory", tags=["memory"])


def _memory_error(status_code: int, code: str, message: str, service_id: str) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=new_request_id(),
        service_id=service_id,
        status_code=status_code,
        code=code,
        message=message,
    )
    return JSONResponse(status_code=status_code, content=body)


@router.get("/{service_id}/{memory_id}")
async def get_memory(service_id: str, memory_id: str, runtime: AiServices = Depends(get_runtime)) -> JSONResponse:
    try:
        context = runtime.context(service_id)
    except ServiceNotFoundError as exc:
        return _memory_error(404, exc.code, str(exc), service_id)
    if not context.memory.has_memory():
        return _memory_error(400, "MEMORY_NOT_ENABLED", f"Service {service_id} keeps no memory", service_id)
    messages = runtime.memory_messages(service_id, memory_id)
    return JSONResponse(
        status_code=200,
        content={
            "service": service_id,
            "memory_id": memory_id,
            "messages": [m.model_dump() for m in messages],
        },
    )


@router.delete("/{service_id}/{memory_id}")
async def delete_memory(
    service_id: str,
    memory_id: str,
    request: Request,
    runtime: AiServices = Depends(get_runtime),
) -> JSONResponse:
    try:
        enforce_auth(request)
    except AuthError as exc:
        return _memory_error(401, "UNAUTHORIZED", str(exc), service_id)
    try:
        removed = runtime.remove_memory(service_id, memory_id)
    except ServiceNotFoundError as exc:
        return _memory_error(404, exc.code, str(exc), service_id)
    if not removed:
        return _memory_error(400, "MEMORY_NOT_ENABLED", f"Service {service_id} keeps no memory", service_id)
    return JSONResponse(status_code=200, content={"ok": True, "service": service_id, "memory_id": memory_id})
