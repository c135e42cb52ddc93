from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import get_runtime
from .routers import memory as memory_router
from .routers import services as services_router
from .services import AiServices

logger = logging.getLogger("ai-services")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load service descriptors and resolve their collaborators once."""
    runtime = AiServices.from_settings()
    app.state.ai_services = runtime
    logger.info("Gateway ready with services: %s", ", ".join(s.id for s in runtime.table.services()))
    yield


app = FastAPI(title="AI Service Gateway", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(services_router.router)
app.include_router(memory_router.router)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Gateway metadata endpoint.
    """
    return {
        "service": get_settings().service_name,
        "docs": "/docs",
        "services": "/services",
        "health": "/health",
    }


@app.get("/health")
async def health(runtime: AiServices = Depends(get_runtime)) -> JSONResponse:
    """
    Simple health check. Returns 200 once descriptors are loaded.
    """
    payload = {
        "status": "ok",
        "services": len(runtime.table.services()),
        "methods": len(runtime.table),
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
