from __future__ import annotations

from typing import Any, Dict, Optional

import jwt
from fastapi import Request

from .config import get_settings
from .providers import ChatLanguageModel
from .services import AiServices


def get_runtime(request: Request) -> AiServices:
    """
    Dependency returning the AiServices runtime.

    Built on first use when the lifespan did not run (TestClient without a
    `with` block). Tests override this function through `dependency_overrides`.
    """
    runtime = getattr(request.app.state, "ai_services", None)
    if runtime is None:
        runtime = AiServices.from_settings()
        request.app.state.ai_services = runtime
    return runtime


def get_chat_model() -> Optional[ChatLanguageModel]:
    """
    Chat model used for invocations. None keeps each service's own model;
    tests override this to script the model's answers.
    """
    return None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _verify_jwt(token: str) -> Dict[str, Any]:
    settings = get_settings()
    options = {"verify_aud": bool(settings.jwt_audience)}
    decode_kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": options,
    }
    if settings.jwt_issuer:
        decode_kwargs["issuer"] = settings.jwt_issuer
    if settings.jwt_audience:
        decode_kwargs["audience"] = settings.jwt_audience

    try:
        return jwt.decode(token, settings.jwt_public_key, **decode_kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired token") from exc


def enforce_auth(request: Request) -> None:
    """
    Auth guard used by mutating endpoints.

    Priority:
    - If AUTH_TOKEN is set, accept only that bearer token.
    - Otherwise, if JWT_PUBLIC_KEY is set, require a valid RS256 token.
    - If neither is configured, authentication is disabled.
    """
    settings = get_settings()
    token = _get_bearer_token(request)
    if settings.auth_token:
        if token is None:
            raise AuthError("Missing or invalid Authorization header")
        if token != settings.auth_token:
            raise AuthError("Invalid bearer token")
        return

    if settings.jwt_public_key:
        if token is None:
            raise AuthError("Missing bearer token")
        claims = _verify_jwt(token)
        if not claims.get("sub"):
            raise AuthError("Missing subject in token")
        return

    return


class AuthError(RuntimeError):
    """Raised when authentication fails."""
