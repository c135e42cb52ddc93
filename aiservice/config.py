import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so collaborator ids and secrets are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    services_dir: Optional[str]
    chat_model: str
    moderation_model: str
    memory_store: str
    memory_db_path: str = "./data/memory.db"
    memory_max_messages: int = 20
    max_tool_executions: int = 10
    audit: str = "logging"
    auth_token: Optional[str] = None
    jwt_public_key: Optional[str] = None
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None
    cors_origins: str = "*"

    service_name: str = "ai-services"


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only. `get_settings` re-reads the environment on every call
    because tests mutate os.environ at runtime.
    """
    return Settings(
        services_dir=None,
        chat_model="stub",
        moderation_model="stub",
        memory_store="memory",
    )


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_settings() -> Settings:
    """Return Settings built from the *current* environment."""
    base = _base_settings()
    return Settings(
        services_dir=os.getenv("SERVICES_DIR") or base.services_dir,
        chat_model=(os.getenv("CHAT_MODEL") or base.chat_model).lower(),
        moderation_model=(os.getenv("MODERATION_MODEL") or base.moderation_model).lower(),
        memory_store=(os.getenv("MEMORY_STORE") or base.memory_store).lower(),
        memory_db_path=os.getenv("MEMORY_DB_PATH") or base.memory_db_path,
        memory_max_messages=_int_env("MEMORY_MAX_MESSAGES", base.memory_max_messages),
        max_tool_executions=_int_env("MAX_TOOL_EXECUTIONS", base.max_tool_executions),
        audit=(os.getenv("AUDIT") or base.audit).lower(),
        auth_token=os.getenv("AUTH_TOKEN") or None,
        jwt_public_key=os.getenv("JWT_PUBLIC_KEY") or None,
        jwt_issuer=os.getenv("JWT_ISSUER") or None,
        jwt_audience=os.getenv("JWT_AUDIENCE") or None,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        service_name=base.service_name,
    )
