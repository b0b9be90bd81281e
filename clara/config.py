import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so PROVIDER, API keys and DB settings are set automatically.
load_dotenv()


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    agent_name: str
    provider_name: str
    db_path: str = "./data/clara.db"
    cors_origins: str = "*"

    gateway_timeout_seconds: float = 60.0
    checkout_url: Optional[str] = None
    checkout_timeout_seconds: float = 30.0
    stripe_secret_key: Optional[str] = None
    site_url: str = "http://localhost:4280"
    supabase_jwt_secret: Optional[str] = None
    knowledge_max_chars: int = 0

    service_name: str = "clara-chat"
    http_port: int = 4280


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Defaults only.

    `get_settings` below re-reads the environment on every call; tests mutate
    os.environ between requests, so environment values are never cached here.
    """
    return Settings(agent_name="clara", provider_name="stub")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


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
        agent_name=os.getenv("AGENT_NAME") or base.agent_name,
        provider_name=(os.getenv("PROVIDER") or base.provider_name).lower(),
        db_path=os.getenv("DB_PATH") or base.db_path,
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        gateway_timeout_seconds=_float_env("GATEWAY_TIMEOUT_SECONDS", base.gateway_timeout_seconds),
        checkout_url=os.getenv("CHECKOUT_URL") or None,
        checkout_timeout_seconds=_float_env("CHECKOUT_TIMEOUT_SECONDS", base.checkout_timeout_seconds),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        site_url=(os.getenv("SITE_URL") or base.site_url).rstrip("/"),
        supabase_jwt_secret=os.getenv("SUPABASE_JWT_SECRET") or None,
        knowledge_max_chars=max(0, _int_env("KNOWLEDGE_MAX_CHARS", base.knowledge_max_chars)),
        service_name=base.service_name,
        http_port=base.http_port,
    )
