from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Request

from .checkout import CheckoutClient, build_checkout_client
from .config import get_settings
from .providers import BaseProvider, build_provider

logger = logging.getLogger("clara-chat")


def get_provider() -> BaseProvider:
    """
    Dependency returning the active completion provider.

    Tests override it through FastAPI's dependency_overrides.
    """
    return build_provider()


def get_checkout_client() -> CheckoutClient:
    return build_checkout_client()


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def resolve_user_id(request: Request) -> Optional[str]:
    """
    Return the signed-in user's id, or None for anonymous visitors.

    Chat is public, so a missing, anonymous (no `sub`) or invalid token is
    never an error here.
    """
    token = _get_bearer_token(request)
    if not token:
        return None
    secret = get_settings().supabase_jwt_secret
    if not secret:
        return None
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"], options={"verify_aud": False})
    except jwt.PyJWTError as exc:
        logger.info("ignoring unverifiable bearer token: %s", exc)
        return None
    user_id = claims.get("sub")
    return str(user_id) if user_id else None
