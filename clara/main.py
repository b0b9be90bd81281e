from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import Headers

from .agent_presets import PRESETS_DIR, seed_from_presets
from .config import get_settings
from .dependencies import get_checkout_client, get_provider
from .engine import build_error_envelope, new_request_id, process_chat_request, process_checkout_request
from .storage import agent_store
from .storage.agent_store import AgentNotConfigured
from .storage.db import init_db


logger = logging.getLogger("clara-chat")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and seed the preset agents and catalog."""
    init_db()
    seed_from_presets(PRESETS_DIR)
    yield


class EmptyPreflightCORSMiddleware(CORSMiddleware):
    """Starlette CORS handling, but allowed pre-flights get an empty 200 body instead of "OK"."""

    def preflight_response(self, request_headers: Headers) -> Response:
        response = super().preflight_response(request_headers)
        if response.status_code != 200:
            return response
        headers = {
            k: v for k, v in response.headers.items() if k.lower().startswith("access-control-") or k.lower() == "vary"
        }
        return Response(status_code=200, headers=headers)


app = FastAPI(title="Clara Chat Gateway", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (default *, the chat widget is embedded on public pages).
# Bearer auth only; credentialed CORS stays off.
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    EmptyPreflightCORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    settings = get_settings()
    return {
        "service": settings.service_name,
        "agent": settings.agent_name,
        "provider": settings.provider_name,
        "docs": "/docs",
        "health": "/health",
        "chat": "/clara-chat",
        "checkout": "/clara-checkout",
    }


@app.get("/health")
async def health() -> JSONResponse:
    """
    Returns 200 when the configured agent and its configuration can be loaded.
    """
    settings = get_settings()
    try:
        agent = await run_in_threadpool(agent_store.load_agent, settings.agent_name)
    except AgentNotConfigured as exc:
        status_code, body = build_error_envelope(
            request_id=new_request_id(),
            status_code=500,
            code="AGENT_NOT_CONFIGURED",
            message=str(exc),
        )
        return JSONResponse(status_code=status_code, content=body)

    payload = {
        "status": "ok",
        "agent": agent.name,
        "agent_status": agent.status,
        "model": agent.configuration.model,
        "knowledge_entries": len(agent.knowledge),
    }
    return JSONResponse(status_code=200, content=payload)


@app.options("/clara-chat")
@app.options("/clara-checkout")
async def preflight() -> Response:
    return Response(status_code=200, headers=CORS_HEADERS)


@app.post("/clara-chat")
async def clara_chat(
    request: Request,
    provider=Depends(get_provider),
    checkout_client=Depends(get_checkout_client),
) -> JSONResponse:
    """
    Chat entrypoint for the public-site assistant.
    """
    result = await process_chat_request(request=request, provider=provider, checkout_client=checkout_client)
    return JSONResponse(status_code=result["status_code"], content=result["body"])


@app.post("/clara-checkout")
async def clara_checkout(request: Request) -> JSONResponse:
    """
    Create an order and (when Stripe is configured) a checkout session.
    """
    result = await process_checkout_request(request=request)
    return JSONResponse(status_code=result["status_code"], content=result["body"])
