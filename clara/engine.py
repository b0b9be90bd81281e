from __future__ import annotations

import json
import logging
import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from fastapi import Request
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from .checkout import CheckoutClient, CheckoutError, create_checkout_session
from .config import get_settings
from .dependencies import resolve_user_id
from .models import AgentProfile, ChatRequest, CheckoutRequest, Completion, ToolCall
from .prompt import compose_system_prompt
from .providers import (
    BaseProvider,
    GatewayError,
    GatewayPaymentRequired,
    GatewayRateLimited,
    ModelParams,
    first_tool_call,
    parse_completion,
)
from .storage import agent_store, conversation_store
from .storage.agent_store import AgentNotConfigured
from .tools import ToolContext, ToolError, ToolName, execute_tool, parse_arguments, tool_definitions

logger = logging.getLogger("clara-chat")


class ExchangeState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    CONFIG_LOADED = "config_loaded"
    FIRST_COMPLETION = "first_completion"
    TOOL_EXECUTED = "tool_executed"
    SECOND_COMPLETION = "second_completion"
    RECORDED = "recorded"
    RESPONDED = "responded"
    # terminal failures
    VALIDATION_FAILED = "validation_failed"
    CONFIG_MISSING = "config_missing"
    UPSTREAM_FAILED = "upstream_failed"
    FAILED = "failed"


class ErrorEnvelope(Exception):
    """
    Internal control-flow exception carrying the HTTP status of a failed exchange.

    `process_chat_request` converts it into the JSON error body.
    """

    def __init__(self, status_code: int, code: str, message: str, state: ExchangeState = ExchangeState.FAILED):
        self.status_code = status_code
        self.code = code
        self.message = message
        self.state = state
        super().__init__(message)


def new_request_id() -> str:
    return str(uuid.uuid4())


def build_error_envelope(*, request_id: str, status_code: int, code: str, message: str) -> Tuple[int, Dict[str, Any]]:
    return status_code, {"error": message, "code": code, "request_id": request_id}


async def _read_json_body(request: Request) -> Any:
    try:
        body_bytes = await request.body()
    except Exception:
        raise ErrorEnvelope(400, "MALFORMED_REQUEST", "Failed to read request body", ExchangeState.VALIDATION_FAILED)
    try:
        return json.loads(body_bytes.decode("utf-8") if body_bytes else "")
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ErrorEnvelope(
            400, "MALFORMED_REQUEST", f"Request body must be valid JSON: {exc}", ExchangeState.VALIDATION_FAILED
        ) from exc


def _parse_chat_request(payload: Any) -> ChatRequest:
    if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
        raise ErrorEnvelope(400, "VALIDATION_ERROR", "Messages array is required", ExchangeState.VALIDATION_FAILED)
    try:
        return ChatRequest.model_validate(payload)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ErrorEnvelope(
            400, "VALIDATION_ERROR", f"Invalid request: {details}", ExchangeState.VALIDATION_FAILED
        ) from exc


def _call_provider(
    provider: BaseProvider,
    system_prompt: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    params: ModelParams,
    tools: Optional[List[Dict[str, Any]]],
) -> Completion:
    """
    Invoke the provider and normalize its result.

    Test doubles may be plain callables returning a raw gateway response dict.
    """
    if not callable(getattr(provider, "complete", None)):
        raw = provider(system_prompt=system_prompt, messages=messages, params=params, tools=tools)  # type: ignore[operator]
        return parse_completion(raw)

    result = provider.complete(system_prompt, messages, params=params, tools=tools)
    if isinstance(result, Completion):
        return result
    if isinstance(result, dict):
        return parse_completion(result)
    raise GatewayError("Provider returned unsupported result type")


async def _complete(
    provider: BaseProvider,
    system_prompt: str,
    messages: Sequence[Mapping[str, Any]],
    *,
    params: ModelParams,
    tools: Optional[List[Dict[str, Any]]] = None,
) -> Completion:
    try:
        return await run_in_threadpool(
            _call_provider, provider, system_prompt, messages, params=params, tools=tools
        )
    except GatewayRateLimited as exc:
        raise ErrorEnvelope(429, "RATE_LIMITED", str(exc), ExchangeState.UPSTREAM_FAILED) from exc
    except GatewayPaymentRequired as exc:
        raise ErrorEnvelope(402, "PAYMENT_REQUIRED", str(exc), ExchangeState.UPSTREAM_FAILED) from exc
    except GatewayError as exc:
        raise ErrorEnvelope(500, "UPSTREAM_ERROR", str(exc), ExchangeState.UPSTREAM_FAILED) from exc
    except Exception as exc:
        logger.exception("provider failure")
        raise ErrorEnvelope(500, "INTERNAL_ERROR", "Provider failure", ExchangeState.UPSTREAM_FAILED) from exc


def _run_tool(call: ToolCall, ctx: ToolContext) -> Any:
    """Tool failures become an {"error": ...} result the model can explain to the user."""
    try:
        return execute_tool(call.name, parse_arguments(call.arguments), ctx)
    except ToolError as exc:
        logger.warning("tool=%s returned error to model: %s", call.name, exc)
        return {"error": str(exc)}


def _assistant_tool_call_message(completion: Completion, call: ToolCall) -> Dict[str, Any]:
    return {
        "role": "assistant",
        "content": completion.content,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments},
            }
        ],
    }


def _record_exchange(
    agent: AgentProfile,
    *,
    session_id: Optional[str],
    user_id: Optional[str],
    transcript: List[Dict[str, Any]],
    conversation_id: str,
) -> bool:
    """Persist the exchange and bump today's counter. Failures are logged, never raised."""
    try:
        conversation_store.insert_conversation(
            agent_id=agent.id,
            session_id=session_id,
            user_id=user_id,
            conversation=transcript,
            conversation_id=conversation_id,
        )
    except Exception as exc:
        logger.warning("insert_conversation failed for session_id=%s: %s", session_id, exc)
        return False
    try:
        conversation_store.bump_daily_analytics(agent.id, time.strftime("%Y-%m-%d", time.gmtime()))
    except Exception as exc:
        logger.warning("bump_daily_analytics failed for agent=%s: %s", agent.name, exc)
        return False
    return True


async def process_chat_request(
    *,
    request: Request,
    provider: BaseProvider,
    checkout_client: CheckoutClient,
) -> Dict[str, Any]:
    """
    One chat exchange: validate, load agent, first completion, optional tool
    plus follow-up completion, record, respond.

    Returns {"status_code", "body"} so it stays free of FastAPI Response types.
    """
    request_id = new_request_id()
    start = time.monotonic()
    settings = get_settings()
    state = ExchangeState.RECEIVED
    tool_used: Optional[str] = None
    recorded: Optional[bool] = None

    try:
        chat = _parse_chat_request(await _read_json_body(request))
        state = ExchangeState.VALIDATED

        try:
            agent = await run_in_threadpool(agent_store.load_agent, settings.agent_name)
        except AgentNotConfigured as exc:
            logger.error("agent not configured name=%s reason=%s", exc.agent_name, exc.reason)
            raise ErrorEnvelope(
                500, "AGENT_NOT_CONFIGURED", f"{exc.agent_name} agent not configured", ExchangeState.CONFIG_MISSING
            ) from exc
        state = ExchangeState.CONFIG_LOADED

        system_prompt = compose_system_prompt(
            agent.configuration,
            agent.knowledge,
            page=chat.page,
            language=chat.language,
            knowledge_max_chars=settings.knowledge_max_chars,
        )
        params = ModelParams(
            model=agent.configuration.model,
            temperature=agent.configuration.temperature,
            max_tokens=agent.configuration.max_tokens,
        )
        messages = [m.model_dump(exclude_none=True) for m in chat.messages]

        first = await _complete(provider, system_prompt, messages, params=params, tools=tool_definitions())
        state = ExchangeState.FIRST_COMPLETION

        conversation_id = str(uuid.uuid4())
        transcript: List[Dict[str, Any]] = list(messages)
        answer = first.content or ""
        tool_result: Any = None

        call = first_tool_call(first)
        if call is not None:
            tool_used = call.name
            ctx = ToolContext(
                language=chat.language,
                page=chat.page,
                session_id=chat.sessionId,
                conversation_id=conversation_id,
                checkout_client=checkout_client,
            )
            tool_result = await run_in_threadpool(_run_tool, call, ctx)
            state = ExchangeState.TOOL_EXECUTED

            tool_message = {
                "role": "tool",
                "tool_call_id": call.id,
                "content": json.dumps(tool_result, default=str),
            }
            followup = [*messages, _assistant_tool_call_message(first, call), tool_message]
            second = await _complete(provider, system_prompt, followup, params=params, tools=None)
            state = ExchangeState.SECOND_COMPLETION
            answer = second.content or ""
            transcript.append({**tool_message, "name": call.name})

        transcript.append({"role": "assistant", "content": answer})
        user_id = resolve_user_id(request)
        recorded = await run_in_threadpool(
            _record_exchange,
            agent,
            session_id=chat.sessionId,
            user_id=user_id,
            transcript=transcript,
            conversation_id=conversation_id,
        )
        if recorded:
            state = ExchangeState.RECORDED

        body: Dict[str, Any] = {"message": answer, "agent": agent.display_name}
        if (
            tool_used == ToolName.CREATE_CHECKOUT.value
            and isinstance(tool_result, dict)
            and tool_result.get("checkoutUrl")
        ):
            body = {
                "message": answer,
                "checkoutUrl": tool_result["checkoutUrl"],
                "orderId": tool_result.get("orderId"),
            }
        state = ExchangeState.RESPONDED
        status_code = 200

    except ErrorEnvelope as exc:
        state = exc.state
        status_code, body = build_error_envelope(
            request_id=request_id,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
        )
    except Exception:
        logger.exception("chat exchange failed request_id=%s state=%s", request_id, state.value)
        state = ExchangeState.FAILED
        status_code, body = build_error_envelope(
            request_id=request_id,
            status_code=500,
            code="INTERNAL_ERROR",
            message="Internal error",
        )

    _log_exchange(
        request_id=request_id,
        agent_name=settings.agent_name,
        provider_name=settings.provider_name,
        state=state,
        tool=tool_used,
        recorded=recorded,
        status_code=status_code,
        latency_ms=(time.monotonic() - start) * 1000.0,
    )
    return {"status_code": status_code, "body": body}


async def process_checkout_request(*, request: Request) -> Dict[str, Any]:
    """POST /clara-checkout: create an order and payment session; 400 {"error"} on failure."""
    request_id = new_request_id()
    try:
        payload = await _read_json_body(request)
        checkout = CheckoutRequest.model_validate(payload)
        result = await run_in_threadpool(
            create_checkout_session,
            plan_id=checkout.planId,
            devices=checkout.devices,
            customer_email=checkout.customerEmail,
            customer_name=checkout.customerName,
            session_id=checkout.sessionId,
            conversation_id=checkout.conversationId,
        )
        return {"status_code": 200, "body": result}
    except ErrorEnvelope as exc:
        status_code, body = build_error_envelope(
            request_id=request_id, status_code=400, code=exc.code, message=exc.message
        )
    except ValidationError as exc:
        status_code, body = build_error_envelope(
            request_id=request_id, status_code=400, code="VALIDATION_ERROR", message=f"Invalid request: {exc}"
        )
    except CheckoutError as exc:
        logger.error("checkout failed request_id=%s: %s", request_id, exc)
        status_code, body = build_error_envelope(
            request_id=request_id, status_code=400, code="CHECKOUT_FAILED", message=str(exc)
        )
    except Exception as exc:
        logger.exception("checkout failed request_id=%s", request_id)
        status_code, body = build_error_envelope(
            request_id=request_id, status_code=400, code="CHECKOUT_FAILED", message=str(exc) or "Checkout failed"
        )
    return {"status_code": status_code, "body": body}


def _log_exchange(
    *,
    request_id: str,
    agent_name: str,
    provider_name: str,
    state: ExchangeState,
    tool: Optional[str],
    recorded: Optional[bool],
    status_code: int,
    latency_ms: float,
) -> None:
    logger.info(
        "chat request_id=%s agent=%s provider=%s state=%s tool=%s recorded=%s status=%s latency_ms=%.2f",
        request_id,
        agent_name,
        provider_name,
        state.value,
        tool or "-",
        {True: "yes", False: "no"}.get(recorded, "-"),
        status_code,
        latency_ms,
    )
