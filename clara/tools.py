"""
Tools Clara can call during a conversation.

Each tool is registered once in TOOLS with its JSON Schema and handler;
`tool_definitions()` is what the model sees and `execute_tool` is the
single dispatch point.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from .checkout import CheckoutClient, CheckoutError
from .storage import catalog_store

logger = logging.getLogger("clara-chat")

LEAD_SOURCE_FALLBACK = "clara-chat"


class ToolError(RuntimeError):
    """Base error for tool dispatch; surfaced to the model as {"error": ...}."""


class UnknownTool(ToolError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ToolArgumentsInvalid(ToolError):
    def __init__(self, name: str, details: List[str]):
        self.details = details
        super().__init__(f"Invalid arguments for {name}: {'; '.join(details)}")


class ToolExecutionError(ToolError):
    """A tool handler or one of its downstream calls failed."""


class ToolName(str, Enum):
    GET_PRICING_PLANS = "get_pricing_plans"
    GET_PRODUCTS = "get_products"
    BUILD_QUOTE = "build_quote"
    CREATE_CHECKOUT = "create_checkout"
    CAPTURE_LEAD = "capture_lead"


@dataclass
class ToolContext:
    """Per-request values a tool may need besides its model-supplied arguments."""

    language: str = "en"
    page: Optional[str] = None
    session_id: Optional[str] = None
    conversation_id: Optional[str] = None
    checkout_client: Optional[CheckoutClient] = None


ToolHandler = Callable[[Dict[str, Any], ToolContext], Any]


@dataclass(frozen=True)
class ToolSpec:
    name: ToolName
    description: str
    parameters: Dict[str, Any]
    handler: ToolHandler

    def definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _get_pricing_plans(args: Dict[str, Any], ctx: ToolContext) -> List[Dict[str, Any]]:
    return catalog_store.list_active_plans(ctx.language)


def _get_products(args: Dict[str, Any], ctx: ToolContext) -> List[Dict[str, Any]]:
    return catalog_store.list_device_products(ctx.language)


def _build_quote(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    plan = catalog_store.get_plan(args["planId"], ctx.language)
    if plan is None:
        raise ToolExecutionError(f"Pricing plan not found: {args['planId']}")
    device_ids = args.get("deviceIds") or []
    devices = catalog_store.get_products(device_ids, ctx.language)
    missing = sorted(set(device_ids) - {d["id"] for d in devices})
    if missing:
        raise ToolExecutionError(f"Products not found: {', '.join(missing)}")
    # Priced per requested id, so a device listed twice is charged twice.
    price_by_id = {d["id"]: d["monthly_price"] for d in devices}
    total = plan["monthly_price"] + sum(price_by_id[i] for i in device_ids)
    return {"plan": plan, "devices": devices, "totalMonthly": round(total, 2)}


def _create_checkout(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    if ctx.checkout_client is None:
        raise ToolExecutionError("Checkout is not available")
    payload = {
        "planId": args["planId"],
        "devices": args.get("deviceIds") or [],
        "customerEmail": args["customerEmail"],
        "customerName": args["customerName"],
        "sessionId": ctx.session_id,
        "conversationId": ctx.conversation_id,
    }
    try:
        return ctx.checkout_client.create(payload)
    except CheckoutError as exc:
        raise ToolExecutionError(str(exc)) from exc


def _capture_lead(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    lead_id = catalog_store.create_lead(
        name=args["name"],
        email=args["email"],
        phone=args.get("phone"),
        interest_type=args["interestType"],
        message=args.get("message"),
        source_page=ctx.page or LEAD_SOURCE_FALLBACK,
        conversation_id=ctx.conversation_id,
    )
    return {"success": True, "leadId": lead_id}


_DEVICE_IDS = {
    "type": "array",
    "items": {"type": "string"},
    "description": "Ids of add-on devices, as returned by get_products",
}

TOOLS: Dict[ToolName, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            name=ToolName.GET_PRICING_PLANS,
            description="List the active membership plans with their monthly prices and included features.",
            parameters={"type": "object", "properties": {}},
            handler=_get_pricing_plans,
        ),
        ToolSpec(
            name=ToolName.GET_PRODUCTS,
            description="List the active add-on devices with their monthly lease prices.",
            parameters={"type": "object", "properties": {}},
            handler=_get_products,
        ),
        ToolSpec(
            name=ToolName.BUILD_QUOTE,
            description="Calculate the total monthly price for a plan plus optional add-on devices.",
            parameters={
                "type": "object",
                "properties": {
                    "planId": {"type": "string", "description": "Id of the chosen plan"},
                    "deviceIds": _DEVICE_IDS,
                },
                "required": ["planId"],
            },
            handler=_build_quote,
        ),
        ToolSpec(
            name=ToolName.CREATE_CHECKOUT,
            description=(
                "Create a payment checkout link for the chosen plan and devices. "
                "Only call once the customer confirmed their name and email."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "planId": {"type": "string"},
                    "deviceIds": _DEVICE_IDS,
                    "customerName": {"type": "string", "minLength": 1},
                    "customerEmail": {"type": "string", "minLength": 3},
                },
                "required": ["planId", "customerName", "customerEmail"],
            },
            handler=_create_checkout,
        ),
        ToolSpec(
            name=ToolName.CAPTURE_LEAD,
            description="Save the customer's contact details so the sales team can follow up.",
            parameters={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "email": {"type": "string", "minLength": 3},
                    "phone": {"type": "string"},
                    "interestType": {
                        "type": "string",
                        "description": "What the lead is interested in, e.g. personal, family, institutional",
                    },
                    "message": {"type": "string"},
                },
                "required": ["name", "email", "interestType"],
            },
            handler=_capture_lead,
        ),
    )
}


def tool_definitions() -> List[Dict[str, Any]]:
    return [spec.definition() for spec in TOOLS.values()]


def parse_arguments(raw: Any) -> Dict[str, Any]:
    """Tool arguments arrive as a JSON string; an empty string means no arguments."""
    if isinstance(raw, Mapping):
        return dict(raw)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ToolError(f"Tool arguments are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ToolError("Tool arguments must be a JSON object")
    return parsed


def execute_tool(name: str, args: Dict[str, Any], ctx: ToolContext) -> Any:
    """
    Run one tool and return its JSON-serializable result.

    Raises UnknownTool, ToolArgumentsInvalid or ToolExecutionError.
    """
    try:
        spec = TOOLS[ToolName(name)]
    except ValueError:
        raise UnknownTool(name) from None

    errors = [err.message for err in Draft7Validator(spec.parameters).iter_errors(args)]
    if errors:
        raise ToolArgumentsInvalid(name, errors)

    logger.info("executing tool=%s session_id=%s", name, ctx.session_id)
    try:
        return spec.handler(args, ctx)
    except ToolError:
        raise
    except Exception as exc:
        logger.exception("tool=%s failed", name)
        raise ToolExecutionError(f"{name} failed: {exc}") from exc
