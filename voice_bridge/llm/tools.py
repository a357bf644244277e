"""Tool definitions and execution for Realtime function calling.

Each tool lets the agent record what it learned or take an action during the
call (save caller details, route, look up pricing, hang up). Every invocation
is answered with exactly one ``function_call_output`` followed by one
``response.create``, whatever the outcome.
"""

import json
from collections.abc import Awaitable, Callable
from typing import Any

from voice_bridge.conversation.models import DisconnectedBy
from voice_bridge.conversation.session import CallSession
from voice_bridge.errors import CollaboratorError, ProviderConnectionError
from voice_bridge.llm import commands
from voice_bridge.llm.events import FunctionCallDone
from voice_bridge.llm.system_prompt import GOODBYE
from voice_bridge.services.product_info import ProductInfoClient
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

TOOLS = [
    {
        "type": "function",
        "name": "save_caller_info",
        "description": (
            "Save caller information collected during the call. Call this whenever "
            "you learn any caller detail like property name or ID, caller name, "
            "email, or their issue."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "property_id": {"type": "string", "description": "Property ID if mentioned"},
                "property_name": {"type": "string", "description": "Property name if mentioned"},
                "caller_name": {"type": "string", "description": "Caller's name"},
                "caller_email": {"type": "string", "description": "Caller's email address"},
                "issue_description": {
                    "type": "string",
                    "description": "Brief description of their issue or question",
                },
                "is_existing_client": {
                    "type": "boolean",
                    "description": "Whether the caller is an existing Update247 client",
                },
                "is_logged_in": {
                    "type": "boolean",
                    "description": "Whether the caller is currently logged into Update247",
                },
                "current_state": {
                    "type": "string",
                    "description": "Current state in the flow (A-H)",
                },
                "sales_need": {
                    "type": "string",
                    "description": "What the sales caller is looking for",
                },
                "demo_choice": {
                    "type": "string",
                    "enum": ["self_serve", "book_demo"],
                    "description": "Demo preference",
                },
                "demo_preferred_date": {
                    "type": "string",
                    "description": "Caller's preferred day for a booked demo",
                },
                "demo_preferred_time": {
                    "type": "string",
                    "description": "Caller's preferred time for a booked demo",
                },
                "intent": {
                    "type": "string",
                    "description": "Set to demo_booking once a demo time is agreed",
                },
            },
        },
    },
    {
        "type": "function",
        "name": "route_call",
        "description": (
            "Record the routing decision once you know whether the caller needs "
            "Support or Sales."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "routing": {
                    "type": "string",
                    "enum": ["support", "sales"],
                    "description": "'support' for existing clients, 'sales' for new prospects",
                },
                "reason": {"type": "string", "description": "Brief reason for the decision"},
            },
            "required": ["routing"],
        },
    },
    {
        "type": "function",
        "name": "get_pricing_details",
        "description": (
            "Fetch current Update247 pricing and plans. Call this when the caller "
            "asks about pricing, plans or costs."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "property_type": {
                    "type": "string",
                    "enum": ["Hotel", "Vacational Rental"],
                    "description": "Property type",
                },
            },
            "required": ["property_type"],
        },
    },
    {
        "type": "function",
        "name": "get_interface_screenshots",
        "description": (
            "Describe the Update247 interface. Call this when the caller wants to "
            "know what the software looks like."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "feature": {
                    "type": "string",
                    "enum": ["dashboard", "bookings", "reports", "settings"],
                    "description": "Feature to describe",
                },
            },
            "required": ["feature"],
        },
    },
    {
        "type": "function",
        "name": "end_call",
        "description": (
            "End the call politely. Call this AFTER saying goodbye, when the caller "
            "has no more questions or says goodbye."
        ),
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {
                    "type": "string",
                    "description": (
                        "Reason for ending the call: completed, caller_goodbye, "
                        "no_more_questions, escalated, inactivity"
                    ),
                },
            },
            "required": ["reason"],
        },
    },
]

ToolHandler = Callable[[CallSession, dict[str, Any]], Awaitable[dict[str, Any]]]


def _parse_arguments(raw: str) -> dict[str, Any]:
    args = json.loads(raw or "{}")
    if not isinstance(args, dict):
        raise ValueError("function arguments must be a JSON object")
    return args


def phone_last3(number: str | None) -> str:
    digits = "".join(ch for ch in (number or "") if ch.isdigit())
    return digits[-3:]


class ToolDispatcher:
    """Executes the agent's function calls against one call's session."""

    def __init__(
        self,
        send: Callable[[dict], Awaitable[None]],
        product_info: ProductInfoClient,
        on_end_call: Callable[[str], None],
    ):
        self._send = send
        self._product_info = product_info
        self._on_end_call = on_end_call
        self._handlers: dict[str, ToolHandler] = {
            "save_caller_info": self._save_caller_info,
            "route_call": self._route_call,
            "get_pricing_details": self._get_pricing_details,
            "get_interface_screenshots": self._get_interface_screenshots,
            "end_call": self._end_call,
        }

    async def dispatch(self, session: CallSession, call: FunctionCallDone) -> dict[str, Any]:
        """Run one tool and answer the provider. Returns the payload sent back."""
        logger.info(
            "tool_execute",
            tool=call.name,
            call_id=call.call_id,
            call_sid=session.call_sid,
        )
        try:
            args = _parse_arguments(call.arguments)
            handler = self._handlers.get(call.name)
            if handler is None:
                raise ValueError(f"Unknown function: {call.name}")
            result = await handler(session, args)
        except CollaboratorError as e:
            logger.warning("tool_collaborator_failed", tool=call.name, error=e.detail)
            result = {"error": e.caller_message, "details": e.detail}
        except ValueError as e:
            # Bad JSON, unknown tool and pydantic validation errors all land here
            logger.warning("tool_invalid_call", tool=call.name, error=str(e))
            result = {"success": False, "error": str(e)}
        except Exception as e:
            logger.exception("tool_error", tool=call.name, error=str(e))
            result = {"success": False, "error": "Tool execution failed"}

        await self._reply(call.call_id, result)
        return result

    async def _reply(self, call_id: str, result: dict[str, Any]) -> None:
        try:
            await self._send(commands.function_call_output(call_id, result))
            await self._send(commands.response_create())
        except ProviderConnectionError as e:
            logger.warning("tool_reply_failed", call_id=call_id, error=e.detail)

    async def _save_caller_info(self, session: CallSession, args: dict) -> dict:
        applied = session.facts.merge(args)
        logger.info("call_state_updated", call_sid=session.call_sid, fields=sorted(applied))

        last3 = phone_last3(session.caller_number)
        result: dict[str, Any] = {
            "success": True,
            "saved": applied,
            "caller_phone_last3": last3 or None,
            "caller_phone_available": bool(session.caller_number),
        }
        if applied.get("intent") == "demo_booking" and last3:
            spaced = " ".join(last3)
            result["SPEAK_THIS"] = (
                "Demo is all set. Is it okay to call you on the number you are "
                f"calling from, which ends in {spaced}?"
            )
            result["INSTRUCTION"] = (
                "You MUST say the above SPEAK_THIS text exactly, then WAIT for the "
                f"caller's response. The last 3 digits of their phone number are "
                f"{spaced}. Say each digit separately."
            )
        return result

    async def _route_call(self, session: CallSession, args: dict) -> dict:
        routing = args.get("routing")
        if routing not in ("support", "sales"):
            raise ValueError(f"Invalid routing: {routing!r}")
        session.facts.routing = routing
        logger.info(
            "call_routed",
            call_sid=session.call_sid,
            routing=routing,
            reason=args.get("reason"),
        )
        return {"success": True, "routed_to": routing}

    async def _get_pricing_details(self, session: CallSession, args: dict) -> dict:
        return await self._product_info.get_pricing(args.get("property_type") or "Hotel")

    async def _get_interface_screenshots(self, session: CallSession, args: dict) -> dict:
        return await self._product_info.get_interface_screenshots(
            args.get("feature") or "dashboard"
        )

    async def _end_call(self, session: CallSession, args: dict) -> dict:
        reason = args.get("reason") or "completed"
        by = DisconnectedBy.INACTIVITY if reason == "inactivity" else DisconnectedBy.AGENT
        session.record_disconnect(by, reason, ended_by_agent=True)
        logger.info("end_call_requested", call_sid=session.call_sid, reason=reason)
        self._on_end_call(reason)
        return {
            "success": True,
            "SPEAK_THIS": GOODBYE,
            "INSTRUCTION": "You MUST say the SPEAK_THIS text exactly before the call ends.",
        }
