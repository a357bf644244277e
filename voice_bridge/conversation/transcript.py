"""Assembly of the durable call record.

Turns a finished ``CallSession`` into a ``TranscriptRecord``: token counters
(estimated from the conversation when the provider never reported usage),
cost, timing, directory lookup and disconnect metadata.
"""

import math
import time
from datetime import UTC, datetime

from voice_bridge.conversation.models import (
    ConversationEntry,
    Role,
    TokenUsage,
    TranscriptRecord,
)
from voice_bridge.conversation.session import CallSession
from voice_bridge.services.agent_settings import TokenPricing
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")

# Roughly 1.3 tokens per spoken word, 40% of it input and 60% output
TOKENS_PER_WORD = 1.3
INPUT_SHARE = 0.4
OUTPUT_SHARE = 0.6

EMPTY_CONVERSATION_NOTE = "No conversation was captured for this call."


def sanitize_for_filename(value: str | None) -> str:
    digits = "".join(ch for ch in str(value or "") if ch.isdigit())
    return digits or "unknown"


def transcript_filename(caller: str | None, callee: str | None, started_at: datetime) -> str:
    """``call-from-<caller>-to-<callee>-<dd>-<mon>-<yyyy>-<hh>-<mm>.json`` in UTC."""
    start = started_at.astimezone(UTC)
    return (
        f"call-from-{sanitize_for_filename(caller)}-to-{sanitize_for_filename(callee)}-"
        f"{start.day:02d}-{_MONTHS[start.month - 1]}-{start.year}-"
        f"{start.hour:02d}-{start.minute:02d}.json"
    )


def backup_filename(
    caller: str | None,
    call_sid: str | None,
    stream_sid: str | None,
    epoch_ms: int | None = None,
) -> str:
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)
    sid = call_sid or stream_sid or "unknown"
    return f"index-{sanitize_for_filename(caller)}-{sid}-{epoch_ms}.json"


def estimate_tokens(conversation: list[ConversationEntry]) -> tuple[int, int]:
    """Rough ``(input, output)`` token counts from the words spoken."""
    total = 0
    for entry in conversation:
        if entry.content:
            total += math.ceil(len(entry.content.split()) * TOKENS_PER_WORD)
    return math.ceil(total * INPUT_SHARE), math.ceil(total * OUTPUT_SHARE)


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    input_rate: float = 32.0,
    output_rate: float = 64.0,
) -> float:
    """USD cost given per-million-token rates, rounded to 6 decimals."""
    cost = input_tokens / 1_000_000 * input_rate + output_tokens / 1_000_000 * output_rate
    return round(cost, 6)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


class TranscriptAssembler:
    def __init__(self, pricing: TokenPricing | None = None):
        self._pricing = pricing or TokenPricing()

    def finalize_usage(self, session: CallSession) -> TokenUsage:
        """Fill in estimated counters if needed, then price them."""
        usage = session.usage
        if not usage.populated:
            input_tokens, output_tokens = estimate_tokens(session.conversation)
            usage = TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                source="estimate" if input_tokens or output_tokens else "none",
            )
        usage.cost_usd = calculate_cost(
            usage.input_tokens,
            usage.output_tokens,
            self._pricing.input_tokens_per_1m,
            self._pricing.output_tokens_per_1m,
        )
        session.usage = usage
        return usage

    def build(self, session: CallSession) -> TranscriptRecord:
        if session.ended_at is None:
            session.ended_at = datetime.now(UTC)
        usage = self.finalize_usage(session)
        duration = session.duration_seconds
        start_iso = session.started_at.isoformat()
        end_iso = session.ended_at.isoformat()

        facts = session.facts.model_dump(mode="json")
        disconnect = session.disconnect.model_dump(mode="json")
        lookup = session.phone_lookup
        first_match = lookup.matches[0] if lookup.matches else None

        call_state = {
            **facts,
            "tokens_input": usage.input_tokens,
            "tokens_output": usage.output_tokens,
            "cost_dollars": usage.cost_usd,
            "call_duration_seconds": duration,
            "call_start_time": start_iso,
            "call_end_time": end_iso,
            "phone_lookup_performed": lookup.performed,
            "phone_lookup_found": lookup.found,
            "phone_lookup_source": lookup.source,
            **disconnect,
        }

        conversation = list(session.conversation)
        if not conversation:
            conversation = [ConversationEntry(role=Role.NOTE, content=EMPTY_CONVERSATION_NOTE)]

        record = TranscriptRecord(
            call_id=session.stream_sid,
            call_sid=session.call_sid,
            recording_sid=session.recording_sid,
            caller_number=session.caller_number,
            callee_number=session.callee_number,
            call_state=call_state,
            phone_lookup={
                "performed": lookup.performed,
                "found": lookup.found,
                "source": lookup.source,
                "property_id": first_match.property_id if first_match else None,
                "property_name": first_match.property_name if first_match else None,
                "matches": [m.model_dump(mode="json") for m in lookup.matches],
            },
            demo_booking={
                "demo_preferred_date": facts["demo_preferred_date"],
                "demo_preferred_time": facts["demo_preferred_time"],
                "caller_name": facts["caller_name"],
                "property_name": facts["property_name"],
                "intent": facts["intent"],
            },
            token_usage={
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
                "estimated_cost_usd": usage.cost_usd,
                "source": usage.source,
                "call_duration_seconds": duration,
                "call_duration_formatted": format_duration(duration),
                "call_start_time": start_iso,
                "call_end_time": end_iso,
            },
            disconnect_info=disconnect,
            webhook_body=session.webhook_body,
            start_time=session.started_at,
            end_time=session.ended_at,
            duration=duration,
            conversation=conversation,
        )
        logger.info(
            "transcript_assembled",
            call_sid=session.call_sid,
            entries=len(session.conversation),
            token_source=usage.source,
            cost_usd=usage.cost_usd,
        )
        return record
