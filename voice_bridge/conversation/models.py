"""Pydantic models for call data."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    NOTE = "note"


class DisconnectedBy(str, Enum):
    CALLER = "caller"
    AGENT = "agent"
    INACTIVITY = "inactivity"
    UNKNOWN = "unknown"


class ConversationEntry(BaseModel):
    """A single utterance in the call log."""
    role: Role
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class CallFacts(BaseModel):
    """Facts collected from the caller by the model's tool calls."""

    model_config = ConfigDict(validate_assignment=True)

    property_id: str | None = None
    property_name: str | None = None
    caller_name: str | None = None
    caller_email: str | None = None
    issue_description: str | None = None
    is_existing_client: bool | None = None
    is_logged_in: bool | None = None
    routing: Literal["support", "sales"] | None = None
    current_state: str = "A"
    sales_need: str | None = None
    demo_choice: Literal["self_serve", "book_demo"] | None = None
    demo_preferred_date: str | None = None
    demo_preferred_time: str | None = None
    intent: str | None = None

    def merge(self, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply the known, non-null fields of ``updates``.

        Fields not mentioned keep their current value. Returns what was applied.
        """
        present = {
            name: updates[name]
            for name in type(self).model_fields
            if name != "routing" and updates.get(name) is not None
        }
        # Validate the whole update before touching any field.
        validated = type(self).model_validate({**self.model_dump(), **present})
        for name in present:
            setattr(self, name, getattr(validated, name))
        return {name: getattr(self, name) for name in present}


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    source: Literal["none", "provider", "estimate"] = "none"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def populated(self) -> bool:
        return self.input_tokens > 0 or self.output_tokens > 0


class DisconnectInfo(BaseModel):
    disconnected_by: DisconnectedBy | None = None
    disconnect_reason: str | None = None
    ended_by_agent: bool = False


class DirectoryEntry(BaseModel):
    """A known account reachable from a caller number."""
    phone_number: str
    property_id: str
    property_name: str | None = None


class PhoneLookup(BaseModel):
    performed: bool = False
    found: bool = False
    source: str | None = None
    matches: list[DirectoryEntry] = Field(default_factory=list)


class TranscriptRecord(BaseModel):
    """The durable record of one call, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    call_id: str | None = Field(None, alias="callId")
    call_sid: str | None = Field(None, alias="callSid")
    recording_sid: str | None = Field(None, alias="recordingSid")
    caller_number: str | None = Field(None, alias="callerNumber")
    callee_number: str | None = Field(None, alias="calleeNumber")
    call_state: dict[str, Any] = Field(default_factory=dict, alias="callState")
    phone_lookup: dict[str, Any] = Field(default_factory=dict, alias="phoneLookup")
    demo_booking: dict[str, Any] = Field(default_factory=dict, alias="demoBooking")
    token_usage: dict[str, Any] = Field(default_factory=dict, alias="tokenUsage")
    disconnect_info: dict[str, Any] = Field(default_factory=dict, alias="disconnectInfo")
    webhook_body: dict[str, Any] | None = Field(None, alias="webhookBody")
    start_time: datetime = Field(alias="startTime")
    end_time: datetime = Field(alias="endTime")
    duration: int
    conversation: list[ConversationEntry] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)
