"""Mutable state of a single phone call.

A ``CallSession`` is created when the media stream connects and is owned by
exactly one ``MediaStreamHandler`` until the call is finalized.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from voice_bridge.conversation.models import (
    CallFacts,
    ConversationEntry,
    DisconnectedBy,
    DisconnectInfo,
    PhoneLookup,
    Role,
    TokenUsage,
)


@dataclass
class CallSession:
    # Identity
    stream_sid: str | None = None
    call_sid: str | None = None
    caller_number: str | None = None
    callee_number: str | None = None
    recording_sid: str | None = None
    webhook_body: dict[str, Any] | None = None

    # Media timing (milliseconds, Twilio media clock)
    latest_media_timestamp: int = 0
    response_start_timestamp: int | None = None
    mark_queue: deque[str] = field(default_factory=deque)
    last_assistant_item: str | None = None
    pending_audio: list[str] = field(default_factory=list)

    # Initialization flags
    provider_ready: bool = False
    greeting_sent: bool = False

    # Fallback transcription of caller speech
    capturing_caller_audio: bool = False
    caller_audio: list[str] = field(default_factory=list)

    facts: CallFacts = field(default_factory=CallFacts)
    usage: TokenUsage = field(default_factory=TokenUsage)
    disconnect: DisconnectInfo = field(default_factory=DisconnectInfo)
    phone_lookup: PhoneLookup = field(default_factory=PhoneLookup)
    conversation: list[ConversationEntry] = field(default_factory=list)

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None

    def add_entry(self, role: Role, content: str) -> ConversationEntry:
        entry = ConversationEntry(role=role, content=content)
        self.conversation.append(entry)
        return entry

    def last_entry(self) -> ConversationEntry | None:
        return self.conversation[-1] if self.conversation else None

    def record_disconnect(
        self,
        by: DisconnectedBy,
        reason: str,
        *,
        ended_by_agent: bool = False,
        overwrite: bool = True,
    ) -> None:
        """Record who ended the call. With ``overwrite=False`` an earlier record wins."""
        if not overwrite and self.disconnect.disconnected_by is not None:
            return
        self.disconnect = DisconnectInfo(
            disconnected_by=by,
            disconnect_reason=reason,
            ended_by_agent=ended_by_agent,
        )

    def reset_playback(self) -> None:
        self.mark_queue.clear()
        self.last_assistant_item = None
        self.response_start_timestamp = None

    @property
    def duration_seconds(self) -> int:
        end = self.ended_at or datetime.now(UTC)
        return round((end - self.started_at).total_seconds())
