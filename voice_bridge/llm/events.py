"""Typed events for the OpenAI Realtime leg.

The Realtime API has renamed several server events between the beta and GA
versions (``response.audio.delta`` vs ``response.output_audio.delta`` and so
on). Both spellings map to the same event class here.
"""

import json
from dataclasses import dataclass

from voice_bridge.errors import ProtocolError


@dataclass(frozen=True)
class SessionCreated:
    session_id: str | None = None


@dataclass(frozen=True)
class SessionReady:
    """The provider acknowledged our session configuration."""
    session_id: str | None = None


@dataclass(frozen=True)
class AudioDelta:
    delta: str
    item_id: str | None = None
    response_id: str | None = None


@dataclass(frozen=True)
class AudioDone:
    item_id: str | None = None


@dataclass(frozen=True)
class AssistantTranscriptDone:
    transcript: str
    item_id: str | None = None


@dataclass(frozen=True)
class InputTranscriptDone:
    transcript: str
    item_id: str | None = None


@dataclass(frozen=True)
class FunctionCallDone:
    name: str
    call_id: str
    arguments: str = "{}"


@dataclass(frozen=True)
class SpeechStarted:
    audio_start_ms: int | None = None
    item_id: str | None = None


@dataclass(frozen=True)
class SpeechStopped:
    audio_end_ms: int | None = None


@dataclass(frozen=True)
class ResponseDone:
    status: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class RateLimitsUpdated:
    rate_limits: tuple[dict, ...] = ()


@dataclass(frozen=True)
class ProviderError:
    message: str
    code: str | None = None


@dataclass(frozen=True)
class ProviderClosed:
    """Synthetic: the provider connection ended or could not be opened."""
    reason: str = "closed"


RealtimeEvent = (
    SessionCreated
    | SessionReady
    | AudioDelta
    | AudioDone
    | AssistantTranscriptDone
    | InputTranscriptDone
    | FunctionCallDone
    | SpeechStarted
    | SpeechStopped
    | ResponseDone
    | RateLimitsUpdated
    | ProviderError
)

_AUDIO_DELTA = {"response.output_audio.delta", "response.audio.delta"}
_AUDIO_DONE = {"response.output_audio.done", "response.audio.done"}
_AUDIO_TRANSCRIPT_DONE = {
    "response.output_audio_transcript.done",
    "response.audio_transcript.done",
}
_INPUT_TRANSCRIPT_DONE = {
    "conversation.item.input_audio_transcription.completed",
    "input_audio_transcription.done",
    "input_audio_transcript.done",
}


def _usage(data: dict) -> tuple[int, int]:
    usage = (data.get("response") or {}).get("usage") or {}
    return int(usage.get("input_tokens") or 0), int(usage.get("output_tokens") or 0)


def parse_realtime_message(text: str | bytes) -> RealtimeEvent | None:
    """Parse one server event. Event types we do not act on yield None.

    Raises:
        ProtocolError: the message is not JSON or misses required fields.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid JSON from provider: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("provider message is not an object")

    event_type = data.get("type")

    if event_type in _AUDIO_DELTA:
        delta = data.get("delta")
        if not isinstance(delta, str):
            raise ProtocolError(f"{event_type} without delta")
        if not delta:
            return None
        return AudioDelta(
            delta=delta,
            item_id=data.get("item_id"),
            response_id=data.get("response_id"),
        )

    if event_type == "input_audio_buffer.speech_started":
        return SpeechStarted(
            audio_start_ms=data.get("audio_start_ms"), item_id=data.get("item_id")
        )
    if event_type == "input_audio_buffer.speech_stopped":
        return SpeechStopped(audio_end_ms=data.get("audio_end_ms"))

    if event_type in _AUDIO_DONE:
        return AudioDone(item_id=data.get("item_id"))

    if event_type in _AUDIO_TRANSCRIPT_DONE:
        transcript = (data.get("transcript") or "").strip()
        return AssistantTranscriptDone(transcript, data.get("item_id")) if transcript else None

    if event_type in _INPUT_TRANSCRIPT_DONE:
        transcript = (data.get("transcript") or data.get("text") or "").strip()
        return InputTranscriptDone(transcript, data.get("item_id")) if transcript else None

    if event_type == "response.function_call_arguments.done":
        name = data.get("name")
        call_id = data.get("call_id")
        if not name or not call_id:
            raise ProtocolError("function call without name or call_id")
        return FunctionCallDone(name=name, call_id=call_id, arguments=data.get("arguments") or "{}")

    if event_type == "response.done":
        input_tokens, output_tokens = _usage(data)
        return ResponseDone(
            status=(data.get("response") or {}).get("status"),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    if event_type == "session.updated":
        return SessionReady(session_id=(data.get("session") or {}).get("id"))
    if event_type == "session.created":
        return SessionCreated(session_id=(data.get("session") or {}).get("id"))

    if event_type == "rate_limits.updated":
        return RateLimitsUpdated(rate_limits=tuple(data.get("rate_limits") or ()))

    if event_type == "error":
        error = data.get("error") or {}
        return ProviderError(message=str(error.get("message") or "unknown error"), code=error.get("code"))

    return None
