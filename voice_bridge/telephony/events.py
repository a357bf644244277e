"""Typed events for the Twilio Media Streams leg.

Raw Twilio frames are parsed once here. Identity fields that Twilio (and our
own TwiML) may carry under different keys and capitalizations are resolved
into a single ``StartEvent`` so nothing downstream inspects raw payloads.
"""

import json
from dataclasses import dataclass, field
from typing import Any

from voice_bridge.errors import ProtocolError


@dataclass(frozen=True)
class ConnectedEvent:
    protocol: str | None = None


@dataclass(frozen=True)
class StartEvent:
    stream_sid: str
    call_sid: str | None = None
    caller: str | None = None
    callee: str | None = None
    custom_parameters: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MediaEvent:
    payload: str
    timestamp: int
    track: str = "inbound"


@dataclass(frozen=True)
class MarkEvent:
    name: str


@dataclass(frozen=True)
class StopEvent:
    call_sid: str | None = None


@dataclass(frozen=True)
class TelephonyClosed:
    """Synthetic: the Twilio WebSocket went away."""
    reason: str = "disconnected"


TelephonyEvent = ConnectedEvent | StartEvent | MediaEvent | MarkEvent | StopEvent

_CALLER_KEYS = ("from", "caller")
_CALLEE_KEYS = ("to", "callee")
_CALL_SID_KEYS = ("callsid", "call_sid")


def _normalize_parameters(raw: Any) -> dict[str, str]:
    """Twilio sends customParameters as a dict; older payloads use a name/value list."""
    params: dict[str, str] = {}
    if isinstance(raw, dict):
        for key, value in raw.items():
            if value not in (None, ""):
                params[str(key).lower()] = str(value)
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict) and item.get("name") and item.get("value"):
                params[str(item["name"]).lower()] = str(item["value"])
    return params


def _first(mapping: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if value:
            return str(value)
    return None


def _parse_start(data: dict) -> StartEvent:
    start = data.get("start")
    if not isinstance(start, dict):
        raise ProtocolError("start event without start payload")

    stream_sid = start.get("streamSid") or data.get("streamSid")
    if not stream_sid:
        raise ProtocolError("start event without streamSid")

    params = _normalize_parameters(start.get("customParameters"))
    params.update(_normalize_parameters(start.get("parameters")))
    top_level = {str(k).lower(): v for k, v in start.items() if isinstance(v, str)}

    return StartEvent(
        stream_sid=str(stream_sid),
        call_sid=_first(params, _CALL_SID_KEYS) or _first(top_level, _CALL_SID_KEYS),
        caller=_first(params, _CALLER_KEYS) or _first(top_level, _CALLER_KEYS),
        callee=_first(params, _CALLEE_KEYS) or _first(top_level, _CALLEE_KEYS),
        custom_parameters=params,
    )


def _parse_media(data: dict) -> MediaEvent:
    media = data.get("media")
    if not isinstance(media, dict) or not isinstance(media.get("payload"), str):
        raise ProtocolError("media event without payload")
    try:
        timestamp = int(media.get("timestamp") or 0)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"media timestamp not an integer: {media.get('timestamp')!r}") from e
    return MediaEvent(
        payload=media["payload"],
        timestamp=timestamp,
        track=str(media.get("track") or "inbound"),
    )


def parse_twilio_message(text: str) -> TelephonyEvent | None:
    """Parse one Twilio frame. Unknown event types yield None.

    Raises:
        ProtocolError: the frame is not valid JSON or misses required fields.
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"invalid JSON from Twilio: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Twilio frame is not an object")

    event = data.get("event")
    if event == "media":
        return _parse_media(data)
    if event == "mark":
        mark = data.get("mark") or {}
        return MarkEvent(name=str(mark.get("name") or ""))
    if event == "start":
        return _parse_start(data)
    if event == "stop":
        stop = data.get("stop") or {}
        return StopEvent(call_sid=stop.get("callSid"))
    if event == "connected":
        return ConnectedEvent(protocol=data.get("protocol"))
    return None
