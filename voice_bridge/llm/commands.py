"""Client events sent to the OpenAI Realtime API."""

import json
from typing import Any


def session_update(
    instructions: str,
    voice: str,
    tools: list[dict],
    model: str = "gpt-realtime",
    input_transcription_model: str | None = None,
) -> dict:
    """Session configuration: mulaw in/out so Twilio audio passes through untouched."""
    audio_input: dict[str, Any] = {
        "format": {"type": "audio/pcmu"},
        "turn_detection": {"type": "server_vad"},
    }
    if input_transcription_model:
        audio_input["transcription"] = {"model": input_transcription_model}

    return {
        "type": "session.update",
        "session": {
            "type": "realtime",
            "model": model,
            "output_modalities": ["audio"],
            "audio": {
                "input": audio_input,
                "output": {"format": {"type": "audio/pcmu"}, "voice": voice},
            },
            "instructions": instructions,
            "tools": tools,
            "tool_choice": "auto",
        },
    }


def user_text(text: str) -> dict:
    """A user-role text item (greeting directive, system nudges)."""
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "user",
            "content": [{"type": "input_text", "text": text}],
        },
    }


def function_call_output(call_id: str, output: dict) -> dict:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "function_call_output",
            "call_id": call_id,
            "output": json.dumps(output),
        },
    }


def truncate_item(item_id: str, audio_end_ms: int) -> dict:
    """Tell the provider how much of an assistant item the caller actually heard."""
    return {
        "type": "conversation.item.truncate",
        "item_id": item_id,
        "content_index": 0,
        "audio_end_ms": max(0, int(audio_end_ms)),
    }


def input_audio_append(payload: str) -> dict:
    return {"type": "input_audio_buffer.append", "audio": payload}


def response_create() -> dict:
    return {"type": "response.create"}
