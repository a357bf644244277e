"""Twilio incoming call webhook handling.

Returns TwiML that greets the caller and connects the call to our
bidirectional Media Stream WebSocket. Validates Twilio request signatures
when enabled.
"""

from urllib.parse import urlencode

from fastapi import Request
from twilio.request_validator import RequestValidator
from twilio.twiml.voice_response import Connect, VoiceResponse

from voice_bridge.llm.system_prompt import WEBHOOK_FAILURE_MESSAGE
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


def validate_twilio_request(
    request: Request,
    body: dict,
    auth_token: str,
) -> bool:
    """Validate incoming Twilio request signature.

    Args:
        request: FastAPI request object.
        body: Parsed form body as dict (empty for GET webhooks).
        auth_token: Twilio auth token for validation.

    Returns:
        True if the request is valid, False otherwise.
    """
    validator = RequestValidator(auth_token)
    signature = request.headers.get("X-Twilio-Signature", "")
    url = str(request.url)

    is_valid = validator.validate(url, body, signature)
    if not is_valid:
        logger.warning(
            "twilio_invalid_signature",
            url=url,
            signature=signature[:20] + "...",
        )
    return is_valid


def extract_call_identity(body: dict) -> tuple[str, str, str]:
    """Return ``(caller, callee, call_sid)`` from a webhook body, "" when absent."""
    caller = body.get("From") or body.get("from") or ""
    callee = body.get("To") or body.get("to") or ""
    call_sid = body.get("CallSid") or body.get("callSid") or ""
    return str(caller), str(callee), str(call_sid)


def stream_url_for(base_url: str, caller: str, callee: str, call_sid: str) -> str:
    """WebSocket URL of the media stream, carrying the call identity as a query."""
    ws_url = base_url.replace("https://", "wss://").replace("http://", "ws://")
    ws_url = ws_url.rstrip("/")
    query = urlencode({"from": caller, "to": callee, "callSid": call_sid})
    return f"{ws_url}/media-stream?{query}"


def build_media_stream_twiml(
    base_url: str,
    call_sid: str,
    caller: str,
    callee: str = "",
    connecting_message: str = "Connecting your call to Update 2 4 7",
    voice: str | None = None,
) -> str:
    """Build TwiML that announces the connection and starts the Media Stream.

    The TwiML instructs Twilio to:
    1. Say a short connecting message and pause for a second
    2. Connect a bidirectional WebSocket for audio streaming
    3. Pass the call identity (from, to, callSid) as stream parameters

    Args:
        base_url: Public URL of the application (e.g., ngrok URL).
        call_sid: Twilio Call SID.
        caller: Caller phone number.
        callee: Dialed phone number.
        connecting_message: Spoken before the stream connects.
        voice: TwiML ``<Say>`` voice.

    Returns:
        TwiML XML string.
    """
    response = VoiceResponse()
    if voice:
        response.say(connecting_message, voice=voice)
    else:
        response.say(connecting_message)
    response.pause(length=1)

    stream_url = stream_url_for(base_url, caller, callee, call_sid)

    connect = Connect()
    stream = connect.stream(url=stream_url)
    stream.parameter(name="from", value=caller)
    stream.parameter(name="to", value=callee)
    stream.parameter(name="callSid", value=call_sid)

    response.append(connect)

    twiml = str(response)
    logger.info(
        "twilio_twiml_generated",
        call_sid=call_sid,
        caller=caller,
        stream_url=stream_url,
    )
    return twiml


def build_error_twiml() -> str:
    """Safe TwiML for when the webhook itself fails."""
    response = VoiceResponse()
    response.say(WEBHOOK_FAILURE_MESSAGE, voice="alice")
    return str(response)
