"""FastAPI application entry point for the Update247 phone agent."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from voice_bridge.conversation.manager import get_active_count
from voice_bridge.llm.realtime_client import RealtimeClient
from voice_bridge.services.agent_settings import AgentSettings, load_agent_settings
from voice_bridge.services.directory import PhoneDirectory
from voice_bridge.services.email import EmailNotifier
from voice_bridge.services.product_info import ProductInfoClient
from voice_bridge.services.storage import StorageService
from voice_bridge.stt.whisper_stt import WhisperSTT
from voice_bridge.telephony.call_store import PendingCallStore
from voice_bridge.telephony.media_stream import MediaStreamHandler
from voice_bridge.telephony.twilio_client import TwilioService
from voice_bridge.telephony.twilio_handler import (
    build_error_twiml,
    build_media_stream_twiml,
    extract_call_identity,
    validate_twilio_request,
)
from voice_bridge.utils.logging import get_logger, setup_logging

# Lazy import settings to allow importing the app without .env during tests
_settings = None


def _get_settings():
    global _settings
    if _settings is None:
        from voice_bridge.config import get_settings
        _settings = get_settings()
    return _settings


logger = get_logger(__name__)

# Global service instances (initialized during startup)
_storage: StorageService | None = None
_agent: AgentSettings | None = None
_product_info: ProductInfoClient | None = None
_stt: WhisperSTT | None = None
_email: EmailNotifier | None = None
_twilio: TwilioService | None = None
_directory: PhoneDirectory | None = None
_call_store: PendingCallStore | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler: initialize and clean up services."""
    global _storage, _agent, _product_info, _stt, _email, _twilio, _directory, _call_store

    settings = _get_settings()
    setup_logging(settings.log_level)
    logger.info(
        "app_starting",
        gcs_bucket=settings.gcs_bucket,
        twilio_configured=settings.twilio_configured,
        email_enabled=settings.email_enabled,
    )

    _storage = StorageService(settings.gcs_bucket, settings.call_history_dir)
    _agent = await load_agent_settings(_storage, settings)
    _product_info = ProductInfoClient(
        pricing_url=settings.pricing_url,
        screenshots_url=settings.screenshots_url,
        timeout=settings.http_timeout_seconds,
    )
    _directory = PhoneDirectory(_storage, settings.phone_mappings_file)
    _call_store = PendingCallStore()
    _email = EmailNotifier.from_settings(settings)

    if not _agent.use_realtime_transcription:
        _stt = WhisperSTT(api_key=settings.openai_api_key)

    if settings.twilio_configured:
        _twilio = TwilioService(settings.twilio_account_sid, settings.twilio_auth_token)
    else:
        logger.info("twilio_rest_disabled", reason="credentials not set")

    yield

    # Shutdown
    logger.info("app_shutting_down")
    await _product_info.close()
    if _stt is not None:
        await _stt.close()
    logger.info("app_shutdown_complete")


app = FastAPI(
    title="Update247 Voice Agent",
    description="AI phone agent bridging Twilio Media Streams and the OpenAI Realtime API",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def index():
    return {
        "message": "Update247 voice agent is running",
        "endpoints": {
            "incoming_call": "/incoming-call",
            "media_stream": "/media-stream",
            "health": "/health",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "update247-voice-agent",
        "active_calls": get_active_count(),
    }


@app.api_route("/incoming-call", methods=["GET", "POST"])
async def incoming_call(request: Request):
    """Handle an incoming Twilio phone call.

    Parks the webhook body for the media stream and returns TwiML that
    connects the call to a bidirectional Media Stream WebSocket.
    """
    settings = _get_settings()
    try:
        if request.method == "POST":
            form = await request.form()
            body = dict(form)
        else:
            body = dict(request.query_params)

        if settings.validate_twilio_signature and settings.twilio_auth_token:
            signed_body = body if request.method == "POST" else {}
            if not validate_twilio_request(request, signed_body, settings.twilio_auth_token):
                logger.warning("incoming_call_invalid_signature")
                return Response(content="Forbidden", status_code=403)

        caller, callee, call_sid = extract_call_identity(body)
        logger.info("incoming_call", call_sid=call_sid, caller=caller, to=callee)

        if call_sid and _call_store is not None:
            _call_store.put(call_sid, body)

        base_url = settings.public_base_url or str(request.base_url)
        twiml = build_media_stream_twiml(
            base_url=base_url,
            call_sid=call_sid,
            caller=caller,
            callee=callee,
            connecting_message=settings.connecting_message,
            voice=settings.connecting_voice,
        )
    except Exception as e:
        logger.exception("incoming_call_failed", error=str(e))
        twiml = build_error_twiml()

    return Response(content=twiml, media_type="application/xml")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket):
    """WebSocket endpoint for Twilio Media Streams.

    Handles bidirectional audio for a single phone call.
    """
    await websocket.accept()

    settings = _get_settings()
    agent = _agent or AgentSettings.from_settings(settings)

    realtime = RealtimeClient(
        api_key=settings.openai_api_key,
        url=settings.openai_realtime_url,
        model=settings.openai_realtime_model,
        temperature=agent.temperature,
        call_sid=websocket.query_params.get("callSid"),
    )

    handler = MediaStreamHandler(
        websocket=websocket,
        realtime=realtime,
        agent=agent,
        product_info=_product_info,
        storage=_storage,
        stt=_stt,
        directory=_directory,
        email=_email,
        twilio=_twilio,
        call_store=_call_store,
        first_warning_seconds=settings.inactivity_first_warning_seconds,
        final_warning_seconds=settings.inactivity_final_warning_seconds,
        hangup_seconds=settings.inactivity_hangup_seconds,
        end_call_grace_seconds=settings.end_call_grace_seconds,
        record_calls=settings.record_calls,
        apology_voice=settings.connecting_voice,
    )

    await handler.handle()


if __name__ == "__main__":
    import uvicorn

    settings = _get_settings()
    uvicorn.run(
        "voice_bridge.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
