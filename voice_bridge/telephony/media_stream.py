"""Twilio Media Streams WebSocket handler: CORE orchestration component.

Bridges one phone call between Twilio and the OpenAI Realtime API:
  Caller audio -> Realtime (speech-to-speech, tools) -> Caller playback

How a call is processed:
- Two reader tasks (Twilio, Realtime) turn raw frames into typed events and
  put them on one queue. A single loop handles the queue one event at a time
  through a dispatch table, so call state needs no locks.
- Slow work (directory lookup, tool calls, Whisper, recording) runs in
  tracked background tasks and never holds up audio relay.
- Barge-in: when the caller starts talking over the agent, Twilio playback is
  cleared and the provider is told how much of the reply was actually heard.
- The call record is assembled, stored and emailed exactly once.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from voice_bridge.conversation.inactivity import InactivityMonitor
from voice_bridge.conversation.manager import register_call, unregister_call
from voice_bridge.conversation.models import DisconnectedBy, PhoneLookup, Role
from voice_bridge.conversation.session import CallSession
from voice_bridge.conversation.transcript import (
    TranscriptAssembler,
    backup_filename,
    transcript_filename,
)
from voice_bridge.errors import ProtocolError, ProviderConnectionError, StorageError
from voice_bridge.llm import commands
from voice_bridge.llm.events import (
    AssistantTranscriptDone,
    AudioDelta,
    AudioDone,
    FunctionCallDone,
    InputTranscriptDone,
    ProviderClosed,
    ProviderError,
    RateLimitsUpdated,
    ResponseDone,
    SessionCreated,
    SessionReady,
    SpeechStarted,
    SpeechStopped,
    parse_realtime_message,
)
from voice_bridge.llm.realtime_client import RealtimeClient
from voice_bridge.llm.system_prompt import PROVIDER_FAILURE_APOLOGY
from voice_bridge.llm.tools import TOOLS, ToolDispatcher
from voice_bridge.services.agent_settings import AgentSettings
from voice_bridge.services.directory import PhoneDirectory
from voice_bridge.services.email import EmailNotifier
from voice_bridge.services.product_info import ProductInfoClient
from voice_bridge.services.storage import StorageService
from voice_bridge.stt.base import BaseSTT
from voice_bridge.telephony.call_store import PendingCallStore
from voice_bridge.telephony.events import (
    ConnectedEvent,
    MarkEvent,
    MediaEvent,
    StartEvent,
    StopEvent,
    TelephonyClosed,
    parse_twilio_message,
)
from voice_bridge.telephony.twilio_client import TwilioService
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

MARK_NAME = "responsePart"

# Upper bound on waiting for lookups and transcriptions when the call ends
FINALIZE_WAIT_SECONDS = 5.0

_QUERY_CALLER_KEYS = ("from", "From", "caller", "Caller")
_QUERY_CALLEE_KEYS = ("to", "To")
_QUERY_CALL_SID_KEYS = ("callSid", "CallSid", "callsid")


@dataclass(frozen=True)
class InactivityExpired:
    """Synthetic: the inactivity timer of the given generation ran out."""
    generation: int


def _first_present(mapping, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if value:
            return str(value)
    return None


class MediaStreamHandler:
    """Handles a single Twilio Media Stream WebSocket connection."""

    def __init__(
        self,
        websocket: WebSocket,
        realtime: RealtimeClient,
        agent: AgentSettings,
        product_info: ProductInfoClient,
        storage: StorageService,
        *,
        stt: BaseSTT | None = None,
        directory: PhoneDirectory | None = None,
        email: EmailNotifier | None = None,
        twilio: TwilioService | None = None,
        call_store: PendingCallStore | None = None,
        first_warning_seconds: float = 30.0,
        final_warning_seconds: float = 45.0,
        hangup_seconds: float = 60.0,
        end_call_grace_seconds: float = 8.0,
        record_calls: bool = True,
        apology_voice: str | None = None,
    ):
        self._ws = websocket
        self._realtime = realtime
        self._agent = agent
        self._storage = storage
        self._stt = stt
        self._directory = directory
        self._email = email
        self._twilio = twilio
        self._call_store = call_store
        self._grace_seconds = end_call_grace_seconds
        self._record_calls = record_calls
        self._apology_voice = apology_voice

        self.session = CallSession()
        self._registry_key = f"call-{id(self.session)}"
        self._queue: asyncio.Queue = asyncio.Queue()
        self._monitor = InactivityMonitor(
            on_expired=lambda generation: self._queue.put_nowait(InactivityExpired(generation)),
            first_warning=first_warning_seconds,
            final_warning=final_warning_seconds,
            hangup=hangup_seconds,
        )
        self._tools = ToolDispatcher(
            send=self._realtime.send,
            product_info=product_info,
            on_end_call=self._schedule_hang_up,
        )
        self._assembler = TranscriptAssembler(agent.pricing)

        self._readers: list[asyncio.Task] = []
        self._tool_tasks: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._grace_task: asyncio.Task | None = None

        self._closing = False
        self._telephony_closed = False
        self._finalized = False

        self._dispatch: dict[type, Callable[[Any], Awaitable[None]]] = {
            ConnectedEvent: self._on_connected,
            StartEvent: self._on_start,
            MediaEvent: self._on_media,
            MarkEvent: self._on_mark,
            StopEvent: self._on_stop,
            TelephonyClosed: self._on_telephony_closed,
            SessionCreated: self._on_session_created,
            SessionReady: self._on_session_ready,
            AudioDelta: self._on_audio_delta,
            AudioDone: self._on_audio_done,
            AssistantTranscriptDone: self._on_assistant_transcript,
            InputTranscriptDone: self._on_input_transcript,
            FunctionCallDone: self._on_function_call,
            SpeechStarted: self._on_speech_started,
            SpeechStopped: self._on_speech_stopped,
            ResponseDone: self._on_response_done,
            RateLimitsUpdated: self._on_rate_limits,
            ProviderError: self._on_provider_error,
            ProviderClosed: self._on_provider_closed,
            InactivityExpired: self._on_inactivity_expired,
        }

    @property
    def finalized(self) -> bool:
        return self._finalized

    async def handle(self) -> None:
        """Run the call until either leg ends, then finalize it."""
        self._apply_query_params()
        self._monitor.call_sid = self.session.call_sid
        register_call(self._registry_key, self.session)
        logger.info(
            "media_stream_accepted",
            call_sid=self.session.call_sid,
            caller=self.session.caller_number,
        )
        try:
            self._readers = [
                asyncio.create_task(self._read_telephony(), name="twilio-reader"),
                asyncio.create_task(self._read_provider(), name="realtime-reader"),
            ]
            await self._run_loop()
        finally:
            await self.finalize()

    async def _run_loop(self) -> None:
        while not self._closing:
            event = await self._queue.get()
            handler = self._dispatch.get(type(event))
            if handler is None:
                continue
            try:
                await handler(event)
            except Exception as e:
                logger.exception(
                    "event_handler_error",
                    call_sid=self.session.call_sid,
                    event_type=type(event).__name__,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Readers

    async def _read_telephony(self) -> None:
        reason = "disconnected"
        try:
            async for message in self._ws.iter_text():
                try:
                    event = parse_twilio_message(message)
                except ProtocolError as e:
                    logger.warning("twilio_message_dropped", error=e.detail)
                    continue
                if event is None:
                    continue
                if isinstance(event, StopEvent):
                    self._telephony_closed = True
                self._queue.put_nowait(event)
        except WebSocketDisconnect:
            logger.info("media_stream_disconnected", call_sid=self.session.call_sid)
        except Exception as e:
            reason = "error"
            logger.error(
                "media_stream_error",
                call_sid=self.session.call_sid,
                error=str(e),
                error_type=type(e).__name__,
            )
        self._telephony_closed = True
        self._queue.put_nowait(TelephonyClosed(reason))

    async def _read_provider(self) -> None:
        try:
            await self._realtime.connect()
            await self._realtime.send(
                commands.session_update(
                    instructions=self._agent.system_message,
                    voice=self._agent.voice,
                    tools=TOOLS,
                    model=self._realtime.model,
                    input_transcription_model=(
                        "whisper-1" if self._agent.use_realtime_transcription else None
                    ),
                )
            )
        except ProviderConnectionError as e:
            logger.error("realtime_connect_failed", call_sid=self.session.call_sid, error=e.detail)
            self._queue.put_nowait(ProviderClosed("connect_failed"))
            return

        reason = "closed"
        try:
            async for message in self._realtime.messages():
                try:
                    event = parse_realtime_message(message)
                except ProtocolError as e:
                    logger.warning("realtime_message_dropped", error=e.detail)
                    continue
                if event is not None:
                    self._queue.put_nowait(event)
        except Exception as e:
            reason = "error"
            logger.error(
                "realtime_reader_error",
                call_sid=self.session.call_sid,
                error=str(e),
                error_type=type(e).__name__,
            )
        self._queue.put_nowait(ProviderClosed(reason))

    # ------------------------------------------------------------------
    # Twilio events

    async def _on_connected(self, event: ConnectedEvent) -> None:
        logger.info("media_stream_connected", call_sid=self.session.call_sid)

    async def _on_start(self, event: StartEvent) -> None:
        s = self.session
        s.stream_sid = event.stream_sid
        s.call_sid = event.call_sid or s.call_sid
        s.caller_number = event.caller or s.caller_number
        s.callee_number = event.callee or s.callee_number

        if self._call_store is not None and s.webhook_body is None:
            s.webhook_body = self._call_store.pop(s.call_sid)
        if s.webhook_body:
            body = s.webhook_body
            s.caller_number = s.caller_number or body.get("From") or body.get("from")
            s.callee_number = s.callee_number or body.get("To") or body.get("to")
            s.call_sid = s.call_sid or body.get("CallSid") or body.get("callSid")

        self._monitor.call_sid = s.call_sid
        logger.info(
            "media_stream_start",
            call_sid=s.call_sid,
            stream_sid=s.stream_sid,
            caller=s.caller_number,
            callee=s.callee_number,
        )

        s.latest_media_timestamp = 0
        s.response_start_timestamp = None

        self._spawn(self._lookup_caller(), "directory-lookup")
        await self._flush_pending_audio()
        await self._maybe_send_greeting()
        if self._twilio is not None and self._record_calls and s.call_sid:
            self._spawn(self._start_recording(), "start-recording")

    async def _on_media(self, event: MediaEvent) -> None:
        s = self.session
        s.latest_media_timestamp = event.timestamp
        if event.track != "inbound":
            return
        if s.capturing_caller_audio:
            s.caller_audio.append(event.payload)
        if self._realtime.is_open:
            await self._send_provider(commands.input_audio_append(event.payload))

    async def _on_mark(self, event: MarkEvent) -> None:
        if self.session.mark_queue:
            self.session.mark_queue.popleft()

    async def _on_stop(self, event: StopEvent) -> None:
        logger.info("media_stream_stop", call_sid=self.session.call_sid)
        self._telephony_closed = True
        self._closing = True

    async def _on_telephony_closed(self, event: TelephonyClosed) -> None:
        self._telephony_closed = True
        self._closing = True

    # ------------------------------------------------------------------
    # Realtime events

    async def _on_session_created(self, event: SessionCreated) -> None:
        logger.info("realtime_session_created", call_sid=self.session.call_sid)

    async def _on_session_ready(self, event: SessionReady) -> None:
        self.session.provider_ready = True
        await self._maybe_send_greeting()

    async def _on_audio_delta(self, event: AudioDelta) -> None:
        s = self.session
        if not s.stream_sid:
            s.pending_audio.append(event.delta)
            if event.item_id:
                s.last_assistant_item = event.item_id
            return
        await self._send_audio(event.delta, event.item_id)

    async def _on_audio_done(self, event: AudioDone) -> None:
        self._monitor.arm()

    async def _on_assistant_transcript(self, event: AssistantTranscriptDone) -> None:
        last = self.session.last_entry()
        if last and last.role == Role.ASSISTANT and last.content == event.transcript:
            return
        self.session.add_entry(Role.ASSISTANT, event.transcript)
        logger.info("assistant_said", call_sid=self.session.call_sid, text=event.transcript[:100])

    async def _on_input_transcript(self, event: InputTranscriptDone) -> None:
        if not self._agent.use_realtime_transcription:
            return
        self.session.add_entry(Role.USER, event.transcript)
        logger.info("caller_said", call_sid=self.session.call_sid, text=event.transcript[:100])

    async def _on_function_call(self, event: FunctionCallDone) -> None:
        self._spawn(self._tools.dispatch(self.session, event), f"tool-{event.name}", tool=True)

    async def _on_speech_started(self, event: SpeechStarted) -> None:
        self._monitor.reset()
        await self._handle_barge_in()
        if self._stt is not None and not self._agent.use_realtime_transcription:
            self.session.capturing_caller_audio = True
            self.session.caller_audio = []

    async def _on_speech_stopped(self, event: SpeechStopped) -> None:
        s = self.session
        if not s.capturing_caller_audio:
            return
        s.capturing_caller_audio = False
        payloads, s.caller_audio = s.caller_audio, []
        if payloads:
            self._spawn(self._transcribe_caller(payloads), "whisper")

    async def _on_response_done(self, event: ResponseDone) -> None:
        if not (event.input_tokens or event.output_tokens):
            return
        usage = self.session.usage
        usage.input_tokens += event.input_tokens
        usage.output_tokens += event.output_tokens
        usage.source = "provider"

    async def _on_rate_limits(self, event: RateLimitsUpdated) -> None:
        logger.debug("realtime_rate_limits", limits=list(event.rate_limits))

    async def _on_provider_error(self, event: ProviderError) -> None:
        logger.error(
            "realtime_error",
            call_sid=self.session.call_sid,
            code=event.code,
            error=event.message,
        )

    async def _on_provider_closed(self, event: ProviderClosed) -> None:
        self._closing = True
        if self._telephony_closed or self.session.disconnect.ended_by_agent:
            return
        logger.error(
            "realtime_disconnected_mid_call",
            call_sid=self.session.call_sid,
            reason=event.reason,
        )
        self.session.record_disconnect(
            DisconnectedBy.UNKNOWN, "ai_provider_disconnected", overwrite=False
        )
        call_sid = self.session.call_sid
        if self._twilio is not None and call_sid:
            if await self._twilio.announce_and_hang_up(
                call_sid, PROVIDER_FAILURE_APOLOGY, voice=self._apology_voice
            ):
                return
        await self._close_telephony()

    async def _on_inactivity_expired(self, event: InactivityExpired) -> None:
        prompt = self._monitor.expire(event.generation)
        if prompt is None:
            return
        await self._send_provider(commands.user_text(prompt))
        await self._send_provider(commands.response_create())

    # ------------------------------------------------------------------
    # Outbound audio and turn-taking

    async def _maybe_send_greeting(self) -> None:
        s = self.session
        if s.greeting_sent or not s.provider_ready or not s.stream_sid:
            return
        s.greeting_sent = True
        logger.info("greeting_sent", call_sid=s.call_sid)
        await self._send_provider(commands.user_text(self._agent.initial_greeting))
        await self._send_provider(commands.response_create())

    async def _flush_pending_audio(self) -> None:
        s = self.session
        pending, s.pending_audio = s.pending_audio, []
        if pending:
            logger.info("pending_audio_flushed", call_sid=s.call_sid, count=len(pending))
        for delta in pending:
            await self._send_audio(delta, None)

    async def _send_audio(self, payload: str, item_id: str | None) -> None:
        s = self.session
        await self._send_twilio(
            {"event": "media", "streamSid": s.stream_sid, "media": {"payload": payload}}
        )
        if s.response_start_timestamp is None:
            s.response_start_timestamp = s.latest_media_timestamp
        if item_id:
            s.last_assistant_item = item_id
        await self._send_twilio(
            {"event": "mark", "streamSid": s.stream_sid, "mark": {"name": MARK_NAME}}
        )
        s.mark_queue.append(MARK_NAME)

    async def _handle_barge_in(self) -> None:
        s = self.session
        if not s.mark_queue or s.response_start_timestamp is None:
            return
        elapsed = s.latest_media_timestamp - s.response_start_timestamp
        logger.info(
            "barge_in",
            call_sid=s.call_sid,
            item_id=s.last_assistant_item,
            audio_end_ms=elapsed,
        )
        if s.last_assistant_item:
            await self._send_provider(commands.truncate_item(s.last_assistant_item, elapsed))
        await self._send_twilio({"event": "clear", "streamSid": s.stream_sid})
        s.reset_playback()

    # ------------------------------------------------------------------
    # Background work

    def _spawn(self, coro: Coroutine, name: str, tool: bool = False) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        bucket = self._tool_tasks if tool else self._background
        bucket.add(task)
        task.add_done_callback(lambda t: self._task_done(t, bucket))
        return task

    def _task_done(self, task: asyncio.Task, bucket: set) -> None:
        bucket.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "background_task_failed",
                call_sid=self.session.call_sid,
                task=task.get_name(),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def _lookup_caller(self) -> None:
        s = self.session
        if self._directory is None or not s.caller_number:
            s.phone_lookup = PhoneLookup(performed=True, found=False)
            return
        result = await self._directory.lookup(s.caller_number)
        s.phone_lookup = result
        if result.found:
            match = result.matches[0]
            # Tool calls may have landed first; keep what the caller told us
            s.facts.merge(
                {
                    "property_id": s.facts.property_id or match.property_id,
                    "property_name": s.facts.property_name or match.property_name,
                }
            )
            logger.info(
                "phone_lookup_prepopulated",
                call_sid=s.call_sid,
                property_id=s.facts.property_id,
                property_name=s.facts.property_name,
            )

    async def _start_recording(self) -> None:
        recording_sid = await self._twilio.start_recording(self.session.call_sid)
        if recording_sid:
            self.session.recording_sid = recording_sid

    async def _transcribe_caller(self, payloads: list[str]) -> None:
        result = await self._stt.transcribe(payloads)
        if result is not None:
            self.session.add_entry(Role.USER, result.text)
            logger.info("caller_said", call_sid=self.session.call_sid, text=result.text[:100])

    def _schedule_hang_up(self, reason: str) -> None:
        if self._grace_task is not None and not self._grace_task.done():
            return
        self._grace_task = asyncio.create_task(self._hang_up_after_grace(reason), name="end-call")

    async def _hang_up_after_grace(self, reason: str) -> None:
        await asyncio.sleep(self._grace_seconds)
        call_sid = self.session.call_sid
        logger.info("end_call_hanging_up", call_sid=call_sid, reason=reason)
        if self._twilio is not None and call_sid and await self._twilio.hang_up(call_sid):
            return
        await self._close_telephony()
        self._queue.put_nowait(TelephonyClosed("closed_by_agent"))

    # ------------------------------------------------------------------
    # Sending

    async def _send_twilio(self, message: dict) -> None:
        try:
            await self._ws.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.warning(
                "twilio_send_failed",
                call_sid=self.session.call_sid,
                event=message.get("event"),
                error=str(e),
            )

    async def _send_provider(self, message: dict) -> None:
        try:
            await self._realtime.send(message)
        except ProviderConnectionError as e:
            logger.warning(
                "realtime_send_failed",
                call_sid=self.session.call_sid,
                type=message.get("type"),
                error=e.detail,
            )

    async def _close_telephony(self) -> None:
        try:
            await self._ws.close()
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.info("twilio_close_skipped", call_sid=self.session.call_sid, error=str(e))

    # ------------------------------------------------------------------
    # Finalization

    def _apply_query_params(self) -> None:
        params = getattr(self._ws, "query_params", None) or {}
        s = self.session
        s.caller_number = _first_present(params, _QUERY_CALLER_KEYS)
        s.callee_number = _first_present(params, _QUERY_CALLEE_KEYS)
        s.call_sid = _first_present(params, _QUERY_CALL_SID_KEYS)

    def _resolve_disconnect(self) -> None:
        s = self.session
        if s.disconnect.disconnected_by is not None:
            return
        if self._telephony_closed:
            s.record_disconnect(DisconnectedBy.CALLER, "caller_hangup")
        else:
            s.record_disconnect(DisconnectedBy.UNKNOWN, "unknown")

    async def finalize(self) -> None:
        """Tear the call down and persist its record. Runs once."""
        if self._finalized:
            return
        self._finalized = True
        self._closing = True
        s = self.session
        s.ended_at = datetime.now(UTC)

        self._monitor.cancel()
        if self._grace_task is not None:
            self._grace_task.cancel()
        for task in [*self._readers, *self._tool_tasks]:
            task.cancel()

        pending = set(self._background)
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=FINALIZE_WAIT_SECONDS)
            for task in still_running:
                task.cancel()

        try:
            await self._realtime.close()
        except Exception as e:
            logger.warning("realtime_close_failed", call_sid=s.call_sid, error=str(e))

        self._resolve_disconnect()
        logger.info(
            "call_summary",
            call_sid=s.call_sid,
            caller=s.caller_number,
            disconnected_by=s.disconnect.disconnected_by,
            reason=s.disconnect.disconnect_reason,
            routing=s.facts.routing,
        )

        try:
            await self._persist()
        except Exception as e:
            logger.exception("call_persist_failed", call_sid=s.call_sid, error=str(e))
        finally:
            unregister_call(self._registry_key)

    async def _persist(self) -> None:
        s = self.session
        record = self._assembler.build(s)
        payload = record.to_json()
        filename = transcript_filename(s.caller_number, s.callee_number, s.started_at)

        try:
            location = await self._storage.save(filename, payload)
            logger.info("transcript_saved", call_sid=s.call_sid, location=location)
        except StorageError as e:
            logger.error("transcript_save_failed", call_sid=s.call_sid, error=e.detail)

        await self._storage.save_backup(
            backup_filename(s.caller_number, s.call_sid, s.stream_sid), payload
        )

        if self._email is not None:
            await self._email.send_transcript(json.loads(payload), filename)
