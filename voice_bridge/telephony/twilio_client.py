"""Twilio REST operations on a live call: hang up, record, apologize.

The Twilio SDK is synchronous, so each request runs in the default executor.
Every operation reports success as a bool and logs failures.
"""

import asyncio

from twilio.base.exceptions import TwilioException
from twilio.rest import Client
from twilio.twiml.voice_response import VoiceResponse

from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class TwilioService:
    def __init__(self, account_sid: str, auth_token: str, client: Client | None = None):
        self._client = client or Client(account_sid, auth_token)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def hang_up(self, call_sid: str) -> bool:
        try:
            await self._run(self._hang_up_sync, call_sid)
        except (TwilioException, OSError) as e:
            logger.error("twilio_hangup_failed", call_sid=call_sid, error=str(e))
            return False
        logger.info("twilio_call_completed", call_sid=call_sid)
        return True

    async def start_recording(self, call_sid: str) -> str | None:
        """Start a dual-channel recording. Returns the recording SID."""
        try:
            recording = await self._run(self._record_sync, call_sid)
        except (TwilioException, OSError) as e:
            logger.error("twilio_recording_failed", call_sid=call_sid, error=str(e))
            return None
        logger.info("twilio_recording_started", call_sid=call_sid, recording_sid=recording.sid)
        return recording.sid

    async def announce_and_hang_up(self, call_sid: str, message: str, voice: str | None = None) -> bool:
        """Replace the call's TwiML with ``<Say>`` then ``<Hangup/>``."""
        response = VoiceResponse()
        if voice:
            response.say(message, voice=voice)
        else:
            response.say(message)
        response.hangup()
        try:
            await self._run(self._update_twiml_sync, call_sid, str(response))
        except (TwilioException, OSError) as e:
            logger.error("twilio_announce_failed", call_sid=call_sid, error=str(e))
            return False
        logger.info("twilio_announced_and_hung_up", call_sid=call_sid)
        return True

    def _hang_up_sync(self, call_sid: str) -> None:
        self._client.calls(call_sid).update(status="completed")

    def _record_sync(self, call_sid: str):
        return self._client.calls(call_sid).recordings.create(recording_channels="dual")

    def _update_twiml_sync(self, call_sid: str, twiml: str) -> None:
        self._client.calls(call_sid).update(twiml=twiml)
