"""Whisper transcription of caller speech.

Used when provider-side input transcription is disabled: the media stream
handler captures the caller's mulaw frames between speech-started and
speech-stopped and hands them here so the call log has the caller's words.
"""

import asyncio
import io

from openai import OpenAI

from voice_bridge.audio.transcoder import payloads_to_wav
from voice_bridge.stt.base import BaseSTT, TranscriptionResult
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class WhisperSTT(BaseSTT):
    """OpenAI Whisper API transcription."""

    def __init__(self, api_key: str, language: str = "en", model: str = "whisper-1"):
        self._api_key = api_key
        self._language = language
        self._model = model
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    async def transcribe(self, payloads: list[str]) -> TranscriptionResult | None:
        if not payloads:
            logger.debug("whisper_no_audio")
            return None

        loop = asyncio.get_running_loop()

        def _do_transcribe() -> str:
            wav_file = io.BytesIO(payloads_to_wav(payloads))
            wav_file.name = "audio.wav"
            response = self._get_client().audio.transcriptions.create(
                model=self._model,
                file=wav_file,
                language=self._language,
            )
            return response.text or ""

        try:
            text = await loop.run_in_executor(None, _do_transcribe)
        except Exception as e:
            logger.error("whisper_transcription_failed", error=str(e), chunks=len(payloads))
            return None

        text = text.strip()
        if not text:
            logger.info("whisper_empty_transcription")
            return None

        return TranscriptionResult(text=text, language=self._language)

    async def close(self) -> None:
        """Clean up resources."""
        if self._client is not None:
            self._client.close()
        self._client = None
        logger.info("whisper_stt_closed")
