"""Tests for Whisper transcription of caller speech."""

import base64
from unittest.mock import MagicMock

import pytest

from voice_bridge.stt.base import TranscriptionResult
from voice_bridge.stt.whisper_stt import WhisperSTT

SILENCE = base64.b64encode(b"\xff" * 160).decode()


class TestWhisperSTTTranscribe:
    @pytest.mark.asyncio
    async def test_transcribe_returns_result(self):
        stt = WhisperSTT(api_key="sk-test")
        mock_client = MagicMock()
        mock_client.audio.transcriptions.create.return_value = MagicMock(text=" I need my rates updated ")
        stt._client = mock_client

        result = await stt.transcribe([SILENCE, SILENCE])

        assert isinstance(result, TranscriptionResult)
        assert result.text == "I need my rates updated"
        assert result.language == "en"

        kwargs = mock_client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["file"].name == "audio.wav"
        assert kwargs["file"].getvalue().startswith(b"RIFF")

    @pytest.mark.asyncio
    async def test_no_audio(self):
        stt = WhisperSTT(api_key="sk-test")
        stt._client = MagicMock()

        assert await stt.transcribe([]) is None
        stt._client.audio.transcriptions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_transcription(self):
        stt = WhisperSTT(api_key="sk-test")
        stt._client = MagicMock()
        stt._client.audio.transcriptions.create.return_value = MagicMock(text="   ")

        assert await stt.transcribe([SILENCE]) is None

    @pytest.mark.asyncio
    async def test_api_error_returns_none(self):
        stt = WhisperSTT(api_key="sk-test")
        stt._client = MagicMock()
        stt._client.audio.transcriptions.create.side_effect = RuntimeError("Service unavailable")

        assert await stt.transcribe([SILENCE]) is None


class TestWhisperSTTLifecycle:
    @pytest.mark.asyncio
    async def test_close_cleans_up(self):
        stt = WhisperSTT(api_key="sk-test")
        mock_client = MagicMock()
        stt._client = mock_client

        await stt.close()

        mock_client.close.assert_called_once()
        assert stt._client is None

    @pytest.mark.asyncio
    async def test_close_no_client(self):
        stt = WhisperSTT(api_key="sk-test")
        await stt.close()
        assert stt._client is None
