"""Abstract base class for caller speech transcription."""

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass
class TranscriptionResult:
    """Final transcription result."""
    text: str
    language: str = "en"


class BaseSTT(ABC):
    """Transcribes one caller utterance captured from the media stream."""

    @abstractmethod
    async def transcribe(self, payloads: list[str]) -> TranscriptionResult | None:
        """Transcribe an utterance.

        Args:
            payloads: Base64 mulaw 8kHz payloads, in arrival order.

        Returns:
            The transcription, or None when nothing intelligible was said.
        """

    @abstractmethod
    async def close(self) -> None:
        """Clean up resources."""
