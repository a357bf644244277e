"""Audio helpers for Twilio Media Streams.

Twilio Media Streams: mulaw 8kHz mono (base64 encoded)
OpenAI Realtime:      audio/pcmu passthrough (same format, no transcoding)
Whisper fallback:     PCM16 WAV, built here from captured caller audio
"""

import base64
import io
import wave

import numpy as np

TWILIO_SAMPLE_RATE = 8000


def base64_decode_audio(payload: str) -> bytes:
    """Decode a base64 media payload from Twilio."""
    return base64.b64decode(payload)


def mulaw_to_pcm16(mulaw_data: bytes) -> bytes:
    """Decode G.711 mu-law bytes to little-endian PCM16 at the same rate."""
    data = np.frombuffer(mulaw_data, dtype=np.uint8)

    mu = np.bitwise_not(data)
    sign = np.bitwise_and(mu, 0x80)
    exponent = np.right_shift(np.bitwise_and(mu, 0x70), 4).astype(np.int32)
    mantissa = np.bitwise_and(mu, 0x0F).astype(np.int32)

    magnitude = ((mantissa << 3) + 0x84) << exponent
    pcm = np.where(sign != 0, 0x84 - magnitude, magnitude - 0x84)

    return pcm.astype("<i2").tobytes()


def pcm16_to_wav(pcm_data: bytes, sample_rate: int = TWILIO_SAMPLE_RATE) -> bytes:
    """Wrap raw PCM16 mono audio in a WAV container."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(pcm_data)
    return buf.getvalue()


def payloads_to_wav(payloads: list[str]) -> bytes:
    """Join base64 mulaw payloads into one 8kHz PCM16 WAV file."""
    mulaw = b"".join(base64_decode_audio(p) for p in payloads)
    return pcm16_to_wav(mulaw_to_pcm16(mulaw))
