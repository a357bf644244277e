"""Webhook bodies waiting for their media stream to connect.

The incoming-call webhook and the media stream WebSocket are separate
requests; the webhook body is parked here under the ``CallSid`` and picked
up once when the stream starts. Entries nobody claims expire after a TTL.
"""

import time
from collections.abc import Callable
from typing import Any

from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 300.0


class PendingCallStore:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, dict[str, Any]]] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._entries)

    def put(self, call_sid: str, body: dict[str, Any]) -> None:
        self._evict_expired()
        self._entries[call_sid] = (self._clock(), dict(body))

    def pop(self, call_sid: str | None) -> dict[str, Any] | None:
        """Return and forget the body for ``call_sid``; None if absent or expired."""
        self._evict_expired()
        if not call_sid:
            return None
        entry = self._entries.pop(call_sid, None)
        return entry[1] if entry else None

    def _evict_expired(self) -> None:
        cutoff = self._clock() - self._ttl
        expired = [sid for sid, (stored_at, _) in self._entries.items() if stored_at < cutoff]
        for sid in expired:
            del self._entries[sid]
        if expired:
            logger.info("pending_calls_expired", count=len(expired))
