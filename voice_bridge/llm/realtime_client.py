"""OpenAI Realtime WebSocket client.

A thin transport: it opens the connection, sends JSON client events and
yields raw server messages. Parsing happens in ``voice_bridge.llm.events`` and
all conversation logic lives in the media stream handler.
"""

import json
from collections.abc import AsyncIterator
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from voice_bridge.errors import ProviderConnectionError
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

_MAX_MESSAGE_BYTES = 16 * 1024 * 1024


class RealtimeClient:
    """One Realtime API connection, used by exactly one call."""

    def __init__(
        self,
        api_key: str,
        url: str = "wss://api.openai.com/v1/realtime",
        model: str = "gpt-realtime",
        temperature: float = 0.2,
        call_sid: str | None = None,
    ):
        self._api_key = api_key
        self._url = f"{url}?{urlencode({'model': model, 'temperature': temperature})}"
        self.model = model
        self._call_sid = call_sid
        self._ws: ClientConnection | None = None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.close_code is None

    async def connect(self) -> None:
        try:
            self._ws = await connect(
                self._url,
                additional_headers={"Authorization": f"Bearer {self._api_key}"},
                max_size=_MAX_MESSAGE_BYTES,
            )
        except (OSError, WebSocketException) as e:
            raise ProviderConnectionError(f"could not connect to realtime API: {e}") from e
        logger.info("realtime_connected", call_sid=self._call_sid)

    async def send(self, message: dict) -> None:
        if self._ws is None:
            raise ProviderConnectionError("realtime connection not open")
        try:
            await self._ws.send(json.dumps(message))
        except ConnectionClosed as e:
            raise ProviderConnectionError(f"realtime connection closed: {e}") from e

    async def messages(self) -> AsyncIterator[str]:
        """Yield server messages until the connection closes."""
        if self._ws is None:
            raise ProviderConnectionError("realtime connection not open")
        try:
            async for message in self._ws:
                yield message
        except ConnectionClosed as e:
            logger.warning(
                "realtime_connection_lost",
                call_sid=self._call_sid,
                code=e.rcvd.code if e.rcvd else None,
            )

    async def close(self) -> None:
        if self._ws is not None and self._ws.close_code is None:
            await self._ws.close()
            logger.info("realtime_closed", call_sid=self._call_sid)
