"""Shared fakes for the two legs of a call."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from voice_bridge.errors import ProviderConnectionError
from voice_bridge.services.agent_settings import AgentSettings
from voice_bridge.services.product_info import ProductInfoClient
from voice_bridge.services.storage import StorageService


class FakeTelephonySocket:
    """Stands in for the FastAPI WebSocket Twilio is connected to."""

    def __init__(self, query_params: dict | None = None):
        self.query_params = query_params or {}
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push(self, message: dict) -> None:
        self._incoming.put_nowait(json.dumps(message))

    def push_raw(self, text: str) -> None:
        self._incoming.put_nowait(text)

    def hang_up(self) -> None:
        self._incoming.put_nowait(None)

    async def iter_text(self):
        while True:
            message = await self._incoming.get()
            if message is None:
                return
            yield message

    async def send_text(self, text: str) -> None:
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def events(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m["event"] == kind]


class FakeRealtimeClient:
    """Stands in for RealtimeClient: records sends, replays scripted events."""

    model = "gpt-realtime"

    def __init__(self, fail_connect: bool = False):
        self.sent: list[dict] = []
        self.connected = False
        self.closed = False
        self._fail_connect = fail_connect
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def is_open(self) -> bool:
        return self.connected and not self.closed

    async def connect(self) -> None:
        if self._fail_connect:
            raise ProviderConnectionError("connection refused")
        self.connected = True

    async def send(self, message: dict) -> None:
        if self.closed:
            raise ProviderConnectionError("realtime connection closed")
        self.sent.append(message)

    def push(self, event: dict) -> None:
        self._incoming.put_nowait(json.dumps(event))

    def drop(self) -> None:
        self._incoming.put_nowait(None)

    async def messages(self):
        while True:
            message = await self._incoming.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def sent_of_type(self, kind: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == kind]

    def user_texts(self) -> list[str]:
        return [
            m["item"]["content"][0]["text"]
            for m in self.sent
            if m["type"] == "conversation.item.create" and m["item"]["type"] == "message"
        ]


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` is true; fail the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def twilio_start(stream_sid="MZ_TEST", call_sid="CA_TEST", caller="+61412345678", callee="+61299990000"):
    return {
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "streamSid": stream_sid,
            "callSid": call_sid,
            "customParameters": {"from": caller, "to": callee, "callSid": call_sid},
        },
    }


def twilio_media(timestamp: int, payload: str = "//8=") -> dict:
    return {"event": "media", "media": {"payload": payload, "timestamp": str(timestamp), "track": "inbound"}}


def audio_delta(delta: str, item_id: str = "item_1") -> dict:
    return {"type": "response.output_audio.delta", "delta": delta, "item_id": item_id, "response_id": "resp_1"}


@pytest.fixture
def twilio_ws():
    return FakeTelephonySocket(query_params={"from": "+61412345678", "to": "+61299990000", "callSid": "CA_TEST"})


@pytest.fixture
def realtime():
    return FakeRealtimeClient()


@pytest.fixture
def agent():
    return AgentSettings()


@pytest.fixture
def storage(tmp_path):
    return StorageService(None, tmp_path / "call-history")


@pytest.fixture
def product_info():
    client = MagicMock(spec=ProductInfoClient)
    client.get_pricing = AsyncMock(return_value={"plans": [{"name": "Starter", "price": 99}]})
    client.get_interface_screenshots = AsyncMock(return_value={"feature": "dashboard"})
    return client
