"""Tests for the incoming-call webhook, TwiML and Twilio REST helpers."""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from twilio.base.exceptions import TwilioRestException

from voice_bridge import main
from voice_bridge.config import Settings
from voice_bridge.llm.system_prompt import WEBHOOK_FAILURE_MESSAGE
from voice_bridge.telephony.call_store import PendingCallStore
from voice_bridge.telephony.twilio_client import TwilioService
from voice_bridge.telephony.twilio_handler import (
    build_error_twiml,
    build_media_stream_twiml,
    extract_call_identity,
    stream_url_for,
)


class TestTwiML:
    def test_stream_url(self):
        url = stream_url_for("https://abc.ngrok.app/", "+61412345678", "+61299990000", "CA1")
        assert url == (
            "wss://abc.ngrok.app/media-stream?from=%2B61412345678&to=%2B61299990000&callSid=CA1"
        )

    def test_connect_stream_with_parameters(self):
        twiml = build_media_stream_twiml(
            base_url="https://abc.ngrok.app",
            call_sid="CA1",
            caller="+61412345678",
            callee="+61299990000",
            voice="Google.en-US-Chirp3-HD-Aoede",
        )

        assert "<Say voice=\"Google.en-US-Chirp3-HD-Aoede\">Connecting your call to Update 2 4 7</Say>" in twiml
        assert '<Pause length="1"' in twiml
        assert "<Connect><Stream" in twiml
        assert 'url="wss://abc.ngrok.app/media-stream?' in twiml
        assert '<Parameter name="from" value="+61412345678"' in twiml
        assert '<Parameter name="to" value="+61299990000"' in twiml
        assert '<Parameter name="callSid" value="CA1"' in twiml
        assert twiml.index("<Say") < twiml.index("<Connect>")

    def test_error_twiml(self):
        twiml = build_error_twiml()
        assert WEBHOOK_FAILURE_MESSAGE in twiml
        assert "<Connect>" not in twiml

    def test_extract_identity(self):
        assert extract_call_identity({"From": "+1", "To": "+2", "CallSid": "CA1"}) == ("+1", "+2", "CA1")
        assert extract_call_identity({}) == ("", "", "")


class TestPendingCallStore:
    def test_pop_once(self):
        store = PendingCallStore()
        store.put("CA1", {"From": "+1"})

        assert store.pop("CA1") == {"From": "+1"}
        assert store.pop("CA1") is None
        assert store.pop(None) is None

    def test_entries_expire(self):
        now = [1000.0]
        store = PendingCallStore(ttl_seconds=60, clock=lambda: now[0])
        store.put("CA1", {"From": "+1"})
        assert len(store) == 1

        now[0] += 61

        assert len(store) == 0
        assert store.pop("CA1") is None


@pytest.fixture
def settings():
    return Settings(_env_file=None, openai_api_key="sk-test", public_base_url="https://abc.ngrok.app")


@pytest.fixture
def client(settings):
    store = PendingCallStore()
    with patch.object(main, "_get_settings", return_value=settings), patch.object(
        main, "_call_store", store
    ):
        yield TestClient(main.app), store


class TestIncomingCallWebhook:
    def test_post_returns_stream_twiml(self, client):
        http, store = client
        response = http.post(
            "/incoming-call",
            data={"CallSid": "CA1", "From": "+61412345678", "To": "+61299990000"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "wss://abc.ngrok.app/media-stream?" in response.text
        assert store.pop("CA1")["From"] == "+61412345678"

    def test_get_uses_query_params(self, client):
        http, store = client
        response = http.get("/incoming-call", params={"CallSid": "CA2", "From": "+61400000000"})

        assert '<Parameter name="from" value="+61400000000"' in response.text
        assert store.pop("CA2") is not None

    def test_failure_returns_apology(self, client):
        http, _ = client
        with patch.object(main, "build_media_stream_twiml", side_effect=RuntimeError("boom")):
            response = http.post("/incoming-call", data={"CallSid": "CA3"})

        assert response.status_code == 200
        assert WEBHOOK_FAILURE_MESSAGE in response.text

    def test_invalid_signature_rejected(self, settings):
        settings.validate_twilio_signature = True
        settings.twilio_auth_token = "token"
        with patch.object(main, "_get_settings", return_value=settings):
            response = TestClient(main.app).post("/incoming-call", data={"CallSid": "CA4"})

        assert response.status_code == 403

    def test_health(self, client):
        http, _ = client
        body = http.get("/health").json()
        assert body["status"] == "healthy"
        assert "active_calls" in body


class TestTwilioService:
    @pytest.fixture
    def rest(self):
        return MagicMock()

    @pytest.mark.asyncio
    async def test_hang_up(self, rest):
        service = TwilioService("AC1", "token", client=rest)

        assert await service.hang_up("CA1") is True
        rest.calls.assert_called_with("CA1")
        rest.calls.return_value.update.assert_called_once_with(status="completed")

    @pytest.mark.asyncio
    async def test_start_recording(self, rest):
        rest.calls.return_value.recordings.create.return_value = MagicMock(sid="RE1")
        service = TwilioService("AC1", "token", client=rest)

        assert await service.start_recording("CA1") == "RE1"
        rest.calls.return_value.recordings.create.assert_called_once_with(recording_channels="dual")

    @pytest.mark.asyncio
    async def test_announce_and_hang_up(self, rest):
        service = TwilioService("AC1", "token", client=rest)

        assert await service.announce_and_hang_up("CA1", "Sorry about that.", voice="alice") is True

        twiml = rest.calls.return_value.update.call_args.kwargs["twiml"]
        assert '<Say voice="alice">Sorry about that.</Say>' in twiml
        assert "<Hangup />" in twiml

    @pytest.mark.asyncio
    async def test_rest_failure_reported(self, rest):
        rest.calls.return_value.update.side_effect = TwilioRestException(404, "/Calls/CA1", "not found")
        service = TwilioService("AC1", "token", client=rest)

        assert await service.hang_up("CA1") is False
