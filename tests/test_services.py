"""Tests for settings, agent settings, product lookups and email delivery."""

import json
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx
from pydantic import ValidationError

from voice_bridge.config import Settings
from voice_bridge.errors import CollaboratorError
from voice_bridge.llm.system_prompt import SYSTEM_PROMPT
from voice_bridge.services.agent_settings import AgentSettings, load_agent_settings
from voice_bridge.services.email import (
    DEFAULT_FROM,
    EmailNotifier,
    SmtpConfig,
    format_summary,
    smtp_config_from_settings,
)
from voice_bridge.services.product_info import (
    PRICING_UNAVAILABLE,
    SCREENSHOTS_UNAVAILABLE,
    ProductInfoClient,
)
from voice_bridge.services.storage import StorageService

PRICING_URL = "https://rates.example.test/mock_rates.php"
SCREENSHOTS_URL = "https://rates.example.test/mock_screenshots.php"


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, openai_api_key="sk-test", **overrides)


class TestSettings:
    def test_defaults(self):
        settings = make_settings()
        assert settings.inactivity_first_warning_seconds == 30.0
        assert settings.inactivity_hangup_seconds == 60.0
        assert settings.twilio_configured is False

    def test_inactivity_thresholds_must_increase(self):
        with pytest.raises(ValidationError):
            make_settings(inactivity_first_warning_seconds=50, inactivity_final_warning_seconds=45)

    def test_twilio_configured(self):
        assert make_settings(twilio_account_sid="AC1", twilio_auth_token="t").twilio_configured


class TestAgentSettings:
    @pytest.mark.asyncio
    async def test_defaults_when_nothing_stored(self, tmp_path):
        storage = StorageService(None, tmp_path)

        agent = await load_agent_settings(storage, make_settings(default_voice="alloy"), base_dir=tmp_path)

        assert agent.voice == "alloy"
        assert agent.system_message == SYSTEM_PROMPT
        assert agent.pricing.input_tokens_per_1m == 32.0

    @pytest.mark.asyncio
    async def test_stored_overrides(self, tmp_path):
        (tmp_path / "ai-setting").mkdir()
        (tmp_path / "ai-setting" / "u247-agent.json").write_text(
            json.dumps({"voice": "marin", "temperature": 0.6, "pricing": {"output_tokens_per_1m": 80}})
        )
        (tmp_path / "ai-setting" / "u247-system-message.json").write_text(
            json.dumps({"system_message": "You are a test agent."})
        )
        storage = StorageService(None, tmp_path)

        agent = await load_agent_settings(storage, make_settings(), base_dir=tmp_path)

        assert agent.voice == "marin"
        assert agent.temperature == 0.6
        assert agent.system_message == "You are a test agent."
        assert agent.pricing.input_tokens_per_1m == 32.0
        assert agent.pricing.output_tokens_per_1m == 80

    @pytest.mark.asyncio
    async def test_invalid_file_falls_back(self, tmp_path):
        (tmp_path / "ai-setting").mkdir()
        (tmp_path / "ai-setting" / "u247-agent.json").write_text('{"temperature": "warm"}')
        storage = StorageService(None, tmp_path)

        agent = await load_agent_settings(storage, make_settings(), base_dir=tmp_path)

        assert agent == AgentSettings.from_settings(make_settings())


class TestProductInfoClient:
    @pytest.mark.asyncio
    async def test_pricing_query(self):
        with respx.mock:
            route = respx.get(PRICING_URL).mock(
                return_value=httpx.Response(200, json={"plans": [{"name": "Pro"}]})
            )
            client = ProductInfoClient(PRICING_URL, SCREENSHOTS_URL)

            data = await client.get_pricing("Hotel")
            await client.close()

        assert data == {"plans": [{"name": "Pro"}]}
        assert route.calls.last.request.url.params["property_type"] == "Hotel"

    @pytest.mark.asyncio
    async def test_list_response_wrapped(self):
        with respx.mock:
            respx.get(SCREENSHOTS_URL).mock(return_value=httpx.Response(200, json=["a", "b"]))
            client = ProductInfoClient(PRICING_URL, SCREENSHOTS_URL)

            data = await client.get_interface_screenshots("reports")
            await client.close()

        assert data == {"data": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_timeout(self):
        with respx.mock:
            respx.get(SCREENSHOTS_URL).mock(side_effect=httpx.ConnectTimeout("timed out"))
            client = ProductInfoClient(PRICING_URL, SCREENSHOTS_URL)

            with pytest.raises(CollaboratorError) as exc_info:
                await client.get_interface_screenshots("dashboard")
            await client.close()

        assert exc_info.value.caller_message == SCREENSHOTS_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        with respx.mock:
            respx.get(PRICING_URL).mock(return_value=httpx.Response(200, text="<html>"))
            client = ProductInfoClient(PRICING_URL, SCREENSHOTS_URL)

            with pytest.raises(CollaboratorError) as exc_info:
                await client.get_pricing("Hotel")
            await client.close()

        assert exc_info.value.caller_message == PRICING_UNAVAILABLE


RECORD = {
    "callerNumber": "+61412345678",
    "callSid": "CA1",
    "startTime": "2025-03-07T14:05:00Z",
    "callState": {"caller_name": "Mia", "routing": "sales", "is_existing_client": False},
    "disconnectInfo": {"disconnected_by": "caller", "disconnect_reason": "caller_hangup"},
    "tokenUsage": {
        "input_tokens": 100,
        "output_tokens": 200,
        "estimated_cost_usd": 0.0160,
        "call_duration_formatted": "1m 35s",
    },
}


class TestEmail:
    def test_plain_smtp_preferred(self):
        config = smtp_config_from_settings(
            make_settings(
                smtp_host="smtp.example.com",
                smtp_user="agent@example.com",
                smtp_pass="secret",
                smtp_port=587,
                smtp_secure=False,
                aws_ses_access_key="AKIA",
                aws_ses_secret_key="ses-secret",
            )
        )
        assert config == SmtpConfig("smtp.example.com", 587, "agent@example.com", "secret", False)

    def test_ses_fallback(self):
        config = smtp_config_from_settings(
            make_settings(aws_ses_access_key="AKIA", aws_ses_secret_key="s", aws_ses_region="ap-southeast-2")
        )
        assert config.host == "email-smtp.ap-southeast-2.amazonaws.com"
        assert config.port == 465

    def test_not_configured(self):
        assert smtp_config_from_settings(make_settings()) is None
        notifier = EmailNotifier.from_settings(make_settings(notify_email="ops@example.com"))
        assert notifier.enabled is False

    def test_summary(self):
        summary = format_summary(RECORD)
        assert "- Caller Number: +61412345678" in summary
        assert "- Caller Name: Mia" in summary
        assert "- Existing Client: No" in summary
        assert "- Routed To: SALES" in summary
        assert "- Property ID: Not provided" in summary
        assert "- Estimated Cost: $0.016000" in summary

    def test_message_has_json_attachment(self):
        notifier = EmailNotifier(SmtpConfig("h", 465, "u", "p"), "ops@example.com")
        message = notifier.build_message(RECORD, "call-from-61412345678.json")

        assert message["From"] == DEFAULT_FROM
        assert message["Subject"].startswith("Call Transcript - +61412345678 - ")
        attachment = next(message.iter_attachments())
        assert attachment.get_filename() == "call-from-61412345678.json"
        assert json.loads(attachment.get_content()) == RECORD

    @pytest.mark.asyncio
    async def test_disabled_skips(self):
        notifier = EmailNotifier(None, "ops@example.com")
        assert await notifier.send_transcript(RECORD, "x.json") is False

    @pytest.mark.asyncio
    async def test_send_over_implicit_tls(self):
        notifier = EmailNotifier(SmtpConfig("smtp.example.com", 465, "u", "p"), "ops@example.com")
        with patch("voice_bridge.services.email.smtplib.SMTP_SSL") as smtp_ssl:
            server = smtp_ssl.return_value.__enter__.return_value
            assert await notifier.send_transcript(RECORD, "x.json") is True

        server.login.assert_called_once_with("u", "p")
        server.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_send_failure_logged_not_raised(self):
        notifier = EmailNotifier(
            SmtpConfig("smtp.example.com", 587, "u", "p", implicit_tls=False), "ops@example.com"
        )
        with patch("voice_bridge.services.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            assert await notifier.send_transcript(RECORD, "x.json") is False

        server.starttls.assert_called_once()
