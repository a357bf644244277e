"""Environment configuration using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

_ENV_FILE = Path(__file__).resolve().parent.parent / ".env"

# Load .env FIRST so it overrides any empty system env vars
load_dotenv(_ENV_FILE, override=True)


class Settings(BaseSettings):
    # OpenAI Realtime
    openai_api_key: str = Field(..., description="OpenAI API key")
    openai_realtime_url: str = Field(
        "wss://api.openai.com/v1/realtime", description="Realtime WebSocket endpoint"
    )
    openai_realtime_model: str = Field("gpt-realtime", description="Realtime model ID")
    use_realtime_transcription: bool = Field(
        False,
        description="Use provider-side caller transcription instead of the Whisper fallback",
    )

    # Twilio
    twilio_account_sid: str | None = Field(None, description="Twilio Account SID")
    twilio_auth_token: str | None = Field(None, description="Twilio Auth Token")
    validate_twilio_signature: bool = Field(
        False, description="Reject /incoming-call requests without a valid signature"
    )
    record_calls: bool = Field(True, description="Start dual-channel recording on stream start")
    public_base_url: str | None = Field(
        None, description="Public URL Twilio reaches us on (defaults to the request host)"
    )
    connecting_message: str = Field(
        "Connecting your call to Update 2 4 7", description="Spoken before the stream connects"
    )
    connecting_voice: str = Field("Google.en-US-Chirp3-HD-Aoede", description="TwiML <Say> voice")

    # Storage (Google Cloud Storage with local fallback)
    gcs_bucket: str | None = Field(None, description="Bucket for transcripts and settings")
    call_history_dir: Path = Field(
        Path("call-history"), description="Local transcript directory"
    )
    phone_mappings_file: str = Field(
        "phone-mappings.json", description="Directory of known caller numbers"
    )
    agent_settings_file: str = Field("ai-setting/u247-agent.json")
    system_message_file: str = Field("ai-setting/u247-system-message.json")

    # Email
    email_enabled: bool = Field(False, description="Email transcripts after each call")
    smtp_host: str | None = Field(None)
    smtp_port: int = Field(465)
    smtp_user: str | None = Field(None)
    smtp_pass: str | None = Field(None)
    smtp_secure: bool = Field(True, description="Implicit TLS (port 465)")
    aws_ses_access_key: str | None = Field(None)
    aws_ses_secret_key: str | None = Field(None)
    aws_ses_region: str = Field("us-east-1")
    ses_from_email: str | None = Field(None)
    notify_email: str | None = Field(None, description="Recipient of call transcripts")

    # Inactivity (seconds since the agent's last audio turn)
    inactivity_first_warning_seconds: float = Field(30.0)
    inactivity_final_warning_seconds: float = Field(45.0)
    inactivity_hangup_seconds: float = Field(60.0)
    end_call_grace_seconds: float = Field(
        8.0, description="Delay before hanging up so the goodbye can play"
    )

    # Agent defaults (overridden by stored agent settings)
    default_voice: str = Field("sage")
    default_temperature: float = Field(0.2)

    # Product information endpoints used by tools
    pricing_url: str = Field("https://testserver.update247.com.au/testaj/mock_rates.php")
    screenshots_url: str = Field(
        "https://testserver.update247.com.au/testaj/mock_screenshots.php"
    )
    http_timeout_seconds: float = Field(10.0)

    # Token pricing, USD per million tokens
    input_tokens_per_1m: float = Field(32.0)
    output_tokens_per_1m: float = Field(64.0)

    # App settings
    log_level: str = Field("INFO", description="Logging level")
    port: int = Field(8080)

    model_config = {
        "env_file": str(_ENV_FILE),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def _check_inactivity_order(self) -> "Settings":
        if not (
            0
            < self.inactivity_first_warning_seconds
            < self.inactivity_final_warning_seconds
            < self.inactivity_hangup_seconds
        ):
            raise ValueError(
                "inactivity thresholds must be positive and strictly increasing"
            )
        return self

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (raises if required values are missing)."""
    return Settings()
