"""Email delivery of call transcripts over SMTP or Amazon SES SMTP."""

import asyncio
import json
import smtplib
import ssl
from dataclasses import dataclass
from datetime import UTC, datetime
from email.message import EmailMessage

from voice_bridge.config import Settings
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FROM = "noreply@update247.com.au"


@dataclass(frozen=True)
class SmtpConfig:
    host: str
    port: int
    username: str
    password: str
    implicit_tls: bool = True


def smtp_config_from_settings(settings: Settings) -> SmtpConfig | None:
    """Plain SMTP wins when fully configured, then SES SMTP credentials."""
    if settings.smtp_host and settings.smtp_user and settings.smtp_pass:
        return SmtpConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_pass,
            implicit_tls=settings.smtp_secure,
        )
    if settings.aws_ses_access_key and settings.aws_ses_secret_key:
        return SmtpConfig(
            host=f"email-smtp.{settings.aws_ses_region}.amazonaws.com",
            port=465,
            username=settings.aws_ses_access_key,
            password=settings.aws_ses_secret_key,
        )
    return None


def _or(value, fallback: str) -> str:
    return str(value) if value not in (None, "") else fallback


def format_summary(record: dict) -> str:
    """Plain-text body summarizing a serialized transcript record."""
    state = record.get("callState") or {}
    disconnect = record.get("disconnectInfo") or {}
    usage = record.get("tokenUsage") or {}

    existing = state.get("is_existing_client")
    existing_text = "Not determined" if existing is None else ("Yes" if existing else "No")
    routing = state.get("routing")
    cost = usage.get("estimated_cost_usd") or 0

    return "\n".join(
        [
            "Call Transcript Summary",
            "========================",
            "",
            "Call Details:",
            f"- Caller Number: {_or(record.get('callerNumber'), 'Unknown')}",
            f"- Callee Number: {_or(record.get('calleeNumber'), 'Unknown')}",
            f"- Call SID: {_or(record.get('callSid'), 'N/A')}",
            f"- Duration: {_or(usage.get('call_duration_formatted'), 'Unknown')}",
            f"- Start Time: {_or(record.get('startTime'), 'Unknown')}",
            f"- End Time: {_or(record.get('endTime'), 'Unknown')}",
            "",
            "Caller Information:",
            f"- Property ID: {_or(state.get('property_id'), 'Not provided')}",
            f"- Property Name: {_or(state.get('property_name'), 'Not provided')}",
            f"- Caller Name: {_or(state.get('caller_name'), 'Not provided')}",
            f"- Caller Email: {_or(state.get('caller_email'), 'Not provided')}",
            f"- Existing Client: {existing_text}",
            f"- Routed To: {routing.upper() if routing else 'Not routed'}",
            "",
            "Disconnect Info:",
            f"- Disconnected By: {_or(disconnect.get('disconnected_by'), 'Unknown')}",
            f"- Reason: {_or(disconnect.get('disconnect_reason'), 'Unknown')}",
            "",
            "Token Usage:",
            f"- Input Tokens: {usage.get('input_tokens') or 0}",
            f"- Output Tokens: {usage.get('output_tokens') or 0}",
            f"- Estimated Cost: ${float(cost):.6f}",
            "",
            "Issue Description:",
            _or(state.get("issue_description"), "No issue recorded"),
            "",
            "---",
            "Full transcript attached as JSON file.",
        ]
    )


class EmailNotifier:
    """Sends one email per finished call. Disabled when not configured."""

    def __init__(
        self,
        config: SmtpConfig | None,
        recipient: str | None,
        sender: str | None = None,
        timeout: float = 30.0,
    ):
        self._config = config
        self._recipient = recipient
        self._sender = sender or DEFAULT_FROM
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailNotifier":
        config = smtp_config_from_settings(settings) if settings.email_enabled else None
        sender = settings.smtp_user or settings.ses_from_email
        return cls(config=config, recipient=settings.notify_email, sender=sender)

    @property
    def enabled(self) -> bool:
        return self._config is not None and bool(self._recipient)

    def build_message(self, record: dict, filename: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = self._recipient
        caller = record.get("callerNumber") or "Unknown Caller"
        message["Subject"] = f"Call Transcript - {caller} - {datetime.now(UTC):%d/%m/%Y}"
        message.set_content(format_summary(record))
        message.add_attachment(
            json.dumps(record, indent=2).encode("utf-8"),
            maintype="application",
            subtype="json",
            filename=filename,
        )
        return message

    async def send_transcript(self, record: dict, filename: str) -> bool:
        """Email the record. Returns False (and logs) on any failure."""
        if not self.enabled:
            logger.info("email_skipped", reason="not configured")
            return False

        message = self.build_message(record, filename)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", recipient=self._recipient, error=str(e))
            return False
        logger.info("email_sent", recipient=self._recipient, filename=filename)
        return True

    def _send_sync(self, message: EmailMessage) -> None:
        config = self._config
        context = ssl.create_default_context()
        if config.implicit_tls:
            with smtplib.SMTP_SSL(config.host, config.port, timeout=self._timeout, context=context) as smtp:
                smtp.login(config.username, config.password)
                smtp.send_message(message)
        else:
            with smtplib.SMTP(config.host, config.port, timeout=self._timeout) as smtp:
                smtp.starttls(context=context)
                smtp.login(config.username, config.password)
                smtp.send_message(message)
