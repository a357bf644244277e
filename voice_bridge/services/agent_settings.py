"""Per-deployment agent settings: persona, voice, greeting and token pricing.

Loaded once at startup from ``ai-setting/u247-agent.json`` and
``ai-setting/u247-system-message.json`` (bucket first, then local files).
Anything missing falls back to the environment defaults.
"""

import json
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from voice_bridge.config import Settings
from voice_bridge.llm.system_prompt import GREETING, SYSTEM_PROMPT
from voice_bridge.services.storage import StorageService
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class TokenPricing(BaseModel):
    """USD per million tokens."""
    input_tokens_per_1m: float = 32.0
    output_tokens_per_1m: float = 64.0


class AgentSettings(BaseModel):
    system_message: str = SYSTEM_PROMPT
    voice: str = "sage"
    temperature: float = 0.2
    use_realtime_transcription: bool = False
    initial_greeting: str = GREETING
    pricing: TokenPricing = Field(default_factory=TokenPricing)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AgentSettings":
        return cls(
            voice=settings.default_voice,
            temperature=settings.default_temperature,
            use_realtime_transcription=settings.use_realtime_transcription,
            pricing=TokenPricing(
                input_tokens_per_1m=settings.input_tokens_per_1m,
                output_tokens_per_1m=settings.output_tokens_per_1m,
            ),
        )


async def _load_json(storage: StorageService, name: str, base_dir: Path) -> dict | None:
    try:
        loaded = await storage.load_text(name, base_dir / name)
    except OSError as e:
        logger.error("agent_settings_unreadable", object=name, error=str(e))
        return None
    if loaded is None:
        logger.info("agent_settings_missing", object=name)
        return None

    content, source = loaded
    try:
        data = json.loads(content)
    except ValueError as e:
        logger.error("agent_settings_invalid_json", object=name, source=source, error=str(e))
        return None
    if not isinstance(data, dict):
        logger.error("agent_settings_not_object", object=name, source=source)
        return None
    logger.info("agent_settings_loaded", object=name, source=source)
    return data


async def load_agent_settings(
    storage: StorageService,
    settings: Settings,
    base_dir: Path | None = None,
) -> AgentSettings:
    """Resolve the agent settings for this process. Never raises."""
    base_dir = base_dir or Path.cwd()
    defaults = AgentSettings.from_settings(settings)

    overrides: dict = {}
    agent = await _load_json(storage, settings.agent_settings_file, base_dir)
    if agent:
        overrides.update({key: value for key, value in agent.items() if value is not None})

    system = await _load_json(storage, settings.system_message_file, base_dir)
    if system and system.get("system_message"):
        overrides["system_message"] = system["system_message"]

    merged = {**defaults.model_dump(), **overrides}
    if isinstance(overrides.get("pricing"), dict):
        merged["pricing"] = {**defaults.pricing.model_dump(), **overrides["pricing"]}

    try:
        result = AgentSettings.model_validate(merged)
    except ValidationError as e:
        logger.error("agent_settings_rejected", error=str(e))
        result = defaults

    logger.info(
        "agent_settings_ready",
        voice=result.voice,
        temperature=result.temperature,
        use_realtime_transcription=result.use_realtime_transcription,
        system_message_length=len(result.system_message),
    )
    return result
