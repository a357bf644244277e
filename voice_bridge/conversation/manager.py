"""Registry of calls currently being handled by this process."""

from voice_bridge.conversation.session import CallSession
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)

# Keyed by the handler-assigned call key ("call-<id>"), one entry per live media stream
_active_calls: dict[str, CallSession] = {}


def register_call(key: str, session: CallSession) -> None:
    _active_calls[key] = session
    logger.info("call_registered", key=key, active_calls=len(_active_calls))


def unregister_call(key: str) -> None:
    """Remove a call from the registry. Unknown keys are ignored."""
    if _active_calls.pop(key, None) is not None:
        logger.info("call_unregistered", key=key, active_calls=len(_active_calls))


def get_active_count() -> int:
    """Get the number of active calls."""
    return len(_active_calls)
