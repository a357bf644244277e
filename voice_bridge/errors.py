"""Exception types raised inside a call and absorbed at its boundaries."""


class VoiceBridgeError(Exception):
    default_detail: str = "Voice bridge error"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.default_detail)
        self.detail = detail or self.default_detail


class ProtocolError(VoiceBridgeError):
    """A single message from either leg could not be understood."""

    default_detail = "Malformed message"


class ProviderConnectionError(VoiceBridgeError):
    default_detail = "Realtime provider connection failed"


class CollaboratorError(VoiceBridgeError):
    """An outbound lookup failed; ``caller_message`` is safe to speak."""

    default_detail = "External service request failed"

    def __init__(self, detail: str | None = None, caller_message: str | None = None) -> None:
        super().__init__(detail)
        self.caller_message = caller_message or "That information is not available right now."


class StorageError(VoiceBridgeError):
    default_detail = "Storage operation failed"
