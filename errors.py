"""Shared error codes, user-facing messages and exceptions."""

from __future__ import annotations

PERMISSION_DENIED = "PERMISSION_DENIED"
UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
INVALID_STATE = "INVALID_STATE"
INVALID_INPUT = "INVALID_INPUT"
MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
ENDPOINT_UNAVAILABLE = "ENDPOINT_UNAVAILABLE"
UNEXPECTED_RESPONSE_SHAPE = "UNEXPECTED_RESPONSE_SHAPE"
NETWORK_ERROR = "NETWORK_ERROR"
RECOGNIZER_ERROR = "RECOGNIZER_ERROR"
RECOGNIZER_START_FAILED = "RECOGNIZER_START_FAILED"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access was denied. Allow it in system settings.",
    UNSUPPORTED_FORMAT: "No usable audio format is available on this device.",
    INVALID_STATE: "That action is not available right now.",
    INVALID_INPUT: "Nothing to process, the input is empty.",
    MISSING_CREDENTIALS: "API token is not configured. Add it in Settings.",
    ENDPOINT_UNAVAILABLE: "The speech service is unavailable, please retry.",
    UNEXPECTED_RESPONSE_SHAPE: "The speech service returned an unexpected response, please retry.",
    NETWORK_ERROR: "Network failed, please retry.",
    RECOGNIZER_ERROR: "Live captions had a problem; recording continues.",
    RECOGNIZER_START_FAILED: "Live captions could not start.",
}


class VoiceScribeError(Exception):
    """Base exception for all app errors."""

    is_configuration_error = False
    retryable = False

    def __init__(self, detail: str = "An unexpected error occurred", code: str = "VOICE_SCRIBE_ERROR") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)

    def user_message(self) -> str:
        base = ERROR_MESSAGES.get(self.code)
        if base is None:
            return self.detail
        return f"{base} ({self.detail})" if self.detail else base


class InvalidStateError(VoiceScribeError):
    """Raised when an operation is called in a state that does not allow it."""

    def __init__(self, detail: str = "invalid state") -> None:
        super().__init__(detail=detail, code=INVALID_STATE)


class InvalidInputError(VoiceScribeError):
    def __init__(self, detail: str = "input is empty") -> None:
        super().__init__(detail=detail, code=INVALID_INPUT)


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


class CaptureError(VoiceScribeError):
    """Raised when the microphone cannot be opened."""


class PermissionDeniedError(CaptureError):
    is_configuration_error = True

    def __init__(self, detail: str = "microphone access denied") -> None:
        super().__init__(detail=detail, code=PERMISSION_DENIED)


class UnsupportedFormatError(CaptureError):
    is_configuration_error = True

    def __init__(self, detail: str = "no usable audio encoding") -> None:
        super().__init__(detail=detail, code=UNSUPPORTED_FORMAT)


# ---------------------------------------------------------------------------
# Remote services
# ---------------------------------------------------------------------------


class RemoteServiceError(VoiceScribeError):
    """Raised when a transcription, improvement or synthesis call fails."""

    retryable = True


class MissingCredentialsError(RemoteServiceError):
    is_configuration_error = True
    retryable = False

    def __init__(self, detail: str = "API token is not configured") -> None:
        super().__init__(detail=detail, code=MISSING_CREDENTIALS)


class EndpointUnavailableError(RemoteServiceError):
    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(
            detail=f"endpoint returned status {status_code}: {body}",
            code=ENDPOINT_UNAVAILABLE,
        )


class UnexpectedResponseShapeError(RemoteServiceError):
    def __init__(self, detail: str = "response is missing the expected text field") -> None:
        super().__init__(detail=detail, code=UNEXPECTED_RESPONSE_SHAPE)


class NetworkError(RemoteServiceError):
    def __init__(self, detail: str = "network failure") -> None:
        super().__init__(detail=detail, code=NETWORK_ERROR)
