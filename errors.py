"""Shared error codes, user-facing messages and exception types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from models import VoiceError

PERMISSION_DENIED = "PERMISSION_DENIED"
NO_MICROPHONE = "NO_MICROPHONE"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
INVALID_API_KEY = "INVALID_API_KEY"
QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
CONNECTION_TIMEOUT = "CONNECTION_TIMEOUT"
TIMEOUT = "TIMEOUT"
MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
MAX_CONNECTION_ATTEMPTS_EXCEEDED = "MAX_CONNECTION_ATTEMPTS_EXCEEDED"
MAX_RECONNECTION_ATTEMPTS = "MAX_RECONNECTION_ATTEMPTS"
DEEPGRAM_ERROR = "DEEPGRAM_ERROR"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone access denied. Please allow microphone permissions.",
    NO_MICROPHONE: "No microphone found. Please check your device.",
    NETWORK_ERROR: "Network connection failed. Please check your internet connection.",
    AUTH_FAILED: "Deepgram rejected the API key.",
    INVALID_API_KEY: "Invalid API key format",
    QUOTA_EXCEEDED: "Usage quota exceeded. Please upgrade your plan.",
    CONNECTION_TIMEOUT: "Connection timeout. Please check your internet connection.",
    TIMEOUT: "Operation timed out. Please try again.",
    MAX_RETRIES_EXCEEDED: "Maximum retry attempts ({limit}) exceeded. Please try again later.",
    MAX_CONNECTION_ATTEMPTS_EXCEEDED: (
        "Maximum connection attempts ({limit}) exceeded. Switching to offline mode."
    ),
    MAX_RECONNECTION_ATTEMPTS: "Max reconnection attempts reached",
    DEEPGRAM_ERROR: "Unknown Deepgram error",
}

NORMAL_CLOSURE = 1000

CLOSE_CODE_MEANINGS = {
    1000: "Normal Closure",
    1001: "Going Away",
    1002: "Protocol Error",
    1003: "Unsupported Data",
    1006: "Abnormal Closure",
    1007: "Invalid Data",
    1008: "Policy Violation",
    1009: "Message Too Big",
    1011: "Unexpected Condition",
    4001: "Invalid API Key",
    4002: "Insufficient Credits",
    4003: "Rate Limited",
}


class VoiceServiceError(Exception):
    """An already classified failure, carrying its error record."""

    def __init__(self, error: VoiceError) -> None:
        super().__init__(error.message)
        self.error = error


class MicrophonePermissionError(PermissionError):
    """The audio-capture API refused access to the microphone."""


class MicrophoneNotFoundError(OSError):
    """No audio input device is available."""
