"""Map raw platform and transport failures to voice error records.

Every failure the pipeline sees ends up as exactly one :class:`VoiceError`
with a kind from the closed set in :class:`models.ErrorKind`.  Nothing here
has side effects.
"""

from __future__ import annotations

import socket
from typing import Optional

import httpx
from websockets.exceptions import InvalidStatus

from errors import (
    AUTH_FAILED,
    CLOSE_CODE_MEANINGS,
    ERROR_MESSAGES,
    NETWORK_ERROR,
    NO_MICROPHONE,
    PERMISSION_DENIED,
    MicrophoneNotFoundError,
    VoiceServiceError,
)
from models import ErrorKind, VoiceError

AUTH_CLOSE_CODES = (4001, 1008)
IMMEDIATE_CLOSE_MS = 1000

_NETWORK_ERRORS = (ConnectionError, socket.gaierror, httpx.NetworkError)
_AUTH_HTTP_STATUSES = (401, 403)


def make_error(kind: ErrorKind, code: str, message: Optional[str] = None) -> VoiceError:
    return VoiceError(kind=kind, message=message or ERROR_MESSAGES[code], code=code)


def classify_exception(exc: BaseException) -> VoiceError:
    if isinstance(exc, VoiceServiceError):
        return exc.error
    if isinstance(exc, PermissionError):
        return make_error(ErrorKind.PERMISSION, PERMISSION_DENIED)
    if isinstance(exc, MicrophoneNotFoundError):
        return make_error(ErrorKind.PERMISSION, NO_MICROPHONE)
    if isinstance(exc, InvalidStatus) and exc.response.status_code in _AUTH_HTTP_STATUSES:
        return make_error(ErrorKind.CONNECTION, AUTH_FAILED)
    if isinstance(exc, _NETWORK_ERRORS):
        return make_error(ErrorKind.NETWORK, NETWORK_ERROR)

    code = getattr(exc, "code", None)
    return VoiceError(
        kind=ErrorKind.UNKNOWN,
        message=str(exc) or "An unknown error occurred",
        code=str(code) if code is not None else None,
    )


def is_auth_failure_close(code: Optional[int], duration_ms: float) -> bool:
    """A 4001/1008 close right after opening means the credential was refused."""
    return code in AUTH_CLOSE_CODES and duration_ms < IMMEDIATE_CLOSE_MS


def classify_close(code: Optional[int], reason: str, duration_ms: float) -> VoiceError:
    if is_auth_failure_close(code, duration_ms):
        return make_error(ErrorKind.CONNECTION, AUTH_FAILED, reason or None)
    message = reason or CLOSE_CODE_MEANINGS.get(code or 0, "Unknown")
    return VoiceError(kind=ErrorKind.UNKNOWN, message=message, code=f"CLOSE_{code}")
