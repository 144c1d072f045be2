from __future__ import annotations

import socket

import httpx
from websockets.datastructures import Headers
from websockets.exceptions import InvalidStatus
from websockets.http11 import Response

from error_classifier import classify_close, classify_exception, is_auth_failure_close, make_error
from errors import (
    AUTH_FAILED,
    ERROR_MESSAGES,
    NETWORK_ERROR,
    NO_MICROPHONE,
    PERMISSION_DENIED,
    QUOTA_EXCEEDED,
    MicrophoneNotFoundError,
    MicrophonePermissionError,
    VoiceServiceError,
)
from models import ErrorKind


def _http_rejection(status: int) -> InvalidStatus:
    return InvalidStatus(Response(status, "rejected", Headers(), b""))


# ---------------------------------------------------------------
# classify_exception
# ---------------------------------------------------------------

def test_permission_errors_map_to_permission_denied() -> None:
    for exc in (PermissionError("denied"), MicrophonePermissionError("no access")):
        error = classify_exception(exc)
        assert error.kind == ErrorKind.PERMISSION
        assert error.code == PERMISSION_DENIED
        assert error.message == ERROR_MESSAGES[PERMISSION_DENIED]


def test_missing_device_maps_to_no_microphone() -> None:
    error = classify_exception(MicrophoneNotFoundError("none"))
    assert error.kind == ErrorKind.PERMISSION
    assert error.code == NO_MICROPHONE


def test_network_failures_map_to_network_error() -> None:
    failures = (
        ConnectionRefusedError("refused"),
        socket.gaierror("name resolution"),
        httpx.ConnectError("offline"),
    )
    for exc in failures:
        error = classify_exception(exc)
        assert error.kind == ErrorKind.NETWORK
        assert error.code == NETWORK_ERROR


def test_handshake_rejection_maps_to_auth_failed() -> None:
    error = classify_exception(_http_rejection(401))
    assert error.kind == ErrorKind.CONNECTION
    assert error.code == AUTH_FAILED


def test_other_handshake_status_is_unknown() -> None:
    error = classify_exception(_http_rejection(500))
    assert error.kind == ErrorKind.UNKNOWN


def test_classified_error_passes_through() -> None:
    record = make_error(ErrorKind.API, QUOTA_EXCEEDED)
    assert classify_exception(VoiceServiceError(record)) is record


def test_unknown_error_keeps_message_and_code() -> None:
    class WeirdError(Exception):
        code = 42

    error = classify_exception(WeirdError("boom"))
    assert error.kind == ErrorKind.UNKNOWN
    assert error.message == "boom"
    assert error.code == "42"


def test_unknown_error_without_message_gets_default() -> None:
    error = classify_exception(RuntimeError())
    assert error.kind == ErrorKind.UNKNOWN
    assert error.message == "An unknown error occurred"
    assert error.code is None


# ---------------------------------------------------------------
# Close classification
# ---------------------------------------------------------------

def test_immediate_policy_close_is_auth_failure() -> None:
    assert is_auth_failure_close(4001, 120)
    assert is_auth_failure_close(1008, 999)
    assert not is_auth_failure_close(1008, 1000)
    assert not is_auth_failure_close(1006, 50)
    assert not is_auth_failure_close(None, 50)


def test_classify_close_auth_and_generic() -> None:
    auth = classify_close(4001, "", 100)
    assert auth.kind == ErrorKind.CONNECTION
    assert auth.code == AUTH_FAILED

    generic = classify_close(1011, "", 5000)
    assert generic.kind == ErrorKind.UNKNOWN
    assert generic.code == "CLOSE_1011"
    assert generic.message

    with_reason = classify_close(1011, "server overloaded", 5000)
    assert with_reason.message == "server overloaded"
