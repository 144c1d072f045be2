"""UI-facing status state machine for a voice session.

Tracks the session lifecycle (ready -> connecting -> connected -> listening
-> processing/parsing -> complete, with error/timeout/offline/disconnected
side states), the retry and connection-attempt counters, per-state timeouts
and the offline action queue.  It never talks to the transport; it only
reacts to the statuses and errors it is handed.

Timers are ``loop.call_later`` handles on the running asyncio loop, so every
method must be called from the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

from error_classifier import make_error
from errors import (
    CONNECTION_TIMEOUT,
    ERROR_MESSAGES,
    MAX_CONNECTION_ATTEMPTS_EXCEEDED,
    MAX_RETRIES_EXCEEDED,
    TIMEOUT,
)
from models import ErrorKind, VoiceError, VoiceStatus

logger = logging.getLogger(__name__)

StatusCallback = Callable[[VoiceStatus], None]
ErrorCallback = Callable[[VoiceError], None]
Hook = Callable[[], None]
OfflineAction = Callable[[], None]

_TIMED_STATUSES = (VoiceStatus.LISTENING, VoiceStatus.PROCESSING, VoiceStatus.PARSING)

_STATUS_COLORS = {
    VoiceStatus.READY: "text-green-600",
    VoiceStatus.CONNECTED: "text-green-600",
    VoiceStatus.COMPLETE: "text-green-600",
    VoiceStatus.CONNECTING: "text-blue-600",
    VoiceStatus.LISTENING: "text-blue-600",
    VoiceStatus.PROCESSING: "text-blue-600",
    VoiceStatus.PARSING: "text-blue-600",
    VoiceStatus.ERROR: "text-red-600",
    VoiceStatus.TIMEOUT: "text-red-600",
    VoiceStatus.DISCONNECTED: "text-gray-600",
    VoiceStatus.OFFLINE: "text-yellow-600",
}

_STATUS_ICONS = {
    VoiceStatus.READY: "mic",
    VoiceStatus.CONNECTING: "clock",
    VoiceStatus.CONNECTED: "check-circle",
    VoiceStatus.LISTENING: "mic",
    VoiceStatus.PROCESSING: "refresh-cw",
    VoiceStatus.PARSING: "refresh-cw",
    VoiceStatus.COMPLETE: "check-circle",
    VoiceStatus.ERROR: "x-circle",
    VoiceStatus.TIMEOUT: "x-circle",
    VoiceStatus.DISCONNECTED: "mic-off",
    VoiceStatus.OFFLINE: "wifi-off",
}

_STATUS_MESSAGES = {
    VoiceStatus.READY: "Ready to start voice recognition",
    VoiceStatus.CONNECTED: "Connected and ready to listen",
    VoiceStatus.LISTENING: "Listening for speech...",
    VoiceStatus.PROCESSING: "Processing audio...",
    VoiceStatus.PARSING: "Parsing speech data...",
    VoiceStatus.COMPLETE: "Voice recognition complete",
    VoiceStatus.DISCONNECTED: "Disconnected from voice service",
    VoiceStatus.OFFLINE: "Working in offline mode",
    VoiceStatus.TIMEOUT: "Operation timed out",
}


def now_ms() -> int:
    return int(time.time() * 1000)


class VoiceStatusMachine:
    def __init__(
        self,
        *,
        max_retries: int = 3,
        retry_delay_s: float = 1.0,
        timeout_s: float = 30.0,
        connection_timeout_s: float = 10.0,
        max_connection_attempts: int = 5,
        enable_offline_mode: bool = True,
        on_status_change: Optional[StatusCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_timeout: Optional[Hook] = None,
        on_offline_mode: Optional[Hook] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_retries = max_retries
        self._retry_delay_s = retry_delay_s
        self._timeout_s = timeout_s
        self._connection_timeout_s = connection_timeout_s
        self._max_connection_attempts = max_connection_attempts
        self._enable_offline_mode = enable_offline_mode
        self._on_status_change = on_status_change
        self._on_error = on_error
        self._on_timeout = on_timeout
        self._on_offline_mode = on_offline_mode
        self._clock = clock

        self._state_timer: Optional[asyncio.TimerHandle] = None
        self._connection_timer: Optional[asyncio.TimerHandle] = None
        self._retry_timer: Optional[asyncio.TimerHandle] = None
        self._init_state()

    def _init_state(self) -> None:
        self._status = VoiceStatus.READY
        self._error: Optional[VoiceError] = None
        self._retry_count = 0
        self._last_error_time: Optional[int] = None
        self._is_retrying = False
        self._offline_queue: list[OfflineAction] = []
        self._last_activity = self._clock()
        self._connection_attempts = 0

    # ------------------------------------------------------------------
    # Current state
    # ------------------------------------------------------------------

    @property
    def status(self) -> VoiceStatus:
        return self._status

    @property
    def error(self) -> Optional[VoiceError]:
        return self._error

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_retrying(self) -> bool:
        return self._is_retrying

    @property
    def connection_attempts(self) -> int:
        return self._connection_attempts

    @property
    def last_error_time(self) -> Optional[int]:
        return self._last_error_time

    @property
    def offline_queue_size(self) -> int:
        return len(self._offline_queue)

    # ------------------------------------------------------------------
    # Status checks
    # ------------------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._status == VoiceStatus.READY

    @property
    def is_connecting(self) -> bool:
        return self._status == VoiceStatus.CONNECTING

    @property
    def is_connected(self) -> bool:
        return self._status == VoiceStatus.CONNECTED

    @property
    def is_listening(self) -> bool:
        return self._status == VoiceStatus.LISTENING

    @property
    def is_processing(self) -> bool:
        return self._status in (VoiceStatus.PROCESSING, VoiceStatus.PARSING)

    @property
    def is_complete(self) -> bool:
        return self._status == VoiceStatus.COMPLETE

    @property
    def has_error(self) -> bool:
        return self._status == VoiceStatus.ERROR

    @property
    def is_offline(self) -> bool:
        return self._status == VoiceStatus.OFFLINE

    @property
    def is_timeout(self) -> bool:
        return self._status == VoiceStatus.TIMEOUT

    @property
    def can_retry(self) -> bool:
        return self._retry_count < self._max_retries and not self._is_retrying

    @property
    def can_connect(self) -> bool:
        return self._connection_attempts < self._max_connection_attempts

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def set_status(self, status: VoiceStatus) -> None:
        self._clear_timers()
        self._status = status
        self._last_activity = self._clock()

        if status in _TIMED_STATUSES:
            self._state_timer = self._call_later(self._timeout_s, self._handle_state_timeout)
        elif status == VoiceStatus.CONNECTING:
            self._connection_timer = self._call_later(
                self._connection_timeout_s, self._handle_connection_timeout
            )
        elif status == VoiceStatus.CONNECTED:
            self._connection_attempts = 0
        elif status == VoiceStatus.OFFLINE and self._enable_offline_mode:
            if self._on_offline_mode:
                self._on_offline_mode()

        if self._on_status_change:
            self._on_status_change(status)

    def set_error(self, error: Optional[VoiceError]) -> None:
        if error is None:
            self.clear_error()
            return

        self._error = error
        self._last_error_time = now_ms()
        if error.kind == ErrorKind.CONNECTION:
            self._connection_attempts += 1
        logger.warning("Voice error [%s/%s]: %s", error.kind.value, error.code, error.message)
        self.set_status(VoiceStatus.ERROR)

        if error.kind == ErrorKind.NETWORK and self._retry_count < self._max_retries:
            self._retry_timer = self._call_later(self._retry_delay_s, self.retry)

        if self._on_error:
            self._on_error(error)

    def clear_error(self) -> None:
        self._error = None
        self._last_error_time = None

    def retry(self) -> None:
        self._retry_timer = None
        if self._retry_count >= self._max_retries:
            self.set_error(
                make_error(
                    ErrorKind.API,
                    MAX_RETRIES_EXCEEDED,
                    ERROR_MESSAGES[MAX_RETRIES_EXCEEDED].format(limit=self._max_retries),
                )
            )
            return

        if self._connection_attempts >= self._max_connection_attempts:
            self.set_error(
                make_error(
                    ErrorKind.CONNECTION,
                    MAX_CONNECTION_ATTEMPTS_EXCEEDED,
                    ERROR_MESSAGES[MAX_CONNECTION_ATTEMPTS_EXCEEDED].format(
                        limit=self._max_connection_attempts
                    ),
                )
            )
            if self._enable_offline_mode:
                self.set_status(VoiceStatus.OFFLINE)
            return

        self._is_retrying = True
        self._retry_count += 1
        self._error = None
        logger.info("Retrying voice session (%d/%d)", self._retry_count, self._max_retries)
        self._retry_timer = self._call_later(self._retry_delay_s, self._finish_retry)

    def reset(self) -> None:
        self._clear_timers()
        self._init_state()

    def force_offline(self) -> None:
        if self._enable_offline_mode:
            self.set_status(VoiceStatus.OFFLINE)

    def go_online(self) -> None:
        self.set_status(VoiceStatus.READY)
        self.process_offline_queue()

    def add_to_offline_queue(self, action: OfflineAction) -> None:
        if self._enable_offline_mode:
            self._offline_queue.append(action)

    def process_offline_queue(self) -> None:
        queue, self._offline_queue = self._offline_queue, []
        for action in queue:
            try:
                action()
            except Exception:
                logger.exception("Error processing offline queue action")

    def dispose(self) -> None:
        self._clear_timers()

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def status_message(self) -> str:
        if self._status == VoiceStatus.CONNECTING:
            return (
                f"Connecting to voice service... "
                f"(Attempt {self._connection_attempts + 1}/{self._max_connection_attempts})"
            )
        if self._status == VoiceStatus.ERROR:
            return (self._error.message if self._error else "") or "An error occurred"
        return _STATUS_MESSAGES.get(self._status, "Unknown status")

    def status_color(self) -> str:
        return _STATUS_COLORS.get(self._status, "text-gray-600")

    def status_icon(self) -> str:
        return _STATUS_ICONS.get(self._status, "mic")

    def time_since_last_activity(self) -> float:
        """Milliseconds since the last status change."""
        return (self._clock() - self._last_activity) * 1000

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def _call_later(self, delay_s: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay_s, callback)

    def _clear_timers(self) -> None:
        for timer in (self._state_timer, self._connection_timer):
            if timer is not None:
                timer.cancel()
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._is_retrying = False
        self._state_timer = None
        self._connection_timer = None
        self._retry_timer = None

    def _handle_state_timeout(self) -> None:
        self._state_timer = None
        self._error = make_error(ErrorKind.API, TIMEOUT)
        self._last_error_time = now_ms()
        logger.warning("Voice session timed out in %s", self._status.value)
        self.set_status(VoiceStatus.TIMEOUT)
        if self._on_timeout:
            self._on_timeout()

    def _handle_connection_timeout(self) -> None:
        self._connection_timer = None
        self.set_error(make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT))

    def _finish_retry(self) -> None:
        self._retry_timer = None
        self._is_retrying = False
        self.set_status(VoiceStatus.READY)
