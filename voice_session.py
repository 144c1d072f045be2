"""Glue between the microphone, the Deepgram client and the status machine."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from deepgram_client import DeepgramClient
from error_classifier import classify_exception
from error_log import VoiceErrorLogger
from errors import (
    AUTH_FAILED,
    CONNECTION_TIMEOUT,
    INVALID_API_KEY,
    MAX_RECONNECTION_ATTEMPTS,
    QUOTA_EXCEEDED,
    VoiceServiceError,
)
from interfaces import Recorder
from models import AudioFrame, ConnectionState, TranscriptEvent, VoiceError, VoiceStatus
from voice_status import VoiceStatusMachine

logger = logging.getLogger(__name__)

PartialCallback = Callable[[str], None]
FinalCallback = Callable[[str], None]

# Errors after which the client will not come back on its own.
_TERMINAL_CODES = (AUTH_FAILED, INVALID_API_KEY, QUOTA_EXCEEDED, MAX_RECONNECTION_ATTEMPTS)


class VoiceSession:
    def __init__(
        self,
        client: DeepgramClient,
        status: VoiceStatusMachine,
        recorder: Recorder,
        *,
        on_partial: Optional[PartialCallback] = None,
        on_final: Optional[FinalCallback] = None,
        error_log: Optional[VoiceErrorLogger] = None,
    ) -> None:
        self._client = client
        self._status = status
        self._recorder = recorder
        self._on_partial = on_partial
        self._on_final = on_final
        self._error_log = error_log

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._active = False
        self._segments: list[str] = []
        self._pending_start: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._starting = False

        client.on_transcript(self._handle_transcript)
        client.on_error(self._handle_client_error)
        client.on_connection_state(self._handle_connection_state)

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def transcript(self) -> str:
        return " ".join(self._segments)

    async def start(self) -> bool:
        if self._active:
            return True
        if self._status.is_offline:
            logger.info("Offline: voice session start deferred until back online")
            self._status.add_to_offline_queue(self._deferred_start)
            return False

        self._loop = asyncio.get_running_loop()
        self._segments = []
        self._status.clear_error()
        self._status.set_status(VoiceStatus.CONNECTING)
        self._starting = True
        try:
            await self._client.connect()
        except VoiceServiceError as exc:
            logger.warning("Voice session could not connect: %s", exc)
            return False
        finally:
            self._starting = False
        if not self._client.is_connected:
            return False
        self._status.set_status(VoiceStatus.CONNECTED)

        try:
            self._recorder.start(self._on_frame)
        except Exception as exc:
            logger.exception("Failed to start recording")
            self._report_error(classify_exception(exc))
            await self._client.disconnect()
            return False

        self._active = True
        self._status.set_status(VoiceStatus.LISTENING)
        return True

    async def stop(self) -> str:
        if not self._active:
            return ""
        self._active = False
        self._safe_stop_recorder()
        self._status.set_status(VoiceStatus.PROCESSING)
        await self._client.disconnect()

        self._status.set_status(VoiceStatus.PARSING)
        text = self.transcript.strip()
        self._status.set_status(VoiceStatus.COMPLETE)
        logger.info("Voice session complete (%d chars)", len(text))
        if self._on_final:
            self._on_final(text)
        return text

    async def cancel(self, reason: str = "cancelled") -> None:
        if self._pending_start is not None and not self._pending_start.done():
            self._pending_start.cancel()
        if not self._active:
            return
        logger.info("Voice session cancelled: %s", reason)
        await self._teardown()
        self._segments = []
        self._status.set_status(VoiceStatus.READY)

    def retry(self) -> None:
        self._client.reset_connection_state()
        self._status.retry()

    def go_online(self) -> None:
        self._client.reset_connection_state()
        self._status.go_online()

    def handle_timeout(self) -> None:
        """Tear down capture after the status machine's inactivity timeout."""
        if not self._active:
            return
        logger.info("Voice session timed out, releasing microphone and connection")
        self._teardown_task = asyncio.ensure_future(self._teardown())

    async def close(self) -> None:
        if self._pending_start is not None and not self._pending_start.done():
            self._pending_start.cancel()
        await self._teardown()
        self._status.dispose()

    # ------------------------------------------------------------------
    # Client callbacks
    # ------------------------------------------------------------------

    def _handle_transcript(self, event: TranscriptEvent) -> None:
        if not self._active:
            return
        if not event.is_final:
            if self._on_partial:
                self._on_partial(event.text)
            return

        text = event.text.strip()
        if not text:
            return
        self._segments.append(text)
        if self._on_partial:
            self._on_partial(self.transcript)
        if self._status.is_listening:
            # Re-arms the inactivity timeout.
            self._status.set_status(VoiceStatus.LISTENING)

    def _handle_client_error(self, error: VoiceError) -> None:
        current = self._status.error
        if (
            self._starting
            and error.code == CONNECTION_TIMEOUT
            and self._status.has_error
            and current is not None
            and current.code == CONNECTION_TIMEOUT
        ):
            # The status machine's own connect timer already counted this attempt.
            self._report_error(error, update_status=False)
            return
        self._report_error(error)
        if self._active and error.code in _TERMINAL_CODES:
            self._teardown_task = asyncio.ensure_future(self._teardown())

    def _handle_connection_state(self, state: ConnectionState) -> None:
        if state == ConnectionState.DISCONNECTED and self._status.is_listening:
            self._status.set_status(VoiceStatus.DISCONNECTED)
        elif state == ConnectionState.CONNECTED and self._active and not self._status.is_listening:
            logger.info("Voice connection restored")
            self._status.set_status(VoiceStatus.LISTENING)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _on_frame(self, frame: AudioFrame) -> None:
        # Driver thread: hop onto the loop before touching the client.
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._forward_frame, frame)
        except RuntimeError:
            logger.debug("Event loop closed, dropping audio frame")

    def _forward_frame(self, frame: AudioFrame) -> None:
        if self._active and self._client.is_connected:
            self._client.send_audio(frame)

    def _deferred_start(self) -> None:
        self._pending_start = asyncio.ensure_future(self.start())

    def _report_error(self, error: VoiceError, update_status: bool = True) -> None:
        if self._error_log is not None:
            self._error_log.log_error(
                error,
                self._status.status,
                retry_count=self._status.retry_count,
                connection_attempts=self._status.connection_attempts,
                context={"model": self._client.config.model, "language": self._client.config.language},
            )
        if update_status:
            self._status.set_error(error)

    async def _teardown(self) -> None:
        self._active = False
        self._safe_stop_recorder()
        await self._client.disconnect()

    def _safe_stop_recorder(self) -> None:
        try:
            self._recorder.stop()
        except Exception:
            logger.exception("Failed to stop recorder")
