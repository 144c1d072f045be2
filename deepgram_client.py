"""Deepgram live-transcription client.

One :class:`DeepgramClient` owns at most one streaming WebSocket session to
``wss://api.deepgram.com/v1/listen``.  Audio frames go out as binary
messages; ``Results`` envelopes come back and are forwarded, in transport
order, to a single transcript callback.  Unexpected closures are retried
with exponential backoff until ``max_reconnect_attempts`` is used up.

Everything runs on the caller's asyncio loop.  ``send_audio`` is a plain
method so it can be scheduled from the audio driver thread with
``loop.call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import replace
from typing import Any, Callable, Optional, Union
from urllib.parse import quote, urlencode

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed

from error_classifier import classify_close, classify_exception, is_auth_failure_close, make_error
from errors import (
    CLOSE_CODE_MEANINGS,
    CONNECTION_TIMEOUT,
    DEEPGRAM_ERROR,
    INVALID_API_KEY,
    MAX_RECONNECTION_ATTEMPTS,
    NORMAL_CLOSURE,
    QUOTA_EXCEEDED,
    VoiceServiceError,
)
from interfaces import DeepgramAuth, Transport, TransportFactory
from models import (
    AudioFrame,
    ConnectionState,
    ErrorKind,
    MessageType,
    SessionConfig,
    TranscriptEvent,
    UsageRecord,
    VoiceError,
)

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"
USAGE_FEATURE = "live_transcription"
ABNORMAL_CLOSURE = 1006

_API_KEY_RE = re.compile(r"[0-9a-fA-F]{40}")

TranscriptCallback = Callable[[TranscriptEvent], None]
ErrorCallback = Callable[[VoiceError], None]
ConnectionStateCallback = Callable[[ConnectionState], None]


def is_valid_api_key(api_key: Optional[str]) -> bool:
    return bool(api_key) and _API_KEY_RE.fullmatch(api_key) is not None


def _flag(value: bool) -> str:
    return "true" if value else "false"


def build_listen_url(
    config: SessionConfig,
    base_url: str = DEEPGRAM_LISTEN_URL,
    api_key: Optional[str] = None,
) -> str:
    """Render the session config as query parameters.

    ``api_key`` is only passed for the URL-token fallback; the primary path
    authenticates with a header.
    """
    params = {
        "model": config.model,
        "language": config.language,
        "sample_rate": str(config.sample_rate),
        "channels": str(config.channels),
        "smart_format": _flag(config.smart_format),
        "interim_results": _flag(config.interim_results),
        "utterance_end_ms": str(config.utterance_end_ms),
        "vad_events": _flag(config.vad_events),
        "punctuate": _flag(config.punctuate),
        "diarize": _flag(config.diarize),
    }
    if api_key:
        params["authorization"] = f"Token {api_key}"
    return f"{base_url}?{urlencode(params, quote_via=quote)}"


def reconnect_delay_s(attempt: int, base_s: float = 1.0, max_s: float = 10.0) -> float:
    """Backoff for the n-th reconnection attempt (1-based)."""
    return min(base_s * 2 ** (attempt - 1), max_s)


def parse_results(payload: dict[str, Any]) -> Optional[TranscriptEvent]:
    """Build a transcript event from the top alternative of a Results message."""
    alternatives = (payload.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    top = alternatives[0]
    event = TranscriptEvent(
        text=str(top.get("transcript") or ""),
        confidence=float(top.get("confidence") or 0.0),
        is_final=bool(payload.get("is_final", False)),
    )
    words = top.get("words") or []
    if words:
        speaker = words[0].get("speaker")
        if speaker is not None:
            event.speaker_id = int(speaker)
        if words[0].get("start") is not None:
            event.start_ms = float(words[0]["start"]) * 1000
        if words[-1].get("end") is not None:
            event.end_ms = float(words[-1]["end"]) * 1000
    return event


class DeepgramClient:
    def __init__(
        self,
        auth: DeepgramAuth,
        config: Optional[SessionConfig] = None,
        *,
        url: str = DEEPGRAM_LISTEN_URL,
        connect_timeout_s: float = 10.0,
        settle_delay_s: float = 0.05,
        max_reconnect_attempts: int = 3,
        reconnect_base_delay_s: float = 1.0,
        reconnect_max_delay_s: float = 10.0,
        force_reconnect_pause_s: float = 1.0,
        transport_factory: Optional[TransportFactory] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = auth
        self._config = config or SessionConfig()
        self._url = url
        self._connect_timeout_s = connect_timeout_s
        self._settle_delay_s = settle_delay_s
        self._max_reconnect_attempts = max_reconnect_attempts
        self._reconnect_base_delay_s = reconnect_base_delay_s
        self._reconnect_max_delay_s = reconnect_max_delay_s
        self._force_reconnect_pause_s = force_reconnect_pause_s
        self._transport_factory = transport_factory or ws_connect
        self._clock = clock

        self._ws: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._outbound: Optional[asyncio.Queue[bytes]] = None
        self._reconnect_attempts = 0
        self._manual_disconnect = False

        self._on_transcript: Optional[TranscriptCallback] = None
        self._on_error: Optional[ErrorCallback] = None
        self._on_connection_state: Optional[ConnectionStateCallback] = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and self._state == ConnectionState.CONNECTED

    @property
    def connection_state(self) -> ConnectionState:
        return self._state

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    # ------------------------------------------------------------------
    # Callback registration (last registration wins)
    # ------------------------------------------------------------------

    def on_transcript(self, callback: Optional[TranscriptCallback]) -> None:
        self._on_transcript = callback

    def on_error(self, callback: Optional[ErrorCallback]) -> None:
        self._on_error = callback

    def on_connection_state(self, callback: Optional[ConnectionStateCallback]) -> None:
        self._on_connection_state = callback

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self.is_connected:
            return
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect_once())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # disconnect() cancelled the shared attempt: settle quietly
            if task.cancelled() and self._manual_disconnect:
                return
            raise

    def send_audio(self, frame: Union[bytes, bytearray, AudioFrame]) -> None:
        if not self.is_connected or self._outbound is None:
            logger.warning("WebSocket not connected, cannot send audio (state=%s)", self._state.value)
            return
        data = frame.pcm16_bytes if isinstance(frame, AudioFrame) else bytes(frame)
        self._outbound.put_nowait(data)

    async def disconnect(self) -> None:
        self._manual_disconnect = True
        current = asyncio.current_task()
        for task in (self._reconnect_task, self._connect_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._reconnect_task = None
        self._connect_task = None

        ws = self._ws
        if ws is None:
            self._set_state(ConnectionState.DISCONNECTED)
            return

        logger.info("Manually disconnecting WebSocket")
        self._ws = None
        self._set_state(ConnectionState.CLOSING)
        self._stop_writer()
        await ws.close(NORMAL_CLOSURE, "Client disconnect")

        reader = self._reader_task
        if reader is not None and reader is not current:
            await reader

    def update_config(self, **changes: Any) -> None:
        self._config = replace(self._config, **changes)

    def reset_connection_state(self) -> None:
        logger.debug("Resetting connection state")
        self._reconnect_attempts = 0
        self._manual_disconnect = False
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None

    async def force_reconnect(self) -> None:
        logger.info("Force reconnecting...")
        await self.disconnect()
        await asyncio.sleep(self._force_reconnect_pause_s)
        self.reset_connection_state()
        await self.connect()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def _connect_once(self) -> None:
        self._manual_disconnect = False
        self._set_state(ConnectionState.CONNECTING)
        try:
            ws = await asyncio.wait_for(self._open_transport(), timeout=self._connect_timeout_s)
        except asyncio.TimeoutError:
            error = make_error(ErrorKind.CONNECTION, CONNECTION_TIMEOUT)
            self._fail_connect(error)
            raise VoiceServiceError(error) from None
        except asyncio.CancelledError:
            self._set_state(ConnectionState.DISCONNECTED)
            raise
        except Exception as exc:
            error = classify_exception(exc)
            self._fail_connect(error)
            raise VoiceServiceError(error) from exc

        self._attach(ws)
        # Empirical settle step between "open" and the first send.
        await asyncio.sleep(self._settle_delay_s)

    async def _open_transport(self) -> Transport:
        usage = await self._auth.validate_usage()
        if not usage.can_use:
            raise VoiceServiceError(make_error(ErrorKind.API, QUOTA_EXCEEDED))

        api_key = await self._auth.get_api_key()
        if not is_valid_api_key(api_key):
            logger.error("API key validation failed (length=%d, expected 40 hex chars)", len(api_key or ""))
            raise VoiceServiceError(make_error(ErrorKind.CONNECTION, INVALID_API_KEY))

        url = build_listen_url(self._config, self._url)
        logger.info("Opening Deepgram WebSocket: %s", url)
        try:
            return await self._transport_factory(
                url, additional_headers={"Authorization": f"Token {api_key}"}
            )
        except TypeError as exc:
            logger.warning("Header authorization unavailable (%s); using URL token", exc)
            return await self._transport_factory(build_listen_url(self._config, self._url, api_key))

    def _attach(self, ws: Transport) -> None:
        opened_at = self._clock()
        self._ws = ws
        self._reconnect_attempts = 0
        self._outbound = asyncio.Queue()
        self._reader_task = asyncio.ensure_future(self._read_loop(ws, opened_at))
        self._writer_task = asyncio.ensure_future(self._write_loop(ws, self._outbound))
        logger.info("Deepgram WebSocket connected")
        self._set_state(ConnectionState.CONNECTED)

    def _fail_connect(self, error: VoiceError) -> None:
        logger.error("Failed to connect to Deepgram: %s (%s)", error.message, error.code)
        self._set_state(ConnectionState.DISCONNECTED)
        self._emit_error(error)

    async def _read_loop(self, ws: Transport, opened_at: float) -> None:
        try:
            async for message in ws:
                self._handle_message(message)
        except ConnectionClosed as exc:
            logger.debug("Transport closed while reading: %s", exc)
        except Exception:
            logger.exception("Deepgram reader failed")
        # Cancellation skips close handling so shutdown never schedules a reconnect.
        await self._handle_close(ws, opened_at)

    async def _write_loop(self, ws: Transport, outbound: asyncio.Queue[bytes]) -> None:
        while True:
            data = await outbound.get()
            try:
                await ws.send(data)
            except ConnectionClosed:
                logger.warning("Transport closed while sending audio")
                return

    def _stop_writer(self) -> None:
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
        self._writer_task = None
        self._outbound = None

    async def _handle_close(self, ws: Transport, opened_at: float) -> None:
        code = ws.close_code if ws.close_code is not None else ABNORMAL_CLOSURE
        reason = ws.close_reason or ""
        duration_ms = (self._clock() - opened_at) * 1000
        logger.info(
            "Deepgram WebSocket closed: %s (%s) reason=%r after %.0fms",
            code,
            CLOSE_CODE_MEANINGS.get(code, "Unknown"),
            reason,
            duration_ms,
        )

        if ws is self._ws:
            self._ws = None
            self._stop_writer()
        if self._ws is None:
            self._set_state(ConnectionState.DISCONNECTED)

        await self._log_session_usage(duration_ms)

        if is_auth_failure_close(code, duration_ms):
            logger.error("Immediate close with code %s: authentication failure", code)
            self._emit_error(classify_close(code, reason, duration_ms))
        elif code != NORMAL_CLOSURE and not self._manual_disconnect:
            error = classify_close(code, reason, duration_ms)
            logger.warning("Abnormal close [%s/%s]: %s", error.kind.value, error.code, error.message)

        if self._manual_disconnect:
            logger.info("Manual disconnect - no reconnection attempt")
        elif code == NORMAL_CLOSURE:
            logger.info("Clean close - no reconnection attempt")
        elif self._reconnect_attempts >= self._max_reconnect_attempts:
            logger.info("Max reconnection attempts reached - no reconnection attempt")
        else:
            self._schedule_reconnect()

    async def _log_session_usage(self, duration_ms: float) -> None:
        record = UsageRecord(
            duration_minutes=duration_ms / 60000,
            model=self._config.model,
            feature=USAGE_FEATURE,
        )
        try:
            await self._auth.log_usage(record)
        except Exception:
            logger.exception("Error logging session usage")

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._reconnect_attempts += 1
        attempt = self._reconnect_attempts
        delay = reconnect_delay_s(attempt, self._reconnect_base_delay_s, self._reconnect_max_delay_s)
        logger.info(
            "Attempting reconnection %d/%d in %.1fs", attempt, self._max_reconnect_attempts, delay
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._manual_disconnect:
            logger.info("Reconnection cancelled - manual disconnect detected")
            return
        try:
            await self.connect()
        except VoiceServiceError as exc:
            logger.error("Reconnection failed: %s", exc)
            if self._manual_disconnect:
                return
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                logger.error("Max reconnection attempts reached, giving up")
                self._emit_error(make_error(ErrorKind.CONNECTION, MAX_RECONNECTION_ATTEMPTS))
            else:
                self._schedule_reconnect()
            return
        if self.is_connected:
            logger.info("Reconnection successful")

    # ------------------------------------------------------------------
    # Inbound messages
    # ------------------------------------------------------------------

    def _handle_message(self, message: Union[bytes, str]) -> None:
        if isinstance(message, (bytes, bytearray)):
            logger.debug("Ignoring binary message (%d bytes)", len(message))
            return
        try:
            payload = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("Error parsing Deepgram response: %.200s", message)
            return
        if not isinstance(payload, dict):
            logger.warning("Unexpected Deepgram payload: %.200s", message)
            return

        msg_type = payload.get("type")
        if msg_type == MessageType.RESULTS.value:
            try:
                event = parse_results(payload)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("Malformed Deepgram Results (%s): %.200s", exc, message)
                return
            if event is None:
                return
            if event.text or event.is_final:
                self._dispatch(self._on_transcript, event)
            else:
                logger.debug("Skipping empty non-final transcript")
        elif msg_type == MessageType.ERROR.value:
            detail = payload.get("error") or payload.get("description") or payload.get("message")
            error = make_error(ErrorKind.API, DEEPGRAM_ERROR, str(detail) if detail else None)
            logger.error("Deepgram error: %s", error.message)
            self._emit_error(error)
        elif msg_type == MessageType.METADATA.value:
            logger.info("Deepgram metadata: %s", payload.get("metadata", payload))
        elif msg_type in (MessageType.UTTERANCE_END.value, MessageType.SPEECH_STARTED.value):
            logger.debug("Deepgram %s event", msg_type)
        else:
            logger.debug("Unknown Deepgram response type: %r", msg_type)

    # ------------------------------------------------------------------
    # Callback plumbing
    # ------------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if self._state == state:
            return
        self._state = state
        self._dispatch(self._on_connection_state, state)

    def _emit_error(self, error: VoiceError) -> None:
        self._dispatch(self._on_error, error)

    def _dispatch(self, callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception("Voice client callback failed")
