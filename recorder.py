"""Microphone recorder adapter."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from errors import MicrophoneNotFoundError, MicrophonePermissionError
from models import AudioFrame

try:
    import numpy as np
except Exception:  # pragma: no cover
    np = None  # type: ignore

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

FrameCallback = Callable[[AudioFrame], None]

_PERMISSION_MARKERS = ("permission", "denied", "not authorized")


class SoundDeviceRecorder:
    """Captures 16-bit PCM from the default input device.

    ``on_frame`` is invoked from the PortAudio driver thread, one call per
    ``chunk_ms`` block.
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        chunk_ms: int = 100,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.chunk_ms = chunk_ms
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._on_frame: Optional[FrameCallback] = None
        self.callback_errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self, on_frame: FrameCallback) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._require_input_device()
            self._on_frame = on_frame
            blocksize = int(self.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=blocksize,
                    callback=self._on_audio,
                )
                self._stream.start()
            except sd.PortAudioError as exc:
                self._stream = None
                self._on_frame = None
                if any(marker in str(exc).lower() for marker in _PERMISSION_MARKERS):
                    raise MicrophonePermissionError(str(exc)) from exc
                raise
            self._running = True
            logger.info(
                "Recording started (%d Hz, %d ch, %d ms blocks)",
                self.sample_rate,
                self.channels,
                self.chunk_ms,
            )

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._on_frame = None
            if self._stream is not None:
                self._stream.stop()
                self._stream.close()
                self._stream = None
            logger.info("Recording stopped")

    def _require_input_device(self) -> None:
        try:
            sd.query_devices(kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            raise MicrophoneNotFoundError("No audio input device available") from exc

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        on_frame = self._on_frame
        if not self._running or on_frame is None:
            return
        if np is None:
            return
        if status:
            logger.debug("Audio input status: %s", status)
        payload = np.asarray(indata, dtype=np.int16).tobytes()
        frame = AudioFrame(
            pcm16_bytes=payload,
            sample_rate=self.sample_rate,
            channels=self.channels,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            on_frame(frame)
        except Exception:
            self.callback_errors += 1
            logger.exception("Audio frame callback failed")
