"""Core data models for the voice pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class VoiceStatus(str, Enum):
    READY = "ready"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    PROCESSING = "processing"
    PARSING = "parsing"
    COMPLETE = "complete"
    ERROR = "error"
    DISCONNECTED = "disconnected"
    OFFLINE = "offline"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    CONNECTION = "connection"
    PERMISSION = "permission"
    NETWORK = "network"
    API = "api"
    UNKNOWN = "unknown"


class MessageType(str, Enum):
    RESULTS = "Results"
    UTTERANCE_END = "UtteranceEnd"
    SPEECH_STARTED = "SpeechStarted"
    METADATA = "Metadata"
    ERROR = "Error"


@dataclass
class SessionConfig:
    model: str = "nova-2"
    language: str = "en"
    smart_format: bool = True
    interim_results: bool = True
    utterance_end_ms: int = 1000
    vad_events: bool = True
    punctuate: bool = True
    diarize: bool = False
    sample_rate: int = 16000
    channels: int = 1


@dataclass
class TranscriptEvent:
    text: str
    confidence: float
    is_final: bool
    speaker_id: Optional[int] = None
    start_ms: Optional[float] = None
    end_ms: Optional[float] = None


@dataclass
class VoiceError:
    kind: ErrorKind
    message: str
    code: Optional[str] = None


@dataclass
class UsageStatus:
    can_use: bool
    current_usage: float = 0
    quota: Optional[float] = None
    remaining: Optional[float] = None


@dataclass
class UsageRecord:
    duration_minutes: float
    model: str
    feature: str = "live_transcription"


@dataclass
class AudioFrame:
    pcm16_bytes: bytes
    sample_rate: int = 16000
    channels: int = 1
    timestamp_ms: int = 0
