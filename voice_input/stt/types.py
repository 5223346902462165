"""Pydantic models and enums for the voice-input pipeline."""

import time
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from voice_input import config

_DEFAULT_ENDPOINT = "wss://api.deepgram.com/v1/listen"
_REGIONAL_ENDPOINT = "wss://api.{region}.deepgram.com/v1/listen"
_GLOBAL_REGIONS = frozenset({"us", "global"})


class PermissionState(str, Enum):
    """Platform-level microphone permission."""

    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"


class RecognitionMode(str, Enum):
    """How the caller intends to use a recognition session."""

    PUSH_TO_TALK = "push-to-talk"
    CONTINUOUS = "continuous"


class SessionState(str, Enum):
    """Orchestrator session state."""

    IDLE = "idle"
    STARTING = "starting"
    RECOGNIZING = "recognizing"
    STOPPING = "stopping"


class ErrorType(str, Enum):
    """Kinds of recognition errors delivered to error subscribers."""

    MICROPHONE_UNAVAILABLE = "MICROPHONE_UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    RECOGNITION_FAILED = "RECOGNITION_FAILED"


class PermissionResult(BaseModel):
    """Outcome of an explicit permission request."""

    granted: bool
    error: str | None = None


class CaptureConstraints(BaseModel):
    """Fixed capture format required by the recognition service."""

    model_config = ConfigDict(frozen=True)

    channels: int = 1
    sample_rate: int = config.AUDIO_SAMPLE_RATE
    dtype: str = "int16"
    chunk_duration: float = config.AUDIO_CHUNK_DURATION
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True

    @property
    def blocksize(self) -> int:
        """Frames per captured block."""
        return int(self.sample_rate * self.chunk_duration)


class RecognitionConfiguration(BaseModel):
    """Credential, region/endpoint and language for the recognition service.

    ``region`` is either a bare service region (``"us"``, ``"eu"``) or a
    full ``ws://``/``wss://`` endpoint URL.
    """

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(default="", repr=False)
    region: str = ""
    language: str = "en-US"

    @property
    def endpoint_url(self) -> str:
        region = self.region.strip()
        if "://" in region:
            return region.rstrip("/")
        if not region or region.lower() in _GLOBAL_REGIONS:
            return _DEFAULT_ENDPOINT
        return _REGIONAL_ENDPOINT.format(region=region.lower())

    def with_language(self, language: str) -> "RecognitionConfiguration":
        """Return a copy of this configuration using *language*."""
        return self.model_copy(update={"language": language})


def load_recognition_config() -> RecognitionConfiguration:
    """Build a RecognitionConfiguration from the environment."""
    return RecognitionConfiguration(
        api_key=config.RECOGNITION_API_KEY,
        region=config.RECOGNITION_REGION,
        language=config.RECOGNITION_LANGUAGE,
    )


# ---------------------------------------------------------------------------
# Service-side results (emitted by the recognizer)
# ---------------------------------------------------------------------------


class InterimResult(BaseModel):
    """Provisional hypothesis reported while the speaker is still talking."""

    text: str
    offset: float = 0.0


class FinalResult(BaseModel):
    """Settled transcription of a completed utterance."""

    text: str
    confidence: float
    offset: float = 0.0
    duration: float = 0.0


# ---------------------------------------------------------------------------
# Relayed results (delivered to result subscribers)
# ---------------------------------------------------------------------------


class InterimRecognitionResult(BaseModel):
    type: Literal["interim"] = "interim"
    text: str
    timestamp: float = Field(default_factory=time.time)


class FinalRecognitionResult(BaseModel):
    type: Literal["final"] = "final"
    text: str
    confidence: float
    timestamp: float = Field(default_factory=time.time)


RecognitionResult = Annotated[
    Union[InterimRecognitionResult, FinalRecognitionResult],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Recognition errors (delivered to error subscribers)
# ---------------------------------------------------------------------------


class MicrophoneUnavailable(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["MICROPHONE_UNAVAILABLE"] = "MICROPHONE_UNAVAILABLE"
    message: str = "No microphone detected. Please connect a microphone and try again."
    recoverable: Literal[True] = True


class PermissionDenied(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["PERMISSION_DENIED"] = "PERMISSION_DENIED"
    message: str = "Microphone permission denied"
    recoverable: Literal[True] = True


class AuthenticationFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["AUTHENTICATION_ERROR"] = "AUTHENTICATION_ERROR"
    message: str = (
        "Speech service authentication failed. Please check your credentials."
    )
    recoverable: Literal[False] = False


class NetworkFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["NETWORK_ERROR"] = "NETWORK_ERROR"
    message: str = "Network connection lost. Please check your internet connection."
    recoverable: Literal[True] = True


class SessionTimeout(BaseModel):
    """Session exceeded its maximum duration (seconds)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["TIMEOUT"] = "TIMEOUT"
    duration: float
    recoverable: Literal[True] = True

    @property
    def message(self) -> str:
        return f"Recognition session timed out after {self.duration:g}s"


class RecognitionFailed(BaseModel):
    """Any failure not covered by a more specific kind."""

    model_config = ConfigDict(frozen=True)

    type: Literal["RECOGNITION_FAILED"] = "RECOGNITION_FAILED"
    message: str
    recoverable: Literal[True] = True


RecognitionError = Annotated[
    Union[
        MicrophoneUnavailable,
        PermissionDenied,
        AuthenticationFailure,
        NetworkFailure,
        SessionTimeout,
        RecognitionFailed,
    ],
    Field(discriminator="type"),
]
