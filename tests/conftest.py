"""Shared fixtures for voice-input tests."""

import asyncio

import httpx
import pytest

from voice_input.events.event_bus import EventBus
from voice_input.stt.errors import ConfigurationError
from voice_input.stt.types import (
    FinalResult,
    InterimResult,
    PermissionResult,
    PermissionState,
    RecognitionConfiguration,
)
from voice_input.stt.voice_input_service import VoiceInputService


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeCaptureStream:
    """Stands in for CaptureStream; never touches an audio device."""

    def __init__(self) -> None:
        self.active = True

    def stop(self) -> None:
        self.active = False


class FakeMicrophone:
    """Duck-typed MicrophoneManager that records device usage.

    ``open_streams`` is the number of capture streams currently held open.
    """

    def __init__(self, *, available: bool = True, granted: bool = True) -> None:
        self.available = available
        self.granted = granted
        self.permission_gate: asyncio.Event | None = None
        self.capture_error: Exception | None = None
        self.describe_error: Exception | None = None
        self.open_streams = 0
        self.start_calls = 0
        self.stop_calls = 0
        self._stream: FakeCaptureStream | None = None
        self._levels: EventBus[int] = EventBus("audio level")

    def describe_input_device(self) -> dict:
        if self.describe_error is not None:
            raise self.describe_error
        return {"name": "test-mic", "max_input_channels": 1}

    def is_available(self) -> bool:
        return self.available

    async def request_permission(self) -> PermissionResult:
        if self.permission_gate is not None:
            await self.permission_gate.wait()
        if self.granted:
            return PermissionResult(granted=True)
        return PermissionResult(granted=False, error="Microphone access denied.")

    def check_permission(self) -> PermissionState:
        return PermissionState.GRANTED if self.granted else PermissionState.DENIED

    async def start_capture(self) -> FakeCaptureStream:
        self.start_calls += 1
        if self.capture_error is not None:
            raise self.capture_error
        if self._stream is None:
            self._stream = FakeCaptureStream()
            self.open_streams += 1
        return self._stream

    def stop_capture(self) -> None:
        self.stop_calls += 1
        if self._stream is not None:
            self._stream.stop()
            self._stream = None
            self.open_streams -= 1

    @property
    def is_capturing(self) -> bool:
        return self._stream is not None

    def subscribe_to_audio_levels(self, callback):
        return self._levels.subscribe(callback)

    def emit_level(self, level: int) -> None:
        self._levels.emit(level)


class FakeRecognizer:
    """Duck-typed SpeechRecognizer driven directly by tests."""

    def __init__(self) -> None:
        self.config: RecognitionConfiguration | None = None
        self.is_recognizing = False
        self.start_error: Exception | None = None
        self.start_gate: asyncio.Event | None = None
        self.start_calls = 0
        self.stop_calls = 0
        self.configured: list[RecognitionConfiguration] = []
        self._recognizing_cb = None
        self._recognized_cb = None
        self._error_cb = None
        self._started_cb = None
        self._stopped_cb = None

    def configure(self, config: RecognitionConfiguration) -> None:
        if not config.api_key or not config.region:
            raise ConfigurationError("Recognition service api_key and region required")
        self.config = config
        self.configured.append(config)

    def on_recognizing(self, callback) -> None:
        self._recognizing_cb = callback

    def on_recognized(self, callback) -> None:
        self._recognized_cb = callback

    def on_error(self, callback) -> None:
        self._error_cb = callback

    def on_session_started(self, callback) -> None:
        self._started_cb = callback

    def on_session_stopped(self, callback) -> None:
        self._stopped_cb = callback

    async def start_continuous_recognition(self, stream) -> None:
        self.start_calls += 1
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_error is not None:
            raise self.start_error
        self.is_recognizing = True
        self._started_cb()

    async def stop_continuous_recognition(self) -> None:
        if not self.is_recognizing:
            return
        self.stop_calls += 1
        self.is_recognizing = False
        self._stopped_cb()

    # -- simulated service events ----------------------------------------

    def emit_interim(self, text: str) -> None:
        self._recognizing_cb(InterimResult(text=text))

    def emit_final(self, text: str, confidence: float = 0.9) -> None:
        self._recognized_cb(FinalResult(text=text, confidence=confidence))

    def emit_error(self, error) -> None:
        """Service canceled the session: the adapter is already idle."""
        self.is_recognizing = False
        self._error_cb(error)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> RecognitionConfiguration:
    return RecognitionConfiguration(api_key="test-key", region="eu", language="en-US")


@pytest.fixture
def microphone() -> FakeMicrophone:
    return FakeMicrophone()


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
async def service(
    microphone: FakeMicrophone,
    recognizer: FakeRecognizer,
    config: RecognitionConfiguration,
) -> VoiceInputService:
    """Return an initialised VoiceInputService wired to fake collaborators."""
    svc = VoiceInputService(microphone=microphone, recognizer=recognizer)
    await svc.initialize(config)
    yield svc
    await svc.aclose()


@pytest.fixture
def app(service: VoiceInputService):
    """Return a FastAPI test app around the fake-backed service."""
    from fastapi import FastAPI

    from voice_input.server.routes import router

    test_app = FastAPI()
    test_app.state.voice_input = service
    test_app.include_router(router)
    return test_app


@pytest.fixture
async def async_client(app):
    """Return an httpx AsyncClient configured with the test FastAPI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as client:
        yield client
