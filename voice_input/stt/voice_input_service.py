"""Voice-input session orchestrator.

The VoiceInputService is the single entry point the application talks to.
It sequences device availability -> permission -> capture -> recognition,
enforces the continuous-mode session timeout, fans results, errors,
recognition state and audio levels out to any number of subscribers, and
releases the device and the recognition session on every exit path.

All state mutation happens on the event loop that calls into the service;
callbacks from the recognizer and the timeout timer run there as well.
"""

import asyncio
import logging
import time
from typing import Callable, Coroutine

from voice_input.config import CONTINUOUS_SESSION_TIMEOUT, PRELOAD_DEGRADED_THRESHOLD
from voice_input.events.event_bus import EventBus
from voice_input.stt.errors import (
    ConfigurationError,
    NotInitializedError,
    RecognitionStartError,
)
from voice_input.stt.microphone import MicrophoneManager
from voice_input.stt.recognizer import SpeechRecognizer
from voice_input.stt.types import (
    FinalRecognitionResult,
    FinalResult,
    InterimRecognitionResult,
    InterimResult,
    MicrophoneUnavailable,
    PermissionDenied,
    RecognitionConfiguration,
    RecognitionError,
    RecognitionFailed,
    RecognitionMode,
    RecognitionResult,
    SessionState,
    SessionTimeout,
)

logger = logging.getLogger(__name__)


class VoiceInputService:
    """Coordinates a MicrophoneManager and a SpeechRecognizer.

    Construct one instance at application startup and hand it to every
    consumer.  The microphone and recognizer are owned by the service for its
    whole lifetime and reused across start/stop cycles.
    """

    def __init__(
        self,
        microphone: MicrophoneManager | None = None,
        recognizer: SpeechRecognizer | None = None,
        *,
        session_timeout: float = CONTINUOUS_SESSION_TIMEOUT,
    ) -> None:
        self._microphone = microphone or MicrophoneManager()
        self._recognizer = recognizer or SpeechRecognizer()
        self._session_timeout = session_timeout

        self._config: RecognitionConfiguration | None = None
        self._state: SessionState = SessionState.IDLE
        self._mode: RecognitionMode = RecognitionMode.PUSH_TO_TALK
        self._session_started_at: float = 0.0
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._stop_requested: bool = False
        self._tasks: set[asyncio.Task] = set()

        self._preloaded: bool = False
        self._preload_failures: int = 0
        self._preload_degraded: bool = False

        self._results: EventBus[RecognitionResult] = EventBus("result")
        self._errors: EventBus[RecognitionError] = EventBus("error")
        self._recognition_state: EventBus[bool] = EventBus("recognition state")
        self._levels: EventBus[int] = EventBus("audio level")

        self._microphone.subscribe_to_audio_levels(self._levels.emit)
        self._recognizer.on_recognizing(self._handle_interim)
        self._recognizer.on_recognized(self._handle_final)
        self._recognizer.on_error(self._handle_recognizer_error)
        self._recognizer.on_session_started(self._handle_session_started)
        self._recognizer.on_session_stopped(self._handle_session_stopped)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_recognizing(self) -> bool:
        return self._state == SessionState.RECOGNIZING

    @property
    def mode(self) -> RecognitionMode:
        """Mode of the current, or most recent, session."""
        return self._mode

    @property
    def is_initialized(self) -> bool:
        return self._config is not None

    @property
    def config(self) -> RecognitionConfiguration | None:
        return self._config

    @property
    def microphone(self) -> MicrophoneManager:
        return self._microphone

    @property
    def preload_degraded(self) -> bool:
        """True once preloading has failed PRELOAD_DEGRADED_THRESHOLD times in a row."""
        return self._preload_degraded

    @property
    def subscriber_counts(self) -> dict[str, int]:
        return {
            "results": self._results.subscriber_count,
            "errors": self._errors.subscriber_count,
            "recognition_state": self._recognition_state.subscriber_count,
            "audio_levels": self._levels.subscriber_count,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, config: RecognitionConfiguration) -> None:
        """Validate *config*, configure the recognizer and kick off preloading.

        Raises ConfigurationError if the credential or region is missing.
        Preloading runs in the background and never raises.
        """
        logger.info("Initializing voice input service (language=%s)", config.language)
        if not config.api_key or not config.region:
            raise ConfigurationError("Recognition service credentials are required")

        self._recognizer.configure(config)
        self._config = config

        if not self._preloaded:
            self._spawn(self._preload())
        logger.info("Voice input service initialized")

    async def aclose(self) -> None:
        """End any session and wait for deferred work to finish."""
        self._cancel_session_timeout()
        await self._cleanup()
        pending = [task for task in self._tasks if task is not asyncio.current_task()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _preload(self) -> None:
        """Query the input device ahead of the first session.

        Failures are logged, counted, and otherwise ignored.
        """
        try:
            device = await asyncio.to_thread(self._microphone.describe_input_device)
        except Exception as exc:
            self._preload_failures += 1
            logger.warning(
                "Failed to preload audio device (attempt %d): %s",
                self._preload_failures,
                exc,
            )
            if (
                self._preload_failures >= PRELOAD_DEGRADED_THRESHOLD
                and not self._preload_degraded
            ):
                self._preload_degraded = True
                logger.error(
                    "Audio device preload failed %d times in a row — "
                    "running without preload",
                    self._preload_failures,
                )
            return

        self._preloaded = True
        self._preload_failures = 0
        self._preload_degraded = False
        logger.info("Audio device preloaded: %s", device.get("name", "unknown"))

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def start_recognition(
        self, mode: RecognitionMode | str = RecognitionMode.PUSH_TO_TALK
    ) -> None:
        """Start a recognition session.  No-op if one is already active.

        Failures are delivered to error subscribers, never raised; only a
        missing ``initialize()`` raises NotInitializedError.
        """
        mode = RecognitionMode(mode)
        if self._state != SessionState.IDLE:
            logger.warning(
                "Recognition already in progress (state=%s)", self._state.value
            )
            return
        if self._config is None:
            raise NotInitializedError(
                "Voice input service not initialized. Call initialize() first."
            )

        logger.info("Starting recognition session (mode=%s)", mode.value)
        self._mode = mode
        self._state = SessionState.STARTING
        self._stop_requested = False
        self._session_started_at = time.monotonic()

        try:
            await self._start_session(mode)
        except asyncio.CancelledError:
            logger.info("Recognition start cancelled")
            await self._cleanup()
            raise

    async def _start_session(self, mode: RecognitionMode) -> None:
        if not self._microphone.is_available():
            self._state = SessionState.IDLE
            self._emit_error(MicrophoneUnavailable())
            return

        permission = await self._microphone.request_permission()
        if not permission.granted:
            self._state = SessionState.IDLE
            self._emit_error(
                PermissionDenied(message=permission.error or "Microphone permission denied")
            )
            return
        if self._stop_requested:
            logger.info("Stop requested during permission request — not starting")
            await self._cleanup()
            return

        error: RecognitionError | None = None
        try:
            stream = await self._microphone.start_capture()
            if not self._stop_requested:
                await self._recognizer.start_continuous_recognition(stream)
        except RecognitionStartError as exc:
            error = exc.error
        except Exception as exc:
            error = RecognitionFailed(message=f"Failed to start recognition: {exc}")

        if error is not None:
            logger.error("Failed to start recognition session: %s", error.message)
            await self._cleanup()
            self._emit_error(error)
            return

        if self._stop_requested:
            logger.info("Stop requested during start — ending session")
            await self._cleanup()
            return

        self._state = SessionState.RECOGNIZING
        self._emit_recognition_state(True)

        if mode == RecognitionMode.CONTINUOUS:
            self._timeout_handle = asyncio.get_running_loop().call_later(
                self._session_timeout, self._on_session_timeout
            )
        logger.info("Recognition session started (mode=%s)", mode.value)

    async def stop_recognition(self) -> None:
        """Stop the current session.  Safe to call in any state."""
        if self._state == SessionState.STARTING:
            logger.info("Stop requested while starting — will end session")
            self._stop_requested = True
            return
        if self._state != SessionState.RECOGNIZING:
            return

        logger.info(
            "Stopping recognition session (duration=%.1fs)",
            time.monotonic() - self._session_started_at,
        )
        await self._cleanup()
        logger.info("Recognition session stopped")

    def update_language(self, language: str) -> None:
        """Reconfigure the recognizer for *language* from the next session on."""
        if self._config is None:
            logger.warning("Cannot update language: service not initialized")
            return

        logger.info(
            "Updating recognition language from %s to %s",
            self._config.language,
            language,
        )
        config = self._config.with_language(language)
        self._recognizer.configure(config)
        self._config = config

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_to_results(
        self, callback: Callable[[RecognitionResult], None]
    ) -> Callable[[], None]:
        return self._results.subscribe(callback)

    def subscribe_to_errors(
        self, callback: Callable[[RecognitionError], None]
    ) -> Callable[[], None]:
        return self._errors.subscribe(callback)

    def subscribe_to_recognition_state(
        self, callback: Callable[[bool], None]
    ) -> Callable[[], None]:
        return self._recognition_state.subscribe(callback)

    def subscribe_to_audio_levels(self, callback: Callable[[int], None]) -> Callable[[], None]:
        return self._levels.subscribe(callback)

    # ------------------------------------------------------------------
    # Recognizer handlers
    # ------------------------------------------------------------------

    def _handle_interim(self, result: InterimResult) -> None:
        self._results.emit(InterimRecognitionResult(text=result.text))

    def _handle_final(self, result: FinalResult) -> None:
        self._results.emit(
            FinalRecognitionResult(text=result.text.strip(), confidence=result.confidence)
        )

    def _handle_recognizer_error(self, error: RecognitionError) -> None:
        logger.error("Recognition error: %s (%s)", error.type, error.message)
        self._emit_error(error)
        if self._state == SessionState.STARTING:
            self._stop_requested = True
        else:
            self._spawn(self.stop_recognition())

    def _handle_session_started(self) -> None:
        logger.debug("Recognition service acknowledged session")

    def _handle_session_stopped(self) -> None:
        if self._state == SessionState.RECOGNIZING:
            logger.info("Recognition service ended the session")
            self._spawn(self.stop_recognition())

    # ------------------------------------------------------------------
    # Timeout
    # ------------------------------------------------------------------

    def _on_session_timeout(self) -> None:
        self._timeout_handle = None
        if self._state != SessionState.RECOGNIZING:
            return
        logger.warning(
            "Recognition session timed out after %.0fs", self._session_timeout
        )
        self._spawn(self._expire_session())

    async def _expire_session(self) -> None:
        if self._state != SessionState.RECOGNIZING:
            return
        await self.stop_recognition()
        self._emit_error(SessionTimeout(duration=self._session_timeout))

    def _cancel_session_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    async def _cleanup(self) -> None:
        """Release every session resource.  Safe to call repeatedly, from any state.

        State subscribers get ``False`` once for each run that leaves a
        non-idle session; a run that finds the service idle is silent.
        """
        was_active = self._state != SessionState.IDLE
        if was_active:
            self._state = SessionState.STOPPING
        self._cancel_session_timeout()
        try:
            if self._recognizer.is_recognizing:
                await self._recognizer.stop_continuous_recognition()
        except Exception:
            logger.warning("Error stopping speech recognizer", exc_info=True)
        finally:
            self._microphone.stop_capture()
            self._state = SessionState.IDLE
            self._stop_requested = False
            if was_active:
                self._emit_recognition_state(False)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _emit_error(self, error: RecognitionError) -> None:
        self._errors.emit(error)

    def _emit_recognition_state(self, is_recognizing: bool) -> None:
        self._recognition_state.emit(is_recognizing)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
