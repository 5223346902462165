"""Streaming speech-recognition adapter over a websocket session.

Forwards live PCM16 audio from a capture stream to the recognition
service, translates the service's interim/final results into domain
results, and classifies service failures into the RecognitionError
taxonomy.  Every event kind has exactly one handler slot; fan-out is the
orchestrator's job.
"""

import asyncio
import json
import logging
from typing import Callable
from urllib.parse import urlencode

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus

from voice_input.config import (
    AUDIO_SAMPLE_RATE,
    DEFAULT_FINAL_CONFIDENCE,
    RECOGNITION_CONNECT_TIMEOUT,
    RECOGNITION_STOP_TIMEOUT,
    RECOGNITION_TIMEOUT_DURATION,
)
from voice_input.stt.errors import (
    ConfigurationError,
    NotInitializedError,
    RecognitionStartError,
)
from voice_input.stt.microphone import CaptureStream
from voice_input.stt.types import (
    AuthenticationFailure,
    FinalResult,
    InterimResult,
    NetworkFailure,
    RecognitionConfiguration,
    RecognitionError,
    RecognitionFailed,
    SessionTimeout,
)

logger = logging.getLogger(__name__)

_AUTH_MARKERS = ("authentication", "unauthorized", "401", "403")
_NETWORK_MARKERS = ("network", "connection")
_TIMEOUT_MARKERS = ("timeout", "timed out")


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_error_details(details: str) -> RecognitionError:
    """Map a service-reported error description onto an error kind."""
    lowered = details.lower()
    if any(marker in lowered for marker in _AUTH_MARKERS):
        return AuthenticationFailure()
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return NetworkFailure()
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return SessionTimeout(duration=RECOGNITION_TIMEOUT_DURATION)
    return RecognitionFailed(message=f"Speech recognition failed: {details}")


def classify_exception(exc: BaseException) -> RecognitionError:
    """Map a transport exception onto an error kind."""
    if isinstance(exc, InvalidStatus):
        status = exc.response.status_code
        if status in (401, 403):
            return AuthenticationFailure()
        return RecognitionFailed(
            message=f"Recognition service rejected the session (HTTP {status})"
        )
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return SessionTimeout(duration=RECOGNITION_TIMEOUT_DURATION)
    if isinstance(exc, (ConnectionClosed, OSError)):
        return NetworkFailure()
    return classify_error_details(str(exc) or type(exc).__name__)


def _as_float(value, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class SpeechRecognizer:
    """Drives one remote recognition session at a time from a capture stream."""

    def __init__(self) -> None:
        self._config: RecognitionConfiguration | None = None
        self._connection: ClientConnection | None = None
        self._send_task: asyncio.Task | None = None
        self._receive_task: asyncio.Task | None = None
        self._recognizing: bool = False
        self._stopping: bool = False

        self._recognizing_callback: Callable[[InterimResult], None] | None = None
        self._recognized_callback: Callable[[FinalResult], None] | None = None
        self._error_callback: Callable[[RecognitionError], None] | None = None
        self._session_started_callback: Callable[[], None] | None = None
        self._session_stopped_callback: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, config: RecognitionConfiguration) -> None:
        """Validate and store *config* for the next session.

        Raises ConfigurationError if the credential or region is missing.
        A session already in flight keeps the configuration it started with.
        """
        missing = [
            name for name in ("api_key", "region") if not getattr(config, name).strip()
        ]
        if missing:
            raise ConfigurationError(
                f"Recognition service {' and '.join(missing)} required"
            )
        self._config = config
        logger.info(
            "Speech recognizer configured (language=%s, endpoint=%s)",
            config.language,
            config.endpoint_url,
        )

    @property
    def config(self) -> RecognitionConfiguration | None:
        return self._config

    @property
    def is_recognizing(self) -> bool:
        return self._recognizing

    def session_url(
        self, config: RecognitionConfiguration, sample_rate: int = AUDIO_SAMPLE_RATE
    ) -> str:
        """Build the streaming endpoint URL for *config*."""
        query = urlencode(
            {
                "encoding": "linear16",
                "sample_rate": sample_rate,
                "channels": 1,
                "language": config.language,
                "interim_results": "true",
                "punctuate": "true",
            }
        )
        return f"{config.endpoint_url}?{query}"

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def on_recognizing(self, callback: Callable[[InterimResult], None]) -> None:
        self._recognizing_callback = callback

    def on_recognized(self, callback: Callable[[FinalResult], None]) -> None:
        self._recognized_callback = callback

    def on_error(self, callback: Callable[[RecognitionError], None]) -> None:
        self._error_callback = callback

    def on_session_started(self, callback: Callable[[], None]) -> None:
        self._session_started_callback = callback

    def on_session_stopped(self, callback: Callable[[], None]) -> None:
        self._session_stopped_callback = callback

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_continuous_recognition(self, stream: CaptureStream) -> None:
        """Open a recognition session fed by *stream*.

        Returns once the service has accepted the session.  Raises
        RecognitionStartError (carrying the classified error) if it refuses.
        """
        if self._config is None:
            raise NotInitializedError(
                "Speech recognizer not configured. Call configure() first."
            )
        if self._recognizing:
            logger.warning("Recognition already in progress")
            return

        config = self._config
        logger.info("Starting continuous recognition (language=%s)", config.language)
        try:
            connection = await connect(
                self.session_url(config, stream.constraints.sample_rate),
                additional_headers={"Authorization": f"Token {config.api_key}"},
                open_timeout=RECOGNITION_CONNECT_TIMEOUT,
            )
        except Exception as exc:
            logger.error("Failed to start continuous recognition: %s", exc)
            raise RecognitionStartError(classify_exception(exc)) from exc

        self._connection = connection
        self._stopping = False
        self._recognizing = True
        self._receive_task = asyncio.create_task(self._receive_loop(connection))
        self._send_task = asyncio.create_task(self._send_loop(connection, stream))
        logger.info("Continuous recognition started")
        self._fire(self._session_started_callback)

    async def stop_continuous_recognition(self) -> None:
        """Ask the service to end the session, then release it.  No-op when idle."""
        connection = self._connection
        if not self._recognizing or connection is None:
            return

        logger.info("Stopping continuous recognition")
        self._stopping = True
        try:
            await connection.send(json.dumps({"type": "CloseStream"}))
            if self._receive_task is not None:
                await asyncio.wait_for(
                    asyncio.shield(self._receive_task), timeout=RECOGNITION_STOP_TIMEOUT
                )
        except (ConnectionClosed, asyncio.TimeoutError) as exc:
            logger.warning("Recognition session did not close cleanly: %r", exc)
        finally:
            await self._release(connection)
            self._recognizing = False
            self._stopping = False

        logger.info("Continuous recognition stopped")
        self._fire(self._session_stopped_callback)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _send_loop(self, connection: ClientConnection, stream: CaptureStream) -> None:
        """Forward captured blocks to the service as they become available."""
        try:
            while True:
                chunk = await stream.read_chunk()
                if chunk is None:
                    logger.debug("Capture stream ended — audio feed stopped")
                    return
                await connection.send(chunk)
        except ConnectionClosed:
            logger.debug("Audio feed stopped: connection closed")

    async def _receive_loop(self, connection: ClientConnection) -> None:
        """Dispatch service messages until the session ends."""
        error: RecognitionError | None = None
        try:
            async for message in connection:
                error = self._handle_message(message)
                if error is not None:
                    break
        except ConnectionClosed as exc:
            if not self._stopping:
                error = classify_exception(exc)

        stopping = self._stopping
        self._recognizing = False

        if error is not None:
            logger.error("Recognition canceled: %s (%s)", error.type, error.message)
            self._fire(self._error_callback, error)

        if not stopping:
            # Service ended the session on its own; tear down our side.
            await self._release(connection)
            logger.info("Recognition session ended by service")
            self._fire(self._session_stopped_callback)

    def _handle_message(self, message: str | bytes) -> RecognitionError | None:
        """Handle one inbound frame.  Returns an error if the service canceled."""
        if isinstance(message, bytes):
            logger.debug("Ignoring binary frame from recognition service")
            return None
        try:
            payload = json.loads(message)
        except ValueError:
            logger.warning("Discarding malformed message from recognition service")
            return None
        if not isinstance(payload, dict):
            logger.warning("Discarding non-object message from recognition service")
            return None

        kind = payload.get("type")
        if kind == "Results":
            self._handle_results(payload)
            return None
        if kind == "Error":
            details = payload.get("description") or payload.get("message") or "Unknown error"
            return classify_error_details(str(details))
        logger.debug("Ignoring %s message from recognition service", kind)
        return None

    def _handle_results(self, payload: dict) -> None:
        channel = payload.get("channel")
        alternatives = channel.get("alternatives") if isinstance(channel, dict) else None
        if not isinstance(alternatives, list) or not alternatives:
            alternatives = [{}]
        best = alternatives[0] if isinstance(alternatives[0], dict) else {}
        text = best.get("transcript")
        if not isinstance(text, str) or not text.strip():
            if payload.get("is_final"):
                logger.debug("No speech recognized in final segment")
            return

        is_final = bool(payload.get("is_final"))
        offset = _as_float(payload.get("start"), 0.0)

        if is_final:
            result = FinalResult(
                text=text,
                confidence=_as_float(best.get("confidence"), DEFAULT_FINAL_CONFIDENCE),
                offset=offset,
                duration=_as_float(payload.get("duration"), 0.0),
            )
            logger.info("Final recognition result: %s", text)
            self._fire(self._recognized_callback, result)
        else:
            logger.debug("Interim recognition result: %s", text)
            self._fire(self._recognizing_callback, InterimResult(text=text, offset=offset))

    async def _release(self, connection: ClientConnection) -> None:
        """Cancel session tasks (except the caller's own) and close the socket."""
        current = asyncio.current_task()
        for task in (self._send_task, self._receive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._send_task = None
        self._receive_task = None
        self._connection = None
        try:
            await connection.close()
        except Exception:
            logger.debug("Error closing recognition connection", exc_info=True)

    def _fire(self, callback: Callable | None, *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.error("Speech recognizer handler failed", exc_info=True)
