"""Microphone permission, capture stream lifetime, and input-level metering."""

import asyncio
import logging
import sys
import time
from typing import Callable

import numpy as np
import sounddevice as sd

from voice_input.config import LEVEL_UPDATE_RATE, METER_TICK_RATE, PERMISSION_CACHE_TTL
from voice_input.events.event_bus import EventBus
from voice_input.stt.analyser import LevelAnalyser
from voice_input.stt.errors import DeviceError
from voice_input.stt.types import CaptureConstraints, PermissionResult, PermissionState

logger = logging.getLogger(__name__)

# Blocks quieter than this RMS (0.0-1.0) are gated to silence.
_NOISE_GATE_RMS: float = 0.01
_AGC_TARGET_PEAK: float = 0.5
_AGC_MAX_GAIN: float = 8.0


def condition_block(samples: np.ndarray, constraints: CaptureConstraints) -> np.ndarray:
    """Apply the in-process parts of the capture constraints to one block.

    Noise suppression is a block-level noise gate and automatic gain control
    scales the block towards a target peak with bounded gain.  Echo
    cancellation needs the playback reference signal and is left to the host
    audio stack.  Returns int16 mono samples.
    """
    audio = samples.reshape(-1).astype(np.float32) / 32768.0

    if constraints.noise_suppression and audio.size:
        rms = float(np.sqrt(np.mean(audio ** 2)))
        if rms < _NOISE_GATE_RMS:
            audio = np.zeros_like(audio)

    if constraints.auto_gain_control and audio.size:
        peak = float(np.max(np.abs(audio)))
        if peak > 0.0:
            audio = audio * min(_AGC_TARGET_PEAK / peak, _AGC_MAX_GAIN)

    return np.clip(audio * 32767, -32768, 32767).astype(np.int16)


class CaptureStream:
    """A live audio feed from the default input device.

    Blocks arrive on the PortAudio thread and are handed to the event loop
    with ``call_soon_threadsafe``; ``read_chunk`` yields them in order and
    returns ``None`` once the stream has been stopped and drained.
    """

    def __init__(
        self,
        constraints: CaptureConstraints,
        analyser: LevelAnalyser,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._constraints = constraints
        self._analyser = analyser
        self._loop = loop
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._stream: sd.InputStream | None = None
        self._active: bool = False
        self.status_count: int = 0

    @property
    def constraints(self) -> CaptureConstraints:
        return self._constraints

    @property
    def active(self) -> bool:
        """Whether the device stream is open and running."""
        return self._active and self._stream is not None and bool(self._stream.active)

    def open(self) -> None:
        """Open and start the device stream.  Blocking; run in a worker thread."""
        stream = sd.InputStream(
            samplerate=self._constraints.sample_rate,
            channels=self._constraints.channels,
            dtype=self._constraints.dtype,
            blocksize=self._constraints.blocksize,
            callback=self._on_audio,
        )
        try:
            stream.start()
        except Exception:
            stream.close()
            raise
        self._stream = stream
        self._active = True

    async def read_chunk(self) -> bytes | None:
        """Return the next PCM16 block, or ``None`` at end of stream."""
        if not self._active and self._queue.empty():
            return None
        return await self._queue.get()

    def stop(self) -> None:
        """Stop and close the device stream, then wake pending readers."""
        stream, self._stream = self._stream, None
        self._active = False
        if stream is not None:
            try:
                stream.stop()
            except Exception:
                logger.warning("Error stopping input stream", exc_info=True)
            finally:
                stream.close()
        self._queue.put_nowait(None)

    def _on_audio(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        """PortAudio callback — runs on the audio thread."""
        if status:
            self.status_count += 1
            logger.debug("Input stream status: %s", status)
        block = condition_block(indata[:, 0], self._constraints)
        self._analyser.push(block)
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, block.tobytes())
        except RuntimeError:
            logger.debug("Event loop closed — dropping captured block")


def _close_abandoned(stream: CaptureStream, opening: asyncio.Future) -> None:
    """Release a stream whose opener was cancelled before the open finished."""
    if not opening.cancelled() and opening.exception() is not None:
        logger.debug("Abandoned capture stream failed to open: %s", opening.exception())
    stream.stop()


class MicrophoneManager:
    """Owns the physical input device for the voice-input pipeline.

    At most one capture stream is open per manager.  Level metering runs as
    an asyncio task while capturing and dispatches to any number of level
    subscribers, throttled to ``LEVEL_UPDATE_RATE`` updates per second.
    """

    def __init__(self, constraints: CaptureConstraints | None = None) -> None:
        self._constraints = constraints or CaptureConstraints()
        self._stream: CaptureStream | None = None
        self._analyser: LevelAnalyser | None = None
        self._meter_task: asyncio.Task | None = None
        self._last_level_dispatch: float | None = None
        self._levels: EventBus[int] = EventBus("audio level")
        self._permission_cache: tuple[PermissionState, float] | None = None
        self._start_lock = asyncio.Lock()

    @property
    def constraints(self) -> CaptureConstraints:
        return self._constraints

    @property
    def level_subscriber_count(self) -> int:
        return self._levels.subscriber_count

    # ------------------------------------------------------------------
    # Device and permission
    # ------------------------------------------------------------------

    def describe_input_device(self) -> dict:
        """Return PortAudio's description of the default input device.

        Raises if no input device is present.
        """
        return sd.query_devices(kind="input")

    def is_available(self) -> bool:
        """Whether a capture device is exposed by the platform at all."""
        try:
            self.describe_input_device()
            return True
        except Exception:
            return False

    async def request_permission(self) -> PermissionResult:
        """Ask for microphone access by opening and closing a probe stream.

        Never raises; failures come back as ``granted=False``.
        """
        logger.info("Requesting microphone permission")
        try:
            await asyncio.to_thread(self._probe_stream)
        except Exception as exc:
            logger.error("Microphone permission denied: %s", exc)
            self._cache_permission(PermissionState.DENIED)
            return PermissionResult(
                granted=False,
                error=(
                    "Microphone access denied. Please grant microphone access in "
                    f"your system settings to use voice input. Error: {exc}"
                ),
            )
        self._cache_permission(PermissionState.GRANTED)
        logger.info("Microphone permission granted")
        return PermissionResult(granted=True)

    def check_permission(self) -> PermissionState:
        """Non-intrusive permission query, cached for PERMISSION_CACHE_TTL seconds."""
        if self._permission_cache is not None:
            state, checked_at = self._permission_cache
            if time.monotonic() - checked_at < PERMISSION_CACHE_TTL:
                logger.debug("Using cached permission state: %s", state.value)
                return state

        try:
            state = self._query_platform_permission()
        except Exception:
            logger.warning("Failed to check microphone permission", exc_info=True)
            return PermissionState.PROMPT

        if state is None:
            logger.warning(
                "Microphone permission state cannot be queried on %s", sys.platform
            )
            return PermissionState.PROMPT

        self._cache_permission(state)
        logger.info("Microphone permission status checked: %s", state.value)
        return state

    def _query_platform_permission(self) -> PermissionState | None:
        """Linux has no microphone permission gate; elsewhere it is unknowable."""
        if not sys.platform.startswith("linux"):
            return None
        return PermissionState.GRANTED if self.is_available() else PermissionState.DENIED

    def _cache_permission(self, state: PermissionState) -> None:
        self._permission_cache = (state, time.monotonic())

    def _probe_stream(self) -> None:
        with sd.InputStream(
            samplerate=self._constraints.sample_rate,
            channels=self._constraints.channels,
            dtype=self._constraints.dtype,
        ):
            pass

    # ------------------------------------------------------------------
    # Capture lifecycle
    # ------------------------------------------------------------------

    async def start_capture(self) -> CaptureStream:
        """Open the capture stream, or return the one already open."""
        async with self._start_lock:
            if self._stream is not None:
                logger.warning("Audio capture already active")
                return self._stream

            logger.info(
                "Starting audio capture (%d Hz, %d channel)",
                self._constraints.sample_rate,
                self._constraints.channels,
            )
            analyser = LevelAnalyser()
            stream = CaptureStream(self._constraints, analyser, asyncio.get_running_loop())
            opening = asyncio.ensure_future(asyncio.to_thread(stream.open))
            try:
                await asyncio.shield(opening)
            except asyncio.CancelledError:
                # The open keeps running on its thread; close whatever it yields.
                opening.add_done_callback(lambda _: _close_abandoned(stream, opening))
                raise
            except Exception as exc:
                logger.error("Failed to start audio capture: %s", exc)
                raise DeviceError(f"Failed to start audio capture: {exc}") from exc

            self._stream = stream
            self._analyser = analyser
            self._last_level_dispatch = None
            self._meter_task = asyncio.create_task(self._metering_loop())
            logger.info("Audio capture started")
            return stream

    def stop_capture(self) -> None:
        """Release the device.  Safe to call in any state.

        The metering loop reads the analyser, so it is cancelled before the
        stream and analyser are released.
        """
        if self._meter_task is not None:
            self._meter_task.cancel()
            self._meter_task = None

        if self._stream is not None:
            logger.info("Stopping audio capture")
            self._stream.stop()
            self._stream = None

        if self._analyser is not None:
            self._analyser.reset()
            self._analyser = None

        self._last_level_dispatch = None

    @property
    def is_capturing(self) -> bool:
        return self._stream is not None and self._stream.active

    # ------------------------------------------------------------------
    # Levels
    # ------------------------------------------------------------------

    def get_audio_level(self) -> int:
        """Current input level 0-100, or 0 when not capturing."""
        if self._analyser is None or not self.is_capturing:
            return 0
        return self._analyser.level()

    def subscribe_to_audio_levels(self, callback: Callable[[int], None]) -> Callable[[], None]:
        return self._levels.subscribe(callback)

    async def _metering_loop(self) -> None:
        """Tick at METER_TICK_RATE until capture ends or the task is cancelled."""
        tick = 1.0 / METER_TICK_RATE
        try:
            while self.is_capturing:
                self._meter_tick(time.monotonic())
                await asyncio.sleep(tick)
        except asyncio.CancelledError:
            pass

    def _meter_tick(self, now: float) -> bool:
        """Dispatch one level reading if the throttle interval has elapsed."""
        if (
            self._last_level_dispatch is not None
            and now - self._last_level_dispatch < 1.0 / LEVEL_UPDATE_RATE
        ):
            return False
        self._levels.emit(self.get_audio_level())
        self._last_level_dispatch = now
        return True
