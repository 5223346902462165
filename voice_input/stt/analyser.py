"""Frequency-domain level analysis of captured audio."""

import threading

import numpy as np

from voice_input.config import (
    ANALYSER_FFT_SIZE,
    ANALYSER_MAX_DB,
    ANALYSER_MIN_DB,
    ANALYSER_SMOOTHING,
)


class LevelAnalyser:
    """Rolling FFT analyser used only for input-level metering.

    Samples are pushed from the capture thread; readings are taken from
    the metering loop.  Byte frequency data follows the usual analyser
    convention: Blackman window, exponential smoothing across readings,
    and magnitudes in ``[min_db, max_db]`` mapped linearly to 0-255.
    """

    def __init__(
        self,
        fft_size: int = ANALYSER_FFT_SIZE,
        smoothing: float = ANALYSER_SMOOTHING,
        min_db: float = ANALYSER_MIN_DB,
        max_db: float = ANALYSER_MAX_DB,
    ) -> None:
        self._fft_size = fft_size
        self._smoothing = smoothing
        self._min_db = min_db
        self._max_db = max_db
        self._window = np.blackman(fft_size).astype(np.float32)
        self._buffer = np.zeros(fft_size, dtype=np.float32)
        self._smoothed = np.zeros(fft_size // 2, dtype=np.float32)
        self._lock = threading.Lock()

    @property
    def frequency_bin_count(self) -> int:
        return self._fft_size // 2

    def push(self, samples: np.ndarray) -> None:
        """Append int16 mono samples to the analysis window."""
        audio = samples.reshape(-1).astype(np.float32) / 32768.0
        with self._lock:
            if audio.size >= self._fft_size:
                self._buffer = audio[-self._fft_size:].copy()
            else:
                self._buffer = np.concatenate((self._buffer[audio.size:], audio))

    def byte_frequency_data(self) -> np.ndarray:
        """Return the current smoothed spectrum as uint8 values."""
        with self._lock:
            frame = self._buffer.copy()

        spectrum = np.abs(np.fft.rfft(frame * self._window))[: self.frequency_bin_count]
        spectrum /= self._fft_size
        self._smoothed = (
            self._smoothing * self._smoothed + (1.0 - self._smoothing) * spectrum
        ).astype(np.float32)

        db = 20.0 * np.log10(np.maximum(self._smoothed, 1e-12))
        scaled = (db - self._min_db) / (self._max_db - self._min_db) * 255.0
        return np.clip(scaled, 0, 255).astype(np.uint8)

    def level(self) -> int:
        """Average magnitude normalised to 0-100."""
        data = self.byte_frequency_data()
        if data.size == 0:
            return 0
        average = float(data.mean())
        return int(round(average / 255.0 * 100.0))

    def reset(self) -> None:
        """Forget all buffered samples and smoothing history."""
        with self._lock:
            self._buffer = np.zeros(self._fft_size, dtype=np.float32)
        self._smoothed = np.zeros(self.frequency_bin_count, dtype=np.float32)
