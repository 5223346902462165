"""Configuration constants and helpers for the voice-input pipeline."""

import os

DEFAULT_PORT: int = 7866


def get_port() -> int:
    """Return the server port from VOICE_INPUT_PORT env var, or DEFAULT_PORT."""
    raw = os.environ.get("VOICE_INPUT_PORT")
    if raw is not None:
        try:
            return int(raw)
        except ValueError:
            return DEFAULT_PORT
    return DEFAULT_PORT


# --- Capture configuration ---

AUDIO_SAMPLE_RATE: int = int(os.environ.get("VOICE_INPUT_SAMPLE_RATE", "16000"))
AUDIO_CHUNK_DURATION: float = float(
    os.environ.get("VOICE_INPUT_CHUNK_DURATION", "0.1")
)  # Seconds of audio per block forwarded to the recognizer.

PERMISSION_CACHE_TTL: float = 5.0


# --- Level metering ---

LEVEL_UPDATE_RATE: float = float(os.environ.get("VOICE_INPUT_LEVEL_RATE", "30"))
METER_TICK_RATE: float = float(os.environ.get("VOICE_INPUT_METER_TICK_RATE", "60"))
ANALYSER_FFT_SIZE: int = 256
ANALYSER_SMOOTHING: float = 0.8
ANALYSER_MIN_DB: float = -100.0
ANALYSER_MAX_DB: float = -30.0


# --- Session configuration ---

CONTINUOUS_SESSION_TIMEOUT: float = float(
    os.environ.get("VOICE_INPUT_SESSION_TIMEOUT", "60.0")
)
PRELOAD_DEGRADED_THRESHOLD: int = 3


# --- Recognition service configuration ---

RECOGNITION_API_KEY: str = os.environ.get("VOICE_INPUT_API_KEY", "")
RECOGNITION_REGION: str = os.environ.get("VOICE_INPUT_REGION", "")
RECOGNITION_LANGUAGE: str = os.environ.get("VOICE_INPUT_LANGUAGE", "en-US")
RECOGNITION_CONNECT_TIMEOUT: float = float(
    os.environ.get("VOICE_INPUT_CONNECT_TIMEOUT", "10.0")
)
RECOGNITION_STOP_TIMEOUT: float = float(
    os.environ.get("VOICE_INPUT_STOP_TIMEOUT", "5.0")
)
# Reported on service-side timeouts, which carry no duration of their own.
RECOGNITION_TIMEOUT_DURATION: float = 60.0
# Service does not report confidence for every result.
DEFAULT_FINAL_CONFIDENCE: float = 0.95
