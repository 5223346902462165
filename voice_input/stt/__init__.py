"""Microphone capture and streaming speech recognition for voice input."""

from voice_input.stt.microphone import CaptureStream, MicrophoneManager
from voice_input.stt.recognizer import SpeechRecognizer
from voice_input.stt.types import (
    PermissionState,
    RecognitionConfiguration,
    RecognitionError,
    RecognitionMode,
    RecognitionResult,
    SessionState,
)
from voice_input.stt.voice_input_service import VoiceInputService

__all__ = [
    "CaptureStream",
    "MicrophoneManager",
    "PermissionState",
    "RecognitionConfiguration",
    "RecognitionError",
    "RecognitionMode",
    "RecognitionResult",
    "SessionState",
    "SpeechRecognizer",
    "VoiceInputService",
]
