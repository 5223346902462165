"""Exceptions raised across the voice-input component seams.

Domain errors meant for subscribers are *values* (see
``voice_input.stt.types.RecognitionError``); the exceptions here signal
misuse or failures between the orchestrator and its collaborators.
"""


class VoiceInputError(Exception):
    """Base class for voice-input exceptions."""


class ConfigurationError(VoiceInputError):
    """Recognition configuration is missing a required field."""


class NotInitializedError(VoiceInputError):
    """An operation needs ``configure()`` / ``initialize()`` first."""


class DeviceError(VoiceInputError):
    """The capture device could not be opened."""


class RecognitionStartError(VoiceInputError):
    """The recognition service refused to start a session.

    ``error`` holds the classified RecognitionError for relaying.
    """

    def __init__(self, error) -> None:
        super().__init__(error.message)
        self.error = error
