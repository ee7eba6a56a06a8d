"""Failure taxonomy for the turn-taking engine.

Only ``MicUnavailable`` (and ``SessionLimitReached`` at session start) ever
reach the user.  Everything else is recovered inside the controller.
"""

from __future__ import annotations


class VoiceSessionError(Exception):
    """Base class for every engine error."""


class MicUnavailable(VoiceSessionError):
    """Microphone could not be opened.  Fatal to the session."""

    user_message = (
        "Microphone access is required for speech input. "
        "Please allow microphone access and try again."
    )


class EmptyRecording(VoiceSessionError):
    """Nothing was said: no block reached speech level, or the blob is below the minimum size."""

    def __init__(self, size: int, minimum: int, voiced: bool = True) -> None:
        if voiced:
            message = f"recording of {size} bytes is below the {minimum} byte minimum"
        else:
            message = f"recording of {size} bytes never reached speech level"
        super().__init__(message)
        self.size = size
        self.minimum = minimum
        self.voiced = voiced


class TranscriptionError(VoiceSessionError):
    """Any recoverable transcription failure."""


class TranscriptionTimeout(TranscriptionError):
    def __init__(self, timeout: float) -> None:
        super().__init__(f"transcription exceeded {timeout:.1f}s")
        self.timeout = timeout


class TranscriptionServiceError(TranscriptionError):
    pass


class EmptyTranscript(TranscriptionError):
    """The service answered, but with no words."""


class GenerationFailure(VoiceSessionError):
    """Raised by generation backends; always absorbed by the fallback table."""


class SynthesisFailure(VoiceSessionError):
    """Raised by synthesis backends; always absorbed by the on-device fallback."""


class PlaybackError(VoiceSessionError):
    """The output device failed while playing a reply."""


class SessionLimitReached(VoiceSessionError):
    def __init__(self, sessions_limit: int) -> None:
        super().__init__(
            f"You've reached your monthly limit of {sessions_limit} sessions. "
            "Please upgrade your plan for more sessions."
        )
        self.sessions_limit = sessions_limit


class InvalidTransition(VoiceSessionError):
    """A state change outside the transition table.  Always a bug."""

    def __init__(self, current: object, target: object) -> None:
        super().__init__(f"illegal transition {current} -> {target}")
        self.current = current
        self.target = target


class SessionAlreadyActive(VoiceSessionError):
    """start_session called while a session is running."""
