"""
config.py — Voice Therapist · Runtime Configuration
===================================================
Pydantic models for every tunable parameter across the turn-taking engine.
Serialises to / deserialises from JSON.  Used by:
  • server.py  — GET/PUT /config endpoints, builds the controller from it
  • bot.py     — loads it from THERAPIST_CONFIG and applies it to each unit

API keys never live here; they are read from the environment (.env).
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

log = logging.getLogger("voice_therapist.config")

# ---------------------------------------------------------------------------
# Prompts and fixed phrases (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_INSTRUCTIONS = (
    "Embody a deeply compassionate, empathetic therapist with a warm, human-like tone. "
    "In a concise yet powerful exchange, validate the user's emotions, offer uplifting "
    "encouragement, and ensure they feel profoundly heard and hopeful, no matter the "
    "challenge. Keep it brief within 2-3 lines, avoid clinical terms, and prioritize "
    "making the user feel embraced and uplifted."
)

DEFAULT_GREETING = "Hello! I'm your AI therapist. How can I help you today?"

DEFAULT_PHRASE_HINTS = [
    "therapy", "feel", "feeling", "emotion", "emotions",
    "anxious", "anxiety", "depressed", "depression",
    "stress", "worried", "fear", "sad", "happy", "angry",
    "frustrated", "overwhelmed", "coping", "strategies",
    "mindfulness", "meditation", "breathing", "exercise",
    "sleep", "eating", "relationship", "work", "family",
]


# ---------------------------------------------------------------------------
# Per-unit config sections
# ---------------------------------------------------------------------------

class CaptureConfig(BaseModel):
    """Microphone capture and end-of-utterance detection."""
    sample_rate: int = Field(default=16000, description="Capture rate (Hz)")
    channels: int = Field(default=1, ge=1, le=2, description="Input channels")
    block_ms: int = Field(default=80, ge=10, le=1000, description="Mic callback block size (ms)")
    device: Optional[str] = Field(default=None, description="Input device name or index; None = system default")
    echo_cancellation: bool = Field(default=True, description="Drop the reply tail picked up right after capture opens")
    echo_tail_sec: float = Field(default=0.1, ge=0.0, le=2.0, description="Length of audio dropped for echo cancellation (s)")
    noise_suppression: bool = Field(default=True, description="High-pass filter out low-frequency rumble")
    auto_gain: bool = Field(default=True, description="Peak-normalise the utterance before encoding")
    highpass_hz: float = Field(default=80.0, gt=0.0, le=1000.0, description="Noise-suppression cutoff (Hz)")
    target_peak: float = Field(default=0.9, gt=0.0, le=1.0, description="Auto-gain peak level")
    silence_check_interval: float = Field(default=0.08, gt=0.0, le=1.0, description="Energy sampling period (s)")
    silence_threshold: float = Field(default=0.01, ge=0.0, le=1.0, description="RMS below this counts as silence")
    silence_checks: int = Field(default=7, ge=1, le=100, description="Consecutive quiet samples that end an utterance")
    max_recording_sec: float = Field(default=9.0, gt=0.0, le=120.0, description="Hard cap on one utterance (s)")
    min_recording_bytes: int = Field(default=2000, ge=0, description="Smaller blobs are treated as nothing said")


class TranscriptionConfig(BaseModel):
    """Speech-to-text client."""
    provider: Literal["groq", "google"] = Field(default="groq", description="Backend adapter")
    model: Optional[str] = Field(default=None, description="Model ID; None = provider default")
    locale: str = Field(default="en-US", description="Language hint")
    timeout_sec: float = Field(default=7.0, gt=0.0, le=60.0, description="Request bound (s)")
    phrase_hints: list[str] = Field(default_factory=lambda: list(DEFAULT_PHRASE_HINTS), description="Vocabulary boost")
    phrase_boost: float = Field(default=10.0, ge=0.0, le=20.0, description="Boost applied to phrase hints")


class GenerationConfig(BaseModel):
    """LLM reply client."""
    provider: Literal["groq", "gemini"] = Field(default="groq", description="Backend adapter")
    model: Optional[str] = Field(default=None, description="Model ID; None = provider default")
    timeout_sec: float = Field(default=8.0, gt=0.0, le=60.0, description="Request bound (s)")
    history_window: int = Field(default=6, ge=0, le=6, description="Prior turns forwarded as context")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: float = Field(default=0.8, ge=0.0, le=1.0, description="Nucleus sampling")
    top_k: int = Field(default=40, ge=1, description="Top-k sampling (Gemini only)")
    max_tokens: int = Field(default=150, ge=1, description="Max reply tokens")
    instructions: str = Field(default=DEFAULT_INSTRUCTIONS, description="Therapist instructions, hidden from the user")


class SynthesisConfig(BaseModel):
    """Text-to-speech client and on-device fallback."""
    provider: Literal["groq", "google"] = Field(default="groq", description="Backend adapter")
    model: Optional[str] = Field(default=None, description="TTS model (Groq only); None = provider default")
    voice: Optional[str] = Field(default=None, description="Voice name; None = provider default")
    language_code: str = Field(default="en-US", description="Voice language (Google only)")
    ssml_gender: str = Field(default="FEMALE", description="Voice gender (Google only)")
    speaking_rate: float = Field(default=1.0, ge=0.25, le=4.0, description="Speaking speed")
    pitch: float = Field(default=0.0, ge=-20.0, le=20.0, description="Voice pitch (Google only)")
    timeout_sec: float = Field(default=7.5, gt=0.0, le=60.0, description="Request bound (s)")
    max_chars: int = Field(default=1000, ge=1, description="Text is truncated to this length")
    volume: float = Field(default=1.0, ge=0.0, le=1.0, description="Output volume; 0 mutes")
    on_device_enabled: bool = Field(default=True, description="Allow the on-device fallback voice")
    on_device_rate: int = Field(default=180, ge=60, le=400, description="On-device words per minute")
    preferred_voices: list[str] = Field(
        default_factory=lambda: ["female", "Samantha", "Google UK English Female", "Zira"],
        description="On-device voice name fragments, in order of preference",
    )


class TurnConfig(BaseModel):
    """Controller restart delays and greeting."""
    greeting: str = Field(default=DEFAULT_GREETING, description="First assistant turn of every session")
    empty_recording_delay: float = Field(default=0.2, ge=0.0, le=10.0, description="Restart after nothing was said (s)")
    empty_transcript_delay: float = Field(default=0.3, ge=0.0, le=10.0, description="Restart after an empty transcript (s)")
    transcription_error_delay: float = Field(default=1.0, ge=0.0, le=10.0, description="Restart after an STT failure (s)")
    after_playback_delay: float = Field(default=0.8, ge=0.0, le=10.0, description="Pause after a reply has played (s)")
    after_on_device_delay: float = Field(default=0.5, ge=0.0, le=10.0, description="Pause after on-device or text-only reply (s)")
    playback_error_delay: float = Field(default=0.3, ge=0.0, le=10.0, description="Restart after a playback error (s)")


class SubscriptionConfig(BaseModel):
    """Limits used when no per-user subscription file exists."""
    path: Optional[str] = Field(default=None, description="JSON file of per-user limits")
    sessions_limit: int = Field(default=3, ge=0)
    session_duration_limit: float = Field(default=10.0, gt=0.0, description="Minutes")
    warn_at_sec: list[float] = Field(default_factory=lambda: [60.0, 30.0], description="Remaining-time warnings (s)")


class StorageConfig(BaseModel):
    sessions_path: str = Field(default="sessions.jsonl", description="Where finished sessions are appended")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class TherapistConfig(BaseModel):
    """Complete runtime configuration for the voice therapist."""
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    turn: TurnConfig = Field(default_factory=TurnConfig)
    subscription: SubscriptionConfig = Field(default_factory=SubscriptionConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def _check_silence_window(self) -> "TherapistConfig":
        window = self.capture.silence_check_interval * self.capture.silence_checks
        if window >= self.capture.max_recording_sec:
            raise ValueError(
                f"silence window {window:.2f}s must be shorter than "
                f"max_recording_sec {self.capture.max_recording_sec:.2f}s"
            )
        return self

    @model_validator(mode="after")
    def _check_timeout_order(self) -> "TherapistConfig":
        # capture cap > generation > synthesis > transcription
        chain = [
            ("capture.max_recording_sec", self.capture.max_recording_sec),
            ("generation.timeout_sec", self.generation.timeout_sec),
            ("synthesis.timeout_sec", self.synthesis.timeout_sec),
            ("transcription.timeout_sec", self.transcription.timeout_sec),
        ]
        for (longer, a), (shorter, b) in zip(chain, chain[1:]):
            if a <= b:
                raise ValueError(f"{longer} ({a:.2f}s) must exceed {shorter} ({b:.2f}s)")
        return self

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "TherapistConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s fallback=defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "TherapistConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"generation": {"timeout_sec": 6.0}}
        only changes generation.timeout_sec, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return TherapistConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
