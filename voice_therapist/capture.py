"""
capture.py — Voice Therapist · Microphone Capture
=================================================
Records one utterance at a time.  A recording ends on whichever comes first:

  • silence   — RMS energy stays under the threshold for more than
                `silence_checks` consecutive samples
  • hard cap  — `max_recording_sec` elapsed since capture started
  • manual    — `request_stop()` (the "stop listening" button)

The finished buffer is high-passed, peak-normalised (only when it is above
the silence threshold, so room noise is never boosted) and encoded with the
first container soundfile can write (Opus in Ogg, then FLAC, then WAV).
A recording where no energy sample ever reached the threshold, or one
smaller than `min_recording_bytes`, is an EmptyRecording.

The microphone itself is an injected AudioSource so tests never touch
PortAudio; see devices.SoundDeviceMicrophone for the real one.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from typing import Callable, Optional, Protocol

import numpy as np
import soundfile as sf
from scipy.signal import butter, sosfilt

from voice_therapist.config import CaptureConfig
from voice_therapist.errors import EmptyRecording, MicUnavailable
from voice_therapist.models import Recording

log = logging.getLogger("voice_therapist.capture")

# (soundfile format, subtype, MIME type), most preferred first
ENCODING_PREFERENCES: tuple[tuple[str, str, str], ...] = (
    ("OGG", "OPUS", "audio/ogg;codecs=opus"),
    ("FLAC", "PCM_16", "audio/flac"),
    ("WAV", "PCM_16", "audio/wav"),
)

# libopus only accepts these input rates
_OPUS_RATES = frozenset({8000, 12000, 16000, 24000, 48000})


class AudioSource(Protocol):
    """A live input stream that pushes float32 blocks on the event loop."""

    def open(self, on_chunk: Callable[[np.ndarray], None]) -> None: ...

    def close(self) -> None: ...


def pick_encoding(
    sample_rate: int,
    preferences: tuple[tuple[str, str, str], ...] = ENCODING_PREFERENCES,
) -> tuple[str, str, str]:
    """First (format, subtype, content_type) the local libsndfile can write."""
    for fmt, subtype, content_type in preferences:
        if subtype == "OPUS" and sample_rate not in _OPUS_RATES:
            continue
        if sf.check_format(fmt, subtype):
            return fmt, subtype, content_type
    return preferences[-1]


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def highpass(samples: np.ndarray, sample_rate: int, cutoff_hz: float) -> np.ndarray:
    if samples.size == 0 or cutoff_hz >= sample_rate / 2:
        return samples
    sos = butter(4, cutoff_hz, btype="highpass", fs=sample_rate, output="sos")
    return sosfilt(sos, samples).astype(np.float32)


def normalize_peak(samples: np.ndarray, target: float) -> np.ndarray:
    peak = float(np.max(np.abs(samples))) if samples.size else 0.0
    if peak <= 1e-6:
        return samples
    return (samples * (target / peak)).astype(np.float32)


class RecordingBuffer:
    """Accumulates mic blocks for one utterance.  Frozen once encoded."""

    def __init__(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self._chunks: list[np.ndarray] = []
        self._frozen = False

    def append(self, chunk: np.ndarray) -> None:
        if self._frozen:
            raise RuntimeError("recording buffer is frozen")
        self._chunks.append(np.asarray(chunk, dtype=np.float32).reshape(-1))

    @property
    def frames(self) -> int:
        return sum(len(c) for c in self._chunks)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def samples(self) -> np.ndarray:
        if not self._chunks:
            return np.zeros(0, dtype=np.float32)
        return np.concatenate(self._chunks)

    def freeze(self, config: CaptureConfig, encoding: tuple[str, str, str]) -> Recording:
        self._frozen = True
        samples = self.samples()
        duration = len(samples) / float(self.sample_rate)
        fmt, subtype, content_type = encoding
        if samples.size == 0:
            return Recording(data=b"", content_type=content_type,
                             sample_rate=self.sample_rate, duration_sec=0.0)

        if config.noise_suppression:
            samples = highpass(samples, self.sample_rate, config.highpass_hz)
        if config.auto_gain and rms(samples) >= config.silence_threshold:
            samples = normalize_peak(samples, config.target_peak)

        buf = io.BytesIO()
        sf.write(buf, samples, self.sample_rate, format=fmt, subtype=subtype)
        return Recording(
            data=buf.getvalue(),
            content_type=content_type,
            sample_rate=self.sample_rate,
            duration_sec=duration,
        )


class AudioCapture:
    """One-utterance-at-a-time recorder with silence and duration cut-offs."""

    def __init__(
        self,
        source_factory: Callable[[], AudioSource],
        config: CaptureConfig,
        encoding: Optional[tuple[str, str, str]] = None,
    ):
        self._source_factory = source_factory
        self._config = config
        self._encoding = encoding or pick_encoding(config.sample_rate)
        self._source: Optional[AudioSource] = None
        self._buffer: Optional[RecordingBuffer] = None
        self._done: Optional[asyncio.Event] = None
        self._pending: list[np.ndarray] = []
        self._quiet_count = 0
        self._voiced = False
        self._started_at = 0.0
        self._stop_reason: Optional[str] = None
        self._tasks: list[asyncio.Task] = []
        self.level = 0.0

    @property
    def content_type(self) -> str:
        return self._encoding[2]

    @property
    def is_recording(self) -> bool:
        return self._source is not None

    @property
    def stop_reason(self) -> Optional[str]:
        return self._stop_reason

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        """Open the microphone and begin buffering.  Raises MicUnavailable."""
        if self._source is not None:
            raise RuntimeError("capture already running")
        self._buffer = RecordingBuffer(self._config.sample_rate)
        self._done = asyncio.Event()
        self._pending = []
        self._quiet_count = 0
        self._voiced = False
        self._stop_reason = None
        self.level = 0.0
        self._started_at = time.monotonic()

        try:
            source = self._source_factory()
            source.open(self._on_chunk)
        except MicUnavailable:
            self._buffer = None
            raise
        except Exception as exc:
            self._buffer = None
            log.error("event=mic_open_failed error=%s", exc)
            raise MicUnavailable(str(exc)) from exc

        self._source = source
        self._tasks = [
            asyncio.create_task(self._silence_monitor(), name="capture_silence"),
            asyncio.create_task(self._hard_cap(), name="capture_cap"),
        ]
        log.info("event=capture_start content_type=%s", self.content_type)

    def request_stop(self) -> None:
        """Finish the current utterance now (manual stop)."""
        self._finish("manual")

    def stop(self) -> Recording:
        """Release the mic and encode what was captured.

        Raises EmptyRecording when no block ever reached speech level, or
        when the encoded blob is below `min_recording_bytes`.
        """
        buffer = self._buffer
        if self._pending and rms(np.concatenate(self._pending)) >= self._config.silence_threshold:
            self._voiced = True
        self.release()
        if buffer is None:
            raise RuntimeError("capture is not running")
        recording = buffer.freeze(self._config, self._encoding)
        log.info(
            "event=capture_stop reason=%s bytes=%d duration_s=%.2f voiced=%s",
            self._stop_reason, recording.size, recording.duration_sec, self._voiced,
        )
        if not self._voiced:
            raise EmptyRecording(recording.size, self._config.min_recording_bytes, voiced=False)
        if recording.size < self._config.min_recording_bytes:
            raise EmptyRecording(recording.size, self._config.min_recording_bytes)
        return recording

    def release(self) -> None:
        """Close the mic and cancel timers.  Safe to call at any time."""
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        source, self._source = self._source, None
        self._buffer = None
        self._pending = []
        if source is not None:
            try:
                source.close()
            except Exception as exc:
                log.warning("event=mic_close_error error=%s", exc)

    async def record(self) -> Recording:
        """Capture a single utterance end to end."""
        self.start()
        try:
            await self._done.wait()
        except asyncio.CancelledError:
            self.release()
            raise
        return self.stop()

    # -- internals ------------------------------------------------------------

    def _on_chunk(self, chunk: np.ndarray) -> None:
        buffer = self._buffer
        if buffer is None or buffer.frozen:
            return
        if (
            self._config.echo_cancellation
            and time.monotonic() - self._started_at < self._config.echo_tail_sec
        ):
            return
        if chunk.ndim == 2:
            chunk = chunk.mean(axis=1)
        buffer.append(chunk)
        self._pending.append(chunk)

    def _finish(self, reason: str) -> None:
        if self._done is None or self._done.is_set():
            return
        self._stop_reason = reason
        self._done.set()

    async def _silence_monitor(self) -> None:
        cfg = self._config
        while True:
            await asyncio.sleep(cfg.silence_check_interval)
            if self._pending:
                self.level = rms(np.concatenate(self._pending))
                self._pending = []
            if self.level < cfg.silence_threshold:
                self._quiet_count += 1
            else:
                self._quiet_count = 0
                self._voiced = True
            if self._quiet_count > cfg.silence_checks:
                log.debug("event=silence_detected checks=%d", self._quiet_count)
                self._finish("silence")
                return

    async def _hard_cap(self) -> None:
        await asyncio.sleep(self._config.max_recording_sec)
        log.debug("event=max_duration_reached sec=%.1f", self._config.max_recording_sec)
        self._finish("max_duration")
