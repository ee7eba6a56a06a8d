"""Audio capture: end-of-utterance detection, encoding and resource release."""

import asyncio
import io

import numpy as np
import pytest
import soundfile as sf

from conftest import DeniedMicrophone, NoisyMicrophone, ScriptedMicrophone, sine
from voice_therapist.capture import (
    ENCODING_PREFERENCES,
    AudioCapture,
    RecordingBuffer,
    highpass,
    normalize_peak,
    pick_encoding,
    rms,
)
from voice_therapist.config import CaptureConfig
from voice_therapist.errors import EmptyRecording, MicUnavailable

WAV = ("WAV", "PCM_16", "audio/wav")


def fast_config(**overrides) -> CaptureConfig:
    values = dict(
        silence_check_interval=0.01,
        silence_checks=3,
        max_recording_sec=0.5,
        echo_cancellation=False,
        min_recording_bytes=2000,
    )
    values.update(overrides)
    return CaptureConfig(**values)


# =============================================================================
# End-of-utterance detection
# =============================================================================


@pytest.mark.asyncio
async def test_silence_after_speech_ends_recording():
    mic = ScriptedMicrophone(loud_chunks=10)
    capture = AudioCapture(lambda: mic, fast_config(), encoding=WAV)

    recording = await capture.record()

    assert capture.stop_reason == "silence"
    assert recording.content_type == "audio/wav"
    assert recording.size >= 2000
    assert 0.0 < recording.duration_sec < 0.5
    assert mic.opened == 1 and mic.closed == 1
    assert not capture.is_recording

    samples, rate = sf.read(io.BytesIO(recording.data), dtype="float32")
    assert rate == 16000
    assert len(samples) > 0


@pytest.mark.asyncio
async def test_hard_cap_ends_continuous_speech():
    mic = ScriptedMicrophone(loud_chunks=10_000)
    capture = AudioCapture(lambda: mic, fast_config(max_recording_sec=0.2), encoding=WAV)

    recording = await capture.record()

    assert capture.stop_reason == "max_duration"
    assert recording.duration_sec == pytest.approx(0.2, abs=0.1)
    assert mic.closed == 1


@pytest.mark.asyncio
async def test_manual_stop_ends_recording():
    mic = ScriptedMicrophone(loud_chunks=10_000)
    capture = AudioCapture(lambda: mic, fast_config(max_recording_sec=5.0), encoding=WAV)

    task = asyncio.create_task(capture.record())
    await asyncio.sleep(0.1)
    capture.request_stop()
    recording = await task

    assert capture.stop_reason == "manual"
    assert recording.size >= 2000


@pytest.mark.asyncio
async def test_nothing_captured_is_empty_recording():
    mic = ScriptedMicrophone(push=False)
    capture = AudioCapture(lambda: mic, fast_config(), encoding=WAV)

    with pytest.raises(EmptyRecording) as exc_info:
        await capture.record()

    assert exc_info.value.size == 0
    assert exc_info.value.minimum == 2000
    assert mic.closed == 1


@pytest.mark.asyncio
async def test_denied_microphone_raises_mic_unavailable():
    capture = AudioCapture(DeniedMicrophone, fast_config(), encoding=WAV)

    with pytest.raises(MicUnavailable):
        await capture.record()

    assert not capture.is_recording


@pytest.mark.asyncio
async def test_cancelled_recording_releases_microphone():
    mic = ScriptedMicrophone(loud_chunks=10_000)
    capture = AudioCapture(lambda: mic, fast_config(max_recording_sec=5.0), encoding=WAV)

    task = asyncio.create_task(capture.record())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert mic.closed == 1
    assert not capture.is_recording


@pytest.mark.asyncio
async def test_echo_tail_is_dropped():
    mic = ScriptedMicrophone(loud_chunks=3)
    capture = AudioCapture(
        lambda: mic,
        fast_config(echo_cancellation=True, echo_tail_sec=0.2, min_recording_bytes=0),
        encoding=WAV,
    )

    # the loud blocks all arrived inside the echo tail
    with pytest.raises(EmptyRecording) as exc_info:
        await capture.record()

    assert capture.stop_reason == "silence"
    assert exc_info.value.voiced is False
    assert exc_info.value.size == 0
    assert mic.closed == 1


# =============================================================================
# Default encoding and room noise
# =============================================================================


@pytest.mark.asyncio
async def test_room_noise_alone_is_empty_recording():
    mic = NoisyMicrophone(loud_chunks=0, floor_rms=0.002)
    capture = AudioCapture(lambda: mic, CaptureConfig())

    with pytest.raises(EmptyRecording) as exc_info:
        await capture.record()

    assert capture.content_type == pick_encoding(16000)[2]
    assert capture.stop_reason == "silence"
    assert exc_info.value.voiced is False
    assert mic.closed == 1


@pytest.mark.asyncio
async def test_speech_over_room_noise_uses_default_encoding():
    mic = NoisyMicrophone(loud_chunks=100, floor_rms=0.002)
    config = CaptureConfig()
    capture = AudioCapture(lambda: mic, config)

    recording = await capture.record()

    assert capture.stop_reason == "silence"
    assert recording.content_type == pick_encoding(16000)[2]
    assert recording.size >= config.min_recording_bytes
    samples, _ = sf.read(io.BytesIO(recording.data), dtype="float32")
    assert len(samples) > 0


def test_auto_gain_skips_buffers_below_silence_threshold():
    noise = np.random.default_rng(3).normal(0.0, 0.002, 16000).astype(np.float32)
    buffer = RecordingBuffer(16000)
    buffer.append(noise)

    recording = buffer.freeze(fast_config(noise_suppression=False, auto_gain=True), WAV)

    samples, _ = sf.read(io.BytesIO(recording.data), dtype="float32")
    assert float(np.max(np.abs(samples))) < 0.05


@pytest.mark.asyncio
async def test_start_twice_is_rejected():
    mic = ScriptedMicrophone(loud_chunks=10_000)
    capture = AudioCapture(lambda: mic, fast_config(), encoding=WAV)
    capture.start()
    try:
        with pytest.raises(RuntimeError):
            capture.start()
    finally:
        capture.release()
    assert mic.closed == 1


# =============================================================================
# Buffer and signal helpers
# =============================================================================


def test_frozen_buffer_rejects_appends():
    buffer = RecordingBuffer(16000)
    buffer.append(sine(160))
    buffer.freeze(fast_config(), WAV)

    with pytest.raises(RuntimeError):
        buffer.append(sine(160))


def test_pick_encoding_returns_a_known_preference():
    assert pick_encoding(16000) in ENCODING_PREFERENCES


def test_pick_encoding_skips_opus_for_unsupported_rates():
    fmt, subtype, _ = pick_encoding(44100)
    assert subtype != "OPUS"


def test_rms_of_silence_and_tone():
    assert rms(np.zeros(100, dtype=np.float32)) == 0.0
    assert rms(np.zeros(0, dtype=np.float32)) == 0.0
    assert rms(sine(16000, 0.5)) == pytest.approx(0.5 / np.sqrt(2), rel=0.01)


def test_highpass_removes_dc_offset():
    signal = np.full(16000, 0.5, dtype=np.float32)
    filtered = highpass(signal, 16000, 80.0)
    assert abs(float(np.mean(filtered[8000:]))) < 0.01


def test_normalize_peak_scales_to_target():
    out = normalize_peak(sine(1600, 0.1), 0.9)
    assert float(np.max(np.abs(out))) == pytest.approx(0.9, rel=0.01)
    silent = np.zeros(10, dtype=np.float32)
    assert normalize_peak(silent, 0.9) is silent
