"""Shared fakes and fixtures for the voice therapist tests."""

import asyncio
import io
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np
import pytest_asyncio
import soundfile as sf

from voice_therapist.config import (
    GenerationConfig,
    SubscriptionConfig,
    SynthesisConfig,
    TranscriptionConfig,
    TurnConfig,
)
from voice_therapist.controller import TurnController
from voice_therapist.errors import EmptyRecording, PlaybackError, SynthesisFailure
from voice_therapist.generation import ResponseGenerator
from voice_therapist.models import Recording, SessionRecord, SubscriptionLimits
from voice_therapist.synthesis import SpeechSynthesizer
from voice_therapist.transcription import Transcriber, TranscriptResult


# =============================================================================
# Test Utilities
# =============================================================================


def sine(frames: int, amplitude: float = 0.5, sample_rate: int = 16000) -> np.ndarray:
    t = np.arange(frames) / sample_rate
    return (amplitude * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32)


def wav_bytes(duration: float = 0.05, sample_rate: int = 24000) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, sine(int(sample_rate * duration), 0.3, sample_rate), sample_rate,
             format="WAV", subtype="PCM_16")
    return buf.getvalue()


def make_recording(size: int = 4000) -> Recording:
    return Recording(data=b"\x01" * size, content_type="audio/wav",
                     sample_rate=16000, duration_sec=0.5)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# =============================================================================
# Fake audio devices
# =============================================================================


class ScriptedMicrophone:
    """AudioSource that pushes `loud_chunks` tone blocks, then silence."""

    def __init__(self, loud_chunks: int = 10, chunk_ms: int = 10,
                 sample_rate: int = 16000, push: bool = True):
        self.loud_chunks = loud_chunks
        self.chunk_ms = chunk_ms
        self.sample_rate = sample_rate
        self.push = push
        self.opened = 0
        self.closed = 0
        self._task: Optional[asyncio.Task] = None

    def open(self, on_chunk):
        self.opened += 1
        if self.push:
            self._task = asyncio.get_running_loop().create_task(self._feed(on_chunk))

    async def _feed(self, on_chunk):
        frames = int(self.sample_rate * self.chunk_ms / 1000)
        i = 0
        while True:
            amplitude = 0.5 if i < self.loud_chunks else 0.0
            on_chunk(sine(frames, amplitude, self.sample_rate))
            i += 1
            await asyncio.sleep(self.chunk_ms / 1000)

    def close(self):
        self.closed += 1
        if self._task is not None:
            self._task.cancel()


class NoisyMicrophone(ScriptedMicrophone):
    """Broadband "speech" for `loud_chunks` blocks over a Gaussian room-noise floor."""

    def __init__(self, loud_chunks: int = 0, floor_rms: float = 0.002, speech_rms: float = 0.2,
                 seed: int = 7, **kwargs):
        super().__init__(loud_chunks=loud_chunks, **kwargs)
        self.floor_rms = floor_rms
        self.speech_rms = speech_rms
        self._rng = np.random.default_rng(seed)

    async def _feed(self, on_chunk):
        frames = int(self.sample_rate * self.chunk_ms / 1000)
        i = 0
        while True:
            level = self.speech_rms if i < self.loud_chunks else self.floor_rms
            on_chunk(self._rng.normal(0.0, level, frames).astype(np.float32))
            i += 1
            await asyncio.sleep(self.chunk_ms / 1000)


class DeniedMicrophone:
    def open(self, on_chunk):
        raise PermissionError("microphone permission denied")

    def close(self):
        raise AssertionError("a microphone that never opened must not be closed")


@dataclass
class AudioResources:
    """Tracks which audio resource is open, to check they never overlap."""

    capturing: bool = False
    playing: bool = False
    overlaps: int = 0


class FakeCapture:
    """Stands in for AudioCapture.  Pops scripted outcomes, then blocks."""

    def __init__(self, outcomes=(), resources: Optional[AudioResources] = None):
        self.outcomes = list(outcomes)
        self.resources = resources or AudioResources()
        self.records = 0
        self.releases = 0
        self.stop_requests = 0
        self._stop: Optional[asyncio.Event] = None

    @property
    def active(self) -> bool:
        return self.resources.capturing

    async def record(self) -> Recording:
        self.records += 1
        if self.resources.playing:
            self.resources.overlaps += 1
        self.resources.capturing = True
        try:
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                await asyncio.sleep(0)
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
            self._stop = asyncio.Event()
            await self._stop.wait()
            raise EmptyRecording(0, 2000)
        finally:
            self.resources.capturing = False

    def request_stop(self) -> None:
        self.stop_requests += 1
        if self._stop is not None:
            self._stop.set()

    def release(self) -> None:
        self.releases += 1
        self.resources.capturing = False


class FakePlayer:
    def __init__(self, resources: Optional[AudioResources] = None, fail: bool = False):
        self.resources = resources or AudioResources()
        self.fail = fail
        self.plays: List[int] = []
        self.stops = 0
        self.volume = 1.0

    async def play(self, samples, samplerate):
        if self.fail:
            raise PlaybackError("output device lost")
        if self.resources.capturing:
            self.resources.overlaps += 1
        self.resources.playing = True
        try:
            self.plays.append(len(samples))
            await asyncio.sleep(0.001)
        finally:
            self.resources.playing = False

    def stop(self):
        self.stops += 1
        self.resources.playing = False

    def set_volume(self, volume):
        self.volume = volume


class FakeOnDevice:
    def __init__(self, available: bool = True, fail: bool = False):
        self._available = available
        self.fail = fail
        self.said: List[str] = []
        self.stops = 0
        self.volume = 1.0

    def available(self) -> bool:
        return self._available

    async def say(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("speech engine crashed")
        self.said.append(text)
        await asyncio.sleep(0)

    def stop(self):
        self.stops += 1

    def set_volume(self, volume):
        self.volume = volume


# =============================================================================
# Fake service backends
# =============================================================================


class FakeSTTBackend:
    def __init__(self, transcripts=("I feel anxious today",), delay: float = 0.0, error=None):
        self.transcripts = list(transcripts)
        self.delay = delay
        self.error = error
        self.calls: List[Recording] = []

    async def recognize(self, recording, locale):
        self.calls.append(recording)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        text = self.transcripts[(len(self.calls) - 1) % len(self.transcripts)]
        return TranscriptResult(text=text, confidence=0.95)


class FakeLLMBackend:
    def __init__(self, replies=("That sounds really hard. I'm here with you.",),
                 delay: float = 0.0, error=None):
        self.replies = list(replies)
        self.delay = delay
        self.error = error
        self.calls: List[tuple] = []

    async def complete(self, user_text, history, instructions):
        self.calls.append((user_text, tuple(history), instructions))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.replies[(len(self.calls) - 1) % len(self.replies)]


class FakeTTSBackend:
    def __init__(self, fail: bool = False, delay: float = 0.0, payload: Optional[bytes] = None):
        self.fail = fail
        self.delay = delay
        self.payload = payload
        self.calls: List[str] = []

    async def synthesize(self, text):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise SynthesisFailure("Google TTS API error: 500")
        return self.payload if self.payload is not None else wav_bytes()


# =============================================================================
# Fake collaborators
# =============================================================================


class FakeStore:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: List[SessionRecord] = []

    async def save_session(self, record):
        if self.fail:
            raise OSError("disk full")
        self.records.append(record)
        return f"rec-{len(self.records)}"


class FakeSubscriptions:
    def __init__(self, limits: Optional[SubscriptionLimits] = None):
        self.limits = limits or SubscriptionLimits()
        self.calls = 0
        self.recorded: List[str] = []

    async def get_limits(self, user_id):
        self.calls += 1
        return self.limits

    async def record_session(self, user_id):
        self.recorded.append(user_id)


# =============================================================================
# Controller harness
# =============================================================================

FAST_TURNS = TurnConfig(
    empty_recording_delay=0.0,
    empty_transcript_delay=0.0,
    transcription_error_delay=0.0,
    after_playback_delay=0.0,
    after_on_device_delay=0.0,
    playback_error_delay=0.0,
)


@dataclass
class Harness:
    controller: TurnController
    capture: FakeCapture
    stt: FakeSTTBackend
    llm: FakeLLMBackend
    tts: FakeTTSBackend
    player: FakePlayer
    on_device: FakeOnDevice
    store: FakeStore
    subscriptions: FakeSubscriptions
    resources: AudioResources
    events: list = field(default_factory=list)

    def states(self) -> List[str]:
        return [e["state"] for e in self.events if e["event"] == "state"]

    def transitions(self) -> List[tuple]:
        return [(e["previous"], e["state"]) for e in self.events if e["event"] == "state"]

    def events_named(self, name: str) -> List[dict]:
        return [e for e in self.events if e["event"] == name]


@pytest_asyncio.fixture
async def harness_factory():
    built: List[Harness] = []

    def _build(
        outcomes=(),
        stt: Optional[FakeSTTBackend] = None,
        llm: Optional[FakeLLMBackend] = None,
        tts: Optional[FakeTTSBackend] = None,
        player_fail: bool = False,
        on_device: Optional[FakeOnDevice] = None,
        store: Optional[FakeStore] = None,
        limits: Optional[SubscriptionLimits] = None,
        subscriptions=None,
        turn_config: TurnConfig = FAST_TURNS,
        stt_timeout: float = 1.0,
        llm_timeout: float = 1.0,
        warn_at_sec=(),
    ) -> Harness:
        resources = AudioResources()
        capture = FakeCapture(outcomes, resources)
        stt = stt or FakeSTTBackend()
        llm = llm or FakeLLMBackend()
        tts = tts or FakeTTSBackend()
        player = FakePlayer(resources, fail=player_fail)
        on_device = on_device or FakeOnDevice()
        store = store or FakeStore()
        subscriptions = subscriptions or FakeSubscriptions(limits)
        controller = TurnController(
            capture=capture,
            transcriber=Transcriber(stt, TranscriptionConfig(timeout_sec=stt_timeout)),
            generator=ResponseGenerator(llm, GenerationConfig(timeout_sec=llm_timeout)),
            synthesizer=SpeechSynthesizer(tts, player, on_device, SynthesisConfig(timeout_sec=1.0)),
            store=store,
            subscriptions=subscriptions,
            config=turn_config,
            subscription_config=SubscriptionConfig(warn_at_sec=list(warn_at_sec)),
        )
        harness = Harness(controller, capture, stt, llm, tts, player, on_device,
                          store, subscriptions, resources)
        controller.add_listener(harness.events.append)
        built.append(harness)
        return harness

    yield _build

    for harness in built:
        await harness.controller.end_session(reason="teardown")
