"""
devices.py — Voice Therapist · Local Audio Devices
==================================================
The only module that talks to PortAudio and the system speech engine.

  SoundDeviceMicrophone  — sd.InputStream feeding AudioCapture
  SoundDevicePlayer      — sd.OutputStream playing one decoded reply
  Pyttsx3Speaker         — on-device voice used when cloud TTS fails

Nothing else imports this module directly; bot.build_controller wires it in
so tests and the HTTP server can run without an audio stack.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Callable, Optional

import numpy as np
import pyttsx3
import sounddevice as sd

from voice_therapist.config import CaptureConfig, SynthesisConfig
from voice_therapist.errors import MicUnavailable, PlaybackError

log = logging.getLogger("voice_therapist.devices")


def _device_arg(device: Optional[str]):
    if device is None:
        return None
    return int(device) if device.isdigit() else device


class SoundDeviceMicrophone:
    """Input stream whose audio-thread callback hops onto the event loop."""

    def __init__(self, config: CaptureConfig):
        self._config = config
        self._stream: sd.InputStream | None = None

    def open(self, on_chunk: Callable[[np.ndarray], None]) -> None:
        loop = asyncio.get_running_loop()

        def _callback(indata: np.ndarray, frames: int, _time, status):
            if status:
                log.warning("event=mic_status status=%s", status)
            try:
                loop.call_soon_threadsafe(on_chunk, indata.copy())
            except RuntimeError:
                # loop already closed during shutdown
                pass

        cfg = self._config
        try:
            self._stream = sd.InputStream(
                samplerate=cfg.sample_rate,
                channels=cfg.channels,
                dtype="float32",
                blocksize=int(cfg.sample_rate * cfg.block_ms / 1000),
                device=_device_arg(cfg.device),
                callback=_callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise MicUnavailable(str(exc)) from exc
        log.debug("event=mic_open device=%s", cfg.device or "default")

    def close(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=mic_close_error error=%s", exc)


class SoundDevicePlayer:
    """Plays one float32 mono buffer; `play` resolves when the device drains.

    The sounddevice callback runs on the audio thread, so the read position
    is lock-protected and completion is marshalled back onto the loop.
    """

    CHANNELS = 1

    def __init__(self):
        self._lock = threading.Lock()
        self._stream: sd.OutputStream | None = None
        self._samples = np.zeros(0, dtype=np.float32)
        self._pos = 0
        self._volume = 1.0
        self._done: asyncio.Future | None = None

    async def play(self, samples: np.ndarray, samplerate: int) -> None:
        self.stop()
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        self._done = done
        with self._lock:
            self._samples = np.asarray(samples, dtype=np.float32).reshape(-1)
            self._pos = 0

        def _on_finished():
            loop.call_soon_threadsafe(_resolve, done)

        try:
            self._stream = sd.OutputStream(
                samplerate=samplerate,
                channels=self.CHANNELS,
                dtype="float32",
                callback=self._callback,
                blocksize=1024,
                finished_callback=_on_finished,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            self._stream = None
            raise PlaybackError(str(exc)) from exc

        try:
            await done
        finally:
            self._close_stream()

    def stop(self) -> None:
        self._close_stream()
        if self._done is not None:
            _resolve(self._done)
            self._done = None

    def set_volume(self, volume: float) -> None:
        with self._lock:
            self._volume = volume

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.abort()
            stream.close()
        except sd.PortAudioError as exc:
            log.warning("event=playback_close_error error=%s", exc)

    # -- sounddevice audio-thread callback --

    def _callback(self, outdata: np.ndarray, frames: int, _time, status):
        if status:
            log.warning("event=playback_status status=%s", status)
        with self._lock:
            chunk = self._samples[self._pos:self._pos + frames] * self._volume
            self._pos += len(chunk)
        outdata[:len(chunk), 0] = chunk
        if len(chunk) < frames:
            outdata[len(chunk):, 0] = 0.0
            raise sd.CallbackStop


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


class Pyttsx3Speaker:
    """System speech engine (SAPI5 / NSSpeechSynthesizer / eSpeak) via pyttsx3.

    The native engines are thread-affine, so one daemon worker thread creates
    the engine and runs every say/setProperty call from a queue.  `say`
    awaits a future the worker resolves once runAndWait returns.
    """

    def __init__(self, config: SynthesisConfig):
        self._config = config
        self._jobs: queue.Queue = queue.Queue()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._engine = None
        self._init_error: Optional[Exception] = None
        self._unavailable = False

    def available(self) -> bool:
        if self._unavailable:
            return False
        self._ensure_worker()
        if self._init_error is not None:
            log.warning("event=on_device_unavailable error=%s", self._init_error)
            self._unavailable = True
            return False
        return True

    async def say(self, text: str) -> None:
        if not self.available():
            raise RuntimeError(f"on-device speech unavailable: {self._init_error}")
        loop = asyncio.get_running_loop()
        done = loop.create_future()
        self._jobs.put(("say", text, loop, done))
        await done

    def stop(self) -> None:
        # Queued utterances are dropped here; the one in runAndWait is
        # interrupted through engine.stop(), the only call made off the worker.
        while True:
            try:
                job = self._jobs.get_nowait()
            except queue.Empty:
                break
            if job is not None and job[3] is not None:
                job[2].call_soon_threadsafe(_settle, job[3], None)
        if self._engine is not None:
            self._engine.stop()

    def set_volume(self, volume: float) -> None:
        if self._thread is not None:
            self._jobs.put(("volume", volume, None, None))

    def close(self) -> None:
        if self._thread is not None:
            self._jobs.put(None)
            self._thread = None

    def _ensure_worker(self) -> None:
        if self._thread is None:
            self._ready.clear()
            self._thread = threading.Thread(target=self._worker, name="pyttsx3-worker", daemon=True)
            self._thread.start()
        self._ready.wait()

    def _worker(self) -> None:
        try:
            self._engine = self._build_engine()
        except Exception as exc:  # pyttsx3 raises driver-specific errors
            self._init_error = exc
            self._ready.set()
            return
        self._ready.set()

        while True:
            job = self._jobs.get()
            if job is None:
                break
            kind, arg, loop, done = job
            error: Optional[Exception] = None
            try:
                if kind == "say":
                    self._engine.say(arg)
                    self._engine.runAndWait()
                else:
                    self._engine.setProperty("volume", arg)
            except Exception as exc:
                log.warning("event=on_device_worker_error kind=%s error=%s", kind, exc)
                error = exc
            if done is not None:
                loop.call_soon_threadsafe(_settle, done, error)

    def _build_engine(self):
        engine = pyttsx3.init()
        engine.setProperty("rate", self._config.on_device_rate)
        engine.setProperty("volume", self._config.volume)
        voice_id = self._pick_voice(engine)
        if voice_id is not None:
            engine.setProperty("voice", voice_id)
        return engine

    def _pick_voice(self, engine) -> Optional[str]:
        voices = engine.getProperty("voices") or []
        for fragment in self._config.preferred_voices:
            needle = fragment.lower()
            for voice in voices:
                if needle in (voice.name or "").lower():
                    log.debug("event=on_device_voice name=%s", voice.name)
                    return voice.id
        return None


def _settle(done: asyncio.Future, error: Optional[Exception]) -> None:
    if done.done():
        return
    if error is None:
        done.set_result(None)
    else:
        done.set_exception(error)
