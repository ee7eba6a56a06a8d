"""
synthesis.py — Voice Therapist · Speech Output
==============================================
Two-tier voice for assistant replies:

  1. cloud TTS   — GroqSpeechBackend (Orpheus, WAV) or GoogleTextToSpeechBackend
                   (MP3), bounded by `timeout_sec`, decoded in-memory with
                   soundfile and played through an AudioPlayer
  2. on-device   — the system speech engine (devices.Pyttsx3Speaker)

If neither is available the reply is text-only and the controller just waits
its fixed pause.  Only one utterance is ever audible: every new playback
stops the previous one first.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import groq
import httpx
import numpy as np
import soundfile as sf

from voice_therapist.config import SynthesisConfig
from voice_therapist.errors import PlaybackError, SynthesisFailure

log = logging.getLogger("voice_therapist.synthesis")

GOOGLE_TTS_URL = "https://texttospeech.googleapis.com/v1/text:synthesize"


@dataclass(frozen=True)
class SynthesizedAudio:
    samples: np.ndarray
    sample_rate: int

    @property
    def duration_sec(self) -> float:
        return len(self.samples) / float(self.sample_rate)


class SpeechBackend(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


class AudioPlayer(Protocol):
    async def play(self, samples: np.ndarray, samplerate: int) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...


class OnDeviceSpeaker(Protocol):
    def available(self) -> bool: ...

    async def say(self, text: str) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...


def decode_audio(data: bytes) -> tuple[np.ndarray, int]:
    """Decode WAV/MP3/OGG bytes to float32 mono in-memory."""
    samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32")
    if samples.ndim == 2:
        samples = samples[:, 0]
    return samples, sample_rate


class GroqSpeechBackend:
    DEFAULT_MODEL = "canopylabs/orpheus-v1-english"
    DEFAULT_VOICE = "troy"

    def __init__(self, client: groq.AsyncGroq, config: SynthesisConfig):
        self._client = client
        self._model = config.model or self.DEFAULT_MODEL
        self._voice = config.voice or self.DEFAULT_VOICE

    async def synthesize(self, text: str) -> bytes:
        try:
            response = await self._client.audio.speech.create(
                model=self._model,
                voice=self._voice,
                input=text,
                response_format="wav",
            )
            return await response.read()
        except groq.APIError as exc:
            raise SynthesisFailure(f"Groq TTS error: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.close()


class GoogleTextToSpeechBackend:
    DEFAULT_VOICE = "en-US-Chirp3-HD-Achernar"

    def __init__(self, http: httpx.AsyncClient, api_key: str, config: SynthesisConfig):
        self._http = http
        self._api_key = api_key
        self._config = config

    def build_request(self, text: str) -> dict:
        cfg = self._config
        return {
            "input": {"text": text},
            "voice": {
                "languageCode": cfg.language_code,
                "name": cfg.voice or self.DEFAULT_VOICE,
                "ssmlGender": cfg.ssml_gender,
            },
            "audioConfig": {
                "audioEncoding": "MP3",
                "effectsProfileId": ["small-bluetooth-speaker-class-device"],
                "pitch": cfg.pitch,
                "speakingRate": cfg.speaking_rate,
            },
        }

    async def synthesize(self, text: str) -> bytes:
        try:
            resp = await self._http.post(
                GOOGLE_TTS_URL,
                params={"key": self._api_key},
                json=self.build_request(text),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SynthesisFailure(f"Google TTS API error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise SynthesisFailure(f"Google TTS request failed: {exc}") from exc

        content = resp.json().get("audioContent")
        if not content:
            raise SynthesisFailure("No audio content returned")
        return base64.b64decode(content)

    async def aclose(self) -> None:
        await self._http.aclose()


class SpeechSynthesizer:
    def __init__(
        self,
        backend: SpeechBackend,
        player: AudioPlayer,
        on_device: Optional[OnDeviceSpeaker],
        config: SynthesisConfig,
    ):
        self._backend = backend
        self._player = player
        self._on_device = on_device
        self._config = config
        self._volume = config.volume
        player.set_volume(self._volume)

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def muted(self) -> bool:
        return self._volume <= 0.0

    async def synthesize(self, text: str) -> Optional[SynthesizedAudio]:
        """Cloud audio for `text`, or None when the service can't provide it."""
        if self.muted:
            log.info("event=tts_skipped reason=muted")
            return None
        text = text[:self._config.max_chars]
        timeout = self._config.timeout_sec
        t0 = time.perf_counter()
        try:
            data = await asyncio.wait_for(self._backend.synthesize(text), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("event=tts_timeout timeout_s=%.1f", timeout)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=tts_error error=%s", exc)
            return None

        if not data:
            log.warning("event=tts_empty")
            return None
        try:
            samples, sample_rate = decode_audio(data)
        except (RuntimeError, ValueError) as exc:
            log.warning("event=tts_decode_error error=%s", exc)
            return None
        if samples.size == 0:
            log.warning("event=tts_empty")
            return None

        log.info(
            "event=tts_ready bytes=%d duration_s=%.2f latency_ms=%.1f",
            len(data), len(samples) / float(sample_rate), (time.perf_counter() - t0) * 1000,
        )
        return SynthesizedAudio(samples=samples, sample_rate=sample_rate)

    async def play(self, audio: SynthesizedAudio) -> None:
        """Play to completion.  Raises PlaybackError on device failure."""
        self.stop()
        log.info("event=playback_start duration_s=%.2f", audio.duration_sec)
        try:
            await self._player.play(audio.samples, audio.sample_rate)
        except PlaybackError:
            raise
        except Exception as exc:
            raise PlaybackError(str(exc)) from exc
        log.info("event=playback_end")

    async def speak_on_device(self, text: str) -> bool:
        """Speak with the system voice.  False means text-only."""
        if self._on_device is None or not self._config.on_device_enabled or self.muted:
            return False
        self.stop()
        try:
            if not self._on_device.available():
                return False
            log.info("event=on_device_speech chars=%d", len(text))
            await self._on_device.say(text)
        except Exception as exc:
            log.warning("event=on_device_error error=%s", exc)
            return False
        return True

    def stop(self) -> None:
        """Silence any audible reply.  Never raises."""
        try:
            self._player.stop()
        except Exception as exc:
            log.warning("event=playback_stop_error error=%s", exc)
        if self._on_device is not None:
            try:
                self._on_device.stop()
            except Exception as exc:
                log.warning("event=on_device_stop_error error=%s", exc)

    def set_volume(self, volume: float) -> None:
        volume = min(1.0, max(0.0, volume))
        self._volume = volume
        self._player.set_volume(volume)
        if self._on_device is not None:
            self._on_device.set_volume(volume)
        if volume == 0.0:
            self.stop()
        log.info("event=volume_set volume=%.2f", volume)

    async def aclose(self) -> None:
        self.stop()
        closer = getattr(self._backend, "aclose", None)
        if closer is not None:
            await closer()
        on_device_close = getattr(self._on_device, "close", None)
        if on_device_close is not None:
            on_device_close()
