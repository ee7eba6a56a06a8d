"""
transcription.py — Voice Therapist · Speech-to-Text Client
==========================================================
Sends one finished Recording to a recognition service and returns the text.

Backends:
  GroqTranscriptionBackend — Whisper on Groq (AsyncGroq.audio.transcriptions)
  GoogleSpeechBackend      — Cloud Speech-to-Text v1 REST over httpx

Transcriber bounds every request with `timeout_sec` and maps all failures
onto the TranscriptionError family so the controller only has to recover.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import groq
import httpx

from voice_therapist.config import TranscriptionConfig
from voice_therapist.errors import (
    EmptyTranscript,
    TranscriptionError,
    TranscriptionServiceError,
    TranscriptionTimeout,
)
from voice_therapist.models import Recording

log = logging.getLogger("voice_therapist.transcription")

GOOGLE_STT_URL = "https://speech.googleapis.com/v1/speech:recognize"

_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/flac": "flac",
    "audio/wav": "wav",
}

_GOOGLE_ENCODINGS = {
    "audio/ogg": "OGG_OPUS",
    "audio/flac": "FLAC",
    "audio/wav": "LINEAR16",
}


@dataclass(frozen=True)
class TranscriptResult:
    text: str
    confidence: Optional[float] = None


class TranscriptionBackend(Protocol):
    async def recognize(self, recording: Recording, locale: str) -> TranscriptResult: ...


def _base_type(content_type: str) -> str:
    return content_type.split(";")[0].strip().lower()


class GroqTranscriptionBackend:
    DEFAULT_MODEL = "whisper-large-v3-turbo"

    def __init__(
        self,
        client: groq.AsyncGroq,
        model: Optional[str] = None,
        phrase_hints: Sequence[str] = (),
    ):
        self._client = client
        self._model = model or self.DEFAULT_MODEL
        # Whisper has no boost API; a vocabulary prompt is the closest thing
        self._prompt = ", ".join(phrase_hints) or None

    async def recognize(self, recording: Recording, locale: str) -> TranscriptResult:
        ext = _EXTENSIONS.get(_base_type(recording.content_type), "wav")
        kwargs = {}
        if self._prompt:
            kwargs["prompt"] = self._prompt
        try:
            result = await self._client.audio.transcriptions.create(
                file=(f"utterance.{ext}", recording.data),
                model=self._model,
                language=locale.split("-")[0].lower(),
                response_format="json",
                temperature=0.0,
                **kwargs,
            )
        except groq.APIError as exc:
            raise TranscriptionServiceError(f"Groq STT error: {exc}") from exc
        return TranscriptResult(text=result.text or "")

    async def aclose(self) -> None:
        await self._client.close()


class GoogleSpeechBackend:
    DEFAULT_MODEL = "latest_long"

    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        model: Optional[str] = None,
        phrase_hints: Sequence[str] = (),
        phrase_boost: float = 10.0,
    ):
        self._http = http
        self._api_key = api_key
        self._model = model or self.DEFAULT_MODEL
        self._phrase_hints = list(phrase_hints)
        self._phrase_boost = phrase_boost

    def build_request(self, recording: Recording, locale: str) -> dict:
        base = _base_type(recording.content_type)
        config = {
            "encoding": _GOOGLE_ENCODINGS.get(base, "ENCODING_UNSPECIFIED"),
            "sampleRateHertz": recording.sample_rate,
            "languageCode": locale,
            "model": self._model,
            "useEnhanced": True,
            "enableAutomaticPunctuation": True,
            "maxAlternatives": 1,
        }
        if self._phrase_hints:
            config["speechContexts"] = [
                {"phrases": self._phrase_hints, "boost": self._phrase_boost}
            ]
        return {
            "config": config,
            "audio": {"content": base64.b64encode(recording.data).decode("ascii")},
        }

    async def recognize(self, recording: Recording, locale: str) -> TranscriptResult:
        try:
            resp = await self._http.post(
                GOOGLE_STT_URL,
                params={"key": self._api_key},
                json=self.build_request(recording, locale),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TranscriptionServiceError(
                f"Google STT error: {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TranscriptionServiceError(f"Google STT request failed: {exc}") from exc

        parts: list[str] = []
        confidence = None
        for result in resp.json().get("results") or []:
            alternatives = result.get("alternatives") or []
            if not alternatives or not alternatives[0].get("transcript"):
                continue
            parts.append(alternatives[0]["transcript"].strip())
            if confidence is None:
                confidence = alternatives[0].get("confidence")
        return TranscriptResult(text=" ".join(parts), confidence=confidence)

    async def aclose(self) -> None:
        await self._http.aclose()


class Transcriber:
    """Timeout-bounded, error-normalising front for a TranscriptionBackend."""

    def __init__(self, backend: TranscriptionBackend, config: TranscriptionConfig):
        self._backend = backend
        self._config = config

    async def transcribe(self, recording: Recording) -> str:
        timeout = self._config.timeout_sec
        t0 = time.perf_counter()
        log.info(
            "event=stt_request bytes=%d content_type=%s",
            recording.size, recording.content_type,
        )
        try:
            result = await asyncio.wait_for(
                self._backend.recognize(recording, self._config.locale),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            log.warning("event=stt_timeout timeout_s=%.1f", timeout)
            raise TranscriptionTimeout(timeout) from exc
        except TranscriptionError as exc:
            log.warning("event=stt_error error=%s", exc)
            raise
        except Exception as exc:
            log.warning("event=stt_error error=%s", exc)
            raise TranscriptionServiceError(str(exc)) from exc

        text = (result.text or "").strip()
        latency_ms = (time.perf_counter() - t0) * 1000
        if not text:
            log.info("event=stt_empty latency_ms=%.1f", latency_ms)
            raise EmptyTranscript("no speech recognised")
        log.info(
            "event=stt_result chars=%d confidence=%s latency_ms=%.1f",
            len(text), result.confidence, latency_ms,
        )
        return text

    async def aclose(self) -> None:
        closer = getattr(self._backend, "aclose", None)
        if closer is not None:
            await closer()
