"""
generation.py — Voice Therapist · Reply Generation
==================================================
Turns the user's transcript plus a bounded window of prior turns into one
short therapist reply.  Never raises: timeouts, service errors and empty
answers all resolve to a canned reply picked deterministically from the
user's text, so the conversation always has something to say.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Protocol, Sequence

import groq
import httpx

from voice_therapist.config import GenerationConfig
from voice_therapist.errors import GenerationFailure
from voice_therapist.models import Role, Turn

log = logging.getLogger("voice_therapist.generation")

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

FALLBACK_REPLIES = (
    "I understand how you're feeling. That sounds challenging. How long have you been experiencing this?",
    "Thank you for sharing that with me. Can you tell me more about how this affects your daily life?",
    "I hear you, and your feelings are valid. What strategies have you tried so far to manage this?",
    "That's a lot to process. Let's take a moment to focus on what's most important to you right now.",
    "I appreciate your openness. It takes courage to discuss these things. How can I best support you today?",
    "I'm here for you. Let's work together to find approaches that might help with what you're going through.",
)

_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def fallback_reply(user_text: str) -> str:
    """Same input, same reply: sum of UTF-16 code units modulo the table size.

    Characters outside the BMP count as their surrogate pair, so the pick
    matches a charCodeAt-based hash of the same text.
    """
    data = user_text.encode("utf-16-le")
    key = sum(int.from_bytes(data[i:i + 2], "little") for i in range(0, len(data), 2))
    return FALLBACK_REPLIES[key % len(FALLBACK_REPLIES)]


class GenerationBackend(Protocol):
    async def complete(
        self, user_text: str, history: Sequence[Turn], instructions: str
    ) -> str: ...


class GroqChatBackend:
    DEFAULT_MODEL = "llama-3.3-70b-versatile"

    def __init__(self, client: groq.AsyncGroq, config: GenerationConfig):
        self._client = client
        self._config = config
        self._model = config.model or self.DEFAULT_MODEL

    async def complete(self, user_text: str, history: Sequence[Turn], instructions: str) -> str:
        messages = []
        if instructions:
            messages.append({"role": "system", "content": instructions})
        messages.extend(t.as_message() for t in history)
        messages.append({"role": "user", "content": user_text})
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=messages,
                temperature=self._config.temperature,
                top_p=self._config.top_p,
                max_tokens=self._config.max_tokens,
                stream=False,
            )
        except groq.APIError as exc:
            raise GenerationFailure(f"Groq chat error: {exc}") from exc
        if not completion.choices:
            return ""
        return completion.choices[0].message.content or ""

    async def aclose(self) -> None:
        await self._client.close()


class GeminiBackend:
    """Gemini generateContent over REST.

    Gemini has no system role here, so the instructions ride inside the final
    user message in a bracketed block the model is told not to surface.
    """

    DEFAULT_MODEL = "gemini-2.0-flash"

    def __init__(self, http: httpx.AsyncClient, api_key: str, config: GenerationConfig):
        self._http = http
        self._api_key = api_key
        self._config = config
        self._model = config.model or self.DEFAULT_MODEL

    def build_request(self, user_text: str, history: Sequence[Turn], instructions: str) -> dict:
        contents = [
            {
                "role": "user" if t.role is Role.USER else "model",
                "parts": [{"text": t.content}],
            }
            for t in history
        ]
        prompt = user_text
        if instructions:
            prompt = (
                f"[THERAPIST INSTRUCTIONS - NOT VISIBLE TO USER: {instructions}]\n\n"
                f"USER MESSAGE: {user_text}"
            )
        contents.append({"role": "user", "parts": [{"text": prompt}]})
        return {
            "contents": contents,
            "generationConfig": {
                "temperature": self._config.temperature,
                "maxOutputTokens": self._config.max_tokens,
                "topP": self._config.top_p,
                "topK": self._config.top_k,
            },
            "safetySettings": [
                {"category": c, "threshold": "BLOCK_MEDIUM_AND_ABOVE"}
                for c in _SAFETY_CATEGORIES
            ],
        }

    async def complete(self, user_text: str, history: Sequence[Turn], instructions: str) -> str:
        try:
            resp = await self._http.post(
                GEMINI_URL.format(model=self._model),
                params={"key": self._api_key},
                json=self.build_request(user_text, history, instructions),
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise GenerationFailure(f"Gemini API error: {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise GenerationFailure(f"Gemini request failed: {exc}") from exc

        candidates = resp.json().get("candidates") or []
        if not candidates:
            raise GenerationFailure("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)

    async def aclose(self) -> None:
        await self._http.aclose()


class ResponseGenerator:
    def __init__(self, backend: GenerationBackend, config: GenerationConfig):
        self._backend = backend
        self._config = config

    async def generate(self, user_text: str, history: Sequence[Turn] = ()) -> str:
        """Reply to `user_text`.  `history` excludes the current user turn."""
        window = tuple(history)[-self._config.history_window:] if self._config.history_window else ()
        timeout = self._config.timeout_sec
        t0 = time.perf_counter()
        log.info("event=llm_request chars=%d context_turns=%d", len(user_text), len(window))
        reply: Optional[str]
        try:
            reply = await asyncio.wait_for(
                self._backend.complete(user_text, window, self._config.instructions),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            log.warning("event=llm_timeout timeout_s=%.1f using=fallback", timeout)
            return fallback_reply(user_text)
        except Exception as exc:
            log.warning("event=llm_error error=%s using=fallback", exc)
            return fallback_reply(user_text)

        reply = (reply or "").strip()
        if not reply:
            log.warning("event=llm_empty using=fallback")
            return fallback_reply(user_text)
        log.info(
            "event=llm_reply chars=%d latency_ms=%.1f",
            len(reply), (time.perf_counter() - t0) * 1000,
        )
        return reply

    async def aclose(self) -> None:
        closer = getattr(self._backend, "aclose", None)
        if closer is not None:
            await closer()
