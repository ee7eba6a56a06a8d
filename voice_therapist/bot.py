"""
bot.py — Voice Therapist · Terminal Session
===========================================
Runs one therapy session against the local microphone and speakers.

Usage
-----
    voice-therapist [--config therapist_config.json] [--user local]

Press Enter (or Ctrl+C) to end the session early; otherwise it ends when the
subscription's duration limit is reached.

Wiring
------
SoundDeviceMicrophone → AudioCapture → Transcriber (Groq Whisper | Google STT)
    → ResponseGenerator (Groq Llama | Gemini)
    → SpeechSynthesizer (Groq Orpheus | Google TTS, pyttsx3 fallback)
    → SoundDevicePlayer
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import threading

import groq
import httpx
from dotenv import load_dotenv

from voice_therapist.capture import AudioCapture
from voice_therapist.collaborators import (
    JsonSessionStore,
    JsonSubscriptionProvider,
    StaticSubscriptionProvider,
)
from voice_therapist.config import TherapistConfig
from voice_therapist.controller import TurnController
from voice_therapist.errors import SessionLimitReached
from voice_therapist.generation import GeminiBackend, GroqChatBackend, ResponseGenerator
from voice_therapist.models import SubscriptionLimits
from voice_therapist.synthesis import (
    GoogleTextToSpeechBackend,
    GroqSpeechBackend,
    SpeechSynthesizer,
)
from voice_therapist.transcription import (
    GoogleSpeechBackend,
    GroqTranscriptionBackend,
    Transcriber,
)

load_dotenv()

log = logging.getLogger("voice_therapist.bot")

DEFAULT_CONFIG_PATH = os.getenv("THERAPIST_CONFIG", "therapist_config.json")
HTTP_TIMEOUT_SEC = 30.0


def build_controller(config: TherapistConfig) -> TurnController:
    """Wire real devices and vendor clients into a TurnController.

    Each unit gets its own client so closing one never breaks another.
    API keys are required only for the providers actually selected.
    """
    # PortAudio and the speech engine are only needed for a real session
    from voice_therapist.devices import Pyttsx3Speaker, SoundDeviceMicrophone, SoundDevicePlayer

    def _groq() -> groq.AsyncGroq:
        return groq.AsyncGroq(api_key=os.environ["GROQ_API_KEY"])

    def _http() -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC)

    stt = config.transcription
    if stt.provider == "google":
        stt_backend = GoogleSpeechBackend(
            _http(), os.environ["GOOGLE_CLOUD_API_KEY"], stt.model,
            stt.phrase_hints, stt.phrase_boost,
        )
    else:
        stt_backend = GroqTranscriptionBackend(_groq(), stt.model, stt.phrase_hints)

    gen = config.generation
    if gen.provider == "gemini":
        gen_backend = GeminiBackend(_http(), os.environ["GOOGLE_API_KEY"], gen)
    else:
        gen_backend = GroqChatBackend(_groq(), gen)

    tts = config.synthesis
    if tts.provider == "google":
        tts_backend = GoogleTextToSpeechBackend(_http(), os.environ["GOOGLE_API_KEY"], tts)
    else:
        tts_backend = GroqSpeechBackend(_groq(), tts)

    store = JsonSessionStore(config.storage.sessions_path)
    sub = config.subscription
    if sub.path:
        subscriptions = JsonSubscriptionProvider(
            sub.path,
            SubscriptionLimits(
                sessions_limit=sub.sessions_limit,
                session_duration_limit=sub.session_duration_limit,
            ),
        )
    else:
        subscriptions = StaticSubscriptionProvider(
            sub.sessions_limit, sub.session_duration_limit, store=store,
        )

    return TurnController(
        capture=AudioCapture(lambda: SoundDeviceMicrophone(config.capture), config.capture),
        transcriber=Transcriber(stt_backend, stt),
        generator=ResponseGenerator(gen_backend, gen),
        synthesizer=SpeechSynthesizer(
            tts_backend,
            SoundDevicePlayer(),
            Pyttsx3Speaker(tts) if tts.on_device_enabled else None,
            tts,
        ),
        store=store,
        subscriptions=subscriptions,
        config=config.turn,
        subscription_config=sub,
    )


def _print_event(event: dict) -> None:
    kind = event["event"]
    if kind == "turn":
        turn = event["turn"]
        speaker = "You" if turn["role"] == "user" else "Therapist"
        print(f"\n{speaker}: {turn['content']}", flush=True)
    elif kind == "state" and event.get("status"):
        print(f"  [{event['status']}]", flush=True)
    elif kind == "time_warning":
        print(f"  [{int(event['remaining_seconds'])} seconds remaining]", flush=True)
    elif kind == "error":
        print(f"\n{event['message']}", file=sys.stderr, flush=True)
    elif kind == "session_ended":
        print(f"\nSession ended ({event['reason']}).", flush=True)


async def main(config: TherapistConfig, user_id: str) -> int:
    log.info("event=bot_start user_id=%s", user_id)
    controller = build_controller(config)
    loop = asyncio.get_running_loop()
    ended = asyncio.Event()

    def _on_event(event: dict) -> None:
        _print_event(event)
        if event["event"] == "session_ended":
            ended.set()

    controller.add_listener(_on_event)

    # daemon thread so a pending readline never blocks interpreter exit
    def _wait_for_enter() -> None:
        sys.stdin.readline()
        loop.call_soon_threadsafe(ended.set)

    try:
        try:
            await controller.start_session(user_id)
        except SessionLimitReached as exc:
            print(str(exc), file=sys.stderr)
            return 2
        print("Session started. Press Enter to end it.", flush=True)
        threading.Thread(target=_wait_for_enter, name="stdin_wait", daemon=True).start()
        await ended.wait()
    finally:
        await controller.end_session(reason="user")
        await controller.aclose()
    return 1 if controller.error_message else 0


def run() -> None:
    parser = argparse.ArgumentParser(prog="voice-therapist", description="Run one voice therapy session in the terminal.")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="JSON config file")
    parser.add_argument("--user", default="local", help="User id for limits and saved sessions")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
        format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    config = TherapistConfig.load(args.config)
    try:
        code = asyncio.run(main(config, args.user))
    except KeyboardInterrupt:
        print("\nSession interrupted.", file=sys.stderr)
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    run()
