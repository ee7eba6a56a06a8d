"""
controller.py — Voice Therapist · Turn-Taking Controller
========================================================
Owns the conversation loop and is the only writer of ControllerState and
SessionHistory.  One asyncio task runs the loop:

    greeting ─► SPEAKING ─► (pause) ─► LISTENING ─► PROCESSING ─► SPEAKING ─► …

Every await is followed by a "still the active turn?" check so a result that
arrives after the session ended (or the turn moved on) is discarded instead
of mutating state.  Recoverable failures never leave the loop; each one just
picks the pause before the next LISTENING phase:

    EmptyRecording          → empty_recording_delay      (stays LISTENING, mic closed)
    EmptyTranscript         → empty_transcript_delay
    Transcription timeout / service error → transcription_error_delay
    reply played            → after_playback_delay
    on-device / text-only   → after_on_device_delay
    PlaybackError           → playback_error_delay

MicUnavailable is the one fatal error: the session ends with a user-visible
message.  A second task enforces the subscription's session duration and
emits the remaining-time warnings.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from voice_therapist.capture import AudioCapture
from voice_therapist.collaborators import SessionStore, SubscriptionProvider
from voice_therapist.config import SubscriptionConfig, TurnConfig
from voice_therapist.errors import (
    EmptyRecording,
    EmptyTranscript,
    InvalidTransition,
    MicUnavailable,
    PlaybackError,
    SessionAlreadyActive,
    SessionLimitReached,
    TranscriptionError,
)
from voice_therapist.generation import ResponseGenerator
from voice_therapist.models import (
    ControllerState,
    Role,
    SessionHistory,
    SessionRecord,
    SubscriptionLimits,
    Turn,
    utcnow,
)
from voice_therapist.synthesis import SpeechSynthesizer
from voice_therapist.transcription import Transcriber

log = logging.getLogger("voice_therapist.controller")

# IDLE -> LISTENING is the session-start edge.  The greeting is a speech
# action wrapped in SPEAKING, so a session actually opens IDLE -> SPEAKING
# -> LISTENING.  LISTENING -> LISTENING is the restart after an
# EmptyRecording; the mic is closed for empty_recording_delay in between.
ALLOWED_TRANSITIONS: dict[ControllerState, frozenset[ControllerState]] = {
    ControllerState.IDLE: frozenset({ControllerState.SPEAKING, ControllerState.LISTENING}),
    ControllerState.LISTENING: frozenset(
        {ControllerState.LISTENING, ControllerState.PROCESSING, ControllerState.IDLE}
    ),
    ControllerState.PROCESSING: frozenset(
        {ControllerState.SPEAKING, ControllerState.LISTENING, ControllerState.IDLE}
    ),
    ControllerState.SPEAKING: frozenset({ControllerState.LISTENING, ControllerState.IDLE}),
}

STATUS_TEXT = {
    ControllerState.IDLE: "",
    ControllerState.LISTENING: "Listening…",
    ControllerState.PROCESSING: "Thinking…",
    ControllerState.SPEAKING: "Speaking…",
}

Listener = Callable[[dict], None]


class TurnController:
    def __init__(
        self,
        *,
        capture: AudioCapture,
        transcriber: Transcriber,
        generator: ResponseGenerator,
        synthesizer: SpeechSynthesizer,
        store: SessionStore,
        subscriptions: SubscriptionProvider,
        config: TurnConfig,
        subscription_config: Optional[SubscriptionConfig] = None,
    ):
        self._capture = capture
        self._transcriber = transcriber
        self._generator = generator
        self._synthesizer = synthesizer
        self._store = store
        self._subscriptions = subscriptions
        self._config = config
        self._warn_at = sorted(
            (subscription_config or SubscriptionConfig()).warn_at_sec, reverse=True
        )

        self.history = SessionHistory()
        self._state = ControllerState.IDLE
        self._listeners: list[Listener] = []

        self._loop_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None
        self._session_id = 0
        self._turn_id = 0
        self._active = False
        self._starting = False

        self._user_id: Optional[str] = None
        self._limits: Optional[SubscriptionLimits] = None
        self._started_at: Optional[datetime] = None
        self._started_mono = 0.0

        self.error_message: Optional[str] = None
        self.end_reason: Optional[str] = None
        self.last_record_id: Optional[str] = None

    # -- observation ----------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def status_text(self) -> str:
        return STATUS_TEXT[self._state]

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def turn_id(self) -> int:
        return self._turn_id

    @property
    def remaining_seconds(self) -> Optional[float]:
        if not self._active or self._limits is None:
            return None
        elapsed = time.monotonic() - self._started_mono
        return max(0.0, self._limits.duration_seconds - elapsed)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def snapshot(self) -> dict:
        return {
            "active": self._active,
            "state": self._state.value,
            "status": self.status_text,
            "user_id": self._user_id,
            "turn_id": self._turn_id,
            "remaining_seconds": self.remaining_seconds,
            "volume": self._synthesizer.volume,
            "error": self.error_message,
            "end_reason": self.end_reason,
            "last_record_id": self.last_record_id,
            "history": [t.to_dict() for t in self.history],
        }

    def _emit(self, event: str, **fields) -> None:
        payload = {"event": event, "state": self._state.value, **fields}
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                log.exception("event=listener_error listener_event=%s", event)

    def _set_state(self, new_state: ControllerState) -> None:
        prev = self._state
        if new_state not in ALLOWED_TRANSITIONS[prev]:
            raise InvalidTransition(prev, new_state)
        self._state = new_state
        log.info(
            "event=state_change turn_id=%d from=%s to=%s",
            self._turn_id, prev.value, new_state.value,
        )
        self._emit("state", previous=prev.value, status=STATUS_TEXT[new_state])

    def _append(self, role: Role, content: str) -> Turn:
        turn = self.history.append(role, content)
        log.info("event=turn_append seq=%d role=%s chars=%d", turn.sequence, role.value, len(content))
        self._emit("turn", turn=turn.to_dict())
        return turn

    def _is_current(self, session_id: int, turn_id: Optional[int] = None) -> bool:
        if not self._active or session_id != self._session_id:
            return False
        return turn_id is None or turn_id == self._turn_id

    # -- user actions ---------------------------------------------------------

    async def start_session(self, user_id: str = "local") -> None:
        """Check limits, then greet and start listening in the background.

        Raises SessionLimitReached when the user has no sessions left and
        SessionAlreadyActive when called twice.
        """
        if self._active or self._starting:
            raise SessionAlreadyActive("a session is already running")
        self._starting = True
        try:
            limits = await self._subscriptions.get_limits(user_id)
        finally:
            self._starting = False
        if limits.exhausted:
            log.warning(
                "event=session_limit user_id=%s used=%d limit=%d",
                user_id, limits.sessions_used, limits.sessions_limit,
            )
            raise SessionLimitReached(limits.sessions_limit)

        self._session_id += 1
        self._turn_id = 0
        self._active = True
        self._user_id = user_id
        self._limits = limits
        self._started_at = utcnow()
        self._started_mono = time.monotonic()
        self.history.clear()
        self.error_message = None
        self.end_reason = None
        self.last_record_id = None

        session_id = self._session_id
        log.info(
            "event=session_start user_id=%s duration_limit_min=%.1f",
            user_id, limits.session_duration_limit,
        )
        self._emit("session_started", user_id=user_id, remaining_seconds=limits.duration_seconds)
        self._timer_task = asyncio.create_task(
            self._duration_timer(session_id, limits.duration_seconds), name="session_timer"
        )
        self._loop_task = asyncio.create_task(
            self._conversation_loop(session_id), name="conversation_loop"
        )

    def stop_listening(self) -> None:
        """End the current utterance early.  Ignored outside LISTENING."""
        if self._state is ControllerState.LISTENING:
            log.info("event=manual_stop turn_id=%d", self._turn_id)
            self._capture.request_stop()

    def set_volume(self, volume: float) -> None:
        self._synthesizer.set_volume(volume)
        self._emit("volume", volume=self._synthesizer.volume)

    async def end_session(self, reason: str = "user") -> Optional[str]:
        """Stop everything, flush the history once and return to IDLE.

        Idempotent: later calls return None without side effects.
        """
        if not self._active:
            return None
        self._active = False
        self.end_reason = reason
        log.info("event=session_end reason=%s turns=%d", reason, len(self.history))

        current = asyncio.current_task()
        tasks = [
            t for t in (self._loop_task, self._timer_task)
            if t is not None and t is not current and not t.done()
        ]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._timer_task = None

        self._capture.release()
        self._synthesizer.stop()
        if self._state is not ControllerState.IDLE:
            self._set_state(ControllerState.IDLE)

        record_id = await self._flush(reason)
        self.last_record_id = record_id
        self.history.clear()
        self._limits = None
        self._emit("session_ended", reason=reason, record_id=record_id, error=self.error_message)
        return record_id

    async def aclose(self) -> None:
        await self.end_session(reason="shutdown")
        for client in (self._transcriber, self._generator, self._synthesizer):
            await client.aclose()

    # -- internals ------------------------------------------------------------

    async def _flush(self, reason: str) -> Optional[str]:
        if not len(self.history):
            return None
        record = SessionRecord.from_history(
            self.history,
            user_id=self._user_id or "local",
            start_time=self._started_at or utcnow(),
            end_time=utcnow(),
            end_reason=reason,
        )
        try:
            record_id = await self._store.save_session(record)
        except Exception as exc:
            log.error("event=session_flush_failed error=%s", exc)
            return None
        log.info("event=session_flushed id=%s messages=%d", record_id, len(record.messages))
        try:
            await self._subscriptions.record_session(record.user_id)
        except Exception as exc:
            log.error("event=subscription_usage_failed user_id=%s error=%s", record.user_id, exc)
        return record_id

    async def _duration_timer(self, session_id: int, limit_sec: float) -> None:
        deadline = self._started_mono + limit_sec
        for warn_at in self._warn_at:
            if warn_at >= limit_sec:
                continue
            await asyncio.sleep(max(0.0, deadline - warn_at - time.monotonic()))
            log.info("event=time_warning remaining_s=%.0f", warn_at)
            self._emit("time_warning", remaining_seconds=warn_at)
        await asyncio.sleep(max(0.0, deadline - time.monotonic()))
        if self._is_current(session_id):
            log.info("event=session_duration_reached limit_s=%.0f", limit_sec)
            await self.end_session(reason="duration_limit")

    async def _conversation_loop(self, session_id: int) -> None:
        try:
            greeting = self._append(Role.ASSISTANT, self._config.greeting)
            delay = await self._speak(greeting.content, session_id, self._turn_id)
            while self._is_current(session_id):
                await asyncio.sleep(delay)
                if not self._is_current(session_id):
                    break
                try:
                    delay = await self._run_turn(session_id)
                except (MicUnavailable, InvalidTransition):
                    raise
                except Exception:
                    log.exception("event=turn_error turn_id=%d", self._turn_id)
                    delay = self._config.transcription_error_delay
        except MicUnavailable as exc:
            log.error("event=mic_unavailable error=%s", exc)
            self.error_message = exc.user_message
            self._emit("error", message=exc.user_message, fatal=True)
            await self.end_session(reason="mic_unavailable")
        except InvalidTransition:
            log.exception("event=invalid_transition")
            await self.end_session(reason="internal_error")

    async def _run_turn(self, session_id: int) -> float:
        """One listen → transcribe → reply → speak cycle.  Returns the next pause."""
        self._turn_id += 1
        turn_id = self._turn_id

        # previous reply must be silent before the mic opens
        self._synthesizer.stop()
        self._set_state(ControllerState.LISTENING)
        try:
            recording = await self._capture.record()
        except EmptyRecording as exc:
            return self._recover("empty_recording", self._config.empty_recording_delay, exc)
        if not self._is_current(session_id, turn_id):
            return 0.0

        self._set_state(ControllerState.PROCESSING)
        try:
            transcript = await self._transcriber.transcribe(recording)
        except EmptyTranscript as exc:
            return self._recover("empty_transcript", self._config.empty_transcript_delay, exc)
        except TranscriptionError as exc:
            return self._recover(type(exc).__name__, self._config.transcription_error_delay, exc)
        if not self._is_current(session_id, turn_id):
            return 0.0

        prior = self.history.turns
        self._append(Role.USER, transcript)
        reply = await self._generator.generate(transcript, prior)
        if not self._is_current(session_id, turn_id):
            return 0.0

        self._append(Role.ASSISTANT, reply)
        return await self._speak(reply, session_id, turn_id)

    def _recover(self, reason: str, delay: float, exc: Exception) -> float:
        log.info(
            "event=recover reason=%s turn_id=%d delay_sec=%.2f detail=%s",
            reason, self._turn_id, delay, exc,
        )
        return delay

    async def _speak(self, text: str, session_id: int, turn_id: int) -> float:
        audio = await self._synthesizer.synthesize(text)
        if not self._is_current(session_id, turn_id):
            return 0.0

        if audio is not None:
            self._set_state(ControllerState.SPEAKING)
            self._emit("speech", mode="audio", duration_sec=audio.duration_sec)
            try:
                await self._synthesizer.play(audio)
            except PlaybackError as exc:
                return self._recover("playback_error", self._config.playback_error_delay, exc)
            return self._config.after_playback_delay

        self._set_state(ControllerState.SPEAKING)
        self._emit("speech", mode="on_device")
        if not await self._synthesizer.speak_on_device(text):
            log.info("event=text_only_reply turn_id=%d", turn_id)
            self._emit("speech", mode="text_only")
        return self._config.after_on_device_delay
