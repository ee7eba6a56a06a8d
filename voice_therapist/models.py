"""
models.py — Voice Therapist · Session Data Model
================================================
Turn, SessionHistory, ControllerState, Recording and the externally owned
SubscriptionLimits.  Only the controller mutates a SessionHistory.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterator, Optional

from pydantic import BaseModel, Field


class ControllerState(Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    PROCESSING = "PROCESSING"
    SPEAKING = "SPEAKING"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    sequence: int
    timestamp: datetime = field(default_factory=utcnow)

    def as_message(self) -> dict:
        return {"role": self.role.value, "content": self.content}

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "content": self.content,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }


class SessionHistory:
    """Ordered turns of the active conversation.

    Sequence numbers are assigned here at append time, starting at 0 and
    increasing by exactly one per turn.
    """

    def __init__(self) -> None:
        self._turns: list[Turn] = []

    def append(self, role: Role, content: str) -> Turn:
        turn = Turn(role=role, content=content, sequence=len(self._turns))
        self._turns.append(turn)
        return turn

    def window(self, size: int) -> tuple[Turn, ...]:
        """Most recent ``size`` turns, oldest first."""
        if size <= 0:
            return ()
        return tuple(self._turns[-size:])

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def last(self) -> Optional[Turn]:
        return self._turns[-1] if self._turns else None

    def last_of(self, role: Role) -> Optional[Turn]:
        for turn in reversed(self._turns):
            if turn.role is role:
                return turn
        return None

    def clear(self) -> None:
        self._turns = []

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[Turn]:
        return iter(tuple(self._turns))


@dataclass(frozen=True)
class Recording:
    """A finished utterance, encoded and ready for transcription."""

    data: bytes
    content_type: str
    sample_rate: int
    duration_sec: float

    @property
    def size(self) -> int:
        return len(self.data)


class SubscriptionLimits(BaseModel):
    """Usage gate owned by the subscription collaborator.  Read-only here."""

    sessions_limit: int = Field(default=3, ge=0)
    sessions_used: int = Field(default=0, ge=0)
    session_duration_limit: float = Field(default=10.0, gt=0, description="Minutes per session")

    @property
    def exhausted(self) -> bool:
        return self.sessions_used >= self.sessions_limit

    @property
    def duration_seconds(self) -> float:
        return self.session_duration_limit * 60.0


class SessionRecord(BaseModel):
    """What the persistence collaborator receives at session end."""

    user_id: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    summary: str
    end_reason: str
    messages: list[dict]

    @classmethod
    def from_history(
        cls,
        history: SessionHistory,
        *,
        user_id: str,
        start_time: datetime,
        end_time: datetime,
        end_reason: str,
    ) -> "SessionRecord":
        last_reply = history.last_of(Role.ASSISTANT)
        summary = last_reply.content[:80] + "..." if last_reply else "Brief session"
        return cls(
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=round((end_time - start_time).total_seconds() / 60.0),
            summary=summary,
            end_reason=end_reason,
            messages=[t.to_dict() for t in history],
        )
