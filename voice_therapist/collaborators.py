"""External collaborators: where sessions are saved and where limits come from.

Both are small file-backed implementations; swap in a database-backed class
with the same coroutine signatures for a hosted deployment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import Optional, Protocol

from voice_therapist.models import SessionRecord, SubscriptionLimits

log = logging.getLogger("voice_therapist.collaborators")


class SessionStore(Protocol):
    async def save_session(self, record: SessionRecord) -> str: ...


class SubscriptionProvider(Protocol):
    async def get_limits(self, user_id: str) -> SubscriptionLimits: ...

    async def record_session(self, user_id: str) -> None:
        """Count one finished, saved session against the user's allowance."""


class JsonSessionStore:
    """Appends one JSON object per finished session to a .jsonl file."""

    def __init__(self, path: str | Path):
        self._path = Path(path)

    async def save_session(self, record: SessionRecord) -> str:
        record_id = uuid.uuid4().hex
        line = json.dumps({"id": record_id, **record.model_dump(mode="json")})
        await asyncio.to_thread(self._append, line)
        log.info("event=session_saved id=%s path=%s", record_id, self._path)
        return record_id

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line + "\n")

    def sessions_for(self, user_id: str) -> int:
        if not self._path.exists():
            return 0
        count = 0
        with self._path.open(encoding="utf-8") as fh:
            for line in fh:
                if line.strip() and json.loads(line).get("user_id") == user_id:
                    count += 1
        return count


class StaticSubscriptionProvider:
    """Same limits for everyone; usage is counted from the session store."""

    def __init__(
        self,
        sessions_limit: int,
        session_duration_limit: float,
        store: Optional[JsonSessionStore] = None,
    ):
        self._sessions_limit = sessions_limit
        self._duration = session_duration_limit
        self._store = store

    async def get_limits(self, user_id: str) -> SubscriptionLimits:
        used = 0
        if self._store is not None:
            used = await asyncio.to_thread(self._store.sessions_for, user_id)
        return SubscriptionLimits(
            sessions_limit=self._sessions_limit,
            sessions_used=used,
            session_duration_limit=self._duration,
        )

    async def record_session(self, user_id: str) -> None:
        # usage is recounted from the store on every get_limits
        return None


class JsonSubscriptionProvider:
    """Per-user limits from a JSON object keyed by user id.

    Unknown users get `default`.
    """

    def __init__(self, path: str | Path, default: SubscriptionLimits):
        self._path = Path(path)
        self._default = default
        self._lock = asyncio.Lock()

    async def get_limits(self, user_id: str) -> SubscriptionLimits:
        data = await asyncio.to_thread(self._read)
        entry = data.get(user_id)
        if entry is None:
            log.debug("event=subscription_default user_id=%s", user_id)
            return self._default
        return SubscriptionLimits.model_validate(entry)

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        return json.loads(self._path.read_text(encoding="utf-8"))

    async def record_session(self, user_id: str) -> None:
        """Increment `sessions_used` for `user_id`, creating an entry from `default`."""
        async with self._lock:
            used = await asyncio.to_thread(self._increment, user_id)
        log.info("event=subscription_usage user_id=%s sessions_used=%d", user_id, used)

    def _increment(self, user_id: str) -> int:
        data = self._read()
        entry = data.get(user_id) or self._default.model_dump(mode="json")
        entry["sessions_used"] = int(entry.get("sessions_used", 0)) + 1
        data[user_id] = entry
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return entry["sessions_used"]
