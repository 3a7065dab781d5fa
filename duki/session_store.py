from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from redis import Redis

from .models import SessionTurn

logger = logging.getLogger("duki.sessions")


class SessionStore(Protocol):
    """Short-term conversation history keyed by session id."""

    def append(self, session_id: str, turn: SessionTurn) -> None: ...

    def read_recent(self, session_id: str, k: int) -> List[SessionTurn]: ...

    def read_all(self, session_id: str) -> List[SessionTurn]: ...

    def clear(self, session_id: str) -> None: ...


class JsonSnapshotFile:
    """JSON file replaced atomically; an older snapshot never replaces a newer one."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._commit_lock = threading.Lock()
        self._committed_version = 0

    def write(self, text: str, version: int) -> bool:
        """Purpose: Write one serialized snapshot and commit it if it is the newest.
        Inputs/Outputs: Inputs are the JSON text and the version it was taken at;
            returns False when a newer version was already committed.
        Side Effects / State: Writes a unique temp file beside the target, then renames it.
        Dependencies: tempfile.NamedTemporaryFile and os.replace.
        Failure Modes: IO errors propagate after the temp file is removed.
        If Removed: A slow older write could roll the file back past a newer one.
        Testing Notes: Write version 2 then version 1 and expect version 2 on disk.
        """
        # Only the version check and the rename are serialized.
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            tmp_name = handle.name
            try:
                handle.write(text)
            except OSError:
                handle.close()
                os.unlink(tmp_name)
                raise
        committed = False
        try:
            with self._commit_lock:
                if version > self._committed_version:
                    os.replace(tmp_name, self._path)
                    self._committed_version = version
                    committed = True
        finally:
            if not committed and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        return committed


class FileSessionStore:
    """Session history cached in memory and mirrored to a JSON file."""

    def __init__(
        self,
        path: Optional[Path] = None,
        ttl_sec: Optional[int] = None,
        max_sessions: Optional[int] = None,
    ) -> None:
        """Purpose: Initialize the session store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional file path, a TTL, and a max_sessions cap.
        Side Effects / State: Loads and caches sessions in memory.
        Dependencies: Calls _load; relies on the SessionTurn model.
        Failure Modes: JSON decode errors leave an empty cache.
        If Removed: History is lost between requests and follow-ups lose context.
        Testing Notes: Verify load on startup populates caches and respects max_sessions.
        """
        # Keep configuration and preload persisted sessions if present.
        self._path = path
        self._file = JsonSnapshotFile(path) if path else None
        self._ttl_sec = ttl_sec
        self._max_sessions = max_sessions
        self._lock = threading.Lock()
        self._version = 0
        self._sessions: Dict[str, List[SessionTurn]] = {}
        self._expires_at: Dict[str, float] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load persisted session data from disk into memory.
        Inputs/Outputs: Reads from self._path; no return value.
        Side Effects / State: Populates _sessions and _expires_at.
        Dependencies: Uses json.loads and pydantic validation.
        Failure Modes: Missing file or JSONDecodeError results in an empty cache.
        If Removed: Previously stored sessions are never restored on startup.
        Testing Notes: Corrupt JSON should not crash; valid JSON should hydrate caches.
        """
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("session file unreadable path=%s", self._path)
            return
        sessions = data.get("sessions", {})
        expires = data.get("expires_at", {})
        for session_id, turns in sessions.items():
            self._sessions[session_id] = [SessionTurn(**turn) for turn in turns]
        if isinstance(expires, dict):
            self._expires_at = {
                session_id: float(ts) for session_id, ts in expires.items() if isinstance(ts, (int, float))
            }
        if self._drop_expired() | self._prune_sessions():
            self._persist(self._snapshot())

    def _snapshot(self) -> Optional[Tuple[str, int]]:
        """Purpose: Serialize the cache and stamp it with the next version.
        Inputs/Outputs: No inputs; returns (json_text, version), or None without a file.
        Side Effects / State: Bumps _version; callers hold the lock.
        Dependencies: Uses json.dumps and the SessionTurn model.
        Failure Modes: None expected for model-validated turns.
        If Removed: The file cannot be written outside the lock.
        Testing Notes: Two appends produce versions 1 and 2.
        """
        if self._file is None:
            return None
        self._version += 1
        payload = {
            "sessions": {
                session_id: [turn.model_dump() for turn in turns]
                for session_id, turns in self._sessions.items()
            },
            "expires_at": self._expires_at,
        }
        return json.dumps(payload, ensure_ascii=False, indent=2), self._version

    def _persist(self, snapshot: Optional[Tuple[str, int]]) -> None:
        # Runs outside the lock; a stale snapshot is discarded by the file.
        if self._file is None or snapshot is None:
            return
        text, version = snapshot
        self._file.write(text, version)

    def append(self, session_id: str, turn: SessionTurn) -> None:
        """Purpose: Append one turn and refresh the session TTL.
        Inputs/Outputs: Inputs are session_id and a SessionTurn; no return value.
        Side Effects / State: Mutates the cache under the lock, then writes the file.
        Dependencies: Uses _drop_expired, _prune_sessions, _snapshot, _persist.
        Failure Modes: Persist can raise IO errors; missing session is created implicitly.
        If Removed: Chat history is never recorded.
        Testing Notes: Append two turns and verify order and expiry refresh.
        """
        with self._lock:
            self._drop_expired()
            self._sessions.setdefault(session_id, []).append(turn)
            if self._ttl_sec:
                self._expires_at[session_id] = time.time() + self._ttl_sec
            else:
                self._expires_at[session_id] = 0.0
            self._prune_sessions()
            snapshot = self._snapshot()
        self._persist(snapshot)

    def read_recent(self, session_id: str, k: int) -> List[SessionTurn]:
        # Bounded suffix of the session, oldest first.
        if k <= 0:
            return []
        return self.read_all(session_id)[-k:]

    def read_all(self, session_id: str) -> List[SessionTurn]:
        with self._lock:
            if self._is_expired(session_id):
                return []
            return list(self._sessions.get(session_id, []))

    def clear(self, session_id: str) -> None:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
            self._expires_at.pop(session_id, None)
            snapshot = self._snapshot() if removed else None
        self._persist(snapshot)

    def _is_expired(self, session_id: str) -> bool:
        expires = self._expires_at.get(session_id, 0.0)
        return bool(expires) and expires < time.time()

    def _drop_expired(self) -> bool:
        expired = [session_id for session_id in self._sessions if self._is_expired(session_id)]
        for session_id in expired:
            self._sessions.pop(session_id, None)
            self._expires_at.pop(session_id, None)
        return bool(expired)

    def _prune_sessions(self) -> bool:
        """Purpose: Enforce max_sessions by dropping the least recently active sessions.
        Inputs/Outputs: No inputs; returns True if any sessions were removed.
        Side Effects / State: Mutates _sessions and _expires_at.
        Dependencies: Uses the timestamp of each session's last turn.
        Failure Modes: None; no-op when max_sessions is unset or not exceeded.
        If Removed: The session file grows without bound.
        Testing Notes: Set a low max_sessions and verify pruning order.
        """
        if not self._max_sessions or self._max_sessions <= 0:
            return False
        if len(self._sessions) <= self._max_sessions:
            return False

        def last_seen(session_id: str) -> float:
            turns = self._sessions.get(session_id) or []
            return turns[-1].timestamp if turns else 0.0

        ordered = sorted(self._sessions.keys(), key=last_seen, reverse=True)
        removed = ordered[self._max_sessions :]
        for session_id in removed:
            self._sessions.pop(session_id, None)
            self._expires_at.pop(session_id, None)
        return bool(removed)


class RedisSessionStore:
    """Session history as one Redis list per session, expired by Redis itself."""

    def __init__(self, client: Redis, ttl_sec: int, prefix: str = "duki:session:") -> None:
        self._client = client
        self._ttl_sec = ttl_sec
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, ttl_sec: int) -> "RedisSessionStore":
        return cls(Redis.from_url(url, decode_responses=True), ttl_sec=ttl_sec)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    def append(self, session_id: str, turn: SessionTurn) -> None:
        # RPUSH + EXPIRE in one round trip; TTL refreshes on every append.
        key = self._key(session_id)
        pipe = self._client.pipeline()
        pipe.rpush(key, json.dumps(turn.model_dump(), ensure_ascii=False))
        if self._ttl_sec:
            pipe.expire(key, self._ttl_sec)
        pipe.execute()

    def read_recent(self, session_id: str, k: int) -> List[SessionTurn]:
        if k <= 0:
            return []
        return self._decode(self._client.lrange(self._key(session_id), -k, -1))

    def read_all(self, session_id: str) -> List[SessionTurn]:
        return self._decode(self._client.lrange(self._key(session_id), 0, -1))

    def clear(self, session_id: str) -> None:
        self._client.delete(self._key(session_id))

    @staticmethod
    def _decode(raw_items: List[str]) -> List[SessionTurn]:
        turns: List[SessionTurn] = []
        for raw in raw_items or []:
            try:
                turns.append(SessionTurn(**json.loads(raw)))
            except (TypeError, ValueError):
                logger.warning("skipping undecodable session turn")
        return turns
