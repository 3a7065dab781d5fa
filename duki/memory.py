from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .models import SessionTurn, UserFact
from .session_store import JsonSnapshotFile, SessionStore

logger = logging.getLogger("duki.memory")

SESSION_HEADERS = ("x-session-id", "x-sessionid", "x-client-session")
SESSION_COOKIES = ("sid", "dukejia_sid", "hca_sid")
USER_HEADERS = ("x-user-id",)

FACT_RE = re.compile(
    r"^(?:that\s+)?(?:my\s+)?(?P<key>[a-z][a-z0-9 _\-]{0,40}?)\s*(?:\bis\b|\bare\b|=|:)\s*(?P<value>.+)$",
    re.IGNORECASE,
)


class FactStore:
    """Persisted, append-only personalization facts keyed by user id."""

    def __init__(self, path: Path) -> None:
        """Purpose: Initialize the fact store and load prior facts from disk.
        Inputs/Outputs: Input is a Path; no return value.
        Side Effects / State: Loads facts into an in-memory dict.
        Dependencies: Calls _load; writes through JsonSnapshotFile.
        Failure Modes: JSON decode errors are logged, leaving an empty store.
        If Removed: "remember ..." commands have nowhere to write.
        Testing Notes: Ensure an appended fact is persisted and reloaded.
        """
        # Keep the backing file path and hydrate cached facts.
        self._path = path
        self._file = JsonSnapshotFile(path)
        self._lock = threading.Lock()
        self._version = 0
        self._facts: Dict[str, List[UserFact]] = {}
        self._load()

    def _load(self) -> None:
        """Purpose: Load the fact map from the JSON file if it exists.
        Inputs/Outputs: Reads self._path; no return value.
        Side Effects / State: Populates self._facts.
        Dependencies: json.loads and Path.read_text.
        Failure Modes: Missing file or JSONDecodeError results in an empty cache.
        If Removed: Facts do not survive restarts.
        Testing Notes: Validate behavior with missing and malformed files.
        """
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("fact file unreadable path=%s", self._path)
            return
        users = data.get("users", {})
        if not isinstance(users, dict):
            return
        for user_id, facts in users.items():
            if isinstance(facts, list):
                self._facts[str(user_id)] = [UserFact(**fact) for fact in facts if isinstance(fact, dict)]

    def _snapshot(self) -> Tuple[str, int]:
        # Callers hold the lock; the write itself happens after release.
        self._version += 1
        payload = {
            "users": {user_id: [fact.model_dump() for fact in facts] for user_id, facts in self._facts.items()}
        }
        return json.dumps(payload, ensure_ascii=False, indent=2), self._version

    def get_facts(self, user_id: str) -> List[UserFact]:
        with self._lock:
            return list(self._facts.get(user_id, []))

    def append_fact(self, user_id: str, fact: UserFact) -> None:
        """Purpose: Append one fact; earlier facts under the same key are kept.
        Inputs/Outputs: Inputs are user_id and a UserFact; no return value.
        Side Effects / State: Mutates the map under the lock, then writes the file.
        Dependencies: Uses _snapshot and JsonSnapshotFile.write.
        Failure Modes: IO errors on write propagate after the fact is withdrawn from memory.
        If Removed: Personalization never accumulates.
        Testing Notes: Append the same key twice and expect two facts.
        """
        with self._lock:
            self._facts.setdefault(user_id, []).append(fact)
            text, version = self._snapshot()
        try:
            self._file.write(text, version)
        except OSError:
            self._withdraw(user_id, fact)
            raise

    def _withdraw(self, user_id: str, fact: UserFact) -> None:
        # Removes this exact object; an equal fact appended separately stays.
        with self._lock:
            facts = self._facts.get(user_id, [])
            for position, item in enumerate(facts):
                if item is fact:
                    del facts[position]
                    break
            if not facts:
                self._facts.pop(user_id, None)

    def reset_facts(self, user_id: str) -> int:
        with self._lock:
            removed = len(self._facts.pop(user_id, []))
            snapshot = self._snapshot() if removed else None
        if snapshot is not None:
            self._file.write(*snapshot)
        return removed


def parse_fact_statement(statement: str) -> Tuple[str, str]:
    """Purpose: Split a "remember ..." payload into a key and a value.
    Inputs/Outputs: Input is the text after "remember"; output is (key, value).
    Side Effects / State: None.
    Dependencies: Uses FACT_RE.
    Failure Modes: Statements without "is/are/=/:" are stored under the key "note".
    If Removed: Facts cannot be listed or truncated by key.
    Testing Notes: "my city is Chennai" -> ("city", "Chennai").
    """
    text = statement.strip().rstrip(".!")
    match = FACT_RE.match(text)
    if match:
        key = re.sub(r"[\s\-]+", "_", match.group("key").strip().lower())
        value = match.group("value").strip()
        if key and value:
            return key, value
    return "note", text


def resolve_session_id(
    body_session_id: Optional[str],
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    client_host: str = "",
    user_agent: str = "",
) -> str:
    """Purpose: Derive the session key for history reads and writes.
    Inputs/Outputs: Inputs are request-derived values; output is a non-empty id.
    Side Effects / State: None.
    Dependencies: Uses SESSION_HEADERS and SESSION_COOKIES.
    Failure Modes: The address+agent fallback is weak; clients behind one NAT with the
        same browser share history.
    If Removed: History cannot be keyed for clients that send no id.
    Testing Notes: Header wins over cookie; no id yields a stable "anon-" key.
    """
    if body_session_id and body_session_id.strip():
        return body_session_id.strip()
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in SESSION_HEADERS:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip()
    for name in SESSION_COOKIES:
        value = cookies.get(name)
        if value and value.strip():
            return value.strip()
    digest = hashlib.sha1(f"{client_host}|{user_agent}".encode("utf-8")).hexdigest()[:16]
    return f"anon-{digest}"


def resolve_user_id(body_user_id: Optional[str], headers: Mapping[str, str], session_id: str) -> str:
    if body_user_id and body_user_id.strip():
        return body_user_id.strip()
    lowered = {str(k).lower(): v for k, v in headers.items()}
    for name in USER_HEADERS:
        value = lowered.get(name)
        if value and value.strip():
            return value.strip()
    return session_id


class MemoryManager:
    """Joins short-term session history and durable user facts for the pipeline."""

    def __init__(self, sessions: Optional[SessionStore], facts: FactStore) -> None:
        self._sessions = sessions
        self._facts = facts

    @property
    def has_sessions(self) -> bool:
        return self._sessions is not None

    def recent_turns(self, session_id: str, k: int) -> List[SessionTurn]:
        # No store means stateless operation, not an error.
        if self._sessions is None:
            return []
        return self._sessions.read_recent(session_id, k)

    def all_turns(self, session_id: str) -> List[SessionTurn]:
        if self._sessions is None:
            return []
        return self._sessions.read_all(session_id)

    def record_exchange(self, session_id: str, user_text: str, assistant_text: str) -> None:
        """Purpose: Append the user turn then the assistant turn of one exchange.
        Inputs/Outputs: Inputs are the session id and both texts; no return value.
        Side Effects / State: Two appends to the session store (TTL refreshed each time).
        Dependencies: SessionStore.append.
        Failure Modes: Store errors propagate to the request boundary.
        If Removed: Follow-ups and sticky entities lose conversational context.
        Testing Notes: After one exchange the store holds exactly [user, assistant].
        """
        if self._sessions is None:
            return
        now = time.time()
        self._sessions.append(session_id, SessionTurn(timestamp=now, role="user", text=user_text))
        self._sessions.append(session_id, SessionTurn(timestamp=time.time(), role="assistant", text=assistant_text))

    def clear_session(self, session_id: str) -> None:
        if self._sessions is not None:
            self._sessions.clear(session_id)

    def facts(self, user_id: str) -> List[UserFact]:
        return self._facts.get_facts(user_id)

    def remember(self, user_id: str, statement: str, source: str = "user") -> UserFact:
        key, value = parse_fact_statement(statement)
        fact = UserFact(key=key, value=value, source=source, added_at=time.time())
        self._facts.append_fact(user_id, fact)
        logger.info("fact appended user=%s key=%s", user_id, key)
        return fact

    def forget(self, user_id: str) -> int:
        removed = self._facts.reset_facts(user_id)
        logger.info("facts reset user=%s removed=%d", user_id, removed)
        return removed

    def format_facts(self, user_id: str, limit: int) -> str:
        # Most recent N facts; when keys repeat the later line wins by convention.
        facts = self._facts.get_facts(user_id)[-limit:] if limit > 0 else []
        return "\n".join(f"- {fact.key}: {fact.value}" for fact in facts)
