"""Session stores honouring optimistic versioning.

Every store implements the same contract: ``save(state, expected_version)``
succeeds only when ``expected_version`` is the stored version, and returns the
state with ``version`` incremented. A stale save raises SessionConflictError
and nothing is written.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

from flowforge.core.exceptions import SessionConflictError, SessionNotFoundError
from flowforge.session.state import SessionState

logger = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Contract for loading and persisting session state."""

    def create_session(self, prompt: str) -> SessionState:
        """Create and persist an empty session at the discovery phase."""
        ...

    def load(self, session_id: str) -> SessionState:
        """Load a session.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        ...

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        """Persist ``state`` if ``expected_version`` is current.

        Returns:
            The stored state with its new version

        Raises:
            SessionConflictError: If the stored version moved on
        """
        ...


def _stamp(state: SessionState, version: int) -> SessionState:
    return state.model_copy(update={"version": version, "updated_at": datetime.now(timezone.utc).isoformat()})


class InMemorySessionStore:
    """Process-local store. Keeps serialized copies so callers never share objects."""

    def __init__(self) -> None:
        self._sessions: dict[str, str] = {}
        self._lock = threading.Lock()

    def create_session(self, prompt: str) -> SessionState:
        state = SessionState(id=uuid.uuid4().hex, user_prompt=prompt)
        with self._lock:
            self._sessions[state.id] = state.model_dump_json()
        logger.debug(f"Created session {state.id}", extra={"session_id": state.id})
        return state

    def load(self, session_id: str) -> SessionState:
        with self._lock:
            raw = self._sessions.get(session_id)
        if raw is None:
            raise SessionNotFoundError(session_id)
        return SessionState.model_validate_json(raw)

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        with self._lock:
            raw = self._sessions.get(state.id)
            if raw is None:
                raise SessionNotFoundError(state.id)
            current = SessionState.model_validate_json(raw).version
            if current != expected_version:
                raise SessionConflictError(state.id, expected_version, current)
            stored = _stamp(state, current + 1)
            self._sessions[state.id] = stored.model_dump_json()
        return stored

    def list_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)


class FileSessionStore:
    """One JSON file per session, written atomically.

    Sessions live in ``~/.flowforge/sessions/<id>.json`` by default.
    """

    def __init__(self, sessions_dir: Optional[Path] = None):
        self.sessions_dir = Path(sessions_dir or "~/.flowforge/sessions").expanduser()
        self._lock = threading.Lock()

    def _path(self, session_id: str) -> Path:
        if not session_id or "/" in session_id or session_id.startswith("."):
            raise SessionNotFoundError(session_id)
        return self.sessions_dir / f"{session_id}.json"

    def create_session(self, prompt: str) -> SessionState:
        state = SessionState(id=uuid.uuid4().hex, user_prompt=prompt)
        with self._lock:
            self._write(state)
        logger.debug(f"Created session {state.id} in {self.sessions_dir}", extra={"session_id": state.id})
        return state

    def load(self, session_id: str) -> SessionState:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFoundError(session_id)
        with open(path, encoding="utf-8") as f:
            return SessionState.model_validate(json.load(f))

    def save(self, state: SessionState, expected_version: int) -> SessionState:
        with self._lock:
            current = self.load(state.id).version
            if current != expected_version:
                raise SessionConflictError(state.id, expected_version, current)
            stored = _stamp(state, current + 1)
            self._write(stored)
        return stored

    def list_sessions(self) -> list[str]:
        if not self.sessions_dir.exists():
            return []
        return sorted(p.stem for p in self.sessions_dir.glob("*.json"))

    def _write(self, state: SessionState) -> None:
        """Atomic write: temp file in the same directory, then replace."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self.sessions_dir, prefix=".session.", suffix=".tmp")
        try:
            with open(temp_fd, "w", encoding="utf-8") as f:
                f.write(state.model_dump_json(indent=2))
            os.replace(temp_path, self._path(state.id))
        except Exception:
            Path(temp_path).unlink(missing_ok=True)
            raise
