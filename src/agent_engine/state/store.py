"""Session persistence: JSON metadata plus an append-only JSONL message log."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from agent_engine.core.errors import PersistenceError
from agent_engine.core.models import Message, Role, Session

_log = logging.getLogger(__name__)

DEFAULT_SESSIONS_DIR = Path.home() / ".agent-engine" / "sessions"
DEFAULT_SESSION_CAP = 50
_MAX_TITLE_LEN = 80
_UNTITLED = "Untitled Session"


def generate_title(first_message: str) -> str:
    """Session title from the first user message, truncated to 80 chars."""
    first_line = first_message.strip().splitlines()[0] if first_message.strip() else ""
    return first_line[:_MAX_TITLE_LEN] if first_line else _UNTITLED


def _apply_title(session: Session, message: Message) -> None:
    if session.title == _UNTITLED and message.role is Role.USER and not message.synthetic:
        session.title = generate_title(message.content)


@runtime_checkable
class SessionStore(Protocol):
    """Persistence capability consumed by the turn coordinator.

    Methods are synchronous; the coordinator calls them from a worker thread.
    """

    def append_message(self, session: Session, message: Message) -> None:
        ...

    def save_session(self, session: Session) -> None:
        ...

    def load_session(self, session_id: str) -> Session | None:
        ...


class InMemorySessionStore:
    """Keeps serialized sessions in a dict. For tests and throwaway sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict] = {}
        self._lock = threading.Lock()

    def append_message(self, session: Session, message: Message) -> None:
        _apply_title(session, message)
        with self._lock:
            record = self._sessions.setdefault(session.id, {**session.metadata(), "messages": []})
            record["messages"].append(message.to_dict())
            record.update({k: v for k, v in session.metadata().items()})

    def save_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = session.to_dict()

    def load_session(self, session_id: str) -> Session | None:
        with self._lock:
            data = self._sessions.get(session_id)
            if data is None:
                return None
            return Session.from_dict(json.loads(json.dumps(data)))

    def list(self) -> list[dict]:
        with self._lock:
            sessions = [{k: v for k, v in data.items() if k != "messages"} for data in self._sessions.values()]
        sessions.sort(key=lambda s: s.get("updated_at", ""), reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


class JsonlSessionStore:
    """File-backed store.

    Each session is two files in ``sessions_dir``: ``<id>.json`` holds the
    metadata (rewritten atomically) and ``<id>.jsonl`` holds one message per
    line, appended as the conversation grows. On load the newest record of a
    message id wins.
    """

    def __init__(self, sessions_dir: Path | None = None, session_cap: int = DEFAULT_SESSION_CAP) -> None:
        """Initialize the store.

        Args:
            sessions_dir: Directory to store sessions. Defaults to ~/.agent-engine/sessions/
            session_cap: Maximum number of sessions to keep. Defaults to 50.
        """
        self._sessions_dir = Path(sessions_dir) if sessions_dir else DEFAULT_SESSIONS_DIR
        self._session_cap = session_cap
        self._lock = threading.Lock()
        self._ensure_sessions_dir()

    @property
    def sessions_dir(self) -> Path:
        return self._sessions_dir

    def _ensure_sessions_dir(self) -> None:
        self._sessions_dir.mkdir(parents=True, exist_ok=True)

    def _atomic_write(self, path: Path, data: str) -> None:
        """Write to .tmp file, then rename. Safe on crash/Ctrl+C."""
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text(data, encoding="utf-8")
        os.replace(str(tmp_path), str(path))

    def _meta_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id}.json"

    def _log_path(self, session_id: str) -> Path:
        return self._sessions_dir / f"{session_id}.jsonl"

    def _write_meta(self, session: Session) -> None:
        self._atomic_write(self._meta_path(session.id), json.dumps(session.metadata(), indent=2, ensure_ascii=False))

    def create(self, model: str = "", title: str | None = None) -> Session:
        """Create and persist an empty session, pruning the oldest beyond the cap."""
        session = Session(model=model, title=title or _UNTITLED)
        with self._lock:
            self._ensure_sessions_dir()
            self._write_meta(session)
            self._log_path(session.id).touch()
        self._prune_old_sessions()
        return session

    def append_message(self, session: Session, message: Message) -> None:
        """Append one message to the session log and refresh its metadata.

        Raises:
            PersistenceError: If the files cannot be written.
        """
        _apply_title(session, message)
        line = json.dumps(message.to_dict(), ensure_ascii=False)
        try:
            with self._lock:
                self._ensure_sessions_dir()
                with self._log_path(session.id).open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
                self._write_meta(session)
        except OSError as e:
            raise PersistenceError(f"Cannot append to session {session.id}: {e}") from e

    def save_session(self, session: Session) -> None:
        """Rewrite the full message log and metadata.

        Raises:
            PersistenceError: If the files cannot be written.
        """
        lines = "".join(json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in session.messages)
        try:
            with self._lock:
                self._ensure_sessions_dir()
                self._atomic_write(self._log_path(session.id), lines)
                self._write_meta(session)
        except OSError as e:
            raise PersistenceError(f"Cannot save session {session.id}: {e}") from e

    def load_session(self, session_id: str) -> Session | None:
        """Load a session from disk.

        Returns:
            The session, or None if it does not exist or its metadata is unreadable.
        """
        meta_path = self._meta_path(session_id)
        if not meta_path.exists():
            return None

        try:
            meta = json.loads(meta_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            _log.warning("Cannot read session %s: %s", session_id, e)
            return None

        records: dict[str, dict] = {}
        log_path = self._log_path(session_id)
        if log_path.exists():
            with log_path.open(encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        # A crash can leave a partial last line
                        _log.warning("Skipping corrupt line %d in %s", lineno, log_path)
                        continue
                    records[record.get("id")] = record

        meta["messages"] = list(records.values())
        return Session.from_dict(meta)

    def load_latest(self) -> Session | None:
        sessions = self.list()
        if not sessions:
            return None
        return self.load_session(sessions[0]["id"])

    def list(self) -> list[dict]:
        """List saved session metadata, most recent first."""
        sessions = []
        for meta_file in self._sessions_dir.glob("*.json"):
            try:
                data = json.loads(meta_file.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as e:
                _log.debug("Skipping session %s: %s", meta_file, e)
                continue
            sessions.append({
                "id": data.get("id", meta_file.stem),
                "title": data.get("title", "Untitled"),
                "created_at": data.get("created_at", ""),
                "updated_at": data.get("updated_at", ""),
                "model": data.get("model", "unknown"),
                "token_estimate": data.get("token_estimate", 0),
                "message_count": data.get("message_count", 0),
            })
        sessions.sort(key=lambda s: s.get("updated_at", ""), reverse=True)
        return sessions

    def delete(self, session_id: str) -> bool:
        """Delete a session's files. Returns False if it did not exist."""
        found = False
        for path in (self._meta_path(session_id), self._log_path(session_id)):
            if path.exists():
                path.unlink()
                found = True
        return found

    def _prune_old_sessions(self) -> None:
        sessions = self.list()
        if len(sessions) <= self._session_cap:
            return
        for session in sessions[self._session_cap:]:
            _log.debug("Pruning old session %s", session["id"])
            self.delete(session["id"])
