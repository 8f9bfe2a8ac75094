"""Audit trail for agent sessions.

Every claim, release, role change and guard decision is recorded here,
one JSON document per session:

    {root}/_system/audit/{YYYY}/{YYYY-MM-DD}-{session_id}.json

A document is rewritten in full on every event, atomically, so readers
never see a half-written file. The first event for a session creates
the document and stamps it with the git HEAD at that moment and,
optionally, a snapshot of the tracked tree.

The audit trail answers:
- Which agent did this session act as, and for which human?
- What did it read, write, edit or delete?
- Which commands ran, and what was blocked and why?
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from agentguard.snapshot import ProjectSnapshot, git_head

logger = logging.getLogger(__name__)

MAX_SESSION_FILES = 10_000

_YEAR_FOLDER = re.compile(r"^\d{4}$")


class AuditEventType(str, Enum):
    """Types of auditable events."""

    # Identity lifecycle
    CLAIM = "claim"
    RELEASE = "release"
    ROLE = "role"

    # File operations
    READ = "read"
    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"

    # Execution
    BASH = "bash"
    COMMIT = "commit"

    # Guard decisions
    BLOCKED = "blocked"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str | None) -> datetime:
    if not value:
        return _utcnow()
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# Event field name -> JSON key
_EVENT_KEYS = {
    "path": "path",
    "tool": "tool",
    "command": "cmd",
    "exit_code": "exit",
    "role": "role",
    "task": "task",
    "commit_hash": "hash",
    "commit_message": "msg",
    "agent_name": "agent",
    "reason": "reason",
}


@dataclass
class AuditEvent:
    """A single audit event."""

    event_type: AuditEventType
    timestamp: datetime = field(default_factory=_utcnow)

    path: str | None = None
    tool: str | None = None
    command: str | None = None
    exit_code: int | None = None
    role: str | None = None
    task: str | None = None
    commit_hash: str | None = None
    commit_message: str | None = None
    agent_name: str | None = None
    reason: str | None = None  # why it was blocked

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage. Unset fields are omitted."""
        data: dict[str, Any] = {
            "ts": self.timestamp.isoformat(),
            "event": self.event_type.value,
        }
        for attr, key in _EVENT_KEYS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditEvent":
        return cls(
            event_type=AuditEventType(data["event"]),
            timestamp=_parse_timestamp(data.get("ts")),
            **{attr: data.get(key) for attr, key in _EVENT_KEYS.items()},
        )

    def summary(self) -> str:
        """One-line description used by listings."""
        t = self.event_type
        if t in (AuditEventType.READ, AuditEventType.WRITE, AuditEventType.EDIT, AuditEventType.DELETE):
            return self.path or ""
        if t == AuditEventType.BASH:
            return _truncate(self.command or "")
        if t == AuditEventType.ROLE:
            return f"{self.role}" + (f" on {self.task}" if self.task else "")
        if t in (AuditEventType.CLAIM, AuditEventType.RELEASE):
            return self.agent_name or ""
        if t == AuditEventType.COMMIT:
            return f"{self.commit_hash} {_truncate(self.commit_message or '')}"
        if t == AuditEventType.BLOCKED:
            return f"{self.path or self.command} - {self.reason}"
        return ""


def _truncate(text: str, limit: int = 60) -> str:
    text = text.replace("\n", " ")
    return text if len(text) <= limit else text[: limit - 3] + "..."


@dataclass
class AuditSession:
    """All events recorded for one session id."""

    session_id: str
    started: datetime = field(default_factory=_utcnow)
    agent_name: str | None = None
    human: str | None = None
    git_head: str | None = None
    events: list[AuditEvent] = field(default_factory=list)
    snapshot: ProjectSnapshot | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"session": self.session_id}
        if self.agent_name is not None:
            data["agent"] = self.agent_name
        if self.human is not None:
            data["human"] = self.human
        data["started"] = self.started.isoformat()
        if self.git_head is not None:
            data["git_head"] = self.git_head
        data["events"] = [e.to_dict() for e in self.events]
        if self.snapshot is not None:
            data["snapshot"] = self.snapshot.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AuditSession":
        snapshot = data.get("snapshot")
        return cls(
            session_id=data["session"],
            started=_parse_timestamp(data.get("started")),
            agent_name=data.get("agent"),
            human=data.get("human"),
            git_head=data.get("git_head"),
            events=[AuditEvent.from_dict(e) for e in data.get("events", [])],
            snapshot=ProjectSnapshot.from_dict(snapshot) if snapshot else None,
        )

    @property
    def file_name(self) -> str:
        return f"{self.started.strftime('%Y-%m-%d')}-{self.session_id}.json"


class AuditLog:
    """Per-session audit documents on disk.

    Sessions touched during this process are cached, so a guard
    invocation that logs several events reads the file at most once.
    """

    def __init__(self, audit_dir: Path, project_root: Path | None = None):
        self.audit_dir = audit_dir
        self.project_root = project_root or audit_dir
        self._cache: dict[str, AuditSession] = {}

    def ensure_audit_dir(self) -> None:
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def log_event(
        self,
        session_id: str,
        event: AuditEvent,
        agent_name: str | None = None,
        human: str | None = None,
        snapshot: ProjectSnapshot | None = None,
    ) -> None:
        """Append an event to a session and persist it.

        Args:
            session_id: Session the event belongs to. Empty ids are ignored.
            event: The event to append.
            agent_name: Recorded on the session if not already set.
            human: Recorded on the session if not already set.
            snapshot: Attached only when the session document is new.

        Raises:
            OSError: If the session document cannot be written.
        """
        if not session_id:
            return

        session, created = self._get_or_create(session_id, agent_name, human)

        if agent_name and not session.agent_name:
            session.agent_name = agent_name
        if human and not session.human:
            session.human = human
        if created and snapshot is not None:
            session.snapshot = snapshot

        session.events.append(event)
        self._write(session)

    def get_session(self, session_id: str) -> AuditSession | None:
        """Find a session by id, or None."""
        if not session_id:
            return None
        if session_id in self._cache:
            return self._cache[session_id]
        if not self.audit_dir.is_dir():
            return None

        for year_dir in sorted(self.audit_dir.iterdir()):
            if not year_dir.is_dir():
                continue
            for candidate in year_dir.glob(f"*-{session_id}.json"):
                session = self._load_file(candidate)
                if session is not None and session.session_id == session_id:
                    return session
        return None

    def list_session_files(self, year: str | None = None) -> list[Path]:
        """Session files, newest first. ``year`` restricts to one year folder."""
        if not self.audit_dir.is_dir():
            return []

        if year:
            year_path = self.audit_dir / year.lstrip("/")
            year_dirs = [year_path] if year_path.is_dir() else []
        else:
            year_dirs = [
                d for d in self.audit_dir.iterdir() if d.is_dir() and _YEAR_FOLDER.match(d.name)
            ]

        files = [f for d in year_dirs for f in d.glob("*.json")]
        return sorted(files, key=lambda f: f.name, reverse=True)

    def load_sessions(self, year: str | None = None) -> tuple[list[AuditSession], bool]:
        """Load sessions, newest first.

        Returns:
            (sessions, limit_reached) where limit_reached is True when the
            number of files hit MAX_SESSION_FILES.
        """
        files = self.list_session_files(year)
        limit_reached = len(files) >= MAX_SESSION_FILES

        sessions = []
        for path in files[:MAX_SESSION_FILES]:
            session = self._load_file(path)
            if session is not None:
                sessions.append(session)
        return sessions, limit_reached

    def _get_or_create(
        self, session_id: str, agent_name: str | None, human: str | None
    ) -> tuple[AuditSession, bool]:
        existing = self.get_session(session_id)
        if existing is not None:
            self._cache[session_id] = existing
            return existing, False

        session = AuditSession(
            session_id=session_id,
            agent_name=agent_name,
            human=human,
            git_head=git_head(self.project_root),
        )
        self._cache[session_id] = session
        return session, True

    def _write(self, session: AuditSession) -> None:
        year_dir = self.audit_dir / str(session.started.year)
        year_dir.mkdir(parents=True, exist_ok=True)

        path = year_dir / session.file_name
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError:
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.debug(f"Could not remove {tmp_path}: {cleanup_error}")
            raise

    @staticmethod
    def _load_file(path: Path) -> AuditSession | None:
        try:
            return AuditSession.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Skipping unreadable audit file {path}: {e}")
            return None
