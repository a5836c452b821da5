"""Session persistence with SQLite storage."""

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from gmn_agent.chat import ChatEngine, ChatSnapshot, DisplayMessage
from gmn_agent.config import get_config
from gmn_agent.exceptions import SessionError, SessionNotFoundError
from gmn_agent.llm import Content
from gmn_agent.logging import get_logger

log = get_logger(__name__)

TITLE_MAX_CHARS = 60
DEFAULT_TITLE = "New chat"


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def title_from_messages(messages: list[DisplayMessage]) -> str:
    """Use the first user message, cut to 60 chars, as the session title."""
    for message in messages:
        if message.role == "user" and message.content.strip():
            text = message.content.strip()
            if len(text) > TITLE_MAX_CHARS:
                return text[:TITLE_MAX_CHARS] + "..."
            return text
    return DEFAULT_TITLE


@dataclass
class SessionRecord:
    """A stored conversation."""

    id: str
    title: str
    model: str = ""
    work_dir: str = ""
    history: list[Content] = field(default_factory=list)
    messages: list[DisplayMessage] = field(default_factory=list)
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def to_snapshot(self) -> ChatSnapshot:
        return ChatSnapshot(
            messages=list(self.messages),
            history=list(self.history),
            model=self.model,
            work_dir=self.work_dir,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "work_dir": self.work_dir,
            "history": [c.to_dict() for c in self.history],
            "messages": [m.to_dict() for m in self.messages],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionRecord":
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            model=data.get("model") or "",
            work_dir=data.get("work_dir") or "",
            history=[Content.from_dict(c) for c in data.get("history") or []],
            messages=[DisplayMessage.from_dict(m) for m in data.get("messages") or []],
            created_at=data.get("created_at") or _utcnow_iso(),
            updated_at=data.get("updated_at") or _utcnow_iso(),
        )


_COLUMNS = "id, title, model, work_dir, history, messages, created_at, updated_at"


def _record_from_row(row: tuple) -> SessionRecord:
    try:
        return SessionRecord.from_dict({
            "id": row[0],
            "title": row[1],
            "model": row[2],
            "work_dir": row[3],
            "history": json.loads(row[4]),
            "messages": json.loads(row[5]),
            "created_at": row[6],
            "updated_at": row[7],
        })
    except (ValueError, TypeError) as e:
        raise SessionError(f"Corrupt session {row[0]}: {e}") from e


class SessionStore:
    """Saves and restores ``ChatEngine`` snapshots."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().session.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    model TEXT NOT NULL DEFAULT '',
                    work_dir TEXT NOT NULL DEFAULT '',
                    history TEXT NOT NULL DEFAULT '[]',
                    messages TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at)"
            )
            await self._db.commit()
        return self._db

    async def save(self, session_id: str, snapshot: ChatSnapshot) -> SessionRecord:
        """Insert or update a session; ``created_at`` survives updates."""
        db = await self._ensure_db()

        async with db.execute(
            "SELECT created_at FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()

        record = SessionRecord(
            id=session_id,
            title=title_from_messages(snapshot.messages),
            model=snapshot.model,
            work_dir=snapshot.work_dir,
            history=snapshot.history,
            messages=snapshot.messages,
        )
        if row:
            record.created_at = row[0]

        data = record.to_dict()
        await db.execute(
            f"INSERT OR REPLACE INTO sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.title,
                record.model,
                record.work_dir,
                json.dumps(data["history"]),
                json.dumps(data["messages"]),
                record.created_at,
                record.updated_at,
            ),
        )
        await db.commit()
        log.debug("Saved session", session_id=session_id, title=record.title)
        return record

    async def load(self, session_id: str) -> SessionRecord | None:
        """Get a session by ID, or None."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return _record_from_row(row)

    async def restore_into(self, engine: ChatEngine, session_id: str) -> SessionRecord:
        """Load a session and replace the engine's conversation with it.

        Raises:
            SessionNotFoundError if no such session exists
        """
        record = await self.load(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        engine.restore(record.to_snapshot())
        log.info("Restored session", session_id=session_id, messages=len(record.messages))
        return record

    async def list_sessions(self, limit: int = 50) -> list[SessionRecord]:
        """List sessions, most recently updated first."""
        db = await self._ensure_db()
        async with db.execute(
            f"SELECT {_COLUMNS} FROM sessions ORDER BY updated_at DESC, rowid DESC LIMIT ?",
            (limit,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [_record_from_row(row) for row in rows]

    async def delete(self, session_id: str) -> bool:
        """Delete a session. Returns False when it did not exist."""
        db = await self._ensure_db()
        cursor = await db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await db.commit()
        return cursor.rowcount > 0

    async def new_session(self, engine: ChatEngine) -> str:
        """Clear the engine and return a fresh session id."""
        engine.clear_history()
        session_id = str(uuid.uuid4())
        log.info("Started new session", session_id=session_id)
        return session_id

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
