"""
SQLite storage for chat sessions.
One row per session, one row per turn. Single portable file.
The relay writes finished conversations here through upsert(); the
/history endpoints read and manage sessions.
"""

import sqlite3
import logging
from pathlib import Path
from contextlib import contextmanager
from datetime import datetime, timezone

from multimind.storage.models import ChatSession, ConversationTurn

logger = logging.getLogger(__name__)

TITLE_MAX_CHARS = 50

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'New Chat',
    model_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    session_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    image_ref TEXT DEFAULT NULL,
    timestamp TEXT NOT NULL,
    PRIMARY KEY (session_id, position),
    FOREIGN KEY (session_id) REFERENCES sessions(id)
);

CREATE INDEX IF NOT EXISTS idx_sessions_updated
    ON sessions(updated_at);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStore:
    """Thread-safe SQLite session store (one connection per operation)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _write_messages(conn, session_id: str, messages: list[ConversationTurn]):
        conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
        conn.executemany(
            """INSERT INTO messages
               (session_id, position, role, content, image_ref, timestamp)
               VALUES (?, ?, ?, ?, ?, ?)""",
            [
                (session_id, i, m.role, m.content, m.image_ref, m.timestamp)
                for i, m in enumerate(messages)
            ],
        )

    def upsert(
        self,
        session_id: str,
        model_id: str,
        conversation: list[ConversationTurn],
        title: str | None = None,
    ) -> None:
        """
        Replace the stored conversation for session_id.
        Creates the session if needed; the title is only set on creation.
        """
        now = _now()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE sessions SET model_id = ?, updated_at = ? WHERE id = ?",
                    (model_id, now, session_id),
                )
            else:
                conn.execute(
                    """INSERT INTO sessions (id, title, model_id, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (session_id, (title or "New Chat")[:TITLE_MAX_CHARS], model_id, now, now),
                )
            self._write_messages(conn, session_id, conversation)
        logger.debug(
            "Upserted session %s (model=%s, %d messages)",
            session_id, model_id, len(conversation),
        )

    def create_session(
        self,
        session_id: str,
        model_id: str,
        title: str = "New Chat",
        messages: list[ConversationTurn] | None = None,
    ) -> ChatSession:
        """Create an empty (or seeded) session and return it."""
        session = ChatSession(
            session_id=session_id,
            model_id=model_id,
            title=title[:TITLE_MAX_CHARS] or "New Chat",
            messages=list(messages or []),
        )
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sessions (id, title, model_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (session.session_id, session.title, session.model_id,
                 session.created_at, session.updated_at),
            )
            self._write_messages(conn, session.session_id, session.messages)
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        """Return a session with all of its turns, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?", (session_id,)
            ).fetchone()
            if not row:
                return None
            msg_rows = conn.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY position",
                (session_id,),
            ).fetchall()
        return ChatSession(
            session_id=row["id"],
            model_id=row["model_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            messages=[
                ConversationTurn(
                    role=m["role"],
                    content=m["content"],
                    image_ref=m["image_ref"],
                    timestamp=m["timestamp"],
                )
                for m in msg_rows
            ],
        )

    def list_sessions(self, limit: int | None = None) -> list[ChatSession]:
        """Session metadata (no messages), most recently updated first."""
        query = "SELECT * FROM sessions ORDER BY updated_at DESC"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            ChatSession(
                session_id=r["id"],
                model_id=r["model_id"],
                title=r["title"],
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    def delete_session(self, session_id: str) -> bool:
        """Delete a session and its turns. Returns False if it did not exist."""
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted session %s", session_id)
        return deleted

    def get_stats(self) -> dict:
        """Counts for the CLI and health output."""
        with self._connect() as conn:
            sessions = conn.execute("SELECT COUNT(*) FROM sessions").fetchone()[0]
            messages = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            by_role = conn.execute(
                "SELECT role, COUNT(*) as n FROM messages GROUP BY role"
            ).fetchall()
            by_model = conn.execute(
                "SELECT model_id, COUNT(*) as n FROM sessions GROUP BY model_id"
            ).fetchall()
        roles = {r["role"]: r["n"] for r in by_role}
        return {
            "sessions": sessions,
            "messages": messages,
            "user_messages": roles.get("user", 0),
            "assistant_messages": roles.get("assistant", 0),
            "models": {r["model_id"]: r["n"] for r in by_model},
        }
