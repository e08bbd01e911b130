"""Optional durable session storage.

``ConversationMemory`` talks to storage only through the ``SessionStore``
protocol, chosen once at startup.  Every store call is best-effort from the
chat flow's point of view: failures are logged by the caller and never abort a
turn.

``SqliteSessionStore`` keeps three tables (``chat_sessions``, ``messages``,
``page_embeddings``); embeddings are written but not read back into requests.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

import aiosqlite

from scholar.models import Message, Session, utc_now

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chat_sessions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        pdf_url TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
        content TEXT NOT NULL,
        images TEXT,
        page_references TEXT,
        token_count INTEGER DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS page_embeddings (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
        page_number INTEGER NOT NULL,
        extracted_text TEXT,
        embedding TEXT,
        created_at TEXT NOT NULL,
        UNIQUE(session_id, page_number)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)",
)


class SessionStore(Protocol):
    """Durable backing for sessions, messages and page embeddings."""

    async def initialize(self) -> None: ...

    async def get_or_create(self, session_id: str, pdf_url: str | None = None) -> Session: ...

    async def append_message(self, session_id: str, message: Message) -> None: ...

    async def save_page_embedding(
        self, session_id: str, page_number: int, text: str, embedding: list[float]
    ) -> None: ...

    async def close(self) -> None: ...


class InMemorySessionStore:
    """Process-local store; useful for tests and for running without a database."""

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.embeddings: dict[tuple[str, int], tuple[str, list[float]]] = {}

    async def initialize(self) -> None:
        return None

    async def get_or_create(self, session_id: str, pdf_url: str | None = None) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            session = Session(id=session_id, current_pdf_url=pdf_url)
            self.sessions[session_id] = session
        return session.model_copy(deep=True)

    async def append_message(self, session_id: str, message: Message) -> None:
        session = self.sessions.setdefault(session_id, Session(id=session_id))
        session.messages.append(message)
        session.updated_at = utc_now()

    async def save_page_embedding(
        self, session_id: str, page_number: int, text: str, embedding: list[float]
    ) -> None:
        self.embeddings[(session_id, page_number)] = (text, list(embedding))

    async def close(self) -> None:
        return None


class SqliteSessionStore:
    """SQLite-backed ``SessionStore`` using ``aiosqlite``.

    A connection is opened per operation; the schema is created on the first
    call to ``initialize`` (subsequent calls are no-ops).  Unlike a scratch
    database, an existing file is kept so sessions survive restarts.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).expanduser()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
        self._initialized = True
        logger.info("Session database ready: %s", self.db_path)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        await self.initialize()
        conn = await aiosqlite.connect(self.db_path)
        try:
            await conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        finally:
            await conn.close()

    async def get_or_create(self, session_id: str, pdf_url: str | None = None) -> Session:
        async with self.connection() as conn:
            cur = await conn.execute(
                "SELECT id, title, created_at, updated_at, pdf_url FROM chat_sessions WHERE id = ?",
                (session_id,),
            )
            row = await cur.fetchone()
            if row is not None:
                messages = await self._load_messages(conn, session_id)
                return Session(
                    id=row[0],
                    title=row[1],
                    created_at=datetime.fromisoformat(row[2]),
                    updated_at=datetime.fromisoformat(row[3]),
                    current_pdf_url=row[4],
                    messages=messages,
                )

            session = Session(id=session_id, current_pdf_url=pdf_url)
            await conn.execute(
                "INSERT INTO chat_sessions (id, title, created_at, updated_at, pdf_url) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    session.id,
                    session.title,
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                    pdf_url,
                ),
            )
            await conn.commit()
            return session

    async def _load_messages(self, conn: aiosqlite.Connection, session_id: str) -> list[Message]:
        cur = await conn.execute(
            "SELECT id, role, content, images, page_references, token_count, created_at "
            "FROM messages WHERE session_id = ? ORDER BY created_at ASC, id ASC",
            (session_id,),
        )
        rows = await cur.fetchall()
        return [
            Message(
                id=row[0],
                role=row[1],
                content=row[2],
                images=json.loads(row[3]) if row[3] else [],
                page_references=json.loads(row[4]) if row[4] else [],
                token_count=row[5],
                timestamp=datetime.fromisoformat(row[6]),
            )
            for row in rows
        ]

    async def append_message(self, session_id: str, message: Message) -> None:
        async with self.connection() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO chat_sessions (id, title, created_at, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (session_id, "New Study Session", message.timestamp.isoformat(),
                 message.timestamp.isoformat()),
            )
            await conn.execute(
                "INSERT INTO messages "
                "(id, session_id, role, content, images, page_references, token_count, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    session_id,
                    message.role,
                    message.content,
                    json.dumps(message.images) if message.images else None,
                    json.dumps(message.page_references) if message.page_references else None,
                    message.token_count or 0,
                    message.timestamp.isoformat(),
                ),
            )
            await conn.execute(
                "UPDATE chat_sessions SET updated_at = ? WHERE id = ?",
                (message.timestamp.isoformat(), session_id),
            )
            await conn.commit()

    async def save_page_embedding(
        self, session_id: str, page_number: int, text: str, embedding: list[float]
    ) -> None:
        now = utc_now().isoformat()
        async with self.connection() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO chat_sessions (id, title, created_at, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (session_id, "New Study Session", now, now),
            )
            await conn.execute(
                "INSERT INTO page_embeddings "
                "(session_id, page_number, extracted_text, embedding, created_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(session_id, page_number) "
                "DO UPDATE SET extracted_text = excluded.extracted_text, "
                "embedding = excluded.embedding",
                (session_id, page_number, text, json.dumps(embedding), now),
            )
            await conn.commit()

    async def page_embedding(self, session_id: str, page_number: int) -> tuple[str, list[float]] | None:
        """Return the stored text and vector for one page (inspection only)."""
        async with self.connection() as conn:
            cur = await conn.execute(
                "SELECT extracted_text, embedding FROM page_embeddings "
                "WHERE session_id = ? AND page_number = ?",
                (session_id, page_number),
            )
            row = await cur.fetchone()
        if row is None:
            return None
        return row[0], json.loads(row[1])

    async def close(self) -> None:
        return None
