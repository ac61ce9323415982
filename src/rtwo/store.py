"""SQLite-backed conversation store for save/restore/delete workflows."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
import logging
import os
from pathlib import Path
import sqlite3

import aiosqlite
from pydantic import TypeAdapter, ValidationError

from .exceptions import NotFoundError, StoreCorruptError, StoreWriteError
from .models import Conversation, ConversationSummary, Turn

LOGGER = logging.getLogger(__name__)

_TURNS = TypeAdapter(list[Turn])

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    host TEXT NOT NULL DEFAULT '',
    model TEXT NOT NULL DEFAULT '',
    preview TEXT NOT NULL DEFAULT '',
    turn_count INTEGER NOT NULL DEFAULT 0,
    turns TEXT NOT NULL
)
"""

_UPSERT = """
INSERT INTO conversations (id, created_at, host, model, preview, turn_count, turns)
VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    host=excluded.host,
    model=excluded.model,
    preview=excluded.preview,
    turn_count=excluded.turn_count,
    turns=excluded.turns
"""


class ConversationStore:
    """Persist conversations as rows keyed by conversation id.

    A single writer per database file is assumed.
    """

    def __init__(self, database_path: str | Path) -> None:
        self.database_path = Path(database_path).expanduser()

    def _enforce_permissions(self, path: Path, mode: int = 0o600) -> None:
        """Set POSIX permissions on a file or directory; failures are logged."""
        if os.name != "posix" or not path.exists():
            return
        try:
            path.chmod(mode)
        except OSError as exc:
            LOGGER.warning("Unable to enforce permissions for %s: %s", path, exc)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        directory = self.database_path.parent
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            self._enforce_permissions(directory, 0o700)
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(_CREATE_TABLE)
            await db.commit()
            self._enforce_permissions(self.database_path)
            yield db

    async def save(self, conversation: Conversation) -> None:
        """Insert or overwrite the record for ``conversation.id``."""
        turns_json = _TURNS.dump_json(conversation.turns).decode("utf-8")
        row = (
            conversation.id,
            conversation.created_at.isoformat(),
            conversation.host,
            conversation.model,
            conversation.preview,
            len(conversation.turns),
            turns_json,
        )
        try:
            async with self._connect() as db:
                await db.execute(_UPSERT, row)
                await db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreWriteError(
                f"Unable to save conversation {conversation.id}: {exc}"
            ) from exc
        LOGGER.debug(
            "store.save",
            extra={
                "event": "store.save",
                "conversation_id": conversation.id,
                "turns": len(conversation.turns),
            },
        )

    async def load(self, conversation_id: str) -> Conversation:
        """Load a conversation; raises NotFoundError or StoreCorruptError."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT id, created_at, host, model, turns FROM conversations WHERE id=?",
                    (conversation_id,),
                )
                row = await cursor.fetchone()
        except (sqlite3.Error, OSError) as exc:
            raise StoreCorruptError(f"Unable to read conversation store: {exc}") from exc

        if row is None:
            raise NotFoundError(f"Conversation {conversation_id!r} does not exist.")

        record_id, created_at, host, model, turns_json = row
        try:
            return Conversation(
                id=record_id,
                created_at=datetime.fromisoformat(created_at),
                host=host or "",
                model=model or "",
                turns=_TURNS.validate_json(turns_json),
            )
        except (ValidationError, ValueError, TypeError) as exc:
            LOGGER.warning(
                "store.load.corrupt",
                extra={"event": "store.load.corrupt", "conversation_id": conversation_id},
            )
            raise StoreCorruptError(
                f"Conversation {conversation_id!r} could not be decoded: {exc}"
            ) from exc

    async def list_conversations(self) -> list[ConversationSummary]:
        """List stored conversations, newest first."""
        try:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT id, created_at, host, model, preview, turn_count "
                    "FROM conversations ORDER BY created_at DESC"
                )
                rows = await cursor.fetchall()
        except (sqlite3.Error, OSError) as exc:
            raise StoreCorruptError(f"Unable to read conversation store: {exc}") from exc

        summaries: list[ConversationSummary] = []
        for record_id, created_at, host, model, preview, turn_count in rows:
            try:
                stamp = datetime.fromisoformat(created_at)
            except (TypeError, ValueError):
                stamp = datetime.fromtimestamp(0, UTC)
            summaries.append(
                ConversationSummary(
                    id=record_id,
                    created_at=stamp,
                    preview=preview or "",
                    host=host or "",
                    model=model or "",
                    turn_count=int(turn_count or 0),
                )
            )
        return summaries

    async def delete(self, conversation_id: str) -> None:
        """Remove a conversation; deleting a missing id is not an error."""
        try:
            async with self._connect() as db:
                await db.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
                await db.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StoreWriteError(
                f"Unable to delete conversation {conversation_id}: {exc}"
            ) from exc
        LOGGER.info(
            "store.delete",
            extra={"event": "store.delete", "conversation_id": conversation_id},
        )
