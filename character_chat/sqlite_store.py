"""SQLite implementation of every chat store interface."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Iterable, List, Optional

from .errors import NotFound
from .models import CharacterProfile, Conversation, LoreEntry, Lorebook, Memory, Turn, UsageRecord
from .stores import ChatStore

logger = logging.getLogger(__name__)

_CHARACTER_COLUMNS = (
    "id",
    "owner_id",
    "name",
    "description",
    "persona",
    "scenario",
    "traits",
    "speaking_style",
    "goals",
    "knowledge",
    "constraints",
    "voice",
    "greeting",
    "system_prompt",
    "example_dialogue",
    "lorebook_ids",
    "visibility",
)


class SqliteStore(ChatStore):
    """Single-file store used by the HTTP server.

    Turns keep their float creation time; ``rowid`` breaks ties so the log stays
    totally ordered even when two turns share a timestamp.
    """

    def __init__(self, path: str = "./character_chat.db") -> None:
        self.path = os.path.expanduser(path)
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()
        logger.debug("SqliteStore opened at %s", self.path)

    def _init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS characters (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    persona TEXT NOT NULL DEFAULT '',
                    scenario TEXT NOT NULL DEFAULT '',
                    traits TEXT NOT NULL DEFAULT '',
                    speaking_style TEXT NOT NULL DEFAULT '',
                    goals TEXT NOT NULL DEFAULT '',
                    knowledge TEXT NOT NULL DEFAULT '',
                    constraints TEXT NOT NULL DEFAULT '',
                    voice TEXT NOT NULL DEFAULT '',
                    greeting TEXT NOT NULL DEFAULT '',
                    system_prompt TEXT NOT NULL DEFAULT '',
                    example_dialogue TEXT NOT NULL DEFAULT '',
                    lorebook_ids TEXT NOT NULL DEFAULT '',
                    visibility TEXT NOT NULL DEFAULT 'public'
                );

                CREATE TABLE IF NOT EXISTS chats (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    character_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    chat_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, created_at);

                CREATE TABLE IF NOT EXISTS memories (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    character_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    importance INTEGER NOT NULL DEFAULT 1,
                    source_message_id TEXT,
                    created_at REAL NOT NULL,
                    last_used REAL
                );
                CREATE INDEX IF NOT EXISTS idx_memories_owner ON memories(user_id, character_id);

                CREATE TABLE IF NOT EXISTS lorebooks (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    entries TEXT NOT NULL,
                    visibility TEXT NOT NULL DEFAULT 'private'
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS usage_logs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    tokens_in INTEGER NOT NULL DEFAULT 0,
                    tokens_out INTEGER NOT NULL DEFAULT 0,
                    latency_ms INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL
                );
                """
            )
            self.conn.commit()

    def _execute(self, sql: str, params: Iterable[object] = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(sql, tuple(params))
            self.conn.commit()
            return cur

    def _fetchall(self, sql: str, params: Iterable[object] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    def _fetchone(self, sql: str, params: Iterable[object] = ()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, tuple(params)).fetchone()

    @staticmethod
    def _row_to_conversation(row: sqlite3.Row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            character_id=row["character_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_turn(row: sqlite3.Row) -> Turn:
        return Turn(
            id=row["id"],
            conversation_id=row["chat_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            user_id=row["user_id"],
            character_id=row["character_id"],
            content=row["content"],
            importance=row["importance"],
            source_turn_id=row["source_message_id"],
            created_at=row["created_at"],
            last_used=row["last_used"],
        )

    @staticmethod
    def _row_to_lorebook(row: sqlite3.Row) -> Lorebook:
        try:
            raw_entries = json.loads(row["entries"] or "[]")
        except json.JSONDecodeError:
            logger.warning("Lorebook %s has unreadable entries; treating as empty", row["id"])
            raw_entries = []
        if not isinstance(raw_entries, list):
            raw_entries = []
        entries = [
            LoreEntry(
                title=item.get("title") or "",
                content=item.get("content") or "",
                keywords=item.get("keywords") or "",
                lorebook=row["name"],
            )
            for item in raw_entries
            if isinstance(item, dict)
        ]
        return Lorebook(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            entries=entries,
            visibility=row["visibility"],
        )

    # Conversations
    def create_conversation(self, conversation: Conversation) -> Conversation:
        self._execute(
            "INSERT INTO chats (id, user_id, character_id, title, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (
                conversation.id,
                conversation.user_id,
                conversation.character_id,
                conversation.title,
                conversation.created_at,
                conversation.updated_at,
            ),
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        row = self._fetchone("SELECT * FROM chats WHERE id = ?", (conversation_id,))
        if row is None:
            raise NotFound(f"Conversation '{conversation_id}' not found")
        return self._row_to_conversation(row)

    def list_conversations(self, user_id: str) -> List[Conversation]:
        rows = self._fetchall(
            "SELECT * FROM chats WHERE user_id = ? ORDER BY updated_at DESC, rowid DESC", (user_id,)
        )
        return [self._row_to_conversation(row) for row in rows]

    def list_recent_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        rows = self._fetchall(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (conversation_id, max(0, limit)),
        )
        return [self._row_to_turn(row) for row in rows]

    def list_turns(self, conversation_id: str) -> List[Turn]:
        rows = self._fetchall(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at ASC, rowid ASC",
            (conversation_id,),
        )
        return [self._row_to_turn(row) for row in rows]

    def get_turn(self, turn_id: str) -> Turn:
        row = self._fetchone("SELECT * FROM messages WHERE id = ?", (turn_id,))
        if row is None:
            raise NotFound(f"Turn '{turn_id}' not found")
        return self._row_to_turn(row)

    def append_turn(self, conversation_id: str, role: str, content: str) -> Turn:
        turn = Turn(conversation_id=conversation_id, role=role, content=content)
        self._execute(
            "INSERT INTO messages (id, chat_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
            (turn.id, turn.conversation_id, turn.role, turn.content, turn.created_at),
        )
        return turn

    def delete_turn(self, turn_id: str) -> bool:
        return self._execute("DELETE FROM messages WHERE id = ?", (turn_id,)).rowcount > 0

    def touch_conversation(self, conversation_id: str) -> None:
        self._execute("UPDATE chats SET updated_at = ? WHERE id = ?", (time.time(), conversation_id))

    # Characters
    def create_character(self, character: CharacterProfile) -> CharacterProfile:
        values = []
        for column in _CHARACTER_COLUMNS:
            value = getattr(character, column)
            values.append(",".join(value) if column == "lorebook_ids" else value)
        placeholders = ", ".join("?" for _ in _CHARACTER_COLUMNS)
        self._execute(
            f"INSERT INTO characters ({', '.join(_CHARACTER_COLUMNS)}) VALUES ({placeholders})",
            values,
        )
        return character

    def get_character(self, character_id: str) -> CharacterProfile:
        row = self._fetchone("SELECT * FROM characters WHERE id = ?", (character_id,))
        if row is None:
            raise NotFound(f"Character '{character_id}' not found")
        fields = {column: row[column] for column in _CHARACTER_COLUMNS}
        fields["lorebook_ids"] = [part.strip() for part in (row["lorebook_ids"] or "").split(",") if part.strip()]
        return CharacterProfile(**fields)

    # Memories
    def create_memory(self, memory: Memory) -> Memory:
        self._execute(
            """
            INSERT INTO memories (id, user_id, character_id, content, importance, source_message_id, created_at, last_used)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                memory.id,
                memory.user_id,
                memory.character_id,
                memory.content,
                memory.importance,
                memory.source_turn_id,
                memory.created_at,
                memory.last_used,
            ),
        )
        return memory

    def get_memory(self, memory_id: str) -> Memory:
        row = self._fetchone("SELECT * FROM memories WHERE id = ?", (memory_id,))
        if row is None:
            raise NotFound(f"Memory '{memory_id}' not found")
        return self._row_to_memory(row)

    def list_memories(self, user_id: str, character_id: str, limit: Optional[int] = None) -> List[Memory]:
        sql = (
            "SELECT * FROM memories WHERE user_id = ? AND character_id = ? "
            "ORDER BY importance DESC, created_at DESC, rowid DESC"
        )
        params: List[object] = [user_id, character_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_memory(row) for row in self._fetchall(sql, params)]

    def update_memory(
        self, memory_id: str, *, content: Optional[str] = None, importance: Optional[int] = None
    ) -> Memory:
        memory = self.get_memory(memory_id)
        if content is not None:
            memory.content = content
        if importance is not None:
            memory.importance = importance
        self._execute(
            "UPDATE memories SET content = ?, importance = ? WHERE id = ?",
            (memory.content, memory.importance, memory_id),
        )
        return memory

    def touch_memory(self, memory_id: str) -> None:
        self._execute("UPDATE memories SET last_used = ? WHERE id = ?", (time.time(), memory_id))

    def delete_memory(self, memory_id: str) -> bool:
        return self._execute("DELETE FROM memories WHERE id = ?", (memory_id,)).rowcount > 0

    # Lorebooks
    def create_lorebook(self, lorebook: Lorebook) -> Lorebook:
        entries = [
            {"title": entry.title, "content": entry.content, "keywords": entry.keywords}
            for entry in lorebook.entries
        ]
        self._execute(
            "INSERT INTO lorebooks (id, owner_id, name, description, entries, visibility) VALUES (?, ?, ?, ?, ?, ?)",
            (
                lorebook.id,
                lorebook.owner_id,
                lorebook.name,
                lorebook.description,
                json.dumps(entries),
                lorebook.visibility,
            ),
        )
        return lorebook

    def get_lorebook(self, lorebook_id: str) -> Lorebook:
        row = self._fetchone("SELECT * FROM lorebooks WHERE id = ?", (lorebook_id,))
        if row is None:
            raise NotFound(f"Lorebook '{lorebook_id}' not found")
        return self._row_to_lorebook(row)

    def list_lorebooks(self, lorebook_ids: Iterable[str]) -> List[Lorebook]:
        ids = list(lorebook_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        rows = self._fetchall(f"SELECT * FROM lorebooks WHERE id IN ({placeholders})", ids)
        by_id = {row["id"]: self._row_to_lorebook(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    # Settings
    def get(self, key: str) -> Optional[str]:
        row = self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        return None if row is None else row["value"]

    def set(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, value, time.time()),
        )

    # Usage
    def record(self, usage: UsageRecord) -> UsageRecord:
        self._execute(
            """
            INSERT INTO usage_logs (id, user_id, provider, model, tokens_in, tokens_out, latency_ms, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                usage.id,
                usage.user_id,
                usage.provider,
                usage.model,
                usage.tokens_in,
                usage.tokens_out,
                usage.latency_ms,
                usage.created_at,
            ),
        )
        return usage

    def list_usage(self, user_id: Optional[str] = None) -> List[UsageRecord]:
        if user_id is None:
            rows = self._fetchall("SELECT * FROM usage_logs ORDER BY created_at ASC, rowid ASC")
        else:
            rows = self._fetchall(
                "SELECT * FROM usage_logs WHERE user_id = ? ORDER BY created_at ASC, rowid ASC", (user_id,)
            )
        return [
            UsageRecord(
                id=row["id"],
                user_id=row["user_id"],
                provider=row["provider"],
                model=row["model"],
                tokens_in=row["tokens_in"],
                tokens_out=row["tokens_out"],
                latency_ms=row["latency_ms"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def close(self) -> None:
        self.conn.close()
