"""Storage interfaces consumed by the chat pipeline.

Each collaborator is an abstract repository so the composer and the streaming
session never see storage specific code. ``InMemoryStore`` backs tests and
embedding use; :mod:`character_chat.sqlite_store` backs the HTTP server.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from .errors import NotFound
from .models import CharacterProfile, Conversation, Lorebook, Memory, Turn, UsageRecord


class ConversationStore(ABC):
    @abstractmethod
    def create_conversation(self, conversation: Conversation) -> Conversation:
        pass

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation:
        """Return the conversation or raise :class:`NotFound`."""

    @abstractmethod
    def list_conversations(self, user_id: str) -> List[Conversation]:
        """Return the user's conversations, most recently active first."""

    @abstractmethod
    def list_recent_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        """Return at most ``limit`` turns, most recent first."""

    @abstractmethod
    def list_turns(self, conversation_id: str) -> List[Turn]:
        """Return every turn in chronological order."""

    @abstractmethod
    def get_turn(self, turn_id: str) -> Turn:
        pass

    @abstractmethod
    def append_turn(self, conversation_id: str, role: str, content: str) -> Turn:
        pass

    @abstractmethod
    def delete_turn(self, turn_id: str) -> bool:
        pass

    @abstractmethod
    def touch_conversation(self, conversation_id: str) -> None:
        pass


class CharacterStore(ABC):
    @abstractmethod
    def create_character(self, character: CharacterProfile) -> CharacterProfile:
        pass

    @abstractmethod
    def get_character(self, character_id: str) -> CharacterProfile:
        """Return the character or raise :class:`NotFound`."""


class MemoryStore(ABC):
    @abstractmethod
    def create_memory(self, memory: Memory) -> Memory:
        pass

    @abstractmethod
    def get_memory(self, memory_id: str) -> Memory:
        pass

    @abstractmethod
    def list_memories(self, user_id: str, character_id: str, limit: Optional[int] = None) -> List[Memory]:
        """Return memories ordered by importance desc, then recency desc."""

    @abstractmethod
    def update_memory(
        self, memory_id: str, *, content: Optional[str] = None, importance: Optional[int] = None
    ) -> Memory:
        """Change the given fields and return the updated memory, or raise :class:`NotFound`."""

    @abstractmethod
    def touch_memory(self, memory_id: str) -> None:
        pass

    @abstractmethod
    def delete_memory(self, memory_id: str) -> bool:
        pass


class LorebookStore(ABC):
    @abstractmethod
    def create_lorebook(self, lorebook: Lorebook) -> Lorebook:
        pass

    @abstractmethod
    def get_lorebook(self, lorebook_id: str) -> Lorebook:
        pass

    @abstractmethod
    def list_lorebooks(self, lorebook_ids: Iterable[str]) -> List[Lorebook]:
        """Return the lorebooks that exist, in the order of ``lorebook_ids``."""


class SettingsStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    def ensure_defaults(self, defaults: Dict[str, str]) -> None:
        """Insert each default whose key is absent; existing values win."""
        for key, value in defaults.items():
            if self.get(key) is None:
                self.set(key, value)


class UsageLog(ABC):
    @abstractmethod
    def record(self, usage: UsageRecord) -> UsageRecord:
        pass

    @abstractmethod
    def list_usage(self, user_id: Optional[str] = None) -> List[UsageRecord]:
        pass


class ChatStore(ConversationStore, CharacterStore, MemoryStore, LorebookStore, SettingsStore, UsageLog):
    """Every collaborator the chat service needs, behind one object."""


class InMemoryStore(ChatStore):
    """Process-local store. Data is lost when the process exits."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.conversations: Dict[str, Conversation] = {}
        self.turns: List[Turn] = []
        self.characters: Dict[str, CharacterProfile] = {}
        self.memories: List[Memory] = []
        self.lorebooks: Dict[str, Lorebook] = {}
        self.settings: Dict[str, str] = {}
        self.usage: List[UsageRecord] = []

    # Conversations
    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self.conversations[conversation.id] = conversation
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation '{conversation_id}' not found")
        return conversation

    def list_conversations(self, user_id: str) -> List[Conversation]:
        with self._lock:
            owned = [c for c in self.conversations.values() if c.user_id == user_id]
        return sorted(owned, key=lambda c: c.updated_at, reverse=True)

    def list_recent_turns(self, conversation_id: str, limit: int) -> List[Turn]:
        with self._lock:
            turns = [turn for turn in self.turns if turn.conversation_id == conversation_id]
        return list(reversed(turns))[: max(0, limit)]

    def list_turns(self, conversation_id: str) -> List[Turn]:
        with self._lock:
            return [turn for turn in self.turns if turn.conversation_id == conversation_id]

    def get_turn(self, turn_id: str) -> Turn:
        for turn in self.turns:
            if turn.id == turn_id:
                return turn
        raise NotFound(f"Turn '{turn_id}' not found")

    def append_turn(self, conversation_id: str, role: str, content: str) -> Turn:
        turn = Turn(conversation_id=conversation_id, role=role, content=content)
        with self._lock:
            # Appending keeps the list in creation order even when clocks tie.
            self.turns.append(turn)
        return turn

    def delete_turn(self, turn_id: str) -> bool:
        with self._lock:
            before = len(self.turns)
            self.turns = [turn for turn in self.turns if turn.id != turn_id]
            return len(self.turns) != before

    def touch_conversation(self, conversation_id: str) -> None:
        self.get_conversation(conversation_id).updated_at = time.time()

    # Characters
    def create_character(self, character: CharacterProfile) -> CharacterProfile:
        with self._lock:
            self.characters[character.id] = character
        return character

    def get_character(self, character_id: str) -> CharacterProfile:
        character = self.characters.get(character_id)
        if character is None:
            raise NotFound(f"Character '{character_id}' not found")
        return character

    # Memories
    def create_memory(self, memory: Memory) -> Memory:
        with self._lock:
            self.memories.append(memory)
        return memory

    def get_memory(self, memory_id: str) -> Memory:
        for memory in self.memories:
            if memory.id == memory_id:
                return memory
        raise NotFound(f"Memory '{memory_id}' not found")

    def list_memories(self, user_id: str, character_id: str, limit: Optional[int] = None) -> List[Memory]:
        with self._lock:
            indexed = [
                (position, memory)
                for position, memory in enumerate(self.memories)
                if memory.user_id == user_id and memory.character_id == character_id
            ]
        indexed.sort(key=lambda item: (item[1].importance, item[1].created_at, item[0]), reverse=True)
        ordered = [memory for _, memory in indexed]
        return ordered if limit is None else ordered[:limit]

    def update_memory(
        self, memory_id: str, *, content: Optional[str] = None, importance: Optional[int] = None
    ) -> Memory:
        memory = self.get_memory(memory_id)
        with self._lock:
            if content is not None:
                memory.content = content
            if importance is not None:
                memory.importance = importance
        return memory

    def touch_memory(self, memory_id: str) -> None:
        for memory in self.memories:
            if memory.id == memory_id:
                memory.last_used = time.time()
                return
        raise NotFound(f"Memory '{memory_id}' not found")

    def delete_memory(self, memory_id: str) -> bool:
        with self._lock:
            before = len(self.memories)
            self.memories = [memory for memory in self.memories if memory.id != memory_id]
            return len(self.memories) != before

    # Lorebooks
    def create_lorebook(self, lorebook: Lorebook) -> Lorebook:
        with self._lock:
            self.lorebooks[lorebook.id] = lorebook
        return lorebook

    def get_lorebook(self, lorebook_id: str) -> Lorebook:
        lorebook = self.lorebooks.get(lorebook_id)
        if lorebook is None:
            raise NotFound(f"Lorebook '{lorebook_id}' not found")
        return lorebook

    def list_lorebooks(self, lorebook_ids: Iterable[str]) -> List[Lorebook]:
        return [self.lorebooks[i] for i in lorebook_ids if i in self.lorebooks]

    # Settings
    def get(self, key: str) -> Optional[str]:
        return self.settings.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self.settings[key] = value

    # Usage
    def record(self, usage: UsageRecord) -> UsageRecord:
        with self._lock:
            self.usage.append(usage)
        return usage

    def list_usage(self, user_id: Optional[str] = None) -> List[UsageRecord]:
        return [usage for usage in self.usage if user_id is None or usage.user_id == user_id]
