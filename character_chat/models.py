"""Records exchanged between the chat pipeline and its storage collaborators."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

ROLES = ("system", "user", "assistant")

PERSONA_FACETS = (
    ("persona", "Persona"),
    ("scenario", "Scenario"),
    ("traits", "Traits"),
    ("speaking_style", "Speaking style"),
    ("goals", "Goals"),
    ("knowledge", "Knowledge"),
    ("constraints", "Constraints"),
    ("voice", "Voice"),
    ("greeting", "Greeting"),
)


def generate_uid() -> str:
    return uuid.uuid4().hex


@dataclass
class Turn:
    conversation_id: str
    role: str
    content: str
    id: str = field(default_factory=generate_uid)
    created_at: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
        }


@dataclass
class Conversation:
    user_id: str
    character_id: str
    title: str = "New chat"
    id: str = field(default_factory=generate_uid)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


@dataclass
class CharacterProfile:
    """Persona data for a character; empty facets are skipped when prompting."""

    owner_id: str
    name: str
    description: str = ""
    persona: str = ""
    scenario: str = ""
    traits: str = ""
    speaking_style: str = ""
    goals: str = ""
    knowledge: str = ""
    constraints: str = ""
    voice: str = ""
    greeting: str = ""
    system_prompt: str = ""
    example_dialogue: str = ""
    lorebook_ids: List[str] = field(default_factory=list)
    visibility: str = "public"
    id: str = field(default_factory=generate_uid)

    def facet_lines(self) -> List[str]:
        return [f"{label}: {getattr(self, key)}" for key, label in PERSONA_FACETS if getattr(self, key)]


@dataclass
class Memory:
    user_id: str
    character_id: str
    content: str
    importance: int = 1
    source_turn_id: Optional[str] = None
    id: str = field(default_factory=generate_uid)
    created_at: float = field(default_factory=time.time)
    last_used: Optional[float] = None


@dataclass
class LoreEntry:
    title: str = ""
    content: str = ""
    keywords: str = ""
    lorebook: str = ""

    def keyword_list(self) -> List[str]:
        """Declared trigger phrases: split on commas and newlines, trimmed, lower-cased."""
        parts = self.keywords.replace("\n", ",").split(",")
        return [part.strip().lower() for part in parts if part.strip()]


@dataclass
class Lorebook:
    owner_id: str
    name: str
    description: str = ""
    entries: List[LoreEntry] = field(default_factory=list)
    visibility: str = "private"
    id: str = field(default_factory=generate_uid)


@dataclass
class UsageRecord:
    user_id: str
    provider: str
    model: str
    latency_ms: int
    tokens_in: int = 0
    tokens_out: int = 0
    id: str = field(default_factory=generate_uid)
    created_at: float = field(default_factory=time.time)
