"""Prompt assembly: persona, retrieved memory and lore, then the history window."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from .config import GenerationSettings
from .models import CharacterProfile, LoreEntry, Memory, Turn
from .retrieval import extract_keywords, select_lore, select_memories
from .stores import ChatStore

logger = logging.getLogger(__name__)

# Candidate pool fetched before keyword filtering, as a multiple of memory_limit.
MEMORY_CANDIDATE_FACTOR = 3

REPLAYED_ROLES = ("user", "assistant")


class PromptComposer:
    """Build the ordered message list sent to the provider for one conversation."""

    def __init__(self, store: ChatStore) -> None:
        self.store = store

    def compose(self, conversation_id: str, settings: GenerationSettings) -> List[Dict[str, str]]:
        """Return ``[system, *history]``.

        Raises :class:`~character_chat.errors.NotFound` when the conversation or
        its character is gone.
        """
        conversation = self.store.get_conversation(conversation_id)
        character = self.store.get_character(conversation.character_id)

        window = list(reversed(self.store.list_recent_turns(conversation_id, settings.context_limit)))
        keywords = extract_keywords(self._latest_user_text(window))

        memories = self._select_memories(conversation.user_id, character.id, keywords, settings.memory_limit)
        lore = self._select_lore(character, keywords, settings.lorebook_limit)

        system_prompt = self.build_system_prompt(character, memories, lore, settings.global_system_prefix)
        messages: List[Dict[str, str]] = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn.role, "content": turn.content} for turn in window if turn.role in REPLAYED_ROLES)

        logger.debug(
            "Composed prompt for conversation %s: %d turn(s), %d memory(ies), %d lore entry(ies)",
            conversation_id,
            len(messages) - 1,
            len(memories),
            len(lore),
        )
        return messages

    @staticmethod
    def build_system_prompt(
        character: CharacterProfile,
        memories: Sequence[Memory],
        lore: Sequence[LoreEntry],
        global_prefix: str = "",
    ) -> str:
        sections: List[str] = []
        if global_prefix:
            sections.append(global_prefix)
        sections.append(f"You are roleplaying as: {character.name}.")
        if character.description:
            sections.append(character.description)

        facets = character.facet_lines()
        if facets:
            sections.append("Character details:\n- " + "\n- ".join(facets))
        if memories:
            sections.append("Memory snippets:\n- " + "\n- ".join(memory.content for memory in memories))
        if lore:
            sections.append("Lorebook:\n- " + "\n- ".join(_format_lore(entry) for entry in lore))

        if character.system_prompt:
            sections.append(f"Guidelines:\n{character.system_prompt}")
        if character.example_dialogue:
            sections.append(f"Example dialogue:\n{character.example_dialogue}")
        return "\n\n".join(sections)

    @staticmethod
    def _latest_user_text(window: Sequence[Turn]) -> str:
        for turn in reversed(window):
            if turn.role == "user":
                return turn.content
        return ""

    def _select_memories(self, user_id: str, character_id: str, keywords: List[str], limit: int) -> List[Memory]:
        if limit <= 0:
            return []
        candidates = self.store.list_memories(user_id, character_id, limit=limit * MEMORY_CANDIDATE_FACTOR)
        return select_memories(candidates, keywords, limit, touch=self.store.touch_memory)

    def _select_lore(self, character: CharacterProfile, keywords: List[str], limit: int) -> List[LoreEntry]:
        if limit <= 0 or not character.lorebook_ids:
            return []
        entries: List[LoreEntry] = []
        for lorebook in self.store.list_lorebooks(character.lorebook_ids):
            for entry in lorebook.entries:
                entries.append(
                    LoreEntry(title=entry.title, content=entry.content, keywords=entry.keywords, lorebook=lorebook.name)
                )
        return select_lore(entries, keywords, limit)


def _format_lore(entry: LoreEntry) -> str:
    title = f"{entry.title}: " if entry.title else ""
    return f"[{entry.lorebook}] {title}{entry.content}"
