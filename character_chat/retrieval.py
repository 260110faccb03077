"""Keyword-overlap retrieval for memories and lore entries.

Both selectors preserve the caller's candidate order among survivors and fall
back to the unfiltered candidates when nothing matches, so the result is always
"first ``limit`` of (matches or everything)".
"""

from __future__ import annotations

import re
from typing import Callable, List, Optional, Sequence

from .models import LoreEntry, Memory

MIN_KEYWORD_LENGTH = 4
MAX_KEYWORDS = 12

_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def extract_keywords(text: str) -> List[str]:
    """Lower-case ``text``, split on non-alphanumeric runs and keep the first 12 tokens of length >= 4."""
    tokens = [token for token in _SPLIT_RE.split(text.lower()) if len(token) >= MIN_KEYWORD_LENGTH]
    return tokens[:MAX_KEYWORDS]


def contains_keyword(text: str, keywords: Sequence[str]) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in keywords)


def lore_keyword_matches(declared: str, extracted: str) -> bool:
    """Bidirectional substring test between a declared phrase and an extracted token."""
    return declared in extracted or extracted in declared


def lore_entry_matches(entry: LoreEntry, keywords: Sequence[str]) -> bool:
    declared = entry.keyword_list()
    if not declared:
        return True
    if not keywords:
        return False
    return any(lore_keyword_matches(key, token) for key in declared for token in keywords)


def select_memories(
    candidates: Sequence[Memory],
    keywords: Sequence[str],
    limit: int,
    *,
    touch: Optional[Callable[[str], None]] = None,
) -> List[Memory]:
    """Pick up to ``limit`` memories and refresh ``last_used`` on each selected one via ``touch``."""
    if limit <= 0 or not candidates:
        return []

    matching = [memory for memory in candidates if contains_keyword(memory.content, keywords)] if keywords else []
    if not keywords or not matching:
        matching = list(candidates)
    selected = matching[:limit]

    if touch is not None:
        for memory in selected:
            touch(memory.id)
    return selected


def select_lore(entries: Sequence[LoreEntry], keywords: Sequence[str], limit: int) -> List[LoreEntry]:
    """Pick up to ``limit`` lore entries in storage order."""
    if limit <= 0 or not entries:
        return []
    filtered = [entry for entry in entries if lore_entry_matches(entry, keywords)]
    return (filtered or list(entries))[:limit]
