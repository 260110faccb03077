"""Exceptions raised by the chat pipeline."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for chat pipeline failures."""


class NotFound(ChatError):
    """A conversation, character, turn or memory no longer exists."""


class ConfigurationError(ChatError):
    """The active provider is unknown or its credentials are missing."""


class ProviderError(ChatError):
    """The upstream provider returned a non-success response."""

    def __init__(self, provider: str, status_code: int, body: str = "") -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider} error: {status_code} {body}".strip())


class NothingToRegenerate(ChatError):
    """Regenerate was requested for a conversation without a user turn."""


class GenerationCancelled(ChatError):
    """The caller cancelled an in-flight generation."""
