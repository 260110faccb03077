"""Streaming roleplay chat with persisted character personas.

This package composes a prompt from a character's persona, relevance-filtered
memories and lorebook entries, and a bounded window of the conversation, then
streams the reply from a pluggable provider (OpenAI-compatible or Gemini).
The primary entry points are ``character_chat.api.create_app`` for running the
HTTP service and ``character_chat.service.ChatService`` for embedding the chat
engine directly into Python code.
"""

from .config import GenerationSettings, SamplingParams, ServerConfig
from .service import ChatService
from .stores import ChatStore, InMemoryStore

__all__ = ["ChatService", "ChatStore", "GenerationSettings", "InMemoryStore", "SamplingParams", "ServerConfig"]
