import json
import threading
import time

import pytest
import requests

from character_chat.config import DEFAULT_SETTINGS
from character_chat.models import CharacterProfile, Conversation
from character_chat.stores import InMemoryStore


class FakeResponse:
    """Stand-in for a streamed ``requests.Response``."""

    def __init__(self, lines=(), status_code=200, text="", on_line=None, stall_at=None, stall_seconds=5.0):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self.raw = object()
        self.text = text
        self.closed = False
        self._lines = list(lines)
        self._on_line = on_line
        self.stall_at = stall_at
        self.stall_seconds = stall_seconds
        self.closed_at = None
        self._closed_event = threading.Event()

    def iter_lines(self):
        for index, line in enumerate(self._lines):
            if index == self.stall_at:
                # Blocks like a slow network read until the response is closed.
                self._closed_event.wait(self.stall_seconds)
            if self.closed:
                raise requests.exceptions.ChunkedEncodingError("connection closed")
            yield line.encode("utf-8") if isinstance(line, str) else line
            if self._on_line is not None:
                self._on_line(index)

    def close(self):
        if not self.closed:
            self.closed_at = time.monotonic()
        self.closed = True
        self._closed_event.set()


def openai_line(text):
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


def gemini_line(text):
    return "data: " + json.dumps({"candidates": [{"content": {"parts": [{"text": text}]}}]})


class FakeProvider:
    def __init__(self):
        self.calls = []
        self.response = FakeResponse()

    def reply(self, lines=(), status_code=200, text="", on_line=None, **stall):
        self.response = FakeResponse(lines, status_code=status_code, text=text, on_line=on_line, **stall)
        return self.response

    def __call__(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        return self.response


@pytest.fixture
def fake_provider(monkeypatch):
    provider = FakeProvider()
    monkeypatch.setattr(requests, "post", provider)
    return provider


@pytest.fixture
def store():
    store = InMemoryStore()
    store.ensure_defaults(DEFAULT_SETTINGS)
    store.set("provider_config_openai", json.dumps({"baseUrl": "https://llm.example", "apiKey": "sk-test-key"}))
    return store


@pytest.fixture
def character(store):
    return store.create_character(
        CharacterProfile(
            owner_id="alice",
            name="Mira",
            description="A wandering cartographer.",
            persona="Curious and warm",
            traits="Patient",
            system_prompt="Stay in character.",
            example_dialogue="Mira: The map is not the territory.",
        )
    )


@pytest.fixture
def conversation(store, character):
    return store.create_conversation(Conversation(user_id="alice", character_id=character.id))
