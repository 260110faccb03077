"""High level orchestration for streaming a character reply.

``ChatService.stream_reply`` and ``ChatService.regenerate`` do their eager
work (validation, persisting the user turn, removing the stale reply) before
returning a generator. Iterating the generator drives one
:class:`StreamingSession`: it composes the prompt, resolves the provider,
relays every fragment as a ``token`` event, and finishes with exactly one
``done`` or ``error`` event.

Concurrent requests against the same conversation are not serialised here;
two overlapping streams can interleave their writes in the store.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from .config import GenerationSettings, ServerConfig
from .errors import ChatError, GenerationCancelled, NothingToRegenerate
from .llm_client import CancellationToken, resolve_active_provider
from .models import Conversation, UsageRecord
from .prompt import PromptComposer
from .stores import ChatStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_FIRST_TOKEN = "awaiting_first_token"
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED)


@dataclass
class StreamEvent:
    """One event on the caller-facing stream."""

    event: str
    data: Dict[str, Any]

    @classmethod
    def token(cls, text: str) -> "StreamEvent":
        return cls("token", {"token": text})

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls("done", {"ok": True})

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls("error", {"error": message})

    def encode(self, charset: str = "utf-8") -> bytes:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n".encode(charset)


@dataclass
class StreamingSession:
    """Lifecycle bookkeeping for a single generation request."""

    conversation: Conversation
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    state: SessionState = SessionState.IDLE
    fragments: List[str] = field(default_factory=list)
    provider_name: str = ""
    model_name: str = ""
    started_at: float = field(default_factory=time.monotonic)

    @property
    def text(self) -> str:
        return "".join(self.fragments)

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def accept(self, fragment: str) -> None:
        self.fragments.append(fragment)
        self.state = SessionState.STREAMING


class ChatService:
    """Core chat engine used by both the API and direct Python consumers."""

    def __init__(self, store: ChatStore, config: Optional[ServerConfig] = None) -> None:
        self.store = store
        self.config = config or ServerConfig()
        self.composer = PromptComposer(store)

    def load_settings(self) -> GenerationSettings:
        """Read settings fresh so admin changes apply to the very next request."""
        return GenerationSettings.from_store(self.store, request_timeout=self.config.request_timeout)

    def stream_reply(
        self,
        conversation_id: str,
        message: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        """Persist ``message`` as a user turn and stream the character's reply."""
        if not message or not message.strip():
            raise ValueError("message is required")
        conversation = self.store.get_conversation(conversation_id)

        self.store.append_turn(conversation.id, "user", message)
        self.store.touch_conversation(conversation.id)
        return self._generate(StreamingSession(conversation, cancel_token or CancellationToken()))

    def regenerate(
        self,
        conversation_id: str,
        *,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[StreamEvent]:
        """Drop the reply to the latest user turn (if any) and stream a new one."""
        conversation = self.store.get_conversation(conversation_id)
        turns = self.store.list_turns(conversation.id)

        last_user_index = next((i for i in range(len(turns) - 1, -1, -1) if turns[i].role == "user"), None)
        if last_user_index is None:
            raise NothingToRegenerate("No user message to regenerate")

        stale = next((turn for turn in reversed(turns[last_user_index + 1 :]) if turn.role == "assistant"), None)
        if stale is not None:
            logger.info("Removing assistant turn %s before regenerating", stale.id)
            self.store.delete_turn(stale.id)
        return self._generate(StreamingSession(conversation, cancel_token or CancellationToken()))

    def _generate(self, session: StreamingSession) -> Iterator[StreamEvent]:
        conversation = session.conversation
        session.state = SessionState.AWAITING_FIRST_TOKEN
        logger.info("Starting generation for conversation %s", conversation.id)
        try:
            settings = self.load_settings()
            messages = self.composer.compose(conversation.id, settings)
            selection = resolve_active_provider(settings)
            session.provider_name = selection.provider_name
            session.model_name = selection.model_name

            chunks = selection.adapter.generate(
                messages, selection.model_name, settings.sampling, session.cancel_token
            )
            with closing(chunks):
                for chunk in chunks:
                    session.cancel_token.raise_if_cancelled()
                    if chunk.is_done:
                        break
                    session.accept(chunk.text)
                    yield StreamEvent.token(chunk.text)
            session.cancel_token.raise_if_cancelled()

            self._persist(session)
            session.state = SessionState.COMPLETED
            logger.info(
                "Completed generation for conversation %s in %d ms (%d fragment(s))",
                conversation.id,
                session.latency_ms,
                len(session.fragments),
            )
            yield StreamEvent.done()
        except GenerationCancelled:
            session.state = SessionState.CANCELLED
            logger.warning(
                "Generation for conversation %s cancelled after %d fragment(s); discarding partial reply",
                conversation.id,
                len(session.fragments),
            )
        except ChatError as exc:
            session.state = SessionState.FAILED
            logger.error("Generation for conversation %s failed: %s", conversation.id, exc)
            yield StreamEvent.error(str(exc) or "Provider error")
        except Exception:
            session.state = SessionState.FAILED
            logger.exception("Unexpected failure while generating for conversation %s", conversation.id)
            yield StreamEvent.error("Generation failed")
        finally:
            if session.state not in TERMINAL_STATES:
                # The consumer closed the generator mid-stream.
                session.state = SessionState.CANCELLED
                session.cancel_token.cancel()
                logger.warning("Stream for conversation %s closed by the caller", conversation.id)

    def _persist(self, session: StreamingSession) -> None:
        conversation = session.conversation
        self.store.append_turn(conversation.id, "assistant", session.text)
        self.store.touch_conversation(conversation.id)
        self.store.record(
            UsageRecord(
                user_id=conversation.user_id,
                provider=session.provider_name,
                model=session.model_name,
                latency_ms=session.latency_ms,
            )
        )
