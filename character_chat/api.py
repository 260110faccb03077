"""FastAPI entry point for the character chat service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Dict, Iterator, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator
import uvicorn

from .config import DEFAULT_SETTINGS, ServerConfig
from .errors import NothingToRegenerate, NotFound
from .llm_client import CancellationToken
from .models import CharacterProfile, Conversation, LoreEntry, Lorebook, Memory
from .service import ChatService, StreamEvent
from .sqlite_store import SqliteStore
from .stores import ChatStore
from .utils import setup_logging

logger = logging.getLogger(__name__)


# ---------- Request Models ----------
class CharacterRequest(BaseModel):
    name: str = Field(..., min_length=2)
    description: str = ""
    system_prompt: str = ""
    example_dialogue: str = ""
    persona: str = ""
    scenario: str = ""
    traits: str = ""
    speaking_style: str = ""
    goals: str = ""
    knowledge: str = ""
    constraints: str = ""
    voice: str = ""
    greeting: str = ""
    lorebook_ids: List[str] = Field(default_factory=list)
    visibility: Literal["public", "private"] = "public"

    @validator(
        "name",
        "description",
        "system_prompt",
        "example_dialogue",
        "persona",
        "scenario",
        "traits",
        "speaking_style",
        "goals",
        "knowledge",
        "constraints",
        "voice",
        "greeting",
    )
    def _strip(cls, value: str) -> str:
        return value.strip()


class LoreEntryRequest(BaseModel):
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    keywords: str = ""


class LorebookRequest(BaseModel):
    name: str = Field(..., min_length=2)
    description: str = ""
    entries: List[LoreEntryRequest] = Field(default_factory=list)
    visibility: Literal["public", "private"] = "private"


class ChatCreateRequest(BaseModel):
    character_id: str = Field(..., min_length=1)
    title: Optional[str] = None


class MessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=4000, description="User message to send to the character.")

    @validator("content")
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value


class MemoryRequest(BaseModel):
    character_id: str = Field(..., min_length=1)
    content: Optional[str] = None
    source_turn_id: Optional[str] = Field(None, description="Copy the text of this turn into the memory.")
    importance: int = Field(1, ge=1, le=5)


class MemoryUpdateRequest(BaseModel):
    content: Optional[str] = Field(None, min_length=1)
    importance: Optional[int] = Field(None, ge=1, le=5)


class SettingsUpdateRequest(BaseModel):
    active_provider: Optional[str] = Field(None, min_length=1)
    active_model: Optional[str] = Field(None, min_length=1)
    provider_configs: Optional[Dict[str, Dict[str, Any]]] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    presence_penalty: Optional[float] = Field(None, ge=-2, le=2)
    frequency_penalty: Optional[float] = Field(None, ge=-2, le=2)
    stop_sequences: Optional[str] = None
    max_tokens: Optional[int] = Field(None, ge=64, le=4096)
    context_limit: Optional[int] = Field(None, ge=10, le=200)
    memory_limit: Optional[int] = Field(None, ge=0, le=50)
    lorebook_limit: Optional[int] = Field(None, ge=0, le=50)
    global_system_prefix: Optional[str] = None
    top_k: Optional[int] = Field(None, ge=1, le=100)


# ---------- Helpers ----------
def current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity; authentication itself happens in front of this service."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


def _mask_key(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not config:
        return {}
    masked = dict(config)
    key = masked.get("apiKey")
    if isinstance(key, str) and key:
        masked["apiKey"] = f"...{key[-4:]}" if len(key) > 8 else "***"
    return masked


async def _watch_disconnect(request: Request, cancel_token: CancellationToken) -> None:
    """Cancel the generation as soon as the client goes away, even mid-read."""
    while not cancel_token.cancelled:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            logger.info("Client disconnected; cancelling generation")
            cancel_token.cancel()
            return


def _event_stream(events: Iterator[StreamEvent], request: Request, cancel_token: CancellationToken) -> StreamingResponse:
    async def relay():
        # A threadpool read cannot be interrupted, so disconnects are watched separately.
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_token))
        try:
            async for event in iterate_in_threadpool(events):
                if cancel_token.cancelled:
                    break
                yield event.encode()
        finally:
            watcher.cancel()
            cancel_token.cancel()
            # The provider response is closed by now, so this returns without blocking.
            events.close()

    return StreamingResponse(
        relay(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ---------- FastAPI Factory ----------
def create_app(
    store: Optional[ChatStore] = None,
    config: Optional[ServerConfig] = None,
    *,
    log_dir: Optional[str] = None,
) -> FastAPI:
    config = config or ServerConfig()
    log_dir = log_dir or config.log_dir
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    store = store or SqliteStore(config.database_path)
    store.ensure_defaults(DEFAULT_SETTINGS)
    service = ChatService(store, config)

    app = FastAPI(title="Character Chat", version="0.1.0")
    app.state.service = service

    def owned_conversation(chat_id: str, user_id: str) -> Conversation:
        try:
            conversation = service.store.get_conversation(chat_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="Chat not found") from exc
        if conversation.user_id != user_id:
            raise HTTPException(status_code=404, detail="Chat not found")
        return conversation

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/characters")
    def create_character(request: CharacterRequest, user_id: str = Depends(current_user_id)):
        character = service.store.create_character(CharacterProfile(owner_id=user_id, **request.dict()))
        logger.info("Created character %s (%s)", character.id, character.name)
        return {"character": asdict(character)}

    @app.get("/characters/{character_id}")
    def get_character(character_id: str, user_id: str = Depends(current_user_id)):
        try:
            character = service.store.get_character(character_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if character.visibility == "private" and character.owner_id != user_id:
            raise HTTPException(status_code=404, detail="Character not found")
        return {"character": asdict(character)}

    @app.post("/lorebooks")
    def create_lorebook(request: LorebookRequest, user_id: str = Depends(current_user_id)):
        lorebook = Lorebook(
            owner_id=user_id,
            name=request.name,
            description=request.description,
            entries=[LoreEntry(lorebook=request.name, **entry.dict()) for entry in request.entries],
            visibility=request.visibility,
        )
        service.store.create_lorebook(lorebook)
        return {"lorebook": asdict(lorebook)}

    @app.get("/lorebooks/{lorebook_id}")
    def get_lorebook(lorebook_id: str, user_id: str = Depends(current_user_id)):
        try:
            lorebook = service.store.get_lorebook(lorebook_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        if lorebook.visibility == "private" and lorebook.owner_id != user_id:
            raise HTTPException(status_code=404, detail="Lorebook not found")
        return {"lorebook": asdict(lorebook)}

    @app.post("/chats")
    def create_chat(request: ChatCreateRequest, user_id: str = Depends(current_user_id)):
        try:
            service.store.get_character(request.character_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="Character not found") from exc
        conversation = service.store.create_conversation(
            Conversation(user_id=user_id, character_id=request.character_id, title=request.title or "New chat")
        )
        return {"chat": asdict(conversation)}

    @app.get("/chats")
    def list_chats(user_id: str = Depends(current_user_id)):
        chats = []
        for conversation in service.store.list_conversations(user_id):
            try:
                character_name = service.store.get_character(conversation.character_id).name
            except NotFound:
                character_name = None
            chats.append({**asdict(conversation), "character_name": character_name})
        return {"chats": chats}

    @app.get("/chats/{chat_id}/messages")
    def list_messages(chat_id: str, user_id: str = Depends(current_user_id)):
        owned_conversation(chat_id, user_id)
        return {"messages": [turn.as_dict() for turn in service.store.list_turns(chat_id)]}

    @app.post("/chats/{chat_id}/messages")
    async def send_message(
        chat_id: str,
        payload: MessageRequest,
        request: Request,
        user_id: str = Depends(current_user_id),
    ):
        await run_in_threadpool(owned_conversation, chat_id, user_id)
        logger.info("Streaming reply for chat %s", chat_id)
        cancel_token = CancellationToken()
        try:
            events = await run_in_threadpool(
                service.stream_reply, chat_id, payload.content, cancel_token=cancel_token
            )
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _event_stream(events, request, cancel_token)

    @app.post("/chats/{chat_id}/messages/regenerate")
    async def regenerate(chat_id: str, request: Request, user_id: str = Depends(current_user_id)):
        await run_in_threadpool(owned_conversation, chat_id, user_id)
        logger.info("Regenerating reply for chat %s", chat_id)
        cancel_token = CancellationToken()
        try:
            events = await run_in_threadpool(service.regenerate, chat_id, cancel_token=cancel_token)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except NothingToRegenerate as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _event_stream(events, request, cancel_token)

    @app.get("/memories")
    def list_memories(character_id: str, user_id: str = Depends(current_user_id)):
        memories = service.store.list_memories(user_id, character_id)
        return {"memories": [asdict(memory) for memory in memories]}

    @app.post("/memories")
    def create_memory(request: MemoryRequest, user_id: str = Depends(current_user_id)):
        try:
            service.store.get_character(request.character_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="Character not found") from exc

        content = (request.content or "").strip()
        if request.source_turn_id:
            try:
                turn = service.store.get_turn(request.source_turn_id)
            except NotFound as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            owned_conversation(turn.conversation_id, user_id)
            content = content or turn.content
        if not content:
            raise HTTPException(status_code=400, detail="content or source_turn_id is required")

        memory = service.store.create_memory(
            Memory(
                user_id=user_id,
                character_id=request.character_id,
                content=content,
                importance=request.importance,
                source_turn_id=request.source_turn_id,
            )
        )
        return {"memory": asdict(memory)}

    @app.patch("/memories/{memory_id}")
    def update_memory(memory_id: str, request: MemoryUpdateRequest, user_id: str = Depends(current_user_id)):
        try:
            memory = service.store.get_memory(memory_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="Not found") from exc
        if memory.user_id != user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        updates = request.dict(exclude_none=True)
        if not updates:
            return {"ok": True}
        memory = service.store.update_memory(memory_id, **updates)
        return {"memory": asdict(memory)}

    @app.delete("/memories/{memory_id}")
    def delete_memory(memory_id: str, user_id: str = Depends(current_user_id)):
        try:
            memory = service.store.get_memory(memory_id)
        except NotFound as exc:
            raise HTTPException(status_code=404, detail="Not found") from exc
        if memory.user_id != user_id:
            raise HTTPException(status_code=403, detail="Forbidden")
        service.store.delete_memory(memory_id)
        return {"ok": True}

    @app.get("/admin/settings")
    def get_settings():
        """Admin only; an access-gating proxy in front of this service is expected to enforce that."""
        settings = service.load_settings()
        view = asdict(settings)
        view.pop("request_timeout", None)
        view["provider_configs"] = {name: _mask_key(cfg) for name, cfg in settings.provider_configs.items()}
        return view

    @app.patch("/admin/settings")
    def update_settings(request: SettingsUpdateRequest):
        """Admin only, gated in front of this service like `get_settings`."""
        updates = request.dict(exclude_none=True)
        provider_configs = updates.pop("provider_configs", {}) or {}
        for key, value in updates.items():
            service.store.set(key, str(value))
        for name, provider_config in provider_configs.items():
            service.store.set(f"provider_config_{name}", json.dumps(provider_config))
        logger.info("Updated settings: %s", ", ".join(sorted(list(updates) + list(provider_configs))) or "none")
        return {"ok": True}

    return app


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the character chat service with streaming replies.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=4000, help="Port to bind.")
    parser.add_argument("--db_path", default="./character_chat.db", help="SQLite database file.")
    parser.add_argument("--log_dir", help="Directory for application logs.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for provider calls (seconds).")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = ServerConfig(
        host=args.host,
        port=args.port,
        database_path=args.db_path,
        log_dir=args.log_dir,
        request_timeout=args.request_timeout,
    )

    app = create_app(config=config)
    logger.info("Starting character chat service on %s:%d", config.host, config.port)
    uvicorn.run(app, host=config.host, port=config.port)


if __name__ == "__main__":
    main()
