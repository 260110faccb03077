import pytest

from character_chat.errors import NotFound
from character_chat.models import CharacterProfile, Conversation, LoreEntry, Lorebook, Memory, UsageRecord
from character_chat.sqlite_store import SqliteStore
from character_chat.stores import InMemoryStore


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        yield InMemoryStore()
        return
    store = SqliteStore(str(tmp_path / "db" / "chat.db"))
    yield store
    store.close()


@pytest.fixture
def chat(backend):
    return backend.create_conversation(Conversation(user_id="alice", character_id="mira"))


def test_turns_keep_creation_order(backend, chat):
    for content in ["a", "b", "c", "d"]:
        backend.append_turn(chat.id, "user", content)

    assert [t.content for t in backend.list_turns(chat.id)] == ["a", "b", "c", "d"]
    assert [t.content for t in backend.list_recent_turns(chat.id, 2)] == ["d", "c"]
    assert backend.list_recent_turns(chat.id, 0) == []


def test_delete_and_get_turn(backend, chat):
    turn = backend.append_turn(chat.id, "assistant", "hello")
    assert backend.get_turn(turn.id).content == "hello"
    assert backend.delete_turn(turn.id) is True
    assert backend.delete_turn(turn.id) is False
    with pytest.raises(NotFound):
        backend.get_turn(turn.id)


def test_touch_conversation_moves_updated_at(backend, chat, monkeypatch):
    monkeypatch.setattr("time.time", lambda: chat.updated_at + 50)
    backend.touch_conversation(chat.id)
    assert backend.get_conversation(chat.id).updated_at == chat.updated_at + 50


def test_unknown_conversation(backend):
    with pytest.raises(NotFound):
        backend.get_conversation("missing")


def test_character_round_trip(backend):
    character = backend.create_character(
        CharacterProfile(owner_id="alice", name="Mira", traits="Patient", lorebook_ids=["b2", "b1"])
    )
    loaded = backend.get_character(character.id)
    assert loaded.name == "Mira"
    assert loaded.traits == "Patient"
    assert loaded.lorebook_ids == ["b2", "b1"]


def test_memories_order_by_importance_then_recency(backend):
    low = backend.create_memory(Memory(user_id="u", character_id="c", content="low", importance=1, created_at=1.0))
    old = backend.create_memory(Memory(user_id="u", character_id="c", content="old", importance=3, created_at=1.0))
    new = backend.create_memory(Memory(user_id="u", character_id="c", content="new", importance=3, created_at=2.0))
    backend.create_memory(Memory(user_id="other", character_id="c", content="theirs", importance=5))

    assert [m.id for m in backend.list_memories("u", "c")] == [new.id, old.id, low.id]
    assert [m.id for m in backend.list_memories("u", "c", limit=2)] == [new.id, old.id]


def test_memory_touch_and_delete(backend):
    memory = backend.create_memory(Memory(user_id="u", character_id="c", content="likes tea"))
    backend.touch_memory(memory.id)
    assert backend.get_memory(memory.id).last_used is not None
    assert backend.delete_memory(memory.id) is True
    with pytest.raises(NotFound):
        backend.get_memory(memory.id)


def test_lorebooks_listed_in_requested_order(backend):
    first = backend.create_lorebook(
        Lorebook(owner_id="u", name="One", entries=[LoreEntry(title="A", content="alpha", keywords="a1, a2")])
    )
    second = backend.create_lorebook(Lorebook(owner_id="u", name="Two"))

    books = backend.list_lorebooks([second.id, "missing", first.id])
    assert [b.name for b in books] == ["Two", "One"]
    entry = books[1].entries[0]
    assert (entry.title, entry.content, entry.keywords, entry.lorebook) == ("A", "alpha", "a1, a2", "One")
    assert backend.list_lorebooks([]) == []


def test_settings_upsert_and_defaults(backend):
    assert backend.get("active_model") is None
    backend.set("active_model", "gpt-4o")
    backend.set("active_model", "gpt-4o-mini")
    backend.ensure_defaults({"active_model": "gpt-3.5-turbo", "top_k": "40"})
    assert backend.get("active_model") == "gpt-4o-mini"
    assert backend.get("top_k") == "40"


def test_usage_filtered_by_user(backend):
    backend.record(UsageRecord(user_id="alice", provider="openai", model="m", latency_ms=12))
    backend.record(UsageRecord(user_id="bob", provider="gemini", model="g", latency_ms=7))

    assert len(backend.list_usage()) == 2
    [record] = backend.list_usage("bob")
    assert (record.provider, record.model, record.latency_ms) == ("gemini", "g", 7)


def test_sqlite_store_persists_across_connections(tmp_path):
    path = str(tmp_path / "chat.db")
    store = SqliteStore(path)
    chat = store.create_conversation(Conversation(user_id="alice", character_id="mira"))
    store.append_turn(chat.id, "user", "remember")
    store.close()

    reopened = SqliteStore(path)
    assert [t.content for t in reopened.list_turns(chat.id)] == ["remember"]
    reopened.close()


def test_list_conversations_most_recent_first(backend):
    quiet = backend.create_conversation(Conversation(user_id="alice", character_id="c", updated_at=1.0))
    busy = backend.create_conversation(Conversation(user_id="alice", character_id="c", updated_at=2.0))
    backend.create_conversation(Conversation(user_id="bob", character_id="c"))

    assert [c.id for c in backend.list_conversations("alice")] == [busy.id, quiet.id]
    backend.touch_conversation(quiet.id)
    assert [c.id for c in backend.list_conversations("alice")] == [quiet.id, busy.id]
    assert backend.list_conversations("carol") == []


def test_update_memory_changes_only_given_fields(backend):
    memory = backend.create_memory(Memory(user_id="u", character_id="c", content="likes tea", importance=2))

    backend.update_memory(memory.id, importance=5)
    loaded = backend.get_memory(memory.id)
    assert (loaded.content, loaded.importance) == ("likes tea", 5)

    backend.update_memory(memory.id, content="likes green tea")
    loaded = backend.get_memory(memory.id)
    assert (loaded.content, loaded.importance) == ("likes green tea", 5)

    with pytest.raises(NotFound):
        backend.update_memory("missing", content="x")
