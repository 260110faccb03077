import asyncio
import json
import time

import pytest
from fastapi.testclient import TestClient

from character_chat.api import create_app, parse_args

from conftest import openai_line

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture
def app(store):
    return create_app(store=store)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def chat(client):
    character = client.post("/characters", json={"name": "Mira", "persona": "Curious"}, headers=ALICE).json()
    return client.post("/chats", json={"character_id": character["character"]["id"]}, headers=ALICE).json()["chat"]


def _events(body):
    events = []
    for block in body.strip().split("\n\n"):
        name, data = block.split("\n", 1)
        events.append((name[len("event: "):], json.loads(data[len("data: "):])))
    return events


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_identity_header_is_required(client):
    assert client.post("/characters", json={"name": "Mira"}).status_code == 401


def test_send_message_streams_events(client, chat, fake_provider):
    fake_provider.reply([openai_line("Hi"), openai_line(" there"), "data: [DONE]"])

    response = client.post(f"/chats/{chat['id']}/messages", json={"content": "hello"}, headers=ALICE)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert _events(response.text) == [("token", {"token": "Hi"}), ("token", {"token": " there"}), ("done", {"ok": True})]

    messages = client.get(f"/chats/{chat['id']}/messages", headers=ALICE).json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hello"), ("assistant", "Hi there")]


def test_provider_failure_is_an_error_event(client, chat, fake_provider):
    fake_provider.reply(status_code=500, text="upstream down")
    response = client.post(f"/chats/{chat['id']}/messages", json={"content": "hello"}, headers=ALICE)
    [(name, data)] = _events(response.text)
    assert name == "error"
    assert "500" in data["error"]


@pytest.mark.parametrize("content", ["", "   ", "x" * 4001])
def test_invalid_message_is_rejected(client, chat, content):
    response = client.post(f"/chats/{chat['id']}/messages", json={"content": content}, headers=ALICE)
    assert response.status_code == 422


def test_unknown_or_foreign_chat_is_not_found(client, chat):
    assert client.post("/chats/missing/messages", json={"content": "hi"}, headers=ALICE).status_code == 404
    assert client.post(f"/chats/{chat['id']}/messages", json={"content": "hi"}, headers=BOB).status_code == 404
    assert client.get(f"/chats/{chat['id']}/messages", headers=BOB).status_code == 404


def test_chat_for_unknown_character(client):
    assert client.post("/chats", json={"character_id": "nope"}, headers=ALICE).status_code == 404


def test_regenerate_without_user_turn(client, chat):
    response = client.post(f"/chats/{chat['id']}/messages/regenerate", headers=ALICE)
    assert response.status_code == 400


def test_regenerate_replaces_reply(client, chat, fake_provider):
    fake_provider.reply([openai_line("first")])
    client.post(f"/chats/{chat['id']}/messages", json={"content": "hello"}, headers=ALICE)
    fake_provider.reply([openai_line("second")])

    response = client.post(f"/chats/{chat['id']}/messages/regenerate", headers=ALICE)

    assert _events(response.text)[-1] == ("done", {"ok": True})
    messages = client.get(f"/chats/{chat['id']}/messages", headers=ALICE).json()["messages"]
    assert [m["content"] for m in messages] == ["hello", "second"]


def test_private_character_hidden_from_others(client):
    created = client.post("/characters", json={"name": "Secret", "visibility": "private"}, headers=ALICE).json()
    character_id = created["character"]["id"]
    assert client.get(f"/characters/{character_id}", headers=ALICE).status_code == 200
    assert client.get(f"/characters/{character_id}", headers=BOB).status_code == 404


def test_lorebook_round_trip(client):
    created = client.post(
        "/lorebooks",
        json={"name": "Atlas", "entries": [{"title": "Coast", "content": "Cliffs.", "keywords": "coast, cliff"}]},
        headers=ALICE,
    ).json()["lorebook"]
    fetched = client.get(f"/lorebooks/{created['id']}", headers=ALICE).json()["lorebook"]
    assert fetched["entries"][0]["lorebook"] == "Atlas"
    assert client.get(f"/lorebooks/{created['id']}", headers=BOB).status_code == 404


def test_memory_from_turn_and_delete(client, chat, fake_provider):
    fake_provider.reply([openai_line("You like tea.")])
    client.post(f"/chats/{chat['id']}/messages", json={"content": "hello"}, headers=ALICE)
    reply = client.get(f"/chats/{chat['id']}/messages", headers=ALICE).json()["messages"][-1]

    created = client.post(
        "/memories",
        json={"character_id": chat["character_id"], "source_turn_id": reply["id"], "importance": 3},
        headers=ALICE,
    ).json()["memory"]
    assert created["content"] == "You like tea."

    listed = client.get("/memories", params={"character_id": chat["character_id"]}, headers=ALICE).json()
    assert [m["id"] for m in listed["memories"]] == [created["id"]]
    assert client.get("/memories", params={"character_id": chat["character_id"]}, headers=BOB).json() == {"memories": []}

    assert client.delete(f"/memories/{created['id']}", headers=BOB).status_code == 403
    assert client.delete(f"/memories/{created['id']}", headers=ALICE).json() == {"ok": True}
    assert client.delete(f"/memories/{created['id']}", headers=ALICE).status_code == 404


def test_memory_needs_content(client, chat):
    response = client.post("/memories", json={"character_id": chat["character_id"]}, headers=ALICE)
    assert response.status_code == 400


def test_settings_are_masked_and_patchable(client):
    settings = client.get("/admin/settings").json()
    assert settings["provider_configs"]["openai"]["apiKey"] == "...-key"
    assert settings["context_limit"] == 40

    response = client.patch(
        "/admin/settings",
        json={"active_model": "gpt-4o", "context_limit": 20, "provider_configs": {"gemini": {"apiKey": "g"}}},
    )
    assert response.json() == {"ok": True}

    settings = client.get("/admin/settings").json()
    assert settings["active_model"] == "gpt-4o"
    assert settings["context_limit"] == 20
    assert settings["provider_configs"]["gemini"] == {"apiKey": "***"}


def test_settings_patch_validates_ranges(client):
    assert client.patch("/admin/settings", json={"context_limit": 5}).status_code == 422
    assert client.patch("/admin/settings", json={"temperature": 3}).status_code == 422


def test_parse_args_defaults():
    args = parse_args([])
    assert (args.port, args.db_path, args.request_timeout) == (4000, "./character_chat.db", 60)


def _post_then_disconnect(app, path, payload, disconnect_after):
    """Drive the ASGI app directly; the client goes away ``disconnect_after`` seconds into the stream."""
    body = json.dumps(payload).encode()
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "POST",
        "scheme": "http",
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "query_string": b"",
        "headers": [
            (b"host", b"testserver"),
            (b"content-type", b"application/json"),
            (b"content-length", str(len(body)).encode()),
            (b"x-user-id", b"alice"),
        ],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }

    async def run():
        sent = []
        body_delivered = False

        async def receive():
            nonlocal body_delivered
            if not body_delivered:
                body_delivered = True
                return {"type": "http.request", "body": body, "more_body": False}
            await asyncio.sleep(disconnect_after)
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        await asyncio.wait_for(app(scope, receive, send), timeout=10)
        return sent

    started = time.monotonic()
    sent = asyncio.run(run())
    elapsed = time.monotonic() - started
    streamed = b"".join(m.get("body", b"") for m in sent if m["type"] == "http.response.body")
    return streamed, started, elapsed


def test_disconnect_mid_stream_discards_reply(app, store, chat, fake_provider):
    fake_provider.reply([openai_line("partial"), "data: [DONE]"], stall_at=1)

    streamed, started, elapsed = _post_then_disconnect(
        app, f"/chats/{chat['id']}/messages", {"content": "hello"}, disconnect_after=0.3
    )

    assert b"event: done" not in streamed
    assert fake_provider.response.closed
    assert fake_provider.response.closed_at - started < 2.0
    assert elapsed < 2.0
    assert [(t.role, t.content) for t in store.list_turns(chat["id"])] == [("user", "hello")]
    assert store.list_usage() == []


def test_disconnect_before_first_token_closes_provider_request(app, store, chat, fake_provider):
    fake_provider.reply([openai_line("late"), "data: [DONE]"], stall_at=0)

    streamed, started, elapsed = _post_then_disconnect(
        app, f"/chats/{chat['id']}/messages", {"content": "hello"}, disconnect_after=0.2
    )

    assert b"event: token" not in streamed
    assert fake_provider.response.closed_at - started < 1.0
    assert elapsed < 1.5
    assert [t.role for t in store.list_turns(chat["id"])] == ["user"]
    assert store.list_usage() == []


def test_list_chats_most_recent_first(client, store, fake_provider):
    character = client.post("/characters", json={"name": "Mira"}, headers=ALICE).json()["character"]
    older = client.post("/chats", json={"character_id": character["id"], "title": "older"}, headers=ALICE).json()
    newer = client.post("/chats", json={"character_id": character["id"], "title": "newer"}, headers=ALICE).json()
    client.post("/chats", json={"character_id": character["id"]}, headers=BOB)
    store.get_conversation(older["chat"]["id"]).updated_at = 1.0
    store.get_conversation(newer["chat"]["id"]).updated_at = 2.0

    fake_provider.reply([openai_line("hi")])
    client.post(f"/chats/{older['chat']['id']}/messages", json={"content": "hello"}, headers=ALICE)

    chats = client.get("/chats", headers=ALICE).json()["chats"]
    assert [c["title"] for c in chats] == ["older", "newer"]
    assert chats[0]["character_name"] == "Mira"


def test_update_memory(client, chat):
    created = client.post(
        "/memories", json={"character_id": chat["character_id"], "content": "likes tea"}, headers=ALICE
    ).json()["memory"]
    path = f"/memories/{created['id']}"

    updated = client.patch(path, json={"content": "likes green tea", "importance": 4}, headers=ALICE).json()
    assert (updated["memory"]["content"], updated["memory"]["importance"]) == ("likes green tea", 4)
    assert client.patch(path, json={}, headers=ALICE).json() == {"ok": True}
    assert client.patch(path, json={"importance": 9}, headers=ALICE).status_code == 422
    assert client.patch(path, json={"content": "mine now"}, headers=BOB).status_code == 403
    assert client.patch("/memories/missing", json={"importance": 2}, headers=ALICE).status_code == 404

    listed = client.get("/memories", params={"character_id": chat["character_id"]}, headers=ALICE).json()
    assert listed["memories"][0]["content"] == "likes green tea"
