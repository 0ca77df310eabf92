import httpx
import pytest

from marketchat.database.connection import mongo_db_dependency
from marketchat.main import build_gateway, create_app
from marketchat.utils.realtime_bus import NoopBus
from marketchat.utils.security import create_access_token

from tests.conftest import FakeHandle, UnreachableBus


@pytest.fixture
def app(db, chat_service):
    app = create_app(use_lifespan=False)
    app.dependency_overrides[mongo_db_dependency] = lambda: db
    app.state.gateway = build_gateway(db, NoopBus())
    return app


@pytest.fixture
async def client_for(app, users):
    clients = []

    def _make(name=None, token=None):
        headers = {}
        if name is not None:
            headers["Authorization"] = f"Bearer {create_access_token(users[name])}"
        elif token is not None:
            headers["Authorization"] = f"Bearer {token}"
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test", headers=headers)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def conversation(client_for, users):
    response = await client_for("alice").post("/conversations", json={"participant_id": users["bob"]})
    assert response.status_code == 201
    return response.json()


async def test_requests_without_valid_token_are_rejected(client_for):
    assert (await client_for().get("/conversations")).status_code == 401
    assert (await client_for(token="not-a-jwt").get("/conversations")).status_code == 401
    ghost = create_access_token("6530f0f0f0f0f0f0f0f0f0f0")
    assert (await client_for(token=ghost).get("/conversations")).status_code == 401


async def test_start_conversation_is_idempotent(client_for, users, conversation):
    again = await client_for("bob").post("/conversations", json={"participant_id": users["alice"]})

    assert again.status_code == 200
    assert again.json()["id"] == conversation["id"]
    assert sorted(conversation["participants"]) == sorted([users["alice"], users["bob"]])
    assert conversation["latest_message"] is None


async def test_start_conversation_with_self_is_bad_request(client_for, users):
    response = await client_for("alice").post("/conversations", json={"participant_id": users["alice"]})
    assert response.status_code == 400
    assert response.json()["detail"]


async def test_send_and_list_messages(client_for, conversation):
    alice, bob = client_for("alice"), client_for("bob")

    first = await alice.post("/messages", json={"conversation_id": conversation["id"], "content": "Hello"})
    second = await bob.post("/messages", json={"conversation_id": conversation["id"], "content": "Hi back"})
    assert first.status_code == second.status_code == 201

    listing = await alice.get(f"/conversations/{conversation['id']}/messages")
    assert listing.status_code == 200
    assert [m["id"] for m in listing.json()["items"]] == [first.json()["id"], second.json()["id"]]

    conversations = (await bob.get("/conversations")).json()
    assert conversations["items"][0]["latest_message"]["content"] == "Hi back"
    assert conversations["next_cursor"] is None


async def test_outsider_cannot_read_or_write(client_for, conversation):
    carol = client_for("carol")

    assert (await carol.get(f"/conversations/{conversation['id']}/messages")).status_code == 403
    send = await carol.post("/messages", json={"conversation_id": conversation["id"], "content": "hey"})
    assert send.status_code == 403
    listing = await client_for("alice").get(f"/conversations/{conversation['id']}/messages")
    assert listing.json()["items"] == []


async def test_invalid_content_and_unknown_conversation(client_for, conversation):
    alice = client_for("alice")

    blank = await alice.post("/messages", json={"conversation_id": conversation["id"], "content": "   "})
    assert blank.status_code == 400
    huge = await alice.post("/messages", json={"conversation_id": conversation["id"], "content": "x" * 2001})
    assert huge.status_code == 400
    missing = await alice.post("/messages", json={"conversation_id": "6530f0f0f0f0f0f0f0f0f0f0", "content": "hi"})
    assert missing.status_code == 404
    assert (await alice.get("/conversations/not-an-id/messages")).status_code == 404


async def test_edit_and_delete_message(client_for, conversation):
    alice, bob = client_for("alice"), client_for("bob")
    sent = (await alice.post("/messages", json={"conversation_id": conversation["id"], "content": "helo"})).json()

    assert (await bob.put(f"/messages/{sent['id']}", json={"content": "mine"})).status_code == 403
    edited = await alice.put(f"/messages/{sent['id']}", json={"content": "hello"})
    assert edited.status_code == 200
    assert edited.json()["content"] == "hello"

    assert (await bob.delete(f"/messages/{sent['id']}")).status_code == 403
    assert (await alice.delete(f"/messages/{sent['id']}")).status_code == 204
    assert (await alice.delete(f"/messages/{sent['id']}")).status_code == 404


async def test_created_message_is_pushed_to_subscribed_connections(app, client_for, conversation, users):
    gateway = app.state.gateway
    bob_socket = FakeHandle("bob")
    await gateway.handle_event(bob_socket, "setup", {"token": create_access_token(users["bob"])})
    await gateway.handle_event(bob_socket, "join_chat", conversation["id"])

    sent = (await client_for("alice").post("/messages", json={"conversation_id": conversation["id"], "content": "live"})).json()

    pushed = bob_socket.events("message_received")
    assert [(m["id"], m["content"]) for m in pushed] == [(sent["id"], "live")]
    assert pushed[0]["sender_id"] == users["alice"]


async def test_presence_reflects_gateway_connections(app, client_for, users):
    gateway = app.state.gateway
    alice = client_for("alice")

    assert (await alice.get(f"/presence/{users['bob']}")).json() == {"user_id": users["bob"], "online": False}

    bob_socket = FakeHandle("bob")
    await gateway.handle_event(bob_socket, "setup", {"token": create_access_token(users["bob"])})
    assert (await alice.get(f"/presence/{users['bob']}")).json()["online"] is True

    await gateway.disconnect(bob_socket)
    assert (await alice.get(f"/presence/{users['bob']}")).json()["online"] is False


async def test_root_reports_gateway_stats(client_for):
    body = (await client_for().get("/")).json()
    assert body["status"] == "ok"
    assert body["distributed"] is False
    assert body["connections"] == 0


async def test_writes_succeed_when_fan_out_is_unreachable(app, db, client_for, conversation):
    bus = UnreachableBus()
    app.state.gateway = build_gateway(db, bus)
    alice = client_for("alice")

    sent = await alice.post("/messages", json={"conversation_id": conversation["id"], "content": "still here"})
    assert sent.status_code == 201
    message_id = sent.json()["id"]
    listing = (await alice.get(f"/conversations/{conversation['id']}/messages")).json()
    assert [m["id"] for m in listing["items"]] == [message_id]

    assert (await alice.put(f"/messages/{message_id}", json={"content": "edited"})).status_code == 200
    assert (await alice.delete(f"/messages/{message_id}")).status_code == 204
    assert bus.attempts == 3
