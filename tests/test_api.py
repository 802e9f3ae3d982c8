"""Tests for the HTTP and WebSocket surface."""

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from kinship.core.deps import get_feed
from kinship.core.token import create_access_token
from kinship.friends.graph_store import FriendGraphStore
from kinship.infra.db import create_engine, create_session_factory, get_db, get_session_factory, init_models
from kinship.main import create_app
from kinship.models.friend import FriendRole
from kinship.realtime.feed import ChangeFeed

from factories import create_profile, create_user, make_friends


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


def _build_app(session_factory, change_feed):
    app = create_app()

    async def _db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_feed] = lambda: change_feed
    app.dependency_overrides[get_db] = _db
    return app


@pytest.fixture
async def client(session_factory, change_feed):
    app = _build_app(session_factory, change_feed)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestAuth:
    async def test_missing_token(self, client):
        response = await client.get("/user/friends")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_REQUIRED"

    async def test_invalid_token(self, client):
        response = await client.get("/user/friends", headers={"Authorization": "Bearer not-a-token"})

        assert response.status_code == 401


class TestRequestId:
    async def test_echoes_incoming_request_id(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    async def test_generates_request_id(self, client):
        response = await client.get("/health")

        assert len(response.headers["x-request-id"]) == 32

class TestFriendRoutes:
    async def test_request_accept_flow(self, client, alice, bob):
        sent = await client.post(
            "/user/friend/request",
            json={"email": "bob@example.com", "message": "hi"},
            headers=_auth(alice.id),
        )
        assert sent.status_code == 201
        request_id = sent.json()["id"]

        received = await client.get("/user/friend/requests/received", headers=_auth(bob.id))
        assert [r["id"] for r in received.json()] == [request_id]

        accepted = await client.post(f"/user/friend/request/{request_id}/accept", headers=_auth(bob.id))
        assert accepted.status_code == 200
        body = accepted.json()
        assert body["request"]["status"] == "accepted"
        assert [f["friend_id"] for f in body["friends"]] == [alice.id]
        assert body["grants"] == [{"owner_id": alice.id, "role": "none"}]

    async def test_duplicate_request_conflict(self, client, alice, bob):
        await client.post("/user/friend/request", json={"user_id": bob.id}, headers=_auth(alice.id))

        response = await client.post("/user/friend/request", json={"user_id": alice.id}, headers=_auth(bob.id))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_REQUEST"

    async def test_request_needs_a_target(self, client, alice):
        response = await client.post("/user/friend/request", json={}, headers=_auth(alice.id))

        assert response.status_code == 422

    async def test_unknown_email(self, client, alice):
        response = await client.post(
            "/user/friend/request", json={"email": "ghost@example.com"}, headers=_auth(alice.id)
        )

        assert response.status_code == 404

    async def test_decline_and_cancel(self, client, alice, bob, carol):
        to_bob = (await client.post("/user/friend/request", json={"user_id": bob.id}, headers=_auth(alice.id))).json()
        to_carol = (
            await client.post("/user/friend/request", json={"user_id": carol.id}, headers=_auth(alice.id))
        ).json()

        declined = await client.post(f"/user/friend/request/{to_bob['id']}/decline", headers=_auth(bob.id))
        cancelled = await client.delete(f"/user/friend/request/{to_carol['id']}", headers=_auth(alice.id))
        sent = await client.get("/user/friend/requests/sent", headers=_auth(alice.id))

        assert declined.json()["status"] == "declined"
        assert cancelled.status_code == 204
        assert sent.json() == []

    async def test_role_change_returns_fresh_grants(self, client, session_factory, friends):
        alice, bob = friends
        await create_profile(session_factory, bob.id, "Bea")
        bob_rows = (await client.get("/user/friends", headers=_auth(bob.id))).json()

        response = await client.patch(
            f"/user/friends/{bob_rows[0]['friendship_id']}/role",
            json={"role": "viewer"},
            headers=_auth(bob.id),
        )
        assert response.status_code == 200
        assert response.json()["friendship"]["role"] == "viewer"

        visible = await client.get("/user/profiles/visible", headers=_auth(alice.id))
        assert [(p["name"], p["is_own"], p["access_role"]) for p in visible.json()] == [("Bea", False, "viewer")]

    async def test_grantee_cannot_change_role(self, client, friends):
        alice, bob = friends
        bob_rows = (await client.get("/user/friends", headers=_auth(bob.id))).json()

        response = await client.patch(
            f"/user/friends/{bob_rows[0]['friendship_id']}/role",
            json={"role": FriendRole.ADMINISTRATOR.value},
            headers=_auth(alice.id),
        )

        assert response.status_code == 403

    async def test_remove_friend(self, client, friends):
        alice, bob = friends
        rows = (await client.get("/user/friends", headers=_auth(alice.id))).json()

        response = await client.delete(f"/user/friends/{rows[0]['friendship_id']}", headers=_auth(alice.id))

        assert response.json()["removed"] == 2
        assert response.json()["grants"] == []
        assert (await client.get("/user/friends", headers=_auth(bob.id))).json() == []

    async def test_search(self, client, session_factory, alice):
        await create_user(session_factory, "Roberta")

        response = await client.get("/user/friend/search", params={"q": "rob"}, headers=_auth(alice.id))

        assert [c["display_name"] for c in response.json()] == ["Roberta"]


class TestDmRoutes:
    async def test_message_flow(self, client, friends):
        alice, bob = friends
        started = await client.post("/dm/start", json={"friend_id": bob.id}, headers=_auth(alice.id))
        assert started.status_code == 200
        conversation_id = started.json()["id"]
        assert started.json()["friend_name"] == "Bob"

        sent = await client.post(
            f"/dm/{conversation_id}/messages", json={"content": "hello bob"}, headers=_auth(alice.id)
        )
        assert sent.status_code == 201
        assert sent.json()["seq"] == 1

        unread = (await client.get("/dm/unread", headers=_auth(bob.id))).json()
        assert unread["total"] == 1
        assert unread["friends"][0]["conversation_id"] == conversation_id

        page = await client.get(f"/dm/{conversation_id}/messages", headers=_auth(bob.id))
        assert [m["content"] for m in page.json()["messages"]] == ["hello bob"]

        read = await client.post(f"/dm/{conversation_id}/read", headers=_auth(bob.id))
        assert read.json()["marked"] == [sent.json()["id"]]
        assert read.json()["unread_count"] == 0

        again = await client.post(f"/dm/messages/{sent.json()['id']}/read", headers=_auth(bob.id))
        assert again.json()["changed"] is False

    async def test_start_same_conversation_from_both_sides(self, client, friends):
        alice, bob = friends
        first = await client.post("/dm/start", json={"friend_id": bob.id}, headers=_auth(alice.id))
        second = await client.post("/dm/start", json={"friend_id": alice.id}, headers=_auth(bob.id))

        assert first.json()["id"] == second.json()["id"]

    async def test_requires_friendship(self, client, alice, carol):
        response = await client.post("/dm/start", json={"friend_id": carol.id}, headers=_auth(alice.id))

        assert response.status_code == 403

    async def test_outsider_cannot_read(self, client, friends, carol):
        alice, bob = friends
        started = await client.post("/dm/start", json={"friend_id": bob.id}, headers=_auth(alice.id))

        response = await client.get(f"/dm/{started.json()['id']}/messages", headers=_auth(carol.id))

        assert response.status_code == 403

    async def test_empty_message_rejected(self, client, friends):
        alice, bob = friends
        started = await client.post("/dm/start", json={"friend_id": bob.id}, headers=_auth(alice.id))

        response = await client.post(
            f"/dm/{started.json()['id']}/messages", json={"content": ""}, headers=_auth(alice.id)
        )

        assert response.status_code == 422

    async def test_unfriended_caller_cannot_mark_message_read(self, client, friends):
        alice, bob = friends
        started = await client.post("/dm/start", json={"friend_id": bob.id}, headers=_auth(alice.id))
        sent = await client.post(
            f"/dm/{started.json()['id']}/messages", json={"content": "before the split"}, headers=_auth(alice.id)
        )
        rows = (await client.get("/user/friends", headers=_auth(bob.id))).json()
        await client.delete(f"/user/friends/{rows[0]['friendship_id']}", headers=_auth(bob.id))

        response = await client.post(f"/dm/messages/{sent.json()['id']}/read", headers=_auth(bob.id))

        assert response.status_code == 403
        page = await client.get(f"/dm/{started.json()['id']}/messages", headers=_auth(alice.id))
        assert page.status_code == 403

    async def test_mark_unknown_message_read(self, client, alice):
        response = await client.post("/dm/messages/msg_missing/read", headers=_auth(alice.id))

        assert response.status_code == 404


class TestWebSocket:
    def test_streams_messages_and_read_frames(self, tmp_path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}")
        session_factory = create_session_factory(engine)
        app = _build_app(session_factory, ChangeFeed())

        async def seed():
            await init_models(engine)
            alice = await create_user(session_factory, "Alice", "user_alice")
            bob = await create_user(session_factory, "Bob", "user_bob")
            await make_friends(FriendGraphStore(session_factory), alice.id, bob.id)

        with TestClient(app) as client:
            client.portal.call(seed)
            started = client.post("/dm/start", json={"friend_id": "user_bob"}, headers=_auth("user_alice"))
            conversation_id = started.json()["id"]
            token = create_access_token({"sub": "user_bob"})

            with client.websocket_connect(f"/dm/ws/{conversation_id}?token={token}") as ws:
                assert ws.receive_json()["type"] == "dm.connected"

                client.post(
                    f"/dm/{conversation_id}/messages", json={"content": "ping bob"}, headers=_auth("user_alice")
                )
                pushed = ws.receive_json()
                assert pushed["type"] == "dm.message"
                assert pushed["data"]["content"] == "ping bob"

                ws.send_json({"type": "read"})
                frames = [ws.receive_json(), ws.receive_json()]
                assert {f["type"] for f in frames} == {"dm.message.updated", "dm.read"}

            client.portal.call(engine.dispose)

    def test_rejects_missing_token(self, tmp_path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'ws.db'}")
        app = _build_app(create_session_factory(engine), ChangeFeed())

        with TestClient(app) as client:
            with pytest.raises(WebSocketDisconnect) as excinfo:
                with client.websocket_connect("/dm/ws/conv_missing"):
                    pass

        assert excinfo.value.code == 4003
