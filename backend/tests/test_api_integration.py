"""Integration tests exercising API endpoints via FastAPI's TestClient."""

from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

from app.models import AccountStatus


def send_request(client: TestClient, headers: dict[str, str], **payload: Any) -> dict[str, Any]:
    response = client.post("/api/friends/requests", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def open_direct(client: TestClient, headers: dict[str, str], user_id: int) -> dict[str, Any]:
    response = client.post("/api/conversations/direct", json={"user_id": user_id}, headers=headers)
    assert response.status_code in (200, 201), response.text
    return response.json()


def post_message(client: TestClient, headers: dict[str, str], conversation_id: int, content: str):
    return client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": content},
        headers=headers,
    )


def test_health_and_metrics(client: TestClient) -> None:
    assert client.get("/health").json()["status"] == "ok"

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "# TYPE messages_appended_total counter" in response.text


def test_requests_require_authentication(client: TestClient, make_user, token_for) -> None:
    response = client.get("/api/friends")
    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    assert response.headers["www-authenticate"] == "Bearer"

    suspended = make_user("ghost", status=AccountStatus.SUSPENDED)
    response = client.get("/api/conversations", headers={"Authorization": f"Bearer {token_for(suspended)}"})
    assert response.status_code == 401


def test_friend_request_accept_flow(client: TestClient, make_user, headers_for, token_for) -> None:
    """A requests B, B accepts: the friendship exists and A hears about it."""

    alice, bob = make_user("alice"), make_user("bob", display_name="Bobby")

    with client.websocket_connect(f"/ws/events?token={token_for(alice)}") as alice_stream:
        alice_stream.receive_json()
        request = send_request(client, headers_for(alice), recipient_id=bob)
        assert request["status"] == "pending"
        assert request["recipient"]["display_name"] == "Bobby"
        assert alice_stream.receive_json()["type"] == "friendRequest.created"

        pending = client.get("/api/friends/requests", headers=headers_for(bob)).json()
        assert [item["id"] for item in pending["incoming"]] == [request["id"]]
        assert pending["outgoing"] == []

        response = client.post(
            f"/api/friends/requests/{request['id']}/respond",
            json={"decision": "accept"},
            headers=headers_for(bob),
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "accepted"

        resolved = alice_stream.receive_json()
        assert resolved["type"] == "friendRequest.resolved"
        assert resolved["request"]["status"] == "accepted"

    friends = client.get("/api/friends", headers=headers_for(alice)).json()
    assert [friend["id"] for friend in friends] == [bob]
    assert friends[0]["friends_since"]

    again = client.post(
        f"/api/friends/requests/{request['id']}/respond",
        json={"decision": "decline"},
        headers=headers_for(bob),
    )
    assert again.status_code == 409
    assert again.json() == {
        "detail": "Friend request is no longer pending",
        "code": "already_resolved",
        "request_id": request["id"],
        "status": "accepted",
    }

    duplicate = client.post("/api/friends/requests", json={"username": "alice"}, headers=headers_for(bob))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "already_friends"

    assert client.delete(f"/api/friends/{bob}", headers=headers_for(alice)).status_code == 204
    assert client.get("/api/friends", headers=headers_for(bob)).json() == []


def test_friend_request_errors(client: TestClient, make_user, headers_for) -> None:
    alice, bob = make_user("alice"), make_user("bob")

    response = client.post("/api/friends/requests", json={"recipient_id": alice}, headers=headers_for(alice))
    assert response.status_code == 422
    assert response.json()["code"] == "invalid_target"

    response = client.post("/api/friends/requests", json={}, headers=headers_for(alice))
    assert response.status_code == 422

    response = client.post("/api/friends/requests", json={"username": "nobody"}, headers=headers_for(alice))
    assert response.status_code == 404

    request = send_request(client, headers_for(alice), username="bob")
    response = client.post("/api/friends/requests", json={"recipient_id": alice}, headers=headers_for(bob))
    assert response.status_code == 409
    assert response.json()["code"] == "duplicate_pending"
    assert response.json()["request_id"] == request["id"]

    response = client.post(f"/api/friends/requests/{request['id']}/cancel", headers=headers_for(bob))
    assert response.status_code == 403

    response = client.post(
        f"/api/friends/requests/{request['id']}/respond",
        json={"decision": "maybe"},
        headers=headers_for(bob),
    )
    assert response.status_code == 422


def test_direct_conversation_is_idempotent(client: TestClient, make_user, headers_for) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    request = send_request(client, headers_for(alice), recipient_id=bob)
    client.post(
        f"/api/friends/requests/{request['id']}/respond",
        json={"decision": "accept"},
        headers=headers_for(bob),
    )

    first = client.post("/api/conversations/direct", json={"user_id": bob}, headers=headers_for(alice))
    second = client.post("/api/conversations/direct", json={"user_id": alice}, headers=headers_for(bob))

    assert first.status_code == 201
    assert second.status_code == 200
    assert first.json()["id"] == second.json()["id"]
    assert first.json()["type"] == "direct"
    assert {member["user"]["id"] for member in first.json()["members"]} == {alice, bob}


def test_offline_member_reads_history(client: TestClient, make_user, headers_for, token_for) -> None:
    """Messages sent while B is offline are only available through history."""

    alice, bob = make_user("alice"), make_user("bob")
    conversation = open_direct(client, headers_for(alice), bob)

    sent = [post_message(client, headers_for(alice), conversation["id"], f"note {index}") for index in range(3)]
    assert [response.json()["sequence"] for response in sent] == [1, 2, 3]

    with client.websocket_connect(f"/ws/events?token={token_for(bob)}") as bob_stream:
        assert bob_stream.receive_json()["type"] == "ready"

        history = client.get(f"/api/conversations/{conversation['id']}/messages", headers=headers_for(bob))
        assert history.status_code == 200
        page = history.json()
        assert [item["sequence"] for item in page["items"]] == [3, 2, 1]
        assert [item["content"] for item in page["items"]] == ["note 2", "note 1", "note 0"]
        assert page["has_more"] is False

        bob_stream.send_text("ping")
        assert bob_stream.receive_json() == {"type": "pong"}

    listing = client.get("/api/conversations", headers=headers_for(bob)).json()
    assert listing[0]["unread_count"] == 3
    assert listing[0]["last_message"]["sequence"] == 3

    marker = client.post(f"/api/conversations/{conversation['id']}/read", headers=headers_for(bob))
    assert marker.json() == {"conversation_id": conversation["id"], "last_read_sequence": 3, "unread_count": 0}


def test_message_history_paging(client: TestClient, make_user, headers_for) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    conversation = open_direct(client, headers_for(alice), bob)
    for index in range(5):
        post_message(client, headers_for(bob), conversation["id"], f"m{index}")

    url = f"/api/conversations/{conversation['id']}/messages"
    page = client.get(url, params={"limit": 2}, headers=headers_for(alice)).json()
    assert [item["sequence"] for item in page["items"]] == [5, 4]
    assert page["next_before"] == 4

    page = client.get(url, params={"limit": 2, "before": page["next_before"]}, headers=headers_for(alice)).json()
    assert [item["sequence"] for item in page["items"]] == [3, 2]

    for limit in (0, -1):
        assert client.get(url, params={"limit": limit}, headers=headers_for(alice)).status_code == 422


def test_message_errors(client: TestClient, make_user, headers_for) -> None:
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    conversation = open_direct(client, headers_for(alice), bob)

    response = post_message(client, headers_for(eve), conversation["id"], "x")
    assert response.status_code == 403
    assert response.json()["code"] == "not_a_member"

    response = post_message(client, headers_for(alice), conversation["id"], "   ")
    assert response.status_code == 422
    assert response.json()["code"] == "empty_content"

    response = post_message(client, headers_for(alice), conversation["id"], "y" * 5000)
    assert response.status_code == 422
    assert response.json()["code"] == "content_too_long"
    assert response.json()["max_length"] == 2000

    response = client.get("/api/conversations/999/messages", headers=headers_for(alice))
    assert response.status_code == 404


def test_group_lifecycle(client: TestClient, make_user, headers_for) -> None:
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")

    response = client.post(
        "/api/conversations/groups",
        json={"name": "Book club", "member_ids": [bob]},
        headers=headers_for(alice),
    )
    assert response.status_code == 201, response.text
    group = response.json()
    assert group["type"] == "group"
    assert group["creator_id"] == alice

    response = client.patch(f"/api/conversations/{group['id']}", json={"name": "Readers"}, headers=headers_for(bob))
    assert response.json()["name"] == "Readers"

    response = client.post(
        f"/api/conversations/{group['id']}/members", json={"user_id": carol}, headers=headers_for(bob)
    )
    assert response.status_code == 201
    assert response.json()["user"]["username"] == "carol"

    response = client.post(
        f"/api/conversations/{group['id']}/members", json={"user_id": carol}, headers=headers_for(alice)
    )
    assert response.status_code == 409
    assert response.json()["code"] == "already_member"

    response = client.delete(f"/api/conversations/{group['id']}/members/{carol}", headers=headers_for(bob))
    assert response.status_code == 403

    response = client.delete(f"/api/conversations/{group['id']}/members/{carol}", headers=headers_for(alice))
    assert response.status_code == 204

    response = client.patch(f"/api/conversations/{group['id']}", json={"name": " "}, headers=headers_for(alice))
    assert response.status_code == 422
    assert response.json()["code"] == "invalid_name"

    listing = client.get("/api/conversations", headers=headers_for(carol)).json()
    assert listing == []


def test_user_search(client: TestClient, make_user, headers_for) -> None:
    alice = make_user("alice")
    make_user("alfred", display_name="Alfie")
    make_user("bob", display_name="Albatross")

    response = client.get("/api/users/search", params={"q": "al"}, headers=headers_for(alice))
    assert response.status_code == 200
    results = response.json()
    assert [item["username"] for item in results] == ["alfred", "bob"]
    assert all(item["friendship"] == "none" and item["presence"] == "offline" for item in results)

    response = client.get("/api/users/search", params={"q": "al", "limit": 1}, headers=headers_for(alice))
    assert len(response.json()) == 1

    assert client.get("/api/users/search", params={"q": ""}, headers=headers_for(alice)).status_code == 422


def test_online_friends(client: TestClient, make_user, headers_for, token_for) -> None:
    alice, bob = make_user("alice"), make_user("bob")
    request = send_request(client, headers_for(alice), recipient_id=bob)
    client.post(
        f"/api/friends/requests/{request['id']}/respond",
        json={"decision": "accept"},
        headers=headers_for(bob),
    )

    assert client.get("/api/friends/online", headers=headers_for(alice)).json() == []

    with client.websocket_connect(f"/ws/events?token={token_for(bob)}") as bob_stream:
        bob_stream.receive_json()
        online = client.get("/api/friends/online", headers=headers_for(alice)).json()
        assert [(item["id"], item["presence"]) for item in online] == [(bob, "online")]


def test_conversation_details_and_unread_summary(client: TestClient, make_user, headers_for) -> None:
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    direct = open_direct(client, headers_for(alice), bob)
    group = client.post(
        "/api/conversations/groups",
        json={"name": "Team", "member_ids": [bob]},
        headers=headers_for(alice),
    ).json()
    for content in ("one", "two"):
        post_message(client, headers_for(alice), direct["id"], content)
    post_message(client, headers_for(alice), group["id"], "hello team")
    post_message(client, headers_for(bob), group["id"], "mine")

    response = client.get(f"/api/conversations/{direct['id']}", headers=headers_for(bob))
    assert response.status_code == 200, response.text
    detail = response.json()
    assert detail["type"] == "direct"
    assert sorted(member["user"]["id"] for member in detail["members"]) == sorted([alice, bob])
    assert detail["unread_count"] == 2
    assert detail["last_message"]["content"] == "two"

    response = client.get(f"/api/conversations/{direct['id']}", headers=headers_for(eve))
    assert response.status_code == 403
    assert response.json()["code"] == "not_a_member"
    assert client.get("/api/conversations/424242", headers=headers_for(bob)).status_code == 404

    unread = client.get("/api/conversations/unread", headers=headers_for(bob))
    assert unread.json() == {"unread_count": 3, "conversations": 2}
    client.post(f"/api/conversations/{direct['id']}/read", headers=headers_for(bob))
    assert client.get("/api/conversations/unread", headers=headers_for(bob)).json() == {
        "unread_count": 1,
        "conversations": 1,
    }
    assert client.get("/api/conversations/unread", headers=headers_for(alice)).json() == {
        "unread_count": 1,
        "conversations": 1,
    }
    assert client.get("/api/conversations/unread", headers=headers_for(eve)).json() == {
        "unread_count": 0,
        "conversations": 0,
    }


def test_user_lookup_reports_presence(client: TestClient, make_user, headers_for, token_for) -> None:
    alice, bob = make_user("alice"), make_user("bob", display_name="Bobby")
    ghost = make_user("ghost", status=AccountStatus.DELETED)

    response = client.get(f"/api/users/{bob}", headers=headers_for(alice))
    assert response.status_code == 200
    assert response.json() == {"id": bob, "username": "bob", "display_name": "Bobby", "presence": "offline"}

    with client.websocket_connect(f"/ws/events?token={token_for(bob)}") as bob_stream:
        bob_stream.receive_json()
        assert client.get(f"/api/users/{bob}", headers=headers_for(alice)).json()["presence"] == "online"

    for missing in (ghost, 424242):
        response = client.get(f"/api/users/{missing}", headers=headers_for(alice))
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"
