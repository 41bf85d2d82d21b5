from datetime import timedelta

import pytest

from talkcart.database import utcnow
from talkcart.messages import DELETED_CONTENT


@pytest.fixture
async def chat(client, register):
    alice = await register("alice")
    bob = await register("bob")
    resp = await client.post("/api/messages/conversations", json={"participant_ids": [bob[0]["id"]]},
                             headers=alice[1])
    assert resp.status_code == 201, resp.text
    return alice, bob, resp.json()["conversation"]


async def _send(client, conversation_id, headers, content="hi", **fields):
    resp = await client.post(f"/api/messages/conversations/{conversation_id}/messages",
                             json={"content": content, **fields}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["message"]


async def test_direct_conversation_is_reused(client, chat):
    (alice, alice_h), (bob, bob_h), conversation = chat
    assert conversation["participants"] == [alice["id"], bob["id"]]
    assert conversation["participant_summaries"][0]["id"] == bob["id"]

    resp = await client.post("/api/messages/conversations", json={"participant_ids": [alice["id"]]}, headers=bob_h)
    assert resp.status_code == 200
    assert resp.json()["is_new"] is False
    assert resp.json()["conversation"]["id"] == conversation["id"]


async def test_create_conversation_validation(client, register):
    alice, alice_h = await register("alice")
    bob, _ = await register("bob")
    carol, _ = await register("carol")
    url = "/api/messages/conversations"

    assert (await client.post(url, json={"participant_ids": []}, headers=alice_h)).status_code == 400
    assert (await client.post(url, json={"participant_ids": [alice["id"]]}, headers=alice_h)).status_code == 400
    resp = await client.post(url, json={"participant_ids": [bob["id"], carol["id"]]}, headers=alice_h)
    assert resp.status_code == 400
    resp = await client.post(url, json={"participant_ids": [bob["id"], carol["id"]], "is_group": True},
                             headers=alice_h)
    assert resp.json()["detail"] == "Group name is required for group conversations"
    resp = await client.post(url, json={"participant_ids": ["0f8c3a52-8f57-4a0e-9d0a-3c1b8f0c1d2e"]},
                             headers=alice_h)
    assert resp.status_code == 404


async def test_send_and_list_messages(client, db, chat):
    (alice, alice_h), (bob, bob_h), conversation = chat
    first = await _send(client, conversation["id"], alice_h, "hello bob")
    await _send(client, conversation["id"], bob_h, "hey alice", reply_to=first["id"])

    resp = await client.get(f"/api/messages/conversations/{conversation['id']}/messages", headers=alice_h)
    messages = {m["content"]: m for m in resp.json()["messages"]}
    assert set(messages) == {"hello bob", "hey alice"}
    mine, theirs = messages["hello bob"], messages["hey alice"]
    assert (mine["is_own"], mine["is_read"]) == (True, True)
    assert (theirs["is_own"], theirs["is_read"]) == (False, False)
    assert theirs["reply_to"] == first["id"]

    note = await db.notifications.find_one({"recipient_id": bob["id"], "type": "message"})
    assert note["data"]["conversation_id"] == conversation["id"]


async def test_send_requires_content_or_media(client, chat):
    (_, alice_h), _, conversation = chat
    url = f"/api/messages/conversations/{conversation['id']}/messages"
    assert (await client.post(url, json={"content": "   "}, headers=alice_h)).status_code == 400

    resp = await client.post(url, json={"type": "image", "media": [{"url": "https://cdn.example.com/a.png"}]},
                             headers=alice_h)
    assert resp.status_code == 201

    resp = await client.post(url, json={"content": "re", "reply_to": "0f8c3a52-8f57-4a0e-9d0a-3c1b8f0c1d2e"},
                             headers=alice_h)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Reply target not found"


async def test_outsider_cannot_read_conversation(client, chat, register):
    _, _, conversation = chat
    _, mallory_h = await register("mallory")
    resp = await client.get(f"/api/messages/conversations/{conversation['id']}/messages", headers=mallory_h)
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Conversation not found or access denied"


async def test_unread_counts_and_read_receipts(client, chat):
    (_, alice_h), (_, bob_h), conversation = chat
    for text in ("one", "two", "three"):
        await _send(client, conversation["id"], alice_h, text)

    resp = await client.get("/api/messages/conversations", headers=bob_h)
    listed = resp.json()["conversations"][0]
    assert listed["unread_count"] == 3
    assert listed["last_message"]["content"] == "three"

    resp = await client.put(f"/api/messages/conversations/{conversation['id']}/read", headers=bob_h)
    assert resp.json()["marked_count"] == 3
    resp = await client.put(f"/api/messages/conversations/{conversation['id']}/read", headers=bob_h)
    assert resp.json()["marked_count"] == 0

    resp = await client.get("/api/messages/conversations", headers=bob_h)
    assert resp.json()["conversations"][0]["unread_count"] == 0


async def test_mark_single_message_read(client, db, chat, register):
    (_, alice_h), (bob, bob_h), conversation = chat
    message = await _send(client, conversation["id"], alice_h)
    _, mallory_h = await register("mallory")

    assert (await client.put(f"/api/messages/{message['id']}/read", headers=mallory_h)).status_code == 403
    for _ in range(2):
        assert (await client.put(f"/api/messages/{message['id']}/read", headers=bob_h)).status_code == 200

    stored = await db.messages.find_one({"id": message["id"]})
    assert [r["user_id"] for r in stored["read_by"]].count(bob["id"]) == 1


async def test_reactions_toggle(client, chat):
    (alice, alice_h), (bob, bob_h), conversation = chat
    message = await _send(client, conversation["id"], alice_h)
    url = f"/api/messages/{message['id']}/reactions"

    resp = await client.post(url, json={"emoji": "👍"}, headers=bob_h)
    assert resp.json()["action"] == "added"
    resp = await client.post(url, json={"emoji": "🎉"}, headers=bob_h)
    assert len(resp.json()["reactions"]) == 2

    resp = await client.post(url, json={"emoji": "👍"}, headers=bob_h)
    assert resp.json()["action"] == "removed"
    assert [(r["user_id"], r["emoji"]) for r in resp.json()["reactions"]] == [(bob["id"], "🎉")]

    assert (await client.post(url, json={"emoji": " "}, headers=bob_h)).status_code == 400


async def test_edit_message(client, db, chat):
    (_, alice_h), (_, bob_h), conversation = chat
    message = await _send(client, conversation["id"], alice_h, "helo")
    url = f"/api/messages/{message['id']}/edit"

    assert (await client.put(url, json={"content": "hacked"}, headers=bob_h)).status_code == 403

    resp = await client.put(url, json={"content": "hello"}, headers=alice_h)
    assert resp.status_code == 200
    edited = resp.json()["message"]
    assert edited["content"] == "hello"
    assert edited["is_edited"] is True
    assert [h["content"] for h in edited["edit_history"]] == ["helo"]

    await db.messages.update_one({"id": message["id"]}, {"$set": {"created_at": utcnow() - timedelta(days=2)}})
    resp = await client.put(url, json={"content": "too late"}, headers=alice_h)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Message is too old to edit"


async def test_delete_message(client, db, chat):
    (_, alice_h), (_, bob_h), conversation = chat
    message = await _send(client, conversation["id"], alice_h, "oops")

    assert (await client.delete(f"/api/messages/{message['id']}", headers=bob_h)).status_code == 403
    assert (await client.delete(f"/api/messages/{message['id']}", headers=alice_h)).status_code == 200

    stored = await db.messages.find_one({"id": message["id"]})
    assert stored["is_deleted"] is True
    assert stored["content"] == DELETED_CONTENT

    resp = await client.get(f"/api/messages/conversations/{conversation['id']}/messages", headers=alice_h)
    assert resp.json()["messages"] == []


async def test_group_admin_can_delete_any_message(client, register):
    alice, alice_h = await register("alice")
    bob, bob_h = await register("bob")
    carol, _ = await register("carol")
    resp = await client.post("/api/messages/conversations", json={
        "participant_ids": [bob["id"], carol["id"]], "is_group": True, "group_name": "Garage",
    }, headers=alice_h)
    assert resp.status_code == 201
    group = resp.json()["conversation"]
    assert group["admin_id"] == alice["id"]

    message = await _send(client, group["id"], bob_h, "spam")
    assert (await client.delete(f"/api/messages/{message['id']}", headers=alice_h)).status_code == 200


async def test_search_messages(client, chat):
    (_, alice_h), (_, bob_h), conversation = chat
    await _send(client, conversation["id"], alice_h, "Meet at the Garage?")
    await _send(client, conversation["id"], bob_h, "sure (after 5)")
    url = f"/api/messages/conversations/{conversation['id']}/search"

    resp = await client.get(url, params={"q": "garage"}, headers=bob_h)
    assert [m["content"] for m in resp.json()["messages"]] == ["Meet at the Garage?"]
    resp = await client.get(url, params={"q": "(after"}, headers=bob_h)
    assert resp.json()["pagination"]["total"] == 1
    assert (await client.get(url, params={"q": ""}, headers=bob_h)).status_code == 400
