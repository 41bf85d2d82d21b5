import pytest

from talkcart.chatbot import DELETED_CONTENT, bot_reply_text, welcome_text


@pytest.fixture
async def thread(client, register):
    vendor = await register("vendor", role="vendor")
    customer = await register("customer")
    resp = await client.post("/api/marketplace/products", json={
        "name": "Bike", "description": "Fast", "price": 300, "currency": "USD", "category": "Fitness",
    }, headers=vendor[1])
    product = resp.json()

    resp = await client.post("/api/chatbot/conversations", json={
        "vendor_id": vendor[0]["id"], "product_id": product["id"],
    }, headers=customer[1])
    assert resp.status_code == 200, resp.text
    assert resp.json()["is_new"] is True
    return vendor, customer, product, resp.json()["conversation"]


async def _messages(client, conversation_id, headers):
    resp = await client.get(f"/api/chatbot/conversations/{conversation_id}/messages", headers=headers)
    assert resp.status_code == 200
    return resp.json()["messages"]


async def test_create_conversation_is_idempotent(client, thread):
    vendor, (_, customer_h), product, conversation = thread
    resp = await client.post("/api/chatbot/conversations", json={
        "vendor_id": vendor[0]["id"], "product_id": product["id"],
    }, headers=customer_h)
    assert resp.json()["is_new"] is False
    assert resp.json()["conversation"]["id"] == conversation["id"]


async def test_welcome_message(client, thread):
    _, (_, customer_h), product, conversation = thread
    messages = await _messages(client, conversation["id"], customer_h)
    assert len(messages) == 1
    assert messages[0]["content"] == welcome_text("Bike")
    assert messages[0]["type"] == "system"
    assert messages[0]["is_bot_message"] is True


async def test_product_must_belong_to_vendor(client, thread, register):
    _, (_, customer_h), product, _ = thread
    other, _ = await register("other", role="vendor")
    resp = await client.post("/api/chatbot/conversations", json={
        "vendor_id": other["id"], "product_id": product["id"],
    }, headers=customer_h)
    assert resp.status_code == 404


async def test_customer_message_triggers_bot_reply(client, db, thread):
    (vendor, _), (_, customer_h), _, conversation = thread
    resp = await client.post(
        f"/api/chatbot/conversations/{conversation['id']}/messages",
        json={"content": "Is it available?"},
        headers=customer_h,
    )
    assert resp.status_code == 201

    messages = await _messages(client, conversation["id"], customer_h)
    bot = [m for m in messages if m["content"] == bot_reply_text("Bike")]
    assert len(bot) == 1
    assert bot[0]["bot_confidence"] == 0.8
    assert [s["action"] for s in bot[0]["suggested_responses"]] == ["ask_price", "ask_availability", "ask_details"]

    assert await db.notifications.count_documents({"recipient_id": vendor["id"], "type": "message"}) == 1


async def test_vendor_message_has_no_bot_reply(client, thread):
    (_, vendor_h), (_, customer_h), _, conversation = thread
    await client.post(
        f"/api/chatbot/conversations/{conversation['id']}/messages",
        json={"content": "Hi there"},
        headers=vendor_h,
    )
    messages = await _messages(client, conversation["id"], customer_h)
    assert len(messages) == 2


async def test_outsider_is_denied(client, thread, register):
    _, _, _, conversation = thread
    _, outsider_h = await register("outsider")
    resp = await client.get(f"/api/chatbot/conversations/{conversation['id']}", headers=outsider_h)
    assert resp.status_code == 403


async def test_edit_and_delete_message(client, thread):
    (_, vendor_h), (_, customer_h), _, conversation = thread
    base = f"/api/chatbot/conversations/{conversation['id']}/messages"
    resp = await client.post(base, json={"content": "first"}, headers=vendor_h)
    message = resp.json()["message"]

    resp = await client.put(f"{base}/{message['id']}", json={"content": "edited"}, headers=customer_h)
    assert resp.status_code == 403

    resp = await client.put(f"{base}/{message['id']}", json={"content": "edited"}, headers=vendor_h)
    assert resp.json()["message"]["is_edited"] is True
    assert resp.json()["message"]["content"] == "edited"

    resp = await client.delete(f"{base}/{message['id']}", headers=vendor_h)
    assert resp.status_code == 200
    messages = await _messages(client, conversation["id"], vendor_h)
    assert message["id"] not in {m["id"] for m in messages}


async def test_deleted_message_content_is_replaced(client, db, thread):
    (_, vendor_h), _, _, conversation = thread
    base = f"/api/chatbot/conversations/{conversation['id']}/messages"
    message = (await client.post(base, json={"content": "oops"}, headers=vendor_h)).json()["message"]
    await client.delete(f"{base}/{message['id']}", headers=vendor_h)

    stored = await db.chatbot_messages.find_one({"id": message["id"]})
    assert stored["content"] == DELETED_CONTENT
    assert stored["is_deleted"] is True


async def test_system_messages_are_immutable(client, thread):
    (_, vendor_h), _, _, conversation = thread
    base = f"/api/chatbot/conversations/{conversation['id']}/messages"
    welcome = (await _messages(client, conversation["id"], vendor_h))[0]

    resp = await client.put(f"{base}/{welcome['id']}", json={"content": "changed"}, headers=vendor_h)
    assert resp.status_code == 403
    assert resp.json()["detail"] == "System messages cannot be edited"


async def test_reply_to_message(client, thread):
    (_, vendor_h), (_, customer_h), _, conversation = thread
    base = f"/api/chatbot/conversations/{conversation['id']}/messages"
    welcome = (await _messages(client, conversation["id"], customer_h))[0]

    resp = await client.post(f"{base}/{welcome['id']}/reply", json={"content": "thanks"}, headers=vendor_h)
    assert resp.status_code == 201
    assert resp.json()["message"]["reply_to"] == welcome["id"]


async def test_resolve_and_close(client, db, thread):
    (_, vendor_h), (_, customer_h), _, conversation = thread
    url = f"/api/chatbot/conversations/{conversation['id']}"

    assert (await client.put(f"{url}/resolve", headers=customer_h)).status_code == 403
    resp = await client.put(f"{url}/resolve", headers=vendor_h)
    assert resp.json()["is_resolved"] is True
    assert len(await _messages(client, conversation["id"], vendor_h)) == 2

    assert (await client.delete(url, headers=customer_h)).status_code == 200
    stored = await db.chatbot_conversations.find_one({"id": conversation["id"]})
    assert stored["is_active"] is False

    resp = await client.get("/api/chatbot/conversations", headers=customer_h)
    assert resp.json()["conversations"] == []


async def test_list_conversations_includes_last_message(client, thread):
    _, (_, customer_h), _, conversation = thread
    resp = await client.get("/api/chatbot/conversations", headers=customer_h)
    conversations = resp.json()["conversations"]
    assert [c["id"] for c in conversations] == [conversation["id"]]
    assert conversations[0]["last_message"]["content"] == welcome_text("Bike")


async def test_vendor_admin_thread(client, db, register):
    vendor, vendor_h = await register("vendor", role="vendor")
    _, user_h = await register("shopper")
    _, admin_h = await register("boss", role="admin")
    url = "/api/chatbot/conversations/vendor-admin"

    assert (await client.post(url, headers=user_h)).status_code == 403

    resp = await client.post(url, headers=vendor_h)
    conversation = resp.json()["conversation"]
    assert resp.json()["is_new"] is True
    assert conversation["customer_id"] == "admin"
    assert conversation["bot_enabled"] is False

    resp = await client.post(url, headers=vendor_h)
    assert resp.json()["is_new"] is False

    resp = await client.get(url, headers=vendor_h)
    assert resp.json()["conversation"]["id"] == conversation["id"]

    resp = await client.get("/api/chatbot/admin/conversations", headers=admin_h)
    assert [c["id"] for c in resp.json()["conversations"]] == [conversation["id"]]
    assert (await client.get("/api/chatbot/admin/conversations", headers=vendor_h)).status_code == 403

    resp = await client.post(
        f"/api/chatbot/conversations/{conversation['id']}/messages",
        json={"content": "How can we help?"},
        headers=admin_h,
    )
    assert resp.status_code == 201
    assert resp.json()["message"]["sender_id"] == "admin"

    messages = await _messages(client, conversation["id"], vendor_h)
    assert len(messages) == 2
    assert all(m["sender_id"] == "admin" for m in messages)


async def test_admin_can_edit_and_delete_support_messages(client, register):
    _, vendor_h = await register("vendor", role="vendor")
    _, admin_h = await register("boss", role="admin")
    resp = await client.post("/api/chatbot/conversations/vendor-admin", headers=vendor_h)
    conversation_id = resp.json()["conversation"]["id"]
    base = f"/api/chatbot/conversations/{conversation_id}/messages"

    resp = await client.post(base, json={"content": "We are on it"}, headers=admin_h)
    message_id = resp.json()["message"]["id"]

    resp = await client.put(f"{base}/{message_id}", json={"content": "Vendor is on it"}, headers=vendor_h)
    assert resp.status_code == 403

    resp = await client.put(f"{base}/{message_id}", json={"content": "Fixed now"}, headers=admin_h)
    assert resp.status_code == 200
    assert resp.json()["message"]["content"] == "Fixed now"
    assert resp.json()["message"]["is_edited"] is True

    resp = await client.delete(f"{base}/{message_id}", headers=admin_h)
    assert resp.status_code == 200


async def test_vendor_search(client, db, thread, register):
    (vendor, vendor_h), (customer, customer_h), product, _ = thread
    other, other_h = await register("potter", role="vendor")
    await register("idle", role="vendor")
    await client.post("/api/marketplace/products", json={
        "name": "Vase", "description": "Clay", "price": 40, "currency": "USD", "category": "Other",
    }, headers=other_h)

    resp = await client.get("/api/chatbot/search/vendors", headers=vendor_h)
    assert resp.status_code == 200
    vendors = resp.json()["vendors"]
    assert [v["id"] for v in vendors] == [other["id"]]
    assert vendors[0]["product_count"] == 1

    resp = await client.get("/api/chatbot/search/vendors", params={"search": "POT"}, headers=other_h)
    assert resp.json()["pagination"]["total"] == 0
    resp = await client.get("/api/chatbot/search/vendors", params={"search": "vend"}, headers=other_h)
    assert [v["id"] for v in resp.json()["vendors"]] == [vendor["id"]]

    assert (await client.get("/api/chatbot/search/vendors", headers=customer_h)).status_code == 403


async def test_customer_search(client, db, thread, register):
    (vendor, vendor_h), (customer, customer_h), product, _ = thread
    await register("browser")
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "crypto", "payment_details": {"tx_hash": "0x" + "e" * 64, "from": "0x" + "f" * 40}},
        headers=customer_h,
    )
    assert resp.status_code == 200, resp.text

    resp = await client.get("/api/chatbot/search/customers", headers=vendor_h)
    customers = resp.json()["customers"]
    assert [c["id"] for c in customers] == [customer["id"]]
    assert customers[0]["order_count"] == 1

    resp = await client.get("/api/chatbot/search/customers", params={"search": "nobody"}, headers=vendor_h)
    assert resp.json()["customers"] == []
    assert (await client.get("/api/chatbot/search/customers", headers=customer_h)).status_code == 403
