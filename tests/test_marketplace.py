from types import SimpleNamespace

import pytest
import stripe
from pymongo.errors import DuplicateKeyError

from talkcart import payments
from talkcart.config import settings

TX_HASH = "0x" + "a" * 64
ADDRESS = "0x" + "b" * 40


async def _product(client, headers, **fields):
    body = {
        "name": "Camera",
        "description": "A nice camera",
        "price": 100.0,
        "currency": "USD",
        "category": "Electronics",
        "stock": 2,
    }
    body.update(fields)
    resp = await client.post("/api/marketplace/products", json=body, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
async def shop(client, register):
    vendor = await register("vendor", role="vendor")
    buyer = await register("buyer")
    product = await _product(client, vendor[1])
    return vendor, buyer, product


async def test_create_and_list_products(client, register):
    vendor, headers = await register("vendor", role="vendor")
    await _product(client, headers, name="Camera")
    await _product(client, headers, name="Guitar", category="Music", price=50.0)

    resp = await client.get("/api/marketplace/products", params={"category": "Music"})
    products = resp.json()["products"]
    assert [p["name"] for p in products] == ["Guitar"]
    assert products[0]["vendor"]["id"] == vendor["id"]

    resp = await client.get("/api/marketplace/products", params={"sort_by": "price_asc"})
    assert [p["name"] for p in resp.json()["products"]] == ["Guitar", "Camera"]

    resp = await client.get("/api/marketplace/products", params={"search": "guit"})
    assert resp.json()["pagination"]["total"] == 1


async def test_listing_promotes_user_to_vendor(client, db, register):
    user, headers = await register("seller")
    await _product(client, headers)
    assert (await db.users.find_one({"id": user["id"]}))["role"] == "vendor"


async def test_get_product_counts_views(client, shop):
    _, _, product = shop
    await client.get(f"/api/marketplace/products/{product['id']}")
    resp = await client.get(f"/api/marketplace/products/{product['id']}")
    assert resp.json()["views"] == 2


async def test_update_and_delete_require_owner(client, shop):
    (vendor, vendor_h), (buyer, buyer_h), product = shop
    url = f"/api/marketplace/products/{product['id']}"

    assert (await client.put(url, json={"price": 5}, headers=buyer_h)).status_code == 403
    resp = await client.put(url, json={"price": 80}, headers=vendor_h)
    assert resp.json()["price"] == 80

    assert (await client.delete(url, headers=buyer_h)).status_code == 403
    assert (await client.delete(url, headers=vendor_h)).status_code == 200
    assert (await client.get(url)).status_code == 404


async def test_categories_and_stats(client, shop):
    resp = await client.get("/api/marketplace/categories")
    assert "Electronics" in resp.json()["categories"]

    resp = await client.get("/api/marketplace/stats")
    assert resp.json()["active_products"] == 1


async def test_buy_with_crypto(client, db, shop):
    (vendor, _), (buyer, buyer_h), product = shop
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "crypto", "payment_details": {"tx_hash": TX_HASH, "from": ADDRESS}},
        headers=buyer_h,
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["product"]["stock"] == 1
    assert body["product"]["sales"] == 1
    assert body["order"]["status"] == "completed"
    assert body["order"]["order_number"].startswith("ORD-")

    order = await db.orders.find_one({"id": body["order"]["id"]})
    assert order["user_id"] == buyer["id"]
    assert order["items"][0]["vendor_id"] == vendor["id"]
    assert order["vendor_payout"]["vendor_amount"] == 90.0
    assert order["vendor_payout"]["commission_amount"] == 10.0


async def test_buy_with_bad_crypto_proof(client, shop):
    _, (_, buyer_h), product = shop
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "crypto", "payment_details": {"tx_hash": "0x123", "from": ADDRESS}},
        headers=buyer_h,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Payment not completed")


async def test_buy_requires_payment_method(client, shop):
    _, (_, buyer_h), product = shop
    resp = await client.post(f"/api/marketplace/products/{product['id']}/buy", json={}, headers=buyer_h)
    assert resp.status_code == 400


async def test_buy_with_stripe(client, db, shop, monkeypatch):
    _, (_, buyer_h), product = shop
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")
    calls = []

    def fake_retrieve(intent_id, api_key=None):
        calls.append((intent_id, api_key))
        return SimpleNamespace(id=intent_id, status="succeeded", amount=10000, currency="usd")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "stripe", "payment_details": {"payment_intent_id": "pi_123"}},
        headers=buyer_h,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["payment"]["amount"] == 100.0
    assert resp.json()["payment"]["currency"] == "USD"
    assert calls == [("pi_123", "sk_test_123")]

    order = await db.orders.find_one({"id": resp.json()["order"]["id"]})
    assert order["tx_ref"] == "pi_123"


async def test_buy_with_underpaid_stripe_intent(client, db, shop, monkeypatch):
    _, (_, buyer_h), product = shop
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_123")

    def fake_retrieve(intent_id, api_key=None):
        return SimpleNamespace(id=intent_id, status="succeeded", amount=50, currency="usd")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", fake_retrieve)
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "stripe", "payment_details": {"payment_intent_id": "pi_cheap"}},
        headers=buyer_h,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Payment not completed: Payment amount too low"
    assert (await db.products.find_one({"id": product["id"]}))["stock"] == 2


async def test_payment_proof_cannot_be_reused(client, db, shop):
    _, (_, buyer_h), product = shop
    url = f"/api/marketplace/products/{product['id']}/buy"
    proof = {"payment_method": "crypto", "payment_details": {"tx_hash": TX_HASH, "from": ADDRESS}}

    assert (await client.post(url, json=proof, headers=buyer_h)).status_code == 200

    resp = await client.post(url, json=proof, headers=buyer_h)
    assert resp.status_code == 409
    upper = {"payment_method": "crypto", "payment_details": {"tx_hash": "0x" + "A" * 64, "from": ADDRESS}}
    assert (await client.post(url, json=upper, headers=buyer_h)).status_code == 409

    assert await db.orders.count_documents({}) == 1
    assert (await db.products.find_one({"id": product["id"]}))["stock"] == 1


async def test_orders_index_rejects_duplicate_tx_ref(db):
    base = {"user_id": "u", "items": [], "total_amount": 1.0, "payment_method": "crypto"}
    await db.orders.insert_one(dict(base, id="o1", order_number="ORD-1", tx_ref="0xabc"))
    await db.orders.insert_one(dict(base, id="o2", order_number="ORD-2", tx_ref=None))
    await db.orders.insert_one(dict(base, id="o3", order_number="ORD-3", tx_ref=None))
    with pytest.raises(DuplicateKeyError):
        await db.orders.insert_one(dict(base, id="o4", order_number="ORD-4", tx_ref="0xabc"))


async def test_buy_with_failed_flutterwave(client, db, shop, monkeypatch):
    _, (_, buyer_h), product = shop

    async def fake_verify(*args, **kwargs):
        raise payments.PaymentVerificationError("Transaction not successful")

    monkeypatch.setattr(payments, "verify_flutterwave_transaction", fake_verify)
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "flutterwave", "payment_details": {"tx_ref": "ref-1", "flw_tx_id": "42"}},
        headers=buyer_h,
    )
    assert resp.status_code == 400
    assert (await db.products.find_one({"id": product["id"]}))["stock"] == 2
    assert await db.orders.count_documents({}) == 0


async def test_cannot_buy_own_product(client, shop):
    (_, vendor_h), _, product = shop
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "crypto", "payment_details": {"tx_hash": TX_HASH, "from": ADDRESS}},
        headers=vendor_h,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Cannot buy your own product"


async def test_out_of_stock(client, db, shop):
    _, (_, buyer_h), product = shop
    await db.products.update_one({"id": product["id"]}, {"$set": {"stock": 0}})
    resp = await client.post(
        f"/api/marketplace/products/{product['id']}/buy",
        json={"payment_method": "crypto", "payment_details": {"tx_hash": TX_HASH, "from": ADDRESS}},
        headers=buyer_h,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Out of stock"


async def test_buy_nft_completes_order_with_signing_instructions(client, db, register):
    vendor, vendor_h = await register("artist", role="vendor", wallet_address=ADDRESS)
    buyer, buyer_h = await register("collector", wallet_address="0x" + "c" * 40)
    product = await _product(
        client, vendor_h, category="Digital Art", currency="ETH", is_nft=True,
        contract_address="0x" + "d" * 40, token_id="7", stock=1,
    )

    resp = await client.post(f"/api/marketplace/products/{product['id']}/buy", json={}, headers=buyer_h)
    assert resp.status_code == 200, resp.text
    payment = resp.json()["payment"]
    assert payment["status"] == "requires_client_signature"
    assert payment["instructions"]["from"] == ADDRESS
    assert payment["instructions"]["token_id"] == "7"
    order = await db.orders.find_one({"id": resp.json()["order"]["id"]})
    assert order["status"] == "completed"
    assert order["completed_at"] is not None
    assert order["payment_method"] == "nft"
    assert order["tx_ref"].startswith("nft_tx_")

    resp = await client.post(f"/api/marketplace/products/{product['id']}/buy", json={}, headers=buyer_h)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Out of stock"


async def test_buy_nft_requires_buyer_wallet(client, register):
    _, vendor_h = await register("artist", role="vendor", wallet_address=ADDRESS)
    _, buyer_h = await register("collector")
    product = await _product(
        client, vendor_h, category="Digital Art", is_nft=True, contract_address=ADDRESS, token_id="1",
    )
    resp = await client.post(f"/api/marketplace/products/{product['id']}/buy", json={}, headers=buyer_h)
    assert resp.status_code == 400
