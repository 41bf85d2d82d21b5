import logging
import random
import re
import string
import time
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from . import payments, payouts
from .auth import get_current_user, require_role
from .database import get_db, page_bounds, pagination, utcnow, validate_id
from .models import (
    PRODUCT_CATEGORIES,
    BuyRequest,
    Order,
    OrderItem,
    Product,
    ProductCreate,
    ProductUpdate,
    User,
    VendorPayout,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/marketplace", tags=["marketplace"])

SORTS = {
    "newest": [("created_at", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "sales": [("sales", -1)],
    "views": [("views", -1)],
    "featured": [("featured", -1), ("created_at", -1)],
}


def generate_order_number() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}".upper()


async def _vendor_summaries(db, vendor_ids):
    docs = await db.users.find({"id": {"$in": list(vendor_ids)}}, {"_id": 0}).to_list(length=None)
    return {
        d["id"]: {
            "id": d["id"],
            "username": d["username"],
            "display_name": d.get("display_name"),
            "avatar": d.get("avatar"),
            "is_verified": d.get("is_verified", False),
            "wallet_address": d.get("wallet_address"),
        }
        for d in docs
    }


async def _with_vendors(db, products):
    vendors = await _vendor_summaries(db, {p["vendor_id"] for p in products})
    result = []
    for p in products:
        item = Product(**p).model_dump()
        item["vendor"] = vendors.get(p["vendor_id"])
        item["in_stock"] = p.get("stock", 0) > 0 or p.get("is_nft", False)
        result.append(item)
    return result


async def _get_product(db, product_id: str, active_only: bool = True) -> dict:
    validate_id(product_id, "product ID")
    query = {"id": product_id}
    if active_only:
        query["is_active"] = True
    product = await db.products.find_one(query, {"_id": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# Product routes
@router.get("/products")
async def list_products(
    page: int = 1,
    limit: int = 20,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    vendor_id: Optional[str] = None,
    is_nft: Optional[bool] = None,
    featured: Optional[bool] = None,
    sort_by: str = "newest",
    db=Depends(get_db),
):
    query = {"is_active": True}
    if category and category != "all":
        query["category"] = category
    if vendor_id:
        query["vendor_id"] = validate_id(vendor_id, "vendor ID")
    if is_nft is not None:
        query["is_nft"] = is_nft
    if featured is not None:
        query["featured"] = featured
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]

    page, limit, skip = page_bounds(page, limit)
    products = await db.products.find(query, {"_id": 0}) \
        .sort(SORTS.get(sort_by, SORTS["newest"])).skip(skip).limit(limit).to_list(length=None)
    total = await db.products.count_documents(query)

    return {"products": await _with_vendors(db, products), "pagination": pagination(page, limit, total)}


@router.post("/products", status_code=201)
async def create_product(
    body: ProductCreate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    if body.is_nft and (not body.contract_address or body.token_id is None):
        raise HTTPException(status_code=400, detail="NFT products require contract_address and token_id")

    product = Product(vendor_id=current_user.id, **body.model_dump())
    await db.products.insert_one(product.model_dump())

    # Listing a product makes the seller a vendor
    if current_user.role == "user":
        await db.users.update_one({"id": current_user.id}, {"$set": {"role": "vendor"}})

    logger.info("Product %s listed by vendor %s", product.id, current_user.id)
    return product


@router.get("/products/{product_id}")
async def get_product(product_id: str, db=Depends(get_db)):
    product = await _get_product(db, product_id)
    await db.products.update_one({"id": product_id}, {"$inc": {"views": 1}})
    product["views"] = product.get("views", 0) + 1
    return (await _with_vendors(db, [product]))[0]


@router.put("/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductUpdate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    product = await _get_product(db, product_id, active_only=False)
    if product["vendor_id"] != current_user.id:
        raise HTTPException(status_code=403, detail="You can only update your own products")

    update_data = {k: v for k, v in body.model_dump().items() if v is not None}
    update_data["updated_at"] = utcnow()
    updated = await db.products.find_one_and_update(
        {"id": product_id},
        {"$set": update_data},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    return Product(**updated)


@router.delete("/products/{product_id}")
async def delete_product(
    product_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    product = await _get_product(db, product_id)
    if product["vendor_id"] != current_user.id:
        raise HTTPException(status_code=403, detail="You can only delete your own products")

    await db.products.update_one({"id": product_id}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    return {"message": "Product deleted successfully"}


@router.get("/categories")
async def categories():
    return {"categories": PRODUCT_CATEGORIES}


@router.get("/stats")
async def stats(db=Depends(get_db)):
    return {
        "total_products": await db.products.count_documents({}),
        "active_products": await db.products.count_documents({"is_active": True}),
        "nft_count": await db.products.count_documents({"is_nft": True, "is_active": True}),
        "featured_count": await db.products.count_documents({"featured": True, "is_active": True}),
        "timestamp": utcnow(),
    }


@router.get("/my/products")
async def my_products(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {"vendor_id": current_user.id}
    products = await db.products.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.products.count_documents(query)
    return {"products": [Product(**p) for p in products], "pagination": pagination(page, limit, total)}


@router.get("/vendors/me/payout-history")
async def payout_history(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(require_role("vendor", "admin")),
    db=Depends(get_db),
):
    return await payouts.get_vendor_payout_history(db, current_user.id, page, limit)


# Buy flow
def _nft_instructions(product: dict, vendor: dict, buyer: User) -> dict:
    if not buyer.wallet_address:
        raise HTTPException(
            status_code=400,
            detail="Buyer wallet not connected. Please connect your wallet to purchase NFTs.",
        )
    if not vendor.get("wallet_address"):
        raise HTTPException(status_code=400, detail="Vendor wallet not connected")
    if not product.get("contract_address") or product.get("token_id") is None:
        raise HTTPException(status_code=400, detail="NFT details missing (contract_address/token_id)")

    # The vendor signs the transfer client-side; nothing moves server-side yet
    return {
        "status": "requires_client_signature",
        "instructions": {
            "type": "erc721_transfer",
            "contract_address": product["contract_address"],
            "token_id": product["token_id"],
            "from": vendor["wallet_address"],
            "to": buyer.wallet_address,
            "network_id": product.get("network_id", 1),
        },
        "transaction_id": f"nft_tx_{uuid.uuid4().hex}",
        "amount": product["price"],
        "currency": product["currency"],
    }


def _payment_proof(body: BuyRequest) -> Optional[str]:
    """The provider reference that an order's ``tx_ref`` is keyed on."""
    details = body.payment_details
    if body.payment_method == "flutterwave":
        proof = details.get("tx_ref")
    elif body.payment_method == "stripe":
        proof = details.get("payment_intent_id")
    elif body.payment_method == "crypto":
        proof = details.get("tx_hash")
        if isinstance(proof, str):
            proof = proof.lower()
    else:
        return None
    return proof if isinstance(proof, str) and proof else None


async def _verify_payment(product: dict, body: BuyRequest) -> dict:
    details = body.payment_details
    try:
        if body.payment_method == "flutterwave":
            tx_ref = details.get("tx_ref")
            flw_tx_id = details.get("flw_tx_id") or details.get("transaction_id") or details.get("id")
            if not isinstance(tx_ref, str) or not tx_ref or not flw_tx_id:
                raise HTTPException(
                    status_code=400, detail="Missing Flutterwave payment details (tx_ref/flw_tx_id)"
                )
            data = await payments.verify_flutterwave_transaction(
                str(flw_tx_id), tx_ref, product["price"], product["currency"]
            )
            return {
                "status": "completed",
                "provider": "flutterwave",
                "transaction_id": str(data.get("id", flw_tx_id)),
                "amount": float(data.get("amount", product["price"])),
                "currency": str(data.get("currency", product["currency"])).upper(),
                "tx_ref": tx_ref,
            }

        if body.payment_method == "stripe":
            intent_id = details.get("payment_intent_id")
            if not intent_id or not isinstance(intent_id, str):
                raise HTTPException(status_code=400, detail="Missing Stripe payment_intent_id")
            intent = await payments.verify_stripe_payment_intent(
                intent_id, product["price"], product["currency"]
            )
            return {
                "status": "completed",
                "provider": "stripe",
                "transaction_id": intent["id"],
                "amount": intent["amount"],
                "currency": intent["currency"],
            }

        if body.payment_method == "crypto":
            tx_hash = details.get("tx_hash")
            sender = details.get("from")
            if not isinstance(tx_hash, str) or not isinstance(sender, str) or not tx_hash or not sender:
                raise HTTPException(status_code=400, detail="Missing crypto payment details (tx_hash/from)")
            payments.verify_crypto_payment(tx_hash, sender)
            return {
                "status": "completed",
                "provider": "crypto",
                "transaction_id": tx_hash.lower(),
                "from": sender,
                "amount": product["price"],
                "currency": product["currency"],
            }
    except payments.PaymentVerificationError as e:
        logger.warning("Payment verification failed for product %s: %s", product["id"], e)
        raise HTTPException(status_code=400, detail=f"Payment not completed: {e}")

    raise HTTPException(status_code=400, detail="Unsupported or missing payment_method")


@router.post("/products/{product_id}/buy")
async def buy_product(
    product_id: str,
    body: BuyRequest,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    product = await _get_product(db, product_id)
    vendor = await db.users.find_one({"id": product["vendor_id"]}, {"_id": 0})
    if not vendor:
        raise HTTPException(status_code=404, detail="Product not found")
    if product["vendor_id"] == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot buy your own product")
    if product.get("stock", 0) <= 0:
        raise HTTPException(status_code=400, detail="Out of stock")

    if product.get("is_nft"):
        payment_result = _nft_instructions(product, vendor, current_user)
        payment_method = "nft"
    else:
        proof = _payment_proof(body)
        if proof and await db.orders.find_one({"tx_ref": proof}, {"_id": 0, "id": 1}):
            raise HTTPException(status_code=409, detail="Payment already used for another order")

        payment_result = await _verify_payment(product, body)
        payment_method = body.payment_method

    updated = await db.products.find_one_and_update(
        {"id": product_id, "stock": {"$gt": 0}},
        {"$inc": {"stock": -1, "sales": 1}},
        projection={"_id": 0},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Out of stock")

    now = utcnow()
    order = Order(
        user_id=current_user.id,
        order_number=generate_order_number(),
        items=[OrderItem(
            product_id=product["id"],
            vendor_id=product["vendor_id"],
            name=product["name"],
            price=product["price"],
            quantity=1,
            currency=product["currency"],
            is_nft=product.get("is_nft", False),
        )],
        total_amount=product["price"],
        currency=product["currency"],
        payment_method=payment_method,
        payment_details=body.payment_details,
        tx_ref=payment_result.get("tx_ref") or payment_result.get("transaction_id"),
        status="completed",
        completed_at=now,
    )

    if not product.get("is_nft"):
        try:
            calculation = payouts.calculate_payout(product["price"], product["currency"])
            order.vendor_payout = VendorPayout(vendor_id=product["vendor_id"], **calculation)
        except ValueError:
            logger.exception("Error calculating vendor payout for product %s", product_id)

    try:
        await db.orders.insert_one(order.model_dump())
    except DuplicateKeyError:
        # A concurrent purchase claimed the same payment proof first
        await db.products.update_one({"id": product_id}, {"$inc": {"stock": 1, "sales": -1}})
        raise HTTPException(status_code=409, detail="Payment already used for another order")
    logger.info("Order %s: %s bought product %s via %s",
                order.order_number, current_user.id, product_id, payment_method)

    result = (await _with_vendors(db, [updated]))[0]
    return {
        "product": result,
        "payment": payment_result,
        "order": {"id": order.id, "order_number": order.order_number, "status": order.status},
    }
