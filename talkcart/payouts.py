"""Vendor payouts.

A vendor is owed the item total less the platform commission. Purchases
store the calculation on the order, and ``reconcile_vendor_payouts`` later
turns every completed, unprocessed order into payout records.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pymongo.errors import DuplicateKeyError

from .auth import require_role
from .config import settings
from .database import get_db, page_bounds, pagination
from .models import CRYPTO_CURRENCIES, Payout, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/payouts", tags=["payouts"])

RECONCILE_BATCH_SIZE = 100


def _quantize(value: Decimal, currency: str) -> Decimal:
    places = Decimal("0.00000001") if currency.upper() in CRYPTO_CURRENCIES else Decimal("0.01")
    return value.quantize(places, rounding=ROUND_HALF_UP)


def calculate_payout(amount: float, currency: str, rate: Optional[float] = None) -> dict:
    if rate is None:
        rate = settings.commission_rate
    if amount < 0:
        raise ValueError("amount must not be negative")
    if not 0 <= rate <= 1:
        raise ValueError("commission rate must be between 0 and 1")

    total = Decimal(str(amount))
    commission = _quantize(total * Decimal(str(rate)), currency)
    vendor_amount = _quantize(total - commission, currency)
    return {
        "vendor_amount": float(vendor_amount),
        "commission_amount": float(commission),
        "commission_rate": rate,
        "currency": currency,
    }


async def process_vendor_payout(db, vendor: dict, amount: float, currency: str, meta: dict,
                                payout_key: Optional[str] = None) -> Payout:
    method = "wallet" if vendor.get("wallet_address") and currency.upper() in CRYPTO_CURRENCIES else "manual"
    payout = Payout(
        vendor_id=vendor["id"],
        order_id=meta.get("order_id"),
        order_number=meta.get("order_number"),
        amount=amount,
        currency=currency,
        method=method,
        commission_rate=meta.get("commission_rate"),
        commission_amount=meta.get("commission_amount"),
        meta=meta,
    )
    if payout_key:
        payout.payout_key = payout_key
    await db.payouts.insert_one(payout.model_dump())
    logger.info("Payout %s queued: %s %s to vendor %s (%s)",
                payout.id, amount, currency, vendor["id"], method)
    return payout


async def get_vendor_payout_history(db, vendor_id: str, page: int = 1, limit: int = 20) -> dict:
    page, limit, skip = page_bounds(page, limit)
    query = {"vendor_id": vendor_id}
    docs = await db.payouts.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.payouts.count_documents(query)
    return {"payouts": [Payout(**d) for d in docs], "pagination": pagination(page, limit, total)}


async def _resolve_vendor_id(db, item: dict) -> Optional[str]:
    if item.get("vendor_id"):
        return item["vendor_id"]
    if item.get("product_id"):
        product = await db.products.find_one({"id": item["product_id"]}, {"_id": 0, "vendor_id": 1})
        if product:
            return product.get("vendor_id")
    return None


async def _reconcile_order(db, order: dict, results: dict):
    for index, item in enumerate(order.get("items", [])):
        if item.get("is_nft"):
            # settled on-chain between the wallets
            continue
        vendor_id = await _resolve_vendor_id(db, item)
        if not vendor_id:
            logger.warning("No vendor ID found for item %d of order %s", index, order["id"])
            results["errors"].append({"order_id": order["id"], "item": index, "error": "No vendor ID found"})
            results["failed"] += 1
            continue

        vendor = await db.users.find_one({"id": vendor_id}, {"_id": 0})
        if not vendor:
            logger.warning("Vendor %s not found for order %s", vendor_id, order["id"])
            results["errors"].append({
                "order_id": order["id"], "item": index, "error": f"Vendor {vendor_id} not found",
            })
            results["failed"] += 1
            continue

        item_total = item["price"] * item.get("quantity", 1)
        currency = item.get("currency") or order.get("currency", "USD")
        calculation = calculate_payout(item_total, currency)
        try:
            payout = await process_vendor_payout(db, vendor, calculation["vendor_amount"], currency, {
                "order_id": order["id"],
                "order_number": order.get("order_number"),
                "product_name": item.get("name"),
                "quantity": item.get("quantity", 1),
                "order_total": item_total,
                "commission_rate": calculation["commission_rate"],
                "commission_amount": calculation["commission_amount"],
            }, payout_key=f"{order['id']}:{index}")
        except DuplicateKeyError:
            logger.info("Payout for item %d of order %s already recorded", index, order["id"])
            continue
        results["payouts"].append(payout)
        results["successful"] += 1

    await db.orders.update_one({"id": order["id"]}, {"$set": {"vendor_payout_processed": True}})


async def reconcile_vendor_payouts(db, limit: int = RECONCILE_BATCH_SIZE) -> dict:
    """Pay out completed orders that were never processed for vendor payouts.

    Each order item is paid at most once: payouts carry an
    ``{order_id}:{item index}`` key under a unique index, so an order that
    failed halfway can be reconciled again safely. A failing order is
    reported in ``errors`` and left unprocessed.
    """
    query = {"status": "completed", "vendor_payout_processed": {"$ne": True}}
    orders = await db.orders.find(query, {"_id": 0}).sort("created_at", 1).limit(limit).to_list(length=None)
    logger.info("Found %d orders with incomplete vendor payouts", len(orders))

    results = {"processed": 0, "successful": 0, "failed": 0, "errors": [], "payouts": []}

    for order in orders:
        try:
            await _reconcile_order(db, order, results)
        except Exception as e:
            logger.exception("Error reconciling payouts for order %s", order["id"])
            results["errors"].append({"order_id": order["id"], "error": str(e)})
            results["failed"] += 1
            continue
        results["processed"] += 1

    logger.info("Payout reconciliation: processed=%d successful=%d failed=%d",
                results["processed"], results["successful"], results["failed"])
    return results


@router.post("/reconcile")
async def reconcile(
    limit: int = RECONCILE_BATCH_SIZE,
    current_user: User = Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await reconcile_vendor_payouts(db, min(max(limit, 1), RECONCILE_BATCH_SIZE))
