import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from .auth import get_current_user
from .database import get_db, page_bounds, pagination, utcnow, validate_id
from .models import Order, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

CANCELLABLE = ("pending", "processing")


@router.get("")
async def list_orders(
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {"user_id": current_user.id}
    if status:
        query["status"] = status

    orders = await db.orders.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.orders.count_documents(query)
    return {"orders": [Order(**o) for o in orders], "pagination": pagination(page, limit, total)}


@router.get("/payments/history")
async def payment_history(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {"user_id": current_user.id, "status": "completed"}
    orders = await db.orders.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.orders.count_documents(query)

    payments = [
        {
            "order_id": o["id"],
            "order_number": o["order_number"],
            "amount": o["total_amount"],
            "currency": o.get("currency", "USD"),
            "payment_method": o["payment_method"],
            "tx_ref": o.get("tx_ref"),
            "status": o["status"],
            "paid_at": o.get("completed_at") or o["created_at"],
        }
        for o in orders
    ]
    return {"payments": payments, "pagination": pagination(page, limit, total)}


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    validate_id(order_id, "order ID")
    order = await db.orders.find_one({"id": order_id, "user_id": current_user.id}, {"_id": 0})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return Order(**order)


@router.post("/{order_id}/cancel", response_model=Order)
async def cancel_order(order_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    validate_id(order_id, "order ID")
    order = await db.orders.find_one({"id": order_id, "user_id": current_user.id}, {"_id": 0})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["status"] not in CANCELLABLE:
        raise HTTPException(status_code=400, detail=f"Cannot cancel an order that is {order['status']}")

    now = utcnow()
    result = await db.orders.update_one(
        {"id": order_id, "status": {"$in": list(CANCELLABLE)}},
        {"$set": {"status": "cancelled", "cancelled_at": now, "updated_at": now}},
    )
    if result.modified_count == 0:
        raise HTTPException(status_code=409, detail="Order status changed, try again")

    logger.info("Order %s cancelled by %s", order["order_number"], current_user.id)
    order.update(status="cancelled", cancelled_at=now, updated_at=now)
    return Order(**order)
