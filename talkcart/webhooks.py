"""Payment provider webhooks.

Both endpoints read the raw request body, check the provider's signature,
and record the event in ``webhook_events`` before doing any work. The
unique ``(source, event_id)`` index makes a retried delivery a no-op.
"""

import hashlib
import hmac
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pymongo.errors import DuplicateKeyError

from . import payments
from .config import settings
from .database import get_db, utcnow
from .models import WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _hmac_hex(secret: str, payload: bytes) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def verify_flutterwave_signature(headers, raw: bytes) -> bool:
    secret = settings.flw_secret_hash
    verif_hash = headers.get("verif-hash")
    if verif_hash and hmac.compare_digest(verif_hash.encode(), secret.encode()):
        return True
    signature = headers.get("flutterwave-signature")
    if signature and raw:
        return hmac.compare_digest(_hmac_hex(secret, raw).encode(), signature.encode())
    return False


def _parse(raw: bytes) -> dict:
    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


async def record_event(db, source: str, event_id: str, tx_ref=None, meta=None) -> bool:
    """Returns False when the event was already recorded."""
    event = WebhookEvent(source=source, event_id=event_id, tx_ref=tx_ref, meta=meta or {})
    try:
        await db.webhook_events.insert_one(event.model_dump())
    except DuplicateKeyError:
        logger.info("Duplicate %s webhook event %s ignored", source, event_id)
        return False
    return True


async def complete_order(db, query: dict, tx_ref=None):
    order = await db.orders.find_one(query, {"_id": 0})
    if not order:
        logger.info("No order matches webhook query %s", query)
        return None

    now = utcnow()
    update = {"status": "completed", "completed_at": now, "updated_at": now}
    if tx_ref and not order.get("tx_ref"):
        update["tx_ref"] = tx_ref
    try:
        await db.orders.update_one({"id": order["id"]}, {"$set": update})
    except DuplicateKeyError:
        logger.warning("tx_ref %s already belongs to another order; completing %s without it",
                       tx_ref, order["id"])
        update.pop("tx_ref", None)
        await db.orders.update_one({"id": order["id"]}, {"$set": update})
    logger.info("Order %s marked as completed via webhook", order["order_number"])
    return order["id"]


@router.post("/flutterwave")
async def flutterwave_webhook(request: Request, db=Depends(get_db)):
    if not settings.flw_secret_hash:
        raise HTTPException(status_code=400, detail="Flutterwave webhook not configured")

    raw = await request.body()
    if not verify_flutterwave_signature(request.headers, raw):
        raise HTTPException(status_code=400, detail="Invalid Flutterwave signature")

    payload = _parse(raw)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    tx_id = str(payload.get("id") or data.get("id") or "")
    tx_ref = str(payload.get("tx_ref") or data.get("tx_ref") or "")
    if not tx_id or not tx_ref:
        raise HTTPException(status_code=400, detail="Invalid Flutterwave event data")

    if not await record_event(db, "flutterwave", tx_id, tx_ref, {"event": payload.get("event")}):
        return {"received": True, "duplicate": True}

    try:
        await payments.verify_flutterwave_transaction(tx_id, tx_ref)
    except payments.PaymentVerificationError as e:
        logger.warning("Flutterwave transaction %s not verified: %s", tx_id, e)
        return {"received": True, "verified": False}

    await complete_order(db, {"$or": [{"tx_ref": tx_ref}, {"payment_details.tx_ref": tx_ref}]}, tx_ref)
    return {"received": True, "verified": True}


@router.post("/stripe")
async def stripe_webhook(request: Request, db=Depends(get_db)):
    secret = settings.stripe_webhook_secret
    if not secret:
        raise HTTPException(status_code=400, detail="Stripe webhook not configured")

    raw = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")
    try:
        event = stripe.Webhook.construct_event(raw, sig_header, secret)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid Stripe signature")

    event_id = event.get("id")
    if not event_id:
        raise HTTPException(status_code=400, detail="Invalid Stripe event data")

    if not await record_event(db, "stripe", str(event_id), meta={"type": event.get("type")}):
        return {"received": True, "duplicate": True}

    if event.get("type") == "payment_intent.succeeded":
        intent = (event.get("data") or {}).get("object") or {}
        if intent.get("id"):
            await complete_order(db, {"payment_details.payment_intent_id": intent["id"]})
    else:
        logger.debug("Unhandled Stripe event type %s", event.get("type"))

    return {"received": True}
