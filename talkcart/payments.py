import logging
import re

import requests
import stripe
from starlette.concurrency import run_in_threadpool

from .config import settings

logger = logging.getLogger(__name__)

FLUTTERWAVE_API = "https://api.flutterwave.com/v3"
REQUEST_TIMEOUT = 15

TX_HASH_RE = re.compile(r"^0x[A-Fa-f0-9]{64}$")
ADDRESS_RE = re.compile(r"^0x[A-Fa-f0-9]{40}$")


class PaymentVerificationError(Exception):
    """Raised when a payment proof cannot be confirmed with its provider."""


def _get_json(url: str, token: str) -> dict:
    try:
        response = requests.get(url, headers={"Authorization": f"Bearer {token}"}, timeout=REQUEST_TIMEOUT)
    except requests.RequestException as e:
        raise PaymentVerificationError(f"Provider unreachable: {e}")
    if response.status_code != 200:
        raise PaymentVerificationError(f"Provider returned {response.status_code}")
    return response.json()


async def verify_flutterwave_transaction(transaction_id: str, tx_ref: str,
                                         amount=None, currency=None) -> dict:
    """Confirm a Flutterwave transaction succeeded; returns its ``data`` block."""
    if not settings.flw_secret_key:
        raise PaymentVerificationError("Flutterwave not configured")

    body = await run_in_threadpool(
        _get_json, f"{FLUTTERWAVE_API}/transactions/{transaction_id}/verify", settings.flw_secret_key
    )
    data = body.get("data") or {}
    if str(data.get("status", "")).lower() != "successful":
        raise PaymentVerificationError("Transaction not successful")
    if str(data.get("tx_ref")) != str(tx_ref):
        raise PaymentVerificationError("Transaction reference mismatch")
    if amount is not None and float(data.get("amount", 0)) < float(amount):
        raise PaymentVerificationError("Transaction amount too low")
    if currency and data.get("currency") and str(data["currency"]).upper() != currency.upper():
        raise PaymentVerificationError("Transaction currency mismatch")
    return data


async def verify_stripe_payment_intent(payment_intent_id: str, amount=None, currency=None) -> dict:
    """Retrieve a PaymentIntent with the Stripe SDK and check it paid in full."""
    if not settings.stripe_secret_key:
        raise PaymentVerificationError("Stripe not configured")

    try:
        intent = await run_in_threadpool(
            stripe.PaymentIntent.retrieve, payment_intent_id, api_key=settings.stripe_secret_key
        )
    except stripe.StripeError as e:
        raise PaymentVerificationError(f"Stripe error: {e}")

    if intent.status != "succeeded":
        raise PaymentVerificationError("Payment not completed")
    paid = (intent.amount or 0) / 100
    if amount is not None and paid < float(amount):
        raise PaymentVerificationError("Payment amount too low")
    if currency and intent.currency and str(intent.currency).upper() != currency.upper():
        raise PaymentVerificationError("Payment currency mismatch")
    return {
        "id": intent.id,
        "status": intent.status,
        "amount": paid,
        "currency": str(intent.currency or currency or "").upper(),
    }


def verify_crypto_payment(tx_hash: str, sender: str):
    if not TX_HASH_RE.match(tx_hash or ""):
        raise PaymentVerificationError("Invalid txHash format")
    if not ADDRESS_RE.match(sender or ""):
        raise PaymentVerificationError("Invalid sender address")
