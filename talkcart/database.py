import logging
import uuid
from datetime import datetime, timezone

from fastapi import HTTPException, Request
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING

from .config import settings

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def connect():
    """Open the MongoDB client and return ``(client, db)``."""
    client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    return client, client[settings.db_name]


def get_db(request: Request):
    return request.app.state.db


async def ensure_indexes(db):
    await db.users.create_index("id", unique=True)
    await db.users.create_index("username", unique=True)
    await db.users.create_index("email", unique=True)
    await db.sessions.create_index("session_token", unique=True)

    await db.posts.create_index("id", unique=True)
    await db.posts.create_index([("author_id", ASCENDING), ("created_at", DESCENDING)])
    await db.posts.create_index([("privacy", ASCENDING), ("is_active", ASCENDING)])
    await db.posts.create_index("hashtags")
    await db.comments.create_index([("post_id", ASCENDING), ("created_at", DESCENDING)])

    await db.follows.create_index(
        [("follower_id", ASCENDING), ("following_id", ASCENDING)], unique=True
    )
    await db.notifications.create_index([("recipient_id", ASCENDING), ("created_at", DESCENDING)])

    await db.products.create_index([("category", ASCENDING), ("is_active", ASCENDING)])
    await db.products.create_index("vendor_id")
    await db.orders.create_index("order_number", unique=True)
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    # A payment proof can pay for one order only
    await db.orders.create_index(
        "tx_ref", unique=True, partialFilterExpression={"tx_ref": {"$type": "string"}}
    )
    await db.payouts.create_index([("vendor_id", ASCENDING), ("created_at", DESCENDING)])
    await db.payouts.create_index("payout_key", unique=True)

    await db.chatbot_conversations.create_index(
        [("customer_id", ASCENDING), ("vendor_id", ASCENDING), ("product_id", ASCENDING)]
    )
    await db.chatbot_conversations.create_index([("last_activity", DESCENDING)])
    await db.chatbot_messages.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])

    await db.conversations.create_index("id", unique=True)
    await db.conversations.create_index([("participants", ASCENDING), ("last_activity", DESCENDING)])
    await db.messages.create_index("id", unique=True)
    await db.messages.create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])

    # Webhook retries must never be processed twice
    await db.webhook_events.create_index(
        [("source", ASCENDING), ("event_id", ASCENDING)], unique=True
    )
    await db.webhook_events.create_index("tx_ref")
    logger.info("MongoDB indexes ensured")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Drivers may hand back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def validate_id(value: str, label: str = "ID") -> str:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} format")
    return value


def page_bounds(page: int, limit: int):
    """Clamp pagination input and return ``(page, limit, skip)``."""
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }
