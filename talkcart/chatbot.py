import logging
import re
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from . import notifications
from .auth import get_current_user, require_role
from .database import get_db, page_bounds, pagination, utcnow, validate_id
from .models import (
    ADMIN_PARTICIPANT,
    ChatbotConversation,
    ChatbotMessage,
    ConversationCreate,
    MessageCreate,
    SuggestedResponse,
    User,
    UserSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/chatbot", tags=["chatbot"])

DELETED_CONTENT = "[Message deleted]"
RESOLVED_CONTENT = "This conversation has been marked as resolved. Thank you for your inquiry!"
BOT_SUGGESTIONS = [
    SuggestedResponse(text="What is the price?", action="ask_price"),
    SuggestedResponse(text="Is this item available?", action="ask_availability"),
    SuggestedResponse(text="Tell me more about this product", action="ask_details"),
]


def welcome_text(product_name: str) -> str:
    return f'Hello! I\'m here to help you with questions about "{product_name}". How can I assist you today?'


def bot_reply_text(product_name: str) -> str:
    return (f'Thanks for your message about "{product_name}". '
            "A vendor representative will respond to you shortly.")


def _is_admin_thread(conversation: dict) -> bool:
    return conversation["customer_id"] == ADMIN_PARTICIPANT


def _can_access(conversation: dict, user: User) -> bool:
    if user.id in (conversation["customer_id"], conversation["vendor_id"]):
        return True
    return user.role == "admin" and _is_admin_thread(conversation)


def _owns_message(message: dict, conversation: dict, user: User) -> bool:
    if message["sender_id"] == user.id:
        return True
    # admins post as the shared support participant
    return (message["sender_id"] == ADMIN_PARTICIPANT and user.role == "admin"
            and _is_admin_thread(conversation))


async def _get_conversation(db, conversation_id: str, user: User) -> dict:
    validate_id(conversation_id, "conversation ID")
    conversation = await db.chatbot_conversations.find_one({"id": conversation_id}, {"_id": 0})
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    if not _can_access(conversation, user):
        raise HTTPException(status_code=403, detail="Access denied")
    return conversation


async def _get_message(db, conversation_id: str, message_id: str) -> dict:
    validate_id(message_id, "message ID")
    message = await db.chatbot_messages.find_one(
        {"id": message_id, "conversation_id": conversation_id}, {"_id": 0}
    )
    if not message or message.get("is_deleted"):
        raise HTTPException(status_code=404, detail="Message not found")
    return message


async def add_message(db, conversation_id: str, sender_id: str, content: str, **fields) -> ChatbotMessage:
    message = ChatbotMessage(conversation_id=conversation_id, sender_id=sender_id, content=content, **fields)
    await db.chatbot_messages.insert_one(message.model_dump())
    await db.chatbot_conversations.update_one(
        {"id": conversation_id},
        {"$set": {"last_message_id": message.id, "last_activity": message.created_at}},
    )
    return message


async def _attach_last_messages(db, conversations):
    ids = [c["last_message_id"] for c in conversations if c.get("last_message_id")]
    messages = await db.chatbot_messages.find({"id": {"$in": ids}}, {"_id": 0}).to_list(length=None)
    by_id = {m["id"]: m for m in messages}
    result = []
    for c in conversations:
        item = ChatbotConversation(**c).model_dump()
        last = by_id.get(c.get("last_message_id"))
        item["last_message"] = ChatbotMessage(**last).model_dump() if last else None
        result.append(item)
    return result


async def send_bot_reply(db, conversation: dict):
    try:
        await add_message(
            db,
            conversation["id"],
            conversation["vendor_id"],
            bot_reply_text(conversation["product_name"]),
            is_bot_message=True,
            bot_confidence=0.8,
            suggested_responses=BOT_SUGGESTIONS,
        )
    except Exception:
        logger.exception("Failed to send bot reply in conversation %s", conversation["id"])


async def notify_recipient(db, conversation: dict, sender_id: str, content: str):
    recipient_id = conversation["vendor_id"] if sender_id != conversation["vendor_id"] \
        else conversation["customer_id"]
    if recipient_id == ADMIN_PARTICIPANT:
        return
    try:
        await notifications.create_message_notification(db, sender_id, recipient_id, conversation["id"], content)
    except Exception:
        logger.exception("Failed to create message notification")


# Vendor-admin support threads
@router.get("/conversations/vendor-admin")
async def get_vendor_admin_conversation(
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    if current_user.role != "vendor":
        raise HTTPException(status_code=403, detail="Access denied. Vendor access required.")
    conversation = await db.chatbot_conversations.find_one(
        {"vendor_id": current_user.id, "customer_id": ADMIN_PARTICIPANT, "is_active": True}, {"_id": 0}
    )
    if not conversation:
        return {"conversation": None}
    return {"conversation": (await _attach_last_messages(db, [conversation]))[0]}


@router.post("/conversations/vendor-admin")
async def create_vendor_admin_conversation(
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    if current_user.role != "vendor":
        raise HTTPException(status_code=403, detail="Access denied. Vendor access required.")

    existing = await db.chatbot_conversations.find_one(
        {"vendor_id": current_user.id, "customer_id": ADMIN_PARTICIPANT, "is_active": True}, {"_id": 0}
    )
    if existing:
        return {"conversation": ChatbotConversation(**existing), "is_new": False}

    conversation = ChatbotConversation(
        customer_id=ADMIN_PARTICIPANT,
        vendor_id=current_user.id,
        product_name="Vendor Support",
        bot_enabled=False,
    )
    await db.chatbot_conversations.insert_one(conversation.model_dump())
    welcome = await add_message(
        db,
        conversation.id,
        ADMIN_PARTICIPANT,
        "Hello! This is the admin support channel. How can we help you today?",
        type="system",
    )
    conversation.last_message_id = welcome.id
    conversation.last_activity = welcome.created_at

    logger.info("Vendor-admin conversation %s opened for vendor %s", conversation.id, current_user.id)
    return {"conversation": conversation, "is_new": True}


@router.get("/admin/conversations")
async def list_admin_conversations(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(require_role("admin")),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {"customer_id": ADMIN_PARTICIPANT, "is_active": True}
    docs = await db.chatbot_conversations.find(query, {"_id": 0}) \
        .sort("last_activity", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.chatbot_conversations.count_documents(query)
    return {"conversations": await _attach_last_messages(db, docs), "pagination": pagination(page, limit, total)}


# Contact search for vendors
def _name_filter(search: Optional[str]) -> dict:
    if not search or not search.strip():
        return {}
    pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
    return {"$or": [{"username": pattern}, {"display_name": pattern}]}


def _require_vendor(user: User):
    if user.role != "vendor":
        raise HTTPException(status_code=403, detail="Access denied. Vendor access required.")


@router.get("/search/vendors")
async def search_vendors(
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    _require_vendor(current_user)
    page, limit, skip = page_bounds(page, limit)

    vendor_ids = await db.products.distinct("vendor_id", {"is_active": True})
    query = {"id": {"$in": [v for v in vendor_ids if v != current_user.id]}, "is_active": True}
    query.update(_name_filter(search))
    docs = await db.users.find(query, {"_id": 0}) \
        .sort("follower_count", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.users.count_documents(query)

    vendors = []
    for doc in docs:
        item = UserSummary(**doc).model_dump()
        item["wallet_address"] = doc.get("wallet_address")
        item["product_count"] = await db.products.count_documents({"vendor_id": doc["id"], "is_active": True})
        vendors.append(item)
    return {"vendors": vendors, "pagination": pagination(page, limit, total)}


@router.get("/search/customers")
async def search_customers(
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    """Customers who have ordered from the calling vendor."""
    _require_vendor(current_user)
    page, limit, skip = page_bounds(page, limit)

    customer_ids = await db.orders.distinct("user_id", {"items.vendor_id": current_user.id})
    query = {"id": {"$in": customer_ids}, "role": "user", "is_active": True}
    query.update(_name_filter(search))
    docs = await db.users.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.users.count_documents(query)

    customers = []
    for doc in docs:
        item = UserSummary(**doc).model_dump()
        item["order_count"] = await db.orders.count_documents(
            {"user_id": doc["id"], "items.vendor_id": current_user.id}
        )
        customers.append(item)
    return {"customers": customers, "pagination": pagination(page, limit, total)}


# Customer-vendor conversations
@router.post("/conversations")
async def create_conversation(
    body: ConversationCreate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    validate_id(body.vendor_id, "vendor ID")
    validate_id(body.product_id, "product ID")
    if body.vendor_id == current_user.id:
        raise HTTPException(status_code=400, detail="Cannot start a conversation with yourself")

    product = await db.products.find_one(
        {"id": body.product_id, "vendor_id": body.vendor_id, "is_active": True}, {"_id": 0}
    )
    if not product:
        raise HTTPException(status_code=404, detail="Product not found or does not belong to this vendor")

    existing = await db.chatbot_conversations.find_one(
        {
            "customer_id": current_user.id,
            "vendor_id": body.vendor_id,
            "product_id": body.product_id,
            "is_active": True,
        },
        {"_id": 0},
    )
    if existing:
        return {"conversation": ChatbotConversation(**existing), "is_new": False}

    conversation = ChatbotConversation(
        customer_id=current_user.id,
        vendor_id=body.vendor_id,
        product_id=body.product_id,
        product_name=product["name"],
    )
    await db.chatbot_conversations.insert_one(conversation.model_dump())
    welcome = await add_message(
        db,
        conversation.id,
        body.vendor_id,
        welcome_text(product["name"]),
        type="system",
        is_bot_message=True,
    )
    conversation.last_message_id = welcome.id
    conversation.last_activity = welcome.created_at

    logger.info("Conversation %s opened by %s for product %s", conversation.id, current_user.id, product["id"])
    return {"conversation": conversation, "is_new": True}


@router.get("/conversations")
async def list_conversations(
    page: int = 1,
    limit: int = 20,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    page, limit, skip = page_bounds(page, limit)
    query = {
        "$or": [{"customer_id": current_user.id}, {"vendor_id": current_user.id}],
        "is_active": True,
    }
    docs = await db.chatbot_conversations.find(query, {"_id": 0}) \
        .sort("last_activity", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.chatbot_conversations.count_documents(query)
    return {"conversations": await _attach_last_messages(db, docs), "pagination": pagination(page, limit, total)}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    return {"conversation": (await _attach_last_messages(db, [conversation]))[0]}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: str,
    page: int = 1,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_conversation(db, conversation_id, current_user)

    page, limit, skip = page_bounds(page, limit)
    query = {"conversation_id": conversation_id, "is_deleted": {"$ne": True}}
    docs = await db.chatbot_messages.find(query, {"_id": 0}) \
        .sort("created_at", -1).skip(skip).limit(limit).to_list(length=None)
    total = await db.chatbot_messages.count_documents(query)

    docs.reverse()
    return {"messages": [ChatbotMessage(**d) for d in docs], "pagination": pagination(page, limit, total)}


# Messages
@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: MessageCreate,
    background_tasks: BackgroundTasks,
    reply_to: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    if not conversation.get("is_active", True):
        raise HTTPException(status_code=400, detail="Conversation is closed")

    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")

    if reply_to:
        await _get_message(db, conversation_id, reply_to)

    # Admins speak for the support side of vendor-admin threads
    sender_id = current_user.id
    if _is_admin_thread(conversation) and current_user.id != conversation["vendor_id"]:
        sender_id = ADMIN_PARTICIPANT

    message = await add_message(db, conversation_id, sender_id, content, reply_to=reply_to)

    if sender_id == conversation["customer_id"] and conversation.get("bot_enabled", True):
        background_tasks.add_task(send_bot_reply, db, conversation)
    background_tasks.add_task(notify_recipient, db, conversation, sender_id, content)

    return {"message": message}


@router.post("/conversations/{conversation_id}/messages/{message_id}/reply", status_code=201)
async def reply_to_message(
    conversation_id: str,
    message_id: str,
    body: MessageCreate,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    return await send_message(
        conversation_id, body, background_tasks, reply_to=message_id, current_user=current_user, db=db
    )


@router.put("/conversations/{conversation_id}/messages/{message_id}")
async def edit_message(
    conversation_id: str,
    message_id: str,
    body: MessageCreate,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    message = await _get_message(db, conversation_id, message_id)
    if message["type"] == "system":
        raise HTTPException(status_code=403, detail="System messages cannot be edited")
    if not _owns_message(message, conversation, current_user):
        raise HTTPException(status_code=403, detail="You can only edit your own messages")

    content = body.content.strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")

    now = utcnow()
    await db.chatbot_messages.update_one(
        {"id": message_id},
        {"$set": {"content": content, "is_edited": True, "updated_at": now}},
    )
    message.update(content=content, is_edited=True, updated_at=now)
    return {"message": ChatbotMessage(**message)}


@router.delete("/conversations/{conversation_id}/messages/{message_id}")
async def delete_message(
    conversation_id: str,
    message_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    message = await _get_message(db, conversation_id, message_id)
    if message["type"] == "system":
        raise HTTPException(status_code=403, detail="System messages cannot be deleted")
    if not _owns_message(message, conversation, current_user):
        raise HTTPException(status_code=403, detail="You can only delete your own messages")

    await db.chatbot_messages.update_one(
        {"id": message_id},
        {"$set": {"is_deleted": True, "content": DELETED_CONTENT, "updated_at": utcnow()}},
    )
    return {"message": "Message deleted successfully"}


# Conversation state
@router.put("/conversations/{conversation_id}/resolve")
async def resolve_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    conversation = await _get_conversation(db, conversation_id, current_user)
    if conversation["vendor_id"] != current_user.id:
        raise HTTPException(status_code=403, detail="Only the vendor can resolve this conversation")

    await db.chatbot_conversations.update_one({"id": conversation_id}, {"$set": {"is_resolved": True}})
    await add_message(db, conversation_id, current_user.id, RESOLVED_CONTENT, type="system", is_bot_message=True)

    logger.info("Conversation %s resolved by vendor %s", conversation_id, current_user.id)
    return {"message": "Conversation resolved", "is_resolved": True}


@router.delete("/conversations/{conversation_id}")
async def close_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    await _get_conversation(db, conversation_id, current_user)
    await db.chatbot_conversations.update_one(
        {"id": conversation_id}, {"$set": {"is_active": False, "last_activity": utcnow()}}
    )
    return {"message": "Conversation closed"}
